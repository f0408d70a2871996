import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from dialog_ethics_backend.models import ModelSettings
from dialog_ethics_backend.schemas import ChatRequest, CredentialsRequest, ModelsRequest
from dialog_ethics_backend.services.llm_client import GatewayError, ModelGateway, get_model_gateway
from dialog_ethics_backend.services.llm_config import build_model_settings

logger = logging.getLogger(__name__)
router = APIRouter(tags=["llm"])


def get_gateway() -> ModelGateway:
    return get_model_gateway()


def require_settings(payload: CredentialsRequest) -> ModelSettings:
    if not str(payload.api_key or "").strip():
        raise HTTPException(status_code=400, detail="API key is required")
    return build_model_settings(payload.api_key, payload.model, payload.base_url)


def gateway_http_error(exc: GatewayError, fallback_detail: Optional[str] = None) -> HTTPException:
    """401 and 429 pass through with their own message; everything else is a 500."""
    if exc.status_code in (401, 429):
        return HTTPException(status_code=exc.status_code, detail=exc.message)
    return HTTPException(status_code=500, detail=fallback_detail or exc.message)


@router.post("/api/chat")
async def chat(payload: ChatRequest, gateway: ModelGateway = Depends(get_gateway)):
    settings = require_settings(payload)
    if not payload.messages:
        raise HTTPException(status_code=400, detail="Messages array is required")

    try:
        completion = await gateway.chat_completion(
            settings,
            [message.to_chat_message() for message in payload.messages],
            temperature=0.7,
            max_tokens=1000,
        )
    except GatewayError as exc:
        logger.error("Chat completion failed: %s", exc.message)
        raise gateway_http_error(exc, f"Failed to get response from model: {exc.message}")

    if not completion.content:
        raise HTTPException(status_code=500, detail="No response from model")

    return {"message": completion.content, "usage": completion.usage, "model": completion.model}


@router.post("/api/models")
async def list_models(payload: ModelsRequest, gateway: ModelGateway = Depends(get_gateway)):
    settings = require_settings(payload)
    try:
        models = await gateway.list_models(settings)
    except GatewayError as exc:
        logger.error("Model listing failed: %s", exc.message)
        raise gateway_http_error(exc, "Failed to fetch models. Please try again.")
    return {"models": models}
