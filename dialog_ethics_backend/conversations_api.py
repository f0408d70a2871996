"""Live session API: one in-memory conversation per process."""
import dataclasses
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response

from dialog_ethics_backend.llm_api import gateway_http_error, get_gateway, require_settings
from dialog_ethics_backend.models import Role
from dialog_ethics_backend.schemas import (
    ConnectRequest,
    CutoffRequest,
    SessionMessageRequest,
    SessionSummaryRequest,
)
from dialog_ethics_backend.services.conversation_export import (
    EXPORT_EXTENSIONS,
    EXPORT_FORMATS,
    EXPORT_MEDIA_TYPES,
    export_conversation,
)
from dialog_ethics_backend.services.conversation_store import ConversationStore, StoreConfig
from dialog_ethics_backend.services.flagging_analyzer import FlaggingAnalyzer
from dialog_ethics_backend.services.llm_client import GatewayError, ModelGateway
from dialog_ethics_backend.services.principle_scorer import PrincipleScorer
from dialog_ethics_backend.services.prompt_manager import PromptManager, get_prompt_manager
from dialog_ethics_backend.services.registries import get_category_registry, get_principle_registry
from dialog_ethics_backend.services.summarizer import Summarizer

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/session", tags=["session"])

_store_instance: Optional[ConversationStore] = None


def get_conversation_store() -> ConversationStore:
    global _store_instance

    if _store_instance is None:
        _store_instance = ConversationStore(
            category_registry=get_category_registry(),
            principle_registry=get_principle_registry(),
            config=StoreConfig(),
        )

    return _store_instance


def _require_connected(store: ConversationStore) -> None:
    if store.settings is None:
        raise HTTPException(status_code=400, detail="Connect with an API key first")


@router.get("")
async def read_session(store: ConversationStore = Depends(get_conversation_store)):
    return store.snapshot()


@router.post("/connect")
async def connect(
    payload: ConnectRequest,
    store: ConversationStore = Depends(get_conversation_store),
    gateway: ModelGateway = Depends(get_gateway),
    prompt_manager: PromptManager = Depends(get_prompt_manager),
):
    """
    Configure credentials, model and category set for the session.

    The key is checked by listing models, so a bad key fails here rather than
    on the first chat turn.
    """
    settings = require_settings(payload)
    try:
        models = await gateway.list_models(settings)
    except GatewayError as exc:
        logger.warning("Session connect rejected: %s", exc.message)
        raise gateway_http_error(exc, f"Could not connect to model provider: {exc.message}")

    registry = get_category_registry(payload.category_set)
    config = dataclasses.replace(
        store.config,
        flagging_enabled=payload.flagging_enabled,
        scoring_enabled=payload.scoring_enabled,
        additional_context=payload.additional_context,
    )
    store.configure(
        settings=settings,
        category_registry=registry,
        flagging_analyzer=FlaggingAnalyzer(gateway, registry, prompt_manager),
        principle_scorer=PrincipleScorer(gateway, store.principle_registry, prompt_manager),
        config=config,
    )
    logger.info("Session connected: model=%s category_set=%s demo=%s", settings.model, registry.name, settings.is_demo)
    return {
        "connected": True,
        "model": settings.model,
        "demo": settings.is_demo,
        "models": models,
        "categories": registry.to_dict(),
        "principles": store.principle_registry.to_list(),
    }


@router.post("/messages")
async def send_message(
    payload: SessionMessageRequest,
    wait: bool = False,
    store: ConversationStore = Depends(get_conversation_store),
    gateway: ModelGateway = Depends(get_gateway),
):
    """
    Append the user's turn, ask the model for a reply and append that too.

    A failed chat call still appends an assistant message that explains the
    error, so the conversation keeps alternating. `wait=true` returns only after
    both messages have been analyzed.
    """
    _require_connected(store)
    content = payload.content.strip()
    if not content:
        raise HTTPException(status_code=400, detail="Message content is required")

    user_message = store.append_message(Role.USER, content)
    history = [m.to_chat_message() for m in store.messages]
    if payload.system_prompt:
        history.insert(0, {"role": "system", "content": payload.system_prompt})

    error = None
    try:
        completion = await gateway.chat_completion(store.settings, history, temperature=0.7, max_tokens=1000)
        reply = completion.content or "No response received from the model."
    except GatewayError as exc:
        logger.warning("Chat turn failed: %s", exc.message)
        error = exc.message
        reply = f"Sorry, I couldn't generate a response. Error: {exc.message}"

    assistant_message = store.append_message(Role.ASSISTANT, reply)
    if wait:
        await store.wait_for_pending()

    return {
        "userMessage": user_message.to_dict(),
        "assistantMessage": assistant_message.to_dict(),
        "error": error,
    }


@router.get("/messages")
async def read_messages(store: ConversationStore = Depends(get_conversation_store)):
    filtered_ids = {m.id for m in store.filtered_messages()}
    return {
        "messages": [
            dict(message.to_dict(), included=message.id in filtered_ids)
            for message in store.messages
        ],
        "cutoff": store.cutoff,
        "pendingAnalyses": store.pending_tasks,
    }


@router.post("/messages/{message_id}/analyze")
async def analyze_message(message_id: str, store: ConversationStore = Depends(get_conversation_store)):
    _require_connected(store)
    message = await store.analyze_message(message_id)
    if message is None:
        raise HTTPException(status_code=404, detail="Message not found")
    return message.to_dict()


@router.get("/flags")
async def read_flags(
    message_type: str = "all",
    category: str = "all",
    severity: str = "all",
    store: ConversationStore = Depends(get_conversation_store),
):
    flags = store.filtered_flags(message_type, category, severity)
    return {
        "flags": [
            dict(flag.to_dict(), messageIndex=store.message_index(flag.message_id))
            for flag in flags
        ],
        "count": len(flags),
    }


@router.get("/flags/options")
async def read_flag_options(store: ConversationStore = Depends(get_conversation_store)):
    return store.filter_options()


@router.get("/visualization")
async def read_visualization(store: ConversationStore = Depends(get_conversation_store)):
    return {
        "series": [series.to_dict() for series in store.visualization_series()],
        "messageCount": len(store.filtered_messages()),
    }


@router.put("/cutoff")
async def update_cutoff(payload: CutoffRequest, store: ConversationStore = Depends(get_conversation_store)):
    cutoff = store.set_cutoff(payload.cutoff)
    return {"cutoff": cutoff, "filteredMessageCount": len(store.filtered_messages())}


@router.post("/analyze-all")
async def analyze_all(
    delay_seconds: Optional[float] = None,
    store: ConversationStore = Depends(get_conversation_store),
):
    _require_connected(store)
    counts = await store.analyze_all(delay_seconds=delay_seconds)
    return {"success": True, **counts}


@router.post("/summary")
async def summarize_session(
    payload: SessionSummaryRequest,
    store: ConversationStore = Depends(get_conversation_store),
    gateway: ModelGateway = Depends(get_gateway),
    prompt_manager: PromptManager = Depends(get_prompt_manager),
):
    _require_connected(store)
    result = await store.summarize(Summarizer(gateway, prompt_manager), payload.context, payload.format)
    return result.to_dict()


@router.get("/export")
async def export_session(
    format: str = "csv",
    include_summary: bool = False,
    context: Optional[str] = None,
    store: ConversationStore = Depends(get_conversation_store),
    gateway: ModelGateway = Depends(get_gateway),
    prompt_manager: PromptManager = Depends(get_prompt_manager),
):
    format = format.strip().lower()
    if format not in EXPORT_FORMATS:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported format: {format}. Use one of: {', '.join(EXPORT_FORMATS)}",
        )

    summary = None
    if include_summary and format != "csv" and store.settings is not None:
        result = await store.summarize(Summarizer(gateway, prompt_manager), context)
        summary = result.summary

    try:
        content = export_conversation(store, format, summary=summary, context=context)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    filename = f"conversation-analysis.{EXPORT_EXTENSIONS[format]}"
    return Response(
        content=content,
        media_type=EXPORT_MEDIA_TYPES[format],
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.delete("")
async def clear_session(store: ConversationStore = Depends(get_conversation_store)):
    store.clear()
    return {"cleared": True}
