"""Flagging, principle scoring and summary API endpoints (stateless)."""
import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException

from dialog_ethics_backend.llm_api import get_gateway, require_settings
from dialog_ethics_backend.models import Flag, Message, utcnow
from dialog_ethics_backend.schemas import FlagRequest, PrincipleScoringRequest, SummaryRequest
from dialog_ethics_backend.services.flagging_analyzer import FlaggingAnalyzer, normalize_flag_severity
from dialog_ethics_backend.services.llm_client import ModelGateway
from dialog_ethics_backend.services.principle_scorer import SCORE_MAX, SCORE_MIN, PrincipleScorer
from dialog_ethics_backend.services.prompt_manager import PromptManager, get_prompt_manager
from dialog_ethics_backend.services.registries import (
    SCORING_RUBRIC,
    available_category_sets,
    get_category_registry,
    get_principle_registry,
)
from dialog_ethics_backend.services.summarizer import Summarizer

logger = logging.getLogger(__name__)
router = APIRouter(tags=["analysis"])


def _parse_timestamp(value):
    if not value:
        return utcnow()
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return utcnow()


# ============================================================================
# Flagging
# ============================================================================

@router.post("/api/flag")
async def flag_messages(
    payload: FlagRequest,
    gateway: ModelGateway = Depends(get_gateway),
    prompt_manager: PromptManager = Depends(get_prompt_manager),
):
    """
    Flag concerning content in the last message of `messages`.

    Provider failures are reported in the body (status="error"), not as HTTP errors.
    """
    settings = require_settings(payload)
    if not payload.messages:
        raise HTTPException(status_code=400, detail="Messages array is required")

    registry = get_category_registry(payload.category_set)
    analyzer = FlaggingAnalyzer(gateway, registry, prompt_manager)
    result = await analyzer.analyze(
        [message.to_chat_message() for message in payload.messages],
        settings,
        payload.additional_context,
    )
    logger.info(
        "Flagging finished: should_flag=%s flags=%s status=%s",
        result.should_flag,
        len(result.findings),
        result.status.value,
    )
    return result.to_dict()


@router.get("/api/flag/categories")
async def list_flag_categories():
    default = get_category_registry()
    return {
        "default": default.name,
        "sets": {name: get_category_registry(name).to_dict() for name in available_category_sets()},
    }


# ============================================================================
# Principle scoring
# ============================================================================

@router.post("/api/principle_scoring")
async def score_principles(
    payload: PrincipleScoringRequest,
    gateway: ModelGateway = Depends(get_gateway),
    prompt_manager: PromptManager = Depends(get_prompt_manager),
):
    settings = require_settings(payload)
    if not payload.messages:
        raise HTTPException(status_code=400, detail="Messages array is required")

    registry = get_principle_registry()
    scorer = PrincipleScorer(gateway, registry, prompt_manager)
    result = await scorer.score(
        [message.to_chat_message() for message in payload.messages],
        settings,
        payload.additional_context,
    )
    body = result.to_dict()
    body.update(
        {
            "principles": registry.to_list(),
            "messageRole": payload.messages[-1].to_role().value,
            "evaluatedAt": utcnow().isoformat(),
        }
    )
    return body


@router.get("/api/principle_scoring")
async def list_principles():
    return {
        "principles": get_principle_registry().to_list(),
        "scale": {"min": SCORE_MIN, "max": SCORE_MAX},
        "rubric": SCORING_RUBRIC,
    }


# ============================================================================
# Summary
# ============================================================================

@router.post("/api/summary")
async def summarize_conversation(
    payload: SummaryRequest,
    gateway: ModelGateway = Depends(get_gateway),
    prompt_manager: PromptManager = Depends(get_prompt_manager),
):
    settings = require_settings(payload)
    if not payload.conversation_history:
        raise HTTPException(status_code=400, detail="Conversation history is required")

    messages = [
        Message(role=item.to_role(), content=item.content, created_at=_parse_timestamp(item.timestamp))
        for item in payload.conversation_history
    ]
    flags = [
        Flag(
            message_id="",
            category=item.type,
            severity=normalize_flag_severity(item.severity),
            reason=item.reason,
            excerpt=item.flagged_text,
        )
        for item in payload.flagged_content
    ]

    result = await Summarizer(gateway, prompt_manager).summarize(
        messages,
        flags,
        payload.context,
        settings,
        payload.format,
    )
    return result.to_dict()
