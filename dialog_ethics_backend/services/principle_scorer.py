"""
Principle Scorer

Scores the newest message of a context window against every registered
principle on a signed -5..+5 scale. Each principle is a separate completion and
owns its own fallback, so one bad response never sinks the others.
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from dialog_ethics_backend.models import AnalysisStatus, ModelSettings, PrincipleScoreResult, PrincipleScoringResult
from dialog_ethics_backend.services.demo_responses import demo_principle_payload
from dialog_ethics_backend.services.llm_client import GatewayError, ModelGateway
from dialog_ethics_backend.services.prompt_manager import PromptManager
from dialog_ethics_backend.services.registries import Principle, PrincipleRegistry
from dialog_ethics_backend.services.response_parsing import parse_json_object

logger = logging.getLogger(__name__)

SCORE_MIN = -5
SCORE_MAX = 5
_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")

# Per-principle outcome tags used to derive the overall status.
_PARSED = "parsed"
_UNPARSED = "unparsed"
_FAILED = "failed"


def clamp_score(value: int) -> int:
    return max(SCORE_MIN, min(SCORE_MAX, int(value)))


def coerce_score(raw: Any) -> int:
    """
    Leading signed integer of `raw`, clamped to the scale; 0 when there is none.

    "3.7" -> 3, "7/10" -> 5 (7 clamped), -9 -> -5.
    """
    if isinstance(raw, bool):
        return 0
    if isinstance(raw, int):
        return clamp_score(raw)
    if isinstance(raw, float):
        return clamp_score(int(raw))
    match = _LEADING_INT.match(str(raw or ""))
    if not match:
        return 0
    return clamp_score(int(match.group(1)))


class PrincipleScorer:
    def __init__(self, gateway: ModelGateway, registry: PrincipleRegistry, prompt_manager: PromptManager):
        self.gateway = gateway
        self.registry = registry
        self.prompt_manager = prompt_manager

    @staticmethod
    def response_schema() -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "score": {"type": "integer", "minimum": SCORE_MIN, "maximum": SCORE_MAX},
                "reasoning": {"type": "string"},
            },
            "required": ["score", "reasoning"],
            "additionalProperties": False,
        }

    def build_messages(
        self,
        principle: Principle,
        context: List[Dict[str, str]],
        additional_context: Optional[str] = None,
    ) -> List[Dict[str, str]]:
        current = context[-1]
        additional_context_section = ""
        if additional_context and additional_context.strip():
            additional_context_section = (
                "\nADDITIONAL CONTEXT PROVIDED BY USER:\n"
                f"{additional_context.strip()}\n\n"
                "Consider this additional context when scoring the message.\n"
            )
        return self.prompt_manager.render_messages(
            "principle_scoring",
            {
                "principle_name": principle.name,
                "principle_description": principle.description,
                "rubric": principle.rubric,
                "conversation_context": "\n".join(f"{m.get('role')}: {m.get('content')}" for m in context),
                "current_role": current.get("role", "user"),
                "current_content": current.get("content", ""),
                "additional_context_section": additional_context_section,
            },
        )

    async def score_principle(
        self,
        principle: Principle,
        context: List[Dict[str, str]],
        settings: ModelSettings,
        additional_context: Optional[str] = None,
    ) -> Tuple[PrincipleScoreResult, str, Optional[int]]:
        content = str(context[-1].get("content") or "")
        try:
            metadata = self.prompt_manager.get_prompt_metadata("principle_scoring")
            completion = await self.gateway.chat_completion(
                settings,
                self.build_messages(principle, context, additional_context),
                temperature=metadata["temperature"],
                max_tokens=metadata["max_tokens"],
                json_schema={"name": "principle_evaluation", "schema": self.response_schema()},
                demo_reply=lambda: demo_principle_payload(content, principle),
            )
        except GatewayError as exc:
            logger.warning("Scoring %s failed: %s", principle.id, exc.message)
            return self._placeholder(principle, f"Error evaluating principle: {exc.message}"), _FAILED, exc.status_code
        except Exception as exc:
            logger.exception("Unexpected failure scoring %s", principle.id)
            return self._placeholder(principle, f"Error evaluating principle: {exc}"), _FAILED, None

        outcome = parse_json_object(completion.content)
        if not outcome.ok or "score" not in outcome.value:
            preview = str(completion.content or "")[:100]
            logger.warning("Scoring %s returned no usable score: %s", principle.id, outcome.error or "missing score")
            return self._placeholder(principle, f"Analysis completed with parsing error: {preview}..."), _UNPARSED, None

        payload = outcome.value
        reasoning = str(payload.get("reasoning") or "").strip() or "No reasoning provided"
        return (
            PrincipleScoreResult(
                principle_id=principle.id,
                principle_name=principle.name,
                score=coerce_score(payload.get("score")),
                reasoning=reasoning,
            ),
            _PARSED,
            None,
        )

    @staticmethod
    def _placeholder(principle: Principle, reasoning: str) -> PrincipleScoreResult:
        return PrincipleScoreResult(
            principle_id=principle.id,
            principle_name=principle.name,
            score=0,
            reasoning=reasoning,
        )

    async def score(
        self,
        context: List[Dict[str, str]],
        settings: ModelSettings,
        additional_context: Optional[str] = None,
    ) -> PrincipleScoringResult:
        principles = list(self.registry)
        if not context:
            return PrincipleScoringResult(
                success=False,
                scores=[self._placeholder(p, "Error evaluating principle: no message to analyze") for p in principles],
                status=AnalysisStatus.ERROR,
            )

        outcomes = await asyncio.gather(
            *(self.score_principle(p, context, settings, additional_context) for p in principles)
        )
        scores = [result for result, _, _ in outcomes]
        tags = [tag for _, tag, _ in outcomes]
        error_codes = [code for _, _, code in outcomes if code is not None]

        if all(tag == _PARSED for tag in tags):
            status = AnalysisStatus.OK
        elif all(tag == _FAILED for tag in tags):
            status = AnalysisStatus.ERROR
        else:
            status = AnalysisStatus.DEGRADED

        return PrincipleScoringResult(
            success=status != AnalysisStatus.ERROR,
            scores=scores,
            status=status,
            error_code=429 if 429 in error_codes else next(iter(error_codes), None),
        )
