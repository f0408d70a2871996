"""
Flagging Analyzer

Asks the model whether the newest message in a context window contains
concerning content and turns whatever comes back into a well-formed
FlaggingResult.

Parsing falls through strict JSON, repaired JSON, and finally a keyword
heuristic over the raw text. Provider failures never escape: they become an
all-"none" result with status=error and a reasoning that names the cause.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from dialog_ethics_backend.models import AnalysisStatus, FlagFinding, FlaggingResult, ModelSettings, Severity
from dialog_ethics_backend.services.demo_responses import demo_flagging_payload
from dialog_ethics_backend.services.llm_client import (
    GatewayError,
    InvalidCredentialError,
    ModelGateway,
    RateLimitError,
    _preview_text,
)
from dialog_ethics_backend.services.prompt_manager import PromptManager
from dialog_ethics_backend.services.registries import NONE_CATEGORY, OTHER_CATEGORY, CategoryRegistry
from dialog_ethics_backend.services.response_parsing import parse_json_object

logger = logging.getLogger(__name__)

CONTEXT_LINES = 15
EXCERPT_CHARS = 100
HEURISTIC_KEYWORDS = ("concerning", "flag", "harmful", "inappropriate")
DEFAULT_REASONING = "Analysis completed successfully."

_FLAG_SEVERITIES = {Severity.LOW.value, Severity.MEDIUM.value, Severity.HIGH.value}
_BREAKDOWN_SEVERITIES = _FLAG_SEVERITIES | {Severity.NONE.value}
_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


def normalize_flag_severity(raw: Any) -> Severity:
    """Flags always carry a real severity; anything unrecognised becomes low."""
    value = str(raw or "").strip().lower()
    return Severity(value) if value in _FLAG_SEVERITIES else Severity.LOW


def normalize_breakdown_severity(raw: Any) -> Severity:
    value = str(raw or "").strip().lower()
    return Severity(value) if value in _BREAKDOWN_SEVERITIES else Severity.NONE


def normalize_breakdown(raw: Any, registry: CategoryRegistry) -> Dict[str, Severity]:
    """Every registry category exactly once; unknown keys are dropped."""
    breakdown = registry.empty_breakdown()
    if not isinstance(raw, dict):
        return breakdown
    for key, value in raw.items():
        category_id = str(key).strip().lower()
        if registry.contains(category_id):
            breakdown[category_id] = normalize_breakdown_severity(value)
    return breakdown


def _excerpt(text: str, limit: int = EXCERPT_CHARS) -> str:
    text = str(text or "")
    return text[:limit] + ("..." if len(text) > limit else "")


def reconcile_findings(
    findings: List[FlagFinding],
    breakdown: Dict[str, Severity],
    content: str,
    registry: CategoryRegistry,
) -> List[FlagFinding]:
    """
    Keep the first finding per category, then add one synthesized finding for
    every breakdown category above "none" that the model did not list.
    """
    reconciled: List[FlagFinding] = []
    seen = set()
    for finding in findings:
        if finding.category in seen:
            continue
        seen.add(finding.category)
        reconciled.append(finding)

    for category_id in registry.ids():
        severity = breakdown.get(category_id, Severity.NONE)
        if severity == Severity.NONE or category_id in seen:
            continue
        seen.add(category_id)
        reconciled.append(
            FlagFinding(
                category=category_id,
                severity=severity,
                reason=f"Content flagged for {category_id.replace('-', ' ')} with {severity.value} severity",
                excerpt=_excerpt(content),
            )
        )
    return reconciled


def simplify_reasoning(
    full_reasoning: str,
    breakdown: Dict[str, Severity],
    registry: CategoryRegistry,
) -> str:
    """
    Short human-facing verdict: the first sentence of the model's explanation,
    the triggered categories, and a review recommendation when any is high.
    """
    text = " ".join(str(full_reasoning or "").split())
    first_sentence = _SENTENCE_END.split(text, maxsplit=1)[0] if text else DEFAULT_REASONING

    parts = [first_sentence]
    triggered = [
        f"{registry.display_name(category_id)} ({severity.value})"
        for category_id, severity in breakdown.items()
        if severity != Severity.NONE
    ]
    if triggered:
        parts.append(f"Triggered categories: {', '.join(triggered)}.")
    if any(severity == Severity.HIGH for severity in breakdown.values()):
        parts.append("Human review is recommended.")
    return " ".join(parts)


def _coerce_should_flag(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        return raw.strip().lower() in {"true", "yes", "1"}
    return False


class FlaggingAnalyzer:
    """Flags concerning content in the newest message of a context window."""

    def __init__(self, gateway: ModelGateway, registry: CategoryRegistry, prompt_manager: PromptManager):
        self.gateway = gateway
        self.registry = registry
        self.prompt_manager = prompt_manager

    def response_schema(self) -> Dict[str, Any]:
        category_ids = self.registry.ids()
        severity_enum = [s.value for s in Severity]
        return {
            "type": "object",
            "properties": {
                "shouldFlag": {"type": "boolean"},
                "reasoning": {"type": "string"},
                "severityBreakdown": {
                    "type": "object",
                    "properties": {cid: {"type": "string", "enum": severity_enum} for cid in category_ids},
                    "required": category_ids,
                    "additionalProperties": False,
                },
                "flags": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "type": {"type": "string", "enum": category_ids + [NONE_CATEGORY]},
                            "severity": {"type": "string", "enum": severity_enum[1:]},
                            "reason": {"type": "string"},
                            "flaggedText": {"type": "string"},
                        },
                        "required": ["type", "severity", "reason", "flaggedText"],
                        "additionalProperties": False,
                    },
                },
            },
            "required": ["shouldFlag", "reasoning", "severityBreakdown", "flags"],
            "additionalProperties": False,
        }

    def _json_shape(self) -> str:
        breakdown = {cid: "none|low|medium|high" for cid in self.registry.ids()}
        return json.dumps(
            {
                "shouldFlag": "boolean",
                "reasoning": "string explaining your analysis",
                "severityBreakdown": breakdown,
                "flags": [
                    {
                        "type": "|".join(self.registry.ids()),
                        "severity": "low|medium|high",
                        "reason": "explanation of the concern",
                        "flaggedText": "specific text that triggered the flag",
                    }
                ],
            },
            indent=2,
        )

    def build_messages(
        self,
        context: List[Dict[str, str]],
        additional_context: Optional[str] = None,
    ) -> List[Dict[str, str]]:
        current = context[-1]
        category_list = "\n".join(
            f"{i}. {category.name.upper()} ({category.id}): {category.description}"
            for i, category in enumerate(self.registry, start=1)
        )
        conversation_context = "\n".join(
            f"{m.get('role')}: {m.get('content')}" for m in context[-CONTEXT_LINES:]
        )
        additional_context_section = ""
        if additional_context and additional_context.strip():
            additional_context_section = (
                "\nADDITIONAL CONTEXT PROVIDED BY USER:\n"
                f"{additional_context.strip()}\n\n"
                "Consider this additional context when analyzing the conversation.\n"
            )
        return self.prompt_manager.render_messages(
            "flagging",
            {
                "category_list": category_list,
                "conversation_context": conversation_context,
                "current_role": current.get("role", "user"),
                "current_content": current.get("content", ""),
                "additional_context_section": additional_context_section,
                "json_shape": self._json_shape(),
            },
        )

    def _error_result(self, reasoning: str, error_code: Optional[int] = None) -> FlaggingResult:
        return FlaggingResult(
            should_flag=False,
            reasoning=reasoning,
            severity_breakdown=self.registry.empty_breakdown(),
            findings=[],
            full_reasoning=reasoning,
            status=AnalysisStatus.ERROR,
            error_code=error_code,
        )

    def _heuristic_result(self, raw_text: str) -> FlaggingResult:
        lowered = raw_text.lower()
        breakdown = self.registry.empty_breakdown()
        if not any(keyword in lowered for keyword in HEURISTIC_KEYWORDS):
            return FlaggingResult(
                should_flag=False,
                reasoning="Analysis completed successfully. No concerning content detected.",
                severity_breakdown=breakdown,
                full_reasoning=raw_text,
                status=AnalysisStatus.DEGRADED,
            )

        breakdown[OTHER_CATEGORY] = Severity.MEDIUM
        finding = FlagFinding(
            category=OTHER_CATEGORY,
            severity=Severity.MEDIUM,
            reason="Content analysis detected potential concerns",
            excerpt=raw_text[:EXCERPT_CHARS] + "...",
        )
        return FlaggingResult(
            should_flag=True,
            reasoning=f"Analysis detected potential concerns in the content. Raw analysis: {raw_text[:200]}...",
            severity_breakdown=breakdown,
            findings=[finding],
            full_reasoning=raw_text,
            status=AnalysisStatus.DEGRADED,
        )

    def interpret(self, payload: Dict[str, Any], content: str) -> FlaggingResult:
        """Normalize a parsed model payload into a FlaggingResult."""
        breakdown = normalize_breakdown(payload.get("severityBreakdown"), self.registry)

        findings: List[FlagFinding] = []
        raw_flags = payload.get("flags")
        for raw in raw_flags if isinstance(raw_flags, list) else []:
            if not isinstance(raw, dict):
                continue
            category = self.registry.normalize_category(raw.get("type"))
            if category == NONE_CATEGORY:
                continue
            findings.append(
                FlagFinding(
                    category=category,
                    severity=normalize_flag_severity(raw.get("severity")),
                    reason=str(raw.get("reason") or "").strip() or "No reason provided",
                    excerpt=str(raw.get("flaggedText") or "").strip() or _excerpt(content),
                )
            )

        findings = reconcile_findings(findings, breakdown, content, self.registry)
        full_reasoning = str(payload.get("reasoning") or "").strip() or DEFAULT_REASONING
        return FlaggingResult(
            should_flag=_coerce_should_flag(payload.get("shouldFlag")),
            reasoning=simplify_reasoning(full_reasoning, breakdown, self.registry),
            severity_breakdown=breakdown,
            findings=findings,
            full_reasoning=full_reasoning,
            status=AnalysisStatus.OK,
        )

    async def analyze(
        self,
        context: List[Dict[str, str]],
        settings: ModelSettings,
        additional_context: Optional[str] = None,
    ) -> FlaggingResult:
        if not context:
            return self._error_result("No message to analyze.")

        content = str(context[-1].get("content") or "")
        try:
            metadata = self.prompt_manager.get_prompt_metadata("flagging")
            completion = await self.gateway.chat_completion(
                settings,
                self.build_messages(context, additional_context),
                temperature=metadata["temperature"],
                max_tokens=metadata["max_tokens"],
                json_schema={"name": "flagging_analysis", "schema": self.response_schema()},
                demo_reply=lambda: demo_flagging_payload(content, self.registry),
            )
        except InvalidCredentialError:
            logger.warning("Flagging skipped: provider rejected the API key")
            return self._error_result("Flagging could not run: invalid API key.", 401)
        except RateLimitError:
            logger.warning("Flagging skipped: provider rate limit exceeded")
            return self._error_result("Flagging could not run: rate limit exceeded.", 429)
        except GatewayError as exc:
            logger.warning("Flagging failed: %s", exc.message)
            return self._error_result(f"Flagging could not run: {exc.message}", exc.status_code)
        except Exception as exc:
            logger.exception("Unexpected flagging failure")
            return self._error_result(f"Flagging could not run: {exc}")

        outcome = parse_json_object(completion.content)
        if outcome.ok:
            logger.debug("Flagging response parsed with %s strategy", outcome.strategy)
            return self.interpret(outcome.value, content)

        logger.warning(
            "Flagging response unparseable (%s); using keyword heuristic. preview=%s",
            outcome.error,
            _preview_text(completion.content),
        )
        return self._heuristic_result(str(completion.content or ""))
