"""
Conversation Store & Aggregator

Owns the ordered message list of one dashboard session together with the
global flag and principle-score lists, decides when the analyzers run and on
which context window, and derives every cutoff-filtered view (flags, summary
input, export rows, visualization series) from one prefix rule.

Analyses run as fire-and-forget asyncio tasks. They may finish in any order;
each result is merged by message id, and a result whose message is gone is
dropped without error.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from dialog_ethics_backend.config import (
    ANALYSIS_BATCH_DELAY_SECONDS,
    CONTEXT_WINDOW_SIZE,
    DEDUPE_GLOBAL_FLAGS,
    RATE_LIMIT_BACKOFF_SECONDS,
)
from dialog_ethics_backend.models import (
    SEVERITY_ORDER,
    Flag,
    FlaggingAnalysis,
    FlaggingResult,
    Message,
    ModelSettings,
    PrincipleScore,
    PrincipleScoring,
    PrincipleScoringResult,
    Role,
    ScorePoint,
    Severity,
    VisualizationSeries,
    utcnow,
)
from dialog_ethics_backend.services.context_window import build_context_window, to_chat_messages
from dialog_ethics_backend.services.flagging_analyzer import FlaggingAnalyzer, reconcile_findings
from dialog_ethics_backend.services.principle_scorer import PrincipleScorer, clamp_score
from dialog_ethics_backend.services.registries import CategoryRegistry, PrincipleRegistry
from dialog_ethics_backend.services.summarizer import Summarizer, SummaryResult

logger = logging.getLogger(__name__)

ALL = "all"
RATE_LIMITED = 429


@dataclass
class StoreConfig:
    flagging_enabled: bool = True
    scoring_enabled: bool = True
    context_window_size: int = CONTEXT_WINDOW_SIZE
    batch_delay_seconds: float = ANALYSIS_BATCH_DELAY_SECONDS
    rate_limit_backoff_seconds: float = RATE_LIMIT_BACKOFF_SECONDS
    # Off: a re-analysis adds its flags next to the earlier ones.
    dedupe_global_flags: bool = DEDUPE_GLOBAL_FLAGS
    additional_context: Optional[str] = None


def _normalize_role_filter(value: Optional[str]) -> str:
    normalized = str(value or ALL).strip().lower()
    if normalized == "ai":
        return Role.ASSISTANT.value
    return normalized


class ConversationStore:
    def __init__(
        self,
        category_registry: CategoryRegistry,
        principle_registry: PrincipleRegistry,
        flagging_analyzer: Optional[FlaggingAnalyzer] = None,
        principle_scorer: Optional[PrincipleScorer] = None,
        settings: Optional[ModelSettings] = None,
        config: Optional[StoreConfig] = None,
    ):
        self.category_registry = category_registry
        self.principle_registry = principle_registry
        self.flagging_analyzer = flagging_analyzer
        self.principle_scorer = principle_scorer
        self.settings = settings
        self.config = config or StoreConfig()

        self._messages: List[Message] = []
        self._flags: List[Flag] = []
        self._scores: List[PrincipleScore] = []
        self._cutoff = 0
        self._tasks: Set[asyncio.Task] = set()
        # Bumped whenever the conversation is replaced or cleared.
        self._generation = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    @property
    def flags(self) -> List[Flag]:
        return list(self._flags)

    @property
    def scores(self) -> List[PrincipleScore]:
        return list(self._scores)

    @property
    def cutoff(self) -> int:
        return self._cutoff

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    @property
    def analysis_enabled(self) -> bool:
        return self.settings is not None and (
            (self.config.flagging_enabled and self.flagging_analyzer is not None)
            or (self.config.scoring_enabled and self.principle_scorer is not None)
        )

    def get_message(self, message_id: str) -> Optional[Message]:
        return next((m for m in self._messages if m.id == message_id), None)

    def configure(
        self,
        settings: Optional[ModelSettings] = None,
        category_registry: Optional[CategoryRegistry] = None,
        flagging_analyzer: Optional[FlaggingAnalyzer] = None,
        principle_scorer: Optional[PrincipleScorer] = None,
        config: Optional[StoreConfig] = None,
    ) -> None:
        if settings is not None:
            self.settings = settings
        if category_registry is not None:
            self.category_registry = category_registry
        if flagging_analyzer is not None:
            self.flagging_analyzer = flagging_analyzer
        if principle_scorer is not None:
            self.principle_scorer = principle_scorer
        if config is not None:
            self.config = config

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def append_message(self, role: Role, content: str) -> Message:
        """
        Append a new turn and schedule its analyses.

        created_at never goes backwards relative to the previous message. The
        cutoff resets to "all" so the new message is visible in every view.
        """
        created_at = utcnow()
        if self._messages and created_at < self._messages[-1].created_at:
            created_at = self._messages[-1].created_at

        message = Message(role=Role(role), content=content, created_at=created_at)
        self._messages.append(message)
        self._cutoff = 0
        self._schedule_analysis(message.id)
        return message

    def load_messages(self, messages: List[Message]) -> None:
        """Replace the conversation with imported messages. Nothing is analyzed automatically."""
        self._reset(messages)

    def clear(self) -> None:
        self._reset([])

    def _reset(self, messages: List[Message]) -> None:
        """
        Swap in a new conversation. Scheduled analyses are cancelled, and any
        analysis still awaiting its model call is discarded when it returns.
        """
        for task in list(self._tasks):
            task.cancel()
        self._generation += 1
        self._messages = list(messages)
        self._flags = []
        self._scores = []
        self._cutoff = 0

    def set_cutoff(self, cutoff: Any) -> int:
        try:
            value = int(cutoff)
        except (TypeError, ValueError):
            value = 0
        self._cutoff = max(0, min(value, len(self._messages)))
        return self._cutoff

    # ------------------------------------------------------------------
    # Merging analyzer results
    # ------------------------------------------------------------------

    def apply_flagging_result(self, message_id: str, result: FlaggingResult) -> Optional[FlaggingAnalysis]:
        """
        Attach a flagging result to its message.

        Replaces the message's previous analysis, flags and breakdown, and
        appends the new flags to the global list. Returns None when the message
        no longer exists.
        """
        message = self.get_message(message_id)
        if message is None:
            logger.info("Dropping flagging result for missing message %s", message_id)
            return None

        breakdown = {
            category_id: result.severity_breakdown.get(category_id, Severity.NONE)
            for category_id in self.category_registry.ids()
        }
        findings = reconcile_findings(result.findings, breakdown, message.content, self.category_registry)
        flags = [
            Flag(
                message_id=message.id,
                category=finding.category,
                severity=finding.severity,
                reason=finding.reason,
                excerpt=finding.excerpt,
            )
            for finding in findings
            if finding.severity != Severity.NONE
        ]

        analysis = FlaggingAnalysis(
            message_id=message.id,
            should_flag=result.should_flag,
            reasoning=result.reasoning,
            flags=flags,
            full_reasoning=result.full_reasoning,
            status=result.status,
        )
        message.flagging_analysis = analysis
        message.flags = flags
        message.severity_breakdown = breakdown

        if self.config.dedupe_global_flags:
            existing = {(f.message_id, f.category) for f in self._flags}
            self._flags.extend(f for f in flags if (f.message_id, f.category) not in existing)
        else:
            self._flags.extend(flags)
        return analysis

    def apply_principle_scoring_result(
        self,
        message_id: str,
        result: PrincipleScoringResult,
    ) -> Optional[PrincipleScoring]:
        message = self.get_message(message_id)
        if message is None:
            logger.info("Dropping scoring result for missing message %s", message_id)
            return None

        by_principle = {score.principle_id: score for score in result.scores}
        scores = []
        for principle in self.principle_registry:
            reported = by_principle.get(principle.id)
            scores.append(
                PrincipleScore(
                    message_id=message.id,
                    principle_id=principle.id,
                    score=clamp_score(reported.score) if reported else 0,
                    reasoning=reported.reasoning if reported else "No score returned for this principle",
                )
            )

        scoring = PrincipleScoring(message_id=message.id, scores=scores, status=result.status)
        message.principle_scoring = scoring
        self._scores.extend(scores)
        return scoring

    # ------------------------------------------------------------------
    # Running analyses
    # ------------------------------------------------------------------

    def _context_for(self, message: Message) -> List[Dict[str, str]]:
        window = build_context_window(self._messages, message, self.config.context_window_size)
        return to_chat_messages(window)

    def _is_stale(self, message: Message, generation: int) -> bool:
        if generation != self._generation or self.get_message(message.id) is not message:
            logger.info("Discarding analysis for %s: the conversation was replaced", message.id)
            return True
        return False

    async def run_flagging(self, message_id: str) -> Optional[FlaggingResult]:
        message = self.get_message(message_id)
        if message is None or self.flagging_analyzer is None or self.settings is None:
            return None
        generation = self._generation
        result = await self.flagging_analyzer.analyze(
            self._context_for(message), self.settings, self.config.additional_context
        )
        if self._is_stale(message, generation):
            return None
        self.apply_flagging_result(message_id, result)
        return result

    async def run_scoring(self, message_id: str) -> Optional[PrincipleScoringResult]:
        message = self.get_message(message_id)
        if message is None or self.principle_scorer is None or self.settings is None:
            return None
        generation = self._generation
        result = await self.principle_scorer.score(
            self._context_for(message), self.settings, self.config.additional_context
        )
        if self._is_stale(message, generation):
            return None
        self.apply_principle_scoring_result(message_id, result)
        return result

    def _schedule_analysis(self, message_id: str) -> None:
        if not self.analysis_enabled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; analysis for %s not scheduled", message_id)
            return

        jobs = []
        if self.config.flagging_enabled and self.flagging_analyzer is not None:
            jobs.append(self.run_flagging(message_id))
        if self.config.scoring_enabled and self.principle_scorer is not None:
            jobs.append(self.run_scoring(message_id))
        for job in jobs:
            task = loop.create_task(job)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background analysis failed: %s", exc, exc_info=exc)

    async def wait_for_pending(self) -> None:
        """Wait until every scheduled analysis has merged (or failed)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def analyze_message(self, message_id: str) -> Optional[Message]:
        """Re-run both analyzers on one message concurrently."""
        message = self.get_message(message_id)
        if message is None:
            return None
        jobs = []
        if self.config.flagging_enabled:
            jobs.append(self.run_flagging(message_id))
        if self.config.scoring_enabled:
            jobs.append(self.run_scoring(message_id))
        await asyncio.gather(*jobs)
        return self.get_message(message_id)

    async def analyze_all(self, delay_seconds: Optional[float] = None) -> Dict[str, int]:
        """
        Analyze every message that lacks a flagging analysis or a scoring,
        one analyzer call at a time, pausing between calls. A rate-limited
        call lengthens the pause. Stops early when the conversation is
        replaced or cleared.
        """
        delay = self.config.batch_delay_seconds if delay_seconds is None else max(0.0, delay_seconds)
        counts = {"flagged": 0, "scored": 0, "rateLimited": 0}
        generation = self._generation

        for message in list(self._messages):
            jobs = []
            if self.config.flagging_enabled and message.flagging_analysis is None:
                jobs.append(("flagged", self.run_flagging))
            if self.config.scoring_enabled and message.principle_scoring is None:
                jobs.append(("scored", self.run_scoring))

            for counter, job in jobs:
                if generation != self._generation:
                    logger.info("Conversation replaced; stopping batch analysis")
                    return counts
                result = await job(message.id)
                if result is None:
                    continue
                counts[counter] += 1
                pause = delay
                if getattr(result, "error_code", None) == RATE_LIMITED:
                    counts["rateLimited"] += 1
                    pause += self.config.rate_limit_backoff_seconds
                    logger.warning("Rate limited during batch analysis; backing off %.1fs", pause)
                if pause > 0:
                    await asyncio.sleep(pause)

        logger.info(
            "Batch analysis finished: flagged=%s scored=%s rate_limited=%s",
            counts["flagged"],
            counts["scored"],
            counts["rateLimited"],
        )
        return counts

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    def filtered_messages(self) -> List[Message]:
        if self._cutoff == 0 or self._cutoff >= len(self._messages):
            return list(self._messages)
        return self._messages[: self._cutoff]

    def filtered_flags(
        self,
        message_type: Optional[str] = ALL,
        category: Optional[str] = ALL,
        severity: Optional[str] = ALL,
    ) -> List[Flag]:
        roles = {m.id: m.role.value for m in self.filtered_messages()}
        role_filter = _normalize_role_filter(message_type)
        category_filter = str(category or ALL).strip().lower()
        severity_filter = str(severity or ALL).strip().lower()

        return [
            flag
            for flag in self._flags
            if flag.message_id in roles
            and (role_filter == ALL or roles[flag.message_id] == role_filter)
            and (category_filter == ALL or flag.category == category_filter)
            and (severity_filter == ALL or flag.severity.value == severity_filter)
        ]

    def filter_options(self) -> Dict[str, List[str]]:
        flags = self.filtered_flags()
        present = {flag.severity for flag in flags}
        return {
            "messageTypes": [ALL, Role.USER.value, Role.ASSISTANT.value],
            "categories": sorted({flag.category for flag in flags}),
            "severities": [s.value for s in SEVERITY_ORDER if s in present],
        }

    def message_index(self, message_id: str) -> Optional[int]:
        for index, message in enumerate(self.filtered_messages()):
            if message.id == message_id:
                return index
        return None

    def visualization_series(self) -> List[VisualizationSeries]:
        """Rebuilt from the cutoff-filtered messages on every call."""
        messages = self.filtered_messages()
        series = []
        for principle in self.principle_registry:
            entry = VisualizationSeries(principle_id=principle.id, principle_name=principle.name)
            for index, message in enumerate(messages):
                if message.principle_scoring is None:
                    continue
                score = message.principle_scoring.score_for(principle.id)
                if score is None:
                    continue
                point = ScorePoint(
                    message_index=index,
                    score=score.score,
                    reasoning=score.reasoning or "No reasoning provided",
                    timestamp=message.created_at,
                )
                if message.role == Role.USER:
                    entry.user_scores.append(point)
                else:
                    entry.assistant_scores.append(point)
            series.append(entry)
        return series

    async def summarize(
        self,
        summarizer: Summarizer,
        context: Optional[str] = None,
        output_format: str = "bullets",
    ) -> SummaryResult:
        if self.settings is None:
            raise ValueError("Model settings are required to summarize")
        return await summarizer.summarize(
            self.filtered_messages(),
            self.filtered_flags(),
            context if context is not None else self.config.additional_context,
            self.settings,
            output_format,
        )

    def snapshot(self) -> Dict[str, Any]:
        return {
            "messageCount": len(self._messages),
            "filteredMessageCount": len(self.filtered_messages()),
            "flagCount": len(self._flags),
            "filteredFlagCount": len(self.filtered_flags()),
            "scoreCount": len(self._scores),
            "cutoff": self._cutoff,
            "pendingAnalyses": self.pending_tasks,
            "analysisEnabled": self.analysis_enabled,
            "categorySet": self.category_registry.name,
            "model": self.settings.model if self.settings else None,
        }
