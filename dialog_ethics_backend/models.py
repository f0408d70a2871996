"""
Domain models for the conversation analysis pipeline.

Everything here is in-memory state for a single dashboard session:
- Message: one conversational turn plus the analyses attached to it
- Flag / FlaggingAnalysis: safety flagging results
- PrincipleScore / PrincipleScoring: signed -5..+5 principle evaluations
- VisualizationSeries: derived chart data, never stored
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Severity(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


SEVERITY_ORDER = (Severity.HIGH, Severity.MEDIUM, Severity.LOW)


class AnalysisStatus(str, Enum):
    """Whether an analysis result is genuine, heuristic, or a failure placeholder."""
    OK = "ok"
    DEGRADED = "degraded"
    ERROR = "error"


@dataclass
class ModelSettings:
    """Credentials and model selection forwarded to the model gateway."""
    api_key: str
    model: str
    base_url: Optional[str] = None
    demo_keys: tuple = ("test", "demo")

    @property
    def is_demo(self) -> bool:
        return (self.api_key or "").strip().lower() in self.demo_keys


@dataclass
class Flag:
    """One discrete concern raised about one message. Never mutated."""
    message_id: str
    category: str
    severity: Severity
    reason: str
    excerpt: str
    id: str = field(default_factory=lambda: new_id("flag"))
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "messageId": self.message_id,
            "type": self.category,
            "severity": self.severity.value,
            "reason": self.reason,
            "flaggedText": self.excerpt,
            "timestamp": _iso(self.created_at),
        }


@dataclass
class FlagFinding:
    """A flag as reported by the analyzer, before it is bound to a message."""
    category: str
    severity: Severity
    reason: str
    excerpt: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.category,
            "severity": self.severity.value,
            "reason": self.reason,
            "flaggedText": self.excerpt,
        }


@dataclass
class FlaggingResult:
    """Output contract of the flagging analyzer."""
    should_flag: bool
    reasoning: str
    severity_breakdown: Dict[str, Severity]
    findings: List[FlagFinding] = field(default_factory=list)
    full_reasoning: Optional[str] = None
    status: AnalysisStatus = AnalysisStatus.OK
    # HTTP status of the provider failure, when there was one (429 drives batch backoff).
    error_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shouldFlag": self.should_flag,
            "reasoning": self.reasoning,
            "fullReasoning": self.full_reasoning,
            "severityBreakdown": {k: v.value for k, v in self.severity_breakdown.items()},
            "flags": [finding.to_dict() for finding in self.findings],
            "status": self.status.value,
        }


@dataclass
class FlaggingAnalysis:
    """The current flagging analysis of one message. Replaced wholesale on re-analysis."""
    message_id: str
    should_flag: bool
    reasoning: str
    flags: List[Flag] = field(default_factory=list)
    full_reasoning: Optional[str] = None
    status: AnalysisStatus = AnalysisStatus.OK
    id: str = field(default_factory=lambda: new_id("analysis"))
    analyzed_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "messageId": self.message_id,
            "shouldFlag": self.should_flag,
            "flags": [flag.to_dict() for flag in self.flags],
            "reasoning": self.reasoning,
            "fullReasoning": self.full_reasoning,
            "status": self.status.value,
            "analysisTimestamp": _iso(self.analyzed_at),
        }


@dataclass
class PrincipleScore:
    message_id: str
    principle_id: str
    score: int
    reasoning: str
    id: str = field(default_factory=lambda: new_id("score"))
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "messageId": self.message_id,
            "principleId": self.principle_id,
            "score": self.score,
            "reasoning": self.reasoning,
            "timestamp": _iso(self.timestamp),
        }


@dataclass
class PrincipleScoreResult:
    """One principle's evaluation as returned by the scorer."""
    principle_id: str
    principle_name: str
    score: int
    reasoning: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "principleId": self.principle_id,
            "principleName": self.principle_name,
            "score": self.score,
            "reasoning": self.reasoning,
        }


@dataclass
class PrincipleScoringResult:
    success: bool
    scores: List[PrincipleScoreResult] = field(default_factory=list)
    status: AnalysisStatus = AnalysisStatus.OK
    # 429 when any principle call was rate limited, else the first provider failure status.
    error_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "scores": [score.to_dict() for score in self.scores],
            "status": self.status.value,
        }


@dataclass
class PrincipleScoring:
    message_id: str
    scores: List[PrincipleScore] = field(default_factory=list)
    status: AnalysisStatus = AnalysisStatus.OK
    id: str = field(default_factory=lambda: new_id("scoring"))
    analyzed_at: datetime = field(default_factory=utcnow)

    def score_for(self, principle_id: str) -> Optional[PrincipleScore]:
        return next((s for s in self.scores if s.principle_id == principle_id), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "messageId": self.message_id,
            "scores": [score.to_dict() for score in self.scores],
            "status": self.status.value,
            "analysisTimestamp": _iso(self.analyzed_at),
        }


@dataclass
class Message:
    """
    One conversational turn.

    `content` is never modified after creation. The position of a message in
    the store's list is fixed once inserted; its message index is derived from
    that position at query time and is not stored here.
    """
    role: Role
    content: str
    id: str = field(default_factory=lambda: new_id("msg"))
    created_at: datetime = field(default_factory=utcnow)
    flags: List[Flag] = field(default_factory=list)
    flagging_analysis: Optional[FlaggingAnalysis] = None
    severity_breakdown: Dict[str, Severity] = field(default_factory=dict)
    principle_scoring: Optional[PrincipleScoring] = None

    def to_chat_message(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.role.value,
            "content": self.content,
            "timestamp": _iso(self.created_at),
            "flags": [flag.to_dict() for flag in self.flags],
            "flaggingAnalysis": self.flagging_analysis.to_dict() if self.flagging_analysis else None,
            "severityBreakdown": {k: v.value for k, v in self.severity_breakdown.items()},
            "principleScoring": self.principle_scoring.to_dict() if self.principle_scoring else None,
        }


@dataclass
class ScorePoint:
    message_index: int
    score: int
    reasoning: str
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "messageIndex": self.message_index,
            "score": self.score,
            "reasoning": self.reasoning,
            "timestamp": _iso(self.timestamp),
        }


@dataclass
class VisualizationSeries:
    """Chart data for one principle, split by speaker role."""
    principle_id: str
    principle_name: str
    user_scores: List[ScorePoint] = field(default_factory=list)
    assistant_scores: List[ScorePoint] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "principleId": self.principle_id,
            "principleName": self.principle_name,
            "userScores": [point.to_dict() for point in self.user_scores],
            "aiScores": [point.to_dict() for point in self.assistant_scores],
        }
