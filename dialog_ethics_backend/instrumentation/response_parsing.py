"""
Helpers for extracting usage metrics from chat completion responses.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple


@dataclass(frozen=True)
class CompletionUsage:
    """Normalized usage fields extracted from a provider response."""

    model: str
    prompt_tokens: int
    completion_tokens: int
    finish_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _extract_usage_tokens(usage: Any) -> Tuple[int, int]:
    if not isinstance(usage, Mapping):
        return 0, 0
    prompt_tokens = usage.get("prompt_tokens", usage.get("input_tokens", 0))
    completion_tokens = usage.get("completion_tokens", usage.get("output_tokens", 0))
    return _to_int(prompt_tokens), _to_int(completion_tokens)


def extract_message_content(response: Mapping[str, Any]) -> str:
    """Return choices[0].message.content, or an empty string when absent."""
    choices = response.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0] if isinstance(choices[0], Mapping) else {}
    message = first.get("message") if isinstance(first.get("message"), Mapping) else {}
    return str(message.get("content") or "")


def parse_completion_usage(response: Any) -> CompletionUsage:
    if not isinstance(response, Mapping):
        return CompletionUsage(model="unknown", prompt_tokens=0, completion_tokens=0)

    model = str(response.get("model") or "unknown")
    prompt_tokens, completion_tokens = _extract_usage_tokens(response.get("usage"))

    finish_reason = None
    choices = response.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], Mapping):
        finish_reason = choices[0].get("finish_reason")

    metadata: Dict[str, Any] = {}
    if response.get("id"):
        metadata["response_id"] = response["id"]

    return CompletionUsage(
        model=model,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        finish_reason=finish_reason,
        metadata=metadata,
    )
