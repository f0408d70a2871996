"""
Parse strategies for untrusted model output.

Each strategy returns a ParseOutcome instead of raising, so callers can walk
the chain in order and fall through to their own guaranteed-valid fallback:

    strict   -> json.loads on the raw text
    repaired -> strip think blocks / code fences, cut the first {...},
                drop trailing commas, then scan for any decodable object
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.IGNORECASE | re.DOTALL)
_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```\s*$")
_TRAILING_COMMA_OBJECT = re.compile(r",\s*}")
_TRAILING_COMMA_ARRAY = re.compile(r",\s*]")


@dataclass(frozen=True)
class ParseOutcome:
    ok: bool
    strategy: str
    value: Any = None
    error: Optional[str] = None

    @classmethod
    def success(cls, strategy: str, value: Any) -> "ParseOutcome":
        return cls(ok=True, strategy=strategy, value=value)

    @classmethod
    def failure(cls, strategy: str, error: str) -> "ParseOutcome":
        return cls(ok=False, strategy=strategy, error=error)


def parse_strict(text: str) -> ParseOutcome:
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, TypeError) as exc:
        return ParseOutcome.failure("strict", str(exc))
    if not isinstance(value, dict):
        return ParseOutcome.failure("strict", "top-level JSON value is not an object")
    return ParseOutcome.success("strict", value)


def strip_code_fences(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = _FENCE_OPEN.sub("", stripped, count=1)
        stripped = _FENCE_CLOSE.sub("", stripped)
    elif "```" in stripped:
        for fence in ("```json", "```"):
            if fence in stripped:
                snippet = stripped.split(fence, 1)[1]
                if "```" in snippet:
                    return snippet.split("```", 1)[0].strip()
    return stripped


def extract_object_span(text: str) -> Optional[str]:
    """Return the substring from the first '{' to the last '}', if any."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start:end + 1]


def drop_trailing_commas(text: str) -> str:
    cleaned = _TRAILING_COMMA_OBJECT.sub("}", text)
    return _TRAILING_COMMA_ARRAY.sub("]", cleaned)


def parse_repaired(text: str) -> ParseOutcome:
    normalized = _THINK_BLOCK.sub("", str(text or "")).strip()
    if not normalized:
        return ParseOutcome.failure("repaired", "no content after stripping reasoning blocks")

    candidate = strip_code_fences(normalized)
    span = extract_object_span(candidate)
    if span is not None:
        candidate = span
    candidate = drop_trailing_commas(candidate)

    try:
        # Models emit raw newlines inside string values; keep them as written.
        value = json.loads(candidate, strict=False)
        if isinstance(value, dict):
            return ParseOutcome.success("repaired", value)
    except json.JSONDecodeError:
        pass

    # Decode the first valid object from any opening brace.
    decoder = json.JSONDecoder(strict=False)
    for index, char in enumerate(normalized):
        if char != "{":
            continue
        try:
            decoded, _ = decoder.raw_decode(normalized[index:])
        except json.JSONDecodeError:
            continue
        if isinstance(decoded, dict):
            return ParseOutcome.success("repaired", decoded)

    return ParseOutcome.failure("repaired", "no JSON object found")


DEFAULT_STRATEGIES: Sequence[Callable[[str], ParseOutcome]] = (parse_strict, parse_repaired)


def parse_json_object(
    text: Optional[str],
    strategies: Sequence[Callable[[str], ParseOutcome]] = DEFAULT_STRATEGIES,
) -> ParseOutcome:
    """Run the strategies in order and return the first success or the last failure."""
    if not text or not str(text).strip():
        return ParseOutcome.failure("empty", "model returned no content")

    failures: List[str] = []
    outcome = ParseOutcome.failure("none", "no strategies configured")
    for strategy in strategies:
        outcome = strategy(str(text))
        if outcome.ok:
            return outcome
        failures.append(f"{outcome.strategy}: {outcome.error}")
    return ParseOutcome.failure(outcome.strategy, "; ".join(failures))
