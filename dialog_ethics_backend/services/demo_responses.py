"""
Deterministic stand-ins for provider responses, used when the API key is a
demo sentinel ("test" / "demo").

Flagging and scoring payloads are returned as JSON text so they travel through
the same parse and normalization path as a real completion.
"""

import json
import random
import re
from typing import Dict, Iterable, List, Optional

from dialog_ethics_backend.models import Flag, Message, Role
from dialog_ethics_backend.services.registries import (
    HIGH_RISK_CATEGORIES,
    CategoryRegistry,
    Principle,
)

DEMO_MODELS = [
    {"id": "demo-model", "owned_by": "demo"},
    {"id": "gpt-3.5-turbo", "owned_by": "demo"},
    {"id": "gpt-4o-mini", "owned_by": "demo"},
]


def _keyword_pattern(keyword: str) -> re.Pattern:
    return re.compile(rf"(?<!\w){re.escape(keyword)}(?!\w)", re.IGNORECASE)


def _last_user_content(messages: Iterable[Dict[str, str]]) -> str:
    for message in reversed(list(messages or [])):
        if message.get("role") == "user":
            return str(message.get("content") or "")
    return ""


def demo_chat_reply(messages: Iterable[Dict[str, str]]) -> str:
    prompt = _last_user_content(messages).strip()
    if len(prompt) > 80:
        prompt = f"{prompt[:80]}..."
    if not prompt:
        return "This is a demo response. Connect a real API key to chat with a model."
    return (
        f'This is a demo response to "{prompt}". '
        "Connect a real API key to chat with a model."
    )


def find_keyword_hits(content: str, registry: CategoryRegistry) -> Dict[str, str]:
    """Return {category_id: first matching keyword} for the registry's categories."""
    hits: Dict[str, str] = {}
    for category in registry:
        for keyword in category.keywords:
            if _keyword_pattern(keyword).search(content or ""):
                hits[category.id] = keyword
                break
    return hits


def demo_flagging_payload(content: str, registry: CategoryRegistry) -> str:
    hits = find_keyword_hits(content, registry)
    breakdown = {category_id: "none" for category_id in registry.ids()}
    flags: List[Dict[str, str]] = []
    for category_id, keyword in hits.items():
        severity = "high" if category_id in HIGH_RISK_CATEGORIES else "medium"
        breakdown[category_id] = severity
        flags.append(
            {
                "type": category_id,
                "severity": severity,
                "reason": f'Demo mode matched the keyword "{keyword}".',
                "flaggedText": keyword,
            }
        )

    if hits:
        names = ", ".join(registry.display_name(category_id) for category_id in hits)
        reasoning = f"Demo analysis found indicators of {names}. Keyword matching only."
    else:
        reasoning = "Demo analysis found no concerning content. Keyword matching only."

    return json.dumps(
        {
            "shouldFlag": bool(hits),
            "reasoning": reasoning,
            "severityBreakdown": breakdown,
            "flags": flags,
        }
    )


def demo_principle_payload(content: str, principle: Principle) -> str:
    rng = random.Random(f"{principle.id}:{content}")
    score = rng.randint(-2, 4)
    return json.dumps(
        {
            "score": score,
            "reasoning": f"Demo evaluation of {principle.name.lower()}: deterministic score for this message.",
        }
    )


def demo_summary(
    messages: List[Message],
    flags: List[Flag],
    output_format: str = "bullets",
    registry: Optional[CategoryRegistry] = None,
) -> str:
    user_count = sum(1 for m in messages if m.role == Role.USER)
    assistant_count = len(messages) - user_count
    categories = sorted({flag.category for flag in flags})
    if registry is not None:
        categories = [registry.display_name(c) for c in categories]

    lines = [
        f"The conversation has {len(messages)} messages ({user_count} user, {assistant_count} assistant).",
        (
            f"{len(flags)} flags were raised: {', '.join(categories)}."
            if flags else "No content was flagged."
        ),
        "This summary was generated in demo mode without a model call.",
    ]
    if output_format == "paragraph":
        return " ".join(lines)
    return "\n".join(f"- {line}" for line in lines)
