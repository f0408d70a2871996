"""
Tests for per-principle scoring.

Run with: pytest dialog_ethics_backend/tests/test_principle_scorer.py -v
"""

import json

import pytest

from dialog_ethics_backend.models import AnalysisStatus
from dialog_ethics_backend.services.llm_client import GatewayError, ModelGateway, RateLimitError
from dialog_ethics_backend.services.principle_scorer import SCORE_MAX, SCORE_MIN, PrincipleScorer, coerce_score

CONTEXT = [
    {"role": "user", "content": "Can you explain how you reached that answer?"},
    {"role": "assistant", "content": "I'm not sure, but here is my best reasoning."},
]


def _by_principle(replies):
    """Responder that answers according to the principle named in the system prompt."""

    def reply(messages):
        system = messages[0]["content"]
        for name, answer in replies.items():
            if f"Name: {name}\n" in system:
                return answer
        return '{"score": 0, "reasoning": "neutral"}'

    return reply


@pytest.mark.parametrize(
    "raw, expected",
    [
        (7, 5),
        (-9, -5),
        (3, 3),
        ("3.7", 3),
        ("+4", 4),
        ("-2 points", -2),
        ("7/10", 5),
        (2.9, 2),
        ("high", 0),
        (None, 0),
        (True, 0),
    ],
)
def test_coerce_score(raw, expected):
    assert coerce_score(raw) == expected


@pytest.mark.asyncio
async def test_score_clamps_and_fills_reasoning(fake_gateway, principle_registry, prompt_manager, live_settings):
    gateway = fake_gateway(
        _by_principle(
            {
                "Transparency": json.dumps({"score": 7, "reasoning": "Very open about uncertainty."}),
                "Respect": json.dumps({"score": -9, "reasoning": "Dismissive."}),
                "Accountability": json.dumps({"score": "3.7", "reasoning": ""}),
                "Fairness": json.dumps({"score": 1, "reasoning": "Even-handed."}),
            }
        )
    )
    scorer = PrincipleScorer(gateway, principle_registry, prompt_manager)

    result = await scorer.score(CONTEXT, live_settings)

    scores = {s.principle_id: s for s in result.scores}
    assert result.status == AnalysisStatus.OK
    assert result.success is True
    assert [s.principle_id for s in result.scores] == principle_registry.ids()
    assert scores["transparency"].score == 5
    assert scores["respect"].score == -5
    assert scores["accountability"].score == 3
    assert scores["accountability"].reasoning == "No reasoning provided"
    assert scores["fairness"].principle_name == "Fairness"
    assert all(SCORE_MIN <= s.score <= SCORE_MAX for s in result.scores)
    assert len(gateway.calls) == len(principle_registry)
    assert all(call["json_schema"]["name"] == "principle_evaluation" for call in gateway.calls)


@pytest.mark.asyncio
async def test_unparseable_principle_degrades_only_itself(fake_gateway, principle_registry, prompt_manager, live_settings):
    gateway = fake_gateway(_by_principle({"Fairness": "I would rate this fairly highly overall."}))
    scorer = PrincipleScorer(gateway, principle_registry, prompt_manager)

    result = await scorer.score(CONTEXT, live_settings)

    scores = {s.principle_id: s for s in result.scores}
    assert result.status == AnalysisStatus.DEGRADED
    assert result.success is True
    assert scores["fairness"].score == 0
    assert scores["fairness"].reasoning == (
        "Analysis completed with parsing error: I would rate this fairly highly overall...."
    )
    assert scores["transparency"].reasoning == "neutral"


@pytest.mark.asyncio
async def test_missing_score_key_counts_as_parse_error(fake_gateway, principle_registry, prompt_manager, live_settings):
    scorer = PrincipleScorer(fake_gateway('{"reasoning": "forgot the score"}'), principle_registry, prompt_manager)

    result = await scorer.score(CONTEXT, live_settings)

    assert result.status == AnalysisStatus.DEGRADED
    assert all(s.score == 0 for s in result.scores)
    assert all(s.reasoning.startswith("Analysis completed with parsing error") for s in result.scores)


@pytest.mark.asyncio
async def test_provider_failure_everywhere_is_an_error(fake_gateway, principle_registry, prompt_manager, live_settings):
    scorer = PrincipleScorer(fake_gateway(GatewayError(500, "boom")), principle_registry, prompt_manager)

    result = await scorer.score(CONTEXT, live_settings)

    assert result.status == AnalysisStatus.ERROR
    assert result.success is False
    assert result.error_code == 500
    assert len(result.scores) == len(principle_registry)
    assert all(s.score == 0 and s.reasoning == "Error evaluating principle: boom" for s in result.scores)


@pytest.mark.asyncio
async def test_rate_limit_is_reported(fake_gateway, principle_registry, prompt_manager, live_settings):
    gateway = fake_gateway(_by_principle({"Respect": RateLimitError()}))
    scorer = PrincipleScorer(gateway, principle_registry, prompt_manager)

    result = await scorer.score(CONTEXT, live_settings)

    assert result.status == AnalysisStatus.DEGRADED
    assert result.error_code == 429


@pytest.mark.asyncio
async def test_empty_context_returns_placeholders(fake_gateway, principle_registry, prompt_manager, live_settings):
    gateway = fake_gateway("{}")
    scorer = PrincipleScorer(gateway, principle_registry, prompt_manager)

    result = await scorer.score([], live_settings)

    assert result.status == AnalysisStatus.ERROR
    assert [s.score for s in result.scores] == [0] * len(principle_registry)
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_demo_scores_are_deterministic(principle_registry, prompt_manager, demo_settings):
    scorer = PrincipleScorer(ModelGateway(), principle_registry, prompt_manager)

    first = await scorer.score(CONTEXT, demo_settings)
    second = await scorer.score(CONTEXT, demo_settings)

    assert first.status == AnalysisStatus.OK
    assert [s.score for s in first.scores] == [s.score for s in second.scores]
    assert all(-2 <= s.score <= 4 for s in first.scores)
