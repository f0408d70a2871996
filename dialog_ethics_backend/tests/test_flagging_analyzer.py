"""
Tests for the flagging analyzer.

Run with: pytest dialog_ethics_backend/tests/test_flagging_analyzer.py -v
"""

import json

import pytest

from dialog_ethics_backend.models import AnalysisStatus, FlagFinding, Severity
from dialog_ethics_backend.services.flagging_analyzer import (
    FlaggingAnalyzer,
    normalize_breakdown,
    normalize_flag_severity,
    reconcile_findings,
    simplify_reasoning,
)
from dialog_ethics_backend.services.llm_client import GatewayError, InvalidCredentialError, ModelGateway, RateLimitError


def _context(content="I will hurt you if you do not help me."):
    return [
        {"role": "assistant", "content": "How can I help?"},
        {"role": "user", "content": content},
    ]


# ============================================================================
# Normalization helpers
# ============================================================================

@pytest.mark.parametrize(
    "raw, expected",
    [
        ("HIGH", Severity.HIGH),
        (" Medium ", Severity.MEDIUM),
        ("low", Severity.LOW),
        ("none", Severity.LOW),
        ("catastrophic", Severity.LOW),
        (None, Severity.LOW),
    ],
)
def test_normalize_flag_severity(raw, expected):
    assert normalize_flag_severity(raw) == expected


def test_normalize_breakdown_covers_every_category(general_registry):
    breakdown = normalize_breakdown(
        {"Harmful-Content": "HIGH", "bias": " Medium ", "misinformation": "unknown", "made-up": "high"},
        general_registry,
    )

    assert list(breakdown) == general_registry.ids()
    assert breakdown["harmful-content"] == Severity.HIGH
    assert breakdown["bias"] == Severity.MEDIUM
    assert breakdown["misinformation"] == Severity.NONE
    assert "made-up" not in breakdown


def test_normalize_breakdown_rejects_non_mapping(general_registry):
    breakdown = normalize_breakdown(["high"], general_registry)
    assert set(breakdown.values()) == {Severity.NONE}


def test_reconcile_keeps_first_finding_per_category(general_registry):
    findings = [
        FlagFinding("bias", Severity.LOW, "first", "a"),
        FlagFinding("bias", Severity.HIGH, "second", "b"),
    ]
    breakdown = general_registry.empty_breakdown()
    breakdown["bias"] = Severity.HIGH

    reconciled = reconcile_findings(findings, breakdown, "content", general_registry)

    assert len(reconciled) == 1
    assert reconciled[0].reason == "first"


def test_reconcile_synthesizes_missing_findings(general_registry):
    breakdown = general_registry.empty_breakdown()
    breakdown["harmful-content"] = Severity.MEDIUM
    content = "x" * 150

    reconciled = reconcile_findings([], breakdown, content, general_registry)

    assert len(reconciled) == 1
    assert reconciled[0].category == "harmful-content"
    assert reconciled[0].severity == Severity.MEDIUM
    assert reconciled[0].reason == "Content flagged for harmful content with medium severity"
    assert reconciled[0].excerpt == "x" * 100 + "..."


def test_simplify_reasoning_lists_triggered_categories(general_registry):
    breakdown = general_registry.empty_breakdown()
    breakdown["harmful-content"] = Severity.HIGH
    breakdown["bias"] = Severity.LOW

    text = simplify_reasoning("The message threatens violence. It also generalizes.", breakdown, general_registry)

    assert text == (
        "The message threatens violence. "
        "Triggered categories: Harmful Content (high), Bias (low). "
        "Human review is recommended."
    )


def test_simplify_reasoning_without_flags(general_registry):
    text = simplify_reasoning("", general_registry.empty_breakdown(), general_registry)
    assert text == "Analysis completed successfully."


# ============================================================================
# Analyzer against a scripted gateway
# ============================================================================

@pytest.mark.asyncio
async def test_analyze_normalizes_model_payload(fake_gateway, general_registry, prompt_manager, live_settings):
    payload = {
        "shouldFlag": True,
        "reasoning": "The message threatens violence. Details follow.",
        "severityBreakdown": {"harmful-content": "HIGH", "bias": " Medium "},
        "flags": [
            {"type": "Harmful Content", "severity": "extreme", "reason": "Threat", "flaggedText": "I will hurt you"},
            {"type": "harmful-content", "severity": "high", "reason": "duplicate", "flaggedText": "x"},
            {"type": "none", "severity": "low", "reason": "", "flaggedText": ""},
        ],
    }
    gateway = fake_gateway(json.dumps(payload))
    analyzer = FlaggingAnalyzer(gateway, general_registry, prompt_manager)

    result = await analyzer.analyze(_context(), live_settings)

    assert result.status == AnalysisStatus.OK
    assert result.should_flag is True
    assert list(result.severity_breakdown) == general_registry.ids()
    assert [(f.category, f.severity) for f in result.findings] == [
        ("harmful-content", Severity.LOW),
        ("bias", Severity.MEDIUM),
    ]
    assert result.findings[0].excerpt == "I will hurt you"
    assert result.full_reasoning == "The message threatens violence. Details follow."
    assert result.reasoning.endswith("Human review is recommended.")

    call = gateway.calls[0]
    assert call["json_schema"]["name"] == "flagging_analysis"
    assert call["messages"][0]["role"] == "system"
    assert "HARMFUL CONTENT (harmful-content)" in call["messages"][0]["content"]
    assert "user: I will hurt you if you do not help me." in call["messages"][0]["content"]


@pytest.mark.asyncio
async def test_analyze_includes_additional_context(fake_gateway, general_registry, prompt_manager, live_settings):
    gateway = fake_gateway('{"shouldFlag": false, "reasoning": "Fine.", "severityBreakdown": {}, "flags": []}')
    analyzer = FlaggingAnalyzer(gateway, general_registry, prompt_manager)

    await analyzer.analyze(_context("hello"), live_settings, additional_context="Customer support chat")

    assert "ADDITIONAL CONTEXT PROVIDED BY USER:\nCustomer support chat" in gateway.calls[0]["messages"][0]["content"]


@pytest.mark.asyncio
async def test_analyze_repairs_fenced_json(fake_gateway, general_registry, prompt_manager, live_settings):
    raw = '```json\n{"shouldFlag": false, "reasoning": "Nothing found.", "severityBreakdown": {}, "flags": [],}\n```'
    analyzer = FlaggingAnalyzer(fake_gateway(raw), general_registry, prompt_manager)

    result = await analyzer.analyze(_context("hello"), live_settings)

    assert result.status == AnalysisStatus.OK
    assert result.should_flag is False
    assert result.findings == []


@pytest.mark.asyncio
async def test_keyword_heuristic_when_unparseable(fake_gateway, general_registry, prompt_manager, live_settings):
    raw = "This message is concerning because it contains a threat."
    analyzer = FlaggingAnalyzer(fake_gateway(raw), general_registry, prompt_manager)

    result = await analyzer.analyze(_context(), live_settings)

    assert result.status == AnalysisStatus.DEGRADED
    assert result.should_flag is True
    assert list(result.severity_breakdown) == general_registry.ids()
    assert result.severity_breakdown["other"] == Severity.MEDIUM
    assert len(result.findings) == 1
    assert result.findings[0].category == "other"
    assert result.findings[0].excerpt == raw[:100] + "..."
    assert result.reasoning.startswith("Analysis detected potential concerns in the content. Raw analysis:")
    assert result.full_reasoning == raw


@pytest.mark.asyncio
async def test_heuristic_without_keywords_is_clean(fake_gateway, general_registry, prompt_manager, live_settings):
    analyzer = FlaggingAnalyzer(fake_gateway("All good here."), general_registry, prompt_manager)

    result = await analyzer.analyze(_context("hello"), live_settings)

    assert result.status == AnalysisStatus.DEGRADED
    assert result.should_flag is False
    assert result.findings == []
    assert set(result.severity_breakdown.values()) == {Severity.NONE}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error, code, reasoning",
    [
        (InvalidCredentialError(), 401, "Flagging could not run: invalid API key."),
        (RateLimitError(), 429, "Flagging could not run: rate limit exceeded."),
        (GatewayError(502, "Could not reach model provider"), 502, "Flagging could not run: Could not reach model provider"),
    ],
)
async def test_provider_errors_become_error_results(
    fake_gateway, general_registry, prompt_manager, live_settings, error, code, reasoning
):
    analyzer = FlaggingAnalyzer(fake_gateway(error), general_registry, prompt_manager)

    result = await analyzer.analyze(_context(), live_settings)

    assert result.status == AnalysisStatus.ERROR
    assert result.error_code == code
    assert result.reasoning == reasoning
    assert result.should_flag is False
    assert result.findings == []
    assert list(result.severity_breakdown) == general_registry.ids()
    assert set(result.severity_breakdown.values()) == {Severity.NONE}


@pytest.mark.asyncio
async def test_empty_context_is_an_error(fake_gateway, general_registry, prompt_manager, live_settings):
    gateway = fake_gateway("{}")
    analyzer = FlaggingAnalyzer(gateway, general_registry, prompt_manager)

    result = await analyzer.analyze([], live_settings)

    assert result.status == AnalysisStatus.ERROR
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_demo_mode_flags_keywords(mental_health_registry, prompt_manager, demo_settings):
    analyzer = FlaggingAnalyzer(ModelGateway(), mental_health_registry, prompt_manager)

    result = await analyzer.analyze(
        [{"role": "user", "content": "I feel overwhelmed lately"}],
        demo_settings,
    )

    categories = {finding.category for finding in result.findings}
    assert result.status == AnalysisStatus.OK
    assert result.should_flag is True
    assert "emotional-distress" in categories
    assert result.severity_breakdown["emotional-distress"] == Severity.MEDIUM
    assert result.severity_breakdown["suicidal-ideation"] == Severity.NONE
