import pytest

from dialog_ethics_backend.models import Flag, Message, Role, Severity
from dialog_ethics_backend.services.llm_client import GatewayError, ModelGateway
from dialog_ethics_backend.services.summarizer import EMPTY_CONVERSATION_SUMMARY, Summarizer, normalize_format


def _messages():
    return [
        Message(role=Role.USER, content="I need help with my homework."),
        Message(role=Role.ASSISTANT, content="Happy to help. What subject?"),
    ]


def _flags(messages):
    return [
        Flag(
            message_id=messages[0].id,
            category="ethical-concern",
            severity=Severity.LOW,
            reason="Possible academic dishonesty",
            excerpt="help with my homework",
        )
    ]


def test_normalize_format_defaults_to_bullets():
    assert normalize_format("Paragraph") == "paragraph"
    assert normalize_format("table") == "bullets"
    assert normalize_format(None) == "bullets"


def test_prompt_omits_empty_sections(fake_gateway, prompt_manager):
    summarizer = Summarizer(fake_gateway(""), prompt_manager)

    rendered = summarizer.build_messages(_messages(), [], None, "bullets")

    assert "bullet point format" in rendered[0]["content"]
    assert "USER: I need help with my homework." in rendered[1]["content"]
    assert "FLAGGED CONTENT" not in rendered[1]["content"]
    assert "ADDITIONAL CONTEXT" not in rendered[1]["content"]


def test_prompt_includes_flags_and_context(fake_gateway, prompt_manager):
    messages = _messages()
    summarizer = Summarizer(fake_gateway(""), prompt_manager)

    rendered = summarizer.build_messages(messages, _flags(messages), "School tutoring bot", "paragraph")

    assert "paragraph format" in rendered[0]["content"]
    assert '- ethical-concern (low): Possible academic dishonesty - "help with my homework"' in rendered[1]["content"]
    assert "ADDITIONAL CONTEXT:\nSchool tutoring bot" in rendered[1]["content"]


@pytest.mark.asyncio
async def test_summarize_returns_model_text(fake_gateway, prompt_manager, live_settings):
    messages = _messages()
    gateway = fake_gateway("  - The user asked for homework help.  ")
    summarizer = Summarizer(gateway, prompt_manager)

    result = await summarizer.summarize(messages, _flags(messages), None, live_settings, "bullets")

    assert result.summary == "- The user asked for homework help."
    assert result.status == "ok"
    assert result.conversation_length == 2
    assert result.flags_count == 1
    body = result.to_dict()
    assert body["format"] == "bullets"
    assert body["conversationLength"] == 2
    assert gateway.calls[0]["temperature"] == 0.3


@pytest.mark.asyncio
async def test_empty_conversation_skips_the_model(fake_gateway, prompt_manager, live_settings):
    gateway = fake_gateway("unused")
    result = await Summarizer(gateway, prompt_manager).summarize([], [], None, live_settings)

    assert result.summary == EMPTY_CONVERSATION_SUMMARY
    assert result.conversation_length == 0
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_provider_error_is_reported_in_summary(fake_gateway, prompt_manager, live_settings):
    summarizer = Summarizer(fake_gateway(GatewayError(503, "Service unavailable")), prompt_manager)

    result = await summarizer.summarize(_messages(), [], None, live_settings)

    assert result.summary == "Error generating summary: Service unavailable"
    assert result.status == "error"


@pytest.mark.asyncio
async def test_demo_summary(prompt_manager, demo_settings):
    messages = _messages()
    summarizer = Summarizer(ModelGateway(), prompt_manager)

    bullets = await summarizer.summarize(messages, _flags(messages), None, demo_settings, "bullets")
    paragraph = await summarizer.summarize(messages, [], None, demo_settings, "paragraph")

    assert bullets.summary.splitlines()[0].startswith("- The conversation has 2 messages")
    assert "1 flags were raised: ethical-concern." in bullets.summary
    assert not paragraph.summary.startswith("- ")
    assert "No content was flagged." in paragraph.summary
