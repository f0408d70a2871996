"""
Pytest configuration and shared fixtures for the dialog ethics backend tests.

This module provides:
- Model settings for demo and live credentials
- Category and principle registries
- A scripted stand-in for the model gateway
"""

import pytest

from dialog_ethics_backend.models import ModelSettings
from dialog_ethics_backend.services.llm_client import ChatCompletion
from dialog_ethics_backend.services.prompt_manager import PromptManager
from dialog_ethics_backend.services.registries import get_category_registry, get_principle_registry


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture
def demo_settings():
    return ModelSettings(api_key="test", model="demo-model")


@pytest.fixture
def live_settings():
    return ModelSettings(api_key="sk-live", model="gpt-4o-mini", base_url="https://api.openai.com/v1")


# ============================================================================
# Registries and prompts
# ============================================================================

@pytest.fixture
def general_registry():
    return get_category_registry("general-ethics")


@pytest.fixture
def mental_health_registry():
    return get_category_registry("mental-health")


@pytest.fixture
def principle_registry():
    return get_principle_registry()


@pytest.fixture
def prompt_manager():
    return PromptManager()


# ============================================================================
# Gateway stand-in
# ============================================================================

class FakeGateway:
    """
    Records chat calls and answers from a script.

    `reply` is a string, an exception to raise, or a callable taking the
    rendered messages and returning either of those.
    """

    def __init__(self, reply="", models=None):
        self.reply = reply
        self.models = models if models is not None else [{"id": "gpt-test", "owned_by": "fake"}]
        self.calls = []

    async def chat_completion(self, settings, messages, **kwargs):
        self.calls.append({"settings": settings, "messages": messages, **kwargs})
        reply = self.reply(messages) if callable(self.reply) else self.reply
        if isinstance(reply, Exception):
            raise reply
        return ChatCompletion(content=reply, model=settings.model, usage={"total_tokens": 10})

    async def list_models(self, settings):
        if isinstance(self.models, Exception):
            raise self.models
        return list(self.models)


@pytest.fixture
def fake_gateway():
    """Factory: fake_gateway(reply) -> FakeGateway."""
    return FakeGateway
