from dialog_ethics_backend.services.llm_config import build_model_settings, get_env_llm_defaults, merge_llm_config


def test_env_llm_defaults(monkeypatch):
    monkeypatch.setenv("LLM_BASE_URL", "http://localhost:1234/v1")
    monkeypatch.setenv("LLM_DEFAULT_MODEL", "llama-3")
    monkeypatch.setenv("LLM_JSON_MODE", "false")
    monkeypatch.setenv("LLM_TIMEOUT_SECONDS", "45")
    monkeypatch.setenv("DEMO_API_KEYS", "Test, sandbox")

    defaults = get_env_llm_defaults()

    assert defaults["base_url"] == "http://localhost:1234/v1"
    assert defaults["chat_model"] == "llama-3"
    assert defaults["json_mode"] is False
    assert defaults["timeout_seconds"] == 45.0
    assert defaults["demo_keys"] == ("test", "sandbox")


def test_merge_llm_config_sanitizes_overrides(monkeypatch):
    monkeypatch.setenv("LLM_DEFAULT_MODEL", "gpt-3.5-turbo")

    merged = merge_llm_config(
        {"chat_model": "  ", "base_url": "http://proxy.local/v1/", "json_mode": "0", "timeout_seconds": "soon"}
    )

    assert merged["chat_model"] == "gpt-3.5-turbo"
    assert merged["base_url"] == "http://proxy.local/v1"
    assert merged["json_mode"] is False
    assert merged["timeout_seconds"] == 60.0


def test_build_model_settings_uses_defaults(monkeypatch):
    monkeypatch.delenv("LLM_BASE_URL", raising=False)
    monkeypatch.delenv("LLM_DEFAULT_MODEL", raising=False)

    settings = build_model_settings(" sk-abc ", None, None)

    assert settings.api_key == "sk-abc"
    assert settings.model == "gpt-3.5-turbo"
    assert settings.base_url == "https://api.openai.com/v1"
    assert settings.is_demo is False


def test_demo_keys_are_case_insensitive(monkeypatch):
    monkeypatch.delenv("DEMO_API_KEYS", raising=False)

    assert build_model_settings("TEST", "gpt-4o").is_demo is True
    assert build_model_settings("demo").is_demo is True
    assert build_model_settings("sk-test").is_demo is False
