import os
from typing import Any, Dict, Optional

from dialog_ethics_backend.config import DEFAULT_LLM_BASE_URL, DEFAULT_LLM_MODEL
from dialog_ethics_backend.models import ModelSettings


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    return value_str in {"1", "true", "yes", "on"}


def _demo_keys() -> tuple:
    raw = os.getenv("DEMO_API_KEYS", "test,demo")
    return tuple(item.strip().lower() for item in raw.split(",") if item.strip())


def get_env_llm_defaults() -> Dict[str, Any]:
    return {
        "base_url": os.getenv("LLM_BASE_URL", DEFAULT_LLM_BASE_URL),
        "chat_model": os.getenv("LLM_DEFAULT_MODEL", DEFAULT_LLM_MODEL),
        "json_mode": _to_bool(os.getenv("LLM_JSON_MODE", "true")),
        "timeout_seconds": float(os.getenv("LLM_TIMEOUT_SECONDS", "60")),
        "demo_keys": _demo_keys(),
    }


def merge_llm_config(overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    config = get_env_llm_defaults()
    if not overrides:
        return config

    sanitized = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key == "json_mode":
            sanitized[key] = _to_bool(value)
        elif key == "timeout_seconds":
            try:
                sanitized[key] = float(value)
            except (TypeError, ValueError):
                continue
        elif key in {"base_url", "chat_model"}:
            normalized = str(value).strip()
            if normalized:
                sanitized[key] = normalized
        else:
            sanitized[key] = value

    config.update(sanitized)
    config["base_url"] = str(config.get("base_url", "")).rstrip("/")
    return config


def build_model_settings(
    api_key: str,
    model: Optional[str] = None,
    base_url: Optional[str] = None,
) -> ModelSettings:
    """Resolve request credentials against the environment defaults."""
    config = merge_llm_config({"chat_model": model, "base_url": base_url})
    return ModelSettings(
        api_key=str(api_key or "").strip(),
        model=config["chat_model"],
        base_url=config["base_url"] or None,
        demo_keys=config["demo_keys"],
    )
