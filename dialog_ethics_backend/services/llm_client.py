import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from dialog_ethics_backend.config import API_LOG_PREVIEW_CHARS, DEFAULT_LLM_BASE_URL, TRACE_API_CALLS
from dialog_ethics_backend.instrumentation import extract_message_content, parse_completion_usage
from dialog_ethics_backend.models import ModelSettings
from dialog_ethics_backend.services.demo_responses import DEMO_MODELS, demo_chat_reply
from dialog_ethics_backend.services.llm_config import get_env_llm_defaults

logger = logging.getLogger("dialog_ethics")

MODEL_LIST_CACHE_TTL_SECONDS = 300
_MODEL_LIST_CACHE: Dict[str, Dict[str, Any]] = {}
_JSON_OBJECT_UNSUPPORTED_BASE_URLS: set[str] = set()
_GATEWAY_CACHE: Dict[Tuple[float, bool], "ModelGateway"] = {}

STRUCTURED_OUTPUT_MODEL_MARKERS = ("gpt-4", "gpt-3.5-turbo")


class GatewayError(Exception):
    """A model provider call failed. `status_code` mirrors the HTTP status to report."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class InvalidCredentialError(GatewayError):
    def __init__(self, message: str = "Invalid API key. Please check your API key."):
        super().__init__(401, message)


class RateLimitError(GatewayError):
    def __init__(self, message: str = "Rate limit exceeded. Please try again later."):
        super().__init__(429, message)


@dataclass
class ChatCompletion:
    content: str
    model: str
    usage: Dict[str, int] = field(default_factory=dict)


def _preview_text(value: Any, limit: int = API_LOG_PREVIEW_CHARS) -> str:
    text = str(value or "")
    if len(text) <= limit:
        return text
    return f"{text[:limit]}...<truncated {len(text) - limit} chars>"


def resolve_base_url(settings: ModelSettings) -> str:
    return str(settings.base_url or get_env_llm_defaults()["base_url"] or DEFAULT_LLM_BASE_URL).strip()


def chat_completions_url(settings: ModelSettings) -> str:
    base_url = resolve_base_url(settings)
    if base_url.rstrip("/").endswith("/chat/completions"):
        return base_url.rstrip("/")
    return f"{base_url.rstrip('/')}/chat/completions"


def models_url(settings: ModelSettings) -> str:
    base_url = resolve_base_url(settings).rstrip("/")
    if base_url.endswith("/chat/completions"):
        base_url = base_url[: -len("/chat/completions")]
    return f"{base_url}/models"


def supports_structured_output(settings: ModelSettings) -> bool:
    """json_schema is only requested from the OpenAI API itself, for models known to accept it."""
    base_url = settings.base_url or ""
    is_openai = not base_url or "openai.com" in base_url
    model = (settings.model or "").lower()
    return is_openai and any(marker in model for marker in STRUCTURED_OUTPUT_MODEL_MARKERS)


def _provider_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return _preview_text(response.text, 200) or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
    return f"HTTP {response.status_code}"


def _raise_for_status(response: httpx.Response) -> None:
    if response.status_code == 401:
        raise InvalidCredentialError()
    if response.status_code == 429:
        raise RateLimitError()
    if response.status_code >= 400:
        raise GatewayError(response.status_code, _provider_error_message(response))


def _cache_get(cache_key: str) -> Optional[List[Dict[str, str]]]:
    cached = _MODEL_LIST_CACHE.get(cache_key)
    if not cached:
        return None
    if time.time() - float(cached.get("ts", 0)) > MODEL_LIST_CACHE_TTL_SECONDS:
        _MODEL_LIST_CACHE.pop(cache_key, None)
        return None
    return cached.get("models")


def _cache_set(cache_key: str, models: List[Dict[str, str]]) -> None:
    _MODEL_LIST_CACHE[cache_key] = {"ts": time.time(), "models": models}


def get_model_gateway(config: Optional[Dict[str, Any]] = None) -> "ModelGateway":
    resolved = config or get_env_llm_defaults()
    timeout = float(resolved.get("timeout_seconds", 60))
    json_mode = bool(resolved.get("json_mode", True))

    key = (timeout, json_mode)
    if key not in _GATEWAY_CACHE:
        _GATEWAY_CACHE[key] = ModelGateway(timeout_seconds=timeout, json_mode=json_mode)
    return _GATEWAY_CACHE[key]


class ModelGateway:
    """
    Thin client for OpenAI-compatible chat completion endpoints.

    Demo settings never reach the network: chat returns `demo_reply()` (or a
    canned echo) and the model list is fixed.
    """

    def __init__(
        self,
        timeout_seconds: float = 60,
        json_mode: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.json_mode = json_mode
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport)

    @staticmethod
    def _headers(settings: ModelSettings) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {settings.api_key}",
            "Content-Type": "application/json",
        }

    async def _post(self, client: httpx.AsyncClient, url: str, settings: ModelSettings, payload: Dict[str, Any]) -> httpx.Response:
        try:
            return await client.post(url, json=payload, headers=self._headers(settings))
        except httpx.TimeoutException as exc:
            raise GatewayError(504, f"Model provider timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise GatewayError(502, f"Could not reach model provider: {exc}") from exc

    async def chat_completion(
        self,
        settings: ModelSettings,
        messages: List[Dict[str, str]],
        temperature: float = 0.7,
        max_tokens: int = 1000,
        response_format: Optional[Dict[str, Any]] = None,
        json_schema: Optional[Dict[str, Any]] = None,
        demo_reply: Optional[Callable[[], str]] = None,
    ) -> ChatCompletion:
        """
        POST a chat completion and return its first choice.

        `json_schema` ({"name", "schema"}) asks for structured output. It is only
        sent where `supports_structured_output` holds, and a rejection falls back
        to a single `json_object` retry. Credential and rate-limit errors are
        never retried.
        """
        if settings.is_demo:
            content = demo_reply() if demo_reply else demo_chat_reply(messages)
            return ChatCompletion(content=content, model=settings.model or "demo-model", usage={})

        payload: Dict[str, Any] = {
            "model": settings.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

        base_url = resolve_base_url(settings)
        supports_json_object = base_url not in _JSON_OBJECT_UNSUPPORTED_BASE_URLS
        fallback_format: Optional[Dict[str, Any]] = None
        if json_schema and supports_structured_output(settings):
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": json_schema["name"], "schema": json_schema["schema"], "strict": True},
            }
            fallback_format = {"type": "json_object"}
        elif response_format:
            payload["response_format"] = response_format
        elif json_schema and self.json_mode and supports_json_object:
            payload["response_format"] = {"type": "json_object"}

        url = chat_completions_url(settings)
        if TRACE_API_CALLS:
            logger.info(
                "[LLM API] POST %s model=%s messages=%s response_format=%s",
                url,
                settings.model,
                len(messages or []),
                payload.get("response_format", {}).get("type", "none"),
            )

        async with self._client() as client:
            response = await self._post(client, url, settings, payload)
            try:
                _raise_for_status(response)
            except (InvalidCredentialError, RateLimitError):
                raise
            except GatewayError as exc:
                if "response_format" not in payload:
                    raise
                logger.warning(
                    "response_format %s rejected (%s); retrying with %s.",
                    payload["response_format"].get("type"),
                    _preview_text(exc.message),
                    (fallback_format or {}).get("type", "no response_format"),
                )
                if fallback_format:
                    payload["response_format"] = fallback_format
                else:
                    _JSON_OBJECT_UNSUPPORTED_BASE_URLS.add(base_url)
                    payload.pop("response_format", None)
                response = await self._post(client, url, settings, payload)
                _raise_for_status(response)

        if TRACE_API_CALLS:
            logger.info(
                "[LLM API] %s status=%s preview=%s",
                url,
                response.status_code,
                _preview_text(response.text),
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise GatewayError(502, "Model provider returned a non-JSON response") from exc

        usage = parse_completion_usage(body)
        return ChatCompletion(
            content=extract_message_content(body),
            model=usage.model if usage.model != "unknown" else settings.model,
            usage=usage.to_dict(),
        )

    async def list_models(self, settings: ModelSettings) -> List[Dict[str, str]]:
        if settings.is_demo:
            return list(DEMO_MODELS)

        url = models_url(settings)
        cached = _cache_get(url)
        if cached:
            return cached

        async with self._client() as client:
            try:
                response = await client.get(url, headers=self._headers(settings))
            except httpx.RequestError as exc:
                raise GatewayError(502, f"Could not reach model provider: {exc}") from exc
        _raise_for_status(response)

        try:
            payload = response.json() if response.content else {}
        except ValueError as exc:
            raise GatewayError(502, "Model provider returned a non-JSON model list") from exc
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            return []

        models = sorted(
            (
                {"id": str(item.get("id", "")).strip(), "owned_by": str(item.get("owned_by") or "")}
                for item in data
                if isinstance(item, dict) and str(item.get("id", "")).strip()
            ),
            key=lambda item: item["id"],
        )
        if models:
            _cache_set(url, models)
        return models
