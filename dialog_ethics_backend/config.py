"""Shared environment configuration constants for the dialog ethics backend."""
import os


def _to_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
TRACE_API_CALLS = _to_bool(os.getenv("TRACE_API_CALLS", "true"))
API_LOG_PREVIEW_CHARS = int(os.getenv("API_LOG_PREVIEW_CHARS", "280"))

# --- Model provider ---
DEFAULT_LLM_BASE_URL = "https://api.openai.com/v1"
DEFAULT_LLM_MODEL = "gpt-3.5-turbo"

# --- Analysis ---
FLAG_CATEGORY_SET = os.getenv("FLAG_CATEGORY_SET", "general-ethics")
CONTEXT_WINDOW_SIZE = int(os.getenv("CONTEXT_WINDOW_SIZE", "5"))
ANALYSIS_BATCH_DELAY_SECONDS = float(os.getenv("ANALYSIS_BATCH_DELAY_SECONDS", "1.0"))
RATE_LIMIT_BACKOFF_SECONDS = float(os.getenv("RATE_LIMIT_BACKOFF_SECONDS", "5.0"))
DEDUPE_GLOBAL_FLAGS = _to_bool(os.getenv("DEDUPE_GLOBAL_FLAGS", "false"))

# --- Prompts ---
PROMPTS_FILE = os.getenv(
    "PROMPTS_FILE",
    os.path.join(os.path.dirname(os.path.abspath(__file__)), "prompts", "prompts.json"),
)

# --- HTTP surface ---
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://localhost:5173",
    ).split(",")
    if origin.strip()
]
MAX_TRANSCRIPT_BYTES = int(os.getenv("MAX_TRANSCRIPT_BYTES", str(2 * 1024 * 1024)))
