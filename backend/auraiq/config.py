"""
Runtime configuration.
All values come from environment variables (optionally via a .env file).
"""

import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


APP_ENV = os.getenv("APP_ENV", "production").strip().lower()

# ---------------------------------------------------------------------------
# Intake limits
# ---------------------------------------------------------------------------

MAX_FILE_SIZE = 25 * 1024 * 1024
MAX_TOTAL_FILES_SIZE = 50 * 1024 * 1024
MAX_TEXT_FILE_SIZE = 1_000_000

ALLOWED_FILE_TYPES = {
    "application/pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "text/plain",
    "text/csv",
    "application/json",
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
}

# ---------------------------------------------------------------------------
# Token budgets (estimated tokens, 4 chars per token)
# ---------------------------------------------------------------------------

FILE_TOKEN_BUDGET = 15000
CONTEXT_FILE_TOKEN_BUDGET = 15000
REQUEST_TOKEN_BUDGET = 25000

MAX_SPREADSHEET_ROWS = 1000
HISTORY_WINDOW = 10

DEFAULT_SYSTEM_PROMPT = "You are AuraIQ, a helpful and intelligent AI assistant."
DEFAULT_IMAGE_PROMPT = "Describe this image in detail."

# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

REDIS_URL: Optional[str] = os.getenv("REDIS_URL") or None

RATE_LIMIT_REQUESTS = _int_env("RATE_LIMIT_REQUESTS", 20)
RATE_LIMIT_WINDOW_SECONDS = _int_env("RATE_LIMIT_WINDOW_SECONDS", 60)
IQ1_RATE_LIMIT_REQUESTS = _int_env("IQ1_RATE_LIMIT_REQUESTS", 30)
RATE_LIMIT_RETRY_AFTER_SECONDS = 60
RATE_LIMIT_SWEEP_SECONDS = 60

RATE_LIMIT_TIERS = {
    "free": {"requests": 20, "window_seconds": 60},
    "basic": {"requests": 50, "window_seconds": 60},
    "pro": {"requests": 100, "window_seconds": 60},
    "enterprise": {"requests": 500, "window_seconds": 60},
}


def get_rate_limit_for_tier(tier: str = "free") -> dict:
    """Return the request ceiling and window for a plan tier (unknown tiers get 'free')."""
    return RATE_LIMIT_TIERS.get(tier, RATE_LIMIT_TIERS["free"])


# ---------------------------------------------------------------------------
# Downstream models / providers
# ---------------------------------------------------------------------------

VISION_MODEL = os.getenv("VISION_MODEL", "qwen/qwen2.5-vl-72b-instruct:free")
GENERAL_MODEL = os.getenv("GENERAL_MODEL", "openai/gpt-oss-20b:free")
CODE_MODEL = os.getenv("CODE_MODEL", "qwen/qwen-2.5-coder-32b-instruct:free")

CHAT_PROVIDER = os.getenv("CHAT_PROVIDER", "openrouter").strip().lower()
IQ1_PROVIDER = os.getenv("IQ1_PROVIDER", "openai").strip().lower()

UPSTREAM_MAX_TOKENS = 4096
UPSTREAM_TEMPERATURE = 0.7
UPSTREAM_TIMEOUT_SECONDS = 60.0
CONTEXT_FETCH_TIMEOUT_SECONDS = 30.0

APP_REFERER = os.getenv("APP_REFERER", "https://auraiq-app.vercel.app")
APP_TITLE = "AuraIQ"

# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

STORAGE_BUCKET = os.getenv("STORAGE_BUCKET", "chat-media")

# ---------------------------------------------------------------------------
# Provider credentials
# ---------------------------------------------------------------------------

OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY", "")
OPENROUTER_ENDPOINT = "https://openrouter.ai/api/v1/chat/completions"

IQ1_OPENAI_API_KEY = os.getenv("IQ1_OPENAI_API_KEY", "")
IQ1_OPENAI_ENDPOINT = "https://api.openai.com/v1/chat/completions"
IQ1_MODEL_NAME = os.getenv("IQ1_MODEL_NAME", "gpt-4o")

IQ1_HF_API_KEY = os.getenv("IQ1_HF_API_KEY", "")
IQ1_HF_ENDPOINT = "https://api-inference.huggingface.co/models/"
IQ1_HF_MODEL = os.getenv("IQ1_HF_MODEL", "meta-llama/Llama-3.1-8B-Instruct")

IQ1_CUSTOM_ENDPOINT = os.getenv("IQ1_CUSTOM_ENDPOINT", "")
IQ1_CUSTOM_API_KEY = os.getenv("IQ1_CUSTOM_API_KEY", "")
IQ1_CUSTOM_MODEL = os.getenv("IQ1_CUSTOM_MODEL", "iq1-base")

IQ1_ANTHROPIC_API_KEY = os.getenv("IQ1_ANTHROPIC_API_KEY") or os.getenv("ANTHROPIC_API_KEY", "")
IQ1_ANTHROPIC_MODEL = os.getenv("IQ1_ANTHROPIC_MODEL", "claude-haiku-4-5")
