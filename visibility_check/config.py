"""
Configuration for the visibility checker.

Everything is read from the environment (or a .env file) once at import time.
Provider API keys are deliberately NOT read here: adapters look them up at call
time so a missing key only fails that one provider.
"""

import math
import os

# Load environment variables from .env file if it exists
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).lower() == "true"


# ============================================================================
# PROVIDERS
# ============================================================================

# LLM Enable/Disable settings (set to "false" to disable)
ENABLE_CHATGPT = _flag("ENABLE_CHATGPT")
ENABLE_GROK = _flag("ENABLE_GROK")
ENABLE_DEEPSEEK = _flag("ENABLE_DEEPSEEK")
ENABLE_PERPLEXITY = _flag("ENABLE_PERPLEXITY")
ENABLE_GEMINI = _flag("ENABLE_GEMINI")
ENABLE_CLAUDE = _flag("ENABLE_CLAUDE")
ENABLE_GOOGLE_AI_OVERVIEW = _flag("ENABLE_GOOGLE_AI_OVERVIEW")

# Provider key -> enable flag
PROVIDER_ENABLED = {
    "openai": ENABLE_CHATGPT,
    "grok": ENABLE_GROK,
    "deepseek": ENABLE_DEEPSEEK,
    "perplexity": ENABLE_PERPLEXITY,
    "gemini": ENABLE_GEMINI,
    "claude": ENABLE_CLAUDE,
    "google_ai_overview": ENABLE_GOOGLE_AI_OVERVIEW,
}

# Importance of each engine in the weighted visibility score
PROVIDER_WEIGHTS = {
    "openai": 0.15,
    "grok": 0.15,
    "deepseek": 0.15,
    "perplexity": 0.15,
    "gemini": 0.15,
    "claude": 0.15,
    "google_ai_overview": 0.10,
}

# Timeouts (seconds)
PROVIDER_TRANSPORT_TIMEOUT = float(os.getenv("PROVIDER_TRANSPORT_TIMEOUT", "50"))
PROVIDER_STREAM_DEADLINE = float(os.getenv("PROVIDER_STREAM_DEADLINE", "45"))
RUN_CEILING_SECONDS = float(os.getenv("RUN_CEILING_SECONDS", "120"))

# Retry settings for error recovery
PROVIDER_MAX_RETRIES = int(os.getenv("PROVIDER_MAX_RETRIES", "1"))
PROVIDER_RETRY_DELAY = float(os.getenv("PROVIDER_RETRY_DELAY", "2"))  # seconds

MAX_OUTPUT_TOKENS = 1000
TEMPERATURE = 0.7

# ============================================================================
# CACHE / STORE
# ============================================================================

REDIS_URL = os.getenv("REDIS_URL", "")
RESULT_CACHE_PREFIX = os.getenv("RESULT_CACHE_PREFIX", "aoe")
RESULT_CACHE_TTL = int(os.getenv("RESULT_CACHE_TTL", "86400"))  # 24 hours
SERPAPI_CACHE_TTL = int(os.getenv("SERPAPI_CACHE_TTL", "300"))  # 5 minutes

RUN_DB_PATH = os.getenv("RUN_DB_PATH", "")
RUN_WORKERS = int(os.getenv("RUN_WORKERS", "4"))

# ============================================================================
# POLLING
# ============================================================================

POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", "1.0"))
# Default budget outlasts the run ceiling (after which every provider has a row)
# plus time for the last writes to land
POLL_SLACK_SECONDS = 10.0
POLL_MAX_ATTEMPTS = int(os.getenv(
    "POLL_MAX_ATTEMPTS",
    str(math.ceil((RUN_CEILING_SECONDS + POLL_SLACK_SECONDS) / max(POLL_INTERVAL, 0.1))),
))

# ============================================================================
# EMAIL
# ============================================================================

SMTP_HOST = os.getenv("SMTP_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
EMAIL_FROM = os.getenv("EMAIL_FROM", SMTP_USER)
EMAIL_ENABLED = bool(SMTP_USER and SMTP_PASSWORD)

# ============================================================================
# LOGGING
# ============================================================================

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "visibility_check.log")
