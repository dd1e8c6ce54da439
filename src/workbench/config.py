"""
Configuration Module

Loads environment variables and provides configuration constants for the
evaluation run engine. Configured for fully local operation by default: an
OpenAI-compatible endpoint (Ollama) and a SQLite file under ./data.

==============================================================================
FEATURES CONFIGURED IN THIS MODULE:
==============================================================================

1. RETRY CONFIGURATION FOR RATE LIMITING (Feature: rate-limit-retry)
   - RETRY_MAX_ATTEMPTS: How many times to retry before giving up
   - RETRY_BASE_DELAY: Initial delay (seconds), doubles each retry
   - RETRY_MAX_DELAY: Maximum delay cap to prevent excessive waits

2. SCORING DEFAULTS (Feature: judge-scoring)
   - DEFAULT_PASS_THRESHOLD: used when an evaluation leaves pass_threshold unset
   - CRITERION_FAILED_MESSAGE: feedback recorded for a criterion the judge could not score

==============================================================================
"""

import os
from dotenv import load_dotenv

# Load .env file
load_dotenv()

# SQLite (local database)
SQLITE_DB_PATH = os.getenv("SQLITE_DB_PATH", os.path.join(os.path.dirname(__file__), "..", "..", "data", "workbench.db"))

# API
API_TITLE = os.getenv("API_TITLE", "Prompt Workbench API")
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))
API_DEBUG = os.getenv("API_DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# CORS
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")

# Model provider (local Ollama or any OpenAI-compatible endpoint)
# Ollama doesn't require a real key; "ollama" is the no-auth fallback.
LLM_BASE_URL = os.getenv("LLM_BASE_URL", "http://localhost:11434/v1")
LLM_API_KEY = os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY") or "ollama"
MODEL_CALL_TIMEOUT_SECONDS = float(os.getenv("MODEL_CALL_TIMEOUT_SECONDS", "300"))

# Substrings of model ids that accept image input. Attachments in "vision"
# file-processing mode are only sent to models matching one of these.
VISION_MODELS = [
    m.strip().lower()
    for m in os.getenv("VISION_MODELS", "gpt-4o,gpt-4.1,claude,gemini,llava,qwen2.5vl,llama3.2-vision").split(",")
    if m.strip()
]

# ==============================================================================
# RETRY CONFIGURATION FOR RATE LIMITING (Feature: rate-limit-retry)
# ==============================================================================
# With defaults (5 attempts, 2s base): waits 2s, 4s, 8s, 16s = 30s max
# ==============================================================================
RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", "5"))
RETRY_BASE_DELAY = float(os.getenv("RETRY_BASE_DELAY", "2.0"))
RETRY_MAX_DELAY = float(os.getenv("RETRY_MAX_DELAY", "60.0"))

# ==============================================================================
# SCORING DEFAULTS (Feature: judge-scoring)
# ==============================================================================
DEFAULT_PASS_THRESHOLD = float(os.getenv("DEFAULT_PASS_THRESHOLD", "0.6"))
CRITERION_FAILED_MESSAGE = "evaluation failed"
# Judge reply parser: "regex" (free-text replies) or "structured" (JSON-only replies)
SCORE_PARSER = os.getenv("SCORE_PARSER", "regex")

# Error message recorded on a run stopped by the user
ABORTED_MESSAGE = "evaluation aborted"
ORPHANED_RUN_MESSAGE = "server restarted while run was in progress"

# Upper bound on per-evaluation load locks kept by the session cache
SESSION_CACHE_LOCKS = int(os.getenv("SESSION_CACHE_LOCKS", "1000"))
