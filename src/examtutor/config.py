# /examtutor/config.py
"""
Centralized configuration for the exam tutor service.
Includes collaborator endpoints, storage locations, quotas and timing knobs.
"""
import os
from pathlib import Path
from dotenv import load_dotenv
from .observability import configure_logging

# ==============================================================================
# ENVIRONMENT
# ==============================================================================
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return max(float(minimum), value)


# ==============================================================================
# GLOBAL CONFIGURATION
# ==============================================================================
# --- Backend Selection ---
USE_SUPABASE = _env_bool("USE_SUPABASE", False)    # True for the hosted backend, False for local SQLite + filesystem
SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_KEY = os.getenv("SUPABASE_KEY", "")

# --- AI Invocation ---
# Defaults to the exam-assistant edge function of the configured Supabase project.
AI_ENDPOINT_URL = os.getenv(
    "AI_ENDPOINT_URL",
    f"{SUPABASE_URL.rstrip('/')}/functions/v1/exam-assistant" if SUPABASE_URL else "http://127.0.0.1:54321/functions/v1/exam-assistant",
)
AI_API_KEY = os.getenv("AI_API_KEY", SUPABASE_KEY)
AI_PROVIDER = os.getenv("AI_PROVIDER", "gemini")
AI_TIMEOUT_S = _env_float("AI_TIMEOUT_S", 90.0, minimum=1.0)
QUESTION_IMAGE_TIMEOUT_S = _env_float("QUESTION_IMAGE_TIMEOUT_S", 20.0, minimum=1.0)

# --- Path Configuration ---
# Data directory is at ../../data relative to this file (src/examtutor/config.py)
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
_DATA_DIR = Path(os.getenv("DATA_DIR", str(_BASE_DIR / "data")))

DB_PATH = Path(os.getenv("DB_PATH", str(_DATA_DIR / "examtutor.sqlite")))
STORAGE_DIR = Path(os.getenv("STORAGE_DIR", str(_DATA_DIR / "object_storage")))
METRICS_DIR = Path(os.getenv("METRICS_DIR", str(_DATA_DIR / "logs")))

# --- Object Storage ---
EXAM_PAPER_BUCKET = os.getenv("EXAM_PAPER_BUCKET", "exam-papers")
MARKING_SCHEME_BUCKET = os.getenv("MARKING_SCHEME_BUCKET", "marking-schemes")
QUESTION_IMAGE_BUCKET = os.getenv("QUESTION_IMAGE_BUCKET", "exam-papers")
SIGNED_URL_TTL_S = _env_int("SIGNED_URL_TTL_S", 3600, minimum=60)
DEFAULT_SIGNED_URL_SECRET = "change-me"
SIGNED_URL_SECRET = os.getenv("SIGNED_URL_SECRET", DEFAULT_SIGNED_URL_SECRET)

# --- PDF Rendering ---
# Zoom factor applied to each page when rasterizing the full exam for fallback requests.
PDF_RENDER_ZOOM = _env_float("PDF_RENDER_ZOOM", 1.5, minimum=0.5)

# --- Conversation Persistence ---
PERSIST_MAX_ATTEMPTS = _env_int("PERSIST_MAX_ATTEMPTS", 3, minimum=1)
PERSIST_BACKOFF_S = _env_float("PERSIST_BACKOFF_S", 0.25, minimum=0.0)

# --- Quota ---
# Compare-and-set retries for the free tier paper counter.
QUOTA_CAS_ATTEMPTS = _env_int("QUOTA_CAS_ATTEMPTS", 3, minimum=1)

# --- Sessions ---
SESSION_CACHE_SIZE = _env_int("SESSION_CACHE_SIZE", 256, minimum=1)
# Calendar day boundaries for the "welcome back" message are evaluated in this zone.
TUTOR_TIMEZONE = os.getenv("TUTOR_TIMEZONE", "UTC")

# --- Create necessary directories ---
_DATA_DIR.mkdir(parents=True, exist_ok=True)
STORAGE_DIR.mkdir(parents=True, exist_ok=True)
METRICS_DIR.mkdir(parents=True, exist_ok=True)
LOG_PATH = Path(os.getenv("LOG_PATH", str(_DATA_DIR / "app.log")))
LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
configure_logging(LOG_PATH)
