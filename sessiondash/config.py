"""SessionDash Backend Configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default

# Project root (one level up from sessiondash/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Agent runtime writes one directory per project, one JSONL file per session
PROJECTS_DIR = Path(os.getenv("SESSIONDASH_PROJECTS_DIR", str(Path.home() / ".claude" / "projects")))

# Database (branch arena)
DB_PATH = os.getenv("SESSIONDASH_DB_PATH", str(PROJECT_ROOT / "data" / "sessiondash_branches.db"))

# MRU session history
HISTORY_PATH = Path(os.getenv("SESSIONDASH_HISTORY_PATH", str(PROJECT_ROOT / "data" / "session_history.json")))
HISTORY_STORAGE_KEY = "sessiondash-session-history"
HISTORY_LIMIT = _env_int("SESSIONDASH_HISTORY_LIMIT", 50)

# Status derivation reads only the end of the log
STATUS_TAIL_BYTES = _env_int("SESSIONDASH_STATUS_TAIL_BYTES", 64 * 1024)
STRICT_QUEUE_ACCOUNTING = _env_bool("SESSIONDASH_STRICT_QUEUE_ACCOUNTING", False)

# Branch labels are the first prompt of the archived continuation
BRANCH_LABEL_MAX_CHARS = 60

# Observability
OTEL_ENABLED = _env_bool("SESSIONDASH_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("SESSIONDASH_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("SESSIONDASH_OTEL_SERVICE_NAME", "sessiondash-backend")
PROM_PORT = _env_int("SESSIONDASH_PROM_PORT", 9464)

# Server settings
HOST = os.getenv("SESSIONDASH_HOST", "0.0.0.0")
PORT = int(os.getenv("SESSIONDASH_PORT", "8000"))

# Client façade
API_BASE_URL = os.getenv("SESSIONDASH_API_BASE_URL", f"http://127.0.0.1:{PORT}")
API_TIMEOUT_SECONDS = _env_int("SESSIONDASH_API_TIMEOUT_SECONDS", 30)

# CORS
FRONTEND_ORIGIN = os.getenv("SESSIONDASH_FRONTEND_ORIGIN", "http://localhost:3000")
