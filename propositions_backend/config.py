"""Shared environment configuration constants for the propositions backend."""
import os


def _to_bool(value) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


# --- Remote relational store (server side) ---
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./propositions_remote.db")

# --- Primary local store ---
LOCAL_STORE_URL = os.getenv("LOCAL_STORE_URL", "sqlite+aiosqlite:///./propositions_local.db")

# --- Mirrored file-tree store (unset = disabled) ---
MIRROR_DIR = os.getenv("MIRROR_DIR") or None

# --- Remote store client ---
REMOTE_STORE_URL = os.getenv("REMOTE_STORE_URL") or None
REMOTE_STORE_TIMEOUT_SECONDS = float(os.getenv("REMOTE_STORE_TIMEOUT_SECONDS", "30"))
REMOTE_STORE_TOKEN = os.getenv("REMOTE_STORE_TOKEN") or None

# When both mirror and primary hold current-schema data, pick the newer one.
SYNC_PREFER_NEWER = _to_bool(os.getenv("SYNC_PREFER_NEWER", "false"))

# --- Text generation (API key and default model are read at call time) ---
GROQ_BASE_URL = os.getenv("GROQ_BASE_URL", "https://api.groq.com/openai")
GROQ_TIMEOUT_SECONDS = float(os.getenv("GROQ_TIMEOUT_SECONDS", "60"))

# --- HTTP surface ---
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
