# historia/config/settings.py

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Expose BASE_DIR for other modules
BASE_DIR = Path(__file__).resolve().parents[2]
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

CONFIG_DIR = BASE_DIR / "historia" / "config"
PERSONAS_PATH = CONFIG_DIR / "personas.json"
GUIDELINES_PATH = CONFIG_DIR / "persona_guidelines.txt"

DEFAULT_BASE_URL = "https://api.groq.com/openai/v1"
DEFAULT_MODEL = "llama-3.1-8b-instant"

ALLOWED_STORES = {"sqlite", "supabase"}


@dataclass
class Settings:
    # Completion API
    api_key: str
    base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_MODEL

    # Used instead of `model` when a turn carries an image; None keeps `model`
    vision_model: Optional[str] = None

    temperature: float = 0.7
    max_tokens: int = 400
    timeout_seconds: float = 30.0

    # Minimum spacing between two completion calls, process-wide
    min_request_interval: float = 0.5

    # Rolling context window, in (user, assistant) pairs
    history_pairs: int = 10

    # Persistence
    store: str = "sqlite"
    db_path: str = str(BASE_DIR / "historia" / "data" / "historia.db")
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None

    personas_path: str = str(PERSONAS_PATH)


def _parse_float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
        # safeguard: enforce non-negative
        return value if value >= 0 else default
    except ValueError:
        return default


def _parse_int_env(name: str, default: int, min_val: int = 0, max_val: int = 10) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
        # safeguard: clamp into sane range
        return max(min_val, min(max_val, value))
    except ValueError:
        return default


def _optional_env(name: str) -> Optional[str]:
    raw = os.getenv(name, "").strip()
    return raw or None


def load_settings() -> Settings:
    """
    Load configuration from environment variables (and defaults).
    Raises a RuntimeError if required settings are missing.
    Also ensures the SQLite directory exists when that store is selected.
    """
    # --- Required: API key ---
    api_key = os.getenv("GROQ_API_KEY", "").strip()
    if not api_key:
        raise RuntimeError("GROQ_API_KEY is not set in .env or environment")

    base_url = os.getenv("HISTORIA_BASE_URL", DEFAULT_BASE_URL).strip() or DEFAULT_BASE_URL
    model = os.getenv("HISTORIA_MODEL", DEFAULT_MODEL).strip() or DEFAULT_MODEL
    vision_model = _optional_env("HISTORIA_VISION_MODEL")

    # --- Generation knobs ---
    temperature = _parse_float_env("HISTORIA_TEMPERATURE", 0.7)
    max_tokens = _parse_int_env("HISTORIA_MAX_TOKENS", 400, min_val=16, max_val=8192)
    timeout_seconds = _parse_float_env("HISTORIA_TIMEOUT_SECONDS", 30.0) or 30.0
    min_interval = _parse_float_env("HISTORIA_MIN_REQUEST_INTERVAL", 0.5)
    history_pairs = _parse_int_env("HISTORIA_HISTORY_PAIRS", 10, min_val=0, max_val=100)

    # --- Store selection (normalized + safeguarded) ---
    store = os.getenv("HISTORIA_STORE", "sqlite").strip().lower() or "sqlite"
    if store not in ALLOWED_STORES:
        # Safeguard: fall back to the local store if an unknown backend is configured
        store = "sqlite"

    supabase_url = _optional_env("SUPABASE_URL")
    supabase_key = _optional_env("SUPABASE_KEY")
    if store == "supabase" and not (supabase_url and supabase_key):
        raise RuntimeError("HISTORIA_STORE=supabase requires SUPABASE_URL and SUPABASE_KEY")

    # --- DB path (optional override) ---
    default_db_path = BASE_DIR / "historia" / "data" / "historia.db"
    db_path_env = os.getenv("HISTORIA_DB_PATH", str(default_db_path)).strip() or str(default_db_path)
    db_path = Path(db_path_env)
    if store == "sqlite":
        # Ensure data directory exists for DB
        db_path.parent.mkdir(parents=True, exist_ok=True)

    personas_path = os.getenv("HISTORIA_PERSONAS_PATH", str(PERSONAS_PATH)).strip() or str(PERSONAS_PATH)

    return Settings(
        api_key=api_key,
        base_url=base_url,
        model=model,
        vision_model=vision_model,
        temperature=temperature,
        max_tokens=max_tokens,
        timeout_seconds=timeout_seconds,
        min_request_interval=min_interval,
        history_pairs=history_pairs,
        store=store,
        db_path=str(db_path),
        supabase_url=supabase_url,
        supabase_key=supabase_key,
        personas_path=personas_path,
    )
