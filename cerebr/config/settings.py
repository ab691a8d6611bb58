# cerebr/config/settings.py

from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Tuple

from dotenv import load_dotenv

# Expose BASE_DIR for other modules
BASE_DIR = Path(__file__).resolve().parents[2]
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

DEFAULT_CHAT_COMPLETIONS_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_MISFILED_REASONING_MARKERS = ("<think>", "<thinking>")


@dataclass
class Settings:
    # Core OpenAI-compatible endpoint config
    openai_api_key: str
    openai_base_url: str = DEFAULT_CHAT_COMPLETIONS_URL
    openai_model: str = "gpt-4o"

    # Only used by non-streaming calls (title generation); streaming has no timeout
    openai_timeout_seconds: float = 60.0

    # Prompt shaping
    system_prompt: str = ""
    user_language: str = "en"

    # Storage
    db_path: str = str(BASE_DIR / "data" / "cerebr.db")
    session_id: str = "default"

    # Streaming / flushing knobs
    stream_throttle_ms: int = 100
    flush_budget_ms: float = 12.0
    flush_timeout_ms: float = 1000.0
    flush_max_rounds: int = 50
    max_stream_retries: int = 3

    # Misfiled reasoning heuristic (opt-in)
    detect_misfiled_reasoning: bool = False
    misfiled_reasoning_markers: Tuple[str, ...] = field(
        default_factory=lambda: DEFAULT_MISFILED_REASONING_MARKERS
    )

    auto_title: bool = True


def _parse_float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
        # safeguard: enforce positive
        return value if value > 0 else default
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


def _parse_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    return default


def _parse_list_env(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name, "")
    if not raw.strip():
        return default
    items = tuple(part.strip() for part in raw.split(",") if part.strip())
    return items or default


def load_settings(require_api_key: bool = True) -> Settings:
    """
    Load configuration from environment variables (and defaults).
    Raises a RuntimeError if the API key is required but missing.
    Also ensures the DB directory exists and normalizes the endpoint URL.
    """
    # Imported here so that the URL helper stays next to the HTTP client.
    from cerebr.clients.openai_client import normalize_chat_completions_url

    # --- API key ---
    api_key = os.getenv("OPENAI_API_KEY", "").strip()
    if require_api_key and not api_key:
        raise RuntimeError("OPENAI_API_KEY is not set in .env or environment")

    # --- Endpoint + model ---
    raw_base = os.getenv("OPENAI_BASE_URL", "").strip() or DEFAULT_CHAT_COMPLETIONS_URL
    base_url = normalize_chat_completions_url(raw_base) or DEFAULT_CHAT_COMPLETIONS_URL
    openai_model = os.getenv("OPENAI_MODEL", "gpt-4o").strip() or "gpt-4o"

    # --- DB path (optional override) ---
    default_db_path = BASE_DIR / "data" / "cerebr.db"
    db_path_env = os.getenv("CEREBR_DB_PATH", str(default_db_path)).strip() or str(default_db_path)
    db_path = Path(db_path_env)

    # Ensure data directory exists for DB
    db_path.parent.mkdir(parents=True, exist_ok=True)

    session_id = os.getenv("CEREBR_SESSION_ID", "default").strip() or "default"

    settings = Settings(
        openai_api_key=api_key,
        openai_base_url=base_url,
        openai_model=openai_model,
        openai_timeout_seconds=_parse_float_env("OPENAI_TIMEOUT_SECONDS", 60.0),
        system_prompt=os.getenv("CEREBR_SYSTEM_PROMPT", ""),
        user_language=os.getenv("CEREBR_USER_LANGUAGE", "en").strip() or "en",
        db_path=str(db_path),
        session_id=session_id,
        stream_throttle_ms=_parse_int_env("CEREBR_STREAM_THROTTLE_MS", 100, min_val=10, max_val=5000),
        flush_budget_ms=_parse_float_env("CEREBR_FLUSH_BUDGET_MS", 12.0),
        flush_timeout_ms=_parse_float_env("CEREBR_FLUSH_TIMEOUT_MS", 1000.0),
        flush_max_rounds=_parse_int_env("CEREBR_FLUSH_MAX_ROUNDS", 50, min_val=1, max_val=1000),
        max_stream_retries=_parse_int_env("CEREBR_MAX_STREAM_RETRIES", 3, min_val=0, max_val=10),
        detect_misfiled_reasoning=_parse_bool_env("CEREBR_DETECT_MISFILED_REASONING", False),
        misfiled_reasoning_markers=_parse_list_env(
            "CEREBR_MISFILED_REASONING_MARKERS", DEFAULT_MISFILED_REASONING_MARKERS
        ),
        auto_title=_parse_bool_env("CEREBR_AUTO_TITLE", True),
    )

    return settings
