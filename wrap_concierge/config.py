from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class Settings:
    """Configuration container for the model gateway, adapters, storage, and prompt limits."""
    gemini_api_key: str
    gemini_model: str
    database_path: Path
    resources_dir: Path
    prompts_dir: Path
    woo_store_url: str
    woo_consumer_key: str
    woo_consumer_secret: str
    resend_api_key: str
    email_from: str
    http_timeout_sec: float
    history_limit: int
    max_prompt_chars: int
    max_message_chars: int
    channel: str = "website"


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables and resolves filesystem paths.
    Dependencies: Uses os.getenv and BASE_DIR for default paths.
    Failure Modes: Non-numeric HISTORY_LIMIT/MAX_*/HTTP_TIMEOUT_SEC values raise ValueError.
    If Removed: App cannot wire the gateway, adapters, or store and fails at startup.
    Testing Notes: Verify defaults and overrides via monkeypatched environment variables.
    """
    # Resolve resource/database paths, then build Settings.
    resources_dir = os.getenv("RESOURCES_DIR")
    if resources_dir:
        resources_path = Path(resources_dir)
    else:
        resources_path = (BASE_DIR / "resources").resolve()

    database_path = os.getenv("DATABASE_PATH")
    if database_path:
        db_path = Path(database_path)
    else:
        db_path = (BASE_DIR / "data" / "concierge.db").resolve()

    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        database_path=db_path,
        resources_dir=resources_path,
        prompts_dir=(BASE_DIR / "prompts").resolve(),
        woo_store_url=os.getenv("WOO_STORE_URL", "").rstrip("/"),
        woo_consumer_key=os.getenv("WOO_CONSUMER_KEY", ""),
        woo_consumer_secret=os.getenv("WOO_CONSUMER_SECRET", ""),
        resend_api_key=os.getenv("RESEND_API_KEY", ""),
        email_from=os.getenv("EMAIL_FROM", "WePrintWraps <hello@weprintwraps.com>"),
        http_timeout_sec=float(os.getenv("HTTP_TIMEOUT_SEC", "10")),
        history_limit=int(os.getenv("HISTORY_LIMIT", "10")),
        max_prompt_chars=int(os.getenv("MAX_PROMPT_CHARS", "12000")),
        max_message_chars=int(os.getenv("MAX_MESSAGE_CHARS", "2000")),
        channel=os.getenv("CHAT_CHANNEL", "website"),
    )
