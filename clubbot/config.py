from __future__ import annotations
import os
from dotenv import load_dotenv

load_dotenv()


def _db_url(raw: str) -> str:
    # Render/Heroku hand out postgres:// URLs; SQLAlchemy wants an explicit driver.
    if raw.startswith("postgres://"):
        return "postgresql+psycopg://" + raw[len("postgres://"):]
    if raw.startswith("postgresql://"):
        return "postgresql+psycopg://" + raw[len("postgresql://"):]
    return raw


def parse_admin_ids(raw: str) -> frozenset[int]:
    ids = set()
    for part in raw.split(","):
        part = part.strip()
        if part.lstrip("-").isdigit():
            ids.add(int(part))
    return frozenset(ids)


TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "").strip()
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "change-me").strip() or "change-me"
PORT = int(os.getenv("PORT", "10000"))
DATABASE_URL = _db_url(os.getenv("DATABASE_URL", "").strip())
ADMIN_IDS = parse_admin_ids(os.getenv("ADMIN_IDS", ""))
APP_URL = (os.getenv("APP_URL") or os.getenv("RENDER_EXTERNAL_URL") or "").strip().rstrip("/") or None
REGISTRATION_MODE = os.getenv("REGISTRATION_MODE", "open").strip().lower()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()

DEFAULT_WEBHOOK_SECRET = "change-me"
MODES = ("open", "invite")


def missing_settings() -> list[str]:
    missing = []
    if not TELEGRAM_BOT_TOKEN:
        missing.append("TELEGRAM_BOT_TOKEN")
    if not DATABASE_URL:
        missing.append("DATABASE_URL")
    return missing


def require_settings() -> None:
    missing = missing_settings()
    if missing:
        raise RuntimeError(f"Missing env vars: {', '.join(missing)}")
    if REGISTRATION_MODE not in MODES:
        raise RuntimeError(f"REGISTRATION_MODE must be one of {MODES}, got {REGISTRATION_MODE!r}")
