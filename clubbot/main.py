from __future__ import annotations
import logging
from typing import Optional
from fastapi import Body, FastAPI, Header, HTTPException, Depends
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from . import config
from .bot import BotContext, handle_update
from .codes import repair_all_codes
from .db import init_db, get_session, Base, get_engine
from . import models_db  # registers table models
from .log import configure_logging
from .models_api import Update
from .questionnaire import seed_questions
from .telegram import TelegramClient

logger = logging.getLogger("clubbot")

app = FastAPI(title="Membership Club Bot", version="1.0")

_context: Optional[BotContext] = None

def get_context() -> BotContext:
    if _context is None:
        raise RuntimeError("bot context is not initialised")
    return _context

def check_secret(secret: str, header_token: Optional[str]) -> None:
    if secret != config.WEBHOOK_SECRET:
        raise HTTPException(status_code=404, detail="Not found")
    if header_token != config.WEBHOOK_SECRET:
        raise HTTPException(status_code=401, detail="Invalid secret token")

@app.on_event("startup")
def on_startup():
    global _context
    configure_logging(config.LOG_LEVEL)
    config.require_settings()
    if config.WEBHOOK_SECRET == config.DEFAULT_WEBHOOK_SECRET:
        logger.warning("WEBHOOK_SECRET is the default placeholder; set a real secret")

    init_db()
    engine = get_engine()
    Base.metadata.create_all(bind=engine)

    from .db import SessionLocal
    with SessionLocal() as db:
        seeded = seed_questions(db)
        if seeded:
            logger.info("seeded %d screening questions", seeded)
        repaired = repair_all_codes(db)
        logger.info("code repair finished, %d member codes rewritten", repaired)

    client = TelegramClient(config.TELEGRAM_BOT_TOKEN)
    _context = BotContext(admin_ids=config.ADMIN_IDS, mode=config.REGISTRATION_MODE, messenger=client)

    if not config.APP_URL:
        logger.info("service started, no public URL yet; webhook not registered")
        return
    url = f"{config.APP_URL}/webhook/{config.WEBHOOK_SECRET}"
    if client.set_webhook(url, config.WEBHOOK_SECRET):
        logger.info("webhook set to %s/webhook/***", config.APP_URL)
    else:
        logger.error("setWebhook failed for %s", config.APP_URL)

@app.get("/", response_class=PlainTextResponse)
def health():
    return "OK"

@app.post("/webhook/{secret}")
def webhook(
    secret: str,
    payload: dict = Body(...),
    db: Session = Depends(get_session),
    ctx: BotContext = Depends(get_context),
    x_telegram_bot_api_secret_token: Optional[str] = Header(default=None),
):
    check_secret(secret, x_telegram_bot_api_secret_token)
    try:
        update = Update.model_validate(payload)
    except ValidationError:
        # acknowledge anyway so Telegram does not redeliver it
        logger.warning("ignoring malformed update", exc_info=True)
        return {"ok": True}
    handle_update(update, db, ctx)
    return {"ok": True}

def run() -> None:
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
