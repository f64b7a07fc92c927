"""JSON logging for the bot process.

While an update is being handled, every record carries which delivery it
came from (``update_id``), who sent it (``tg_id``) and whether it was a
message or a button press (``kind``), so one member's conversation can be
followed across lines without repeating ids in each log call.
"""

from __future__ import annotations
import json
import logging
import sys
import time
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class UpdateScope:
    update_id: int
    tg_id: Optional[int] = None
    kind: Optional[str] = None


_scope: ContextVar[Optional[UpdateScope]] = ContextVar("update_scope", default=None)


def bind_update(update_id: int, tg_id: Optional[int] = None, kind: Optional[str] = None) -> None:
    _scope.set(UpdateScope(update_id, tg_id, kind))


def clear_update() -> None:
    _scope.set(None)


def current_scope() -> Optional[UpdateScope]:
    return _scope.get()


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base = {
            "level": record.levelname,
            "ts": round(time.time(), 3),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        scope = _scope.get()
        if scope is not None:
            base["update_id"] = scope.update_id
            if scope.tg_id is not None:
                base["tg_id"] = scope.tg_id
            if scope.kind:
                base["kind"] = scope.kind
        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False)


def configure_logging(level: int | str = "INFO") -> logging.Logger:
    """Send root logging to stdout as JSON lines and return the ``clubbot`` logger."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    logging.basicConfig(level=level, handlers=[handler], force=True)
    # httpx logs every request URL at INFO, and the URL embeds the bot token
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logging.getLogger("clubbot")
