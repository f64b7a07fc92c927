"""Thin Telegram Bot API client plus keyboard builders."""

from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional
import httpx

logger = logging.getLogger(__name__)

API_BASE = "https://api.telegram.org"

BTN_REGISTER = "📝 Register"
BTN_MY_CODE = "🔑 My code"
BTN_SCREENING = "🧪 Screening"
BTN_WHOAMI = "👤 Status"
BTN_MEMBERS = "👥 Members"
BTN_CODES = "🎟 Codes"


class TelegramClient:
    """Sends replies through the Bot API.

    Delivery failures are logged and swallowed: the update has already been
    applied to storage, and the reply failing must not undo that.
    """

    def __init__(self, token: str, base_url: str = API_BASE, timeout: float = 10.0,
                 http: Optional[httpx.Client] = None) -> None:
        self._url = f"{base_url}/bot{token}"
        self._http = http or httpx.Client(timeout=timeout)

    def _call(self, method: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            r = self._http.post(f"{self._url}/{method}", json=payload)
            r.raise_for_status()
            data = r.json()
        except (httpx.HTTPError, ValueError):
            logger.exception("telegram %s failed", method)
            return None
        if not data.get("ok"):
            logger.error("telegram %s rejected: %s", method, data.get("description"))
            return None
        return data

    def send_message(self, chat_id: int, text: str, parse_mode: Optional[str] = None,
                     reply_markup: Optional[Dict[str, Any]] = None) -> None:
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        if reply_markup is not None:
            payload["reply_markup"] = reply_markup
        self._call("sendMessage", payload)

    def answer_callback_query(self, callback_id: str, text: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"callback_query_id": callback_id}
        if text:
            payload["text"] = text
        self._call("answerCallbackQuery", payload)

    def set_webhook(self, url: str, secret_token: str) -> bool:
        return self._call("setWebhook", {"url": url, "secret_token": secret_token}) is not None

    def close(self) -> None:
        self._http.close()


def reply_keyboard(is_admin: bool = False, invite_mode: bool = False) -> Dict[str, Any]:
    rows: List[List[Dict[str, str]]] = [
        [{"text": BTN_REGISTER}, {"text": BTN_MY_CODE}],
        [{"text": BTN_SCREENING}, {"text": BTN_WHOAMI}],
    ]
    if is_admin:
        admin_row = [{"text": BTN_MEMBERS}]
        if invite_mode:
            admin_row.append({"text": BTN_CODES})
        rows.append(admin_row)
    return {"keyboard": rows, "resize_keyboard": True, "is_persistent": True}


def answer_payload(question_id: int, index: int) -> str:
    return f"ans:{question_id}:{index}"


def parse_answer_payload(data: Optional[str]) -> Optional[tuple[int, int]]:
    if not data:
        return None
    parts = data.split(":")
    if len(parts) != 3 or parts[0] != "ans":
        return None
    try:
        return int(parts[1]), int(parts[2])
    except ValueError:
        return None


def answer_keyboard(question_id: int, options: List[str]) -> Dict[str, Any]:
    return {
        "inline_keyboard": [
            [{"text": label, "callback_data": answer_payload(question_id, i)}]
            for i, label in enumerate(options)
        ]
    }


_MARKDOWN_SPECIAL = "_*`["


def escape_markdown(text: str) -> str:
    """Escape user-supplied text for the legacy ``Markdown`` parse mode."""
    return "".join("\\" + ch if ch in _MARKDOWN_SPECIAL else ch for ch in text)
