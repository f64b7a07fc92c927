"""Member code allocation and repair.

A member code is one uppercase letter followed by six digits (``A123456``).
Codes are unique across ``members.my_code``; rows holding anything else are
rewritten by :func:`ensure_code_format` on read and by :func:`repair_all_codes`
at startup.
"""

from __future__ import annotations
import logging
import re
import secrets
import string
from typing import Callable, Optional
from sqlalchemy import select
from sqlalchemy.orm import Session
from .models_db import Member

logger = logging.getLogger(__name__)

CODE_RE = re.compile(r"^[A-Z][0-9]{6}$")
MAX_ATTEMPTS = 6

# Invitation codes avoid look-alike characters (0/O, 1/I).
INVITE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
INVITE_LENGTH = 10


def draw_code() -> str:
    return secrets.choice(string.ascii_uppercase) + "".join(
        secrets.choice(string.digits) for _ in range(6)
    )


def draw_invite_code(length: int = INVITE_LENGTH) -> str:
    return "".join(secrets.choice(INVITE_ALPHABET) for _ in range(length))


def is_valid_code(code: Optional[str]) -> bool:
    return bool(code) and CODE_RE.match(code) is not None


def code_exists(db: Session, code: str) -> bool:
    return db.scalar(select(Member.tg_id).where(Member.my_code == code).limit(1)) is not None


def generate_unique_code(
    db: Session,
    attempts: int = MAX_ATTEMPTS,
    draw: Callable[[], str] = draw_code,
) -> str:
    """Return a code not present in ``members``.

    After ``attempts`` collisions a fresh candidate is returned unchecked; the
    code space holds 26 million values, so this only matters if the table is
    close to full or the random source is broken.
    """
    for _ in range(attempts):
        candidate = draw()
        if not code_exists(db, candidate):
            return candidate
    logger.warning("code allocation collided %d times, returning unchecked candidate", attempts)
    return draw()


def ensure_code_format(db: Session, tg_id: int) -> Optional[str]:
    """Return the member's code, replacing it first if it is malformed.

    Returns None when the member does not exist.
    """
    member = db.get(Member, tg_id)
    if member is None:
        return None
    if is_valid_code(member.my_code):
        return member.my_code
    old = member.my_code
    member.my_code = generate_unique_code(db)
    db.commit()
    logger.info("repaired code for tg_id=%s (was %r)", tg_id, old)
    return member.my_code


def repair_all_codes(db: Session) -> int:
    repaired = 0
    for member in db.scalars(select(Member).order_by(Member.tg_id)).all():
        if is_valid_code(member.my_code):
            continue
        member.my_code = generate_unique_code(db)
        # flush so the next existence check sees this allocation
        db.flush()
        repaired += 1
    db.commit()
    return repaired
