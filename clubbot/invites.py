"""Admin-issued invitation codes (``REGISTRATION_MODE=invite``).

Redemption runs as one transaction: the membership check, the locked code
row, and the ``used_count`` increment either all commit or all roll back.
The increment is additionally guarded by ``used_count < allowed_uses`` so two
redeemers racing for the last slot cannot both succeed even where the
backend ignores ``FOR UPDATE``.
"""

from __future__ import annotations
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from .codes import draw_invite_code, generate_unique_code
from .models_db import Member, MembershipCode

logger = logging.getLogger(__name__)


class RedeemStatus(str, Enum):
    OK = "ok"
    ALREADY_MEMBER = "already_member"
    INVALID = "invalid"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"


def _aware(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def mint_invite(
    db: Session,
    created_by: Optional[int],
    uses: int = 1,
    minutes: int = 0,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> MembershipCode:
    now = now or datetime.now(timezone.utc)
    obj = MembershipCode(
        code=draw_invite_code(),
        allowed_uses=max(1, int(uses)),
        used_count=0,
        expires_at=(now + timedelta(minutes=minutes)) if minutes and minutes > 0 else None,
        note=note or None,
        created_by=created_by,
        created_at=now,
        active=True,
    )
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj


def redeem_invite(
    db: Session,
    tg_id: int,
    code: str,
    username: Optional[str] = None,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> RedeemStatus:
    now = now or datetime.now(timezone.utc)
    code = code.strip().upper()
    try:
        if db.get(Member, tg_id) is not None:
            db.rollback()
            return RedeemStatus.ALREADY_MEMBER

        row = db.scalars(
            select(MembershipCode).where(MembershipCode.code == code).with_for_update()
        ).first()
        if row is None:
            db.rollback()
            return RedeemStatus.INVALID
        if not row.active:
            db.rollback()
            return RedeemStatus.INACTIVE
        if row.expires_at is not None and _aware(row.expires_at) < now:
            db.rollback()
            return RedeemStatus.EXPIRED
        if row.used_count >= row.allowed_uses:
            db.rollback()
            return RedeemStatus.EXHAUSTED

        db.add(Member(
            tg_id=tg_id,
            username=username,
            first_name=first_name,
            last_name=last_name,
            my_code=generate_unique_code(db),
            code_used=code,
        ))
        db.flush()
        res = db.execute(
            update(MembershipCode)
            .where(MembershipCode.code == code, MembershipCode.used_count < MembershipCode.allowed_uses)
            .values(used_count=MembershipCode.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            db.rollback()
            return RedeemStatus.EXHAUSTED
        db.commit()
    except IntegrityError:
        db.rollback()
        if db.get(Member, tg_id) is not None:
            return RedeemStatus.ALREADY_MEMBER
        raise
    except Exception:
        db.rollback()
        raise
    logger.info("tg_id=%s redeemed invitation %s", tg_id, code)
    return RedeemStatus.OK
