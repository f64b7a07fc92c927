from __future__ import annotations
from typing import Optional
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from .codes import generate_unique_code
from .models_db import Member, MembershipCode

def get_member(db: Session, tg_id: int) -> Member | None:
    return db.get(Member, tg_id)

def get_member_by_code(db: Session, code: str) -> Member | None:
    return db.scalars(select(Member).where(Member.my_code == code)).first()

def count_members(db: Session) -> int:
    return int(db.scalar(select(func.count()).select_from(Member)) or 0)

def count_members_by_status(db: Session) -> dict[str, int]:
    rows = db.execute(
        select(Member.screening_status, func.count()).group_by(Member.screening_status)
    ).all()
    return {status: int(n) for status, n in rows}

def create_member(
    db: Session,
    tg_id: int,
    username: Optional[str],
    first_name: Optional[str],
    last_name: Optional[str],
    my_code: str,
    code_used: Optional[str] = None,
) -> Member:
    obj = Member(
        tg_id=tg_id,
        username=username,
        first_name=first_name,
        last_name=last_name,
        my_code=my_code,
        code_used=code_used,
    )
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj

def register_member(
    db: Session,
    tg_id: int,
    username: Optional[str] = None,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
) -> tuple[Member, bool]:
    """Create the member with a fresh code; returns (member, created)."""
    existing = db.get(Member, tg_id)
    if existing is not None:
        return existing, False
    code = generate_unique_code(db)
    try:
        return create_member(db, tg_id, username, first_name, last_name, code), True
    except IntegrityError:
        # a concurrent /register from the same account won the insert
        db.rollback()
        existing = db.get(Member, tg_id)
        if existing is None:
            raise
        return existing, False

def list_active_codes(db: Session, limit: int = 20) -> list[MembershipCode]:
    return list(
        db.scalars(
            select(MembershipCode)
            .where(MembershipCode.active == True)
            .order_by(MembershipCode.created_at.desc())
            .limit(limit)
        ).all()
    )

def revoke_invite(db: Session, code: str) -> bool:
    res = db.execute(
        update(MembershipCode).where(MembershipCode.code == code).values(active=False)
    )
    db.commit()
    return res.rowcount > 0
