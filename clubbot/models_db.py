from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MembershipCode(Base):
    __tablename__ = "membership_codes"

    code: Mapped[str] = mapped_column(String(32), primary_key=True)
    allowed_uses: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    used_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Member(Base):
    __tablename__ = "members"

    tg_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    username: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    first_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    my_code: Mapped[Optional[str]] = mapped_column(String(16), unique=True, nullable=True)
    screening_status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    code_used: Mapped[Optional[str]] = mapped_column(ForeignKey("membership_codes.code"), nullable=True)


class ScreeningQuestion(Base):
    __tablename__ = "screening_questions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    q_text: Mapped[str] = mapped_column(Text, nullable=False)
    q_type: Mapped[str] = mapped_column(String(16), default="choice", nullable=False)
    options: Mapped[list] = mapped_column(JSON().with_variant(JSONB, "postgresql"), default=list)
    correct_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class ScreeningSession(Base):
    __tablename__ = "screening_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tg_id: Mapped[int] = mapped_column(ForeignKey("members.tg_id"), unique=True, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    result: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)


class ScreeningAnswer(Base):
    __tablename__ = "screening_answers"
    __table_args__ = (UniqueConstraint("session_id", "question_id", name="uq_answer_session_question"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_id: Mapped[int] = mapped_column(ForeignKey("screening_sessions.id"), index=True, nullable=False)
    question_id: Mapped[int] = mapped_column(ForeignKey("screening_questions.id"), nullable=False)
    answer_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    chosen_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    # Present for a correctness-based design; the scoring path never sets it.
    is_correct: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
