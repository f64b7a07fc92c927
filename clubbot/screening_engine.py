from __future__ import annotations
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Union
import numpy as np
from sqlalchemy import func, insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from .models_db import Member, ScreeningAnswer, ScreeningQuestion, ScreeningSession

POINTS_PER_QUESTION = 5

# (min score, letter, label, explanation), highest band first.
GRADE_BANDS = [
    (40, "A", "Excellent", "Your answers show a strong, well-rounded foundation. You are ready for the advanced track."),
    (32, "B", "Good", "Solid foundation with a few areas to polish. The regular track is a good fit."),
    (25, "C", "Developing", "You have the basics in place; a guided track will help you close the gaps."),
]
FALLBACK_GRADE = ("D", "Needs foundational work", "Start with the foundations programme before moving on to the main tracks.")

# Statuses that close the screening for good; "passed"/"failed" predate letter grades.
TERMINAL_STATUSES = frozenset({"passed", "failed", "A", "B", "C", "D"})

Q_CHOICE = "choice"
Q_TEXT = "text"


class StartStatus(str, Enum):
    NOT_REGISTERED = "not_registered"
    TERMINAL = "terminal"
    READY = "ready"


@dataclass(frozen=True)
class StartResult:
    status: StartStatus
    session: Optional[ScreeningSession] = None
    member_status: Optional[str] = None


@dataclass(frozen=True)
class Outcome:
    score: int
    grade: str
    label: str
    explanation: str
    max_score: int
    total_questions: int


def compute_score(indices: Iterable[int]) -> int:
    """Positional score: option k (0-based) is worth k + 1 points."""
    arr = np.asarray(list(indices), dtype=np.int64)
    if arr.size == 0:
        return 0
    return int(np.sum(arr + 1))


def grade_for(score: int) -> tuple[str, str, str]:
    for threshold, letter, label, explanation in GRADE_BANDS:
        if score >= threshold:
            return letter, label, explanation
    return FALLBACK_GRADE


def list_questions(db: Session) -> List[ScreeningQuestion]:
    return list(db.scalars(select(ScreeningQuestion).order_by(ScreeningQuestion.id.asc())).all())


def count_questions(db: Session) -> int:
    return int(db.scalar(select(func.count()).select_from(ScreeningQuestion)) or 0)


def answered_question_ids(db: Session, session_id: int) -> Set[int]:
    return set(
        db.scalars(select(ScreeningAnswer.question_id).where(ScreeningAnswer.session_id == session_id)).all()
    )


def next_question(db: Session, session_id: int) -> Optional[ScreeningQuestion]:
    answered = answered_question_ids(db, session_id)
    for q in list_questions(db):
        if q.id not in answered:
            return q
    return None


def get_session_for(db: Session, tg_id: int) -> Optional[ScreeningSession]:
    return db.scalars(select(ScreeningSession).where(ScreeningSession.tg_id == tg_id)).first()


def start_or_resume(db: Session, tg_id: int, now: Optional[datetime] = None) -> StartResult:
    # The member row lock serialises concurrent starts from the same account.
    member = db.scalars(select(Member).where(Member.tg_id == tg_id).with_for_update()).first()
    if member is None:
        db.rollback()
        return StartResult(StartStatus.NOT_REGISTERED)
    if member.screening_status in TERMINAL_STATUSES:
        status = member.screening_status
        db.rollback()
        return StartResult(StartStatus.TERMINAL, member_status=status)

    session = get_session_for(db, tg_id)
    if session is not None and session.finished_at is not None:
        result = session.result
        db.rollback()
        return StartResult(StartStatus.TERMINAL, session=session, member_status=result)
    if session is None:
        session = ScreeningSession(tg_id=tg_id, started_at=now or datetime.now(timezone.utc), score=0)
        db.add(session)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            session = get_session_for(db, tg_id)
            if session is None:
                raise
    else:
        db.commit()
    return StartResult(StartStatus.READY, session=session, member_status=member.screening_status)


def _insert_ignore(db: Session, values: dict):
    dialect = db.get_bind().dialect.name
    keys = ["session_id", "question_id"]
    if dialect == "postgresql":
        return pg_insert(ScreeningAnswer).values(**values).on_conflict_do_nothing(index_elements=keys)
    if dialect == "sqlite":
        return sqlite_insert(ScreeningAnswer).values(**values).on_conflict_do_nothing(index_elements=keys)
    return insert(ScreeningAnswer).values(**values).prefix_with("IGNORE")


def record_choice(db: Session, session_id: int, question_id: int, index: int) -> bool:
    """Store a multiple-choice answer; False if the question was already answered."""
    res = db.execute(_insert_ignore(db, {
        "session_id": session_id,
        "question_id": question_id,
        "chosen_index": int(index),
    }))
    db.commit()
    return res.rowcount == 1


def record_text(db: Session, session_id: int, question_id: int, text: str) -> bool:
    res = db.execute(_insert_ignore(db, {
        "session_id": session_id,
        "question_id": question_id,
        "answer_text": text,
    }))
    db.commit()
    return res.rowcount == 1


def _outcome(score: int, total: int) -> Outcome:
    letter, label, explanation = grade_for(score)
    return Outcome(
        score=score,
        grade=letter,
        label=label,
        explanation=explanation,
        max_score=total * POINTS_PER_QUESTION,
        total_questions=total,
    )


def finish(db: Session, session: ScreeningSession, now: Optional[datetime] = None) -> Outcome:
    indices = db.scalars(
        select(ScreeningAnswer.chosen_index).where(
            ScreeningAnswer.session_id == session.id,
            ScreeningAnswer.chosen_index.is_not(None),
        )
    ).all()
    outcome = _outcome(compute_score(indices), count_questions(db))
    session.score = outcome.score
    session.result = outcome.grade
    session.finished_at = now or datetime.now(timezone.utc)
    member = db.get(Member, session.tg_id)
    if member is not None:
        member.screening_status = outcome.grade
    db.commit()
    return outcome


def stored_outcome(db: Session, session: ScreeningSession) -> Outcome:
    total = count_questions(db)
    bands = {letter: (label, explanation) for _, letter, label, explanation in GRADE_BANDS}
    bands[FALLBACK_GRADE[0]] = FALLBACK_GRADE[1:]
    # the letter recorded at finish time wins over a recomputation
    letter = session.result or grade_for(session.score)[0]
    label, explanation = bands.get(letter, ("", ""))
    return Outcome(session.score, letter, label, explanation, total * POINTS_PER_QUESTION, total)


def advance(db: Session, session: ScreeningSession) -> Union[ScreeningQuestion, Outcome]:
    """Return the next question to ask, or finish the session and return its outcome."""
    if session.finished_at is not None:
        return stored_outcome(db, session)
    q = next_question(db, session.id)
    if q is not None:
        return q
    return finish(db, session)


@dataclass(frozen=True)
class PendingText:
    session_id: int
    question_id: int


class PendingTextAnswers:
    """Which members' next plain-text message answers a free-text question.

    Lives in process memory only. Losing it on restart just means the member
    re-triggers the question; the session row is the source of truth.
    """

    def __init__(self) -> None:
        self._slots: Dict[int, PendingText] = {}
        self._lock = threading.Lock()

    def expect(self, tg_id: int, session_id: int, question_id: int) -> None:
        with self._lock:
            self._slots[tg_id] = PendingText(session_id, question_id)

    def peek(self, tg_id: int) -> Optional[PendingText]:
        with self._lock:
            return self._slots.get(tg_id)

    def pop(self, tg_id: int) -> Optional[PendingText]:
        with self._lock:
            return self._slots.pop(tg_id, None)

    def discard(self, tg_id: int) -> None:
        self.pop(tg_id)

    def __contains__(self, tg_id: object) -> bool:
        with self._lock:
            return tg_id in self._slots

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)
