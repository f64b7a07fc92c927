import pytest
from sqlalchemy import func, select

from clubbot.models_db import Member, ScreeningAnswer, ScreeningQuestion, ScreeningSession
from clubbot.screening_engine import (
    Outcome,
    PendingTextAnswers,
    StartStatus,
    advance,
    compute_score,
    grade_for,
    next_question,
    record_choice,
    record_text,
    start_or_resume,
)


def add_member(db, tg_id=1, status="pending"):
    db.add(Member(tg_id=tg_id, my_code=f"A{tg_id:06d}", screening_status=status))
    db.commit()


def test_compute_score_is_positional():
    assert compute_score([]) == 0
    assert compute_score([0, 1, 4]) == 1 + 2 + 5


@pytest.mark.parametrize("score,grade", [
    (44, "A"), (40, "A"), (39, "B"), (35, "B"), (32, "B"),
    (31, "C"), (27, "C"), (25, "C"), (24, "D"), (10, "D"), (0, "D"),
])
def test_grade_bands(score, grade):
    assert grade_for(score)[0] == grade


def test_start_requires_registration(seeded_db):
    assert start_or_resume(seeded_db, 99).status is StartStatus.NOT_REGISTERED
    assert seeded_db.scalar(select(func.count()).select_from(ScreeningSession)) == 0


@pytest.mark.parametrize("status", ["passed", "failed", "B"])
def test_start_rejects_terminal_status(seeded_db, status):
    add_member(seeded_db, status=status)
    result = start_or_resume(seeded_db, 1)
    assert result.status is StartStatus.TERMINAL
    assert result.member_status == status
    assert seeded_db.scalar(select(func.count()).select_from(ScreeningSession)) == 0


def test_start_is_single_session_per_member(seeded_db):
    add_member(seeded_db)
    first = start_or_resume(seeded_db, 1)
    second = start_or_resume(seeded_db, 1)
    assert first.status is StartStatus.READY
    assert first.session.id == second.session.id
    assert seeded_db.scalar(select(func.count()).select_from(ScreeningSession)) == 1


def test_questions_follow_catalog_order_without_repeats(seeded_db):
    add_member(seeded_db)
    session = start_or_resume(seeded_db, 1).session
    asked = []
    while True:
        step = advance(seeded_db, session)
        if isinstance(step, Outcome):
            break
        asked.append(step.id)
        record_choice(seeded_db, session.id, step.id, 0)
    catalog = seeded_db.scalars(select(ScreeningQuestion.id).order_by(ScreeningQuestion.id)).all()
    assert asked == list(catalog)
    assert len(asked) == len(set(asked))


def test_duplicate_choice_is_ignored(seeded_db):
    add_member(seeded_db)
    session = start_or_resume(seeded_db, 1).session
    q = next_question(seeded_db, session.id)
    assert record_choice(seeded_db, session.id, q.id, 2) is True
    assert record_choice(seeded_db, session.id, q.id, 4) is False
    answers = seeded_db.scalars(select(ScreeningAnswer)).all()
    assert [(a.question_id, a.chosen_index) for a in answers] == [(q.id, 2)]
    assert next_question(seeded_db, session.id).id != q.id


@pytest.mark.parametrize("indices,score,grade", [
    ([4, 4, 4, 4, 4, 4, 4, 4, 3], 44, "A"),
    ([4, 4, 4, 3, 3, 3, 2, 2, 1], 35, "B"),
    ([3, 3, 3, 3, 3, 2, 1, 0, 0], 27, "C"),
    ([1, 0, 0, 0, 0, 0, 0, 0, 0], 10, "D"),
])
def test_finish_scores_and_mirrors_grade(seeded_db, indices, score, grade):
    add_member(seeded_db)
    session = start_or_resume(seeded_db, 1).session
    for idx in indices:
        q = advance(seeded_db, session)
        record_choice(seeded_db, session.id, q.id, idx)
    outcome = advance(seeded_db, session)
    assert isinstance(outcome, Outcome)
    assert (outcome.score, outcome.grade) == (score, grade)
    assert outcome.max_score == 45
    assert outcome.total_questions == 9

    seeded_db.expire_all()
    stored = seeded_db.get(ScreeningSession, session.id)
    assert stored.finished_at is not None
    assert (stored.score, stored.result) == (score, grade)
    assert seeded_db.get(Member, 1).screening_status == grade
    # a finished session keeps its recorded outcome
    again = advance(seeded_db, stored)
    assert (again.score, again.grade) == (score, grade)
    assert start_or_resume(seeded_db, 1).status is StartStatus.TERMINAL


def test_text_answers_do_not_score(seeded_db):
    seeded_db.add(ScreeningQuestion(q_text="Anything else?", q_type="text", options=[]))
    seeded_db.commit()
    add_member(seeded_db)
    session = start_or_resume(seeded_db, 1).session
    while True:
        step = advance(seeded_db, session)
        if isinstance(step, Outcome):
            break
        if step.q_type == "text":
            assert record_text(seeded_db, session.id, step.id, "I like chess")
        else:
            record_choice(seeded_db, session.id, step.id, 4)
    assert step.score == 45
    assert step.max_score == 50
    text_row = seeded_db.scalars(
        select(ScreeningAnswer).where(ScreeningAnswer.answer_text.is_not(None))
    ).one()
    assert text_row.answer_text == "I like chess"
    assert text_row.chosen_index is None
    assert text_row.is_correct is None


def test_pending_text_answers_clear_once():
    pending = PendingTextAnswers()
    pending.expect(7, session_id=1, question_id=10)
    assert 7 in pending
    assert pending.peek(7).question_id == 10
    slot = pending.pop(7)
    assert (slot.session_id, slot.question_id) == (1, 10)
    assert pending.pop(7) is None
    assert len(pending) == 0
