import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from clubbot.bot import BotContext, handle_update
from clubbot.db import Base
from clubbot import models_db  # registers table models
from clubbot.models_api import Update
from clubbot.questionnaire import seed_questions

ADMIN_ID = 1000
USER_ID = 2001
OTHER_ID = 2002


class FakeMessenger:
    """Records everything the bot would have sent."""

    def __init__(self):
        self.sent = []
        self.callbacks = []

    def send_message(self, chat_id, text, parse_mode=None, reply_markup=None):
        self.sent.append({"chat_id": chat_id, "text": text, "parse_mode": parse_mode, "reply_markup": reply_markup})

    def answer_callback_query(self, callback_id, text=None):
        self.callbacks.append(callback_id)

    @property
    def last(self):
        return self.sent[-1]

    def clear(self):
        self.sent.clear()
        self.callbacks.clear()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    with session_factory() as s:
        yield s


@pytest.fixture
def seeded_db(db):
    seed_questions(db)
    return db


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def ctx(messenger):
    return BotContext(admin_ids=frozenset({ADMIN_ID}), mode="open", messenger=messenger)


@pytest.fixture
def invite_ctx(messenger):
    return BotContext(admin_ids=frozenset({ADMIN_ID}), mode="invite", messenger=messenger)


_update_ids = iter(range(1, 1_000_000))


def message_update(tg_id, text, username=None):
    return Update.model_validate({
        "update_id": next(_update_ids),
        "message": {
            "message_id": 1,
            "from": {"id": tg_id, "is_bot": False, "first_name": "Test", "username": username},
            "chat": {"id": tg_id, "type": "private"},
            "date": 0,
            "text": text,
        },
    })


def callback_update(tg_id, data):
    return Update.model_validate({
        "update_id": next(_update_ids),
        "callback_query": {
            "id": f"cq-{tg_id}",
            "from": {"id": tg_id, "is_bot": False, "first_name": "Test"},
            "message": {"message_id": 2, "chat": {"id": tg_id, "type": "private"}, "date": 0},
            "data": data,
        },
    })


@pytest.fixture
def send(db, ctx):
    def _send(tg_id, text, context=None):
        handle_update(message_update(tg_id, text), db, context or ctx)
    return _send


@pytest.fixture
def click(db, ctx):
    def _click(tg_id, data, context=None):
        handle_update(callback_update(tg_id, data), db, context or ctx)
    return _click
