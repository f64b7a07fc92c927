from __future__ import annotations
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from .config import DATABASE_URL

class Base(DeclarativeBase):
    pass

def get_engine(url: str | None = None):
    url = url or DATABASE_URL
    if not url:
        raise RuntimeError("DATABASE_URL is not set")
    if url.startswith("sqlite"):
        return create_engine(url, future=True)
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        future=True,
    )

ENGINE = None
SessionLocal = None

def init_db(url: str | None = None):
    global ENGINE, SessionLocal
    ENGINE = get_engine(url)
    SessionLocal = sessionmaker(bind=ENGINE, autoflush=False, autocommit=False, future=True)
    return ENGINE

def get_session():
    if SessionLocal is None:
        init_db()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
