"""Rewrite member codes that do not match the A123456 format.

The bot does this at every startup as well; run this after bulk imports or
manual edits of the members table.
"""

from __future__ import annotations
from clubbot.codes import repair_all_codes
from clubbot.db import get_engine, Base
from clubbot import models_db  # registers table models
from sqlalchemy.orm import sessionmaker

engine = get_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

def main():
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        repaired = repair_all_codes(db)
    print(f"Repaired {repaired} member codes.")

if __name__ == "__main__":
    main()
