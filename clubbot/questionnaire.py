from __future__ import annotations
import json
from pathlib import Path
from sqlalchemy import func, select
from sqlalchemy.orm import Session
from .models_db import ScreeningQuestion

_CATALOG_PATH = Path(__file__).resolve().parent / "screening_questions.json"

def load_catalog(path: Path | None = None) -> dict:
    return json.loads((path or _CATALOG_PATH).read_text(encoding="utf-8"))

def seed_questions(db: Session, catalog: dict | None = None) -> int:
    """Insert the bundled catalog if the question table is empty; returns rows added."""
    if db.scalar(select(func.count()).select_from(ScreeningQuestion)):
        return 0
    catalog = catalog or load_catalog()
    added = 0
    for q in catalog.get("questions", []):
        q_type = q.get("q_type", "choice")
        db.add(ScreeningQuestion(
            q_text=q["q_text"],
            q_type=q_type,
            options=list(q.get("options") or []) if q_type == "choice" else [],
            correct_index=q.get("correct_index"),
        ))
        added += 1
    db.commit()
    return added
