from __future__ import annotations

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def dialect_name(db: Session) -> str:
    return db.get_bind().dialect.name


def dialect_insert(db: Session, model: Any):
    """``INSERT`` construct supporting ``ON CONFLICT`` for the session's bound dialect."""
    name = dialect_name(db)
    if name == "postgresql":
        return postgresql.insert(model)
    if name == "sqlite":
        return sqlite.insert(model)
    raise RuntimeError(f"Unsupported database dialect for upserts: {name}")
