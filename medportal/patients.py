"""Patient lookups used by clinician-facing endpoints."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select

from medportal.db import Database
from medportal.db.models import users

SEARCH_LIMIT = 10

_PATIENT_COLUMNS = (users.c.id, users.c.username, users.c.email)


def find_patient(db: Database, patient_id: int) -> Optional[Dict[str, Any]]:
    """Return ``{id, username, email, phone_number}`` for a patient, or ``None``."""

    return db.query_one(
        select(*_PATIENT_COLUMNS, users.c.phone_number).where(
            users.c.id == patient_id, users.c.role == "patient"
        )
    )


def find_by_username(db: Database, username: str) -> Optional[Dict[str, Any]]:
    return db.query_one(
        select(*_PATIENT_COLUMNS, users.c.phone_number).where(
            users.c.username == username.strip(), users.c.role == "patient"
        )
    )


def search(db: Database, query: Optional[str], *, limit: int = SEARCH_LIMIT) -> List[Dict[str, Any]]:
    """Case-insensitive substring match on username or email.

    A blank query matches nothing rather than everything.
    """

    term = (query or "").strip().lower()
    if not term:
        return []
    # LIKE wildcards in user input match literally.
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    pattern = f"%{escaped}%"
    return db.query_many(
        select(*_PATIENT_COLUMNS)
        .where(
            users.c.role == "patient",
            or_(
                func.lower(users.c.username).like(pattern, escape="\\"),
                func.lower(users.c.email).like(pattern, escape="\\"),
            ),
        )
        .order_by(users.c.username)
        .limit(limit)
    )


__all__ = ["SEARCH_LIMIT", "find_by_username", "find_patient", "search"]
