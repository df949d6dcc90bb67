"""Append-only audit trail.

Rows are only ever inserted.  There is no update or delete path in this
module or anywhere else in the application.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, insert, select

from medportal.auth import RequestContext
from medportal.db import Database
from medportal.db.models import audit_logs
from medportal.errors import ApiError
from medportal.time_utils import to_iso

logger = structlog.get_logger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


def _serialise_changes(changes: Any | None) -> str | None:
    """Return a JSON serialisation suitable for the audit log."""

    if changes is None:
        return None
    if isinstance(changes, str):
        return changes
    try:
        return json.dumps(changes, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(changes)


def _deserialise_changes(changes: Any) -> Any:
    """Best-effort conversion of stored change payloads back to rich types."""

    if changes in (None, ""):
        return None
    if isinstance(changes, (dict, list)):
        return changes
    try:
        return json.loads(changes)
    except (TypeError, ValueError):
        return changes


def append(
    db: Database,
    ctx: RequestContext,
    action: str,
    target_type: str,
    *,
    target_id: Optional[int] = None,
    patient_id: Optional[int] = None,
    record_id: Optional[int] = None,
    changes: Any | None = None,
) -> int:
    """Insert one audit entry and return its id."""

    return db.insert(
        insert(audit_logs).values(
            action=action,
            actor_id=ctx.user_id,
            actor_role=ctx.role,
            target_type=target_type,
            target_id=target_id,
            record_id=record_id,
            patient_id=patient_id,
            changes=_serialise_changes(changes),
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )
    )


def record(
    db: Database,
    ctx: RequestContext,
    action: str,
    target_type: str,
    **kwargs: Any,
) -> Optional[int]:
    """Append an entry after a primary action has already been committed.

    A failed append is logged and reported as ``None``; the primary action is
    not rolled back.
    """

    try:
        return append(db, ctx, action, target_type, **kwargs)
    except ApiError as exc:
        logger.error(
            "audit_log_write_failed",
            action=action,
            target_type=target_type,
            target_id=kwargs.get("target_id"),
            error=exc.message,
        )
        return None


def clamp_page(limit: Optional[int], offset: Optional[int]) -> Tuple[int, int]:
    if limit is None or limit <= 0:
        limit = DEFAULT_PAGE_SIZE
    return min(limit, MAX_PAGE_SIZE), max(offset or 0, 0)


def _serialise_entry(row: Dict[str, Any]) -> Dict[str, Any]:
    payload = dict(row)
    payload["changes"] = _deserialise_changes(row.get("changes"))
    payload["created_at"] = to_iso(row.get("created_at"))
    return payload


def list_entries(
    db: Database,
    actor_id: int,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> Tuple[List[Dict[str, Any]], int]:
    """Return ``(entries, total)`` for one actor, newest first."""

    limit, offset = clamp_page(limit, offset)
    rows = db.query_many(
        select(audit_logs)
        .where(audit_logs.c.actor_id == actor_id)
        .order_by(audit_logs.c.created_at.desc(), audit_logs.c.id.desc())
        .limit(limit)
        .offset(offset)
    )
    total_row = db.query_one(
        select(func.count().label("count")).select_from(audit_logs).where(audit_logs.c.actor_id == actor_id)
    )
    total = int(total_row["count"]) if total_row else 0
    return [_serialise_entry(row) for row in rows], total


__all__ = ["append", "clamp_page", "list_entries", "record"]
