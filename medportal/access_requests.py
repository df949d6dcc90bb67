"""Clinician to patient access grants.

Each (clinician, patient) pair has at most one row.  Its status moves from
``pending`` to either ``approved`` or ``rejected`` exactly once, and only the
named patient can make that move.  Callers that mutate records re-derive the
grant from the row on every call via :func:`require_approved`.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import insert, select, update

from medportal import audit
from medportal.auth import RequestContext
from medportal.db import Database
from medportal.db.models import access_requests, users
from medportal.errors import (
    ConflictError,
    ConstraintViolationError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from medportal.notifications import SmsNotifier, notify_best_effort
from medportal.patients import find_patient
from medportal.time_utils import to_iso, utc_now

logger = structlog.get_logger(__name__)

STATUS_NONE = "none"
STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"

_TRANSITIONS = {
    STATUS_APPROVED: ("access_approved", "access_approved"),
    STATUS_REJECTED: ("access_rejected", "access_rejected"),
}


def _serialise(row: Dict[str, Any]) -> Dict[str, Any]:
    payload = dict(row)
    for key in ("created_at", "updated_at"):
        if key in payload:
            payload[key] = to_iso(payload[key])
    return payload


def status_of(db: Database, clinician_id: int, patient_id: int) -> str:
    row = db.query_one(
        select(access_requests.c.status).where(
            access_requests.c.clinician_id == clinician_id,
            access_requests.c.patient_id == patient_id,
        )
    )
    return row["status"] if row else STATUS_NONE


def require_approved(db: Database, clinician_id: int, patient_id: int) -> None:
    if status_of(db, clinician_id, patient_id) != STATUS_APPROVED:
        raise ForbiddenError("Access not approved. Submit an access request first.")


def submit(
    db: Database,
    notifier: Optional[SmsNotifier],
    ctx: RequestContext,
    patient_id: Optional[int],
    reason: Optional[str],
) -> Dict[str, Any]:
    """Open a pending request from the calling clinician to ``patient_id``."""

    reason = (reason or "").strip()
    if not patient_id or not reason:
        raise ValidationError("Missing required fields: patient_id, reason")

    patient = find_patient(db, patient_id)
    if not patient:
        raise NotFoundError("Patient not found")

    if status_of(db, ctx.user_id, patient_id) != STATUS_NONE:
        raise ConflictError("Access request already exists for this patient")

    try:
        request_id = db.insert(
            insert(access_requests).values(
                clinician_id=ctx.user_id,
                patient_id=patient_id,
                status=STATUS_PENDING,
                reason=reason,
            )
        )
    except ConstraintViolationError as exc:
        raise ConflictError("Access request already exists for this patient") from exc

    audit.record(
        db,
        ctx,
        "access_request_submitted",
        "access_request",
        target_id=request_id,
        patient_id=patient_id,
    )
    notify_best_effort(notifier, patient.get("phone_number"), "access_request", ctx.username)
    logger.info("access_request_submitted", request_id=request_id, patient_id=patient_id)

    row = db.query_one(
        select(access_requests.c.id, access_requests.c.status, access_requests.c.created_at).where(
            access_requests.c.id == request_id
        )
    )
    return _serialise(row or {"id": request_id, "status": STATUS_PENDING})


def _transition(
    db: Database,
    notifier: Optional[SmsNotifier],
    ctx: RequestContext,
    request_id: int,
    target: str,
) -> Dict[str, Any]:
    row = db.query_one(
        select(access_requests.c.id, access_requests.c.clinician_id, access_requests.c.status).where(
            access_requests.c.id == request_id,
            access_requests.c.patient_id == ctx.user_id,
        )
    )
    if not row:
        raise NotFoundError("Access request not found")
    if row["status"] != STATUS_PENDING:
        raise ConflictError("Access request is not pending")

    changed = db.execute(
        update(access_requests)
        .where(
            access_requests.c.id == request_id,
            access_requests.c.status == STATUS_PENDING,
        )
        .values(status=target, updated_at=utc_now())
    )
    if changed == 0:
        # Another request resolved it between the read and the guarded update.
        raise ConflictError("Access request is not pending")

    action, kind = _TRANSITIONS[target]
    audit.record(
        db,
        ctx,
        action,
        "access_request",
        target_id=request_id,
        patient_id=ctx.user_id,
    )
    clinician = db.query_one(select(users.c.phone_number).where(users.c.id == row["clinician_id"]))
    notify_best_effort(notifier, (clinician or {}).get("phone_number"), kind, ctx.username)
    logger.info("access_request_resolved", request_id=request_id, status=target)
    return {"id": request_id, "status": target}


def approve(
    db: Database, notifier: Optional[SmsNotifier], ctx: RequestContext, request_id: int
) -> Dict[str, Any]:
    return _transition(db, notifier, ctx, request_id, STATUS_APPROVED)


def reject(
    db: Database, notifier: Optional[SmsNotifier], ctx: RequestContext, request_id: int
) -> Dict[str, Any]:
    return _transition(db, notifier, ctx, request_id, STATUS_REJECTED)


def list_for_patient(db: Database, patient_id: int) -> List[Dict[str, Any]]:
    rows = db.query_many(
        select(
            access_requests.c.id,
            access_requests.c.clinician_id,
            access_requests.c.status,
            access_requests.c.reason,
            access_requests.c.created_at,
            access_requests.c.updated_at,
            users.c.username.label("clinician_name"),
            users.c.email.label("clinician_email"),
        )
        .select_from(access_requests.join(users, access_requests.c.clinician_id == users.c.id))
        .where(access_requests.c.patient_id == patient_id)
        .order_by(access_requests.c.created_at.desc(), access_requests.c.id.desc())
    )
    return [_serialise(row) for row in rows]


__all__ = [
    "STATUS_APPROVED",
    "STATUS_NONE",
    "STATUS_PENDING",
    "STATUS_REJECTED",
    "approve",
    "list_for_patient",
    "reject",
    "require_approved",
    "status_of",
    "submit",
]
