"""Appointment reminders.

There is no scheduler in the process: an external job polls
:func:`pending` and calls :func:`send` for each reminder it dispatches.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import insert, select, update

from medportal import access_requests, audit
from medportal.auth import RequestContext
from medportal.db import Database
from medportal.db.models import reminders, users
from medportal.errors import ConflictError, NotFoundError, ValidationError
from medportal.notifications import SmsNotifier, notify_best_effort
from medportal.time_utils import ensure_utc, to_iso, utc_now

logger = structlog.get_logger(__name__)

REMINDER_WINDOW = timedelta(hours=24)


def _serialise(row: Dict[str, Any]) -> Dict[str, Any]:
    payload = dict(row)
    for key in ("appointment_date", "sent_at", "created_at", "updated_at"):
        if key in payload:
            payload[key] = to_iso(payload[key])
    if "reminder_sent" in payload:
        payload["reminder_sent"] = bool(payload["reminder_sent"])
    return payload


def schedule(
    db: Database,
    ctx: RequestContext,
    patient_id: Optional[int],
    appointment_date: Optional[datetime],
    description: Optional[str] = None,
) -> Dict[str, Any]:
    if not patient_id or appointment_date is None:
        raise ValidationError("Missing required fields: patient_id, appointment_date")
    access_requests.require_approved(db, ctx.user_id, patient_id)

    reminder_id = db.insert(
        insert(reminders).values(
            patient_id=patient_id,
            clinician_id=ctx.user_id,
            appointment_date=ensure_utc(appointment_date),
            appointment_description=description or None,
        )
    )
    audit.record(
        db,
        ctx,
        "reminder_scheduled",
        "reminder",
        target_id=reminder_id,
        patient_id=patient_id,
        changes={"appointment_date": to_iso(ensure_utc(appointment_date)), "description": description},
    )
    row = db.query_one(
        select(
            reminders.c.id,
            reminders.c.appointment_date,
            reminders.c.appointment_description,
        ).where(reminders.c.id == reminder_id)
    )
    return _serialise(row or {"id": reminder_id})


def pending(db: Database, ctx: RequestContext, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Unsent reminders of the caller due within ``(now, now + 24h]``."""

    start = ensure_utc(now) if now is not None else utc_now()
    rows = db.query_many(
        select(
            reminders,
            users.c.phone_number,
            users.c.username,
        )
        .select_from(reminders.join(users, reminders.c.patient_id == users.c.id))
        .where(
            reminders.c.clinician_id == ctx.user_id,
            reminders.c.reminder_sent.is_(False),
            reminders.c.appointment_date > start,
            reminders.c.appointment_date <= start + REMINDER_WINDOW,
        )
        .order_by(reminders.c.appointment_date, reminders.c.id)
    )
    return [_serialise(row) for row in rows]


def send(
    db: Database, notifier: Optional[SmsNotifier], ctx: RequestContext, reminder_id: int
) -> Dict[str, Any]:
    row = db.query_one(
        select(
            reminders.c.id,
            reminders.c.patient_id,
            reminders.c.appointment_date,
            reminders.c.appointment_description,
            reminders.c.reminder_sent,
            users.c.phone_number,
        )
        .select_from(reminders.join(users, reminders.c.patient_id == users.c.id))
        .where(reminders.c.id == reminder_id, reminders.c.clinician_id == ctx.user_id)
    )
    if not row:
        raise NotFoundError("Reminder not found")
    if row["reminder_sent"]:
        raise ConflictError("Reminder already sent")

    sent_at = utc_now()
    changed = db.execute(
        update(reminders)
        .where(reminders.c.id == reminder_id, reminders.c.reminder_sent.is_(False))
        .values(reminder_sent=True, sent_at=sent_at, updated_at=sent_at)
    )
    if changed == 0:
        raise ConflictError("Reminder already sent")

    result = notify_best_effort(
        notifier,
        row["phone_number"],
        "appointment_reminder",
        row["appointment_date"],
        row["appointment_description"],
    )
    audit.record(
        db,
        ctx,
        "reminder_sent",
        "reminder",
        target_id=reminder_id,
        patient_id=row["patient_id"],
        changes={"sms_delivered": bool(result and result.success)},
    )
    return {"id": reminder_id, "sent_at": to_iso(sent_at), "sms_delivered": bool(result and result.success)}


__all__ = ["REMINDER_WINDOW", "pending", "schedule", "send"]
