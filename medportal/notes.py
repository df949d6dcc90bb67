"""Doctor notes written by clinicians and read by patients."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import insert, select

from medportal import audit
from medportal.auth import RequestContext
from medportal.db import Database
from medportal.db.models import doctor_notes, users
from medportal.errors import NotFoundError, ValidationError
from medportal.patients import find_by_username
from medportal.time_utils import ensure_utc, to_iso

logger = structlog.get_logger(__name__)


def _serialise(row: Dict[str, Any]) -> Dict[str, Any]:
    payload = dict(row)
    for key in ("appointment_date", "created_at"):
        if key in payload:
            payload[key] = to_iso(payload[key])
    for key in ("reminder", "reminder_sent"):
        if key in payload:
            payload[key] = bool(payload[key])
    return payload


def add_note(
    db: Database,
    ctx: RequestContext,
    patient_username: Optional[str],
    note: Optional[str],
    appointment_date: Optional[datetime] = None,
    reminder: bool = False,
) -> Dict[str, Any]:
    # Notes are not gated on an approved access request.
    note = (note or "").strip()
    if not (patient_username or "").strip() or not note:
        raise ValidationError("Missing required fields: patient_username, note")

    patient = find_by_username(db, patient_username or "")
    if not patient:
        raise NotFoundError("Patient not found")

    note_id = db.insert(
        insert(doctor_notes).values(
            patient_user_id=patient["id"],
            provider_user_id=ctx.user_id,
            note=note,
            appointment_date=ensure_utc(appointment_date) if appointment_date else None,
            reminder=bool(reminder),
        )
    )
    audit.record(
        db,
        ctx,
        "note_added",
        "doctor_note",
        target_id=note_id,
        patient_id=patient["id"],
    )
    logger.info("doctor_note_added", note_id=note_id, patient_id=patient["id"])

    row = db.query_one(
        select(
            doctor_notes.c.id,
            doctor_notes.c.patient_user_id,
            doctor_notes.c.provider_user_id,
            doctor_notes.c.note,
            doctor_notes.c.appointment_date,
            doctor_notes.c.reminder,
            doctor_notes.c.created_at,
        ).where(doctor_notes.c.id == note_id)
    )
    return _serialise(row or {"id": note_id})


def list_for_patient(db: Database, patient_id: int) -> List[Dict[str, Any]]:
    rows = db.query_many(
        select(
            doctor_notes.c.id,
            doctor_notes.c.note,
            doctor_notes.c.appointment_date,
            doctor_notes.c.reminder,
            doctor_notes.c.reminder_sent,
            doctor_notes.c.created_at,
            users.c.username.label("provider_name"),
            users.c.email.label("provider_email"),
        )
        .select_from(doctor_notes.join(users, doctor_notes.c.provider_user_id == users.c.id))
        .where(doctor_notes.c.patient_user_id == patient_id)
        .order_by(doctor_notes.c.appointment_date.desc().nulls_last(), doctor_notes.c.id.desc())
    )
    return [_serialise(row) for row in rows]


__all__ = ["add_note", "list_for_patient"]
