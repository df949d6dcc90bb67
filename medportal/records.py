"""Medical record upload, edit, delete and download."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import delete as sa_delete
from sqlalchemy import insert, select
from sqlalchemy import update as sa_update

from medportal import access_requests, audit
from medportal.auth import RequestContext
from medportal.db import Database
from medportal.db.models import records, users
from medportal.errors import NotFoundError, ValidationError
from medportal.patients import find_patient
from medportal.time_utils import to_iso, utc_now
from medportal.uploads import IncomingFile, UploadStore

logger = structlog.get_logger(__name__)

EDITABLE_FIELDS = ("title", "description")


def _serialise(row: Dict[str, Any]) -> Dict[str, Any]:
    payload = dict(row)
    for key in ("created_at", "updated_at"):
        if key in payload:
            payload[key] = to_iso(payload[key])
    return payload


def _owned_by_clinician(db: Database, record_id: int, clinician_id: int) -> Dict[str, Any]:
    row = db.query_one(
        select(records.c.id, records.c.patient_id, records.c.file_path).where(
            records.c.id == record_id, records.c.clinician_id == clinician_id
        )
    )
    if not row:
        raise NotFoundError("Record not found")
    return row


def upload(
    db: Database,
    storage: UploadStore,
    ctx: RequestContext,
    patient_id: Optional[int],
    title: Optional[str],
    description: Optional[str],
    file: Optional[IncomingFile],
) -> Dict[str, Any]:
    """Store ``file`` as a new record for ``patient_id``.

    Every check runs before anything touches the disk, and a failed metadata
    insert removes the stored file again.
    """

    storage.validate(file)
    title = (title or "").strip()
    if not patient_id or not title:
        raise ValidationError("Missing required fields: patient_id, title")

    access_requests.require_approved(db, ctx.user_id, patient_id)
    if not find_patient(db, patient_id):
        raise NotFoundError("Patient not found")

    stored = storage.store(ctx.user_id, file)
    try:
        record_id = db.insert(
            insert(records).values(
                patient_id=patient_id,
                clinician_id=ctx.user_id,
                title=title,
                description=description or None,
                file_path=stored.stored_name,
                file_name=stored.original_name,
                file_size=stored.size,
                mime_type=stored.mime_type,
            )
        )
    except Exception:
        storage.remove(stored.stored_name)
        raise

    audit.record(
        db,
        ctx,
        "file_uploaded",
        "record",
        target_id=record_id,
        record_id=record_id,
        patient_id=patient_id,
        changes={"title": title, "description": description, "fileName": stored.original_name},
    )
    logger.info("record_uploaded", record_id=record_id, patient_id=patient_id, size=stored.size)

    row = db.query_one(
        select(records.c.id, records.c.title, records.c.created_at).where(records.c.id == record_id)
    )
    return _serialise(row or {"id": record_id, "title": title})


def update(
    db: Database,
    ctx: RequestContext,
    record_id: int,
    *,
    title: Optional[str] = None,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    record = _owned_by_clinician(db, record_id, ctx.user_id)
    access_requests.require_approved(db, ctx.user_id, record["patient_id"])

    changes: Dict[str, Any] = {}
    if title is not None:
        if not title.strip():
            raise ValidationError("Title cannot be empty")
        changes["title"] = title.strip()
    if description is not None:
        changes["description"] = description
    if not changes:
        raise ValidationError("Nothing to update: provide title or description")

    updated = db.execute(
        sa_update(records)
        .where(records.c.id == record_id, records.c.clinician_id == ctx.user_id)
        .values(updated_at=utc_now(), **changes)
    )
    if updated == 0:
        raise NotFoundError("Record not found")

    audit.record(
        db,
        ctx,
        "record_updated",
        "record",
        target_id=record_id,
        record_id=record_id,
        patient_id=record["patient_id"],
        changes=changes,
    )
    return {"id": record_id, **changes}


def delete(db: Database, storage: UploadStore, ctx: RequestContext, record_id: int) -> Dict[str, Any]:
    record = _owned_by_clinician(db, record_id, ctx.user_id)
    access_requests.require_approved(db, ctx.user_id, record["patient_id"])

    storage.remove(record["file_path"])
    removed = db.execute(
        sa_delete(records).where(records.c.id == record_id, records.c.clinician_id == ctx.user_id)
    )
    if removed == 0:
        raise NotFoundError("Record not found")

    audit.record(
        db,
        ctx,
        "record_deleted",
        "record",
        target_id=record_id,
        record_id=record_id,
        patient_id=record["patient_id"],
    )
    logger.info("record_deleted", record_id=record_id)
    return {"id": record_id}


def open_for_download(
    db: Database, storage: UploadStore, ctx: RequestContext, record_id: int
) -> Tuple[Path, str, Optional[str]]:
    """Return ``(path, download name, mime type)`` for the caller's own record."""

    row = db.query_one(
        select(records.c.file_path, records.c.file_name, records.c.mime_type).where(
            records.c.id == record_id, records.c.patient_id == ctx.user_id
        )
    )
    if not row:
        raise NotFoundError("Record not found")
    path = storage.resolve(row["file_path"])
    if not path.is_file():
        logger.warning("record_file_missing", record_id=record_id)
        raise NotFoundError("Record file not found")
    return path, row["file_name"], row["mime_type"]


def list_for_patient(db: Database, patient_id: int) -> List[Dict[str, Any]]:
    rows = db.query_many(
        select(
            records.c.id,
            records.c.title,
            records.c.description,
            records.c.file_name,
            records.c.file_size,
            records.c.mime_type,
            records.c.created_at,
            records.c.updated_at,
            users.c.username.label("clinician_name"),
        )
        .select_from(records.outerjoin(users, records.c.clinician_id == users.c.id))
        .where(records.c.patient_id == patient_id)
        .order_by(records.c.created_at.desc(), records.c.id.desc())
    )
    return [_serialise(row) for row in rows]


__all__ = ["delete", "list_for_patient", "open_for_download", "update", "upload"]
