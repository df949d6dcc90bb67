"""SQLAlchemy table definitions shared by the Postgres and SQLite backends."""

from __future__ import annotations

import sqlalchemy as sa

from medportal.time_utils import utc_now

ROLES = ("patient", "clinician")
ACCESS_STATUSES = ("pending", "approved", "rejected")

# Largest key an Integer column holds on every backend.
MAX_ROW_ID = 2**31 - 1

metadata = sa.MetaData()


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, default=utc_now),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            default=utc_now,
            onupdate=utc_now,
        ),
    ]


def _in_clause(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


users = sa.Table(
    "users",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("username", sa.String(255), nullable=False, unique=True),
    sa.Column("email", sa.String(255), nullable=False, unique=True),
    sa.Column("password_hash", sa.Text, nullable=False),
    sa.Column("name", sa.String(255)),
    sa.Column("role", sa.String(20), nullable=False),
    sa.Column("phone_number", sa.String(32)),
    *_timestamps(),
    sa.CheckConstraint(_in_clause("role", ROLES), name="ck_users_role"),
    sqlite_autoincrement=True,
)

records = sa.Table(
    "records",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("patient_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
    sa.Column("clinician_id", sa.Integer, sa.ForeignKey("users.id")),
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column("description", sa.Text),
    sa.Column("file_path", sa.Text, nullable=False),
    sa.Column("file_name", sa.Text, nullable=False),
    sa.Column("file_size", sa.Integer),
    sa.Column("mime_type", sa.String(255)),
    *_timestamps(),
    sqlite_autoincrement=True,
)
sa.Index("idx_records_patient", records.c.patient_id)
sa.Index("idx_records_clinician", records.c.clinician_id)

access_requests = sa.Table(
    "access_requests",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("clinician_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
    sa.Column("patient_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
    sa.Column("status", sa.String(20), nullable=False, default="pending"),
    sa.Column("reason", sa.Text, nullable=False),
    *_timestamps(),
    sa.UniqueConstraint("clinician_id", "patient_id", name="uq_access_requests_pair"),
    sa.CheckConstraint(_in_clause("status", ACCESS_STATUSES), name="ck_access_requests_status"),
    sqlite_autoincrement=True,
)

# record_id carries no foreign key; audit rows outlive the records they describe.
audit_logs = sa.Table(
    "audit_logs",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("action", sa.String(64), nullable=False),
    sa.Column("actor_id", sa.Integer, sa.ForeignKey("users.id")),
    sa.Column("actor_role", sa.String(20), nullable=False),
    sa.Column("target_type", sa.String(64), nullable=False),
    sa.Column("target_id", sa.Integer),
    sa.Column("record_id", sa.Integer),
    sa.Column("patient_id", sa.Integer, sa.ForeignKey("users.id")),
    sa.Column("changes", sa.Text),
    sa.Column("ip_address", sa.String(64)),
    sa.Column("user_agent", sa.Text),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, default=utc_now),
    sqlite_autoincrement=True,
)
sa.Index("idx_audit_logs_actor", audit_logs.c.actor_id, audit_logs.c.created_at)

reminders = sa.Table(
    "reminders",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("patient_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
    sa.Column("clinician_id", sa.Integer, sa.ForeignKey("users.id")),
    sa.Column("appointment_date", sa.DateTime(timezone=True), nullable=False),
    sa.Column("appointment_description", sa.Text),
    sa.Column("reminder_sent", sa.Boolean, nullable=False, default=False),
    sa.Column("sent_at", sa.DateTime(timezone=True)),
    *_timestamps(),
    sqlite_autoincrement=True,
)
sa.Index("idx_reminders_pending", reminders.c.reminder_sent, reminders.c.appointment_date)

doctor_notes = sa.Table(
    "doctor_notes",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("patient_user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
    sa.Column("provider_user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
    sa.Column("note", sa.Text, nullable=False),
    sa.Column("appointment_date", sa.DateTime(timezone=True)),
    sa.Column("reminder", sa.Boolean, nullable=False, default=False),
    sa.Column("reminder_sent", sa.Boolean, nullable=False, default=False),
    *_timestamps(),
    sqlite_autoincrement=True,
)
sa.Index("idx_doctor_notes_patient", doctor_notes.c.patient_user_id)


__all__ = [
    "ACCESS_STATUSES",
    "MAX_ROW_ID",
    "ROLES",
    "access_requests",
    "audit_logs",
    "doctor_notes",
    "metadata",
    "records",
    "reminders",
    "users",
]
