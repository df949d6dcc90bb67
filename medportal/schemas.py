"""Request bodies accepted by the HTTP API.

Fields the handlers require are still declared optional here so the
services can answer with their own ``Missing required fields`` message
instead of a generic validation error.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class RegisterModel(BaseModel):
    name: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None
    phone_number: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class LoginModel(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class GoogleLoginModel(BaseModel):
    credential: Optional[str] = None


class AccessRequestModel(BaseModel):
    patient_id: Optional[int] = None
    reason: Optional[str] = None


class RecordUpdateModel(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None


class ReminderModel(BaseModel):
    patient_id: Optional[int] = None
    appointment_date: Optional[datetime] = None
    appointment_description: Optional[str] = None


class NoteModel(BaseModel):
    patient_username: Optional[str] = None
    note: Optional[str] = None
    appointment_date: Optional[datetime] = None
    reminder: bool = False


__all__ = [
    "AccessRequestModel",
    "GoogleLoginModel",
    "LoginModel",
    "NoteModel",
    "RecordUpdateModel",
    "RegisterModel",
    "ReminderModel",
]
