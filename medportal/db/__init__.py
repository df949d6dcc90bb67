"""Database helpers for MedPortal."""

from __future__ import annotations

from .config import DatabaseSettings, get_database_settings, resolve_database_settings
from .gateway import Database, Transaction
from .models import metadata

__all__ = [
    "Database",
    "DatabaseSettings",
    "Transaction",
    "get_database_settings",
    "metadata",
    "resolve_database_settings",
]
