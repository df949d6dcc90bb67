#!/usr/bin/env python3
"""Create the MedPortal schema and optionally seed demo accounts."""

from __future__ import annotations

import argparse
import os
import sys
from typing import Dict, List, Tuple

from sqlalchemy import select

from medportal import auth
from medportal.db import Database, resolve_database_settings
from medportal.db.models import users


DEMO_USERS: Tuple[Dict[str, str], ...] = (
    {
        "username": "john_patient",
        "email": "john@example.com",
        "password": "password123",
        "role": "patient",
        "name": "John Patient",
        "phone_number": "+1234567890",
    },
    {
        "username": "dr_smith",
        "email": "dr.smith@example.com",
        "password": "password123",
        "role": "clinician",
        "name": "Dr. Smith",
        "phone_number": "+1987654321",
    },
)


def seed_demo_users(db: Database) -> List[Tuple[str, str, str]]:
    """Create the demo accounts that do not exist yet; existing users are left untouched."""

    created: List[Tuple[str, str, str]] = []
    for account in DEMO_USERS:
        existing = db.query_one(
            select(users.c.id).where(
                (users.c.username == account["username"]) | (users.c.email == account["email"])
            )
        )
        if existing:
            continue
        auth.register_user(db, **account)
        created.append((account["username"], account["password"], account["role"]))
    return created


def parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create the MedPortal schema on the configured backend.",
    )
    parser.add_argument(
        "--backend",
        choices=("auto", "postgres", "sqlite"),
        default=os.getenv("MEDPORTAL_DB_BACKEND", "auto"),
        help="Backend selection (default: %(default)s)",
    )
    parser.add_argument(
        "--seed",
        action="store_true",
        help="Create the demo patient and clinician accounts.",
    )
    return parser.parse_args(argv)


def main(argv: List[str] | None = None) -> int:
    args = parse_args(argv)
    os.environ["MEDPORTAL_DB_BACKEND"] = args.backend

    settings = resolve_database_settings()
    db = Database.from_settings(settings)
    try:
        db.create_schema()
        created = seed_demo_users(db) if args.seed else []
    finally:
        db.dispose()

    print(f"Schema ensured on {settings.backend} backend")
    if not args.seed:
        print("Demo user seeding skipped.")
    elif created:
        print("Created the following demo accounts (change credentials before production use):")
        for username, password, role in created:
            print(f"  - {username} ({role}) -> {password}")
    else:
        print("Demo users already existed; no credentials were changed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
