"""Authentication helpers: password hashing, bearer tokens and user accounts."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

import jwt
import structlog
from google.auth import exceptions as google_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token
from passlib.context import CryptContext
from sqlalchemy import func, insert, or_, select

from medportal.config import AppSettings
from medportal.db import Database
from medportal.db.models import ROLES, users
from medportal.errors import (
    ConflictError,
    ConstraintViolationError,
    ForbiddenError,
    UnauthorizedError,
    ValidationError,
)
from medportal.time_utils import epoch_millis, to_iso, utc_now

logger = structlog.get_logger(__name__)

# Password hashing context using bcrypt
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=10)

# Stored in place of a bcrypt hash for identities authenticated by Google.
EXTERNAL_IDENTITY_SENTINEL = "GOOGLE_OAUTH"

# HTTP transport for fetching Google's token signing certificates.
_GOOGLE_TRANSPORT = google_requests.Request()

EMAIL_REGEX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_PUBLIC_USER_COLUMNS = (
    users.c.id,
    users.c.username,
    users.c.email,
    users.c.name,
    users.c.role,
    users.c.phone_number,
    users.c.created_at,
)


@dataclass(frozen=True)
class TokenClaims:
    id: int
    username: str
    role: str

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RequestContext:
    """Authenticated actor plus request origin, threaded through service calls."""

    user_id: int
    username: str
    role: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_claims(
        cls,
        claims: TokenClaims,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "RequestContext":
        return cls(
            user_id=claims.id,
            username=claims.username,
            role=claims.role,
            ip_address=ip_address,
            user_agent=user_agent,
        )


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


def hash_password(password: str) -> str:
    """Hash a plaintext password using a secure algorithm."""

    return pwd_context.hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    """Verify a plaintext password against a stored hash."""

    if not hashed or hashed == EXTERNAL_IDENTITY_SENTINEL:
        return False
    try:
        return pwd_context.verify(password, hashed)
    except (ValueError, TypeError):
        return False


def validate_password_strength(password: str) -> None:
    if len(password) < 8:
        raise ValidationError("Password must be at least 8 characters long")
    if not any(ch.isalpha() for ch in password):
        raise ValidationError("Password must include a letter")
    if not any(ch.isdigit() for ch in password):
        raise ValidationError("Password must include a number")


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


def issue_token(
    claims: Mapping[str, Any],
    settings: AppSettings,
    *,
    expires: Optional[timedelta] = None,
) -> str:
    """Create a signed, time-bounded JWT carrying ``id``, ``username`` and ``role``."""

    now = utc_now()
    payload = {
        "id": int(claims["id"]),
        "username": claims["username"],
        "role": claims["role"],
        "iat": now,
        "exp": now + (expires if expires is not None else settings.jwt_expires),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def authenticate_token(token: Optional[str], settings: AppSettings) -> TokenClaims:
    """Decode ``token``; every failure mode raises the same :class:`UnauthorizedError`."""

    if not token:
        raise UnauthorizedError()
    try:
        data = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["exp", "iat"]},
        )
        claims = TokenClaims(id=int(data["id"]), username=str(data["username"]), role=str(data["role"]))
    except (jwt.PyJWTError, KeyError, TypeError, ValueError):
        raise UnauthorizedError()
    if claims.role not in ROLES:
        raise UnauthorizedError()
    return claims


def authorize(claims: TokenClaims, allowed_roles: Iterable[str]) -> TokenClaims:
    allowed = tuple(allowed_roles)
    if claims.role not in allowed:
        raise ForbiddenError(f"Access denied. Required roles: {', '.join(allowed)}")
    return claims


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


def public_user(row: Mapping[str, Any]) -> Dict[str, Any]:
    """Return the client-facing view of a user row."""

    return {
        "id": row["id"],
        "username": row["username"],
        "email": row["email"],
        "name": row.get("name"),
        "role": row["role"],
        "phone_number": row.get("phone_number"),
        "created_at": to_iso(row.get("created_at")),
    }


def get_user(db: Database, user_id: int) -> Optional[Dict[str, Any]]:
    return db.query_one(select(*_PUBLIC_USER_COLUMNS).where(users.c.id == user_id))


def register_user(
    db: Database,
    *,
    username: str,
    email: str,
    password: str,
    role: str,
    name: Optional[str] = None,
    phone_number: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a user and return its public representation.

    Username and email are unique; a clash on either raises
    :class:`ConflictError`.  The pre-checks give a precise message, the
    storage uniqueness constraint closes the race between concurrent
    registrations.
    """

    username = username.strip()
    email = email.strip().lower()
    if not EMAIL_REGEX.match(email):
        raise ValidationError("Invalid email format")
    if role not in ROLES:
        raise ValidationError('Role must be either "patient" or "clinician"')
    validate_password_strength(password)

    if db.query_one(select(users.c.id).where(users.c.username == username)):
        raise ConflictError("Username already exists")
    if db.query_one(select(users.c.id).where(users.c.email == email)):
        raise ConflictError("Email already registered")

    try:
        user_id = db.insert(
            insert(users).values(
                username=username,
                email=email,
                password_hash=hash_password(password),
                name=name,
                role=role,
                phone_number=phone_number or None,
            )
        )
    except ConstraintViolationError as exc:
        raise ConflictError("Username or email already exists") from exc

    logger.info("user_registered", user_id=user_id, role=role)
    return public_user(get_user(db, user_id) or {})


def authenticate_user(db: Database, identifier: str, password: str) -> Optional[Dict[str, Any]]:
    """Validate credentials by username or email.

    Returns the public user payload when valid, otherwise ``None``.
    """

    identifier = identifier.strip()
    row = db.query_one(
        select(*_PUBLIC_USER_COLUMNS, users.c.password_hash).where(
            or_(users.c.username == identifier, func.lower(users.c.email) == identifier.lower())
        )
    )
    if not row or not verify_password(password, row["password_hash"]):
        return None
    return public_user(row)


def verify_google_credential(
    credential: str,
    client_id: Optional[str],
    *,
    verifier: Callable[..., Mapping[str, Any]] = google_id_token.verify_oauth2_token,
) -> Dict[str, Any]:
    """Verify a Google ID token against Google's signing keys and return its claims.

    ``verifier`` checks the signature, expiry, issuer and audience and raises
    ``ValueError`` or a ``GoogleAuthError`` when any of them is wrong.
    """

    if not client_id:
        logger.warning("google_login_not_configured")
        raise UnauthorizedError("Google sign-in is not configured")
    try:
        payload = dict(verifier(credential, _GOOGLE_TRANSPORT, client_id))
    except (ValueError, google_exceptions.GoogleAuthError) as exc:
        logger.warning("google_token_verification_failed", error=str(exc))
        raise UnauthorizedError("Invalid Google credential") from exc

    verified = str(payload.get("email_verified", "")).lower() == "true"
    if not payload.get("email") or not verified:
        logger.warning("google_token_rejected", reason="email_not_verified")
        raise UnauthorizedError("Invalid Google credential")
    return payload


def get_or_create_external_user(db: Database, email: str, name: Optional[str] = None) -> Dict[str, Any]:
    """Return the user for ``email``, creating a patient account on first login."""

    email = email.strip().lower()
    row = db.query_one(select(*_PUBLIC_USER_COLUMNS).where(users.c.email == email))
    if row:
        return public_user(row)

    base = email.split("@", 1)[0]
    for candidate in (base, f"{base}_{epoch_millis()}"):
        try:
            user_id = db.insert(
                insert(users).values(
                    username=candidate,
                    email=email,
                    password_hash=EXTERNAL_IDENTITY_SENTINEL,
                    name=name,
                    role="patient",
                )
            )
        except ConstraintViolationError:
            # A concurrent login may have created the account for this email.
            existing = db.query_one(select(*_PUBLIC_USER_COLUMNS).where(users.c.email == email))
            if existing:
                return public_user(existing)
            continue
        logger.info("external_user_created", user_id=user_id)
        return public_user(get_user(db, user_id) or {})
    raise ConflictError("Unable to allocate a username for this account")


__all__ = [
    "EXTERNAL_IDENTITY_SENTINEL",
    "RequestContext",
    "TokenClaims",
    "authenticate_token",
    "authenticate_user",
    "authorize",
    "get_or_create_external_user",
    "get_user",
    "hash_password",
    "issue_token",
    "public_user",
    "register_user",
    "validate_password_strength",
    "verify_google_credential",
    "verify_password",
]
