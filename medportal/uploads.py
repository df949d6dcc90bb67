"""Upload validation and on-disk storage for medical record files."""

from __future__ import annotations

import os
import re
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog

from medportal.config import DEFAULT_MAX_UPLOAD_BYTES
from medportal.errors import NotFoundError, ValidationError
from medportal.time_utils import epoch_millis

logger = structlog.get_logger(__name__)

ALLOWED_MIME_TYPES = frozenset(
    {
        "application/pdf",
        "image/jpeg",
        "image/png",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    }
)

ALLOWED_EXTENSIONS = (".pdf", ".jpg", ".jpeg", ".png", ".doc", ".docx", ".xls", ".xlsx")

_SAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9._-]")
_MAX_STORE_ATTEMPTS = 5


@dataclass(frozen=True)
class IncomingFile:
    """A file received from a client, fully buffered."""

    filename: Optional[str]
    content_type: Optional[str]
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class StoredFile:
    stored_name: str
    path: Path
    original_name: str
    size: int
    mime_type: Optional[str]


def _path_within(base: Path, candidate: Path) -> bool:
    """Return ``True`` if *candidate* resides within *base*."""

    try:
        candidate.relative_to(base)
    except ValueError:
        return False
    return True


def sanitize_filename(original_name: Optional[str]) -> str:
    """Return a filesystem-safe representation of ``original_name``.

    Only the final path component is retained and characters outside a
    conservative whitelist are replaced with underscores.  Empty results fall
    back to a random token.
    """

    raw_name = Path((original_name or "").replace("\\", "/")).name.strip()
    sanitized = _SAFE_FILENAME_RE.sub("_", raw_name).strip("._")
    if not sanitized:
        return secrets.token_hex(8)
    return sanitized[-128:]


def _describe_size(num_bytes: int) -> str:
    mib = 1024 * 1024
    if num_bytes >= mib and num_bytes % mib == 0:
        return f"{num_bytes // mib}MB"
    return f"{num_bytes} bytes"


def validate_upload(
    filename: Optional[str],
    content_type: Optional[str],
    size: Optional[int],
    *,
    max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
) -> None:
    if not filename:
        raise ValidationError("No file uploaded")
    extension = os.path.splitext(filename)[1].lower()
    if (content_type or "").lower() not in ALLOWED_MIME_TYPES or extension not in ALLOWED_EXTENSIONS:
        raise ValidationError(f"Invalid file type. Allowed types: {', '.join(ALLOWED_EXTENSIONS)}")
    if size is not None and size > max_bytes:
        raise ValidationError(f"File is too large (max {_describe_size(max_bytes)})")


def resolve_path(upload_dir: Path, stored_name: str) -> Path:
    """Return the absolute path of ``stored_name`` inside ``upload_dir``."""

    base = Path(upload_dir).resolve()
    candidate = (base / stored_name).resolve()
    if candidate == base or not _path_within(base, candidate):
        raise NotFoundError("File not found")
    return candidate


def store_file(
    upload_dir: Path,
    actor_id: int,
    filename: Optional[str],
    data: bytes,
    *,
    mime_type: Optional[str] = None,
) -> StoredFile:
    """Write ``data`` under a unique ``<epoch ms>-<actor>-<name>`` filename.

    The file is created exclusively; an existing name gets a short random
    suffix rather than being overwritten.
    """

    base = Path(upload_dir).resolve()
    base.mkdir(parents=True, exist_ok=True)
    safe_name = sanitize_filename(filename)
    stem = f"{epoch_millis()}-{actor_id}"

    for attempt in range(_MAX_STORE_ATTEMPTS):
        stored_name = f"{stem}-{safe_name}" if attempt == 0 else f"{stem}-{secrets.token_hex(3)}-{safe_name}"
        destination = (base / stored_name).resolve()
        if not _path_within(base, destination):
            logger.warning("upload_rejected", reason="outside_upload_dir", sanitized_filename=safe_name)
            raise ValidationError("Invalid filename provided")
        try:
            with open(destination, "xb") as handle:
                handle.write(data)
        except FileExistsError:
            continue
        logger.info("upload_stored", stored_name=stored_name, size=len(data))
        return StoredFile(
            stored_name=stored_name,
            path=destination,
            original_name=filename or safe_name,
            size=len(data),
            mime_type=mime_type,
        )
    raise ValidationError("Could not allocate a unique filename for the upload")


def remove_file(upload_dir: Path, stored_name: Optional[str]) -> bool:
    """Delete a stored file; a file that is already gone is not an error."""

    if not stored_name:
        return False
    try:
        path = resolve_path(upload_dir, stored_name)
    except NotFoundError:
        return False
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        logger.error("upload_cleanup_failed", stored_name=stored_name, error=str(exc))
        return False
    return True


class UploadStore:
    """Upload directory plus size limit, handed to the record services."""

    def __init__(self, directory: Path, *, max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES) -> None:
        self.directory = Path(directory)
        self.max_bytes = max_bytes

    def validate(self, upload: Optional[IncomingFile]) -> IncomingFile:
        if upload is None:
            raise ValidationError("No file uploaded")
        validate_upload(upload.filename, upload.content_type, upload.size, max_bytes=self.max_bytes)
        return upload

    def store(self, actor_id: int, upload: IncomingFile) -> StoredFile:
        return store_file(
            self.directory,
            actor_id,
            upload.filename,
            upload.data,
            mime_type=upload.content_type,
        )

    def remove(self, stored_name: Optional[str]) -> bool:
        return remove_file(self.directory, stored_name)

    def resolve(self, stored_name: str) -> Path:
        return resolve_path(self.directory, stored_name)


__all__ = [
    "ALLOWED_EXTENSIONS",
    "ALLOWED_MIME_TYPES",
    "IncomingFile",
    "StoredFile",
    "UploadStore",
    "remove_file",
    "resolve_path",
    "sanitize_filename",
    "store_file",
    "validate_upload",
]
