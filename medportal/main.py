"""FastAPI application for the MedPortal API.

:func:`create_app` wires the collaborators (database gateway, SMS notifier,
upload store) onto ``app.state``; handlers reach them through ``Depends`` so
tests can build an app around a throwaway SQLite database.
"""

from __future__ import annotations

import logging
import os
import re
import time
import traceback
import uuid
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, File, Form, Query, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi.staticfiles import StaticFiles
from google.oauth2 import id_token as google_id_token
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, Counter, Histogram, generate_latest
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException
from structlog.contextvars import bind_contextvars, unbind_contextvars

from medportal import access_requests, audit, auth, notes, patients, records, reminders
from medportal.auth import RequestContext, TokenClaims
from medportal.config import AppSettings, get_settings
from medportal.db import Database, get_database_settings
from medportal.db.models import MAX_ROW_ID
from medportal.errors import ApiError, InternalError, NotFoundError, UnauthorizedError, ValidationError
from medportal.notifications import SmsNotifier
from medportal.schemas import (
    AccessRequestModel,
    GoogleLoginModel,
    LoginModel,
    NoteModel,
    RecordUpdateModel,
    RegisterModel,
    ReminderModel,
)
from medportal.time_utils import to_iso, utc_now
from medportal.uploads import IncomingFile, UploadStore

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO), format="%(message)s")

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


def _get_or_create_metric(metric_cls, name: str, documentation: str, labelnames):
    existing = REGISTRY._names_to_collectors.get(name)
    if existing is not None:
        return existing
    return metric_cls(name, documentation, labelnames=labelnames)


REQUEST_COUNTER = _get_or_create_metric(
    Counter,
    "medportal_requests_total",
    "Total HTTP requests processed by the API",
    ("method", "endpoint", "status"),
)
REQUEST_LATENCY = _get_or_create_metric(
    Histogram,
    "medportal_request_latency_seconds",
    "Latency of HTTP requests",
    ("method", "endpoint"),
)

_PATH_PARAM_RE = re.compile(r"/(?:[0-9]+|[0-9a-fA-F]{8,})(?=/|$)")


def _normalise_path_for_metrics(path: str) -> str:
    """Reduce high-cardinality segments in request paths for metrics labels."""

    if not path:
        return "/"
    if path.startswith("/uploads/"):
        return "/uploads/:file"
    return _PATH_PARAM_RE.sub("/:param", path)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


def _user_agent(request: Request) -> str:
    return request.headers.get("user-agent", "")


def _row_id(value: Optional[int], message: str) -> Optional[int]:
    """Reject ids outside the key range as unknown rows."""

    if value is not None and abs(value) > MAX_ROW_ID:
        raise NotFoundError(message)
    return value


# ---------------------------------------------------------------------------
# Error rendering
# ---------------------------------------------------------------------------


def _error_response(
    request: Request,
    status_code: int,
    message: str,
    exc: Optional[BaseException] = None,
) -> JSONResponse:
    payload: Dict[str, Any] = {"error": message}
    settings: Optional[AppSettings] = getattr(request.app.state, "settings", None)
    if exc is not None and settings is not None and not settings.is_production:
        payload["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return JSONResponse(status_code=status_code, content=payload)


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        field = ".".join(location) or "request"
        parts.append(f"{field}: {error.get('msg', 'invalid value')}")
    return "Invalid request: " + "; ".join(parts) if parts else "Invalid request"


def _install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("request_error", status=exc.status_code, error=exc.message)
            return _error_response(request, exc.status_code, exc.message, exc)
        return _error_response(request, exc.status_code, exc.message)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        response = _error_response(request, exc.status_code, str(exc.detail))
        for key, value in (exc.headers or {}).items():
            response.headers[key] = value
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error_response(request, status.HTTP_400_BAD_REQUEST, _validation_message(exc))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled_error", path=request.url.path, error=str(exc))
        return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", exc)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

_bearer = HTTPBearer(auto_error=False)


def get_settings_dep(request: Request) -> AppSettings:
    return request.app.state.settings


def get_database(request: Request) -> Database:
    database = getattr(request.app.state, "database", None)
    if database is None:
        raise InternalError("Database not initialised")
    return database


def get_notifier(request: Request) -> SmsNotifier:
    return request.app.state.notifier


def get_storage(request: Request) -> UploadStore:
    return request.app.state.storage


def get_current_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    settings: AppSettings = Depends(get_settings_dep),
) -> TokenClaims:
    """Decode the bearer token; a missing header is treated like a bad token."""

    if credentials is None:
        raise UnauthorizedError()
    return auth.authenticate_token(credentials.credentials, settings)


def require_roles(*roles: str) -> Callable[..., RequestContext]:
    """Return a dependency that admits only ``roles`` and yields the request context."""

    def dependency(request: Request, claims: TokenClaims = Depends(get_current_claims)) -> RequestContext:
        auth.authorize(claims, roles)
        return RequestContext.from_claims(
            claims,
            ip_address=_client_ip(request),
            user_agent=_user_agent(request),
        )

    return dependency


require_patient = require_roles("patient")
require_clinician = require_roles("clinician")
require_any_user = require_roles("patient", "clinician")


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

router = APIRouter()


def _auth_payload(message: str, user: Dict[str, Any], settings: AppSettings) -> Dict[str, Any]:
    token = auth.issue_token(user, settings)
    return {"message": message, "user": user, "token": token}


@router.post("/auth/register", status_code=status.HTTP_201_CREATED)
def register(
    payload: RegisterModel,
    db: Database = Depends(get_database),
    settings: AppSettings = Depends(get_settings_dep),
):
    if not (payload.username and payload.email and payload.password and payload.role):
        raise ValidationError("Missing required fields: username, email, password, role")
    user = auth.register_user(
        db,
        username=payload.username,
        email=payload.email,
        password=payload.password,
        role=payload.role,
        name=payload.name,
        phone_number=payload.phone_number,
    )
    return _auth_payload("User registered successfully", user, settings)


@router.post("/auth/login")
def login(
    payload: LoginModel,
    db: Database = Depends(get_database),
    settings: AppSettings = Depends(get_settings_dep),
):
    if not payload.username or not payload.password:
        raise ValidationError("Username and password required")
    user = auth.authenticate_user(db, payload.username, payload.password)
    if user is None:
        logger.info("login_failed")
        raise UnauthorizedError("Invalid credentials")
    return _auth_payload("Login successful", user, settings)


@router.post("/auth/google")
def google_login(
    payload: GoogleLoginModel,
    request: Request,
    db: Database = Depends(get_database),
    settings: AppSettings = Depends(get_settings_dep),
):
    if not payload.credential:
        raise ValidationError("Google credential required")
    claims = auth.verify_google_credential(
        payload.credential,
        settings.google_client_id,
        verifier=request.app.state.google_verifier,
    )
    user = auth.get_or_create_external_user(db, claims["email"], claims.get("name"))
    return _auth_payload("Google login successful", user, settings)


@router.post("/auth/verify")
def verify_token(claims: TokenClaims = Depends(get_current_claims)):
    return {"message": "Token is valid", "user": claims.as_dict()}


@router.get("/patient/dashboard")
def patient_dashboard(
    ctx: RequestContext = Depends(require_patient),
    db: Database = Depends(get_database),
):
    return {
        "records": records.list_for_patient(db, ctx.user_id),
        "accessRequests": access_requests.list_for_patient(db, ctx.user_id),
    }


@router.get("/patient/records/{record_id}/download")
def download_record(
    record_id: int,
    ctx: RequestContext = Depends(require_patient),
    db: Database = Depends(get_database),
    storage: UploadStore = Depends(get_storage),
):
    _row_id(record_id, "Record not found")
    path, filename, mime_type = records.open_for_download(db, storage, ctx, record_id)
    return FileResponse(path, filename=filename, media_type=mime_type or "application/octet-stream")


@router.put("/patient/access-requests/{request_id}/approve")
def approve_access_request(
    request_id: int,
    ctx: RequestContext = Depends(require_patient),
    db: Database = Depends(get_database),
    notifier: SmsNotifier = Depends(get_notifier),
):
    _row_id(request_id, "Access request not found")
    access_requests.approve(db, notifier, ctx, request_id)
    return {"message": "Access request approved", "requestId": request_id}


@router.put("/patient/access-requests/{request_id}/reject")
def reject_access_request(
    request_id: int,
    ctx: RequestContext = Depends(require_patient),
    db: Database = Depends(get_database),
    notifier: SmsNotifier = Depends(get_notifier),
):
    _row_id(request_id, "Access request not found")
    access_requests.reject(db, notifier, ctx, request_id)
    return {"message": "Access request rejected", "requestId": request_id}


@router.get("/search/patient")
def search_patients(
    query: Optional[str] = Query(default=None),
    ctx: RequestContext = Depends(require_clinician),
    db: Database = Depends(get_database),
):
    return patients.search(db, query)


@router.get("/clinician/search/{patient_id}")
def clinician_patient_lookup(
    patient_id: int,
    ctx: RequestContext = Depends(require_clinician),
    db: Database = Depends(get_database),
):
    _row_id(patient_id, "Patient not found")
    patient = patients.find_patient(db, patient_id)
    if not patient:
        raise NotFoundError("Patient not found")
    return {
        "patient": {key: patient[key] for key in ("id", "username", "email")},
        "accessStatus": access_requests.status_of(db, ctx.user_id, patient_id),
    }


@router.post("/clinician/access-request", status_code=status.HTTP_201_CREATED)
def submit_access_request(
    payload: AccessRequestModel,
    ctx: RequestContext = Depends(require_clinician),
    db: Database = Depends(get_database),
    notifier: SmsNotifier = Depends(get_notifier),
):
    _row_id(payload.patient_id, "Patient not found")
    created = access_requests.submit(db, notifier, ctx, payload.patient_id, payload.reason)
    return {"message": "Access request submitted", "request": created}


@router.post("/clinician/records/upload", status_code=status.HTTP_201_CREATED)
async def upload_record(
    patient_id: Optional[int] = Form(default=None),
    title: Optional[str] = Form(default=None),
    description: Optional[str] = Form(default=None),
    file: Optional[UploadFile] = File(default=None),
    ctx: RequestContext = Depends(require_clinician),
    db: Database = Depends(get_database),
    storage: UploadStore = Depends(get_storage),
):
    _row_id(patient_id, "Patient not found")
    incoming = None
    if file is not None and file.filename:
        # Read one byte past the limit; the store rejects anything longer than max_bytes.
        data = await file.read(storage.max_bytes + 1)
        incoming = IncomingFile(filename=file.filename, content_type=file.content_type, data=data)
        await file.close()
    created = await run_in_threadpool(
        records.upload, db, storage, ctx, patient_id, title, description, incoming
    )
    return {"message": "File uploaded successfully", "record": created}


@router.put("/clinician/records/{record_id}")
def update_record(
    record_id: int,
    payload: RecordUpdateModel,
    ctx: RequestContext = Depends(require_clinician),
    db: Database = Depends(get_database),
):
    _row_id(record_id, "Record not found")
    records.update(db, ctx, record_id, title=payload.title, description=payload.description)
    return {"message": "Record updated successfully", "recordId": record_id}


@router.delete("/clinician/records/{record_id}")
def delete_record(
    record_id: int,
    ctx: RequestContext = Depends(require_clinician),
    db: Database = Depends(get_database),
    storage: UploadStore = Depends(get_storage),
):
    _row_id(record_id, "Record not found")
    records.delete(db, storage, ctx, record_id)
    return {"message": "Record deleted successfully", "recordId": record_id}


@router.get("/audit-logs")
def list_audit_logs(
    limit: Optional[int] = Query(default=None),
    offset: Optional[int] = Query(default=None),
    ctx: RequestContext = Depends(require_any_user),
    db: Database = Depends(get_database),
):
    limit, offset = audit.clamp_page(limit, offset)
    entries, total = audit.list_entries(db, ctx.user_id, limit, offset)
    return {"logs": entries, "total": total, "limit": limit, "offset": offset}


@router.post("/reminders/schedule", status_code=status.HTTP_201_CREATED)
def schedule_reminder(
    payload: ReminderModel,
    ctx: RequestContext = Depends(require_clinician),
    db: Database = Depends(get_database),
):
    _row_id(payload.patient_id, "Patient not found")
    reminder = reminders.schedule(
        db,
        ctx,
        payload.patient_id,
        payload.appointment_date,
        payload.appointment_description,
    )
    return {"message": "Reminder scheduled successfully", "reminder": reminder}


@router.get("/reminders/pending")
def pending_reminders(
    ctx: RequestContext = Depends(require_clinician),
    db: Database = Depends(get_database),
):
    due = reminders.pending(db, ctx)
    return {"reminders": due, "count": len(due)}


@router.put("/reminders/{reminder_id}/send")
def send_reminder(
    reminder_id: int,
    ctx: RequestContext = Depends(require_clinician),
    db: Database = Depends(get_database),
    notifier: SmsNotifier = Depends(get_notifier),
):
    _row_id(reminder_id, "Reminder not found")
    result = reminders.send(db, notifier, ctx, reminder_id)
    return {
        "message": "Reminder marked as sent",
        "reminderId": reminder_id,
        "smsDelivered": result["sms_delivered"],
    }


@router.post("/notes/add", status_code=status.HTTP_201_CREATED)
def add_note(
    payload: NoteModel,
    ctx: RequestContext = Depends(require_clinician),
    db: Database = Depends(get_database),
):
    note = notes.add_note(
        db,
        ctx,
        payload.patient_username,
        payload.note,
        payload.appointment_date,
        payload.reminder,
    )
    return {"message": "Doctor note added successfully", "note": note}


@router.get("/notes/me")
def my_notes(
    ctx: RequestContext = Depends(require_patient),
    db: Database = Depends(get_database),
):
    items = notes.list_for_patient(db, ctx.user_id)
    return {"notes": items, "count": len(items)}


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    owns_database = app.state.database is None
    if owns_database:
        app.state.database = Database.from_settings(get_database_settings())
        app.state.database.create_schema()
    logger.info(
        "lifespan_startup",
        backend=app.state.database.backend,
        environment=app.state.settings.environment,
    )
    try:
        yield
    finally:
        if owns_database:
            app.state.database.dispose()
            app.state.database = None
        logger.info("lifespan_shutdown_complete", uptime=round(time.time() - app.state.started_at, 2))


def create_app(
    database: Optional[Database] = None,
    notifier: Optional[SmsNotifier] = None,
    settings: Optional[AppSettings] = None,
) -> FastAPI:
    """Build the API.  Without ``database`` the lifespan resolves and owns one."""

    settings = settings or get_settings()
    app = FastAPI(title="MedPortal API", lifespan=lifespan)
    app.state.settings = settings
    app.state.database = database
    app.state.notifier = notifier or SmsNotifier(settings)
    app.state.storage = UploadStore(settings.upload_dir, max_bytes=settings.max_upload_bytes)
    app.state.google_verifier = google_id_token.verify_oauth2_token
    app.state.started_at = time.time()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def track_http_metrics(request: Request, call_next):
        """Emit Prometheus counters and histograms for each request."""

        start = time.perf_counter()
        normalised = _normalise_path_for_metrics(request.url.path)
        try:
            response = await call_next(request)
        except Exception:
            REQUEST_COUNTER.labels(request.method, normalised, "500").inc()
            REQUEST_LATENCY.labels(request.method, normalised).observe(time.perf_counter() - start)
            raise
        REQUEST_COUNTER.labels(request.method, normalised, str(response.status_code)).inc()
        REQUEST_LATENCY.labels(request.method, normalised).observe(time.perf_counter() - start)
        return response

    @app.middleware("http")
    async def inject_trace_id(request: Request, call_next):
        """Attach or propagate a trace identifier for each request."""

        trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex
        bind_contextvars(trace_id=trace_id, path=request.url.path, method=request.method)
        request.state.trace_id = trace_id
        response = None
        try:
            response = await call_next(request)
            return response
        except Exception:
            logger.exception("request_failed")
            raise
        finally:
            if response is not None:
                response.headers["X-Trace-Id"] = trace_id
            unbind_contextvars("trace_id", "path", "method")

    _install_exception_handlers(app)

    @app.get("/health", tags=["system"])
    def health(request: Request):
        """Process and database status; answers 503 when the database is unreachable."""

        database: Optional[Database] = request.app.state.database
        connected = database is not None and database.ping()
        payload = {
            "status": "ok" if connected else "degraded",
            "timestamp": to_iso(utc_now()),
            "uptime": round(time.time() - request.app.state.started_at, 2),
            "environment": settings.environment,
            "database": "connected" if connected else "unreachable",
            "backend": database.backend if database is not None else None,
        }
        return JSONResponse(
            status_code=status.HTTP_200_OK if connected else status.HTTP_503_SERVICE_UNAVAILABLE,
            content=payload,
        )

    @app.get("/metrics", tags=["system"])
    def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(router, prefix=settings.api_prefix)

    if settings.serve_uploads:
        settings.upload_dir.mkdir(parents=True, exist_ok=True)
        app.mount("/uploads", StaticFiles(directory=str(settings.upload_dir)), name="uploads")

    return app


app = create_app()
