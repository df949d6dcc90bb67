"""SMS notifications sent through the Twilio REST API.

Dispatch is a side channel: without credentials the notifier only logs what it
would have sent, and callers go through :func:`notify_best_effort` so a
provider outage can never fail a workflow transition.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import requests
import structlog
from prometheus_client import Counter

from medportal.config import AppSettings
from medportal.egress import EgressDenied, secure_post
from medportal.time_utils import ensure_utc

logger = structlog.get_logger(__name__)

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"

SMS_DISPATCH_TOTAL = Counter(
    "medportal_sms_dispatch_total",
    "SMS notifications by template kind and outcome",
    ("kind", "outcome"),
)


@dataclass(frozen=True)
class SmsResult:
    success: bool
    sid: Optional[str] = None
    error: Optional[str] = None


def _format_appointment(value: Any) -> str:
    if isinstance(value, datetime):
        return ensure_utc(value).strftime("%Y-%m-%d %H:%M UTC")
    return str(value)


def _appointment_reminder(appointment_date: Any, description: Optional[str] = None) -> str:
    return (
        f"Appointment Reminder: {description or 'You have an upcoming appointment'} "
        f"on {_format_appointment(appointment_date)}. Please arrive 15 minutes early."
    )


def _access_request(clinician_name: str) -> str:
    return (
        f"{clinician_name} has requested access to your medical records. "
        "Please review and approve/reject in your dashboard."
    )


def _access_approved(patient_name: str) -> str:
    return (
        f"{patient_name} has approved your access request. "
        "You can now upload and edit their medical records."
    )


def _access_rejected(patient_name: str) -> str:
    return f"{patient_name} has rejected your access request to their medical records."


TEMPLATES: Dict[str, Callable[..., str]] = {
    "appointment_reminder": _appointment_reminder,
    "access_request": _access_request,
    "access_approved": _access_approved,
    "access_rejected": _access_rejected,
}


def render_message(kind: str, *args: Any) -> str:
    try:
        template = TEMPLATES[kind]
    except KeyError:
        raise ValueError(f"Unknown notification kind {kind!r}") from None
    return template(*args)


class SmsNotifier:
    """Send templated SMS messages; reports failures instead of raising them."""

    def __init__(
        self,
        settings: AppSettings,
        *,
        transport: Callable[..., requests.Response] = secure_post,
    ) -> None:
        self._settings = settings
        self._transport = transport

    @property
    def configured(self) -> bool:
        return self._settings.sms_configured

    def send(self, phone_number: str, kind: str, *args: Any) -> SmsResult:
        body = render_message(kind, *args)
        if not self.configured:
            logger.warning("sms_not_configured", kind=kind, to=phone_number, body=body)
            SMS_DISPATCH_TOTAL.labels(kind=kind, outcome="not_configured").inc()
            return SmsResult(success=False, error="SMS provider not configured")

        sid = self._settings.twilio_account_sid
        try:
            response = self._transport(
                TWILIO_MESSAGES_URL.format(sid=sid),
                data={
                    "To": phone_number,
                    "From": self._settings.twilio_phone_number or "",
                    "Body": body,
                },
                auth=(sid, self._settings.twilio_auth_token),
                timeout=self._settings.sms_timeout,
            )
            message_sid = response.json().get("sid")
        except (requests.exceptions.RequestException, EgressDenied, ValueError) as exc:
            logger.error("sms_send_failed", kind=kind, to=phone_number, error=str(exc))
            SMS_DISPATCH_TOTAL.labels(kind=kind, outcome="failed").inc()
            return SmsResult(success=False, error=str(exc))

        logger.info("sms_sent", kind=kind, to=phone_number, sid=message_sid)
        SMS_DISPATCH_TOTAL.labels(kind=kind, outcome="sent").inc()
        return SmsResult(success=True, sid=message_sid)


def notify_best_effort(
    notifier: Optional[SmsNotifier],
    phone_number: Optional[str],
    kind: str,
    *args: Any,
) -> Optional[SmsResult]:
    """Send ``kind`` to ``phone_number`` if both are present; never raises."""

    if notifier is None or not phone_number:
        return None
    try:
        return notifier.send(phone_number, kind, *args)
    except Exception as exc:  # notification must never abort the primary action
        logger.exception("sms_dispatch_error", kind=kind, error=str(exc))
        return SmsResult(success=False, error=str(exc))


__all__ = ["SmsNotifier", "SmsResult", "TEMPLATES", "notify_best_effort", "render_message"]
