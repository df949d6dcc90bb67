"""Hardened HTTP egress helpers enforcing TLS verification, timeouts and allowlists."""

from __future__ import annotations

from typing import Any
from urllib.parse import urlparse
import os

import requests
from prometheus_client import Counter


EGRESS_FAILURES = Counter(
    "medportal_egress_failures_total",
    "Outbound HTTP calls blocked or failed security checks",
    ("reason",),
)

DEFAULT_ALLOWED_HOSTS = {
    "api.twilio.com",
}

DEFAULT_TIMEOUT = 10.0


class EgressDenied(RuntimeError):
    """Raised when a request targets a host outside the allowlist."""


def _allowed_hosts() -> set[str]:
    raw = os.getenv("ALLOWED_EGRESS_HOSTS")
    if raw:
        return {host.strip().lower() for host in raw.split(",") if host.strip()}
    return set(DEFAULT_ALLOWED_HOSTS)


def _verify_host(url: str) -> None:
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    if host not in _allowed_hosts():
        EGRESS_FAILURES.labels(reason="disallowed_host").inc()
        raise EgressDenied(f"Egress to host '{host}' is not permitted")


def secure_request(method: str, url: str, **kwargs: Any) -> requests.Response:
    """Dispatch a HTTP request enforcing TLS verification and allowlists."""

    _verify_host(url)
    kwargs.setdefault("timeout", DEFAULT_TIMEOUT)
    kwargs.setdefault("verify", True)
    try:
        response = requests.request(method=method, url=url, **kwargs)
        response.raise_for_status()
        return response
    except requests.exceptions.SSLError:
        EGRESS_FAILURES.labels(reason="tls_failure").inc()
        raise
    except requests.exceptions.Timeout:
        EGRESS_FAILURES.labels(reason="timeout").inc()
        raise
    except requests.exceptions.RequestException:
        EGRESS_FAILURES.labels(reason="network_failure").inc()
        raise


def secure_post(url: str, **kwargs: Any) -> requests.Response:
    return secure_request("POST", url, **kwargs)


__all__ = ["EgressDenied", "secure_post", "secure_request"]
