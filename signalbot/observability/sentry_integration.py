"""Sentry error tracking for the webhook API.

Active only when SENTRY_DSN is set in the environment.
"""

from __future__ import annotations

import os
from typing import Any

import sentry_sdk
from sentry_sdk.integrations.flask import FlaskIntegration

from signalbot.observability.logger import get_logger

log = get_logger(__name__)

_SENSITIVE_KEYS = (
    "api_key", "api-key", "apikey", "api_secret", "secret", "signature", "listen_key",
    "password", "token",
)


def init_sentry() -> bool:
    """Initialise Sentry if SENTRY_DSN is configured. Returns True if active."""
    dsn = os.environ.get("SENTRY_DSN", "")
    if not dsn:
        return False

    sentry_sdk.init(
        dsn=dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.1,
        environment=os.environ.get("ENVIRONMENT", "production"),
        release=os.environ.get("SIGNALBOT_VERSION", "0.1.0"),
        send_default_pii=False,
        before_send=scrub_event,
    )
    log.info("sentry.initialised")
    return True


def _scrub_mapping(data: dict[str, Any]) -> None:
    for key in list(data.keys()):
        if any(s in key.lower() for s in _SENSITIVE_KEYS):
            data[key] = "***REDACTED***"


def scrub_event(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any]:
    """Remove credentials from Sentry events before they leave the process."""
    if isinstance(event.get("extra"), dict):
        _scrub_mapping(event["extra"])
    request = event.get("request")
    if isinstance(request, dict):
        for section in ("data", "headers", "query_string"):
            if isinstance(request.get(section), dict):
                _scrub_mapping(request[section])
    return event
