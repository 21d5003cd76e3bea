import logging
import os

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration


SENSITIVE_KEYS = (
    "access_token",
    "refresh_token",
    "client_secret",
    "authorization",
    "appid",
    "code",
    "password",
)
REDACTED = "[redacted]"


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def scrub(value):
    """Recursively replace credential-bearing values in an event payload."""
    if isinstance(value, dict):
        cleaned = {}
        for key, item in value.items():
            if isinstance(key, str) and key.lower() in SENSITIVE_KEYS:
                cleaned[key] = REDACTED
            else:
                cleaned[key] = scrub(item)
        return cleaned
    if isinstance(value, list):
        return [scrub(item) for item in value]
    return value


def _before_send(event, hint):
    return scrub(event)


def init_error_reporting(service_name: str, enable_fastapi: bool = False) -> bool:
    dsn = os.getenv("RUNSYNC_SENTRY_DSN")
    if not dsn:
        return False

    integrations = [LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)]
    if enable_fastapi:
        integrations.extend([FastApiIntegration(), StarletteIntegration()])

    sentry_sdk.init(
        dsn=dsn,
        environment=os.getenv("RUNSYNC_ENV", os.getenv("RUN_MODE", "prod")),
        release=os.getenv("RUNSYNC_RELEASE"),
        traces_sample_rate=_float_env("RUNSYNC_SENTRY_TRACES_SAMPLE_RATE", 0.0),
        integrations=integrations,
        send_default_pii=False,
        before_send=_before_send,
    )
    sentry_sdk.set_tag("service", service_name)
    return True
