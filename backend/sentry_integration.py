"""
CleanCare Identity - Sentry Integration

Error tracking with Sentry. Customer phones and names never leave the
process unmasked.
"""

import os
import re
import logging
from typing import Optional, Dict, Any

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)

PHONE_RUN = re.compile(r"\d{6,}(\d{4})")


def init_sentry(
    dsn: Optional[str] = None,
    environment: str = "development",
    release: Optional[str] = None,
    sample_rate: float = 1.0,
    traces_sample_rate: float = 0.1,
) -> bool:
    """
    Initialize Sentry error tracking.

    Args:
        dsn: Sentry DSN (from environment if not provided)
        environment: Environment name (production, staging, development)
        release: Release version
        sample_rate: Error sampling rate (0.0 to 1.0)
        traces_sample_rate: Performance tracing sample rate

    Returns:
        True if Sentry was initialized, False otherwise
    """
    dsn = dsn or os.environ.get("SENTRY_DSN", "")

    if not dsn:
        logger.info("Sentry DSN not configured. Error tracking disabled.")
        return False

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=release or os.environ.get("GIT_SHA", "unknown"),
        sample_rate=sample_rate,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            LoggingIntegration(
                level=logging.INFO,
                event_level=logging.ERROR
            ),
        ],
        send_default_pii=False,
        before_send=filter_sensitive_data,
        ignore_errors=[
            "ConnectionResetError",
            "BrokenPipeError",
        ],
    )

    logger.info(f"Sentry initialized for environment: {environment}")
    return True


def mask_phone_runs(value: str) -> str:
    """Replace any long digit run with its last 4 digits."""
    return PHONE_RUN.sub(lambda m: f"***{m.group(1)}", value)


def filter_sensitive_data(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Filter sensitive data from Sentry events.
    """
    sensitive_keys = [
        "password", "token", "secret", "api_key", "api-key", "authorization",
        "cookie", "email", "name", "otp"
    ]

    def redact(value: Any) -> Any:
        if isinstance(value, dict):
            result = {}
            for key, item in value.items():
                if any(s in str(key).lower() for s in sensitive_keys):
                    result[key] = "[REDACTED]"
                else:
                    result[key] = redact(item)
            return result
        if isinstance(value, list):
            return [redact(v) for v in value]
        if isinstance(value, str):
            return mask_phone_runs(value)
        return value

    if "request" in event:
        for part in ("headers", "data", "query_string"):
            if part in event["request"]:
                event["request"][part] = redact(event["request"][part])

    if "extra" in event:
        event["extra"] = redact(event["extra"])

    return event


def capture_exception(exception: Exception, **kwargs) -> Optional[str]:
    """
    Capture an exception to Sentry.

    Args:
        exception: The exception to capture
        **kwargs: Additional context

    Returns:
        Event ID if captured, None otherwise
    """
    with sentry_sdk.new_scope() as scope:
        for key, value in kwargs.items():
            scope.set_extra(key, value)
        return sentry_sdk.capture_exception(exception)


def set_tag(key: str, value: str):
    """Set a tag for Sentry."""
    sentry_sdk.set_tag(key, value)
