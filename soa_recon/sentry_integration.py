"""
SOA Reconciliation - Sentry Integration

Error tracking with Sentry. Enabled only when a DSN is configured.
"""

import os
import logging
from typing import Optional, Dict, Any

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = [
    "password", "token", "secret", "api_key", "authorization", "cookie"
]


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

    try:
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
        )

        logger.info(f"Sentry initialized for environment: {environment}")
        return True

    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")
        return False


def _redact(d: Any) -> Any:
    if not isinstance(d, dict):
        return d

    result = {}
    for key, value in d.items():
        if any(s in str(key).lower() for s in SENSITIVE_KEYS):
            result[key] = "[REDACTED]"
        elif isinstance(value, dict):
            result[key] = _redact(value)
        elif isinstance(value, list):
            result[key] = [_redact(v) for v in value]
        else:
            result[key] = value
    return result


def filter_sensitive_data(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Redact credentials from request headers, bodies and extras.
    """
    if "request" in event:
        for section in ("headers", "data"):
            if section in event["request"]:
                event["request"][section] = _redact(event["request"][section])

    if "extra" in event:
        event["extra"] = _redact(event["extra"])

    return event


def capture_exception(exception: Exception, **kwargs) -> Optional[str]:
    """
    Capture an exception to Sentry with extra context.

    Returns:
        Event ID if captured, None otherwise
    """
    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in kwargs.items():
                scope.set_extra(key, value)
            return sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"Failed to capture exception to Sentry: {e}")
        return None
