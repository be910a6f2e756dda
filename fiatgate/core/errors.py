"""
Error taxonomy and unified error reporting with Sentry integration.

Every error the settlement gate raises on purpose derives from
SettlementGateError and renders as {code, message, metadata} on any
operator- or processor-facing surface.

Usage:
    # Raise a domain error
    raise ConflictError("Duplicate event", metadata={"event_id": "evt_1"})

    # Capture an exception
    capture_exception(exc, context={"settlement_id": 12})

    # Capture a message (non-exception event)
    capture_message("Dispute after settlement", level="error")

    # Context manager for background operations
    with ErrorHandler("settlement_sweep"):
        scheduler.run_sweep()
"""

from typing import Optional, Any, Dict
from datetime import datetime, timezone
import logging

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
import structlog

from fiatgate.core.context import get_request_id, get_context_dict

logger = structlog.get_logger(__name__)

__all__ = [
    "SettlementGateError",
    "ServiceUnavailable",
    "ValidationError",
    "ConflictError",
    "ExhaustedRetries",
    "NotFoundError",
    "UnauthorizedError",
    "init_sentry",
    "capture_exception",
    "capture_message",
    "ErrorHandler",
]


class SettlementGateError(Exception):
    """Base class for errors surfaced as {code, message, metadata}."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.metadata = metadata or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "metadata": self.metadata}


class ServiceUnavailable(SettlementGateError):
    """Circuit is open for a dependency. Callers should back off, not retry immediately."""

    code = "service_unavailable"
    status_code = 503

    def __init__(self, service_name: str, metadata: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"Service '{service_name}' is temporarily unavailable (circuit open)",
            metadata={"service": service_name, **(metadata or {})},
        )
        self.service_name = service_name


class ValidationError(SettlementGateError):
    """Malformed inbound event or out-of-range risk score."""

    code = "validation_error"
    status_code = 422


class ConflictError(SettlementGateError):
    """Duplicate event id, or a dispute against an already settled payment."""

    code = "conflict"
    status_code = 409


class ExhaustedRetries(SettlementGateError):
    """Release retries exhausted. Terminal; needs an operator."""

    code = "exhausted_retries"
    status_code = 500


class NotFoundError(SettlementGateError):
    code = "not_found"
    status_code = 404


class UnauthorizedError(SettlementGateError):
    """Bad webhook signature, cron secret or admin token."""

    code = "unauthorized"
    status_code = 401


_sentry_initialized: bool = False


def init_sentry(
    dsn: str,
    environment: str = "production",
    traces_sample_rate: float = 0.1,
    release: Optional[str] = None,
) -> bool:
    """
    Initialize Sentry SDK for error tracking.

    Returns:
        True if initialization successful, False otherwise
    """
    global _sentry_initialized

    if not dsn:
        logger.info("Sentry disabled (no DSN provided)")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            traces_sample_rate=traces_sample_rate,
            release=release,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            before_send=_before_send,
        )
    except Exception as e:
        logger.error("Failed to initialize Sentry", error=str(e))
        return False

    _sentry_initialized = True
    logger.info("Sentry initialized", environment=environment, traces_sample_rate=traces_sample_rate)
    return True


def _before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Drop health check noise and tag events with the request id."""
    if "request" in event:
        url = event["request"].get("url", "")
        if "/health" in url:
            return None

    request_id = get_request_id()
    if request_id:
        event.setdefault("tags", {})["request_id"] = request_id

    return event


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
    fingerprint: Optional[list[str]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Capture an exception with Sentry and structured logging.

    Args:
        exc: Exception to capture
        context: Additional context dict (e.g., {"settlement_id": 12})
        level: Severity level (debug, info, warning, error, fatal)
        fingerprint: Custom grouping fingerprint for Sentry
        tags: Additional tags for filtering in Sentry

    Returns:
        Sentry event ID or None if not sent
    """
    enriched_context = {
        **get_context_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": type(exc).__name__,
        **(context or {}),
    }

    logger.error("Exception captured", exc_info=exc, **enriched_context)

    if _sentry_initialized:
        try:
            with sentry_sdk.push_scope() as scope:
                for key, value in enriched_context.items():
                    if value is not None:
                        scope.set_extra(key, value)
                for key, value in (tags or {}).items():
                    scope.set_tag(key, value)
                if fingerprint:
                    scope.fingerprint = fingerprint
                scope.level = level
                return sentry_sdk.capture_exception(exc)
        except Exception as e:
            logger.warning("Failed to send exception to Sentry", error=str(e))

    return None


def capture_message(
    message: str,
    level: str = "info",
    context: Optional[Dict[str, Any]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Capture a message with Sentry (for non-exception events).

    Used for conditions an operator must act on even though nothing raised:
    exhausted settlement retries, disputes against settled payments,
    circuit breaker state changes.
    """
    enriched_context = {
        **get_context_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **(context or {}),
    }

    log_func = getattr(logger, level, logger.info)
    log_func(message, **enriched_context)

    if _sentry_initialized:
        try:
            with sentry_sdk.push_scope() as scope:
                for key, value in enriched_context.items():
                    if value is not None:
                        scope.set_extra(key, value)
                for key, value in (tags or {}).items():
                    scope.set_tag(key, value)
                scope.level = level
                return sentry_sdk.capture_message(message, level=level)
        except Exception as e:
            logger.warning("Failed to send message to Sentry", error=str(e))

    return None


class ErrorHandler:
    """
    Context manager for handling errors with automatic capture.

    Usage:
        # Suppress and capture errors (background jobs)
        with ErrorHandler("settlement_sweep"):
            scheduler.run_sweep()

        # Re-raise after capturing
        with ErrorHandler("release", reraise=True):
            client.release(record)
    """

    def __init__(
        self,
        operation: str,
        context: Optional[Dict[str, Any]] = None,
        capture: bool = True,
        reraise: bool = False,
        fingerprint: Optional[list[str]] = None,
    ):
        self.operation = operation
        self.context = context or {}
        self.capture = capture
        self.reraise = reraise
        self.fingerprint = fingerprint or [operation]
        self.event_id: Optional[str] = None

    def __enter__(self) -> "ErrorHandler":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_val is not None:
            if self.capture:
                self.event_id = capture_exception(
                    exc_val,
                    context={"operation": self.operation, **self.context},
                    fingerprint=self.fingerprint + [type(exc_val).__name__],
                )
            return not self.reraise

        return False

