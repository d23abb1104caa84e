from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError

DEFAULT_INTERNAL_MESSAGE = "Internal server error"


class EngineError(Exception):
    kind = "EngineError"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        cause: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        self.cause = cause

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class DuplicateToolError(EngineError):
    kind = "DuplicateToolError"


class UnknownToolError(EngineError):
    kind = "UnknownToolError"


class ToolValidationError(EngineError):
    kind = "ValidationError"

    def __init__(self, message: str, issues: list[dict[str, str]], *, target: str = "input") -> None:
        super().__init__(message, details={"target": target, "issues": issues})
        self.issues = issues
        self.target = target


class ExecutionFailure(EngineError):
    kind = "ExecutionFailure"


class RejectedByCaller(EngineError):
    kind = "Rejected"


class AdapterTransportError(EngineError):
    kind = "AdapterTransportError"
    retryable = True


class StepBudgetExceeded(EngineError):
    kind = "StepBudgetExceeded"


class StatusTransitionError(EngineError):
    kind = "StatusTransitionError"


class InboundMessageError(EngineError):
    kind = "InboundMessageError"


def build_engine_error(
    *,
    kind: str,
    message: str,
    trace_id: str,
    retryable: bool,
    details: dict[str, Any] | None = None,
    cause: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "kind": kind,
        "message": message,
        "trace_id": trace_id,
        "retryable": retryable,
        "ts": datetime.now(tz=timezone.utc).isoformat(),
    }
    if details:
        payload["details"] = details
    if cause:
        payload["cause"] = cause
    return payload


def engine_error_payload(exc: BaseException, trace_id: str) -> dict[str, Any]:
    """Shape any failure for the terminal ``error`` stream event."""
    if isinstance(exc, EngineError):
        return build_engine_error(
            kind=exc.kind,
            message=exc.message,
            trace_id=trace_id,
            retryable=exc.retryable,
            details=exc.details,
            cause=exc.cause,
        )
    return build_engine_error(
        kind="InternalError",
        message=str(exc) or DEFAULT_INTERNAL_MESSAGE,
        trace_id=trace_id,
        retryable=False,
        cause=exc.__class__.__name__,
    )


def error_response(
    *,
    kind: str,
    message: str,
    trace_id: str,
    retryable: bool,
    details: dict[str, Any] | None = None,
    cause: str | None = None,
) -> dict[str, Any]:
    return {
        "error": build_engine_error(
            kind=kind,
            message=message,
            trace_id=trace_id,
            retryable=retryable,
            details=details,
            cause=cause,
        )
    }


def error_from_exception(exc: Exception, trace_id: str) -> tuple[int, dict[str, Any]]:
    if isinstance(exc, InboundMessageError):
        return (
            400,
            error_response(
                kind=exc.kind,
                message=exc.message,
                trace_id=trace_id,
                retryable=False,
                details=exc.details,
                cause=exc.cause,
            ),
        )

    if isinstance(exc, EngineError):
        return (
            503 if exc.retryable else 500,
            error_response(
                kind=exc.kind,
                message=exc.message,
                trace_id=trace_id,
                retryable=exc.retryable,
                details=exc.details,
                cause=exc.cause,
            ),
        )

    if isinstance(exc, RequestValidationError):
        return (
            422,
            error_response(
                kind="ValidationError",
                message="Request validation failed.",
                trace_id=trace_id,
                retryable=False,
                details={"errors": exc.errors()},
                cause="request_validation_error",
            ),
        )

    if isinstance(exc, HTTPException):
        return (
            exc.status_code,
            error_response(
                kind="InternalError" if exc.status_code >= 500 else "InboundMessageError",
                message=str(exc.detail),
                trace_id=trace_id,
                retryable=exc.status_code >= 500,
                cause="http_exception",
            ),
        )

    return (
        500,
        error_response(
            kind="InternalError",
            message=DEFAULT_INTERNAL_MESSAGE,
            trace_id=trace_id,
            retryable=False,
            cause=exc.__class__.__name__,
        ),
    )
