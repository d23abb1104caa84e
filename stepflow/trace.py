from __future__ import annotations

import uuid
from contextvars import ContextVar

TRACE_HEADER = "X-Trace-Id"

_trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)


def generate_trace_id() -> str:
    if hasattr(uuid, "uuid7"):
        return str(uuid.uuid7())  # type: ignore[attr-defined]
    return str(uuid.uuid4())


def bind_trace_id(candidate: str | None) -> str:
    """Adopt the caller's trace id (or mint one) for the current context."""
    trace_id = (candidate or "").strip() or generate_trace_id()
    _trace_id_var.set(trace_id)
    return trace_id


def get_current_trace_id() -> str:
    value = _trace_id_var.get()
    if value:
        return value
    return bind_trace_id(None)


def new_run_id() -> str:
    return f"run_{uuid.uuid4().hex[:12]}"


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:12]}"


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:8]}"
