"""Wire models shared by the engine and the HTTP surface."""

from typing import Any

from pydantic import BaseModel, Field

PROTOCOL_VERSION = "1.0.0"


class EventEnvelope(BaseModel):
    protocol_version: str = PROTOCOL_VERSION
    trace_id: str
    event_id: str
    run_id: str
    seq: int
    ts: str
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)


class ChatSubmission(BaseModel):
    messages: list[dict[str, Any]] = Field(default_factory=list)
