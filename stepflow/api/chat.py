from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sse_starlette.sse import EventSourceResponse

from stepflow.agent.messages import message_from_dict
from stepflow.deps import get_scheduler
from stepflow.protocol import ChatSubmission
from stepflow.sse.encoding import sse_events
from stepflow.trace import get_current_trace_id

router = APIRouter(tags=["chat"])


@router.post("/chat")
async def chat(submission: ChatSubmission, request: Request, scheduler=Depends(get_scheduler)):
    trace_id = str(getattr(request.state, "trace_id", get_current_trace_id()))
    messages = [message_from_dict(m) for m in submission.messages]
    # History problems surface as a 400 here, before the stream opens.
    run = scheduler.start(messages, trace_id=trace_id)
    return EventSourceResponse(sse_events(run.events()))
