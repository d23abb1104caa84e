from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from stepflow.agent.prompts import WRITER_SYSTEM_PROMPT
from stepflow.agent.provider_router import build_provider_from_settings
from stepflow.agent.scheduler import StepScheduler
from stepflow.agent.tool_registry import ToolRegistry
from stepflow.api import chat, ops
from stepflow.config import Settings, load_settings
from stepflow.deps import set_dependencies
from stepflow.errors import EngineError, error_from_exception
from stepflow.observability.logging import get_runtime_logger
from stepflow.tools.writer_tools import build_writer_tools
from stepflow.trace import TRACE_HEADER, bind_trace_id, get_current_trace_id

settings = load_settings()
logger = get_runtime_logger(settings.log_level)


def build_scheduler(config: Settings) -> StepScheduler:
    tool_adapter = build_provider_from_settings(config.tool_model)
    registry = ToolRegistry(build_writer_tools(tool_adapter, config.tool_model.model))
    return StepScheduler(
        adapter=build_provider_from_settings(config.agent_model),
        registry=registry,
        model=config.agent_model.model,
        system_prompt=WRITER_SYSTEM_PROMPT,
        max_steps=config.max_steps,
        stream_buffer=config.stream_buffer,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    set_dependencies(build_scheduler(settings))
    logger.info("runtime_started", extra={"path": f"{settings.host}:{settings.port}"})
    yield


app = FastAPI(title="Stepflow Runtime", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def trace_middleware(request: Request, call_next):
    trace_id = bind_trace_id(request.headers.get(TRACE_HEADER))
    request.state.trace_id = trace_id
    started = datetime.now(tz=timezone.utc)
    try:
        response = await call_next(request)
    except Exception as exc:  # noqa: BLE001
        status_code, payload = error_from_exception(exc, trace_id)
        response = JSONResponse(status_code=status_code, content=payload)
    duration_ms = int((datetime.now(tz=timezone.utc) - started).total_seconds() * 1000)
    logger.info(
        "http_request",
        extra={
            "trace_id": trace_id,
            "path": request.url.path,
            "method": request.method,
            "status": response.status_code,
            "duration_ms": duration_ms,
            "outcome": "ok" if response.status_code < 400 else "error",
        },
    )
    response.headers[TRACE_HEADER] = trace_id
    return response


@app.exception_handler(Exception)
async def exception_handler(request: Request, exc: Exception):
    trace_id = str(getattr(request.state, "trace_id", get_current_trace_id()))
    status_code, payload = error_from_exception(exc, trace_id)
    response = JSONResponse(status_code=status_code, content=payload)
    response.headers[TRACE_HEADER] = trace_id
    return response


@app.exception_handler(EngineError)
async def engine_exception_handler(request: Request, exc: EngineError):
    return await exception_handler(request, exc)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return await exception_handler(request, exc)


app.include_router(chat.router)
app.include_router(ops.router)


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
