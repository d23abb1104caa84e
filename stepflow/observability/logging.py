from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

STRUCTURED_FIELDS = (
    "trace_id",
    "run_id",
    "step_index",
    "invocation_id",
    "tool_name",
    "status",
    "duration_ms",
    "outcome",
    "path",
    "method",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "level": record.levelname.lower(),
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in STRUCTURED_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def get_runtime_logger(level: str | None = None) -> logging.Logger:
    logger = logging.getLogger("stepflow.runtime")
    if level:
        logger.setLevel(level)
    if logger.handlers:
        return logger

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    if not level:
        logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger
