from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_BASE_URLS = {
    "zhipu": "https://open.bigmodel.cn/api/paas/v4/",
    "hunyuan": "https://api.hunyuan.cloud.tencent.com/v1",
    "openai": "https://api.openai.com/v1",
    "anthropic": "",
}
API_KEY_ENV_BY_PROVIDER = {
    "zhipu": "BIG_MODEL_API_KEY",
    "hunyuan": "OPENAI_API_KEY",
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


@dataclass(slots=True)
class ModelSettings:
    provider: str
    model: str
    base_url: str | None
    api_key: str


@dataclass(slots=True)
class Settings:
    host: str
    port: int
    max_steps: int
    stream_buffer: int
    agent_model: ModelSettings
    tool_model: ModelSettings
    cors_origins: list[str]
    log_level: str


def _parse_int(value: str | None, default: int, *, minimum: int = 1) -> int:
    try:
        parsed = int(value) if value is not None else default
    except ValueError:
        parsed = default
    return max(parsed, minimum)


def _model_settings(prefix: str, default_provider: str, default_model: str) -> ModelSettings:
    provider = os.getenv(f"{prefix}_PROVIDER", default_provider).strip().lower()
    base_url = os.getenv(f"{prefix}_BASE_URL", DEFAULT_BASE_URLS.get(provider, "")).strip()
    api_key = os.getenv(f"{prefix}_API_KEY", "").strip()
    if not api_key:
        api_key = os.getenv(API_KEY_ENV_BY_PROVIDER.get(provider, ""), "").strip()
    return ModelSettings(
        provider=provider,
        model=os.getenv(f"{prefix}_MODEL", default_model).strip(),
        base_url=base_url or None,
        api_key=api_key,
    )


def load_settings() -> Settings:
    origins = os.getenv("STEPFLOW_CORS_ORIGINS", "*")
    return Settings(
        host=os.getenv("STEPFLOW_HOST", "127.0.0.1"),
        port=_parse_int(os.getenv("STEPFLOW_PORT"), 3000),
        max_steps=_parse_int(os.getenv("STEPFLOW_MAX_STEPS"), 100),
        stream_buffer=_parse_int(os.getenv("STEPFLOW_STREAM_BUFFER"), 64),
        agent_model=_model_settings("STEPFLOW", "zhipu", "glm-4.5-flash"),
        tool_model=_model_settings("STEPFLOW_TOOL", "hunyuan", "hunyuan-lite"),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()] or ["*"],
        log_level=os.getenv("STEPFLOW_LOG_LEVEL", "INFO").strip().upper(),
    )
