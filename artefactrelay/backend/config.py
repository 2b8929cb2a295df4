"""Configuration helpers for backend runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_API_BASE_URL = "https://api.openai.com/v1"


@dataclass(frozen=True)
class RelaySettings:
    openai_api_key: str
    assistant_id: str
    api_base_url: str
    database_url: str | None
    allowed_origin: str | None
    host: str
    port: int
    request_timeout_seconds: float
    poll_interval_seconds: float
    max_polls: int
    max_wait_seconds: float | None
    tts_max_attempts: int
    tts_backoff_seconds: float
    log_level: str
    log_format: str


def _optional(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return value


def load_settings() -> RelaySettings:
    max_wait = float(os.getenv("ARTEFACT_RELAY_MAX_WAIT_SECONDS", "60"))
    return RelaySettings(
        openai_api_key=os.getenv("ARTEFACT_RELAY_OPENAI_API_KEY", ""),
        assistant_id=os.getenv("ARTEFACT_RELAY_ASSISTANT_ID", ""),
        api_base_url=os.getenv("ARTEFACT_RELAY_API_BASE_URL", DEFAULT_API_BASE_URL),
        database_url=_optional("ARTEFACT_RELAY_DATABASE_URL"),
        allowed_origin=_optional("ARTEFACT_RELAY_ALLOWED_ORIGIN"),
        host=os.getenv("ARTEFACT_RELAY_HOST", "127.0.0.1"),
        port=int(os.getenv("ARTEFACT_RELAY_PORT", "8000")),
        request_timeout_seconds=float(os.getenv("ARTEFACT_RELAY_REQUEST_TIMEOUT_SECONDS", "60")),
        poll_interval_seconds=float(os.getenv("ARTEFACT_RELAY_POLL_INTERVAL_SECONDS", "2")),
        max_polls=int(os.getenv("ARTEFACT_RELAY_MAX_POLLS", "30")),
        max_wait_seconds=max_wait if max_wait > 0 else None,
        tts_max_attempts=int(os.getenv("ARTEFACT_RELAY_TTS_MAX_ATTEMPTS", "3")),
        tts_backoff_seconds=float(os.getenv("ARTEFACT_RELAY_TTS_BACKOFF_SECONDS", "2")),
        log_level=os.getenv("ARTEFACT_RELAY_LOG_LEVEL", "info"),
        log_format=os.getenv("ARTEFACT_RELAY_LOG_FORMAT", "console"),
    )
