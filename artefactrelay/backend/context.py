"""Explicitly constructed runtime context shared by the request handlers."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import structlog

from artefactrelay.backend.assistants import AssistantsClient
from artefactrelay.backend.config import RelaySettings, load_settings
from artefactrelay.backend.driver import JobDriver
from artefactrelay.backend.logging_setup import configure_logging
from artefactrelay.backend.store import InMemorySessionStore, SessionStore, create_store

logger = structlog.get_logger()


@dataclass
class RelayContext:
    settings: RelaySettings
    store: SessionStore
    client: AssistantsClient
    driver: JobDriver
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep)


def build_context(
    settings: RelaySettings | None = None,
    store: SessionStore | None = None,
    client: AssistantsClient | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RelayContext:
    settings = settings if settings is not None else load_settings()
    configure_logging(settings.log_level, settings.log_format)

    if not settings.openai_api_key:
        logger.warning("Assistant service API key is missing")
    if not settings.assistant_id:
        logger.warning("Assistant id is missing")

    session_store = store if store is not None else create_store(settings.database_url)
    if isinstance(session_store, InMemorySessionStore):
        logger.warning("Using in-memory session store; history is lost on restart")

    assistants = client if client is not None else AssistantsClient(
        api_key=settings.openai_api_key,
        assistant_id=settings.assistant_id,
        base_url=settings.api_base_url,
        timeout_seconds=settings.request_timeout_seconds,
    )
    driver = JobDriver(
        client=assistants,
        store=session_store,
        poll_interval_seconds=settings.poll_interval_seconds,
        max_polls=settings.max_polls,
        max_wait_seconds=settings.max_wait_seconds,
        sleep=sleep,
    )
    return RelayContext(settings=settings, store=session_store, client=assistants, driver=driver, sleep=sleep)
