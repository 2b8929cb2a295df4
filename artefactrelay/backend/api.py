"""FastAPI endpoints for description adaptation, follow-ups, narration and interaction logging."""

from __future__ import annotations

from contextlib import asynccontextmanager
import json
import math
from typing import Any, AsyncIterator

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .context import RelayContext, build_context
from .errors import MissingFieldsError, RelayError, RetryExhausted, StoreUnavailable
from .models import InteractionDelta, JobState
from .prompts import adaptation_fallback, build_adaptation_prompt, build_more_info_prompt, more_info_fallback
from .retry import DEFAULT_RETRY_ON, with_retry

logger = structlog.get_logger()


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FetchDescriptionRequest(CamelModel):
    artefact: str = Field(min_length=1)
    original_description: str = Field(min_length=1)
    profile: str = Field(min_length=1)
    participant_id: str = Field(min_length=1)


class FetchMoreInfoRequest(CamelModel):
    artefact: str = Field(min_length=1)
    profile: str = Field(min_length=1)
    participant_id: str = Field(min_length=1)
    current_description: str | None = None


class TextResponse(BaseModel):
    response: str


class TtsRequest(CamelModel):
    text: str = Field(min_length=1)


def _non_negative_number(value: Any) -> float:
    # Absent, non-numeric, non-finite or negative values count as zero.
    if value is None:
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number) or number < 0:
        return 0.0
    return number


class LogArtefactRequest(CamelModel):
    participant_id: str = Field(min_length=1)
    artefact: str = Field(min_length=1)
    description_type: str = Field(min_length=1)
    profile: str = Field(min_length=1)
    delivery_mode: str = Field(min_length=1)
    played_audio: bool
    time_spent_seconds: float = 0.0
    tell_me_more_clicked: int = 0

    @field_validator("time_spent_seconds", mode="before")
    @classmethod
    def _seconds_or_zero(cls, value: Any) -> float:
        return _non_negative_number(value)

    @field_validator("tell_me_more_clicked", mode="before")
    @classmethod
    def _clicks_or_zero(cls, value: Any) -> int:
        return int(_non_negative_number(value))


class LogArtefactResponse(BaseModel):
    status: str
    interaction: dict[str, Any]


def _invalid_fields(exc: RequestValidationError) -> list[str]:
    fields: list[str] = []
    for error in exc.errors():
        loc = error.get("loc", ())
        name = str(loc[-1]) if len(loc) > 1 and isinstance(loc[-1], str) else "body"
        if name not in fields:
            fields.append(name)
    return fields


def create_app(context: RelayContext | None = None) -> FastAPI:
    relay_context = context if context is not None else build_context()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        try:
            await relay_context.store.ping()
        except StoreUnavailable:
            logger.critical("Session store unreachable at startup; refusing to serve")
            await relay_context.client.aclose()
            raise
        logger.info(
            "Artefact relay started",
            store=type(relay_context.store).__name__,
            poll_interval_seconds=relay_context.settings.poll_interval_seconds,
            max_polls=relay_context.settings.max_polls,
        )
        yield
        await relay_context.client.aclose()
        logger.info("Artefact relay stopped")

    app = FastAPI(title="Artefact Relay API", version="0.1.0", lifespan=lifespan)
    app.state.context = relay_context

    if relay_context.settings.allowed_origin:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[relay_context.settings.allowed_origin],
            allow_methods=["GET", "POST"],
            allow_headers=["Content-Type", "Authorization"],
        )

    @app.exception_handler(RelayError)
    async def _relay_error_handler(request: Request, exc: RelayError) -> Response:
        if isinstance(exc, StoreUnavailable):
            logger.error("Session store unavailable", path=request.url.path)
        return JSONResponse(status_code=exc.status_code, content=exc.to_public_dict())

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
        error = MissingFieldsError(_invalid_fields(exc))
        logger.info("Rejected request with missing fields", path=request.url.path, fields=error.fields)
        return JSONResponse(status_code=error.status_code, content=error.to_public_dict())

    def get_context() -> RelayContext:
        return relay_context

    async def run_text_flow(
        local_context: RelayContext, participant_id: str, prompt: str, fallback: str
    ) -> TextResponse | JSONResponse:
        try:
            outcome = await local_context.driver.converse(participant_id, prompt, fallback)
        except RelayError as exc:
            logger.error("Text flow failed", participant_id=participant_id, code=exc.code, error=exc.message)
            return JSONResponse(status_code=exc.status_code, content={"response": fallback, **exc.to_public_dict()})

        if outcome.error is not None:
            status_code = 500 if outcome.state is JobState.TIMED_OUT else 200
            return JSONResponse(
                status_code=status_code,
                content={"response": outcome.text, **outcome.error.to_public_dict()},
            )
        return TextResponse(response=outcome.text)

    @app.post("/fetch-description", response_model=TextResponse)
    async def fetch_description(
        payload: FetchDescriptionRequest,
        local_context: RelayContext = Depends(get_context),
    ) -> TextResponse | JSONResponse:
        prompt = build_adaptation_prompt(payload.artefact, payload.profile, payload.original_description)
        fallback = adaptation_fallback(payload.original_description)
        return await run_text_flow(local_context, payload.participant_id, prompt, fallback)

    @app.post("/fetch-more-info", response_model=TextResponse)
    async def fetch_more_info(
        payload: FetchMoreInfoRequest,
        local_context: RelayContext = Depends(get_context),
    ) -> TextResponse | JSONResponse:
        prompt = build_more_info_prompt(payload.artefact, payload.profile, payload.current_description)
        fallback = more_info_fallback(payload.artefact, payload.current_description)
        return await run_text_flow(local_context, payload.participant_id, prompt, fallback)

    @app.post("/fetch-tts")
    async def fetch_tts(
        payload: TtsRequest,
        local_context: RelayContext = Depends(get_context),
    ) -> Response:
        settings = local_context.settings
        try:
            audio = await with_retry(
                lambda: local_context.client.synthesize_speech(payload.text),
                max_attempts=settings.tts_max_attempts,
                backoff_seconds=settings.tts_backoff_seconds,
                sleep=local_context.sleep,
                operation_name="synthesize_speech",
            )
        except DEFAULT_RETRY_ON as exc:
            raise RetryExhausted(meta={"attempts": settings.tts_max_attempts, "cause": str(exc)}) from exc

        return Response(
            content=audio,
            media_type="audio/mpeg",
            headers={
                "Content-Length": str(len(audio)),
                "Accept-Ranges": "bytes",
                "Cache-Control": "no-cache",
            },
        )

    @app.post("/log-artefact-data", response_model=LogArtefactResponse)
    async def log_artefact_data(
        payload: LogArtefactRequest,
        local_context: RelayContext = Depends(get_context),
    ) -> LogArtefactResponse:
        record = await local_context.store.upsert_interaction(
            payload.participant_id,
            payload.artefact,
            InteractionDelta(
                description_type=payload.description_type,
                profile=payload.profile,
                delivery_mode=payload.delivery_mode,
                played_audio=payload.played_audio,
                time_spent_seconds=payload.time_spent_seconds,
                more_info_clicks=payload.tell_me_more_clicked,
            ),
        )
        return LogArtefactResponse(status="ok", interaction=record.to_dict())

    @app.get("/fetch-stored-threads")
    async def fetch_stored_threads(local_context: RelayContext = Depends(get_context)) -> dict[str, Any]:
        sessions = await local_context.store.list_sessions()
        return {"threads": [session.to_dict() for session in sessions]}

    @app.get("/export-threads")
    async def export_threads(local_context: RelayContext = Depends(get_context)) -> Response:
        sessions = await local_context.store.list_sessions()
        interactions = await local_context.store.list_interactions()
        document = {
            "threads": [session.to_dict() for session in sessions],
            "interactions": [interaction.to_dict() for interaction in interactions],
        }
        return Response(
            content=json.dumps(document, indent=2),
            media_type="application/json",
            headers={"Content-Disposition": 'attachment; filename="threads.json"'},
        )

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
