"""Async HTTP client for the hosted assistant (threads/runs) and speech endpoints."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from artefactrelay.backend.config import DEFAULT_API_BASE_URL
from artefactrelay.backend.errors import (
    UpstreamCreateFailed,
    UpstreamError,
    UpstreamPollFailed,
    UpstreamRequestFailed,
    UpstreamSubmitFailed,
)

logger = structlog.get_logger()

ASSISTANTS_BETA_HEADER = "assistants=v2"


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _message_text(message: dict[str, Any]) -> str:
    parts: list[str] = []
    for block in message.get("content") or []:
        if not isinstance(block, dict):
            continue
        text = block.get("text")
        if isinstance(text, dict) and isinstance(text.get("value"), str):
            parts.append(text["value"])
    return "\n".join(parts).strip()


class AssistantsClient:
    """Thin wrapper over the Assistants API v2 and the speech endpoint.

    Every method is one HTTP round trip bounded by `timeout_seconds`. Missing
    identifiers in a response are surfaced as typed upstream errors so callers
    never continue with a half-created conversation or job.
    """

    def __init__(
        self,
        api_key: str,
        assistant_id: str,
        base_url: str = DEFAULT_API_BASE_URL,
        timeout_seconds: float = 60.0,
        tts_model: str = "tts-1",
        tts_voice: str = "nova",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.assistant_id = assistant_id
        self.tts_model = tts_model
        self.tts_voice = tts_voice
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "OpenAI-Beta": ASSISTANTS_BETA_HEADER,
            },
            timeout=timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _post_for_id(self, path: str, body: dict[str, Any], error_cls: type[UpstreamError]) -> str:
        try:
            response = await self._http.post(path, json=body)
        except httpx.HTTPError as exc:
            raise error_cls(meta={"path": path, "reason": type(exc).__name__}) from exc
        identifier = _json_or_empty(response).get("id")
        if not isinstance(identifier, str) or identifier == "":
            logger.warning(
                "Assistant service response had no id",
                path=path,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise error_cls(meta={"path": path, "status_code": response.status_code})
        return identifier

    async def create_conversation(self, participant_id: str) -> str:
        return await self._post_for_id(
            "/threads",
            {"metadata": {"participantId": participant_id}},
            UpstreamCreateFailed,
        )

    async def add_message(self, conversation_id: str, content: str) -> str:
        return await self._post_for_id(
            f"/threads/{conversation_id}/messages",
            {"role": "user", "content": content},
            UpstreamSubmitFailed,
        )

    async def create_run(self, conversation_id: str) -> str:
        return await self._post_for_id(
            f"/threads/{conversation_id}/runs",
            {"assistant_id": self.assistant_id},
            UpstreamSubmitFailed,
        )

    async def get_run_status(self, conversation_id: str, run_id: str) -> str:
        path = f"/threads/{conversation_id}/runs/{run_id}"
        try:
            response = await self._http.get(path)
        except httpx.HTTPError as exc:
            raise UpstreamPollFailed(meta={"run_id": run_id, "reason": type(exc).__name__}) from exc
        status = _json_or_empty(response).get("status")
        if response.status_code >= 400 or not isinstance(status, str):
            raise UpstreamPollFailed(meta={"run_id": run_id, "status_code": response.status_code})
        return status

    async def fetch_reply(self, conversation_id: str, run_id: str) -> str | None:
        """Return the newest assistant message text produced by `run_id`, if any."""
        path = f"/threads/{conversation_id}/messages"
        try:
            response = await self._http.get(path, params={"run_id": run_id, "order": "desc"})
        except httpx.HTTPError as exc:
            raise UpstreamRequestFailed(meta={"path": path, "reason": type(exc).__name__}) from exc
        if response.status_code >= 400:
            raise UpstreamRequestFailed(meta={"path": path, "status_code": response.status_code})

        for message in _json_or_empty(response).get("data") or []:
            if isinstance(message, dict) and message.get("role") == "assistant":
                text = _message_text(message)
                if text:
                    return text
        return None

    async def cancel_run(self, conversation_id: str, run_id: str) -> None:
        path = f"/threads/{conversation_id}/runs/{run_id}/cancel"
        try:
            response = await self._http.post(path)
        except httpx.HTTPError as exc:
            raise UpstreamRequestFailed(meta={"path": path, "reason": type(exc).__name__}) from exc
        if response.status_code >= 400:
            raise UpstreamRequestFailed(meta={"path": path, "status_code": response.status_code})

    async def synthesize_speech(self, text: str) -> bytes:
        response = await self._http.post(
            "/audio/speech",
            json={"model": self.tts_model, "input": text, "voice": self.tts_voice},
        )
        if response.status_code >= 400:
            raise UpstreamRequestFailed(
                f"Failed to generate audio: {response.reason_phrase}",
                meta={"status_code": response.status_code},
            )
        if not response.content:
            raise UpstreamRequestFailed("Speech endpoint returned an empty body")
        return response.content
