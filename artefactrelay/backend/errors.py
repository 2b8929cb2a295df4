"""Typed errors raised by the relay and rendered by the HTTP layer."""

from __future__ import annotations

from typing import Any


class RelayError(Exception):
    """Base typed error.

    Carries a stable dot-separated `code` for clients, a human readable
    `message`, the HTTP status the API maps it to, and optional safe `meta`.
    """

    code = "relay.error"
    status_code = 500
    default_message = "Relay request failed"

    def __init__(self, message: str | None = None, *, meta: dict[str, Any] | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        self.meta = dict(meta or {})

    def to_public_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.meta:
            payload["meta"] = self.meta
        return payload


class MissingFieldsError(RelayError):
    code = "request.missing_fields"
    status_code = 400
    default_message = "Missing required fields"

    def __init__(self, fields: list[str]) -> None:
        self.fields = list(fields)
        super().__init__(f"Missing or invalid fields: {', '.join(self.fields)}")

    def to_public_dict(self) -> dict[str, Any]:
        payload = super().to_public_dict()
        payload["fields"] = self.fields
        return payload


class UpstreamError(RelayError):
    code = "upstream.error"
    status_code = 502
    default_message = "The assistant service returned an unexpected response"


class UpstreamCreateFailed(UpstreamError):
    code = "upstream.create_failed"
    status_code = 500
    default_message = "The assistant service did not create a conversation"


class UpstreamSubmitFailed(UpstreamError):
    code = "upstream.submit_failed"
    status_code = 500
    default_message = "The assistant service did not accept the prompt"


class UpstreamPollFailed(UpstreamError):
    code = "upstream.poll_failed"
    status_code = 500
    default_message = "Could not read the generation status"


class UpstreamRunFailed(UpstreamError):
    code = "upstream.run_failed"
    status_code = 200
    default_message = "The generation job failed"


class UpstreamTimeout(UpstreamError):
    code = "upstream.timeout"
    status_code = 500
    default_message = "The assistant service was too slow to respond"


class UpstreamEmptyResult(UpstreamError):
    code = "upstream.empty_result"
    status_code = 200
    default_message = "The generation job completed without a reply"


class UpstreamRequestFailed(UpstreamError):
    code = "upstream.request_failed"
    default_message = "The assistant service request failed"


class StoreUnavailable(RelayError):
    code = "store.unavailable"
    status_code = 500
    default_message = "The session store is unavailable"


class RetryExhausted(RelayError):
    code = "upstream.retry_exhausted"
    status_code = 500
    default_message = "Failed to generate TTS audio"
