from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import replace
import json
from typing import Any, Callable

import httpx
import pytest

from artefactrelay.backend.assistants import AssistantsClient
from artefactrelay.backend.config import RelaySettings
from artefactrelay.backend.context import RelayContext, build_context
from artefactrelay.backend.store import InMemorySessionStore, SessionStore

DEFAULT_REPLY = "A vase once buried in volcanic ash..."


class FakeAssistantsApi:
    """In-process stand-in for the assistant service, served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.reply: str | None | Callable[[str], str | None] = DEFAULT_REPLY
        self.polls_until_done = 2
        self.polls_by_prompt: dict[str, int] = {}
        self.poll_delay_seconds = 0.0
        self.final_status: str | None = "completed"
        self.poll_failures = 0
        self.thread_failure = False
        self.message_failure = False
        self.speech_failures = 0
        self.audio = b"ID3\x04fake-mp3-frames"

        self.requests: list[tuple[str, str]] = []
        self.threads_created = 0
        self.thread_metadata: dict[str, dict[str, Any]] = {}
        self.prompts: dict[str, list[str]] = defaultdict(list)
        self.runs: dict[str, dict[str, Any]] = {}
        self.status_polls = 0
        self.cancelled: list[str] = []
        self.speech_calls = 0

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def reply_for(self, prompt: str) -> str | None:
        if callable(self.reply):
            return self.reply(prompt)
        return self.reply

    async def handler(self, request: httpx.Request) -> httpx.Response:
        # Yield so concurrent callers interleave at every round trip.
        await asyncio.sleep(0)
        method = request.method
        parts = request.url.path.removeprefix("/v1/").split("/")
        self.requests.append((method, request.url.path))

        if method == "POST" and parts == ["threads"]:
            if self.thread_failure:
                return httpx.Response(500, json={"error": {"message": "boom"}})
            self.threads_created += 1
            thread_id = f"thread_{self.threads_created}"
            self.thread_metadata[thread_id] = json.loads(request.content)["metadata"]
            return httpx.Response(200, json={"id": thread_id, "object": "thread"})

        if method == "POST" and len(parts) == 3 and parts[2] == "messages":
            if self.message_failure:
                return httpx.Response(400, json={"error": {"message": "run is active"}})
            self.prompts[parts[1]].append(json.loads(request.content)["content"])
            return httpx.Response(200, json={"id": f"msg_{len(self.prompts[parts[1]])}"})

        if method == "POST" and len(parts) == 3 and parts[2] == "runs":
            run_id = f"run_{len(self.runs) + 1}"
            self.runs[run_id] = {"thread": parts[1], "prompt": self.prompts[parts[1]][-1], "polls": 0}
            return httpx.Response(200, json={"id": run_id, "status": "queued"})

        if method == "GET" and len(parts) == 4 and parts[2] == "runs":
            self.status_polls += 1
            if self.poll_delay_seconds:
                await asyncio.sleep(self.poll_delay_seconds)
            if self.status_polls <= self.poll_failures:
                return httpx.Response(502, text="bad gateway")
            run = self.runs[parts[3]]
            run["polls"] += 1
            status = "in_progress"
            needed = self.polls_by_prompt.get(run["prompt"], self.polls_until_done)
            if self.final_status is not None and run["polls"] >= needed:
                status = self.final_status
            return httpx.Response(200, json={"id": parts[3], "status": status})

        if method == "POST" and len(parts) == 5 and parts[4] == "cancel":
            self.cancelled.append(parts[3])
            return httpx.Response(200, json={"id": parts[3], "status": "cancelling"})

        if method == "GET" and len(parts) == 3 and parts[2] == "messages":
            run = self.runs[request.url.params["run_id"]]
            text = self.reply_for(run["prompt"])
            data = []
            if text is not None:
                data.append(
                    {
                        "role": "assistant",
                        "run_id": request.url.params["run_id"],
                        "content": [{"type": "text", "text": {"value": text, "annotations": []}}],
                    }
                )
            data.append({"role": "user", "content": [{"type": "text", "text": {"value": run["prompt"]}}]})
            return httpx.Response(200, json={"object": "list", "data": data})

        if method == "POST" and parts == ["audio", "speech"]:
            self.speech_calls += 1
            if self.speech_calls <= self.speech_failures:
                return httpx.Response(503, text="overloaded")
            return httpx.Response(200, content=self.audio, headers={"content-type": "audio/mpeg"})

        return httpx.Response(404, json={"error": {"message": f"unknown route {method} {request.url.path}"}})


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _test_settings() -> RelaySettings:
    return RelaySettings(
        openai_api_key="test-key",
        assistant_id="asst_test",
        api_base_url="https://api.openai.com/v1",
        database_url=None,
        allowed_origin=None,
        host="127.0.0.1",
        port=8000,
        request_timeout_seconds=5.0,
        poll_interval_seconds=2.0,
        max_polls=10,
        max_wait_seconds=None,
        tts_max_attempts=3,
        tts_backoff_seconds=2.0,
        log_level="warning",
        log_format="console",
    )


@pytest.fixture
def fake_api() -> FakeAssistantsApi:
    return FakeAssistantsApi()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def assistants_client(fake_api: FakeAssistantsApi) -> AssistantsClient:
    return AssistantsClient(api_key="test-key", assistant_id="asst_test", transport=fake_api.transport())


@pytest.fixture
def make_context(fake_api: FakeAssistantsApi, fake_clock: FakeClock) -> Callable[..., RelayContext]:
    def factory(store: SessionStore | None = None, **setting_overrides: Any) -> RelayContext:
        settings = replace(_test_settings(), **setting_overrides)
        client = AssistantsClient(
            api_key=settings.openai_api_key,
            assistant_id=settings.assistant_id,
            base_url=settings.api_base_url,
            timeout_seconds=settings.request_timeout_seconds,
            transport=fake_api.transport(),
        )
        return build_context(
            settings=settings,
            store=store if store is not None else InMemorySessionStore(),
            client=client,
            sleep=fake_clock.sleep,
        )

    return factory
