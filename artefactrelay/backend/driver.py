"""Drive one remote generation job from submission to a terminal state.

A job moves through `submitted -> queued -> running` and ends in exactly one
of `completed`, `failed` or `timed_out`. The poll loop is bounded by an attempt
count and, optionally, a wall-clock budget; both sleep and clock are injected
so tests can step through transitions without waiting.

Only a `completed` job with a non-empty assistant reply counts as success.
Every other ending returns the caller's fallback text with the typed error
attached, so the HTTP layer always has something readable to send back.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
import time
from typing import Awaitable, Callable, Protocol
import weakref

import structlog
from structlog.typing import FilteringBoundLogger

from artefactrelay.backend.errors import (
    RelayError,
    UpstreamEmptyResult,
    UpstreamError,
    UpstreamPollFailed,
    UpstreamRunFailed,
    UpstreamTimeout,
)
from artefactrelay.backend.models import ConversationHandle, GenerationJob, GenerationOutcome, JobState
from artefactrelay.backend.store import SessionStore

logger = structlog.get_logger()

REMOTE_STATUS_STATES: dict[str, JobState] = {
    "queued": JobState.QUEUED,
    "in_progress": JobState.RUNNING,
    "cancelling": JobState.RUNNING,
    "completed": JobState.COMPLETED,
    "failed": JobState.FAILED,
    "cancelled": JobState.FAILED,
    "expired": JobState.FAILED,
    "incomplete": JobState.FAILED,
    "requires_action": JobState.FAILED,
}


def state_from_remote_status(status: str) -> JobState:
    # Unknown statuses keep the job running; the poll ceiling bounds them.
    return REMOTE_STATUS_STATES.get(status, JobState.RUNNING)


class JobClient(Protocol):
    async def create_conversation(self, participant_id: str) -> str: ...

    async def add_message(self, conversation_id: str, content: str) -> str: ...

    async def create_run(self, conversation_id: str) -> str: ...

    async def get_run_status(self, conversation_id: str, run_id: str) -> str: ...

    async def fetch_reply(self, conversation_id: str, run_id: str) -> str | None: ...

    async def cancel_run(self, conversation_id: str, run_id: str) -> None: ...


class JobDriver:
    def __init__(
        self,
        client: JobClient,
        store: SessionStore,
        poll_interval_seconds: float = 2.0,
        max_polls: int = 30,
        max_wait_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_polls < 1:
            raise ValueError("max_polls must be at least 1")
        self.client = client
        self.store = store
        self.poll_interval_seconds = poll_interval_seconds
        self.max_polls = max_polls
        self.max_wait_seconds = max_wait_seconds
        self._sleep = sleep
        self._clock = clock
        self._participant_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, participant_id: str) -> asyncio.Lock:
        lock = self._participant_locks.get(participant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._participant_locks[participant_id] = lock
        return lock

    async def converse(self, participant_id: str, prompt: str, fallback_text: str) -> GenerationOutcome:
        """Resolve the participant's conversation, then run one prompt through it.

        Jobs for one participant run one at a time in arrival order, so the
        stored history follows submission order.
        """
        async with self._lock_for(participant_id):
            conversation_id = await self.store.get_or_create(
                participant_id,
                lambda: self.client.create_conversation(participant_id),
            )
            return await self._run_job(participant_id, conversation_id, prompt, fallback_text)

    async def adapt(
        self,
        participant_id: str,
        conversation_id: ConversationHandle,
        prompt: str,
        fallback_text: str,
    ) -> GenerationOutcome:
        async with self._lock_for(participant_id):
            return await self._run_job(participant_id, conversation_id, prompt, fallback_text)

    async def _run_job(
        self,
        participant_id: str,
        conversation_id: ConversationHandle,
        prompt: str,
        fallback_text: str,
    ) -> GenerationOutcome:
        log = logger.bind(participant_id=participant_id, conversation_id=conversation_id)

        await self.client.add_message(conversation_id, prompt)
        run_id = await self.client.create_run(conversation_id)
        job = GenerationJob(job_id=run_id, conversation_id=conversation_id)
        log = log.bind(run_id=run_id)
        log.info("Generation job submitted")

        job = await self._poll_until_terminal(job, log)

        if job.state is JobState.TIMED_OUT:
            await self._cancel_quietly(job, log)
            return self._fallback(job, fallback_text, UpstreamTimeout(meta={"polls": job.polls}), log)
        if job.state is JobState.FAILED:
            return self._fallback(job, fallback_text, UpstreamRunFailed(meta={"polls": job.polls}), log)

        try:
            reply = await self.client.fetch_reply(conversation_id, job.job_id)
        except UpstreamError as exc:
            return self._fallback(replace(job, state=JobState.FAILED), fallback_text, exc, log)
        if reply is None or reply.strip() == "":
            return self._fallback(replace(job, state=JobState.FAILED), fallback_text, UpstreamEmptyResult(), log)

        await self.store.append_messages(participant_id, [("user", prompt), ("assistant", reply)])
        log.info("Generation job completed", polls=job.polls, reply_chars=len(reply))
        return GenerationOutcome(text=reply, state=JobState.COMPLETED)

    async def _poll_until_terminal(self, job: GenerationJob, log: FilteringBoundLogger) -> GenerationJob:
        deadline = None
        if self.max_wait_seconds is not None:
            deadline = self._clock() + self.max_wait_seconds

        while not job.state.terminal:
            if job.polls >= self.max_polls or (deadline is not None and self._clock() >= deadline):
                return replace(job, state=JobState.TIMED_OUT)

            await self._sleep(self.poll_interval_seconds)
            job = replace(job, polls=job.polls + 1)
            # A single poll may not outlast the remaining wait budget.
            poll_timeout = None
            if deadline is not None:
                poll_timeout = max(deadline - self._clock(), 0.0)
            try:
                status = await asyncio.wait_for(
                    self.client.get_run_status(job.conversation_id, job.job_id),
                    timeout=poll_timeout,
                )
            except asyncio.TimeoutError:
                log.warning("Job status poll exceeded the wait budget", poll=job.polls)
                return replace(job, state=JobState.TIMED_OUT)
            except UpstreamPollFailed as exc:
                log.warning("Job status poll failed", poll=job.polls, error=exc.message, meta=exc.meta)
                continue

            state = state_from_remote_status(status)
            if state is not job.state:
                log.info("Job state changed", poll=job.polls, remote_status=status, state=state.value)
            job = replace(job, state=state)
        return job

    async def _cancel_quietly(self, job: GenerationJob, log: FilteringBoundLogger) -> None:
        try:
            await self.client.cancel_run(job.conversation_id, job.job_id)
        except UpstreamError as exc:
            log.warning("Could not cancel timed out job", error=exc.message, meta=exc.meta)

    def _fallback(
        self,
        job: GenerationJob,
        fallback_text: str,
        error: RelayError,
        log: FilteringBoundLogger,
    ) -> GenerationOutcome:
        log.warning("Generation job did not produce a reply", state=job.state.value, polls=job.polls, code=error.code)
        return GenerationOutcome(text=fallback_text, state=job.state, error=error)
