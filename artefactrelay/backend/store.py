"""Persistence interfaces and implementations for participant sessions."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import json
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol, Sequence
import weakref

import structlog

from artefactrelay.backend.errors import StoreUnavailable
from artefactrelay.backend.models import (
    ArtefactInteraction,
    ConversationHandle,
    InteractionDelta,
    ParticipantSession,
    SessionMessage,
)

logger = structlog.get_logger()

CreateConversation = Callable[[], Awaitable[ConversationHandle]]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionStore(Protocol):
    async def ping(self) -> None:
        """Raise StoreUnavailable when the backing store cannot be reached."""

    async def get_or_create(self, participant_id: str, create_conversation: CreateConversation) -> ConversationHandle:
        """Return the participant's conversation handle, creating it exactly once."""

    async def get_session(self, participant_id: str) -> ParticipantSession | None:
        """Return the stored session for a participant."""

    async def append_message(self, participant_id: str, role: str, content: str) -> None:
        """Append one message to the participant's history."""

    async def append_messages(self, participant_id: str, messages: Sequence[tuple[str, str]]) -> None:
        """Append an ordered batch of (role, content) messages atomically."""

    async def find_interaction(self, participant_id: str, artefact: str) -> ArtefactInteraction | None:
        """Return the interaction record for a (participant, artefact) pair."""

    async def upsert_interaction(
        self, participant_id: str, artefact: str, delta: InteractionDelta
    ) -> ArtefactInteraction:
        """Create the interaction record or merge `delta` into the existing one."""

    async def list_sessions(self) -> list[ParticipantSession]:
        """Return every stored session."""

    async def list_interactions(self) -> list[ArtefactInteraction]:
        """Return every stored interaction record."""


@dataclass
class InMemorySessionStore:
    """Process-local store.

    Handle creation is serialised per participant with an asyncio lock.
    Appends and merges contain no suspension point, so they are atomic with
    respect to other tasks on the same event loop.
    """

    def __post_init__(self) -> None:
        self._sessions: dict[str, ParticipantSession] = {}
        self._interactions: dict[tuple[str, str], ArtefactInteraction] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    async def ping(self) -> None:
        return None

    async def get_or_create(self, participant_id: str, create_conversation: CreateConversation) -> ConversationHandle:
        lock = self._locks.get(participant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[participant_id] = lock
        async with lock:
            session = self._sessions.get(participant_id)
            if session is not None and session.conversation_id is not None:
                return session.conversation_id

            conversation_id = await create_conversation()
            session = self._sessions.get(participant_id)
            if session is None:
                session = ParticipantSession(
                    participant_id=participant_id,
                    conversation_id=conversation_id,
                    created_at=_utc_now_iso(),
                )
            else:
                session = ParticipantSession(
                    participant_id=participant_id,
                    conversation_id=conversation_id,
                    created_at=session.created_at,
                    messages=session.messages,
                )
            self._sessions[participant_id] = session
            return conversation_id

    async def get_session(self, participant_id: str) -> ParticipantSession | None:
        return self._sessions.get(participant_id)

    async def append_message(self, participant_id: str, role: str, content: str) -> None:
        await self.append_messages(participant_id, [(role, content)])

    async def append_messages(self, participant_id: str, messages: Sequence[tuple[str, str]]) -> None:
        now = _utc_now_iso()
        new_messages = tuple(SessionMessage(role=role, content=content, timestamp=now) for role, content in messages)
        session = self._sessions.get(participant_id)
        if session is None:
            session = ParticipantSession(participant_id=participant_id, conversation_id=None, created_at=now)
        self._sessions[participant_id] = ParticipantSession(
            participant_id=participant_id,
            conversation_id=session.conversation_id,
            created_at=session.created_at,
            messages=session.messages + new_messages,
        )

    async def find_interaction(self, participant_id: str, artefact: str) -> ArtefactInteraction | None:
        return self._interactions.get((participant_id, artefact))

    async def upsert_interaction(
        self, participant_id: str, artefact: str, delta: InteractionDelta
    ) -> ArtefactInteraction:
        now = _utc_now_iso()
        key = (participant_id, artefact)
        existing = self._interactions.get(key)
        if existing is None:
            record = ArtefactInteraction(
                participant_id=participant_id,
                artefact=artefact,
                description_type=delta.description_type,
                profile=delta.profile,
                delivery_mode=delta.delivery_mode,
                played_audio=delta.played_audio,
                time_spent_seconds=delta.time_spent_seconds,
                more_info_clicks=delta.more_info_clicks,
                created_at=now,
                updated_at=now,
            )
        else:
            record = existing.merged(delta, now=now)
        self._interactions[key] = record
        return record

    async def list_sessions(self) -> list[ParticipantSession]:
        return list(self._sessions.values())

    async def list_interactions(self) -> list[ArtefactInteraction]:
        return list(self._interactions.values())


def _iso(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _session_from_row(row: Sequence[Any]) -> ParticipantSession:
    participant_id, conversation_id, created_at, messages_json = row
    raw_messages = messages_json if isinstance(messages_json, list) else json.loads(messages_json or "[]")
    return ParticipantSession(
        participant_id=participant_id,
        conversation_id=conversation_id,
        created_at=_iso(created_at),
        messages=tuple(
            SessionMessage(role=item["role"], content=item["content"], timestamp=item["timestamp"])
            for item in raw_messages
        ),
    )


def _interaction_from_row(row: Sequence[Any]) -> ArtefactInteraction:
    (
        participant_id,
        artefact,
        description_type,
        profile,
        delivery_mode,
        played_audio,
        time_spent_seconds,
        more_info_clicks,
        created_at,
        updated_at,
    ) = row
    return ArtefactInteraction(
        participant_id=participant_id,
        artefact=artefact,
        description_type=description_type,
        profile=profile,
        delivery_mode=delivery_mode,
        played_audio=bool(played_audio),
        time_spent_seconds=float(time_spent_seconds),
        more_info_clicks=int(more_info_clicks),
        created_at=_iso(created_at),
        updated_at=_iso(updated_at),
    )


_INTERACTION_COLUMNS = """
    participant_id, artefact, description_type, profile, delivery_mode, played_audio,
    time_spent_seconds, more_info_clicks, created_at, updated_at
"""


@dataclass
class PostgresSessionStore:
    database_url: str

    async def _connect(self) -> Any:
        import psycopg

        return await psycopg.AsyncConnection.connect(self.database_url)

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[Any]:
        import psycopg

        try:
            async with await self._connect() as conn:
                yield conn
                await conn.commit()
        except psycopg.OperationalError as exc:
            logger.error("Session store unavailable", error=str(exc))
            raise StoreUnavailable() from exc

    async def ping(self) -> None:
        async with self._transaction() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT 1", ())

    async def get_or_create(self, participant_id: str, create_conversation: CreateConversation) -> ConversationHandle:
        async with self._transaction() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    INSERT INTO participant_sessions (participant_id, conversation_id, created_at, messages)
                    VALUES (%s, NULL, %s, '[]'::jsonb)
                    ON CONFLICT (participant_id) DO NOTHING
                    """,
                    (participant_id, datetime.now(timezone.utc)),
                )
                # Row lock: concurrent first requests for this participant wait here
                # until the winner commits its handle.
                await cur.execute(
                    """
                    SELECT conversation_id
                    FROM participant_sessions
                    WHERE participant_id = %s
                    FOR UPDATE
                    """,
                    (participant_id,),
                )
                row = await cur.fetchone()
                if row is not None and row[0]:
                    return row[0]

                conversation_id = await create_conversation()
                await cur.execute(
                    """
                    UPDATE participant_sessions
                    SET conversation_id = %s
                    WHERE participant_id = %s
                    """,
                    (conversation_id, participant_id),
                )
        return conversation_id

    async def get_session(self, participant_id: str) -> ParticipantSession | None:
        async with self._transaction() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    SELECT participant_id, conversation_id, created_at, messages
                    FROM participant_sessions
                    WHERE participant_id = %s
                    """,
                    (participant_id,),
                )
                row = await cur.fetchone()
        if row is None:
            return None
        return _session_from_row(row)

    async def append_message(self, participant_id: str, role: str, content: str) -> None:
        await self.append_messages(participant_id, [(role, content)])

    async def append_messages(self, participant_id: str, messages: Sequence[tuple[str, str]]) -> None:
        now = datetime.now(timezone.utc)
        batch = [{"role": role, "content": content, "timestamp": now.isoformat()} for role, content in messages]
        async with self._transaction() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    INSERT INTO participant_sessions (participant_id, conversation_id, created_at, messages)
                    VALUES (%s, NULL, %s, %s::jsonb)
                    ON CONFLICT (participant_id)
                    DO UPDATE SET messages = participant_sessions.messages || EXCLUDED.messages
                    """,
                    (participant_id, now, json.dumps(batch)),
                )

    async def find_interaction(self, participant_id: str, artefact: str) -> ArtefactInteraction | None:
        async with self._transaction() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    f"""
                    SELECT {_INTERACTION_COLUMNS}
                    FROM artefact_interactions
                    WHERE participant_id = %s AND artefact = %s
                    """,
                    (participant_id, artefact),
                )
                row = await cur.fetchone()
        if row is None:
            return None
        return _interaction_from_row(row)

    async def upsert_interaction(
        self, participant_id: str, artefact: str, delta: InteractionDelta
    ) -> ArtefactInteraction:
        now = datetime.now(timezone.utc)
        async with self._transaction() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    f"""
                    INSERT INTO artefact_interactions ({_INTERACTION_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (participant_id, artefact) DO UPDATE SET
                        description_type = EXCLUDED.description_type,
                        profile = EXCLUDED.profile,
                        delivery_mode = EXCLUDED.delivery_mode,
                        played_audio = EXCLUDED.played_audio,
                        time_spent_seconds = artefact_interactions.time_spent_seconds + EXCLUDED.time_spent_seconds,
                        more_info_clicks = artefact_interactions.more_info_clicks + EXCLUDED.more_info_clicks,
                        updated_at = EXCLUDED.updated_at
                    RETURNING {_INTERACTION_COLUMNS}
                    """,
                    (
                        participant_id,
                        artefact,
                        delta.description_type,
                        delta.profile,
                        delta.delivery_mode,
                        delta.played_audio,
                        delta.time_spent_seconds,
                        delta.more_info_clicks,
                        now,
                        now,
                    ),
                )
                row = await cur.fetchone()
        return _interaction_from_row(row)

    async def list_sessions(self) -> list[ParticipantSession]:
        async with self._transaction() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    SELECT participant_id, conversation_id, created_at, messages
                    FROM participant_sessions
                    ORDER BY created_at
                    """,
                    (),
                )
                rows = await cur.fetchall()
        return [_session_from_row(row) for row in rows]

    async def list_interactions(self) -> list[ArtefactInteraction]:
        async with self._transaction() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    f"""
                    SELECT {_INTERACTION_COLUMNS}
                    FROM artefact_interactions
                    ORDER BY participant_id, artefact
                    """,
                    (),
                )
                rows = await cur.fetchall()
        return [_interaction_from_row(row) for row in rows]


def create_store(database_url: str | None) -> SessionStore:
    if database_url:
        return PostgresSessionStore(database_url=database_url)
    return InMemorySessionStore()
