"""Domain models for sessions, interactions and generation jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from artefactrelay.backend.errors import RelayError

ConversationHandle = str


class JobState(str, Enum):
    SUBMITTED = "submitted"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.TIMED_OUT)


@dataclass(frozen=True)
class SessionMessage:
    role: str
    content: str
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content, "timestamp": self.timestamp}


@dataclass(frozen=True)
class ParticipantSession:
    participant_id: str
    conversation_id: ConversationHandle | None
    created_at: str
    messages: tuple[SessionMessage, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "participantId": self.participant_id,
            "threadId": self.conversation_id,
            "createdAt": self.created_at,
            "messages": [message.to_dict() for message in self.messages],
        }


@dataclass(frozen=True)
class InteractionDelta:
    description_type: str
    profile: str
    delivery_mode: str
    played_audio: bool
    time_spent_seconds: float = 0.0
    more_info_clicks: int = 0


@dataclass(frozen=True)
class ArtefactInteraction:
    participant_id: str
    artefact: str
    description_type: str
    profile: str
    delivery_mode: str
    played_audio: bool
    time_spent_seconds: float
    more_info_clicks: int
    created_at: str
    updated_at: str

    def merged(self, delta: InteractionDelta, now: str) -> ArtefactInteraction:
        """Sum cumulative fields and take point-in-time fields from `delta`."""
        return ArtefactInteraction(
            participant_id=self.participant_id,
            artefact=self.artefact,
            description_type=delta.description_type,
            profile=delta.profile,
            delivery_mode=delta.delivery_mode,
            played_audio=delta.played_audio,
            time_spent_seconds=self.time_spent_seconds + delta.time_spent_seconds,
            more_info_clicks=self.more_info_clicks + delta.more_info_clicks,
            created_at=self.created_at,
            updated_at=now,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "participantId": self.participant_id,
            "artefact": self.artefact,
            "descriptionType": self.description_type,
            "profile": self.profile,
            "deliveryMode": self.delivery_mode,
            "playedAudio": self.played_audio,
            "timeSpentSeconds": self.time_spent_seconds,
            "tellMeMoreClicks": self.more_info_clicks,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class GenerationJob:
    job_id: str
    conversation_id: ConversationHandle
    state: JobState = JobState.SUBMITTED
    polls: int = 0


@dataclass(frozen=True)
class GenerationOutcome:
    text: str
    state: JobState
    error: RelayError | None = field(default=None)

    @property
    def ok(self) -> bool:
        return self.state is JobState.COMPLETED and self.error is None
