"""Backend package for the artefact relay."""

from .config import RelaySettings, load_settings
from .driver import JobDriver
from .errors import RelayError, StoreUnavailable
from .models import GenerationOutcome, JobState
from .retry import with_retry
from .store import InMemorySessionStore, PostgresSessionStore, SessionStore, create_store

__all__ = [
    "create_store",
    "GenerationOutcome",
    "InMemorySessionStore",
    "JobDriver",
    "JobState",
    "load_settings",
    "PostgresSessionStore",
    "RelayError",
    "RelaySettings",
    "SessionStore",
    "StoreUnavailable",
    "with_retry",
]
