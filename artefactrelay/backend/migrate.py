"""Create the participant_sessions and artefact_interactions tables.

The schema is idempotent, so running this against an existing database only
adds what is missing.
"""

from __future__ import annotations

from pathlib import Path

import structlog

from artefactrelay.backend.config import load_settings

logger = structlog.get_logger()

SCHEMA_PATH = Path(__file__).with_name("db_schema.sql")


def apply_session_schema(database_url: str) -> None:
    import psycopg

    with psycopg.connect(database_url) as conn:
        with conn.cursor() as cur:
            cur.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
        conn.commit()
    logger.info("Session store schema applied", tables=["participant_sessions", "artefact_interactions"])


def main() -> None:
    settings = load_settings()
    if not settings.database_url:
        raise RuntimeError("ARTEFACT_RELAY_DATABASE_URL is required for migration")
    apply_session_schema(settings.database_url)


if __name__ == "__main__":
    main()
