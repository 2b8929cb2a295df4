"""Run the relay API with uvicorn using environment settings."""

from __future__ import annotations

import uvicorn

from artefactrelay.backend.config import load_settings


def main() -> None:
    settings = load_settings()
    uvicorn.run("artefactrelay.backend.api:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
