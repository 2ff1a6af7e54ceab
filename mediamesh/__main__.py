"""Run the MediaMesh API with ``python -m mediamesh``."""

from __future__ import annotations

import logging

import uvicorn

from mediamesh.config import settings

logger = logging.getLogger("mediamesh")


def main() -> None:
    """Serve ``mediamesh.main:app``; auto-reload only while developing."""

    development = settings.environment == "development"
    logger.info(
        "Starting %s on %s:%s (database %s)",
        settings.app_name,
        settings.server_host,
        settings.server_port,
        settings.database_url,
    )
    uvicorn.run(
        "mediamesh.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=development,
        log_level="debug" if development else "info",
    )


if __name__ == "__main__":  # pragma: no cover - runtime entrypoint
    main()
