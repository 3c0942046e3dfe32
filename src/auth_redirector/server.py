"""Entrypoint for the authentication redirector."""

from __future__ import annotations

import uvicorn

from auth_redirector import __version__
from auth_redirector.config import load_settings
from auth_redirector.logging_utils import get_logger
from auth_redirector.transport.http_server import create_http_app


def run_entrypoint() -> None:
    """Run the HTTP server with the configured listener."""
    settings = load_settings()
    logger = get_logger(__name__)
    logger.info(
        "Starting auth redirector v%s on %s:%d",
        __version__,
        settings.server.host,
        settings.server.port,
    )

    app = create_http_app(settings)
    uvicorn.run(
        app,
        host=settings.server.host,
        port=settings.server.port,
        ws="none",
        log_config=None,
    )


if __name__ == "__main__":  # pragma: no cover
    run_entrypoint()
