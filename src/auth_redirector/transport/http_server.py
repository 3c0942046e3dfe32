"""Starlette HTTP server assembly."""

from __future__ import annotations

import logging
from typing import Callable

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response
from starlette.routing import Route

from auth_redirector.config import Settings, load_settings
from auth_redirector.pipeline import AuthPipeline
from auth_redirector.utils.http import is_trusted_peer, parse_trusted_peers, sanitize_log_text

logger = logging.getLogger(__name__)


class TrustedPeerMiddleware(BaseHTTPMiddleware):
    """Reject connections that do not come from a trusted local peer.

    The redirector uses the OAuth client secret on behalf of whoever calls
    it, so it only answers the reverse proxy in front of it.
    """

    def __init__(self, app: Callable, trusted_peers: tuple[str, ...]) -> None:
        super().__init__(app)
        self._networks = parse_trusted_peers(trusted_peers)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        peer = request.client.host if request.client else None
        if not is_trusted_peer(peer, self._networks):
            logger.warning(
                "Rejected request from untrusted peer: %s",
                sanitize_log_text(peer) if peer else "unknown",
            )
            return PlainTextResponse("Forbidden", status_code=403)
        return await call_next(request)


def create_http_app(settings: Settings | None = None) -> Starlette:
    """Create the redirector ASGI application."""
    if settings is None:
        settings = load_settings()

    pipeline = AuthPipeline.from_settings(settings)

    async def login_handler(request: Request) -> Response:
        return await pipeline.handle(request)

    # The proxy may mount the redirector under any prefix.
    routes = [Route("/{path:path}", login_handler, methods=["GET"])]
    middleware = [
        Middleware(TrustedPeerMiddleware, trusted_peers=settings.server.trusted_peers),
    ]

    app = Starlette(routes=routes, middleware=middleware)
    app.state.pipeline = pipeline
    logger.info(
        "Redirector ready: connect_url=%s backend=%s trusted_peers=%s",
        settings.urls.connect_url,
        f"{settings.backend.host}:{settings.backend.port}" if settings.backend.enabled else "none",
        ",".join(settings.server.trusted_peers),
    )
    return app
