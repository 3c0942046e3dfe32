"""One-shot TCP hand-off to the backend identity service.

The client connects, writes one newline-terminated JSON record, half-closes
its write side and reads until the backend closes the connection. A trailing
line break is dropped; the remaining bytes are the session cookie value and
must be cookie-octets.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any

from auth_redirector.auth.identity_client import IdentityProfile
from auth_redirector.errors import BackendUnavailableError
from auth_redirector.utils.http import is_cookie_value

_logger = logging.getLogger(__name__)


def build_backend_record(
    profile: IdentityProfile,
    derived_id: str,
    fields: tuple[str, ...] | list[str],
) -> dict[str, Any]:
    """Select the configured fields; ``id`` carries the derived id."""
    available: dict[str, Any] = {
        "id": derived_id,
        "email": profile.email,
        "email_verified": profile.email_verified,
        "name": profile.name,
        "given_name": profile.given_name,
        "family_name": profile.family_name,
        "picture": profile.picture_url,
        "hd": profile.hosted_domain,
    }
    return {name: available[name] for name in fields if available.get(name) is not None}


def encode_record(record: dict[str, Any]) -> bytes:
    return (json.dumps(record, separators=(",", ":")) + "\n").encode("utf-8")


class BackendHandoff:
    """Sends a record to the backend and returns its reply."""

    def __init__(self, host: str, port: int) -> None:
        self.host = host
        self.port = port

    async def send(self, record: dict[str, Any]) -> str:
        """Send ``record`` over a fresh connection; return the reply as text."""
        payload = encode_record(record)
        try:
            reader, writer = await asyncio.open_connection(self.host, self.port)
        except OSError as exc:
            raise BackendUnavailableError(
                "Backend identity service unavailable",
                detail=f"connect {self.host}:{self.port} failed: {exc}",
            ) from exc

        try:
            writer.write(payload)
            await writer.drain()
            if writer.can_write_eof():
                writer.write_eof()
            response = await reader.read()
        except OSError as exc:
            raise BackendUnavailableError(
                "Backend identity service unavailable",
                detail=f"exchange with {self.host}:{self.port} failed: {exc}",
            ) from exc
        finally:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()

        token = response.rstrip(b"\r\n")
        if not token:
            raise BackendUnavailableError(
                "Backend identity service returned no session",
                detail=f"empty response from {self.host}:{self.port}",
            )

        # Non-ASCII bytes decode to U+FFFD, which the cookie-octet check rejects.
        cookie_value = token.decode("ascii", errors="replace")
        if not is_cookie_value(cookie_value):
            raise BackendUnavailableError(
                "Backend identity service returned an invalid session token",
                detail=f"{len(token)} byte reply from {self.host}:{self.port} "
                "is not a valid cookie value",
            )

        _logger.debug("Backend hand-off returned %d bytes", len(response))
        return cookie_value
