"""Tests for the one-shot backend hand-off protocol."""

from __future__ import annotations

import asyncio
import json

import pytest

from auth_redirector.auth.identity_client import IdentityProfile
from auth_redirector.backend.handoff import BackendHandoff, build_backend_record, encode_record
from auth_redirector.errors import BackendUnavailableError


def _profile() -> IdentityProfile:
    return IdentityProfile(
        subject_id="42",
        email="u@ok.org",
        email_verified=True,
        name="U Ser",
        hosted_domain="ok.org",
    )


class TestBuildBackendRecord:
    def test_default_fields_carry_only_derived_id(self) -> None:
        assert build_backend_record(_profile(), "derived", ("id",)) == {"id": "derived"}

    def test_selected_fields_and_missing_values_omitted(self) -> None:
        record = build_backend_record(
            _profile(), "derived", ("id", "email", "email_verified", "picture", "hd")
        )
        assert record == {
            "id": "derived",
            "email": "u@ok.org",
            "email_verified": True,
            "hd": "ok.org",
        }

    def test_encoded_as_single_json_line(self) -> None:
        payload = encode_record({"id": "derived", "email_verified": False})
        assert payload == b'{"id":"derived","email_verified":false}\n'
        assert payload.count(b"\n") == 1


async def _start_backend(reply: bytes, received: list[bytes]) -> asyncio.AbstractServer:
    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        received.append(await reader.read())
        writer.write(reply)
        await writer.drain()
        writer.close()
        await writer.wait_closed()

    return await asyncio.start_server(handle, "127.0.0.1", 0)


class TestBackendHandoff:
    @pytest.mark.asyncio
    async def test_send_returns_backend_reply(self) -> None:
        received: list[bytes] = []
        server = await _start_backend(b"session-token-xyz", received)
        port = server.sockets[0].getsockname()[1]
        async with server:
            cookie = await BackendHandoff("127.0.0.1", port).send({"id": "derived"})

        assert cookie == "session-token-xyz"
        assert len(received) == 1
        assert json.loads(received[0]) == {"id": "derived"}
        assert received[0].endswith(b"\n")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reply", [b"tok-123\n", b"tok-123\r\n", b"tok-123"])
    async def test_trailing_line_break_is_dropped(self, reply: bytes) -> None:
        received: list[bytes] = []
        server = await _start_backend(reply, received)
        port = server.sockets[0].getsockname()[1]
        async with server:
            cookie = await BackendHandoff("127.0.0.1", port).send({"id": "x"})

        assert cookie == "tok-123"

    @pytest.mark.asyncio
    async def test_base64_reply_kept_exactly(self) -> None:
        received: list[bytes] = []
        server = await _start_backend(b"dG9rZW4/+w==\n", received)
        port = server.sockets[0].getsockname()[1]
        async with server:
            cookie = await BackendHandoff("127.0.0.1", port).send({"id": "x"})

        assert cookie == "dG9rZW4/+w=="

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reply",
        [
            b"part-one\npart-two\n",
            b"a b;c",
            "tok-€".encode("utf-8"),
            b"tok-\xff\xfe",
        ],
    )
    async def test_reply_that_is_not_a_cookie_value_is_unavailable(self, reply: bytes) -> None:
        received: list[bytes] = []
        server = await _start_backend(reply, received)
        port = server.sockets[0].getsockname()[1]
        async with server:
            with pytest.raises(BackendUnavailableError, match="invalid session token") as exc_info:
                await BackendHandoff("127.0.0.1", port).send({"id": "x"})

        assert exc_info.value.status_code == 500
        assert f"127.0.0.1:{port}" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_line_break_only_reply_is_unavailable(self) -> None:
        received: list[bytes] = []
        server = await _start_backend(b"\r\n", received)
        port = server.sockets[0].getsockname()[1]
        async with server:
            with pytest.raises(BackendUnavailableError, match="no session"):
                await BackendHandoff("127.0.0.1", port).send({"id": "x"})

    @pytest.mark.asyncio
    async def test_empty_reply_is_unavailable(self) -> None:
        received: list[bytes] = []
        server = await _start_backend(b"", received)
        port = server.sockets[0].getsockname()[1]
        async with server:
            with pytest.raises(BackendUnavailableError, match="no session"):
                await BackendHandoff("127.0.0.1", port).send({"id": "x"})

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_connection_refused_is_unavailable(self) -> None:
        server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()

        with pytest.raises(BackendUnavailableError) as exc_info:
            await BackendHandoff("127.0.0.1", port).send({"id": "x"})
        assert exc_info.value.status_code == 500
        assert f"127.0.0.1:{port}" in exc_info.value.detail
