"""Tests for gateway_sdk.client.correlator - request/response matching."""

import asyncio

import pytest

from gateway_sdk.client.correlator import RequestCorrelator
from gateway_sdk.errors import (
    NotConnectedError,
    ReconnectingError,
    RemoteError,
    RequestTimeoutError,
    TransportError,
)
from gateway_sdk.frames import ResponseFrame

from fakes import wait_until


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class StubConnection:
    """Connection double recording written frames."""

    def __init__(self, connected: bool = True, open_: bool = True):
        self.connected = connected
        self.open = open_
        self.sent = []
        self.send_error = None

    def ensure_writable(self, handshake: bool = False) -> None:
        if not self.open or (not handshake and not self.connected):
            raise NotConnectedError()

    async def send(self, frame) -> None:
        self.ensure_writable()
        await self._write(frame)

    async def send_handshake(self, frame) -> None:
        self.ensure_writable(handshake=True)
        await self._write(frame)

    async def _write(self, frame) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(frame)


async def _start(correlator, connection, method="status", **kwargs):
    """Start a request and wait until its frame was written."""
    before = len(connection.sent)
    task = asyncio.create_task(correlator.request(method, **kwargs))
    await wait_until(lambda: len(connection.sent) > before or task.done())
    return task, connection.sent[-1] if len(connection.sent) > before else None


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestRequestIds:

    def test_ids_are_unique(self):
        correlator = RequestCorrelator(StubConnection())

        ids = {correlator.next_id() for _ in range(500)}

        assert len(ids) == 500


class TestRequest:

    @pytest.mark.asyncio
    async def test_not_connected_registers_and_writes_nothing(self):
        connection = StubConnection(connected=False)
        correlator = RequestCorrelator(connection)

        with pytest.raises(NotConnectedError, match="not connected"):
            await correlator.request("status")

        assert correlator.pending_count == 0
        assert connection.sent == []

    @pytest.mark.asyncio
    async def test_handshake_request_needs_only_open_transport(self):
        connection = StubConnection(connected=False)
        correlator = RequestCorrelator(connection)

        task, frame = await _start(correlator, connection, "connect", handshake=True)
        correlator.handle_response(ResponseFrame(id=frame.id, ok=True))

        assert await task == {}

    @pytest.mark.asyncio
    async def test_response_resolves_matching_request(self):
        connection = StubConnection()
        correlator = RequestCorrelator(connection)

        first, first_frame = await _start(correlator, connection, "status")
        second, second_frame = await _start(correlator, connection, "sessions.list")

        assert correlator.handle_response(ResponseFrame(id=second_frame.id, ok=True, payload={"sessions": []}))
        assert correlator.handle_response(ResponseFrame(id=first_frame.id, ok=True, payload={"hostname": "gw"}))

        assert await first == {"hostname": "gw"}
        assert await second == {"sessions": []}
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_error_response_uses_server_message(self):
        connection = StubConnection()
        correlator = RequestCorrelator(connection)

        task, frame = await _start(correlator, connection)
        correlator.handle_response(ResponseFrame(
            id=frame.id, ok=False, error={"message": "forbidden", "code": "E403"},
        ))

        with pytest.raises(RemoteError) as exc_info:
            await task
        assert exc_info.value.message == "forbidden"
        assert exc_info.value.code == "E403"

    @pytest.mark.asyncio
    async def test_error_response_without_message_uses_generic_text(self):
        connection = StubConnection()
        correlator = RequestCorrelator(connection)

        task, frame = await _start(correlator, connection)
        correlator.handle_response(ResponseFrame(id=frame.id, ok=False))

        with pytest.raises(RemoteError, match="request failed"):
            await task

    @pytest.mark.asyncio
    async def test_timeout_then_late_response_is_ignored(self):
        connection = StubConnection()
        correlator = RequestCorrelator(connection, timeout=0.02)

        task, frame = await _start(correlator, connection)

        with pytest.raises(RequestTimeoutError, match="request timeout"):
            await task
        assert correlator.pending_count == 0
        assert correlator.handle_response(ResponseFrame(id=frame.id, ok=True)) is False

    @pytest.mark.asyncio
    async def test_per_request_timeout_override(self):
        connection = StubConnection()
        correlator = RequestCorrelator(connection, timeout=60)

        with pytest.raises(RequestTimeoutError):
            await correlator.request("status", timeout=0.01)

    @pytest.mark.asyncio
    async def test_write_failure_settles_request(self):
        connection = StubConnection()
        connection.send_error = TransportError("Connection lost")
        correlator = RequestCorrelator(connection)

        with pytest.raises(TransportError):
            await correlator.request("status")
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_unknown_response_is_dropped(self):
        correlator = RequestCorrelator(StubConnection())

        assert correlator.handle_response(ResponseFrame(id="nobody", ok=True)) is False

    @pytest.mark.asyncio
    async def test_cancelled_caller_removes_entry(self):
        connection = StubConnection()
        correlator = RequestCorrelator(connection)

        task, frame = await _start(correlator, connection)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert correlator.pending_count == 0
        assert correlator.handle_response(ResponseFrame(id=frame.id, ok=True)) is False


class TestFailAll:

    @pytest.mark.asyncio
    async def test_fails_every_pending_request(self):
        connection = StubConnection()
        correlator = RequestCorrelator(connection)

        first, _ = await _start(correlator, connection)
        second, _ = await _start(correlator, connection)

        assert correlator.fail_all(ReconnectingError()) == 2

        for task in (first, second):
            with pytest.raises(ReconnectingError, match="reconnecting"):
                await task
        assert correlator.pending_count == 0

    def test_nothing_pending(self):
        correlator = RequestCorrelator(StubConnection())

        assert correlator.fail_all(ReconnectingError()) == 0
