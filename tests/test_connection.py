"""Tests for gateway_sdk.client.connection - transport lifecycle and reconnection."""

import asyncio
from unittest.mock import MagicMock

import pytest

from gateway_sdk.client.config import GatewayConfig, RecoveryConfig
from gateway_sdk.client.connection import (
    TOKEN_REQUIRED_NOTICE,
    ConnectionManager,
    ConnectionState,
)
from gateway_sdk.errors import ConfigurationError, NotConnectedError, TransportError
from gateway_sdk.frames import RequestFrame

from fakes import wait_until


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_manager(transport_factory, token="secret", reconnect_delay=0.01, enabled=True, **callbacks):
    callbacks.setdefault("on_message", MagicMock())
    return ConnectionManager(
        GatewayConfig(url="ws://gateway.test", token=token),
        RecoveryConfig(enabled=enabled, reconnect_delay=reconnect_delay, connect_timeout=1.0),
        transport_factory=transport_factory,
        **callbacks,
    )


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestConnect:

    @pytest.mark.asyncio
    async def test_missing_token_refuses_without_opening(self, transport_factory):
        notices = []
        manager = _make_manager(transport_factory, token="", on_notice=notices.append)

        with pytest.raises(ConfigurationError):
            await manager.connect()

        assert transport_factory.urls == []
        assert notices == [TOKEN_REQUIRED_NOTICE]
        assert manager.state == ConnectionState.DISCONNECTED
        assert not manager.reconnect_scheduled

    @pytest.mark.asyncio
    async def test_open_enters_connecting_until_handshake(self, transport_factory):
        on_open = MagicMock()
        manager = _make_manager(transport_factory, on_open=on_open)

        assert await manager.connect() is True

        assert transport_factory.urls == ["ws://gateway.test"]
        assert manager.state == ConnectionState.CONNECTING
        assert manager.is_open and not manager.is_connected
        on_open.assert_called_once()

        assert manager.mark_connected() is True
        assert manager.state == ConnectionState.CONNECTED
        await manager.close()

    @pytest.mark.asyncio
    async def test_connect_is_noop_while_open(self, transport_factory):
        manager = _make_manager(transport_factory)
        await manager.connect()

        assert await manager.connect() is False
        assert len(transport_factory.urls) == 1
        await manager.close()

    @pytest.mark.asyncio
    async def test_status_callback_reports_transitions(self, transport_factory):
        statuses = []
        manager = _make_manager(transport_factory, on_status_change=statuses.append)

        await manager.connect()
        manager.mark_connected()
        await manager.disconnect()

        assert [s.state for s in statuses] == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
        ]

    @pytest.mark.asyncio
    async def test_failed_open_notifies_and_schedules_retry(self, transport_factory):
        notices = []
        transport_factory.fail_next(OSError("connection refused"))
        manager = _make_manager(transport_factory, reconnect_delay=10, on_notice=notices.append)

        assert await manager.connect() is False

        assert notices == ["WebSocket connection failed: connection refused"]
        assert manager.state == ConnectionState.RECONNECTING
        assert manager.reconnect_scheduled
        await manager.close()
        assert not manager.reconnect_scheduled


class TestSending:

    @pytest.mark.asyncio
    async def test_send_requires_connected_state(self, transport_factory):
        manager = _make_manager(transport_factory)
        await manager.connect()

        with pytest.raises(NotConnectedError):
            await manager.send(RequestFrame(id="r1", method="status"))
        assert transport_factory.last.sent == []

        await manager.send_handshake(RequestFrame(id="r0", method="connect"))
        assert transport_factory.last.requests("connect")[0]["id"] == "r0"
        await manager.close()

    @pytest.mark.asyncio
    async def test_send_without_transport(self, transport_factory):
        manager = _make_manager(transport_factory)

        with pytest.raises(NotConnectedError):
            await manager.send_handshake(RequestFrame(id="r0", method="connect"))

    @pytest.mark.asyncio
    async def test_write_error_becomes_transport_error(self, transport_factory):
        manager = _make_manager(transport_factory)
        await manager.connect()
        manager.mark_connected()
        transport_factory.last.fail_sends = True

        with pytest.raises(TransportError):
            await manager.send(RequestFrame(id="r1", method="status"))
        await manager.close()


class TestInbound:

    @pytest.mark.asyncio
    async def test_messages_dispatched_in_order(self, transport_factory):
        received = []
        manager = _make_manager(transport_factory, on_message=received.append)
        await manager.connect()

        for i in range(5):
            transport_factory.last.push(f"m{i}")
        await wait_until(lambda: len(received) == 5)

        assert received == ["m0", "m1", "m2", "m3", "m4"]
        await manager.close()

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_reading(self, transport_factory):
        received = []

        def handler(message):
            if message == "bad":
                raise RuntimeError("boom")
            received.append(message)

        manager = _make_manager(transport_factory, on_message=handler)
        await manager.connect()
        transport_factory.last.push("bad")
        transport_factory.last.push("good")

        await wait_until(lambda: received == ["good"])
        await manager.close()


class TestReconnection:

    @pytest.mark.asyncio
    async def test_clean_close_does_not_reconnect(self, transport_factory):
        on_close = MagicMock()
        manager = _make_manager(transport_factory, on_close=on_close)
        await manager.connect()

        transport_factory.last.end(1000)
        await wait_until(lambda: not manager.is_open)

        assert manager.state == ConnectionState.DISCONNECTED
        assert not manager.reconnect_scheduled
        on_close.assert_called_once_with(1000)
        await asyncio.sleep(0.05)
        assert len(transport_factory.urls) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", [1001, 1006, 4000, None])
    async def test_unclean_close_reconnects_after_delay(self, transport_factory, code):
        manager = _make_manager(transport_factory, reconnect_delay=0.02)
        await manager.connect()
        manager.mark_connected()

        transport_factory.last.end(code)
        await wait_until(lambda: manager.state == ConnectionState.RECONNECTING)
        assert len(transport_factory.urls) == 1

        await wait_until(lambda: len(transport_factory.urls) == 2)
        assert manager.state == ConnectionState.CONNECTING
        await manager.close()

    @pytest.mark.asyncio
    async def test_reconnect_disabled(self, transport_factory):
        manager = _make_manager(transport_factory, enabled=False)
        await manager.connect()

        transport_factory.last.end(1006)
        await wait_until(lambda: not manager.is_open)

        assert manager.state == ConnectionState.DISCONNECTED
        assert not manager.reconnect_scheduled

    @pytest.mark.asyncio
    async def test_new_failure_replaces_scheduled_retry(self, transport_factory):
        manager = _make_manager(transport_factory, reconnect_delay=0.05)
        transport_factory.fail_next(OSError("refused"))
        await manager.connect()
        first_retry = manager._reconnect_task

        transport_factory.fail_next(OSError("refused again"))
        # Explicit connect while a retry is pending cancels that retry
        await manager.connect()
        second_retry = manager._reconnect_task

        assert second_retry is not first_retry
        await wait_until(first_retry.done)
        assert manager.reconnect_scheduled

        await wait_until(lambda: len(transport_factory.urls) == 3)
        assert len(transport_factory.transports) == 1
        await manager.close()

    @pytest.mark.asyncio
    async def test_disconnect_cancels_retry_and_closes_cleanly(self, transport_factory):
        on_close = MagicMock()
        manager = _make_manager(transport_factory, on_close=on_close)
        await manager.connect()
        transport = transport_factory.last

        await manager.disconnect()

        assert transport.close_calls == [1000]
        on_close.assert_called_once_with(1000)
        assert manager.state == ConnectionState.DISCONNECTED
        await asyncio.sleep(0.05)
        assert len(transport_factory.urls) == 1

    @pytest.mark.asyncio
    async def test_closed_manager_never_reconnects(self, transport_factory):
        manager = _make_manager(transport_factory)
        await manager.close()

        assert await manager.connect() is False
        assert transport_factory.urls == []


class TestHandshakeOutcome:

    @pytest.mark.asyncio
    async def test_failed_handshake_leaves_transport_open(self, transport_factory):
        manager = _make_manager(transport_factory)
        await manager.connect()

        manager.mark_handshake_failed("invalid token")

        assert manager.state == ConnectionState.DISCONNECTED
        assert manager.is_open
        assert await manager.connect() is False
        assert len(transport_factory.urls) == 1
        await manager.close()
