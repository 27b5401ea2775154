"""
Unit tests for RealtimeManager bus-based logging.

Tests the _emit_log pattern for bridging lifecycle events of the engine
(connection changes, exhausted reconnects, stale feeds) onto log.event.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from fleetsync.errors.errors import ConnectionError
from fleetsync.realtime.manager import RealtimeManager
from fleetsync.realtime.types import ChannelMessage, ConnectionState, MessageKind
from fleetsync.types.topics import T_CONNECTION_STATUS
from tests.fixtures.fixtures import FakeTransport, fast_config


@pytest.fixture
def mock_bus() -> MagicMock:
    """Create a mock bus that captures emit calls."""
    bus = MagicMock()
    bus.is_destroyed = False
    bus.emit = AsyncMock()
    bus.emit_log = AsyncMock()
    return bus


@pytest.fixture
def manager(mock_bus: MagicMock) -> RealtimeManager:
    """Create a manager instance for testing."""
    return RealtimeManager(fast_config(), transport=FakeTransport(), bus=mock_bus, name="test_rt")


def logged(mock_bus: MagicMock) -> list[tuple[str, str, dict]]:
    """(level, msg, payload) of every emit_log call."""
    return [call.args for call in mock_bus.emit_log.call_args_list]


class TestEmitLog:
    """Test the _emit_log helper method."""

    @pytest.mark.asyncio
    async def test_emit_log_publishes_to_bus(
        self,
        manager: RealtimeManager,
        mock_bus: MagicMock,
    ) -> None:
        """Verify _emit_log goes through bus.emit_log with the manager as component."""
        await manager._emit_log("INFO", "Test message", {"key": "value"})

        mock_bus.emit_log.assert_called_once_with(
            "INFO", "Test message", {"key": "value"}, component="test_rt"
        )

    @pytest.mark.asyncio
    async def test_emit_log_without_payload(
        self,
        manager: RealtimeManager,
        mock_bus: MagicMock,
    ) -> None:
        await manager._emit_log("WARN", "Warning message")

        assert logged(mock_bus) == [("WARN", "Warning message", None)]

    @pytest.mark.asyncio
    async def test_emit_log_skipped_on_destroyed_bus(
        self,
        manager: RealtimeManager,
        mock_bus: MagicMock,
    ) -> None:
        mock_bus.is_destroyed = True

        await manager._emit_log("INFO", "Too late")

        mock_bus.emit_log.assert_not_called()


class TestConnectionStateLogging:
    """Test that connection state changes are bridged to bus."""

    @pytest.mark.asyncio
    async def test_connection_established_emits_log(
        self,
        manager: RealtimeManager,
        mock_bus: MagicMock,
    ) -> None:
        """Verify connection established event is bridged to bus."""
        await manager._on_connection_state_change(ConnectionState.CONNECTED)

        [(level, msg, payload)] = logged(mock_bus)
        assert level == "INFO"
        assert payload["event"] == "CONNECTION_ESTABLISHED"

    @pytest.mark.asyncio
    async def test_state_change_publishes_connection_status(
        self,
        manager: RealtimeManager,
        mock_bus: MagicMock,
    ) -> None:
        await manager._on_connection_state_change(ConnectionState.CONNECTED)

        call = mock_bus.emit.call_args
        assert call.args[0] == T_CONNECTION_STATUS
        status = call.args[1]
        assert status["is_connected"] is True
        assert status["quality"] == "good"
        assert status["latency_ms"] == 0.0
        assert call.kwargs["source"] == "test_rt_connection"

    @pytest.mark.asyncio
    async def test_reconnecting_emits_warning_with_attempt(
        self,
        manager: RealtimeManager,
        mock_bus: MagicMock,
    ) -> None:
        await manager._on_connection_state_change(ConnectionState.RECONNECTING)

        [(level, _, payload)] = logged(mock_bus)
        assert level == "WARN"
        assert payload["event"] == "CONNECTION_RECONNECTING"
        assert payload["attempt"] == 0

    @pytest.mark.asyncio
    async def test_disconnected_emits_warning(
        self,
        manager: RealtimeManager,
        mock_bus: MagicMock,
    ) -> None:
        await manager._on_connection_state_change(ConnectionState.DISCONNECTED)

        [(level, _, payload)] = logged(mock_bus)
        assert level == "WARN"
        assert payload["event"] == "CONNECTION_DISCONNECTED"

    @pytest.mark.asyncio
    async def test_transient_states_not_logged(
        self,
        manager: RealtimeManager,
        mock_bus: MagicMock,
    ) -> None:
        await manager._on_connection_state_change(ConnectionState.CONNECTING)
        await manager._on_connection_state_change(ConnectionState.DEGRADED)

        mock_bus.emit_log.assert_not_called()
        assert mock_bus.emit.call_count == 2


class TestErrorLogging:
    """Errors, exhausted reconnects and stale feeds."""

    @pytest.mark.asyncio
    async def test_connection_error_emits_error_log(
        self,
        manager: RealtimeManager,
        mock_bus: MagicMock,
    ) -> None:
        await manager._on_connection_error(ConnectionError("Connection failed: refused"))

        [(level, _, payload)] = logged(mock_bus)
        assert level == "ERROR"
        assert payload["event"] == "CONNECTION_ERROR"
        assert payload["error_type"] == "ConnectionError"
        assert manager._errors_count == 1

    @pytest.mark.asyncio
    async def test_exhausted_reconnects_emit_gave_up(
        self,
        manager: RealtimeManager,
        mock_bus: MagicMock,
    ) -> None:
        message = ChannelMessage(
            kind=MessageKind.ERROR, data={"reason": "max_reconnect_attempts", "attempts": 10}
        )

        await manager._on_lifecycle(message)

        [(level, _, payload)] = logged(mock_bus)
        assert level == "ERROR"
        assert payload == {
            "event": "CONNECTION_GAVE_UP",
            "reason": "max_reconnect_attempts",
            "attempts": 10,
        }

    @pytest.mark.asyncio
    async def test_other_lifecycle_messages_not_logged(
        self,
        manager: RealtimeManager,
        mock_bus: MagicMock,
    ) -> None:
        await manager._on_lifecycle(ChannelMessage(kind=MessageKind.CONNECTED))

        mock_bus.emit_log.assert_not_called()

    @pytest.mark.asyncio
    async def test_stale_feed_emits_warning(
        self,
        manager: RealtimeManager,
        mock_bus: MagicMock,
    ) -> None:
        await manager._on_stale_feed(61.23456)

        [(level, _, payload)] = logged(mock_bus)
        assert level == "WARN"
        assert payload == {"event": "FEED_STALE", "seconds_since_positions": 61.235}
