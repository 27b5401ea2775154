"""
Shared test doubles and sample payloads.
"""

import asyncio
from typing import Any, AsyncIterator, Optional

from fleetsync.config.configs import (
    BatchSettings,
    ConnectionConfig,
    RealtimeConfig,
    UpdateQueueConfig,
)
from fleetsync.realtime.types import ChannelMessage, MessageKind


class FakeTransport:
    """
    In-memory Transport.

    - push()/push_data() feed inbound frames to messages()
    - sent collects every outbound ChannelMessage
    - fail_opens makes the next N open() calls raise open_error
    - auto_pong answers each PING with a PONG
    - server_close() ends messages() as if the remote closed the socket
    """

    def __init__(
        self,
        *,
        fail_opens: int = 0,
        open_error: Optional[Exception] = None,
        open_delay_s: float = 0.0,
        auto_pong: bool = True,
    ) -> None:
        self.fail_opens = fail_opens
        self.open_error = open_error or OSError("connection refused")
        self.open_delay_s = open_delay_s
        self.auto_pong = auto_pong
        self.send_error: Optional[Exception] = None

        self.sent: list[ChannelMessage] = []
        self.open_calls = 0
        self.close_calls = 0
        self.is_open = False
        self._inbox: asyncio.Queue[Optional[ChannelMessage]] = asyncio.Queue()

    async def open(self) -> None:
        self.open_calls += 1
        if self.open_delay_s:
            await asyncio.sleep(self.open_delay_s)
        if self.fail_opens > 0:
            self.fail_opens -= 1
            raise self.open_error
        self._inbox = asyncio.Queue()
        self.is_open = True

    async def send(self, message: ChannelMessage) -> None:
        if self.send_error is not None:
            raise self.send_error
        if not self.is_open:
            raise ConnectionResetError("transport closed")
        self.sent.append(message)
        if self.auto_pong and message.kind == MessageKind.PING:
            self._inbox.put_nowait(ChannelMessage(kind=MessageKind.PONG, id=message.id))

    async def messages(self) -> AsyncIterator[ChannelMessage]:
        inbox = self._inbox
        while True:
            message = await inbox.get()
            if message is None:
                return
            yield message

    async def close(self) -> None:
        self.close_calls += 1
        if self.is_open:
            self.is_open = False
            self._inbox.put_nowait(None)

    # --- test helpers ---

    def push(self, message: ChannelMessage) -> None:
        self._inbox.put_nowait(message)

    def push_data(self, data: Any) -> None:
        self.push(ChannelMessage(kind=MessageKind.DATA, data=data, source="server"))

    def server_close(self) -> None:
        self._inbox.put_nowait(None)

    def sent_of(self, kind: MessageKind) -> list[ChannelMessage]:
        return [m for m in self.sent if m.kind == kind]


def vehicle_payload(device_id: str = "dev-1", name: str = "Truck 1", **extra: Any) -> dict:
    """Vehicle record using the provider's field names."""
    return {
        "deviceid": device_id,
        "devicename": name,
        "devicetype": 1,
        "lastactivetime": 1_700_000_000_000,
        **extra,
    }


def position_payload(
    device_id: str = "dev-1",
    update_time: int = 1_700_000_000_000,
    *,
    speed: float = 40.0,
    **extra: Any,
) -> dict:
    """Position fix using the provider's field names."""
    return {
        "deviceid": device_id,
        "updatetime": update_time,
        "devicetime": update_time,
        "callat": 52.52,
        "callon": 13.405,
        "speed": speed,
        **extra,
    }


def fast_config(**sections: Any) -> RealtimeConfig:
    """RealtimeConfig with short batch windows and reconnect delays."""
    defaults: dict[str, Any] = {
        "connection": ConnectionConfig(base_reconnect_delay_s=0.01, max_reconnect_delay_s=0.05),
        "queue": UpdateQueueConfig(
            retry_base_delay_s=0.01,
            retry_max_delay_s=0.05,
            batches=(
                BatchSettings("vehicle_updates", max_batch_size=10, max_wait_s=0.02),
                BatchSettings("position_updates", max_batch_size=20, max_wait_s=0.02),
                BatchSettings("connection_status", max_batch_size=1, max_wait_s=0.02),
            ),
        ),
    }
    defaults.update(sections)
    return RealtimeConfig(**defaults)


async def wait_for(predicate: Any, timeout_s: float = 1.0, poll_s: float = 0.005) -> None:
    """Poll predicate() until it is truthy; fail the test on timeout."""

    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(poll_s)

    await asyncio.wait_for(_poll(), timeout=timeout_s)
