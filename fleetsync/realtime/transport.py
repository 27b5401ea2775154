"""
Transports for the push channel.

The ConnectionManager only talks to the Transport protocol; it owns the
lifecycle (heartbeat, reconnect, queueing) while a transport moves envelopes.
WebSocketTransport carries each ChannelMessage as one JSON text frame.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, Optional, Protocol

import aiohttp
import orjson

from fleetsync.errors.errors import ConnectionError, MessageParseError
from fleetsync.realtime.types import ChannelMessage

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """What the ConnectionManager needs from a channel. open() may be called again after close()."""

    async def open(self) -> None: ...

    async def send(self, message: ChannelMessage) -> None: ...

    def messages(self) -> AsyncIterator[ChannelMessage]: ...

    async def close(self) -> None: ...


class WebSocketTransport:
    """
    aiohttp WebSocket client.

    messages() ends when the server closes the socket and raises
    ConnectionError on a socket error. Frames that are not valid envelopes
    are logged and skipped.
    """

    def __init__(
        self,
        url: str,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        name: str = "ws",
    ) -> None:
        if not url:
            raise ValueError("url must not be empty")
        self._url = url
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._name = name
        self.parse_errors = 0

    @property
    def url(self) -> str:
        return self._url

    async def open(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        logger.info(f"[{self._name}] Connecting to {self._url}")
        self._ws = await self._session.ws_connect(self._url)

    async def send(self, message: ChannelMessage) -> None:
        if self._ws is None or self._ws.closed:
            raise ConnectionError("WebSocket is not open", url=self._url, component=self._name)
        await self._ws.send_str(orjson.dumps(message.to_dict()).decode())

    async def messages(self) -> AsyncIterator[ChannelMessage]:
        ws = self._ws
        if ws is None:
            return
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    yield self.decode(msg.data)
                except MessageParseError as e:
                    self.parse_errors += 1
                    logger.warning(f"[{self._name}] Dropping frame: {e}")

            elif msg.type == aiohttp.WSMsgType.BINARY:
                logger.debug(f"[{self._name}] Received binary message (ignored)")

            elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                logger.info(f"[{self._name}] Server closed connection")
                break

            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise ConnectionError(
                    f"WebSocket error: {ws.exception()}", url=self._url, component=self._name
                )

    @staticmethod
    def decode(raw: str | bytes) -> ChannelMessage:
        try:
            data = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            raise MessageParseError(f"Invalid JSON: {e}", raw_data=str(raw)[:200]) from e
        return ChannelMessage.from_dict(data)

    async def close(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
            self._session = None
