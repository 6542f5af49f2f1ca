"""
Duplex transports used by the connection manager.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from ..core.exceptions import TransportError

logger = logging.getLogger(__name__)


class Transport:
    """
    Minimal duplex text channel.

    ``recv`` raises TransportError once the link is gone; ``close`` is
    idempotent.
    """

    async def send(self, message: str) -> None:
        raise NotImplementedError

    async def recv(self) -> str:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class WebSocketTransport(Transport):
    """Transport backed by a ``websockets`` client connection."""

    def __init__(self, websocket):
        self.websocket = websocket
        self._closed = False

    @classmethod
    async def open(cls, endpoint: str, timeout: Optional[float] = None) -> 'WebSocketTransport':
        try:
            websocket = await asyncio.wait_for(
                websockets.connect(endpoint, ping_interval=None, close_timeout=5),
                timeout=timeout,
            )
        except (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError) as e:
            raise TransportError(f"Could not connect to {endpoint}", details={"error": str(e)})
        logger.debug(f"WebSocket opened to {endpoint}")
        return cls(websocket)

    async def send(self, message: str) -> None:
        try:
            await self.websocket.send(message)
        except ConnectionClosed as e:
            self._closed = True
            raise TransportError("Connection closed while sending", details={"reason": str(e)})

    async def recv(self) -> str:
        try:
            message: Union[str, bytes] = await self.websocket.recv()
        except ConnectionClosed as e:
            self._closed = True
            raise TransportError("Connection closed", details={"reason": str(e)})
        if isinstance(message, bytes):
            message = message.decode("utf-8", errors="replace")
        return message

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.websocket.close()
        except Exception as e:
            logger.debug(f"Error closing websocket: {e}")


TransportFactory = Callable[[str], Awaitable[Transport]]


def websocket_transport_factory(timeout: Optional[float] = None) -> TransportFactory:
    """Factory for real websocket links, used when no factory is injected."""
    async def factory(endpoint: str) -> Transport:
        return await WebSocketTransport.open(endpoint, timeout=timeout)
    return factory
