"""
Connection manager owning the single duplex link to the sync backend.
"""

import asyncio
import logging
import random
import time
from fnmatch import fnmatchcase
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Any, Union
from enum import Enum

from ..core.config import Settings, get_settings
from ..core.exceptions import ProtocolError, SyncError, TransportError
from .events import Command, CommandType, InboundMessage, parse_inbound
from .transport import Transport, TransportFactory, websocket_transport_factory

logger = logging.getLogger(__name__)

MessageHandler = Callable[[InboundMessage], Any]
Resubscriber = Callable[[], Iterable[Command]]
ConnectionListener = Callable[[bool], Any]


class ConnectionStatus(Enum):
    """Connection status enumeration."""
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


def compute_backoff(
    attempt: int,
    base: float,
    factor: float,
    cap: float,
    jitter: float = 0.0,
    rng: Callable[[], float] = random.random,
) -> float:
    """
    Delay before reconnect attempt ``attempt`` (0-based).

    ``base * factor ** attempt`` capped at ``cap``, then spread by
    ``+/- jitter`` as a fraction of the delay.
    """
    try:
        delay = min(cap, base * (factor ** attempt))
    except OverflowError:
        delay = cap
    if jitter > 0:
        delay *= 1.0 + jitter * (2.0 * rng() - 1.0)
    return max(0.0, delay)


class ConnectionManager:
    """
    Owns one transport and multiplexes topics over it.

    Components register topic handlers with ``on_message`` and replay
    providers with ``register_resubscriber``; they never touch the transport
    themselves. After ``connect`` the manager keeps the link alive until
    ``disconnect`` is called, reconnecting with exponential backoff and
    replaying every registered subscription on each successful connection.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport_factory: Optional[TransportFactory] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ):
        self.settings = settings or get_settings()
        self.transport_factory = transport_factory or websocket_transport_factory(self.settings.connect_timeout)
        self.clock = clock
        self.rng = rng

        self.endpoint: Optional[str] = None
        self.status = ConnectionStatus.IDLE
        self.error: Optional[str] = None
        self.last_message_at: Optional[float] = None
        self.attempt = 0

        # Routing
        self.handlers: List[Tuple[str, MessageHandler]] = []
        self.resubscribers: List[Resubscriber] = []
        self.connection_listeners: List[ConnectionListener] = []

        # Link state
        self._transport: Optional[Transport] = None
        self._outbound: Optional[asyncio.Queue] = None
        self._supervisor: Optional[asyncio.Task] = None
        self._closing = False
        self._skip_backoff = False
        self._wake: Optional[asyncio.Event] = None
        self._connected_event: Optional[asyncio.Event] = None

        # Statistics
        self.connection_stats = {
            "total_connections": 0,
            "reconnections": 0,
            "failed_attempts": 0,
            "messages_received": 0,
            "messages_sent": 0,
            "dropped_messages": 0,
            "protocol_errors": 0,
        }

    # ------------------------------------------------------------------ state

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    @property
    def is_connecting(self) -> bool:
        return self.status in (ConnectionStatus.CONNECTING, ConnectionStatus.RECONNECTING)

    # ------------------------------------------------------------------ lifecycle

    async def connect(self, endpoint: Optional[str] = None):
        """
        Start the connection supervisor.

        Returns immediately; use ``wait_until_connected`` to block until the
        first link is up. Calling it again while running only updates the
        endpoint used for the next attempt.
        """
        self.endpoint = endpoint or self.endpoint or self.settings.ws_url
        self._closing = False
        if self._wake is None:
            self._wake = asyncio.Event()
            self._connected_event = asyncio.Event()

        if self._supervisor and not self._supervisor.done():
            return

        self.attempt = 0
        self.status = ConnectionStatus.CONNECTING
        self._supervisor = asyncio.create_task(self._run(), name="clinic-sync-connection")
        logger.info(f"Connecting to {self.endpoint}")

    async def disconnect(self):
        """Close the link and stop reconnecting."""
        self._closing = True
        self.status = ConnectionStatus.CLOSED
        if self._wake:
            self._wake.set()

        transport = self._transport
        if transport:
            await transport.close()

        if self._supervisor:
            self._supervisor.cancel()
            try:
                await self._supervisor
            except asyncio.CancelledError:
                pass
            self._supervisor = None

        self.status = ConnectionStatus.CLOSED
        logger.info("Connection manager disconnected")

    async def reconnect(self):
        """Drop the current link and reconnect at once with a fresh attempt counter."""
        self.attempt = 0
        if self._closing or not self._supervisor or self._supervisor.done():
            await self.connect(self.endpoint)
            return

        self._skip_backoff = True
        if self._wake:
            self._wake.set()
        if self._transport:
            await self._transport.close()

    async def wait_until_connected(self, timeout: Optional[float] = None) -> bool:
        if self.is_connected:
            return True
        if self._connected_event is None:
            return False
        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return self.is_connected

    # ------------------------------------------------------------------ registration

    def on_message(self, topic: str, handler: MessageHandler) -> Callable[[], None]:
        """
        Route inbound messages whose topic matches ``topic`` to ``handler``.

        ``topic`` is an exact topic or a glob such as ``chart:*``. Returns a
        function that removes the registration.
        """
        entry = (topic, handler)
        self.handlers.append(entry)

        def remove():
            if entry in self.handlers:
                self.handlers.remove(entry)

        return remove

    def register_resubscriber(self, provider: Resubscriber) -> Callable[[], None]:
        """Register a provider of commands to send on every (re)connection."""
        self.resubscribers.append(provider)

        def remove():
            if provider in self.resubscribers:
                self.resubscribers.remove(provider)

        return remove

    def add_connection_listener(self, listener: ConnectionListener) -> Callable[[], None]:
        """Call ``listener(is_connected)`` on every connection transition."""
        self.connection_listeners.append(listener)

        def remove():
            if listener in self.connection_listeners:
                self.connection_listeners.remove(listener)

        return remove

    # ------------------------------------------------------------------ outbound

    def send(self, topic: Union[CommandType, str], payload: Optional[Dict[str, Any]] = None) -> bool:
        """
        Queue a command for the current link.

        Non-blocking. Returns False when there is no live link; nothing is
        buffered across disconnects.
        """
        try:
            command = Command.create(topic, payload)
        except ProtocolError as e:
            logger.error(f"Refusing to send: {e.message}")
            return False
        return self.send_command(command)

    def send_command(self, command: Command) -> bool:
        if not self.is_connected or self._outbound is None:
            logger.warning(f"Not connected, dropping {command.command_type.value} command")
            return False
        self._outbound.put_nowait(command)
        return True

    # ------------------------------------------------------------------ inbound

    def dispatch(self, raw: Union[str, bytes]) -> int:
        """
        Decode one frame and hand it to every matching handler.

        Malformed and unroutable frames are logged and dropped. Returns the
        number of handlers that accepted the message.
        """
        self.connection_stats["messages_received"] += 1
        try:
            message = parse_inbound(raw)
            matched = [handler for pattern, handler in list(self.handlers) if fnmatchcase(message.topic, pattern)]
            if not matched:
                raise ProtocolError(f"No handler for topic {message.topic}", details={"topic": message.topic})
        except ProtocolError as e:
            self.connection_stats["protocol_errors"] += 1
            self.connection_stats["dropped_messages"] += 1
            logger.warning(f"Dropping inbound message: {e.message}")
            return 0

        handled = 0
        for handler in matched:
            try:
                handler(message)
                handled += 1
            except SyncError as e:
                logger.warning(f"Handler for {message.topic} rejected message: {e.message}")
            except Exception as e:
                logger.error(f"Handler for {message.topic} failed: {e}", exc_info=True)
        return handled

    # ------------------------------------------------------------------ supervisor

    async def _run(self):
        """Connect, serve, back off, repeat until disconnect."""
        while not self._closing:
            self.status = ConnectionStatus.RECONNECTING if self.connection_stats["total_connections"] else ConnectionStatus.CONNECTING
            try:
                transport = await self.transport_factory(self.endpoint)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = e if isinstance(e, TransportError) else TransportError(str(e))
                self.error = error.message
                self.connection_stats["failed_attempts"] += 1
                logger.warning(f"Connection attempt {self.attempt + 1} to {self.endpoint} failed: {error.message}")
            else:
                if self._closing:
                    await transport.close()
                    break
                self.attempt = 0
                await self._serve(transport)

            if self._closing:
                break

            if self._skip_backoff:
                self._skip_backoff = False
                continue

            delay = compute_backoff(
                self.attempt,
                self.settings.reconnect_base_delay,
                self.settings.reconnect_backoff_factor,
                self.settings.reconnect_max_delay,
                self.settings.reconnect_jitter,
                self.rng,
            )
            self.attempt += 1
            self.status = ConnectionStatus.RECONNECTING
            logger.info(f"Reconnecting in {delay:.2f}s (attempt {self.attempt})")
            await self._backoff(delay)

    async def _backoff(self, delay: float):
        self._wake.clear()
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        self._skip_backoff = False

    async def _serve(self, transport: Transport):
        """Run one connected session until the link drops."""
        self._transport = transport
        self._outbound = asyncio.Queue()
        self.status = ConnectionStatus.CONNECTED
        self.error = None
        self.last_message_at = self.clock()

        if self.connection_stats["total_connections"]:
            self.connection_stats["reconnections"] += 1
        self.connection_stats["total_connections"] += 1
        logger.info(f"Connected to {self.endpoint}")

        self._replay_subscriptions()
        self._notify_listeners(True)
        self._connected_event.set()

        writer = asyncio.create_task(self._write_loop(transport, self._outbound))
        heartbeat = asyncio.create_task(self._heartbeat_loop(transport))
        try:
            await self._read_loop(transport)
        finally:
            writer.cancel()
            heartbeat.cancel()
            await asyncio.gather(writer, heartbeat, return_exceptions=True)
            await transport.close()
            self._transport = None
            self._outbound = None
            self._connected_event.clear()
            if self.status == ConnectionStatus.CONNECTED:
                self.status = ConnectionStatus.RECONNECTING
            logger.info(f"Disconnected from {self.endpoint}")
            self._notify_listeners(False)

    def _replay_subscriptions(self):
        replayed = 0
        for provider in list(self.resubscribers):
            try:
                commands = list(provider() or [])
            except Exception as e:
                logger.error(f"Resubscription provider failed: {e}", exc_info=True)
                continue
            for command in commands:
                self._outbound.put_nowait(command)
                replayed += 1
        if replayed:
            logger.debug(f"Replayed {replayed} subscription commands")

    def _notify_listeners(self, connected: bool):
        for listener in list(self.connection_listeners):
            try:
                listener(connected)
            except Exception as e:
                logger.error(f"Connection listener failed: {e}", exc_info=True)

    async def _read_loop(self, transport: Transport):
        while True:
            try:
                raw = await transport.recv()
            except TransportError as e:
                if not self._closing:
                    self.error = e.message
                    logger.warning(f"Link lost: {e.message}")
                return
            self.last_message_at = self.clock()
            self.dispatch(raw)

    async def _write_loop(self, transport: Transport, queue: asyncio.Queue):
        while True:
            command: Command = await queue.get()
            try:
                await transport.send(command.to_json())
                self.connection_stats["messages_sent"] += 1
            except TransportError as e:
                self.error = e.message
                logger.warning(f"Send failed, closing link: {e.message}")
                await transport.close()
                return

    async def _heartbeat_loop(self, transport: Transport):
        interval = self.settings.heartbeat_interval
        while True:
            await asyncio.sleep(interval)
            silent_for = self.clock() - (self.last_message_at or 0.0)
            if silent_for > self.settings.heartbeat_timeout:
                self.error = "Heartbeat timeout"
                logger.warning(f"No traffic for {silent_for:.1f}s, closing link")
                await transport.close()
                return
            self.send(CommandType.HEARTBEAT, {})

    # ------------------------------------------------------------------ introspection

    def get_statistics(self) -> Dict[str, Any]:
        """Get connection statistics."""
        return {
            **self.connection_stats,
            "status": self.status.value,
            "endpoint": self.endpoint,
            "handlers": len(self.handlers),
            "resubscribers": len(self.resubscribers),
        }
