"""
Pytest configuration and shared fixtures for the clinic sync tests.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from clinic_sync.core.config import Settings
from clinic_sync.core.exceptions import TransportError
from clinic_sync.websocket.connection_manager import ConnectionManager, ConnectionStatus
from clinic_sync.websocket.events import Command, CommandType
from clinic_sync.websocket.transport import Transport


class FakeTransport(Transport):
    """In-memory transport: the test feeds inbound frames and reads what was sent."""

    def __init__(self, endpoint: str):
        self.endpoint = endpoint
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent: List[Dict[str, Any]] = []
        self.closed = False

    async def send(self, message: str) -> None:
        if self.closed:
            raise TransportError("closed")
        self.sent.append(json.loads(message))

    async def recv(self) -> str:
        if self.closed:
            raise TransportError("closed")
        item = await self.inbound.get()
        if item is None:
            raise TransportError("closed")
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbound.put_nowait(None)

    def feed(self, frame: Any):
        self.inbound.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def sent_types(self) -> List[str]:
        return [frame["type"] for frame in self.sent]

    def sent_of(self, command_type: str) -> List[Dict[str, Any]]:
        return [frame["payload"] for frame in self.sent if frame["type"] == command_type]


class FakeTransportFactory:
    """Hands out FakeTransports; ``fail_next`` makes that many attempts fail first."""

    def __init__(self):
        self.transports: List[FakeTransport] = []
        self.attempts = 0
        self.fail_next = 0

    async def __call__(self, endpoint: str) -> FakeTransport:
        self.attempts += 1
        if self.fail_next > 0:
            self.fail_next -= 1
            raise TransportError(f"refused: {endpoint}")
        transport = FakeTransport(endpoint)
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> Optional[FakeTransport]:
        return self.transports[-1] if self.transports else None


class ManualClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class MonotonicClock:
    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> float:
        self.value += seconds
        return self.value


class RecordingConnection(ConnectionManager):
    """
    Connection manager without a transport.

    Commands are recorded instead of written; ``deliver`` pushes an inbound
    frame through the real routing code.
    """

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.sent: List[Command] = []
        self.status = ConnectionStatus.CONNECTED

    def send_command(self, command: Command) -> bool:
        if not self.is_connected:
            return False
        self.sent.append(command)
        return True

    def deliver(self, topic: str, payload: Dict[str, Any], kind: str = "delta", seq: Optional[int] = None) -> int:
        frame = {"topic": topic, "kind": kind, "payload": payload}
        if seq is not None:
            frame["seq"] = seq
        return self.dispatch(json.dumps(frame))

    def go_offline(self):
        self.status = ConnectionStatus.RECONNECTING
        self._notify_listeners(False)

    def go_online(self):
        self.status = ConnectionStatus.CONNECTED
        for provider in list(self.resubscribers):
            self.sent.extend(provider())
        self._notify_listeners(True)

    def sent_of(self, command_type: CommandType) -> List[Dict[str, Any]]:
        return [c.payload for c in self.sent if c.command_type == command_type]


@pytest.fixture
def settings():
    """Settings with short reconnect timers and no environment leakage."""
    return Settings(
        environment="test",
        connect_timeout=1.0,
        reconnect_base_delay=0.01,
        reconnect_backoff_factor=2.0,
        reconnect_max_delay=0.05,
        reconnect_jitter=0.0,
        heartbeat_interval=5.0,
        heartbeat_timeout=10.0,
        log_file=None,
    )


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def monotonic():
    return MonotonicClock()


@pytest.fixture
def connection(settings):
    return RecordingConnection(settings)


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


@pytest.fixture
def eventually():
    """Poll a condition on the running loop until it holds or a timeout passes."""
    async def wait(predicate, timeout: float = 2.0, interval: float = 0.005):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)
    return wait
