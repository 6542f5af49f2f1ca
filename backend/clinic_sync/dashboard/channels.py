"""
Live dashboard channel synchronization.

Charts, counters and tables arrive as ``<kind>:<name>`` topics carrying a
per-channel sequence number. Snapshots replace the local cache; deltas are
applied strictly in sequence and any gap is repaired by fetching a fresh
snapshot instead of patching around the hole.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from ..core.clock import utc_now
from ..core.config import Settings, get_settings
from ..core.exceptions import ProtocolError, SequenceGapError
from ..websocket.connection_manager import ConnectionManager
from ..websocket.events import Command, CommandType, InboundMessage, Topic
from .models import (
    ChannelKind, ChartPoint, ChartState, CounterState, TableRow, TableState
)

logger = logging.getLogger(__name__)


class ChannelSyncClient:
    """Subscribes to dashboard channels and keeps typed local state for them."""

    def __init__(
        self,
        connection: ConnectionManager,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.connection = connection
        self.settings = settings or get_settings()
        self.clock = clock

        self.subscriptions: Dict[str, Optional[str]] = {}  # name -> required kind (None = any)
        self.charts: Dict[str, ChartState] = {}
        self.counters: Dict[str, CounterState] = {}
        self.tables: Dict[str, TableState] = {}

        self.sequences: Dict[str, int] = {}  # topic -> last applied seq
        self.awaiting_snapshot: Set[str] = set()
        self.updated_at: Dict[str, float] = {}  # name -> clock() of last apply
        self.last_update: Optional[datetime] = None
        self.error: Optional[str] = None

        self._registrations = [
            connection.on_message(f"{kind}:*", self._handle_message) for kind in Topic.CHANNEL_KINDS
        ]
        self._registrations.append(connection.register_resubscriber(self._resubscribe_commands))
        self._registrations.append(connection.add_connection_listener(self._on_connection_change))

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    # ------------------------------------------------------------------ subscriptions

    @staticmethod
    def _parse_name(channel: str) -> Tuple[Optional[str], str]:
        return Topic.split_channel(channel)

    def _wire_name(self, name: str) -> str:
        kind = self.subscriptions.get(name)
        return f"{kind}:{name}" if kind else name

    def subscribe(self, channel_names: Iterable[str]) -> List[str]:
        """
        Subscribe to channels by bare (``revenue``) or qualified
        (``chart:revenue``) name. Already-subscribed names are skipped.

        Returns the names that were newly subscribed.
        """
        added = []
        for channel in channel_names or []:
            kind, name = self._parse_name(channel)
            if not name or name in self.subscriptions:
                continue
            self.subscriptions[name] = kind
            added.append(name)

        if not added:
            return []

        logger.info(f"Subscribing to channels {added}")
        if self.connection.is_connected:
            self.connection.send(CommandType.SUBSCRIBE, {"channels": [self._wire_name(n) for n in added]})
        return added

    def unsubscribe(self, channel_names: Iterable[str]) -> List[str]:
        """Drop channels and their caches; later messages for them are discarded."""
        removed = []
        wire_names = []
        for channel in channel_names or []:
            _, name = self._parse_name(channel)
            if name not in self.subscriptions:
                continue
            wire_names.append(self._wire_name(name))
            del self.subscriptions[name]
            self._drop_channel(name)
            removed.append(name)

        if removed and self.connection.is_connected:
            self.connection.send(CommandType.UNSUBSCRIBE, {"channels": wire_names})
        return removed

    def clear_data(self, channel: str):
        """Forget the cached state of a channel while staying subscribed."""
        _, name = self._parse_name(channel)
        self._drop_channel(name)

    def request_snapshot(self, topic: str) -> bool:
        """Ask the backend for a fresh snapshot of one channel topic."""
        self.awaiting_snapshot.add(topic)
        return self.connection.send(CommandType.SNAPSHOT_REQUEST, {"channel": topic})

    def _drop_channel(self, name: str):
        self.charts.pop(name, None)
        self.counters.pop(name, None)
        self.tables.pop(name, None)
        self.updated_at.pop(name, None)
        for kind in Topic.CHANNEL_KINDS:
            topic = f"{kind}:{name}"
            self.sequences.pop(topic, None)
            self.awaiting_snapshot.discard(topic)

    def _resubscribe_commands(self) -> List[Command]:
        if not self.subscriptions:
            return []
        return [Command(CommandType.SUBSCRIBE, {"channels": [self._wire_name(n) for n in self.subscriptions]})]

    def _on_connection_change(self, connected: bool):
        if not connected:
            # Caches may drift while offline; only a fresh snapshot is trusted.
            self.awaiting_snapshot.update(self.sequences.keys())

    # ------------------------------------------------------------------ staleness

    def staleness(self, channel: str) -> Optional[float]:
        """Seconds since the channel last changed, or None if it never has."""
        _, name = self._parse_name(channel)
        applied = self.updated_at.get(name)
        if applied is None:
            return None
        return self.clock() - applied

    def is_stale(self, channel: str) -> bool:
        age = self.staleness(channel)
        return age is None or age > self.settings.stale_after

    # ------------------------------------------------------------------ inbound

    def _handle_message(self, message: InboundMessage):
        kind, name = Topic.split_channel(message.topic)
        if kind is None:
            raise ProtocolError(f"Not a channel topic: {message.topic}")

        if name not in self.subscriptions:
            logger.debug(f"Ignoring message for unsubscribed channel {message.topic}")
            return
        required = self.subscriptions[name]
        if required and required != kind:
            logger.debug(f"Ignoring {kind} message for {required} channel {name}")
            return

        try:
            if message.is_snapshot:
                applied = self._apply_snapshot(ChannelKind(kind), name, message)
            else:
                applied = self._apply_delta(ChannelKind(kind), name, message)
        except SequenceGapError as e:
            logger.info(f"{e.message}; requesting snapshot")
            self.request_snapshot(message.topic)
            return
        except (KeyError, TypeError, ValueError, ProtocolError) as e:
            self.error = f"Invalid update for {message.topic}: {e}"
            logger.warning(self.error)
            return

        if applied:
            self.updated_at[name] = self.clock()
            self.last_update = utc_now()
            self.error = None

    def _apply_snapshot(self, kind: ChannelKind, name: str, message: InboundMessage) -> bool:
        payload = message.payload
        if kind == ChannelKind.CHART:
            chart = ChartState(
                name=name,
                chart_type=payload.get("type", "line"),
                color=payload.get("color"),
            )
            chart.append(
                [ChartPoint.from_dict(p) for p in payload.get("points", [])],
                timedelta(seconds=self.settings.chart_retention_seconds),
                self.settings.chart_max_points,
            )
            self.charts[name] = chart
        elif kind == ChannelKind.COUNTER:
            previous = payload.get("previous_value")
            self.counters[name] = CounterState(
                name=name,
                value=float(payload["value"]),
                previous_value=float(previous) if previous is not None else None,
                label=payload.get("label"),
                format=payload.get("format", "number"),
            )
        else:
            table = TableState(name=name, columns=list(payload.get("columns", [])))
            for row in [TableRow.from_dict(r) for r in payload.get("rows", [])]:
                table.upsert(row)
            table.trim(self.settings.table_max_rows)
            self.tables[name] = table

        self.sequences[message.topic] = message.seq or 0
        self.awaiting_snapshot.discard(message.topic)
        return True

    def _apply_delta(self, kind: ChannelKind, name: str, message: InboundMessage) -> bool:
        topic = message.topic
        if message.seq is None:
            raise ProtocolError(f"Delta for {topic} has no sequence number")

        if topic in self.awaiting_snapshot:
            logger.debug(f"Dropping delta {message.seq} for {topic} while awaiting snapshot")
            return False
        if topic not in self.sequences:
            raise SequenceGapError(topic, expected=1, received=message.seq)

        last = self.sequences[topic]
        if message.seq <= last:
            logger.debug(f"Ignoring redelivered delta {message.seq} for {topic}")
            return False
        if message.seq != last + 1:
            raise SequenceGapError(topic, expected=last + 1, received=message.seq)

        payload = message.payload
        if kind == ChannelKind.CHART:
            chart = self.charts.get(name)
            if chart is None:
                raise SequenceGapError(topic, expected=last + 1, received=message.seq)
            raw_points = payload.get("points")
            if raw_points is None:
                raw_points = [payload]
            points = [ChartPoint.from_dict(p) for p in raw_points]
            chart.append(
                points,
                timedelta(seconds=self.settings.chart_retention_seconds),
                self.settings.chart_max_points,
            )
        elif kind == ChannelKind.COUNTER:
            counter = self.counters.get(name)
            if counter is None:
                raise SequenceGapError(topic, expected=last + 1, received=message.seq)
            counter.set(float(payload["value"]))
        else:
            table = self.tables.get(name)
            if table is None:
                raise SequenceGapError(topic, expected=last + 1, received=message.seq)
            upserts = [TableRow.from_dict(r) for r in payload.get("upserts", [])]
            removals = [str(row_id) for row_id in payload.get("removals", [])]
            for row in upserts:
                table.upsert(row)
            for row_id in removals:
                table.remove(row_id)
            table.trim(self.settings.table_max_rows)

        self.sequences[topic] = message.seq
        return True

    # ------------------------------------------------------------------ teardown

    def close(self):
        """Detach from the connection manager."""
        for remove in self._registrations:
            remove()
        self._registrations = []

    def to_dict(self) -> Dict[str, object]:
        return {
            "charts": {k: v.to_dict() for k, v in self.charts.items()},
            "counters": {k: v.to_dict() for k, v in self.counters.items()},
            "tables": {k: v.to_dict() for k, v in self.tables.items()},
            "last_update": self.last_update.isoformat() if self.last_update else None,
            "error": self.error,
            "is_connected": self.is_connected,
        }
