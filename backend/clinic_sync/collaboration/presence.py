"""
User presence tracking for real-time collaboration.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from enum import Enum

from ..core.clock import parse_timestamp, utc_now
from ..core.config import Settings, get_settings
from ..core.events import Event, EventBus
from ..core.exceptions import ProtocolError, ValidationError
from ..websocket.connection_manager import ConnectionManager
from ..websocket.events import Command, CommandType, InboundMessage, Topic
from .models import CursorPosition, Participant, ParticipantState, Session

logger = logging.getLogger(__name__)


class PresenceEventType(Enum):
    USER_JOINED = "user_joined"
    USER_LEFT = "user_left"
    CURSOR_MOVED = "cursor_moved"


class PresenceCoordinator:
    """
    Tracks who is in the current session and where their cursors are.

    Liveness is heartbeat based: each participant must be heard from within
    ``liveness_window``. A sweep every ``heartbeat_interval`` moves silent
    participants offline and later removes them. Join and leave transitions
    are published on an event bus, so a failing UI callback cannot corrupt
    the roster.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
        event_bus: Optional[EventBus] = None,
    ):
        self.connection = connection
        self.settings = settings or get_settings()
        self.clock = clock
        self.event_bus = event_bus or EventBus()

        self.session: Optional[Session] = None
        self.current_user: Optional[Participant] = None
        self.participants: Dict[str, Participant] = {}
        self.cursors: Dict[str, CursorPosition] = {}  # user_id -> latest position
        self.own_cursor: Optional[CursorPosition] = None

        self._cursor_seen: Dict[str, datetime] = {}  # user_id -> local receive time
        self._last_cursor_sent: Optional[datetime] = None
        self.sweep_task: Optional[asyncio.Task] = None

        self._registrations = [
            connection.on_message(Topic.PRESENCE, self._handle_message),
            connection.register_resubscriber(self._resubscribe_commands),
        ]

    @property
    def liveness_window(self) -> timedelta:
        return timedelta(seconds=self.settings.liveness_window)

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    @property
    def online_users(self) -> List[Participant]:
        now = self.clock()
        return [
            p for p in self.participants.values()
            if p.id == self._own_id or p.is_online(now, self.liveness_window)
        ]

    @property
    def _own_id(self) -> Optional[str]:
        return self.current_user.id if self.current_user else None

    # ------------------------------------------------------------------ lifecycle

    async def start(self):
        """Start the liveness sweep."""
        if self.sweep_task is None or self.sweep_task.done():
            self.sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info("Presence coordinator started")

    async def stop(self):
        """Stop the liveness sweep."""
        if self.sweep_task:
            self.sweep_task.cancel()
            try:
                await self.sweep_task
            except asyncio.CancelledError:
                pass
            self.sweep_task = None
        logger.info("Presence coordinator stopped")

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.settings.heartbeat_interval)
            try:
                self.check_liveness()
            except Exception as e:
                logger.error(f"Error in presence sweep: {e}", exc_info=True)

    # ------------------------------------------------------------------ callbacks

    def on_user_join(self, callback: Callable[[Participant], Any]) -> Callable[[], None]:
        return self.event_bus.subscribe(PresenceEventType.USER_JOINED, lambda event: callback(event.data["user"]))

    def on_user_leave(self, callback: Callable[[str], Any]) -> Callable[[], None]:
        return self.event_bus.subscribe(PresenceEventType.USER_LEFT, lambda event: callback(event.data["user_id"]))

    def on_cursor_move(self, callback: Callable[[CursorPosition], Any]) -> Callable[[], None]:
        return self.event_bus.subscribe(PresenceEventType.CURSOR_MOVED, lambda event: callback(event.data["cursor"]))

    def _emit(self, event_type: PresenceEventType, **data):
        self.event_bus.publish(Event(event_type=event_type, data=data, source="presence"))

    # ------------------------------------------------------------------ session

    def join(self, session_id: str, user_id: str, user_name: str, user_color: str = "#3b82f6") -> bool:
        """
        Join a session. Local state switches immediately; the roster fills in
        when the server's presence snapshot arrives.
        """
        if not session_id or not user_id:
            raise ValidationError("session_id and user_id are required")

        if self.session and self.session.session_id != session_id:
            self.leave()

        now = self.clock()
        self.session = Session(session_id=session_id, name=session_id)
        self.current_user = Participant(
            id=user_id,
            name=user_name or user_id,
            color=user_color,
            last_heartbeat_at=now,
            state=ParticipantState.JOINING,
        )
        self.participants[user_id] = self.current_user
        logger.info(f"Joining session {session_id} as {user_id}")
        return self.connection.send_command(self._join_command())

    def leave(self):
        """Leave the current session; responses arriving later are discarded."""
        if not self.session:
            return
        session_id = self.session.session_id
        self.connection.send(CommandType.LEAVE, {"session_id": session_id, "user_id": self._own_id})

        self.session = None
        self.current_user = None
        self.participants.clear()
        self.cursors.clear()
        self._cursor_seen.clear()
        self.own_cursor = None
        self._last_cursor_sent = None
        logger.info(f"Left session {session_id}")

    def _join_command(self) -> Command:
        user = self.current_user
        return Command(CommandType.JOIN, {
            "session_id": self.session.session_id,
            "user": {"id": user.id, "name": user.name, "color": user.color},
        })

    def _resubscribe_commands(self) -> List[Command]:
        if not self.session or not self.current_user:
            return []
        return [self._join_command()]

    # ------------------------------------------------------------------ cursors

    def update_cursor(self, x: float, y: float) -> bool:
        """
        Publish our cursor position. Fire-and-forget and throttled; returns
        False when the update was throttled or there is no session.
        """
        if not self.session or not self.current_user:
            return False

        now = self.clock()
        throttle = timedelta(milliseconds=self.settings.cursor_throttle_ms)
        if self._last_cursor_sent and now - self._last_cursor_sent < throttle:
            return False
        self._last_cursor_sent = now

        self.own_cursor = CursorPosition(
            user_id=self.current_user.id,
            x=float(x),
            y=float(y),
            updated_at=now,
            color=self.current_user.color,
            name=self.current_user.name,
        )
        self.connection.send(CommandType.CURSOR, {
            "session_id": self.session.session_id,
            "cursor": self.own_cursor.to_dict(),
        })
        return True

    def _apply_cursor(self, cursor: CursorPosition) -> bool:
        existing = self.cursors.get(cursor.user_id)
        if existing and existing.updated_at > cursor.updated_at:
            return False
        self.cursors[cursor.user_id] = cursor
        self._cursor_seen[cursor.user_id] = self.clock()
        return True

    # ------------------------------------------------------------------ liveness

    def check_liveness(self):
        """Move silent participants offline, collect offline ones and idle cursors."""
        now = self.clock()
        gc_after = timedelta(seconds=self.settings.offline_gc_after)

        for participant in list(self.participants.values()):
            if participant.id == self._own_id:
                continue
            online = participant.is_online(now, self.liveness_window)
            if participant.state == ParticipantState.ONLINE and not online:
                participant.state = ParticipantState.OFFLINE
                participant.offline_since = now
                self._drop_cursor(participant.id)
                logger.info(f"Participant {participant.id} timed out")
                self._emit(PresenceEventType.USER_LEFT, user_id=participant.id)
            elif participant.state == ParticipantState.OFFLINE and now - participant.offline_since >= gc_after:
                participant.state = ParticipantState.REMOVED
                del self.participants[participant.id]
                logger.debug(f"Participant {participant.id} removed after being offline")

        idle = timedelta(seconds=self.settings.cursor_idle_timeout)
        for user_id, seen in list(self._cursor_seen.items()):
            if now - seen > idle:
                self._drop_cursor(user_id)

    def _drop_cursor(self, user_id: str):
        self.cursors.pop(user_id, None)
        self._cursor_seen.pop(user_id, None)

    # ------------------------------------------------------------------ inbound

    def _handle_message(self, message: InboundMessage):
        if not self.session:
            logger.debug("Discarding presence message outside a session")
            return

        payload = message.payload
        if message.is_snapshot:
            session_id = str((payload.get("session") or {}).get("id", ""))
        else:
            session_id = str(payload.get("session_id", ""))
        if session_id != self.session.session_id:
            logger.debug(f"Discarding presence message for session {session_id!r}")
            return

        try:
            if message.is_snapshot:
                self._apply_snapshot(payload)
            else:
                self._apply_delta(payload)
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"Malformed presence message: {e}")

    def _apply_snapshot(self, payload: Dict[str, Any]):
        now = self.clock()
        session = Session.from_dict(payload["session"])
        incoming = [Participant.from_dict(p, received_at=now) for p in payload.get("participants", [])]
        cursors = [CursorPosition.from_dict(c) for c in payload.get("cursors", [])]

        previous = self.participants
        self.session = session
        self.participants = {}
        for participant in incoming:
            if participant.id == self._own_id:
                self.current_user.name = participant.name
                self.current_user.color = participant.color
                self.current_user.last_heartbeat_at = now
                participant = self.current_user
            self.participants[participant.id] = participant

        if self.current_user:
            self.current_user.state = ParticipantState.ONLINE
            self.participants[self.current_user.id] = self.current_user

        # Derived caches are replaced, never merged
        self.cursors.clear()
        self._cursor_seen.clear()
        for cursor in cursors:
            peer = self.participants.get(cursor.user_id)
            if peer and peer.state == ParticipantState.ONLINE:
                self._apply_cursor(cursor)

        for user_id, participant in self.participants.items():
            if user_id == self._own_id or participant.state != ParticipantState.ONLINE:
                continue
            before = previous.get(user_id)
            if before is None or before.state != ParticipantState.ONLINE:
                self._emit(PresenceEventType.USER_JOINED, user=participant)
        for user_id, before in previous.items():
            if user_id == self._own_id or before.state != ParticipantState.ONLINE:
                continue
            after = self.participants.get(user_id)
            if after is None or after.state != ParticipantState.ONLINE:
                self._emit(PresenceEventType.USER_LEFT, user_id=user_id)

        logger.debug(f"Presence snapshot: {len(self.participants)} participants in {session.session_id}")

    def _apply_delta(self, payload: Dict[str, Any]):
        op = payload.get("op")
        now = self.clock()

        if op == "joined":
            data = payload["user"]
            user_id = str(data["id"])
            if user_id == self._own_id:
                self.current_user.state = ParticipantState.ONLINE
                self.current_user.last_heartbeat_at = now
                return
            participant = self.participants.get(user_id)
            was_online = participant is not None and participant.state == ParticipantState.ONLINE
            if participant is None:
                participant = Participant.from_dict(data, received_at=now)
                self.participants[user_id] = participant
            else:
                participant.name = data.get("name") or participant.name
                participant.color = data.get("color") or participant.color
            participant.last_heartbeat_at = now
            participant.state = ParticipantState.ONLINE
            participant.offline_since = None
            if not was_online:
                logger.info(f"Participant {user_id} joined {self.session.session_id}")
                self._emit(PresenceEventType.USER_JOINED, user=participant)

        elif op == "left":
            user_id = str(payload["user_id"])
            if user_id == self._own_id:
                # A stale link of ours was cleaned up server-side; we are still here
                logger.info(f"Server dropped {user_id} from {self.session.session_id}, rejoining")
                self.connection.send_command(self._join_command())
                return
            participant = self.participants.pop(user_id, None)
            self._drop_cursor(user_id)
            if participant is None:
                return
            was_online = participant.state == ParticipantState.ONLINE
            participant.state = ParticipantState.REMOVED
            if was_online:
                logger.info(f"Participant {user_id} left {self.session.session_id}")
                self._emit(PresenceEventType.USER_LEFT, user_id=user_id)

        elif op == "heartbeat":
            user_id = str(payload["user_id"])
            participant = self.participants.get(user_id)
            if participant is None:
                logger.debug(f"Heartbeat from unknown participant {user_id}")
                return
            reported = payload.get("timestamp")
            if reported is not None:
                participant.reported_heartbeat_at = parse_timestamp(reported)
            # Liveness runs on our receive clock; sender clocks may be skewed
            participant.last_heartbeat_at = now
            if participant.state == ParticipantState.OFFLINE:
                participant.state = ParticipantState.ONLINE
                participant.offline_since = None
                self._emit(PresenceEventType.USER_JOINED, user=participant)

        elif op == "cursor":
            cursor = CursorPosition.from_dict(payload["cursor"])
            if cursor.user_id == self._own_id:
                return
            peer = self.participants.get(cursor.user_id)
            if peer is None or peer.state != ParticipantState.ONLINE:
                logger.debug(f"Cursor from participant {cursor.user_id} who is not online")
                return
            if self._apply_cursor(cursor):
                self._emit(PresenceEventType.CURSOR_MOVED, cursor=cursor)

        else:
            logger.debug(f"Ignoring presence op {op!r}")

    # ------------------------------------------------------------------ teardown

    def close(self):
        for remove in self._registrations:
            remove()
        self._registrations = []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session": self.session.to_dict() if self.session else None,
            "is_connected": self.is_connected,
            "online_users": [p.to_dict() for p in self.online_users],
            "cursors": [c.to_dict() for c in self.cursors.values()],
        }
