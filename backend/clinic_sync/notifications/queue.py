"""
Bounded, newest-first notification queue.

Notifications come from two places: the application itself (``local``) and
the ``notifications`` topic (``server``). Only server-originated entries have
their read state reported back to the backend.
"""
import asyncio
import bisect
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union
from enum import Enum

from ..core.clock import parse_timestamp, utc_now
from ..core.config import Settings, get_settings
from ..core.exceptions import ProtocolError
from ..websocket.connection_manager import ConnectionManager
from ..websocket.events import Command, CommandType, InboundMessage, Topic

logger = logging.getLogger(__name__)


class NotificationType(Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class NotificationSource(Enum):
    LOCAL = "local"
    SERVER = "server"


@dataclass
class NotificationAction:
    """A button offered with a notification. Never invoked automatically."""
    label: str
    action: Union[str, Callable[..., Any]]
    variant: str = "default"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'label': self.label,
            'action': self.action if isinstance(self.action, str) else getattr(self.action, '__name__', 'callable'),
            'variant': self.variant
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NotificationAction':
        return cls(label=data['label'], action=data['action'], variant=data.get('variant', 'default'))


@dataclass
class Notification:
    id: str
    type: NotificationType
    title: str
    message: str
    timestamp: datetime
    read: bool = False
    persistent: bool = False
    source: NotificationSource = NotificationSource.LOCAL
    actions: List[NotificationAction] = field(default_factory=list)

    @property
    def is_server(self) -> bool:
        return self.source == NotificationSource.SERVER

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type.value,
            'title': self.title,
            'message': self.message,
            'timestamp': self.timestamp.isoformat(),
            'read': self.read,
            'persistent': self.persistent,
            'source': self.source.value,
            'actions': [a.to_dict() for a in self.actions]
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source: NotificationSource, received_at: datetime) -> 'Notification':
        return cls(
            id=str(data.get('id') or f"{source.value}-{uuid.uuid4()}"),
            type=NotificationType(data.get('type', 'info')),
            title=data.get('title', ''),
            message=data.get('message', ''),
            timestamp=parse_timestamp(data.get('timestamp'), default=received_at),
            read=bool(data.get('read', False)),
            persistent=bool(data.get('persistent', False)),
            source=source,
            actions=[
                a if isinstance(a, NotificationAction) else NotificationAction.from_dict(a)
                for a in data.get('actions') or []
            ]
        )


class NotificationQueue:
    """Holds at most ``max_notifications`` entries, newest first."""

    def __init__(
        self,
        connection: ConnectionManager,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.connection = connection
        self.settings = settings or get_settings()
        self.clock = clock

        self.notifications: List[Notification] = []
        self.action_handlers: Dict[str, Callable[[Notification], Any]] = {}
        self.prune_task: Optional[asyncio.Task] = None

        self._registrations = [
            connection.on_message(Topic.NOTIFICATIONS, self._handle_message),
            connection.register_resubscriber(self._resubscribe_commands),
        ]

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self.notifications if not n.read)

    def get(self, notification_id: str) -> Optional[Notification]:
        return next((n for n in self.notifications if n.id == notification_id), None)

    # ------------------------------------------------------------------ mutations

    def add_notification(self, data: Union[Dict[str, Any], Notification]) -> Optional[Notification]:
        """
        Add a local notification. A notification whose id is already queued
        is left untouched and the queued one is returned. Returns None when
        the queue is full and the notification is older than everything in it.
        """
        if isinstance(data, Notification):
            notification = data
        else:
            notification = Notification.from_dict(data, NotificationSource.LOCAL, self.clock())
        return self._insert(notification)

    def _insert(self, notification: Notification) -> Optional[Notification]:
        existing = self.get(notification.id)
        if existing is not None:
            logger.debug(f"Duplicate notification {notification.id} ignored")
            return existing

        # Newest first: search on negated timestamps keeps the list descending
        keys = [-n.timestamp.timestamp() for n in self.notifications]
        index = bisect.bisect_right(keys, -notification.timestamp.timestamp())
        if index >= self.settings.max_notifications:
            logger.debug(f"Notification {notification.id} is older than a full queue, dropped")
            return None
        self.notifications.insert(index, notification)
        del self.notifications[self.settings.max_notifications:]
        return notification

    def mark_as_read(self, notification_id: str) -> bool:
        notification = self.get(notification_id)
        if notification is None:
            return False
        if not notification.read:
            notification.read = True
            if notification.is_server:
                self.connection.send(CommandType.NOTIFICATION_MARK_READ, {"id": notification.id})
        return True

    def mark_all_as_read(self):
        unread_server = [n for n in self.notifications if n.is_server and not n.read]
        for notification in self.notifications:
            notification.read = True
        if unread_server:
            self.connection.send(CommandType.NOTIFICATION_MARK_ALL_READ, {})

    def remove_notification(self, notification_id: str) -> bool:
        before = len(self.notifications)
        self.notifications = [n for n in self.notifications if n.id != notification_id]
        return len(self.notifications) != before

    def clear_all(self):
        self.notifications = []

    # ------------------------------------------------------------------ actions

    def register_action(self, name: str, handler: Callable[[Notification], Any]) -> Callable[[], None]:
        """Bind a handler to a named action sent by the server."""
        self.action_handlers[name] = handler

        def unregister():
            if self.action_handlers.get(name) is handler:
                del self.action_handlers[name]

        return unregister

    def run_action(self, notification_id: str, label: str) -> bool:
        """
        Invoke one action of a notification on the consumer's request.

        Read state is not changed. Returns True when the action ran without
        raising; failures are logged.
        """
        notification = self.get(notification_id)
        if notification is None:
            return False
        action = next((a for a in notification.actions if a.label == label), None)
        if action is None:
            logger.warning(f"Notification {notification_id} has no action {label!r}")
            return False

        handler = action.action if callable(action.action) else self.action_handlers.get(action.action)
        if handler is None:
            logger.warning(f"No handler registered for action {action.action!r}")
            return False

        try:
            if callable(action.action):
                handler()
            else:
                handler(notification)
            return True
        except Exception as e:
            logger.error(f"Action {label!r} of notification {notification_id} failed: {e}", exc_info=True)
            return False

    # ------------------------------------------------------------------ expiry

    def prune_expired(self, now: Optional[datetime] = None) -> int:
        """Drop transient notifications older than ``notification_ttl``."""
        ttl = self.settings.notification_ttl
        if not ttl:
            return 0
        horizon = (now or self.clock()) - timedelta(seconds=ttl)
        before = len(self.notifications)
        self.notifications = [n for n in self.notifications if n.persistent or n.timestamp > horizon]
        pruned = before - len(self.notifications)
        if pruned:
            logger.debug(f"Pruned {pruned} expired notifications")
        return pruned

    async def start(self):
        """Start periodic expiry when a TTL is configured."""
        if self.settings.notification_ttl and (self.prune_task is None or self.prune_task.done()):
            self.prune_task = asyncio.create_task(self._prune_loop())

    async def stop(self):
        if self.prune_task:
            self.prune_task.cancel()
            try:
                await self.prune_task
            except asyncio.CancelledError:
                pass
            self.prune_task = None

    async def _prune_loop(self):
        interval = min(self.settings.notification_ttl, 1.0)
        while True:
            await asyncio.sleep(interval)
            self.prune_expired()

    # ------------------------------------------------------------------ inbound

    def _handle_message(self, message: InboundMessage):
        try:
            if message.is_snapshot:
                self._apply_snapshot(message.payload)
            else:
                self._apply_delta(message.payload)
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"Malformed notification message: {e}")

    def _parse_server(self, data: Dict[str, Any]) -> Notification:
        if not data.get('id'):
            raise ValueError("server notification without id")
        return Notification.from_dict(data, NotificationSource.SERVER, self.clock())

    def _apply_snapshot(self, payload: Dict[str, Any]):
        incoming = [self._parse_server(n) for n in payload.get("notifications", [])]
        local = [n for n in self.notifications if not n.is_server]
        self.notifications = []
        for notification in local + incoming:
            self._insert(notification)
        logger.debug(f"Notification snapshot: {len(incoming)} from server, {len(local)} local kept")

    def _apply_delta(self, payload: Dict[str, Any]):
        op = payload.get("op")
        if op == "new":
            self._insert(self._parse_server(payload["notification"]))
        elif op == "read":
            notification = self.get(str(payload["id"]))
            if notification is not None:
                notification.read = True
        elif op == "read_all":
            for notification in self.notifications:
                if notification.is_server:
                    notification.read = True
        elif op == "removed":
            self.remove_notification(str(payload["id"]))
        else:
            logger.debug(f"Ignoring notification op {op!r}")

    def _resubscribe_commands(self) -> List[Command]:
        return [Command(CommandType.SUBSCRIBE, {"channels": [Topic.NOTIFICATIONS]})]

    def close(self):
        for remove in self._registrations:
            remove()
        self._registrations = []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notifications": [n.to_dict() for n in self.notifications],
            "unread_count": self.unread_count,
        }
