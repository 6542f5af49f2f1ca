"""
Single entry point wiring the sync components to one connection.
"""
import logging
from typing import Any, Dict, Optional

from .collaboration.comments import CommentStore
from .collaboration.presence import PresenceCoordinator
from .core.config import Settings, get_settings
from .core.events import EventBus
from .dashboard.channels import ChannelSyncClient
from .notifications.queue import NotificationQueue
from .websocket.connection_manager import ConnectionManager
from .websocket.transport import TransportFactory

logger = logging.getLogger(__name__)


class SyncClient:
    """
    Owns the connection manager and the components that share it.

    Usage::

        client = SyncClient()
        await client.start()
        client.channels.subscribe(["chart:revenue", "counter:patients"])
        client.join_session("ward-3", "u-17", "Dr. Ada")
        ...
        await client.stop()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport_factory: Optional[TransportFactory] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.settings = settings or get_settings()
        self.event_bus = event_bus or EventBus()
        self.connection = ConnectionManager(self.settings, transport_factory=transport_factory)
        self.channels = ChannelSyncClient(self.connection, self.settings)
        self.presence = PresenceCoordinator(self.connection, self.settings, event_bus=self.event_bus)
        self.comments = CommentStore(self.connection, self.settings, event_bus=self.event_bus)
        self.notifications = NotificationQueue(self.connection, self.settings)

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    async def start(self, endpoint: Optional[str] = None):
        await self.connection.connect(endpoint)
        await self.presence.start()
        await self.notifications.start()
        logger.info(f"{self.settings.app_name} started")

    async def stop(self):
        self.leave_session()
        await self.presence.stop()
        await self.notifications.stop()
        await self.connection.disconnect()
        logger.info(f"{self.settings.app_name} stopped")

    def join_session(self, session_id: str, user_id: str, user_name: str, user_color: str = "#3b82f6") -> bool:
        """Join presence and open the session's comments."""
        sent = self.presence.join(session_id, user_id, user_name, user_color)
        self.comments.open(session_id, user_id, user_name)
        return sent

    def leave_session(self):
        self.presence.leave()
        self.comments.close()

    async def __aenter__(self) -> 'SyncClient':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "connection": self.connection.get_statistics(),
            "channels": len(self.channels.subscriptions),
            "participants": len(self.presence.participants),
            "comments": len(self.comments.entries),
            "pending_comments": len(self.comments.pending),
            "unread_notifications": self.notifications.unread_count,
        }
