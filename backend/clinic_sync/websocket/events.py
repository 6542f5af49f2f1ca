"""
Wire envelopes exchanged with the sync backend.

Outbound frames are commands ``{"type": ..., "payload": {...}}``; inbound
frames are topic messages ``{"topic": ..., "seq": ..., "kind": ..., "payload": {...}}``.
"""

import json
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Union
from enum import Enum

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from ..core.exceptions import ProtocolError


class CommandType(Enum):
    """Outbound command types."""

    # Subscriptions
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    SNAPSHOT_REQUEST = "snapshot.request"

    # Presence
    JOIN = "join"
    LEAVE = "leave"
    CURSOR = "cursor"
    HEARTBEAT = "heartbeat"

    # Comments
    COMMENT_ADD = "comment.add"
    COMMENT_UPDATE = "comment.update"
    COMMENT_RESOLVE = "comment.resolve"
    COMMENT_DELETE = "comment.delete"

    # Notifications
    NOTIFICATION_MARK_READ = "notification.markRead"
    NOTIFICATION_MARK_ALL_READ = "notification.markAllRead"


class MessageKind(Enum):
    """Inbound message kinds."""
    SNAPSHOT = "snapshot"
    DELTA = "delta"


class Topic:
    """Well-known inbound topics. Channel topics are ``<kind>:<name>``."""
    PRESENCE = "presence"
    COMMENTS = "comments"
    NOTIFICATIONS = "notifications"
    CHART = "chart"
    COUNTER = "counter"
    TABLE = "table"

    CHANNEL_KINDS = (CHART, COUNTER, TABLE)

    @staticmethod
    def split_channel(topic: str):
        """Split ``chart:revenue`` into ``("chart", "revenue")``; kind is None when unqualified."""
        kind, sep, name = topic.partition(":")
        if sep and kind in Topic.CHANNEL_KINDS and name:
            return kind, name
        return None, topic


@dataclass
class Command:
    """Outbound command envelope."""

    command_type: CommandType
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.command_type.value, "payload": self.payload}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def create(cls, command_type: Union[CommandType, str], payload: Optional[Dict[str, Any]] = None) -> 'Command':
        try:
            command_type = CommandType(command_type)
        except ValueError:
            raise ProtocolError(f"Unknown command type: {command_type}")
        return cls(command_type=command_type, payload=dict(payload or {}))


class InboundMessage(BaseModel):
    """Inbound message envelope."""

    topic: str = Field(min_length=1)
    seq: Optional[int] = Field(default=None, ge=0)
    kind: MessageKind = MessageKind.DELTA
    payload: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_snapshot(self) -> bool:
        return self.kind == MessageKind.SNAPSHOT


def parse_inbound(raw: Union[str, bytes]) -> InboundMessage:
    """
    Decode and validate one inbound frame.

    Raises:
        ProtocolError: the frame is not JSON or does not match the envelope.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError("Inbound frame is not valid JSON", details={"error": str(e)})

    if not isinstance(data, dict):
        raise ProtocolError("Inbound frame must be a JSON object")

    try:
        return InboundMessage.model_validate(data)
    except PydanticValidationError as e:
        raise ProtocolError("Inbound frame does not match the message envelope", details={"errors": e.errors(include_url=False)})
