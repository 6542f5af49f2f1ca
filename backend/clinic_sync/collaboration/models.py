"""
Collaboration session data: sessions, participants, cursors and comments.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from enum import Enum

from ..core.clock import parse_timestamp


class ParticipantState(Enum):
    JOINING = "joining"
    ONLINE = "online"
    OFFLINE = "offline"
    REMOVED = "removed"


@dataclass
class Session:
    """A collaboration context mirrored from the server."""
    session_id: str
    name: str

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.session_id, 'name': self.name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Session':
        return cls(session_id=str(data['id']), name=data.get('name') or str(data['id']))


@dataclass
class Participant:
    """A user joined to the session."""
    id: str
    name: str
    color: str = "#3b82f6"
    last_heartbeat_at: Optional[datetime] = None  # local receive time
    state: ParticipantState = ParticipantState.JOINING
    offline_since: Optional[datetime] = None
    reported_heartbeat_at: Optional[datetime] = None  # sender clock, informational only

    def is_online(self, now: datetime, liveness_window: timedelta) -> bool:
        """Online iff a heartbeat arrived within the liveness window."""
        if self.state == ParticipantState.REMOVED or self.last_heartbeat_at is None:
            return False
        return now - self.last_heartbeat_at <= liveness_window

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'color': self.color,
            'state': self.state.value,
            'last_heartbeat_at': self.last_heartbeat_at.isoformat() if self.last_heartbeat_at else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], received_at: datetime) -> 'Participant':
        reported = data.get('last_heartbeat_at')
        return cls(
            id=str(data['id']),
            name=data.get('name') or str(data['id']),
            color=data.get('color') or "#3b82f6",
            last_heartbeat_at=received_at,
            state=ParticipantState.ONLINE,
            reported_heartbeat_at=parse_timestamp(reported) if reported is not None else None
        )


@dataclass
class CursorPosition:
    """Latest pointer position of one user."""
    user_id: str
    x: float
    y: float
    updated_at: datetime
    color: Optional[str] = None
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'x': self.x,
            'y': self.y,
            'updated_at': self.updated_at.isoformat(),
            'color': self.color,
            'name': self.name
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CursorPosition':
        return cls(
            user_id=str(data['user_id']),
            x=float(data['x']),
            y=float(data['y']),
            updated_at=parse_timestamp(data.get('updated_at')),
            color=data.get('color'),
            name=data.get('name')
        )


@dataclass
class Comment:
    """A comment in a collaboration session."""
    id: str
    session_id: str
    user_id: str
    user_name: str
    content: str
    created_at: datetime
    updated_at: datetime
    resolved: bool = False
    position: Optional[Dict[str, float]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'session_id': self.session_id,
            'user_id': self.user_id,
            'user_name': self.user_name,
            'content': self.content,
            'resolved': self.resolved,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'position': self.position
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Comment':
        created_at = parse_timestamp(data.get('created_at'))
        return cls(
            id=str(data['id']),
            session_id=str(data['session_id']),
            user_id=str(data['user_id']),
            user_name=data.get('user_name') or str(data['user_id']),
            content=str(data['content']),
            created_at=created_at,
            updated_at=parse_timestamp(data.get('updated_at'), default=created_at),
            resolved=bool(data.get('resolved', False)),
            position=data.get('position')
        )


@dataclass
class MutationResult:
    """Outcome of a comment mutation, returned synchronously to the caller."""
    success: bool
    comment: Optional[Comment] = None
    error: Optional[Exception] = None
    changed: bool = True

    @property
    def error_message(self) -> Optional[str]:
        return getattr(self.error, 'message', None) if self.error else None
