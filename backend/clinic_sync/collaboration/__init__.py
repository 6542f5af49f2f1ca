"""
Session collaboration: user presence, shared cursors and comments.
"""

from .presence import PresenceCoordinator, PresenceEventType
from .comments import CommentEventType, CommentStore, Confirmed, Pending
from .models import Comment, CursorPosition, MutationResult, Participant, ParticipantState, Session

__all__ = [
    'PresenceCoordinator',
    'PresenceEventType',
    'CommentEventType',
    'CommentStore',
    'Confirmed',
    'Pending',
    'Comment',
    'CursorPosition',
    'MutationResult',
    'Participant',
    'ParticipantState',
    'Session'
]
