"""
Session comments with optimistic local edits.

Every mutation is applied locally at once as a pending entry and sent to the
server. The server answers on the ``comments`` topic: confirmations replace
the pending entry, rejections roll it back. Pending commands are replayed on
every reconnection; their ``client_id`` lets the server drop duplicates.
"""
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union
from enum import Enum

from ..core.clock import utc_now
from ..core.config import Settings, get_settings
from ..core.events import Event, EventBus
from ..core.exceptions import AuthorizationError, ProtocolError, SyncError, ValidationError
from ..websocket.connection_manager import ConnectionManager
from ..websocket.events import Command, CommandType, InboundMessage, Topic
from .models import Comment, MutationResult

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "tmp-"


class CommentEventType(Enum):
    COMMENT_ADDED = "comment_added"
    COMMENT_UPDATED = "comment_updated"


@dataclass
class Confirmed:
    """A comment as last acknowledged by the server."""
    comment: Comment


@dataclass
class Pending:
    """A comment with a local mutation the server has not acknowledged yet."""
    comment: Comment
    retry_token: str
    command: Command
    previous: Optional[Comment] = None  # last confirmed state, None for adds
    earlier: List[Command] = field(default_factory=list)  # superseded, still unacknowledged

    @property
    def is_add(self) -> bool:
        return self.command.command_type == CommandType.COMMENT_ADD

    @property
    def is_delete(self) -> bool:
        return self.command.command_type == CommandType.COMMENT_DELETE

    def tokens(self) -> List[str]:
        return [c.payload.get("client_id") for c in self.earlier] + [self.retry_token]


CommentEntry = Union[Confirmed, Pending]


class CommentStore:
    """Comments of the open session, keyed by id."""

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

        self.session_id: Optional[str] = None
        self.user_id: Optional[str] = None
        self.user_name: Optional[str] = None
        self.entries: Dict[str, CommentEntry] = {}
        self.last_error: Optional[str] = None

        self._registrations = [
            connection.on_message(Topic.COMMENTS, self._handle_message),
            connection.register_resubscriber(self._replay_commands),
        ]

    @property
    def comments(self) -> List[Comment]:
        """Visible comments, oldest first. Pending deletes are hidden."""
        visible = [
            entry.comment for entry in self.entries.values()
            if not (isinstance(entry, Pending) and entry.is_delete)
        ]
        return sorted(visible, key=lambda c: c.created_at)

    @property
    def pending(self) -> List[Pending]:
        return [e for e in self.entries.values() if isinstance(e, Pending)]

    def get(self, comment_id: str) -> Optional[Comment]:
        entry = self.entries.get(comment_id)
        return entry.comment if entry else None

    # ------------------------------------------------------------------ callbacks

    def on_comment_add(self, callback: Callable[[Comment], Any]) -> Callable[[], None]:
        """Called when the server confirms a new comment, ours or a peer's."""
        return self.event_bus.subscribe(CommentEventType.COMMENT_ADDED, lambda event: callback(event.data["comment"]))

    def on_comment_update(self, callback: Callable[[Comment], Any]) -> Callable[[], None]:
        return self.event_bus.subscribe(CommentEventType.COMMENT_UPDATED, lambda event: callback(event.data["comment"]))

    def _emit(self, event_type: CommentEventType, comment: Comment):
        self.event_bus.publish(Event(event_type=event_type, data={"comment": comment}, source="comments"))

    # ------------------------------------------------------------------ session

    def open(self, session_id: str, user_id: str, user_name: str):
        """Bind the store to a session; previous comments are dropped."""
        if self.session_id != session_id:
            self.entries.clear()
        self.session_id = session_id
        self.user_id = user_id
        self.user_name = user_name or user_id
        self.last_error = None

    def close(self):
        self.session_id = None
        self.user_id = None
        self.user_name = None
        self.entries.clear()
        self.last_error = None

    def detach(self):
        """Stop listening to the connection."""
        for remove in self._registrations:
            remove()
        self._registrations = []

    # ------------------------------------------------------------------ mutations

    def add_comment(self, content: str, position: Optional[Dict[str, float]] = None) -> MutationResult:
        try:
            self._require_session()
            content = self._validate_content(content)
        except SyncError as e:
            return self._failed(e)

        now = self.clock()
        temp_id = f"{TEMP_ID_PREFIX}{uuid.uuid4()}"
        comment = Comment(
            id=temp_id,
            session_id=self.session_id,
            user_id=self.user_id,
            user_name=self.user_name,
            content=content,
            created_at=now,
            updated_at=now,
            position=position,
        )
        command = Command(CommandType.COMMENT_ADD, {
            "session_id": self.session_id,
            "client_id": temp_id,
            "content": content,
            "position": position,
            "user_name": self.user_name,
        })
        self.entries[temp_id] = Pending(comment=comment, retry_token=temp_id, command=command)
        self.connection.send_command(command)
        return MutationResult(success=True, comment=comment)

    def update_comment(self, comment_id: str, content: str) -> MutationResult:
        try:
            entry = self._authorized_entry(comment_id)
            content = self._validate_content(content)
        except SyncError as e:
            return self._failed(e)

        comment = replace(entry.comment, content=content, updated_at=self.clock())
        self._stage(entry, comment, CommandType.COMMENT_UPDATE, {"content": content})
        return MutationResult(success=True, comment=comment)

    def resolve_comment(self, comment_id: str) -> MutationResult:
        try:
            entry = self._authorized_entry(comment_id)
        except SyncError as e:
            return self._failed(e)

        if entry.comment.resolved:
            return MutationResult(success=True, comment=entry.comment, changed=False)

        comment = replace(entry.comment, resolved=True, updated_at=self.clock())
        self._stage(entry, comment, CommandType.COMMENT_RESOLVE, {})
        return MutationResult(success=True, comment=comment)

    def delete_comment(self, comment_id: str) -> MutationResult:
        try:
            entry = self._authorized_entry(comment_id)
        except SyncError as e:
            return self._failed(e)

        self._stage(entry, entry.comment, CommandType.COMMENT_DELETE, {})
        return MutationResult(success=True, comment=entry.comment)

    def _stage(self, entry: CommentEntry, comment: Comment, command_type: CommandType, extra: Dict[str, Any]):
        token = f"op-{uuid.uuid4()}"
        payload = {"session_id": self.session_id, "comment_id": comment.id, "client_id": token}
        payload.update(extra)
        command = Command(command_type, payload)

        if isinstance(entry, Pending):
            previous = entry.previous
            earlier = entry.earlier + [entry.command]
        else:
            previous = entry.comment
            earlier = []
        self.entries[comment.id] = Pending(
            comment=comment, retry_token=token, command=command, previous=previous, earlier=earlier
        )
        self.connection.send_command(command)

    def _require_session(self):
        if not self.session_id:
            raise ValidationError("No open session")

    def _validate_content(self, content: str) -> str:
        if content is None or not str(content).strip():
            raise ValidationError("Comment content must not be empty")
        content = str(content).strip()
        if len(content) > self.settings.max_comment_length:
            raise ValidationError(
                f"Comment exceeds {self.settings.max_comment_length} characters",
                details={"length": len(content)}
            )
        return content

    def _authorized_entry(self, comment_id: str) -> CommentEntry:
        self._require_session()
        entry = self.entries.get(comment_id)
        if entry is None or (isinstance(entry, Pending) and entry.is_delete):
            raise ValidationError(f"Unknown comment {comment_id}", details={"comment_id": comment_id})
        if entry.comment.user_id != self.user_id:
            raise AuthorizationError(details={"comment_id": comment_id, "user_id": self.user_id})
        if isinstance(entry, Pending) and entry.is_add:
            raise ValidationError("Comment is still being saved", details={"comment_id": comment_id})
        return entry

    def _failed(self, error: SyncError) -> MutationResult:
        self.last_error = error.message
        logger.debug(f"Comment mutation refused: {error.error_code}: {error.message}")
        return MutationResult(success=False, error=error, changed=False)

    def _replay_commands(self) -> List[Command]:
        commands = []
        for entry in sorted(self.pending, key=lambda e: e.comment.created_at):
            commands.extend(entry.earlier)
            commands.append(entry.command)
        if commands:
            logger.info(f"Replaying {len(commands)} pending comment commands")
        return commands

    # ------------------------------------------------------------------ inbound

    def _handle_message(self, message: InboundMessage):
        payload = message.payload
        if not self.session_id or str(payload.get("session_id", "")) != self.session_id:
            logger.debug("Discarding comment message for another session")
            return

        try:
            if message.is_snapshot:
                self._apply_snapshot(payload)
            else:
                self._apply_delta(payload)
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"Malformed comment message: {e}")

    def _parse(self, data: Dict[str, Any]) -> Comment:
        return Comment.from_dict({"session_id": self.session_id, **data})

    def _apply_snapshot(self, payload: Dict[str, Any]):
        incoming = [(self._parse(c), c.get("client_id")) for c in payload.get("comments", [])]
        confirmed_tokens = {client_id for _, client_id in incoming if client_id}

        entries: Dict[str, CommentEntry] = {c.id: Confirmed(c) for c, _ in incoming}
        for key, entry in self.entries.items():
            if isinstance(entry, Pending) and entry.is_add and entry.retry_token not in confirmed_tokens:
                entries[key] = entry
        self.entries = entries
        logger.debug(f"Comment snapshot: {len(incoming)} comments in {self.session_id}")

    def _apply_delta(self, payload: Dict[str, Any]):
        op = payload.get("op")

        if op == "added":
            comment = self._parse(payload["comment"])
            client_id = payload.get("client_id")
            pending = self.entries.get(client_id) if client_id else None
            if isinstance(pending, Pending) and pending.is_add:
                self._replace_key(client_id, comment)
                self._emit(CommentEventType.COMMENT_ADDED, comment)
            elif comment.id in self.entries:
                self._apply_server_state(comment)
            else:
                self.entries[comment.id] = Confirmed(comment)
                self._emit(CommentEventType.COMMENT_ADDED, comment)

        elif op == "updated":
            applied = self._apply_server_state(self._parse(payload["comment"]))
            if applied:
                self._emit(CommentEventType.COMMENT_UPDATED, applied)

        elif op == "deleted":
            comment_id = str(payload["comment_id"])
            if self.entries.pop(comment_id, None) is not None:
                logger.debug(f"Comment {comment_id} deleted")

        elif op == "rejected":
            self._rollback(payload.get("client_id"), payload.get("comment_id"), payload.get("reason"))

        else:
            logger.debug(f"Ignoring comment op {op!r}")

    def _replace_key(self, temp_id: str, comment: Comment):
        """Swap a pending add for its confirmed comment, keeping its slot."""
        self.entries = {
            (comment.id if key == temp_id else key): (Confirmed(comment) if key == temp_id else entry)
            for key, entry in self.entries.items()
        }

    def _apply_server_state(self, comment: Comment) -> Optional[Comment]:
        """Apply a server state; returns it when the visible comment changed."""
        entry = self.entries.get(comment.id)
        if isinstance(entry, Confirmed):
            if comment.updated_at < entry.comment.updated_at:
                logger.debug(f"Ignoring stale state for comment {comment.id}")
                return None
            if entry.comment.resolved and not comment.resolved:
                comment = replace(comment, resolved=True)
        elif isinstance(entry, Pending) and entry.previous and entry.previous.resolved:
            comment = replace(comment, resolved=True)
        self.entries[comment.id] = Confirmed(comment)
        if entry is not None and entry.comment == comment:
            return None
        return comment

    def _rollback(self, client_id: Optional[str], comment_id: Optional[str], reason: Optional[str]):
        key = None
        for entry_key, entry in self.entries.items():
            if isinstance(entry, Pending) and client_id and client_id in entry.tokens():
                key = entry_key
                break
        if key is None and comment_id in self.entries and isinstance(self.entries[comment_id], Pending):
            key = comment_id
        if key is None:
            logger.debug(f"Rejection for unknown mutation {client_id or comment_id}")
            return

        entry = self.entries[key]
        if entry.previous is None:
            del self.entries[key]
        else:
            self.entries[key] = Confirmed(entry.previous)
        self.last_error = reason or "Comment change rejected by server"
        logger.warning(f"Comment mutation rejected: {self.last_error}")
