"""
WebSocket connection layer.

This module provides:
- The connection manager with reconnect, heartbeat and resubscription
- Outbound command and inbound message envelopes
- The websocket transport
"""

from .connection_manager import ConnectionManager, ConnectionStatus, compute_backoff
from .events import Command, CommandType, InboundMessage, MessageKind, Topic, parse_inbound
from .transport import Transport, WebSocketTransport

__all__ = [
    "ConnectionManager",
    "ConnectionStatus",
    "compute_backoff",
    "Command",
    "CommandType",
    "InboundMessage",
    "MessageKind",
    "Topic",
    "parse_inbound",
    "Transport",
    "WebSocketTransport"
]
