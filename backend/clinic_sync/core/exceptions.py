"""
Error taxonomy for the real-time sync core.

Transport and protocol errors are absorbed inside the connection layer and
only ever surface as aggregate state. Authorization and validation errors are
handed back to the caller of a mutation.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base class for sync core errors"""
    def __init__(self, message: str, error_code: str = "SYNC_ERROR", details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Standardized error payload"""
        error = {
            "message": self.message,
            "error_code": self.error_code,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.details:
            error["details"] = self.details
        return error


class TransportError(SyncError):
    """Connection lost or could not be established"""
    def __init__(self, message: str = "Transport connection failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="TRANSPORT_ERROR", details=details)


class ProtocolError(SyncError):
    """Malformed or unroutable inbound message"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="PROTOCOL_ERROR", details=details)


class AuthorizationError(SyncError):
    """Mutation attempted by someone other than the entity's author"""
    def __init__(self, message: str = "Only the author may modify this comment", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="AUTHORIZATION_ERROR", details=details)


class SequenceGapError(SyncError):
    """Channel delta arrived out of order"""
    def __init__(self, channel: str, expected: int, received: int):
        super().__init__(
            f"Sequence gap on {channel}: expected {expected}, got {received}",
            error_code="SEQUENCE_GAP",
            details={"channel": channel, "expected": expected, "received": received},
        )
        self.channel = channel
        self.expected = expected
        self.received = received


class ValidationError(SyncError):
    """Empty or invalid mutation payload"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="VALIDATION_ERROR", details=details)
