"""
Core utilities tests: configuration, errors, timestamps, wire envelopes,
event bus and logging.
"""

import json
import logging
from datetime import datetime, timezone

import pytest
from loguru import logger

from clinic_sync.core.clock import parse_timestamp
from clinic_sync.core.config import Settings
from clinic_sync.core.events import Event, EventBus
from clinic_sync.core.exceptions import AuthorizationError, ProtocolError, SequenceGapError, SyncError
from clinic_sync.core.logging_config import configure_logging
from clinic_sync.websocket.events import Command, MessageKind, Topic, parse_inbound


class TestSettings:
    """Test suite for configuration loading."""

    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.max_notifications == 50
        assert settings.cursor_throttle_ms == 50
        assert settings.notification_ttl is None

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("CLINIC_SYNC_MAX_NOTIFICATIONS", "10")
        monkeypatch.setenv("CLINIC_SYNC_WS_URL", "wss://clinic.example/ws")

        settings = Settings(_env_file=None)

        assert settings.max_notifications == 10
        assert settings.ws_url == "wss://clinic.example/ws"


class TestErrors:
    """Test suite for the error taxonomy."""

    def test_to_dict(self):
        error = AuthorizationError(details={"comment_id": "c1"})

        data = error.to_dict()

        assert data["error_code"] == "AUTHORIZATION_ERROR"
        assert data["details"] == {"comment_id": "c1"}
        assert isinstance(error, SyncError)

    def test_sequence_gap_details(self):
        error = SequenceGapError("chart:revenue", expected=2, received=5)

        assert error.expected == 2
        assert "expected 2" in error.message


class TestTimestamps:
    """Test suite for wire timestamp parsing."""

    def test_iso_with_z(self):
        assert parse_timestamp("2024-03-01T09:00:00Z") == datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def test_epoch_seconds_and_millis(self):
        seconds = parse_timestamp(1709283600)
        millis = parse_timestamp(1709283600000)

        assert seconds == millis == datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def test_naive_datetime_becomes_utc(self):
        assert parse_timestamp(datetime(2024, 3, 1, 9, 0)).tzinfo == timezone.utc

    def test_missing_and_invalid(self):
        fallback = datetime(2024, 1, 1, tzinfo=timezone.utc)

        assert parse_timestamp(None, default=fallback) == fallback
        with pytest.raises(ValueError):
            parse_timestamp(None)
        with pytest.raises(ValueError):
            parse_timestamp("yesterday")


class TestEnvelopes:
    """Test suite for inbound and outbound envelopes."""

    def test_parse_snapshot(self):
        message = parse_inbound(json.dumps({"topic": "counter:patients", "seq": 3, "kind": "snapshot", "payload": {"value": 1}}))

        assert message.is_snapshot
        assert message.kind == MessageKind.SNAPSHOT
        assert message.seq == 3

    def test_kind_defaults_to_delta(self):
        message = parse_inbound(b'{"topic": "presence"}')

        assert not message.is_snapshot
        assert message.payload == {}

    @pytest.mark.parametrize("raw", ["", "[]", '{"seq": 1}', '{"topic": "x", "kind": "patch"}', '{"topic": "x", "payload": 3}'])
    def test_invalid_frames(self, raw):
        with pytest.raises(ProtocolError):
            parse_inbound(raw)

    def test_unknown_command(self):
        with pytest.raises(ProtocolError):
            Command.create("reboot")

    def test_split_channel(self):
        assert Topic.split_channel("table:beds") == ("table", "beds")
        assert Topic.split_channel("beds") == (None, "beds")
        assert Topic.split_channel("weather:today") == (None, "weather:today")


class TestEventBus:
    """Test suite for the in-process event bus."""

    def test_publish_isolates_failing_subscribers(self):
        bus = EventBus()
        received = []

        def broken(event):
            raise ValueError("bad subscriber")

        bus.subscribe("user_joined", broken)
        bus.subscribe("user_joined", lambda e: received.append(e.data["user"]))

        delivered = bus.publish(Event(event_type="user_joined", data={"user": "u2"}))

        assert delivered == 1
        assert received == ["u2"]
        assert bus.failed_deliveries == 1

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe("tick", received.append)

        unsubscribe()
        bus.publish(Event(event_type="tick"))

        assert received == []


class TestLogging:
    """Test suite for loguru configuration."""

    def test_stdlib_records_reach_file_sink(self, tmp_path):
        log_file = tmp_path / "sync.log"
        settings = Settings(_env_file=None, environment="test", log_file=str(log_file), log_level="INFO")

        configure_logging(settings)
        try:
            logging.getLogger("clinic_sync.test").warning("link lost to ws://clinic")
        finally:
            logger.remove()

        assert "link lost to ws://clinic" in log_file.read_text()
