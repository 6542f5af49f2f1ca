"""
Dashboard channel synchronization tests.
"""

import pytest

from clinic_sync.dashboard.channels import ChannelSyncClient
from clinic_sync.dashboard.models import Trend
from clinic_sync.websocket.events import CommandType


def point(second: int, value: float) -> dict:
    return {"timestamp": f"2024-03-01T09:00:{second:02d}Z", "value": value}


@pytest.fixture
def channels(connection, settings, monotonic):
    return ChannelSyncClient(connection, settings, clock=monotonic)


class TestSubscriptions:
    """Test suite for subscribe and unsubscribe."""

    def test_subscribe_is_idempotent(self, channels, connection):
        first = channels.subscribe(["chart:revenue", "counter:patients"])
        second = channels.subscribe(["chart:revenue"])

        assert first == ["revenue", "patients"]
        assert second == []
        assert connection.sent_of(CommandType.SUBSCRIBE) == [
            {"channels": ["chart:revenue", "counter:patients"]}
        ]

    def test_empty_subscribe_sends_nothing(self, channels, connection):
        assert channels.subscribe([]) == []
        assert connection.sent == []

    def test_subscribe_while_offline_is_replayed(self, channels, connection):
        connection.go_offline()
        channels.subscribe(["table:appointments"])
        assert connection.sent == []

        connection.go_online()

        assert connection.sent_of(CommandType.SUBSCRIBE) == [{"channels": ["table:appointments"]}]

    def test_unsubscribe_drops_cache_and_ignores_later_messages(self, channels, connection):
        channels.subscribe(["counter:patients"])
        connection.deliver("counter:patients", {"value": 4}, kind="snapshot", seq=0)

        removed = channels.unsubscribe(["counter:patients"])
        connection.deliver("counter:patients", {"value": 9}, kind="snapshot", seq=0)

        assert removed == ["patients"]
        assert "patients" not in channels.counters
        assert connection.sent_of(CommandType.UNSUBSCRIBE) == [{"channels": ["counter:patients"]}]

    def test_kind_mismatch_is_ignored(self, channels, connection):
        channels.subscribe(["chart:revenue"])

        connection.deliver("counter:revenue", {"value": 1}, kind="snapshot", seq=0)

        assert channels.counters == {}


class TestSequencing:
    """Test suite for snapshot/delta sequencing."""

    def test_deltas_apply_in_order(self, channels, connection):
        channels.subscribe(["counter:patients"])
        connection.deliver("counter:patients", {"value": 10}, kind="snapshot", seq=0)

        connection.deliver("counter:patients", {"value": 11}, seq=1)
        connection.deliver("counter:patients", {"value": 13}, seq=2)

        counter = channels.counters["patients"]
        assert counter.value == 13
        assert counter.previous_value == 11
        assert counter.trend == Trend.INCREASE
        assert channels.sequences["counter:patients"] == 2

    def test_redelivered_delta_is_ignored(self, channels, connection):
        channels.subscribe(["table:appointments"])
        connection.deliver("table:appointments", {"rows": []}, kind="snapshot", seq=0)
        delta = {"upserts": [{"id": "a1", "data": {"patient": "Kim"}}], "removals": []}

        connection.deliver("table:appointments", delta, seq=1)
        before = channels.tables["appointments"].to_dict()
        connection.deliver("table:appointments", delta, seq=1)

        assert channels.tables["appointments"].to_dict() == before
        assert len(channels.tables["appointments"].rows) == 1

    def test_gap_requests_snapshot_instead_of_patching(self, channels, connection):
        # Arrange
        channels.subscribe(["chart:revenue"])
        connection.deliver("chart:revenue", {"points": [point(0, 1)]}, kind="snapshot", seq=0)
        connection.deliver("chart:revenue", {"points": [point(1, 2)]}, seq=1)
        after_first = channels.charts["revenue"].to_dict()

        # Act: seq 3 arrives before seq 2
        connection.deliver("chart:revenue", {"points": [point(3, 4)]}, seq=3)
        connection.deliver("chart:revenue", {"points": [point(2, 3)]}, seq=2)

        # Assert
        assert connection.sent_of(CommandType.SNAPSHOT_REQUEST) == [{"channel": "chart:revenue"}]
        assert channels.charts["revenue"].to_dict() == after_first
        assert "chart:revenue" in channels.awaiting_snapshot

        fresh = {"points": [point(0, 1), point(1, 2), point(2, 3), point(3, 4)]}
        connection.deliver("chart:revenue", fresh, kind="snapshot", seq=3)
        connection.deliver("chart:revenue", {"points": [point(4, 5)]}, seq=4)

        assert [p.value for p in channels.charts["revenue"].points] == [1, 2, 3, 4, 5]
        assert channels.awaiting_snapshot == set()

    def test_delta_before_snapshot_requests_snapshot(self, channels, connection):
        channels.subscribe(["counter:patients"])

        connection.deliver("counter:patients", {"value": 3}, seq=5)

        assert channels.counters == {}
        assert connection.sent_of(CommandType.SNAPSHOT_REQUEST) == [{"channel": "counter:patients"}]

    def test_disconnect_waits_for_fresh_snapshot(self, channels, connection):
        channels.subscribe(["counter:patients"])
        connection.deliver("counter:patients", {"value": 1}, kind="snapshot", seq=0)

        connection.go_offline()
        connection.go_online()
        connection.deliver("counter:patients", {"value": 2}, seq=1)

        assert channels.counters["patients"].value == 1

        connection.deliver("counter:patients", {"value": 7}, kind="snapshot", seq=6)
        connection.deliver("counter:patients", {"value": 8}, seq=7)

        assert channels.counters["patients"].value == 8

    def test_malformed_payload_sets_error_and_keeps_state(self, channels, connection):
        channels.subscribe(["counter:patients"])
        connection.deliver("counter:patients", {"value": 5}, kind="snapshot", seq=0)

        connection.deliver("counter:patients", {"value": "many"}, seq=1)

        assert channels.counters["patients"].value == 5
        assert channels.sequences["counter:patients"] == 0
        assert "counter:patients" in channels.error

        connection.deliver("counter:patients", {"value": 6}, seq=1)
        assert channels.error is None
        assert channels.counters["patients"].value == 6


class TestChannelState:
    """Test suite for typed channel caches."""

    def test_chart_points_are_ordered_and_bounded(self, channels, connection, settings):
        settings.chart_max_points = 3
        channels.subscribe(["revenue"])
        connection.deliver("chart:revenue", {"points": [point(5, 5), point(1, 1)]}, kind="snapshot", seq=0)

        connection.deliver("chart:revenue", {"points": [point(3, 3), point(7, 7)]}, seq=1)

        assert [p.value for p in channels.charts["revenue"].points] == [3, 5, 7]

    def test_large_unordered_batch_is_sorted(self, channels, connection):
        channels.subscribe(["chart:revenue"])
        evens = [point(s, s) for s in range(58, -1, -2)]
        odds = [point(s, s) for s in range(1, 60, 2)]

        connection.deliver("chart:revenue", {"points": evens}, kind="snapshot", seq=0)
        connection.deliver("chart:revenue", {"points": odds[::-1]}, seq=1)

        assert [p.value for p in channels.charts["revenue"].points] == list(range(60))

    def test_chart_retention_drops_old_points(self, channels, connection, settings):
        settings.chart_retention_seconds = 10
        channels.subscribe(["chart:revenue"])

        connection.deliver("chart:revenue", {"points": [point(0, 1), point(30, 2), point(35, 3)]}, kind="snapshot", seq=0)

        assert [p.value for p in channels.charts["revenue"].points] == [2, 3]

    def test_single_point_delta(self, channels, connection):
        channels.subscribe(["chart:revenue"])
        connection.deliver("chart:revenue", {"points": []}, kind="snapshot", seq=0)

        connection.deliver("chart:revenue", point(1, 42), seq=1)

        assert channels.charts["revenue"].points[0].value == 42

    def test_table_upserts_keep_position_and_removals_apply(self, channels, connection, settings):
        settings.table_max_rows = 3
        channels.subscribe(["table:appointments"])
        rows = [{"id": "a", "data": {"n": 1}}, {"id": "b", "data": {"n": 2}}]
        connection.deliver("table:appointments", {"columns": [{"key": "n"}], "rows": rows}, kind="snapshot", seq=0)

        connection.deliver("table:appointments", {
            "upserts": [{"id": "a", "data": {"n": 10}}, {"id": "c", "data": {"n": 3}}, {"id": "d", "data": {"n": 4}}],
            "removals": ["b"],
        }, seq=1)

        table = channels.tables["appointments"]
        assert [r.id for r in table.rows] == ["a", "c", "d"]
        assert table.get("a").data == {"n": 10}
        assert table.columns == [{"key": "n"}]

    def test_counter_trend_and_change(self, channels, connection):
        channels.subscribe(["counter:waiting"])
        connection.deliver("counter:waiting", {"value": 8, "previous_value": 8}, kind="snapshot", seq=0)
        assert channels.counters["waiting"].trend == Trend.NEUTRAL

        connection.deliver("counter:waiting", {"value": 5}, seq=1)

        counter = channels.counters["waiting"]
        assert counter.change == -3
        assert counter.trend == Trend.DECREASE

    def test_staleness_tracks_last_apply(self, channels, connection, monotonic, settings):
        channels.subscribe(["counter:patients"])
        assert channels.is_stale("patients")

        connection.deliver("counter:patients", {"value": 1}, kind="snapshot", seq=0)
        monotonic.advance(settings.stale_after - 1)
        assert not channels.is_stale("counter:patients")

        monotonic.advance(2)
        assert channels.is_stale("patients")
        assert channels.staleness("patients") == pytest.approx(settings.stale_after + 1)
