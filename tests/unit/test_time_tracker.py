# =============================================================================
# tests/unit/test_time_tracker.py
# Unit Tests for TimeSpentAggregator and the 7-day chart
# =============================================================================

from datetime import date, timedelta

import pandas as pd
import pytest

from hanyu_sync.offline.local_store import (
    TIME_BY_DAY_KEY,
    TIME_PENDING_BY_DAY_KEY,
    TIME_PENDING_KEY,
    TIME_TOTAL_KEY,
)
from hanyu_sync.offline.time_tracker import (
    MinuteTicker,
    TimeSpentAggregator,
    day_window,
    last7_to_day_map,
    merge_day_series,
    prune_day_map,
    summary_total_minutes,
)

TODAY = date(2026, 10, 19)
YESTERDAY = (TODAY - timedelta(days=1)).isoformat()


@pytest.fixture
def aggregator(kv_store, remote, settings, today):
    return TimeSpentAggregator(kv_store, remote, settings, today=today)


class TestChartMerge:
    """Max-wins merge of server and local days"""

    def test_window_ends_today(self):
        window = day_window(TODAY, 7)
        assert len(window) == 7
        assert window[-1] == pd.Timestamp(TODAY)
        assert window[0] == pd.Timestamp(TODAY - timedelta(days=6))

    def test_max_wins_per_day(self):
        server = {"2026-10-18": 10, "2026-10-19": 3}
        local = {"2026-10-19": 5, "2026-10-13": 2, "2026-10-01": 99}

        chart = merge_day_series(server, local, today=TODAY)

        assert chart.days[0] == "2026-10-13"
        assert chart.days[-1] == "2026-10-19"
        assert chart.minutes == [2, 0, 0, 0, 0, 10, 5]
        assert chart.labels[-1] == "Mon"

    def test_merge_is_commutative_and_idempotent(self):
        a = {"2026-10-17": 4, "2026-10-19": 1}
        b = {"2026-10-17": 2, "2026-10-18": 6}

        ab = merge_day_series(a, b, today=TODAY)
        ba = merge_day_series(b, a, today=TODAY)
        aa = merge_day_series(a, a, today=TODAY)

        assert ab.minutes == ba.minutes
        assert aa.as_dict() == merge_day_series(a, None, today=TODAY).as_dict()

    def test_list_input(self):
        chart = merge_day_series([1, 2, 3, 4, 5, 6, 7], [7, 6, 5, 4, 3, 2, 1], today=TODAY)
        assert chart.minutes == [7, 6, 5, 4, 5, 6, 7]

    def test_wrong_length_list_rejected(self):
        with pytest.raises(ValueError):
            merge_day_series([1, 2, 3], None, today=TODAY)

    def test_both_missing_is_zero(self):
        chart = merge_day_series(None, {}, today=TODAY)
        assert chart.minutes == [0] * 7
        assert list(chart.to_frame().columns) == ["day", "label", "minutes"]

    def test_last7_rows(self):
        rows = [
            {"day": "2026-10-18", "minutes": 3},
            {"day": "2026-10-18T00:00:00", "minutes": "2"},
            {"day": None, "minutes": 5},
            {"day": "2026-10-19", "minutes": "x"},
        ]
        assert last7_to_day_map(rows) == {"2026-10-18": 5}

    def test_summary_total(self):
        assert summary_total_minutes([{"progress": {"total_minutes": "42"}}]) == 42
        assert summary_total_minutes([]) is None
        assert summary_total_minutes({"progress": {}}) is None


class TestAccrual:
    """Optimistic local counting"""

    def test_offline_minutes_stay_pending(self, aggregator, remote, kv_store):
        remote.offline = True

        aggregator.add_minutes(1)
        aggregator.add_minutes(2)

        assert aggregator.pending_minutes == 3
        assert aggregator.confirmed_total == 0
        assert aggregator.displayed_total == 3
        assert kv_store.get_json(TIME_BY_DAY_KEY) == {TODAY.isoformat(): 3}
        assert aggregator.pending_by_day() == {TODAY.isoformat(): 3}
        assert aggregator.chart().minutes[-1] == 3

    def test_non_positive_minutes_ignored(self, aggregator):
        aggregator.add_minutes(0)
        aggregator.add_minutes(-3)
        assert aggregator.pending_minutes == 0

    def test_legacy_pending_credited_to_today(self, aggregator, kv_store):
        kv_store.set_json(TIME_PENDING_KEY, 4)
        assert aggregator.pending_by_day() == {TODAY.isoformat(): 4}

    def test_day_buckets_outside_chart_window_pruned(self, aggregator, remote, kv_store):
        remote.offline = True
        old_day = (TODAY - timedelta(days=30)).isoformat()
        stale_pending_day = (TODAY - timedelta(days=10)).isoformat()
        window_start = (TODAY - timedelta(days=6)).isoformat()
        kv_store.set_json(TIME_BY_DAY_KEY, {old_day: 12, stale_pending_day: 4, window_start: 2})
        kv_store.set_json(TIME_PENDING_BY_DAY_KEY, {stale_pending_day: 4})
        kv_store.set_json(TIME_PENDING_KEY, 4)

        aggregator.add_minutes(1)

        # Still-pending days survive until the backend accepts them
        assert kv_store.get_json(TIME_BY_DAY_KEY) == {
            stale_pending_day: 4,
            window_start: 2,
            TODAY.isoformat(): 1,
        }
        assert aggregator.pending_by_day() == {stale_pending_day: 4, TODAY.isoformat(): 1}

    def test_prune_day_map(self):
        day_map = {"2026-10-12": 3, "2026-10-13": 1, "2026-10-19": 2}

        assert prune_day_map(day_map, TODAY) == {"2026-10-13": 1, "2026-10-19": 2}
        assert prune_day_map(day_map, TODAY, keep=("2026-10-12",)) == day_map

    def test_chart_point_bumped_after_server_overlay(self, aggregator, remote):
        remote.offline = True
        aggregator.apply_server_summary(10, {TODAY.isoformat(): 5})

        aggregator.add_minutes(1)

        assert aggregator.chart().minutes[-1] == 6
        assert aggregator.confirmed_total == 10
        assert aggregator.displayed_total == 11


class TestFlush:
    """Sending pending minutes"""

    def test_flush_moves_pending_to_confirmed(self, aggregator, remote):
        aggregator.add_minutes(3, flush=False)

        result = aggregator.flush_pending()

        assert result.success
        assert result.data["flushed"] == 3
        assert remote.count_calls("rpc", "add_time_spent") == 1
        assert aggregator.pending_minutes == 0
        assert aggregator.confirmed_total == 3
        assert aggregator.displayed_total == 3

    def test_add_minutes_flushes_when_online(self, aggregator, remote):
        aggregator.add_minutes(1)
        aggregator.add_minutes(1)

        assert aggregator.pending_minutes == 0
        assert sum(r["minutes"] for r in remote.rows("time_spent")) == 2

    def test_failed_day_stays_pending(self, kv_store, remote, settings):
        current = {"day": TODAY - timedelta(days=1)}
        aggregator = TimeSpentAggregator(kv_store, remote, settings, today=lambda: current["day"])
        aggregator.add_minutes(2, flush=False)
        current["day"] = TODAY
        aggregator.add_minutes(3, flush=False)
        remote.fail("add_time_spent", times=1)

        result = aggregator.flush_pending()

        assert not result.success
        assert result.data["failed"] == [YESTERDAY]
        assert result.data["days"] == {TODAY.isoformat(): 3}
        assert aggregator.pending_by_day() == {YESTERDAY: 2}
        assert aggregator.confirmed_total == 3
        assert aggregator.displayed_total == 5

        assert aggregator.flush_pending().success
        assert aggregator.pending_minutes == 0
        assert aggregator.displayed_total == 5

    def test_summary_failure_keeps_local_confirmed_sum(self, aggregator, remote, kv_store):
        kv_store.set_json(TIME_TOTAL_KEY, 10)
        aggregator.add_minutes(2, flush=False)
        remote.fail("get_progress_summary")

        assert aggregator.flush_pending().success
        assert aggregator.confirmed_total == 12

    def test_flush_in_progress_is_skipped(self, aggregator, remote):
        aggregator.add_minutes(2, flush=False)

        with aggregator._flush_lock:
            result = aggregator.flush_pending()

        assert result.metadata == {"skipped": True}
        assert remote.count_calls("rpc", "add_time_spent") == 0
        assert aggregator.pending_minutes == 2

    def test_no_user_keeps_pending(self, aggregator, remote):
        remote.user_id = None
        aggregator.add_minutes(2)

        assert aggregator.pending_minutes == 2
        assert remote.count_calls("rpc", "add_time_spent") == 0

    def test_nothing_pending(self, aggregator, remote):
        assert aggregator.flush_pending().data["flushed"] == 0
        assert remote.calls == []


class TestMinuteTicker:
    """Foreground timer"""

    def test_tick_adds_a_minute(self, aggregator, remote):
        remote.offline = True
        ticker = MinuteTicker(aggregator, interval_seconds=60)

        ticker.tick()
        ticker.tick()

        assert ticker.ticks == 2
        assert aggregator.pending_minutes == 2

    def test_start_stop(self, aggregator):
        ticker = MinuteTicker(aggregator, interval_seconds=60)

        ticker.start()
        assert ticker.running
        ticker.stop()

        assert not ticker.running
        assert ticker.ticks == 0
