# =============================================================================
# hanyu_sync/offline/time_tracker.py
# Study-Time Aggregation with Offline Pending Minutes
# =============================================================================
"""
TimeSpentAggregator - counts study minutes offline and reconciles them.

Features:
- Optimistic local accrual: pending minutes, day buckets and chart in one write
- Per-day flush through the commutative add_time_spent procedure
- Confirmed total refreshed from get_progress_summary after a flush
- 7-day chart built with pandas, max-wins merge of server and local days
- MinuteTicker thread adding one minute per interval while foregrounded

Invariant: displayed total == confirmed total + pending minutes. Pending
minutes only go down when the backend has accepted them.
"""

from __future__ import annotations
import threading
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import pandas as pd

from hanyu_sync.config import SyncSettings
from hanyu_sync.data.supabase_client import RemoteStore
from hanyu_sync.errors import HanyuSyncError, handle_error
from hanyu_sync.logging import get_logger
from hanyu_sync.services.base_service import BaseService, ServiceResult

from .local_store import (
    TIME_BY_DAY_KEY,
    TIME_PENDING_BY_DAY_KEY,
    TIME_PENDING_KEY,
    TIME_TOTAL_KEY,
    LocalKVStore,
)

logger = get_logger(__name__)

DayValues = Union[Mapping[str, Any], Sequence[Any], None]


# =============================================================================
# CHART WINDOW
# =============================================================================

@dataclass
class ChartSeries:
    """Minutes per day for a window ending today, oldest first."""
    days: List[str] = field(default_factory=list)
    labels: List[str] = field(default_factory=list)
    minutes: List[int] = field(default_factory=list)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({"day": self.days, "label": self.labels, "minutes": self.minutes})

    def as_dict(self) -> Dict[str, int]:
        return dict(zip(self.days, self.minutes))


def day_window(today: date, days: int = 7) -> pd.DatetimeIndex:
    return pd.date_range(end=pd.Timestamp(today), periods=days, freq="D")


def _to_day_series(values: DayValues, window: pd.DatetimeIndex) -> pd.Series:
    """Align a {iso_day: minutes} map or a window-length list to the window."""
    if values is None:
        return pd.Series(0.0, index=window)

    if isinstance(values, Mapping):
        if not values:
            return pd.Series(0.0, index=window)
        index = pd.to_datetime([str(k)[:10] for k in values.keys()], errors="coerce")
        series = pd.Series(pd.to_numeric(list(values.values()), errors="coerce"), index=index)
        series = series[series.index.notna()].fillna(0)
        series = series.groupby(level=0).sum()
        return series.reindex(window, fill_value=0)

    values = list(values)
    if len(values) != len(window):
        raise ValueError(f"Expected {len(window)} day values, got {len(values)}")
    return pd.Series(pd.to_numeric(values, errors="coerce"), index=window).fillna(0)


def merge_day_series(
    server: DayValues,
    local: DayValues,
    today: Optional[date] = None,
    days: int = 7,
) -> ChartSeries:
    """
    Max-wins merge of server and local minutes for the window ending today.

    Either side may be a {iso_day: minutes} map or a list ordered oldest
    first. Days missing on both sides are 0.
    """
    window = day_window(today or date.today(), days)
    frame = pd.concat(
        [_to_day_series(server, window), _to_day_series(local, window)],
        axis=1,
        keys=["server", "local"],
    )
    merged = frame.max(axis=1).clip(lower=0).round().astype(int)
    return ChartSeries(
        days=[d.strftime("%Y-%m-%d") for d in window],
        labels=[d.strftime("%a") for d in window],
        minutes=merged.tolist(),
    )


def prune_day_map(
    day_map: Mapping[str, int],
    today: date,
    days: int = 7,
    keep: Sequence[str] = (),
) -> Dict[str, int]:
    """Drop days older than the chart window, except those listed in `keep`."""
    start = (today - timedelta(days=days - 1)).isoformat()
    return {day: minutes for day, minutes in day_map.items() if str(day)[:10] >= start or day in keep}


def last7_to_day_map(rows: Optional[Sequence[Mapping[str, Any]]]) -> Dict[str, int]:
    """Turn get_progress_summary's last7 rows ({day, minutes}) into a day map."""
    result: Dict[str, int] = {}
    for row in rows or []:
        day = row.get("day")
        if not day:
            continue
        key = str(day)[:10]
        try:
            result[key] = result.get(key, 0) + int(float(row.get("minutes") or 0))
        except (TypeError, ValueError):
            logger.debug(f"Skipping unreadable day row: {row}")
    return result


def _positive_day_map(value: Any) -> Dict[str, int]:
    if not isinstance(value, dict):
        return {}
    result = {}
    for day, minutes in value.items():
        try:
            minutes = int(minutes)
        except (TypeError, ValueError):
            continue
        if minutes > 0:
            result[str(day)] = minutes
    return result


# =============================================================================
# AGGREGATOR
# =============================================================================

class TimeSpentAggregator(BaseService):
    """
    Sole writer of the TIME_SPENT_* keys.

    Args:
        store: Local KV store
        remote: Remote store
        settings: Chart window size
        today: Returns the current local date (tests)
    """

    def __init__(
        self,
        store: LocalKVStore,
        remote: RemoteStore,
        settings: Optional[SyncSettings] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        super().__init__()
        self.store = store
        self.remote = remote
        self.settings = settings or SyncSettings()
        self.today = today or date.today
        self._lock = threading.RLock()
        self._flush_lock = threading.Lock()
        self._chart: Optional[ChartSeries] = None

    # ===== READS =====

    @property
    def pending_minutes(self) -> int:
        return int(self.store.get_number(TIME_PENDING_KEY, default=0))

    @property
    def confirmed_total(self) -> int:
        return int(self.store.get_number(TIME_TOTAL_KEY, default=0))

    @property
    def displayed_total(self) -> int:
        with self._lock:
            return self.confirmed_total + self.pending_minutes

    def local_day_map(self) -> Dict[str, int]:
        return _positive_day_map(self.store.get_json(TIME_BY_DAY_KEY, default={}, expected_type=dict))

    def pending_by_day(self) -> Dict[str, int]:
        """
        Pending minutes per day.

        Minutes counted by older installs (total only, no day split) are
        credited to today.
        """
        with self._lock:
            by_day = _positive_day_map(
                self.store.get_json(TIME_PENDING_BY_DAY_KEY, default={}, expected_type=dict)
            )
            unassigned = self.pending_minutes - sum(by_day.values())
            if unassigned > 0:
                today = self.today().isoformat()
                by_day[today] = by_day.get(today, 0) + unassigned
            return by_day

    def chart(self) -> ChartSeries:
        """Last merged chart, or the local days alone before any server refresh."""
        with self._lock:
            if self._chart is not None and self._chart.days and self._chart.days[-1] == self.today().isoformat():
                return ChartSeries(list(self._chart.days), list(self._chart.labels), list(self._chart.minutes))
            return merge_day_series(None, self.local_day_map(), self.today(), self.settings.chart_days)

    # ===== ACCRUAL =====

    def add_minutes(self, minutes: int = 1, flush: bool = True) -> int:
        """
        Count study minutes for today and try to send them.

        Returns:
            Pending minutes after the local write
        """
        minutes = int(minutes)
        if minutes <= 0:
            return self.pending_minutes

        current_day = self.today()
        today = current_day.isoformat()
        with self._lock, self.store.lock:
            pending_by_day = self.pending_by_day()
            pending_by_day[today] = pending_by_day.get(today, 0) + minutes
            day_map = prune_day_map(
                self.local_day_map(), current_day, self.settings.chart_days, keep=tuple(pending_by_day)
            )
            day_map[today] = day_map.get(today, 0) + minutes
            pending = self.pending_minutes + minutes
            self.store.set_json_many({
                TIME_PENDING_KEY: pending,
                TIME_PENDING_BY_DAY_KEY: pending_by_day,
                TIME_BY_DAY_KEY: day_map,
            })
            if self._chart is not None and self._chart.days and self._chart.days[-1] == today:
                self._chart.minutes[-1] += minutes

        self.logger.debug(f"Added {minutes} min, pending {pending}")
        if flush:
            self.flush_pending()
        return pending

    # ===== FLUSH =====

    def _confirm_day(self, day: str, minutes: int) -> None:
        """Move minutes of one day from pending to confirmed."""
        with self._lock, self.store.lock:
            pending_by_day = self.pending_by_day()
            left = pending_by_day.get(day, 0) - minutes
            if left > 0:
                pending_by_day[day] = left
            else:
                pending_by_day.pop(day, None)
            self.store.set_json_many({
                TIME_PENDING_KEY: max(0, self.pending_minutes - minutes),
                TIME_PENDING_BY_DAY_KEY: pending_by_day,
                TIME_TOTAL_KEY: self.confirmed_total + minutes,
            })

    def flush_pending(self) -> ServiceResult:
        """
        Send pending minutes, one add_time_spent call per day.

        A day that fails stays pending. A second caller during a flush
        returns immediately, so a minute is never sent twice.
        """
        if not self._flush_lock.acquire(blocking=False):
            return ServiceResult.ok({"flushed": 0}, metadata={"skipped": True})
        try:
            return self._flush()
        finally:
            self._flush_lock.release()

    def _flush(self) -> ServiceResult:
        snapshot = self.pending_by_day()
        if not snapshot:
            return ServiceResult.ok({"flushed": 0, "days": {}, "failed": []})

        try:
            user_id = self.remote.current_user_id()
        except HanyuSyncError as e:
            handle_error(e, context="Resolving user for time flush")
            user_id = None
        if not user_id:
            return ServiceResult.ok({"flushed": 0, "days": {}, "failed": sorted(snapshot)}, metadata={"skipped": True})

        flushed: Dict[str, int] = {}
        failed: List[str] = []
        for day in sorted(snapshot):
            minutes = snapshot[day]
            try:
                self.remote.rpc("add_time_spent", {"p_user": user_id, "p_day": day, "p_minutes": minutes})
            except HanyuSyncError as e:
                handle_error(e, context=f"Flushing {minutes} min for {day}")
                failed.append(day)
                continue
            self._confirm_day(day, minutes)
            flushed[day] = minutes

        if flushed:
            self.refresh_confirmed_total(user_id)
            self.logger.info(f"Flushed {sum(flushed.values())} pending minutes over {len(flushed)} days")

        data = {"flushed": sum(flushed.values()), "days": flushed, "failed": failed}
        if failed:
            return ServiceResult(
                success=False,
                data=data,
                error=f"{len(failed)} days still pending",
                error_code="REMOTE_001",
            )
        return ServiceResult.ok(data)

    def refresh_confirmed_total(self, user_id: str) -> Optional[int]:
        """Set the confirmed total from the server summary; keeps the local sum on failure."""
        try:
            summary = self.remote.rpc("get_progress_summary", {"p_user": user_id})
        except HanyuSyncError as e:
            handle_error(e, context="Refreshing confirmed minutes")
            return None
        total = summary_total_minutes(summary)
        if total is not None:
            self.set_confirmed_total(total)
        return total

    def set_confirmed_total(self, total: int) -> None:
        with self._lock:
            self.store.set_json(TIME_TOTAL_KEY, max(0, int(total)))

    # ===== SERVER OVERLAY =====

    def apply_server_summary(
        self,
        total_minutes: Optional[Any] = None,
        server_days: DayValues = None,
    ) -> ChartSeries:
        """Adopt the server total and rebuild the chart with the max-wins merge."""
        if total_minutes is not None:
            try:
                self.set_confirmed_total(int(float(total_minutes)))
            except (TypeError, ValueError):
                self.logger.warning(f"Ignoring unreadable server total: {total_minutes!r}")

        chart = merge_day_series(server_days, self.local_day_map(), self.today(), self.settings.chart_days)
        with self._lock:
            self._chart = chart
        return self.chart()


def summary_row(summary: Any) -> Optional[Dict[str, Any]]:
    """First row of a get_progress_summary response, or None."""
    if isinstance(summary, list):
        summary = summary[0] if summary else None
    return summary if isinstance(summary, dict) else None


def summary_total_minutes(summary: Any) -> Optional[int]:
    row = summary_row(summary)
    if not row:
        return None
    value = (row.get("progress") or {}).get("total_minutes")
    try:
        return int(float(value)) if value is not None else None
    except (TypeError, ValueError):
        return None


# =============================================================================
# FOREGROUND TIMER
# =============================================================================

class MinuteTicker:
    """
    Adds one minute to the aggregator per interval while running.

    Usage:
        ticker = MinuteTicker(aggregator, interval_seconds=60)
        ticker.start()     # app foregrounded
        ticker.stop()      # app backgrounded
    """

    def __init__(self, aggregator: TimeSpentAggregator, interval_seconds: float = 60.0):
        self.aggregator = aggregator
        self.interval_seconds = interval_seconds
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="MinuteTicker")
        self._thread.start()
        logger.debug("Minute ticker started")

    def stop(self, timeout: float = 5) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.debug("Minute ticker stopped")

    def tick(self) -> None:
        self.ticks += 1
        self.aggregator.add_minutes(1)

    def _loop(self) -> None:
        while not self._stop.wait(timeout=self.interval_seconds):
            try:
                self.tick()
            except Exception as e:
                handle_error(e, context="Minute tick")
