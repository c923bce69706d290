# =============================================================================
# hanyu_sync/offline/progress_stats.py
# Learner Statistics: Lessons, Chapters, Vocabulary and Study Time
# =============================================================================
"""
ProgressStatsService - the numbers on the progress screen.

Features:
- Server-side recount (update_user_progress_counts) before reading
- get_progress_summary for totals and the 7-day series
- Fallback to the time_spent and user_progress tables when the summary fails
- Vocabulary count from the local learned mirror
- Works offline from local state alone
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from hanyu_sync.config import SyncSettings
from hanyu_sync.data.supabase_client import RemoteStore
from hanyu_sync.errors import HanyuSyncError, handle_error
from hanyu_sync.services.base_service import BaseService, ServiceResult

from .lesson_keys import normalize_flag_map
from .local_store import COMPLETED_KEY, LocalKVStore
from .time_tracker import ChartSeries, TimeSpentAggregator, last7_to_day_map, summary_row

PROGRESS_COLUMNS = "lessons_completed, chapters_completed, vocab_count, total_minutes"


@dataclass
class ProgressSnapshot:
    lessons_completed: int = 0
    chapters_completed: int = 0
    vocab_count: int = 0
    total_minutes: int = 0
    pending_minutes: int = 0
    chart: ChartSeries = field(default_factory=ChartSeries)
    source: str = "local"       # summary | fallback | local

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lessons_completed": self.lessons_completed,
            "chapters_completed": self.chapters_completed,
            "vocab_count": self.vocab_count,
            "total_minutes": self.total_minutes,
            "pending_minutes": self.pending_minutes,
            "chart": self.chart.as_dict(),
            "source": self.source,
        }


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(float(value)) if value is not None else None
    except (TypeError, ValueError):
        return None


class ProgressStatsService(BaseService):
    """
    Reads learner statistics and feeds server time into the aggregator.

    Args:
        store: Local KV store
        remote: Remote store
        aggregator: Owner of the time keys
        vocab_tracker: Source of the learned-word count
        settings: Chart window size
    """

    def __init__(
        self,
        store: LocalKVStore,
        remote: RemoteStore,
        aggregator: TimeSpentAggregator,
        vocab_tracker: Any = None,
        settings: Optional[SyncSettings] = None,
    ):
        super().__init__()
        self.store = store
        self.remote = remote
        self.aggregator = aggregator
        self.vocab_tracker = vocab_tracker
        self.settings = settings or SyncSettings()
        self.last_snapshot: Optional[ProgressSnapshot] = None

    def _learned_count(self) -> int:
        if self.vocab_tracker is None:
            return 0
        return int(self.vocab_tracker.get_local_learned_count() or 0)

    def local_snapshot(self) -> ProgressSnapshot:
        """Statistics from local state only."""
        completed = normalize_flag_map(self.store.get_json(COMPLETED_KEY, default={}, expected_type=dict))
        previous = self.last_snapshot
        return ProgressSnapshot(
            lessons_completed=max(
                sum(1 for flag in completed.values() if flag),
                previous.lessons_completed if previous else 0,
            ),
            chapters_completed=previous.chapters_completed if previous else 0,
            vocab_count=self._learned_count() or (previous.vocab_count if previous else 0),
            total_minutes=self.aggregator.displayed_total,
            pending_minutes=self.aggregator.pending_minutes,
            chart=self.aggregator.chart(),
            source="local",
        )

    def refresh(self, user_id: Optional[str] = None) -> ServiceResult:
        """
        Recompute statistics from the remote store.

        Order: recount, user_progress read, summary. When the summary is
        missing or fails, time_spent and user_progress are read instead.
        The result always carries a snapshot, local if nothing was reachable.
        """
        with self.log_operation("Refreshing progress stats"):
            user_id = user_id or self.remote.current_user_id()
            if not user_id:
                self.last_snapshot = self.local_snapshot()
                return ServiceResult.ok(self.last_snapshot, metadata={"skipped": "no user"})

            errors: List[str] = []

            try:
                self.remote.rpc("update_user_progress_counts", {"p_user": user_id})
            except HanyuSyncError as e:
                handle_error(e, context="Recounting user progress")
                errors.append("update_user_progress_counts")

            progress_row = self._read_user_progress(user_id, errors)
            summary = self._read_summary(user_id, errors)

            if summary is not None:
                progress = summary.get("progress") or {}
                chart = self.aggregator.apply_server_summary(
                    progress.get("total_minutes"),
                    last7_to_day_map(summary.get("last7")),
                )
                source = "summary"
            else:
                progress = progress_row or {}
                day_map = self._read_time_spent(user_id, errors)
                chart = self.aggregator.apply_server_summary(progress.get("total_minutes"), day_map)
                source = "fallback" if (progress_row is not None or day_map is not None) else "local"

            snapshot = self._build_snapshot(progress, progress_row, chart, source)
            self.last_snapshot = snapshot

            if source == "local":
                return ServiceResult(
                    success=False,
                    data=snapshot,
                    error="Progress statistics unavailable remotely",
                    error_code="REMOTE_001",
                    metadata={"errors": errors},
                )
            return ServiceResult.ok(snapshot, metadata={"errors": errors})

    def _build_snapshot(
        self,
        progress: Dict[str, Any],
        progress_row: Optional[Dict[str, Any]],
        chart: ChartSeries,
        source: str,
    ) -> ProgressSnapshot:
        row = progress_row or {}
        local = self.local_snapshot() if source == "local" else None

        def pick(name: str, fallback: int) -> int:
            value = _int_or_none(progress.get(name))
            if value is None:
                value = _int_or_none(row.get(name))
            return fallback if value is None else value

        lessons = pick("lessons_completed", local.lessons_completed if local else 0)
        chapters = pick("chapters_completed", local.chapters_completed if local else 0)
        vocab = self._learned_count() or pick("vocab_count", local.vocab_count if local else 0)

        return ProgressSnapshot(
            lessons_completed=lessons,
            chapters_completed=chapters,
            vocab_count=vocab,
            total_minutes=self.aggregator.displayed_total,
            pending_minutes=self.aggregator.pending_minutes,
            chart=chart,
            source=source,
        )

    def _read_user_progress(self, user_id: str, errors: List[str]) -> Optional[Dict[str, Any]]:
        try:
            return self.remote.maybe_single("user_progress", columns=PROGRESS_COLUMNS, filters={"user_id": user_id})
        except HanyuSyncError as e:
            handle_error(e, context="Reading user_progress")
            errors.append("user_progress")
            return None

    def _read_summary(self, user_id: str, errors: List[str]) -> Optional[Dict[str, Any]]:
        try:
            return summary_row(self.remote.rpc("get_progress_summary", {"p_user": user_id}))
        except HanyuSyncError as e:
            handle_error(e, context="Reading progress summary")
            errors.append("get_progress_summary")
            return None

    def _read_time_spent(self, user_id: str, errors: List[str]) -> Optional[Dict[str, int]]:
        first_day = self.aggregator.today() - timedelta(days=self.settings.chart_days - 1)
        try:
            rows = self.remote.select(
                "time_spent",
                columns="day, minutes",
                filters={"user_id": user_id},
                gte={"day": first_day.isoformat()},
                order_by="day",
            )
        except HanyuSyncError as e:
            handle_error(e, context="Reading time_spent")
            errors.append("time_spent")
            return None
        return last7_to_day_map(rows)
