# =============================================================================
# hanyu_sync/offline/sync_engine.py
# Sync Orchestrator: Triggers, Step Ordering and Failure Isolation
# =============================================================================
"""
SyncOrchestrator - reconciles local state with the backend on app events.

Features:
- Triggers: connectivity regained, app foregrounded, view mounted
- Fixed step order, each step isolated from the others' failures:
    1. drain the vocabulary upsert queue
    2. flush pending study minutes
    3. re-push lesson completions the backend is missing
    4. refresh statistics and the 7-day chart
- Overlapping triggers are coalesced (the late one reports skipped)
- Owns the time aggregator and the foreground minute ticker
- Sync status tracking and event callbacks

There is no distributed transaction: idempotent upserts, a commutative
minutes procedure and max-wins merges make repeated runs safe.
"""

from __future__ import annotations
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from hanyu_sync.config import SyncSettings, load_settings
from hanyu_sync.data.supabase_client import RemoteStore
from hanyu_sync.errors import ErrorContext
from hanyu_sync.logging import get_logger
from hanyu_sync.services.base_service import ServiceResult

from .background import BackgroundTaskRunner
from .cache_manager import CacheManager
from .connection_manager import ConnectionManager, ConnectionState, ConnectionStatus
from .local_store import LocalKVStore
from .progress_ledger import ProgressLedger
from .progress_stats import ProgressStatsService
from .time_tracker import MinuteTicker, TimeSpentAggregator
from .vocab_tracker import VocabTracker

logger = get_logger(__name__)


class SyncTrigger(Enum):
    """Why a sync run started."""
    CONNECTIVITY_REGAINED = "connectivity_regained"
    FOREGROUND = "foreground"
    MOUNT = "mount"
    MANUAL = "manual"


class StepStatus(Enum):
    OK = "ok"
    FAILED = "failed"


@dataclass
class StepResult:
    name: str
    status: StepStatus
    data: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is StepStatus.OK


@dataclass
class SyncReport:
    """Outcome of one sync run."""
    trigger: SyncTrigger
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    steps: List[StepResult] = field(default_factory=list)
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return not self.skipped and all(step.ok for step in self.steps)

    def step(self, name: str) -> Optional[StepResult]:
        for step in self.steps:
            if step.name == name:
                return step
        return None


@dataclass
class SyncState:
    """Current sync state."""
    is_syncing: bool = False
    last_sync: Optional[datetime] = None
    last_sync_success: Optional[datetime] = None
    last_report: Optional[SyncReport] = None
    runs: int = 0
    skipped_runs: int = 0


class SyncOrchestrator:
    """
    Wires the sync components together and runs reconciliation.

    Usage:
        orchestrator = get_sync_orchestrator()
        orchestrator.on_mount()
        aggregator = orchestrator.time_tracker
        ...
        orchestrator.on_background()

    Components not passed in are built from store, remote and settings.
    """

    STEP_VOCAB_QUEUE = "vocab_queue"
    STEP_TIME_FLUSH = "time_flush"
    STEP_COMPLETIONS = "completions"
    STEP_STATS = "stats"

    def __init__(
        self,
        store: LocalKVStore,
        remote: RemoteStore,
        settings: Optional[SyncSettings] = None,
        runner: Optional[BackgroundTaskRunner] = None,
        connection_manager: Optional[ConnectionManager] = None,
        today: Optional[Callable[[], date]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.remote = remote
        self.settings = settings or SyncSettings()
        self.runner = runner or BackgroundTaskRunner()
        self.connection_manager = connection_manager

        self.vocab = VocabTracker(store, remote, self.settings, clock=clock)
        self._aggregator = TimeSpentAggregator(store, remote, self.settings, today=today)
        self.stats = ProgressStatsService(store, remote, self._aggregator, self.vocab, self.settings)
        self.ledger = ProgressLedger(
            store,
            remote,
            self.runner,
            self.settings,
            vocab_tracker=self.vocab,
            on_completed=self.stats.refresh,
            clock=clock,
        )
        self.cache = CacheManager(store, remote, self.runner, self.settings)
        self.ticker = MinuteTicker(self._aggregator, self.settings.minute_interval_seconds)

        self._state = SyncState()
        self._run_lock = threading.Lock()
        self._callbacks: List[Callable[[SyncState], None]] = []
        self._initialized = False

    @property
    def time_tracker(self) -> TimeSpentAggregator:
        """The single aggregator every caller should add minutes through."""
        return self._aggregator

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_syncing(self) -> bool:
        return self._state.is_syncing

    def initialize(self) -> SyncOrchestrator:
        """Subscribe to connectivity changes."""
        if self._initialized:
            return self
        if self.connection_manager is not None:
            self.connection_manager.register_callback(self._on_connection_change)
        self._initialized = True
        logger.info("SyncOrchestrator initialized")
        return self

    # =========================================================================
    # TRIGGERS
    # =========================================================================

    def _on_connection_change(self, state: ConnectionState) -> None:
        if state.status == ConnectionStatus.ONLINE:
            logger.info("Connection restored, triggering sync")
            self.sync_in_background(SyncTrigger.CONNECTIVITY_REGAINED)

    def on_mount(self) -> Future:
        return self.sync_in_background(SyncTrigger.MOUNT)

    def on_foreground(self) -> Future:
        """App came to the foreground: count minutes again and reconcile."""
        self.ticker.start()
        return self.sync_in_background(SyncTrigger.FOREGROUND)

    def on_background(self) -> Future:
        """App left the foreground: stop counting and try to send what was counted."""
        self.ticker.stop()
        return self.runner.submit("flush minutes on background", self._aggregator.flush_pending)

    def sync_in_background(self, trigger: SyncTrigger) -> Future:
        return self.runner.submit(f"sync ({trigger.value})", self.run_sync, trigger)

    # =========================================================================
    # RUN
    # =========================================================================

    def steps(self) -> List[Tuple[str, Callable[[], Any]]]:
        return [
            (self.STEP_VOCAB_QUEUE, self.vocab.sync_pending_vocab_upserts),
            (self.STEP_TIME_FLUSH, self._aggregator.flush_pending),
            (self.STEP_COMPLETIONS, self.ledger.reconcile_completions),
            (self.STEP_STATS, self.stats.refresh),
        ]

    def run_sync(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> SyncReport:
        """
        Run every step in order.

        A failing step is logged and reported; the next step runs anyway.
        If a run is already in progress this one is skipped.
        """
        if not self._run_lock.acquire(blocking=False):
            logger.debug(f"Sync already running, {trigger.value} trigger coalesced")
            self._state.skipped_runs += 1
            return SyncReport(trigger=trigger, finished_at=datetime.now(), skipped=True)

        report = SyncReport(trigger=trigger)
        try:
            self._state.is_syncing = True
            self._state.last_sync = report.started_at
            self._notify_callbacks()

            for name, func in self.steps():
                report.steps.append(self._run_step(name, func))

            report.finished_at = datetime.now()
            self._state.runs += 1
            self._state.last_report = report
            if report.ok:
                self._state.last_sync_success = report.finished_at

            failed = [s.name for s in report.steps if not s.ok]
            if failed:
                logger.info(f"Sync ({trigger.value}) finished with failed steps: {', '.join(failed)}")
            else:
                logger.info(f"Sync ({trigger.value}) complete")
            return report
        finally:
            self._state.is_syncing = False
            self._run_lock.release()
            self._notify_callbacks()

    def _run_step(self, name: str, func: Callable[[], Any]) -> StepResult:
        with ErrorContext(f"Sync step '{name}'") as ctx:
            result = func()
        if ctx.error is not None:
            return StepResult(name, StepStatus.FAILED, error=str(ctx.error))
        if isinstance(result, ServiceResult):
            status = StepStatus.OK if result.success else StepStatus.FAILED
            return StepResult(name, status, data=result.data, error=result.error)
        return StepResult(name, StepStatus.OK, data=result)

    # =========================================================================
    # CALLBACKS / STATUS
    # =========================================================================

    def register_callback(self, callback: Callable[[SyncState], None]) -> None:
        """Register a callback for sync state changes."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[SyncState], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify_callbacks(self) -> None:
        for callback in list(self._callbacks):
            try:
                callback(self._state)
            except Exception as e:
                logger.error(f"Error in sync callback: {e}")

    def get_status_display(self) -> Dict[str, Any]:
        report = self._state.last_report
        return {
            "is_syncing": self._state.is_syncing,
            "last_sync": self._state.last_sync.isoformat() if self._state.last_sync else None,
            "last_success": self._state.last_sync_success.isoformat() if self._state.last_sync_success else None,
            "pending_minutes": self._aggregator.pending_minutes,
            "queued_vocab_batches": len(self.vocab.get_pending_queue()),
            "last_steps": {s.name: s.status.value for s in report.steps} if report else {},
        }

    def shutdown(self, wait: bool = True) -> None:
        self.ticker.stop()
        if self.connection_manager is not None:
            self.connection_manager.unregister_callback(self._on_connection_change)
        self.runner.shutdown(wait_for_tasks=wait)
        logger.info("SyncOrchestrator stopped")


# Singleton accessor
_sync_orchestrator: Optional[SyncOrchestrator] = None
_orchestrator_lock = threading.Lock()


def build_sync_orchestrator(
    settings: Optional[SyncSettings] = None,
    store: Optional[LocalKVStore] = None,
    remote: Optional[RemoteStore] = None,
    connection_manager: Optional[ConnectionManager] = None,
) -> SyncOrchestrator:
    """Create an initialized orchestrator, defaulting to the global store, client and monitor."""
    settings = settings or load_settings()
    if store is None:
        from .local_store import get_local_store
        store = get_local_store(settings.db_path)
    if remote is None:
        from hanyu_sync.data.supabase_client import get_remote_store
        remote = get_remote_store(settings)
    if connection_manager is None:
        from .connection_manager import get_connection_manager
        connection_manager = get_connection_manager(settings)
    return SyncOrchestrator(store, remote, settings, connection_manager=connection_manager).initialize()


def get_sync_orchestrator(settings: Optional[SyncSettings] = None) -> SyncOrchestrator:
    """Get the global SyncOrchestrator instance."""
    global _sync_orchestrator
    if _sync_orchestrator is None:
        with _orchestrator_lock:
            if _sync_orchestrator is None:
                _sync_orchestrator = build_sync_orchestrator(settings)
    return _sync_orchestrator
