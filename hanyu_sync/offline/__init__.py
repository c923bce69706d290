# =============================================================================
# hanyu_sync/offline/__init__.py
# Offline-First Progress and Cache Reconciliation
# =============================================================================
"""
Offline-First Sync Core

Lessons, vocabulary and progress are read from and written to the device
first; the backend is reconciled whenever it can be reached.

Architecture:
------------
┌─────────────────────────────────────────────────────────────────┐
│                      OFFLINE-FIRST SYNC CORE                     │
├─────────────────────────────────────────────────────────────────┤
│                                                                  │
│   ┌──────────────┐  ┌───────────────┐  ┌──────────────────┐     │
│   │ CacheManager │  │ProgressLedger │  │ TimeSpent        │     │
│   │ (lessons)    │  │ (pages, done) │  │ Aggregator       │     │
│   └──────┬───────┘  └───────┬───────┘  └────────┬─────────┘     │
│          │          ┌───────┴───────┐           │               │
│          │          │ VocabTracker  │           │               │
│          │          └───────┬───────┘           │               │
│          ▼                  ▼                   ▼               │
│   ┌─────────────────┐               ┌──────────────────┐        │
│   │  LocalKVStore   │               │   RemoteStore    │        │
│   │   (SQLite)      │               │   (Supabase)     │        │
│   └─────────────────┘               └──────────────────┘        │
│                            ▲                                     │
│   ┌──────────────────┐     │     ┌──────────────────┐           │
│   │ ConnectionManager├─────┴─────┤ SyncOrchestrator │           │
│   └──────────────────┘           └──────────────────┘           │
└─────────────────────────────────────────────────────────────────┘

Usage:
------
from hanyu_sync.offline import get_sync_orchestrator

orchestrator = get_sync_orchestrator()
orchestrator.on_foreground()

decision = orchestrator.ledger.open_lesson("1_3")
transition = orchestrator.ledger.advance(decision.lesson, 7)
if transition.navigation is NavigationTarget.LESSON_LIST:
    ...
"""

from hanyu_sync.offline.background import (
    BackgroundTaskRunner,
    ViewScope,
)

from hanyu_sync.offline.lesson_keys import (
    LessonRef,
    pack_lesson_id,
    unpack_lesson_id,
    resolve_lesson_ref,
    lookup_flag,
)

from hanyu_sync.offline.local_store import (
    LocalKVStore,
    get_local_store,
)

from hanyu_sync.offline.cache_manager import (
    CacheManager,
    CacheRead,
    build_lesson_pages,
    group_catalog_by_chapter,
)

from hanyu_sync.offline.progress_ledger import (
    ProgressLedger,
    ResumeAction,
    ResumeDecision,
    NavigationTarget,
    PageTransition,
    AnswerCheck,
)

from hanyu_sync.offline.vocab_tracker import (
    VocabTracker,
)

from hanyu_sync.offline.time_tracker import (
    TimeSpentAggregator,
    MinuteTicker,
    ChartSeries,
    merge_day_series,
)

from hanyu_sync.offline.progress_stats import (
    ProgressStatsService,
    ProgressSnapshot,
)

from hanyu_sync.offline.connection_manager import (
    ConnectionManager,
    ConnectionStatus,
    get_connection_manager,
)

from hanyu_sync.offline.sync_engine import (
    SyncOrchestrator,
    SyncReport,
    SyncTrigger,
    build_sync_orchestrator,
    get_sync_orchestrator,
)

__all__ = [
    # Background work
    "BackgroundTaskRunner",
    "ViewScope",
    # Lesson identity
    "LessonRef",
    "pack_lesson_id",
    "unpack_lesson_id",
    "resolve_lesson_ref",
    "lookup_flag",
    # Local store
    "LocalKVStore",
    "get_local_store",
    # Caches
    "CacheManager",
    "CacheRead",
    "build_lesson_pages",
    "group_catalog_by_chapter",
    # Progress
    "ProgressLedger",
    "ResumeAction",
    "ResumeDecision",
    "NavigationTarget",
    "PageTransition",
    "AnswerCheck",
    # Vocabulary
    "VocabTracker",
    # Time
    "TimeSpentAggregator",
    "MinuteTicker",
    "ChartSeries",
    "merge_day_series",
    # Statistics
    "ProgressStatsService",
    "ProgressSnapshot",
    # Connectivity
    "ConnectionManager",
    "ConnectionStatus",
    "get_connection_manager",
    # Orchestration (main API)
    "SyncOrchestrator",
    "SyncReport",
    "SyncTrigger",
    "build_sync_orchestrator",
    "get_sync_orchestrator",
]
