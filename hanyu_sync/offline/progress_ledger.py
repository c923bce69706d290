# =============================================================================
# hanyu_sync/offline/progress_ledger.py
# Per-Lesson Progress, Resume Decisions and Completion
# =============================================================================
"""
ProgressLedger - where a learner is in each lesson, locally first.

Features:
- Resume position from the remote record, then the local map, then page 1
- Restart-or-exit choice for lessons already finished on the last page
- Synchronous local write on every page change, remote upsert in background
- Answer checking for practice pages
- Completion pipeline that always ends with a lesson-list navigation intent
- Completed-map merge and re-push of completions the remote never received
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from hanyu_sync.config import SyncSettings
from hanyu_sync.data.supabase_client import RemoteStore
from hanyu_sync.errors import HanyuSyncError, handle_error
from hanyu_sync.services.base_service import BaseService, ServiceResult

from .background import BackgroundTaskRunner
from .lesson_keys import LessonRef, lookup_flag, normalize_flag_map, resolve_lesson_ref, set_flag, try_resolve_lesson_ref
from .local_store import COMPLETED_KEY, PROGRESS_KEY, LocalKVStore

PROGRESS_TABLE = "lesson_progress"
PROGRESS_CONFLICT = ("user_id", "lesson_id")


class ResumeAction(Enum):
    """What the lesson view should do on open."""
    RESUME = "resume"
    RESTART_OR_EXIT = "restart_or_exit"


class NavigationTarget(Enum):
    """Navigation intents handed back to the UI shell."""
    STAY = "stay"
    LESSON_LIST = "lesson_list"


@dataclass
class ResumeDecision:
    lesson: LessonRef
    action: ResumeAction
    page: int
    source: str = "default"     # remote | local | default

    @property
    def needs_choice(self) -> bool:
        return self.action is ResumeAction.RESTART_OR_EXIT


@dataclass
class PageTransition:
    lesson: LessonRef
    page: int
    navigation: NavigationTarget = NavigationTarget.STAY
    completed: bool = False


@dataclass
class AnswerCheck:
    page: int
    submitted: str
    expected: Optional[str]
    correct: bool

    @property
    def has_question(self) -> bool:
        return self.expected is not None


def normalize_answer(text: Any) -> str:
    return str(text if text is not None else "").strip().lower()


class ProgressLedger(BaseService):
    """
    Lesson state machine over lesson.progress.v1 and lesson.completed.v1.

    Args:
        store: Local KV store
        remote: Remote store
        runner: Background lane for remote writes
        settings: Page layout
        vocab_tracker: Marks vocabulary learned after a completion
        on_completed: Called in background after a completion (stats recompute)
        clock: Returns the current time (tests)
    """

    def __init__(
        self,
        store: LocalKVStore,
        remote: RemoteStore,
        runner: Optional[BackgroundTaskRunner] = None,
        settings: Optional[SyncSettings] = None,
        vocab_tracker: Any = None,
        on_completed: Optional[Callable[[], Any]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        super().__init__()
        self.store = store
        self.remote = remote
        self.runner = runner or BackgroundTaskRunner()
        self.settings = settings or SyncSettings()
        self.vocab_tracker = vocab_tracker
        self.on_completed = on_completed
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def total_pages(self) -> int:
        return self.settings.total_pages

    def clamp_page(self, page: Any) -> int:
        try:
            page = int(page)
        except (TypeError, ValueError):
            return 1
        return max(1, min(self.total_pages, page))

    def is_practice_page(self, page: int) -> bool:
        return page in self.settings.practice_pages

    def _user_id(self) -> Optional[str]:
        try:
            return self.remote.current_user_id()
        except Exception as e:
            handle_error(e, context="Resolving current user")
            return None

    # =========================================================================
    # RESUME
    # =========================================================================

    def open_lesson(self, lesson: Any) -> ResumeDecision:
        """
        Decide where a lesson opens.

        A remote record wins. A lesson completed on the last page asks the
        learner to restart or exit instead of reopening the final page.
        """
        ref = resolve_lesson_ref(lesson)
        user_id = self._user_id()

        if user_id:
            try:
                row = self.remote.maybe_single(
                    PROGRESS_TABLE,
                    columns="last_page, completed",
                    filters={"user_id": user_id, "lesson_id": ref.progress_key},
                )
            except HanyuSyncError as e:
                handle_error(e, context=f"Loading remote progress for {ref}")
                row = None

            if row:
                last_page = self.clamp_page(row.get("last_page") or 1)
                if row.get("completed") and last_page == self.total_pages:
                    return ResumeDecision(ref, ResumeAction.RESTART_OR_EXIT, last_page, "remote")
                return ResumeDecision(ref, ResumeAction.RESUME, last_page, "remote")

        local_page = self.get_local_page(ref)
        if local_page is not None:
            return ResumeDecision(ref, ResumeAction.RESUME, local_page, "local")
        return ResumeDecision(ref, ResumeAction.RESUME, 1, "default")

    def get_local_page(self, lesson: Any) -> Optional[int]:
        ref = resolve_lesson_ref(lesson)
        progress = self.store.get_json(PROGRESS_KEY, default={}, expected_type=dict)
        for key in ref.storage_keys():
            value = progress.get(key)
            if isinstance(value, int) and not isinstance(value, bool) and 1 <= value <= self.total_pages:
                return value
        return None

    def choose_restart(self, decision: ResumeDecision) -> PageTransition:
        self.record_page(decision.lesson, 1)
        return PageTransition(decision.lesson, 1)

    def choose_exit(self, decision: ResumeDecision) -> PageTransition:
        return PageTransition(decision.lesson, decision.page, NavigationTarget.LESSON_LIST)

    # =========================================================================
    # PAGE CHANGES
    # =========================================================================

    def record_page(self, lesson: Any, page: int, push_remote: bool = True) -> int:
        """Persist the page locally now; push last_page remotely in background."""
        ref = resolve_lesson_ref(lesson)
        page = self.clamp_page(page)

        def update(progress: Dict[str, Any]) -> Dict[str, Any]:
            progress[ref.progress_key] = page
            return progress

        self.store.update_json(PROGRESS_KEY, update, default={}, expected_type=dict)

        if push_remote:
            self.runner.submit(f"upsert page {page} of {ref}", self.push_progress, ref, page)
        return page

    def advance(self, lesson: Any, current_page: int) -> PageTransition:
        """Next page, or completion past the last one. Practice pages stay put."""
        ref = resolve_lesson_ref(lesson)
        current_page = self.clamp_page(current_page)
        if self.is_practice_page(current_page):
            # Only continue_after_check leaves a practice page
            self.logger.debug(f"Page {current_page} of {ref} waits for an answer check")
            return PageTransition(ref, current_page)
        if current_page < self.total_pages:
            page = self.record_page(ref, current_page + 1)
            return PageTransition(ref, page)
        return self.complete_lesson(ref)

    def go_back(self, lesson: Any, current_page: int) -> PageTransition:
        ref = resolve_lesson_ref(lesson)
        page = self.record_page(ref, max(1, self.clamp_page(current_page) - 1))
        return PageTransition(ref, page)

    # =========================================================================
    # PRACTICE PAGES
    # =========================================================================

    def check_answer(
        self,
        pages: Mapping[int, Sequence[Dict[str, Any]]],
        page: int,
        submitted: str,
    ) -> AnswerCheck:
        """Case-insensitive, trimmed, exact comparison against the page's question."""
        question = next((r for r in pages.get(page) or [] if r.get("answer") is not None), None)
        if question is None:
            self.logger.warning(f"No question configured for page {page}")
            return AnswerCheck(page, submitted, None, False)

        expected = str(question["answer"])
        correct = normalize_answer(expected) == normalize_answer(submitted)
        return AnswerCheck(page, submitted, expected, correct)

    def continue_after_check(self, lesson: Any, page: int) -> PageTransition:
        """Move on after the result sheet, right or wrong."""
        ref = resolve_lesson_ref(lesson)
        next_page = self.record_page(ref, min(self.total_pages, self.clamp_page(page) + 1))
        return PageTransition(ref, next_page)

    # =========================================================================
    # COMPLETION
    # =========================================================================

    def complete_lesson(self, lesson: Any) -> PageTransition:
        """
        Finish a lesson.

        The local completed flag is written before anything else. Remote work
        is queued on the background lane, and the lesson-list intent is
        returned whatever happens to it.
        """
        ref = resolve_lesson_ref(lesson)
        try:
            self.mark_completed_locally(ref)
        except Exception as e:
            handle_error(e, context=f"Saving completion of {ref} locally")
        finally:
            self.runner.submit(f"upsert completion of {ref}", self.push_progress, ref, self.total_pages, True)
            if self.vocab_tracker is not None:
                self.runner.submit(f"mark vocab of {ref}", self.vocab_tracker.mark_lesson_vocabs_learned, ref)
                self.runner.submit("drain vocab queue", self.vocab_tracker.sync_pending_vocab_upserts)
            if self.on_completed is not None:
                self.runner.submit("recompute progress stats", self.on_completed)

        self.logger.info(f"Lesson {ref} completed")
        return PageTransition(ref, self.total_pages, NavigationTarget.LESSON_LIST, completed=True)

    def mark_completed_locally(self, lesson: Any) -> None:
        ref = resolve_lesson_ref(lesson)
        with self.store.lock:
            completed = self.store.get_json(COMPLETED_KEY, default={}, expected_type=dict)
            progress = self.store.get_json(PROGRESS_KEY, default={}, expected_type=dict)
            set_flag(completed, ref)
            progress[ref.progress_key] = self.total_pages
            self.store.set_json_many({COMPLETED_KEY: completed, PROGRESS_KEY: progress})

    def is_completed_locally(self, lesson: Any) -> bool:
        ref = resolve_lesson_ref(lesson)
        return lookup_flag(self.store.get_json(COMPLETED_KEY, default={}, expected_type=dict), ref)

    def build_progress_row(self, ref: LessonRef, user_id: str, last_page: int, completed: Optional[bool]) -> Dict[str, Any]:
        row = {
            "user_id": user_id,
            "lesson_id": ref.progress_key,
            "last_page": self.clamp_page(last_page),
            "updated_at": self.clock().isoformat(),
        }
        # Omitting the column keeps an existing completed=true on conflict
        if completed is None and self.is_completed_locally(ref):
            completed = True
        if completed is not None:
            row["completed"] = bool(completed)
        return row

    def push_progress(self, lesson: Any, last_page: int, completed: Optional[bool] = None) -> Optional[Dict[str, Any]]:
        """
        Upsert the progress record for the current user.

        Raises:
            TransientRemoteFailure: when the upsert does not reach the backend
        """
        ref = resolve_lesson_ref(lesson)
        user_id = self._user_id()
        if not user_id:
            self.logger.debug(f"No signed-in user, progress of {ref} stays local")
            return None
        row = self.build_progress_row(ref, user_id, last_page, completed)
        self.remote.upsert(PROGRESS_TABLE, [row], on_conflict=PROGRESS_CONFLICT)
        return row

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    def load_completed_map(self) -> Dict[str, Any]:
        """
        Merge remote completions into lesson.completed.v1 and return the map.

        Merging is an OR: a lesson flagged completed on either side stays
        completed. Offline, the local map is returned as is.
        """
        user_id = self._user_id()
        if not user_id:
            return self.store.get_json(COMPLETED_KEY, default={}, expected_type=dict)

        try:
            rows = self.remote.select(
                PROGRESS_TABLE, columns="lesson_id, completed", filters={"user_id": user_id},
            )
        except HanyuSyncError as e:
            handle_error(e, context="Loading remote completions")
            return self.store.get_json(COMPLETED_KEY, default={}, expected_type=dict)

        def merge(completed: Dict[str, Any]) -> Dict[str, Any]:
            for row in rows:
                if row.get("completed"):
                    completed[str(row.get("lesson_id"))] = True
            return completed

        return self.store.update_json(COMPLETED_KEY, merge, default={}, expected_type=dict)

    def reconcile_completions(self) -> ServiceResult:
        """
        Re-push lessons completed locally that the remote does not know about.

        Their vocabulary is marked again, since the original marking may have
        run while offline.
        """

        def run() -> Dict[str, Any]:
            user_id = self._user_id()
            if not user_id:
                return {"pushed": [], "skipped": "no user"}

            local_done = [
                ref for ref, flag in normalize_flag_map(
                    self.store.get_json(COMPLETED_KEY, default={}, expected_type=dict)
                ).items() if flag
            ]
            if not local_done:
                return {"pushed": []}

            rows = self.remote.select(
                PROGRESS_TABLE, columns="lesson_id, completed", filters={"user_id": user_id},
            )
            remote_done = set()
            for row in rows:
                ref = try_resolve_lesson_ref(row.get("lesson_id"))
                if ref is not None and row.get("completed"):
                    remote_done.add(ref)

            missing: List[LessonRef] = sorted(ref for ref in local_done if ref not in remote_done)
            if not missing:
                return {"pushed": []}

            self.remote.upsert(
                PROGRESS_TABLE,
                [self.build_progress_row(ref, user_id, self.total_pages, True) for ref in missing],
                on_conflict=PROGRESS_CONFLICT,
            )
            self.logger.info(f"Re-pushed {len(missing)} completed lessons")

            if self.vocab_tracker is not None:
                for ref in missing:
                    self.vocab_tracker.mark_lesson_vocabs_learned(ref)
            return {"pushed": [ref.progress_key for ref in missing]}

        return self.safe_execute("Reconciling lesson completions", run)
