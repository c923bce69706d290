# =============================================================================
# hanyu_sync/offline/cache_manager.py
# Read-Through Caches for Lesson Reference Data
# =============================================================================
"""
CacheManager - offline-first access to lessons, questions and vocabulary.

Features:
- Stale-while-revalidate reads: cached value now, fresh value broadcast later
- Per-chapter lesson lists merged into the whole-catalog cache
- Lesson line / question / vocabulary caches keyed by LessonRef
- Downloaded lesson bundles committed atomically with their marker
- Completed and downloaded flag lookups across every historical key shape

No TTL is enforced; a value is as fresh as the last revalidation
(screen mount or focus).
"""

from __future__ import annotations
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from hanyu_sync.config import SyncSettings
from hanyu_sync.data.supabase_client import RemoteStore
from hanyu_sync.errors import HanyuSyncError, NotFoundLocalAndRemote, handle_error
from hanyu_sync.services.base_service import BaseService, ServiceResult

from .background import BackgroundTaskRunner, ViewScope
from .lesson_keys import LessonRef, lookup_flag, resolve_lesson_ref
from .local_store import (
    CHAPTER_LESSONS_PREFIX,
    COMPLETED_KEY,
    DOWNLOADED_KEY,
    LESSON_CACHE_PREFIX,
    LESSON_CATALOG_KEY,
    LESSON_JSON_PREFIX,
    LESSON_QUESTIONS_PREFIX,
    LESSON_VOCAB_PREFIX,
    LocalKVStore,
)

UpdateCallback = Callable[[str, Any], None]
ErrorCallback = Callable[[str, Exception], None]

LESSON_LINE_COLUMNS = (
    "speaker, chinese, pinyin, translation, page, lesson_title, chapter_title, id, chapter_no, lesson_no"
)
QUESTION_COLUMNS = "page, question_text, answer, normal_audio_url"
VOCAB_COLUMNS = "vocab, vocab_pinyin, vocab_translation"

SOURCE_CACHE = "cache"
SOURCE_REMOTE = "remote"
SOURCE_NONE = "none"


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, (list, dict)) and len(value) == 0)


@dataclass
class CacheRead:
    """
    Outcome of a read-through call.

    Attributes:
        key: Cache key that was read
        value: Cached or freshly fetched value (None when nothing is known)
        source: "cache", "remote" or "none"
        error: Failure reported for an inline fetch
        refresh: Future of the background revalidation, when one was started
    """
    key: str
    value: Any = None
    source: str = SOURCE_NONE
    error: Optional[HanyuSyncError] = None
    refresh: Optional[Future] = None

    @property
    def found(self) -> bool:
        return not _is_empty(self.value)


class CacheManager(BaseService):
    """
    Read-through cache over the local store.

    Usage:
        cache = CacheManager(store, remote, runner)
        read = cache.get_chapter_lessons(1, on_update=refresh_list)
        render(read.value or [])
    """

    def __init__(
        self,
        store: LocalKVStore,
        remote: RemoteStore,
        runner: Optional[BackgroundTaskRunner] = None,
        settings: Optional[SyncSettings] = None,
    ):
        super().__init__()
        self.store = store
        self.remote = remote
        self.runner = runner or BackgroundTaskRunner()
        self.settings = settings or SyncSettings()
        self._listeners: List[UpdateCallback] = []
        self._listener_lock = threading.Lock()

    # =========================================================================
    # LISTENERS
    # =========================================================================

    def add_listener(self, callback: UpdateCallback) -> Callable[[], None]:
        """Register a (key, value) listener for revalidated values; returns an unsubscribe function."""
        with self._listener_lock:
            self._listeners.append(callback)

        def unsubscribe() -> None:
            with self._listener_lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    def _broadcast(self, key: str, value: Any) -> None:
        with self._listener_lock:
            listeners = list(self._listeners)
        for callback in listeners:
            try:
                callback(key, value)
            except Exception as e:
                self.logger.warning(f"Cache listener failed for {key}: {e}")

    # =========================================================================
    # GENERIC READ-THROUGH
    # =========================================================================

    def read_through(
        self,
        cache_key: str,
        remote_fetch: Callable[[], Any],
        on_update: Optional[UpdateCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        scope: Optional[ViewScope] = None,
    ) -> CacheRead:
        """
        Return the cached value for cache_key and revalidate it in the background.

        On a cache miss the fetch runs inline. A remote failure never raises:
        with a cache the stale value stays, without one the result carries
        NotFoundLocalAndRemote.
        """
        cached = self.store.get_json(cache_key)
        if not _is_empty(cached):
            self.logger.debug(f"Cache hit: {cache_key}")
            refresh = self.runner.submit(
                f"revalidate {cache_key}",
                self._revalidate, cache_key, remote_fetch, on_update, on_error, scope,
            )
            return CacheRead(key=cache_key, value=cached, source=SOURCE_CACHE, refresh=refresh)

        self.logger.debug(f"Cache miss: {cache_key}")
        try:
            value = remote_fetch()
        except Exception as e:
            handle_error(e, context=f"Fetching {cache_key}")
            error = NotFoundLocalAndRemote(
                f"No cached value and remote fetch failed for {cache_key}",
                cache_key=cache_key,
                details={"cause": str(e)},
            )
            if on_error and not (scope and scope.cancelled):
                on_error(cache_key, error)
            return CacheRead(key=cache_key, error=error)

        if _is_empty(value):
            error = NotFoundLocalAndRemote(f"Nothing stored for {cache_key}", cache_key=cache_key)
            return CacheRead(key=cache_key, value=value, error=error)

        self.store.set_json(cache_key, value)
        return CacheRead(key=cache_key, value=value, source=SOURCE_REMOTE)

    def _revalidate(
        self,
        cache_key: str,
        remote_fetch: Callable[[], Any],
        on_update: Optional[UpdateCallback],
        on_error: Optional[ErrorCallback],
        scope: Optional[ViewScope],
    ) -> Any:
        try:
            value = remote_fetch()
        except Exception as e:
            handle_error(e, context=f"Revalidating {cache_key}")
            if on_error and not (scope and scope.cancelled):
                on_error(cache_key, e)
            return None

        if _is_empty(value):
            # An empty answer never replaces a good cache
            self.logger.debug(f"Remote returned nothing for {cache_key}, keeping cache")
            return None

        self.store.set_json(cache_key, value)
        if scope and scope.cancelled:
            return value
        if on_update:
            on_update(cache_key, value)
        self._broadcast(cache_key, value)
        return value

    # =========================================================================
    # LESSON CATALOG
    # =========================================================================

    def get_chapter_lessons(
        self,
        chapter_no: int,
        on_update: Optional[UpdateCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        scope: Optional[ViewScope] = None,
    ) -> CacheRead:
        """Lesson list of one chapter; every successful fetch is merged into the catalog."""
        chapter_no = int(chapter_no)

        def fetch() -> List[Dict[str, Any]]:
            rows = self.remote.select(
                "lesson_meta",
                filters={"chapter_no": chapter_no},
                order_by="lesson_no",
            )
            if rows:
                self.merge_chapter_into_catalog(chapter_no, rows)
            return rows

        return self.read_through(
            f"{CHAPTER_LESSONS_PREFIX}{chapter_no}", fetch,
            on_update=on_update, on_error=on_error, scope=scope,
        )

    def get_lesson_catalog(
        self,
        on_update: Optional[UpdateCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        scope: Optional[ViewScope] = None,
    ) -> CacheRead:
        """Whole catalog ordered by chapter then lesson."""

        def fetch() -> List[Dict[str, Any]]:
            return self.remote.select(
                "lesson_meta",
                order_by=[("chapter_no", True), ("lesson_no", True)],
            )

        return self.read_through(
            LESSON_CATALOG_KEY, fetch, on_update=on_update, on_error=on_error, scope=scope,
        )

    def merge_chapter_into_catalog(self, chapter_no: int, rows: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Replace one chapter's rows in the catalog cache, keeping every other chapter."""
        chapter_no = int(chapter_no)

        def merge(catalog: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
            remaining = [r for r in catalog if _as_int(r.get("chapter_no")) != chapter_no]
            return remaining + [dict(r) for r in rows]

        return self.store.update_json(LESSON_CATALOG_KEY, merge, default=[], expected_type=list)

    # =========================================================================
    # PER-LESSON CONTENT
    # =========================================================================

    def get_lesson_lines(
        self,
        lesson: Any,
        on_update: Optional[UpdateCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        scope: Optional[ViewScope] = None,
    ) -> CacheRead:
        """Dialogue rows of a lesson, ordered by id."""
        ref = resolve_lesson_ref(lesson)
        cache_key = f"{LESSON_CACHE_PREFIX}{ref.packed_id}"
        self._adopt_legacy_lines(ref, cache_key)

        def fetch() -> List[Dict[str, Any]]:
            return self.remote.select(
                "lessons", columns=LESSON_LINE_COLUMNS, filters=ref.to_filters(), order_by="id",
            )

        return self.read_through(cache_key, fetch, on_update=on_update, on_error=on_error, scope=scope)

    def _adopt_legacy_lines(self, ref: LessonRef, cache_key: str) -> None:
        """Copy rows cached under the "<ch>_<le>" key to the packed key once."""
        if self.store.get(cache_key) is not None:
            return
        legacy_key = f"{LESSON_CACHE_PREFIX}{ref.progress_key}"
        legacy = self.store.get_json(legacy_key, expected_type=list)
        if legacy:
            self.logger.info(f"Adopting legacy lesson cache {legacy_key}")
            self.store.set_json(cache_key, legacy)

    def get_lesson_questions(
        self,
        lesson: Any,
        on_update: Optional[UpdateCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        scope: Optional[ViewScope] = None,
    ) -> CacheRead:
        """Practice questions of a lesson, ordered by page."""
        ref = resolve_lesson_ref(lesson)
        cache_key = f"{LESSON_QUESTIONS_PREFIX}{ref.progress_key}"
        practice_pages = list(self.settings.practice_pages)

        def fetch() -> List[Dict[str, Any]]:
            return self.remote.select(
                "lesson_questions",
                filters=ref.to_filters(),
                in_filters={"page": practice_pages},
                order_by="page",
            )

        return self.read_through(cache_key, fetch, on_update=on_update, on_error=on_error, scope=scope)

    def get_lesson_vocab(
        self,
        lesson: Any,
        on_update: Optional[UpdateCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        scope: Optional[ViewScope] = None,
    ) -> CacheRead:
        """Vocabulary rows of a lesson, ordered by id."""
        ref = resolve_lesson_ref(lesson)
        cache_key = f"{LESSON_VOCAB_PREFIX}{ref.progress_key}"

        def fetch() -> List[Dict[str, Any]]:
            return self.remote.select(
                "lesson_vocab", columns=VOCAB_COLUMNS, filters=ref.to_filters(), order_by="id",
            )

        return self.read_through(cache_key, fetch, on_update=on_update, on_error=on_error, scope=scope)

    # =========================================================================
    # DOWNLOADED BUNDLES
    # =========================================================================

    def download_lesson(self, lesson: Any) -> ServiceResult:
        """
        Fetch lines, questions and vocabulary, then commit them in one write.

        Nothing is written unless all three fetches succeed. The downloaded
        marker is set under the packed id and the "<ch>_<le>" key.
        """
        ref = resolve_lesson_ref(lesson)

        def run() -> Dict[str, Any]:
            filters = ref.to_filters()
            lines = self.remote.select("lessons", columns=LESSON_LINE_COLUMNS, filters=filters, order_by="id")
            questions = self.remote.select("lesson_questions", columns=QUESTION_COLUMNS, filters=filters, order_by="page")
            vocab = self.remote.select("lesson_vocab", columns=VOCAB_COLUMNS, filters=filters, order_by="id")

            bundle = {
                "lesson_key": ref.progress_key,
                "chapter_no": ref.chapter_no,
                "lesson_no": ref.lesson_no,
                "lines": lines,
                "questions": questions,
                "vocab": vocab,
            }
            with self.store.lock:
                downloaded = self.store.get_json(DOWNLOADED_KEY, default={}, expected_type=dict)
                downloaded[str(ref.packed_id)] = True
                downloaded[ref.progress_key] = True
                self.store.set_json_many({
                    f"{LESSON_CACHE_PREFIX}{ref.packed_id}": lines,
                    f"{LESSON_QUESTIONS_PREFIX}{ref.progress_key}": questions,
                    f"{LESSON_VOCAB_PREFIX}{ref.progress_key}": vocab,
                    f"{LESSON_JSON_PREFIX}{ref.packed_id}": bundle,
                    DOWNLOADED_KEY: downloaded,
                })
            self.logger.info(
                f"Downloaded lesson {ref}: {len(lines)} lines, {len(questions)} questions, {len(vocab)} vocab"
            )
            return bundle

        return self.safe_execute(f"Downloading lesson {ref}", run)

    def get_downloaded_bundle(self, lesson: Any) -> Optional[Dict[str, Any]]:
        ref = resolve_lesson_ref(lesson)
        return self.store.get_json(f"{LESSON_JSON_PREFIX}{ref.packed_id}", expected_type=dict)

    # =========================================================================
    # FLAG MAPS
    # =========================================================================

    def get_downloaded_map(self) -> Dict[str, Any]:
        return self.store.get_json(DOWNLOADED_KEY, default={}, expected_type=dict)

    def get_completed_map(self) -> Dict[str, Any]:
        return self.store.get_json(COMPLETED_KEY, default={}, expected_type=dict)

    def is_downloaded(self, lesson: Any, downloaded: Optional[Dict[str, Any]] = None) -> bool:
        ref = resolve_lesson_ref(lesson)
        flags = downloaded if downloaded is not None else self.get_downloaded_map()
        return lookup_flag(flags, ref, include_bare_lesson=True)

    def is_completed(self, lesson: Any, completed: Optional[Dict[str, Any]] = None) -> bool:
        ref = resolve_lesson_ref(lesson)
        flags = completed if completed is not None else self.get_completed_map()
        return lookup_flag(flags, ref)


# =============================================================================
# PAGE AND SECTION BUILDERS
# =============================================================================

def build_lesson_pages(
    lines: Sequence[Dict[str, Any]],
    questions: Optional[Sequence[Dict[str, Any]]] = None,
) -> Dict[int, List[Dict[str, Any]]]:
    """
    Group lesson rows into {page: rows}.

    Rows without a page go to page 1. Page 2 repeats page 1 when the lesson
    has no rows for it. A question row takes over its page entirely
    (default page 3).
    """
    pages: Dict[int, List[Dict[str, Any]]] = {}
    for row in lines:
        page = _as_int(row.get("page")) or 1
        pages.setdefault(page, []).append(row)

    if 1 in pages and 2 not in pages:
        pages[2] = [dict(row) for row in pages[1]]

    for row in questions or []:
        page = _as_int(row.get("page")) or 3
        pages[page] = [row]

    return dict(sorted(pages.items()))


def group_catalog_by_chapter(rows: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Catalog rows as sections [{chapter_no, title, data}] in chapter order."""
    sections: Dict[int, Dict[str, Any]] = {}
    for row in rows:
        chapter_no = _as_int(row.get("chapter_no")) or 0
        section = sections.setdefault(chapter_no, {
            "chapter_no": chapter_no,
            "title": row.get("chapter_title") or f"Chapter {chapter_no}",
            "data": [],
        })
        section["data"].append(row)

    result = []
    for chapter_no in sorted(sections):
        section = sections[chapter_no]
        section["data"].sort(key=lambda r: _as_int(r.get("lesson_no")) or 0)
        result.append(section)
    return result


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
