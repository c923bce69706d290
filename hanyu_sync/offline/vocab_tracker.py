# =============================================================================
# hanyu_sync/offline/vocab_tracker.py
# Vocabulary Acquisition Tracking with an Offline Upsert Queue
# =============================================================================
"""
VocabTracker - records which words a learner has acquired.

Features:
- Marks every word of a finished lesson as learned (idempotent upserts)
- Batched writes of at most ``batch_size`` rows per request
- Offline queue: failed user_vocab rows are kept as one entry and replayed
- Local mirror of the learned list and count for offline display
"""

from __future__ import annotations
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from hanyu_sync.config import SyncSettings
from hanyu_sync.data.supabase_client import RemoteStore
from hanyu_sync.errors import HanyuSyncError, PartialBatchFailure, error_boundary, handle_error
from hanyu_sync.services.base_service import BaseService, ServiceResult

from .lesson_keys import resolve_lesson_ref
from .local_store import (
    VOCAB_LEARNED_COUNT_KEY,
    VOCAB_LEARNED_LIST_KEY,
    VOCAB_UPSERT_QUEUE_KEY,
    LocalKVStore,
)

VOCAB_CONFLICT = ("vocab",)
USER_VOCAB_CONFLICT = ("user_id", "vocab_id")


def chunked(rows: Sequence[Any], size: int) -> List[Sequence[Any]]:
    size = max(1, int(size))
    return [rows[i:i + size] for i in range(0, len(rows), size)]


def dedupe_lesson_vocab(rows: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    One item per trimmed vocab text, first occurrence wins.

    Rows with blank text are dropped.
    """
    unique: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        text = str(row.get("vocab") or "").strip()
        if not text or text in unique:
            continue
        unique[text] = {
            "vocab": text,
            "pinyin": row.get("vocab_pinyin") or None,
            "translation": row.get("vocab_translation") or None,
        }
    return list(unique.values())


class VocabTracker(BaseService):
    """
    Owner of the VOCAB_* keys.

    Args:
        store: Local KV store
        remote: Remote store
        settings: Batch size
        clock: Returns the current time (tests)
    """

    def __init__(
        self,
        store: LocalKVStore,
        remote: RemoteStore,
        settings: Optional[SyncSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        super().__init__()
        self.store = store
        self.remote = remote
        self.settings = settings or SyncSettings()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._drain_lock = threading.Lock()

    @property
    def batch_size(self) -> int:
        return self.settings.batch_size

    def _upsert_batched(self, table: str, rows: Sequence[Dict[str, Any]], on_conflict: Sequence[str]) -> None:
        """Upsert rows in batches; raises PartialBatchFailure naming how many rows were not sent."""
        sent = 0
        for batch in chunked(rows, self.batch_size):
            try:
                self.remote.upsert(table, batch, on_conflict=on_conflict)
            except HanyuSyncError as e:
                raise PartialBatchFailure(
                    f"Upsert into {table} stopped after {sent} of {len(rows)} rows: {e.message}",
                    table=table,
                    failed_rows=len(rows) - sent,
                    total_rows=len(rows),
                ) from e
            sent += len(batch)

    # =========================================================================
    # MARKING
    # =========================================================================

    def mark_lesson_vocabs_learned(self, lesson_key: Any) -> ServiceResult:
        """
        Mark every word of a lesson as learned by the current user.

        Re-marking is harmless: rows conflict on (user_id, vocab_id), so the
        learned_at and source_lesson_key of the latest call win.
        """
        ref = resolve_lesson_ref(lesson_key)

        def run() -> Dict[str, Any]:
            user_id = self.remote.current_user_id()
            if not user_id:
                self.logger.warning("Cannot mark vocabulary without a signed-in user")
                return {"learned": 0, "queued": False}

            lesson_rows = self.remote.select(
                "lesson_vocab",
                columns="vocab, vocab_pinyin, vocab_translation",
                filters=ref.to_filters(),
            )
            unique = dedupe_lesson_vocab(lesson_rows)
            if not unique:
                return {"learned": 0, "queued": False}

            try:
                self._upsert_batched("vocab", unique, VOCAB_CONFLICT)
            except PartialBatchFailure as e:
                # The words may already exist; id resolution below decides
                handle_error(e, context="Ensuring canonical vocab rows")

            ids_by_text = self._resolve_vocab_ids([v["vocab"] for v in unique])

            learned_at = self.clock().isoformat()
            user_rows = [
                {
                    "user_id": user_id,
                    "vocab_id": ids_by_text[v["vocab"]],
                    "learned_at": learned_at,
                    "source_lesson_key": ref.progress_key,
                }
                for v in unique
                if v["vocab"] in ids_by_text
            ]
            if not user_rows:
                return {"learned": 0, "queued": False}

            queued = False
            try:
                self._upsert_batched("user_vocab", user_rows, USER_VOCAB_CONFLICT)
            except PartialBatchFailure as e:
                handle_error(e, context=f"Marking vocab of {ref}")
                self.enqueue_pending_upsert(user_rows)
                queued = True

            self.update_local_learned_cache(user_id)
            return {"learned": len(user_rows), "queued": queued}

        return self.safe_execute(f"Marking vocab of lesson {ref}", run)

    def _resolve_vocab_ids(self, texts: Sequence[str]) -> Dict[str, Any]:
        ids: Dict[str, Any] = {}
        for batch in chunked(list(texts), self.batch_size):
            rows = self.remote.select("vocab", columns="id, vocab", in_filters={"vocab": batch})
            for row in rows:
                text = str(row.get("vocab") or "").strip()
                if text and row.get("id") is not None:
                    ids[text] = row["id"]
        return ids

    # =========================================================================
    # PENDING QUEUE
    # =========================================================================

    def enqueue_pending_upsert(self, rows: Sequence[Dict[str, Any]]) -> None:
        """Append rows to the queue as a single entry."""
        if not rows:
            return
        entry = {"rows": [dict(r) for r in rows], "created_at": self.clock().isoformat()}

        def append(queue: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
            queue.append(entry)
            return queue

        self.store.update_json(VOCAB_UPSERT_QUEUE_KEY, append, default=[], expected_type=list)
        self.logger.info(f"Queued {len(rows)} user_vocab rows for later sync")

    def get_pending_queue(self) -> List[Dict[str, Any]]:
        return self.store.get_json(VOCAB_UPSERT_QUEUE_KEY, default=[], expected_type=list)

    def sync_pending_vocab_upserts(self) -> ServiceResult:
        """
        Replay queued entries oldest-first.

        An entry whose upsert fails is kept whole, in its original position.
        Entries appended while the drain runs are kept after the survivors.
        A second caller during a drain returns immediately.
        """
        if not self._drain_lock.acquire(blocking=False):
            self.logger.debug("Vocab queue drain already running")
            return ServiceResult.ok({"sent": 0, "remaining": None}, metadata={"skipped": True})

        try:
            return self.safe_execute("Draining vocab upsert queue", self._drain)
        finally:
            self._drain_lock.release()

    def _drain(self) -> Dict[str, Any]:
        snapshot = self.get_pending_queue()
        if not snapshot:
            return {"sent": 0, "remaining": 0}

        user_id = self.remote.current_user_id()
        if not user_id:
            self.logger.debug("No signed-in user, vocab queue left as is")
            return {"sent": 0, "remaining": len(snapshot)}

        remaining: List[Dict[str, Any]] = []
        sent = 0
        for entry in snapshot:
            rows = entry.get("rows") if isinstance(entry, dict) else None
            if not rows:
                continue
            try:
                self._upsert_batched("user_vocab", rows, USER_VOCAB_CONFLICT)
            except PartialBatchFailure as e:
                handle_error(e, context="Replaying queued vocab rows")
                remaining.append(entry)
                continue
            sent += 1
            self.update_local_learned_cache(user_id)

        def write_back(queue: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
            appended = queue[len(snapshot):]
            return remaining + appended

        final = self.store.update_json(VOCAB_UPSERT_QUEUE_KEY, write_back, default=[], expected_type=list)
        if sent:
            self.logger.info(f"Synced {sent} queued vocab entries, {len(final)} left")
        return {"sent": sent, "remaining": len(final)}

    # =========================================================================
    # LOCAL MIRROR
    # =========================================================================

    def update_local_learned_cache(self, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Re-derive the learned list and count from the remote tables.

        Both keys are written together. Unreachable remote leaves the current
        mirror in place and returns None.
        """
        user_id = user_id or self.remote.current_user_id()
        if not user_id:
            return None

        try:
            learned = self.remote.select(
                "user_vocab",
                columns="vocab_id, learned_at, source_lesson_key",
                filters={"user_id": user_id},
            )
            vocab_ids = [r["vocab_id"] for r in learned if r.get("vocab_id") is not None]
            vocab_by_id: Dict[Any, Dict[str, Any]] = {}
            for batch in chunked(vocab_ids, self.batch_size):
                for row in self.remote.select("vocab", columns="id, vocab, pinyin, translation", in_filters={"id": batch}):
                    vocab_by_id[row.get("id")] = row
        except HanyuSyncError as e:
            handle_error(e, context="Refreshing learned vocab mirror")
            return None

        by_text: Dict[str, Dict[str, Any]] = {}
        for row in learned:
            vocab = vocab_by_id.get(row.get("vocab_id"), {})
            text = str(vocab.get("vocab") or "").strip()
            if not text or text in by_text:
                continue
            by_text[text] = {
                "vocab_id": row.get("vocab_id"),
                "vocab": text,
                "pinyin": vocab.get("pinyin") or "",
                "translation": vocab.get("translation") or "",
                "learned_at": row.get("learned_at"),
                "source_lesson_key": row.get("source_lesson_key"),
            }

        items = list(by_text.values())
        self.store.set_json_many({
            VOCAB_LEARNED_LIST_KEY: items,
            VOCAB_LEARNED_COUNT_KEY: len(items),
        })
        self.logger.debug(f"Learned vocab mirror refreshed: {len(items)} words")
        return {"count": len(items), "list": items}

    @error_boundary(default_return=0)
    def get_local_learned_count(self) -> int:
        return int(self.store.get_number(VOCAB_LEARNED_COUNT_KEY, default=0))

    @error_boundary(default_return=[])
    def get_local_learned_list(self) -> List[Dict[str, Any]]:
        return self.store.get_json(VOCAB_LEARNED_LIST_KEY, default=[], expected_type=list)
