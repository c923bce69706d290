# =============================================================================
# hanyu_sync/offline/local_store.py
# Durable Local Key-Value Store (SQLite)
# =============================================================================
"""
LocalKVStore - string-keyed durable storage for every cache and queue.

Features:
- get/set/remove of serialized values (the AsyncStorage contract of the app)
- JSON helpers that treat undecodable blobs as a cache miss
- Atomic multi-key writes (a downloaded lesson is never half-written)
- Atomic read-modify-write for shared maps and queues
- Thread-safe operations
"""

from __future__ import annotations
import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from hanyu_sync.errors import MalformedCache, handle_error
from hanyu_sync.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# KEY NAMESPACES (shared with existing installs, do not rename)
# =============================================================================

CHAPTER_LESSONS_PREFIX = "chapter.lessons.v1."
COMPLETED_KEY = "lesson.completed.v1"
LESSON_CATALOG_KEY = "lesson_meta.cache.v1"
LESSON_CACHE_PREFIX = "lesson.cache.v1."
LESSON_JSON_PREFIX = "lesson.json.v1."
LESSON_QUESTIONS_PREFIX = "lesson_questions_"
LESSON_VOCAB_PREFIX = "lesson_vocab_"
DOWNLOADED_KEY = "downloaded.lessons.v1"
PROGRESS_KEY = "lesson.progress.v1"
VOCAB_LEARNED_COUNT_KEY = "VOCAB_LEARNED_COUNT.v1"
VOCAB_LEARNED_LIST_KEY = "VOCAB_LEARNED_LIST.v1"
VOCAB_UPSERT_QUEUE_KEY = "VOCAB_UPSERT_QUEUE.v1"
TIME_BY_DAY_KEY = "TIME_SPENT_BY_DAY.v1"
TIME_TOTAL_KEY = "TIME_SPENT_TOTAL.v1"
TIME_PENDING_KEY = "TIME_SPENT_PENDING.v1"
TIME_PENDING_BY_DAY_KEY = "TIME_SPENT_PENDING_BY_DAY.v1"


class LocalKVStore:
    """
    SQLite-backed key-value store.

    Each component owns a distinct set of keys; the store itself only
    guarantees that single calls and update_json() are atomic.
    """

    DEFAULT_DB_PATH = Path("local_data") / "hanyu_sync.db"

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS kv_store (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        """
        Initialize local store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path) if db_path else self.DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._lock = threading.RLock()
        self._connections: List[sqlite3.Connection] = []
        self._initialized = False

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if getattr(self._local, "connection", None) is None:
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30)
            conn.row_factory = sqlite3.Row
            self._local.connection = conn
            with self._lock:
                self._connections.append(conn)
        return self._local.connection

    @property
    def lock(self) -> threading.RLock:
        """Re-entrant lock held by every write; hold it to group reads with a write."""
        return self._lock

    @contextmanager
    def transaction(self):
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def initialize(self) -> LocalKVStore:
        """Create the schema if needed."""
        if self._initialized:
            return self

        with self.transaction() as conn:
            conn.execute(self.SCHEMA)

        self._initialized = True
        logger.info(f"Local store initialized at: {self.db_path}")
        return self

    # =========================================================================
    # RAW STRING OPERATIONS
    # =========================================================================

    def get(self, key: str) -> Optional[str]:
        """Return the stored string for key, or None."""
        self.initialize()
        row = self._get_connection().execute(
            "SELECT value FROM kv_store WHERE key = ?", [key]
        ).fetchone()
        return row["value"] if row else None

    def set(self, key: str, value: str) -> None:
        """Store a string under key."""
        self.set_many({key: value})

    def set_many(self, items: Dict[str, str]) -> None:
        """Store several keys in one transaction (all or nothing)."""
        if not items:
            return
        self.initialize()
        now = datetime.now().isoformat()
        with self._lock, self.transaction() as conn:
            conn.executemany(
                """
                INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                               updated_at = excluded.updated_at
                """,
                [(k, v, now) for k, v in items.items()],
            )

    def remove(self, key: str) -> None:
        """Delete key if present."""
        self.remove_many([key])

    def remove_many(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return
        self.initialize()
        with self._lock, self.transaction() as conn:
            conn.executemany("DELETE FROM kv_store WHERE key = ?", [(k,) for k in keys])

    def keys(self, prefix: str = "") -> List[str]:
        """List stored keys starting with prefix."""
        self.initialize()
        rows = self._get_connection().execute(
            "SELECT key FROM kv_store WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
            [_like_prefix(prefix)],
        ).fetchall()
        return [row["key"] for row in rows]

    # =========================================================================
    # JSON HELPERS
    # =========================================================================

    def get_json(self, key: str, default: Any = None, expected_type: Optional[type] = None) -> Any:
        """
        Load and decode a JSON value.

        A blob that fails to decode (or decodes to the wrong container type)
        is reported as MalformedCache and treated as missing.
        """
        raw = self.get(key)
        if raw is None:
            return default
        try:
            value = json.loads(raw)
            if expected_type is not None and not isinstance(value, expected_type):
                raise MalformedCache(
                    f"Expected {expected_type.__name__}, found {type(value).__name__}",
                    key=key,
                )
        except (json.JSONDecodeError, MalformedCache) as e:
            error = e if isinstance(e, MalformedCache) else MalformedCache(str(e), key=key)
            handle_error(error, context=f"Reading {key}")
            return default
        return value

    def set_json(self, key: str, value: Any) -> None:
        self.set(key, json.dumps(value, ensure_ascii=False, default=str))

    def set_json_many(self, items: Dict[str, Any]) -> None:
        """Encode and store several values atomically."""
        self.set_many(
            {k: json.dumps(v, ensure_ascii=False, default=str) for k, v in items.items()}
        )

    def update_json(
        self,
        key: str,
        updater: Callable[[Any], Any],
        default: Any = None,
        expected_type: Optional[type] = None,
    ) -> Any:
        """
        Atomic read-modify-write of a JSON value.

        Args:
            key: Key to update
            updater: Receives the current value (or a copy of default), returns the new one
            default: Value used when the key is missing or malformed
            expected_type: Container type the stored value must have

        Returns:
            The value written
        """
        with self._lock:
            current = self.get_json(key, default=None, expected_type=expected_type)
            if current is None:
                current = json.loads(json.dumps(default)) if default is not None else None
            new_value = updater(current)
            self.set_json(key, new_value)
            return new_value

    def get_number(self, key: str, default: float = 0) -> float:
        """Read a numeric value (stored as its string form)."""
        value = self.get_json(key, default=default)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            try:
                return type(default)(value)
            except (TypeError, ValueError):
                handle_error(MalformedCache(f"Not a number: {value!r}", key=key))
                return default
        return value

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.debug(f"Error closing connection: {e}")
            self._connections.clear()
        self._local = threading.local()


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped + "%"


# Singleton accessor
_local_store: Optional[LocalKVStore] = None
_store_lock = threading.Lock()


def get_local_store(db_path: Optional[Union[str, Path]] = None) -> LocalKVStore:
    """Get the global LocalKVStore instance."""
    global _local_store
    if _local_store is None:
        with _store_lock:
            if _local_store is None:
                _local_store = LocalKVStore(db_path).initialize()
    return _local_store
