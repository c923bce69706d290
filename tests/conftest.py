# =============================================================================
# tests/conftest.py
# Pytest Configuration and Fixtures
# =============================================================================

import copy
import itertools
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from hanyu_sync.config import SyncSettings
from hanyu_sync.data.supabase_client import RemoteStore, normalize_order
from hanyu_sync.errors import TransientRemoteFailure


TODAY = date(2026, 10, 19)
USER_ID = "user-1"


# =============================================================================
# FAKE REMOTE STORE
# =============================================================================

class FakeRemoteStore(RemoteStore):
    """
    In-memory backend with the tables and procedures the sync core uses.

    Upserts merge on the conflict columns (only the given columns are
    updated, like PostgREST). Failures are injected per table / procedure
    name, or for everything with ``offline = True``.
    """

    def __init__(self, user_id: Optional[str] = USER_ID):
        self.user_id = user_id
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.calls: List[tuple] = []
        self.offline = False
        self.summary_available = True
        self._failures: Dict[str, Optional[int]] = {}
        self._ids = itertools.count(1000)

    # ----- failure injection -----

    def fail(self, name: str, times: Optional[int] = None) -> None:
        """Make table/procedure `name` fail (always, or for the next `times` calls)."""
        self._failures[name] = times

    def recover(self, name: Optional[str] = None) -> None:
        if name is None:
            self._failures.clear()
            self.offline = False
        else:
            self._failures.pop(name, None)

    def _check(self, name: str, operation: str) -> None:
        if self.offline:
            raise TransientRemoteFailure(f"offline: {operation} {name}", table=name, operation=operation)
        if name in self._failures:
            remaining = self._failures[name]
            if remaining is not None:
                if remaining <= 1:
                    self._failures.pop(name)
                else:
                    self._failures[name] = remaining - 1
            raise TransientRemoteFailure(f"injected failure: {operation} {name}", table=name, operation=operation)

    # ----- helpers -----

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def seed(self, table: str, rows: List[Dict[str, Any]]) -> None:
        for row in rows:
            row = dict(row)
            row.setdefault("id", next(self._ids))
            self.rows(table).append(row)

    def count_calls(self, operation: str, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation and call[1] == name)

    # ----- RemoteStore -----

    def select(self, table, columns="*", filters=None, in_filters=None, gte=None,
               order_by=None, ascending=True, limit=None):
        self.calls.append(("select", table, dict(filters or {})))
        self._check(table, "select")

        result = []
        for row in self.rows(table):
            if any(row.get(k) != v for k, v in (filters or {}).items()):
                continue
            if any(row.get(k) not in list(v) for k, v in (in_filters or {}).items()):
                continue
            if any(row.get(k) is None or str(row.get(k)) < str(v) for k, v in (gte or {}).items()):
                continue
            result.append(row)

        for col, asc in reversed(normalize_order(order_by, ascending)):
            result.sort(key=lambda r: (r.get(col) is None, r.get(col)), reverse=not asc)
        if limit:
            result = result[:limit]

        if columns.strip() == "*":
            return [copy.deepcopy(r) for r in result]
        names = [c.strip() for c in columns.split(",")]
        return [{n: copy.deepcopy(r.get(n)) for n in names} for r in result]

    def upsert(self, table, rows, on_conflict):
        self.calls.append(("upsert", table, [dict(r) for r in rows]))
        self._check(table, "upsert")

        written = []
        for row in rows:
            existing = next(
                (r for r in self.rows(table) if all(r.get(c) == row.get(c) for c in on_conflict)),
                None,
            )
            if existing is not None:
                existing.update(copy.deepcopy(dict(row)))
                written.append(dict(existing))
            else:
                new_row = copy.deepcopy(dict(row))
                new_row.setdefault("id", next(self._ids))
                self.rows(table).append(new_row)
                written.append(dict(new_row))
        return written

    def rpc(self, name, params=None):
        params = dict(params or {})
        self.calls.append(("rpc", name, params))
        self._check(name, "rpc")

        if name == "add_time_spent":
            user, day, minutes = params["p_user"], params["p_day"], int(params["p_minutes"])
            row = next((r for r in self.rows("time_spent") if r["user_id"] == user and r["day"] == day), None)
            if row is None:
                self.seed("time_spent", [{"user_id": user, "day": day, "minutes": minutes}])
            else:
                row["minutes"] += minutes
            return None

        if name == "update_user_progress_counts":
            user = params["p_user"]
            done = [r for r in self.rows("lesson_progress") if r.get("user_id") == user and r.get("completed")]
            chapters = {str(r["lesson_id"]).split("_")[0] for r in done}
            existing = next((r for r in self.rows("user_progress") if r.get("user_id") == user), None)
            values = {"lessons_completed": len(done), "chapters_completed": len(chapters)}
            if existing is None:
                self.seed("user_progress", [dict(user_id=user, vocab_count=0, total_minutes=0, **values)])
            else:
                existing.update(values)
            return None

        if name == "get_progress_summary":
            if not self.summary_available:
                return []
            user = params["p_user"]
            progress_row = next((r for r in self.rows("user_progress") if r.get("user_id") == user), {})
            time_rows = [r for r in self.rows("time_spent") if r["user_id"] == user]
            first_day = (TODAY - timedelta(days=6)).isoformat()
            return [{
                "progress": {
                    "vocab_count": sum(1 for r in self.rows("user_vocab") if r.get("user_id") == user),
                    "lessons_completed": progress_row.get("lessons_completed", 0),
                    "chapters_completed": progress_row.get("chapters_completed", 0),
                    "total_minutes": sum(r["minutes"] for r in time_rows),
                },
                "last7": [
                    {"day": r["day"], "minutes": r["minutes"]}
                    for r in sorted(time_rows, key=lambda r: r["day"]) if r["day"] >= first_day
                ],
            }]

        raise TransientRemoteFailure(f"unknown procedure {name}", table=name, operation="rpc")

    def current_user_id(self):
        return self.user_id


class TickingClock:
    """Returns a strictly increasing UTC time on every call."""

    def __init__(self, start: Optional[datetime] = None, step: timedelta = timedelta(seconds=1)):
        self.now = start or datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


# =============================================================================
# SAMPLE DATA FIXTURES
# =============================================================================

def lesson_lines(chapter_no: int, lesson_no: int) -> List[Dict[str, Any]]:
    lines = []
    for page in (1, 6, 7):
        for n in range(2):
            lines.append({
                "speaker": "A" if n == 0 else "B",
                "chinese": f"第{page}页 {n}",
                "pinyin": f"di {page} ye {n}",
                "translation": f"page {page} line {n}",
                "page": page,
                "lesson_title": f"Lesson {lesson_no}",
                "chapter_title": f"Chapter {chapter_no}",
                "chapter_no": chapter_no,
                "lesson_no": lesson_no,
            })
    return lines


@pytest.fixture
def remote():
    """Fake backend seeded with chapter 1 (lessons 1-3) and chapter 2 (lesson 1)"""
    store = FakeRemoteStore()
    store.seed("lesson_meta", [
        {"chapter_no": 1, "lesson_no": 1, "chapter_title": "Greetings", "lesson_title": "Hello"},
        {"chapter_no": 1, "lesson_no": 2, "chapter_title": "Greetings", "lesson_title": "Names"},
        {"chapter_no": 1, "lesson_no": 3, "chapter_title": "Greetings", "lesson_title": "Thanks"},
        {"chapter_no": 2, "lesson_no": 1, "chapter_title": "Numbers", "lesson_title": "One to ten"},
    ])
    store.seed("lessons", lesson_lines(1, 3))
    store.seed("lessons", lesson_lines(2, 1))
    store.seed("lesson_questions", [
        {"chapter_no": 1, "lesson_no": 3, "page": 3, "question_text": "Say thanks", "answer": "Xie xie", "normal_audio_url": "a3.mp3"},
        {"chapter_no": 1, "lesson_no": 3, "page": 4, "question_text": "Say hello", "answer": "Ni hao", "normal_audio_url": "a4.mp3"},
        {"chapter_no": 1, "lesson_no": 3, "page": 5, "question_text": "Say bye", "answer": "Zai jian", "normal_audio_url": "a5.mp3"},
    ])
    store.seed("lesson_vocab", [
        {"chapter_no": 1, "lesson_no": 3, "vocab": "谢谢", "vocab_pinyin": "xièxie", "vocab_translation": "thanks"},
        {"chapter_no": 1, "lesson_no": 3, "vocab": " 你好 ", "vocab_pinyin": "nǐhǎo", "vocab_translation": "hello"},
        {"chapter_no": 1, "lesson_no": 3, "vocab": "你好", "vocab_pinyin": "ni3hao3", "vocab_translation": "hi"},
        {"chapter_no": 1, "lesson_no": 3, "vocab": "  ", "vocab_pinyin": None, "vocab_translation": None},
        {"chapter_no": 2, "lesson_no": 1, "vocab": "一", "vocab_pinyin": "yī", "vocab_translation": "one"},
        {"chapter_no": 2, "lesson_no": 1, "vocab": "你好", "vocab_pinyin": "nǐhǎo", "vocab_translation": "hello"},
    ])
    return store


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a temporary database"""
    return SyncSettings(db_path=tmp_path / "hanyu_sync.db")


@pytest.fixture
def kv_store(settings):
    """Initialized local store in a temporary directory"""
    from hanyu_sync.offline.local_store import LocalKVStore

    store = LocalKVStore(settings.db_path).initialize()
    yield store
    store.close()


@pytest.fixture
def runner():
    """Background runner that executes tasks immediately"""
    from hanyu_sync.offline.background import BackgroundTaskRunner

    return BackgroundTaskRunner(inline=True)


@pytest.fixture
def today():
    return lambda: TODAY


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def orchestrator(kv_store, remote, settings, runner, today, clock):
    """Fully wired orchestrator over the fake backend"""
    from hanyu_sync.offline.sync_engine import SyncOrchestrator

    orch = SyncOrchestrator(kv_store, remote, settings, runner=runner, today=today, clock=clock).initialize()
    yield orch
    orch.ticker.stop()


# =============================================================================
# MOCK FIXTURES
# =============================================================================

@pytest.fixture
def mock_supabase():
    """Mock Supabase client"""
    mock_client = MagicMock()
    mock_client.table.return_value.select.return_value.execute.return_value.data = []
    mock_client.table.return_value.upsert.return_value.execute.return_value.data = []
    mock_client.rpc.return_value.execute.return_value.data = None
    return mock_client
