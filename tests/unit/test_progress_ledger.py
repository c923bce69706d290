# =============================================================================
# tests/unit/test_progress_ledger.py
# Unit Tests for ProgressLedger (resume, page changes, completion)
# =============================================================================

import pytest

from hanyu_sync.offline.cache_manager import build_lesson_pages
from hanyu_sync.offline.lesson_keys import LessonRef
from hanyu_sync.offline.local_store import COMPLETED_KEY, PROGRESS_KEY
from hanyu_sync.offline.progress_ledger import (
    NavigationTarget,
    ProgressLedger,
    ResumeAction,
    normalize_answer,
)
from hanyu_sync.offline.vocab_tracker import VocabTracker


@pytest.fixture
def vocab(kv_store, remote, settings, clock):
    return VocabTracker(kv_store, remote, settings, clock=clock)


@pytest.fixture
def ledger(kv_store, remote, runner, settings, vocab, clock):
    return ProgressLedger(kv_store, remote, runner, settings, vocab_tracker=vocab, clock=clock)


def progress_row(remote, lesson_id, user_id="user-1"):
    return next(
        (r for r in remote.rows("lesson_progress") if r["lesson_id"] == lesson_id and r["user_id"] == user_id),
        None,
    )


class TestResume:
    """Where a lesson opens"""

    def test_new_lesson_opens_on_page_one(self, ledger):
        decision = ledger.open_lesson("1_3")

        assert decision.action is ResumeAction.RESUME
        assert decision.page == 1
        assert decision.source == "default"

    def test_local_page_when_remote_has_no_record(self, ledger):
        ledger.record_page("1_3", 4, push_remote=False)

        decision = ledger.open_lesson(101003)

        assert decision.page == 4
        assert decision.source == "local"

    def test_legacy_local_progress_key(self, ledger, kv_store):
        kv_store.set_json(PROGRESS_KEY, {"Ch1_L3": 5})
        assert ledger.open_lesson("1_3").page == 5

    def test_remote_record_wins(self, ledger, remote):
        ledger.record_page("1_3", 2, push_remote=False)
        remote.seed("lesson_progress", [{"user_id": "user-1", "lesson_id": "1_3", "last_page": 5, "completed": False}])

        decision = ledger.open_lesson("1_3")

        assert decision.page == 5
        assert decision.source == "remote"
        assert decision.action is ResumeAction.RESUME

    def test_completed_on_last_page_asks_restart_or_exit(self, ledger, remote):
        remote.seed("lesson_progress", [{"user_id": "user-1", "lesson_id": "1_3", "last_page": 7, "completed": True}])

        decision = ledger.open_lesson("1_3")

        assert decision.action is ResumeAction.RESTART_OR_EXIT
        assert decision.needs_choice
        assert decision.page == 7

    def test_completed_before_last_page_resumes(self, ledger, remote):
        remote.seed("lesson_progress", [{"user_id": "user-1", "lesson_id": "1_3", "last_page": 5, "completed": True}])

        decision = ledger.open_lesson("1_3")

        assert decision.action is ResumeAction.RESUME
        assert decision.page == 5

    def test_remote_failure_falls_back_to_local(self, ledger, remote):
        ledger.record_page("1_3", 6, push_remote=False)
        remote.offline = True

        decision = ledger.open_lesson("1_3")

        assert decision.page == 6
        assert decision.source == "local"

    def test_restart_and_exit(self, ledger, remote, kv_store):
        remote.seed("lesson_progress", [{"user_id": "user-1", "lesson_id": "1_3", "last_page": 7, "completed": True}])
        decision = ledger.open_lesson("1_3")

        restart = ledger.choose_restart(decision)
        assert restart.page == 1
        assert restart.navigation is NavigationTarget.STAY
        assert kv_store.get_json(PROGRESS_KEY)["1_3"] == 1
        assert progress_row(remote, "1_3")["last_page"] == 1

        exit_transition = ledger.choose_exit(decision)
        assert exit_transition.navigation is NavigationTarget.LESSON_LIST


class TestPageChanges:
    """Local-first page persistence"""

    def test_advance_records_locally_and_remotely(self, ledger, remote, kv_store):
        transition = ledger.advance("1_3", 2)

        assert transition.page == 3
        assert transition.navigation is NavigationTarget.STAY
        assert kv_store.get_json(PROGRESS_KEY) == {"1_3": 3}

        sent = [c for c in remote.calls if c[0] == "upsert" and c[1] == "lesson_progress"][-1][2][0]
        assert sent["last_page"] == 3
        assert sent["lesson_id"] == "1_3"
        assert "completed" not in sent

    def test_page_change_offline_is_kept_locally(self, ledger, remote, kv_store, runner):
        remote.offline = True

        transition = ledger.advance("1_3", 1)

        assert transition.page == 2
        assert kv_store.get_json(PROGRESS_KEY) == {"1_3": 2}
        assert runner.failures

    def test_go_back_stops_at_first_page(self, ledger):
        assert ledger.go_back("1_3", 1).page == 1
        assert ledger.go_back("1_3", 4).page == 3

    def test_pages_are_clamped(self, ledger):
        assert ledger.record_page("1_3", 99, push_remote=False) == 7
        assert ledger.record_page("1_3", "x", push_remote=False) == 1

    def test_page_change_never_clears_remote_completion(self, ledger, remote):
        """A completed=true row is not downgraded by a later page upsert"""
        remote.seed("lesson_progress", [{"user_id": "user-1", "lesson_id": "2_1", "last_page": 7, "completed": True}])

        ledger.record_page("2_1", 3)

        row = progress_row(remote, "2_1")
        assert row["last_page"] == 3
        assert row["completed"] is True

    def test_page_change_after_local_completion_resends_flag(self, ledger, remote):
        ledger.mark_completed_locally("1_3")

        ledger.record_page("1_3", 2)

        assert progress_row(remote, "1_3")["completed"] is True


class TestPracticePages:
    """Answer checking"""

    @pytest.fixture
    def pages(self, remote):
        lines = remote.select("lessons", filters={"chapter_no": 1, "lesson_no": 3})
        questions = remote.select("lesson_questions", filters={"chapter_no": 1, "lesson_no": 3})
        return build_lesson_pages(lines, questions)

    def test_normalize_answer(self):
        assert normalize_answer("  Ni HAO ") == "ni hao"
        assert normalize_answer(None) == ""

    def test_correct_answer_ignores_case_and_outer_spaces(self, ledger, pages):
        check = ledger.check_answer(pages, 3, "  xie XIE ")
        assert check.correct
        assert check.expected == "Xie xie"

    def test_wrong_answer(self, ledger, pages):
        check = ledger.check_answer(pages, 4, "nihao")
        assert not check.correct
        assert check.has_question

    def test_page_without_question(self, ledger, pages):
        check = ledger.check_answer(pages, 2, "anything")
        assert not check.has_question
        assert not check.correct

    @pytest.mark.parametrize("page", [3, 4, 5])
    def test_advance_waits_on_practice_page(self, ledger, kv_store, remote, page):
        transition = ledger.advance("1_3", page)

        assert transition.page == page
        assert transition.navigation is NavigationTarget.STAY
        assert kv_store.get_json(PROGRESS_KEY, default={}) == {}
        assert remote.rows("lesson_progress") == []

    def test_continue_advances_regardless(self, ledger):
        assert ledger.is_practice_page(4)
        assert not ledger.is_practice_page(6)
        assert ledger.continue_after_check("1_3", 4).page == 5


class TestCompletion:
    """Completion pipeline"""

    def test_advance_past_last_page_completes(self, ledger, remote, kv_store):
        transition = ledger.advance("1_3", 7)

        assert transition.completed
        assert transition.navigation is NavigationTarget.LESSON_LIST
        assert ledger.is_completed_locally("1_3")
        assert kv_store.get_json(PROGRESS_KEY)["1_3"] == 7

        row = progress_row(remote, "1_3")
        assert row["completed"] is True
        assert row["last_page"] == 7

        learned = [r for r in remote.rows("user_vocab") if r["user_id"] == "user-1"]
        assert len(learned) == 2
        assert {r["source_lesson_key"] for r in learned} == {"1_3"}

    def test_offline_completion_still_navigates(self, ledger, remote, runner):
        remote.offline = True

        transition = ledger.complete_lesson(LessonRef(1, 3))

        assert transition.navigation is NavigationTarget.LESSON_LIST
        assert ledger.is_completed_locally("1_3")
        assert any("completion" in label for label, _ in runner.failures)

    def test_local_write_failure_still_navigates(self, ledger, monkeypatch):
        def boom(lesson):
            raise OSError("disk full")

        monkeypatch.setattr(ledger, "mark_completed_locally", boom)

        transition = ledger.complete_lesson("1_3")

        assert transition.navigation is NavigationTarget.LESSON_LIST

    def test_on_completed_hook_runs(self, kv_store, remote, runner, settings):
        calls = []
        ledger = ProgressLedger(kv_store, remote, runner, settings, on_completed=lambda: calls.append(1))

        ledger.complete_lesson("1_3")

        assert calls == [1]

    def test_no_user_keeps_progress_local(self, ledger, remote, kv_store):
        remote.user_id = None

        ledger.complete_lesson("1_3")

        assert ledger.is_completed_locally("1_3")
        assert remote.rows("lesson_progress") == []


class TestReconciliation:
    """Completed-map merge and re-push"""

    def test_completed_map_is_or_merged(self, ledger, remote, kv_store):
        kv_store.set_json(COMPLETED_KEY, {"2_1": True})
        remote.seed("lesson_progress", [
            {"user_id": "user-1", "lesson_id": "1_3", "last_page": 7, "completed": True},
            {"user_id": "user-1", "lesson_id": "1_2", "last_page": 3, "completed": False},
            {"user_id": "user-2", "lesson_id": "1_1", "last_page": 7, "completed": True},
        ])

        merged = ledger.load_completed_map()

        assert merged == {"2_1": True, "1_3": True}
        assert kv_store.get_json(COMPLETED_KEY) == merged

    def test_completed_map_offline_returns_local(self, ledger, remote, kv_store):
        kv_store.set_json(COMPLETED_KEY, {"2_1": True})
        remote.offline = True
        assert ledger.load_completed_map() == {"2_1": True}

    def test_reconcile_pushes_missing_completions(self, ledger, remote, kv_store):
        kv_store.set_json(COMPLETED_KEY, {"Ch1_L3": True, "2_1": True})
        remote.seed("lesson_progress", [{"user_id": "user-1", "lesson_id": "2_1", "last_page": 7, "completed": True}])

        result = ledger.reconcile_completions()

        assert result.success
        assert result.data["pushed"] == ["1_3"]
        assert progress_row(remote, "1_3")["completed"] is True
        assert len([r for r in remote.rows("user_vocab") if r["user_id"] == "user-1"]) == 2

        assert ledger.reconcile_completions().data["pushed"] == []

    def test_reconcile_offline_fails_softly(self, ledger, remote, kv_store):
        kv_store.set_json(COMPLETED_KEY, {"1_3": True})
        remote.offline = True

        result = ledger.reconcile_completions()

        assert not result.success
        assert result.error_code == "REMOTE_001"
