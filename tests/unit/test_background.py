# =============================================================================
# tests/unit/test_background.py
# Unit Tests for BackgroundTaskRunner
# =============================================================================

from hanyu_sync.errors import TransientRemoteFailure
from hanyu_sync.offline.background import BackgroundTaskRunner


def offline_write(n):
    raise TransientRemoteFailure(f"write {n} dropped", table="lesson_progress", operation="upsert")


class TestBackgroundTaskRunner:
    """Fire-and-forget lane"""

    def test_failure_never_reaches_caller(self):
        runner = BackgroundTaskRunner(inline=True)

        future = runner.submit("upsert page", offline_write, 1)

        assert isinstance(future.exception(), TransientRemoteFailure)
        assert [label for label, _ in runner.failures] == ["upsert page"]

    def test_recorded_failures_are_capped(self):
        runner = BackgroundTaskRunner(inline=True, max_failures=3)

        for n in range(10):
            runner.submit(f"write {n}", offline_write, n)

        assert len(runner.failures) == 3
        assert [label for label, _ in runner.failures] == ["write 7", "write 8", "write 9"]

    def test_threaded_lane_runs_in_order(self):
        runner = BackgroundTaskRunner()
        seen = []
        try:
            for n in range(5):
                runner.submit(f"task {n}", seen.append, n)
            assert runner.drain(timeout=5)
        finally:
            runner.shutdown()

        assert seen == [0, 1, 2, 3, 4]
        assert runner.pending_count == 0
