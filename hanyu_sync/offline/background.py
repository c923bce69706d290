# =============================================================================
# hanyu_sync/offline/background.py
# Fire-and-Forget Background Tasks and View Cancellation
# =============================================================================
"""
BackgroundTaskRunner - explicit lane for work the UI never waits on.

Remote writes triggered by user actions (finishing a lesson, a page change,
a cache revalidation) are submitted here instead of being awaited. A task
failure is captured and logged; submit() itself never raises, so the caller's
next statement (typically "navigate back to the lesson list") always runs.

A single worker thread keeps the cooperative, one-thing-at-a-time model of
the app: tasks run in submission order and never overlap each other.
"""

from __future__ import annotations
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Deque, Optional, Set, Tuple

from hanyu_sync.errors import handle_error
from hanyu_sync.logging import get_logger

logger = get_logger(__name__)

# Most recent task failures kept for inspection; older ones live in the log
MAX_RECORDED_FAILURES = 50


class ViewScope:
    """
    Cancellation flag for one mounted view.

    In-flight fetches check ``cancelled`` before committing state to the
    view. Cancelling does not stop remote writes that are already queued.
    """

    def __init__(self, name: str = "view"):
        self.name = name
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()
        logger.debug(f"View scope '{self.name}' cancelled")


class BackgroundTaskRunner:
    """
    Single-lane executor for fire-and-forget tasks.

    Usage:
        runner = BackgroundTaskRunner()
        runner.submit("upsert lesson progress", ledger.push_progress, ref)
        ...
        runner.drain()   # tests / shutdown

    Args:
        inline: Run tasks synchronously in the caller's thread (tests)
        name: Thread name prefix for the worker
        max_failures: How many recent failures ``failures`` keeps
    """

    def __init__(self, inline: bool = False, name: str = "HanyuSync", max_failures: int = MAX_RECORDED_FAILURES):
        self.inline = inline
        self.name = name
        self._executor: Optional[ThreadPoolExecutor] = None
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()
        self.failures: Deque[Tuple[str, BaseException]] = deque(maxlen=max_failures)

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=self.name)
        return self._executor

    def submit(self, label: str, func: Callable[..., Any], *args, **kwargs) -> Future:
        """
        Schedule func(*args, **kwargs) and return its Future.

        Never raises: scheduling errors and task errors are logged and
        recorded in ``failures`` (newest last, capped).
        """
        if self.inline:
            future: Future = Future()
            try:
                future.set_result(func(*args, **kwargs))
            except Exception as e:
                future.set_exception(e)
            self._on_done(label, future)
            return future

        try:
            with self._lock:
                future = self._get_executor().submit(func, *args, **kwargs)
                self._pending.add(future)
        except RuntimeError as e:
            # Executor already shut down
            logger.warning(f"Could not schedule background task '{label}': {e}")
            future = Future()
            future.set_exception(e)
            self._on_done(label, future)
            return future

        future.add_done_callback(lambda f: self._on_done(label, f))
        return future

    def _on_done(self, label: str, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
        if future.cancelled():
            logger.debug(f"Background task '{label}' cancelled")
            return
        error = future.exception()
        if error is not None:
            self.failures.append((label, error))
            handle_error(error, context=f"Background task '{label}'")
        else:
            logger.debug(f"Background task '{label}' finished")

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every task submitted so far (and tasks they submit) is done.

        Returns:
            True if the lane is idle, False on timeout
        """
        while True:
            with self._lock:
                pending = {f for f in self._pending if not f.done()}
            if not pending:
                return True
            done, not_done = wait(pending, timeout=timeout)
            if not_done:
                return False

    def shutdown(self, wait_for_tasks: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait_for_tasks)
            self._executor = None
