from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable

from shopsim.checkout.models import Failure, StepOutcome
from shopsim.core.observability import bind_context

logger = logging.getLogger(__name__)


class BackgroundDispatcher:
    """Runs fire-and-forget steps off the response path.

    Submitted jobs are observed only through logs and their own spans;
    nothing flows back to the submitter.
    """

    def __init__(self, max_workers: int = 4):
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="checkout-bg")
        self._lock = threading.Lock()
        self._pending: set[Future] = set()

    def submit(self, name: str, job: Callable[[], StepOutcome]) -> Future:
        bound = bind_context(job)

        def run() -> StepOutcome:
            try:
                outcome = bound()
            except Exception as exc:
                logger.exception("background job crashed: job=%s", name)
                outcome = Failure("internal_error", message=repr(exc))

            if isinstance(outcome, Failure):
                logger.warning(
                    "background job failed: job=%s reason=%s retryable=%s message=%s",
                    name,
                    outcome.reason,
                    outcome.retryable,
                    outcome.message,
                )
            else:
                logger.debug("background job done: job=%s", name)
            return outcome

        future = self._pool.submit(run)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def drain(self, timeout: float | None = None) -> bool:
        """Wait for submitted jobs; returns False if some are still running after ``timeout``."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, timeout: float | None = 5.0) -> None:
        if not self.drain(timeout):
            logger.warning("background dispatcher shut down with %d job(s) still running", self.pending())
        self._pool.shutdown(wait=False, cancel_futures=True)
