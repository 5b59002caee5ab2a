"""Bounded-wait task runner for automation fired from request paths."""

from __future__ import annotations

import concurrent.futures
import logging
from typing import Callable, Protocol

from carepipeline.core.config import settings

logger = logging.getLogger(__name__)


class TaskRunner(Protocol):
    def run(self, fn: Callable[[], object], *, timeout: float) -> bool:
        """Run fn, waiting at most timeout seconds. Returns True if it finished."""


class BoundedTaskRunner:
    """
    Submit work to a thread pool and wait for it up to a bound.

    If the bound elapses the work keeps running in the background and the
    caller moves on. Nothing is cancelled: a caller-level timeout is the only
    cancellation mechanism, and delayed steps are already durable as pending
    log rows before they are needed.
    """

    def __init__(self, max_workers: int | None = None) -> None:
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers or settings.AUTOMATION_WORKERS,
            thread_name_prefix="automation",
        )

    def run(self, fn: Callable[[], object], *, timeout: float) -> bool:
        future = self._executor.submit(fn)
        future.add_done_callback(_log_background_failure)
        try:
            future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            logger.info(f"Automation still running after {timeout:.1f}s, continuing in background")
            return False
        except Exception:
            # Already logged by the done callback
            return True
        return True

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


class InlineTaskRunner:
    """Run work synchronously on the calling thread (CLI, tests)."""

    def run(self, fn: Callable[[], object], *, timeout: float) -> bool:
        try:
            fn()
        except Exception:
            logger.exception("Automation task failed")
        return True


def _log_background_failure(future: concurrent.futures.Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error("Automation task failed", exc_info=exc)


runner: TaskRunner = BoundedTaskRunner()
