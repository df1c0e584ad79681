"""
Background release of stream handles.

Closing a handle can mean flushing and writing an authentication tag, so
callers on a latency-sensitive path hand the handle over instead of closing
it themselves. The scheduler owns a worker pool with an explicit lifecycle:
``start()`` before use, ``shutdown()`` drains every pending close and joins
the workers.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Self

import structlog

from media_vault.core.streams import Closeable
from media_vault.core.wait_group import WaitGroup

logger = structlog.get_logger(__name__)


class DeferredCloseScheduler:
    """
    Closes handles on a background thread pool.

    Close failures are logged and never reach the caller that scheduled them.
    When the scheduler is not running, handles are closed inline so every
    handle still gets a close attempt.
    """

    def __init__(self, max_workers: int = 2, *, drain_timeout: float = 10.0) -> None:
        """
        Args:
            max_workers: Number of worker threads.
            drain_timeout: Seconds ``shutdown()`` waits for pending closes by default.
        """
        if max_workers <= 0:
            msg = "max_workers must be positive"
            raise ValueError(msg)
        self._max_workers = max_workers
        self._drain_timeout = drain_timeout
        self._executor: ThreadPoolExecutor | None = None
        self._pending = WaitGroup()
        self._lock = threading.Lock()

    def __enter__(self) -> Self:
        self.start()
        return self

    def __exit__(self, *_: object) -> None:
        self.shutdown()

    @property
    def is_running(self) -> bool:
        return self._executor is not None

    @property
    def pending(self) -> int:
        """Closes scheduled but not yet finished."""
        return len(self._pending)

    def start(self) -> None:
        """Start the worker pool. No-op if already running."""
        with self._lock:
            if self._executor is not None:
                return
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_workers, thread_name_prefix="media-vault-close"
            )
        logger.debug("Close scheduler started", workers=self._max_workers)

    def schedule_close(self, handle: Closeable) -> None:
        """
        Close ``handle`` in the background and return immediately.

        No ordering is guaranteed between scheduled closes.
        """
        self._pending.add()
        with self._lock:
            executor = self._executor
            if executor is not None:
                try:
                    executor.submit(self._close, handle)
                    return
                except RuntimeError:
                    # Pool is shutting down underneath us.
                    pass
        logger.debug("Close scheduler not running, closing inline", handle=repr(handle))
        self._close(handle)

    def drain(self, timeout: float | None = None) -> bool:
        """
        Wait for every scheduled close to finish.

        Returns:
            True if nothing is pending any more, False on timeout.
        """
        return self._pending.wait(timeout)

    def shutdown(self, timeout: float | None = None) -> None:
        """
        Drain pending closes, then stop the workers. Idempotent.

        Args:
            timeout: Seconds to wait for pending closes; defaults to the
                configured drain timeout.
        """
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is None:
            return

        timeout = self._drain_timeout if timeout is None else timeout
        drained = self._pending.wait(timeout)
        if not drained:
            logger.warning("Pending closes did not drain before shutdown", pending=self.pending)
        # A stuck close must not hang shutdown; its worker is left to finish alone.
        executor.shutdown(wait=drained)
        logger.debug("Close scheduler stopped")

    def _close(self, handle: Closeable) -> None:
        try:
            handle.close()
        except Exception as e:
            logger.warning("Deferred close failed", handle=repr(handle), error=str(e))
        finally:
            self._pending.done()
