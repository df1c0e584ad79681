import threading


class WaitGroup:
    """
    Thread-safe counter of in-flight operations, based on Go's sync.WaitGroup.

    Example:
        ```python
        wg = WaitGroup()

        wg.add()
        executor.submit(work).add_done_callback(lambda _: wg.done())

        # On shutdown:
        wg.wait(timeout=5.0)
        ```
    """

    def __init__(self) -> None:
        self._count = 0
        self._cond = threading.Condition()

    def add(self, n: int = 1) -> None:
        """
        Increment the counter.

        Args:
            n: Amount to increment (default 1).

        Raises:
            ValueError: If n is not a strictly positive integer.
        """
        if n <= 0:
            msg = "'n' must be a strictly positive integer."
            raise ValueError(msg)
        with self._cond:
            self._count += n

    def done(self) -> None:
        """Decrement the counter by 1 and wake waiters at zero. No-op if already zero."""
        with self._cond:
            if self._count == 0:
                return
            self._count -= 1
            if self._count == 0:
                self._cond.notify_all()

    def wait(self, timeout: float | None = None) -> bool:
        """
        Block until the counter reaches zero.

        Args:
            timeout: Maximum seconds to wait, or None to wait forever.

        Returns:
            True if the counter reached zero, False on timeout.
        """
        with self._cond:
            return self._cond.wait_for(lambda: self._count == 0, timeout=timeout)

    def __len__(self) -> int:
        return self._count

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self._count})"
