import threading
from unittest.mock import Mock

import pytest
from structlog.testing import capture_logs

from media_vault.core.close_scheduler import DeferredCloseScheduler


class RecordingHandle:
    def __init__(self, *, fail: bool = False, gate: threading.Event | None = None) -> None:
        self.close_calls = 0
        self.thread_name: str | None = None
        self._fail = fail
        self._gate = gate

    def close(self) -> None:
        if self._gate is not None:
            self._gate.wait(timeout=5.0)
        self.thread_name = threading.current_thread().name
        self.close_calls += 1
        if self._fail:
            raise OSError("flush failed")


def test_every_scheduled_handle_is_closed_exactly_once() -> None:
    handles = [RecordingHandle() for _ in range(100)]
    batches = [handles[i::4] for i in range(4)]
    barrier = threading.Barrier(len(batches))

    def schedule(batch: list[RecordingHandle]) -> None:
        barrier.wait(timeout=5.0)
        for handle in batch:
            scheduler.schedule_close(handle)

    with DeferredCloseScheduler(max_workers=4) as scheduler:
        threads = [threading.Thread(target=schedule, args=(batch,)) for batch in batches]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    assert all(handle.close_calls == 1 for handle in handles)
    assert scheduler.pending == 0


def test_closes_run_on_worker_threads() -> None:
    handle = RecordingHandle()

    with DeferredCloseScheduler() as scheduler:
        scheduler.schedule_close(handle)
        assert scheduler.drain(timeout=5.0)

    assert handle.thread_name.startswith("media-vault-close")


def test_schedule_close_returns_before_close_completes() -> None:
    gate = threading.Event()
    handle = RecordingHandle(gate=gate)

    with DeferredCloseScheduler() as scheduler:
        scheduler.schedule_close(handle)
        assert handle.close_calls == 0
        assert scheduler.pending == 1
        gate.set()

    assert handle.close_calls == 1


def test_close_failure_is_logged_not_raised() -> None:
    failing = RecordingHandle(fail=True)
    healthy = RecordingHandle()

    with capture_logs() as logs, DeferredCloseScheduler() as scheduler:
        scheduler.schedule_close(failing)
        scheduler.schedule_close(healthy)

    assert healthy.close_calls == 1
    failures = [log for log in logs if log["event"] == "Deferred close failed"]
    assert len(failures) == 1
    assert failures[0]["log_level"] == "warning"
    assert failures[0]["error"] == "flush failed"


def test_not_started_closes_inline() -> None:
    scheduler = DeferredCloseScheduler()
    handle = RecordingHandle()

    scheduler.schedule_close(handle)

    assert not scheduler.is_running
    assert handle.close_calls == 1
    assert handle.thread_name == threading.current_thread().name


def test_after_shutdown_closes_inline() -> None:
    scheduler = DeferredCloseScheduler()
    scheduler.start()
    scheduler.shutdown()
    handle = Mock()

    scheduler.schedule_close(handle)

    handle.close.assert_called_once_with()


def test_start_and_shutdown_are_idempotent() -> None:
    scheduler = DeferredCloseScheduler()

    scheduler.start()
    scheduler.start()
    assert scheduler.is_running

    scheduler.shutdown()
    scheduler.shutdown()
    assert not scheduler.is_running


def test_scheduler_can_restart_after_shutdown() -> None:
    scheduler = DeferredCloseScheduler()
    scheduler.start()
    scheduler.shutdown()
    handle = RecordingHandle()

    with scheduler:
        scheduler.schedule_close(handle)

    assert handle.close_calls == 1
    assert handle.thread_name.startswith("media-vault-close")


def test_shutdown_times_out_on_stuck_close() -> None:
    gate = threading.Event()
    handle = RecordingHandle(gate=gate)
    scheduler = DeferredCloseScheduler(drain_timeout=0.05)
    scheduler.start()
    scheduler.schedule_close(handle)

    with capture_logs() as logs:
        scheduler.shutdown()

    assert any(log["event"] == "Pending closes did not drain before shutdown" for log in logs)
    gate.set()
    assert scheduler.drain(timeout=5.0)
    assert handle.close_calls == 1


def test_drain_waits_for_pending_closes() -> None:
    gate = threading.Event()
    handle = RecordingHandle(gate=gate)

    with DeferredCloseScheduler() as scheduler:
        scheduler.schedule_close(handle)
        assert scheduler.drain(timeout=0.01) is False
        gate.set()
        assert scheduler.drain(timeout=5.0) is True


def test_non_positive_workers_rejected() -> None:
    with pytest.raises(ValueError, match="max_workers must be positive"):
        DeferredCloseScheduler(max_workers=0)
