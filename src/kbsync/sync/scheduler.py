"""Periodic trigger that keeps at most one sync pass in flight."""

from __future__ import annotations

import threading

from kbsync.core.logging import Logger, get_logger
from kbsync.sync.engine import SyncEngine
from kbsync.sync.errors import SchedulerError, SyncPassError
from kbsync.sync.models import SyncSummary

__all__ = ["SyncScheduler"]


class SyncScheduler:
    """Run :meth:`SyncEngine.run_sync_pass` every ``interval_seconds``.

    A single daemon thread owns the cadence. Triggers that arrive while a
    pass is running are skipped and counted, never queued behind it. The
    stop event is shared with the engine so :meth:`stop` lets the running
    pass finish its current batch and then return.
    """

    def __init__(
        self,
        engine: SyncEngine,
        *,
        interval_seconds: float,
        run_on_start: bool = True,
        logger: Logger | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.run_on_start = run_on_start
        self.logger = logger or get_logger(__name__, component="scheduler")
        self._stop = threading.Event()
        self._pass_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._skipped = 0
        self._completed = 0
        self._failed = 0
        self._last_summary: SyncSummary | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def skipped_triggers(self) -> int:
        return self._skipped

    @property
    def completed_passes(self) -> int:
        return self._completed

    @property
    def failed_passes(self) -> int:
        return self._failed

    @property
    def last_summary(self) -> SyncSummary | None:
        return self._last_summary

    def start(self) -> None:
        if self.running:
            raise SchedulerError("Scheduler is already running.", state="running")
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name="kbsync-scheduler",
            daemon=True,
        )
        self._thread.start()
        self.logger.info(
            "scheduler-started",
            interval_seconds=self.interval_seconds,
            run_on_start=self.run_on_start,
        )

    def stop(self, timeout: float | None = None) -> bool:
        """Signal the worker to exit and wait up to ``timeout`` seconds.

        Returns ``True`` when the worker has exited.
        """

        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        stopped = thread is None or not thread.is_alive()
        self.logger.info(
            "scheduler-stopped",
            clean=stopped,
            completed=self._completed,
            failed=self._failed,
            skipped=self._skipped,
        )
        return stopped

    def trigger(self) -> SyncSummary | None:
        """Run one pass now unless another one is in flight.

        Returns the pass summary, or ``None`` when the trigger was skipped
        or the pass failed (the failure is logged).
        """

        if not self._pass_lock.acquire(blocking=False):
            self._skipped += 1
            self.logger.warning(
                "scheduler-trigger-skipped",
                reason="pass-in-flight",
                skipped=self._skipped,
            )
            return None
        try:
            summary = self.engine.run_sync_pass(stop_event=self._stop)
        except SyncPassError as exc:
            self._failed += 1
            self.logger.error(
                "scheduler-pass-failed",
                error=str(exc),
                partial=exc.summary.to_mapping() if exc.summary else None,
            )
            return None
        except Exception:
            self._failed += 1
            self.logger.exception("scheduler-pass-crashed")
            return None
        finally:
            self._pass_lock.release()

        self._completed += 1
        self._last_summary = summary
        return summary

    def _loop(self) -> None:
        if self.run_on_start and not self._stop.is_set():
            self.trigger()
        while not self._stop.wait(self.interval_seconds):
            self.trigger()
