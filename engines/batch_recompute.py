"""Batch recomputation of risk, gaps and recommendations.

Students are recomputed on a ``ThreadPoolExecutor``. A student whose
recompute does not finish within the cycle budget is skipped and picked up
again next cycle. A student whose recompute raises keeps its last-known-good
outputs and is deferred with exponential backoff.
"""

from __future__ import annotations

import concurrent.futures
import functools
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from engine_config import BatchConfig

logger = logging.getLogger(__name__)


@dataclass
class RecomputeFailure:
    """A failed recompute for one student."""

    student_id: str
    error: str
    failures: int
    failed_at: datetime
    retry_after: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "student_id": self.student_id,
            "error": self.error,
            "failures": self.failures,
            "failed_at": self.failed_at.isoformat(),
            "retry_after": self.retry_after.isoformat(),
        }


@dataclass
class CycleReport:
    succeeded: List[str] = field(default_factory=list)
    failed: List[RecomputeFailure] = field(default_factory=list)
    timed_out: List[str] = field(default_factory=list)
    deferred: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": list(self.succeeded),
            "failed": [failure.to_dict() for failure in self.failed],
            "timed_out": list(self.timed_out),
            "deferred": list(self.deferred),
        }


class BatchRecomputeRunner:
    """Run ``recompute(student_id)`` across students with timeouts and backoff."""

    def __init__(
        self,
        recompute: Callable[[str], Any],
        config: BatchConfig,
        *,
        on_failure: Optional[Callable[[RecomputeFailure], None]] = None,
    ) -> None:
        self._recompute = recompute
        self.config = config
        self._on_failure = on_failure
        self._failures: Dict[str, RecomputeFailure] = {}
        self._state_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ----- backoff -----------------------------------------------------
    def backoff_seconds(self, failures: int) -> float:
        if failures <= 0:
            return 0.0
        delay = self.config.backoff_base_seconds * (2 ** (failures - 1))
        return min(self.config.backoff_max_seconds, delay)

    def failure_for(self, student_id: str) -> Optional[RecomputeFailure]:
        with self._state_lock:
            return self._failures.get(student_id)

    def is_due(self, student_id: str, now: Optional[datetime] = None) -> bool:
        moment = now or datetime.now(timezone.utc)
        failure = self.failure_for(student_id)
        return failure is None or moment >= failure.retry_after

    def _record_failure(self, student_id: str, exc: BaseException, now: datetime) -> RecomputeFailure:
        with self._state_lock:
            previous = self._failures.get(student_id)
            count = previous.failures + 1 if previous else 1
            failure = RecomputeFailure(
                student_id=student_id,
                error=f"{type(exc).__name__}: {exc}",
                failures=count,
                failed_at=now,
                retry_after=now + timedelta(seconds=self.backoff_seconds(count)),
            )
            self._failures[student_id] = failure
        logger.warning(
            "Recompute failed for %s (attempt %d), retrying after %s: %s",
            student_id, count, failure.retry_after.isoformat(), failure.error,
        )
        if self._on_failure is not None:
            self._on_failure(failure)
        return failure

    def _clear_failure(self, student_id: str) -> None:
        with self._state_lock:
            self._failures.pop(student_id, None)

    # ----- cycles ------------------------------------------------------
    def run_cycle(self, student_ids: Iterable[str], now: Optional[datetime] = None) -> CycleReport:
        """Recompute every due student once and report the outcome."""

        moment = now or datetime.now(timezone.utc)
        report = CycleReport()
        due: List[str] = []
        for student_id in dict.fromkeys(student_ids):
            if self.is_due(student_id, moment):
                due.append(student_id)
            else:
                report.deferred.append(student_id)
        if not due:
            return report

        workers = min(self.config.max_workers, len(due))
        budget = self.config.timeout_seconds * math.ceil(len(due) / workers)
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=workers,
            thread_name_prefix="recompute",
        )
        started = time.monotonic()
        try:
            futures = {executor.submit(self._recompute, student_id): student_id for student_id in due}
            done, pending = concurrent.futures.wait(futures, timeout=budget)
            for future in futures:
                student_id = futures[future]
                if future in pending:
                    if not future.cancel():
                        future.add_done_callback(functools.partial(self._log_late_result, student_id))
                    report.timed_out.append(student_id)
                    continue
                exc = future.exception()
                if exc is not None:
                    report.failed.append(self._record_failure(student_id, exc, moment))
                else:
                    self._clear_failure(student_id)
                    report.succeeded.append(student_id)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if report.timed_out:
            logger.warning(
                "Recompute timed out for %d student(s) after %.1fs; retrying next cycle: %s",
                len(report.timed_out), budget, ", ".join(report.timed_out),
            )
        logger.info(
            "Recompute cycle finished in %.2fs: %d ok, %d failed, %d timed out, %d deferred",
            time.monotonic() - started,
            len(report.succeeded),
            len(report.failed),
            len(report.timed_out),
            len(report.deferred),
        )
        return report

    def _log_late_result(self, student_id: str, future: concurrent.futures.Future) -> None:
        # Runs on the worker thread once an abandoned recompute finally ends.
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning("Recompute for %s failed after timing out: %s", student_id, exc)

    # ----- background loop --------------------------------------------
    def start(self, students: Callable[[], Iterable[str]], interval_seconds: float) -> None:
        """Run cycles on a daemon thread every ``interval_seconds``."""

        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop,
            args=(students, interval_seconds),
            name="recompute-scheduler",
            daemon=True,
        )
        self._thread.start()

    def _loop(self, students: Callable[[], Iterable[str]], interval_seconds: float) -> None:
        while not self._stop.is_set():
            try:
                self.run_cycle(students())
            except Exception:
                logger.exception("Recompute cycle aborted")
            self._stop.wait(interval_seconds)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
