"""Maintenance scheduler - runs housekeeping jobs on a fixed interval.

Jobs are plain callables returning the number of records they touched.
A failing job is logged and does not prevent the others from running.
"""
import logging
import threading
import time
from typing import Callable, Dict, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

Job = Tuple[str, Callable[[], int]]


class MaintenanceScheduler:
    """Daemon thread that runs every job once per interval."""

    def __init__(
        self,
        jobs: Sequence[Job],
        interval_seconds: float = 24 * 60 * 60,
        run_on_start: bool = False,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.jobs = tuple(jobs)
        self.interval_seconds = interval_seconds
        self.run_on_start = run_on_start
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> Dict[str, Optional[int]]:
        """Run every job now. Failed jobs report None."""
        results: Dict[str, Optional[int]] = {}
        for name, job in self.jobs:
            start = time.perf_counter()
            try:
                results[name] = job()
            except Exception as e:
                results[name] = None
                logger.error(
                    "MAINTENANCE_JOB_FAILED",
                    extra={"job": name, "error_type": type(e).__name__, "error": str(e)}
                )
                continue
            logger.info(
                "MAINTENANCE_JOB_COMPLETED",
                extra={
                    "job": name,
                    "result": results[name],
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                }
            )
        return results

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="nathguard-maintenance",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "MAINTENANCE_SCHEDULER_STARTED",
            extra={"jobs": [name for name, _ in self.jobs], "interval_seconds": self.interval_seconds}
        )

    def _run(self) -> None:
        if self.run_on_start:
            self.run_once()
        while not self._stopping.wait(self.interval_seconds):
            self.run_once()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the thread and wait for a running job to finish."""
        self._stopping.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("MAINTENANCE_SCHEDULER_STOPPED")
