import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional

from common import storage
from common.config import settings
from common.job_schema import JobStatus
from worker.processor import process_job

logger = logging.getLogger(__name__)


@dataclass
class DispatchReport:
    found: int = 0
    submitted: int = 0
    failed: int = 0


class Dispatcher:
    """Feeds pending jobs to the processor on a bounded thread pool.

    Ticks only submit work, so a slow compression never delays the next tick,
    and a tick lists no more jobs than there are idle workers.
    The dispatcher does not remember what it already submitted: a job picked up
    twice is deduplicated by the pending -> processing claim.
    """

    def __init__(self, batch_size: Optional[int] = None, processor: Callable[[str], object] = process_job):
        self.batch_size = batch_size or settings.dispatch_batch_size
        self._processor = processor
        self._pool = ThreadPoolExecutor(max_workers=self.batch_size, thread_name_prefix="compress")
        self._lock = threading.Lock()
        self._in_flight = 0

    def submit(self, job_id: str) -> Future:
        """Queues one job; errors are logged by the future's callback, never raised here."""
        with self._lock:
            self._in_flight += 1
        try:
            future = self._pool.submit(self._processor, job_id)
        except Exception:
            self._release_slot()
            raise
        future.add_done_callback(lambda f: self._finished(job_id, f))
        return future

    @property
    def idle_workers(self) -> int:
        with self._lock:
            return max(self.batch_size - self._in_flight, 0)

    def tick(self) -> DispatchReport:
        report = DispatchReport()
        # Jobs still queued stay pending; listing them again would queue duplicates.
        free = self.idle_workers
        if free == 0:
            logger.debug("All %d workers busy; skipping this tick", self.batch_size)
            return report
        try:
            pending = storage.list_jobs_by_status(JobStatus.PENDING, free)
        except Exception:
            logger.exception("Could not list pending jobs; retrying on the next tick")
            return report

        report.found = len(pending)
        for job in pending:
            try:
                self.submit(job.id)
                report.submitted += 1
            except Exception:
                logger.exception("Could not submit job %s", job.id)
                report.failed += 1

        if report.found:
            logger.info(
                "Dispatched %d of %d pending job(s) (%d failed)",
                report.submitted, report.found, report.failed,
            )
        return report

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def _release_slot(self) -> None:
        with self._lock:
            self._in_flight -= 1

    def _finished(self, job_id: str, future: Future) -> None:
        self._release_slot()
        self._log_outcome(job_id, future)

    @staticmethod
    def _log_outcome(job_id: str, future: Future) -> None:
        if future.cancelled():
            logger.warning("Job %s was cancelled before it ran", job_id)
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Processing job %s raised: %s", job_id, exc, exc_info=exc)
