import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from common import storage
from common.config import settings
from common.errors import StoreError

logger = logging.getLogger(__name__)

STALLED_JOB_MESSAGE = "Processing was interrupted before completion"


@dataclass
class SweepReport:
    jobs_deleted: int = 0
    job_errors: int = 0
    orphans_deleted: int = 0
    orphan_errors: int = 0


def sweep(
    now: Optional[float] = None,
    retention_hours: Optional[float] = None,
    directories: Optional[Iterable[Path]] = None,
) -> SweepReport:
    """Deletes jobs older than the retention window, their files, and orphaned files.

    One bad job or file is logged and counted; it never stops the sweep.
    """
    now = time.time() if now is None else now
    retention_hours = settings.retention_hours if retention_hours is None else retention_hours
    if directories is None:
        directories = (settings.upload_dir, settings.compressed_dir)
    cutoff = now - retention_hours * 3600

    logger.info("Starting cleanup: deleting jobs and files older than %s hours", retention_hours)
    report = SweepReport()

    try:
        expired = storage.list_jobs_older_than(cutoff)
    except StoreError as exc:
        logger.error("Cleanup could not list expired jobs: %s", exc)
        return report

    logger.info("Found %d expired job(s) to clean up", len(expired))
    for job in expired:
        try:
            storage.delete_file(job.source_path)
            storage.delete_file(job.result_path)
            storage.delete_job(job.id)
            report.jobs_deleted += 1
        except Exception:
            logger.exception("Error cleaning up job %s", job.id)
            report.job_errors += 1

    try:
        referenced = storage.known_paths()
    except StoreError as exc:
        # Without the referenced set every old file would look orphaned.
        logger.error("Cleanup skipped the orphan scan: %s", exc)
        _log_summary(report)
        return report

    for directory in directories:
        _sweep_orphans(Path(directory), cutoff, referenced, report)

    _log_summary(report)
    return report


def _sweep_orphans(directory: Path, cutoff: float, referenced: set, report: SweepReport) -> None:
    if not directory.is_dir():
        return
    for entry in directory.iterdir():
        try:
            if not entry.is_file():
                continue
            if os.path.abspath(entry) in referenced:
                continue
            if entry.stat().st_mtime >= cutoff:
                continue
            if storage.delete_file(entry):
                logger.info("Deleted orphaned file: %s", entry)
                report.orphans_deleted += 1
        except OSError:
            logger.exception("Error checking file %s", entry)
            report.orphan_errors += 1


def recover_stalled_jobs(now: Optional[float] = None, stalled_minutes: Optional[int] = None) -> int:
    """Fails jobs stuck in processing longer than `stalled_minutes` (0 disables)."""
    now = time.time() if now is None else now
    stalled_minutes = settings.stalled_job_minutes if stalled_minutes is None else stalled_minutes
    if stalled_minutes <= 0:
        return 0
    return storage.recover_stalled_jobs(now - stalled_minutes * 60, STALLED_JOB_MESSAGE)


def _log_summary(report: SweepReport) -> None:
    logger.info(
        "Cleanup completed: %d jobs deleted, %d job errors, %d orphaned files deleted, %d file errors",
        report.jobs_deleted, report.job_errors, report.orphans_deleted, report.orphan_errors,
    )
