import logging
from pathlib import Path
from typing import Callable, Optional

from common import storage
from common.config import settings
from common.errors import ExecutionError
from common.job_schema import Job
from worker.compression import compress_file

logger = logging.getLogger(__name__)

Executor = Callable[..., int]


def result_path_for(job: Job) -> Path:
    """Output location: <compressed_dir>/<external id><original extension>."""
    suffix = Path(job.display_name).suffix or Path(job.source_path).suffix
    return settings.compressed_dir / f"{job.external_id}{suffix.lower()}"


def process_job(job_id: str, executor: Executor = compress_file) -> Optional[Job]:
    """Drives one job from pending to completed or failed.

    Safe to call more than once for the same job: only the caller that wins the
    pending -> processing claim does any work, the others return None. Failures
    are recorded on the job, never raised to the caller.
    """
    job = storage.claim_job(job_id)
    if job is None:
        logger.info("Job %s is not pending (already claimed, finished or deleted); skipping", job_id)
        return None

    destination = result_path_for(job)
    logger.info("Processing job %s: %s (%s)", job.id, job.display_name, job.media_kind.value)

    try:
        compressed_size = executor(job.source_path, job.media_kind, job.options, destination)
    except ExecutionError as exc:
        logger.error("Compression failed for job %s: %s", job.id, exc)
        return _record_failure(job, str(exc) or "Compression failed")
    except Exception as exc:
        logger.exception("Unexpected error while compressing job %s", job.id)
        return _record_failure(job, f"{type(exc).__name__}: {exc}")

    finished = storage.complete_job(job.id, destination, compressed_size)
    if finished is None:
        current = storage.get_job(job.id)
        if current is None:
            logger.warning("Job %s disappeared before completion; discarding %s", job.id, destination)
        else:
            logger.warning(
                "Job %s was marked %s while compressing (%s); discarding %s",
                job.id, current.status.value, current.error_message, destination,
            )
        storage.delete_file(destination)
        return None

    logger.info(
        "Compression completed for job %s: %d -> %d bytes",
        job.id, finished.original_size, compressed_size,
    )
    return finished


def _record_failure(job: Job, message: str) -> Optional[Job]:
    failed = storage.fail_job(job.id, message)
    if failed is None:
        logger.warning("Job %s disappeared before its failure could be recorded", job.id)
    return failed
