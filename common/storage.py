import logging
import os
import time
from pathlib import Path
from typing import List, Optional, Set, Union

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import col, select

from common.database import session_scope
from common.errors import DuplicateId, NotFound
from common.job_schema import Job, JobStatus

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


# ------------------------------------------------------------------------------
# LOCAL FILESYSTEM HELPERS
# Upload and output files are shared by request handlers, compressions and the
# retention sweep, so every deletion has to tolerate "already gone".
# ------------------------------------------------------------------------------

def delete_file(path: Optional[PathLike]) -> bool:
    """Removes a file. Returns False if there was nothing to remove."""
    if not path:
        return False
    try:
        os.remove(path)
    except FileNotFoundError:
        return False
    return True


def file_size(path: PathLike) -> int:
    return os.stat(path).st_size


# ------------------------------------------------------------------------------
# PUBLIC API FUNCTIONS
# The API, the dispatcher and the sweeper call THESE. Each call runs in its own
# transaction; status transitions are conditional updates so concurrent callers
# never need a shared lock.
# ------------------------------------------------------------------------------

def create_job(job: Job) -> Job:
    """Inserts a new job. Duplicate external ids are accepted, duplicate internal ids are not."""
    with session_scope() as session:
        session.add(job)
        try:
            session.flush()
        except IntegrityError as exc:
            raise DuplicateId(f"Job {job.id} already exists") from exc
    logger.info("Created job %s for %s (%s)", job.id, job.display_name, job.media_kind.value)
    return job


def get_job(job_id: str) -> Optional[Job]:
    """Fetches a job by its internal id."""
    with session_scope() as session:
        return session.get(Job, job_id)


def get_latest_job(external_id: str) -> Job:
    """Resolves a client-facing id to the most recently created job carrying it."""
    with session_scope() as session:
        statement = (
            select(Job)
            .where(Job.external_id == external_id)
            .order_by(col(Job.created_at).desc())
            .limit(1)
        )
        job = session.exec(statement).first()
    if job is None:
        raise NotFound(f"Job not found: {external_id}")
    return job


def list_jobs_by_status(status: JobStatus, limit: int) -> List[Job]:
    """Oldest jobs first, at most `limit` of them."""
    with session_scope() as session:
        statement = (
            select(Job)
            .where(Job.status == status)
            .order_by(col(Job.created_at).asc())
            .limit(limit)
        )
        return list(session.exec(statement).all())


def list_jobs_older_than(cutoff: float) -> List[Job]:
    with session_scope() as session:
        statement = select(Job).where(col(Job.created_at) < cutoff).order_by(col(Job.created_at).asc())
        return list(session.exec(statement).all())


def known_paths() -> Set[str]:
    """Every source and result path still referenced by a job row."""
    with session_scope() as session:
        rows = session.exec(select(Job.source_path, Job.result_path)).all()
    paths: Set[str] = set()
    for source_path, result_path in rows:
        paths.add(os.path.abspath(source_path))
        if result_path:
            paths.add(os.path.abspath(result_path))
    return paths


def claim_job(job_id: str) -> Optional[Job]:
    """Moves a job from pending to processing.

    This is a compare-and-swap on the status column: only one caller can win it
    for a given job. Returns None when the job is missing or no longer pending.
    """
    with session_scope() as session:
        result = session.exec(
            update(Job)
            .where(col(Job.id) == job_id, col(Job.status) == JobStatus.PENDING)
            .values(status=JobStatus.PROCESSING, updated_at=time.time())
        )
        if result.rowcount != 1:
            return None
        return session.get(Job, job_id)


def complete_job(job_id: str, result_path: PathLike, compressed_size: int) -> Optional[Job]:
    """processing -> completed, writing the result in the same statement."""
    with session_scope() as session:
        result = session.exec(
            update(Job)
            .where(col(Job.id) == job_id, col(Job.status) == JobStatus.PROCESSING)
            .values(
                status=JobStatus.COMPLETED,
                result_path=str(result_path),
                compressed_size=compressed_size,
                error_message=None,
                updated_at=time.time(),
            )
        )
        if result.rowcount != 1:
            return None
        return session.get(Job, job_id)


def fail_job(job_id: str, error_message: str) -> Optional[Job]:
    """processing -> failed, recording why."""
    with session_scope() as session:
        result = session.exec(
            update(Job)
            .where(col(Job.id) == job_id, col(Job.status) == JobStatus.PROCESSING)
            .values(
                status=JobStatus.FAILED,
                error_message=error_message,
                result_path=None,
                compressed_size=None,
                updated_at=time.time(),
            )
        )
        if result.rowcount != 1:
            return None
        return session.get(Job, job_id)


def delete_job(job_id: str) -> bool:
    with session_scope() as session:
        result = session.exec(delete(Job).where(col(Job.id) == job_id))
        return result.rowcount == 1


def recover_stalled_jobs(cutoff: float, error_message: str) -> int:
    """Fails jobs left in processing since before `cutoff` (e.g. by a crashed process)."""
    with session_scope() as session:
        result = session.exec(
            update(Job)
            .where(col(Job.status) == JobStatus.PROCESSING, col(Job.updated_at) < cutoff)
            .values(status=JobStatus.FAILED, error_message=error_message, updated_at=time.time())
        )
        recovered = result.rowcount
    if recovered:
        logger.warning("Marked %d stalled job(s) as failed", recovered)
    return recovered
