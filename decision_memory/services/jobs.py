"""Durable background job queue stored in the ``background_jobs`` table.

Claiming is atomic: a candidate row is selected with ``FOR UPDATE SKIP
LOCKED`` (so concurrent workers never block on or see each other's
in-flight claims) and then transitioned with a conditional UPDATE that only
succeeds while the row is still claimable. On backends without row locks
the conditional UPDATE alone guarantees that a job id is handed to exactly
one caller.

Failed jobs are retried with exponential backoff (2, 4, ... minutes after
the first, second, ... attempt). A job that exhausts MAX_ATTEMPTS stays
``failed`` forever (dead letter) and is reported, never retried.
"""
from datetime import datetime, timedelta
import logging
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from decision_memory.db import utcnow
from decision_memory.models.job import BackgroundJob, JobStatus, JobType

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
RETRY_BACKOFF_BASE = timedelta(minutes=1)
MAX_ERROR_LENGTH = 2000

CLAIMABLE_STATUSES = (JobStatus.PENDING.value, JobStatus.FAILED.value)


def enqueue_job(
    db: Session,
    job_type: JobType,
    payload: Dict[str, Any],
    commit: bool = True,
) -> uuid.UUID:
    """
    Add a pending job, eligible immediately.

    Args:
        db: Database session
        job_type: Kind of work
        payload: JSON-serialisable job arguments
        commit: Commit now; pass False to enqueue inside the caller's transaction

    Returns:
        The new job id
    """
    now = utcnow()
    job = BackgroundJob(
        type=JobType(job_type).value,
        payload=payload,
        status=JobStatus.PENDING.value,
        retry_count=0,
        next_retry_at=now,
        created_at=now,
    )
    db.add(job)
    db.flush()
    job_id = job.id
    if commit:
        db.commit()
    logger.info(f"Enqueued job {job_id} ({job.type})")
    return job_id


def _eligible(now: datetime):
    return (
        BackgroundJob.status.in_(CLAIMABLE_STATUSES),
        BackgroundJob.next_retry_at <= now,
        BackgroundJob.retry_count < MAX_ATTEMPTS,
    )


def claim_job(db: Session, now: Optional[datetime] = None) -> Optional[BackgroundJob]:
    """
    Atomically claim the oldest eligible job.

    Eligible: status pending or failed, ``next_retry_at <= now`` and
    ``retry_count < MAX_ATTEMPTS``. The claimed job moves to processing
    with its retry count incremented.

    Returns:
        The claimed job, or None if nothing is eligible
    """
    now = now or utcnow()

    # A lost race means another worker took the row, so keep going until the
    # select itself comes back empty
    while True:
        candidate_id = db.execute(
            select(BackgroundJob.id)
            .where(*_eligible(now))
            .order_by(BackgroundJob.created_at.asc(), BackgroundJob.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        ).scalar_one_or_none()

        if candidate_id is None:
            db.commit()
            return None

        result = db.execute(
            update(BackgroundJob)
            .where(BackgroundJob.id == candidate_id, *_eligible(now))
            .values(
                status=JobStatus.PROCESSING.value,
                retry_count=BackgroundJob.retry_count + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            db.commit()
            job = db.get(BackgroundJob, candidate_id, populate_existing=True)
            logger.info(f"Claimed job {job.id} ({job.type}, attempt {job.retry_count})")
            return job

        # Another worker claimed it between our select and update
        db.rollback()


def complete_job(db: Session, job_id: uuid.UUID) -> None:
    """Mark a job done. Done is terminal."""
    db.execute(
        update(BackgroundJob)
        .where(BackgroundJob.id == job_id)
        .values(status=JobStatus.DONE.value, last_error=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    logger.info(f"Job {job_id} done")


def retry_delay(retry_count: int) -> timedelta:
    """Backoff before the next attempt: one minute times 2**retry_count."""
    return RETRY_BACKOFF_BASE * (2 ** retry_count)


def fail_job(
    db: Session,
    job_id: uuid.UUID,
    retry_count: int,
    error: str,
    now: Optional[datetime] = None,
) -> None:
    """
    Record a failed attempt and schedule the retry.

    Args:
        db: Database session
        job_id: Job that failed
        retry_count: Attempts made so far (the claimed job's retry_count)
        error: Error message stored for diagnosis
        now: Reference time for the backoff (defaults to current time)
    """
    now = now or utcnow()
    next_retry_at = now + retry_delay(retry_count)
    db.execute(
        update(BackgroundJob)
        .where(BackgroundJob.id == job_id)
        .values(
            status=JobStatus.FAILED.value,
            last_error=(error or "unknown error")[:MAX_ERROR_LENGTH],
            next_retry_at=next_retry_at,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    if retry_count >= MAX_ATTEMPTS:
        logger.error(
            f"Job {job_id} exhausted {MAX_ATTEMPTS} attempts and is dead-lettered: {error}"
        )
    else:
        logger.warning(
            f"Job {job_id} failed (attempt {retry_count}/{MAX_ATTEMPTS}), "
            f"retry after {next_retry_at.isoformat()}: {error}"
        )


def _dead_filter():
    return (
        BackgroundJob.status == JobStatus.FAILED.value,
        BackgroundJob.retry_count >= MAX_ATTEMPTS,
    )


def list_dead_jobs(db: Session, limit: int = 50) -> List[BackgroundJob]:
    """Jobs that exhausted their attempts, oldest first."""
    return (
        db.query(BackgroundJob)
        .filter(*_dead_filter())
        .order_by(BackgroundJob.created_at.asc())
        .limit(limit)
        .all()
    )


def queue_stats(db: Session) -> Dict[str, int]:
    """Job counts per status, plus dead-lettered jobs."""
    counts = {status.value: 0 for status in JobStatus}
    for status, count in (
        db.query(BackgroundJob.status, func.count(BackgroundJob.id))
        .group_by(BackgroundJob.status)
        .all()
    ):
        counts[status] = count
    counts["dead"] = db.query(func.count(BackgroundJob.id)).filter(*_dead_filter()).scalar() or 0
    return counts
