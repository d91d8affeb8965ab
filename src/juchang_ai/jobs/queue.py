"""
Background job queue.

Database-backed queue for fire-and-forget work (message embeddings,
preference extraction, expiry sweeps) so none of it runs inside the
request that triggered it.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from juchang_ai.config import settings
from juchang_ai.models.db import BackgroundJob, JobStatus, JobType
from juchang_ai.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class QueueStats:
    """Statistics about the job queue."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0

    @property
    def active(self) -> int:
        """Jobs that are pending or processing."""
        return self.pending + self.processing


class JobQueue:
    """
    Job queue over the ``background_jobs`` table.

    On PostgreSQL, claiming uses SELECT FOR UPDATE SKIP LOCKED so several
    workers can poll safely. Failed jobs are retried with exponential
    backoff until ``max_attempts``.
    """

    def __init__(self, session: Session, backoff_base_seconds: Optional[float] = None):
        self.session = session
        self.backoff_base = (
            backoff_base_seconds
            if backoff_base_seconds is not None
            else settings.worker_backoff_base_seconds
        )

    def enqueue(
        self,
        job_type: JobType,
        payload: dict,
        max_attempts: Optional[int] = None,
        run_after: Optional[datetime] = None,
    ) -> uuid.UUID:
        """
        Add a job to the queue.

        Args:
            job_type: Kind of work
            payload: JSON-serializable arguments for the handler
            max_attempts: Retry ceiling (defaults to settings)
            run_after: Earliest time the job may be claimed

        Returns:
            UUID of created job
        """
        job = BackgroundJob(
            job_type=job_type,
            payload=payload,
            status=JobStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts or settings.worker_max_attempts,
            run_after=run_after or utcnow(),
        )
        self.session.add(job)
        self.session.flush()

        logger.debug(f"Enqueued {job_type.value} job {job.id}")
        return job.id

    def claim_next(self, now: Optional[datetime] = None) -> Optional[BackgroundJob]:
        """
        Atomically claim the next runnable job.

        Returns:
            BackgroundJob if one is available, None otherwise
        """
        now = now or utcnow()
        job = (
            self.session.query(BackgroundJob)
            .filter(
                BackgroundJob.status == JobStatus.PENDING,
                BackgroundJob.run_after <= now,
            )
            .order_by(BackgroundJob.run_after, BackgroundJob.created_at)
            .with_for_update(skip_locked=True)
            .first()
        )

        if not job:
            return None

        job.status = JobStatus.PROCESSING
        job.started_at = now
        job.attempts += 1
        self.session.flush()

        logger.debug(
            f"Claimed {job.job_type.value} job {job.id} "
            f"(attempt {job.attempts}/{job.max_attempts})"
        )
        return job

    def complete(
        self,
        job_id: uuid.UUID,
        success: bool,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Mark a job as completed, or schedule its retry.

        A failed job goes back to pending with ``run_after`` pushed out by
        ``backoff_base * 2 ** (attempts - 1)`` seconds, or to failed once
        its attempts are used up.
        """
        now = now or utcnow()
        job = self.session.get(BackgroundJob, job_id)
        if not job:
            logger.warning(f"Job {job_id} not found when trying to complete")
            return

        if success:
            job.status = JobStatus.COMPLETED
            job.completed_at = now
            job.error_message = None
            logger.debug(f"Job {job_id} completed")
        else:
            job.error_message = error
            if job.attempts >= job.max_attempts:
                job.status = JobStatus.FAILED
                job.completed_at = now
                logger.warning(f"Job {job_id} failed after {job.attempts} attempts: {error}")
            else:
                delay = self.backoff_base * (2 ** (job.attempts - 1))
                job.status = JobStatus.PENDING
                job.started_at = None
                job.run_after = now + timedelta(seconds=delay)
                logger.info(
                    f"Job {job_id} failed, retrying in {delay:.0f}s "
                    f"(attempt {job.attempts}/{job.max_attempts}): {error}"
                )

        self.session.flush()

    def get_stats(self) -> QueueStats:
        """Counts by status."""
        results = (
            self.session.query(BackgroundJob.status, func.count(BackgroundJob.id))
            .group_by(BackgroundJob.status)
            .all()
        )

        stats = QueueStats()
        for status, count in results:
            if status == JobStatus.PENDING:
                stats.pending = count
            elif status == JobStatus.PROCESSING:
                stats.processing = count
            elif status == JobStatus.COMPLETED:
                stats.completed = count
            elif status == JobStatus.FAILED:
                stats.failed = count
            stats.total += count

        return stats

    def cleanup_stale_jobs(
        self, timeout_minutes: int = 30, now: Optional[datetime] = None
    ) -> int:
        """
        Reset jobs that have been processing for too long.

        This handles cases where a worker crashed mid-job.
        """
        threshold = (now or utcnow()) - timedelta(minutes=timeout_minutes)
        result = (
            self.session.query(BackgroundJob)
            .filter(
                BackgroundJob.status == JobStatus.PROCESSING,
                BackgroundJob.started_at < threshold,
            )
            .update(
                {
                    BackgroundJob.status: JobStatus.PENDING,
                    BackgroundJob.started_at: None,
                },
                synchronize_session=False,
            )
        )

        if result > 0:
            logger.warning(f"Reset {result} stale background jobs")

        return result

    def purge_completed(self, days: int = 7, now: Optional[datetime] = None) -> int:
        """Delete finished jobs older than ``days``."""
        threshold = (now or utcnow()) - timedelta(days=days)
        result = (
            self.session.query(BackgroundJob)
            .filter(
                BackgroundJob.status.in_([JobStatus.COMPLETED, JobStatus.FAILED]),
                BackgroundJob.completed_at < threshold,
            )
            .delete(synchronize_session=False)
        )

        if result > 0:
            logger.info(f"Purged {result} finished jobs older than {days} days")

        return result
