"""Tests for the database-backed job queue."""

from datetime import timedelta

from juchang_ai.jobs import JobQueue
from juchang_ai.models.db import BackgroundJob, JobStatus, JobType


class TestJobQueue:
    def test_enqueue(self, db_session, now):
        queue = JobQueue(db_session)
        job_id = queue.enqueue(JobType.EMBED_MESSAGE, {"message_id": "m1"}, run_after=now)

        job = db_session.get(BackgroundJob, job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert job.max_attempts == 3
        assert job.payload == {"message_id": "m1"}

    def test_claim_respects_run_after(self, db_session, now):
        queue = JobQueue(db_session)
        queue.enqueue(JobType.EXPIRE_MATCHES, {}, run_after=now + timedelta(minutes=5))

        assert queue.claim_next(now=now) is None
        job = queue.claim_next(now=now + timedelta(minutes=5))
        assert job is not None
        assert job.status == JobStatus.PROCESSING
        assert job.attempts == 1

    def test_claim_oldest_first(self, db_session, now):
        queue = JobQueue(db_session)
        later = queue.enqueue(JobType.EMBED_MESSAGE, {}, run_after=now)
        earlier = queue.enqueue(
            JobType.EMBED_MESSAGE, {}, run_after=now - timedelta(minutes=1)
        )

        assert queue.claim_next(now=now).id == earlier
        assert queue.claim_next(now=now).id == later
        assert queue.claim_next(now=now) is None

    def test_retry_backoff_doubles(self, db_session, now):
        queue = JobQueue(db_session, backoff_base_seconds=5)
        job_id = queue.enqueue(JobType.EMBED_MESSAGE, {}, run_after=now)

        queue.claim_next(now=now)
        queue.complete(job_id, success=False, error="boom", now=now)
        job = db_session.get(BackgroundJob, job_id)
        assert job.status == JobStatus.PENDING
        assert job.run_after == now + timedelta(seconds=5)
        assert job.error_message == "boom"

        retry_at = now + timedelta(seconds=5)
        queue.claim_next(now=retry_at)
        queue.complete(job_id, success=False, error="boom", now=retry_at)
        assert job.run_after == retry_at + timedelta(seconds=10)

    def test_failed_after_max_attempts(self, db_session, now):
        queue = JobQueue(db_session)
        job_id = queue.enqueue(JobType.EXPIRE_MATCHES, {}, max_attempts=1, run_after=now)

        queue.claim_next(now=now)
        queue.complete(job_id, success=False, error="gone", now=now)

        job = db_session.get(BackgroundJob, job_id)
        assert job.status == JobStatus.FAILED
        assert job.completed_at == now

    def test_success_clears_error(self, db_session, now):
        queue = JobQueue(db_session, backoff_base_seconds=0)
        job_id = queue.enqueue(JobType.EMBED_MESSAGE, {}, run_after=now)
        queue.claim_next(now=now)
        queue.complete(job_id, success=False, error="flaky", now=now)
        queue.claim_next(now=now)
        queue.complete(job_id, success=True, now=now)

        job = db_session.get(BackgroundJob, job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.error_message is None
        assert job.attempts == 2

    def test_stats(self, db_session, now):
        queue = JobQueue(db_session)
        done = queue.enqueue(JobType.EMBED_MESSAGE, {}, run_after=now)
        queue.enqueue(JobType.EMBED_MESSAGE, {}, run_after=now + timedelta(hours=1))
        queue.claim_next(now=now)
        queue.complete(done, success=True, now=now)

        stats = queue.get_stats()
        assert stats.completed == 1
        assert stats.pending == 1
        assert stats.total == 2
        assert stats.active == 1

    def test_cleanup_stale_jobs(self, db_session, now):
        queue = JobQueue(db_session)
        job_id = queue.enqueue(JobType.EMBED_MESSAGE, {}, run_after=now)
        queue.claim_next(now=now)

        assert queue.cleanup_stale_jobs(30, now=now + timedelta(minutes=10)) == 0
        assert queue.cleanup_stale_jobs(30, now=now + timedelta(minutes=31)) == 1
        db_session.expire_all()
        assert db_session.get(BackgroundJob, job_id).status == JobStatus.PENDING

    def test_purge_completed(self, db_session, now):
        queue = JobQueue(db_session)
        job_id = queue.enqueue(JobType.EMBED_MESSAGE, {}, run_after=now)
        queue.claim_next(now=now)
        queue.complete(job_id, success=True, now=now)

        assert queue.purge_completed(7, now=now + timedelta(days=1)) == 0
        assert queue.purge_completed(7, now=now + timedelta(days=8)) == 1
        assert queue.get_stats().total == 0
