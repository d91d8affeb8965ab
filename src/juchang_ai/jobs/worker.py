"""
Background worker for queued jobs.

Polls the job queue and runs embedding back-fill, preference extraction
and expiry sweeps one job at a time, outside any chat request. An expiry
sweep is scheduled on a fixed interval.
"""

import logging
import threading
import time
import uuid
from contextlib import AbstractContextManager
from typing import Callable, Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from juchang_ai.broker.partner import PartnerService
from juchang_ai.config import settings
from juchang_ai.db.connection import background_session
from juchang_ai.db.repositories import MessageRepository
from juchang_ai.llm import LLMProvider, get_default_provider
from juchang_ai.memory.extractor import PreferenceExtractor
from juchang_ai.memory.store import MemoryStore
from juchang_ai.memory.working import WorkingMemory
from juchang_ai.models.db import BackgroundJob, JobStatus, JobType, MessageRole
from juchang_ai.models.runtime import ChatTurn

from .queue import JobQueue

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]

EXTRACTION_WINDOW = 10


class JobWorker:
    """
    Background worker that processes jobs from the queue.

    Features:
    - Single-threaded so it never competes with itself for rows
    - Graceful shutdown support
    - Retry with backoff via the queue
    - Stale job cleanup and periodic expiry sweeps
    """

    def __init__(
        self,
        poll_interval: Optional[float] = None,
        session_factory: SessionFactory = background_session,
        provider: Optional[LLMProvider] = None,
        stale_job_timeout_minutes: int = 30,
        purge_completed_days: int = 7,
        expiry_interval_seconds: float = 300.0,
    ):
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.worker_poll_interval
        )
        self.session_factory = session_factory
        self.provider = provider
        self.stale_job_timeout_minutes = stale_job_timeout_minutes
        self.purge_completed_days = purge_completed_days
        self.expiry_interval = expiry_interval_seconds
        self._running = False
        self._stop_event = threading.Event()
        self._last_expiry: Optional[float] = None
        self._jobs_processed = 0
        self._jobs_succeeded = 0
        self._jobs_failed = 0
        self._last_job_time: Optional[float] = None

        self._handlers: dict[JobType, Callable[[Session, dict], None]] = {
            JobType.EMBED_MESSAGE: self._embed_message,
            JobType.EXTRACT_PREFERENCES: self._extract_preferences,
            JobType.EXPIRE_MATCHES: self._expire_matches,
        }

    def run(self) -> None:
        """Poll and process jobs until stopped."""
        logger.info("Job worker starting")
        self._running = True
        self._cleanup()

        while not self._stop_event.is_set():
            try:
                self._schedule_expiry()
                if not self.process_next_job():
                    self._stop_event.wait(self.poll_interval)
            except OperationalError as e:
                logger.warning(f"Job worker DB unavailable: {e}")
                self._stop_event.wait(5.0)
            except Exception as e:
                logger.error(f"Error in job worker loop: {e}", exc_info=True)
                self._stop_event.wait(1.0)

        logger.info(
            f"Job worker stopped. "
            f"Processed: {self._jobs_processed}, "
            f"Succeeded: {self._jobs_succeeded}, "
            f"Failed: {self._jobs_failed}"
        )
        self._running = False

    def stop(self) -> None:
        logger.info("Job worker stop requested")
        self._stop_event.set()

    @property
    def is_running(self) -> bool:
        return self._running

    def process_next_job(self) -> bool:
        """
        Claim and run the next runnable job.

        Returns:
            True if a job was processed, False if the queue is empty
        """
        with self.session_factory() as session:
            queue = JobQueue(session)
            job = queue.claim_next()
            if job is None:
                return False

            job_id, job_type, payload = job.id, job.job_type, dict(job.payload or {})
            self._jobs_processed += 1
            logger.info(f"Processing {job_type.value} job {job_id}")

            # Persist the claim so a rollback below cannot reset the attempt count.
            session.commit()

            try:
                self._handlers[job_type](session, payload)
                queue.complete(job_id, success=True)
                session.commit()
                self._jobs_succeeded += 1
                self._last_job_time = time.time()
            except Exception as e:
                session.rollback()
                queue.complete(job_id, success=False, error=str(e))
                session.commit()
                self._jobs_failed += 1
                logger.warning(f"Failed {job_type.value} job {job_id}: {e}")

        return True

    def _get_provider(self) -> Optional[LLMProvider]:
        if self.provider is None:
            self.provider = get_default_provider()
        return self.provider

    def _embed_message(self, session: Session, payload: dict) -> None:
        provider = self._get_provider()
        if provider is None:
            logger.info("No model provider configured, message kept without embedding")
            return

        messages = MessageRepository(session)
        message = messages.get(uuid.UUID(payload["message_id"]))
        if message is None:
            raise ValueError(f"Message {payload['message_id']} not found")

        vector = provider.embed(message.text)
        messages.set_embedding(message.id, vector)
        if message.role == MessageRole.USER:
            WorkingMemory(session).add_interest_vector(message.user_id, vector)

    def _extract_preferences(self, session: Session, payload: dict) -> None:
        user_id = uuid.UUID(payload["user_id"])
        thread_id = uuid.UUID(payload["thread_id"])
        rows = MemoryStore(session).get_messages(thread_id, limit=EXTRACTION_WINDOW)
        turns = [
            ChatTurn(role=row.role.value, content=row.text)
            for row in rows
            if row.message_type == "text"
        ]

        extracted = PreferenceExtractor(self._get_provider()).extract(turns)
        if extracted.is_empty:
            return
        WorkingMemory(session).update_profile(user_id, extracted)

    def _expire_matches(self, session: Session, payload: dict) -> None:
        intents, matches = PartnerService(session).expire_stale()
        if intents or matches:
            logger.info(f"Expired {intents} partner intents and {matches} matches")

    def _schedule_expiry(self) -> None:
        now = time.monotonic()
        if self._last_expiry is not None and now - self._last_expiry < self.expiry_interval:
            return
        self._last_expiry = now
        with self.session_factory() as session:
            pending = (
                session.query(BackgroundJob.id)
                .filter(
                    BackgroundJob.job_type == JobType.EXPIRE_MATCHES,
                    BackgroundJob.status.in_([JobStatus.PENDING, JobStatus.PROCESSING]),
                )
                .first()
            )
            if pending is None:
                JobQueue(session).enqueue(JobType.EXPIRE_MATCHES, {}, max_attempts=1)

    def _cleanup(self) -> None:
        try:
            with self.session_factory() as session:
                queue = JobQueue(session)

                stale_count = queue.cleanup_stale_jobs(self.stale_job_timeout_minutes)
                if stale_count:
                    logger.info(f"Reset {stale_count} stale jobs")

                purged_count = queue.purge_completed(self.purge_completed_days)
                if purged_count:
                    logger.info(f"Purged {purged_count} old completed jobs")
        except OperationalError as e:
            logger.warning(f"Job worker cleanup skipped (DB unavailable): {e}")
        except Exception as e:
            logger.error(f"Error during job worker cleanup: {e}")


# Singleton worker instance for app lifecycle management
_worker: Optional[JobWorker] = None
_worker_thread: Optional[threading.Thread] = None


def start_worker() -> None:
    """Start the global job worker in a background thread."""
    global _worker, _worker_thread

    if _worker is not None and _worker.is_running:
        logger.warning("Job worker is already running")
        return

    _worker = JobWorker()
    _worker_thread = threading.Thread(target=_worker.run, daemon=True, name="job-worker")
    _worker_thread.start()
    logger.info("Started job worker background thread")


def stop_worker(timeout: float = 10.0) -> None:
    """Stop the global job worker gracefully."""
    global _worker, _worker_thread

    if _worker is None:
        return

    _worker.stop()

    if _worker_thread is not None and _worker_thread.is_alive():
        _worker_thread.join(timeout=timeout)
        if _worker_thread.is_alive():
            logger.warning(f"Job worker thread did not stop within {timeout}s timeout")

    _worker = None
    _worker_thread = None
    logger.info("Stopped job worker")


def get_worker_stats() -> dict[str, object]:
    if _worker is None:
        return {"running": False}

    return {
        "running": _worker.is_running,
        "jobs_processed": _worker._jobs_processed,
        "jobs_succeeded": _worker._jobs_succeeded,
        "jobs_failed": _worker._jobs_failed,
        "last_job_time": _worker._last_job_time,
    }
