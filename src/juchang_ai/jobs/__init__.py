"""Background job queue and worker."""

from juchang_ai.jobs.queue import JobQueue, QueueStats

__all__ = ["JobQueue", "QueueStats"]
