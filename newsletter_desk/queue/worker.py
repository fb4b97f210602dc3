"""RQ worker that runs queued newsletter sends."""
from __future__ import annotations

import os
import sys

import redis
from rq import Queue, Worker

from newsletter_desk.core.config import settings
from newsletter_desk.utils.logger import configure_logging, logger

_send_queue: Queue | None = None


def get_queue() -> Queue:
    global _send_queue
    if _send_queue is None:
        connection = redis.Redis.from_url(settings.redis_url)
        _send_queue = Queue(settings.rq_queue_name, connection=connection)
    return _send_queue


def run_worker() -> None:
    """Entry point called by `python -m newsletter_desk.queue.worker`."""

    configure_logging()
    if (
        settings.environment == "development"
        and sys.platform == "darwin"
        and not os.environ.get("OBJC_DISABLE_INITIALIZE_FORK_SAFETY")
    ):
        logger.warning(
            "OBJC_DISABLE_INITIALIZE_FORK_SAFETY=YES is recommended on macOS to avoid fork-related crashes with RQ workers. "
            "Applying it for this process."
        )
        os.environ["OBJC_DISABLE_INITIALIZE_FORK_SAFETY"] = "YES"

    queue = get_queue()
    worker = Worker([queue], connection=queue.connection)
    worker.work()


if __name__ == "__main__":  # pragma: no cover - manual execution
    run_worker()
