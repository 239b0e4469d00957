"""Background worker: claims queued jobs and runs their handlers.

Run with ``python -m decision_memory.worker [--concurrency N] [--once]``.
Each of the N threads runs its own claim loop with its own session; the
claim protocol keeps them from ever processing the same job.
"""
import argparse
import logging
import signal
import threading
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from decision_memory.db import SessionLocal
from decision_memory.middleware.logging import setup_logging
from decision_memory.services.embeddings import get_embedding_provider
from decision_memory.services.handlers import HANDLERS, Handler, HandlerContext
from decision_memory.services.jobs import claim_job, complete_job, fail_job
from decision_memory.services.llm import get_completion_provider
from decision_memory.services.notifier import build_broadcaster
from decision_memory.settings import settings
from decision_memory.startup import run_startup_validation

logger = logging.getLogger(__name__)


class Worker:
    """One claim loop."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        handlers: Dict[str, Handler],
        context: HandlerContext,
        poll_interval: Optional[float] = None,
        error_backoff: Optional[float] = None,
        name: str = "worker",
        stop_event: Optional[threading.Event] = None,
    ):
        self.session_factory = session_factory
        self.handlers = handlers
        self.context = context
        self.poll_interval = settings.WORKER_POLL_INTERVAL if poll_interval is None else poll_interval
        self.error_backoff = settings.WORKER_ERROR_BACKOFF if error_backoff is None else error_backoff
        self.name = name
        self._stop = stop_event or threading.Event()

    def stop(self) -> None:
        """Ask the loop to exit after the job in hand, if any."""
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def run_once(self) -> bool:
        """
        Claim and process at most one job.

        A handler error (or an unknown job type) is recorded on the job for
        retry. Errors talking to the store while claiming or recording the
        result propagate to the caller.

        Returns:
            True if a job was claimed, False if the queue had nothing eligible
        """
        db = self.session_factory()
        try:
            job = claim_job(db)
            if job is None:
                return False

            # Plain values: the session is rolled back if the handler fails
            job_id, job_type, attempt = job.id, job.type, job.retry_count
            payload = dict(job.payload or {})

            try:
                handler = self.handlers.get(job_type)
                if handler is None:
                    raise ValueError(f"Unknown job type: {job_type}")
                handler(db, payload, self.context)
            except Exception as e:
                db.rollback()
                logger.error(f"[{self.name}] Job {job_id} ({job_type}) failed: {e}", exc_info=True)
                fail_job(db, job_id, attempt, f"{type(e).__name__}: {e}")
            else:
                complete_job(db, job_id)
            return True
        finally:
            db.close()

    def run_forever(self, drain: bool = False) -> None:
        """
        Poll until stopped.

        Sleeps ``poll_interval`` when the queue is idle and ``error_backoff``
        after a store error; store errors never end the loop.

        Args:
            drain: Return as soon as the queue has nothing eligible
        """
        logger.info(f"[{self.name}] started")
        while not self._stop.is_set():
            try:
                processed = self.run_once()
            except Exception as e:
                logger.error(f"[{self.name}] Queue unavailable, backing off {self.error_backoff}s: {e}")
                self._stop.wait(self.error_backoff)
                continue

            if not processed:
                if drain:
                    break
                self._stop.wait(self.poll_interval)
        logger.info(f"[{self.name}] stopped")


def build_context() -> HandlerContext:
    """Handler collaborators from settings (the worker has no local subscribers)."""
    return HandlerContext(
        completion=get_completion_provider(),
        broadcaster=build_broadcaster(),
        embedder=get_embedding_provider(),
    )


def run_workers(
    concurrency: int,
    context: HandlerContext,
    session_factory: Callable[[], Session] = SessionLocal,
    drain: bool = False,
    stop_event: Optional[threading.Event] = None,
) -> List[Worker]:
    """
    Run ``concurrency`` worker loops in threads and wait for all of them.

    Returns:
        The finished workers
    """
    stop_event = stop_event or threading.Event()
    workers = [
        Worker(session_factory, HANDLERS, context, name=f"worker-{i + 1}", stop_event=stop_event)
        for i in range(concurrency)
    ]
    threads = [
        threading.Thread(target=w.run_forever, kwargs={"drain": drain}, name=w.name)
        for w in workers
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return workers


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="python -m decision_memory.worker",
        description="Process background jobs for drafted plans and outcome insights.",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=settings.WORKER_CONCURRENCY,
        help="Number of worker threads (default: WORKER_CONCURRENCY)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process every eligible job, then exit",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    args = parser.parse_args(argv)
    if args.concurrency < 1:
        parser.error("--concurrency must be at least 1")
    return args


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)
    run_startup_validation()

    stop_event = threading.Event()

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, finishing in-flight jobs")
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info(f"Starting {args.concurrency} worker(s){' in drain mode' if args.once else ''}")
    run_workers(args.concurrency, build_context(), drain=args.once, stop_event=stop_event)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
