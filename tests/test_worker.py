"""Tests for the worker loop."""
import threading
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from conftest import plan_response
from decision_memory.models.decision import DecisionStatus
from decision_memory.models.job import BackgroundJob, JobStatus, JobType
from decision_memory.services.handlers import HANDLERS
from decision_memory.services.jobs import enqueue_job
from decision_memory.worker import Worker, parse_args, run_workers


def _job(db_session, job_id):
    db_session.expire_all()
    return db_session.get(BackgroundJob, job_id)


class TestRunOnce:
    """Test processing a single job."""

    def test_success_marks_done(self, db_session, session_factory, make_context):
        calls = []
        job_id = enqueue_job(db_session, JobType.DRAFT_AND_SEARCH, {"decision_id": "x"})
        handlers = {JobType.DRAFT_AND_SEARCH.value: lambda db, payload, ctx: calls.append(payload)}

        worker = Worker(session_factory, handlers, make_context())

        assert worker.run_once() is True
        assert calls == [{"decision_id": "x"}]
        assert _job(db_session, job_id).status == JobStatus.DONE.value

    def test_handler_error_schedules_retry(self, db_session, session_factory, make_context):
        """A failing handler leaves the job failed with its error recorded."""
        def boom(db, payload, ctx):
            raise RuntimeError("provider down")

        job_id = enqueue_job(db_session, JobType.EXTRACT_AND_EMBED, {"decision_id": "x"})
        worker = Worker(session_factory, {JobType.EXTRACT_AND_EMBED.value: boom}, make_context())

        assert worker.run_once() is True

        job = _job(db_session, job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.retry_count == 1
        assert "provider down" in job.last_error

    def test_unknown_type_fails_job(self, db_session, session_factory, make_context):
        job_id = enqueue_job(db_session, JobType.DRAFT_AND_SEARCH, {})
        worker = Worker(session_factory, {}, make_context())

        worker.run_once()

        job = _job(db_session, job_id)
        assert job.status == JobStatus.FAILED.value
        assert "Unknown job type" in job.last_error

    def test_idle_queue(self, session_factory, make_context):
        assert Worker(session_factory, HANDLERS, make_context()).run_once() is False

    def test_end_to_end_draft(self, db_session, session_factory, make_decision, make_context, broadcaster):
        """The real handler drafts a plan through the worker."""
        decision = make_decision()
        job_id = enqueue_job(db_session, JobType.DRAFT_AND_SEARCH, {"decision_id": str(decision.id)})

        Worker(session_factory, HANDLERS, make_context(plan_response(7))).run_once()

        db_session.expire_all()
        assert _job(db_session, job_id).status == JobStatus.DONE.value
        assert len(decision.plan) == 7
        assert decision.status == DecisionStatus.DRAFTING.value
        assert broadcaster.published == [str(decision.id)]


class TestRunForever:
    """Test the polling loop."""

    def test_drain_processes_all_then_exits(self, db_session, session_factory, make_context):
        handled = []
        for i in range(3):
            enqueue_job(db_session, JobType.DRAFT_AND_SEARCH, {"n": i})
        handlers = {JobType.DRAFT_AND_SEARCH.value: lambda db, payload, ctx: handled.append(payload["n"])}

        Worker(session_factory, handlers, make_context(), poll_interval=0).run_forever(drain=True)

        assert sorted(handled) == [0, 1, 2]

    def test_store_errors_back_off_and_continue(self, db_session, session_factory, make_context):
        """A claim that cannot reach the store never ends the loop."""
        handled = []
        enqueue_job(db_session, JobType.DRAFT_AND_SEARCH, {"n": 1})
        handlers = {JobType.DRAFT_AND_SEARCH.value: lambda db, payload, ctx: handled.append(payload["n"])}
        worker = Worker(session_factory, handlers, make_context(), poll_interval=0, error_backoff=0)

        from decision_memory.services import jobs
        real_claim = jobs.claim_job
        failures = [OperationalError("SELECT", {}, Exception("connection refused"))]

        def flaky_claim(db, now=None):
            if failures:
                raise failures.pop()
            return real_claim(db, now)

        with patch("decision_memory.worker.claim_job", side_effect=flaky_claim):
            worker.run_forever(drain=True)

        assert handled == [1]

    def test_stop_ends_loop(self, session_factory, make_context):
        stop = threading.Event()
        worker = Worker(session_factory, HANDLERS, make_context(), poll_interval=0.01, stop_event=stop)
        thread = threading.Thread(target=worker.run_forever)
        thread.start()

        worker.stop()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert worker.stopped

    def test_run_workers_drain(self, db_session, session_factory, make_context):
        handled = []
        lock = threading.Lock()
        for i in range(4):
            enqueue_job(db_session, JobType.DRAFT_AND_SEARCH, {"n": i})

        def handler(db, payload, ctx):
            with lock:
                handled.append(payload["n"])

        with patch.dict(HANDLERS, {JobType.DRAFT_AND_SEARCH.value: handler}):
            run_workers(1, make_context(), session_factory=session_factory, drain=True)

        assert sorted(handled) == [0, 1, 2, 3]


class TestCli:
    """Test argument parsing."""

    def test_defaults(self):
        args = parse_args([])
        assert args.concurrency == 1
        assert args.once is False

    def test_once_and_concurrency(self):
        args = parse_args(["--concurrency", "4", "--once"])
        assert args.concurrency == 4
        assert args.once is True

    def test_concurrency_must_be_positive(self):
        with pytest.raises(SystemExit):
            parse_args(["--concurrency", "0"])
