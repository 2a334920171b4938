"""
Tests for NudgeWorker.run_once: delivery, retry bookkeeping and per-job isolation.
"""
from datetime import timedelta
from unittest.mock import patch

from everly.datetime_utils import utcnow
from everly.models import db, NudgeJob, NudgeLog, NudgeStatus
from everly.nudges.providers import SendResult, StubNudgeProvider
from everly.nudges.worker import NudgeWorker


class FailingProvider:
    def __init__(self):
        self.calls = 0

    def send(self, nudge):
        self.calls += 1
        return SendResult.failure("smtp down")


class SelectiveProvider:
    """Raises for one member, succeeds for everyone else."""

    def __init__(self, bad_member):
        self.bad_member = bad_member
        self.sent = []

    def send(self, nudge):
        if nudge.member_id == self.bad_member:
            raise RuntimeError("provider exploded")
        self.sent.append(nudge)
        return SendResult.success()


def make_all_due():
    for job in NudgeJob.query.all():
        job.available_at = utcnow() - timedelta(seconds=1)
    db.session.commit()


class TestRunOnce:
    """Tests for a single worker pull."""

    def test_empty_queue(self, store):
        result = NudgeWorker(store, StubNudgeProvider()).run_once(max_retries=3)
        assert result.to_dict() == {"taken": 0, "sent": 0, "failed": 0, "requeued": 0}

    def test_delivers_and_marks_sent(self, store, make_job):
        store.enqueue(make_job(member_id="a"))
        store.enqueue(make_job(member_id="b"))

        result = NudgeWorker(store, StubNudgeProvider()).run_once(max_retries=3)

        assert result.taken == 2
        assert result.sent == 2
        assert {j.status for j in NudgeJob.query.all()} == {NudgeStatus.SENT.value}
        assert {log.status for log in NudgeLog.query.all()} == {NudgeStatus.SENT.value}

    def test_batch_size_bounds_the_pull(self, store, make_job):
        for i in range(5):
            store.enqueue(make_job(member_id=f"mem_{i}"))

        result = NudgeWorker(store, StubNudgeProvider(), batch_size=2).run_once(max_retries=3)

        assert result.taken == 2
        assert NudgeJob.query.filter_by(status=NudgeStatus.QUEUED.value).count() == 3

    def test_provider_receives_rendered_payload(self, store, make_job):
        store.enqueue(make_job(member_id="a", message="Hi Ana", variables={"name": "Ana"}, channel="dm"))
        provider = SelectiveProvider(bad_member=None)

        NudgeWorker(store, provider).run_once(max_retries=3)

        (sent,) = provider.sent
        assert sent.hub_id == "hub_1"
        assert sent.channel == "dm"
        assert sent.message == "Hi Ana"
        assert sent.variables == {"name": "Ana"}

    def test_always_failing_provider_reaches_failed(self, store, make_job):
        result = store.enqueue(make_job())
        provider = FailingProvider()
        worker = NudgeWorker(store, provider)

        first = worker.run_once(max_retries=3)
        assert first.requeued == 1
        job = db.session.get(NudgeJob, result.queue_id)
        assert job.attempt == 1
        assert job.available_at > utcnow()

        # Not due yet, so nothing is taken
        assert worker.run_once(max_retries=3).taken == 0

        make_all_due()
        second = worker.run_once(max_retries=3)
        assert second.requeued == 1

        make_all_due()
        third = worker.run_once(max_retries=3)
        assert third.failed == 1
        assert third.requeued == 0

        job = db.session.get(NudgeJob, result.queue_id)
        log = db.session.get(NudgeLog, result.log_id)
        assert job.status == NudgeStatus.FAILED.value
        assert job.attempt == 3
        assert job.last_error == "smtp down"
        assert log.status == NudgeStatus.FAILED.value
        assert log.error == "smtp down"
        assert provider.calls == 3

        make_all_due()
        assert worker.run_once(max_retries=3).taken == 0

    def test_backoff_grows_between_attempts(self, store, make_job):
        result = store.enqueue(make_job())
        worker = NudgeWorker(store, FailingProvider())

        worker.run_once(max_retries=5)
        first_delay = db.session.get(NudgeJob, result.queue_id).available_at - utcnow()

        make_all_due()
        worker.run_once(max_retries=5)
        second_delay = db.session.get(NudgeJob, result.queue_id).available_at - utcnow()

        assert second_delay > first_delay

    def test_provider_exception_is_isolated(self, store, make_job):
        store.enqueue(make_job(member_id="good"))
        bad = store.enqueue(make_job(member_id="bad"))
        provider = SelectiveProvider(bad_member="bad")

        result = NudgeWorker(store, provider).run_once(max_retries=3)

        assert result.taken == 2
        assert result.sent == 1
        assert result.requeued == 1
        assert [n.member_id for n in provider.sent] == ["good"]
        job = db.session.get(NudgeJob, bad.queue_id)
        assert job.status == NudgeStatus.QUEUED.value
        assert job.attempt == 1
        assert "provider exploded" in job.last_error

    def test_error_while_recording_success_counts_as_attempt(self, store, make_job):
        result = store.enqueue(make_job())

        with patch.object(store, "mark_success", side_effect=RuntimeError("db down")):
            outcome = NudgeWorker(store, StubNudgeProvider()).run_once(max_retries=3)

        assert outcome.sent == 0
        assert outcome.requeued == 1
        job = db.session.get(NudgeJob, result.queue_id)
        assert job.attempt == 1
        assert job.last_error.startswith("RuntimeError")

    def test_error_while_recording_failure_leaves_lease(self, store, make_job):
        result = store.enqueue(make_job())

        with patch.object(store, "mark_failure", side_effect=RuntimeError("db down")):
            outcome = NudgeWorker(store, FailingProvider()).run_once(max_retries=3)

        assert outcome.requeued == 1
        job = db.session.get(NudgeJob, result.queue_id)
        assert job.locked_at is not None
        assert job.attempt == 0

    def test_single_attempt_budget(self, store, make_job):
        store.enqueue(make_job())
        outcome = NudgeWorker(store, FailingProvider()).run_once(max_retries=1)
        assert outcome.failed == 1
