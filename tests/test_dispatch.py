"""
Tests for the durable dispatch queue.
"""
import threading
import time
from datetime import timedelta

import numpy as np
import pytest

from app.models import models
from app.models.models import Channel, JobKind, JobStatus
from app.services.dispatch_service import (
    Dispatcher,
    DispatchQueueError,
    FireCampaign,
    SendMessage,
    backoff_delay,
)
from app.services.messaging_service import PermanentDeliveryError

from conftest import NOW, TENANT_ID


class Recorder:
    """Handler double that fails a configurable number of times."""

    def __init__(self, failures=0, error=RuntimeError):
        self.failures = failures
        self.error = error
        self.calls = []
        self.exhausted = []
        self._lock = threading.Lock()

    def handle(self, db, claimed):
        with self._lock:
            self.calls.append(claimed.id)
            if self.failures:
                self.failures -= 1
                raise self.error("provider timeout")
        return f"ext-{claimed.id[:8]}"

    def on_exhausted(self, db, claimed, error):
        self.exhausted.append((claimed.id, error))


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def queue(session_factory, clock, recorder):
    queue = Dispatcher(
        session_factory,
        concurrency=3,
        max_attempts=3,
        backoff_base=2,
        backoff_max=300,
        max_jitter=5,
        rng=np.random.default_rng(7),
        clock=clock,
    )
    queue.register(JobKind.SEND_MESSAGE, recorder.handle, on_exhausted=recorder.on_exhausted)
    queue.register(JobKind.FIRE_CAMPAIGN, lambda db, claimed: None)
    return queue


@pytest.fixture
def campaign(db, tenant):
    campaign = models.Campaign(
        tenant_id=TENANT_ID,
        name="Spring",
        template="{{customer.name}}様",
        criteria=[],
        channels=["LINE"],
        status=models.CampaignStatus.SENDING,
    )
    db.add(campaign)
    db.commit()
    return campaign


def enqueue(queue, db, campaign, count=1, delay=0.0):
    jobs = [(SendMessage(campaign.id, f"customer-{i}", Channel.LINE), delay) for i in range(count)]
    rows = queue.enqueue_many(db, TENANT_ID, jobs, now=NOW)
    db.commit()
    return [row.id for row in rows]


def job(db, job_id):
    db.expire_all()
    return db.query(models.DispatchJob).filter(models.DispatchJob.id == job_id).one()


class TestBackoff:
    """Retry delay growth."""

    def test_doubles_until_capped(self):
        assert [backoff_delay(n, 2, 300) for n in (1, 2, 3, 4)] == [2, 4, 8, 16]
        assert backoff_delay(20, 2, 300) == 300

    def test_jitter_within_bounds(self, queue):
        draws = [queue.jitter() for _ in range(200)]
        assert all(0 <= d <= 5 for d in draws)

    def test_zero_jitter(self, session_factory):
        assert Dispatcher(session_factory, max_jitter=0).jitter() == 0.0


class TestRunPending:
    """Claiming and executing jobs."""

    def test_refuses_to_run_without_every_handler(self, session_factory):
        queue = Dispatcher(session_factory)
        queue.register(JobKind.SEND_MESSAGE, lambda db, claimed: None)
        with pytest.raises(DispatchQueueError, match="FIRE_CAMPAIGN"):
            queue.run_pending(NOW)

    def test_success(self, db, queue, campaign, recorder):
        [job_id] = enqueue(queue, db, campaign)
        assert queue.run_pending(NOW) == 1
        row = job(db, job_id)
        assert row.status == JobStatus.SUCCEEDED
        assert row.attempts == 1
        assert row.external_id == f"ext-{job_id[:8]}"

    def test_future_jobs_wait(self, db, queue, campaign, recorder):
        [job_id] = enqueue(queue, db, campaign, delay=60)
        assert queue.run_pending(NOW) == 0
        assert queue.run_pending(NOW + timedelta(seconds=60)) == 1
        assert job(db, job_id).status == JobStatus.SUCCEEDED

    def test_transient_failure_backs_off(self, db, queue, campaign, recorder):
        recorder.failures = 1
        [job_id] = enqueue(queue, db, campaign)
        queue.run_pending(NOW)
        row = job(db, job_id)
        assert row.status == JobStatus.PENDING
        assert row.attempts == 1
        assert row.run_at == NOW + timedelta(seconds=2)
        assert "provider timeout" in row.last_error

        assert queue.run_pending(NOW + timedelta(seconds=1)) == 0
        assert queue.run_pending(NOW + timedelta(seconds=2)) == 1
        row = job(db, job_id)
        assert row.status == JobStatus.SUCCEEDED
        assert row.attempts == 2

    def test_attempts_are_capped(self, db, queue, campaign, recorder):
        """A job that always fails runs exactly max_attempts times."""
        recorder.failures = 10
        [job_id] = enqueue(queue, db, campaign)
        now = NOW
        for _ in range(6):
            queue.run_pending(now)
            now += timedelta(seconds=300)
        row = job(db, job_id)
        assert row.status == JobStatus.FAILED
        assert row.attempts == 3
        assert len(recorder.calls) == 3
        assert recorder.exhausted == [(job_id, "provider timeout")]

    def test_second_retry_waits_longer(self, db, queue, campaign, recorder):
        recorder.failures = 2
        [job_id] = enqueue(queue, db, campaign)
        queue.run_pending(NOW)
        later = NOW + timedelta(seconds=2)
        queue.run_pending(later)
        assert job(db, job_id).run_at == later + timedelta(seconds=4)

    def test_permanent_failure_is_not_retried(self, db, queue, campaign, recorder):
        recorder.failures = 1
        recorder.error = PermanentDeliveryError
        [job_id] = enqueue(queue, db, campaign)
        queue.run_pending(NOW)
        row = job(db, job_id)
        assert row.status == JobStatus.FAILED
        assert row.attempts == 1
        assert len(recorder.exhausted) == 1

    def test_concurrency_is_bounded(self, db, session_factory, clock, campaign):
        active = 0
        peak = 0
        lock = threading.Lock()

        def slow(db, claimed):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.05)
            with lock:
                active -= 1

        queue = Dispatcher(session_factory, concurrency=3, max_jitter=0, clock=clock)
        queue.register(JobKind.SEND_MESSAGE, slow)
        queue.register(JobKind.FIRE_CAMPAIGN, lambda db, claimed: None)
        job_ids = enqueue(queue, db, campaign, count=10)

        assert queue.drain(NOW) == 10
        assert 1 <= peak <= 3
        assert all(job(db, job_id).status == JobStatus.SUCCEEDED for job_id in job_ids)

    def test_each_job_runs_once(self, db, queue, campaign, recorder):
        job_ids = enqueue(queue, db, campaign, count=8)
        queue.drain(NOW)
        assert sorted(recorder.calls) == sorted(job_ids)


class TestQueueMaintenance:
    """Cancellation, stale recovery and stats."""

    def test_cancel_pending_job(self, db, queue, campaign):
        fire = queue.enqueue(db, TENANT_ID, FireCampaign(campaign.id), delay=3600, now=NOW)
        db.commit()
        assert queue.cancel(db, fire.id) is True
        db.commit()
        assert db.query(models.DispatchJob).count() == 0

    def test_cannot_cancel_claimed_job(self, db, queue, campaign):
        [job_id] = enqueue(queue, db, campaign)
        queue.run_pending(NOW)
        assert queue.cancel(db, job_id) is False

    def test_requeue_stale_running_job(self, db, queue, campaign, recorder):
        [job_id] = enqueue(queue, db, campaign)
        row = job(db, job_id)
        row.status = JobStatus.RUNNING
        row.attempts = 1
        row.claimed_at = NOW - timedelta(hours=1)
        db.commit()

        assert queue.requeue_stale(older_than=600, now=NOW) == 1
        assert job(db, job_id).status == JobStatus.PENDING
        queue.run_pending(NOW)
        assert job(db, job_id).status == JobStatus.SUCCEEDED

    def test_stale_job_without_attempts_left_fails(self, db, queue, campaign, recorder):
        [job_id] = enqueue(queue, db, campaign)
        row = job(db, job_id)
        row.status = JobStatus.RUNNING
        row.attempts = 3
        row.claimed_at = NOW - timedelta(hours=1)
        db.commit()

        queue.requeue_stale(older_than=600, now=NOW)
        assert job(db, job_id).status == JobStatus.FAILED
        assert len(recorder.exhausted) == 1

    def test_recent_running_job_is_left_alone(self, db, queue, campaign):
        [job_id] = enqueue(queue, db, campaign)
        row = job(db, job_id)
        row.status = JobStatus.RUNNING
        row.claimed_at = NOW - timedelta(seconds=30)
        db.commit()
        assert queue.requeue_stale(older_than=600, now=NOW) == 0

    def test_stats(self, db, queue, campaign, recorder):
        recorder.failures = 1
        recorder.error = PermanentDeliveryError
        enqueue(queue, db, campaign, count=3)
        queue.drain(NOW)
        stats = queue.stats(db, campaign.id)
        assert stats == {"PENDING": 0, "RUNNING": 0, "SUCCEEDED": 2, "FAILED": 1}

    def test_run_forever_stops(self, db, queue, campaign, recorder, clock):
        enqueue(queue, db, campaign, count=2)
        stop = threading.Event()
        worker = threading.Thread(target=queue.run_forever, args=(stop, 0.01))
        worker.start()
        deadline = time.monotonic() + 5
        while len(recorder.calls) < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        stop.set()
        worker.join(timeout=5)
        assert not worker.is_alive()
        assert len(recorder.calls) == 2

    def test_result_of_a_requeued_attempt_is_discarded(self, db, queue, campaign):
        later = NOW + timedelta(seconds=700)
        finished = []

        def handle(db, claimed):
            if claimed.attempts == 1:
                # Stalls long enough for the job to be recovered and run again
                assert queue.requeue_stale(older_than=600, now=later) == 1
                assert queue.run_pending(later) == 1
            db.query(models.Campaign).filter(models.Campaign.id == claimed.job.campaign_id).update(
                {models.Campaign.sent_count: models.Campaign.sent_count + 1},
                synchronize_session=False,
            )
            finished.append(claimed.attempts)
            return f"ext-{claimed.attempts}"

        queue.register(JobKind.SEND_MESSAGE, handle)
        [job_id] = enqueue(queue, db, campaign)
        queue.run_pending(NOW)

        assert finished == [2, 1]
        row = job(db, job_id)
        assert row.status == JobStatus.SUCCEEDED
        assert row.attempts == 2
        assert row.external_id == "ext-2"
        db.expire_all()
        assert db.query(models.Campaign).one().sent_count == 1

    def test_malformed_job_is_reported_as_exhausted(self, db, queue, campaign, recorder):
        [job_id] = enqueue(queue, db, campaign)
        row = job(db, job_id)
        row.customer_id = None
        db.commit()

        assert queue.run_pending(NOW) == 0
        assert job(db, job_id).status == JobStatus.FAILED
        assert recorder.calls == []
        [(exhausted_id, error)] = recorder.exhausted
        assert exhausted_id == job_id
        assert "no customer or channel" in error
