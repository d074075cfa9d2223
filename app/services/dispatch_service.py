"""Durable, retrying job queue backed by the ``salon_dispatchjob`` table.

Jobs are claimed with a conditional UPDATE so two workers never run the same
attempt, and each handler runs in its own session. Delivery is at least once:
a job whose worker died is put back by ``requeue_stale``.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, ClassVar, Iterable, Optional, Union

import numpy as np
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..core.config import settings
from ..models import models
from ..models.models import Channel, JobKind, JobStatus, utcnow
from .messaging_service import PermanentDeliveryError

LOGGER = logging.getLogger(__name__)


class DispatchQueueError(RuntimeError):
    """Raised when the queue is misconfigured or a job row is malformed."""


@dataclass(frozen=True)
class SendMessage:
    kind: ClassVar[JobKind] = JobKind.SEND_MESSAGE

    campaign_id: str
    customer_id: str
    channel: Channel
    variant_index: Optional[int] = None


@dataclass(frozen=True)
class FireCampaign:
    kind: ClassVar[JobKind] = JobKind.FIRE_CAMPAIGN

    campaign_id: str


Job = Union[SendMessage, FireCampaign]


@dataclass(frozen=True)
class ClaimedJob:
    id: str
    tenant_id: str
    attempts: int
    max_attempts: int
    job: Job


# A handler returns the provider's external id, if any
Handler = Callable[[Session, ClaimedJob], Optional[str]]
ExhaustedHook = Callable[[Session, ClaimedJob, str], None]


def job_from_row(row: models.DispatchJob) -> Job:
    if row.kind == JobKind.SEND_MESSAGE:
        if not row.customer_id or row.channel is None:
            raise DispatchQueueError(f'Send job {row.id} has no customer or channel')
        return SendMessage(
            campaign_id=row.campaign_id,
            customer_id=row.customer_id,
            channel=Channel(row.channel),
            variant_index=row.variant_index,
        )
    if row.kind == JobKind.FIRE_CAMPAIGN:
        return FireCampaign(campaign_id=row.campaign_id)
    raise DispatchQueueError(f'Unknown job kind {row.kind!r}')


def raw_job(row: models.DispatchJob) -> Job:
    """Job built from a row that failed to parse, for the exhausted hook."""
    if row.kind == JobKind.SEND_MESSAGE:
        return SendMessage(row.campaign_id, row.customer_id, row.channel, row.variant_index)
    return FireCampaign(row.campaign_id)


def backoff_delay(attempts: int, base: float, cap: float) -> float:
    """Seconds to wait after the ``attempts``-th failed attempt."""
    return min(base * (2 ** max(attempts - 1, 0)), cap)


class Dispatcher:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        concurrency: Optional[int] = None,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        max_jitter: Optional[float] = None,
        rng: Optional[np.random.Generator] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.concurrency = max(concurrency or settings.DISPATCH_CONCURRENCY, 1)
        self.max_attempts = max(max_attempts or settings.DISPATCH_MAX_ATTEMPTS, 1)
        self.backoff_base = settings.DISPATCH_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        self.backoff_max = settings.DISPATCH_BACKOFF_MAX_SECONDS if backoff_max is None else backoff_max
        self.max_jitter = settings.DISPATCH_MAX_JITTER_SECONDS if max_jitter is None else max_jitter
        self.rng = rng or np.random.default_rng()
        self.clock = clock
        self.batch_size = self.concurrency * 4
        self._handlers: dict[JobKind, tuple[Handler, Optional[ExhaustedHook]]] = {}
        self._rng_lock = threading.Lock()

    def register(self, kind: JobKind, handler: Handler, on_exhausted: Optional[ExhaustedHook] = None):
        self._handlers[kind] = (handler, on_exhausted)

    def _ensure_handlers(self):
        missing = [kind.value for kind in JobKind if kind not in self._handlers]
        if missing:
            raise DispatchQueueError(f"No handler registered for job kinds: {', '.join(missing)}")

    def jitter(self) -> float:
        if self.max_jitter <= 0:
            return 0.0
        with self._rng_lock:
            return float(self.rng.uniform(0, self.max_jitter))

    def choice(self, options: int, size: int, p: np.ndarray) -> list[int]:
        """Weighted draw of ``size`` indexes from ``range(options)``."""
        with self._rng_lock:
            return [int(i) for i in self.rng.choice(options, size=size, p=p)]

    # Producers; rows join the caller's transaction

    def enqueue(
        self,
        db: Session,
        tenant_id: str,
        job: Job,
        *,
        delay: float = 0.0,
        now: Optional[datetime] = None,
    ) -> models.DispatchJob:
        return self.enqueue_many(db, tenant_id, [(job, delay)], now=now)[0]

    def enqueue_many(
        self,
        db: Session,
        tenant_id: str,
        jobs: Iterable[tuple[Job, float]],
        *,
        now: Optional[datetime] = None,
    ) -> list[models.DispatchJob]:
        now = now or self.clock()
        rows = []
        for job, delay in jobs:
            rows.append(models.DispatchJob(
                id=models.new_id(),
                tenant_id=tenant_id,
                kind=job.kind,
                campaign_id=job.campaign_id,
                customer_id=getattr(job, 'customer_id', None),
                channel=getattr(job, 'channel', None),
                variant_index=getattr(job, 'variant_index', None),
                status=JobStatus.PENDING,
                attempts=0,
                max_attempts=self.max_attempts,
                run_at=now + timedelta(seconds=max(delay, 0.0)),
            ))
        db.add_all(rows)
        db.flush()
        return rows

    def cancel(self, db: Session, job_id: str) -> bool:
        """Remove a job that has not been claimed yet."""
        deleted = (
            db.query(models.DispatchJob)
            .filter(models.DispatchJob.id == job_id, models.DispatchJob.status == JobStatus.PENDING)
            .delete(synchronize_session=False)
        )
        return bool(deleted)

    # Consumers

    def _claim(self, now: datetime) -> list[ClaimedJob]:
        DispatchJob = models.DispatchJob
        with self.session_factory() as db:
            candidates = (
                db.query(DispatchJob.id)
                .filter(
                    DispatchJob.status == JobStatus.PENDING,
                    DispatchJob.run_at <= now,
                    DispatchJob.attempts < DispatchJob.max_attempts,
                )
                .order_by(DispatchJob.run_at, DispatchJob.id)
                .limit(self.batch_size)
                .all()
            )
            claimed_ids = []
            for row in candidates:
                updated = (
                    db.query(DispatchJob)
                    .filter(
                        DispatchJob.id == row.id,
                        DispatchJob.status == JobStatus.PENDING,
                        DispatchJob.attempts < DispatchJob.max_attempts,
                    )
                    .update(
                        {
                            DispatchJob.status: JobStatus.RUNNING,
                            DispatchJob.attempts: DispatchJob.attempts + 1,
                            DispatchJob.claimed_at: now,
                            DispatchJob.updated_at: now,
                        },
                        synchronize_session=False,
                    )
                )
                if updated:
                    claimed_ids.append(row.id)
            db.commit()
            if not claimed_ids:
                return []

            claimed = []
            for row in db.query(DispatchJob).filter(DispatchJob.id.in_(claimed_ids)).order_by(DispatchJob.run_at, DispatchJob.id):
                try:
                    job = job_from_row(row)
                except DispatchQueueError as exc:
                    LOGGER.error('Discarding malformed job %s: %s', row.id, exc)
                    malformed = ClaimedJob(row.id, row.tenant_id, row.attempts, row.max_attempts, raw_job(row))
                    self._mark_failed(db, malformed, str(exc))
                    continue
                claimed.append(ClaimedJob(
                    id=row.id,
                    tenant_id=row.tenant_id,
                    attempts=row.attempts,
                    max_attempts=row.max_attempts,
                    job=job,
                ))
            db.commit()
            return claimed

    def run_pending(self, now: Optional[datetime] = None) -> int:
        """Run every due job once; returns how many jobs were claimed."""
        self._ensure_handlers()
        now = now or self.clock()
        claimed = self._claim(now)
        if not claimed:
            return 0
        with ThreadPoolExecutor(max_workers=min(self.concurrency, len(claimed))) as pool:
            # list() re-raises the first bookkeeping error, if any
            list(pool.map(lambda item: self._execute(item, now), claimed))
        return len(claimed)

    def drain(self, now: Optional[datetime] = None, max_rounds: int = 100) -> int:
        total = 0
        for _ in range(max_rounds):
            processed = self.run_pending(now)
            if not processed:
                break
            total += processed
        return total

    def _owned(self, db: Session, claimed: ClaimedJob):
        """Query for the job row while ``claimed`` is still its current claim."""
        DispatchJob = models.DispatchJob
        return db.query(DispatchJob).filter(
            DispatchJob.id == claimed.id,
            DispatchJob.status == JobStatus.RUNNING,
            DispatchJob.attempts == claimed.attempts,
        )

    def _execute(self, claimed: ClaimedJob, now: datetime):
        handler, _ = self._handlers[claimed.job.kind]
        DispatchJob = models.DispatchJob
        db = self.session_factory()
        try:
            external_id = handler(db, claimed)
            updated = self._owned(db, claimed).update(
                {
                    DispatchJob.status: JobStatus.SUCCEEDED,
                    DispatchJob.external_id: external_id,
                    DispatchJob.last_error: None,
                    DispatchJob.updated_at: self.clock(),
                },
                synchronize_session=False,
            )
            if not updated:
                # Requeued or reclaimed while this attempt ran; the new owner records the outcome
                db.rollback()
                LOGGER.warning('Job %s attempt %s lost its claim, discarding its result', claimed.id, claimed.attempts)
                return
            db.commit()
        except PermanentDeliveryError as exc:
            db.rollback()
            self._fail(claimed, str(exc), now, permanent=True)
        except Exception as exc:
            db.rollback()
            self._fail(claimed, str(exc) or exc.__class__.__name__, now, permanent=False)
        finally:
            db.close()

    def _fail(self, claimed: ClaimedJob, error: str, now: datetime, *, permanent: bool):
        DispatchJob = models.DispatchJob
        error = error[:500]
        with self.session_factory() as db:
            if not permanent and claimed.attempts < claimed.max_attempts:
                delay = backoff_delay(claimed.attempts, self.backoff_base, self.backoff_max)
                self._owned(db, claimed).update(
                    {
                        DispatchJob.status: JobStatus.PENDING,
                        DispatchJob.run_at: now + timedelta(seconds=delay),
                        DispatchJob.last_error: error,
                        DispatchJob.updated_at: self.clock(),
                    },
                    synchronize_session=False,
                )
                db.commit()
                LOGGER.warning(
                    'Job %s (%s) failed on attempt %s/%s, retrying in %.1fs: %s',
                    claimed.id, claimed.job.kind.value, claimed.attempts, claimed.max_attempts, delay, error,
                )
                return
            self._mark_failed(db, claimed, error)
            db.commit()

    def _mark_failed(self, db: Session, claimed: ClaimedJob, error: str):
        DispatchJob = models.DispatchJob
        updated = self._owned(db, claimed).update(
            {
                DispatchJob.status: JobStatus.FAILED,
                DispatchJob.last_error: error,
                DispatchJob.updated_at: self.clock(),
            },
            synchronize_session=False,
        )
        if not updated:
            return
        LOGGER.error(
            'Job %s (%s) failed permanently after %s attempt(s): %s',
            claimed.id, claimed.job.kind.value, claimed.attempts, error,
        )
        _, on_exhausted = self._handlers[claimed.job.kind]
        if on_exhausted is not None:
            on_exhausted(db, claimed, error)

    def requeue_stale(self, older_than: Optional[float] = None, now: Optional[datetime] = None) -> int:
        """Return jobs stuck in RUNNING (their worker died) to the queue."""
        now = now or self.clock()
        seconds = settings.DISPATCH_STALE_AFTER_SECONDS if older_than is None else older_than
        cutoff = now - timedelta(seconds=seconds)
        DispatchJob = models.DispatchJob
        recovered = 0
        with self.session_factory() as db:
            stale = (
                db.query(DispatchJob)
                .filter(DispatchJob.status == JobStatus.RUNNING, DispatchJob.claimed_at < cutoff)
                .order_by(DispatchJob.claimed_at)
                .all()
            )
            for row in stale:
                if row.attempts < row.max_attempts:
                    updated = db.query(DispatchJob).filter(DispatchJob.id == row.id, DispatchJob.status == JobStatus.RUNNING).update(
                        {
                            DispatchJob.status: JobStatus.PENDING,
                            DispatchJob.run_at: now,
                            DispatchJob.last_error: 'Worker stopped before completing the job',
                            DispatchJob.updated_at: now,
                        },
                        synchronize_session=False,
                    )
                    recovered += updated
                    continue
                error = 'Worker stopped before completing the job'
                try:
                    job = job_from_row(row)
                except DispatchQueueError as exc:
                    job, error = raw_job(row), str(exc)
                claimed = ClaimedJob(row.id, row.tenant_id, row.attempts, row.max_attempts, job)
                self._mark_failed(db, claimed, error)
                recovered += 1
            db.commit()
        if recovered:
            LOGGER.warning('Recovered %s stale job(s) claimed before %s', recovered, cutoff.isoformat())
        return recovered

    def run_forever(self, stop_event: Optional[threading.Event] = None, poll_interval: Optional[float] = None):
        self._ensure_handlers()
        stop_event = stop_event or threading.Event()
        poll_interval = settings.DISPATCH_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        LOGGER.info('Dispatcher started with concurrency %s', self.concurrency)
        while not stop_event.is_set():
            try:
                self.requeue_stale()
                processed = self.run_pending()
            except SQLAlchemyError as exc:
                LOGGER.error('Dispatch round failed: %s', exc)
                processed = 0
            if not processed:
                stop_event.wait(poll_interval)
        LOGGER.info('Dispatcher stopped')

    def stats(self, db: Session, campaign_id: str) -> dict[str, int]:
        DispatchJob = models.DispatchJob
        rows = (
            db.query(DispatchJob.status, func.count(DispatchJob.id))
            .filter(DispatchJob.campaign_id == campaign_id)
            .group_by(DispatchJob.status)
            .all()
        )
        counts = {status.value: 0 for status in JobStatus}
        for status, count in rows:
            counts[JobStatus(status).value] = count
        return counts
