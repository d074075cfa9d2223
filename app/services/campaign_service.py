"""Campaign lifecycle: validation, scheduling, fan-out and delivery bookkeeping."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, Sequence

import numpy as np
from sqlalchemy.orm import Session

from ..models import models
from ..models.models import (
    EDITABLE_CAMPAIGN_STATUSES,
    CampaignStatus,
    Channel,
    DeliveryOutcome,
    utcnow,
)
from ..schemas.schemas import ABTest, CampaignUpdate, MessagePreview, SegmentCriteria
from .activity_service import log_activity
from .dispatch_service import ClaimedJob, Dispatcher, FireCampaign, SendMessage
from .messaging_service import BulkMessenger, PermanentDeliveryError
from .repositories import (
    CustomerRepository,
    DeliveryRecord,
    EventSink,
    SqlCustomerRepository,
    SqlEventSink,
)
from .segment_service import SegmentService
from .template_service import TemplateContext, TemplateError, render, validate

LOGGER = logging.getLogger(__name__)


class CampaignValidationError(ValueError):
    """Raised when a campaign definition is rejected at creation time."""


class CampaignStateError(RuntimeError):
    """Raised when an operation is not allowed in the campaign's current status."""


class CampaignExecutionError(RuntimeError):
    """Raised when fan-out fails; the campaign keeps its previous status."""


def variant_weights(ab_test: Optional[dict[str, Any]]) -> Optional[np.ndarray]:
    """Normalized draw probabilities, or None when no A/B test is active."""
    if not ab_test or not ab_test.get('enabled') or not ab_test.get('variants'):
        return None
    weights = np.array([float(v.get('percentage') or 0) for v in ab_test['variants']], dtype=float)
    total = weights.sum()
    if total <= 0:
        return np.full(len(weights), 1.0 / len(weights))
    return weights / total


class CampaignService:
    def __init__(
        self,
        db: Session,
        tenant_id: str,
        dispatcher: Dispatcher,
        *,
        messenger: Optional[BulkMessenger] = None,
        repository: Optional[CustomerRepository] = None,
        events: Optional[EventSink] = None,
        segments: Optional[SegmentService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.tenant_id = tenant_id
        self.dispatcher = dispatcher
        self.messenger = messenger
        self.repository = repository or SqlCustomerRepository(db, tenant_id)
        self.events = events or SqlEventSink(db, tenant_id)
        self.segments = segments or SegmentService(db, tenant_id, repository=self.repository)
        self.clock = clock or dispatcher.clock

    # Queries

    def get_campaign(self, campaign_id: str) -> models.Campaign:
        campaign = (
            self.db.query(models.Campaign)
            .filter(models.Campaign.id == campaign_id, models.Campaign.tenant_id == self.tenant_id)
            .first()
        )
        if not campaign:
            raise LookupError(f'Campaign {campaign_id} not found')
        return campaign

    def list_campaigns(self, status: Optional[CampaignStatus] = None) -> list[models.Campaign]:
        query = self.db.query(models.Campaign).filter(models.Campaign.tenant_id == self.tenant_id)
        if status is not None:
            query = query.filter(models.Campaign.status == status)
        return query.order_by(models.Campaign.created_at.desc(), models.Campaign.id).all()

    # Validation

    def _validate_template(self, template: str, ab_test: Optional[ABTest]):
        try:
            validate(template)
            if ab_test is not None:
                for variant in ab_test.variants:
                    validate(variant.content)
        except TemplateError as exc:
            raise CampaignValidationError(str(exc)) from exc

    def _collect_criteria(
        self,
        criteria: Iterable[SegmentCriteria],
        segment_ids: Optional[Sequence[str]],
    ) -> list[SegmentCriteria]:
        collected = [c for c in criteria if not c.is_empty()]
        try:
            collected.extend(c for c in self.segments.get_segment_criteria(segment_ids or []) if not c.is_empty())
        except LookupError as exc:
            raise CampaignValidationError(str(exc)) from exc
        if not collected:
            raise CampaignValidationError('Campaign must target at least one non-empty segment criteria')
        return collected

    # Lifecycle

    def create_campaign(
        self,
        *,
        name: str,
        template: str,
        criteria: Iterable[SegmentCriteria],
        channels: Sequence[Channel],
        scheduled_at: Optional[datetime] = None,
        ab_test: Optional[ABTest] = None,
        segment_ids: Optional[Sequence[str]] = None,
    ) -> models.Campaign:
        if not channels:
            raise CampaignValidationError('Campaign must use at least one channel')
        targets = self._collect_criteria(criteria, segment_ids)
        self._validate_template(template, ab_test)

        campaign = models.Campaign(
            tenant_id=self.tenant_id,
            name=name,
            template=template,
            criteria=[c.model_dump(mode='json') for c in targets],
            channels=[Channel(c).value for c in dict.fromkeys(channels)],
            ab_test=ab_test.model_dump(mode='json') if ab_test is not None else None,
            scheduled_at=scheduled_at,
            status=CampaignStatus.DRAFT,
        )
        self.db.add(campaign)
        self.db.flush()
        log_activity(self.db, self.tenant_id, 'CAMPAIGN_CREATED', 'Campaign', campaign.id, metadata={'name': name})
        self.db.commit()

        now = self.clock()
        if scheduled_at is None or scheduled_at <= now:
            return self.fan_out(campaign.id, now=now)
        return self._schedule(campaign, scheduled_at, now)

    def _schedule(self, campaign: models.Campaign, scheduled_at: datetime, now: datetime) -> models.Campaign:
        fire_job = self.dispatcher.enqueue(
            self.db,
            self.tenant_id,
            FireCampaign(campaign_id=campaign.id),
            delay=(scheduled_at - now).total_seconds(),
            now=now,
        )
        campaign.scheduled_at = scheduled_at
        campaign.fire_job_id = fire_job.id
        campaign.status = CampaignStatus.SCHEDULED
        log_activity(
            self.db, self.tenant_id, 'CAMPAIGN_SCHEDULED', 'Campaign', campaign.id,
            metadata={'scheduled_at': scheduled_at.isoformat()},
        )
        self.db.commit()
        LOGGER.info('Campaign %s scheduled for %s', campaign.id, scheduled_at.isoformat())
        return campaign

    def fan_out(
        self,
        campaign_id: str,
        now: Optional[datetime] = None,
        *,
        release_schedule: bool = False,
    ) -> models.Campaign:
        """Create one send job per (recipient, channel) and start the campaign.

        Runs as a single transaction guarded by a conditional status update, so
        repeating it for the same campaign never enqueues a second batch. With
        ``release_schedule`` the pending fire job of a SCHEDULED campaign is
        removed in the same transaction.
        """
        now = now or self.clock()
        campaign = self.get_campaign(campaign_id)
        previous = campaign.status
        if previous not in EDITABLE_CAMPAIGN_STATUSES:
            LOGGER.info('Campaign %s already started (%s), skipping fan-out', campaign_id, previous.value)
            return campaign
        if release_schedule and campaign.fire_job_id and not self.dispatcher.cancel(self.db, campaign.fire_job_id):
            self.db.rollback()
            raise CampaignStateError(f'Campaign {campaign_id} is already being sent')

        try:
            criteria = [SegmentCriteria.model_validate(c) for c in campaign.criteria]
            recipients = sorted(self.segments.resolve_many(criteria, now).value)
            channels = [Channel(c) for c in campaign.channels]

            weights = variant_weights(campaign.ab_test)
            if weights is not None and recipients:
                # One draw per customer so every channel carries the same variant
                variants = self.dispatcher.choice(len(weights), len(recipients), weights)
            else:
                variants = [None] * len(recipients)

            jobs = [
                (SendMessage(campaign.id, customer_id, channel, variant), self.dispatcher.jitter())
                for customer_id, variant in zip(recipients, variants)
                for channel in channels
            ]
            expected = len(jobs)
            values = {
                models.Campaign.status: CampaignStatus.SENDING if expected else CampaignStatus.COMPLETED,
                models.Campaign.total_recipients: len(recipients),
                models.Campaign.expected_messages: expected,
                models.Campaign.sent_count: 0,
                models.Campaign.failed_count: 0,
                models.Campaign.fire_job_id: None,
                models.Campaign.last_error: None,
                models.Campaign.started_at: now,
                models.Campaign.completed_at: None if expected else now,
                models.Campaign.updated_at: now,
            }
            updated = (
                self.db.query(models.Campaign)
                .filter(
                    models.Campaign.id == campaign.id,
                    models.Campaign.tenant_id == self.tenant_id,
                    models.Campaign.status == previous,
                )
                .update(values, synchronize_session=False)
            )
            if not updated:
                self.db.rollback()
                LOGGER.info('Campaign %s was started concurrently, skipping fan-out', campaign_id)
                return self.get_campaign(campaign_id)

            self.dispatcher.enqueue_many(self.db, self.tenant_id, jobs, now=now)
            log_activity(
                self.db, self.tenant_id, 'CAMPAIGN_STARTED', 'Campaign', campaign.id,
                metadata={'recipients': len(recipients), 'messages': expected},
            )
            self.db.commit()
        except Exception as exc:
            self.db.rollback()
            LOGGER.error('Fan-out failed for campaign %s: %s', campaign_id, exc)
            raise CampaignExecutionError(f'Fan-out failed for campaign {campaign_id}: {exc}') from exc

        self.db.refresh(campaign)
        LOGGER.info(
            'Campaign %s started: %s recipients, %s messages queued',
            campaign.id, campaign.total_recipients, campaign.expected_messages,
        )
        return campaign

    def start_campaign(self, campaign_id: str) -> models.Campaign:
        """Send a DRAFT or SCHEDULED campaign now."""
        campaign = self.get_campaign(campaign_id)
        if campaign.status not in EDITABLE_CAMPAIGN_STATUSES:
            raise CampaignStateError(f'Campaign {campaign_id} is {campaign.status.value} and cannot be started')
        return self.fan_out(campaign_id, release_schedule=True)

    def update_campaign(self, campaign_id: str, changes: CampaignUpdate) -> models.Campaign:
        campaign = self.get_campaign(campaign_id)
        if campaign.status not in EDITABLE_CAMPAIGN_STATUSES:
            raise CampaignStateError(f'Campaign {campaign_id} is {campaign.status.value} and can no longer be edited')

        fields = changes.model_fields_set
        if 'template' in fields or 'ab_test' in fields:
            template = changes.template if 'template' in fields else campaign.template
            ab_test = changes.ab_test if 'ab_test' in fields else (
                ABTest.model_validate(campaign.ab_test) if campaign.ab_test else None
            )
            if template is None:
                raise CampaignValidationError('Template must not be empty')
            self._validate_template(template, ab_test)
            campaign.template = template
            campaign.ab_test = ab_test.model_dump(mode='json') if ab_test is not None else None
        if 'name' in fields and changes.name:
            campaign.name = changes.name
        if 'channels' in fields:
            if not changes.channels:
                raise CampaignValidationError('Campaign must use at least one channel')
            campaign.channels = [Channel(c).value for c in dict.fromkeys(changes.channels)]

        now = self.clock()
        if 'scheduled_at' in fields:
            scheduled_at = changes.scheduled_at
            if scheduled_at is not None and scheduled_at <= now:
                raise CampaignValidationError('scheduled_at must be in the future; start the campaign instead')
            if campaign.status == CampaignStatus.SCHEDULED:
                self._release_fire_job(campaign)
            if scheduled_at is None:
                campaign.scheduled_at = None
                campaign.status = CampaignStatus.DRAFT
            else:
                return self._schedule(campaign, scheduled_at, now)

        log_activity(
            self.db, self.tenant_id, 'CAMPAIGN_UPDATED', 'Campaign', campaign.id,
            metadata={'fields': sorted(fields)},
        )
        self.db.commit()
        return campaign

    def _release_fire_job(self, campaign: models.Campaign):
        if campaign.fire_job_id and not self.dispatcher.cancel(self.db, campaign.fire_job_id):
            self.db.rollback()
            raise CampaignStateError(f'Campaign {campaign.id} is already being sent')
        campaign.fire_job_id = None
        campaign.status = CampaignStatus.DRAFT

    def cancel_campaign(self, campaign_id: str) -> models.Campaign:
        campaign = self.get_campaign(campaign_id)
        if campaign.status == CampaignStatus.DRAFT:
            return campaign
        if campaign.status != CampaignStatus.SCHEDULED:
            # Queued send jobs are not recalled
            raise CampaignStateError(f'Campaign {campaign_id} is {campaign.status.value} and cannot be cancelled')
        self._release_fire_job(campaign)
        log_activity(self.db, self.tenant_id, 'CAMPAIGN_CANCELLED', 'Campaign', campaign.id)
        self.db.commit()
        LOGGER.info('Campaign %s cancelled', campaign.id)
        return campaign

    # Job handlers

    def _content_for(self, campaign: models.Campaign, variant_index: Optional[int]) -> str:
        variants = (campaign.ab_test or {}).get('variants') or []
        if variant_index is not None and 0 <= variant_index < len(variants):
            return variants[variant_index]['content']
        return campaign.template

    def deliver(self, job: SendMessage) -> Optional[str]:
        campaign = self.get_campaign(job.campaign_id)
        if self.messenger is None:
            raise RuntimeError('No messenger configured for delivery')
        profile = self.repository.get(job.customer_id)
        if profile is None:
            raise PermanentDeliveryError(f'Customer {job.customer_id} no longer exists')

        now = self.clock()
        context = TemplateContext.build(profile, self.repository.salon_info(), now)
        content = render(self._content_for(campaign, job.variant_index), context)
        result = self.messenger.dispatch(job.channel, profile, content)

        self.events.append(DeliveryRecord(
            campaign_id=campaign.id,
            customer_id=job.customer_id,
            channel=job.channel,
            outcome=DeliveryOutcome.SENT,
            occurred_at=now,
            external_id=result.external_id,
        ))
        self.db.query(models.Campaign).filter(models.Campaign.id == campaign.id).update(
            {models.Campaign.sent_count: models.Campaign.sent_count + 1},
            synchronize_session=False,
        )
        self._try_complete(campaign.id, now)
        return result.external_id

    def record_failure(self, job: SendMessage, error: str):
        now = self.clock()
        # A malformed job still counts as failed but has no recipient to report
        if job.customer_id and job.channel is not None:
            self.events.append(DeliveryRecord(
                campaign_id=job.campaign_id,
                customer_id=job.customer_id,
                channel=job.channel,
                outcome=DeliveryOutcome.FAILED,
                occurred_at=now,
                error=error,
            ))
        self.db.query(models.Campaign).filter(
            models.Campaign.id == job.campaign_id,
            models.Campaign.tenant_id == self.tenant_id,
        ).update(
            {models.Campaign.failed_count: models.Campaign.failed_count + 1},
            synchronize_session=False,
        )
        self._try_complete(job.campaign_id, now)

    def fire(self, job: FireCampaign):
        campaign = self.get_campaign(job.campaign_id)
        if campaign.status != CampaignStatus.SCHEDULED:
            LOGGER.info('Campaign %s is %s, nothing to fire', campaign.id, campaign.status.value)
            return
        self.fan_out(campaign.id)

    def fire_exhausted(self, job: FireCampaign, error: str):
        updated = (
            self.db.query(models.Campaign)
            .filter(
                models.Campaign.id == job.campaign_id,
                models.Campaign.tenant_id == self.tenant_id,
                models.Campaign.status == CampaignStatus.SCHEDULED,
            )
            .update(
                {
                    models.Campaign.status: CampaignStatus.FAILED,
                    models.Campaign.last_error: error,
                    models.Campaign.completed_at: self.clock(),
                },
                synchronize_session=False,
            )
        )
        if updated:
            log_activity(
                self.db, self.tenant_id, 'CAMPAIGN_FAILED', 'Campaign', job.campaign_id,
                metadata={'error': error},
            )
            LOGGER.error('Scheduled campaign %s failed: %s', job.campaign_id, error)

    def _try_complete(self, campaign_id: str, now: datetime) -> bool:
        Campaign = models.Campaign
        updated = (
            self.db.query(Campaign)
            .filter(
                Campaign.id == campaign_id,
                Campaign.status == CampaignStatus.SENDING,
                Campaign.sent_count + Campaign.failed_count >= Campaign.expected_messages,
            )
            .update(
                {Campaign.status: CampaignStatus.COMPLETED, Campaign.completed_at: now},
                synchronize_session=False,
            )
        )
        if updated:
            log_activity(self.db, self.tenant_id, 'CAMPAIGN_COMPLETED', 'Campaign', campaign_id)
            LOGGER.info('Campaign %s completed', campaign_id)
        return bool(updated)

    def preview(self, campaign_id: str, customer_id: str) -> list[MessagePreview]:
        campaign = self.get_campaign(campaign_id)
        profile = self.repository.get(customer_id)
        if profile is None:
            raise LookupError(f'Customer {customer_id} not found')
        context = TemplateContext.build(profile, self.repository.salon_info(), self.clock())
        variants = (campaign.ab_test or {}).get('variants') or []
        if not (campaign.ab_test or {}).get('enabled') or not variants:
            return [MessagePreview(customer_id=customer_id, content=render(campaign.template, context))]
        return [
            MessagePreview(customer_id=customer_id, variant=v['name'], content=render(v['content'], context))
            for v in variants
        ]


def register_handlers(dispatcher: Dispatcher, messenger: BulkMessenger):
    """Wire campaign job handlers into ``dispatcher``."""

    def service(db: Session, claimed: ClaimedJob) -> CampaignService:
        return CampaignService(db, claimed.tenant_id, dispatcher, messenger=messenger)

    dispatcher.register(
        models.JobKind.SEND_MESSAGE,
        lambda db, claimed: service(db, claimed).deliver(claimed.job),
        on_exhausted=lambda db, claimed, error: service(db, claimed).record_failure(claimed.job, error),
    )
    dispatcher.register(
        models.JobKind.FIRE_CAMPAIGN,
        lambda db, claimed: service(db, claimed).fire(claimed.job),
        on_exhausted=lambda db, claimed, error: service(db, claimed).fire_exhausted(claimed.job, error),
    )
