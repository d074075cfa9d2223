"""Resolve declarative segment criteria into customer id sets."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Generic, Iterable, Optional, Sequence, TypeVar

from sqlalchemy.orm import Session

from ..models import models
from ..models.models import utcnow
from ..schemas.schemas import SegmentCriteria, SegmentResult
from .activity_service import log_activity
from .repositories import CustomerPredicate, CustomerRepository, SqlCustomerRepository
from .scoring_service import SEGMENT_NAMES, ScoringEngine

LOGGER = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class SoftResult(Generic[T]):
    """A value plus non-fatal warnings the caller may surface or ignore."""

    value: T
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.warnings


class SegmentCriteriaError(ValueError):
    """Raised when criteria cannot be used to target customers."""


def years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:
        # 29 February in a non-leap target year
        return day.replace(year=day.year - years, day=28)


def build_predicate(criteria: SegmentCriteria, now: datetime) -> CustomerPredicate:
    """Translate criteria into concrete bounds relative to ``now``."""
    predicate = CustomerPredicate(now=now)

    rfm = criteria.rfm
    if rfm is not None:
        if rfm.recency is not None:
            # More days since the last visit means an earlier last visit
            if rfm.recency.min is not None:
                predicate.last_visit_to = now - timedelta(days=rfm.recency.min)
            if rfm.recency.max is not None:
                predicate.last_visit_from = now - timedelta(days=rfm.recency.max)
        if rfm.frequency is not None:
            if rfm.frequency.min is not None:
                predicate.visit_count_min = math.ceil(rfm.frequency.min)
            if rfm.frequency.max is not None:
                predicate.visit_count_max = math.floor(rfm.frequency.max)
        if rfm.monetary is not None:
            predicate.total_spent_min = rfm.monetary.min
            predicate.total_spent_max = rfm.monetary.max

    demographics = criteria.demographics
    if demographics is not None:
        age_range = demographics.age_range
        if age_range is not None:
            today = now.date()
            if age_range.min is not None:
                predicate.birth_date_to = years_before(today, int(age_range.min))
            if age_range.max is not None:
                predicate.birth_date_from = years_before(today, int(age_range.max))
        predicate.gender = demographics.gender
        predicate.locations = list(demographics.locations)

    behavioral = criteria.behavioral
    if behavioral is not None:
        if behavioral.visit_interval is not None:
            predicate.visit_interval_min = behavioral.visit_interval.min
            predicate.visit_interval_max = behavioral.visit_interval.max
        predicate.risk_level = behavioral.risk_level
        predicate.preferred_menus = list(behavioral.preferred_menus)

    predicate.required_tags = sorted(set(criteria.tags))
    return predicate


class SegmentService:
    """Segment resolution and saved segment management for one tenant."""

    def __init__(
        self,
        db: Session,
        tenant_id: str,
        *,
        repository: Optional[CustomerRepository] = None,
        scoring: Optional[ScoringEngine] = None,
    ):
        self.db = db
        self.tenant_id = tenant_id
        self.repository = repository or SqlCustomerRepository(db, tenant_id)
        self.scoring = scoring or ScoringEngine(self.repository)

    def resolve(self, criteria: SegmentCriteria, now: Optional[datetime] = None) -> SoftResult[frozenset[str]]:
        # Never widen an unspecified filter to "everyone"
        if criteria.is_empty():
            return SoftResult(frozenset(), ['Empty criteria match no customers'])

        now = now or utcnow()
        warnings: list[str] = []
        if criteria.tags:
            unknown = sorted(set(criteria.tags) - self.repository.tag_names())
            if unknown:
                warnings.append(f"Unknown tags: {', '.join(unknown)}")

        predicate = build_predicate(criteria, now)
        if criteria.rfm_segments:
            unknown = sorted(set(criteria.rfm_segments) - set(SEGMENT_NAMES))
            if unknown:
                warnings.append(f"Unknown RFM segments: {', '.join(unknown)}")
            predicate.customer_ids = self.scoring.members_of(criteria.rfm_segments, now)

        matched = frozenset(self.repository.query(predicate))
        for warning in warnings:
            LOGGER.warning('Segment resolution for tenant %s: %s', self.tenant_id, warning)
        return SoftResult(matched, warnings)

    def resolve_many(
        self,
        criteria_list: Iterable[SegmentCriteria],
        now: Optional[datetime] = None,
    ) -> SoftResult[frozenset[str]]:
        """Union of every criteria's matches, each customer counted once."""
        now = now or utcnow()
        matched: set[str] = set()
        warnings: list[str] = []
        for criteria in criteria_list:
            result = self.resolve(criteria, now)
            matched.update(result.value)
            warnings.extend(w for w in result.warnings if w not in warnings)
        return SoftResult(frozenset(matched), warnings)

    def create_segment(self, name: str, criteria: SegmentCriteria, description: str = '') -> SegmentResult:
        if criteria.is_empty():
            raise SegmentCriteriaError('Segment criteria must specify at least one filter')

        warnings: list[str] = []
        duplicate = (
            self.db.query(models.CustomerSegment.id)
            .filter(
                models.CustomerSegment.tenant_id == self.tenant_id,
                models.CustomerSegment.name == name,
            )
            .first()
        )
        if duplicate:
            warnings.append(f"A segment named '{name}' already exists")

        resolution = self.resolve(criteria)
        warnings.extend(resolution.warnings)
        segment = models.CustomerSegment(
            tenant_id=self.tenant_id,
            name=name,
            description=description or '',
            criteria=criteria.model_dump(mode='json'),
            customer_count=len(resolution.value),
        )
        self.db.add(segment)
        self.db.flush()
        log_activity(
            self.db,
            self.tenant_id,
            'SEGMENT_CREATED',
            'CustomerSegment',
            segment.id,
            metadata={'name': name, 'customer_count': segment.customer_count},
        )
        self.db.commit()
        LOGGER.info('Customer segment %s created for tenant %s (%s customers)', segment.id, self.tenant_id, segment.customer_count)
        return SegmentResult(id=segment.id, name=name, matched_count=segment.customer_count, warnings=warnings)

    def get_segment_criteria(self, segment_ids: Sequence[str]) -> list[SegmentCriteria]:
        if not segment_ids:
            return []
        segments = (
            self.db.query(models.CustomerSegment)
            .filter(
                models.CustomerSegment.tenant_id == self.tenant_id,
                models.CustomerSegment.id.in_(list(segment_ids)),
            )
            .all()
        )
        found = {segment.id: segment for segment in segments}
        missing = [segment_id for segment_id in segment_ids if segment_id not in found]
        if missing:
            raise LookupError(f"Unknown segments: {', '.join(missing)}")
        return [SegmentCriteria.model_validate(found[segment_id].criteria) for segment_id in segment_ids]
