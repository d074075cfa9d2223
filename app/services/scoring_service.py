"""Recency / frequency / monetary scoring for a tenant's customers."""
from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from ..core.config import settings
from ..models.models import utcnow
from ..schemas.schemas import RFMScore
from .repositories import CustomerHistory, CustomerRepository

LOGGER = logging.getLogger(__name__)

# (upper bound in days, score); anything older scores 1
RECENCY_THRESHOLDS = ((30, 5), (60, 4), (90, 3), (180, 2))
# (lower bound, score); anything smaller scores 1
FREQUENCY_THRESHOLDS = ((20, 5), (10, 4), (5, 3), (2, 2))
MONETARY_THRESHOLDS = ((100000, 5), (50000, 4), (25000, 3), (10000, 2))

UNCATEGORIZED = 'Uncategorized'

# Declaration order is the precedence order: the first entry listing a code wins.
# Several codes appear under more than one name and some entries can never win;
# see ambiguous_codes() and shadowed_segments().
SEGMENT_TABLE: tuple[tuple[str, tuple[str, ...]], ...] = (
    ('Champions', ('555', '554', '544', '545', '454', '455', '445')),
    ('Loyal Customers', ('543', '444', '435', '355', '354', '345', '344', '335')),
    ('Potential Loyalists', ('512', '511', '422', '421', '412', '411')),
    ('New Customers', ('512', '511', '422', '421', '412', '411', '311')),
    ('Promising', ('333', '334', '343', '244', '343', '334', '343')),
    ('Need Attention', ('331', '321', '312', '231', '241', '251')),
    ('About to Sleep', ('155', '154', '144', '214', '215', '115', '114')),
    ('At Risk', ('233', '234', '143', '244', '334', '343', '244')),
    ('Cannot Lose Them', ('155', '154', '144', '214', '215', '115', '114')),
    ('Hibernating', ('111', '112', '121', '131', '141', '151')),
    ('Lost', ('112', '123', '132', '213', '312', '111')),
)

SEGMENT_NAMES = tuple(name for name, _ in SEGMENT_TABLE) + (UNCATEGORIZED,)


class ScoringError(RuntimeError):
    """Raised when a scoring run cannot load its input at all."""


def recency_score(days: int) -> int:
    for upper, score in RECENCY_THRESHOLDS:
        if days <= upper:
            return score
    return 1


def frequency_score(visits: int) -> int:
    for lower, score in FREQUENCY_THRESHOLDS:
        if visits >= lower:
            return score
    return 1


def monetary_score(amount: float) -> int:
    for lower, score in MONETARY_THRESHOLDS:
        if amount >= lower:
            return score
    return 1


def segment_for(code: str) -> str:
    for name, codes in SEGMENT_TABLE:
        if code in codes:
            return name
    return UNCATEGORIZED


def ambiguous_codes() -> dict[str, list[str]]:
    """Codes claimed by more than one segment, with the claimants in precedence order."""
    claimants: dict[str, list[str]] = {}
    for name, codes in SEGMENT_TABLE:
        for code in dict.fromkeys(codes):
            claimants.setdefault(code, []).append(name)
    return {code: names for code, names in sorted(claimants.items()) if len(names) > 1}


def shadowed_segments() -> list[str]:
    """Segments whose every code is already claimed by an earlier entry."""
    claimed: set[str] = set()
    shadowed = []
    for name, codes in SEGMENT_TABLE:
        if set(codes) <= claimed:
            shadowed.append(name)
        claimed.update(codes)
    return shadowed


class ScoringEngine:
    """Score customers from their completed visits in a trailing window.

    Thresholds are fixed constants rather than population quantiles, so a
    score means the same thing across runs and tenants.
    """

    def __init__(
        self,
        repository: CustomerRepository,
        *,
        window_days: Optional[int] = None,
        average_ticket: Optional[float] = None,
    ):
        self.repository = repository
        self.window_days = window_days or settings.RFM_WINDOW_DAYS
        self.average_ticket = settings.RFM_AVERAGE_TICKET if average_ticket is None else average_ticket

    def analyze(self, now: Optional[datetime] = None) -> list[RFMScore]:
        now = now or utcnow()
        since = now - timedelta(days=self.window_days)
        try:
            histories = self.repository.histories(since)
        except Exception as exc:
            LOGGER.error('RFM analysis aborted, customer histories unavailable: %s', exc)
            raise ScoringError('Customer histories are unavailable') from exc

        scores: list[RFMScore] = []
        for history in histories:
            try:
                score = self.score_history(history, now, since=since)
            except (TypeError, ValueError, ArithmeticError, AttributeError) as exc:
                LOGGER.warning('Skipping customer %s with unreadable history: %s', history.customer_id, exc)
                continue
            if score is not None:
                scores.append(score)
        LOGGER.info('RFM analysis completed: %s of %s customers scored', len(scores), len(histories))
        return scores

    def score_history(
        self,
        history: CustomerHistory,
        now: datetime,
        *,
        since: Optional[datetime] = None,
    ) -> Optional[RFMScore]:
        transactions = [
            tx for tx in history.transactions
            if since is None or tx.occurred_at >= since
        ]
        if not transactions:
            return None

        last_visit = max(tx.occurred_at for tx in transactions)
        recency = max(0, (now - last_visit).days)
        frequency = len(transactions)
        monetary = float(sum((Decimal(tx.amount) for tx in transactions if tx.amount is not None), Decimal('0')))
        if monetary == 0:
            monetary = frequency * self.average_ticket

        r_score = recency_score(recency)
        f_score = frequency_score(frequency)
        m_score = monetary_score(monetary)
        code = f'{r_score}{f_score}{m_score}'
        return RFMScore(
            customer_id=history.customer_id,
            recency=recency,
            frequency=frequency,
            monetary=monetary,
            recency_score=r_score,
            frequency_score=f_score,
            monetary_score=m_score,
            rfm_score=code,
            segment=segment_for(code),
        )

    def summarize(self, scores: Iterable[RFMScore]) -> dict[str, int]:
        counts = Counter(score.segment for score in scores)
        return {name: counts.get(name, 0) for name in SEGMENT_NAMES}

    def members_of(self, segments: Iterable[str], now: Optional[datetime] = None) -> frozenset[str]:
        wanted = set(segments)
        return frozenset(score.customer_id for score in self.analyze(now) if score.segment in wanted)
