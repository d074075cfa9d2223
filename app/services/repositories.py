"""Storage-facing collaborators consumed by the broadcast engine.

The engine only talks to ``CustomerRepository`` and ``EventSink``; the
SQLAlchemy implementations below are the ones wired in by the API and the
worker. Both participate in the caller's transaction and never commit.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session, selectinload

from ..core.config import settings
from ..models import models
from ..schemas.schemas import RiskLevel

RECENT_HISTORY_LIMIT = 3

# Days since last visit
LOW_RISK_MAX_DAYS = 45
MEDIUM_RISK_MAX_DAYS = 90


def classify_risk(last_visit: Optional[datetime], now: datetime) -> RiskLevel:
    if last_visit is None:
        return RiskLevel.HIGH
    days = (now - last_visit).days
    if days <= LOW_RISK_MAX_DAYS:
        return RiskLevel.LOW
    if days <= MEDIUM_RISK_MAX_DAYS:
        return RiskLevel.MEDIUM
    return RiskLevel.HIGH


def average_visit_interval(first_visit: Optional[datetime], last_visit: Optional[datetime], visits: int) -> Optional[float]:
    if first_visit is None or last_visit is None or visits < 2:
        return None
    return (last_visit - first_visit).days / (visits - 1)


@dataclass
class Transaction:
    occurred_at: datetime
    amount: Optional[Decimal] = None


@dataclass
class CustomerHistory:
    customer_id: str
    transactions: list[Transaction] = field(default_factory=list)


@dataclass
class RecentReservation:
    date: datetime
    menu: Optional[str]
    staff: Optional[str]


@dataclass
class RecentMenu:
    name: str
    date: datetime
    satisfaction: Optional[int]


@dataclass
class CustomerProfile:
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    line_user_id: Optional[str] = None
    instagram_id: Optional[str] = None
    visit_count: int = 0
    last_visit_date: Optional[datetime] = None
    tags: list[str] = field(default_factory=list)
    recent_reservations: list[RecentReservation] = field(default_factory=list)
    recent_menus: list[RecentMenu] = field(default_factory=list)


@dataclass
class SalonInfo:
    name: str
    phone: str = ''


@dataclass
class CustomerPredicate:
    """Concrete, time-resolved filter handed to ``CustomerRepository.query``."""

    now: datetime
    visit_count_min: Optional[int] = None
    visit_count_max: Optional[int] = None
    last_visit_from: Optional[datetime] = None
    last_visit_to: Optional[datetime] = None
    total_spent_min: Optional[float] = None
    total_spent_max: Optional[float] = None
    birth_date_from: Optional[date] = None
    birth_date_to: Optional[date] = None
    gender: Optional[models.Gender] = None
    locations: list[str] = field(default_factory=list)
    required_tags: list[str] = field(default_factory=list)
    preferred_menus: list[str] = field(default_factory=list)
    visit_interval_min: Optional[float] = None
    visit_interval_max: Optional[float] = None
    risk_level: Optional[RiskLevel] = None
    customer_ids: Optional[frozenset[str]] = None

    def needs_post_filter(self) -> bool:
        return (
            self.visit_interval_min is not None
            or self.visit_interval_max is not None
            or self.risk_level is not None
        )


@dataclass
class DeliveryRecord:
    campaign_id: str
    customer_id: str
    channel: models.Channel
    outcome: models.DeliveryOutcome
    occurred_at: datetime
    error: Optional[str] = None
    external_id: Optional[str] = None


class CustomerRepository(ABC):
    @abstractmethod
    def query(self, predicate: CustomerPredicate) -> list[str]:
        """Return the ids of customers matching every bound in ``predicate``."""

    @abstractmethod
    def get(self, customer_id: str) -> Optional[CustomerProfile]:
        pass

    @abstractmethod
    def histories(self, since: datetime) -> list[CustomerHistory]:
        """Completed transactions since ``since`` for every customer of the tenant."""

    @abstractmethod
    def tag_names(self) -> set[str]:
        pass

    @abstractmethod
    def salon_info(self) -> SalonInfo:
        pass


class EventSink(ABC):
    @abstractmethod
    def append(self, record: DeliveryRecord) -> None:
        pass

    @abstractmethod
    def query(self, campaign_id: str) -> list[DeliveryRecord]:
        pass


class SqlCustomerRepository(CustomerRepository):
    def __init__(self, db: Session, tenant_id: str):
        self.db = db
        self.tenant_id = tenant_id

    def query(self, predicate: CustomerPredicate) -> list[str]:
        Customer = models.Customer
        query = self.db.query(
            Customer.id,
            Customer.first_visit_date,
            Customer.last_visit_date,
            Customer.visit_count,
        ).filter(Customer.tenant_id == self.tenant_id)

        if predicate.customer_ids is not None:
            if not predicate.customer_ids:
                return []
            query = query.filter(Customer.id.in_(sorted(predicate.customer_ids)))
        if predicate.visit_count_min is not None:
            query = query.filter(Customer.visit_count >= predicate.visit_count_min)
        if predicate.visit_count_max is not None:
            query = query.filter(Customer.visit_count <= predicate.visit_count_max)
        if predicate.last_visit_from is not None:
            query = query.filter(Customer.last_visit_date >= predicate.last_visit_from)
        if predicate.last_visit_to is not None:
            query = query.filter(Customer.last_visit_date <= predicate.last_visit_to)
        if predicate.total_spent_min is not None:
            query = query.filter(Customer.total_spent >= predicate.total_spent_min)
        if predicate.total_spent_max is not None:
            query = query.filter(Customer.total_spent <= predicate.total_spent_max)
        if predicate.birth_date_from is not None:
            query = query.filter(Customer.birth_date >= predicate.birth_date_from)
        if predicate.birth_date_to is not None:
            query = query.filter(Customer.birth_date <= predicate.birth_date_to)
        if predicate.gender is not None:
            query = query.filter(Customer.gender == predicate.gender)
        if predicate.locations:
            query = query.filter(or_(*[Customer.address.contains(loc) for loc in predicate.locations]))
        # Every required tag must be present
        for tag in predicate.required_tags:
            query = query.filter(Customer.tags.any(models.CustomerTag.name == tag))
        if predicate.preferred_menus:
            query = query.filter(
                Customer.reservations.any(
                    (models.Reservation.status == models.ReservationStatus.COMPLETED)
                    & models.Reservation.menu_name.in_(predicate.preferred_menus)
                )
            )

        rows = query.order_by(Customer.id).all()
        if not predicate.needs_post_filter():
            return [row.id for row in rows]

        matched = []
        for row in rows:
            if predicate.risk_level is not None:
                if classify_risk(row.last_visit_date, predicate.now) != predicate.risk_level:
                    continue
            if predicate.visit_interval_min is not None or predicate.visit_interval_max is not None:
                interval = average_visit_interval(row.first_visit_date, row.last_visit_date, row.visit_count)
                if interval is None:
                    continue
                if predicate.visit_interval_min is not None and interval < predicate.visit_interval_min:
                    continue
                if predicate.visit_interval_max is not None and interval > predicate.visit_interval_max:
                    continue
            matched.append(row.id)
        return matched

    def get(self, customer_id: str) -> Optional[CustomerProfile]:
        customer = (
            self.db.query(models.Customer)
            .options(selectinload(models.Customer.tags))
            .filter(models.Customer.id == customer_id, models.Customer.tenant_id == self.tenant_id)
            .first()
        )
        if not customer:
            return None
        reservations = (
            self.db.query(models.Reservation)
            .filter(
                models.Reservation.customer_id == customer.id,
                models.Reservation.tenant_id == self.tenant_id,
            )
            .order_by(models.Reservation.start_time.desc())
            .limit(RECENT_HISTORY_LIMIT)
            .all()
        )
        menus = (
            self.db.query(models.Reservation)
            .filter(
                models.Reservation.customer_id == customer.id,
                models.Reservation.tenant_id == self.tenant_id,
                models.Reservation.status == models.ReservationStatus.COMPLETED,
                models.Reservation.menu_name.isnot(None),
            )
            .order_by(models.Reservation.start_time.desc())
            .limit(RECENT_HISTORY_LIMIT)
            .all()
        )
        return CustomerProfile(
            id=customer.id,
            name=customer.name,
            email=customer.email,
            phone_number=customer.phone_number,
            line_user_id=customer.line_user_id,
            instagram_id=customer.instagram_id,
            visit_count=customer.visit_count or 0,
            last_visit_date=customer.last_visit_date,
            tags=sorted(tag.name for tag in customer.tags),
            recent_reservations=[
                RecentReservation(date=r.start_time, menu=r.menu_name, staff=r.staff_name)
                for r in reservations
            ],
            recent_menus=[
                RecentMenu(name=r.menu_name, date=r.start_time, satisfaction=r.satisfaction)
                for r in menus
            ],
        )

    def histories(self, since: datetime) -> list[CustomerHistory]:
        customer_ids = [
            row.id
            for row in self.db.query(models.Customer.id)
            .filter(models.Customer.tenant_id == self.tenant_id)
            .order_by(models.Customer.id)
        ]
        by_customer = {customer_id: CustomerHistory(customer_id=customer_id) for customer_id in customer_ids}
        reservations = (
            self.db.query(models.Reservation)
            .filter(
                models.Reservation.tenant_id == self.tenant_id,
                models.Reservation.status == models.ReservationStatus.COMPLETED,
                models.Reservation.start_time >= since,
            )
            .order_by(models.Reservation.start_time.desc())
        )
        for reservation in reservations:
            history = by_customer.get(reservation.customer_id)
            if history is not None:
                history.transactions.append(
                    Transaction(occurred_at=reservation.start_time, amount=reservation.amount)
                )
        return list(by_customer.values())

    def tag_names(self) -> set[str]:
        rows = self.db.query(models.CustomerTag.name).filter(models.CustomerTag.tenant_id == self.tenant_id)
        return {row.name for row in rows}

    def salon_info(self) -> SalonInfo:
        tenant = self.db.query(models.Tenant).filter(models.Tenant.id == self.tenant_id).first()
        if not tenant:
            return SalonInfo(name=settings.DEFAULT_SALON_NAME, phone=settings.DEFAULT_SALON_PHONE)
        return SalonInfo(
            name=tenant.name or settings.DEFAULT_SALON_NAME,
            phone=tenant.phone or settings.DEFAULT_SALON_PHONE,
        )


class SqlEventSink(EventSink):
    def __init__(self, db: Session, tenant_id: str):
        self.db = db
        self.tenant_id = tenant_id

    def append(self, record: DeliveryRecord) -> None:
        self.db.add(models.DeliveryEvent(
            tenant_id=self.tenant_id,
            campaign_id=record.campaign_id,
            customer_id=record.customer_id,
            channel=record.channel,
            outcome=record.outcome,
            error=record.error[:500] if record.error else None,
            external_id=record.external_id,
            occurred_at=record.occurred_at,
        ))
        self.db.flush()

    def query(self, campaign_id: str) -> list[DeliveryRecord]:
        events = (
            self.db.query(models.DeliveryEvent)
            .filter(
                models.DeliveryEvent.tenant_id == self.tenant_id,
                models.DeliveryEvent.campaign_id == campaign_id,
            )
            .order_by(models.DeliveryEvent.occurred_at, models.DeliveryEvent.id)
            .all()
        )
        return [
            DeliveryRecord(
                campaign_id=event.campaign_id,
                customer_id=event.customer_id,
                channel=event.channel,
                outcome=event.outcome,
                occurred_at=event.occurred_at,
                error=event.error,
                external_id=event.external_id,
            )
            for event in events
        ]
