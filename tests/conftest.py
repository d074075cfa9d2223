"""
Pytest configuration and fixtures for the salon broadcast tests.
"""
import os

# Keep the application engine off the developer's database file
os.environ["DATABASE_URL"] = "sqlite://"

import threading
from datetime import date, datetime, timedelta
from decimal import Decimal

import numpy as np
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.db.session import init_db
from app.models import models
from app.models.models import Channel, ReservationStatus
from app.services.campaign_service import register_handlers
from app.services.dispatch_service import Dispatcher
from app.services.messaging_service import (
    BulkMessenger,
    ChannelSender,
    DeliveryError,
    DispatchResult,
)

NOW = datetime(2026, 4, 15, 10, 0, 0)
TENANT_ID = "tenant-sakura"


class FakeClock:
    """Settable stand-in for ``utcnow``."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSender(ChannelSender):
    """Channel sender that records messages and can be told to fail."""

    def __init__(self):
        self.sent = []
        self.failing = set()
        self._lock = threading.Lock()

    def send(self, recipient: str, content: str) -> DispatchResult:
        with self._lock:
            if recipient in self.failing:
                raise DeliveryError(f"provider rejected {recipient}")
            self.sent.append((recipient, content))
            return DispatchResult(external_id=f"ext-{len(self.sent)}")

    def contents_for(self, recipient: str):
        return [content for to, content in self.sent if to == recipient]


@pytest.fixture(scope="function")
def engine(tmp_path):
    """File-backed SQLite so worker threads can share the database."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'broadcast.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(scope="function")
def clock():
    return FakeClock()


@pytest.fixture(scope="function")
def sender():
    return RecordingSender()


@pytest.fixture(scope="function")
def messenger(sender):
    return BulkMessenger({channel: sender for channel in Channel})


@pytest.fixture(scope="function")
def dispatcher(session_factory, messenger, clock):
    """Dispatcher with campaign handlers and a seeded RNG."""
    dispatcher = Dispatcher(
        session_factory,
        concurrency=4,
        max_attempts=3,
        backoff_base=2,
        backoff_max=300,
        max_jitter=5,
        rng=np.random.default_rng(42),
        clock=clock,
    )
    register_handlers(dispatcher, messenger)
    return dispatcher


@pytest.fixture(scope="function")
def tenant(db):
    tenant = models.Tenant(id=TENANT_ID, name="Hair Salon Sakura", phone="03-1234-5678")
    db.add(tenant)
    db.commit()
    return tenant


@pytest.fixture(scope="function")
def make_customer(db, tenant):
    """Create a customer with optional tags and completed visits.

    ``visits`` is a list of ``(days_ago, amount, menu)`` tuples.
    """

    def factory(name="山田 花子", *, tags=(), visits=(), **fields):
        customer = models.Customer(tenant_id=tenant.id, name=name, **fields)
        for tag_name in tags:
            tag = (
                db.query(models.CustomerTag)
                .filter(models.CustomerTag.tenant_id == tenant.id, models.CustomerTag.name == tag_name)
                .first()
            )
            if tag is None:
                tag = models.CustomerTag(tenant_id=tenant.id, name=tag_name)
                db.add(tag)
            customer.tags.append(tag)
        db.add(customer)
        db.flush()

        times = []
        for days_ago, amount, menu in visits:
            start = NOW - timedelta(days=days_ago)
            times.append(start)
            db.add(models.Reservation(
                tenant_id=tenant.id,
                customer_id=customer.id,
                start_time=start,
                status=ReservationStatus.COMPLETED,
                menu_name=menu,
                staff_name="佐藤",
                amount=Decimal(str(amount)) if amount is not None else None,
                satisfaction=5,
            ))
        if times and "visit_count" not in fields:
            customer.visit_count = len(times)
            customer.first_visit_date = min(times)
            customer.last_visit_date = max(times)
            customer.total_spent = sum(Decimal(str(a)) for _, a, _ in visits if a is not None)
        db.commit()
        return customer

    return factory


@pytest.fixture(scope="function")
def birthday():
    """Birth date for someone who turns ``age`` on NOW's date."""

    def factory(age: int) -> date:
        return NOW.date().replace(year=NOW.year - age)

    return factory
