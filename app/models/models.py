import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    CHAR,
    Column,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Table,
    Text,
)
from sqlalchemy.orm import relationship

from ..db.session import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


# Many-to-Many association tables
customer_tags = Table(
    'salon_customer_tags',
    Base.metadata,
    Column('customer_id', CHAR(36), ForeignKey('salon_customer.id'), primary_key=True),
    Column('customertag_id', CHAR(36), ForeignKey('salon_customertag.id'), primary_key=True)
)

class Channel(str, Enum):
    LINE = 'LINE'
    INSTAGRAM = 'INSTAGRAM'
    EMAIL = 'EMAIL'
    SMS = 'SMS'

class Gender(str, Enum):
    MALE = 'MALE'
    FEMALE = 'FEMALE'
    OTHER = 'OTHER'

class Tenant(Base):
    __tablename__ = "salon_tenant"

    id = Column(CHAR(36), primary_key=True, default=new_id)
    name = Column(String(160), nullable=False)
    phone = Column(String(32), nullable=True)
    created_at = Column(DateTime, default=utcnow)

class CustomerTag(Base):
    __tablename__ = "salon_customertag"

    id = Column(CHAR(36), primary_key=True, default=new_id)
    tenant_id = Column(CHAR(36), ForeignKey("salon_tenant.id"), nullable=False, index=True)
    name = Column(String(80), nullable=False)
    created_at = Column(DateTime, default=utcnow)

class Customer(Base):
    __tablename__ = "salon_customer"

    id = Column(CHAR(36), primary_key=True, default=new_id)
    tenant_id = Column(CHAR(36), ForeignKey("salon_tenant.id"), nullable=False, index=True)
    name = Column(String(120), nullable=True)
    email = Column(String(191), nullable=True)
    phone_number = Column(String(32), nullable=True)
    line_user_id = Column(String(64), nullable=True)
    instagram_id = Column(String(64), nullable=True)
    birth_date = Column(Date, nullable=True)
    gender = Column(SQLEnum(Gender), nullable=True)
    address = Column(String(255), nullable=True)
    visit_count = Column(Integer, default=0, nullable=False)
    first_visit_date = Column(DateTime, nullable=True)
    last_visit_date = Column(DateTime, nullable=True)
    total_spent = Column(Numeric(12, 2), default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    tags = relationship("CustomerTag", secondary=customer_tags, backref="customers")
    reservations = relationship("Reservation", back_populates="customer", order_by="Reservation.start_time.desc()")

class ReservationStatus(str, Enum):
    PENDING = 'PENDING'
    CONFIRMED = 'CONFIRMED'
    COMPLETED = 'COMPLETED'
    CANCELLED = 'CANCELLED'

class Reservation(Base):
    __tablename__ = "salon_reservation"

    id = Column(CHAR(36), primary_key=True, default=new_id)
    tenant_id = Column(CHAR(36), ForeignKey("salon_tenant.id"), nullable=False, index=True)
    customer_id = Column(CHAR(36), ForeignKey("salon_customer.id"), nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    status = Column(SQLEnum(ReservationStatus), default=ReservationStatus.COMPLETED, nullable=False)
    menu_name = Column(String(160), nullable=True)
    staff_name = Column(String(120), nullable=True)
    # Null when the visit has no priced menu attached
    amount = Column(Numeric(12, 2), nullable=True)
    satisfaction = Column(Integer, nullable=True)

    customer = relationship("Customer", back_populates="reservations")

class CustomerSegment(Base):
    __tablename__ = "salon_customersegment"

    id = Column(CHAR(36), primary_key=True, default=new_id)
    tenant_id = Column(CHAR(36), ForeignKey("salon_tenant.id"), nullable=False, index=True)
    name = Column(String(120), nullable=False)
    description = Column(Text, nullable=True)
    criteria = Column(JSON, nullable=False)
    customer_count = Column(Integer, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

class CampaignStatus(str, Enum):
    DRAFT = 'DRAFT'
    SCHEDULED = 'SCHEDULED'
    SENDING = 'SENDING'
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'

EDITABLE_CAMPAIGN_STATUSES = (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED)
TERMINAL_CAMPAIGN_STATUSES = (CampaignStatus.COMPLETED, CampaignStatus.FAILED)

class Campaign(Base):
    __tablename__ = "salon_campaign"

    id = Column(CHAR(36), primary_key=True, default=new_id)
    tenant_id = Column(CHAR(36), ForeignKey("salon_tenant.id"), nullable=False, index=True)
    name = Column(String(160), nullable=False)
    template = Column(Text, nullable=False)
    criteria = Column(JSON, nullable=False)
    channels = Column(JSON, nullable=False)
    ab_test = Column(JSON, nullable=True)
    scheduled_at = Column(DateTime, nullable=True)
    status = Column(SQLEnum(CampaignStatus), default=CampaignStatus.DRAFT, nullable=False)
    total_recipients = Column(Integer, default=0, nullable=False)
    expected_messages = Column(Integer, default=0, nullable=False)
    sent_count = Column(Integer, default=0, nullable=False)
    failed_count = Column(Integer, default=0, nullable=False)
    fire_job_id = Column(CHAR(36), nullable=True)
    last_error = Column(Text, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    jobs = relationship("DispatchJob", back_populates="campaign")

class JobKind(str, Enum):
    SEND_MESSAGE = 'SEND_MESSAGE'
    FIRE_CAMPAIGN = 'FIRE_CAMPAIGN'

class JobStatus(str, Enum):
    PENDING = 'PENDING'
    RUNNING = 'RUNNING'
    SUCCEEDED = 'SUCCEEDED'
    FAILED = 'FAILED'

class DispatchJob(Base):
    __tablename__ = "salon_dispatchjob"
    __table_args__ = (
        Index('ix_dispatchjob_status_run_at', 'status', 'run_at'),
    )

    id = Column(CHAR(36), primary_key=True, default=new_id)
    tenant_id = Column(CHAR(36), ForeignKey("salon_tenant.id"), nullable=False)
    kind = Column(SQLEnum(JobKind), nullable=False)
    campaign_id = Column(CHAR(36), ForeignKey("salon_campaign.id"), nullable=False, index=True)
    customer_id = Column(CHAR(36), nullable=True)
    channel = Column(SQLEnum(Channel), nullable=True)
    variant_index = Column(Integer, nullable=True)
    status = Column(SQLEnum(JobStatus), default=JobStatus.PENDING, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    run_at = Column(DateTime, nullable=False, default=utcnow)
    claimed_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    external_id = Column(String(120), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    campaign = relationship("Campaign", back_populates="jobs")

class DeliveryOutcome(str, Enum):
    SENT = 'SENT'
    FAILED = 'FAILED'

class DeliveryEvent(Base):
    __tablename__ = "salon_deliveryevent"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(CHAR(36), nullable=False)
    campaign_id = Column(CHAR(36), nullable=False, index=True)
    customer_id = Column(CHAR(36), nullable=False)
    channel = Column(SQLEnum(Channel), nullable=False)
    outcome = Column(SQLEnum(DeliveryOutcome), nullable=False)
    error = Column(Text, nullable=True)
    external_id = Column(String(120), nullable=True)
    occurred_at = Column(DateTime, default=utcnow, nullable=False)

class ActivityLog(Base):
    __tablename__ = "salon_activitylog"

    id = Column(CHAR(36), primary_key=True, default=new_id)
    tenant_id = Column(CHAR(36), nullable=False, index=True)
    action = Column(String(64), nullable=False)
    entity_type = Column(String(64), nullable=False)
    entity_id = Column(CHAR(36), nullable=False)
    # "metadata" is reserved on declarative classes
    details = Column("metadata", JSON, nullable=True)
    timestamp = Column(DateTime, default=utcnow)
