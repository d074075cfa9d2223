import datetime as dt
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..models.models import CampaignStatus, Channel, Gender

class RiskLevel(str, Enum):
    LOW = 'LOW'
    MEDIUM = 'MEDIUM'
    HIGH = 'HIGH'

# Segment criteria
class Range(BaseModel):
    min: Optional[float] = None
    max: Optional[float] = None

    model_config = ConfigDict(frozen=True)

    @model_validator(mode='after')
    def check_bounds(self):
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError(f'range min {self.min} is greater than max {self.max}')
        return self

    def is_empty(self) -> bool:
        return self.min is None and self.max is None

class RFMFilter(BaseModel):
    recency: Optional[Range] = None  # days since last visit
    frequency: Optional[Range] = None  # visit count
    monetary: Optional[Range] = None  # total spent

    model_config = ConfigDict(frozen=True)

    def is_empty(self) -> bool:
        return all(r is None or r.is_empty() for r in (self.recency, self.frequency, self.monetary))

class DemographicsFilter(BaseModel):
    age_range: Optional[Range] = None
    gender: Optional[Gender] = None
    locations: List[str] = []

    model_config = ConfigDict(frozen=True)

    def is_empty(self) -> bool:
        return (self.age_range is None or self.age_range.is_empty()) and not self.gender and not self.locations

class BehavioralFilter(BaseModel):
    visit_interval: Optional[Range] = None  # average days between visits
    risk_level: Optional[RiskLevel] = None
    preferred_menus: List[str] = []

    model_config = ConfigDict(frozen=True)

    def is_empty(self) -> bool:
        return (
            (self.visit_interval is None or self.visit_interval.is_empty())
            and not self.risk_level
            and not self.preferred_menus
        )

class SegmentCriteria(BaseModel):
    rfm: Optional[RFMFilter] = None
    demographics: Optional[DemographicsFilter] = None
    behavioral: Optional[BehavioralFilter] = None
    tags: List[str] = []
    rfm_segments: List[str] = []

    model_config = ConfigDict(frozen=True)

    def is_empty(self) -> bool:
        return (
            (self.rfm is None or self.rfm.is_empty())
            and (self.demographics is None or self.demographics.is_empty())
            and (self.behavioral is None or self.behavioral.is_empty())
            and not self.tags
            and not self.rfm_segments
        )

class SegmentCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = ""
    criteria: SegmentCriteria

class SegmentResult(BaseModel):
    id: str
    name: str
    matched_count: int
    warnings: List[str] = []

# Campaign Schemas
class ABVariant(BaseModel):
    name: str
    content: str = Field(..., min_length=1)
    percentage: float = Field(..., ge=0)

class ABTest(BaseModel):
    enabled: bool = True
    variants: List[ABVariant] = []

    @model_validator(mode='after')
    def check_variants(self):
        if self.enabled and not self.variants:
            raise ValueError('A/B test is enabled but defines no variants')
        return self

def _as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value

def _dedupe(channels: List[Channel]) -> List[Channel]:
    ordered: List[Channel] = []
    for channel in channels:
        if channel not in ordered:
            ordered.append(channel)
    return ordered

class CampaignCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=160)
    template: str
    criteria: List[SegmentCriteria] = []
    segment_ids: List[str] = []
    channels: List[Channel] = Field(..., min_length=1)
    scheduled_at: Optional[datetime] = None
    ab_test: Optional[ABTest] = None

    normalize_scheduled_at = field_validator('scheduled_at')(_as_naive_utc)
    unique_channels = field_validator('channels')(_dedupe)

class CampaignUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=160)
    template: Optional[str] = None
    channels: Optional[List[Channel]] = Field(None, min_length=1)
    scheduled_at: Optional[datetime] = None
    ab_test: Optional[ABTest] = None

    normalize_scheduled_at = field_validator('scheduled_at')(_as_naive_utc)

class Campaign(BaseModel):
    id: str
    tenant_id: str
    name: str
    template: str
    criteria: List[Dict[str, Any]]
    channels: List[Channel]
    ab_test: Optional[Dict[str, Any]] = None
    scheduled_at: Optional[datetime] = None
    status: CampaignStatus
    total_recipients: int
    expected_messages: int
    sent_count: int
    failed_count: int
    last_error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

class MessagePreview(BaseModel):
    customer_id: str
    variant: Optional[str] = None
    content: str

# RFM Schemas
class RFMScore(BaseModel):
    customer_id: str
    recency: int
    frequency: int
    monetary: float
    recency_score: int = Field(..., ge=1, le=5)
    frequency_score: int = Field(..., ge=1, le=5)
    monetary_score: int = Field(..., ge=1, le=5)
    rfm_score: str
    segment: str

class RFMAnalysis(BaseModel):
    scores: List[RFMScore]
    summary: Dict[str, int]
    ambiguous_codes: Dict[str, List[str]]

# Analytics Schemas
class TimelinePoint(BaseModel):
    date: dt.date
    sent: int
    failed: int
    total: int

class ChannelStats(BaseModel):
    sent: int = 0
    failed: int = 0

class CampaignAnalytics(BaseModel):
    campaign_id: str
    status: CampaignStatus
    recipients: int
    total: int
    sent: int
    failed: int
    delivery_rate: float
    channel_breakdown: Dict[str, ChannelStats]
    timeline: List[TimelinePoint]
