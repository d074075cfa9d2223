from datetime import datetime
from typing import Optional

import pandas as pd
from sqlalchemy.orm import Session

from ..models import models
from ..models.models import DeliveryOutcome
from ..schemas.schemas import CampaignAnalytics, ChannelStats, RFMAnalysis, TimelinePoint
from .repositories import EventSink, SqlCustomerRepository, SqlEventSink
from .scoring_service import ScoringEngine, ambiguous_codes


class AnalyticsService:
    """Delivery and customer value reporting for one tenant."""

    def __init__(self, db: Session, tenant_id: str, events: Optional[EventSink] = None):
        self.db = db
        self.tenant_id = tenant_id
        self.events = events or SqlEventSink(db, tenant_id)

    def get_campaign_analytics(self, campaign_id: str) -> CampaignAnalytics:
        campaign = (
            self.db.query(models.Campaign)
            .filter(models.Campaign.id == campaign_id, models.Campaign.tenant_id == self.tenant_id)
            .first()
        )
        if not campaign:
            raise LookupError(f'Campaign {campaign_id} not found')

        breakdown = {channel: ChannelStats() for channel in campaign.channels or []}
        records = self.events.query(campaign_id)
        if not records:
            return CampaignAnalytics(
                campaign_id=campaign.id,
                status=campaign.status,
                recipients=campaign.total_recipients or 0,
                total=0,
                sent=0,
                failed=0,
                delivery_rate=0.0,
                channel_breakdown=breakdown,
                timeline=[],
            )

        df = pd.DataFrame([
            {
                'date': record.occurred_at.date(),
                'channel': models.Channel(record.channel).value,
                'sent': int(record.outcome == DeliveryOutcome.SENT),
                'failed': int(record.outcome == DeliveryOutcome.FAILED),
            }
            for record in records
        ])
        sent = int(df['sent'].sum())
        failed = int(df['failed'].sum())
        total = len(df)

        by_channel = df.groupby('channel')[['sent', 'failed']].sum()
        for channel, row in by_channel.iterrows():
            breakdown[channel] = ChannelStats(sent=int(row['sent']), failed=int(row['failed']))

        daily = df.groupby('date')[['sent', 'failed']].sum().sort_index()
        timeline = [
            TimelinePoint(date=day, sent=int(row['sent']), failed=int(row['failed']), total=int(row['sent'] + row['failed']))
            for day, row in daily.iterrows()
        ]

        return CampaignAnalytics(
            campaign_id=campaign.id,
            status=campaign.status,
            recipients=campaign.total_recipients or 0,
            total=total,
            sent=sent,
            failed=failed,
            delivery_rate=sent / total if total else 0.0,
            channel_breakdown=breakdown,
            timeline=timeline,
        )

    def get_rfm_analysis(self, now: Optional[datetime] = None) -> RFMAnalysis:
        engine = ScoringEngine(SqlCustomerRepository(self.db, self.tenant_id))
        scores = engine.analyze(now)
        return RFMAnalysis(scores=scores, summary=engine.summarize(scores), ambiguous_codes=ambiguous_codes())
