"""Sample script: seed a demo salon, broadcast a campaign and print its analytics."""
from __future__ import annotations

import os
import sys
from datetime import timedelta
from decimal import Decimal

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.append(BASE_DIR)

from app.core.logging_config import configure_logging  # noqa: E402
from app.db.session import SessionLocal, init_db  # noqa: E402
from app.models import models  # noqa: E402
from app.models.models import utcnow  # noqa: E402
from app.schemas.schemas import SegmentCriteria  # noqa: E402
from app.services.analytics_service import AnalyticsService  # noqa: E402
from app.services.campaign_service import CampaignService  # noqa: E402
from app.worker import create_dispatcher  # noqa: E402

TENANT_ID = 'demo-salon'

CUSTOMERS = [
    # name, LINE id, email, visits as (days ago, amount, menu)
    ('山田 花子', 'U-hanako', 'hanako@example.jp', [(12, 8000, 'カラー'), (45, 5000, 'カット'), (80, 5000, 'カット')]),
    ('佐藤 美咲', 'U-misaki', None, [(20, 12000, 'パーマ'), (60, 6500, 'カラー'), (100, 5000, 'カット')]),
    ('鈴木 一郎', None, 'ichiro@example.jp', [(200, 4500, 'カット')]),
]


def seed(db):
    if db.query(models.Tenant).filter(models.Tenant.id == TENANT_ID).first():
        return
    db.add(models.Tenant(id=TENANT_ID, name='Hair Salon Sakura', phone='03-1234-5678'))
    now = utcnow()
    for name, line_id, email, visits in CUSTOMERS:
        customer = models.Customer(tenant_id=TENANT_ID, name=name, line_user_id=line_id, email=email)
        db.add(customer)
        db.flush()
        for days_ago, amount, menu in visits:
            db.add(models.Reservation(
                tenant_id=TENANT_ID,
                customer_id=customer.id,
                start_time=now - timedelta(days=days_ago),
                menu_name=menu,
                amount=Decimal(amount),
            ))
        customer.visit_count = len(visits)
        customer.first_visit_date = now - timedelta(days=max(v[0] for v in visits))
        customer.last_visit_date = now - timedelta(days=min(v[0] for v in visits))
        customer.total_spent = sum(Decimal(v[1]) for v in visits)
    db.commit()


def main():
    configure_logging()
    init_db()
    dispatcher = create_dispatcher()
    db = SessionLocal()
    try:
        seed(db)
        service = CampaignService(db, TENANT_ID, dispatcher)
        campaign = service.create_campaign(
            name='秋のご来店キャンペーン',
            template='{{timeGreeting}}、{{customer.name}}様。{{season}}の限定クーポンをお届けします。{{salon.name}}',
            criteria=[SegmentCriteria.model_validate({'rfm': {'frequency': {'min': 2}}})],
            channels=[models.Channel.LINE, models.Channel.EMAIL],
        )
        print(f"Campaign {campaign.id}: {campaign.total_recipients} recipients, {campaign.expected_messages} messages")
        dispatcher.drain(utcnow() + timedelta(seconds=dispatcher.max_jitter + 1))
        analytics = AnalyticsService(db, TENANT_ID).get_campaign_analytics(campaign.id)
        print(f"Status: {analytics.status.value}, sent: {analytics.sent}, failed: {analytics.failed}")
    finally:
        db.close()


if __name__ == '__main__':
    main()
