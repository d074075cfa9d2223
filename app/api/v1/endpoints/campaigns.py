from typing import Any, List, Optional
from fastapi import APIRouter, Depends

from ....models.models import CampaignStatus
from ....schemas import schemas
from ... import deps
from ....services.analytics_service import AnalyticsService
from ....services.campaign_service import CampaignService

router = APIRouter()

@router.get("/", response_model=List[schemas.Campaign])
def read_campaigns(
    status: Optional[CampaignStatus] = None,
    service: CampaignService = Depends(deps.get_campaign_service),
) -> Any:
    return service.list_campaigns(status)

@router.post("/", response_model=schemas.Campaign, status_code=201)
def create_campaign(
    *,
    campaign_in: schemas.CampaignCreate,
    service: CampaignService = Depends(deps.get_campaign_service),
) -> Any:
    return service.create_campaign(
        name=campaign_in.name,
        template=campaign_in.template,
        criteria=campaign_in.criteria,
        channels=campaign_in.channels,
        scheduled_at=campaign_in.scheduled_at,
        ab_test=campaign_in.ab_test,
        segment_ids=campaign_in.segment_ids,
    )

@router.get("/{campaign_id}", response_model=schemas.Campaign)
def read_campaign(
    campaign_id: str,
    service: CampaignService = Depends(deps.get_campaign_service),
) -> Any:
    return service.get_campaign(campaign_id)

@router.patch("/{campaign_id}", response_model=schemas.Campaign)
def update_campaign(
    campaign_id: str,
    campaign_in: schemas.CampaignUpdate,
    service: CampaignService = Depends(deps.get_campaign_service),
) -> Any:
    return service.update_campaign(campaign_id, campaign_in)

@router.post("/{campaign_id}/send", response_model=schemas.Campaign)
def send_campaign(
    campaign_id: str,
    service: CampaignService = Depends(deps.get_campaign_service),
) -> Any:
    return service.start_campaign(campaign_id)

@router.post("/{campaign_id}/cancel", response_model=schemas.Campaign)
def cancel_campaign(
    campaign_id: str,
    service: CampaignService = Depends(deps.get_campaign_service),
) -> Any:
    return service.cancel_campaign(campaign_id)

@router.get("/{campaign_id}/preview/{customer_id}", response_model=List[schemas.MessagePreview])
def preview_campaign(
    campaign_id: str,
    customer_id: str,
    service: CampaignService = Depends(deps.get_campaign_service),
) -> Any:
    return service.preview(campaign_id, customer_id)

@router.get("/{campaign_id}/analytics", response_model=schemas.CampaignAnalytics)
def campaign_analytics(
    campaign_id: str,
    service: CampaignService = Depends(deps.get_campaign_service),
) -> Any:
    return AnalyticsService(service.db, service.tenant_id).get_campaign_analytics(campaign_id)
