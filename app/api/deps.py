from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from ..db.session import get_db
from ..services.campaign_service import CampaignService
from ..services.dispatch_service import Dispatcher


def get_tenant_id(x_tenant_id: str = Header(..., alias="X-Tenant-ID")) -> str:
    tenant_id = x_tenant_id.strip()
    if not tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is required")
    return tenant_id


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def get_campaign_service(
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> CampaignService:
    return CampaignService(db, tenant_id, dispatcher)
