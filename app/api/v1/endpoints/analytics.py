from typing import Any
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ....db.session import get_db
from ....schemas import schemas
from ... import deps
from ....services.analytics_service import AnalyticsService

router = APIRouter()

@router.get("/rfm", response_model=schemas.RFMAnalysis)
def get_rfm_analysis(
    db: Session = Depends(get_db),
    tenant_id: str = Depends(deps.get_tenant_id),
) -> Any:
    return AnalyticsService(db, tenant_id).get_rfm_analysis()
