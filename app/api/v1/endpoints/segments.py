from typing import Any
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ....db.session import get_db
from ....schemas import schemas
from ... import deps
from ....services.segment_service import SegmentService

router = APIRouter()

@router.post("/", response_model=schemas.SegmentResult, status_code=201)
def create_segment(
    *,
    segment_in: schemas.SegmentCreate,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(deps.get_tenant_id),
) -> Any:
    service = SegmentService(db, tenant_id)
    return service.create_segment(segment_in.name, segment_in.criteria, segment_in.description or "")
