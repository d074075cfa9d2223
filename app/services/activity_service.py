from typing import Any, Dict, Optional
from sqlalchemy.orm import Session
from ..models import models

def log_activity(
    db: Session,
    tenant_id: str,
    action: str,
    entity_type: str,
    entity_id: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> models.ActivityLog:
    """Add an audit entry to the current transaction; the caller commits."""
    db_log = models.ActivityLog(
        tenant_id=tenant_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=metadata or {},
    )
    db.add(db_log)
    db.flush()
    return db_log
