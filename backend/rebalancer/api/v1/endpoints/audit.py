"""
Audit Trail API Endpoints
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from rebalancer.audit.service import AuditService
from rebalancer.database.session import get_db
from rebalancer.schemas.common import APIResponse

router = APIRouter(prefix="/audit", tags=["Audit"])


@router.get("", response_model=APIResponse)
async def list_audit_entries(
    entity: Optional[str] = Query(None, description="allocation, transfer_order, stock_alert, rebalance, rebalance_run"),
    record_key: Optional[str] = Query(None),
    changed_by: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    entries = AuditService(db).recent(entity=entity, record_key=record_key, changed_by=changed_by, limit=limit)
    return APIResponse(data=entries)
