"""
Allocation API Endpoints
"""
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from rebalancer.database.session import get_db
from rebalancer.schemas.allocation import AllocationImportRequest, AllocationUpdateRequest
from rebalancer.schemas.common import APIResponse
from rebalancer.security.dependencies import get_current_actor
from rebalancer.services.allocation_store import AllocationStore
from rebalancer.services.signals import sku_history
from rebalancer.services.sku_aggregator import aggregate_by_sku

router = APIRouter(prefix="/allocations", tags=["Allocations"])


@router.get("", response_model=APIResponse)
async def list_sku_allocations(
    sku_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
):
    """All allocations grouped per SKU, with derived total stock."""
    store = AllocationStore(db)
    rows = store.list_all([sku_id] if sku_id is not None else None)
    skus = aggregate_by_sku(rows)
    return APIResponse(data=[asdict(s) for s in skus], message=f"{len(skus)} SKU(s)")


@router.get("/{sku_id}", response_model=APIResponse)
async def get_sku_allocations(sku_id: int, db: Session = Depends(get_db)):
    skus = aggregate_by_sku(AllocationStore(db).get(sku_id))
    return APIResponse(data=asdict(skus[0]) if skus else None)


@router.get("/{sku_id}/history", response_model=APIResponse)
async def get_sku_history(
    sku_id: int,
    weeks: int = Query(12, ge=1, le=104),
    db: Session = Depends(get_db),
):
    """Weekly network demand and closing stock for the SKU."""
    AllocationStore(db).get_sku(sku_id)
    return APIResponse(data=sku_history(db, sku_id, weeks))


@router.put("/{allocation_id}", response_model=APIResponse)
async def update_allocation(
    allocation_id: int,
    body: AllocationUpdateRequest,
    actor: str = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    """Update allocation quantities. `expected_version` must match the stored row."""
    snapshot = AllocationStore(db).update(
        allocation_id, body.changed_fields(), body.expected_version, actor
    )
    return APIResponse(data=asdict(snapshot), message="Allocation updated")


@router.post("/import", response_model=APIResponse)
async def import_allocations(
    body: AllocationImportRequest,
    actor: str = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    """Upsert allocation rows from an upstream system (field names are normalised)."""
    counts = AllocationStore(db).import_allocations(body.records, actor)
    return APIResponse(data=counts, message=f"{counts['created']} created, {counts['updated']} updated")
