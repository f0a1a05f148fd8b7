"""
Transfer Order API Endpoints
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from rebalancer.database.session import get_db
from rebalancer.models.enums import TransferStatus
from rebalancer.schemas.common import APIResponse
from rebalancer.schemas.transfers import TransferCreateRequest
from rebalancer.security.dependencies import get_current_actor
from rebalancer.services.allocation_store import AllocationStore
from rebalancer.services.transfer_orders import TransferOrderGenerator, transfer_to_dict

router = APIRouter(prefix="/transfers", tags=["Transfer Orders"])


@router.post("", response_model=APIResponse, status_code=status.HTTP_201_CREATED)
async def create_transfer_order(
    body: TransferCreateRequest,
    actor: str = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    """
    Request a transfer. If the source cannot cover the full quantity the
    order is created for what is available and the shortfall is reported.
    """
    result = TransferOrderGenerator(db).create_manual(
        sku_id=body.sku_id,
        from_location_id=body.from_location_id,
        to_location_id=body.to_location_id,
        quantity=body.quantity,
        actor=actor,
        required_date=body.required_date,
    )
    if result.capacity_error is not None:
        return APIResponse(
            data=result.as_dict(),
            message=f"Partially fulfilled: {result.fulfilled} of {result.requested} units",
            errors=[result.capacity_error.message],
        )
    return APIResponse(data=result.as_dict(), message="Transfer order created")


@router.get("", response_model=APIResponse)
async def list_transfer_orders(
    sku_id: Optional[int] = Query(None),
    location_id: Optional[int] = Query(None),
    status_filter: Optional[TransferStatus] = Query(None, alias="status"),
    limit: int = Query(200, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    orders = AllocationStore(db).list_transfers(
        sku_id=sku_id,
        location_id=location_id,
        status=status_filter.value if status_filter else None,
        limit=limit,
    )
    return APIResponse(data=[transfer_to_dict(o) for o in orders])


@router.get("/{transfer_id}", response_model=APIResponse)
async def get_transfer_order(transfer_id: str, db: Session = Depends(get_db)):
    return APIResponse(data=transfer_to_dict(AllocationStore(db).get_transfer(transfer_id)))


@router.post("/{transfer_id}/dispatch", response_model=APIResponse)
async def dispatch_transfer_order(
    transfer_id: str,
    actor: str = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    order = TransferOrderGenerator(db).dispatch(transfer_id, actor)
    return APIResponse(data=transfer_to_dict(order), message=f"Transfer {order.status}")


@router.post("/{transfer_id}/receive", response_model=APIResponse)
async def receive_transfer_order(
    transfer_id: str,
    actor: str = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    """Mark received. Safe to retry: a received order is returned unchanged."""
    order = TransferOrderGenerator(db).receive(transfer_id, actor)
    return APIResponse(data=transfer_to_dict(order), message=f"Transfer {order.status}")


@router.post("/{transfer_id}/cancel", response_model=APIResponse)
async def cancel_transfer_order(
    transfer_id: str,
    actor: str = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    order = TransferOrderGenerator(db).cancel(transfer_id, actor)
    return APIResponse(data=transfer_to_dict(order), message=f"Transfer {order.status}")
