"""
Stock Alert API Endpoints
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from rebalancer.api.v1.deps import get_alert_policy, get_dismiss_queue
from rebalancer.database.session import get_db
from rebalancer.models.enums import AlertSeverity, AlertStatus, AlertType
from rebalancer.schemas.alerts import AlertGenerateRequest, ReplenishFromAlertRequest
from rebalancer.schemas.common import APIResponse
from rebalancer.security.dependencies import get_current_actor
from rebalancer.services.alert_generator import AlertGenerator, alert_to_dict
from rebalancer.services.allocation_store import AllocationStore
from rebalancer.services.policy import AlertPolicy
from rebalancer.services.replenishment import DismissRetryQueue, ReplenishmentService

router = APIRouter(prefix="/alerts", tags=["Stock Alerts"])


@router.get("", response_model=APIResponse)
async def list_alerts(
    sku_id: Optional[int] = Query(None),
    location_id: Optional[int] = Query(None),
    alert_type: Optional[AlertType] = Query(None, alias="type"),
    severity: Optional[AlertSeverity] = Query(None),
    status: Optional[AlertStatus] = Query(None),
    open_only: bool = Query(True, description="Only active/acknowledged when no status is given"),
    limit: int = Query(500, ge=1, le=5000),
    db: Session = Depends(get_db),
):
    alerts = AllocationStore(db).list_alerts(
        sku_id=sku_id,
        location_id=location_id,
        alert_type=alert_type.value if alert_type else None,
        severity=severity.value if severity else None,
        status=status.value if status else None,
        open_only=open_only,
        limit=limit,
    )
    return APIResponse(data=[alert_to_dict(a) for a in alerts])


@router.post("/generate", response_model=APIResponse)
async def generate_alerts(
    body: AlertGenerateRequest,
    actor: str = Depends(get_current_actor),
    policy: AlertPolicy = Depends(get_alert_policy),
    db: Session = Depends(get_db),
):
    """Run a generation pass. Re-running against unchanged stock creates nothing."""
    result = AlertGenerator(db, policy).generate(actor, sku_ids=body.sku_ids, as_of=body.as_of)
    return APIResponse(data=result.as_dict(), message="Alert generation complete")


@router.put("/{alert_id}/acknowledge", response_model=APIResponse)
async def acknowledge_alert(
    alert_id: int,
    actor: str = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    alert = AlertGenerator(db).acknowledge(alert_id, actor)
    return APIResponse(data=alert_to_dict(alert), message="Alert acknowledged")


@router.put("/{alert_id}/dismiss", response_model=APIResponse)
async def dismiss_alert(
    alert_id: int,
    actor: str = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    """Dismiss an alert. Dismissing a closed alert is a no-op."""
    alert = AlertGenerator(db).dismiss(alert_id, actor)
    return APIResponse(data=alert_to_dict(alert), message=f"Alert {alert.status}")


@router.post("/{alert_id}/replenish", response_model=APIResponse)
async def replenish_from_alert(
    alert_id: int,
    body: ReplenishFromAlertRequest,
    actor: str = Depends(get_current_actor),
    retry_queue: DismissRetryQueue = Depends(get_dismiss_queue),
    db: Session = Depends(get_db),
):
    """Transfer stock into the alert's location, then dismiss the alert."""
    outcome = ReplenishmentService(db, retry_queue).replenish_from_alert(
        alert_id=alert_id,
        from_location_id=body.from_location_id,
        quantity=body.quantity,
        actor=actor,
        required_date=body.required_date,
    )
    return APIResponse(data=outcome, message="Replenishment transfer created")
