"""
Rebalance API Endpoints
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from rebalancer.api.v1.deps import get_default_constraints, get_orchestrator
from rebalancer.core.config import get_settings
from rebalancer.database.session import get_db
from rebalancer.models.enums import RunState
from rebalancer.schemas.common import APIResponse
from rebalancer.schemas.rebalance import AutoRebalanceRequest, SkuPlanRequest
from rebalancer.security.dependencies import get_current_actor
from rebalancer.services.orchestrator import RebalanceOrchestrator, plan_for_sku
from rebalancer.services.policy import RebalanceConstraints

router = APIRouter(prefix="/rebalance", tags=["Rebalancing"])

_RUN_MESSAGES = {
    RunState.COMPLETED: "Rebalance completed",
    RunState.PARTIALLY_COMPLETED: "Rebalance partially completed; see per-SKU results",
    RunState.FAILED: "Rebalance failed for every SKU in scope",
}


@router.post("/plan", response_model=APIResponse)
def plan_single_sku(
    body: SkuPlanRequest,
    actor: str = Depends(get_current_actor),
    defaults: RebalanceConstraints = Depends(get_default_constraints),
    orchestrator: RebalanceOrchestrator = Depends(get_orchestrator),
    db: Session = Depends(get_db),
):
    """
    Plan one SKU with the chosen strategy and show the transfers it implies.
    With `commit`, the plan is re-made against fresh data and committed.
    """
    constraints = body.constraints.to_constraints(defaults)
    if body.commit:
        run = orchestrator.execute_single(body.sku_id, body.strategy, constraints, actor)
        return APIResponse(data=run.as_dict(), message=_RUN_MESSAGES[run.state])

    _, sku_plan, proposal = plan_for_sku(
        db, body.sku_id, body.strategy, constraints, get_settings().DEMAND_WINDOW_WEEKS
    )
    return APIResponse(
        data={
            "plan": sku_plan.as_dict(),
            "transfers": proposal.as_dict(),
            "estimated_cost": orchestrator.cost_model.estimate(len(proposal.legs), proposal.units),
        },
        message="Plan computed (not committed)",
    )


@router.post("/preview", response_model=APIResponse)
def preview_rebalance(
    body: AutoRebalanceRequest,
    actor: str = Depends(get_current_actor),
    defaults: RebalanceConstraints = Depends(get_default_constraints),
    orchestrator: RebalanceOrchestrator = Depends(get_orchestrator),
):
    """Plan every SKU in scope and summarise the outcome. Nothing is written."""
    run = orchestrator.scope(
        body.scope.to_filter(get_settings().HIGH_PRIORITY_RATIO),
        body.constraints.to_constraints(defaults),
        actor,
        objective=body.objective,
    )
    run = orchestrator.preview(run)
    return APIResponse(data=run.as_dict(), message=f"Preview for {len(run.sku_ids)} SKU(s)")


@router.post("/execute", response_model=APIResponse)
def execute_rebalance(
    body: AutoRebalanceRequest,
    actor: str = Depends(get_current_actor),
    defaults: RebalanceConstraints = Depends(get_default_constraints),
    orchestrator: RebalanceOrchestrator = Depends(get_orchestrator),
):
    """Scope, preview and execute; each SKU commits (or fails) on its own."""
    run = orchestrator.run(
        body.scope.to_filter(get_settings().HIGH_PRIORITY_RATIO),
        body.constraints.to_constraints(defaults),
        actor,
        objective=body.objective,
    )
    return APIResponse(
        success=run.state != RunState.FAILED,
        data=run.as_dict(),
        message=_RUN_MESSAGES[run.state],
    )
