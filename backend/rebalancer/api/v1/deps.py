"""
Shared endpoint dependencies: request-scoped policies and engine services
"""
from fastapi import Depends, Request
from sqlalchemy.orm import sessionmaker

from rebalancer.core.config import get_settings
from rebalancer.database.session import get_session_factory
from rebalancer.services.orchestrator import RebalanceOrchestrator
from rebalancer.services.policy import AlertPolicy, CostModel, RebalanceConstraints
from rebalancer.services.replenishment import DismissRetryQueue


def get_alert_policy() -> AlertPolicy:
    return AlertPolicy.from_settings(get_settings())


def get_default_constraints() -> RebalanceConstraints:
    return RebalanceConstraints.from_settings(get_settings())


def get_orchestrator(
    session_factory: sessionmaker = Depends(get_session_factory),
) -> RebalanceOrchestrator:
    settings = get_settings()
    return RebalanceOrchestrator(
        session_factory,
        cost_model=CostModel.from_settings(settings),
        max_retries=settings.REBALANCE_MAX_RETRIES,
        workers=settings.REBALANCE_WORKERS,
        demand_weeks=settings.DEMAND_WINDOW_WEEKS,
    )


def get_dismiss_queue(request: Request) -> DismissRetryQueue:
    return request.app.state.dismiss_queue
