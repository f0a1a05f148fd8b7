"""
API v1 Router - Aggregates all endpoint routers
"""
from fastapi import APIRouter

from rebalancer.api.v1.endpoints.allocations import router as allocations_router
from rebalancer.api.v1.endpoints.rebalance import router as rebalance_router
from rebalancer.api.v1.endpoints.transfers import router as transfers_router
from rebalancer.api.v1.endpoints.alerts import router as alerts_router
from rebalancer.api.v1.endpoints.audit import router as audit_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(allocations_router)
api_router.include_router(rebalance_router)
api_router.include_router(transfers_router)
api_router.include_router(alerts_router)
api_router.include_router(audit_router)
