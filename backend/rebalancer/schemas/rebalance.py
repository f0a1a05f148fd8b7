"""
Rebalance Schemas
"""
from typing import Optional, List
from pydantic import BaseModel, Field

from rebalancer.models.enums import Objective, ScopeMode, Strategy, LocationRole
from rebalancer.services.policy import RebalanceConstraints, ScopeFilter


class ScopeModel(BaseModel):
    mode: ScopeMode = ScopeMode.ALL
    sku_ids: List[int] = Field(default_factory=list)
    category: Optional[str] = None
    location_ids: List[int] = Field(default_factory=list)
    roles: List[LocationRole] = Field(default_factory=list)
    regions: List[str] = Field(default_factory=list)

    def to_filter(self, high_priority_ratio: float) -> ScopeFilter:
        return ScopeFilter(
            mode=self.mode,
            sku_ids=tuple(self.sku_ids),
            category=self.category,
            high_priority_ratio=high_priority_ratio,
            location_ids=tuple(self.location_ids),
            roles=tuple(r.value for r in self.roles),
            regions=tuple(self.regions),
        )


class ConstraintsModel(BaseModel):
    max_transfers_per_sku: Optional[int] = Field(None, ge=1)
    min_transfer_quantity: Optional[int] = Field(None, ge=1)

    def to_constraints(self, defaults: RebalanceConstraints) -> RebalanceConstraints:
        return RebalanceConstraints(
            max_transfers_per_sku=self.max_transfers_per_sku or defaults.max_transfers_per_sku,
            min_transfer_quantity=self.min_transfer_quantity or defaults.min_transfer_quantity,
        )


class AutoRebalanceRequest(BaseModel):
    scope: ScopeModel = Field(default_factory=ScopeModel)
    objective: Objective = Objective.MINIMIZE_STOCKOUTS
    constraints: ConstraintsModel = Field(default_factory=ConstraintsModel)


class SkuPlanRequest(BaseModel):
    """Plan a single SKU; `commit` executes it through the per-SKU commit path."""
    sku_id: int
    strategy: Strategy = Strategy.EQUAL_SPLIT
    constraints: ConstraintsModel = Field(default_factory=ConstraintsModel)
    commit: bool = False
