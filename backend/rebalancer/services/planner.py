"""
Rebalance Planner
==================
Pure allocation math: one SKU's snapshot + a strategy → proposed targets.

Every strategy redistributes exactly the SKU's total on-hand (the proposed
targets always sum to it), never proposes a negative target, and is fully
deterministic: rounding remainders always land on the last location in
input order. Retired locations (target 0) are proposed 0 and their stock
is shared among the active ones. Transfer constraints are carried on the plan untouched; the
transfer generator enforces them.
"""
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from rebalancer.core.exceptions import ValidationError
from rebalancer.models.enums import Strategy
from rebalancer.services.allocation_store import AllocationSnapshot
from rebalancer.services.policy import PlanSignals, RebalanceConstraints


@dataclass(frozen=True)
class PlanLine:
    location_id: int
    allocation_id: int
    on_hand: int
    current_target: int
    proposed_target: int
    version: int

    @property
    def delta(self) -> int:
        """Units this location must receive (+) or send (−) to reach its proposed target."""
        return self.proposed_target - self.on_hand


@dataclass(frozen=True)
class RebalancePlan:
    sku_id: int
    strategy: str
    lines: Tuple[PlanLine, ...]
    constraints: Optional[RebalanceConstraints] = None

    @property
    def total_on_hand(self) -> int:
        return sum(line.on_hand for line in self.lines)

    @property
    def total_proposed(self) -> int:
        return sum(line.proposed_target for line in self.lines)

    @property
    def changed(self) -> bool:
        return any(line.proposed_target != line.current_target for line in self.lines)

    def as_dict(self) -> Dict:
        return {
            "sku_id": self.sku_id,
            "strategy": self.strategy,
            "total_on_hand": self.total_on_hand,
            "lines": [
                {
                    "location_id": line.location_id,
                    "allocation_id": line.allocation_id,
                    "on_hand": line.on_hand,
                    "current_target": line.current_target,
                    "proposed_target": line.proposed_target,
                }
                for line in self.lines
            ],
        }


# ============================================================================
# Apportionment helpers
# ============================================================================

def equal_split(total: int, n: int) -> List[int]:
    base = total // n
    return [base] * (n - 1) + [total - base * (n - 1)]


def apportion(total: int, weights: Sequence[float]) -> List[int]:
    """
    Split `total` by weight, rounding half up, capping each share at what is
    left and giving the last slot the remainder. Negative weights count as
    zero; with no positive weight at all the split is equal.
    """
    clean = [max(float(w or 0), 0.0) for w in weights]
    weight_sum = sum(clean)
    if weight_sum <= 0:
        return equal_split(total, len(clean))

    shares = []
    remaining = total
    for w in clean[:-1]:
        qty = int(math.floor(total * w / weight_sum + 0.5))
        qty = min(qty, remaining)
        shares.append(qty)
        remaining -= qty
    shares.append(remaining)
    return shares


def fill_gaps(total: int, gaps: Sequence[int]) -> List[int]:
    """
    Cover each location's shortfall to target, then share what is left
    equally. When stock cannot cover every gap, gaps are covered
    proportionally (floored) and the remainder goes to the last location
    that has a gap.
    """
    n = len(gaps)
    gap_sum = sum(gaps)
    if gap_sum == 0:
        return equal_split(total, n)

    if total >= gap_sum:
        first = list(gaps)
    else:
        first = [total * g // gap_sum for g in gaps]
        last_gap = max(i for i, g in enumerate(gaps) if g > 0)
        first[last_gap] += total - sum(first)

    residual = equal_split(total - sum(first), n)
    return [a + b for a, b in zip(first, residual)]


# ============================================================================
# Planner
# ============================================================================

def _validate(allocations: Sequence[AllocationSnapshot]) -> int:
    if not allocations:
        raise ValidationError("Cannot plan a SKU with no allocation rows")
    sku_ids = {a.sku_id for a in allocations}
    if len(sku_ids) > 1:
        raise ValidationError("Plan input spans more than one SKU", sku_ids=sorted(sku_ids))
    for a in allocations:
        if a.on_hand < 0 or a.target < 0:
            raise ValidationError(
                "Allocation quantities must be non-negative", allocation_id=a.allocation_id
            )
    return allocations[0].sku_id


def plan(
    allocations: Sequence[AllocationSnapshot],
    strategy,
    constraints: Optional[RebalanceConstraints] = None,
    signals: Optional[PlanSignals] = None,
) -> RebalancePlan:
    sku_id = _validate(allocations)
    try:
        strategy = Strategy(strategy)
    except ValueError:
        raise ValidationError(f"Unknown strategy '{strategy}'")
    signals = signals or PlanSignals()

    total = sum(a.on_hand for a in allocations)

    # retired rows (target 0) are drained; a fully retired SKU is planned as a whole
    active = [i for i, a in enumerate(allocations) if a.target > 0] or list(range(len(allocations)))
    planned = [allocations[i] for i in active]
    locations = [a.location_id for a in planned]

    if strategy == Strategy.EQUAL_SPLIT:
        shares = equal_split(total, len(planned))
    elif strategy == Strategy.PROPORTIONAL_TO_SALES:
        shares = apportion(total, [signals.demand.get(loc, 0) for loc in locations])
    elif strategy == Strategy.MARGIN_PRIORITY:
        shares = apportion(total, [signals.margin.get(loc, 0) for loc in locations])
    else:
        shares = fill_gaps(total, [max(a.target - a.on_hand, 0) for a in planned])

    proposed = [0] * len(allocations)
    for i, share in zip(active, shares):
        proposed[i] = share

    return RebalancePlan(
        sku_id=sku_id,
        strategy=strategy.value,
        constraints=constraints,
        lines=tuple(
            PlanLine(
                location_id=a.location_id,
                allocation_id=a.allocation_id,
                on_hand=a.on_hand,
                current_target=a.target,
                proposed_target=p,
                version=a.version,
            )
            for a, p in zip(allocations, proposed)
        ),
    )
