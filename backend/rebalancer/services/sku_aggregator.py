"""
SKU Aggregator - flat allocation rows → one SKU-centric view per SKU.
"""
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from rebalancer.services.allocation_store import AllocationSnapshot


@dataclass
class LocationView:
    location_id: int
    allocation_id: int
    location_code: str
    location_name: str
    role: str
    region: str
    allocated: int
    target: int
    on_hand: int
    in_transit: int
    safety_stock: int
    version: int


@dataclass
class SkuAggregate:
    sku_id: int
    sku_code: str
    sku_name: str
    pack_size: str
    category: str
    total_stock: int = 0
    locations: List[LocationView] = field(default_factory=list)


def aggregate_by_sku(rows: Iterable[AllocationSnapshot]) -> List[SkuAggregate]:
    """
    Group rows by SKU id. SKUs appear in first-seen order and each SKU's
    locations keep the order the store returned them in. total_stock is
    derived from on_hand; reference gaps arrive here already as "Unknown".
    """
    by_sku: Dict[int, SkuAggregate] = {}
    for row in rows:
        agg = by_sku.get(row.sku_id)
        if agg is None:
            agg = SkuAggregate(
                sku_id=row.sku_id,
                sku_code=row.sku_code,
                sku_name=row.sku_name,
                pack_size=row.pack_size,
                category=row.category,
            )
            by_sku[row.sku_id] = agg

        agg.locations.append(LocationView(
            location_id=row.location_id,
            allocation_id=row.allocation_id,
            location_code=row.location_code,
            location_name=row.location_name,
            role=row.role,
            region=row.region,
            allocated=row.allocated,
            target=row.target,
            on_hand=row.on_hand,
            in_transit=row.in_transit,
            safety_stock=row.safety_stock,
            version=row.version,
        ))
        agg.total_stock += row.on_hand

    return list(by_sku.values())
