"""
Signal Feeds
=============
Read-side access to the data upstream systems publish for the engine:

- weekly sales velocity per SKU + location (demand and margin weights)
- batch/lot expiry metadata per SKU + location
- weekly demand / closing stock history per SKU (pandas aggregation)
"""
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional

import pandas as pd
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from rebalancer.models import SalesVelocity, StockBatch


def _window_start(as_of: date, weeks: int) -> date:
    return as_of - timedelta(weeks=weeks)


def weekly_demand(
    db: Session,
    sku_id: int,
    weeks: int,
    as_of: Optional[date] = None,
) -> Dict[int, float]:
    """Units sold per location over the trailing window."""
    as_of = as_of or date.today()
    stmt = (
        select(SalesVelocity.location_id, func.sum(SalesVelocity.units_sold))
        .where(
            SalesVelocity.sku_id == sku_id,
            SalesVelocity.week_start > _window_start(as_of, weeks),
            SalesVelocity.week_start <= as_of,
        )
        .group_by(SalesVelocity.location_id)
    )
    return {loc: float(units or 0) for loc, units in db.execute(stmt)}


def margin_weights(
    db: Session,
    sku_id: int,
    weeks: int,
    as_of: Optional[date] = None,
) -> Dict[int, float]:
    """Gross margin (units × margin per unit) per location over the trailing window."""
    as_of = as_of or date.today()
    stmt = (
        select(
            SalesVelocity.location_id,
            func.sum(SalesVelocity.units_sold * SalesVelocity.margin_per_unit),
        )
        .where(
            SalesVelocity.sku_id == sku_id,
            SalesVelocity.week_start > _window_start(as_of, weeks),
            SalesVelocity.week_start <= as_of,
        )
        .group_by(SalesVelocity.location_id)
    )
    return {loc: float(margin or 0) for loc, margin in db.execute(stmt)}


@dataclass(frozen=True)
class ExpiringBatch:
    sku_id: int
    location_id: int
    batch_code: str
    quantity: int
    expiry_date: date
    days_to_expiry: int


def soonest_expiries(
    db: Session,
    as_of: date,
    window_days: int,
    sku_ids: Optional[Iterable[int]] = None,
) -> List[ExpiringBatch]:
    """
    The soonest-expiring non-empty batch per SKU + location within the window.
    Already-expired batches are included (negative days_to_expiry).
    """
    stmt = (
        select(StockBatch)
        .where(StockBatch.quantity > 0, StockBatch.expiry_date <= as_of + timedelta(days=window_days))
        .order_by(StockBatch.sku_id, StockBatch.location_id, StockBatch.expiry_date, StockBatch.batch_code)
    )
    if sku_ids is not None:
        stmt = stmt.where(StockBatch.sku_id.in_(list(sku_ids)))

    soonest: Dict[tuple, ExpiringBatch] = {}
    for batch in db.execute(stmt).scalars():
        key = (batch.sku_id, batch.location_id)
        if key in soonest:
            continue
        soonest[key] = ExpiringBatch(
            sku_id=batch.sku_id,
            location_id=batch.location_id,
            batch_code=batch.batch_code,
            quantity=batch.quantity,
            expiry_date=batch.expiry_date,
            days_to_expiry=(batch.expiry_date - as_of).days,
        )
    return list(soonest.values())


def sku_history(db: Session, sku_id: int, weeks: int = 12, as_of: Optional[date] = None) -> List[Dict]:
    """Weekly network demand and closing stock for one SKU, oldest week first."""
    as_of = as_of or date.today()
    stmt = (
        select(SalesVelocity.week_start, SalesVelocity.units_sold, SalesVelocity.closing_on_hand)
        .where(
            SalesVelocity.sku_id == sku_id,
            SalesVelocity.week_start > _window_start(as_of, weeks),
            SalesVelocity.week_start <= as_of,
        )
    )
    df = pd.DataFrame(db.execute(stmt).all(), columns=["week_start", "units_sold", "closing_on_hand"])
    if df.empty:
        return []

    df[["units_sold", "closing_on_hand"]] = df[["units_sold", "closing_on_hand"]].fillna(0)
    weekly = (
        df.groupby("week_start", as_index=False)
        .agg(demand=("units_sold", "sum"), stock=("closing_on_hand", "sum"))
        .sort_values("week_start")
    )
    return [
        {"week": row.week_start.isoformat(), "demand": int(row.demand), "stock": int(row.stock)}
        for row in weekly.itertuples(index=False)
    ]
