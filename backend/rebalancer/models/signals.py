"""
External Signal Feeds: weekly sales velocity and batch/lot expiry metadata.
Both are written by upstream systems; the engine only reads them.
"""
from datetime import datetime
from sqlalchemy import (
    Column, Integer, BigInteger, String, Date, DateTime, ForeignKey, Numeric, UniqueConstraint
)
from rebalancer.database.session import Base


class SalesVelocity(Base):
    __tablename__ = "sales_velocity"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    sku_id = Column(Integer, ForeignKey("skus.id"), nullable=False, index=True)
    location_id = Column(Integer, ForeignKey("locations.id"), nullable=False)
    week_start = Column(Date, nullable=False, index=True)
    units_sold = Column(Integer, default=0)
    margin_per_unit = Column(Numeric(12, 2), default=0)
    closing_on_hand = Column(Integer)

    __table_args__ = (
        UniqueConstraint("sku_id", "location_id", "week_start", name="uq_sales_velocity_week"),
    )


class StockBatch(Base):
    __tablename__ = "stock_batches"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    sku_id = Column(Integer, ForeignKey("skus.id"), nullable=False, index=True)
    location_id = Column(Integer, ForeignKey("locations.id"), nullable=False)
    batch_code = Column(String(50), nullable=False)
    quantity = Column(Integer, default=0)
    expiry_date = Column(Date, nullable=False, index=True)
    received_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("sku_id", "location_id", "batch_code", name="uq_stock_batch"),
    )
