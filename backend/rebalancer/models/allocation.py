"""
Allocation Model: planned and physical stock for one SKU at one location.

`version` is a mapper version counter: every UPDATE is emitted as
`... WHERE id = :id AND version = :old_version`, so a write based on a stale
snapshot matches no row and SQLAlchemy raises StaleDataError.
"""
from datetime import datetime
from sqlalchemy import (
    Column, Integer, DateTime, ForeignKey, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import relationship
from rebalancer.database.session import Base


class Allocation(Base):
    __tablename__ = "allocations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sku_id = Column(Integer, ForeignKey("skus.id"), nullable=False, index=True)
    location_id = Column(Integer, ForeignKey("locations.id"), nullable=False, index=True)
    allocated = Column(Integer, nullable=False, default=0)
    target = Column(Integer, nullable=False, default=0)
    on_hand = Column(Integer, nullable=False, default=0)
    in_transit = Column(Integer, nullable=False, default=0)
    safety_stock = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    sku = relationship("Sku", lazy="joined")
    location = relationship("Location", lazy="joined")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("sku_id", "location_id", name="uq_allocation_sku_location"),
        CheckConstraint("on_hand >= 0", name="ck_allocation_on_hand_nonneg"),
        CheckConstraint("in_transit >= 0", name="ck_allocation_in_transit_nonneg"),
        CheckConstraint("target >= 0", name="ck_allocation_target_nonneg"),
        CheckConstraint("allocated >= 0", name="ck_allocation_allocated_nonneg"),
        CheckConstraint("safety_stock >= 0", name="ck_allocation_safety_nonneg"),
    )
