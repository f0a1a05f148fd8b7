"""
Transfer Order Model: a directive to move units of a SKU between locations.
"""
import uuid
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, DateTime, Date, ForeignKey, CheckConstraint, Index
)
from sqlalchemy.orm import relationship
from rebalancer.database.session import Base


def new_transfer_id() -> str:
    return f"TO_{datetime.utcnow().strftime('%Y%m%d')}_{uuid.uuid4().hex[:10].upper()}"


class TransferOrder(Base):
    __tablename__ = "transfer_orders"

    id = Column(String(40), primary_key=True, default=new_transfer_id)
    sku_id = Column(Integer, ForeignKey("skus.id"), nullable=False, index=True)
    from_location_id = Column(Integer, ForeignKey("locations.id"), nullable=False)
    to_location_id = Column(Integer, ForeignKey("locations.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    required_date = Column(Date)
    status = Column(String(20), nullable=False, default="requested")  # requested, in_transit, received, cancelled
    source = Column(String(20), nullable=False, default="manual")     # manual, rebalance, alert
    reference = Column(String(100))                                     # run code or alert id
    created_by = Column(String(100), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    dispatched_at = Column(DateTime)
    received_at = Column(DateTime)
    cancelled_at = Column(DateTime)

    sku = relationship("Sku", lazy="joined")
    from_location = relationship("Location", foreign_keys=[from_location_id], lazy="joined")
    to_location = relationship("Location", foreign_keys=[to_location_id], lazy="joined")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_transfer_qty_pos"),
        CheckConstraint("from_location_id <> to_location_id", name="ck_transfer_distinct_locations"),
        Index("ix_transfer_source_status", "sku_id", "from_location_id", "status"),
    )
