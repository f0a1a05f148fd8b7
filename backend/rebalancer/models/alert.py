"""
Stock Alert Model: low-stock and expiry exceptions per SKU + location.

At most one open (active/acknowledged) alert may exist per
(sku_id, location_id, alert_type); resolved and dismissed rows are kept as
history and a fresh alert is created if the condition recurs.
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index, text
from sqlalchemy.orm import relationship
from rebalancer.database.session import Base

_OPEN_PREDICATE = text("status IN ('active', 'acknowledged')")


class StockAlert(Base):
    __tablename__ = "stock_alerts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sku_id = Column(Integer, ForeignKey("skus.id"), nullable=False)
    location_id = Column(Integer, ForeignKey("locations.id"), nullable=False)
    alert_type = Column(String(20), nullable=False)  # low_stock, expiry
    severity = Column(String(20), nullable=False)    # critical, warning, info
    status = Column(String(20), nullable=False, default="active")
    message = Column(String(500))
    batch_code = Column(String(50))
    days_to_expiry = Column(Integer)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    acknowledged_at = Column(DateTime)
    acknowledged_by = Column(String(100))
    dismissed_at = Column(DateTime)
    dismissed_by = Column(String(100))
    resolved_at = Column(DateTime)

    sku = relationship("Sku", lazy="joined")
    location = relationship("Location", lazy="joined")

    __table_args__ = (
        Index("ix_stock_alert_key", "sku_id", "location_id", "alert_type"),
        Index(
            "uq_stock_alert_open_key",
            "sku_id", "location_id", "alert_type",
            unique=True,
            sqlite_where=_OPEN_PREDICATE,
            postgresql_where=_OPEN_PREDICATE,
        ),
    )

    @property
    def key(self):
        return (self.sku_id, self.location_id, self.alert_type)
