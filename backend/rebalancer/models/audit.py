"""
Audit Log Model: one row per engine-initiated change.
"""
from datetime import datetime
from sqlalchemy import Column, BigInteger, Integer, String, DateTime, Text
from rebalancer.database.session import Base


class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    entity = Column(String(50), nullable=False, index=True)   # allocation, transfer_order, stock_alert, rebalance_run
    action_type = Column(String(50), nullable=False)          # UPDATE, IMPORT, REBALANCE, CREATE, DISPATCH, RECEIVE, CANCEL, DISMISS
    record_key = Column(String(200), index=True)
    old_data = Column(Text)        # JSON
    new_data = Column(Text)        # JSON
    changed_columns = Column(Text)  # JSON array
    changed_by = Column(String(100), nullable=False, index=True)
    changed_at = Column(DateTime, default=datetime.utcnow, index=True)
    source = Column(String(50), default="API")  # API, REBALANCE, ALERT, IMPORT, SYSTEM
    batch_id = Column(String(100), index=True)
    notes = Column(String(1000))
