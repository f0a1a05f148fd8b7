"""
Import all models so SQLAlchemy knows about them.
"""
from rebalancer.models.reference import Location, Sku
from rebalancer.models.allocation import Allocation
from rebalancer.models.alert import StockAlert
from rebalancer.models.transfer import TransferOrder
from rebalancer.models.signals import SalesVelocity, StockBatch
from rebalancer.models.audit import AuditLog

__all__ = [
    "Location", "Sku",
    "Allocation",
    "StockAlert",
    "TransferOrder",
    "SalesVelocity", "StockBatch",
    "AuditLog",
]
