"""
Enumerations shared by the ORM, the engine services and the API schemas.
Values are stored as plain strings.
"""
from enum import Enum


class LocationRole(str, Enum):
    CENTRAL_WAREHOUSE = "central_warehouse"
    HUB = "hub"
    STORE = "store"


class AlertType(str, Enum):
    LOW_STOCK = "low_stock"
    EXPIRY = "expiry"


class AlertSeverity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


OPEN_ALERT_STATUSES = (AlertStatus.ACTIVE.value, AlertStatus.ACKNOWLEDGED.value)


class TransferStatus(str, Enum):
    REQUESTED = "requested"
    IN_TRANSIT = "in_transit"
    RECEIVED = "received"
    CANCELLED = "cancelled"


OPEN_TRANSFER_STATUSES = (TransferStatus.REQUESTED.value, TransferStatus.IN_TRANSIT.value)


class TransferSource(str, Enum):
    MANUAL = "manual"
    REBALANCE = "rebalance"
    ALERT = "alert"


class Strategy(str, Enum):
    EQUAL_SPLIT = "equal-split"
    PROPORTIONAL_TO_SALES = "proportional-to-sales"
    MINIMIZE_STOCKOUTS = "minimize-stockouts"
    MARGIN_PRIORITY = "margin-priority"


class Objective(str, Enum):
    MINIMIZE_STOCKOUTS = "minimize-stockouts"
    BALANCE_FORECAST = "balance-forecast"
    PROMO_PRIORITY = "promo-priority"


OBJECTIVE_STRATEGY = {
    Objective.MINIMIZE_STOCKOUTS: Strategy.MINIMIZE_STOCKOUTS,
    Objective.BALANCE_FORECAST: Strategy.PROPORTIONAL_TO_SALES,
    Objective.PROMO_PRIORITY: Strategy.MARGIN_PRIORITY,
}


class ScopeMode(str, Enum):
    ALL = "all"
    EXPLICIT = "explicit"
    CATEGORY = "category"
    HIGH_PRIORITY = "high-priority"


class RunState(str, Enum):
    SCOPED = "scoped"
    PREVIEWED = "previewed"
    EXECUTING = "executing"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"
