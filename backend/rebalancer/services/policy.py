"""
Request-Scoped Policy Objects
==============================
Immutable value objects built from Settings (or from a request body) and
passed explicitly into the engine services. Services never read settings
themselves, so two requests with different policies never interfere.
"""
from dataclasses import dataclass, field
from typing import Optional, Tuple

from rebalancer.core.config import Settings, get_settings
from rebalancer.core.exceptions import ValidationError
from rebalancer.models.enums import ScopeMode


@dataclass(frozen=True)
class AlertPolicy:
    low_stock_warning_ratio: float = 0.8
    low_stock_critical_ratio: float = 0.5
    expiry_window_days: int = 7
    expiry_critical_days: int = 2
    expiry_warning_days: int = 5

    def __post_init__(self):
        if self.low_stock_critical_ratio > self.low_stock_warning_ratio:
            raise ValidationError(
                "Critical low-stock ratio must not exceed the warning ratio",
                critical=self.low_stock_critical_ratio,
                warning=self.low_stock_warning_ratio,
            )
        if self.expiry_critical_days > self.expiry_warning_days:
            raise ValidationError("Critical expiry days must not exceed warning days")

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "AlertPolicy":
        s = settings or get_settings()
        return cls(
            low_stock_warning_ratio=s.LOW_STOCK_WARNING_RATIO,
            low_stock_critical_ratio=s.LOW_STOCK_CRITICAL_RATIO,
            expiry_window_days=s.EXPIRY_WINDOW_DAYS,
            expiry_critical_days=s.EXPIRY_CRITICAL_DAYS,
            expiry_warning_days=s.EXPIRY_WARNING_DAYS,
        )


@dataclass(frozen=True)
class RebalanceConstraints:
    max_transfers_per_sku: int = 5
    min_transfer_quantity: int = 10

    def __post_init__(self):
        if self.max_transfers_per_sku < 1:
            raise ValidationError("max_transfers_per_sku must be at least 1")
        if self.min_transfer_quantity < 1:
            raise ValidationError("min_transfer_quantity must be at least 1")

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RebalanceConstraints":
        s = settings or get_settings()
        return cls(
            max_transfers_per_sku=s.DEFAULT_MAX_TRANSFERS_PER_SKU,
            min_transfer_quantity=s.DEFAULT_MIN_TRANSFER_QTY,
        )


@dataclass(frozen=True)
class CostModel:
    """Flat estimate used by previews: a fixed cost per leg plus a per-unit cost."""
    per_leg: float = 5.0
    per_unit: float = 0.05

    def estimate(self, legs: int, units: int) -> float:
        return round(legs * self.per_leg + units * self.per_unit, 2)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CostModel":
        s = settings or get_settings()
        return cls(per_leg=s.TRANSFER_COST_PER_LEG, per_unit=s.TRANSFER_COST_PER_UNIT)


@dataclass(frozen=True)
class ScopeFilter:
    """
    SKU selection plus geography filter.

    The geography fields restrict both which SKUs qualify (at least one
    allocation inside the geography) and which locations take part in
    each SKU's plan. Empty tuples mean "no restriction".
    """
    mode: ScopeMode = ScopeMode.ALL
    sku_ids: Tuple[int, ...] = ()
    category: Optional[str] = None
    high_priority_ratio: float = 0.8
    location_ids: Tuple[int, ...] = ()
    roles: Tuple[str, ...] = ()
    regions: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.mode == ScopeMode.EXPLICIT and not self.sku_ids:
            raise ValidationError("Explicit scope requires at least one sku_id")
        if self.mode == ScopeMode.CATEGORY and not self.category:
            raise ValidationError("Category scope requires a category")

    @property
    def has_geography(self) -> bool:
        return bool(self.location_ids or self.roles or self.regions)


@dataclass(frozen=True)
class PlanSignals:
    """Per-location weights injected into the weighted strategies."""
    demand: dict = field(default_factory=dict)
    margin: dict = field(default_factory=dict)
