"""
Alert Generator
================
Scans allocation state and batch expiry metadata and keeps the open alert
set in line with it.

Rules:
- low_stock: ratio = on_hand / max(target, 1); below the critical ratio →
  critical, below the warning ratio → warning. Retired rows (target 0) are
  not evaluated.
- expiry: soonest non-empty batch within the expiry window; at or under the
  critical days → critical, at or under the warning days → warning, otherwise
  info. Expired batches are critical.

One open alert per (sku, location, type). Re-running against unchanged state
is a no-op; a changed severity updates the open alert in place; an open alert
whose condition no longer holds is resolved. Dismissed and resolved alerts
are terminal and a recurring condition opens a fresh alert.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rebalancer.core.exceptions import ConflictError, InvalidTransitionError
from rebalancer.models import StockAlert
from rebalancer.models.enums import AlertSeverity, AlertStatus, AlertType
from rebalancer.services.allocation_store import AllocationSnapshot, AllocationStore
from rebalancer.services.policy import AlertPolicy
from rebalancer.services.signals import ExpiringBatch, soonest_expiries

AlertKey = Tuple[int, int, str]


@dataclass(frozen=True)
class AlertCandidate:
    sku_id: int
    location_id: int
    alert_type: str
    severity: str
    message: str
    batch_code: Optional[str] = None
    days_to_expiry: Optional[int] = None

    @property
    def key(self) -> AlertKey:
        return (self.sku_id, self.location_id, self.alert_type)


@dataclass
class GenerationResult:
    created: List[int] = field(default_factory=list)
    updated: List[int] = field(default_factory=list)
    resolved: List[int] = field(default_factory=list)
    unchanged: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "created": len(self.created),
            "updated": len(self.updated),
            "resolved": len(self.resolved),
            "unchanged": self.unchanged,
            "created_ids": self.created,
        }


# ============================================================================
# Classification (pure)
# ============================================================================

def classify_low_stock(on_hand: int, target: int, policy: AlertPolicy) -> Optional[AlertSeverity]:
    ratio = on_hand / max(target, 1)
    if ratio < policy.low_stock_critical_ratio:
        return AlertSeverity.CRITICAL
    if ratio < policy.low_stock_warning_ratio:
        return AlertSeverity.WARNING
    return None


def classify_expiry(days_to_expiry: int, policy: AlertPolicy) -> Optional[AlertSeverity]:
    if days_to_expiry > policy.expiry_window_days:
        return None
    if days_to_expiry <= policy.expiry_critical_days:
        return AlertSeverity.CRITICAL
    if days_to_expiry <= policy.expiry_warning_days:
        return AlertSeverity.WARNING
    return AlertSeverity.INFO


def low_stock_candidates(rows: Iterable[AllocationSnapshot], policy: AlertPolicy) -> List[AlertCandidate]:
    candidates = []
    for row in rows:
        if row.target <= 0:
            continue
        severity = classify_low_stock(row.on_hand, row.target, policy)
        if severity is None:
            continue
        candidates.append(AlertCandidate(
            sku_id=row.sku_id,
            location_id=row.location_id,
            alert_type=AlertType.LOW_STOCK.value,
            severity=severity.value,
            message=(
                f"{row.sku_code} at {row.location_name}: {row.on_hand} on hand "
                f"vs target {row.target} ({row.on_hand / row.target:.0%})"
            ),
        ))
    return candidates


def expiry_candidates(batches: Iterable[ExpiringBatch], policy: AlertPolicy) -> List[AlertCandidate]:
    candidates = []
    for batch in batches:
        severity = classify_expiry(batch.days_to_expiry, policy)
        if severity is None:
            continue
        if batch.days_to_expiry < 0:
            when = f"expired {-batch.days_to_expiry} day(s) ago"
        else:
            when = f"expires in {batch.days_to_expiry} day(s)"
        candidates.append(AlertCandidate(
            sku_id=batch.sku_id,
            location_id=batch.location_id,
            alert_type=AlertType.EXPIRY.value,
            severity=severity.value,
            message=f"Batch {batch.batch_code} ({batch.quantity} units) {when}",
            batch_code=batch.batch_code,
            days_to_expiry=batch.days_to_expiry,
        ))
    return candidates


def alert_to_dict(alert: StockAlert) -> Dict[str, Any]:
    return {
        "id": alert.id,
        "sku_id": alert.sku_id,
        "sku_code": alert.sku.sku_code if alert.sku else "Unknown",
        "sku_name": alert.sku.sku_name if alert.sku else "Unknown",
        "location_id": alert.location_id,
        "location_name": alert.location.location_name if alert.location else "Unknown",
        "type": alert.alert_type,
        "severity": alert.severity,
        "status": alert.status,
        "message": alert.message,
        "batch_code": alert.batch_code,
        "days_to_expiry": alert.days_to_expiry,
        "created_at": alert.created_at.isoformat() if alert.created_at else None,
        "updated_at": alert.updated_at.isoformat() if alert.updated_at else None,
        "acknowledged_by": alert.acknowledged_by,
        "dismissed_by": alert.dismissed_by,
    }


# ============================================================================
# Service
# ============================================================================

class AlertGenerator:
    """Generates, acknowledges and dismisses stock alerts. Never touches allocations."""

    def __init__(self, db: Session, policy: Optional[AlertPolicy] = None):
        self.db = db
        self.policy = policy or AlertPolicy()
        self.store = AllocationStore(db)

    def generate(
        self,
        actor: str,
        sku_ids: Optional[List[int]] = None,
        as_of: Optional[date] = None,
    ) -> GenerationResult:
        as_of = as_of or date.today()
        rows = self.store.list_all(sku_ids)
        batches = soonest_expiries(self.db, as_of, self.policy.expiry_window_days, sku_ids)

        candidates: Dict[AlertKey, AlertCandidate] = {
            c.key: c
            for c in low_stock_candidates(rows, self.policy) + expiry_candidates(batches, self.policy)
        }
        existing = self.store.open_alerts(sku_ids)
        result = GenerationResult()
        now = datetime.utcnow()

        new_alerts = []
        for key, candidate in candidates.items():
            alert = existing.get(key)
            if alert is None:
                alert = StockAlert(
                    sku_id=candidate.sku_id,
                    location_id=candidate.location_id,
                    alert_type=candidate.alert_type,
                    severity=candidate.severity,
                    status=AlertStatus.ACTIVE.value,
                    message=candidate.message,
                    batch_code=candidate.batch_code,
                    days_to_expiry=candidate.days_to_expiry,
                )
                new_alerts.append(self.store.write_alert(alert))
            elif (alert.severity, alert.batch_code, alert.days_to_expiry) != (
                candidate.severity, candidate.batch_code, candidate.days_to_expiry
            ):
                alert.severity = candidate.severity
                alert.message = candidate.message
                alert.batch_code = candidate.batch_code
                alert.days_to_expiry = candidate.days_to_expiry
                self.store.write_alert(alert)
                result.updated.append(alert.id)
            else:
                result.unchanged += 1

        for key, alert in existing.items():
            if key in candidates:
                continue
            alert.status = AlertStatus.RESOLVED.value
            alert.resolved_at = now
            self.store.write_alert(alert)
            result.resolved.append(alert.id)

        if new_alerts or result.updated or result.resolved:
            self.store.audit.log(
                entity="stock_alert",
                action_type="GENERATE",
                changed_by=actor,
                new_data={
                    "created": len(new_alerts),
                    "updated": len(result.updated),
                    "resolved": len(result.resolved),
                },
                source="ALERT",
            )
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError("Alerts were generated concurrently; retry the pass") from e

        result.created = [a.id for a in new_alerts]
        logger.info(
            f"Alert pass as of {as_of}: {len(result.created)} created, {len(result.updated)} updated, "
            f"{len(result.resolved)} resolved, {result.unchanged} unchanged"
        )
        return result

    def acknowledge(self, alert_id: int, actor: str) -> StockAlert:
        alert = self.store.get_alert(alert_id)
        if alert.status == AlertStatus.ACKNOWLEDGED.value:
            return alert
        if alert.status != AlertStatus.ACTIVE.value:
            raise InvalidTransitionError(
                f"Alert {alert_id} is {alert.status} and cannot be acknowledged",
                alert_id=alert_id, status=alert.status,
            )
        alert.status = AlertStatus.ACKNOWLEDGED.value
        alert.acknowledged_at = datetime.utcnow()
        alert.acknowledged_by = actor
        self.store.audit.log("stock_alert", "ACKNOWLEDGE", actor, record_key=alert_id, source="API")
        self.store.commit(alert_id=alert_id)
        logger.info(f"Alert {alert_id} acknowledged by {actor}")
        return alert

    def dismiss(self, alert_id: int, actor: str, reason: Optional[str] = None) -> StockAlert:
        """Close an alert. Dismissing a closed alert returns it unchanged."""
        alert = self.store.get_alert(alert_id)
        if alert.status in (AlertStatus.DISMISSED.value, AlertStatus.RESOLVED.value):
            return alert
        alert.status = AlertStatus.DISMISSED.value
        alert.dismissed_at = datetime.utcnow()
        alert.dismissed_by = actor
        self.store.audit.log(
            "stock_alert", "DISMISS", actor, record_key=alert_id, source="API", notes=reason,
        )
        self.store.commit(alert_id=alert_id)
        logger.info(f"Alert {alert_id} dismissed by {actor}")
        return alert
