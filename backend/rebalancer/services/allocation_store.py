"""
Allocation Store Adapter
=========================
The only component that reads or writes allocation, alert and transfer rows.

- Reads return immutable AllocationSnapshot objects carrying the row version.
- Every write carries the version the caller read; a mismatch (or a row that
  changed between read and flush) raises ConflictError and nothing is written.
- A rebalance commit for one SKU (target diff + transfer orders) is one
  transaction: all rows or none.
- External payloads are normalised once, here, by normalize_allocation_payload.
"""
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from loguru import logger
from pydantic import ValidationError as PayloadError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from rebalancer.audit.service import AuditService
from rebalancer.core.exceptions import ConflictError, EngineError, NotFoundError, ValidationError
from rebalancer.models import Allocation, Location, Sku, StockAlert, TransferOrder
from rebalancer.models.transfer import new_transfer_id
from rebalancer.models.enums import (
    OPEN_ALERT_STATUSES, OPEN_TRANSFER_STATUSES, ScopeMode, TransferSource, TransferStatus,
)
from rebalancer.schemas.allocation import AllocationRecord
from rebalancer.services.policy import ScopeFilter

UNKNOWN = "Unknown"
QUANTITY_FIELDS = ("allocated", "target", "on_hand", "in_transit", "safety_stock")


# ============================================================================
# Snapshot
# ============================================================================

def _ref(obj: Any, attr: str) -> str:
    value = getattr(obj, attr, None) if obj is not None else None
    return str(value) if value not in (None, "") else UNKNOWN


@dataclass(frozen=True)
class AllocationSnapshot:
    allocation_id: int
    sku_id: int
    location_id: int
    allocated: int
    target: int
    on_hand: int
    in_transit: int
    safety_stock: int
    version: int
    sku_code: str = UNKNOWN
    sku_name: str = UNKNOWN
    pack_size: str = UNKNOWN
    category: str = UNKNOWN
    location_code: str = UNKNOWN
    location_name: str = UNKNOWN
    role: str = UNKNOWN
    region: str = UNKNOWN

    @classmethod
    def from_row(cls, row: Allocation) -> "AllocationSnapshot":
        return cls(
            allocation_id=row.id,
            sku_id=row.sku_id,
            location_id=row.location_id,
            allocated=row.allocated or 0,
            target=row.target or 0,
            on_hand=row.on_hand or 0,
            in_transit=row.in_transit or 0,
            safety_stock=row.safety_stock or 0,
            version=row.version,
            sku_code=_ref(row.sku, "sku_code"),
            sku_name=_ref(row.sku, "sku_name"),
            pack_size=_ref(row.sku, "pack_size"),
            category=_ref(row.sku, "category"),
            location_code=_ref(row.location, "location_code"),
            location_name=_ref(row.location, "location_name"),
            role=_ref(row.location, "role"),
            region=_ref(row.location, "region"),
        )


def _quantities(row: Allocation) -> Dict[str, int]:
    return {name: getattr(row, name) for name in QUANTITY_FIELDS}


# ============================================================================
# Payload normalisation
# ============================================================================

_QUANTITY_ALIASES = {
    "allocated": ("allocated", "allocatedQty", "allocated_qty"),
    "target": ("target", "targetQty", "target_qty"),
    "on_hand": ("on_hand", "onHand", "onHandQty", "stock"),
    "in_transit": ("in_transit", "inTransit", "inTransitQty"),
    "safety_stock": ("safety_stock", "safetyStock", "safetyStockQty"),
}


def _first(raw: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def _split_ref(value: Any) -> Tuple[Optional[int], Optional[str]]:
    """A reference may be a numeric id, a code, or an embedded document."""
    if isinstance(value, dict):
        ident, code = _split_ref(_first(value, "id", "_id"))
        return ident, code or _first(value, "code", "sku_code", "location_code")
    if isinstance(value, bool):
        return None, None
    if isinstance(value, int):
        return value, None
    if isinstance(value, str) and value.strip():
        value = value.strip()
        return (int(value), None) if value.isdigit() else (None, value)
    return None, None


def normalize_allocation_payload(raw: Dict[str, Any]) -> AllocationRecord:
    """Map the field-name variants used by upstream systems onto AllocationRecord."""
    if not isinstance(raw, dict):
        raise ValidationError("Allocation payload must be an object")

    sku_id, sku_code = _split_ref(_first(raw, "skuId", "sku_id", "sku"))
    location_id, location_code = _split_ref(
        _first(raw, "locationId", "location_id", "location", "storeId", "store_id")
    )
    values = {name: _first(raw, *aliases) for name, aliases in _QUANTITY_ALIASES.items()}

    try:
        return AllocationRecord(
            sku_id=sku_id,
            sku_code=sku_code or _first(raw, "skuCode", "sku_code"),
            location_id=location_id,
            location_code=location_code or _first(raw, "locationCode", "location_code"),
            **values,
        )
    except PayloadError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or "record"
        raise ValidationError(f"Invalid allocation payload ({field}): {first['msg']}") from e


# ============================================================================
# Store
# ============================================================================

class AllocationStore:
    """Allocation Store bound to one SQLAlchemy session (one unit of work)."""

    def __init__(self, db: Session):
        self.db = db
        self.audit = AuditService(db)

    # ------------------------------------------------------------------ commit

    def commit(self, **context: Any) -> None:
        """Commit the unit of work, translating store-level failures."""
        try:
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            raise ConflictError(**context) from e
        except IntegrityError as e:
            self.db.rollback()
            raise ValidationError("Write rejected by store constraints", detail=str(e.orig), **context) from e

    @staticmethod
    def check_version(row: Allocation, expected_version: Optional[int]) -> None:
        if expected_version is not None and row.version != expected_version:
            raise ConflictError(
                allocation_id=row.id,
                expected_version=expected_version,
                current_version=row.version,
            )

    # ------------------------------------------------------------ reference

    def get_sku(self, sku_id: int) -> Sku:
        sku = self.db.get(Sku, sku_id)
        if sku is None:
            raise NotFoundError(f"SKU {sku_id} not found", sku_id=sku_id)
        return sku

    def get_location(self, location_id: int) -> Location:
        location = self.db.get(Location, location_id)
        if location is None:
            raise NotFoundError(f"Location {location_id} not found", location_id=location_id)
        return location

    # ----------------------------------------------------------- allocations

    def _rows(self, sku_id: int, location_ids: Optional[Iterable[int]] = None) -> List[Allocation]:
        stmt = (
            select(Allocation)
            .where(Allocation.sku_id == sku_id)
            .order_by(Allocation.id)
            .execution_options(populate_existing=True)
        )
        if location_ids is not None:
            stmt = stmt.where(Allocation.location_id.in_(list(location_ids)))
        return list(self.db.execute(stmt).unique().scalars())

    def get(self, sku_id: int, location_ids: Optional[Iterable[int]] = None) -> List[AllocationSnapshot]:
        """Snapshot of every location row for one SKU, read together."""
        self.get_sku(sku_id)
        return [AllocationSnapshot.from_row(r) for r in self._rows(sku_id, location_ids)]

    def list_all(self, sku_ids: Optional[Iterable[int]] = None) -> List[AllocationSnapshot]:
        stmt = select(Allocation).order_by(Allocation.id)
        if sku_ids is not None:
            stmt = stmt.where(Allocation.sku_id.in_(list(sku_ids)))
        return [AllocationSnapshot.from_row(r) for r in self.db.execute(stmt).unique().scalars()]

    def get_row(self, sku_id: int, location_id: int) -> Optional[Allocation]:
        stmt = (
            select(Allocation)
            .where(Allocation.sku_id == sku_id, Allocation.location_id == location_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).unique().scalar_one_or_none()

    def update(
        self,
        allocation_id: int,
        fields: Dict[str, int],
        expected_version: int,
        actor: str,
    ) -> AllocationSnapshot:
        """Apply a field diff to one allocation row under its expected version."""
        if not fields:
            raise ValidationError("No allocation fields to update")
        unknown = sorted(set(fields) - set(QUANTITY_FIELDS))
        if unknown:
            raise ValidationError(f"Unknown allocation fields: {', '.join(unknown)}")
        for name, value in fields.items():
            if value is None or int(value) < 0:
                raise ValidationError(f"{name} must be a non-negative integer", field=name)

        stmt = (
            select(Allocation)
            .where(Allocation.id == allocation_id)
            .execution_options(populate_existing=True)
        )
        row = self.db.execute(stmt).unique().scalar_one_or_none()
        if row is None:
            raise NotFoundError(f"Allocation {allocation_id} not found", allocation_id=allocation_id)
        self.check_version(row, expected_version)

        old = _quantities(row)
        for name, value in fields.items():
            setattr(row, name, int(value))
        self.audit.log_update("allocation", actor, row.id, old, _quantities(row))
        self.commit(allocation_id=allocation_id)

        logger.info(f"[sku={row.sku_id}] Allocation {row.id} updated → v{row.version}")
        return AllocationSnapshot.from_row(row)

    def apply_rebalance(self, plan, legs: List, actor: str, reference: Optional[str] = None) -> List[TransferOrder]:
        """
        Write a plan's proposed targets and its transfer legs in one transaction.

        Every row in the plan is rewritten, which bumps its version even when
        the target is unchanged, so two rounds planned from the same snapshot
        can never both commit.
        """
        try:
            rows = {r.id: r for r in self._rows(plan.sku_id, [line.location_id for line in plan.lines])}
            for line in plan.lines:
                row = rows.get(line.allocation_id)
                if row is None:
                    raise ConflictError(
                        "Allocation row no longer present for this SKU",
                        allocation_id=line.allocation_id,
                    )
                self.check_version(row, line.version)
                old = {"target": row.target, "allocated": row.allocated}
                row.target = line.proposed_target
                row.allocated = line.proposed_target
                row.updated_at = datetime.utcnow()
                self.audit.log_update(
                    "allocation", actor, row.id, old,
                    {"target": row.target, "allocated": row.allocated},
                    source="REBALANCE", batch_id=reference,
                )

            orders = [
                self.add_transfer(
                    sku_id=plan.sku_id,
                    from_location_id=leg.from_location_id,
                    to_location_id=leg.to_location_id,
                    quantity=leg.quantity,
                    actor=actor,
                    source=TransferSource.REBALANCE,
                    reference=reference,
                )
                for leg in legs
            ]
            self.audit.log(
                entity="rebalance",
                action_type="REBALANCE",
                changed_by=actor,
                record_key=plan.sku_id,
                new_data={
                    "strategy": plan.strategy,
                    "targets": {line.location_id: line.proposed_target for line in plan.lines},
                    "transfers": len(orders),
                },
                source="REBALANCE",
                batch_id=reference,
            )
            self.commit(sku_id=plan.sku_id)
        except EngineError:
            self.db.rollback()
            raise

        logger.info(f"[sku={plan.sku_id}] Rebalance committed: {len(plan.lines)} rows, {len(orders)} transfers")
        return orders

    # ----------------------------------------------------------------- import

    def _resolve_sku(self, record: AllocationRecord) -> Sku:
        if record.sku_id is not None:
            return self.get_sku(record.sku_id)
        sku = self.db.execute(select(Sku).where(Sku.sku_code == record.sku_code)).scalar_one_or_none()
        if sku is None:
            raise NotFoundError(f"SKU '{record.sku_code}' not found", sku_code=record.sku_code)
        return sku

    def _resolve_location(self, record: AllocationRecord) -> Location:
        if record.location_id is not None:
            return self.get_location(record.location_id)
        location = self.db.execute(
            select(Location).where(Location.location_code == record.location_code)
        ).scalar_one_or_none()
        if location is None:
            raise NotFoundError(
                f"Location '{record.location_code}' not found", location_code=record.location_code
            )
        return location

    def import_allocations(self, records: List[Dict[str, Any]], actor: str) -> Dict[str, int]:
        """
        Upsert externally supplied allocation rows.
        A row is created the first time a SKU is distributed to a location.
        """
        normalized = []
        for index, raw in enumerate(records):
            try:
                normalized.append(normalize_allocation_payload(raw))
            except ValidationError as e:
                raise ValidationError(f"Record {index}: {e.message}", index=index) from e

        created = updated = 0
        seen: Dict[Tuple[int, int], Allocation] = {}
        try:
            for index, record in enumerate(normalized):
                sku = self._resolve_sku(record)
                location = self._resolve_location(record)
                key = (sku.id, location.id)
                values = record.quantity_fields()

                row = seen.get(key) or self.get_row(*key)
                if row is None:
                    row = Allocation(
                        sku_id=sku.id,
                        location_id=location.id,
                        **{name: values.get(name, 0) for name in QUANTITY_FIELDS},
                    )
                    self.db.add(row)
                    self.audit.log(
                        "allocation", "INSERT", actor, record_key=f"{sku.id}:{location.id}",
                        new_data=values, source="IMPORT",
                    )
                    created += 1
                else:
                    old = _quantities(row)
                    for name, value in values.items():
                        setattr(row, name, value)
                    self.audit.log_update(
                        "allocation", actor, f"{sku.id}:{location.id}", old, _quantities(row), source="IMPORT",
                    )
                    updated += 1
                seen[key] = row

            self.commit()
        except EngineError:
            self.db.rollback()
            raise

        logger.info(f"Allocation import by {actor}: {created} created, {updated} updated")
        return {"created": created, "updated": updated}

    # ------------------------------------------------------------------ scope

    def locations_in_scope(self, scope: ScopeFilter) -> Optional[List[int]]:
        """Location ids inside the scope's geography, or None when unrestricted."""
        if not scope.has_geography:
            return None
        stmt = select(Location.id).order_by(Location.id)
        if scope.location_ids:
            stmt = stmt.where(Location.id.in_(scope.location_ids))
        if scope.roles:
            stmt = stmt.where(Location.role.in_(scope.roles))
        if scope.regions:
            stmt = stmt.where(Location.region.in_(scope.regions))
        return list(self.db.execute(stmt).scalars())

    def list_for_scope(self, scope: ScopeFilter) -> List[int]:
        """Resolve a scope to SKU ids; explicit lists keep their order, deduplicated."""
        explicit = list(dict.fromkeys(scope.sku_ids)) if scope.mode == ScopeMode.EXPLICIT else []
        inactive = [sku_id for sku_id in explicit if not self.get_sku(sku_id).is_active]
        if inactive:
            logger.info(f"Scope: inactive SKUs skipped: {inactive}")

        stmt = (
            select(Allocation.sku_id)
            .join(Sku, Sku.id == Allocation.sku_id)
            .where(Sku.is_active.is_(True))
            .distinct()
        )
        geography = self.locations_in_scope(scope)
        if geography is not None:
            stmt = stmt.where(Allocation.location_id.in_(geography))

        if scope.mode == ScopeMode.EXPLICIT:
            stmt = stmt.where(Allocation.sku_id.in_(explicit))
        elif scope.mode == ScopeMode.CATEGORY:
            stmt = stmt.where(Sku.category == scope.category)
        elif scope.mode == ScopeMode.HIGH_PRIORITY:
            stmt = stmt.where(
                Allocation.target > 0,
                Allocation.allocated < Allocation.target * scope.high_priority_ratio,
            )

        found = set(self.db.execute(stmt).scalars())
        if scope.mode == ScopeMode.EXPLICIT:
            skipped = [s for s in explicit if s not in found and s not in inactive]
            if skipped:
                logger.info(f"Scope: SKUs without allocations in geography skipped: {skipped}")
            return [s for s in explicit if s in found]
        return sorted(found)

    # -------------------------------------------------------------- transfers

    def add_transfer(
        self,
        sku_id: int,
        from_location_id: int,
        to_location_id: int,
        quantity: int,
        actor: str,
        required_date: Optional[date] = None,
        source: TransferSource = TransferSource.MANUAL,
        reference: Optional[str] = None,
    ) -> TransferOrder:
        """Stage a requested transfer order in the current unit of work."""
        order = TransferOrder(
            id=new_transfer_id(),
            sku_id=sku_id,
            from_location_id=from_location_id,
            to_location_id=to_location_id,
            quantity=quantity,
            required_date=required_date,
            status=TransferStatus.REQUESTED.value,
            source=TransferSource(source).value,
            reference=reference,
            created_by=actor,
        )
        self.db.add(order)
        self.audit.log(
            "transfer_order", "CREATE", actor, record_key=order.id,
            new_data={
                "sku_id": sku_id, "from": from_location_id, "to": to_location_id,
                "quantity": quantity, "source": order.source,
            },
            source=order.source.upper(), batch_id=reference,
        )
        return order

    def get_transfer(self, transfer_id: str) -> TransferOrder:
        stmt = (
            select(TransferOrder)
            .where(TransferOrder.id == transfer_id)
            .execution_options(populate_existing=True)
        )
        order = self.db.execute(stmt).unique().scalar_one_or_none()
        if order is None:
            raise NotFoundError(f"Transfer order {transfer_id} not found", transfer_id=transfer_id)
        return order

    def list_transfers(
        self,
        sku_id: Optional[int] = None,
        location_id: Optional[int] = None,
        status: Optional[str] = None,
        limit: int = 200,
    ) -> List[TransferOrder]:
        stmt = select(TransferOrder).order_by(TransferOrder.created_at.desc()).limit(limit)
        if sku_id is not None:
            stmt = stmt.where(TransferOrder.sku_id == sku_id)
        if location_id is not None:
            stmt = stmt.where(
                (TransferOrder.from_location_id == location_id)
                | (TransferOrder.to_location_id == location_id)
            )
        if status:
            stmt = stmt.where(TransferOrder.status == status)
        return list(self.db.execute(stmt).unique().scalars())

    def pending_outgoing(self, sku_id: int) -> Dict[int, int]:
        """Units already promised away per source location (requested or in transit)."""
        stmt = (
            select(TransferOrder.from_location_id, func.sum(TransferOrder.quantity))
            .where(TransferOrder.sku_id == sku_id, TransferOrder.status.in_(OPEN_TRANSFER_STATUSES))
            .group_by(TransferOrder.from_location_id)
        )
        return {loc: int(qty or 0) for loc, qty in self.db.execute(stmt)}

    def pending_inbound(self, sku_id: int) -> Dict[int, int]:
        """Units already on their way per destination location (requested or in transit)."""
        stmt = (
            select(TransferOrder.to_location_id, func.sum(TransferOrder.quantity))
            .where(TransferOrder.sku_id == sku_id, TransferOrder.status.in_(OPEN_TRANSFER_STATUSES))
            .group_by(TransferOrder.to_location_id)
        )
        return {loc: int(qty or 0) for loc, qty in self.db.execute(stmt)}

    # ----------------------------------------------------------------- alerts

    def list_alerts(
        self,
        sku_id: Optional[int] = None,
        location_id: Optional[int] = None,
        alert_type: Optional[str] = None,
        severity: Optional[str] = None,
        status: Optional[str] = None,
        open_only: bool = False,
        limit: int = 500,
    ) -> List[StockAlert]:
        stmt = select(StockAlert).order_by(StockAlert.created_at.desc(), StockAlert.id.desc()).limit(limit)
        if sku_id is not None:
            stmt = stmt.where(StockAlert.sku_id == sku_id)
        if location_id is not None:
            stmt = stmt.where(StockAlert.location_id == location_id)
        if alert_type:
            stmt = stmt.where(StockAlert.alert_type == alert_type)
        if severity:
            stmt = stmt.where(StockAlert.severity == severity)
        if status:
            stmt = stmt.where(StockAlert.status == status)
        elif open_only:
            stmt = stmt.where(StockAlert.status.in_(OPEN_ALERT_STATUSES))
        return list(self.db.execute(stmt).unique().scalars())

    def open_alerts(self, sku_ids: Optional[Iterable[int]] = None) -> Dict[Tuple[int, int, str], StockAlert]:
        stmt = (
            select(StockAlert)
            .where(StockAlert.status.in_(OPEN_ALERT_STATUSES))
            .execution_options(populate_existing=True)
        )
        if sku_ids is not None:
            stmt = stmt.where(StockAlert.sku_id.in_(list(sku_ids)))
        return {a.key: a for a in self.db.execute(stmt).unique().scalars()}

    def get_alert(self, alert_id: int) -> StockAlert:
        stmt = (
            select(StockAlert)
            .where(StockAlert.id == alert_id)
            .execution_options(populate_existing=True)
        )
        alert = self.db.execute(stmt).unique().scalar_one_or_none()
        if alert is None:
            raise NotFoundError(f"Alert {alert_id} not found", alert_id=alert_id)
        return alert

    def write_alert(self, alert: StockAlert) -> StockAlert:
        """Stage a new or changed alert row; the caller commits."""
        self.db.add(alert)
        return alert
