"""
Transfer Order Generator
=========================
Turns a rebalance plan diff, or a manual request, into requested transfer
orders, and settles them afterwards.

From a plan:
1. Senders are locations whose proposed target is below on-hand, capped by
   what they can actually ship (on-hand minus open outgoing orders).
2. Receivers are locations whose proposed target is above on-hand.
   Open orders already heading into or out of a location count against
   both sides, so a plan that is fully scheduled yields no new legs.
3. Legs are matched greedily, largest surplus against largest need.
4. Legs under the minimum transfer quantity are dropped, never rounded up.
5. While there are more legs than allowed, the smallest leg is merged into
   the leg nearest to it in quantity among those at least as large; the
   merged units are limited by that leg's source availability.
Whatever the legs do not cover is reported per location.

Settlement (dispatch / receive / cancel) is the only path that moves
in-transit and on-hand quantities, and each step is idempotent.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy.orm import Session

from rebalancer.core.exceptions import CapacityError, InvalidTransitionError, ValidationError
from rebalancer.models import Allocation, TransferOrder
from rebalancer.models.enums import TransferSource, TransferStatus
from rebalancer.services.allocation_store import AllocationSnapshot, AllocationStore
from rebalancer.services.planner import RebalancePlan
from rebalancer.services.policy import RebalanceConstraints


@dataclass(frozen=True)
class TransferLeg:
    from_location_id: int
    to_location_id: int
    quantity: int

    def as_dict(self) -> Dict[str, int]:
        return {
            "from_location_id": self.from_location_id,
            "to_location_id": self.to_location_id,
            "quantity": self.quantity,
        }


@dataclass
class TransferProposal:
    sku_id: int
    legs: List[TransferLeg] = field(default_factory=list)
    dropped: List[TransferLeg] = field(default_factory=list)
    merged: int = 0
    coverage: List[Dict[str, int]] = field(default_factory=list)

    @property
    def units(self) -> int:
        return sum(leg.quantity for leg in self.legs)

    @property
    def unscheduled_units(self) -> int:
        return sum(max(c["planned"] - c["scheduled"], 0) for c in self.coverage if c["planned"] > 0)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "sku_id": self.sku_id,
            "legs": [leg.as_dict() for leg in self.legs],
            "dropped": [leg.as_dict() for leg in self.dropped],
            "merged": self.merged,
            "units": self.units,
            "unscheduled_units": self.unscheduled_units,
            "coverage": self.coverage,
        }


# ============================================================================
# Leg generation (pure)
# ============================================================================

def _match(senders: List[List[int]], receivers: List[List[int]]) -> List[TransferLeg]:
    legs = []
    s = r = 0
    while s < len(senders) and r < len(receivers):
        qty = min(senders[s][1], receivers[r][1])
        if qty > 0:
            legs.append(TransferLeg(senders[s][0], receivers[r][0], qty))
        senders[s][1] -= qty
        receivers[r][1] -= qty
        if senders[s][1] == 0:
            s += 1
        if receivers[r][1] == 0:
            r += 1
    return legs


def _merge_smallest(legs: List[TransferLeg], headroom: Dict[int, int]) -> List[TransferLeg]:
    """Fold the smallest leg (earliest on ties) into its nearest not-smaller neighbour."""
    smallest = min(range(len(legs)), key=lambda i: (legs[i].quantity, i))
    small = legs[smallest]
    others = [i for i in range(len(legs)) if i != smallest and legs[i].quantity >= small.quantity]
    into = min(others, key=lambda i: (legs[i].quantity - small.quantity, i))
    big = legs[into]

    if big.from_location_id == small.from_location_id:
        carried = small.quantity
    else:
        headroom[small.from_location_id] += small.quantity
        carried = min(small.quantity, max(headroom.get(big.from_location_id, 0), 0))
        headroom[big.from_location_id] = headroom.get(big.from_location_id, 0) - carried

    merged = list(legs)
    merged[into] = TransferLeg(big.from_location_id, big.to_location_id, big.quantity + carried)
    del merged[smallest]
    return merged


def propose_legs(
    plan: RebalancePlan,
    constraints: RebalanceConstraints,
    available: Dict[int, int],
    open_inbound: Optional[Dict[int, int]] = None,
    open_outbound: Optional[Dict[int, int]] = None,
) -> TransferProposal:
    """
    Compute the transfer legs that move a SKU's stock towards its plan.

    Orders already requested or in transit count as scheduled: a location's
    remaining need is its plan delta less open inbound plus open outbound.
    """
    proposal = TransferProposal(sku_id=plan.sku_id)
    open_inbound = open_inbound or {}
    open_outbound = open_outbound or {}
    remaining = {
        line.location_id: line.delta
        - open_inbound.get(line.location_id, 0)
        + open_outbound.get(line.location_id, 0)
        for line in plan.lines
    }

    senders = []
    receivers = []
    for line in plan.lines:
        need = remaining[line.location_id]
        if need < 0:
            can_send = max(min(-need, available.get(line.location_id, 0)), 0)
            senders.append([line.location_id, can_send])
        elif need > 0:
            receivers.append([line.location_id, need])
    senders.sort(key=lambda item: -item[1])
    receivers.sort(key=lambda item: -item[1])

    legs = []
    for leg in _match(senders, receivers):
        if leg.quantity < constraints.min_transfer_quantity:
            proposal.dropped.append(leg)
        else:
            legs.append(leg)

    headroom = {loc: max(qty, 0) for loc, qty in available.items()}
    for leg in legs:
        headroom[leg.from_location_id] = headroom.get(leg.from_location_id, 0) - leg.quantity
    while len(legs) > constraints.max_transfers_per_sku:
        legs = _merge_smallest(legs, headroom)
        proposal.merged += 1
    proposal.legs = legs

    inbound: Dict[int, int] = {}
    outbound: Dict[int, int] = {}
    for leg in legs:
        inbound[leg.to_location_id] = inbound.get(leg.to_location_id, 0) + leg.quantity
        outbound[leg.from_location_id] = outbound.get(leg.from_location_id, 0) + leg.quantity
    proposal.coverage = [
        {
            "location_id": line.location_id,
            "planned": remaining[line.location_id],
            "scheduled": inbound.get(line.location_id, 0) - outbound.get(line.location_id, 0),
        }
        for line in plan.lines
        if remaining[line.location_id] != 0 or line.location_id in inbound or line.location_id in outbound
    ]
    return proposal


# ============================================================================
# Serialisation
# ============================================================================

def transfer_to_dict(order: TransferOrder) -> Dict[str, Any]:
    return {
        "id": order.id,
        "sku_id": order.sku_id,
        "sku_code": order.sku.sku_code if order.sku else "Unknown",
        "from_location_id": order.from_location_id,
        "from_location": order.from_location.location_name if order.from_location else "Unknown",
        "to_location_id": order.to_location_id,
        "to_location": order.to_location.location_name if order.to_location else "Unknown",
        "quantity": order.quantity,
        "required_date": order.required_date.isoformat() if order.required_date else None,
        "status": order.status,
        "source": order.source,
        "reference": order.reference,
        "created_by": order.created_by,
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "dispatched_at": order.dispatched_at.isoformat() if order.dispatched_at else None,
        "received_at": order.received_at.isoformat() if order.received_at else None,
        "cancelled_at": order.cancelled_at.isoformat() if order.cancelled_at else None,
    }


@dataclass
class TransferResult:
    order: TransferOrder
    requested: int
    capacity_error: Optional[CapacityError] = None

    @property
    def fulfilled(self) -> int:
        return self.order.quantity

    @property
    def shortfall(self) -> int:
        return self.requested - self.fulfilled

    def as_dict(self) -> Dict[str, Any]:
        data = transfer_to_dict(self.order)
        data.update(requested=self.requested, fulfilled=self.fulfilled, shortfall=self.shortfall)
        return data


# ============================================================================
# Service
# ============================================================================

class TransferOrderGenerator:

    def __init__(self, db: Session):
        self.db = db
        self.store = AllocationStore(db)

    def available(self, sku_id: int, rows: List[AllocationSnapshot]) -> Dict[int, int]:
        """Shippable units per location: on-hand minus open outgoing orders."""
        pending = self.store.pending_outgoing(sku_id)
        return {r.location_id: max(r.on_hand - pending.get(r.location_id, 0), 0) for r in rows}

    def from_plan(
        self,
        plan: RebalancePlan,
        rows: List[AllocationSnapshot],
        constraints: RebalanceConstraints,
    ) -> TransferProposal:
        proposal = propose_legs(
            plan,
            constraints,
            self.available(plan.sku_id, rows),
            open_inbound=self.store.pending_inbound(plan.sku_id),
            open_outbound=self.store.pending_outgoing(plan.sku_id),
        )
        if proposal.dropped or proposal.merged:
            logger.info(
                f"[sku={plan.sku_id}] {len(proposal.dropped)} leg(s) under minimum dropped, "
                f"{proposal.merged} merge(s) to respect the leg cap"
            )
        return proposal

    def create_manual(
        self,
        sku_id: int,
        from_location_id: int,
        to_location_id: int,
        quantity: int,
        actor: str,
        required_date: Optional[date] = None,
        source: TransferSource = TransferSource.MANUAL,
        reference: Optional[str] = None,
    ) -> TransferResult:
        """
        Create one requested transfer, shipping what the source can cover.
        A partial fulfilment returns the order with the CapacityError attached;
        when nothing can be shipped the CapacityError is raised.
        """
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("Transfer quantity must be a positive integer", quantity=quantity)
        if from_location_id == to_location_id:
            raise ValidationError("Source and destination must differ", location_id=from_location_id)
        self.store.get_sku(sku_id)
        self.store.get_location(from_location_id)
        self.store.get_location(to_location_id)

        source_row = self.store.get_row(sku_id, from_location_id)
        on_hand = source_row.on_hand if source_row is not None else 0
        pending = self.store.pending_outgoing(sku_id).get(from_location_id, 0)
        fulfilled = min(quantity, max(on_hand - pending, 0))
        if fulfilled == 0:
            raise CapacityError(
                requested=quantity,
                fulfilled=0,
                sku_id=sku_id,
                from_location_id=from_location_id,
                on_hand=on_hand,
                pending_outgoing=pending,
            )

        try:
            if self.store.get_row(sku_id, to_location_id) is None:
                self.db.add(Allocation(sku_id=sku_id, location_id=to_location_id))
                self.store.audit.log(
                    "allocation", "INSERT", actor, record_key=f"{sku_id}:{to_location_id}",
                    source=TransferSource(source).value.upper(), notes="created by transfer",
                )
            # serialises with concurrent rebalances of this SKU through the row version
            source_row.updated_at = datetime.utcnow()
            order = self.store.add_transfer(
                sku_id=sku_id,
                from_location_id=from_location_id,
                to_location_id=to_location_id,
                quantity=fulfilled,
                actor=actor,
                required_date=required_date,
                source=source,
                reference=reference,
            )
            self.store.commit(sku_id=sku_id)
        except Exception:
            self.db.rollback()
            raise

        capacity_error = None
        if fulfilled < quantity:
            capacity_error = CapacityError(
                requested=quantity,
                fulfilled=fulfilled,
                sku_id=sku_id,
                from_location_id=from_location_id,
            )
            logger.warning(
                f"[sku={sku_id}] Transfer {order.id} partially fulfilled: "
                f"{fulfilled}/{quantity} (shortfall {quantity - fulfilled})"
            )
        else:
            logger.info(f"[sku={sku_id}] Transfer {order.id} requested: {fulfilled} units")
        return TransferResult(order=order, requested=quantity, capacity_error=capacity_error)

    # ------------------------------------------------------------ settlement

    def _destination(self, order: TransferOrder) -> Allocation:
        row = self.store.get_row(order.sku_id, order.to_location_id)
        if row is None:
            row = Allocation(sku_id=order.sku_id, location_id=order.to_location_id)
            self.db.add(row)
        return row

    def dispatch(self, transfer_id: str, actor: str) -> TransferOrder:
        order = self.store.get_transfer(transfer_id)
        if order.status == TransferStatus.IN_TRANSIT.value:
            return order
        if order.status != TransferStatus.REQUESTED.value:
            raise InvalidTransitionError(
                f"Transfer {transfer_id} is {order.status} and cannot be dispatched",
                transfer_id=transfer_id, status=order.status,
            )
        destination = self._destination(order)
        destination.in_transit = (destination.in_transit or 0) + order.quantity
        order.status = TransferStatus.IN_TRANSIT.value
        order.dispatched_at = datetime.utcnow()
        self.store.audit.log("transfer_order", "DISPATCH", actor, record_key=order.id)
        self.store.commit(transfer_id=transfer_id)
        logger.info(f"[sku={order.sku_id}] Transfer {order.id} dispatched ({order.quantity} units)")
        return order

    def receive(self, transfer_id: str, actor: str) -> TransferOrder:
        """Settle an in-transit order: destination in-transit → on-hand, source on-hand decremented."""
        order = self.store.get_transfer(transfer_id)
        if order.status == TransferStatus.RECEIVED.value:
            return order
        if order.status != TransferStatus.IN_TRANSIT.value:
            raise InvalidTransitionError(
                f"Transfer {transfer_id} is {order.status} and cannot be received",
                transfer_id=transfer_id, status=order.status,
            )
        source_row = self.store.get_row(order.sku_id, order.from_location_id)
        if source_row is None or source_row.on_hand < order.quantity:
            raise ValidationError(
                f"Source no longer holds {order.quantity} units for transfer {transfer_id}",
                transfer_id=transfer_id,
                on_hand=source_row.on_hand if source_row is not None else 0,
            )
        destination = self._destination(order)

        source_row.on_hand -= order.quantity
        destination.in_transit = max((destination.in_transit or 0) - order.quantity, 0)
        destination.on_hand = (destination.on_hand or 0) + order.quantity
        order.status = TransferStatus.RECEIVED.value
        order.received_at = datetime.utcnow()
        self.store.audit.log(
            "transfer_order", "RECEIVE", actor, record_key=order.id,
            new_data={"quantity": order.quantity},
        )
        self.store.commit(transfer_id=transfer_id)
        logger.info(f"[sku={order.sku_id}] Transfer {order.id} received ({order.quantity} units)")
        return order

    def cancel(self, transfer_id: str, actor: str) -> TransferOrder:
        order = self.store.get_transfer(transfer_id)
        if order.status == TransferStatus.CANCELLED.value:
            return order
        if order.status == TransferStatus.RECEIVED.value:
            raise InvalidTransitionError(
                f"Transfer {transfer_id} was already received",
                transfer_id=transfer_id, status=order.status,
            )
        if order.status == TransferStatus.IN_TRANSIT.value:
            destination = self._destination(order)
            destination.in_transit = max((destination.in_transit or 0) - order.quantity, 0)
        order.status = TransferStatus.CANCELLED.value
        order.cancelled_at = datetime.utcnow()
        self.store.audit.log("transfer_order", "CANCEL", actor, record_key=order.id)
        self.store.commit(transfer_id=transfer_id)
        logger.info(f"[sku={order.sku_id}] Transfer {order.id} cancelled")
        return order
