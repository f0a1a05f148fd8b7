"""
Replenish-from-Alert
=====================
"Create a transfer into the alert's location, then dismiss the alert" as a
saga. The transfer is the step that matters; if the dismissal fails after the
transfer committed, the failure is logged and the dismissal is retried in the
background by DismissRetryQueue instead of leaving the alert open forever.

Usage:
    retry_queue = DismissRetryQueue(SessionLocal, max_attempts=5, interval=2.0)
    retry_queue.start()

    service = ReplenishmentService(db, retry_queue)
    outcome = service.replenish_from_alert(alert_id=12, from_location_id=1, quantity=40, actor="ops")
"""
import queue
import threading
import time
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from rebalancer.core.exceptions import InvalidTransitionError
from rebalancer.models.enums import OPEN_ALERT_STATUSES, TransferSource
from rebalancer.services.alert_generator import AlertGenerator
from rebalancer.services.allocation_store import AllocationStore
from rebalancer.services.transfer_orders import TransferOrderGenerator


@dataclass
class _PendingDismiss:
    alert_id: int
    actor: str
    reason: Optional[str]
    attempts: int = 0
    not_before: float = 0.0


class DismissRetryQueue:
    """
    Thread-safe queue of alert dismissals still owed after a successful
    transfer. A daemon thread retries each entry up to max_attempts times,
    interval seconds apart.
    """

    def __init__(self, session_factory: sessionmaker, max_attempts: int = 5, interval: float = 2.0):
        self._session_factory = session_factory
        self._queue: "queue.Queue[_PendingDismiss]" = queue.Queue()
        self._max_attempts = max(max_attempts, 1)
        self._interval = interval
        self._running = False
        self._thread: Optional[threading.Thread] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self):
        """Start the background retry thread."""
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._process_loop, daemon=True)
        self._thread.start()
        logger.info("Dismiss retry queue started")

    def stop(self):
        """Stop the background thread; entries still queued are logged and dropped."""
        self._running = False
        if self._thread:
            self._thread.join(timeout=5.0)
        if not self._queue.empty():
            logger.warning(f"Dismiss retry queue stopped with {self._queue.qsize()} pending dismissal(s)")
        logger.info("Dismiss retry queue stopped")

    def enqueue(self, alert_id: int, actor: str, reason: Optional[str] = None):
        self._queue.put(_PendingDismiss(alert_id, actor, reason, not_before=time.time() + self._interval))

    def drain(self) -> int:
        """Make one attempt for every entry queued right now. Returns the number dismissed."""
        dismissed = 0
        for _ in range(self._queue.qsize()):
            try:
                entry = self._queue.get_nowait()
            except queue.Empty:
                break
            if self._attempt(entry):
                dismissed += 1
        return dismissed

    def _attempt(self, entry: _PendingDismiss) -> bool:
        entry.attempts += 1
        try:
            with self._session_factory() as db:
                AlertGenerator(db).dismiss(entry.alert_id, entry.actor, reason=entry.reason)
            logger.info(f"Alert {entry.alert_id} dismissed on retry {entry.attempts}")
            return True
        except Exception as e:
            if entry.attempts >= self._max_attempts:
                logger.error(
                    f"Giving up dismissing alert {entry.alert_id} after {entry.attempts} attempt(s): {e}"
                )
                return False
            logger.warning(f"Dismiss retry {entry.attempts} for alert {entry.alert_id} failed: {e}")
            entry.not_before = time.time() + self._interval
            self._queue.put(entry)
            return False

    def _process_loop(self):
        while self._running:
            try:
                entry = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            wait = entry.not_before - time.time()
            if wait > 0:
                self._queue.put(entry)
                time.sleep(min(wait, 0.5))
                continue
            self._attempt(entry)


class ReplenishmentService:

    def __init__(self, db: Session, retry_queue: DismissRetryQueue):
        self.db = db
        self.retry_queue = retry_queue
        self.store = AllocationStore(db)

    def replenish_from_alert(
        self,
        alert_id: int,
        from_location_id: int,
        quantity: int,
        actor: str,
        required_date: Optional[date] = None,
    ) -> Dict[str, Any]:
        alert = self.store.get_alert(alert_id)
        if alert.status not in OPEN_ALERT_STATUSES:
            raise InvalidTransitionError(
                f"Alert {alert_id} is {alert.status}; nothing to replenish",
                alert_id=alert_id, status=alert.status,
            )

        result = TransferOrderGenerator(self.db).create_manual(
            sku_id=alert.sku_id,
            from_location_id=from_location_id,
            to_location_id=alert.location_id,
            quantity=quantity,
            actor=actor,
            required_date=required_date,
            source=TransferSource.ALERT,
            reference=f"ALERT_{alert_id}",
        )
        transfer = result.as_dict()
        reason = f"Replenished by transfer {result.order.id}"

        try:
            AlertGenerator(self.db).dismiss(alert_id, actor, reason=reason)
            dismissed = True
        except Exception as e:
            self.db.rollback()
            logger.error(
                f"Alert {alert_id} not dismissed after transfer {result.order.id}: {e}; queued for retry"
            )
            self.retry_queue.enqueue(alert_id, actor, reason)
            dismissed = False

        return {
            "alert_id": alert_id,
            "transfer": transfer,
            "alert_dismissed": dismissed,
            "dismiss_queued": not dismissed,
        }
