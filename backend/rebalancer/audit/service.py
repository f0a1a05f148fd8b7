"""
Audit Trail Service - records who changed allocations, transfers and alerts
"""
import json
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from sqlalchemy import select
from sqlalchemy.orm import Session

from rebalancer.models.audit import AuditLog


class AuditService:
    """
    Audit entries are added to the caller's session and committed together
    with the change they describe, so a rolled-back change leaves no trace.
    """

    def __init__(self, db: Session):
        self.db = db

    def log(
        self,
        entity: str,
        action_type: str,
        changed_by: str,
        record_key: Optional[Any] = None,
        old_data: Optional[Dict] = None,
        new_data: Optional[Dict] = None,
        changed_columns: Optional[List[str]] = None,
        source: str = "API",
        batch_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> AuditLog:
        entry = AuditLog(
            entity=entity,
            action_type=action_type,
            record_key=str(record_key) if record_key is not None else None,
            old_data=json.dumps(old_data, default=str) if old_data else None,
            new_data=json.dumps(new_data, default=str) if new_data else None,
            changed_columns=json.dumps(changed_columns) if changed_columns else None,
            changed_by=changed_by,
            changed_at=datetime.now(timezone.utc),
            source=source,
            batch_id=batch_id,
            notes=notes[:1000] if notes else None,
        )
        self.db.add(entry)
        return entry

    def log_update(
        self,
        entity: str,
        changed_by: str,
        record_key: Any,
        old: Dict,
        new: Dict,
        **kwargs,
    ) -> Optional[AuditLog]:
        """Log only the columns that actually changed; no-op when nothing did."""
        changed_cols, old_vals, new_vals = self.diff_records(old, new)
        if not changed_cols:
            return None
        return self.log(
            entity=entity,
            action_type="UPDATE",
            changed_by=changed_by,
            record_key=record_key,
            old_data=old_vals,
            new_data=new_vals,
            changed_columns=changed_cols,
            **kwargs,
        )

    def recent(
        self,
        entity: Optional[str] = None,
        record_key: Optional[str] = None,
        changed_by: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        stmt = select(AuditLog).order_by(AuditLog.id.desc()).limit(limit)
        if entity:
            stmt = stmt.where(AuditLog.entity == entity)
        if record_key:
            stmt = stmt.where(AuditLog.record_key == record_key)
        if changed_by:
            stmt = stmt.where(AuditLog.changed_by == changed_by)

        return [
            {
                "id": e.id,
                "entity": e.entity,
                "action_type": e.action_type,
                "record_key": e.record_key,
                "old_data": json.loads(e.old_data) if e.old_data else None,
                "new_data": json.loads(e.new_data) if e.new_data else None,
                "changed_columns": json.loads(e.changed_columns) if e.changed_columns else None,
                "changed_by": e.changed_by,
                "changed_at": e.changed_at.isoformat() if e.changed_at else None,
                "source": e.source,
                "batch_id": e.batch_id,
                "notes": e.notes,
            }
            for e in self.db.execute(stmt).scalars()
        ]

    @staticmethod
    def diff_records(old: Dict, new: Dict) -> tuple:
        """
        Compare old and new record dicts.
        Returns: (changed_columns, old_values, new_values)
        """
        changed_cols = []
        old_vals = {}
        new_vals = {}

        for key in list(old.keys()) + [k for k in new.keys() if k not in old]:
            old_val = old.get(key)
            new_val = new.get(key)
            if old_val != new_val:
                changed_cols.append(key)
                old_vals[key] = old_val
                new_vals[key] = new_val

        return changed_cols, old_vals, new_vals
