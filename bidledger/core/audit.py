"""
Audit Trail - Best-effort, append-only record of mutating decisions.

Audit writes must never undo the decision they describe. Inside a unit of
work each record is inserted within its own SAVEPOINT: if the insert fails,
only the savepoint is rolled back, the failure is logged, and the primary
transaction carries on. Outside a unit of work the record gets a short
transaction of its own.
"""

import sqlite3
import time
import uuid
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from bidledger.core.models import AuditAction, AuditRecord
from bidledger.utils.logger import get_logger

if TYPE_CHECKING:
    from bidledger.core.storage import StorageManager

logger = get_logger("audit")


class AuditTrail:
    """Appends AuditRecords for every bidding and settlement decision."""

    def __init__(
        self,
        storage: "StorageManager",
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.clock = clock

    def record(
        self,
        action: AuditAction,
        target_id: str,
        actor: str = "SYSTEM",
        metadata: Optional[Dict[str, Any]] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[AuditRecord]:
        """
        Append one record; never raises.

        Args:
            action: Decision being recorded
            target_id: Usually the order id
            actor: Who performed it
            metadata: Score breakdown, price, eta... ("timestamp" is added)
            conn: Connection of the enclosing unit of work, if any

        Returns:
            The written record, or None if the write failed
        """
        now = self.clock()
        payload = dict(metadata or {})
        payload.setdefault("timestamp", now)
        record = AuditRecord(
            record_id=uuid.uuid4().hex,
            action=action,
            target_id=target_id,
            actor=actor,
            metadata=payload,
            created_at=now,
        )

        try:
            if conn is not None:
                with self.storage.adapter.savepoint(conn, "audit_record"):
                    self.storage.insert_audit(conn, record)
            else:
                with self.storage.unit_of_work() as own_conn:
                    self.storage.insert_audit(own_conn, record)
        except Exception as e:
            logger.warning(f"Failed to write audit record {action.value} for {target_id}: {e}")
            return None

        logger.debug(f"Audit {action.value} target={target_id} actor={actor}")
        return record

    def records_for(self, target_id: str) -> List[AuditRecord]:
        """All records for a target, oldest first."""
        return self.storage.audit_for_target(target_id)
