"""
Unit tests for the audit trail.
"""

from bidledger.core.audit import AuditTrail
from bidledger.core.models import AuditAction, CreditRelationship


class TestAuditTrail:
    """Tests for best-effort audit writes."""

    def test_record_outside_unit(self, storage, clock):
        audit = AuditTrail(storage, clock)
        record = audit.record(AuditAction.BROADCAST, "order-1", "ADMIN", {"sellerCount": 2})

        assert record is not None
        stored = audit.records_for("order-1")
        assert len(stored) == 1
        assert stored[0].actor == "ADMIN"
        assert stored[0].metadata == {"sellerCount": 2, "timestamp": clock.now}

    def test_record_inside_unit(self, storage, clock):
        """Records written with the unit's connection commit with it."""
        audit = AuditTrail(storage, clock)
        with storage.unit_of_work() as conn:
            audit.record(AuditAction.WINNER_SELECTED, "order-1", conn=conn)
            audit.record(AuditAction.LOSER_REJECTED, "order-1", conn=conn)

        actions = [r.action for r in audit.records_for("order-1")]
        assert actions == [AuditAction.WINNER_SELECTED, AuditAction.LOSER_REJECTED]

    def test_rolled_back_with_unit(self, storage, clock):
        audit = AuditTrail(storage, clock)
        try:
            with storage.unit_of_work() as conn:
                audit.record(AuditAction.BROADCAST, "order-1", conn=conn)
                raise KeyError("abort")
        except KeyError:
            pass
        assert audit.records_for("order-1") == []

    def test_failure_never_undoes_decision(self, storage, clock, monkeypatch):
        """A failed audit insert returns None and the primary write commits."""
        audit = AuditTrail(storage, clock)

        def broken(conn, record):
            conn.execute("INSERT INTO no_such_table VALUES (1)")

        monkeypatch.setattr(storage, "insert_audit", broken)

        with storage.unit_of_work() as conn:
            storage.insert_relationship(conn, CreditRelationship("b", "s", 10.0))
            assert audit.record(AuditAction.BROADCAST, "order-1", conn=conn) is None

        assert storage.get_relationship("b", "s") is not None

    def test_caller_timestamp_kept(self, storage, clock):
        audit = AuditTrail(storage, clock)
        record = audit.record(AuditAction.BROADCAST, "o", metadata={"timestamp": 5})
        assert record.metadata["timestamp"] == 5
