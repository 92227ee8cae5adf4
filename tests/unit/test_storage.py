"""
Unit tests for the SQLite adapter, row locks and storage manager.
"""

import sqlite3
import threading

import pytest

from bidledger.core.errors import ConcurrencyError, ErrorKind
from bidledger.core.ledger import EntryKind
from bidledger.core.models import CreditRelationship, Offer, OfferStatus, Order, OrderStatus, Seller
from bidledger.core.storage import RowLockManager, classify_operational_error


def add_pair(storage, buyer="b", seller="s", limit=1000.0):
    with storage.unit_of_work() as conn:
        storage.insert_relationship(conn, CreditRelationship(buyer, seller, limit, created_at=1.0, updated_at=1.0))


# =============================================================================
# Row Locks
# =============================================================================


class TestRowLocks:
    """Tests for keyed exclusive locks."""

    def test_acquire_release(self):
        locks = RowLockManager()
        assert locks.acquire("order:1", 0.1)
        assert locks.held_keys() == ["order:1"]
        locks.release("order:1")
        assert locks.held_keys() == []

    def test_bounded_wait(self):
        """A held key times out for other acquirers."""
        locks = RowLockManager()
        assert locks.acquire("order:1", 0.1)

        result = []
        t = threading.Thread(target=lambda: result.append(locks.acquire("order:1", 0.05)))
        t.start()
        t.join()

        assert result == [False]
        locks.release("order:1")

    def test_independent_keys(self):
        """Different rows never block each other."""
        locks = RowLockManager()
        assert locks.acquire("order:1", 0.1)
        assert locks.acquire("order:2", 0.1)
        locks.release("order:1")
        locks.release("order:2")


class TestClassification:
    """Tests for OperationalError classification."""

    def test_locked_is_timeout(self):
        error = classify_operational_error(sqlite3.OperationalError("database is locked"))
        assert error.kind is ErrorKind.LOCK_TIMEOUT

    def test_deadlock(self):
        error = classify_operational_error(sqlite3.OperationalError("deadlock detected"))
        assert error.kind is ErrorKind.DEADLOCK

    def test_other_errors_unclassified(self):
        assert classify_operational_error(sqlite3.OperationalError("no such table: x")) is None


# =============================================================================
# Units of Work
# =============================================================================


class TestUnitOfWork:
    """Tests for transactional scope and locking."""

    def test_commit(self, storage):
        add_pair(storage)
        assert storage.get_relationship("b", "s").credit_limit == 1000.0

    def test_rollback_on_error(self, storage):
        """An exception inside the unit discards every write."""
        with pytest.raises(RuntimeError):
            with storage.unit_of_work() as conn:
                storage.insert_relationship(conn, CreditRelationship("b", "s", 1000.0))
                raise RuntimeError("boom")
        assert storage.get_relationship("b", "s") is None

    def test_lock_timeout(self, storage):
        """A held row lock makes the next unit fail LOCK_TIMEOUT."""
        assert storage.adapter.row_locks.acquire("order:o1", 0.1)
        try:
            with pytest.raises(ConcurrencyError) as exc:
                with storage.lock_order("o1", timeout=0.01):
                    pass
        finally:
            storage.adapter.row_locks.release("order:o1")
        assert exc.value.kind is ErrorKind.LOCK_TIMEOUT

    def test_lock_released_after_unit(self, storage):
        with storage.lock_order("o1"):
            assert "order:o1" in storage.adapter.row_locks.held_keys()
        assert storage.adapter.row_locks.held_keys() == []

    def test_units_do_not_nest(self, storage):
        with pytest.raises(RuntimeError, match="do not nest"):
            with storage.unit_of_work():
                with storage.unit_of_work():
                    pass

    def test_savepoint_isolates_failure(self, storage):
        """A failed savepoint rolls back alone; the outer unit commits."""
        with storage.unit_of_work() as conn:
            storage.insert_relationship(conn, CreditRelationship("b", "s", 1000.0))
            with pytest.raises(sqlite3.IntegrityError):
                with storage.adapter.savepoint(conn, "dup"):
                    storage.insert_relationship(conn, CreditRelationship("b", "s", 5.0))
        assert storage.get_relationship("b", "s").credit_limit == 1000.0

    def test_failed_commit_rolls_back(self, storage, monkeypatch):
        """A COMMIT that fails for any reason leaves the connection usable."""
        adapter = storage.adapter
        execute = adapter._execute_classified

        def failing_commit(conn, statement):
            if statement == "COMMIT":
                raise sqlite3.DatabaseError("disk I/O error")
            execute(conn, statement)

        monkeypatch.setattr(adapter, "_execute_classified", failing_commit)
        with pytest.raises(sqlite3.DatabaseError):
            with storage.unit_of_work() as conn:
                storage.insert_relationship(conn, CreditRelationship("b", "s", 1000.0))
        monkeypatch.undo()

        assert not adapter._get_conn().in_transaction
        assert storage.get_relationship("b", "s") is None
        add_pair(storage)
        assert storage.get_relationship("b", "s").credit_limit == 1000.0

    def test_thread_scope_closes_worker_connection(self, storage):
        seen = {}

        def worker():
            with storage.thread_scope():
                storage.get_relationship("b", "s")
                seen["open"] = hasattr(storage.adapter._conn_local, "conn")
            seen["after"] = hasattr(storage.adapter._conn_local, "conn")

        t = threading.Thread(target=worker)
        t.start()
        t.join(timeout=10)
        assert seen == {"open": True, "after": False}

    def test_thread_scope_keeps_existing_connection(self, storage):
        conn = storage.adapter._get_conn()
        with storage.thread_scope():
            storage.get_relationship("b", "s")
        assert storage.adapter._get_conn() is conn

    def test_settlement_guard_times_out(self, storage):
        assert storage.adapter.row_locks.acquire("settle:o1", 0.1)
        try:
            with pytest.raises(ConcurrencyError):
                with storage.settlement_guard("o1", timeout=0.01):
                    pass
        finally:
            storage.adapter.row_locks.release("settle:o1")


# =============================================================================
# Ledger Persistence
# =============================================================================


class TestLedgerStore:
    """Tests for ledger rows."""

    def append(self, storage, entry_id, kind=EntryKind.DEBIT, amount=10.0, created_at=1.0, **kw):
        with storage.unit_of_work() as conn:
            return storage.append_entry(
                conn, entry_id=entry_id, buyer_id="b", seller_id="s", kind=kind, amount=amount,
                balance_after=amount, created_by="t", created_at=created_at, **kw
            )

    def test_sequence_breaks_time_ties(self, storage):
        """Entries with equal timestamps are ordered by insertion."""
        add_pair(storage)
        for i in range(5):
            self.append(storage, f"e{i}", created_at=1.0)
        assert [e.entry_id for e in storage.entries_for_pair("b", "s")] == [f"e{i}" for i in range(5)]

    def test_entries_are_immutable(self, storage):
        """Triggers reject UPDATE and DELETE on ledger rows."""
        add_pair(storage)
        self.append(storage, "e1")
        with pytest.raises(sqlite3.IntegrityError, match="immutable"):
            with storage.unit_of_work() as conn:
                conn.execute("UPDATE ledger_entries SET amount = 0 WHERE entry_id = 'e1'")
        with pytest.raises(sqlite3.IntegrityError, match="immutable"):
            with storage.unit_of_work() as conn:
                conn.execute("DELETE FROM ledger_entries WHERE entry_id = 'e1'")
        assert storage.get_entry("e1").amount == 10.0

    def test_entry_requires_relationship(self, storage):
        with pytest.raises(sqlite3.IntegrityError):
            self.append(storage, "orphan")

    def test_debit_reversed_once(self, storage):
        """reverses_entry_id is unique."""
        add_pair(storage)
        self.append(storage, "d1", order_ref="o1")
        self.append(storage, "r1", kind=EntryKind.REVERSAL, reverses_entry_id="d1")
        with pytest.raises(sqlite3.IntegrityError):
            self.append(storage, "r2", kind=EntryKind.REVERSAL, reverses_entry_id="d1")
        assert storage.find_reversal("d1").entry_id == "r1"

    def test_open_debits_for_order(self, storage):
        """Reversed debits are not open."""
        add_pair(storage)
        self.append(storage, "d1", order_ref="o1")
        self.append(storage, "d2", order_ref="o1")
        self.append(storage, "r1", kind=EntryKind.REVERSAL, reverses_entry_id="d1", order_ref="o1")
        assert [e.entry_id for e in storage.open_debits_for_order("o1")] == ["d2"]


# =============================================================================
# Marketplace Rows
# =============================================================================


class TestMarketRows:
    """Tests for sellers, orders and offers."""

    def test_seller_roundtrip_and_active_listing(self, storage):
        with storage.unit_of_work() as conn:
            storage.upsert_seller(conn, Seller("s1", name="One", latitude=27.7, longitude=85.3))
            storage.upsert_seller(conn, Seller("s2", is_active=False))
            storage.upsert_seller(conn, Seller("s3", deleted_at=5.0))

        assert storage.get_seller("s1").latitude == 27.7
        assert [s.seller_id for s in storage.list_active_sellers()] == ["s1"]
        assert set(storage.get_sellers(["s1", "s2", "missing"])) == {"s1", "s2"}

    def test_expired_open_orders(self, storage):
        with storage.unit_of_work() as conn:
            storage.insert_order(conn, Order("late", "b", 10, OrderStatus.OPEN_FOR_BIDS, expires_at=50.0))
            storage.insert_order(conn, Order("fresh", "b", 10, OrderStatus.OPEN_FOR_BIDS, expires_at=500.0))
            storage.insert_order(conn, Order("draft", "b", 10, OrderStatus.DRAFT))

        assert [o.order_id for o in storage.expired_open_orders(100.0, 10)] == ["late"]

    def test_offer_unique_per_seller(self, storage):
        with storage.unit_of_work() as conn:
            storage.upsert_seller(conn, Seller("s1"))
            storage.insert_order(conn, Order("o1", "b", 10, OrderStatus.OPEN_FOR_BIDS))
            storage.insert_offer(conn, Offer("f1", "o1", "s1", 9.0, "2H"))
        with pytest.raises(sqlite3.IntegrityError):
            with storage.unit_of_work() as conn:
                storage.insert_offer(conn, Offer("f2", "o1", "s1", 8.0, "1H"))

        with storage.unit_of_work() as conn:
            storage.set_offer_status(conn, "f1", OfferStatus.ACCEPTED, 2.0)
        assert storage.offers_for_order("o1", OfferStatus.PENDING) == []
        assert storage.get_offer("o1", "s1").status is OfferStatus.ACCEPTED
