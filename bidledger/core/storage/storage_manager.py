import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from bidledger.core.errors import ConcurrencyError, ErrorKind
from bidledger.core.ledger.entries import EntryKind, LedgerEntry
from bidledger.core.models import (
    AuditAction,
    AuditRecord,
    CreditRelationship,
    Offer,
    OfferStatus,
    Order,
    OrderStatus,
    Seller,
)
from bidledger.core.storage.sqlite_adapter import SQLiteAdapter
from bidledger.utils.logger import get_logger

logger = get_logger("storage.manager")

Conn = Optional[sqlite3.Connection]


def credit_lock_key(buyer_id: str, seller_id: str) -> str:
    return f"credit:{buyer_id}:{seller_id}"


def order_lock_key(order_id: str) -> str:
    return f"order:{order_id}"


def settlement_lock_key(order_id: str) -> str:
    return f"settle:{order_id}"


class StorageManager:
    """
    Manages persistent marketplace state.

    Maps rows to domain records on top of the SQLite adapter. Every method
    that reads accepts an optional connection: pass the unit of work's
    connection to read under its lock, or omit it for an unlocked (possibly
    stale) read. Writers always take the unit of work's connection.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.adapter = SQLiteAdapter(self.db_path)

        logger.info(f"StorageManager initialized at {self.db_path}")

    def unit_of_work(self, lock_key: Optional[str] = None, timeout: float = 5.0):
        return self.adapter.unit_of_work(lock_key=lock_key, timeout=timeout)

    def lock_credit(self, buyer_id: str, seller_id: str, timeout: float = 5.0):
        """Unit of work holding the (buyer, seller) relationship row lock."""
        return self.adapter.unit_of_work(credit_lock_key(buyer_id, seller_id), timeout)

    def lock_order(self, order_id: str, timeout: float = 5.0):
        """Unit of work holding the order row lock."""
        return self.adapter.unit_of_work(order_lock_key(order_id), timeout)

    @contextmanager
    def settlement_guard(self, order_id: str, timeout: float = 5.0) -> Iterator[None]:
        """
        Serialize settlement of one order without opening a transaction.

        Held around the credit and order units of work of a settlement, so it
        always ranks above both in lock order.

        Raises:
            ConcurrencyError: LOCK_TIMEOUT if another settlement holds it
        """
        key = settlement_lock_key(order_id)
        if not self.adapter.row_locks.acquire(key, timeout):
            raise ConcurrencyError(
                ErrorKind.LOCK_TIMEOUT,
                f"Settlement of order {order_id} already in progress",
            )
        try:
            yield
        finally:
            self.adapter.row_locks.release(key)

    def close(self) -> None:
        self.adapter.close()

    def thread_scope(self):
        """Close this thread's connection, if the block opened it, on exit."""
        return self.adapter.thread_scope()

    # =========================================================================
    # Credit Relationships
    # =========================================================================

    def insert_relationship(self, conn: sqlite3.Connection, rel: CreditRelationship) -> None:
        conn.execute(
            "INSERT INTO credit_relationships "
            "(buyer_id, seller_id, credit_limit, is_active, blocked_reason, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (rel.buyer_id, rel.seller_id, rel.credit_limit, int(rel.is_active),
             rel.blocked_reason, rel.created_at, rel.updated_at),
        )

    def get_relationship(self, buyer_id: str, seller_id: str, conn: Conn = None) -> Optional[CreditRelationship]:
        row = self.adapter.fetch_one(
            "SELECT * FROM credit_relationships WHERE buyer_id = ? AND seller_id = ?",
            (buyer_id, seller_id),
            conn,
        )
        return _relationship_from_row(row) if row else None

    def set_relationship_status(
        self,
        conn: sqlite3.Connection,
        buyer_id: str,
        seller_id: str,
        is_active: bool,
        blocked_reason: Optional[str],
        now: float,
    ) -> None:
        conn.execute(
            "UPDATE credit_relationships SET is_active = ?, blocked_reason = ?, updated_at = ? "
            "WHERE buyer_id = ? AND seller_id = ?",
            (int(is_active), blocked_reason, now, buyer_id, seller_id),
        )

    def list_relationships(
        self,
        buyer_id: Optional[str] = None,
        active_only: bool = False,
        conn: Conn = None,
    ) -> List[CreditRelationship]:
        sql = "SELECT * FROM credit_relationships WHERE 1 = 1"
        params: list = []
        if buyer_id is not None:
            sql += " AND buyer_id = ?"
            params.append(buyer_id)
        if active_only:
            sql += " AND is_active = 1"
        sql += " ORDER BY buyer_id, seller_id"
        return [_relationship_from_row(r) for r in self.adapter.fetch_all(sql, params, conn)]

    # =========================================================================
    # Ledger
    # =========================================================================

    def append_entry(
        self,
        conn: sqlite3.Connection,
        entry_id: str,
        buyer_id: str,
        seller_id: str,
        kind: EntryKind,
        amount: float,
        balance_after: float,
        created_by: str,
        created_at: float,
        order_ref: Optional[str] = None,
        reverses_entry_id: Optional[str] = None,
    ) -> LedgerEntry:
        """Append one immutable entry and return it with its sequence."""
        cursor = conn.execute(
            "INSERT INTO ledger_entries "
            "(entry_id, buyer_id, seller_id, order_ref, kind, amount, balance_after, "
            " created_by, created_at, reverses_entry_id) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (entry_id, buyer_id, seller_id, order_ref, kind.value, amount, balance_after,
             created_by, created_at, reverses_entry_id),
        )
        return LedgerEntry(
            entry_id=entry_id,
            seq=cursor.lastrowid,
            buyer_id=buyer_id,
            seller_id=seller_id,
            kind=kind,
            amount=amount,
            balance_after=balance_after,
            created_by=created_by,
            created_at=created_at,
            order_ref=order_ref,
            reverses_entry_id=reverses_entry_id,
        )

    def get_entry(self, entry_id: str, conn: Conn = None) -> Optional[LedgerEntry]:
        row = self.adapter.fetch_one("SELECT * FROM ledger_entries WHERE entry_id = ?", (entry_id,), conn)
        return _entry_from_row(row) if row else None

    def entries_for_pair(self, buyer_id: str, seller_id: str, conn: Conn = None) -> List[LedgerEntry]:
        """All entries for a pair in insertion (seq) order."""
        rows = self.adapter.fetch_all(
            "SELECT * FROM ledger_entries WHERE buyer_id = ? AND seller_id = ? "
            "ORDER BY seq ASC",
            (buyer_id, seller_id),
            conn,
        )
        return [_entry_from_row(r) for r in rows]

    def find_reversal(self, entry_id: str, conn: Conn = None) -> Optional[LedgerEntry]:
        row = self.adapter.fetch_one(
            "SELECT * FROM ledger_entries WHERE reverses_entry_id = ?", (entry_id,), conn
        )
        return _entry_from_row(row) if row else None

    def open_debits_for_order(self, order_ref: str, conn: Conn = None) -> List[LedgerEntry]:
        """DEBIT entries referencing an order that have not been reversed."""
        rows = self.adapter.fetch_all(
            "SELECT d.* FROM ledger_entries d "
            "LEFT JOIN ledger_entries r ON r.reverses_entry_id = d.entry_id "
            "WHERE d.order_ref = ? AND d.kind = ? AND r.entry_id IS NULL "
            "ORDER BY d.seq ASC",
            (order_ref, EntryKind.DEBIT.value),
            conn,
        )
        return [_entry_from_row(r) for r in rows]

    # =========================================================================
    # Sellers
    # =========================================================================

    def upsert_seller(self, conn: sqlite3.Connection, seller: Seller) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO sellers "
            "(seller_id, name, contact, is_active, deleted_at, latitude, longitude, "
            " reliability_score, total_orders, completed_orders, average_rating) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (seller.seller_id, seller.name, seller.contact, int(seller.is_active), seller.deleted_at,
             seller.latitude, seller.longitude, seller.reliability_score, seller.total_orders,
             seller.completed_orders, seller.average_rating),
        )

    def get_seller(self, seller_id: str, conn: Conn = None) -> Optional[Seller]:
        row = self.adapter.fetch_one("SELECT * FROM sellers WHERE seller_id = ?", (seller_id,), conn)
        return _seller_from_row(row) if row else None

    def get_sellers(self, seller_ids: List[str], conn: Conn = None) -> dict:
        """Sellers keyed by id (missing ids are absent)."""
        if not seller_ids:
            return {}
        marks = ",".join("?" for _ in seller_ids)
        rows = self.adapter.fetch_all(
            f"SELECT * FROM sellers WHERE seller_id IN ({marks})", list(seller_ids), conn
        )
        return {r["seller_id"]: _seller_from_row(r) for r in rows}

    def list_active_sellers(self, conn: Conn = None) -> List[Seller]:
        rows = self.adapter.fetch_all(
            "SELECT * FROM sellers WHERE is_active = 1 AND deleted_at IS NULL ORDER BY seller_id",
            (),
            conn,
        )
        return [_seller_from_row(r) for r in rows]

    # =========================================================================
    # Orders
    # =========================================================================

    def insert_order(self, conn: sqlite3.Connection, order: Order) -> None:
        conn.execute(
            "INSERT INTO orders "
            "(order_id, buyer_id, total_amount, status, final_seller_id, expires_at, "
            " debit_entry_id, latitude, longitude, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (order.order_id, order.buyer_id, order.total_amount, order.status.value,
             order.final_seller_id, order.expires_at, order.debit_entry_id,
             order.latitude, order.longitude, order.created_at, order.updated_at),
        )

    def get_order(self, order_id: str, conn: Conn = None) -> Optional[Order]:
        row = self.adapter.fetch_one("SELECT * FROM orders WHERE order_id = ?", (order_id,), conn)
        return _order_from_row(row) if row else None

    def update_order(self, conn: sqlite3.Connection, order: Order) -> None:
        """Persist the mutable fields of an order."""
        conn.execute(
            "UPDATE orders SET status = ?, final_seller_id = ?, expires_at = ?, "
            "debit_entry_id = ?, updated_at = ? WHERE order_id = ?",
            (order.status.value, order.final_seller_id, order.expires_at,
             order.debit_entry_id, order.updated_at, order.order_id),
        )

    def expired_open_orders(self, now: float, limit: int) -> List[Order]:
        rows = self.adapter.fetch_all(
            "SELECT * FROM orders WHERE status = ? AND expires_at IS NOT NULL AND expires_at < ? "
            "AND final_seller_id IS NULL ORDER BY expires_at ASC LIMIT ?",
            (OrderStatus.OPEN_FOR_BIDS.value, now, limit),
        )
        return [_order_from_row(r) for r in rows]

    def unsettled_orders(self, limit: int) -> List[Order]:
        """Orders with a winner but no recorded debit."""
        rows = self.adapter.fetch_all(
            "SELECT * FROM orders WHERE status = ? AND debit_entry_id IS NULL "
            "ORDER BY updated_at ASC LIMIT ?",
            (OrderStatus.WINNER_SELECTED.value, limit),
        )
        return [_order_from_row(r) for r in rows]

    # =========================================================================
    # Offers
    # =========================================================================

    def get_offer(self, order_id: str, seller_id: str, conn: Conn = None) -> Optional[Offer]:
        row = self.adapter.fetch_one(
            "SELECT * FROM offers WHERE order_id = ? AND seller_id = ?", (order_id, seller_id), conn
        )
        return _offer_from_row(row) if row else None

    def insert_offer(self, conn: sqlite3.Connection, offer: Offer) -> None:
        conn.execute(
            "INSERT INTO offers "
            "(offer_id, order_id, seller_id, price_quote, delivery_eta, stock_confirmed, "
            " status, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (offer.offer_id, offer.order_id, offer.seller_id, offer.price_quote, offer.delivery_eta,
             int(offer.stock_confirmed), offer.status.value, offer.created_at, offer.updated_at),
        )

    def update_offer_terms(self, conn: sqlite3.Connection, offer: Offer) -> None:
        conn.execute(
            "UPDATE offers SET price_quote = ?, delivery_eta = ?, stock_confirmed = ?, updated_at = ? "
            "WHERE offer_id = ?",
            (offer.price_quote, offer.delivery_eta, int(offer.stock_confirmed),
             offer.updated_at, offer.offer_id),
        )

    def set_offer_status(self, conn: sqlite3.Connection, offer_id: str, status: OfferStatus, now: float) -> None:
        conn.execute(
            "UPDATE offers SET status = ?, updated_at = ? WHERE offer_id = ?",
            (status.value, now, offer_id),
        )

    def offers_for_order(
        self,
        order_id: str,
        status: Optional[OfferStatus] = None,
        conn: Conn = None,
    ) -> List[Offer]:
        sql = "SELECT * FROM offers WHERE order_id = ?"
        params: list = [order_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        sql += " ORDER BY created_at ASC, seller_id ASC"
        return [_offer_from_row(r) for r in self.adapter.fetch_all(sql, params, conn)]

    # =========================================================================
    # Audit
    # =========================================================================

    def insert_audit(self, conn: sqlite3.Connection, record: AuditRecord) -> None:
        conn.execute(
            "INSERT INTO audit_records (record_id, action, target_id, actor, metadata, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (record.record_id, record.action.value, record.target_id, record.actor,
             json.dumps(record.metadata, default=str), record.created_at),
        )

    def audit_for_target(self, target_id: str, conn: Conn = None) -> List[AuditRecord]:
        rows = self.adapter.fetch_all(
            "SELECT * FROM audit_records WHERE target_id = ? ORDER BY seq ASC", (target_id,), conn
        )
        return [_audit_from_row(r) for r in rows]


# =============================================================================
# Row Mapping
# =============================================================================


def _relationship_from_row(row) -> CreditRelationship:
    return CreditRelationship(
        buyer_id=row["buyer_id"],
        seller_id=row["seller_id"],
        credit_limit=row["credit_limit"],
        is_active=bool(row["is_active"]),
        blocked_reason=row["blocked_reason"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _entry_from_row(row) -> LedgerEntry:
    return LedgerEntry(
        entry_id=row["entry_id"],
        seq=row["seq"],
        buyer_id=row["buyer_id"],
        seller_id=row["seller_id"],
        kind=EntryKind(row["kind"]),
        amount=row["amount"],
        balance_after=row["balance_after"],
        created_by=row["created_by"],
        created_at=row["created_at"],
        order_ref=row["order_ref"],
        reverses_entry_id=row["reverses_entry_id"],
    )


def _seller_from_row(row) -> Seller:
    return Seller(
        seller_id=row["seller_id"],
        name=row["name"],
        contact=row["contact"],
        is_active=bool(row["is_active"]),
        deleted_at=row["deleted_at"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        reliability_score=row["reliability_score"],
        total_orders=row["total_orders"],
        completed_orders=row["completed_orders"],
        average_rating=row["average_rating"],
    )


def _order_from_row(row) -> Order:
    return Order(
        order_id=row["order_id"],
        buyer_id=row["buyer_id"],
        total_amount=row["total_amount"],
        status=OrderStatus(row["status"]),
        final_seller_id=row["final_seller_id"],
        expires_at=row["expires_at"],
        debit_entry_id=row["debit_entry_id"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _offer_from_row(row) -> Offer:
    return Offer(
        offer_id=row["offer_id"],
        order_id=row["order_id"],
        seller_id=row["seller_id"],
        price_quote=row["price_quote"],
        delivery_eta=row["delivery_eta"],
        stock_confirmed=bool(row["stock_confirmed"]),
        status=OfferStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _audit_from_row(row) -> AuditRecord:
    return AuditRecord(
        record_id=row["record_id"],
        action=AuditAction(row["action"]),
        target_id=row["target_id"],
        actor=row["actor"],
        metadata=json.loads(row["metadata"]),
        created_at=row["created_at"],
    )
