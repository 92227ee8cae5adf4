"""
Credit Guard - Serialized credit validation over the append-only ledger.

Problem:
    Two orders for the same buyer-seller pair arrive together. Both read a
    balance of 50,000 against a 100,000 limit, both see room for 40,000,
    both write a debit: the pair ends up past its limit.

Solution:
    Every balance-affecting write runs inside a unit of work holding the
    pair's row lock. The holder re-folds the whole ledger, checks the limit
    and appends its entry before releasing, so the next holder always folds
    a ledger that already contains the previous write.

Lock timeouts and deadlocks are transient and retried with exponential
backoff; every other failure is a definitive answer and returned at once.
"""

import sqlite3
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from bidledger.core.config import MarketConfig
from bidledger.core.errors import ErrorKind, OperationResult, ValidationError
from bidledger.core.ledger.entries import EntryKind, LedgerEntry, running_balances
from bidledger.core.models import CreditRelationship
from bidledger.core.retry import run_with_retries
from bidledger.core.transactions import run_locked
from bidledger.utils.logger import get_logger

if TYPE_CHECKING:
    from bidledger.core.storage import StorageManager

logger = get_logger("ledger.credit_guard")


def _money(value: float) -> float:
    return round(float(value), 2)


# =============================================================================
# Reconciliation Result
# =============================================================================


@dataclass
class BalanceCheck:
    """
    Outcome of reconciling one credit pair.

    Attributes:
        calculated_balance: Independent fold of every entry
        stored_balance: balance_after of the latest entry (0 if none)
        discrepancy: |calculated - stored|
        first_drift_entry_id: Earliest entry whose balance_after disagrees
            with the fold of its prefix, if any
    """
    buyer_id: str
    seller_id: str
    calculated_balance: float
    stored_balance: float
    discrepancy: float
    entry_count: int
    is_reconciled: bool
    first_drift_entry_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "buyerId": self.buyer_id,
            "sellerId": self.seller_id,
            "calculatedBalance": self.calculated_balance,
            "storedBalance": self.stored_balance,
            "discrepancy": self.discrepancy,
            "entryCount": self.entry_count,
            "isReconciled": self.is_reconciled,
            "firstDriftEntryId": self.first_drift_entry_id,
        }


# =============================================================================
# Credit Guard
# =============================================================================


class CreditGuard:
    """
    Validates and writes ledger entries under the credit pair's row lock.

    Every public method returns an OperationResult.
    """

    def __init__(
        self,
        storage: "StorageManager",
        config: Optional[MarketConfig] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.storage = storage
        self.config = config or MarketConfig()
        self.clock = clock
        self.sleep = sleep

    # =========================================================================
    # Relationship Administration
    # =========================================================================

    def establish_relationship(
        self,
        buyer_id: str,
        seller_id: str,
        credit_limit: float,
    ) -> OperationResult:
        """Create the revolving credit line for a pair."""
        if credit_limit is None or credit_limit < 0:
            return OperationResult.fail(ErrorKind.INVALID_AMOUNT, f"Invalid credit limit: {credit_limit}")

        def attempt(conn: sqlite3.Connection) -> OperationResult:
            if self.storage.get_relationship(buyer_id, seller_id, conn) is not None:
                raise ValidationError(
                    ErrorKind.RELATIONSHIP_EXISTS,
                    f"Credit relationship {buyer_id}/{seller_id} already exists",
                )
            now = self.clock()
            rel = CreditRelationship(
                buyer_id=buyer_id,
                seller_id=seller_id,
                credit_limit=_money(credit_limit),
                created_at=now,
                updated_at=now,
            )
            self.storage.insert_relationship(conn, rel)
            logger.info(f"Credit relationship established: {buyer_id}/{seller_id} limit={rel.credit_limit}")
            return OperationResult.ok(buyerId=buyer_id, sellerId=seller_id, creditLimit=rel.credit_limit)

        return self._locked(buyer_id, seller_id, attempt, self.config.lock_timeout)

    def block_relationship(self, buyer_id: str, seller_id: str, reason: str) -> OperationResult:
        """Deactivate a credit line; debits fail ACCOUNT_BLOCKED until reactivated."""
        return self._set_active(buyer_id, seller_id, False, reason or "No reason provided")

    def activate_relationship(self, buyer_id: str, seller_id: str) -> OperationResult:
        return self._set_active(buyer_id, seller_id, True, None)

    def _set_active(
        self,
        buyer_id: str,
        seller_id: str,
        is_active: bool,
        reason: Optional[str],
    ) -> OperationResult:
        def attempt(conn: sqlite3.Connection) -> OperationResult:
            self._require_relationship(conn, buyer_id, seller_id)
            self.storage.set_relationship_status(conn, buyer_id, seller_id, is_active, reason, self.clock())
            logger.info(
                f"Credit relationship {buyer_id}/{seller_id} "
                f"{'activated' if is_active else 'blocked: ' + reason}"
            )
            return OperationResult.ok(buyerId=buyer_id, sellerId=seller_id, isActive=is_active,
                                      blockedReason=reason)

        return self._locked(buyer_id, seller_id, attempt, self.config.lock_timeout)

    # =========================================================================
    # Debit
    # =========================================================================

    def validate_and_debit(
        self,
        buyer_id: str,
        seller_id: str,
        order_ref: Optional[str],
        amount: float,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        created_by: str = "SYSTEM",
    ) -> OperationResult:
        """
        Atomically check available credit and write a DEBIT.

        No deduplication: two calls are two debits, whatever order_ref says.

        Args:
            buyer_id / seller_id: Credit pair
            order_ref: Advisory order reference stored on the entry
            amount: Positive amount to draw
            timeout: Row lock wait per attempt (default config.lock_timeout)
            max_retries: Attempts for transient contention (default config.max_retries)
            created_by: Actor recorded on the entry

        Returns:
            OperationResult with entryId/newBalance/creditLimit/availableCredit
        """
        if amount is None or amount <= 0:
            return OperationResult.fail(ErrorKind.INVALID_AMOUNT, f"Debit amount must be positive, got {amount}")

        amount = _money(amount)
        wait = self.config.lock_timeout if timeout is None else timeout

        def attempt(conn: sqlite3.Connection) -> OperationResult:
            rel = self._require_relationship(conn, buyer_id, seller_id)
            if not rel.is_active:
                raise ValidationError(
                    ErrorKind.ACCOUNT_BLOCKED,
                    f"Credit account blocked: {rel.blocked_reason or 'No reason provided'}",
                )

            balance = self._fold(conn, buyer_id, seller_id)
            projected = _money(balance + amount)
            if projected > rel.credit_limit:
                raise ValidationError(
                    ErrorKind.INSUFFICIENT_CREDIT,
                    f"Insufficient credit. Current: {balance}, Limit: {rel.credit_limit}, Order: {amount}",
                    currentBalance=balance,
                    creditLimit=rel.credit_limit,
                    orderAmount=amount,
                    availableCredit=_money(rel.credit_limit - balance),
                    projectedBalance=projected,
                    shortfall=_money(projected - rel.credit_limit),
                )

            entry = self.storage.append_entry(
                conn,
                entry_id=uuid.uuid4().hex,
                buyer_id=buyer_id,
                seller_id=seller_id,
                kind=EntryKind.DEBIT,
                amount=amount,
                balance_after=projected,
                created_by=created_by,
                created_at=self.clock(),
                order_ref=order_ref,
            )
            return OperationResult.ok(
                entryId=entry.entry_id,
                orderRef=order_ref,
                newBalance=projected,
                creditLimit=rel.credit_limit,
                availableCredit=_money(rel.credit_limit - projected),
            )

        result = self._retrying(
            "Credit debit",
            lambda: self._locked(buyer_id, seller_id, attempt, wait),
            max_retries,
        )
        if result.success:
            logger.info(
                f"Credit debited: {buyer_id}/{seller_id} order={order_ref} amount={amount} "
                f"balance={result.data['newBalance']} entry={result.data['entryId']}"
            )
        else:
            logger.info(f"Credit debit refused for {buyer_id}/{seller_id} order={order_ref}: {result.detail}")
        return result

    # =========================================================================
    # Release
    # =========================================================================

    def release_credit_lock(
        self,
        entry_id: str,
        reason: str = "Order cancelled",
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        created_by: str = "SYSTEM",
    ) -> OperationResult:
        """
        Reverse a DEBIT, freeing its amount.

        The balance is re-folded under the lock; the original entry's
        balance_after is stale as soon as anything else was written after it.
        A second release of the same entry fails NOT_FOUND.
        """
        original = self.storage.get_entry(entry_id)
        if original is None:
            return OperationResult.fail(ErrorKind.NOT_FOUND, f"Ledger entry {entry_id} not found")
        if original.kind is not EntryKind.DEBIT:
            return OperationResult.fail(
                ErrorKind.NOT_REVERSIBLE,
                f"Only DEBIT entries can be released, {entry_id} is {original.kind.value}",
            )

        wait = self.config.lock_timeout if timeout is None else timeout
        buyer_id, seller_id = original.buyer_id, original.seller_id

        def attempt(conn: sqlite3.Connection) -> OperationResult:
            if self.storage.find_reversal(entry_id, conn) is not None:
                raise ValidationError(ErrorKind.NOT_FOUND, f"Ledger entry {entry_id} was already reversed")

            balance = self._fold(conn, buyer_id, seller_id)
            new_balance = _money(balance - original.amount)
            reversal = self.storage.append_entry(
                conn,
                entry_id=uuid.uuid4().hex,
                buyer_id=buyer_id,
                seller_id=seller_id,
                kind=EntryKind.REVERSAL,
                amount=original.amount,
                balance_after=new_balance,
                created_by=created_by,
                created_at=self.clock(),
                order_ref=original.order_ref,
                reverses_entry_id=entry_id,
            )
            return OperationResult.ok(
                reversalEntryId=reversal.entry_id,
                originalEntryId=entry_id,
                amountReleased=original.amount,
                newBalance=new_balance,
                reason=reason,
            )

        result = self._retrying(
            "Credit release",
            lambda: self._locked(buyer_id, seller_id, attempt, wait),
            max_retries,
        )
        if result.success:
            logger.info(
                f"Credit released: entry={entry_id} reversal={result.data['reversalEntryId']} "
                f"amount={original.amount} reason={reason}"
            )
        return result

    # =========================================================================
    # Payments & Adjustments
    # =========================================================================

    def record_payment(
        self,
        buyer_id: str,
        seller_id: str,
        amount: float,
        created_by: str = "SYSTEM",
        order_ref: Optional[str] = None,
    ) -> OperationResult:
        """Buyer repays: CREDIT entry. Allowed on blocked accounts."""
        if amount is None or amount <= 0:
            return OperationResult.fail(ErrorKind.INVALID_AMOUNT, f"Payment must be positive, got {amount}")
        return self._append_simple(buyer_id, seller_id, EntryKind.CREDIT, _money(amount), created_by, order_ref)

    def record_adjustment(
        self,
        buyer_id: str,
        seller_id: str,
        amount: float,
        created_by: str = "ADMIN",
        order_ref: Optional[str] = None,
    ) -> OperationResult:
        """Signed manual correction; a positive one must respect the limit."""
        if not amount:
            return OperationResult.fail(ErrorKind.INVALID_AMOUNT, "Adjustment must be non-zero")
        return self._append_simple(buyer_id, seller_id, EntryKind.ADJUSTMENT, _money(amount), created_by, order_ref)

    def _append_simple(
        self,
        buyer_id: str,
        seller_id: str,
        kind: EntryKind,
        amount: float,
        created_by: str,
        order_ref: Optional[str],
    ) -> OperationResult:
        def attempt(conn: sqlite3.Connection) -> OperationResult:
            rel = self._require_relationship(conn, buyer_id, seller_id)
            balance = self._fold(conn, buyer_id, seller_id)
            new_balance = _money(balance + (amount if kind is EntryKind.ADJUSTMENT else -amount))
            if kind is EntryKind.ADJUSTMENT and amount > 0 and new_balance > rel.credit_limit:
                raise ValidationError(
                    ErrorKind.INSUFFICIENT_CREDIT,
                    f"Adjustment would exceed limit: {new_balance} > {rel.credit_limit}",
                    shortfall=_money(new_balance - rel.credit_limit),
                )
            entry = self.storage.append_entry(
                conn,
                entry_id=uuid.uuid4().hex,
                buyer_id=buyer_id,
                seller_id=seller_id,
                kind=kind,
                amount=amount,
                balance_after=new_balance,
                created_by=created_by,
                created_at=self.clock(),
                order_ref=order_ref,
            )
            logger.info(f"Ledger {kind.value}: {buyer_id}/{seller_id} amount={amount} balance={new_balance}")
            return OperationResult.ok(entryId=entry.entry_id, newBalance=new_balance)

        return self._retrying(
            f"Ledger {kind.value.lower()}",
            lambda: self._locked(buyer_id, seller_id, attempt, self.config.lock_timeout),
            None,
        )

    # =========================================================================
    # Reads & Reconciliation
    # =========================================================================

    def get_balance(self, buyer_id: str, seller_id: str) -> float:
        """Unlocked balance read; may be stale by the time it is used."""
        return self._fold(None, buyer_id, seller_id)

    def available_credit(self, buyer_id: str, seller_id: str) -> Optional[float]:
        rel = self.storage.get_relationship(buyer_id, seller_id)
        if rel is None:
            return None
        return _money(rel.credit_limit - self.get_balance(buyer_id, seller_id))

    def ledger(self, buyer_id: str, seller_id: str) -> List[LedgerEntry]:
        return self.storage.entries_for_pair(buyer_id, seller_id)

    def verify_balance(self, buyer_id: str, seller_id: Optional[str] = None) -> OperationResult:
        """
        Independently fold each pair and compare with the stored balance.

        Drift is reported as BALANCE_DRIFT and never corrected.
        """
        if seller_id is not None:
            if self.storage.get_relationship(buyer_id, seller_id) is None:
                return OperationResult.fail(
                    ErrorKind.NO_CREDIT_ACCOUNT, f"No credit relationship {buyer_id}/{seller_id}"
                )
            pairs = [(buyer_id, seller_id)]
        else:
            pairs = [(r.buyer_id, r.seller_id) for r in self.storage.list_relationships(buyer_id=buyer_id)]

        checks = [self._check_pair(b, s) for b, s in pairs]
        return self._reconciliation_result(checks)

    def reconcile_all(self) -> OperationResult:
        """verify_balance over every active relationship."""
        pairs = [(r.buyer_id, r.seller_id) for r in self.storage.list_relationships(active_only=True)]
        checks = [self._check_pair(b, s) for b, s in pairs]
        result = self._reconciliation_result(checks)
        logger.info(
            f"Reconciliation: {result.data['reconciled']}/{result.data['totalAccounts']} accounts reconciled"
        )
        return result

    def _check_pair(self, buyer_id: str, seller_id: str) -> BalanceCheck:
        entries = self.storage.entries_for_pair(buyer_id, seller_id)
        epsilon = self.config.drift_epsilon

        balances = running_balances(entries)
        first_drift = None
        for entry, folded in zip(entries, balances):
            if abs(folded - entry.balance_after) > epsilon:
                first_drift = entry.entry_id
                break

        calculated = _money(balances[-1]) if balances else 0.0
        stored = entries[-1].balance_after if entries else 0.0
        discrepancy = _money(abs(calculated - stored))
        check = BalanceCheck(
            buyer_id=buyer_id,
            seller_id=seller_id,
            calculated_balance=calculated,
            stored_balance=stored,
            discrepancy=discrepancy,
            entry_count=len(entries),
            is_reconciled=discrepancy <= epsilon and first_drift is None,
            first_drift_entry_id=first_drift,
        )
        if not check.is_reconciled:
            logger.error(
                f"Balance drift for {buyer_id}/{seller_id}: calculated={calculated} "
                f"stored={stored} first_drift={first_drift}"
            )
        return check

    @staticmethod
    def _reconciliation_result(checks: List[BalanceCheck]) -> OperationResult:
        unreconciled = [c for c in checks if not c.is_reconciled]
        data = {
            "totalAccounts": len(checks),
            "reconciled": len(checks) - len(unreconciled),
            "unreconciled": len(unreconciled),
            "checks": [c.to_dict() for c in checks],
        }
        if unreconciled:
            return OperationResult.fail(
                ErrorKind.BALANCE_DRIFT,
                f"{len(unreconciled)} credit account(s) drifted from their ledger",
                **data,
            )
        return OperationResult.ok(**data)

    # =========================================================================
    # Internals
    # =========================================================================

    def _fold(self, conn: Optional[sqlite3.Connection], buyer_id: str, seller_id: str) -> float:
        entries = self.storage.entries_for_pair(buyer_id, seller_id, conn)
        balances = running_balances(entries)
        return _money(balances[-1]) if balances else 0.0

    def _require_relationship(self, conn: sqlite3.Connection, buyer_id: str, seller_id: str) -> CreditRelationship:
        rel = self.storage.get_relationship(buyer_id, seller_id, conn)
        if rel is None:
            raise ValidationError(
                ErrorKind.NO_CREDIT_ACCOUNT,
                f"No credit relationship exists between {buyer_id} and {seller_id}",
            )
        return rel

    def _locked(
        self,
        buyer_id: str,
        seller_id: str,
        body: Callable[[sqlite3.Connection], OperationResult],
        timeout: float,
    ) -> OperationResult:
        """One attempt of body under the pair's lock, as a result."""
        return run_locked(
            lambda: self.storage.lock_credit(buyer_id, seller_id, timeout),
            body,
            logger,
            f"{buyer_id}/{seller_id}",
        )

    def _retrying(
        self,
        label: str,
        operation: Callable[[], OperationResult],
        max_retries: Optional[int],
    ) -> OperationResult:
        return run_with_retries(
            operation,
            max_retries=self.config.max_retries if max_retries is None else max_retries,
            backoff_base=self.config.backoff_base,
            logger=logger,
            label=label,
            sleep=self.sleep,
        )
