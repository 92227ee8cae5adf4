"""
Ledger Entries - Append-only balance accounting.

Conceptual Background:
---------------------
A credit relationship's balance is never stored as a mutable figure. It is
derived by folding every entry for the (buyer, seller) pair in creation
order:

    DEBIT, ADJUSTMENT   -> balance += amount
    CREDIT, REVERSAL    -> balance -= amount

Each entry also records the balance_after observed by its writer. Because
the writer holds the pair's lock, fold(entries[:k]) must equal
entries[k-1].balance_after for every prefix; reconciliation checks exactly
that and reports any drift.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional


class EntryKind(str, Enum):
    """Kinds of balance-affecting entries."""
    DEBIT = "DEBIT"              # Buyer draws on credit (order settled)
    CREDIT = "CREDIT"            # Buyer repays
    ADJUSTMENT = "ADJUSTMENT"    # Signed manual correction
    REVERSAL = "REVERSAL"        # Undo of a prior debit


@dataclass(frozen=True)
class LedgerEntry:
    """
    Immutable signed movement against a relationship's balance.

    Attributes:
        entry_id: Unique identifier
        seq: Insertion sequence, breaks created_at ties
        buyer_id / seller_id: The credit pair
        kind: Entry kind
        amount: Movement amount (sign applied by kind, ADJUSTMENT may be negative)
        balance_after: Balance observed by the writer after this entry
        created_by: Actor that wrote the entry
        created_at: Creation timestamp
        order_ref: Advisory order reference
        reverses_entry_id: For REVERSAL entries, the debit being undone
    """
    entry_id: str
    seq: int
    buyer_id: str
    seller_id: str
    kind: EntryKind
    amount: float
    balance_after: float
    created_by: str
    created_at: float
    order_ref: Optional[str] = None
    reverses_entry_id: Optional[str] = None

    @property
    def signed_amount(self) -> float:
        return signed_effect(self.kind, self.amount)

    def to_dict(self) -> dict:
        return {
            "entryId": self.entry_id,
            "buyerId": self.buyer_id,
            "sellerId": self.seller_id,
            "orderRef": self.order_ref,
            "kind": self.kind.value,
            "amount": self.amount,
            "balanceAfter": self.balance_after,
            "createdBy": self.created_by,
            "createdAt": self.created_at,
            "reversesEntryId": self.reverses_entry_id,
        }


def signed_effect(kind: EntryKind, amount: float) -> float:
    """Contribution of one entry to the folded balance."""
    if kind in (EntryKind.DEBIT, EntryKind.ADJUSTMENT):
        return amount
    return -amount


def fold_balance(entries: Iterable[LedgerEntry]) -> float:
    """
    Derive the current balance from entries in creation order.

    Pure reduction, independent of storage.
    """
    balance = 0.0
    for entry in entries:
        balance += signed_effect(entry.kind, entry.amount)
    return balance


def running_balances(entries: Iterable[LedgerEntry]) -> List[float]:
    """Folded balance after each entry (prefix sums)."""
    out = []
    balance = 0.0
    for entry in entries:
        balance += signed_effect(entry.kind, entry.amount)
        out.append(balance)
    return out
