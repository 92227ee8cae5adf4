"""Credit ledger: append-only entries and the serialized credit guard"""
from bidledger.core.ledger.entries import (
    EntryKind,
    LedgerEntry,
    fold_balance,
    running_balances,
    signed_effect,
)
from bidledger.core.ledger.credit_guard import BalanceCheck, CreditGuard

__all__ = [
    "EntryKind",
    "LedgerEntry",
    "fold_balance",
    "running_balances",
    "signed_effect",
    "BalanceCheck",
    "CreditGuard",
]
