"""
bidledger

Transactional core of a buyer/seller marketplace:
- Append-only credit ledger with row-level serialization
- Timed competitive bidding with multi-criteria scoring
- Atomic winner resolution and settlement
- Timeout-driven auto-selection
"""

__version__ = "0.1.0"
