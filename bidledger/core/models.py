"""
Domain records shared by the ledger and auction subsystems.

Rows are loaded from storage into these dataclasses. LedgerEntry and
AuditRecord are frozen because their rows are append-only; Order and Offer
are mutable aggregates whose transitions happen under the row locks held by
CreditGuard and WinnerResolver.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


# =============================================================================
# Enums
# =============================================================================


class OrderStatus(str, Enum):
    """Lifecycle of an order through bidding and settlement."""
    DRAFT = "DRAFT"                                     # Created, not yet broadcast
    OPEN_FOR_BIDS = "OPEN_FOR_BIDS"                     # Bidding window open
    WINNER_SELECTED = "WINNER_SELECTED"                 # Terminal for bidding
    BIDDING_EXPIRED_NO_OFFERS = "BIDDING_EXPIRED_NO_OFFERS"
    SETTLEMENT_FAILED = "SETTLEMENT_FAILED"             # Needs manual intervention


class OfferStatus(str, Enum):
    """Status of a seller's offer."""
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class AuditAction(str, Enum):
    """Mutating decisions recorded in the audit trail."""
    BROADCAST = "BROADCAST"
    OFFER_INGESTED = "OFFER_INGESTED"
    WINNER_SELECTED = "WINNER_SELECTED"
    LOSER_REJECTED = "LOSER_REJECTED"
    AUTO_SELECT_TIMEOUT = "AUTO_SELECT_TIMEOUT"
    DEBIT_SETTLED = "DEBIT_SETTLED"
    SETTLEMENT_FAILED = "SETTLEMENT_FAILED"


# =============================================================================
# Records
# =============================================================================


@dataclass
class CreditRelationship:
    """A buyer-seller pair's revolving credit line."""
    buyer_id: str
    seller_id: str
    credit_limit: float
    is_active: bool = True
    blocked_reason: Optional[str] = None
    created_at: float = 0.0
    updated_at: float = 0.0


@dataclass
class Seller:
    """
    A seller that can be invited to bid.

    Attributes:
        seller_id: Unique identifier
        name: Display name
        contact: Recipient handed to the notification sender
        is_active: Inactive sellers are never invited
        deleted_at: Soft-delete timestamp
        latitude / longitude: Optional location for radius filtering
        reliability_score: 0-100 reputation figure
        total_orders / completed_orders: Fulfilment history
        average_rating: 0-5 buyer rating
    """
    seller_id: str
    name: str = ""
    contact: str = ""
    is_active: bool = True
    deleted_at: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    reliability_score: float = 50.0
    total_orders: int = 0
    completed_orders: int = 0
    average_rating: float = 0.0

    @property
    def is_eligible(self) -> bool:
        return self.is_active and self.deleted_at is None

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass
class Order:
    """An order competing sellers bid on."""
    order_id: str
    buyer_id: str
    total_amount: float
    status: OrderStatus = OrderStatus.DRAFT
    final_seller_id: Optional[str] = None
    expires_at: Optional[float] = None
    debit_entry_id: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def is_window_expired(self, now: float) -> bool:
        return self.expires_at is not None and now > self.expires_at


@dataclass
class Offer:
    """A seller's proposal for an order, unique per (order, seller)."""
    offer_id: str
    order_id: str
    seller_id: str
    price_quote: float
    delivery_eta: str
    stock_confirmed: bool = False
    status: OfferStatus = OfferStatus.PENDING
    created_at: float = 0.0
    updated_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "offerId": self.offer_id,
            "orderId": self.order_id,
            "sellerId": self.seller_id,
            "priceQuote": self.price_quote,
            "deliveryEta": self.delivery_eta,
            "stockConfirmed": self.stock_confirmed,
            "status": self.status.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class AuditRecord:
    """One appended audit entry."""
    record_id: str
    action: AuditAction
    target_id: str
    actor: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0
