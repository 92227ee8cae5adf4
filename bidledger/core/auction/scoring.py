"""
Scoring - Multi-criteria offer scoring and ranking for bidledger.

Each offer is scored on five criteria, each normalized to [0, 100]:

    price          35%   quote relative to the order's reference amount
    deliveryTime   25%   parsed ETA, faster is better
    reliability    20%   seller reliability score and completion rate
    rating         10%   seller average rating
    stockConfirmed 10%   100 if stock confirmed, else 0

The total is the weighted sum rounded to two decimals. Ranking is by total
descending, ties broken by earliest offer submission, then seller id.

Price and delivery curves are piecewise linear. Each band is capped at the
value the previous band reached at its upper bound, so both curves are
non-increasing in their input.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from bidledger.core.models import Seller
from bidledger.utils.logger import get_logger

logger = get_logger("scoring")


# =============================================================================
# Constants
# =============================================================================

WEIGHTS: Dict[str, float] = {
    "price": 0.35,
    "deliveryTime": 0.25,
    "reliability": 0.20,
    "rating": 0.10,
    "stockConfirmed": 0.10,
}

MAX_SCORE = 100.0
MIN_SCORE = 0.0

# Neutral score when seller facts are unknown
NEUTRAL_SCORE = 50.0

# Hours assumed for an ETA that cannot be parsed
DEFAULT_ETA_HOURS = 24.0

# Reference amount assumed from the quote when the order carries none
DEFAULT_MARKUP = 1.2

Band = Tuple[float, Callable[[float], float]]

PRICE_BANDS: List[Band] = [
    (0.9, lambda r: 100.0),
    (1.0, lambda r: 75 + (0.9 - r) * 250),
    (1.1, lambda r: 50 + (1.0 - r) * 250),
    (1.2, lambda r: 25 + (1.1 - r) * 250),
]
PRICE_TAIL: Callable[[float], float] = lambda r: max(0.0, 25 - (r - 1.2) * 125)

DELIVERY_BANDS: List[Band] = [
    (2, lambda h: 100.0),
    (6, lambda h: 100 - (h - 2) * 2.5),
    (12, lambda h: 90 - (h - 6) * 3.33),
    (24, lambda h: 70 - (h - 12) * 1.67),
    (48, lambda h: 50 - (h - 24) * 0.83),
]
DELIVERY_TAIL: Callable[[float], float] = lambda h: max(0.0, 30 - (h - 48) * 0.5)

_ETA_TOKEN = re.compile(
    r"(\d+(?:\.\d+)?)\s*(minutes?|mins?|m|hours?|hrs?|h|days?|d)(?![a-z])",
    re.IGNORECASE,
)
_BARE_NUMBER = re.compile(r"(\d+(?:\.\d+)?)")
_UNIT_HOURS = {"m": 1 / 60, "h": 1.0, "d": 24.0}


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class OfferLike(Protocol):
    """Protocol for offer-like objects."""
    seller_id: str
    price_quote: float
    delivery_eta: str
    stock_confirmed: bool
    created_at: float


# =============================================================================
# Score Structures
# =============================================================================


@dataclass
class ComponentScore:
    """One criterion's normalized score and weight."""
    score: float
    weight: float

    @property
    def weighted_score(self) -> float:
        return self.score * self.weight

    def to_dict(self) -> Dict[str, float]:
        return {"score": self.score, "weight": self.weight, "weightedScore": self.weighted_score}


@dataclass
class OfferScore:
    """Composite score with per-criterion breakdown."""
    total: float
    breakdown: Dict[str, ComponentScore] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "totalScore": self.total,
            "breakdown": {name: c.to_dict() for name, c in self.breakdown.items()},
        }


@dataclass
class RankedOffer:
    """An offer with its score and 0-based rank (0 = winner)."""
    offer: OfferLike
    score: OfferScore
    rank: int


# =============================================================================
# Component Scores
# =============================================================================


def _clamp(value: float) -> float:
    return max(MIN_SCORE, min(MAX_SCORE, value))


def _monotone_piecewise(x: float, bands: Sequence[Band], tail: Callable[[float], float]) -> float:
    """
    Evaluate a piecewise curve, capping each band at the previous band's
    value at its upper bound.
    """
    ceiling = math.inf
    for upper, fn in bands:
        if x <= upper:
            return round(_clamp(min(fn(x), ceiling)), 6)
        ceiling = min(ceiling, fn(upper))
    return round(_clamp(min(tail(x), ceiling)), 6)


def score_price(price_quote: float, reference_amount: Optional[float] = None) -> float:
    """
    Score price component (0-100, lower price relative to reference is better).

    ratio <= 0.9 scores 100, 1.0 scores 50, 1.2 and above score 0.

    Args:
        price_quote: Quoted price
        reference_amount: Order amount to compare against
            (defaults to a 20% markup over the quote)
    """
    price = float(price_quote)
    reference = float(reference_amount) if reference_amount else price * DEFAULT_MARKUP
    if reference <= 0:
        return MIN_SCORE
    return _monotone_piecewise(price / reference, PRICE_BANDS, PRICE_TAIL)


def parse_eta(eta: Optional[str]) -> float:
    """
    Parse a free-form ETA into hours.

    Understands minute/hour/day tokens ("30 min", "2H", "3 hours", "1D",
    "1 day 4h" sums to 28) and bare numbers as hours. Anything else is
    DEFAULT_ETA_HOURS.
    """
    if not eta:
        return DEFAULT_ETA_HOURS

    text = str(eta).strip().lower()
    tokens = _ETA_TOKEN.findall(text)
    if tokens:
        return sum(float(value) * _UNIT_HOURS[unit[0]] for value, unit in tokens)

    bare = _BARE_NUMBER.search(text)
    if bare:
        return float(bare.group(1))
    return DEFAULT_ETA_HOURS


def score_delivery(delivery_eta: Optional[str]) -> float:
    """Score delivery time component (0-100, faster is better)."""
    return _monotone_piecewise(parse_eta(delivery_eta), DELIVERY_BANDS, DELIVERY_TAIL)


def score_reliability(seller: Optional[Seller]) -> float:
    """70% reliability score, 30% completion rate; neutral without history."""
    if seller is None:
        return NEUTRAL_SCORE

    reliability = seller.reliability_score if seller.reliability_score is not None else NEUTRAL_SCORE
    if seller.total_orders and seller.total_orders > 0:
        completion_rate = seller.completed_orders / seller.total_orders
    else:
        completion_rate = 0.5
    return _clamp(reliability * 0.7 + completion_rate * 100 * 0.3)


def score_rating(seller: Optional[Seller]) -> float:
    """Convert a 0-5 average rating to 0-100."""
    if seller is None:
        return NEUTRAL_SCORE
    return _clamp((seller.average_rating or 0.0) / 5 * 100)


def score_stock(stock_confirmed: bool) -> float:
    return MAX_SCORE if stock_confirmed else MIN_SCORE


# =============================================================================
# Offer Scoring
# =============================================================================


def score_offer(
    offer: OfferLike,
    reference_amount: Optional[float],
    seller: Optional[Seller] = None,
) -> OfferScore:
    """
    Compute the weighted composite score of an offer.

    Args:
        offer: The seller's offer
        reference_amount: Order total used for price normalization
        seller: Seller reputation facts (None = neutral)

    Returns:
        OfferScore with total in [0, 100] and per-criterion breakdown
    """
    raw = {
        "price": score_price(offer.price_quote, reference_amount),
        "deliveryTime": score_delivery(offer.delivery_eta),
        "reliability": score_reliability(seller),
        "rating": score_rating(seller),
        "stockConfirmed": score_stock(offer.stock_confirmed),
    }
    breakdown = {name: ComponentScore(score=value, weight=WEIGHTS[name]) for name, value in raw.items()}
    total = round(sum(c.weighted_score for c in breakdown.values()), 2)
    return OfferScore(total=total, breakdown=breakdown)


def rank_offers(
    offers: Sequence[OfferLike],
    reference_amount: Optional[float],
    sellers: Optional[Dict[str, Seller]] = None,
) -> List[RankedOffer]:
    """
    Rank offers from best to worst.

    Sort key: (total desc, created_at asc, seller_id asc).
    """
    sellers = sellers or {}
    scored = [(offer, score_offer(offer, reference_amount, sellers.get(offer.seller_id))) for offer in offers]
    scored.sort(key=lambda pair: (-pair[1].total, pair[0].created_at, pair[0].seller_id))

    ranked = [RankedOffer(offer=offer, score=score, rank=i) for i, (offer, score) in enumerate(scored)]
    if ranked:
        logger.debug(
            f"Ranked {len(ranked)} offers, best seller={ranked[0].offer.seller_id} "
            f"score={ranked[0].score.total}"
        )
    return ranked


def select_winner(
    offers: Sequence[OfferLike],
    reference_amount: Optional[float],
    sellers: Optional[Dict[str, Seller]] = None,
) -> Tuple[Optional[RankedOffer], List[RankedOffer]]:
    """
    Split ranked offers into (winner, losers).

    Returns (None, []) if no offers are given.
    """
    ranked = rank_offers(offers, reference_amount, sellers)
    if not ranked:
        return None, []
    return ranked[0], ranked[1:]
