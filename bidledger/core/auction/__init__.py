"""
Competitive bidding: scoring, broadcast, offer intake, winner resolution
and timeout-driven auto-selection.
"""

from bidledger.core.auction.scoring import (
    WEIGHTS,
    ComponentScore,
    OfferScore,
    RankedOffer,
    parse_eta,
    rank_offers,
    score_delivery,
    score_offer,
    score_price,
    score_rating,
    score_reliability,
    score_stock,
    select_winner,
)
from bidledger.core.auction.broadcast import BidBroadcaster, filter_eligible, haversine_km
from bidledger.core.auction.offers import OfferIntake
from bidledger.core.auction.resolver import WinnerResolver
from bidledger.core.auction.sweeper import SweepReport, TimeoutSweeper

__all__ = [
    "WEIGHTS",
    "ComponentScore",
    "OfferScore",
    "RankedOffer",
    "parse_eta",
    "rank_offers",
    "score_delivery",
    "score_offer",
    "score_price",
    "score_rating",
    "score_reliability",
    "score_stock",
    "select_winner",
    "BidBroadcaster",
    "filter_eligible",
    "haversine_km",
    "OfferIntake",
    "WinnerResolver",
    "SweepReport",
    "TimeoutSweeper",
]
