"""
Unit tests for offer scoring and ranking.
"""

import pytest

from bidledger.core.auction.scoring import (
    WEIGHTS,
    parse_eta,
    rank_offers,
    score_delivery,
    score_offer,
    score_price,
    score_rating,
    score_reliability,
    select_winner,
)
from bidledger.core.models import Offer, Seller


def make_offer(seller_id, price, eta, stock=False, created_at=100.0):
    return Offer(
        offer_id=f"offer-{seller_id}",
        order_id="order-1",
        seller_id=seller_id,
        price_quote=price,
        delivery_eta=eta,
        stock_confirmed=stock,
        created_at=created_at,
    )


# =============================================================================
# Component Tests
# =============================================================================


class TestPriceScore:
    """Tests for the price curve."""

    def test_discount_scores_full(self):
        """10% or more under the reference scores 100."""
        assert score_price(4500, 5000) == 100
        assert score_price(1000, 5000) == 100

    def test_band_values(self):
        """Linear bands between 0.9 and 1.2."""
        assert score_price(4750, 5000) == pytest.approx(62.5)
        assert score_price(5000, 5000) == pytest.approx(50)
        assert score_price(5200, 5000) == pytest.approx(40)
        assert score_price(5750, 5000) == pytest.approx(12.5)

    def test_twenty_percent_over_scores_zero(self):
        """At and beyond 1.2x the reference the score is 0."""
        assert score_price(6000, 5000) == pytest.approx(0)
        assert score_price(6100, 5000) == pytest.approx(0, abs=1e-9)
        assert score_price(50000, 5000) == 0

    def test_missing_reference_assumes_markup(self):
        """Without a reference the quote is compared to quote * 1.2."""
        # ratio 1/1.2 = 0.833 -> 100
        assert score_price(5000, None) == 100

    def test_non_increasing_in_ratio(self):
        """Higher price never scores better."""
        previous = None
        for step in range(0, 200):
            ratio = 0.5 + step * 0.01
            score = score_price(ratio * 1000, 1000)
            if previous is not None:
                assert score <= previous + 1e-9, f"score rose at ratio {ratio}"
            previous = score


class TestDeliveryScore:
    """Tests for ETA parsing and the delivery curve."""

    @pytest.mark.parametrize("eta,hours", [
        ("2H", 2),
        ("1D", 24),
        ("3 hours", 3),
        ("2 hrs", 2),
        ("30 min", 0.5),
        ("45 minutes", 0.75),
        ("1 day 4h", 28),
        ("6", 6),
        ("tomorrow", 24),
        ("", 24),
        (None, 24),
    ])
    def test_parse_eta(self, eta, hours):
        """Free-form ETAs resolve to hours."""
        assert parse_eta(eta) == pytest.approx(hours)

    def test_band_values(self):
        """Spot values across bands."""
        assert score_delivery("2H") == 100
        assert score_delivery("6H") == pytest.approx(90)
        assert score_delivery("12H") == pytest.approx(70.02)
        assert score_delivery("1D") == pytest.approx(49.96)
        assert score_delivery("48H") == pytest.approx(30.08)
        assert score_delivery("200H") == 0

    def test_non_increasing_in_hours(self):
        """Slower delivery never scores better."""
        previous = None
        for step in range(0, 400):
            hours = step * 0.25
            score = score_delivery(f"{hours} hours")
            if previous is not None:
                assert score <= previous + 1e-9, f"score rose at {hours}h"
            previous = score


class TestSellerScores:
    """Tests for reliability and rating."""

    def test_absent_seller_is_neutral(self):
        """Unknown seller scores 50 on both criteria."""
        assert score_reliability(None) == 50
        assert score_rating(None) == 50

    def test_reliability_blend(self):
        """70% reliability score plus 30% completion rate."""
        seller = Seller("s", reliability_score=80, total_orders=100, completed_orders=90)
        assert score_reliability(seller) == pytest.approx(83)

    def test_no_history_uses_half_completion(self):
        """Zero total orders counts as a 0.5 completion rate."""
        seller = Seller("s", reliability_score=60, total_orders=0)
        assert score_reliability(seller) == pytest.approx(42 + 15)

    def test_rating_scale(self):
        """0-5 rating maps to 0-100."""
        assert score_rating(Seller("s", average_rating=4.5)) == pytest.approx(90)
        assert score_rating(Seller("s", average_rating=0)) == 0


# =============================================================================
# Composite Tests
# =============================================================================


class TestScoreOffer:
    """Tests for the weighted composite."""

    def test_weights_sum_to_one(self):
        """Weights form a convex combination."""
        assert sum(WEIGHTS.values()) == pytest.approx(1.0)

    def test_breakdown_shape(self):
        """Serialized breakdown carries score, weight and weighted score."""
        score = score_offer(make_offer("a", 4500, "2H", stock=True), 5000)
        data = score.to_dict()

        assert set(data["breakdown"]) == {"price", "deliveryTime", "reliability", "rating", "stockConfirmed"}
        price = data["breakdown"]["price"]
        assert price["score"] == 100
        assert price["weight"] == 0.35
        assert price["weightedScore"] == pytest.approx(35)
        assert data["totalScore"] == score.total

    def test_total_rounded_to_cents(self):
        """Total has at most two decimals."""
        score = score_offer(make_offer("a", 5123, "7 hours"), 5000, Seller("a", reliability_score=77))
        assert score.total == round(score.total, 2)
        assert 0 <= score.total <= 100

    def test_reference_scenario(self):
        """Cheaper, faster offer with stock beats a better-rated one."""
        sellers = {
            "A": Seller("A", reliability_score=80, total_orders=100, completed_orders=90, average_rating=4.5),
            "B": Seller("B", reliability_score=90, total_orders=100, completed_orders=95, average_rating=4.8),
        }
        a = make_offer("A", 4500, "2H", stock=True)
        b = make_offer("B", 5200, "1D", stock=False)

        score_a = score_offer(a, 5000, sellers["A"])
        score_b = score_offer(b, 5000, sellers["B"])
        assert score_a.total == pytest.approx(95.6)
        assert score_b.total == pytest.approx(54.39)

        winner, losers = select_winner([b, a], 5000, sellers)
        assert winner.offer.seller_id == "A"
        assert [r.offer.seller_id for r in losers] == ["B"]


class TestRanking:
    """Tests for ordering and tie-breaks."""

    def test_sorted_by_score(self):
        """Best score first, ranks are 0-based."""
        offers = [
            make_offer("slow", 5000, "3D"),
            make_offer("fast", 5000, "1H", stock=True),
            make_offer("mid", 5000, "8H"),
        ]
        ranked = rank_offers(offers, 5000)
        assert [r.offer.seller_id for r in ranked] == ["fast", "mid", "slow"]
        assert [r.rank for r in ranked] == [0, 1, 2]

    def test_tie_broken_by_first_submission(self):
        """Equal scores: earliest created_at wins."""
        late = make_offer("aaa", 4800, "4H", created_at=200.0)
        early = make_offer("zzz", 4800, "4H", created_at=100.0)
        ranked = rank_offers([late, early], 5000)
        assert ranked[0].offer.seller_id == "zzz"

    def test_tie_broken_by_seller_id(self):
        """Equal scores and times: lowest seller id wins."""
        ranked = rank_offers([make_offer("b", 4800, "4H"), make_offer("a", 4800, "4H")], 5000)
        assert [r.offer.seller_id for r in ranked] == ["a", "b"]

    def test_no_offers(self):
        """Empty input has no winner."""
        assert select_winner([], 5000) == (None, [])
