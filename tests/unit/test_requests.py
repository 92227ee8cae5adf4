"""
Unit tests for request validation and notification delivery.
"""

import pytest

from bidledger.core.errors import ErrorKind, ValidationError
from bidledger.core.models import Offer, Order
from bidledger.core.notify import (
    LoggingNotifier,
    NotificationSender,
    deliver,
    invitation_text,
    loser_text,
    winner_text,
)
from bidledger.core.requests import BroadcastRequest, OfferSubmission, parse_request


class TestRequests:
    """Tests for pydantic request models."""

    def test_camel_and_snake_case(self):
        a = parse_request(OfferSubmission, {"orderId": "o", "sellerId": "s", "priceQuote": 10, "deliveryEta": "2H"})
        b = parse_request(OfferSubmission, {"order_id": "o", "seller_id": "s", "price_quote": 10, "delivery_eta": "2H"})
        assert a == b
        assert a.stock_confirmed is False

    def test_missing_terms_reported(self):
        """Absent or blank price/ETA are listed, not rejected."""
        offer = parse_request(OfferSubmission, {"orderId": "o", "sellerId": "s", "deliveryEta": "   "})
        assert offer.missing_fields() == ["price_quote", "delivery_eta"]

    def test_invalid_input(self):
        with pytest.raises(ValidationError) as exc:
            parse_request(OfferSubmission, {"orderId": "o", "sellerId": "", "priceQuote": -3})
        assert exc.value.kind is ErrorKind.INVALID_INPUT
        fields = {e["field"] for e in exc.value.data["errors"]}
        assert fields == {"sellerId", "priceQuote"}

    def test_broadcast_radius_positive(self):
        assert parse_request(BroadcastRequest, {"orderId": "o", "radius": 5}).radius == 5
        with pytest.raises(ValidationError):
            parse_request(BroadcastRequest, {"orderId": "o", "radius": 0})

    def test_broadcast_seller_ids(self):
        request = parse_request(BroadcastRequest, {"order_id": "o", "sellerIds": ["a", "b"]})
        assert request.seller_ids == ["a", "b"]


class TestNotify:
    """Tests for fire-and-forget delivery."""

    class Broken:
        def send(self, recipient, text):
            raise ConnectionError("gateway unreachable")

    def test_default_sender_is_a_sender(self):
        assert isinstance(LoggingNotifier(), NotificationSender)

    def test_delivered(self, notifier):
        assert deliver(notifier, "s1", "+100", "hi") == {"sellerId": "s1", "success": True}
        assert notifier.sent == [("+100", "hi")]

    def test_failure_reported(self):
        result = deliver(self.Broken(), "s1", "+100", "hi")
        assert result == {"sellerId": "s1", "success": False, "error": "gateway unreachable"}

    def test_no_contact(self, notifier):
        assert deliver(notifier, "s1", "", "hi")["error"] == "No contact"
        assert notifier.sent == []

    def test_templates(self):
        order = Order("o-9", "b", 100)
        offer = Offer("f", "o-9", "s", 95.0, "3H")
        assert invitation_text(order).startswith("New Order #o-9")
        assert "PRICE <amount> ETA <time>" in invitation_text(order)
        assert "95.0" in winner_text(order, offer)
        assert "3H" in winner_text(order, offer)
        assert "assigned to another seller" in loser_text(order)
