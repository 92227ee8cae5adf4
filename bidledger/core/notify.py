"""
Notifications - Outbound seller messaging.

Delivery itself belongs to an external channel; the core only formats the
text and hands it to a NotificationSender. Sends are fire-and-forget: a
failure is logged and reported in the result, never retried, and never
affects a committed decision.
"""

from typing import Any, Dict, Protocol, runtime_checkable

from bidledger.core.models import Offer, Order
from bidledger.utils.logger import get_logger

logger = get_logger("notify")


@runtime_checkable
class NotificationSender(Protocol):
    """Channel that delivers a text message to a recipient."""

    def send(self, recipient: str, text: str) -> None:
        ...


class LoggingNotifier:
    """Default sender: writes each message to the log."""

    def send(self, recipient: str, text: str) -> None:
        logger.info(f"Notify {recipient}: {text!r}")


def deliver(sender: NotificationSender, seller_id: str, recipient: str, text: str) -> Dict[str, Any]:
    """
    Send one message, converting any failure into a result entry.

    Returns:
        {"sellerId", "success"} plus "error" on failure
    """
    if not recipient:
        logger.warning(f"Seller {seller_id} has no contact, message skipped")
        return {"sellerId": seller_id, "success": False, "error": "No contact"}
    try:
        sender.send(recipient, text)
    except Exception as e:
        logger.warning(f"Failed to notify seller {seller_id}: {e}")
        return {"sellerId": seller_id, "success": False, "error": str(e)}
    return {"sellerId": seller_id, "success": True}


# =============================================================================
# Message Templates
# =============================================================================


def invitation_text(order: Order) -> str:
    return (
        f"New Order #{order.order_id}\n"
        f"Reply: PRICE <amount> ETA <time>\n"
        f"Example: PRICE 2450 ETA 2H"
    )


def winner_text(order: Order, offer: Offer) -> str:
    return (
        f"Congratulations! You won Order #{order.order_id}\n"
        f"Your quoted price: {offer.price_quote}\n"
        f"Your ETA: {offer.delivery_eta}"
    )


def loser_text(order: Order) -> str:
    return f"Order #{order.order_id} has been assigned to another seller. Thank you for your bid."
