"""
Broadcast - Opens an order's bidding window and invites sellers.

The status change, expiry and audit record commit together under the order
lock. Invitations go out only after the commit, so a seller can never reply
to an order that is not yet open.
"""

import math
import sqlite3
import time
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional

from bidledger.core.audit import AuditTrail
from bidledger.core.config import MarketConfig
from bidledger.core.errors import ErrorKind, OperationResult, ValidationError
from bidledger.core.models import AuditAction, Order, OrderStatus, Seller
from bidledger.core.notify import LoggingNotifier, NotificationSender, deliver, invitation_text
from bidledger.core.transactions import run_locked
from bidledger.utils.logger import get_logger

if TYPE_CHECKING:
    from bidledger.core.storage import StorageManager

logger = get_logger("auction.broadcast")

EARTH_RADIUS_KM = 6371.0

# Statuses from which an order may (re)open its window
BROADCASTABLE = (OrderStatus.DRAFT, OrderStatus.OPEN_FOR_BIDS)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def filter_eligible(
    order: Order,
    sellers: Iterable[Seller],
    seller_ids: Optional[Iterable[str]] = None,
    radius_km: Optional[float] = None,
) -> List[Seller]:
    """
    Sellers that may be invited to bid on an order.

    Inactive and soft-deleted sellers are always excluded. When the order has
    a location, sellers farther than radius_km (or without a location) are
    excluded too.
    """
    wanted = set(seller_ids) if seller_ids is not None else None
    eligible = []
    for seller in sellers:
        if not seller.is_eligible:
            continue
        if wanted is not None and seller.seller_id not in wanted:
            continue
        if radius_km is not None and order.has_location:
            if not seller.has_location:
                continue
            distance = haversine_km(order.latitude, order.longitude, seller.latitude, seller.longitude)
            if distance > radius_km:
                continue
        eligible.append(seller)
    return eligible


class BidBroadcaster:
    """Moves orders to OPEN_FOR_BIDS and sends invitations."""

    def __init__(
        self,
        storage: "StorageManager",
        audit: AuditTrail,
        notifier: Optional[NotificationSender] = None,
        config: Optional[MarketConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.audit = audit
        self.notifier = notifier or LoggingNotifier()
        self.config = config or MarketConfig()
        self.clock = clock

    def broadcast(
        self,
        order_id: str,
        seller_ids: Optional[List[str]] = None,
        radius: Optional[float] = None,
        performed_by: str = "SYSTEM",
    ) -> OperationResult:
        """
        Open (or reopen) the bidding window for an order.

        Args:
            order_id: Order to broadcast
            seller_ids: Restrict invitations to these sellers
            radius: Search radius in km (default config.default_radius_km)
            performed_by: Actor recorded in the audit trail

        Returns:
            OperationResult with orderId, expiresAt, eligibleCount,
            sentCount and per-seller results
        """
        radius_km = self.config.default_radius_km if radius is None else radius

        def attempt(conn: sqlite3.Connection) -> OperationResult:
            order = self.storage.get_order(order_id, conn)
            if order is None:
                raise ValidationError(ErrorKind.ORDER_NOT_FOUND, f"Order {order_id} not found")
            if order.final_seller_id is not None or order.status not in BROADCASTABLE:
                raise ValidationError(
                    ErrorKind.ORDER_NOT_ELIGIBLE,
                    f"Order {order_id} cannot be broadcast in status {order.status.value}",
                    status=order.status.value,
                )

            sellers = filter_eligible(
                order, self.storage.list_active_sellers(conn), seller_ids, radius_km
            )

            now = self.clock()
            order.status = OrderStatus.OPEN_FOR_BIDS
            order.expires_at = now + self.config.bid_window_minutes * 60
            order.updated_at = now
            self.storage.update_order(conn, order)

            self.audit.record(
                AuditAction.BROADCAST,
                order_id,
                actor=performed_by,
                metadata={
                    "orderId": order_id,
                    "sellerIds": [s.seller_id for s in sellers],
                    "expiresAt": order.expires_at,
                    "radiusKm": radius_km if order.has_location else None,
                },
                conn=conn,
            )
            return OperationResult.ok(order=order, sellers=sellers)

        opened = run_locked(
            lambda: self.storage.lock_order(order_id, self.config.lock_timeout),
            attempt,
            logger,
            f"order {order_id}",
        )
        if not opened.success:
            logger.info(f"Broadcast refused for order {order_id}: {opened.detail}")
            return opened

        order, sellers = opened.data["order"], opened.data["sellers"]
        results = self._invite(order, sellers)
        sent = sum(1 for r in results if r["success"])

        if not sellers:
            logger.warning(f"Order {order_id} opened for bids but no eligible sellers were found")
        logger.info(f"Broadcast complete for order {order_id}: {sent}/{len(sellers)} invitations sent")

        return OperationResult.ok(
            orderId=order_id,
            expiresAt=order.expires_at,
            eligibleCount=len(sellers),
            sentCount=sent,
            results=results,
        )

    def _invite(self, order: Order, sellers: List[Seller]) -> List[dict]:
        text = invitation_text(order)
        return [deliver(self.notifier, s.seller_id, s.contact, text) for s in sellers]
