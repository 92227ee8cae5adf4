"""
Offer Intake - Admits seller offers while an order's window is open.

An offer is unique per (order, seller). Re-submitting while the window is
open overwrites the terms but keeps the first submission time, which is
what ranking uses to break ties. An ACCEPTED offer is never overwritten.
"""

import sqlite3
import time
import uuid
from typing import TYPE_CHECKING, Callable, Optional

from bidledger.core.audit import AuditTrail
from bidledger.core.auction.scoring import rank_offers, score_offer
from bidledger.core.config import MarketConfig
from bidledger.core.errors import ErrorKind, OperationResult, ValidationError
from bidledger.core.models import AuditAction, Offer, OfferStatus, OrderStatus
from bidledger.core.transactions import run_locked
from bidledger.utils.logger import get_logger

if TYPE_CHECKING:
    from bidledger.core.storage import StorageManager

logger = get_logger("auction.offers")


class OfferIntake:
    """Validates and upserts offers under the order lock."""

    def __init__(
        self,
        storage: "StorageManager",
        audit: AuditTrail,
        config: Optional[MarketConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.audit = audit
        self.config = config or MarketConfig()
        self.clock = clock

    def submit_offer(
        self,
        order_id: str,
        seller_id: str,
        price_quote: Optional[float],
        delivery_eta: Optional[str],
        stock_confirmed: bool = False,
    ) -> OperationResult:
        """
        Create or update a seller's offer.

        Returns:
            OperationResult with offer, score and isUpdate
        """
        if price_quote is None or not delivery_eta:
            return OperationResult.fail(
                ErrorKind.MISSING_FIELDS,
                "Offer requires both a price quote and a delivery ETA",
            )
        if price_quote <= 0:
            return OperationResult.fail(ErrorKind.INVALID_AMOUNT, f"Price quote must be positive, got {price_quote}")

        def attempt(conn: sqlite3.Connection) -> OperationResult:
            order = self.storage.get_order(order_id, conn)
            if order is None:
                raise ValidationError(ErrorKind.ORDER_NOT_FOUND, f"Order {order_id} not found")
            if order.final_seller_id is not None:
                accepted = self.storage.get_offer(order_id, seller_id, conn)
                if accepted is not None and accepted.status is OfferStatus.ACCEPTED:
                    # The winner re-submitting gets its accepted offer back untouched
                    return OperationResult.ok(
                        offer=accepted.to_dict(),
                        score=score_offer(
                            accepted, order.total_amount, self.storage.get_seller(seller_id, conn)
                        ).to_dict(),
                        isUpdate=False,
                        unchanged=True,
                    )
                raise ValidationError(
                    ErrorKind.ALREADY_ASSIGNED,
                    f"Order {order_id} already assigned to {order.final_seller_id}",
                    finalSellerId=order.final_seller_id,
                )
            if order.status is not OrderStatus.OPEN_FOR_BIDS:
                raise ValidationError(
                    ErrorKind.ORDER_NOT_OPEN,
                    f"Order {order_id} is not accepting offers (status {order.status.value})",
                    status=order.status.value,
                )

            now = self.clock()
            if order.is_window_expired(now):
                raise ValidationError(
                    ErrorKind.WINDOW_EXPIRED,
                    f"Bidding window for order {order_id} closed",
                    expiresAt=order.expires_at,
                )

            seller = self.storage.get_seller(seller_id, conn)
            if seller is None or not seller.is_eligible:
                raise ValidationError(
                    ErrorKind.SELLER_NOT_ELIGIBLE,
                    f"Seller {seller_id} is unknown, inactive or deleted",
                )

            existing = self.storage.get_offer(order_id, seller_id, conn)
            is_update = existing is not None
            if is_update:
                offer = existing
                offer.price_quote = float(price_quote)
                offer.delivery_eta = delivery_eta
                offer.stock_confirmed = bool(stock_confirmed)
                offer.updated_at = now
                self.storage.update_offer_terms(conn, offer)
            else:
                offer = Offer(
                    offer_id=uuid.uuid4().hex,
                    order_id=order_id,
                    seller_id=seller_id,
                    price_quote=float(price_quote),
                    delivery_eta=delivery_eta,
                    stock_confirmed=bool(stock_confirmed),
                    status=OfferStatus.PENDING,
                    created_at=now,
                    updated_at=now,
                )
                self.storage.insert_offer(conn, offer)

            score = score_offer(offer, order.total_amount, seller)
            self.audit.record(
                AuditAction.OFFER_INGESTED,
                order_id,
                actor=seller_id,
                metadata={
                    "orderId": order_id,
                    "sellerId": seller_id,
                    "priceQuote": offer.price_quote,
                    "deliveryEta": offer.delivery_eta,
                    "stockConfirmed": offer.stock_confirmed,
                    "score": score.total,
                    "isUpdate": is_update,
                },
                conn=conn,
            )
            return OperationResult.ok(offer=offer.to_dict(), score=score.to_dict(), isUpdate=is_update)

        result = run_locked(
            lambda: self.storage.lock_order(order_id, self.config.lock_timeout),
            attempt,
            logger,
            f"order {order_id}",
        )
        if result.success:
            logger.info(
                f"Offer {'updated' if result.data['isUpdate'] else 'received'}: order={order_id} "
                f"seller={seller_id} price={price_quote} eta={delivery_eta} "
                f"score={result.data['score']['totalScore']}"
            )
        else:
            logger.info(f"Offer refused: order={order_id} seller={seller_id}: {result.detail}")
        return result

    def get_offers(self, order_id: str) -> OperationResult:
        """
        Every offer for an order with its score, best first.

        Unlocked read: the listing may be stale by the time it is used.
        """
        order = self.storage.get_order(order_id)
        if order is None:
            return OperationResult.fail(ErrorKind.ORDER_NOT_FOUND, f"Order {order_id} not found")

        offers = self.storage.offers_for_order(order_id)
        sellers = self.storage.get_sellers([o.seller_id for o in offers])
        ranked = rank_offers(offers, order.total_amount, sellers)

        listing = []
        for entry in ranked:
            item = entry.offer.to_dict()
            item["score"] = entry.score.to_dict()
            item["rank"] = entry.rank
            listing.append(item)

        return OperationResult.ok(
            orderId=order_id,
            status=order.status.value,
            finalSellerId=order.final_seller_id,
            count=len(listing),
            offers=listing,
        )
