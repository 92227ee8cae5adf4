"""
Winner Resolver - Atomic winner selection and settlement.

Selection:
    Under the order lock the resolver re-reads the order, ranks the pending
    offers, accepts the winner, rejects the rest and records the final
    seller, all in one unit of work. A racing resolver waits on the same
    lock and then observes ALREADY_ASSIGNED.

Settlement:
    After selection commits, the buyer's credit with the winning seller is
    debited for the winning quote in a separate unit of work (units of work
    never nest). Success stores the debit entry on the order. A definitive
    failure moves the order to SETTLEMENT_FAILED for manual intervention;
    the final seller is kept.

    A crash between the two steps leaves a WINNER_SELECTED order without a
    debit entry. settle() is safe to run again for such an order: it adopts
    an existing unreversed DEBIT for the order before writing a new one.
"""

import sqlite3
import time
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from bidledger.core.audit import AuditTrail
from bidledger.core.auction.scoring import RankedOffer, select_winner
from bidledger.core.config import MarketConfig
from bidledger.core.errors import ConcurrencyError, ErrorKind, OperationResult, ValidationError
from bidledger.core.ledger.credit_guard import CreditGuard
from bidledger.core.models import AuditAction, OfferStatus, Order, OrderStatus, Seller
from bidledger.core.notify import LoggingNotifier, NotificationSender, deliver, loser_text, winner_text
from bidledger.core.transactions import run_locked
from bidledger.utils.logger import get_logger

if TYPE_CHECKING:
    from bidledger.core.storage import StorageManager

logger = get_logger("auction.resolver")


class WinnerResolver:
    """Selects winners under the order lock and settles them on the ledger."""

    def __init__(
        self,
        storage: "StorageManager",
        credit_guard: CreditGuard,
        audit: AuditTrail,
        notifier: Optional[NotificationSender] = None,
        config: Optional[MarketConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.credit_guard = credit_guard
        self.audit = audit
        self.notifier = notifier or LoggingNotifier()
        self.config = config or MarketConfig()
        self.clock = clock

    # =========================================================================
    # Selection
    # =========================================================================

    def select_winner(
        self,
        order_id: str,
        performed_by: str = "SYSTEM",
        triggered_by: str = "MANUAL",
        settle: bool = True,
    ) -> OperationResult:
        """
        Pick the best pending offer for an order.

        LOCK_TIMEOUT is returned as-is and not retried: another resolver
        holds the order and will decide it.

        Args:
            order_id: Order to resolve
            performed_by: Actor recorded in the audit trail
            triggered_by: MANUAL or AUTO_EXPIRY
            settle: Debit the buyer's credit after the commit

        Returns:
            OperationResult with winner, losers and (if settled) settlement
        """

        def attempt(conn: sqlite3.Connection) -> OperationResult:
            order = self.storage.get_order(order_id, conn)
            if order is None:
                raise ValidationError(ErrorKind.ORDER_NOT_FOUND, f"Order {order_id} not found")
            if order.final_seller_id is not None:
                raise ValidationError(
                    ErrorKind.ALREADY_ASSIGNED,
                    f"Order {order_id} already assigned to {order.final_seller_id}",
                    finalSellerId=order.final_seller_id,
                )

            pending = self.storage.offers_for_order(order_id, OfferStatus.PENDING, conn)
            if not pending:
                raise ValidationError(ErrorKind.NO_PENDING_OFFERS, f"No pending offers for order {order_id}")

            sellers = self.storage.get_sellers([o.seller_id for o in pending], conn)
            winner, losers = select_winner(pending, order.total_amount, sellers)

            now = self.clock()
            self.storage.set_offer_status(conn, winner.offer.offer_id, OfferStatus.ACCEPTED, now)
            for loser in losers:
                self.storage.set_offer_status(conn, loser.offer.offer_id, OfferStatus.REJECTED, now)

            order.final_seller_id = winner.offer.seller_id
            order.status = OrderStatus.WINNER_SELECTED
            order.updated_at = now
            self.storage.update_order(conn, order)

            self.audit.record(
                AuditAction.WINNER_SELECTED,
                order_id,
                actor=performed_by,
                metadata={
                    "orderId": order_id,
                    "sellerId": winner.offer.seller_id,
                    "priceQuote": winner.offer.price_quote,
                    "deliveryEta": winner.offer.delivery_eta,
                    "stockConfirmed": winner.offer.stock_confirmed,
                    "score": winner.score.to_dict(),
                    "triggeredBy": triggered_by,
                    "offerCount": len(pending),
                },
                conn=conn,
            )
            for loser in losers:
                self.audit.record(
                    AuditAction.LOSER_REJECTED,
                    order_id,
                    actor=performed_by,
                    metadata={
                        "orderId": order_id,
                        "sellerId": loser.offer.seller_id,
                        "priceQuote": loser.offer.price_quote,
                        "deliveryEta": loser.offer.delivery_eta,
                        "score": loser.score.total,
                        "rank": loser.rank,
                    },
                    conn=conn,
                )
            return OperationResult.ok(order=order, winner=winner, losers=losers, sellers=sellers)

        selected = run_locked(
            lambda: self.storage.lock_order(order_id, self.config.lock_timeout),
            attempt,
            logger,
            f"order {order_id}",
        )
        if not selected.success:
            logger.info(f"Winner selection for order {order_id} not performed: {selected.detail}")
            return selected

        order: Order = selected.data["order"]
        winner: RankedOffer = selected.data["winner"]
        losers: List[RankedOffer] = selected.data["losers"]
        logger.info(
            f"Winner selected for order {order_id}: seller={winner.offer.seller_id} "
            f"score={winner.score.total} price={winner.offer.price_quote} "
            f"({len(losers)} rejected, trigger={triggered_by})"
        )

        notifications = self._notify(order, winner, losers, selected.data["sellers"])

        data = {
            "orderId": order_id,
            "triggeredBy": triggered_by,
            "winner": _ranked_to_dict(winner),
            "losers": [_ranked_to_dict(r) for r in losers],
            "notifications": notifications,
        }
        if settle:
            data["settlement"] = self.settle(order_id, performed_by=performed_by).to_dict()
        return OperationResult.ok(**data)

    def _notify(
        self,
        order: Order,
        winner: RankedOffer,
        losers: List[RankedOffer],
        sellers: Dict[str, Seller],
    ) -> List[dict]:
        results = []
        seller = sellers.get(winner.offer.seller_id)
        results.append(
            deliver(self.notifier, winner.offer.seller_id, seller.contact if seller else "",
                    winner_text(order, winner.offer))
        )
        text = loser_text(order)
        for loser in losers:
            seller = sellers.get(loser.offer.seller_id)
            results.append(deliver(self.notifier, loser.offer.seller_id, seller.contact if seller else "", text))
        return results

    # =========================================================================
    # Settlement
    # =========================================================================

    def settle(self, order_id: str, performed_by: str = "SYSTEM") -> OperationResult:
        """
        Debit the buyer's credit for a resolved order, once.

        Returns:
            OperationResult with entryId, amount and adopted/alreadySettled
            flags, or the debit failure after compensation
        """
        try:
            with self.storage.settlement_guard(order_id, self.config.lock_timeout):
                return self._settle(order_id, performed_by)
        except ConcurrencyError as e:
            logger.warning(f"Settlement of order {order_id} skipped: {e.detail}")
            return OperationResult.from_error(e)

    def _settle(self, order_id: str, performed_by: str) -> OperationResult:
        order = self.storage.get_order(order_id)
        if order is None:
            return OperationResult.fail(ErrorKind.ORDER_NOT_FOUND, f"Order {order_id} not found")
        if order.debit_entry_id is not None:
            return OperationResult.ok(orderId=order_id, entryId=order.debit_entry_id, alreadySettled=True)
        if order.status is not OrderStatus.WINNER_SELECTED or order.final_seller_id is None:
            return OperationResult.fail(
                ErrorKind.ORDER_NOT_ELIGIBLE,
                f"Order {order_id} cannot be settled in status {order.status.value}",
                status=order.status.value,
            )

        seller_id = order.final_seller_id
        offer = self.storage.get_offer(order_id, seller_id)
        if offer is None or offer.status is not OfferStatus.ACCEPTED:
            return self._compensate(
                order_id,
                OperationResult.fail(ErrorKind.NOT_FOUND, f"No accepted offer from {seller_id} for order {order_id}"),
                performed_by,
            )

        adopted = [
            e for e in self.storage.open_debits_for_order(order_id)
            if e.buyer_id == order.buyer_id and e.seller_id == seller_id
        ]
        if adopted:
            entry_id = adopted[0].entry_id
            logger.info(f"Order {order_id} adopts existing debit {entry_id}")
        else:
            debit = self.credit_guard.validate_and_debit(
                order.buyer_id,
                seller_id,
                order_id,
                offer.price_quote,
                created_by=performed_by,
            )
            if not debit.success:
                return self._compensate(order_id, debit, performed_by)
            entry_id = debit.data["entryId"]

        recorded = self._record_debit(order_id, seller_id, entry_id, offer.price_quote, bool(adopted), performed_by)
        if not recorded.success:
            logger.warning(
                f"Debit {entry_id} for order {order_id} written but not recorded ({recorded.detail}); "
                f"it will be adopted on the next settlement pass"
            )
        return recorded

    def _record_debit(
        self,
        order_id: str,
        seller_id: str,
        entry_id: str,
        amount: float,
        adopted: bool,
        performed_by: str,
    ) -> OperationResult:
        def attempt(conn: sqlite3.Connection) -> OperationResult:
            order = self.storage.get_order(order_id, conn)
            if order.debit_entry_id is not None:
                return OperationResult.ok(orderId=order_id, entryId=order.debit_entry_id, alreadySettled=True)

            order.debit_entry_id = entry_id
            order.updated_at = self.clock()
            self.storage.update_order(conn, order)
            self.audit.record(
                AuditAction.DEBIT_SETTLED,
                order_id,
                actor=performed_by,
                metadata={
                    "orderId": order_id,
                    "sellerId": seller_id,
                    "entryId": entry_id,
                    "amount": amount,
                    "adopted": adopted,
                },
                conn=conn,
            )
            logger.info(f"Order {order_id} settled: debit {entry_id} amount={amount}")
            return OperationResult.ok(orderId=order_id, entryId=entry_id, amount=amount, adopted=adopted)

        return run_locked(
            lambda: self.storage.lock_order(order_id, self.config.lock_timeout),
            attempt,
            logger,
            f"order {order_id}",
        )

    def _compensate(self, order_id: str, failure: OperationResult, performed_by: str) -> OperationResult:
        """Move a resolved order whose debit failed to SETTLEMENT_FAILED."""

        def attempt(conn: sqlite3.Connection) -> OperationResult:
            order = self.storage.get_order(order_id, conn)
            if order.status is not OrderStatus.WINNER_SELECTED or order.debit_entry_id is not None:
                return OperationResult.ok(status=order.status.value)

            order.status = OrderStatus.SETTLEMENT_FAILED
            order.updated_at = self.clock()
            self.storage.update_order(conn, order)
            self.audit.record(
                AuditAction.SETTLEMENT_FAILED,
                order_id,
                actor=performed_by,
                metadata={
                    "orderId": order_id,
                    "sellerId": order.final_seller_id,
                    "errorKind": failure.error_kind.value,
                    "detail": failure.detail,
                },
                conn=conn,
            )
            return OperationResult.ok(status=order.status.value)

        compensated = run_locked(
            lambda: self.storage.lock_order(order_id, self.config.lock_timeout),
            attempt,
            logger,
            f"order {order_id}",
        )
        if compensated.success:
            logger.error(
                f"Settlement failed for order {order_id} ({failure.error_kind.value}: {failure.detail}); "
                f"order needs manual intervention"
            )
        else:
            logger.error(
                f"Settlement failed for order {order_id} and could not be marked: {compensated.detail}"
            )

        result = OperationResult.fail(
            failure.error_kind,
            failure.detail,
            settlementFailed=compensated.success,
            **failure.data,
        )
        result.attempts = failure.attempts
        return result


def _ranked_to_dict(ranked: RankedOffer) -> dict:
    return {
        "offerId": ranked.offer.offer_id,
        "sellerId": ranked.offer.seller_id,
        "priceQuote": ranked.offer.price_quote,
        "deliveryEta": ranked.offer.delivery_eta,
        "rank": ranked.rank,
        "score": ranked.score.to_dict(),
    }
