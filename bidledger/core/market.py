"""
Marketplace - Entry point wiring the ledger and bidding subsystems.

Routing layers talk to this facade only. Every operation returns an
OperationResult; unexpected faults are logged and reported as UNEXPECTED
instead of escaping to the caller.
"""

import functools
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from bidledger.core.audit import AuditTrail
from bidledger.core.auction import BidBroadcaster, OfferIntake, TimeoutSweeper, WinnerResolver
from bidledger.core.config import MarketConfig
from bidledger.core.errors import ErrorKind, MarketError, OperationResult
from bidledger.core.ledger import CreditGuard
from bidledger.core.models import AuditRecord, Order, OrderStatus, Seller
from bidledger.core.notify import NotificationSender
from bidledger.core.requests import BroadcastRequest, OfferSubmission, parse_request
from bidledger.core.storage import StorageManager
from bidledger.utils.logger import get_logger

logger = get_logger("market")


def _reported(method: Callable[..., OperationResult]) -> Callable[..., OperationResult]:
    """Convert escaping exceptions into OperationResults."""

    @functools.wraps(method)
    def wrapper(*args, **kwargs) -> OperationResult:
        try:
            return method(*args, **kwargs)
        except MarketError as e:
            return OperationResult.from_error(e)
        except Exception as e:
            logger.exception(f"Unexpected failure in {method.__name__}")
            return OperationResult.fail(ErrorKind.UNEXPECTED, str(e))

    return wrapper


class Marketplace:
    """
    Facade over storage, credit guard and the bidding components.

    Args:
        config: Marketplace configuration (defaults to MarketConfig())
        notifier: Outbound message channel (defaults to logging)
        clock: Time source, injectable for tests
        sleep: Retry backoff sleep, injectable for tests
    """

    def __init__(
        self,
        config: Optional[MarketConfig] = None,
        notifier: Optional[NotificationSender] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or MarketConfig()
        self.clock = clock

        self.storage = StorageManager(self.config.db_path)
        self.audit = AuditTrail(self.storage, clock=clock)
        self.credit = CreditGuard(self.storage, self.config, clock=clock, sleep=sleep)
        self.broadcaster = BidBroadcaster(self.storage, self.audit, notifier, self.config, clock=clock)
        self.intake = OfferIntake(self.storage, self.audit, self.config, clock=clock)
        self.resolver = WinnerResolver(self.storage, self.credit, self.audit, notifier, self.config, clock=clock)
        self.sweeper = TimeoutSweeper(self.storage, self.resolver, self.audit, self.config, clock=clock)

    def close(self) -> None:
        if self.sweeper.is_running:
            self.sweeper.stop()
        self.storage.close()

    # =========================================================================
    # Setup
    # =========================================================================

    @_reported
    def register_seller(self, seller_id: str, **facts: Any) -> OperationResult:
        """Create or replace a seller's reachability and reputation facts."""
        seller = Seller(seller_id=seller_id, **facts)
        with self.storage.unit_of_work() as conn:
            self.storage.upsert_seller(conn, seller)
        logger.info(f"Seller registered: {seller_id}")
        return OperationResult.ok(sellerId=seller_id)

    @_reported
    def create_order(
        self,
        buyer_id: str,
        total_amount: float,
        order_id: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> OperationResult:
        """Create a DRAFT order."""
        if total_amount is None or total_amount <= 0:
            return OperationResult.fail(ErrorKind.INVALID_AMOUNT, f"Order amount must be positive, got {total_amount}")

        now = self.clock()
        order = Order(
            order_id=order_id or uuid.uuid4().hex,
            buyer_id=buyer_id,
            total_amount=round(float(total_amount), 2),
            status=OrderStatus.DRAFT,
            latitude=latitude,
            longitude=longitude,
            created_at=now,
            updated_at=now,
        )
        with self.storage.unit_of_work() as conn:
            if self.storage.get_order(order.order_id, conn) is not None:
                return OperationResult.fail(ErrorKind.INVALID_INPUT, f"Order {order.order_id} already exists")
            self.storage.insert_order(conn, order)
        logger.info(f"Order created: {order.order_id} buyer={buyer_id} amount={order.total_amount}")
        return OperationResult.ok(orderId=order.order_id, status=order.status.value)

    def get_order(self, order_id: str) -> Optional[Order]:
        return self.storage.get_order(order_id)

    # =========================================================================
    # Bidding
    # =========================================================================

    @_reported
    def broadcast(
        self,
        order_id: str,
        seller_ids: Optional[List[str]] = None,
        radius: Optional[float] = None,
        performed_by: str = "SYSTEM",
    ) -> OperationResult:
        request = parse_request(
            BroadcastRequest, {"order_id": order_id, "seller_ids": seller_ids, "radius": radius}
        )
        return self.broadcaster.broadcast(
            request.order_id, request.seller_ids, request.radius, performed_by=performed_by
        )

    @_reported
    def submit_offer(self, payload: Dict[str, Any]) -> OperationResult:
        """
        Admit an offer from a validated payload.

        Payload keys: order_id, seller_id, price_quote, delivery_eta,
        stock_confirmed (camelCase accepted).
        """
        offer = parse_request(OfferSubmission, payload)
        missing = offer.missing_fields()
        if missing:
            return OperationResult.fail(
                ErrorKind.MISSING_FIELDS,
                f"Missing required fields: {', '.join(missing)}",
                missing=missing,
            )
        return self.intake.submit_offer(
            offer.order_id,
            offer.seller_id,
            offer.price_quote,
            offer.delivery_eta,
            offer.stock_confirmed,
        )

    @_reported
    def get_offers(self, order_id: str) -> OperationResult:
        return self.intake.get_offers(order_id)

    @_reported
    def select_winner(self, order_id: str, performed_by: str = "SYSTEM") -> OperationResult:
        return self.resolver.select_winner(order_id, performed_by=performed_by, triggered_by="MANUAL")

    @_reported
    def trigger_auto_select(self, order_id: str, performed_by: str = "ADMIN") -> OperationResult:
        """Run auto-selection for one order now, as the sweeper would."""
        return self.sweeper.process_order(order_id, performed_by=performed_by)

    @_reported
    def settle(self, order_id: str, performed_by: str = "SYSTEM") -> OperationResult:
        return self.resolver.settle(order_id, performed_by=performed_by)

    def run_sweep(self):
        return self.sweeper.run_once()

    def audit_trail(self, target_id: str) -> List[AuditRecord]:
        return self.audit.records_for(target_id)

    # =========================================================================
    # Credit
    # =========================================================================

    @_reported
    def establish_credit(self, buyer_id: str, seller_id: str, credit_limit: float) -> OperationResult:
        return self.credit.establish_relationship(buyer_id, seller_id, credit_limit)

    @_reported
    def block_credit(self, buyer_id: str, seller_id: str, reason: str) -> OperationResult:
        return self.credit.block_relationship(buyer_id, seller_id, reason)

    @_reported
    def activate_credit(self, buyer_id: str, seller_id: str) -> OperationResult:
        return self.credit.activate_relationship(buyer_id, seller_id)

    @_reported
    def validate_and_debit(
        self,
        buyer_id: str,
        seller_id: str,
        order_ref: Optional[str],
        amount: float,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        created_by: str = "SYSTEM",
    ) -> OperationResult:
        return self.credit.validate_and_debit(
            buyer_id, seller_id, order_ref, amount,
            timeout=timeout, max_retries=max_retries, created_by=created_by,
        )

    @_reported
    def release_credit(self, entry_id: str, reason: str = "Order cancelled") -> OperationResult:
        return self.credit.release_credit_lock(entry_id, reason)

    @_reported
    def record_payment(self, buyer_id: str, seller_id: str, amount: float) -> OperationResult:
        return self.credit.record_payment(buyer_id, seller_id, amount)

    @_reported
    def record_adjustment(self, buyer_id: str, seller_id: str, amount: float) -> OperationResult:
        return self.credit.record_adjustment(buyer_id, seller_id, amount)

    @_reported
    def verify_balance(self, buyer_id: str, seller_id: Optional[str] = None) -> OperationResult:
        return self.credit.verify_balance(buyer_id, seller_id)

    @_reported
    def reconcile_all(self) -> OperationResult:
        return self.credit.reconcile_all()
