"""
Timeout Sweeper - Closes expired bidding windows.

Every interval the sweeper picks up OPEN_FOR_BIDS orders whose window has
passed and resolves them: the best pending offer wins, and an order with
no offers is marked BIDDING_EXPIRED_NO_OFFERS. It then retries settlement
for resolved orders that have no debit recorded yet.

A failure on one order is logged and counted; it never stops the batch.
"""

import sqlite3
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, List, Optional

from bidledger.core.audit import AuditTrail
from bidledger.core.auction.resolver import WinnerResolver
from bidledger.core.config import MarketConfig
from bidledger.core.errors import ErrorKind, OperationResult, ValidationError
from bidledger.core.models import AuditAction, OrderStatus
from bidledger.core.transactions import run_locked
from bidledger.utils.logger import get_logger

if TYPE_CHECKING:
    from bidledger.core.storage import StorageManager

logger = get_logger("auction.sweeper")

AUTO_EXPIRY = "AUTO_EXPIRY"


@dataclass
class SweepReport:
    """Counts for one sweep."""
    processed: int = 0
    selected: int = 0
    expired_no_offers: int = 0
    skipped: int = 0
    failed: int = 0
    settled: int = 0
    settlement_failed: int = 0
    errors: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "selected": self.selected,
            "expiredNoOffers": self.expired_no_offers,
            "skipped": self.skipped,
            "failed": self.failed,
            "settled": self.settled,
            "settlementFailed": self.settlement_failed,
            "errors": list(self.errors),
        }


class TimeoutSweeper:
    """
    Scheduled auto-selection for expired orders.

    Usage:
        sweeper.start()   # background thread, one sweep per interval
        ...
        sweeper.stop()

    run_once() performs a single sweep synchronously.
    """

    def __init__(
        self,
        storage: "StorageManager",
        resolver: WinnerResolver,
        audit: AuditTrail,
        config: Optional[MarketConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.resolver = resolver
        self.audit = audit
        self.config = config or MarketConfig()
        self.clock = clock

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_report: Optional[SweepReport] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start sweeping in a background thread."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="bidledger-sweeper", daemon=True)
        self._thread.start()
        logger.info(f"Timeout sweeper started (interval={self.config.sweep_interval}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the background thread, waiting for an in-flight sweep."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Timeout sweeper stopped")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            with self.storage.thread_scope():
                try:
                    self.last_report = self.run_once()
                except Exception:
                    logger.exception("Timeout sweep failed")
            self._stop_event.wait(self.config.sweep_interval)

    # =========================================================================
    # Sweep
    # =========================================================================

    def run_once(self) -> SweepReport:
        """Resolve one batch of expired orders, then retry pending settlements."""
        report = SweepReport()
        now = self.clock()
        batch = self.config.sweep_batch_size

        for order in self.storage.expired_open_orders(now, batch):
            report.processed += 1
            try:
                result = self.process_order(order.order_id)
            except Exception as e:
                logger.exception(f"Auto-selection crashed for order {order.order_id}")
                report.failed += 1
                report.errors.append({"orderId": order.order_id, "error": str(e)})
                continue
            self._tally(report, order.order_id, result)

        for order in self.storage.unsettled_orders(batch):
            try:
                result = self.resolver.settle(order.order_id)
            except Exception as e:
                logger.exception(f"Settlement retry crashed for order {order.order_id}")
                report.settlement_failed += 1
                report.errors.append({"orderId": order.order_id, "error": str(e)})
                continue
            if result.success:
                report.settled += 1
            else:
                report.settlement_failed += 1
                report.errors.append({"orderId": order.order_id, "error": result.detail})

        if report.processed or report.settled or report.settlement_failed:
            logger.info(
                f"Sweep: {report.processed} expired, {report.selected} selected, "
                f"{report.expired_no_offers} without offers, {report.failed} failed, "
                f"{report.settled} settled"
            )
        return report

    def process_order(self, order_id: str, performed_by: str = "SYSTEM") -> OperationResult:
        """
        Auto-select one order: pick the winner or, with no offers and an
        elapsed window, close it as BIDDING_EXPIRED_NO_OFFERS.
        """
        result = self.resolver.select_winner(order_id, performed_by=performed_by, triggered_by=AUTO_EXPIRY)
        if result.error_kind is ErrorKind.NO_PENDING_OFFERS:
            return self._expire_without_offers(order_id, performed_by)
        return result

    def _expire_without_offers(self, order_id: str, performed_by: str) -> OperationResult:
        def attempt(conn: sqlite3.Connection) -> OperationResult:
            order = self.storage.get_order(order_id, conn)
            now = self.clock()
            if order.final_seller_id is not None:
                raise ValidationError(
                    ErrorKind.ALREADY_ASSIGNED,
                    f"Order {order_id} already assigned to {order.final_seller_id}",
                )
            if order.status is not OrderStatus.OPEN_FOR_BIDS or not order.is_window_expired(now):
                raise ValidationError(
                    ErrorKind.NO_PENDING_OFFERS,
                    f"No pending offers for order {order_id}",
                )

            order.status = OrderStatus.BIDDING_EXPIRED_NO_OFFERS
            order.updated_at = now
            self.storage.update_order(conn, order)
            self.audit.record(
                AuditAction.AUTO_SELECT_TIMEOUT,
                order_id,
                actor=performed_by,
                metadata={"orderId": order_id, "reason": "NO_OFFERS", "expiresAt": order.expires_at},
                conn=conn,
            )
            return OperationResult.ok(orderId=order_id, status=order.status.value)

        result = run_locked(
            lambda: self.storage.lock_order(order_id, self.config.lock_timeout),
            attempt,
            logger,
            f"order {order_id}",
        )
        if result.success:
            logger.info(f"Order {order_id} expired without offers")
        return result

    @staticmethod
    def _tally(report: SweepReport, order_id: str, result: OperationResult) -> None:
        if result.success and result.data.get("status") == OrderStatus.BIDDING_EXPIRED_NO_OFFERS.value:
            report.expired_no_offers += 1
        elif result.success:
            report.selected += 1
        elif result.error_kind is ErrorKind.ALREADY_ASSIGNED:
            report.skipped += 1
        else:
            report.failed += 1
            report.errors.append({"orderId": order_id, "error": result.detail})
            logger.warning(f"Auto-selection failed for order {order_id}: {result.detail}")
