"""
Shared fixtures: temporary databases, a controllable clock and a
notifier that records what would have been sent.
"""

import threading

import pytest

from bidledger.core.config import MarketConfig
from bidledger.core.market import Marketplace
from bidledger.core.storage import StorageManager


class FakeClock:
    """Settable time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier:
    """Records messages; raises for recipients listed in fail_for."""

    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)
        self._lock = threading.Lock()

    def send(self, recipient: str, text: str) -> None:
        if recipient in self.fail_for:
            raise RuntimeError(f"channel down for {recipient}")
        with self._lock:
            self.sent.append((recipient, text))

    def recipients(self):
        return [r for r, _ in self.sent]


def no_sleep(seconds: float) -> None:
    pass


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def config(tmp_path):
    return MarketConfig(
        db_path=tmp_path / "bidledger.db",
        log_dir=tmp_path / "logs",
        lock_timeout=2.0,
        backoff_base=0.0,
    )


@pytest.fixture
def storage(config):
    manager = StorageManager(config.db_path)
    yield manager
    manager.close()


@pytest.fixture
def market(config, notifier, clock):
    m = Marketplace(config, notifier=notifier, clock=clock, sleep=no_sleep)
    yield m
    m.close()


@pytest.fixture
def open_order(market, clock):
    """
    order-1 (buyer-1, 5000) broadcast to seller-a and seller-b, both with
    100000 credit lines.
    """
    market.register_seller("seller-a", contact="+100", reliability_score=80,
                           total_orders=100, completed_orders=90, average_rating=4.5)
    market.register_seller("seller-b", contact="+200", reliability_score=90,
                           total_orders=100, completed_orders=95, average_rating=4.8)
    market.establish_credit("buyer-1", "seller-a", 100000)
    market.establish_credit("buyer-1", "seller-b", 100000)
    market.create_order("buyer-1", 5000, order_id="order-1")
    result = market.broadcast("order-1")
    assert result.success
    return "order-1"
