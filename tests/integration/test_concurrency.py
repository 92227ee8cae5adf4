"""
Integration tests for concurrent access.

Each worker thread gets its own SQLite connection; the row locks and
BEGIN IMMEDIATE transactions are what keep the outcomes serial.
"""

import threading

import pytest

from bidledger.core.errors import ErrorKind
from bidledger.core.ledger import EntryKind
from bidledger.core.models import OrderStatus


def race(market, calls):
    """Run callables at the same instant and collect their results."""
    barrier = threading.Barrier(len(calls))
    results = [None] * len(calls)

    def worker(i, fn):
        barrier.wait()
        with market.storage.thread_scope():
            results[i] = fn()

    threads = [threading.Thread(target=worker, args=(i, fn)) for i, fn in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return results


@pytest.fixture
def bids(market, open_order):
    market.submit_offer({"orderId": open_order, "sellerId": "seller-a", "priceQuote": 4500,
                         "deliveryEta": "2H", "stockConfirmed": True})
    market.submit_offer({"orderId": open_order, "sellerId": "seller-b", "priceQuote": 5200,
                         "deliveryEta": "1D"})
    return open_order


class TestConcurrentDebits:
    """Debits racing on one credit line."""

    def test_joint_overdraw_admits_one(self, market):
        """Ten 600 debits against a 1000 limit: exactly one commits."""
        market.establish_credit("b", "s", 1000)

        results = race(market, [
            (lambda i=i: market.validate_and_debit("b", "s", f"o-{i}", 600)) for i in range(10)
        ])

        successes = [r for r in results if r.success]
        assert len(successes) == 1
        assert {r.error_kind for r in results if not r.success} == {ErrorKind.INSUFFICIENT_CREDIT}
        assert market.credit.get_balance("b", "s") == 600
        assert market.verify_balance("b", "s").success

    def test_fitting_debits_all_commit(self, market):
        market.establish_credit("b", "s", 1000)

        results = race(market, [(lambda: market.validate_and_debit("b", "s", None, 100)) for _ in range(8)])

        assert all(r.success for r in results)
        assert market.credit.get_balance("b", "s") == 800
        balances = sorted(e.balance_after for e in market.credit.ledger("b", "s"))
        assert balances == [100.0 * k for k in range(1, 9)]

    def test_independent_pairs(self, market):
        for s in ("s1", "s2", "s3"):
            market.establish_credit("b", s, 500)

        results = race(market, [
            (lambda s=s: market.validate_and_debit("b", s, None, 500)) for s in ("s1", "s2", "s3")
        ])
        assert all(r.success for r in results)
        assert market.reconcile_all().data["reconciled"] == 3

    def test_double_release(self, market):
        """Only one of two racing releases reverses the debit."""
        market.establish_credit("b", "s", 1000)
        entry_id = market.validate_and_debit("b", "s", "o", 300).data["entryId"]

        results = race(market, [(lambda: market.release_credit(entry_id)) for _ in range(2)])

        assert sorted(r.success for r in results) == [False, True]
        assert [r.error_kind for r in results if not r.success] == [ErrorKind.NOT_FOUND]
        assert market.credit.get_balance("b", "s") == 0
        reversals = [e for e in market.credit.ledger("b", "s") if e.kind is EntryKind.REVERSAL]
        assert len(reversals) == 1


class TestConcurrentSelection:
    """Resolvers racing on one order."""

    def test_single_winner(self, market, bids):
        results = race(market, [(lambda: market.select_winner(bids)) for _ in range(5)])

        winners = [r for r in results if r.success]
        assert len(winners) == 1
        assert {r.error_kind for r in results if not r.success} == {ErrorKind.ALREADY_ASSIGNED}

        order = market.get_order(bids)
        assert order.final_seller_id == "seller-a"
        debits = [e for e in market.credit.ledger("buyer-1", "seller-a") if e.kind is EntryKind.DEBIT]
        assert len(debits) == 1
        assert order.debit_entry_id == debits[0].entry_id

    def test_manual_and_sweeper(self, market, bids, clock):
        """A manual selection and an expiry sweep decide the order once."""
        clock.advance(30 * 60 + 1)

        results = race(market, [lambda: market.select_winner(bids), market.run_sweep])

        manual, report = results
        assert manual.success != (report.selected == 1)
        order = market.get_order(bids)
        assert order.status is OrderStatus.WINNER_SELECTED
        debits = [e for e in market.credit.ledger("buyer-1", "seller-a") if e.kind is EntryKind.DEBIT]
        assert len(debits) == 1

    def test_racing_settlements(self, market, bids):
        """Parallel settlement passes write one debit."""
        market.resolver.select_winner(bids, settle=False)

        results = race(market, [(lambda: market.settle(bids)) for _ in range(4)])

        entry_ids = {r.data["entryId"] for r in results if r.success}
        assert len(entry_ids) == 1
        for r in results:
            if not r.success:
                assert r.error_kind is ErrorKind.LOCK_TIMEOUT
        debits = [e for e in market.credit.ledger("buyer-1", "seller-a") if e.kind is EntryKind.DEBIT]
        assert len(debits) == 1

    def test_offers_from_many_sellers(self, market, open_order):
        sellers = [f"seller-{i}" for i in range(8)]
        for s in sellers:
            market.register_seller(s, contact=s)

        results = race(market, [
            (lambda s=s: market.submit_offer({"orderId": open_order, "sellerId": s,
                                              "priceQuote": 4000 + len(s), "deliveryEta": "4H"}))
            for s in sellers
        ])

        assert all(r.success for r in results)
        assert market.get_offers(open_order).data["count"] == len(sellers)
