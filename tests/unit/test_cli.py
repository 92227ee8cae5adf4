"""
Unit tests for the command line interface.
"""

import json
import logging

import pytest
from click.testing import CliRunner

from bidledger.cli.main import cli
from bidledger.utils.logger import setup_logging


@pytest.fixture
def run(tmp_path):
    """Invoke the CLI against a temporary database."""
    runner = CliRunner()
    db = str(tmp_path / "cli.db")

    def invoke(*args):
        return runner.invoke(cli, ["--db", db, *args])

    yield invoke
    # Handlers created during an invocation point at the runner's stream
    setup_logging(level=logging.INFO)


def payload(output: str) -> dict:
    return json.loads(output[output.index("{"):output.rindex("}") + 1])


class TestCLI:
    """Tests for CLI commands."""

    def test_version(self, run):
        result = run("--version")
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_init(self, run, tmp_path):
        result = run("init")
        assert result.exit_code == 0
        assert (tmp_path / "cli.db").exists()

    def test_full_auction(self, run):
        """Credit, seller, order, offers and selection from the command line."""
        assert run("credit", "establish", "buyer-1", "seller-a", "--limit", "100000").exit_code == 0
        assert run("credit", "establish", "buyer-1", "seller-b", "--limit", "100000").exit_code == 0
        assert run("seller", "register", "seller-a", "--contact", "+100", "--reliability", "80",
                   "--total-orders", "100", "--completed-orders", "90", "--rating", "4.5").exit_code == 0
        assert run("seller", "register", "seller-b", "--contact", "+200", "--reliability", "90",
                   "--total-orders", "100", "--completed-orders", "95", "--rating", "4.8").exit_code == 0
        assert run("order", "create", "buyer-1", "5000", "--order-id", "order-1").exit_code == 0

        broadcast = run("order", "broadcast", "order-1")
        assert broadcast.exit_code == 0
        assert payload(broadcast.output)["eligibleCount"] == 2

        assert run("offer", "submit", "order-1", "seller-a", "--price", "4500", "--eta", "2H", "--stock").exit_code == 0
        assert run("offer", "submit", "order-1", "seller-b", "--price", "5200", "--eta", "1D").exit_code == 0

        listing = run("offer", "list", "order-1")
        assert listing.exit_code == 0
        lines = [line for line in listing.output.splitlines() if line.strip().startswith(("1.", "2."))]
        assert "seller-a" in lines[0]
        assert "seller-b" in lines[1]

        selected = run("order", "select", "order-1")
        assert selected.exit_code == 0
        assert payload(selected.output)["winner"]["sellerId"] == "seller-a"

        ledger = run("credit", "ledger", "buyer-1", "seller-a")
        assert "DEBIT" in ledger.output
        assert "order=order-1" in ledger.output

        balance = run("credit", "balance", "buyer-1", "seller-a")
        assert "95500.0" in balance.output

        shown = run("order", "show", "order-1")
        assert "WINNER_SELECTED" in shown.output
        assert "DEBIT_SETTLED" in shown.output

        reconcile = run("credit", "reconcile")
        assert reconcile.exit_code == 0
        assert payload(reconcile.output)["unreconciled"] == 0

    def test_failure_exits_non_zero(self, run):
        result = run("credit", "debit", "buyer-1", "nobody", "10")
        assert result.exit_code == 1
        assert "NO_CREDIT_ACCOUNT" in result.output

    def test_offer_missing_eta(self, run):
        run("order", "create", "buyer-1", "100", "--order-id", "o")
        result = run("offer", "submit", "o", "seller-a", "--price", "10")
        assert result.exit_code == 1
        assert "MISSING_FIELDS" in result.output

    def test_payment_and_release(self, run):
        run("credit", "establish", "b", "s", "--limit", "1000")
        debit = run("credit", "debit", "b", "s", "400", "--order-ref", "o-1")
        entry_id = payload(debit.output)["entryId"]

        released = run("credit", "release", entry_id)
        assert released.exit_code == 0
        assert payload(released.output)["newBalance"] == 0

        again = run("credit", "release", entry_id)
        assert again.exit_code == 1

        bounded = run("credit", "debit", "b", "s", "100", "--timeout", "0.5", "--max-retries", "1")
        assert bounded.exit_code == 0

        assert run("credit", "pay", "b", "s", "50").exit_code == 0
        verified = run("credit", "verify", "b", "--seller", "s")
        assert verified.exit_code == 0

    def test_unknown_order(self, run):
        result = run("order", "show", "missing")
        assert result.exit_code == 1

    def test_sweep_run(self, run):
        result = run("sweep", "run")
        assert result.exit_code == 0
        assert json.loads(result.output[result.output.index("{"):])["processed"] == 0
