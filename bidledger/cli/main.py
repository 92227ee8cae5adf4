"""
bidledger CLI - Command Line Interface for the marketplace core

Main entry point for all CLI commands.
"""

import json
import sys
import click
from dataclasses import replace
from pathlib import Path

from bidledger.utils.logger import setup_logging, get_logger


def _market(ctx):
    """Build the Marketplace on first use."""
    from bidledger.core.market import Marketplace

    if "market" not in ctx.obj:
        ctx.obj["market"] = Marketplace(ctx.obj["config"])
        ctx.call_on_close(ctx.obj["market"].close)
    return ctx.obj["market"]


def _report(result) -> None:
    """Print an OperationResult and exit non-zero on failure."""
    if result.success:
        click.echo("✓ OK")
    else:
        click.echo(f"❌ {result.error_kind.value}: {result.detail}")
    if result.data:
        click.echo(json.dumps(result.data, indent=2, default=str))
    if not result.success:
        sys.exit(1)


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--db", default=None, help="SQLite database path (overrides BIDLEDGER_DB_PATH)")
@click.option("--env-file", default=None, help=".env file to load")
@click.option("--log-file", is_flag=True, help="Also write logs under the log directory")
@click.version_option(version="0.1.0")
@click.pass_context
def cli(ctx, debug, db, env_file, log_file):
    """bidledger - credit ledger and competitive bidding core"""
    import logging
    from bidledger.core.config import load_config

    config = load_config(env_file)
    if db:
        config = replace(config, db_path=Path(db).expanduser())

    level = logging.DEBUG if debug else logging.INFO
    setup_logging(level=level, log_dir=str(config.log_dir), log_to_file=log_file)

    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@cli.command("init")
@click.pass_context
def init(ctx):
    """Create the database schema"""
    market = _market(ctx)
    click.echo(f"✓ Database ready at {market.config.db_path}")


# =============================================================================
# Credit Commands
# =============================================================================


@cli.group()
def credit():
    """Credit relationship and ledger commands"""
    pass


@credit.command("establish")
@click.argument("buyer_id")
@click.argument("seller_id")
@click.option("--limit", "credit_limit", required=True, type=float, help="Credit limit")
@click.pass_context
def credit_establish(ctx, buyer_id, seller_id, credit_limit):
    """Create a buyer-seller credit line"""
    _report(_market(ctx).establish_credit(buyer_id, seller_id, credit_limit))


@credit.command("block")
@click.argument("buyer_id")
@click.argument("seller_id")
@click.option("--reason", required=True, help="Why the line is blocked")
@click.pass_context
def credit_block(ctx, buyer_id, seller_id, reason):
    """Block a credit line"""
    _report(_market(ctx).block_credit(buyer_id, seller_id, reason))


@credit.command("activate")
@click.argument("buyer_id")
@click.argument("seller_id")
@click.pass_context
def credit_activate(ctx, buyer_id, seller_id):
    """Reactivate a blocked credit line"""
    _report(_market(ctx).activate_credit(buyer_id, seller_id))


@credit.command("debit")
@click.argument("buyer_id")
@click.argument("seller_id")
@click.argument("amount", type=float)
@click.option("--order-ref", default=None, help="Order reference stored on the entry")
@click.option("--timeout", type=float, default=None, help="Row lock wait per attempt in seconds")
@click.option("--max-retries", type=int, default=None, help="Attempts on lock contention")
@click.pass_context
def credit_debit(ctx, buyer_id, seller_id, amount, order_ref, timeout, max_retries):
    """Validate available credit and write a debit"""
    _report(_market(ctx).validate_and_debit(
        buyer_id, seller_id, order_ref, amount,
        timeout=timeout, max_retries=max_retries, created_by="CLI",
    ))


@credit.command("release")
@click.argument("entry_id")
@click.option("--reason", default="Order cancelled", help="Release reason")
@click.pass_context
def credit_release(ctx, entry_id, reason):
    """Reverse a debit entry"""
    _report(_market(ctx).release_credit(entry_id, reason))


@credit.command("pay")
@click.argument("buyer_id")
@click.argument("seller_id")
@click.argument("amount", type=float)
@click.pass_context
def credit_pay(ctx, buyer_id, seller_id, amount):
    """Record a buyer payment"""
    _report(_market(ctx).record_payment(buyer_id, seller_id, amount))


@credit.command("adjust")
@click.argument("buyer_id")
@click.argument("seller_id")
@click.argument("amount", type=float)
@click.pass_context
def credit_adjust(ctx, buyer_id, seller_id, amount):
    """Record a signed manual adjustment"""
    _report(_market(ctx).record_adjustment(buyer_id, seller_id, amount))


@credit.command("balance")
@click.argument("buyer_id")
@click.argument("seller_id")
@click.pass_context
def credit_balance(ctx, buyer_id, seller_id):
    """Show balance and available credit"""
    market = _market(ctx)
    available = market.credit.available_credit(buyer_id, seller_id)
    if available is None:
        click.echo(f"❌ No credit relationship {buyer_id}/{seller_id}")
        sys.exit(1)
    click.echo(f"Credit {buyer_id}/{seller_id}")
    click.echo("-" * 40)
    click.echo(f"  Balance:   {market.credit.get_balance(buyer_id, seller_id)}")
    click.echo(f"  Available: {available}")


@credit.command("ledger")
@click.argument("buyer_id")
@click.argument("seller_id")
@click.pass_context
def credit_ledger(ctx, buyer_id, seller_id):
    """List ledger entries for a pair"""
    entries = _market(ctx).credit.ledger(buyer_id, seller_id)
    if not entries:
        click.echo("No ledger entries.")
        return
    for e in entries:
        ref = f" order={e.order_ref}" if e.order_ref else ""
        click.echo(f"  #{e.seq} {e.kind.value:<10} {e.amount:>12.2f} -> {e.balance_after:>12.2f}  {e.entry_id}{ref}")


@credit.command("verify")
@click.argument("buyer_id")
@click.option("--seller", "seller_id", default=None, help="Limit to one seller")
@click.pass_context
def credit_verify(ctx, buyer_id, seller_id):
    """Recompute balances from the ledger and compare"""
    _report(_market(ctx).verify_balance(buyer_id, seller_id))


@credit.command("reconcile")
@click.pass_context
def credit_reconcile(ctx):
    """Reconcile every active credit line"""
    _report(_market(ctx).reconcile_all())


# =============================================================================
# Seller Commands
# =============================================================================


@cli.group()
def seller():
    """Seller registry commands"""
    pass


@seller.command("register")
@click.argument("seller_id")
@click.option("--name", default="", help="Display name")
@click.option("--contact", default="", help="Notification recipient")
@click.option("--lat", "latitude", type=float, default=None, help="Latitude")
@click.option("--lon", "longitude", type=float, default=None, help="Longitude")
@click.option("--reliability", "reliability_score", type=float, default=50.0, help="Reliability score (0-100)")
@click.option("--total-orders", type=int, default=0, help="Orders handled")
@click.option("--completed-orders", type=int, default=0, help="Orders completed")
@click.option("--rating", "average_rating", type=float, default=0.0, help="Average rating (0-5)")
@click.option("--inactive", is_flag=True, help="Register as inactive")
@click.pass_context
def seller_register(ctx, seller_id, name, contact, latitude, longitude, reliability_score,
                    total_orders, completed_orders, average_rating, inactive):
    """Create or replace a seller"""
    _report(_market(ctx).register_seller(
        seller_id,
        name=name,
        contact=contact,
        latitude=latitude,
        longitude=longitude,
        reliability_score=reliability_score,
        total_orders=total_orders,
        completed_orders=completed_orders,
        average_rating=average_rating,
        is_active=not inactive,
    ))


# =============================================================================
# Order Commands
# =============================================================================


@cli.group()
def order():
    """Order lifecycle commands"""
    pass


@order.command("create")
@click.argument("buyer_id")
@click.argument("amount", type=float)
@click.option("--order-id", default=None, help="Explicit order id")
@click.option("--lat", "latitude", type=float, default=None, help="Delivery latitude")
@click.option("--lon", "longitude", type=float, default=None, help="Delivery longitude")
@click.pass_context
def order_create(ctx, buyer_id, amount, order_id, latitude, longitude):
    """Create a draft order"""
    _report(_market(ctx).create_order(buyer_id, amount, order_id, latitude, longitude))


@order.command("broadcast")
@click.argument("order_id")
@click.option("--seller", "seller_ids", multiple=True, help="Only invite these sellers")
@click.option("--radius", type=float, default=None, help="Search radius in km")
@click.pass_context
def order_broadcast(ctx, order_id, seller_ids, radius):
    """Open the bidding window and invite sellers"""
    _report(_market(ctx).broadcast(order_id, list(seller_ids) or None, radius, performed_by="CLI"))


@order.command("select")
@click.argument("order_id")
@click.pass_context
def order_select(ctx, order_id):
    """Select the winning offer now"""
    _report(_market(ctx).select_winner(order_id, performed_by="CLI"))


@order.command("auto-select")
@click.argument("order_id")
@click.pass_context
def order_auto_select(ctx, order_id):
    """Run timeout auto-selection for one order"""
    _report(_market(ctx).trigger_auto_select(order_id, performed_by="CLI"))


@order.command("settle")
@click.argument("order_id")
@click.pass_context
def order_settle(ctx, order_id):
    """Retry settlement of a resolved order"""
    _report(_market(ctx).settle(order_id, performed_by="CLI"))


@order.command("show")
@click.argument("order_id")
@click.pass_context
def order_show(ctx, order_id):
    """Show an order and its audit trail"""
    market = _market(ctx)
    found = market.get_order(order_id)
    if found is None:
        click.echo(f"❌ Order {order_id} not found")
        sys.exit(1)

    click.echo(f"Order {found.order_id}")
    click.echo("-" * 40)
    click.echo(f"  Buyer:   {found.buyer_id}")
    click.echo(f"  Amount:  {found.total_amount}")
    click.echo(f"  Status:  {found.status.value}")
    click.echo(f"  Seller:  {found.final_seller_id or '-'}")
    click.echo(f"  Debit:   {found.debit_entry_id or '-'}")
    click.echo("")
    click.echo("  Audit trail:")
    for record in market.audit_trail(order_id):
        click.echo(f"    {record.action.value:<20} actor={record.actor}")


# =============================================================================
# Offer Commands
# =============================================================================


@cli.group()
def offer():
    """Offer commands"""
    pass


@offer.command("submit")
@click.argument("order_id")
@click.argument("seller_id")
@click.option("--price", type=float, default=None, help="Quoted price")
@click.option("--eta", default=None, help="Delivery ETA, e.g. 2H, 1D, '45 min'")
@click.option("--stock", is_flag=True, help="Stock confirmed")
@click.pass_context
def offer_submit(ctx, order_id, seller_id, price, eta, stock):
    """Submit or update an offer"""
    _report(_market(ctx).submit_offer({
        "order_id": order_id,
        "seller_id": seller_id,
        "price_quote": price,
        "delivery_eta": eta,
        "stock_confirmed": stock,
    }))


@offer.command("list")
@click.argument("order_id")
@click.pass_context
def offer_list(ctx, order_id):
    """List offers with scores, best first"""
    result = _market(ctx).get_offers(order_id)
    if not result.success:
        _report(result)
        return
    if not result.data["offers"]:
        click.echo("No offers.")
        return
    for item in result.data["offers"]:
        click.echo(
            f"  {item['rank'] + 1}. {item['sellerId']:<16} price={item['priceQuote']:<10} "
            f"eta={item['deliveryEta']:<8} score={item['score']['totalScore']:<6} {item['status']}"
        )


# =============================================================================
# Sweep Commands
# =============================================================================


@cli.group()
def sweep():
    """Timeout sweeper commands"""
    pass


@sweep.command("run")
@click.pass_context
def sweep_run(ctx):
    """Run one sweep now"""
    report = _market(ctx).run_sweep()
    click.echo(json.dumps(report.to_dict(), indent=2))


@sweep.command("start")
@click.pass_context
def sweep_start(ctx):
    """Run the sweeper until interrupted"""
    import time

    logger = get_logger("cli")
    market = _market(ctx)
    market.sweeper.start()
    click.echo(f"Sweeper running every {market.config.sweep_interval}s. Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Sweeper interrupted")
    finally:
        market.sweeper.stop()
    click.echo("\nSweeper stopped.")


if __name__ == "__main__":
    cli()
