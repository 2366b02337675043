"""
Command-line interface for the paper trading engine.

Provides commands for:
- Opening accounts
- Price lookups and fee previews
- Buying and selling
- Portfolio and trade history
- Fee settings administration
- Refreshing the price store from live feeds
"""

import logging
import sys
from pathlib import Path

import click
import requests

from .config import (
    ASSET_STORE_PATH,
    ASSET_TYPES,
    DATA_DIR,
    DEFAULT_STARTING_BALANCE,
    DEFAULT_TRADE_HISTORY_LIMIT,
    FX_RATE_CACHE_TTL,
    REPORTING_CURRENCY,
    SETTINGS_PATH,
    STORE_DIR,
    setup_logging,
)
from .data import AssetStore, CryptoFetcher, FXFetcher, RateCache, StockFetcher
from .errors import TradeRejected, TradingError
from .trading import AccountStore, FeePolicyProvider, PriceResolver, TradeExecutor
from .trading.fee_calculator import format_fee_info

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)


def build_executor(data_dir: Path) -> TradeExecutor:
    """Wire stores, live feeds and the fee policy under one data directory."""
    data_dir = Path(data_dir)
    asset_store = AssetStore(path=data_dir / ASSET_STORE_PATH.relative_to(DATA_DIR), load=True)

    fx = FXFetcher(asset_store=asset_store, rate_cache=RateCache(ttl=FX_RATE_CACHE_TTL))
    fetchers = {
        "stock": StockFetcher(fx_fetcher=fx, asset_store=asset_store),
        "crypto": CryptoFetcher(fx_fetcher=fx, asset_store=asset_store),
        "currency": fx,
    }

    return TradeExecutor(
        AccountStore(store_dir=data_dir / STORE_DIR.relative_to(DATA_DIR)),
        PriceResolver(asset_store, fetchers),
        FeePolicyProvider(settings_path=data_dir / SETTINGS_PATH.relative_to(DATA_DIR)),
    )


def _fail(error: Exception) -> None:
    """Report an error and exit non-zero."""
    click.echo(f"ERROR: {getattr(error, 'message', error)}", err=True)
    fees = getattr(error, "fees", None)
    if isinstance(error, TradeRejected) and fees is not None:
        click.echo(f"  {format_fee_info(fees, REPORTING_CURRENCY)['message']}", err=True)
    sys.exit(1)


def _save_prices(executor: TradeExecutor) -> None:
    """Persist any observations the live feeds recorded."""
    store = executor.resolver.asset_store
    if store is not None and len(store) > 0:
        store.save()


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False),
    default=str(DATA_DIR),
    help="Directory for accounts, trades, prices and settings",
)
@click.pass_context
def cli(ctx, verbose, data_dir):
    """Paper Trading Engine - simulated stock, crypto and FX trading."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    ctx.obj = {"data_dir": Path(data_dir)}


def _executor(ctx) -> TradeExecutor:
    if "executor" not in ctx.obj:
        ctx.obj["executor"] = build_executor(ctx.obj["data_dir"])
    return ctx.obj["executor"]


@cli.command("open-account")
@click.argument("user_id")
@click.option("--balance", type=float, default=DEFAULT_STARTING_BALANCE, help="Starting balance")
@click.pass_context
def open_account(ctx, user_id, balance):
    """Open a paper trading account."""
    try:
        account = _executor(ctx).open_account(user_id, balance)
    except TradingError as e:
        _fail(e)
    click.echo(f"Opened account {account.user_id}: {REPORTING_CURRENCY} {account.balance:,.2f}")


@cli.command()
@click.argument("asset_type", type=click.Choice(ASSET_TYPES))
@click.argument("symbol")
@click.pass_context
def price(ctx, asset_type, symbol):
    """Show the current price of an asset."""
    executor = _executor(ctx)
    try:
        quote = executor.get_asset_price(asset_type, symbol)
    except TradingError as e:
        _fail(e)
    finally:
        _save_prices(executor)

    click.echo(f"{asset_type}:{symbol.upper()}  {REPORTING_CURRENCY} {quote['price']:,.4f}")
    click.echo(f"  Change:  {quote['change']:+,.4f} ({quote['change_percent']:+.2f}%)")
    click.echo(f"  Volume:  {quote['volume']:,.0f}")
    click.echo(f"  As of:   {quote['timestamp']} ({quote['source']})")


@cli.command("validate-price")
@click.argument("asset_type", type=click.Choice(ASSET_TYPES))
@click.argument("symbol")
@click.pass_context
def validate_price(ctx, asset_type, symbol):
    """Check whether an asset currently has a tradeable price."""
    executor = _executor(ctx)
    try:
        report = executor.validate_asset_price(asset_type, symbol)
    except TradingError as e:
        _fail(e)
    finally:
        _save_prices(executor)

    status = "TRADEABLE" if report["is_tradeable"] else "NOT TRADEABLE"
    click.echo(f"{report['asset_type']}:{report['symbol']}: {status}")
    if report["quote"]:
        click.echo(f"  Price: {REPORTING_CURRENCY} {report['quote']['price']:,.4f} ({report['quote']['source']})")
        click.echo(f"  Age:   {report['age_seconds']:.0f}s")
    if report["reason"]:
        click.echo(f"  Reason: {report['reason']}")


@cli.command()
@click.argument("asset_type", type=click.Choice(ASSET_TYPES))
@click.argument("symbol")
@click.argument("quantity")
@click.option("--side", type=click.Choice(["buy", "sell"]), default="buy", help="Trade side")
@click.pass_context
def fees(ctx, asset_type, symbol, quantity, side):
    """Preview the fees on a trade."""
    executor = _executor(ctx)
    try:
        preview = executor.get_trade_fees(asset_type, symbol, quantity, side)
    except TradingError as e:
        _fail(e)
    finally:
        _save_prices(executor)

    click.echo(f"{side.upper()} {preview['quantity']} {preview['symbol']} @ {preview['price']:,.4f}")
    click.echo(f"  Trade amount: {preview['trade_amount']:,.2f}")
    click.echo(f"  Platform fee: {preview['fees']['platform_fee']:,.2f}")
    click.echo(f"  Tax:          {preview['fees']['tax_amount']:,.2f}")
    click.echo(f"  Total fees:   {preview['fees']['total_fees']:,.2f}")
    click.echo(preview["message"])


def _trade(ctx, side, user_id, asset_type, symbol, quantity):
    executor = _executor(ctx)
    try:
        if side == "buy":
            result = executor.buy(user_id, asset_type, symbol, quantity)
        else:
            result = executor.sell(user_id, asset_type, symbol, quantity)
    except TradingError as e:
        _fail(e)
    finally:
        _save_prices(executor)

    trade = result.trade
    click.echo(f"{side.upper()} {trade.quantity} {trade.asset_type}:{trade.symbol} @ {trade.price:,.4f}")
    click.echo(f"  {format_fee_info(result.fees, REPORTING_CURRENCY)['message']}")
    click.echo(f"  New balance: {REPORTING_CURRENCY} {result.new_balance:,.2f}")
    return result


@cli.command()
@click.argument("user_id")
@click.argument("asset_type", type=click.Choice(ASSET_TYPES))
@click.argument("symbol")
@click.argument("quantity")
@click.pass_context
def buy(ctx, user_id, asset_type, symbol, quantity):
    """Buy an asset at the current price."""
    result = _trade(ctx, "buy", user_id, asset_type, symbol, quantity)
    click.echo(f"  Holding: {result.holding.quantity} @ avg cost {result.holding.avg_cost_basis:,.4f}")


@cli.command()
@click.argument("user_id")
@click.argument("asset_type", type=click.Choice(ASSET_TYPES))
@click.argument("symbol")
@click.argument("quantity")
@click.pass_context
def sell(ctx, user_id, asset_type, symbol, quantity):
    """Sell an asset at the current price."""
    result = _trade(ctx, "sell", user_id, asset_type, symbol, quantity)
    click.echo(f"  Remaining: {result.remaining_quantity}")
    click.echo(f"  P&L: {result.profit_loss:+,.2f} ({result.profit_loss_pct:+.2f}%)")


@cli.command()
@click.argument("user_id")
@click.option("--prices", is_flag=True, help="Value holdings at current prices")
@click.pass_context
def portfolio(ctx, user_id, prices):
    """Show balance and holdings."""
    executor = _executor(ctx)
    try:
        summary = executor.get_portfolio(user_id, with_prices=prices)
    except TradingError as e:
        _fail(e)
    finally:
        _save_prices(executor)

    click.echo("=" * 60)
    click.echo(f"PORTFOLIO: {user_id}")
    click.echo("=" * 60)
    click.echo(f"Balance:     {REPORTING_CURRENCY} {summary['balance']:,.2f}")
    click.echo(f"Invested:    {REPORTING_CURRENCY} {summary['invested']:,.2f}")
    click.echo(f"Total Value: {REPORTING_CURRENCY} {summary['total_value']:,.2f}")
    click.echo(f"Positions:   {summary['n_positions']}")

    if summary["positions"]:
        click.echo("-" * 60)
        click.echo(f"{'Type':<10} {'Symbol':<10} {'Quantity':>14} {'Avg Cost':>12}")
        for pos in summary["positions"]:
            click.echo(
                f"{pos['asset_type']:<10} {pos['symbol']:<10} "
                f"{float(pos['quantity']):>14,.4f} {float(pos['avg_cost_basis']):>12,.4f}"
            )


@cli.command()
@click.argument("user_id")
@click.option("--limit", type=int, default=DEFAULT_TRADE_HISTORY_LIMIT, help="Maximum trades shown")
@click.option("--asset-type", type=click.Choice(ASSET_TYPES), help="Only this asset class (with --symbol)")
@click.option("--symbol", help="Only this symbol, oldest first")
@click.pass_context
def trades(ctx, user_id, limit, asset_type, symbol):
    """Show trade history."""
    executor = _executor(ctx)
    try:
        if asset_type and symbol:
            rows = executor.get_trade_history(user_id, asset_type, symbol)[:limit]
        else:
            rows = executor.get_user_trades(user_id, limit=limit)
    except TradingError as e:
        _fail(e)

    if not rows:
        click.echo("No trades")
        return

    for t in rows:
        amount = t["fees"]["total_cost"] if t["side"] == "buy" else t["fees"]["net_amount"]
        click.echo(
            f"{t['timestamp']}  {t['side'].upper():<4} {t['quantity']:>12,.4f} "
            f"{t['asset_type']}:{t['symbol']:<10} @ {t['price']:>12,.4f}  {amount:>14,.2f}"
        )


@cli.group()
def settings():
    """Fee settings administration."""
    pass


@settings.command("show")
@click.pass_context
def settings_show(ctx):
    """Show the current fee settings, re-read from the settings file."""
    provider = _executor(ctx).fee_policy
    provider.invalidate()
    current = provider.get_settings()
    for key, value in current.items():
        click.echo(f"{key}: {value}")


@settings.command("update")
@click.option("--platform-fee-pct", type=float, help="Platform fee, % of notional")
@click.option("--tax-pct", type=float, help="Tax, % of notional")
@click.option("--min-fee", type=float, help="Minimum platform fee")
@click.option("--max-fee", type=float, help="Maximum platform fee")
@click.option("--updated-by", default="cli", help="Admin making the change")
@click.pass_context
def settings_update(ctx, platform_fee_pct, tax_pct, min_fee, max_fee, updated_by):
    """Update one or more fee settings."""
    updates = {
        key: value
        for key, value in {
            "platform_fee_pct": platform_fee_pct,
            "tax_pct": tax_pct,
            "min_fee": min_fee,
            "max_fee": max_fee,
        }.items()
        if value is not None
    }
    if not updates:
        click.echo("Nothing to update")
        return

    try:
        policy = _executor(ctx).fee_policy.update_settings(updates, updated_by=updated_by)
    except TradingError as e:
        _fail(e)

    for key, value in policy.to_dict().items():
        click.echo(f"{key}: {value}")


@cli.command()
@click.option(
    "--asset-type",
    type=click.Choice(["crypto", "currency", "all"]),
    default="all",
    help="Which feeds to refresh",
)
@click.pass_context
def refresh(ctx, asset_type):
    """Refresh the price store from the live crypto and FX feeds."""
    executor = _executor(ctx)
    fetchers = executor.resolver.fetchers
    targets = ["crypto", "currency"] if asset_type == "all" else [asset_type]

    failed = False
    for target in targets:
        try:
            observations = fetchers[target].refresh_all()
            tracked = executor.resolver.asset_store.get_symbols(target)
            click.echo(f"{target}: {len(observations)} prices refreshed, {len(tracked)} symbols tracked")
        except (requests.RequestException, ValueError) as e:
            click.echo(f"ERROR: {target} refresh failed: {e}", err=True)
            failed = True

    _save_prices(executor)
    if failed:
        sys.exit(1)


def main():
    """Entry point for CLI."""
    cli()


if __name__ == "__main__":
    main()
