"""Command-line interface for pmm."""

import asyncio
import os
import sys
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from pmm import __version__
from pmm.config import get_settings, reload_settings
from pmm.utils.logging import setup_logging

console = Console()


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """pmm - Polymarket market maker."""
    pass


@cli.command()
@click.option("--dry-run/--live", default=None, help="Dry run mode (no real orders)")
@click.option("--market", "markets", multiple=True, help="Market slug to quote (repeatable)")
@click.option("--max-markets", type=int, help="Markets to quote when discovering")
@click.option("--spread-cents", type=float, help="Base target spread in cents")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]), default=None)
def run(
    dry_run: Optional[bool],
    markets: tuple[str, ...],
    max_markets: Optional[int],
    spread_cents: Optional[float],
    log_level: Optional[str],
) -> None:
    """Run market makers for configured or discovered markets."""
    # Override settings from CLI
    if dry_run is not None:
        os.environ["DRY_RUN"] = str(dry_run).lower()
    if markets:
        os.environ["MARKET_SLUGS"] = '["' + '","'.join(markets) + '"]'
    if max_markets is not None:
        os.environ["MAX_ACTIVE_MARKETS"] = str(max_markets)
    if spread_cents is not None:
        os.environ["TARGET_SPREAD_CENTS"] = str(spread_cents)
    if log_level:
        os.environ["LOG_LEVEL"] = log_level

    settings = reload_settings()

    mode = "[yellow]DRY RUN[/yellow]" if settings.dry_run else "[red]LIVE TRADING[/red]"
    console.print(f"\n[bold]Polymarket Market Maker[/bold] - {mode}\n")

    if not settings.dry_run and not settings.is_trading_enabled():
        console.print(
            "[red]Error:[/red] Live trading requires PRIVATE_KEY and POLY_API_KEY/SECRET/PASSPHRASE.\n"
            "Set these in your .env file or environment."
        )
        sys.exit(1)

    if settings.wallet_address:
        console.print(f"[dim]Wallet:[/dim] {settings.wallet_address}")
    console.print(f"[dim]Target spread:[/dim] {settings.target_spread_cents:.1f}c")
    console.print(f"[dim]Notional per order:[/dim] ${settings.notional_per_order_usdc}")
    console.print(f"[dim]Max inventory:[/dim] {settings.max_inventory:.0f} shares")
    console.print()

    from pmm.market_maker.bot import run_market_makers

    try:
        asyncio.run(run_market_makers(settings))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")


@cli.command()
@click.option("--limit", default=20, help="Maximum markets to show")
@click.option("--min-volume", type=float, help="Minimum 24h volume in USDC")
def markets(limit: int, min_volume: Optional[float]) -> None:
    """List tradable binary markets by volume."""
    setup_logging("WARNING")
    settings = get_settings()

    async def _markets() -> None:
        from pmm.api.gamma import GammaClient

        console.print("[bold]Fetching markets...[/bold]\n")

        async with GammaClient() as client:
            found = await client.discover_markets(
                min_volume=settings.min_volume_usdc if min_volume is None else min_volume,
                limit=limit,
            )

        table = Table(title=f"Binary Markets ({len(found)})")
        table.add_column("Slug", style="cyan", max_width=40)
        table.add_column("Question", max_width=50)
        table.add_column("Volume", justify="right")
        table.add_column("YES", justify="right")
        table.add_column("NO", justify="right")
        table.add_column("Ends")

        for market in found:
            table.add_row(
                market.slug[:40],
                market.question[:50],
                f"${float(market.volume):,.0f}",
                f"{float(market.yes_token.price):.3f}",
                f"{float(market.no_token.price):.3f}",
                market.end_date.strftime("%Y-%m-%d") if market.end_date else "-",
            )

        console.print(table)

    asyncio.run(_markets())


@cli.command(name="cancel-all")
@click.confirmation_option(prompt="Cancel every open order on the account?")
def cancel_all() -> None:
    """Cancel every open order for the account."""
    setup_logging("WARNING")

    async def _cancel() -> None:
        from pmm.executor.async_clob import ClobError, create_async_clob_client

        client = create_async_clob_client()
        if client is None:
            console.print("[red]Error:[/red] API credentials not configured.")
            sys.exit(1)
        try:
            result = await client.cancel_all()
        except ClobError as e:
            console.print(f"[red]Cancel failed:[/red] {e}")
            sys.exit(1)
        finally:
            await client.close()

        canceled = result.get("canceled", []) if isinstance(result, dict) else []
        not_canceled = result.get("not_canceled", {}) if isinstance(result, dict) else {}
        console.print(f"[green]Cancelled:[/green] {len(canceled)}")
        if not_canceled:
            console.print(f"[yellow]Not cancelled:[/yellow] {len(not_canceled)}")
            for order_id, reason in list(not_canceled.items())[:10]:
                console.print(f"  [dim]{order_id[:20]}...[/dim] {reason}")

    asyncio.run(_cancel())


@cli.command()
def status() -> None:
    """Show stored inventory and PnL."""
    from pmm.data.database import init_db, set_db_path
    from pmm.data.repositories import FillRepository, InventoryRepository
    from pmm.market_maker.pnl import pnl_summary, realized_pnl
    from pmm.market_maker.types import Fill, Side

    settings = get_settings()
    set_db_path(settings.db_path)
    init_db()

    positions = InventoryRepository.load_all()
    fills = [
        Fill(
            order_id=row["order_id"],
            token_id=row["token_id"],
            side=Side(row["side"]),
            price=row["price"],
            size=row["size"],
            fee=row["fee"],
            timestamp=row["timestamp"],
        )
        for row in FillRepository.get_all_sync()
    ]

    inv_table = Table(title="Inventory")
    inv_table.add_column("Token", style="cyan")
    inv_table.add_column("Shares", justify="right")
    for token_id, shares in sorted(positions.items()):
        style = "green" if shares > 0 else "red" if shares < 0 else ""
        inv_table.add_row(f"{token_id[:20]}...", f"[{style}]{shares:,.2f}[/{style}]" if style else f"{shares:,.2f}")
    console.print(inv_table)
    console.print()

    pnl_table = Table(title="Realized PnL by Token")
    pnl_table.add_column("Token", style="cyan")
    pnl_table.add_column("Trades", justify="right")
    pnl_table.add_column("Bought", justify="right")
    pnl_table.add_column("Sold", justify="right")
    pnl_table.add_column("Avg Buy", justify="right")
    pnl_table.add_column("Avg Sell", justify="right")
    pnl_table.add_column("Realized", justify="right")
    for token_id, pnl in realized_pnl(fills).items():
        pnl_table.add_row(
            f"{token_id[:20]}...",
            str(pnl.trade_count),
            f"{pnl.buy_volume:,.2f}",
            f"{pnl.sell_volume:,.2f}",
            f"{pnl.avg_buy_price:.4f}",
            f"{pnl.avg_sell_price:.4f}",
            f"${pnl.realized:,.4f}",
        )
    console.print(pnl_table)

    summary = pnl_summary(fills)
    console.print(f"\n[dim]Total realized:[/dim] ${summary['total_realized']:,.4f}")
    console.print(f"[dim]Total fees:[/dim] ${summary['total_fees']:,.4f}")
    console.print(f"[dim]Trades:[/dim] {summary['total_trades']}")
    console.print(f"[dim]Avg spread captured:[/dim] {summary['avg_spread_captured']:.4f}")


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
