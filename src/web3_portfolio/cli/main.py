"""CLI for the web3 portfolio engine."""

import asyncio
import json
import logging
from decimal import Decimal
from enum import StrEnum
from pathlib import Path
from typing import NoReturn

import typer
from pydantic import BaseModel
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.traceback import install

from web3_portfolio.config import EngineConfig, build_registry, build_store, load_config
from web3_portfolio.core import (
    AggregationEngine,
    AllocationBy,
    EntitlementGate,
    EntitlementTier,
    Network,
    PerformancePeriod,
    PortfolioError,
    PortfolioService,
    ProviderRegistry,
    RefreshCoordinator,
    RefreshFailedError,
    StaticEntitlementSource,
)
from web3_portfolio.core.aggregation import total_value
from web3_portfolio.core.refresh import call_provider
from web3_portfolio.data import get_chain_id, get_native_asset

# Import all providers to trigger auto-registration
from web3_portfolio import providers  # noqa: F401

# Install rich traceback handler
install(show_locals=True)

app = typer.Typer(
    name="web3-portfolio",
    help="Track wallet balances across EVM networks and view portfolio aggregates",
    add_completion=False,
)
alert_app = typer.Typer(help="Manage price, balance and value alerts")
app.add_typer(alert_app, name="alert")

console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)


class OutputFormat(StrEnum):
    """Output format options."""

    TABLE = "table"
    JSON = "json"


class State:
    """Per-invocation wiring shared by the commands."""

    def __init__(self, config: EngineConfig, user: str, tier: EntitlementTier) -> None:
        self.config = config
        self.user = user
        self.tier = tier
        self._service: PortfolioService | None = None
        self._registry: ProviderRegistry | None = None

    @property
    def registry(self) -> ProviderRegistry:
        if self._registry is None:
            self._registry = build_registry(self.config)
        return self._registry

    @property
    def service(self) -> PortfolioService:
        if self._service is None:
            store = build_store(self.config)
            coordinator = RefreshCoordinator(
                store,
                self.registry,
                max_concurrency=self.config.max_concurrency,
                fetch_timeout=self.config.fetch_timeout,
                snapshot_interval=self.config.snapshot_interval,
            )
            self._service = PortfolioService(
                store,
                coordinator,
                StaticEntitlementSource(default=self.tier),
                gate=EntitlementGate(),
                aggregation=AggregationEngine(store, percentage_places=self.config.percentage_places),
            )
        return self._service

    def close(self) -> None:
        if self._service is not None:
            self._service.store.close()
        if self._registry is not None:
            for provider in self._registry.providers():
                close = getattr(provider, "close", None)
                if close is not None:
                    close()


def configure_logging(debug: bool = False) -> None:
    """Route library logging through rich; DEBUG level when ``debug`` is set."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=debug)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if debug else logging.WARNING)


def _fail(error: Exception) -> NoReturn:
    console.print(f"[bold red]Error:[/bold red] {error}", soft_wrap=True)
    raise typer.Exit(1)


def _state(ctx: typer.Context) -> State:
    return ctx.obj


def _usd(value: Decimal) -> str:
    return f"${value:,.2f}"


def _ratio_pct(value: Decimal) -> str:
    return f"{value * 100:+.2f}%"


def _output_json(data: BaseModel | list | dict) -> None:
    """Output models as JSON."""
    if isinstance(data, BaseModel):
        payload = data.model_dump(mode="json")
    elif isinstance(data, dict):
        payload = {str(k): v.model_dump(mode="json") if isinstance(v, BaseModel) else v for k, v in data.items()}
    else:
        payload = [item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in data]
    console.print(json.dumps(payload, indent=2))


@app.callback()
def main(
    ctx: typer.Context,
    db: Path | None = typer.Option(None, "--db", help="SQLite database file (in-memory if omitted)"),
    user: str = typer.Option("local", "--user", "-u", envvar="WEB3_PORTFOLIO_USER", help="Acting user id"),
    tier: str = typer.Option("free", "--tier", "-t", help="Subscription tier: free, subscriber, pro"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug output"),
) -> None:
    """Configure logging, storage and the acting user."""
    configure_logging(debug)
    try:
        config = load_config(database_path=db)
        state = State(config, user, EntitlementTier.parse(tier))
    except PortfolioError as e:
        _fail(e)
    ctx.obj = state
    ctx.call_on_close(state.close)


@app.command()
def networks() -> None:
    """List all supported networks."""
    table = Table(title="Supported Networks", show_header=True, header_style="bold magenta")
    table.add_column("Network", style="cyan")
    table.add_column("Chain ID", style="blue", justify="right")
    table.add_column("Native Asset", style="green")

    for network in Network:
        table.add_row(network.value, str(get_chain_id(network)), get_native_asset(network)["symbol"])

    console.print(table)


@app.command("providers")
def list_providers() -> None:
    """List all registered balance providers."""
    table = Table(title="Balance Providers", show_header=True, header_style="bold magenta")
    table.add_column("Provider", style="cyan")
    table.add_column("Supported Networks", style="green")

    for provider_class in ProviderRegistry.list_provider_classes():
        table.add_row(provider_class.name, ", ".join(n.value for n in provider_class.supported_networks))

    console.print(table)


@app.command()
def create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Portfolio name"),
    format: OutputFormat = typer.Option(OutputFormat.TABLE, "--format", "-f", help="Output format"),
) -> None:
    """Create a portfolio for the acting user."""
    state = _state(ctx)
    try:
        portfolio = state.service.create_portfolio(state.user, name)
    except PortfolioError as e:
        _fail(e)

    if format == OutputFormat.JSON:
        _output_json(portfolio)
    else:
        console.print(f"[green]Created portfolio[/green] {portfolio.name} [dim]({portfolio.id})[/dim]")


@app.command()
def portfolios(
    ctx: typer.Context,
    format: OutputFormat = typer.Option(OutputFormat.TABLE, "--format", "-f", help="Output format"),
) -> None:
    """List the acting user's portfolios."""
    state = _state(ctx)
    items = state.service.list_portfolios(state.user)

    if format == OutputFormat.JSON:
        _output_json(items)
        return
    if not items:
        console.print("\n[yellow]No portfolios found[/yellow]")
        return

    table = Table(title=f"Portfolios of {state.user}", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Addresses", justify="right")
    table.add_column("Value", style="bold green", justify="right")

    for portfolio in items:
        table.add_row(portfolio.id, portfolio.name, str(len(portfolio.addresses)), _usd(total_value(portfolio)))

    console.print(table)


@app.command("add-address")
def add_address(
    ctx: typer.Context,
    portfolio_id: str = typer.Argument(..., help="Portfolio ID"),
    address: str = typer.Argument(..., help="Wallet address to track"),
    network: str = typer.Option("ethereum", "--network", "-n", help="Network the address lives on"),
    label: str | None = typer.Option(None, "--label", "-l", help="Display label"),
) -> None:
    """Track a wallet address in a portfolio."""
    state = _state(ctx)
    try:
        tracked = state.service.add_address(state.user, portfolio_id, network, address, label)
    except PortfolioError as e:
        _fail(e)
    console.print(f"[green]Tracking[/green] {tracked.address} on {tracked.network} [dim]({tracked.id})[/dim]")


@app.command()
def refresh(
    ctx: typer.Context,
    portfolio_id: str = typer.Argument(..., help="Portfolio ID"),
    format: OutputFormat = typer.Option(OutputFormat.TABLE, "--format", "-f", help="Output format"),
) -> None:
    """Refresh balances of every active address in a portfolio."""
    state = _state(ctx)
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            progress.add_task("Refreshing balances...", total=None)
            result = asyncio.run(state.service.refresh(state.user, portfolio_id))
    except RefreshFailedError as e:
        for failure in e.failures:
            console.print(f"[red]✗[/red] {failure.address} ({failure.network}): {failure.reason}")
        _fail(e)
    except PortfolioError as e:
        _fail(e)

    if format == OutputFormat.JSON:
        _output_json(result)
        return

    console.print(
        f"[green]✓ Refreshed {len(result.refreshed)} address(es)[/green]  Total: {_usd(result.total_value)}"
    )
    for failure in result.failed:
        console.print(f"[yellow]![/yellow] {failure.address} ({failure.network}): {failure.reason}")
    for notification in result.alerts:
        console.print(f"[bold magenta]Alert:[/bold magenta] {notification.message}", soft_wrap=True)


@app.command()
def value(
    ctx: typer.Context,
    portfolio_id: str = typer.Argument(..., help="Portfolio ID"),
) -> None:
    """Show the total USD value of a portfolio."""
    state = _state(ctx)
    try:
        total = state.service.total_value(state.user, portfolio_id)
    except PortfolioError as e:
        _fail(e)
    console.print(f"[bold]Total Value:[/bold] [bold green]{_usd(total)}[/bold green]")


@app.command()
def allocation(
    ctx: typer.Context,
    portfolio_id: str = typer.Argument(..., help="Portfolio ID"),
    by: AllocationBy = typer.Option(AllocationBy.NETWORK, "--by", "-b", help="Group by network or asset"),
    format: OutputFormat = typer.Option(OutputFormat.TABLE, "--format", "-f", help="Output format"),
) -> None:
    """Show how portfolio value splits across networks or assets."""
    state = _state(ctx)
    try:
        buckets = state.service.allocation(state.user, portfolio_id, by)
    except PortfolioError as e:
        _fail(e)

    if format == OutputFormat.JSON:
        _output_json(buckets)
        return

    table = Table(title=f"Allocation by {by.value}", show_header=True, header_style="bold magenta")
    table.add_column(by.value.capitalize(), style="cyan")
    if by == AllocationBy.ASSET:
        table.add_column("Network", style="blue")
        table.add_column("Amount", justify="right")
    else:
        table.add_column("Assets", justify="right")
    table.add_column("Value", style="bold green", justify="right")
    table.add_column("Share", style="yellow", justify="right")

    for bucket in sorted(buckets.values(), key=lambda b: b.value, reverse=True):
        if by == AllocationBy.ASSET:
            row = [bucket.symbol, bucket.network.value, f"{bucket.amount:,.4f}"]
        else:
            row = [bucket.network.value, str(bucket.asset_count)]
        table.add_row(*row, _usd(bucket.value), f"{bucket.percentage}%")

    console.print(table)


@app.command()
def performance(
    ctx: typer.Context,
    portfolio_id: str = typer.Argument(..., help="Portfolio ID"),
    period: PerformancePeriod = typer.Option(PerformancePeriod.MONTH, "--period", "-p", help="Look-back window"),
    format: OutputFormat = typer.Option(OutputFormat.TABLE, "--format", "-f", help="Output format"),
) -> None:
    """Show value history and returns over a look-back window."""
    state = _state(ctx)
    try:
        view = state.service.performance(state.user, portfolio_id, period)
    except PortfolioError as e:
        _fail(e)

    if format == OutputFormat.JSON:
        _output_json(view)
        return
    if not view.series:
        console.print(f"\n[yellow]Not enough snapshots for {view.period} performance[/yellow]")
        return

    table = Table(title=f"Performance ({view.period})", show_header=True, header_style="bold magenta")
    table.add_column("Time", style="cyan")
    table.add_column("Value", style="bold green", justify="right")
    table.add_column("Change", style="yellow", justify="right")
    for point in view.series:
        table.add_row(point.timestamp.strftime("%Y-%m-%d %H:%M"), _usd(point.value), _ratio_pct(point.change))
    console.print(table)

    console.print(
        f"Total return: {_ratio_pct(view.total_return)}  "
        f"Best: {_ratio_pct(view.best_day)}  Worst: {_ratio_pct(view.worst_day)}"
    )


@app.command()
def summary(
    ctx: typer.Context,
    portfolio_id: str = typer.Argument(..., help="Portfolio ID"),
    top: int = typer.Option(5, "--top", help="Number of top assets to show"),
    format: OutputFormat = typer.Option(OutputFormat.TABLE, "--format", "-f", help="Output format"),
) -> None:
    """Show headline figures of a portfolio."""
    state = _state(ctx)
    try:
        result = state.service.summary(state.user, portfolio_id, top)
    except PortfolioError as e:
        _fail(e)

    if format == OutputFormat.JSON:
        _output_json(result)
        return

    summary_table = Table(show_header=False, box=None)
    summary_table.add_column("Label", style="bold")
    summary_table.add_column("Value", style="bold green")
    summary_table.add_row("Total Value:", _usd(result.total_value))
    summary_table.add_row("Assets:", str(result.asset_count))
    summary_table.add_row("Networks:", str(result.network_count))
    summary_table.add_row("24h:", _ratio_pct(result.change_24h))
    summary_table.add_row("7d:", _ratio_pct(result.change_7d))
    summary_table.add_row("30d:", _ratio_pct(result.change_30d))

    if result.top_assets:
        summary_table.add_row("", "")
        summary_table.add_row("[bold]Top Assets:[/bold]", "")
        for asset in result.top_assets:
            label = f"  {asset.symbol} ({asset.network.value})"
            summary_table.add_row(label, f"{_usd(asset.value)}  {asset.percentage}%")

    console.print(summary_table)


@app.command()
def balances(
    ctx: typer.Context,
    address: str = typer.Argument(..., help="Wallet address to query"),
    network: str = typer.Option("ethereum", "--network", "-n", help="Network to query"),
    format: OutputFormat = typer.Option(OutputFormat.TABLE, "--format", "-f", help="Output format"),
) -> None:
    """
    Look up live balances of an address without storing them.

    Examples:

        web3-portfolio balances 0xABC... --network base
    """
    state = _state(ctx)
    try:
        target = Network.parse(network)
        provider = state.registry.for_network(target)
        if provider is None:
            _fail(PortfolioError(f"No balance provider for network {target}"))
        timeout = state.config.fetch_timeout
        tokens = asyncio.run(asyncio.wait_for(call_provider(provider, target, address, timeout), timeout))
    except TimeoutError:
        _fail(PortfolioError(f"Lookup timed out after {state.config.fetch_timeout:g}s"))
    except PortfolioError as e:
        _fail(e)

    if format == OutputFormat.JSON:
        _output_json(tokens)
        return
    if not tokens:
        console.print("\n[yellow]No balances found[/yellow]")
        return

    table = Table(
        title=f"Balances for {address[:10]}...{address[-8:]} on {target.value}",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("Token", style="green")
    table.add_column("Balance", style="white", justify="right")
    table.add_column("Price", justify="right")
    table.add_column("USD Value", style="bold green", justify="right")
    for token in tokens:
        table.add_row(token.symbol, f"{token.amount:,.4f}", _usd(token.price), _usd(token.amount * token.price))
    console.print(table)


@alert_app.command("add")
def add_alert(
    ctx: typer.Context,
    portfolio_id: str = typer.Argument(..., help="Portfolio ID"),
    kind: str = typer.Argument(..., help="What to watch: price, balance or value"),
    operator: str = typer.Argument(..., help="Comparison: gt, lt, gte, lte, eq, ne (or >, <, ...)"),
    threshold: str = typer.Argument(..., help="USD price or value, or token amount"),
    name: str | None = typer.Option(None, "--name", help="Display name (derived from the rule if omitted)"),
    symbol: str | None = typer.Option(None, "--symbol", "-s", help="Token symbol (price and balance alerts)"),
    network: str | None = typer.Option(None, "--network", "-n", help="Limit a price alert to one network"),
    address_id: str | None = typer.Option(None, "--address", "-a", help="Address ID (balance alerts)"),
) -> None:
    """
    Create an alert on a portfolio.

    Examples:

        web3-portfolio alert add <portfolio> price lt 2500 --symbol ETH

        web3-portfolio alert add <portfolio> value gte 100000
    """
    state = _state(ctx)
    label = name or " ".join(part for part in (symbol, kind, operator, threshold) if part)
    try:
        rule = state.service.create_alert(
            state.user,
            portfolio_id,
            label,
            kind,
            operator,
            threshold,
            symbol=symbol,
            network=network,
            address_id=address_id,
        )
    except PortfolioError as e:
        _fail(e)
    console.print(f"[green]Created alert[/green] {rule.name} [dim]({rule.id})[/dim]")


@alert_app.command("list")
def list_alerts(
    ctx: typer.Context,
    portfolio_id: str | None = typer.Option(None, "--portfolio", "-p", help="Only alerts of this portfolio"),
    format: OutputFormat = typer.Option(OutputFormat.TABLE, "--format", "-f", help="Output format"),
) -> None:
    """List the acting user's alerts."""
    state = _state(ctx)
    try:
        rules = state.service.list_alerts(state.user, portfolio_id)
    except PortfolioError as e:
        _fail(e)

    if format == OutputFormat.JSON:
        _output_json(rules)
        return
    if not rules:
        console.print("\n[yellow]No alerts found[/yellow]")
        return

    table = Table(title=f"Alerts of {state.user}", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Rule")
    table.add_column("Active", justify="center")
    table.add_column("Last Triggered", style="dim")
    for rule in rules:
        watched = rule.symbol or rule.kind.value
        table.add_row(
            rule.id,
            rule.name,
            f"{watched} {rule.kind.value} {rule.operator.value} {rule.threshold}",
            "[green]yes[/green]" if rule.active else "[dim]no[/dim]",
            rule.last_triggered_at.isoformat(timespec="seconds") if rule.last_triggered_at else "-",
        )
    console.print(table)


@alert_app.command("toggle")
def toggle_alert(
    ctx: typer.Context,
    alert_id: str = typer.Argument(..., help="Alert ID"),
) -> None:
    """Pause or resume an alert."""
    state = _state(ctx)
    try:
        rule = state.service.toggle_alert(state.user, alert_id)
    except PortfolioError as e:
        _fail(e)
    console.print(f"Alert {rule.name} is now {'active' if rule.active else 'paused'}")


@alert_app.command("remove")
def remove_alert(
    ctx: typer.Context,
    alert_id: str = typer.Argument(..., help="Alert ID"),
) -> None:
    """Delete an alert."""
    state = _state(ctx)
    try:
        state.service.delete_alert(state.user, alert_id)
    except PortfolioError as e:
        _fail(e)
    console.print(f"[green]Removed alert[/green] {alert_id}")


@alert_app.command("check")
def check_alerts(
    ctx: typer.Context,
    portfolio_id: str = typer.Argument(..., help="Portfolio ID"),
    format: OutputFormat = typer.Option(OutputFormat.TABLE, "--format", "-f", help="Output format"),
) -> None:
    """Check a portfolio's alerts against its stored balances without refreshing."""
    state = _state(ctx)
    try:
        fired = state.service.check_alerts(state.user, portfolio_id)
    except PortfolioError as e:
        _fail(e)

    if format == OutputFormat.JSON:
        _output_json(fired)
        return
    if not fired:
        console.print("[dim]No alerts triggered[/dim]")
        return
    for notification in fired:
        console.print(f"[bold magenta]Alert:[/bold magenta] {notification.message}", soft_wrap=True)


if __name__ == "__main__":
    app()
