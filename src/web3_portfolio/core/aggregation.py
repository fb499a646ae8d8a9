"""Aggregate views over stored balances and valuation snapshots."""

from collections.abc import Callable, Hashable, Iterable
from datetime import UTC, date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, TypeVar

from web3_portfolio.core.models import (
    AllocationBy,
    AssetAllocation,
    Network,
    NetworkAllocation,
    PerformancePeriod,
    PerformancePoint,
    PerformanceView,
    Portfolio,
    PortfolioSummary,
    ValuationSnapshot,
    asset_key,
    utcnow,
)

if TYPE_CHECKING:
    from web3_portfolio.store.base import PortfolioStore

K = TypeVar("K", bound=Hashable)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def total_value(portfolio: Portfolio) -> Decimal:
    """
    Sum of amount x price over every balance of every address.

    Parameters
    ----------
    portfolio : Portfolio
        Portfolio with loaded balances

    Returns
    -------
    Decimal
        Total USD value (exact decimal arithmetic)

    """
    return sum((balance.value for address in portfolio.addresses for balance in address.balances), ZERO)


def distribute_percentages(values: dict[K, Decimal], places: int = 2) -> dict[K, Decimal]:
    """
    Convert bucket values into percentages that sum to exactly 100.

    Each share is rounded half-up to ``places`` decimals. Whatever rounding
    leaves over (positive or negative) is added to the largest bucket; equal
    largest buckets are broken by the first key in sorted order. A zero or
    negative total yields 0 for every bucket.

    Parameters
    ----------
    values : dict[K, Decimal]
        Bucket values
    places : int
        Decimal places of the rendered percentages

    Returns
    -------
    dict[K, Decimal]
        Percentages (65.31 means 65.31%)

    """
    quantum = Decimal(1).scaleb(-places)
    total = sum(values.values(), ZERO)
    if total <= 0:
        return {key: ZERO.quantize(quantum) for key in values}

    percentages = {
        key: (value / total * HUNDRED).quantize(quantum, rounding=ROUND_HALF_UP) for key, value in values.items()
    }
    remainder = HUNDRED - sum(percentages.values(), ZERO)
    if remainder:
        largest = max(sorted(values, key=str), key=lambda key: values[key])
        percentages[largest] += remainder
    return percentages


def allocation_by_network(portfolio: Portfolio, places: int = 2) -> dict[Network, NetworkAllocation]:
    """
    Group portfolio value by network.

    Every network with at least one tracked address gets an entry; asset
    count is the number of distinct tokens held on that network.

    """
    values: dict[Network, Decimal] = {}
    tokens: dict[Network, set[str]] = {}
    for address in portfolio.addresses:
        values.setdefault(address.network, ZERO)
        tokens.setdefault(address.network, set())
        for balance in address.balances:
            values[address.network] += balance.value
            tokens[address.network].add(balance.token_id)

    percentages = distribute_percentages(values, places)
    return {
        network: NetworkAllocation(
            network=network,
            value=values[network],
            percentage=percentages[network],
            asset_count=len(tokens[network]),
        )
        for network in values
    }


def allocation_by_asset(portfolio: Portfolio, places: int = 2) -> dict[str, AssetAllocation]:
    """
    Group portfolio value by token symbol per network.

    The same symbol on two networks stays two entries; holdings of one symbol
    on one network across several addresses are merged. Keys are
    ``network:SYMBOL``.

    """
    values: dict[str, Decimal] = {}
    amounts: dict[str, Decimal] = {}
    meta: dict[str, tuple[str, Network]] = {}
    for address in portfolio.addresses:
        for balance in address.balances:
            key = asset_key(address.network, balance.symbol)
            values[key] = values.get(key, ZERO) + balance.value
            amounts[key] = amounts.get(key, ZERO) + balance.amount
            meta[key] = (balance.symbol, address.network)

    percentages = distribute_percentages(values, places)
    return {
        key: AssetAllocation(
            symbol=meta[key][0],
            network=meta[key][1],
            value=values[key],
            percentage=percentages[key],
            amount=amounts[key],
        )
        for key in values
    }


def _ratio(current: Decimal, previous: Decimal) -> Decimal:
    if previous == 0:
        return ZERO
    return (current - previous) / previous


def _period_label(period: PerformancePeriod | timedelta) -> str:
    if isinstance(period, PerformancePeriod):
        return period.value
    return f"{int(period.total_seconds())}s"


def _close_of_day(ordered: list[ValuationSnapshot]) -> list[ValuationSnapshot]:
    """Last snapshot of each UTC date, from snapshots sorted by time."""
    closes: dict[date, ValuationSnapshot] = {}
    for snapshot in ordered:
        closes[snapshot.timestamp.astimezone(UTC).date()] = snapshot
    return list(closes.values())


def _window(period: PerformancePeriod | timedelta) -> timedelta | None:
    if isinstance(period, PerformancePeriod):
        return period.window
    return period


def performance(
    snapshots: Iterable[ValuationSnapshot],
    period: PerformancePeriod | timedelta,
    now: datetime | None = None,
) -> PerformanceView:
    """
    Build a performance series from valuation snapshots.

    Parameters
    ----------
    snapshots : Iterable[ValuationSnapshot]
        Snapshot history of one portfolio (any order)
    period : PerformancePeriod | timedelta
        Look-back window ending at ``now``
    now : datetime | None
        End of the window; current time if None

    Returns
    -------
    PerformanceView
        One point per UTC day in the window, taken from the last snapshot of
        that day. Changes and returns are ratios relative to the previous
        day. Fewer than two days of history give an empty series with zero
        return.

    """
    now = now or utcnow()
    window = _window(period)
    start = now - window if window is not None else None
    in_window = sorted(
        (s for s in snapshots if s.timestamp <= now and (start is None or s.timestamp >= start)),
        key=lambda s: (s.timestamp, s.tick),
    )
    daily = _close_of_day(in_window)

    view = PerformanceView(period=_period_label(period))
    if len(daily) < 2:
        return view

    series = [PerformancePoint(timestamp=daily[0].timestamp, value=daily[0].total_value, change=ZERO)]
    for previous, current in zip(daily, daily[1:], strict=False):
        series.append(
            PerformancePoint(
                timestamp=current.timestamp,
                value=current.total_value,
                change=_ratio(current.total_value, previous.total_value),
            )
        )

    changes = [point.change for point in series[1:]]
    view.series = series
    view.total_return = _ratio(series[-1].value, series[0].value)
    view.best_day = max(changes)
    view.worst_day = min(changes)
    return view


def value_change(
    current: Decimal,
    snapshots: Iterable[ValuationSnapshot],
    lookback: timedelta,
    now: datetime | None = None,
) -> Decimal:
    """
    Ratio change of ``current`` against the latest snapshot at or before ``now - lookback``.

    Returns 0 when no such snapshot exists or its value is zero.

    """
    cutoff = (now or utcnow()) - lookback
    baseline = None
    for snapshot in snapshots:
        if snapshot.timestamp <= cutoff and (baseline is None or snapshot.timestamp > baseline.timestamp):
            baseline = snapshot
    if baseline is None:
        return ZERO
    return _ratio(current, baseline.total_value)


def portfolio_summary(
    portfolio: Portfolio,
    snapshots: Iterable[ValuationSnapshot],
    now: datetime | None = None,
    top_n: int = 5,
    places: int = 2,
) -> PortfolioSummary:
    """
    Headline figures: total value, asset/network counts, top assets, recent changes.

    Parameters
    ----------
    portfolio : Portfolio
        Portfolio with loaded balances
    snapshots : Iterable[ValuationSnapshot]
        Snapshot history for the change figures
    now : datetime | None
        Reference time; current time if None
    top_n : int
        Number of top assets by value
    places : int
        Decimal places of asset percentages

    Returns
    -------
    PortfolioSummary
        Summary view

    """
    now = now or utcnow()
    history = list(snapshots)
    current = total_value(portfolio)
    assets = allocation_by_asset(portfolio, places)
    networks = {address.network for address in portfolio.addresses if address.balances}
    top = sorted(assets.values(), key=lambda a: (-a.value, a.key))[:top_n]

    return PortfolioSummary(
        portfolio_id=portfolio.id,
        total_value=current,
        asset_count=len(assets),
        network_count=len(networks),
        top_assets=top,
        change_24h=value_change(current, history, timedelta(days=1), now),
        change_7d=value_change(current, history, timedelta(days=7), now),
        change_30d=value_change(current, history, timedelta(days=30), now),
    )


class AggregationEngine:
    """
    Computes aggregate views from the current store state.

    Never writes to the store.

    Parameters
    ----------
    store : PortfolioStore
        Source of portfolios and snapshots
    percentage_places : int
        Decimal places of allocation percentages
    clock : Callable[[], datetime] | None
        Source of "now" for windowed views

    """

    def __init__(
        self,
        store: "PortfolioStore",
        percentage_places: int = 2,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.percentage_places = percentage_places
        self.clock = clock or utcnow

    def total_value(self, portfolio_id: str) -> Decimal:
        """Total USD value of a portfolio."""
        return total_value(self.store.get_portfolio(portfolio_id))

    def allocation(
        self,
        portfolio_id: str,
        by: AllocationBy | str = AllocationBy.NETWORK,
    ) -> dict[Network, NetworkAllocation] | dict[str, AssetAllocation]:
        """
        Allocation by network or by asset.

        Raises
        ------
        ValidationError
            If ``by`` names neither grouping

        """
        portfolio = self.store.get_portfolio(portfolio_id)
        if AllocationBy.parse(by) is AllocationBy.ASSET:
            return allocation_by_asset(portfolio, self.percentage_places)
        return allocation_by_network(portfolio, self.percentage_places)

    def performance(self, portfolio_id: str, period: PerformancePeriod | timedelta) -> PerformanceView:
        """Performance over a look-back window ending now."""
        now = self.clock()
        window = _window(period)
        since = now - window if window is not None else None
        snapshots = self.store.list_snapshots(portfolio_id, since=since, until=now)
        return performance(snapshots, period, now)

    def summary(self, portfolio_id: str, top_n: int = 5) -> PortfolioSummary:
        """Dashboard summary of a portfolio."""
        portfolio = self.store.get_portfolio(portfolio_id)
        snapshots = self.store.list_snapshots(portfolio_id)
        return portfolio_summary(portfolio, snapshots, self.clock(), top_n, self.percentage_places)
