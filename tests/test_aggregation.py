"""Tests for aggregate views."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from conftest import ADDR_A, ADDR_B, ADDR_C, token

from web3_portfolio.core.aggregation import (
    AggregationEngine,
    allocation_by_asset,
    allocation_by_network,
    distribute_percentages,
    performance,
    portfolio_summary,
    total_value,
    value_change,
)
from web3_portfolio.core.models import (
    Address,
    AllocationBy,
    Balance,
    Network,
    PerformancePeriod,
    Portfolio,
    ValuationSnapshot,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def _address(portfolio, network, address, *tokens):
    record = Address(portfolio_id=portfolio.id, network=network, address=address)
    record.balances = [Balance.from_token(record.id, t) for t in tokens]
    return record


@pytest.fixture
def reference_portfolio():
    """Portfolio with 2.5 ETH @ $3200 on ethereum and 5000 MATIC @ $0.85 on polygon."""
    portfolio = Portfolio(user_id="u1", name="Main")
    portfolio.addresses = [
        _address(portfolio, Network.ETHEREUM, ADDR_A, token("ETH", "2.5", "3200")),
        _address(portfolio, Network.POLYGON, ADDR_B, token("MATIC", "5000", "0.85")),
    ]
    return portfolio


def _snapshots(*values, start=NOW - timedelta(days=3), step=timedelta(days=1)):
    return [
        ValuationSnapshot(portfolio_id="p", tick=i, timestamp=start + step * i, total_value=Decimal(v))
        for i, v in enumerate(values)
    ]


def test_total_value(reference_portfolio):
    """Test total value of the reference portfolio."""
    assert total_value(reference_portfolio) == Decimal("12250")


def test_allocation_by_network(reference_portfolio):
    """Test network shares are rounded to 2 places and sum to 100."""
    allocation = allocation_by_network(reference_portfolio)

    assert allocation[Network.ETHEREUM].percentage == Decimal("65.31")
    assert allocation[Network.POLYGON].percentage == Decimal("34.69")
    assert allocation[Network.ETHEREUM].value == Decimal("8000")
    assert allocation[Network.ETHEREUM].asset_count == 1
    assert sum(a.percentage for a in allocation.values()) == Decimal("100")


def test_allocation_zero_value():
    """Test a worthless portfolio yields 0% everywhere without dividing by zero."""
    portfolio = Portfolio(user_id="u1", name="Dust")
    portfolio.addresses = [
        _address(portfolio, Network.ETHEREUM, ADDR_A, token("ETH", "0", "3200")),
        _address(portfolio, Network.BASE, ADDR_B),
    ]

    allocation = allocation_by_network(portfolio)

    assert set(allocation) == {Network.ETHEREUM, Network.BASE}
    assert all(a.percentage == 0 for a in allocation.values())


def test_allocation_empty_portfolio():
    """Test a portfolio without addresses has no buckets."""
    assert allocation_by_network(Portfolio(user_id="u1", name="Empty")) == {}


@pytest.mark.parametrize(
    ("values", "expected"),
    [
        ({"a": Decimal("1"), "b": Decimal("1"), "c": Decimal("1")}, {"a": "33.34", "b": "33.33", "c": "33.33"}),
        ({"a": Decimal("2"), "b": Decimal("1")}, {"a": "66.67", "b": "33.33"}),
        ({"a": Decimal("1"), "b": Decimal("0")}, {"a": "100.00", "b": "0.00"}),
    ],
)
def test_distribute_percentages(values, expected):
    """Test rounding remainder goes to the largest bucket, ties to the first key."""
    result = distribute_percentages(values)

    assert result == {k: Decimal(v) for k, v in expected.items()}
    assert sum(result.values()) == Decimal("100")


def test_distribute_percentages_places():
    """Test configurable precision."""
    result = distribute_percentages({"a": Decimal("1"), "b": Decimal("2")}, places=4)

    assert result == {"a": Decimal("33.3333"), "b": Decimal("66.6667")}


def test_allocation_by_asset_merges_addresses():
    """Test the same symbol on one network merges, but stays separate across networks."""
    portfolio = Portfolio(user_id="u1", name="Main")
    portfolio.addresses = [
        _address(portfolio, Network.ETHEREUM, ADDR_A, token("USDC", "100", "1", "0xusdc")),
        _address(portfolio, Network.ETHEREUM, ADDR_B, token("USDC", "50", "1", "0xusdc")),
        _address(portfolio, Network.POLYGON, ADDR_C, token("USDC", "50", "1", "0xusdc-poly")),
    ]

    allocation = allocation_by_asset(portfolio)

    assert set(allocation) == {"ethereum:USDC", "polygon:USDC"}
    assert allocation["ethereum:USDC"].amount == Decimal("150")
    assert allocation["ethereum:USDC"].percentage == Decimal("75.00")
    assert allocation["polygon:USDC"].percentage == Decimal("25.00")


def test_performance_series():
    """Test performance points, total return and best/worst changes as ratios."""
    view = performance(_snapshots("100", "110", "99", "121"), PerformancePeriod.WEEK, NOW)

    assert [p.value for p in view.series] == [Decimal("100"), Decimal("110"), Decimal("99"), Decimal("121")]
    assert view.series[0].change == 0
    assert view.series[1].change == Decimal("0.1")
    assert view.total_return == Decimal("0.21")
    assert view.best_day == max(p.change for p in view.series[1:])
    assert view.worst_day == Decimal("-0.1")


def test_performance_collapses_intraday_snapshots():
    """Test best and worst day compare the last value of each day, not every refresh."""
    morning = datetime(2024, 5, 31, 10, 0, tzinfo=UTC)
    offsets = [timedelta(0), timedelta(minutes=5), timedelta(minutes=10), timedelta(days=1)]
    history = [
        ValuationSnapshot(portfolio_id="p", tick=i, timestamp=morning + offset, total_value=Decimal(value))
        for i, (offset, value) in enumerate(zip(offsets, ["100", "200", "100", "110"], strict=True))
    ]

    view = performance(reversed(history), PerformancePeriod.WEEK, NOW)

    assert [(p.timestamp, p.value) for p in view.series] == [
        (morning + timedelta(minutes=10), Decimal("100")),
        (morning + timedelta(days=1), Decimal("110")),
    ]
    assert view.best_day == Decimal("0.1")
    assert view.worst_day == Decimal("0.1")
    assert view.total_return == Decimal("0.1")


def test_performance_single_day_is_not_enough_history():
    """Test several snapshots on one day still give an empty view."""
    history = _snapshots("100", "200", "300", start=NOW - timedelta(hours=2), step=timedelta(minutes=30))

    view = performance(history, PerformancePeriod.DAY, NOW)

    assert view.series == []
    assert view.total_return == 0


def test_performance_window():
    """Test snapshots outside the window are ignored."""
    view = performance(_snapshots("100", "200", "300", "400"), PerformancePeriod.DAY, NOW)

    # Only the last two snapshots fall within 24h of NOW
    assert len(view.series) == 2
    assert view.total_return == Decimal("100") / Decimal("300")


@pytest.mark.parametrize("values", [(), ("100",)])
def test_performance_not_enough_history(values):
    """Test fewer than two snapshots give an empty view."""
    view = performance(_snapshots(*values), PerformancePeriod.ALL, NOW)

    assert view.series == []
    assert view.total_return == 0


def test_performance_custom_window():
    """Test a timedelta window."""
    view = performance(_snapshots("100", "150", "300"), timedelta(days=3), NOW - timedelta(days=1))

    assert view.period == f"{3 * 24 * 3600}s"
    assert view.total_return == Decimal("2")


def test_value_change():
    """Test change against the latest snapshot at or before the look-back cutoff."""
    history = _snapshots("100", "200", "400")

    assert value_change(Decimal("500"), history, timedelta(days=1), NOW) == Decimal("0.25")
    assert value_change(Decimal("500"), history, timedelta(days=30), NOW) == 0


def test_portfolio_summary(reference_portfolio):
    """Test summary headline figures."""
    history = [
        ValuationSnapshot(portfolio_id="p", tick=1, timestamp=NOW - timedelta(days=2), total_value=Decimal("10000"))
    ]

    summary = portfolio_summary(reference_portfolio, history, NOW, top_n=1)

    assert summary.total_value == Decimal("12250")
    assert summary.asset_count == 2
    assert summary.network_count == 2
    assert [a.symbol for a in summary.top_assets] == ["ETH"]
    assert summary.change_24h == Decimal("0.225")
    assert summary.change_7d == 0


def test_engine_reads_store(store, clock):
    """Test the engine computes views from stored balances."""
    portfolio = store.create_portfolio("u1", "Main")
    eth = store.add_address(portfolio.id, Network.ETHEREUM, ADDR_A)
    poly = store.add_address(portfolio.id, Network.POLYGON, ADDR_B)
    store.replace_balances(eth.id, [Balance.from_token(eth.id, token("ETH", "2.5", "3200"))])
    store.replace_balances(poly.id, [Balance.from_token(poly.id, token("MATIC", "5000", "0.85"))])
    engine = AggregationEngine(store, clock=clock)

    assert engine.total_value(portfolio.id) == Decimal("12250")
    by_asset = engine.allocation(portfolio.id, AllocationBy.ASSET)
    assert by_asset["ethereum:ETH"].percentage == Decimal("65.31")
    assert engine.performance(portfolio.id, PerformancePeriod.MONTH).series == []
