"""Tests for the refresh coordinator."""

import asyncio
import gc
import logging
from decimal import Decimal

import pytest
from conftest import ADDR_A, ADDR_B, ADDR_C, token

from web3_portfolio.core.exceptions import NotFoundError, ProviderError, RefreshFailedError
from web3_portfolio.core.models import Balance, Network
from web3_portfolio.core.refresh import TIMEOUT_REASON, RefreshCoordinator
from web3_portfolio.core.registry import ProviderRegistry
from web3_portfolio.providers import StaticBalanceProvider


@pytest.fixture
def portfolio(store):
    portfolio = store.create_portfolio("u1", "Main")
    store.add_address(portfolio.id, Network.ETHEREUM, ADDR_A)
    store.add_address(portfolio.id, Network.POLYGON, ADDR_B)
    return portfolio


def _by_network(store, portfolio_id):
    return {a.network: a for a in store.get_portfolio(portfolio_id).addresses}


def test_refresh_all_addresses(store, coordinator, portfolio):
    """Test a clean refresh stores balances and records a snapshot."""
    result = asyncio.run(coordinator.refresh(portfolio.id))

    assert len(result.refreshed) == 2
    assert result.failed == []
    assert result.total_value == Decimal("12250")
    assert result.snapshot_recorded

    snapshots = store.list_snapshots(portfolio.id)
    assert [s.total_value for s in snapshots] == [Decimal("12250")]
    assert _by_network(store, portfolio.id)[Network.ETHEREUM].balances[0].symbol == "ETH"


def test_refresh_timeout_keeps_previous_balances(store, coordinator, provider, portfolio):
    """Test a timed-out address is reported and its stored balances stay as they were."""
    eth = _by_network(store, portfolio.id)[Network.ETHEREUM]
    store.replace_balances(eth.id, [Balance.from_token(eth.id, token("ETH", "1", "3000"))])
    provider.set_delay(Network.ETHEREUM, ADDR_A, 5)

    result = asyncio.run(coordinator.refresh(portfolio.id))

    poly = _by_network(store, portfolio.id)[Network.POLYGON]
    assert [(f.address_id, f.reason) for f in result.failed] == [(eth.id, TIMEOUT_REASON)]
    assert result.refreshed == [poly.id]

    stored = store.get_address(eth.id).balances
    assert [(b.amount, b.price) for b in stored] == [(Decimal("1"), Decimal("3000"))]
    assert result.total_value == Decimal("3000") + Decimal("4250")


def test_refresh_all_fail(store, coordinator, provider, portfolio):
    """Test RefreshFailedError when every address fails, with no snapshot appended."""
    provider.set_error(Network.ETHEREUM, ADDR_A, ProviderError("rate limited"))
    provider.set_error(Network.POLYGON, ADDR_B, ProviderError("node down"))

    with pytest.raises(RefreshFailedError) as exc_info:
        asyncio.run(coordinator.refresh(portfolio.id))

    reasons = sorted(f.reason for f in exc_info.value.failures)
    assert reasons == ["node down", "rate limited"]
    assert store.list_snapshots(portfolio.id) == []


def test_refresh_unexpected_error_is_isolated(store, coordinator, provider, portfolio):
    """Test a provider bug on one address does not abort its siblings."""
    provider.set_error(Network.ETHEREUM, ADDR_A, RuntimeError("boom"))

    result = asyncio.run(coordinator.refresh(portfolio.id))

    assert len(result.refreshed) == 1
    assert result.failed[0].reason == "RuntimeError: boom"


def test_refresh_missing_provider(store, clock, portfolio, provider):
    """Test addresses on networks without a provider are reported as failures."""
    registry = ProviderRegistry()
    registry.bind(provider, [Network.ETHEREUM])
    coordinator = RefreshCoordinator(store, registry, clock=clock)

    result = asyncio.run(coordinator.refresh(portfolio.id))

    assert len(result.refreshed) == 1
    assert "no balance provider" in result.failed[0].reason


def test_refresh_skips_inactive_addresses(store, coordinator, provider, portfolio):
    """Test inactive addresses are not fetched."""
    eth = _by_network(store, portfolio.id)[Network.ETHEREUM]
    store.update_address(eth.id, active=False)

    result = asyncio.run(coordinator.refresh(portfolio.id))

    assert eth.id not in result.refreshed
    assert provider.calls == 1


def test_refresh_missing_portfolio(coordinator):
    """Test refreshing an unknown portfolio raises NotFoundError."""
    with pytest.raises(NotFoundError):
        asyncio.run(coordinator.refresh("missing"))


def test_refresh_empty_portfolio(store, coordinator):
    """Test a portfolio without addresses still records a zero snapshot."""
    portfolio = store.create_portfolio("u1", "Empty")

    result = asyncio.run(coordinator.refresh(portfolio.id))

    assert result.refreshed == []
    assert result.total_value == 0
    assert len(store.list_snapshots(portfolio.id)) == 1


def test_snapshot_once_per_tick(store, coordinator, clock, portfolio):
    """Test repeated refreshes within one tick record one snapshot."""
    first = asyncio.run(coordinator.refresh(portfolio.id))
    clock.advance(seconds=10)
    second = asyncio.run(coordinator.refresh(portfolio.id))
    clock.advance(seconds=coordinator.snapshot_interval)
    third = asyncio.run(coordinator.refresh(portfolio.id))

    assert first.snapshot_recorded
    assert not second.snapshot_recorded
    assert third.snapshot_recorded
    assert len(store.list_snapshots(portfolio.id)) == 2


def test_bounded_concurrency(store, clock):
    """Test no more than max_concurrency fetches run at once."""
    provider = StaticBalanceProvider()
    registry = ProviderRegistry()
    registry.bind(provider)
    portfolio = store.create_portfolio("u1", "Wide")
    for i in range(6):
        address = f"0x{i:040x}"
        store.add_address(portfolio.id, Network.BASE, address)
        provider.set_balances(Network.BASE, address, [token("ETH", "1", "1")])
        provider.set_delay(Network.BASE, address, 0.05)
    coordinator = RefreshCoordinator(store, registry, max_concurrency=2, fetch_timeout=2, clock=clock)

    result = asyncio.run(coordinator.refresh(portfolio.id))

    assert len(result.refreshed) == 6
    assert provider.max_in_flight == 2


def test_concurrent_refresh_later_attempt_wins(store, clock):
    """Test two overlapping refreshes of one address leave only the later attempt's data."""
    provider = StaticBalanceProvider()
    registry = ProviderRegistry()
    registry.bind(provider)
    portfolio = store.create_portfolio("u1", "Main")
    address = store.add_address(portfolio.id, Network.ETHEREUM, ADDR_C)
    coordinator = RefreshCoordinator(store, registry, fetch_timeout=2, clock=clock)

    async def scenario():
        # First attempt is slow and sees the old balance
        provider.set_balances(Network.ETHEREUM, ADDR_C, [token("ETH", "1", "3000")])
        provider.set_delay(Network.ETHEREUM, ADDR_C, 0.2)
        slow = asyncio.ensure_future(coordinator.refresh(portfolio.id))
        await asyncio.sleep(0.05)

        # Second attempt starts later, sees the new balance and finishes first
        provider.set_balances(Network.ETHEREUM, ADDR_C, [token("ETH", "7", "3000")])
        provider.set_delay(Network.ETHEREUM, ADDR_C, 0)
        fast = await coordinator.refresh(portfolio.id)
        return fast, await slow

    fast, slow = asyncio.run(scenario())

    stored = store.get_address(address.id).balances
    assert [b.amount for b in stored] == [Decimal("7")]
    assert fast.refreshed == [address.id]
    # The stale write is discarded silently
    assert slow.refreshed == [address.id]
    assert slow.failed == []


def test_refresh_survives_caller_cancellation(store, clock):
    """Test a cancelled caller does not stop in-flight fetches from committing."""
    provider = StaticBalanceProvider({(Network.ETHEREUM, ADDR_A): [token("ETH", "3", "1000")]})
    provider.set_delay(Network.ETHEREUM, ADDR_A, 0.1)
    registry = ProviderRegistry()
    registry.bind(provider)
    portfolio = store.create_portfolio("u1", "Main")
    address = store.add_address(portfolio.id, Network.ETHEREUM, ADDR_A)
    coordinator = RefreshCoordinator(store, registry, fetch_timeout=2, clock=clock)

    async def scenario():
        caller = asyncio.ensure_future(coordinator.refresh(portfolio.id))
        await asyncio.sleep(0.02)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        await asyncio.gather(*coordinator._background)

    asyncio.run(scenario())

    assert store.get_address(address.id).balances[0].amount == Decimal("3")
    assert len(store.list_snapshots(portfolio.id)) == 1


def test_failure_after_caller_cancellation_is_reported(store, clock, caplog):
    """Test a refresh that fails once its caller is gone is logged, not left unretrieved."""
    provider = StaticBalanceProvider()
    provider.set_delay(Network.ETHEREUM, ADDR_A, 0.1)
    provider.set_error(Network.ETHEREUM, ADDR_A, ProviderError("node down"))
    registry = ProviderRegistry()
    registry.bind(provider)
    portfolio = store.create_portfolio("u1", "Main")
    store.add_address(portfolio.id, Network.ETHEREUM, ADDR_A)
    coordinator = RefreshCoordinator(store, registry, fetch_timeout=2, clock=clock)
    unhandled = []

    async def scenario():
        asyncio.get_running_loop().set_exception_handler(lambda loop, context: unhandled.append(context))
        caller = asyncio.ensure_future(coordinator.refresh(portfolio.id))
        await asyncio.sleep(0.02)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        await asyncio.wait(list(coordinator._background))
        await asyncio.sleep(0)
        gc.collect()

    with caplog.at_level(logging.WARNING, logger="web3_portfolio.core.refresh"):
        asyncio.run(scenario())

    assert unhandled == []
    assert any("failed after its caller left" in record.getMessage() for record in caplog.records)
    assert store.list_snapshots(portfolio.id) == []


def test_sync_provider_runs_in_thread(store, clock):
    """Test plain (non-async) providers are supported."""

    class SyncProvider:
        name = "sync"
        supported_networks = [Network.ARBITRUM]

        def fetch_balances(self, network, address, timeout):
            return [token("ARB", "10", "1.2", "0xarb")]

    registry = ProviderRegistry()
    registry.bind(SyncProvider())
    portfolio = store.create_portfolio("u1", "Main")
    store.add_address(portfolio.id, Network.ARBITRUM, ADDR_A)
    coordinator = RefreshCoordinator(store, registry, clock=clock)

    result = coordinator.refresh_sync(portfolio.id)

    assert result.total_value == Decimal("12.0")


@pytest.mark.parametrize("kwargs", [{"max_concurrency": 0}, {"snapshot_interval": 0}])
def test_coordinator_rejects_bad_settings(store, kwargs):
    """Test invalid coordinator settings."""
    with pytest.raises(ValueError):
        RefreshCoordinator(store, ProviderRegistry(), **kwargs)
