"""Pytest configuration for web3-portfolio-engine tests."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from web3_portfolio.core import (
    EntitlementTier,
    Network,
    PortfolioService,
    ProviderRegistry,
    RefreshCoordinator,
    StaticEntitlementSource,
    TokenBalance,
)
from web3_portfolio.providers import StaticBalanceProvider
from web3_portfolio.store import InMemoryPortfolioStore, SQLitePortfolioStore

ADDR_A = "0x" + "a1" * 20
ADDR_B = "0x" + "b2" * 20
ADDR_C = "0x" + "c3" * 20


class FixedClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def token(symbol: str, amount: str, price: str, token_id: str | None = None) -> TokenBalance:
    """TokenBalance with string-typed decimals."""
    return TokenBalance(
        token_id=token_id or "native",
        symbol=symbol,
        amount=Decimal(amount),
        price=Decimal(price),
    )


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Each store backend in turn."""
    if request.param == "memory":
        backend = InMemoryPortfolioStore()
    else:
        backend = SQLitePortfolioStore(str(tmp_path / "portfolio.db"))
    yield backend
    backend.close()


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 6, 1, 12, 0, tzinfo=UTC))


@pytest.fixture
def provider():
    """Static provider holding the two-network reference portfolio."""
    return StaticBalanceProvider(
        {
            (Network.ETHEREUM, ADDR_A): [token("ETH", "2.5", "3200")],
            (Network.POLYGON, ADDR_B): [token("MATIC", "5000", "0.85")],
        }
    )


@pytest.fixture
def registry(provider):
    registry = ProviderRegistry()
    registry.bind(provider)
    return registry


@pytest.fixture
def coordinator(store, registry, clock):
    return RefreshCoordinator(store, registry, max_concurrency=4, fetch_timeout=0.5, clock=clock)


@pytest.fixture
def entitlements():
    return StaticEntitlementSource(
        {
            "free-user": EntitlementTier.FREE,
            "sub-user": EntitlementTier.SUBSCRIBER,
            "pro-user": EntitlementTier.PRO,
        }
    )


@pytest.fixture
def service(store, coordinator, entitlements):
    return PortfolioService(store, coordinator, entitlements)
