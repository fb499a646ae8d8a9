"""Tests for the portfolio store backends."""

import threading
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from conftest import ADDR_A, ADDR_B, token

from web3_portfolio.core.exceptions import (
    ConcurrencyConflict,
    DuplicateAddressError,
    InvalidNetworkError,
    NotFoundError,
    ValidationError,
)
from web3_portfolio.core.models import AlertKind, AlertOperator, AlertRule, Balance, Network, ValuationSnapshot
from web3_portfolio.store import SQLitePortfolioStore, StoreSchemaError
from web3_portfolio.store.sqlite import SCHEMA_VERSION


def _balances(address_id, *tokens):
    return [Balance.from_token(address_id, t) for t in tokens]


def _snapshot(portfolio_id, tick, value="100"):
    when = datetime(2024, 6, 1, tzinfo=UTC) + timedelta(minutes=5 * tick)
    return ValuationSnapshot(portfolio_id=portfolio_id, tick=tick, timestamp=when, total_value=Decimal(value))


def _alert(portfolio, **kwargs):
    fields = {"name": "ETH dip", "kind": AlertKind.PRICE, "operator": AlertOperator.LT, "threshold": Decimal("2500")}
    fields.update(kwargs)
    return AlertRule(user_id=portfolio.user_id, portfolio_id=portfolio.id, symbol="ETH", **fields)


def test_create_and_list_portfolios(store):
    """Test portfolios are listed per user."""
    first = store.create_portfolio("u1", "  Main  ")
    store.create_portfolio("u1", "Cold storage")
    store.create_portfolio("u2", "Other")

    assert first.name == "Main"
    assert {p.name for p in store.list_portfolios("u1")} == {"Main", "Cold storage"}
    assert [p.name for p in store.list_portfolios("u2")] == ["Other"]
    assert store.get_portfolio(first.id).user_id == "u1"


@pytest.mark.parametrize("name", ["", "   "])
def test_create_portfolio_empty_name(store, name):
    """Test empty portfolio names are rejected."""
    with pytest.raises(ValidationError):
        store.create_portfolio("u1", name)


def test_get_missing_portfolio(store):
    """Test unknown portfolio ids raise NotFoundError."""
    with pytest.raises(NotFoundError):
        store.get_portfolio("missing")
    with pytest.raises(NotFoundError):
        store.add_address("missing", Network.ETHEREUM, ADDR_A)


def test_rename_portfolio(store):
    """Test renaming keeps the id and trims the name."""
    portfolio = store.create_portfolio("u1", "Main")

    renamed = store.rename_portfolio(portfolio.id, " Trading ")

    assert renamed.id == portfolio.id
    assert store.get_portfolio(portfolio.id).name == "Trading"
    with pytest.raises(ValidationError):
        store.rename_portfolio(portfolio.id, "")


def test_add_address(store):
    """Test adding an address records network and label."""
    portfolio = store.create_portfolio("u1", "Main")

    address = store.add_address(portfolio.id, "Ethereum", ADDR_A, "hot wallet")

    assert address.network is Network.ETHEREUM
    assert address.label == "hot wallet"
    assert address.active
    assert [a.id for a in store.get_portfolio(portfolio.id).addresses] == [address.id]


def test_duplicate_address(store):
    """Test the same (network, address) cannot be tracked twice, ignoring hex case."""
    portfolio = store.create_portfolio("u1", "Main")
    store.add_address(portfolio.id, Network.ETHEREUM, ADDR_A)

    with pytest.raises(DuplicateAddressError):
        store.add_address(portfolio.id, Network.ETHEREUM, ADDR_A.upper().replace("0X", "0x"))

    # Same address on another network is a separate entry
    store.add_address(portfolio.id, Network.POLYGON, ADDR_A)
    assert len(store.get_portfolio(portfolio.id).addresses) == 2


def test_add_address_invalid_network(store):
    """Test unsupported networks are rejected."""
    portfolio = store.create_portfolio("u1", "Main")

    with pytest.raises(InvalidNetworkError):
        store.add_address(portfolio.id, "solana", ADDR_A)


def test_update_and_remove_address(store):
    """Test label and active flag updates, then removal."""
    portfolio = store.create_portfolio("u1", "Main")
    address = store.add_address(portfolio.id, Network.BASE, ADDR_A, "old")

    updated = store.update_address(address.id, label="new", active=False)
    assert updated.label == "new"
    assert not updated.active
    assert store.get_portfolio(portfolio.id).active_addresses() == []

    cleared = store.update_address(address.id, label="")
    assert cleared.label is None

    store.remove_address(address.id)
    with pytest.raises(NotFoundError):
        store.get_address(address.id)
    assert store.get_portfolio(portfolio.id).addresses == []


def test_replace_balances_is_wholesale(store):
    """Test replace_balances swaps the full set rather than merging."""
    portfolio = store.create_portfolio("u1", "Main")
    address = store.add_address(portfolio.id, Network.ETHEREUM, ADDR_A)
    store.replace_balances(
        address.id,
        _balances(address.id, token("ETH", "1", "3000"), token("USDC", "50", "1", "0xusdc")),
    )

    store.replace_balances(address.id, _balances(address.id, token("ETH", "2", "3100")))

    stored = store.get_address(address.id).balances
    assert [(b.symbol, b.amount, b.price) for b in stored] == [("ETH", Decimal("2"), Decimal("3100"))]


def test_replace_balances_keeps_last_duplicate_token(store):
    """Test duplicate token ids in one write collapse to the last entry."""
    portfolio = store.create_portfolio("u1", "Main")
    address = store.add_address(portfolio.id, Network.ETHEREUM, ADDR_A)

    store.replace_balances(address.id, _balances(address.id, token("ETH", "1", "3000"), token("ETH", "3", "3000")))

    stored = store.get_address(address.id).balances
    assert len(stored) == 1
    assert stored[0].amount == Decimal("3")


def test_replace_balances_preserves_precision(store):
    """Test amounts round-trip without floating point drift."""
    portfolio = store.create_portfolio("u1", "Main")
    address = store.add_address(portfolio.id, Network.ETHEREUM, ADDR_A)

    store.replace_balances(address.id, _balances(address.id, token("ETH", "0.100000000000000001", "3199.99")))

    stored = store.get_address(address.id).balances[0]
    assert str(stored.amount) == "0.100000000000000001"
    assert stored.price == Decimal("3199.99")


def test_replace_balances_sequence(store):
    """Test writes from superseded refresh attempts are rejected."""
    portfolio = store.create_portfolio("u1", "Main")
    address = store.add_address(portfolio.id, Network.ETHEREUM, ADDR_A)

    first = store.begin_refresh(address.id)
    second = store.begin_refresh(address.id)
    assert second > first

    store.replace_balances(address.id, _balances(address.id, token("ETH", "2", "3000")), sequence=second)
    with pytest.raises(ConcurrencyConflict):
        store.replace_balances(address.id, _balances(address.id, token("ETH", "1", "3000")), sequence=first)

    assert store.get_address(address.id).balances[0].amount == Decimal("2")


def test_replace_balances_missing_address(store):
    """Test writes to unknown addresses raise NotFoundError."""
    with pytest.raises(NotFoundError):
        store.replace_balances("missing", [])
    with pytest.raises(NotFoundError):
        store.begin_refresh("missing")


def test_readers_never_see_mixed_balance_sets(store):
    """Test concurrent readers observe either the old or the new set, never a mix."""
    portfolio = store.create_portfolio("u1", "Main")
    address = store.add_address(portfolio.id, Network.ETHEREUM, ADDR_A)
    old = [token("ETH", "1", "1"), token("USDC", "1", "1", "0xusdc"), token("DAI", "1", "1", "0xdai")]
    new = [token("ETH", "2", "2"), token("USDC", "2", "2", "0xusdc"), token("DAI", "2", "2", "0xdai")]
    store.replace_balances(address.id, _balances(address.id, *old))

    mixed = []
    stop = threading.Event()

    def reader():
        while not stop.is_set():
            amounts = {b.amount for b in store.get_address(address.id).balances}
            if len(amounts) > 1:
                mixed.append(amounts)

    thread = threading.Thread(target=reader)
    thread.start()
    for i in range(50):
        store.replace_balances(address.id, _balances(address.id, *(new if i % 2 == 0 else old)))
    stop.set()
    thread.join()

    assert mixed == []


def test_append_snapshot_idempotent(store):
    """Test one snapshot per (portfolio, tick)."""
    portfolio = store.create_portfolio("u1", "Main")

    assert store.append_snapshot(_snapshot(portfolio.id, 1, "100"))
    assert not store.append_snapshot(_snapshot(portfolio.id, 1, "200"))

    snapshots = store.list_snapshots(portfolio.id)
    assert len(snapshots) == 1
    assert snapshots[0].total_value == Decimal("100")


def test_list_snapshots_range(store):
    """Test snapshots are filtered by time range and ordered by timestamp."""
    portfolio = store.create_portfolio("u1", "Main")
    for tick in (3, 1, 2, 4):
        store.append_snapshot(_snapshot(portfolio.id, tick))

    since = datetime(2024, 6, 1, tzinfo=UTC) + timedelta(minutes=10)
    until = datetime(2024, 6, 1, tzinfo=UTC) + timedelta(minutes=15)

    assert [s.tick for s in store.list_snapshots(portfolio.id)] == [1, 2, 3, 4]
    assert [s.tick for s in store.list_snapshots(portfolio.id, since=since, until=until)] == [2, 3]


def test_delete_portfolio_cascades(store):
    """Test deleting a portfolio removes its addresses and snapshots."""
    portfolio = store.create_portfolio("u1", "Main")
    address = store.add_address(portfolio.id, Network.ETHEREUM, ADDR_A)
    store.replace_balances(address.id, _balances(address.id, token("ETH", "1", "3000")))
    store.append_snapshot(_snapshot(portfolio.id, 1))

    store.delete_portfolio(portfolio.id)

    with pytest.raises(NotFoundError):
        store.get_portfolio(portfolio.id)
    with pytest.raises(NotFoundError):
        store.get_address(address.id)
    assert store.list_portfolios("u1") == []


def test_readers_get_copies(store):
    """Test mutating a returned portfolio does not change stored state."""
    portfolio = store.create_portfolio("u1", "Main")
    store.add_address(portfolio.id, Network.ETHEREUM, ADDR_A)

    loaded = store.get_portfolio(portfolio.id)
    loaded.addresses.clear()
    loaded.name = "changed"

    again = store.get_portfolio(portfolio.id)
    assert again.name == "Main"
    assert len(again.addresses) == 1


def test_sqlite_store_persists(tmp_path):
    """Test SQLite data survives reopening the database file."""
    path = tmp_path / "portfolio.db"
    with SQLitePortfolioStore(path) as store:
        portfolio = store.create_portfolio("u1", "Main")
        address = store.add_address(portfolio.id, Network.POLYGON, ADDR_B)
        store.replace_balances(address.id, _balances(address.id, token("MATIC", "5000", "0.85")))
        sequence = store.begin_refresh(address.id)

    with SQLitePortfolioStore(path) as store:
        reloaded = store.get_portfolio(portfolio.id)
        assert reloaded.addresses[0].balances[0].amount == Decimal("5000")
        assert store.begin_refresh(address.id) == sequence + 1


def test_alert_crud(store):
    """Test alert rules round-trip through the store with exact thresholds."""
    portfolio = store.create_portfolio("u1", "Main")
    address = store.add_address(portfolio.id, Network.ETHEREUM, ADDR_A)
    price = store.add_alert(_alert(portfolio, network=Network.ETHEREUM, threshold=Decimal("2500.125")))
    balance = store.add_alert(_alert(portfolio, name="low", kind=AlertKind.BALANCE, address_id=address.id))

    loaded = store.get_alert(price.id)
    assert loaded.threshold == Decimal("2500.125")
    assert loaded.network is Network.ETHEREUM
    assert loaded.operator is AlertOperator.LT
    assert loaded.last_triggered_at is None
    assert [r.id for r in store.list_alerts(user_id="u1")] == [price.id, balance.id]
    assert store.list_alerts(user_id="u2") == []

    fired_at = datetime(2024, 6, 1, 12, tzinfo=UTC)
    updated = store.update_alert(loaded.model_copy(update={"active": False, "last_triggered_at": fired_at}))
    assert not updated.active
    assert store.get_alert(price.id).last_triggered_at == fired_at

    store.delete_alert(price.id)
    with pytest.raises(NotFoundError):
        store.get_alert(price.id)
    with pytest.raises(NotFoundError):
        store.delete_alert(price.id)


def test_alert_references_checked(store):
    """Test alerts need an existing portfolio and an address of that portfolio."""
    portfolio = store.create_portfolio("u1", "Main")
    other = store.create_portfolio("u1", "Other")
    foreign = store.add_address(other.id, Network.ETHEREUM, ADDR_A)

    with pytest.raises(NotFoundError):
        store.add_alert(_alert(portfolio, kind=AlertKind.BALANCE, address_id=foreign.id))
    with pytest.raises(NotFoundError):
        store.add_alert(_alert(portfolio.model_copy(update={"id": "missing"})))
    with pytest.raises(NotFoundError):
        store.update_alert(_alert(portfolio))


def test_alerts_follow_their_targets(store):
    """Test removing an address or portfolio drops the alerts watching it."""
    portfolio = store.create_portfolio("u1", "Main")
    address = store.add_address(portfolio.id, Network.ETHEREUM, ADDR_A)
    price = store.add_alert(_alert(portfolio))
    store.add_alert(_alert(portfolio, kind=AlertKind.BALANCE, address_id=address.id))

    store.remove_address(address.id)
    assert [r.id for r in store.list_alerts(portfolio_id=portfolio.id)] == [price.id]

    store.delete_portfolio(portfolio.id)
    assert store.list_alerts(user_id="u1") == []


def test_sqlite_schema_upgrade(tmp_path):
    """Test a version 1 database gains the alerts table and keeps its data."""
    path = tmp_path / "portfolio.db"
    with SQLitePortfolioStore(path) as store:
        portfolio = store.create_portfolio("u1", "Main")
        store._conn.execute("DROP TABLE alerts")
        store._conn.execute("UPDATE meta SET value = '1' WHERE key = 'schema_version'")
        store._conn.commit()

    with SQLitePortfolioStore(path) as store:
        version = store._conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()[0]
        assert int(version) == SCHEMA_VERSION
        assert store.get_portfolio(portfolio.id).name == "Main"
        assert store.add_alert(_alert(portfolio)).portfolio_id == portfolio.id


def test_sqlite_rejects_newer_schema(tmp_path):
    """Test a database written by a newer release is refused."""
    path = tmp_path / "portfolio.db"
    with SQLitePortfolioStore(path) as store:
        store._conn.execute("UPDATE meta SET value = ? WHERE key = 'schema_version'", (str(SCHEMA_VERSION + 1),))
        store._conn.commit()

    with pytest.raises(StoreSchemaError):
        SQLitePortfolioStore(path)
