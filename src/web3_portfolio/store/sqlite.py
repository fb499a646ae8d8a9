"""SQLite-backed portfolio store."""

import logging
import sqlite3
import threading
from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from pathlib import Path

from web3_portfolio.core.exceptions import (
    ConcurrencyConflict,
    DuplicateAddressError,
    NotFoundError,
    PortfolioError,
)
from web3_portfolio.core.models import (
    Address,
    AlertKind,
    AlertOperator,
    AlertRule,
    Balance,
    Network,
    Portfolio,
    ValuationSnapshot,
    utcnow,
)
from web3_portfolio.store.base import PortfolioStore, address_key, clean_address, clean_name, dedupe_balances

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2


class StoreSchemaError(PortfolioError):
    """Raised when the database schema version is newer than this code understands."""

    def __init__(self, found: int, expected: int) -> None:
        super().__init__(f"Unsupported store schema version {found}; expected {expected}")
        self.found = found
        self.expected = expected


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def ensure_tables(conn: sqlite3.Connection) -> None:
    """Create the store tables and record the schema version."""
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT
        );

        CREATE TABLE IF NOT EXISTS portfolios (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_portfolios_user ON portfolios(user_id);

        CREATE TABLE IF NOT EXISTS addresses (
            id TEXT PRIMARY KEY,
            portfolio_id TEXT NOT NULL REFERENCES portfolios(id) ON DELETE CASCADE,
            network TEXT NOT NULL,
            address TEXT NOT NULL,
            address_key TEXT NOT NULL,
            label TEXT,
            active INTEGER NOT NULL DEFAULT 1,
            refresh_issued INTEGER NOT NULL DEFAULT 0,
            refresh_committed INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (portfolio_id, address_key)
        );

        CREATE TABLE IF NOT EXISTS balances (
            id TEXT PRIMARY KEY,
            address_id TEXT NOT NULL REFERENCES addresses(id) ON DELETE CASCADE,
            token_id TEXT NOT NULL,
            symbol TEXT NOT NULL,
            name TEXT NOT NULL,
            decimals INTEGER NOT NULL,
            amount TEXT NOT NULL,
            price TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (address_id, token_id)
        );

        CREATE TABLE IF NOT EXISTS snapshots (
            portfolio_id TEXT NOT NULL REFERENCES portfolios(id) ON DELETE CASCADE,
            tick INTEGER NOT NULL,
            timestamp TEXT NOT NULL,
            total_value TEXT NOT NULL,
            PRIMARY KEY (portfolio_id, tick)
        );
        CREATE INDEX IF NOT EXISTS idx_snapshots_timestamp ON snapshots(portfolio_id, timestamp);

        CREATE TABLE IF NOT EXISTS alerts (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            portfolio_id TEXT NOT NULL REFERENCES portfolios(id) ON DELETE CASCADE,
            address_id TEXT REFERENCES addresses(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            kind TEXT NOT NULL,
            operator TEXT NOT NULL,
            threshold TEXT NOT NULL,
            symbol TEXT,
            network TEXT,
            active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            last_triggered_at TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_alerts_portfolio ON alerts(portfolio_id);
        """
    )
    row = conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()
    if row is None:
        conn.execute("INSERT INTO meta (key, value) VALUES ('schema_version', ?)", (str(SCHEMA_VERSION),))
        conn.commit()
        return

    found = int(row[0])
    if found > SCHEMA_VERSION:
        raise StoreSchemaError(found=found, expected=SCHEMA_VERSION)
    if found < SCHEMA_VERSION:
        # Later versions only add tables, created above
        conn.execute("UPDATE meta SET value = ? WHERE key = 'schema_version'", (str(SCHEMA_VERSION),))
        conn.commit()
        logger.info("Upgraded store schema from version %d to %d", found, SCHEMA_VERSION)


class SQLitePortfolioStore(PortfolioStore):
    """
    Durable portfolio store on SQLite.

    Parameters
    ----------
    path : str | Path
        Database file, or ``":memory:"`` for a throwaway database

    """

    def __init__(self, path: str | Path = ":memory:") -> None:
        self.path = str(path)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        ensure_tables(self._conn)

    def create_portfolio(self, user_id: str, name: str) -> Portfolio:
        portfolio = Portfolio(user_id=user_id, name=clean_name(name))
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO portfolios (id, user_id, name, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                (
                    portfolio.id,
                    portfolio.user_id,
                    portfolio.name,
                    portfolio.created_at.isoformat(),
                    portfolio.updated_at.isoformat(),
                ),
            )
        return portfolio

    def get_portfolio(self, portfolio_id: str) -> Portfolio:
        with self._lock:
            row = self._conn.execute("SELECT * FROM portfolios WHERE id = ?", (portfolio_id,)).fetchone()
            if row is None:
                raise NotFoundError("Portfolio", portfolio_id)
            return self._load_portfolio(row)

    def list_portfolios(self, user_id: str) -> list[Portfolio]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM portfolios WHERE user_id = ? ORDER BY created_at, rowid", (user_id,)
            ).fetchall()
            return [self._load_portfolio(row) for row in rows]

    def rename_portfolio(self, portfolio_id: str, name: str) -> Portfolio:
        cleaned = clean_name(name)
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "UPDATE portfolios SET name = ?, updated_at = ? WHERE id = ?",
                (cleaned, utcnow().isoformat(), portfolio_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Portfolio", portfolio_id)
        return self.get_portfolio(portfolio_id)

    def delete_portfolio(self, portfolio_id: str) -> None:
        with self._lock, self._conn:
            cursor = self._conn.execute("DELETE FROM portfolios WHERE id = ?", (portfolio_id,))
            if cursor.rowcount == 0:
                raise NotFoundError("Portfolio", portfolio_id)

    def add_address(
        self,
        portfolio_id: str,
        network: Network | str,
        address: str,
        label: str | None = None,
    ) -> Address:
        network = Network.parse(network)
        address = clean_address(address)
        record = Address(portfolio_id=portfolio_id, network=network, address=address, label=label or None)
        key = address_key(network, address)

        with self._lock, self._conn:
            self._require_portfolio(portfolio_id)
            existing = self._conn.execute(
                "SELECT 1 FROM addresses WHERE portfolio_id = ? AND address_key = ?", (portfolio_id, key)
            ).fetchone()
            if existing is not None:
                raise DuplicateAddressError(portfolio_id, network, address)
            try:
                self._conn.execute(
                    """
                    INSERT INTO addresses
                        (id, portfolio_id, network, address, address_key, label, active, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
                    """,
                    (
                        record.id,
                        portfolio_id,
                        str(network),
                        address,
                        key,
                        record.label,
                        record.created_at.isoformat(),
                        record.updated_at.isoformat(),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateAddressError(portfolio_id, network, address) from e
            self._touch_portfolio(portfolio_id)
        return record

    def get_address(self, address_id: str) -> Address:
        with self._lock:
            return self._load_address(self._address_row(address_id))

    def update_address(self, address_id: str, label: str | None = None, active: bool | None = None) -> Address:
        with self._lock, self._conn:
            row = self._address_row(address_id)
            new_label = row["label"] if label is None else (label.strip() or None)
            new_active = bool(row["active"]) if active is None else active
            self._conn.execute(
                "UPDATE addresses SET label = ?, active = ?, updated_at = ? WHERE id = ?",
                (new_label, int(new_active), utcnow().isoformat(), address_id),
            )
        return self.get_address(address_id)

    def remove_address(self, address_id: str) -> None:
        with self._lock, self._conn:
            row = self._address_row(address_id)
            self._conn.execute("DELETE FROM addresses WHERE id = ?", (address_id,))
            self._touch_portfolio(row["portfolio_id"])

    def begin_refresh(self, address_id: str) -> int:
        with self._lock, self._conn:
            self._address_row(address_id)
            self._conn.execute("UPDATE addresses SET refresh_issued = refresh_issued + 1 WHERE id = ?", (address_id,))
            row = self._conn.execute("SELECT refresh_issued FROM addresses WHERE id = ?", (address_id,)).fetchone()
            return int(row["refresh_issued"])

    def replace_balances(
        self,
        address_id: str,
        balances: Iterable[Balance],
        sequence: int | None = None,
    ) -> list[Balance]:
        new_balances = dedupe_balances(address_id, balances)
        with self._lock, self._conn:
            row = self._address_row(address_id)
            committed = int(row["refresh_committed"])
            if sequence is not None:
                if sequence <= committed:
                    raise ConcurrencyConflict(address_id, sequence, committed)
                self._conn.execute("UPDATE addresses SET refresh_committed = ? WHERE id = ?", (sequence, address_id))

            # Delete and insert share one transaction; readers see either set, never a mix
            self._conn.execute("DELETE FROM balances WHERE address_id = ?", (address_id,))
            self._conn.executemany(
                """
                INSERT INTO balances (id, address_id, token_id, symbol, name, decimals, amount, price, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        b.id,
                        address_id,
                        b.token_id,
                        b.symbol,
                        b.name,
                        b.decimals,
                        str(b.amount),
                        str(b.price),
                        b.updated_at.isoformat(),
                    )
                    for b in new_balances
                ],
            )
            self._conn.execute("UPDATE addresses SET updated_at = ? WHERE id = ?", (utcnow().isoformat(), address_id))
        logger.debug("Replaced %d balance(s) for address %s", len(new_balances), address_id)
        return new_balances

    def append_snapshot(self, snapshot: ValuationSnapshot) -> bool:
        with self._lock, self._conn:
            self._require_portfolio(snapshot.portfolio_id)
            cursor = self._conn.execute(
                "INSERT OR IGNORE INTO snapshots (portfolio_id, tick, timestamp, total_value) VALUES (?, ?, ?, ?)",
                (snapshot.portfolio_id, snapshot.tick, snapshot.timestamp.isoformat(), str(snapshot.total_value)),
            )
            return cursor.rowcount == 1

    def list_snapshots(
        self,
        portfolio_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[ValuationSnapshot]:
        with self._lock:
            self._require_portfolio(portfolio_id)
            rows = self._conn.execute(
                "SELECT * FROM snapshots WHERE portfolio_id = ? ORDER BY tick", (portfolio_id,)
            ).fetchall()

        snapshots = [
            ValuationSnapshot(
                portfolio_id=row["portfolio_id"],
                tick=row["tick"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
                total_value=Decimal(row["total_value"]),
            )
            for row in rows
        ]
        # Filter in Python; ISO strings with differing offsets do not sort lexically
        snapshots = [
            s for s in snapshots if (since is None or s.timestamp >= since) and (until is None or s.timestamp <= until)
        ]
        return sorted(snapshots, key=lambda s: (s.timestamp, s.tick))

    def add_alert(self, rule: AlertRule) -> AlertRule:
        with self._lock, self._conn:
            self._check_alert_refs(rule)
            self._conn.execute(
                """
                INSERT INTO alerts
                    (id, user_id, portfolio_id, address_id, name, kind, operator, threshold, symbol, network,
                     active, created_at, updated_at, last_triggered_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rule.id,
                    rule.user_id,
                    rule.portfolio_id,
                    *self._alert_values(rule),
                    rule.created_at.isoformat(),
                    rule.updated_at.isoformat(),
                    _isoformat(rule.last_triggered_at),
                ),
            )
        return rule

    def get_alert(self, alert_id: str) -> AlertRule:
        with self._lock:
            return self._load_alert(self._alert_row(alert_id))

    def list_alerts(self, user_id: str | None = None, portfolio_id: str | None = None) -> list[AlertRule]:
        clauses, params = [], []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if portfolio_id is not None:
            clauses.append("portfolio_id = ?")
            params.append(portfolio_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self._conn.execute(f"SELECT * FROM alerts {where} ORDER BY created_at, rowid", params).fetchall()
            return [self._load_alert(row) for row in rows]

    def update_alert(self, rule: AlertRule) -> AlertRule:
        with self._lock, self._conn:
            self._alert_row(rule.id)
            self._check_alert_refs(rule)
            self._conn.execute(
                """
                UPDATE alerts
                SET address_id = ?, name = ?, kind = ?, operator = ?, threshold = ?, symbol = ?, network = ?,
                    active = ?, updated_at = ?, last_triggered_at = ?
                WHERE id = ?
                """,
                (*self._alert_values(rule), utcnow().isoformat(), _isoformat(rule.last_triggered_at), rule.id),
            )
        return self.get_alert(rule.id)

    def delete_alert(self, alert_id: str) -> None:
        with self._lock, self._conn:
            cursor = self._conn.execute("DELETE FROM alerts WHERE id = ?", (alert_id,))
            if cursor.rowcount == 0:
                raise NotFoundError("Alert", alert_id)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _require_portfolio(self, portfolio_id: str) -> None:
        row = self._conn.execute("SELECT 1 FROM portfolios WHERE id = ?", (portfolio_id,)).fetchone()
        if row is None:
            raise NotFoundError("Portfolio", portfolio_id)

    def _touch_portfolio(self, portfolio_id: str) -> None:
        self._conn.execute("UPDATE portfolios SET updated_at = ? WHERE id = ?", (utcnow().isoformat(), portfolio_id))

    def _address_row(self, address_id: str) -> sqlite3.Row:
        row = self._conn.execute("SELECT * FROM addresses WHERE id = ?", (address_id,)).fetchone()
        if row is None:
            raise NotFoundError("Address", address_id)
        return row

    def _load_portfolio(self, row: sqlite3.Row) -> Portfolio:
        address_rows = self._conn.execute(
            "SELECT * FROM addresses WHERE portfolio_id = ? ORDER BY created_at, rowid", (row["id"],)
        ).fetchall()
        return Portfolio(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            addresses=[self._load_address(address_row) for address_row in address_rows],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _load_address(self, row: sqlite3.Row) -> Address:
        balance_rows = self._conn.execute(
            "SELECT * FROM balances WHERE address_id = ? ORDER BY rowid", (row["id"],)
        ).fetchall()
        return Address(
            id=row["id"],
            portfolio_id=row["portfolio_id"],
            network=Network(row["network"]),
            address=row["address"],
            label=row["label"],
            active=bool(row["active"]),
            balances=[
                Balance(
                    id=b["id"],
                    address_id=b["address_id"],
                    token_id=b["token_id"],
                    symbol=b["symbol"],
                    name=b["name"],
                    decimals=b["decimals"],
                    amount=Decimal(b["amount"]),
                    price=Decimal(b["price"]),
                    updated_at=datetime.fromisoformat(b["updated_at"]),
                )
                for b in balance_rows
            ],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _alert_row(self, alert_id: str) -> sqlite3.Row:
        row = self._conn.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,)).fetchone()
        if row is None:
            raise NotFoundError("Alert", alert_id)
        return row

    def _check_alert_refs(self, rule: AlertRule) -> None:
        self._require_portfolio(rule.portfolio_id)
        if rule.address_id is not None:
            row = self._conn.execute(
                "SELECT 1 FROM addresses WHERE id = ? AND portfolio_id = ?", (rule.address_id, rule.portfolio_id)
            ).fetchone()
            if row is None:
                raise NotFoundError("Address", rule.address_id)

    @staticmethod
    def _alert_values(rule: AlertRule) -> tuple:
        # Column order shared by INSERT and UPDATE: address_id through active
        return (
            rule.address_id,
            rule.name,
            str(rule.kind),
            str(rule.operator),
            str(rule.threshold),
            rule.symbol,
            str(rule.network) if rule.network is not None else None,
            int(rule.active),
        )

    @staticmethod
    def _load_alert(row: sqlite3.Row) -> AlertRule:
        return AlertRule(
            id=row["id"],
            user_id=row["user_id"],
            portfolio_id=row["portfolio_id"],
            address_id=row["address_id"],
            name=row["name"],
            kind=AlertKind(row["kind"]),
            operator=AlertOperator(row["operator"]),
            threshold=Decimal(row["threshold"]),
            symbol=row["symbol"],
            network=Network(row["network"]) if row["network"] else None,
            active=bool(row["active"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            last_triggered_at=_parse_time(row["last_triggered_at"]),
        )
