"""Thread-safe in-memory portfolio store."""

import logging
import threading
from collections.abc import Iterable
from datetime import datetime

from web3_portfolio.core.exceptions import ConcurrencyConflict, DuplicateAddressError, NotFoundError
from web3_portfolio.core.models import Address, AlertRule, Balance, Network, Portfolio, ValuationSnapshot, utcnow
from web3_portfolio.store.base import PortfolioStore, address_key, clean_address, clean_name, dedupe_balances

logger = logging.getLogger(__name__)


class InMemoryPortfolioStore(PortfolioStore):
    """
    Portfolio store keeping all state in process memory.

    A single re-entrant lock serializes writers; readers receive deep copies,
    so a returned Portfolio never changes underneath the caller.

    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._portfolios: dict[str, Portfolio] = {}
        self._address_owner: dict[str, str] = {}
        self._snapshots: dict[str, dict[int, ValuationSnapshot]] = {}
        self._issued: dict[str, int] = {}
        self._committed: dict[str, int] = {}
        self._alerts: dict[str, AlertRule] = {}

    def create_portfolio(self, user_id: str, name: str) -> Portfolio:
        portfolio = Portfolio(user_id=user_id, name=clean_name(name))
        with self._lock:
            self._portfolios[portfolio.id] = portfolio
            self._snapshots[portfolio.id] = {}
            return portfolio.model_copy(deep=True)

    def get_portfolio(self, portfolio_id: str) -> Portfolio:
        with self._lock:
            return self._portfolio(portfolio_id).model_copy(deep=True)

    def list_portfolios(self, user_id: str) -> list[Portfolio]:
        with self._lock:
            owned = [p for p in self._portfolios.values() if p.user_id == user_id]
            return [p.model_copy(deep=True) for p in sorted(owned, key=lambda p: p.created_at)]

    def rename_portfolio(self, portfolio_id: str, name: str) -> Portfolio:
        cleaned = clean_name(name)
        with self._lock:
            portfolio = self._portfolio(portfolio_id)
            portfolio.name = cleaned
            portfolio.updated_at = utcnow()
            return portfolio.model_copy(deep=True)

    def delete_portfolio(self, portfolio_id: str) -> None:
        with self._lock:
            portfolio = self._portfolio(portfolio_id)
            for address in portfolio.addresses:
                self._forget_address(address.id)
            del self._portfolios[portfolio_id]
            self._snapshots.pop(portfolio_id, None)
            self._alerts = {k: r for k, r in self._alerts.items() if r.portfolio_id != portfolio_id}

    def add_address(
        self,
        portfolio_id: str,
        network: Network | str,
        address: str,
        label: str | None = None,
    ) -> Address:
        network = Network.parse(network)
        address = clean_address(address)
        with self._lock:
            portfolio = self._portfolio(portfolio_id)
            key = address_key(network, address)
            if any(address_key(a.network, a.address) == key for a in portfolio.addresses):
                raise DuplicateAddressError(portfolio_id, network, address)

            record = Address(portfolio_id=portfolio_id, network=network, address=address, label=label or None)
            portfolio.addresses.append(record)
            portfolio.updated_at = utcnow()
            self._address_owner[record.id] = portfolio_id
            return record.model_copy(deep=True)

    def get_address(self, address_id: str) -> Address:
        with self._lock:
            return self._address(address_id).model_copy(deep=True)

    def update_address(self, address_id: str, label: str | None = None, active: bool | None = None) -> Address:
        with self._lock:
            record = self._address(address_id)
            if label is not None:
                record.label = label.strip() or None
            if active is not None:
                record.active = active
            record.updated_at = utcnow()
            return record.model_copy(deep=True)

    def remove_address(self, address_id: str) -> None:
        with self._lock:
            record = self._address(address_id)
            portfolio = self._portfolios[record.portfolio_id]
            portfolio.addresses = [a for a in portfolio.addresses if a.id != address_id]
            portfolio.updated_at = utcnow()
            self._forget_address(address_id)

    def begin_refresh(self, address_id: str) -> int:
        with self._lock:
            self._address(address_id)
            self._issued[address_id] = self._issued.get(address_id, 0) + 1
            return self._issued[address_id]

    def replace_balances(
        self,
        address_id: str,
        balances: Iterable[Balance],
        sequence: int | None = None,
    ) -> list[Balance]:
        new_balances = dedupe_balances(address_id, balances)
        with self._lock:
            record = self._address(address_id)
            committed = self._committed.get(address_id, 0)
            if sequence is not None:
                if sequence <= committed:
                    raise ConcurrencyConflict(address_id, sequence, committed)
                self._committed[address_id] = sequence

            # Rebinding the list keeps the swap all-or-nothing for readers
            record.balances = new_balances
            record.updated_at = utcnow()
            logger.debug("Replaced %d balance(s) for address %s", len(new_balances), address_id)
            return [b.model_copy() for b in new_balances]

    def append_snapshot(self, snapshot: ValuationSnapshot) -> bool:
        with self._lock:
            self._portfolio(snapshot.portfolio_id)
            ticks = self._snapshots.setdefault(snapshot.portfolio_id, {})
            if snapshot.tick in ticks:
                return False
            ticks[snapshot.tick] = snapshot.model_copy()
            return True

    def list_snapshots(
        self,
        portfolio_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[ValuationSnapshot]:
        with self._lock:
            self._portfolio(portfolio_id)
            snapshots = [
                s.model_copy()
                for s in self._snapshots.get(portfolio_id, {}).values()
                if (since is None or s.timestamp >= since) and (until is None or s.timestamp <= until)
            ]
        return sorted(snapshots, key=lambda s: (s.timestamp, s.tick))

    def add_alert(self, rule: AlertRule) -> AlertRule:
        with self._lock:
            self._check_alert_refs(rule)
            self._alerts[rule.id] = rule.model_copy()
            return rule.model_copy()

    def get_alert(self, alert_id: str) -> AlertRule:
        with self._lock:
            return self._alert(alert_id).model_copy()

    def list_alerts(self, user_id: str | None = None, portfolio_id: str | None = None) -> list[AlertRule]:
        with self._lock:
            rules = [
                r.model_copy()
                for r in self._alerts.values()
                if user_id in (None, r.user_id) and portfolio_id in (None, r.portfolio_id)
            ]
        return sorted(rules, key=lambda r: r.created_at)

    def update_alert(self, rule: AlertRule) -> AlertRule:
        with self._lock:
            self._alert(rule.id)
            self._check_alert_refs(rule)
            self._alerts[rule.id] = rule.model_copy(update={"updated_at": utcnow()})
            return self._alerts[rule.id].model_copy()

    def delete_alert(self, alert_id: str) -> None:
        with self._lock:
            self._alert(alert_id)
            del self._alerts[alert_id]

    def _portfolio(self, portfolio_id: str) -> Portfolio:
        portfolio = self._portfolios.get(portfolio_id)
        if portfolio is None:
            raise NotFoundError("Portfolio", portfolio_id)
        return portfolio

    def _address(self, address_id: str) -> Address:
        portfolio_id = self._address_owner.get(address_id)
        if portfolio_id is None:
            raise NotFoundError("Address", address_id)
        for record in self._portfolios[portfolio_id].addresses:
            if record.id == address_id:
                return record
        raise NotFoundError("Address", address_id)

    def _forget_address(self, address_id: str) -> None:
        self._address_owner.pop(address_id, None)
        self._issued.pop(address_id, None)
        self._committed.pop(address_id, None)
        self._alerts = {k: r for k, r in self._alerts.items() if r.address_id != address_id}

    def _alert(self, alert_id: str) -> AlertRule:
        rule = self._alerts.get(alert_id)
        if rule is None:
            raise NotFoundError("Alert", alert_id)
        return rule

    def _check_alert_refs(self, rule: AlertRule) -> None:
        self._portfolio(rule.portfolio_id)
        if rule.address_id is not None and self._address_owner.get(rule.address_id) != rule.portfolio_id:
            raise NotFoundError("Address", rule.address_id)
