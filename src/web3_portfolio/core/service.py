"""Portfolio service: the entitlement-aware API exposed to presentation code."""

import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from web3_portfolio.core.aggregation import AggregationEngine
from web3_portfolio.core.alerts import check_alerts, validate_rule
from web3_portfolio.core.entitlements import EntitlementGate, EntitlementSource, Operation
from web3_portfolio.core.exceptions import NotFoundError, ValidationError
from web3_portfolio.core.models import (
    Address,
    AlertKind,
    AlertNotification,
    AlertOperator,
    AlertRule,
    AllocationBy,
    AssetAllocation,
    EntitlementTier,
    Network,
    NetworkAllocation,
    PerformancePeriod,
    PerformanceView,
    Portfolio,
    PortfolioSummary,
    RefreshResult,
)
from web3_portfolio.core.refresh import RefreshCoordinator

if TYPE_CHECKING:
    from web3_portfolio.store.base import PortfolioStore

logger = logging.getLogger(__name__)


def _parse_period(period: PerformancePeriod | timedelta | str) -> PerformancePeriod | timedelta:
    if isinstance(period, timedelta | PerformancePeriod):
        return period
    try:
        return PerformancePeriod(str(period).strip().lower())
    except ValueError as e:
        msg = f"Unknown performance period: {period!r}"
        raise ValidationError(msg) from e


def _parse_threshold(value: Decimal | str | int) -> Decimal:
    if isinstance(value, float):
        msg = f"float {value!r} is not accepted for an alert threshold; pass a string or Decimal"
        raise ValidationError(msg)
    try:
        threshold = Decimal(str(value).strip())
    except InvalidOperation as e:
        msg = f"Invalid alert threshold: {value!r}"
        raise ValidationError(msg) from e
    if not threshold.is_finite():
        msg = f"Invalid alert threshold: {value!r}"
        raise ValidationError(msg)
    return threshold


class PortfolioService:
    """
    Entry point for portfolio management and aggregate views.

    Every call names the acting user explicitly; the service never reads
    ambient session state. Portfolios owned by someone else are reported as
    not found.

    Parameters
    ----------
    store : PortfolioStore
        Portfolio store
    coordinator : RefreshCoordinator
        Balance refresh driver
    entitlements : EntitlementSource
        Supplies each user's current tier
    gate : EntitlementGate | None
        Tier to capability mapping
    aggregation : AggregationEngine | None
        Aggregate view engine (built from ``store`` if None)

    """

    def __init__(
        self,
        store: "PortfolioStore",
        coordinator: RefreshCoordinator,
        entitlements: EntitlementSource,
        gate: EntitlementGate | None = None,
        aggregation: AggregationEngine | None = None,
    ) -> None:
        self.store = store
        self.coordinator = coordinator
        self.entitlements = entitlements
        self.gate = gate or EntitlementGate()
        self.aggregation = aggregation or AggregationEngine(store, clock=coordinator.clock)

    def tier(self, user_id: str) -> EntitlementTier:
        """Current tier of a user."""
        return self.entitlements.current_tier(user_id)

    def _require(self, user_id: str, operation: Operation) -> None:
        decision = self.gate.authorize(self.tier(user_id), operation)
        if not decision:
            logger.info("Denied %s for user %s: %s", operation.value, user_id, decision.reason)
        decision.require()

    def _owned(self, user_id: str, portfolio_id: str) -> Portfolio:
        portfolio = self.store.get_portfolio(portfolio_id)
        if portfolio.user_id != user_id:
            raise NotFoundError("Portfolio", portfolio_id)
        return portfolio

    def _owned_address(self, user_id: str, address_id: str) -> Address:
        address = self.store.get_address(address_id)
        self._owned(user_id, address.portfolio_id)
        return address

    # Portfolio and address management

    def create_portfolio(self, user_id: str, name: str) -> Portfolio:
        return self.store.create_portfolio(user_id, name)

    def list_portfolios(self, user_id: str) -> list[Portfolio]:
        return self.store.list_portfolios(user_id)

    def get_portfolio(self, user_id: str, portfolio_id: str) -> Portfolio:
        return self._owned(user_id, portfolio_id)

    def rename_portfolio(self, user_id: str, portfolio_id: str, name: str) -> Portfolio:
        self._owned(user_id, portfolio_id)
        return self.store.rename_portfolio(portfolio_id, name)

    def delete_portfolio(self, user_id: str, portfolio_id: str) -> None:
        self._owned(user_id, portfolio_id)
        self.store.delete_portfolio(portfolio_id)

    def add_address(
        self,
        user_id: str,
        portfolio_id: str,
        network: Network | str,
        address: str,
        label: str | None = None,
    ) -> Address:
        self._owned(user_id, portfolio_id)
        return self.store.add_address(portfolio_id, network, address, label)

    def update_address(
        self,
        user_id: str,
        address_id: str,
        label: str | None = None,
        active: bool | None = None,
    ) -> Address:
        self._owned_address(user_id, address_id)
        return self.store.update_address(address_id, label=label, active=active)

    def remove_address(self, user_id: str, address_id: str) -> None:
        self._owned_address(user_id, address_id)
        self.store.remove_address(address_id)

    # Aggregation API

    async def refresh(self, user_id: str, portfolio_id: str) -> RefreshResult:
        """
        Refresh balances of every active address (see RefreshCoordinator.refresh).

        When the user's tier includes alerts, the portfolio's alert rules are
        checked against the refreshed balances and the ones that fired are
        returned in ``RefreshResult.alerts``.

        """
        self._require(user_id, Operation.REFRESH)
        self._owned(user_id, portfolio_id)
        result = await self.coordinator.refresh(portfolio_id)
        if self.gate.authorize(self.tier(user_id), Operation.MANAGE_ALERTS):
            result.alerts = self._evaluate_alerts(portfolio_id)
        return result

    def total_value(self, user_id: str, portfolio_id: str) -> Decimal:
        self._require(user_id, Operation.VIEW_BALANCES)
        self._owned(user_id, portfolio_id)
        return self.aggregation.total_value(portfolio_id)

    def allocation(
        self,
        user_id: str,
        portfolio_id: str,
        by: AllocationBy | str = AllocationBy.NETWORK,
    ) -> dict[Network, NetworkAllocation] | dict[str, AssetAllocation]:
        """
        Allocation of portfolio value by network or asset.

        Raises
        ------
        EntitlementError
            If the user's tier does not include allocation views
        ValidationError
            If ``by`` is not a known grouping

        """
        self._require(user_id, Operation.VIEW_ALLOCATION)
        by = AllocationBy.parse(by)
        self._owned(user_id, portfolio_id)
        return self.aggregation.allocation(portfolio_id, by)

    def performance(
        self,
        user_id: str,
        portfolio_id: str,
        period: PerformancePeriod | timedelta | str = PerformancePeriod.MONTH,
    ) -> PerformanceView:
        """
        Performance of a portfolio over a look-back window.

        Raises
        ------
        EntitlementError
            For free users, and for windows beyond 30 days below the pro tier

        """
        period = _parse_period(period)
        named = period if isinstance(period, PerformancePeriod) else None
        if named is None and period > timedelta(days=30):
            named = PerformancePeriod.ALL
        decision = self.gate.authorize_performance(self.tier(user_id), named)
        decision.require()
        self._owned(user_id, portfolio_id)
        return self.aggregation.performance(portfolio_id, period)

    def performance_overview(
        self,
        user_id: str,
        period: PerformancePeriod | str = PerformancePeriod.MONTH,
    ) -> dict[str, PerformanceView]:
        """Performance of every portfolio the user owns, keyed by portfolio id (pro tier)."""
        self._require(user_id, Operation.MULTI_WALLET_PERFORMANCE)
        period = _parse_period(period)
        return {p.id: self.aggregation.performance(p.id, period) for p in self.store.list_portfolios(user_id)}

    def summary(self, user_id: str, portfolio_id: str, top_n: int = 5) -> PortfolioSummary:
        self._require(user_id, Operation.VIEW_BALANCES)
        self._owned(user_id, portfolio_id)
        return self.aggregation.summary(portfolio_id, top_n)

    # Alerts

    def _owned_alert(self, user_id: str, alert_id: str) -> AlertRule:
        rule = self.store.get_alert(alert_id)
        if rule.user_id != user_id:
            raise NotFoundError("Alert", alert_id)
        return rule

    def create_alert(
        self,
        user_id: str,
        portfolio_id: str,
        name: str,
        kind: AlertKind | str,
        operator: AlertOperator | str,
        threshold: Decimal | str | int,
        symbol: str | None = None,
        network: Network | str | None = None,
        address_id: str | None = None,
    ) -> AlertRule:
        """
        Add a threshold alert to a portfolio.

        Parameters
        ----------
        user_id : str
            Acting user; must own the portfolio
        portfolio_id : str
            Portfolio the rule watches
        name : str
            Display name
        kind : AlertKind | str
            ``price``, ``balance`` or ``value``
        operator : AlertOperator | str
            Comparison symbol (``>``, ``<=``, ...) or alias (``gt``, ``lte``, ...)
        threshold : Decimal | str | int
            Price, value or token amount to compare against
        symbol : str | None
            Token symbol (price rules, optional for balance rules)
        network : Network | str | None
            Restricts a price rule to one network
        address_id : str | None
            Watched address (balance rules); must belong to the portfolio

        Returns
        -------
        AlertRule
            The stored rule

        Raises
        ------
        EntitlementError
            If the user's tier does not include alerts
        ValidationError
            If the rule is incomplete or malformed
        NotFoundError
            If the portfolio or address is not the user's

        """
        self._require(user_id, Operation.MANAGE_ALERTS)
        self._owned(user_id, portfolio_id)
        rule = AlertRule(
            user_id=user_id,
            portfolio_id=portfolio_id,
            name=name,
            kind=AlertKind.parse(kind),
            operator=AlertOperator.parse(operator),
            threshold=_parse_threshold(threshold),
            symbol=symbol,
            network=Network.parse(network) if network else None,
            address_id=address_id,
        )
        return self.store.add_alert(validate_rule(rule))

    def list_alerts(self, user_id: str, portfolio_id: str | None = None) -> list[AlertRule]:
        """Alert rules of the user, optionally limited to one portfolio."""
        self._require(user_id, Operation.MANAGE_ALERTS)
        if portfolio_id is not None:
            self._owned(user_id, portfolio_id)
        return self.store.list_alerts(user_id=user_id, portfolio_id=portfolio_id)

    def get_alert(self, user_id: str, alert_id: str) -> AlertRule:
        self._require(user_id, Operation.MANAGE_ALERTS)
        return self._owned_alert(user_id, alert_id)

    def update_alert(
        self,
        user_id: str,
        alert_id: str,
        name: str | None = None,
        operator: AlertOperator | str | None = None,
        threshold: Decimal | str | int | None = None,
        symbol: str | None = None,
        active: bool | None = None,
    ) -> AlertRule:
        """Change the given fields of an alert rule; None leaves a field as it is."""
        self._require(user_id, Operation.MANAGE_ALERTS)
        rule = self._owned_alert(user_id, alert_id)
        changes: dict[str, object] = {}
        if name is not None:
            changes["name"] = name
        if operator is not None:
            changes["operator"] = AlertOperator.parse(operator)
        if threshold is not None:
            changes["threshold"] = _parse_threshold(threshold)
        if symbol is not None:
            changes["symbol"] = symbol
        if active is not None:
            changes["active"] = active
        return self.store.update_alert(validate_rule(rule.model_copy(update=changes)))

    def toggle_alert(self, user_id: str, alert_id: str) -> AlertRule:
        """Switch an alert rule between active and paused."""
        self._require(user_id, Operation.MANAGE_ALERTS)
        rule = self._owned_alert(user_id, alert_id)
        return self.store.update_alert(rule.model_copy(update={"active": not rule.active}))

    def delete_alert(self, user_id: str, alert_id: str) -> None:
        self._require(user_id, Operation.MANAGE_ALERTS)
        self._owned_alert(user_id, alert_id)
        self.store.delete_alert(alert_id)

    def check_alerts(self, user_id: str, portfolio_id: str) -> list[AlertNotification]:
        """Evaluate a portfolio's alert rules against its stored balances."""
        self._require(user_id, Operation.MANAGE_ALERTS)
        self._owned(user_id, portfolio_id)
        return self._evaluate_alerts(portfolio_id)

    def _evaluate_alerts(self, portfolio_id: str) -> list[AlertNotification]:
        rules = {rule.id: rule for rule in self.store.list_alerts(portfolio_id=portfolio_id)}
        if not rules:
            return []
        now = self.coordinator.clock()
        fired = check_alerts(rules.values(), self.store.get_portfolio(portfolio_id), now)
        for notification in fired:
            try:
                self.store.update_alert(rules[notification.alert_id].model_copy(update={"last_triggered_at": now}))
            except NotFoundError:
                logger.debug("Alert %s was deleted while being checked", notification.alert_id)
        return fired
