"""Alert rules checked against refreshed portfolio state."""

import logging
from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal

from web3_portfolio.core.aggregation import total_value
from web3_portfolio.core.exceptions import ValidationError
from web3_portfolio.core.models import AlertKind, AlertNotification, AlertRule, Balance, Portfolio, utcnow

logger = logging.getLogger(__name__)


def validate_rule(rule: AlertRule) -> AlertRule:
    """
    Check that a rule carries the fields its kind needs.

    Parameters
    ----------
    rule : AlertRule
        Rule to check

    Returns
    -------
    AlertRule
        The rule with its name and symbol trimmed (symbols upper-cased)

    Raises
    ------
    ValidationError
        If the name is empty, a price rule has no symbol, a balance rule has
        no address or the threshold is negative

    """
    name = (rule.name or "").strip()
    if not name:
        msg = "Alert name must not be empty"
        raise ValidationError(msg)
    symbol = (rule.symbol or "").strip().upper() or None
    if rule.kind is AlertKind.PRICE and symbol is None:
        msg = "Price alerts need a token symbol"
        raise ValidationError(msg)
    if rule.kind is AlertKind.BALANCE and not rule.address_id:
        msg = "Balance alerts need an address"
        raise ValidationError(msg)
    if rule.threshold < 0:
        msg = f"Alert threshold must not be negative: {rule.threshold}"
        raise ValidationError(msg)
    return rule.model_copy(update={"name": name, "symbol": symbol})


def _matches(balance: Balance, symbol: str) -> bool:
    return balance.symbol.upper() == symbol


def observe(rule: AlertRule, portfolio: Portfolio) -> Decimal | None:
    """
    Figure a rule compares against its threshold.

    Returns None when there is nothing to compare: the token is not held or
    has no known price, or the watched address is gone.

    """
    if rule.kind is AlertKind.VALUE:
        return total_value(portfolio)

    if rule.kind is AlertKind.PRICE:
        priced = [
            balance
            for address in portfolio.addresses
            if rule.network is None or address.network == rule.network
            for balance in address.balances
            if _matches(balance, rule.symbol or "") and balance.price > 0
        ]
        if not priced:
            return None
        return max(priced, key=lambda b: b.updated_at).price

    address = next((a for a in portfolio.addresses if a.id == rule.address_id), None)
    if address is None:
        return None
    if rule.symbol is None:
        return sum((b.value for b in address.balances), Decimal("0"))
    # A token no longer held is a zero balance, not a missing one
    return sum((b.amount for b in address.balances if _matches(b, rule.symbol)), Decimal("0"))


def _subject(rule: AlertRule, portfolio: Portfolio) -> str:
    if rule.kind is AlertKind.VALUE:
        return "portfolio value"
    if rule.kind is AlertKind.PRICE:
        return f"{rule.symbol} price"
    address = next((a for a in portfolio.addresses if a.id == rule.address_id), None)
    where = (address.label or address.address) if address else rule.address_id
    if rule.symbol is None:
        return f"value of {where}"
    return f"{rule.symbol} balance of {where}"


def check_alerts(
    rules: Iterable[AlertRule],
    portfolio: Portfolio,
    now: datetime | None = None,
) -> list[AlertNotification]:
    """
    Evaluate alert rules against one portfolio.

    A rule fires on every check where its condition holds; inactive rules and
    rules of other portfolios are skipped.

    Parameters
    ----------
    rules : Iterable[AlertRule]
        Candidate rules
    portfolio : Portfolio
        Portfolio state to check, normally just refreshed
    now : datetime | None
        Trigger time recorded on notifications

    Returns
    -------
    list[AlertNotification]
        One notification per rule that fired

    """
    now = now or utcnow()
    notifications = []
    for rule in rules:
        if not rule.active or rule.portfolio_id != portfolio.id:
            continue
        observed = observe(rule, portfolio)
        if observed is None or not rule.operator.compare(observed, rule.threshold):
            continue

        message = f"{rule.name}: {_subject(rule, portfolio)} is {observed} ({rule.operator.value} {rule.threshold})"
        logger.info("Alert triggered for portfolio %s: %s", portfolio.id, message)
        notifications.append(
            AlertNotification(
                alert_id=rule.id,
                portfolio_id=portfolio.id,
                name=rule.name,
                kind=rule.kind,
                operator=rule.operator,
                threshold=rule.threshold,
                observed=observed,
                message=message,
                triggered_at=now,
            )
        )
    return notifications
