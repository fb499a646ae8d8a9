"""Abstract portfolio store and validation helpers shared by the backends."""

import abc
from collections.abc import Iterable
from datetime import datetime

from web3_portfolio.core.exceptions import ValidationError
from web3_portfolio.core.models import Address, AlertRule, Balance, Network, Portfolio, ValuationSnapshot


def clean_name(name: str) -> str:
    """
    Normalize a portfolio name.

    Raises
    ------
    ValidationError
        If the name is empty or whitespace

    """
    cleaned = (name or "").strip()
    if not cleaned:
        msg = "Portfolio name must not be empty"
        raise ValidationError(msg)
    return cleaned


def clean_address(address: str) -> str:
    """Strip surrounding whitespace and reject empty address strings."""
    cleaned = (address or "").strip()
    if not cleaned:
        msg = "Address must not be empty"
        raise ValidationError(msg)
    return cleaned


def address_key(network: Network, address: str) -> str:
    """
    Uniqueness key for an address within a portfolio.

    Hex addresses are compared case-insensitively (EIP-55 checksums only
    differ in letter case).

    """
    normalized = address.lower() if address.lower().startswith("0x") else address
    return f"{network}:{normalized}"


def dedupe_balances(address_id: str, balances: Iterable[Balance]) -> list[Balance]:
    """Pin balances to ``address_id`` and keep the last entry per token id."""
    by_token: dict[str, Balance] = {}
    for balance in balances:
        if balance.address_id != address_id:
            balance = balance.model_copy(update={"address_id": address_id})
        by_token.pop(balance.token_id, None)
        by_token[balance.token_id] = balance
    return list(by_token.values())


class PortfolioStore(abc.ABC):
    """
    Owner of Portfolio, Address, Balance, ValuationSnapshot and AlertRule state.

    Every mutating method is atomic for the entity it touches. Readers never
    observe a balance set that mixes two refreshes of the same address.

    """

    @abc.abstractmethod
    def create_portfolio(self, user_id: str, name: str) -> Portfolio:
        """Create an empty portfolio. Raises ValidationError for an empty name."""

    @abc.abstractmethod
    def get_portfolio(self, portfolio_id: str) -> Portfolio:
        """Load a portfolio with addresses and balances. Raises NotFoundError."""

    @abc.abstractmethod
    def list_portfolios(self, user_id: str) -> list[Portfolio]:
        """All portfolios owned by ``user_id``, oldest first."""

    @abc.abstractmethod
    def rename_portfolio(self, portfolio_id: str, name: str) -> Portfolio:
        """Change a portfolio's display name."""

    @abc.abstractmethod
    def delete_portfolio(self, portfolio_id: str) -> None:
        """Delete a portfolio with its addresses, balances, snapshots and alert rules."""

    @abc.abstractmethod
    def add_address(
        self,
        portfolio_id: str,
        network: Network | str,
        address: str,
        label: str | None = None,
    ) -> Address:
        """
        Track a new address in a portfolio.

        Raises
        ------
        InvalidNetworkError
            If ``network`` is not supported
        NotFoundError
            If the portfolio does not exist
        DuplicateAddressError
            If (network, address) is already tracked in the portfolio

        """

    @abc.abstractmethod
    def get_address(self, address_id: str) -> Address:
        """Load one address with its balances. Raises NotFoundError."""

    @abc.abstractmethod
    def update_address(self, address_id: str, label: str | None = None, active: bool | None = None) -> Address:
        """Update label and/or active flag. An empty label clears it."""

    @abc.abstractmethod
    def remove_address(self, address_id: str) -> None:
        """Stop tracking an address and drop its balances and the alert rules watching it."""

    @abc.abstractmethod
    def begin_refresh(self, address_id: str) -> int:
        """Issue the next monotonic refresh-attempt sequence number for an address."""

    @abc.abstractmethod
    def replace_balances(
        self,
        address_id: str,
        balances: Iterable[Balance],
        sequence: int | None = None,
    ) -> list[Balance]:
        """
        Swap the full balance set of an address in one step.

        Parameters
        ----------
        address_id : str
            Address whose balances are replaced
        balances : Iterable[Balance]
            New balance set; an empty iterable clears the address
        sequence : int | None
            Refresh-attempt sequence from ``begin_refresh``. When given, the
            write is applied only if it is newer than the last committed one.

        Returns
        -------
        list[Balance]
            The stored balances

        Raises
        ------
        ConcurrencyConflict
            If ``sequence`` is not newer than the last committed attempt
        NotFoundError
            If the address does not exist

        """

    @abc.abstractmethod
    def append_snapshot(self, snapshot: ValuationSnapshot) -> bool:
        """
        Record a valuation snapshot.

        Returns False, without error, when a snapshot for the same
        (portfolio, tick) already exists.

        """

    @abc.abstractmethod
    def list_snapshots(
        self,
        portfolio_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[ValuationSnapshot]:
        """Snapshots in ``[since, until]`` ordered by timestamp."""

    @abc.abstractmethod
    def add_alert(self, rule: AlertRule) -> AlertRule:
        """
        Save a new alert rule.

        Raises
        ------
        NotFoundError
            If the rule's portfolio, or its address when it names one, does not exist

        """

    @abc.abstractmethod
    def get_alert(self, alert_id: str) -> AlertRule:
        """Load one alert rule. Raises NotFoundError."""

    @abc.abstractmethod
    def list_alerts(self, user_id: str | None = None, portfolio_id: str | None = None) -> list[AlertRule]:
        """Alert rules matching the given owner and/or portfolio, oldest first."""

    @abc.abstractmethod
    def update_alert(self, rule: AlertRule) -> AlertRule:
        """Overwrite a stored rule by id. Raises NotFoundError."""

    @abc.abstractmethod
    def delete_alert(self, alert_id: str) -> None:
        """Delete one alert rule. Raises NotFoundError."""

    def close(self) -> None:
        """Release backend resources."""

    def __enter__(self) -> "PortfolioStore":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        """Context manager exit."""
        self.close()
