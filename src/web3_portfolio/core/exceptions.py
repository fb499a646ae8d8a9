"""Exception hierarchy for the portfolio engine."""

from typing import Any


class PortfolioError(Exception):
    """Base exception for all portfolio engine errors."""


class ConfigError(PortfolioError):
    """Raised when engine configuration is missing or malformed."""


class ValidationError(PortfolioError):
    """Raised for malformed caller input (empty names, bad identifiers)."""


class InvalidNetworkError(ValidationError):
    """Raised when a network identifier is not part of the supported set."""

    def __init__(self, network: str) -> None:
        super().__init__(f"Unsupported network: {network!r}")
        self.network = network


class NotFoundError(PortfolioError):
    """Raised when a referenced portfolio or address does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class DuplicateAddressError(PortfolioError):
    """Raised when a (network, address) pair is already tracked in a portfolio."""

    def __init__(self, portfolio_id: str, network: str, address: str) -> None:
        super().__init__(f"Address {address} on {network} already exists in portfolio {portfolio_id}")
        self.portfolio_id = portfolio_id
        self.network = network
        self.address = address


class ProviderError(PortfolioError):
    """Raised by balance providers when a lookup fails."""

    def __init__(self, message: str, network: str | None = None, address: str | None = None) -> None:
        super().__init__(message)
        self.network = network
        self.address = address


class ProviderTimeoutError(ProviderError):
    """Raised when a provider lookup exceeds its timeout."""


class RefreshFailedError(PortfolioError):
    """
    Raised when every address of a portfolio failed to refresh.

    Attributes
    ----------
    portfolio_id : str
        Portfolio that was refreshed
    failures : list
        Per-address failure records

    """

    def __init__(self, portfolio_id: str, failures: list[Any]) -> None:
        super().__init__(f"Refresh failed for all {len(failures)} address(es) of portfolio {portfolio_id}")
        self.portfolio_id = portfolio_id
        self.failures = failures


class EntitlementError(PortfolioError):
    """Raised when the caller's tier does not permit an operation."""

    def __init__(self, tier: str, operation: str, reason: str) -> None:
        super().__init__(reason)
        self.tier = tier
        self.operation = operation
        self.reason = reason


class ConcurrencyConflict(PortfolioError):
    """Raised by the store when a balance write belongs to a superseded refresh attempt."""

    def __init__(self, address_id: str, sequence: int, committed: int) -> None:
        super().__init__(f"Stale write for address {address_id}: attempt {sequence} <= committed {committed}")
        self.address_id = address_id
        self.sequence = sequence
        self.committed = committed
