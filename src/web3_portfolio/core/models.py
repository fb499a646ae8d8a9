"""Data models for portfolios, addresses, balances, snapshots, and aggregate views."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import StrEnum
from uuid import uuid4

from pydantic import BaseModel, Field, computed_field, field_validator

from web3_portfolio.core.exceptions import InvalidNetworkError, ValidationError


def new_id() -> str:
    """Generate a new entity identifier."""
    return str(uuid4())


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(UTC)


def _reject_float(value: object) -> object:
    # Amounts and prices are exact decimals; floats are refused
    if isinstance(value, float):
        msg = f"float {value!r} is not accepted for a decimal amount; pass a string or Decimal"
        raise ValueError(msg)
    return value


class Network(StrEnum):
    """Supported blockchain networks."""

    ETHEREUM = "ethereum"
    POLYGON = "polygon"
    BSC = "bsc"
    ARBITRUM = "arbitrum"
    OPTIMISM = "optimism"
    BASE = "base"

    @classmethod
    def parse(cls, value: "str | Network") -> "Network":
        """
        Convert a raw identifier into a Network.

        Parameters
        ----------
        value : str | Network
            Network name, case-insensitive

        Returns
        -------
        Network
            Matching enum member

        Raises
        ------
        InvalidNetworkError
            If the value is not a supported network

        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as e:
            raise InvalidNetworkError(str(value)) from e


class EntitlementTier(StrEnum):
    """Subscription tier attached to a user."""

    FREE = "free"
    SUBSCRIBER = "subscriber"
    PRO = "pro"

    @property
    def rank(self) -> int:
        """Position in the upgrade path free -> subscriber -> pro."""
        return list(EntitlementTier).index(self)

    @classmethod
    def parse(cls, value: "str | EntitlementTier") -> "EntitlementTier":
        """Convert a raw tier string, rejecting anything outside the enumeration."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as e:
            msg = f"Unknown entitlement tier: {value!r}"
            raise ValidationError(msg) from e


class AllocationBy(StrEnum):
    """Grouping key for allocation views."""

    NETWORK = "network"
    ASSET = "asset"

    @classmethod
    def parse(cls, value: "str | AllocationBy") -> "AllocationBy":
        """Convert a raw grouping key, rejecting anything outside the enumeration."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as e:
            msg = f"Unknown allocation grouping: {value!r}"
            raise ValidationError(msg) from e


class PerformancePeriod(StrEnum):
    """Look-back windows for performance views."""

    DAY = "24h"
    WEEK = "7d"
    MONTH = "30d"
    QUARTER = "90d"
    YEAR = "1y"
    ALL = "all"

    @property
    def window(self) -> timedelta | None:
        """Length of the window, or None for the full history."""
        return {
            PerformancePeriod.DAY: timedelta(days=1),
            PerformancePeriod.WEEK: timedelta(days=7),
            PerformancePeriod.MONTH: timedelta(days=30),
            PerformancePeriod.QUARTER: timedelta(days=90),
            PerformancePeriod.YEAR: timedelta(days=365),
            PerformancePeriod.ALL: None,
        }[self]


class TokenBalance(BaseModel):
    """
    Token balance as reported by a balance provider.

    Attributes
    ----------
    token_id : str
        Token contract address, or ``NATIVE_TOKEN_ID`` for the chain's native asset
    symbol : str
        Token symbol (e.g., 'ETH', 'USDC')
    name : str
        Display name
    amount : Decimal
        Holding in whole token units (already scaled by decimals)
    decimals : int
        Token decimal precision
    price : Decimal
        Unit price in USD

    """

    token_id: str
    symbol: str
    name: str = ""
    amount: Decimal
    decimals: int = 18
    price: Decimal = Decimal("0")

    @field_validator("amount", "price", mode="before")
    @classmethod
    def reject_float_amounts(cls, value: object) -> object:
        return _reject_float(value)


NATIVE_TOKEN_ID = "native"


class Balance(BaseModel):
    """
    Stored holding of one token at one address.

    Replaced wholesale for its (address, token) key on every refresh.

    """

    id: str = Field(default_factory=new_id)
    address_id: str
    token_id: str
    symbol: str
    name: str = ""
    decimals: int = 18
    amount: Decimal
    price: Decimal = Decimal("0")
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("amount", "price", mode="before")
    @classmethod
    def reject_float_amounts(cls, value: object) -> object:
        return _reject_float(value)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def value(self) -> Decimal:
        """USD value, amount x price."""
        return self.amount * self.price

    @classmethod
    def from_token(cls, address_id: str, token: TokenBalance, updated_at: datetime | None = None) -> "Balance":
        """Build a stored balance from a provider result."""
        return cls(
            address_id=address_id,
            token_id=token.token_id,
            symbol=token.symbol,
            name=token.name,
            decimals=token.decimals,
            amount=token.amount,
            price=token.price,
            updated_at=updated_at or utcnow(),
        )


class Address(BaseModel):
    """
    Network-scoped blockchain address tracked within a portfolio.

    Attributes
    ----------
    id : str
        Address identifier
    portfolio_id : str
        Parent portfolio (back-reference)
    network : Network
        Network the address lives on
    address : str
        Raw address string
    label : str | None
        Optional user label
    active : bool
        Inactive addresses are skipped by refresh
    balances : list[Balance]
        Current token balances

    """

    id: str = Field(default_factory=new_id)
    portfolio_id: str
    network: Network
    address: str
    label: str | None = None
    active: bool = True
    balances: list[Balance] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Portfolio(BaseModel):
    """A named set of addresses owned by one user."""

    id: str = Field(default_factory=new_id)
    user_id: str
    name: str
    addresses: list[Address] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def active_addresses(self) -> list[Address]:
        """Addresses that take part in refresh."""
        return [address for address in self.addresses if address.active]


class ValuationSnapshot(BaseModel):
    """
    Recorded total value of a portfolio at one refresh tick.

    Attributes
    ----------
    portfolio_id : str
        Portfolio the snapshot belongs to
    tick : int
        Logical refresh tick (timestamp bucket); unique per portfolio
    timestamp : datetime
        Time the refresh completed
    total_value : Decimal
        Portfolio value at that time

    """

    portfolio_id: str
    tick: int
    timestamp: datetime
    total_value: Decimal


class AlertKind(StrEnum):
    """What an alert rule watches."""

    PRICE = "price"
    BALANCE = "balance"
    VALUE = "value"

    @classmethod
    def parse(cls, value: "str | AlertKind") -> "AlertKind":
        """Convert a raw alert type, rejecting anything outside the enumeration."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as e:
            msg = f"Unknown alert type: {value!r}"
            raise ValidationError(msg) from e


_COMPARISONS = {
    ">": lambda observed, threshold: observed > threshold,
    "<": lambda observed, threshold: observed < threshold,
    ">=": lambda observed, threshold: observed >= threshold,
    "<=": lambda observed, threshold: observed <= threshold,
    "==": lambda observed, threshold: observed == threshold,
    "!=": lambda observed, threshold: observed != threshold,
}

# Spelled-out forms for shells where '>' redirects
_OPERATOR_ALIASES = {"gt": ">", "lt": "<", "gte": ">=", "lte": "<=", "eq": "==", "ne": "!="}


class AlertOperator(StrEnum):
    """Comparison between an observed figure and an alert threshold."""

    GT = ">"
    LT = "<"
    GTE = ">="
    LTE = "<="
    EQ = "=="
    NE = "!="

    @classmethod
    def parse(cls, value: "str | AlertOperator") -> "AlertOperator":
        """Convert a comparison symbol or its alias (``gt``, ``lte``, ...)."""
        if isinstance(value, cls):
            return value
        raw = str(value).strip().lower()
        try:
            return cls(_OPERATOR_ALIASES.get(raw, raw))
        except ValueError as e:
            msg = f"Unknown alert operator: {value!r}"
            raise ValidationError(msg) from e

    def compare(self, observed: Decimal, threshold: Decimal) -> bool:
        """Whether ``observed`` satisfies the comparison against ``threshold``."""
        return _COMPARISONS[self.value](observed, threshold)


class AlertRule(BaseModel):
    """
    Threshold rule checked against a portfolio after each refresh.

    Attributes
    ----------
    kind : AlertKind
        ``price`` watches a token's unit price, ``balance`` a holding at one
        address, ``value`` the portfolio's total value
    operator : AlertOperator
        Comparison applied as ``observed <operator> threshold``
    threshold : Decimal
        Price or value in USD, or a token amount for balance rules on a symbol
    symbol : str | None
        Token symbol; required for price rules. A balance rule without one
        watches the USD value of the whole address.
    network : Network | None
        Restricts a price rule to one network
    address_id : str | None
        Watched address; required for balance rules
    last_triggered_at : datetime | None
        When the rule last fired

    """

    id: str = Field(default_factory=new_id)
    user_id: str
    portfolio_id: str
    name: str
    kind: AlertKind
    operator: AlertOperator
    threshold: Decimal
    symbol: str | None = None
    network: Network | None = None
    address_id: str | None = None
    active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_triggered_at: datetime | None = None

    @field_validator("threshold", mode="before")
    @classmethod
    def reject_float_threshold(cls, value: object) -> object:
        return _reject_float(value)


class AlertNotification(BaseModel):
    """A rule that matched, with the figure that made it fire."""

    alert_id: str
    portfolio_id: str
    name: str
    kind: AlertKind
    operator: AlertOperator
    threshold: Decimal
    observed: Decimal
    message: str
    triggered_at: datetime = Field(default_factory=utcnow)


class AddressFailure(BaseModel):
    """Reason one address could not be refreshed."""

    address_id: str
    network: Network
    address: str
    reason: str


class RefreshResult(BaseModel):
    """
    Outcome of one refresh cycle.

    Attributes
    ----------
    portfolio_id : str
        Refreshed portfolio
    refreshed : list[str]
        Address ids whose balances were replaced
    failed : list[AddressFailure]
        Address ids that failed, with reasons
    total_value : Decimal
        Portfolio value after the refresh
    snapshot_recorded : bool
        False when a snapshot for the same tick already existed
    alerts : list[AlertNotification]
        Alert rules that fired on the refreshed state

    """

    portfolio_id: str
    refreshed: list[str] = Field(default_factory=list)
    failed: list[AddressFailure] = Field(default_factory=list)
    total_value: Decimal = Decimal("0")
    snapshot_recorded: bool = False
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None
    alerts: list[AlertNotification] = Field(default_factory=list)


class NetworkAllocation(BaseModel):
    """Share of portfolio value held on one network."""

    network: Network
    value: Decimal
    percentage: Decimal
    asset_count: int


class AssetAllocation(BaseModel):
    """Share of portfolio value held in one token on one network."""

    symbol: str
    network: Network
    value: Decimal
    percentage: Decimal
    amount: Decimal

    @property
    def key(self) -> str:
        """Allocation key; a symbol alone is not unique across networks."""
        return asset_key(self.network, self.symbol)


def asset_key(network: Network | str, symbol: str) -> str:
    """Build the ``network:SYMBOL`` key used by asset allocation maps."""
    return f"{network}:{symbol}"


class PerformancePoint(BaseModel):
    """One snapshot in a performance series."""

    timestamp: datetime
    value: Decimal
    change: Decimal


class PerformanceView(BaseModel):
    """
    Time-windowed performance of a portfolio.

    ``change``, ``total_return``, ``best_day`` and ``worst_day`` are ratios
    (0.05 means +5%).

    """

    period: str
    series: list[PerformancePoint] = Field(default_factory=list)
    total_return: Decimal = Decimal("0")
    best_day: Decimal = Decimal("0")
    worst_day: Decimal = Decimal("0")


class PortfolioSummary(BaseModel):
    """Headline figures for a portfolio dashboard."""

    portfolio_id: str
    total_value: Decimal
    asset_count: int
    network_count: int
    top_assets: list[AssetAllocation] = Field(default_factory=list)
    change_24h: Decimal = Decimal("0")
    change_7d: Decimal = Decimal("0")
    change_30d: Decimal = Decimal("0")
