"""Subscription entitlement gate."""

from enum import StrEnum
from typing import Protocol

from pydantic import BaseModel

from web3_portfolio.core.exceptions import EntitlementError, ValidationError
from web3_portfolio.core.models import EntitlementTier, PerformancePeriod


class Operation(StrEnum):
    """Aggregate views and actions subject to entitlement."""

    VIEW_BALANCES = "view_balances"
    REFRESH = "refresh"
    VIEW_ALLOCATION = "view_allocation"
    VIEW_PERFORMANCE = "view_performance"
    EXTENDED_PERFORMANCE = "extended_performance"
    MULTI_WALLET_PERFORMANCE = "multi_wallet_performance"
    MANAGE_ALERTS = "manage_alerts"


_BASIC = frozenset({Operation.VIEW_BALANCES, Operation.REFRESH})
_SUBSCRIBER = _BASIC | {Operation.VIEW_ALLOCATION, Operation.VIEW_PERFORMANCE, Operation.MANAGE_ALERTS}
_PRO = _SUBSCRIBER | {Operation.EXTENDED_PERFORMANCE, Operation.MULTI_WALLET_PERFORMANCE}

CAPABILITIES: dict[EntitlementTier, frozenset[Operation]] = {
    EntitlementTier.FREE: _BASIC,
    EntitlementTier.SUBSCRIBER: frozenset(_SUBSCRIBER),
    EntitlementTier.PRO: frozenset(_PRO),
}

# Windows beyond 30 days need EXTENDED_PERFORMANCE
EXTENDED_PERIODS = frozenset({PerformancePeriod.QUARTER, PerformancePeriod.YEAR, PerformancePeriod.ALL})


class Decision(BaseModel):
    """Result of an authorization check; a deny is an ordinary outcome."""

    allowed: bool
    tier: EntitlementTier
    operation: Operation
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.allowed

    def require(self) -> None:
        """Raise EntitlementError for a deny; no-op for an allow."""
        if not self.allowed:
            raise EntitlementError(self.tier, self.operation, self.reason or "Operation not permitted")


class EntitlementSource(Protocol):
    """Supplies the current tier of a user (billing collaborator)."""

    def current_tier(self, user_id: str) -> EntitlementTier: ...


class StaticEntitlementSource:
    """
    Entitlement source backed by a fixed mapping.

    Parameters
    ----------
    tiers : dict[str, EntitlementTier | str] | None
        User id to tier
    default : EntitlementTier | str
        Tier for users missing from the mapping

    """

    def __init__(
        self,
        tiers: dict[str, EntitlementTier | str] | None = None,
        default: EntitlementTier | str = EntitlementTier.FREE,
    ) -> None:
        self._tiers = {user: EntitlementTier.parse(tier) for user, tier in (tiers or {}).items()}
        self.default = EntitlementTier.parse(default)

    def set_tier(self, user_id: str, tier: EntitlementTier | str) -> None:
        """Record an upgrade or downgrade driven by billing."""
        self._tiers[user_id] = EntitlementTier.parse(tier)

    def current_tier(self, user_id: str) -> EntitlementTier:
        return self._tiers.get(user_id, self.default)


def minimum_tier(
    operation: Operation,
    capabilities: dict[EntitlementTier, frozenset[Operation]] = CAPABILITIES,
) -> EntitlementTier | None:
    """Lowest tier whose capability set contains ``operation``, or None."""
    for tier in sorted(capabilities, key=lambda t: t.rank):
        if operation in capabilities[tier]:
            return tier
    return None


class EntitlementGate:
    """
    Maps a subscription tier to the operations it may perform.

    The gate only reads the tier it is given; tier transitions happen in the
    billing collaborator.

    """

    def __init__(self, capabilities: dict[EntitlementTier, frozenset[Operation]] | None = None) -> None:
        self.capabilities = capabilities or CAPABILITIES

    def authorize(self, tier: EntitlementTier | str, operation: Operation | str) -> Decision:
        """
        Check whether ``tier`` may perform ``operation``.

        Parameters
        ----------
        tier : EntitlementTier | str
            Caller's current tier
        operation : Operation | str
            Requested operation

        Returns
        -------
        Decision
            ``allowed`` plus a human-readable reason on deny

        """
        tier = EntitlementTier.parse(tier)
        try:
            operation = Operation(operation)
        except ValueError as e:
            msg = f"Unknown operation: {operation!r}"
            raise ValidationError(msg) from e
        if operation in self.capabilities.get(tier, frozenset()):
            return Decision(allowed=True, tier=tier, operation=operation)

        needed = minimum_tier(operation, self.capabilities)
        if needed is None:
            reason = f"{operation.value} is not available on any tier"
        else:
            reason = f"{operation.value} requires the {needed.value} tier or higher (current tier: {tier.value})"
        return Decision(allowed=False, tier=tier, operation=operation, reason=reason)

    def authorize_performance(self, tier: EntitlementTier | str, period: PerformancePeriod | None) -> Decision:
        """Authorize a performance view, including the extended-window check."""
        decision = self.authorize(tier, Operation.VIEW_PERFORMANCE)
        if decision and period in EXTENDED_PERIODS:
            return self.authorize(tier, Operation.EXTENDED_PERFORMANCE)
        return decision

    def allowed_operations(self, tier: EntitlementTier | str) -> list[Operation]:
        """Operations permitted for a tier, in declaration order."""
        granted = self.capabilities.get(EntitlementTier.parse(tier), frozenset())
        return [op for op in Operation if op in granted]
