"""Core functionality including models, store-facing engines, and the service API."""

from web3_portfolio.core.aggregation import AggregationEngine, distribute_percentages
from web3_portfolio.core.alerts import check_alerts
from web3_portfolio.core.entitlements import (
    CAPABILITIES,
    Decision,
    EntitlementGate,
    EntitlementSource,
    Operation,
    StaticEntitlementSource,
)
from web3_portfolio.core.exceptions import (
    ConcurrencyConflict,
    ConfigError,
    DuplicateAddressError,
    EntitlementError,
    InvalidNetworkError,
    NotFoundError,
    PortfolioError,
    ProviderError,
    ProviderTimeoutError,
    RefreshFailedError,
    ValidationError,
)
from web3_portfolio.core.models import (
    Address,
    AddressFailure,
    AlertKind,
    AlertNotification,
    AlertOperator,
    AlertRule,
    AllocationBy,
    AssetAllocation,
    Balance,
    EntitlementTier,
    Network,
    NetworkAllocation,
    PerformancePeriod,
    PerformancePoint,
    PerformanceView,
    Portfolio,
    PortfolioSummary,
    RefreshResult,
    TokenBalance,
    ValuationSnapshot,
)
from web3_portfolio.core.refresh import RefreshCoordinator
from web3_portfolio.core.registry import BalanceProvider, ProviderRegistry
from web3_portfolio.core.service import PortfolioService

__all__ = [
    "CAPABILITIES",
    "Address",
    "AddressFailure",
    "AggregationEngine",
    "AlertKind",
    "AlertNotification",
    "AlertOperator",
    "AlertRule",
    "AllocationBy",
    "AssetAllocation",
    "Balance",
    "BalanceProvider",
    "ConcurrencyConflict",
    "ConfigError",
    "Decision",
    "DuplicateAddressError",
    "EntitlementError",
    "EntitlementGate",
    "EntitlementSource",
    "EntitlementTier",
    "InvalidNetworkError",
    "Network",
    "NetworkAllocation",
    "NotFoundError",
    "Operation",
    "PerformancePeriod",
    "PerformancePoint",
    "PerformanceView",
    "Portfolio",
    "PortfolioError",
    "PortfolioService",
    "PortfolioSummary",
    "ProviderError",
    "ProviderRegistry",
    "ProviderTimeoutError",
    "RefreshCoordinator",
    "RefreshFailedError",
    "StaticEntitlementSource",
    "TokenBalance",
    "ValidationError",
    "ValuationSnapshot",
    "check_alerts",
    "distribute_percentages",
]
