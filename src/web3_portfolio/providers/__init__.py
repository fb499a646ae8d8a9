"""Balance providers for the supported networks."""

# Import all providers to trigger auto-registration
from web3_portfolio.providers.base import BaseBalanceProvider
from web3_portfolio.providers.rpc import RpcBalanceProvider
from web3_portfolio.providers.static import StaticBalanceProvider
from web3_portfolio.providers.zerion import ZerionBalanceProvider

__all__ = [
    "BaseBalanceProvider",
    "RpcBalanceProvider",
    "StaticBalanceProvider",
    "ZerionBalanceProvider",
]
