"""Portfolio store backends."""

from web3_portfolio.store.base import PortfolioStore
from web3_portfolio.store.memory import InMemoryPortfolioStore
from web3_portfolio.store.sqlite import SQLitePortfolioStore, StoreSchemaError

__all__ = [
    "InMemoryPortfolioStore",
    "PortfolioStore",
    "SQLitePortfolioStore",
    "StoreSchemaError",
]
