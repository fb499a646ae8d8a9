"""Engine configuration loaded from the environment."""

import logging
import os
from collections.abc import Mapping
from pathlib import Path

import pydantic
from pydantic import BaseModel, Field

from web3_portfolio.core.exceptions import ConfigError
from web3_portfolio.core.models import Network
from web3_portfolio.core.registry import ProviderRegistry
from web3_portfolio.data import get_network_config
from web3_portfolio.providers import RpcBalanceProvider, ZerionBalanceProvider
from web3_portfolio.store import InMemoryPortfolioStore, PortfolioStore, SQLitePortfolioStore

logger = logging.getLogger(__name__)

ENV_PREFIX = "WEB3_PORTFOLIO_"


class EngineConfig(BaseModel):
    """
    Runtime settings of the portfolio engine.

    Attributes
    ----------
    max_concurrency : int
        Maximum in-flight provider fetches per refresh
    fetch_timeout : float
        Seconds allowed per provider fetch
    snapshot_interval : int
        Length of a refresh tick in seconds
    percentage_places : int
        Decimal places of allocation percentages
    database_path : Path | None
        SQLite database file; in-memory store if None
    zerion_api_key : str | None
        Enables the Zerion provider when set
    rpc_urls : dict[str, str]
        Network name to preferred RPC URL

    """

    max_concurrency: int = Field(default=8, ge=1)
    fetch_timeout: float = Field(default=15.0, gt=0)
    snapshot_interval: int = Field(default=300, ge=1)
    percentage_places: int = Field(default=2, ge=0, le=8)
    database_path: Path | None = None
    zerion_api_key: str | None = None
    rpc_urls: dict[str, str] = Field(default_factory=dict)


def load_config(environ: Mapping[str, str] | None = None, **overrides: object) -> EngineConfig:
    """
    Build the engine configuration from environment variables.

    Reads ``WEB3_PORTFOLIO_MAX_CONCURRENCY``, ``WEB3_PORTFOLIO_FETCH_TIMEOUT``,
    ``WEB3_PORTFOLIO_SNAPSHOT_INTERVAL``, ``WEB3_PORTFOLIO_PERCENTAGE_PLACES``,
    ``WEB3_PORTFOLIO_DATABASE``, ``ZERION_API_KEY`` and each network's
    ``<NETWORK>_RPC_URL``. Keyword overrides win over the environment.

    Parameters
    ----------
    environ : Mapping[str, str] | None
        Variables to read (``os.environ`` if None)
    **overrides : object
        Explicit field values

    Returns
    -------
    EngineConfig
        Validated configuration

    Raises
    ------
    ConfigError
        If a value is missing its expected type or range

    """
    env = os.environ if environ is None else environ
    values: dict[str, object] = {}

    for field in ("max_concurrency", "fetch_timeout", "snapshot_interval", "percentage_places"):
        raw = env.get(f"{ENV_PREFIX}{field.upper()}", "").strip()
        if raw:
            values[field] = raw
    if env.get(f"{ENV_PREFIX}DATABASE", "").strip():
        values["database_path"] = env[f"{ENV_PREFIX}DATABASE"].strip()
    if env.get("ZERION_API_KEY", "").strip():
        values["zerion_api_key"] = env["ZERION_API_KEY"].strip()

    rpc_urls = {}
    for network in Network:
        url = env.get(get_network_config(network)["rpc_env"], "").strip()
        if url:
            rpc_urls[network.value] = url
    values["rpc_urls"] = rpc_urls

    values.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return EngineConfig.model_validate(values)
    except pydantic.ValidationError as e:
        msg = f"Invalid configuration: {e}"
        raise ConfigError(msg) from e


def build_registry(config: EngineConfig) -> ProviderRegistry:
    """
    Bind every supported network to a balance provider.

    Zerion serves all networks when an API key is configured; otherwise
    native balances are read over JSON-RPC.

    """
    registry = ProviderRegistry()
    if config.zerion_api_key:
        registry.bind(ZerionBalanceProvider(config.zerion_api_key, timeout=config.fetch_timeout))
        logger.debug("Using Zerion balance provider")
    else:
        registry.bind(RpcBalanceProvider(rpc_urls=config.rpc_urls))
        logger.debug("Using JSON-RPC balance provider")
    return registry


def build_store(config: EngineConfig) -> PortfolioStore:
    """SQLite store at ``database_path``, or an in-memory store."""
    if config.database_path is None:
        return InMemoryPortfolioStore()
    config.database_path.parent.mkdir(parents=True, exist_ok=True)
    return SQLitePortfolioStore(str(config.database_path))
