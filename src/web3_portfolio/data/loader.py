"""Network metadata loader."""

import os
from pathlib import Path
from typing import Any

import yaml

from web3_portfolio.core.models import Network


def load_networks() -> dict[str, Any]:
    """
    Load network metadata from networks.yaml.

    Returns
    -------
    dict[str, Any]
        Mapping of network name to its configuration

    """
    path = Path(__file__).parent / "networks.yaml"
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f)["networks"]


def get_network_config(network: Network | str) -> dict[str, Any]:
    """
    Get configuration for a specific network.

    Parameters
    ----------
    network : Network | str
        Network name (e.g., 'ethereum', 'polygon')

    Returns
    -------
    dict[str, Any]
        Network configuration including chain id, native asset and RPC endpoints

    Raises
    ------
    InvalidNetworkError
        If the network is not supported

    """
    return load_networks()[Network.parse(network).value]


def get_rpc_endpoints(network: Network | str, overrides: dict[str, str] | None = None) -> list[str]:
    """
    Get JSON-RPC endpoints for a network, most preferred first.

    An explicit override, then the network's ``rpc_env`` environment
    variable, take precedence over the packaged public endpoints.

    Parameters
    ----------
    network : Network | str
        Network name
    overrides : dict[str, str] | None
        Network name to RPC URL overrides

    Returns
    -------
    list[str]
        RPC endpoint URLs

    """
    config = get_network_config(network)
    endpoints = list(config["rpc_endpoints"])
    env_url = os.getenv(config["rpc_env"], "").strip()
    if env_url:
        endpoints.insert(0, env_url)
    override = (overrides or {}).get(Network.parse(network).value)
    if override:
        endpoints.insert(0, override)
    return endpoints


def get_native_asset(network: Network | str) -> dict[str, Any]:
    """
    Get native asset metadata (symbol, name, decimals, price id).

    Parameters
    ----------
    network : Network | str
        Network name

    Returns
    -------
    dict[str, Any]
        Native asset description

    """
    return get_network_config(network)["native"]


def get_all_supported_networks() -> list[str]:
    """
    Get list of all networks described in networks.yaml.

    Returns
    -------
    list[str]
        List of network names

    """
    return list(load_networks().keys())


def get_chain_id(network: Network | str) -> int:
    """Numeric EVM chain id of a network."""
    return get_network_config(network)["chain_id"]
