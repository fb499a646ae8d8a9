"""Network metadata and configuration loading."""

from web3_portfolio.data.loader import (
    get_all_supported_networks,
    get_chain_id,
    get_native_asset,
    get_network_config,
    get_rpc_endpoints,
    load_networks,
)

__all__ = [
    "get_all_supported_networks",
    "get_chain_id",
    "get_native_asset",
    "get_network_config",
    "get_rpc_endpoints",
    "load_networks",
]
