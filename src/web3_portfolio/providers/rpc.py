"""Native-asset balances over raw JSON-RPC, priced through DeFiLlama."""

import logging
import threading
from decimal import Decimal
from typing import ClassVar

import httpx

from web3_portfolio.core.exceptions import ProviderError, ProviderTimeoutError
from web3_portfolio.core.models import NATIVE_TOKEN_ID, Network, TokenBalance
from web3_portfolio.core.registry import ProviderRegistry
from web3_portfolio.data import get_native_asset, get_rpc_endpoints
from web3_portfolio.pricing.defillama import DeFiLlamaPricing
from web3_portfolio.providers.base import BaseBalanceProvider
from web3_portfolio.rpc.client import JsonRpcClient, RPCError
from web3_portfolio.rpc.retry import RetryConfig

logger = logging.getLogger(__name__)


@ProviderRegistry.register
class RpcBalanceProvider(BaseBalanceProvider):
    """
    Reads the native-asset balance of an address with ``eth_getBalance``.

    Each network gets its own JSON-RPC client that rotates across the
    configured endpoints on failure. Token (ERC-20) holdings are not
    discovered; use the Zerion provider for full wallet coverage.

    Parameters
    ----------
    rpc_urls : dict[str, str] | None
        Network name to preferred RPC URL overrides
    pricing : DeFiLlamaPricing | None
        Price source (a default client is created if None)
    retry_config : RetryConfig | None
        Backoff between RPC attempts
    transport : httpx.BaseTransport | None
        Custom transport for the RPC clients (tests use ``httpx.MockTransport``)

    """

    name = "rpc"
    supported_networks: ClassVar[list[Network]] = list(Network)

    def __init__(
        self,
        rpc_urls: dict[str, str] | None = None,
        pricing: DeFiLlamaPricing | None = None,
        retry_config: RetryConfig | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__()
        self.rpc_urls = rpc_urls or {}
        self.pricing = pricing or DeFiLlamaPricing()
        self.retry_config = retry_config
        self.transport = transport
        self._clients: dict[Network, JsonRpcClient] = {}
        self._clients_lock = threading.Lock()

    def client_for(self, network: Network, timeout: float = 30.0) -> JsonRpcClient:
        """JSON-RPC client of a network, created once even under concurrent fetches."""
        with self._clients_lock:
            client = self._clients.get(network)
            if client is None:
                client = JsonRpcClient(
                    get_rpc_endpoints(network, self.rpc_urls),
                    timeout=timeout,
                    retry_config=self.retry_config,
                    transport=self.transport,
                )
                self._clients[network] = client
            return client

    def fetch_balances(self, network: Network, address: str, timeout: float) -> list[TokenBalance]:
        """
        Fetch the native balance of an address.

        Parameters
        ----------
        network : Network
            Network to query
        address : str
            0x-prefixed address
        timeout : float
            Seconds the lookup may take

        Returns
        -------
        list[TokenBalance]
            The native balance, or nothing when it is zero

        Raises
        ------
        ProviderError
            If every RPC endpoint fails or the reply is malformed
        ProviderTimeoutError
            If the RPC or pricing request times out

        """
        network = Network.parse(network)
        address = self.validate_address(network, address)
        native = get_native_asset(network)

        wei = self._get_balance(network, address, timeout)
        if wei == 0:
            logger.debug("Zero %s balance for %s", native["symbol"], address)
            return []

        amount = Decimal(wei).scaleb(-native["decimals"])
        price = self.pricing.get_prices_by_id([native["price_id"]])[native["price_id"]]
        return [
            TokenBalance(
                token_id=NATIVE_TOKEN_ID,
                symbol=native["symbol"],
                name=native["name"],
                amount=amount,
                decimals=native["decimals"],
                price=price,
            )
        ]

    def _get_balance(self, network: Network, address: str, timeout: float) -> int:
        try:
            result = self.client_for(network, timeout).call("eth_getBalance", [address, "latest"])
            return int(result, 16)
        except httpx.TimeoutException as e:
            msg = f"RPC timeout on {network}: {e}"
            raise ProviderTimeoutError(msg, network=network, address=address) from e
        except httpx.HTTPStatusError as e:
            msg = f"RPC HTTP error {e.response.status_code} on {network}"
            raise ProviderError(msg, network=network, address=address) from e
        except httpx.HTTPError as e:
            msg = f"RPC request failed on {network}: {e}"
            raise ProviderError(msg, network=network, address=address) from e
        except RPCError as e:
            msg = f"RPC error on {network}: {e}"
            raise ProviderError(msg, network=network, address=address) from e
        except (TypeError, ValueError) as e:
            msg = f"Malformed eth_getBalance result on {network}: {e}"
            raise ProviderError(msg, network=network, address=address) from e

    def close(self) -> None:
        """Close RPC and pricing HTTP clients."""
        with self._clients_lock:
            for client in self._clients.values():
                client.close()
            self._clients.clear()
        self.pricing.close()
