"""Zerion API balance provider for full wallet coverage."""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, ClassVar

import httpx

from web3_portfolio.core.exceptions import ProviderError, ProviderTimeoutError
from web3_portfolio.core.models import NATIVE_TOKEN_ID, Network, TokenBalance
from web3_portfolio.core.registry import ProviderRegistry
from web3_portfolio.data import get_network_config
from web3_portfolio.providers.base import BaseBalanceProvider

logger = logging.getLogger(__name__)


def _decimal(raw: Any) -> Decimal:
    if raw is None:
        return Decimal("0")
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        return Decimal("0")


@ProviderRegistry.register
class ZerionBalanceProvider(BaseBalanceProvider):
    """
    Balance provider backed by the Zerion wallet positions API.

    Only simple wallet holdings are requested; DeFi protocol positions are
    left out so balances stay additive.

    Parameters
    ----------
    api_key : str
        Zerion API key (format: zk_dev_xxx or zk_prod_xxx)
    base_url : str
        API base URL
    timeout : float
        Default request timeout in seconds
    transport : httpx.BaseTransport | None
        Custom transport (tests use ``httpx.MockTransport``)

    """

    BASE_URL = "https://api.zerion.io/v1"

    name = "zerion"
    supported_networks: ClassVar[list[Network]] = list(Network)

    def __init__(
        self,
        api_key: str,
        base_url: str = BASE_URL,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__()
        if not api_key:
            msg = "Zerion API key is required"
            raise ValueError(msg)
        self.base_url = base_url
        self.client = httpx.Client(
            timeout=timeout,
            auth=(api_key, ""),  # Zerion uses HTTP basic auth with key as username
            transport=transport,
        )

    def get_positions(self, network: Network, wallet_address: str, timeout: float | None = None) -> dict[str, Any]:
        """
        Fetch wallet positions of an address on one network.

        Parameters
        ----------
        network : Network
            Network to query
        wallet_address : str
            Wallet address
        timeout : float | None
            Request timeout override in seconds

        Returns
        -------
        dict[str, Any]
            Raw Zerion API response with positions

        Raises
        ------
        ProviderError
            If the API request fails
        ProviderTimeoutError
            If the API request times out

        """
        params = {
            "filter[chain_ids]": get_network_config(network)["zerion_chain"],
            "filter[positions]": "only_simple",
            "currency": "usd",
        }
        request_timeout = timeout if timeout is not None else self.client.timeout

        try:
            url = f"{self.base_url}/wallets/{wallet_address}/positions/"
            response = self.client.get(url, params=params, timeout=request_timeout)
            response.raise_for_status()
            return response.json()

        except httpx.TimeoutException as e:
            msg = f"Zerion request timeout: {e}"
            raise ProviderTimeoutError(msg, network=network, address=wallet_address) from e
        except httpx.HTTPStatusError as e:
            msg = f"Zerion HTTP error {e.response.status_code}"
            raise ProviderError(msg, network=network, address=wallet_address) from e
        except httpx.HTTPError as e:
            msg = f"Zerion request failed: {e}"
            raise ProviderError(msg, network=network, address=wallet_address) from e
        except ValueError as e:
            msg = f"Zerion returned malformed JSON: {e}"
            raise ProviderError(msg, network=network, address=wallet_address) from e

    def fetch_balances(self, network: Network, address: str, timeout: float) -> list[TokenBalance]:
        network = Network.parse(network)
        address = self.validate_address(network, address)
        raw_data = self.get_positions(network, address, timeout)

        zerion_chain = get_network_config(network)["zerion_chain"]
        balances = []
        for item in raw_data.get("data", []):
            balance = self._parse_position(item, zerion_chain)
            if balance:
                balances.append(balance)
        logger.debug("Zerion returned %d balance(s) for %s on %s", len(balances), address, network)
        return balances

    def _parse_position(self, item: dict[str, Any], zerion_chain: str) -> TokenBalance | None:
        """
        Parse a Zerion position into a TokenBalance.

        Parameters
        ----------
        item : dict[str, Any]
            Raw position data from Zerion
        zerion_chain : str
            Zerion chain id the request was filtered on

        Returns
        -------
        TokenBalance | None
            Parsed balance, or None for empty and foreign-chain positions

        """
        attributes = item.get("attributes", {})
        relationships = item.get("relationships", {})

        chain_id = relationships.get("chain", {}).get("data", {}).get("id", zerion_chain)
        if chain_id != zerion_chain:
            return None

        quantity_data = attributes.get("quantity") or {}
        quantity = _decimal(quantity_data.get("numeric"))
        if quantity == 0:
            return None

        price = _decimal(attributes.get("price"))
        if price == 0 and attributes.get("value") is not None:
            price = _decimal(attributes["value"]) / quantity

        fungible_info = attributes.get("fungible_info") or {}
        token_address = ""
        for impl in fungible_info.get("implementations", []):
            if impl.get("chain_id") == zerion_chain:
                token_address = impl.get("address") or ""
                break

        return TokenBalance(
            token_id=token_address.lower() or NATIVE_TOKEN_ID,
            symbol=fungible_info.get("symbol") or "UNKNOWN",
            name=fungible_info.get("name") or "",
            amount=quantity,
            decimals=quantity_data.get("decimals", 18),
            price=price,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()
