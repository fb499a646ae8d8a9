"""DeFiLlama pricing service for fetching token USD prices."""

import logging
from decimal import Decimal

import httpx

from web3_portfolio.core.exceptions import ProviderError, ProviderTimeoutError
from web3_portfolio.data.loader import get_network_config
from web3_portfolio.rpc.retry import RetryConfig, with_retry

logger = logging.getLogger(__name__)


class DeFiLlamaPricing:
    """
    Fetches token prices from DeFiLlama API.

    DeFiLlama provides free, decentralized price data for thousands of tokens
    across multiple chains. Coins are addressed as ``chain:address`` for
    contracts or ``coingecko:<id>`` for native assets.

    Parameters
    ----------
    base_url : str
        DeFiLlama API base URL
    timeout : float
        Request timeout in seconds
    transport : httpx.BaseTransport | None
        Custom transport (tests use ``httpx.MockTransport``)
    retry_config : RetryConfig | None
        Backoff for transient failures (rate limits, gateway errors)

    """

    def __init__(
        self,
        base_url: str = "https://coins.llama.fi",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        retry_config: RetryConfig | None = None,
    ) -> None:
        self.base_url = base_url
        self.client = httpx.Client(timeout=timeout, transport=transport)
        self.retry_config = retry_config or RetryConfig(max_retries=2, base_delay=0.5)

    def get_prices(
        self,
        tokens: list[tuple[str, str]],
    ) -> dict[tuple[str, str], Decimal]:
        """
        Fetch USD prices for multiple tokens.

        Parameters
        ----------
        tokens : list[tuple[str, str]]
            List of (network, address) tuples

        Returns
        -------
        dict[tuple[str, str], Decimal]
            Mapping of (network, address) to USD price; unknown coins map to 0

        Examples
        --------
        >>> pricing = DeFiLlamaPricing()
        >>> tokens = [
        ...     ("ethereum", "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"),  # USDC
        ...     ("polygon", "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"),  # USDC.e
        ... ]
        >>> prices = pricing.get_prices(tokens)

        """
        if not tokens:
            return {}

        coin_ids = [self._format_coin_id(network, addr) for network, addr in tokens]
        prices = self.get_prices_by_id(coin_ids)
        return {token: prices[coin_id] for token, coin_id in zip(tokens, coin_ids, strict=True)}

    def get_price(self, network: str, address: str) -> Decimal:
        """
        Fetch USD price for a single token.

        Parameters
        ----------
        network : str
            Network name
        address : str
            Token contract address

        Returns
        -------
        Decimal
            USD price

        """
        prices = self.get_prices([(network, address)])
        return prices.get((network, address), Decimal("0"))

    def get_prices_by_id(self, coin_ids: list[str]) -> dict[str, Decimal]:
        """
        Fetch USD prices for raw DeFiLlama coin identifiers.

        Parameters
        ----------
        coin_ids : list[str]
            Identifiers such as ``coingecko:ethereum`` or ``base:0x...``

        Returns
        -------
        dict[str, Decimal]
            Price per identifier; identifiers DeFiLlama does not know map to 0

        Raises
        ------
        ProviderError
            If the API request fails

        """
        if not coin_ids:
            return {}

        prices_data = self._fetch_batch_prices(coin_ids)
        result = {}
        for coin_id in coin_ids:
            price_info = prices_data.get(coin_id)
            if price_info and "price" in price_info:
                result[coin_id] = Decimal(str(price_info["price"]))
            else:
                logger.warning("No DeFiLlama price for %s", coin_id)
                result[coin_id] = Decimal("0")
        return result

    def _fetch_batch_prices(self, coin_ids: list[str]) -> dict:
        """
        Fetch prices from DeFiLlama API.

        Parameters
        ----------
        coin_ids : list[str]
            Coin identifiers

        Returns
        -------
        dict
            ``coins`` member of the API response

        """
        try:
            return with_retry(self.retry_config)(self._get_coins)(",".join(coin_ids))
        except httpx.TimeoutException as e:
            msg = f"DeFiLlama request timeout: {e}"
            raise ProviderTimeoutError(msg) from e
        except httpx.HTTPStatusError as e:
            msg = f"DeFiLlama HTTP error {e.response.status_code}"
            raise ProviderError(msg) from e
        except httpx.HTTPError as e:
            msg = f"DeFiLlama request failed: {e}"
            raise ProviderError(msg) from e

    def _get_coins(self, coins_param: str) -> dict:
        response = self.client.get(f"{self.base_url}/prices/current/{coins_param}")
        response.raise_for_status()
        return response.json().get("coins", {})

    def _format_coin_id(self, network: str, address: str) -> str:
        """
        Format coin identifier for DeFiLlama API.

        Parameters
        ----------
        network : str
            Network name
        address : str
            Token address

        Returns
        -------
        str
            Formatted coin ID (e.g., "ethereum:0x...", "bsc:0x...")

        """
        llama_chain = get_network_config(network)["llama_chain"]
        return f"{llama_chain}:{address}"

    def close(self) -> None:
        """Close HTTP client."""
        self.client.close()

    def __enter__(self) -> "DeFiLlamaPricing":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        """Context manager exit."""
        self.close()
