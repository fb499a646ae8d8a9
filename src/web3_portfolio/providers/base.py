"""Base balance provider class with common functionality."""

import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from typing import ClassVar

from web3_portfolio.core.exceptions import ProviderError
from web3_portfolio.core.models import Network, TokenBalance
from web3_portfolio.data import get_network_config


class BaseBalanceProvider(ABC):
    """
    Abstract base class for balance providers.

    All providers should inherit from this class, set the class attributes,
    and implement ``fetch_balances`` (plain or ``async def``).

    Attributes
    ----------
    name : str
        Unique provider identifier (must be set in subclass)
    supported_networks : list[Network]
        Networks the provider can look up (must be set in subclass)

    """

    name: ClassVar[str] = ""
    supported_networks: ClassVar[list[Network]] = []

    def __init__(self) -> None:
        if not self.name:
            msg = f"{self.__class__.__name__} must define 'name' attribute"
            raise ValueError(msg)
        if not self.supported_networks:
            msg = f"{self.__class__.__name__} must define 'supported_networks' attribute"
            raise ValueError(msg)

    @abstractmethod
    def fetch_balances(
        self,
        network: Network,
        address: str,
        timeout: float,
    ) -> list[TokenBalance] | Awaitable[list[TokenBalance]]:
        """
        Fetch current token balances of an address, priced in USD.

        Parameters
        ----------
        network : Network
            Network the address lives on
        address : str
            Raw address string
        timeout : float
            Seconds the lookup may take

        Returns
        -------
        list[TokenBalance]
            Balances at current prices

        Raises
        ------
        ProviderError
            If the lookup fails

        """

    def validate_address(self, network: Network, address: str) -> str:
        """
        Check an address against the network's address format.

        Returns
        -------
        str
            The stripped address

        Raises
        ------
        ProviderError
            If the network is unsupported by this provider or the address is malformed

        """
        if network not in self.supported_networks:
            msg = f"{self.name} does not support {network}"
            raise ProviderError(msg, network=network, address=address)
        cleaned = address.strip()
        pattern = get_network_config(network)["address_pattern"]
        if not re.match(pattern, cleaned):
            msg = f"Malformed {network} address: {address!r}"
            raise ProviderError(msg, network=network, address=address)
        return cleaned

    def close(self) -> None:
        """Release provider resources (HTTP clients)."""

    def __repr__(self) -> str:
        """String representation."""
        return f"{self.__class__.__name__}(name={self.name!r})"
