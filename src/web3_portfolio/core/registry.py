"""Balance provider registry with auto-registration pattern."""

from collections.abc import Awaitable
from typing import Protocol

from web3_portfolio.core.models import Network, TokenBalance


class BalanceProvider(Protocol):
    """
    Interface that all balance providers must implement.

    Attributes
    ----------
    name : str
        Unique provider identifier (e.g., 'zerion', 'rpc')
    supported_networks : list[Network]
        Networks this provider can look up

    Methods
    -------
    fetch_balances(network, address, timeout)
        Return current token balances of an address, priced in USD. May be a
        plain method or a coroutine function.

    """

    name: str
    supported_networks: list[Network]

    def fetch_balances(
        self,
        network: Network,
        address: str,
        timeout: float,
    ) -> list[TokenBalance] | Awaitable[list[TokenBalance]]:
        """
        Fetch token balances for an address.

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
            If the lookup fails or the address is malformed for the network

        """
        ...


class ProviderRegistry:
    """
    Registry of balance providers.

    Provider classes register themselves with the @ProviderRegistry.register
    decorator so the CLI can list and build them by name. A registry
    instance binds each network to the provider instance that serves it.

    """

    _provider_classes: dict[str, type] = {}

    def __init__(self) -> None:
        self._bindings: dict[Network, BalanceProvider] = {}

    @classmethod
    def register(cls, provider_class: type) -> type:
        """
        Decorator to register a provider class.

        Parameters
        ----------
        provider_class : type
            Provider class to register

        Returns
        -------
        type
            The provider class (for decorator chaining)

        Examples
        --------
        >>> @ProviderRegistry.register
        ... class ZerionBalanceProvider(BaseBalanceProvider):
        ...     name = "zerion"
        ...     supported_networks = [Network.ETHEREUM, Network.BASE]

        """
        if not getattr(provider_class, "name", ""):
            msg = f"Provider {provider_class.__name__} must define 'name' attribute"
            raise ValueError(msg)

        cls._provider_classes[provider_class.name] = provider_class
        return provider_class

    @classmethod
    def get_provider_class(cls, name: str) -> type | None:
        """Registered provider class by name, or None."""
        return cls._provider_classes.get(name)

    @classmethod
    def list_provider_classes(cls) -> list[type]:
        """All registered provider classes."""
        return list(cls._provider_classes.values())

    def bind(self, provider: BalanceProvider, networks: list[Network | str] | None = None) -> None:
        """
        Route networks to a provider instance.

        Parameters
        ----------
        provider : BalanceProvider
            Provider instance
        networks : list[Network | str] | None
            Networks to bind; defaults to everything the provider supports.
            A later bind for the same network replaces the earlier one.

        """
        targets = [Network.parse(n) for n in networks] if networks else list(provider.supported_networks)
        for network in targets:
            if network not in provider.supported_networks:
                msg = f"Provider {provider.name} does not support {network}"
                raise ValueError(msg)
            self._bindings[network] = provider

    def for_network(self, network: Network | str) -> BalanceProvider | None:
        """Provider bound to a network, or None."""
        return self._bindings.get(Network.parse(network))

    def networks(self) -> list[Network]:
        """Networks with a bound provider."""
        return list(self._bindings.keys())

    def providers(self) -> list[BalanceProvider]:
        """Distinct bound provider instances."""
        unique: dict[int, BalanceProvider] = {}
        for provider in self._bindings.values():
            unique.setdefault(id(provider), provider)
        return list(unique.values())
