"""In-memory balance provider for offline use, demos, and tests."""

import asyncio
from collections.abc import Iterable
from typing import ClassVar

from web3_portfolio.core.models import Network, TokenBalance
from web3_portfolio.core.registry import ProviderRegistry
from web3_portfolio.providers.base import BaseBalanceProvider


def _key(network: Network | str, address: str) -> tuple[Network, str]:
    return Network.parse(network), address.strip().lower()


@ProviderRegistry.register
class StaticBalanceProvider(BaseBalanceProvider):
    """
    Serves canned balances per (network, address).

    Unknown addresses hold nothing. Per-address delays and errors can be
    scripted to simulate slow or failing upstreams.

    Parameters
    ----------
    balances : dict[tuple[Network | str, str], Iterable[TokenBalance]] | None
        Initial balances keyed by (network, address)
    networks : list[Network | str] | None
        Networks to claim; all supported networks if None

    """

    name = "static"
    supported_networks: ClassVar[list[Network]] = list(Network)

    def __init__(
        self,
        balances: dict[tuple[Network | str, str], Iterable[TokenBalance]] | None = None,
        networks: list[Network | str] | None = None,
    ) -> None:
        super().__init__()
        if networks is not None:
            self.supported_networks = [Network.parse(n) for n in networks]
        self._balances: dict[tuple[Network, str], list[TokenBalance]] = {}
        self._delays: dict[tuple[Network, str], float] = {}
        self._errors: dict[tuple[Network, str], Exception] = {}
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        for (network, address), tokens in (balances or {}).items():
            self.set_balances(network, address, tokens)

    def set_balances(self, network: Network | str, address: str, tokens: Iterable[TokenBalance]) -> None:
        """Replace the canned balances of an address."""
        self._balances[_key(network, address)] = list(tokens)

    def set_delay(self, network: Network | str, address: str, seconds: float) -> None:
        """Make lookups of an address take ``seconds``."""
        self._delays[_key(network, address)] = seconds

    def set_error(self, network: Network | str, address: str, error: Exception | None) -> None:
        """Make lookups of an address raise ``error`` (None clears it)."""
        if error is None:
            self._errors.pop(_key(network, address), None)
        else:
            self._errors[_key(network, address)] = error

    async def fetch_balances(self, network: Network, address: str, timeout: float) -> list[TokenBalance]:
        key = _key(network, self.validate_address(Network.parse(network), address))
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        # Answers reflect the state at call time, even when delayed
        tokens = [token.model_copy() for token in self._balances.get(key, [])]
        error = self._errors.get(key)
        try:
            delay = self._delays.get(key, 0)
            if delay:
                await asyncio.sleep(delay)
            if error is not None:
                raise error
            return tokens
        finally:
            self.in_flight -= 1
