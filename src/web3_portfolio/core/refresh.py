"""Refresh coordinator driving concurrent balance lookups for a portfolio."""

import asyncio
import functools
import inspect
import logging
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

from web3_portfolio.core.aggregation import total_value
from web3_portfolio.core.exceptions import (
    ConcurrencyConflict,
    NotFoundError,
    ProviderError,
    ProviderTimeoutError,
    RefreshFailedError,
)
from web3_portfolio.core.models import (
    Address,
    AddressFailure,
    Balance,
    Network,
    RefreshResult,
    TokenBalance,
    ValuationSnapshot,
    utcnow,
)
from web3_portfolio.core.registry import BalanceProvider, ProviderRegistry

if TYPE_CHECKING:
    from web3_portfolio.store.base import PortfolioStore

logger = logging.getLogger(__name__)

TIMEOUT_REASON = "timeout"


async def call_provider(
    provider: BalanceProvider,
    network: Network,
    address: str,
    timeout: float,
) -> list[TokenBalance]:
    """Invoke a provider lookup; plain methods run in a worker thread."""
    if inspect.iscoroutinefunction(provider.fetch_balances):
        return await provider.fetch_balances(network, address, timeout)
    return await asyncio.to_thread(provider.fetch_balances, network, address, timeout)


class RefreshCoordinator:
    """
    Refreshes the balances of every active address of a portfolio.

    Workflow:
    1. Load the portfolio's active addresses
    2. Fetch balances for each address concurrently (bounded, with a timeout each)
    3. Replace an address's balances as soon as its fetch succeeds
    4. Record one valuation snapshot per refresh tick
    5. Summarize refreshed and failed addresses

    A failing address never aborts its siblings. The call fails as a whole
    only when the portfolio is missing or every address failed.

    Parameters
    ----------
    store : PortfolioStore
        Portfolio store receiving balances and snapshots
    registry : ProviderRegistry
        Network to balance provider routing
    max_concurrency : int
        Maximum number of in-flight provider fetches
    fetch_timeout : float
        Seconds allowed per provider fetch
    snapshot_interval : int
        Length of a refresh tick in seconds; one snapshot per tick at most
    clock : Callable[[], datetime] | None
        Source of "now" (defaults to UTC wall clock)

    """

    def __init__(
        self,
        store: "PortfolioStore",
        registry: ProviderRegistry,
        max_concurrency: int = 8,
        fetch_timeout: float = 15.0,
        snapshot_interval: int = 300,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if max_concurrency < 1:
            msg = "max_concurrency must be at least 1"
            raise ValueError(msg)
        if snapshot_interval < 1:
            msg = "snapshot_interval must be at least 1 second"
            raise ValueError(msg)
        self.store = store
        self.registry = registry
        self.max_concurrency = max_concurrency
        self.fetch_timeout = fetch_timeout
        self.snapshot_interval = snapshot_interval
        self.clock = clock or utcnow
        self._background: set[asyncio.Task] = set()

    def tick_for(self, when: datetime) -> int:
        """Refresh tick containing ``when``."""
        return int(when.timestamp()) // self.snapshot_interval

    async def refresh(self, portfolio_id: str) -> RefreshResult:
        """
        Refresh all active addresses of a portfolio.

        The work runs as its own task: if the awaiting caller is cancelled,
        in-flight fetches still finish and commit their results.

        Parameters
        ----------
        portfolio_id : str
            Portfolio to refresh

        Returns
        -------
        RefreshResult
            Refreshed and failed addresses plus the new total value

        Raises
        ------
        NotFoundError
            If the portfolio does not exist
        RefreshFailedError
            If the portfolio has addresses and none of them refreshed

        """
        task = asyncio.ensure_future(self._run(portfolio_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # Nobody awaits the outcome any more; report it here instead
            task.add_done_callback(functools.partial(self._report_orphaned, portfolio_id))
            raise

    @staticmethod
    def _report_orphaned(portfolio_id: str, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning("Refresh of portfolio %s was cancelled after its caller left", portfolio_id)
            return
        error = task.exception()
        if error is not None:
            logger.warning("Refresh of portfolio %s failed after its caller left: %s", portfolio_id, error)
        else:
            logger.info("Refresh of portfolio %s completed after its caller left", portfolio_id)

    def refresh_sync(self, portfolio_id: str) -> RefreshResult:
        """Blocking wrapper around :meth:`refresh` for callers without an event loop."""
        return asyncio.run(self.refresh(portfolio_id))

    async def _run(self, portfolio_id: str) -> RefreshResult:
        portfolio = self.store.get_portfolio(portfolio_id)
        addresses = portfolio.active_addresses()
        result = RefreshResult(portfolio_id=portfolio_id, started_at=self.clock())

        logger.info("Refreshing %d address(es) of portfolio %s", len(addresses), portfolio_id)
        semaphore = asyncio.Semaphore(self.max_concurrency)
        outcomes = await asyncio.gather(*(self._refresh_address(address, semaphore) for address in addresses))

        for address, failure in zip(addresses, outcomes, strict=True):
            if failure is None:
                result.refreshed.append(address.id)
            else:
                result.failed.append(failure)

        if addresses and not result.refreshed:
            logger.error("All %d address(es) of portfolio %s failed to refresh", len(addresses), portfolio_id)
            raise RefreshFailedError(portfolio_id, result.failed)

        finished = self.clock()
        result.total_value = total_value(self.store.get_portfolio(portfolio_id))
        snapshot = ValuationSnapshot(
            portfolio_id=portfolio_id,
            tick=self.tick_for(finished),
            timestamp=finished,
            total_value=result.total_value,
        )
        result.snapshot_recorded = self.store.append_snapshot(snapshot)
        result.finished_at = finished

        logger.info(
            "Refreshed portfolio %s: %d ok, %d failed, total %s",
            portfolio_id,
            len(result.refreshed),
            len(result.failed),
            result.total_value,
        )
        return result

    async def _refresh_address(self, address: Address, semaphore: asyncio.Semaphore) -> AddressFailure | None:
        """Fetch and commit one address. Returns None on success, else the failure."""
        provider = self.registry.for_network(address.network)
        if provider is None:
            return self._failure(address, f"no balance provider for network {address.network}")

        async with semaphore:
            try:
                sequence = self.store.begin_refresh(address.id)
                tokens = await asyncio.wait_for(
                    call_provider(provider, address.network, address.address, self.fetch_timeout),
                    timeout=self.fetch_timeout,
                )
            except (TimeoutError, ProviderTimeoutError):
                return self._failure(address, TIMEOUT_REASON)
            except NotFoundError:
                return self._failure(address, "address no longer exists")
            except ProviderError as e:
                return self._failure(address, str(e) or type(e).__name__)
            except Exception as e:
                logger.exception("Unexpected error from provider %s for address %s", provider.name, address.id)
                return self._failure(address, f"{type(e).__name__}: {e}")

        fetched_at = self.clock()
        balances = [Balance.from_token(address.id, token, fetched_at) for token in tokens]
        try:
            self.store.replace_balances(address.id, balances, sequence=sequence)
        except ConcurrencyConflict as e:
            # A newer attempt already committed; its data stands
            logger.debug("Discarded stale balances: %s", e)
        except NotFoundError:
            return self._failure(address, "address no longer exists")
        return None

    @staticmethod
    def _failure(address: Address, reason: str) -> AddressFailure:
        logger.warning("Refresh failed for %s on %s (%s): %s", address.address, address.network, address.id, reason)
        return AddressFailure(address_id=address.id, network=address.network, address=address.address, reason=reason)
