"""Retry policy for chain-data requests: JSON-RPC nodes and HTTP price APIs."""

import logging
import time
from collections.abc import Callable
from functools import wraps
from typing import Any, Protocol, TypeVar

import httpx
from pydantic import BaseModel, Field

from web3_portfolio.core.exceptions import ProviderTimeoutError

T = TypeVar("T")

logger = logging.getLogger(__name__)

# Replies that public nodes and price APIs send for transient refusals
RETRYABLE_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})

Retryable = Callable[[BaseException], bool]


def is_retryable(error: BaseException) -> bool:
    """
    Decide whether a failed chain-data request is worth another attempt.

    Transport failures, provider timeouts, rate limiting and gateway errors
    are transient. Other HTTP status errors (bad key, unknown wallet) and
    programming errors are not.

    """
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS
    return isinstance(error, httpx.TransportError | ProviderTimeoutError)


def retry_after(error: BaseException) -> float | None:
    """Seconds requested by a ``Retry-After`` header, when the error carries one."""
    if not isinstance(error, httpx.HTTPStatusError):
        return None
    raw = error.response.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        # HTTP-date form; fall back to backoff
        return None


class RetryConfig(BaseModel):
    """
    Backoff between attempts at a chain-data request.

    Attributes
    ----------
    max_retries : int
        Attempts after the first one
    base_delay : float
        Delay in seconds before the first retry
    max_delay : float
        Upper bound for any single delay, including ``Retry-After`` requests
    exponential_base : float
        Growth factor of the delay per attempt

    """

    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    exponential_base: float = Field(default=2.0, ge=1)

    @classmethod
    def for_endpoints(cls, count: int, base_delay: float = 0.5) -> "RetryConfig":
        """One attempt per endpoint of a rotating client."""
        return cls(max_retries=max(count - 1, 0), base_delay=base_delay)

    def get_delay(self, attempt: int, error: BaseException | None = None) -> float:
        """
        Delay before the retry following ``attempt`` (0-indexed).

        A ``Retry-After`` header on a rate-limited reply takes precedence over
        exponential backoff; both are capped at ``max_delay``.

        """
        requested = retry_after(error) if error is not None else None
        if requested is None:
            requested = self.base_delay * (self.exponential_base**attempt)
        return min(requested, self.max_delay)


def with_retry(
    config: RetryConfig | None = None,
    retryable: Retryable = is_retryable,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator retrying a request function with exponential backoff.

    Parameters
    ----------
    config : RetryConfig | None
        Retry configuration. Uses default config if None.
    retryable : Callable[[BaseException], bool]
        Decides which errors earn another attempt; anything else propagates at once

    Returns
    -------
    Callable
        Decorated function with retry logic

    """
    config = config or RetryConfig()

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if attempt >= config.max_retries or not retryable(e):
                        raise
                    delay = config.get_delay(attempt, e)
                    logger.debug(
                        "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                        func.__name__,
                        attempt + 1,
                        config.max_retries + 1,
                        e,
                        delay,
                    )
                    time.sleep(delay)
                    attempt += 1

        return wrapper

    return decorator


class RotatingClient(Protocol):
    """Client that sends requests to one of several interchangeable endpoints."""

    endpoint: str

    def make_request(self, method: str, params: list[Any]) -> Any: ...

    def rotate_endpoint(self) -> None: ...


class RetryManager:
    """
    Retries JSON-RPC calls, moving to the next endpoint after each failure.

    Parameters
    ----------
    client : RotatingClient
        RPC client exposing ``make_request`` and ``rotate_endpoint``
    config : RetryConfig | None
        Backoff between attempts
    retryable : Callable[[BaseException], bool]
        Errors that count against the current endpoint

    """

    def __init__(
        self,
        client: RotatingClient,
        config: RetryConfig | None = None,
        retryable: Retryable = is_retryable,
    ) -> None:
        self.client = client
        self.config = config or RetryConfig()
        self.retryable = retryable

    def execute_with_retry(self, method: str, params: list[Any]) -> Any:
        """
        Execute an RPC call, rotating endpoints on retryable failures.

        Raises
        ------
        Exception
            The last error once all attempts are used, or the first
            non-retryable one

        """
        attempt = 0
        while True:
            try:
                return self.client.make_request(method, params)
            except Exception as e:
                if not self.retryable(e):
                    raise
                failed = self.client.endpoint
                self.client.rotate_endpoint()
                if attempt >= self.config.max_retries:
                    logger.debug("RPC call %s failed after %d attempt(s)", method, attempt + 1)
                    raise
                delay = self.config.get_delay(attempt, e)
                logger.debug("RPC call %s failed on %s: %s; retrying in %.1fs", method, failed, e, delay)
                time.sleep(delay)
                attempt += 1
