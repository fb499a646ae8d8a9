"""JSON-RPC client over httpx with endpoint rotation."""

import itertools
import logging
from typing import Any

import httpx

from web3_portfolio.rpc.retry import RetryConfig, RetryManager, is_retryable

logger = logging.getLogger(__name__)


class RPCError(Exception):
    """Exception raised when a JSON-RPC node returns an error object or a malformed reply."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


def endpoint_failed(error: BaseException) -> bool:
    """
    Whether an error condemns the current endpoint rather than the request.

    Public nodes differ in rate limits, keys and sync state, so any HTTP
    status error or node error object is worth a try on the next endpoint.

    """
    return isinstance(error, RPCError | httpx.HTTPStatusError) or is_retryable(error)


class JsonRpcClient:
    """
    Minimal JSON-RPC 2.0 client for EVM nodes.

    Requests go to the current endpoint; ``rotate_endpoint`` advances to the
    next one so a retrying caller can fall back across public nodes.

    Parameters
    ----------
    endpoints : list[str]
        RPC endpoint URLs, in preference order
    timeout : float
        Request timeout in seconds
    retry_config : RetryConfig | None
        Backoff between attempts
    transport : httpx.BaseTransport | None
        Custom transport (tests use ``httpx.MockTransport``)

    """

    def __init__(
        self,
        endpoints: list[str],
        timeout: float = 30.0,
        retry_config: RetryConfig | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not endpoints:
            msg = "At least one RPC endpoint is required"
            raise ValueError(msg)
        self.endpoints = list(endpoints)
        self._index = 0
        self._ids = itertools.count(1)
        self.client = httpx.Client(timeout=timeout, transport=transport)
        self.retry = RetryManager(
            self,
            retry_config or RetryConfig.for_endpoints(len(self.endpoints)),
            retryable=endpoint_failed,
        )

    @property
    def endpoint(self) -> str:
        """Endpoint the next request goes to."""
        return self.endpoints[self._index]

    def rotate_endpoint(self) -> None:
        """Advance to the next endpoint (wrapping around)."""
        self._index = (self._index + 1) % len(self.endpoints)
        logger.debug("Rotated RPC endpoint to %s", self.endpoint)

    def make_request(self, method: str, params: list[Any]) -> Any:
        """
        Send one JSON-RPC request to the current endpoint.

        Parameters
        ----------
        method : str
            RPC method name (e.g., 'eth_getBalance')
        params : list[Any]
            Method parameters

        Returns
        -------
        Any
            The ``result`` member of the reply

        Raises
        ------
        httpx.HTTPError
            On transport failures and non-2xx replies
        RPCError
            If the node answers with an error object

        """
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        response = self.client.post(self.endpoint, json=payload)
        response.raise_for_status()

        try:
            data = response.json()
        except ValueError as e:
            msg = f"Malformed JSON-RPC reply from {self.endpoint}"
            raise RPCError(msg) from e

        if data.get("error"):
            error = data["error"]
            raise RPCError(error.get("message", "unknown RPC error"), error.get("code"))
        if "result" not in data:
            msg = f"JSON-RPC reply from {self.endpoint} has no result"
            raise RPCError(msg)
        return data["result"]

    def call(self, method: str, params: list[Any]) -> Any:
        """Send a request with retry and endpoint rotation."""
        return self.retry.execute_with_retry(method, params)

    def close(self) -> None:
        """Close HTTP client."""
        self.client.close()

    def __enter__(self) -> "JsonRpcClient":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        """Context manager exit."""
        self.close()
