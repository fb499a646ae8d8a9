"""RPC layer with a JSON-RPC client and retry logic."""

from web3_portfolio.rpc.client import JsonRpcClient, RPCError
from web3_portfolio.rpc.retry import RetryConfig, RetryManager, is_retryable, with_retry

__all__ = [
    "JsonRpcClient",
    "RPCError",
    "RetryConfig",
    "RetryManager",
    "is_retryable",
    "with_retry",
]
