"""StockSpark API clients."""

from stockspark_mcp.clients.auth import Credential, CredentialCache
from stockspark_mcp.clients.errors import (
    AuthFailure,
    RemoteRequestFailure,
    StockSparkError,
    TransportFailure,
)
from stockspark_mcp.clients.stockspark import StockSparkClient

__all__ = [
    "AuthFailure",
    "Credential",
    "CredentialCache",
    "RemoteRequestFailure",
    "StockSparkClient",
    "StockSparkError",
    "TransportFailure",
]
