"""StockSpark request errors with structured metadata."""

from __future__ import annotations

from typing import Any


class StockSparkError(RuntimeError):
    """Raised for StockSpark request/config errors with structured metadata."""

    kind = "StockSparkError"

    def __init__(
        self,
        message: str,
        *,
        code: str,
        status: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status = status
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "kind": self.kind,
            "code": self.code,
            "error": str(self),
        }
        if self.status is not None:
            payload["status"] = self.status
        if self.details:
            payload["details"] = self.details
        return payload


class AuthFailure(StockSparkError):
    """The access token could not be obtained, or was rejected twice in a row."""

    kind = "AuthFailure"


class TransportFailure(StockSparkError):
    """Network-level failure or timeout. Never retried automatically."""

    kind = "TransportFailure"


class RemoteRequestFailure(StockSparkError):
    """The API answered with a non-2xx status other than a credential rejection."""

    kind = "RemoteRequestFailure"
