"""Process-wide StockSpark settings, read from the environment once at startup."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from stockspark_mcp.constants import (
    API_BASE_URL,
    AUTH_URL,
    CLIENT_ID,
    DEFAULT_COUNTRY,
    DEFAULT_UPLOAD_CONCURRENCY,
)

_REQUIRED_VARS = ("STOCKSPARK_USERNAME", "STOCKSPARK_PASSWORD")


@dataclass(frozen=True)
class StockSparkSettings:
    """Credentials and endpoints for one dealer account."""

    username: str
    password: str = ""
    client_id: str = CLIENT_ID
    auth_url: str = AUTH_URL
    api_url: str = API_BASE_URL
    country: str = DEFAULT_COUNTRY
    company_id: str = ""
    dealer_id: str = ""
    upload_concurrency: int = DEFAULT_UPLOAD_CONCURRENCY

    def __repr__(self) -> str:
        return (
            f"StockSparkSettings(username={self.username!r}, password='***', "
            f"api_url={self.api_url!r}, country={self.country!r})"
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> StockSparkSettings:
        env = os.environ if environ is None else environ

        missing = [name for name in _REQUIRED_VARS if not env.get(name, "").strip()]
        if missing:
            raise ValueError(
                f"Missing required environment variables: {', '.join(missing)}. "
                "Set them in the environment or the project .env file."
            )

        raw_concurrency = env.get("STOCKSPARK_UPLOAD_CONCURRENCY", "").strip()
        try:
            concurrency = int(raw_concurrency) if raw_concurrency else DEFAULT_UPLOAD_CONCURRENCY
        except ValueError as exc:
            raise ValueError(
                f"STOCKSPARK_UPLOAD_CONCURRENCY must be an integer, got {raw_concurrency!r}"
            ) from exc
        if concurrency < 1:
            raise ValueError("STOCKSPARK_UPLOAD_CONCURRENCY must be at least 1")

        return cls(
            username=env["STOCKSPARK_USERNAME"].strip(),
            password=env["STOCKSPARK_PASSWORD"],
            client_id=env.get("STOCKSPARK_CLIENT_ID", "").strip() or CLIENT_ID,
            auth_url=env.get("STOCKSPARK_AUTH_URL", "").strip() or AUTH_URL,
            api_url=(env.get("STOCKSPARK_API_URL", "").strip() or API_BASE_URL).rstrip("/"),
            country=env.get("STOCKSPARK_COUNTRY", "").strip().lower() or DEFAULT_COUNTRY,
            company_id=env.get("STOCKSPARK_COMPANY_ID", "").strip(),
            dealer_id=env.get("STOCKSPARK_DEALER_ID", "").strip(),
            upload_concurrency=concurrency,
        )
