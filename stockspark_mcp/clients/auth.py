"""In-memory OAuth token cache with single-flight refresh."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import aiohttp

from stockspark_mcp.clients.errors import AuthFailure
from stockspark_mcp.config import StockSparkSettings
from stockspark_mcp.constants import AUTH_TIMEOUT_SECONDS, TOKEN_SAFETY_MARGIN_SECONDS

logger = logging.getLogger(__name__)

_AUTH_TIMEOUT = aiohttp.ClientTimeout(total=AUTH_TIMEOUT_SECONDS)


@dataclass(frozen=True)
class Credential:
    """A bearer token and its absolute lifetime (epoch seconds)."""

    token: str
    issued_at: float
    expires_at: float

    def is_valid(self, now: float, margin: float = TOKEN_SAFETY_MARGIN_SECONDS) -> bool:
        return now < self.expires_at - margin

    def __repr__(self) -> str:
        return f"Credential(token='***', issued_at={self.issued_at}, expires_at={self.expires_at})"


class CredentialCache:
    """Holds at most one live credential for the process.

    ``get_credential()`` returns the cached token when it is still valid and
    otherwise performs the password-grant exchange. Concurrent callers that
    arrive while an exchange is running await the same task instead of
    starting their own, so a burst of requests costs one exchange.
    """

    def __init__(
        self,
        settings: StockSparkSettings,
        *,
        session: aiohttp.ClientSession | None = None,
        clock: Callable[[], float] = time.time,
        margin: float = TOKEN_SAFETY_MARGIN_SECONDS,
    ) -> None:
        self.settings = settings
        self.session = session
        self._clock = clock
        self._margin = margin
        self._credential: Credential | None = None
        self._refresh_task: asyncio.Task[Credential] | None = None

    def is_valid(self) -> bool:
        cred = self._credential
        return cred is not None and cred.is_valid(self._clock(), self._margin)

    def invalidate(self) -> None:
        if self._credential is not None:
            logger.info("Discarding cached StockSpark token")
        self._credential = None

    async def get_credential(self) -> Credential:
        cred = self._credential
        if cred is not None and cred.is_valid(self._clock(), self._margin):
            return cred

        # No await between the check and the assignment, so only one task starts.
        task = self._refresh_task
        if task is None:
            task = asyncio.ensure_future(self._refresh())
            self._refresh_task = task
        # Shielded so a cancelled waiter does not cancel the shared exchange.
        return await asyncio.shield(task)

    async def _refresh(self) -> Credential:
        try:
            cred = await self._exchange()
            self._credential = cred
            return cred
        except AuthFailure:
            self._credential = None
            raise
        finally:
            self._refresh_task = None

    async def _exchange(self) -> Credential:
        form = {
            "grant_type": "password",
            "client_id": self.settings.client_id,
            "username": self.settings.username,
            "password": self.settings.password,
        }
        logger.debug("Requesting StockSpark token for %s", self.settings.username)

        if self.session is not None:
            payload = await self._post_form(self.session, form)
        else:
            async with aiohttp.ClientSession() as session:
                payload = await self._post_form(session, form)

        token = payload.get("access_token")
        expires_in = payload.get("expires_in")
        if not isinstance(token, str) or not token:
            raise AuthFailure(
                "Token response did not include an access_token.",
                code="AUTH_MALFORMED_RESPONSE",
                details={"keys": sorted(payload)},
            )
        try:
            lifetime = float(expires_in)
        except (TypeError, ValueError) as exc:
            raise AuthFailure(
                "Token response did not include a numeric expires_in.",
                code="AUTH_MALFORMED_RESPONSE",
                details={"expires_in": expires_in},
            ) from exc

        now = self._clock()
        cred = Credential(token=token, issued_at=now, expires_at=now + lifetime)
        logger.debug("StockSpark token obtained, valid for %.0fs", lifetime)
        return cred

    async def _post_form(
        self,
        session: aiohttp.ClientSession,
        form: dict[str, str],
    ) -> dict[str, Any]:
        url = self.settings.auth_url
        try:
            async with session.post(url, data=form, timeout=_AUTH_TIMEOUT) as resp:
                raw_text = await resp.text()
                status = resp.status
        except asyncio.TimeoutError as exc:
            raise AuthFailure(
                "Token request timed out.",
                code="AUTH_TIMEOUT",
                details={"url": url},
            ) from exc
        except aiohttp.ClientError as exc:
            logger.error("Token request failed: %s", exc)
            raise AuthFailure(
                "Token request failed due to a network/client error.",
                code="AUTH_NETWORK_ERROR",
                details={"url": url, "error": str(exc)},
            ) from exc

        if status >= 400:
            logger.warning("Token request rejected with HTTP %s", status)
            raise AuthFailure(
                f"Authentication failed with HTTP {status}.",
                code="AUTH_FAILED",
                status=status,
                details={"response": raw_text[:500]},
            )

        try:
            payload = json.loads(raw_text)
        except json.JSONDecodeError as exc:
            raise AuthFailure(
                "Token response was not valid JSON.",
                code="AUTH_MALFORMED_RESPONSE",
                status=status,
            ) from exc
        if not isinstance(payload, dict):
            raise AuthFailure(
                "Token response was not a JSON object.",
                code="AUTH_MALFORMED_RESPONSE",
                status=status,
            )
        return payload
