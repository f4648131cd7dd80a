"""Shared test fixtures: fake StockSpark backend, settings, credential cache injection."""

from __future__ import annotations

import asyncio
import base64
import json
from typing import Any

import pytest

from stockspark_mcp.clients.auth import CredentialCache
from stockspark_mcp.clients.stockspark import StockSparkClient
from stockspark_mcp.config import StockSparkSettings
from stockspark_mcp.server import reset_credentials, set_credential_cache_override

AUTH_URL = "https://auth.test/token"
API_URL = "https://api.test"

# 1x1 red pixel PNG
PNG_1PX = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChAI9h2/M8AAAAABJRU5ErkJggg=="
)
PNG_1PX_B64 = base64.b64encode(PNG_1PX).decode()


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class _InFlight:
    def __init__(self) -> None:
        self.current = 0
        self.peak = 0

    def enter(self) -> None:
        self.current += 1
        self.peak = max(self.peak, self.current)

    def exit(self) -> None:
        self.current -= 1


class FakeResponse:
    def __init__(
        self,
        status: int = 200,
        body: Any = None,
        *,
        text: str | None = None,
        delay: float = 0.0,
        tracker: _InFlight | None = None,
    ) -> None:
        self.status = status
        self._text = text if text is not None else ("" if body is None else json.dumps(body))
        self._delay = delay
        self._tracker = tracker

    async def __aenter__(self) -> FakeResponse:
        return self

    async def __aexit__(self, *args: Any) -> None:
        return None

    async def text(self) -> str:
        if self._tracker:
            self._tracker.enter()
        try:
            if self._delay:
                await asyncio.sleep(self._delay)
        finally:
            if self._tracker:
                self._tracker.exit()
        return self._text


class FakeStockSpark:
    """In-memory stand-in for both the token endpoint and the REST API.

    Acts as an aiohttp session: ``post()`` for the token exchange and
    ``request()`` for API calls. Multipart uploads arrive as plain dicts
    because the ``plain_forms`` fixture swaps out the FormData builder.
    """

    def __init__(self) -> None:
        self.exchanges = 0
        self.auth_status = 200
        self.auth_text: str | None = None
        self.auth_delay = 0.0
        self.auth_error: BaseException | None = None
        self.last_auth_form: dict[str, Any] = {}
        self.expires_in = 3600

        self.rejected_tokens: set[str] = set()
        self.reject_all = False
        self.reject_status = 401
        self.reject_after: int | None = None
        self.set_main_status: int | None = None
        self.upload_failures: dict[str, int] = {}
        self.upload_errors: dict[str, BaseException] = {}
        self.upload_delay = 0.0
        self.upload_delays: dict[str, float] = {}
        self.omit_image_id: set[str] = set()
        self.vehicles: dict[int, dict[str, Any]] = {}
        self.api_calls: list[dict[str, Any]] = []
        self.uploads: list[dict[str, Any]] = []
        self.in_flight = _InFlight()
        self._next_image_id = 100

    # aiohttp.ClientSession surface

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        if url == AUTH_URL:
            return self._auth(kwargs)
        return self.request("POST", url, **kwargs)

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        if url == AUTH_URL:
            return self._auth(kwargs)
        return self._api(method, url, kwargs)

    async def close(self) -> None:
        return None

    # handlers

    def _auth(self, kwargs: dict[str, Any]) -> FakeResponse:
        self.exchanges += 1
        self.last_auth_form = dict(kwargs.get("data") or {})
        if self.auth_error is not None:
            raise self.auth_error
        if self.auth_text is not None:
            return FakeResponse(self.auth_status, text=self.auth_text, delay=self.auth_delay)
        if self.auth_status != 200:
            return FakeResponse(
                self.auth_status,
                {"error": "invalid_grant", "error_description": "Invalid user credentials"},
                delay=self.auth_delay,
            )
        return FakeResponse(
            200,
            {"access_token": f"tok-{self.exchanges}", "expires_in": self.expires_in},
            delay=self.auth_delay,
        )

    def _api(self, method: str, url: str, kwargs: dict[str, Any]) -> FakeResponse:
        token = kwargs["headers"]["Authorization"].split(" ", 1)[1]
        path = url[len(API_URL):]
        call = {"method": method, "url": url, "path": path, "token": token, **kwargs}
        self.api_calls.append(call)

        rejecting = self.reject_after is not None and len(self.uploads) >= self.reject_after
        if rejecting or self.reject_all or token in self.rejected_tokens:
            return FakeResponse(self.reject_status, {"error": "invalid_token"})

        parts = path.strip("/").split("/")
        # /{country}/vehicle/{id}[/images/gallery/upload[-url]]
        vehicle_id = int(parts[2])

        if method == "POST" and parts[-1] == "upload":
            filename, content, media_type = kwargs["data"]["file"]
            return self._upload(filename, {"filename": filename, "content": content,
                                           "media_type": media_type, "vehicle_id": vehicle_id})

        if method == "POST" and parts[-1] == "upload-url":
            body = kwargs["json"]
            return self._upload(body["url"], {**body, "vehicle_id": vehicle_id})

        if method == "GET":
            vehicle = self.vehicles.get(vehicle_id)
            if vehicle is None:
                return FakeResponse(404, {"message": f"Vehicle {vehicle_id} not found"})
            return FakeResponse(200, vehicle)

        if method == "PUT":
            if self.set_main_status is not None:
                return FakeResponse(self.set_main_status, {"message": "gallery update refused"})
            self.vehicles[vehicle_id] = kwargs["json"]
            return FakeResponse(200, kwargs["json"])

        return FakeResponse(405, {"message": "unsupported"})

    def gallery(self, vehicle_id: int) -> list[dict[str, Any]]:
        vehicle = self.vehicles.setdefault(vehicle_id, {"id": vehicle_id})
        return vehicle.setdefault("images", {}).setdefault("GALLERY_ITEM", [])

    def main_images(self, vehicle_id: int) -> list[str]:
        return [item["id"] for item in self.gallery(vehicle_id) if item.get("main")]

    def _upload(self, key: str, record: dict[str, Any]) -> FakeResponse:
        delay = self.upload_delays.get(key, self.upload_delay)
        if key in self.upload_errors:
            raise self.upload_errors[key]
        if key in self.upload_failures:
            return FakeResponse(
                self.upload_failures[key],
                {"message": f"rejected {key}", "code": "IMAGE_REJECTED"},
                delay=delay,
                tracker=self.in_flight,
            )
        self.uploads.append(record)
        if key in self.omit_image_id:
            return FakeResponse(200, {}, delay=delay, tracker=self.in_flight)
        self._next_image_id += 1
        self.gallery(record["vehicle_id"]).append(
            {"id": str(self._next_image_id), "url": record.get("url", ""), "main": False}
        )
        return FakeResponse(
            200,
            {"id": self._next_image_id},
            delay=delay,
            tracker=self.in_flight,
        )


@pytest.fixture()
def settings() -> StockSparkSettings:
    return StockSparkSettings(
        username="dealer@example.com",
        password="s3cret",
        client_id="carspark-api",
        auth_url=AUTH_URL,
        api_url=API_URL,
        country="it",
        upload_concurrency=3,
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def backend() -> FakeStockSpark:
    return FakeStockSpark()


@pytest.fixture()
def credentials(settings: StockSparkSettings, backend: FakeStockSpark, clock: FakeClock) -> CredentialCache:
    return CredentialCache(settings, session=backend, clock=clock)


@pytest.fixture()
def client(credentials: CredentialCache, backend: FakeStockSpark) -> StockSparkClient:
    return StockSparkClient(credentials, session=backend)


@pytest.fixture(autouse=True)
def plain_forms(monkeypatch):
    """Send multipart parts to the fake backend as a plain dict."""
    monkeypatch.setattr(
        "stockspark_mcp.clients.stockspark._build_form",
        lambda files: dict(files),
    )


@pytest.fixture(autouse=True)
def _inject_credentials(credentials: CredentialCache):
    """Route every server tool through the fake-backed credential cache."""
    set_credential_cache_override(credentials)
    yield
    set_credential_cache_override(None)
    reset_credentials()


@pytest.fixture()
def png_bytes() -> bytes:
    return PNG_1PX


@pytest.fixture()
def png_b64() -> str:
    return PNG_1PX_B64


@pytest.fixture()
def fake_api(monkeypatch, backend: FakeStockSpark):
    """Every client the tools open talks to the in-memory backend."""

    def _client(credentials: CredentialCache) -> StockSparkClient:
        return StockSparkClient(credentials, session=backend)

    monkeypatch.setattr("stockspark_mcp.tools.images.StockSparkClient", _client)
    monkeypatch.setattr("stockspark_mcp.tools.vehicles.StockSparkClient", _client)
    return backend
