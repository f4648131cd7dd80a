"""Async StockSpark API client with automatic bearer-token handling."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import Any

import aiohttp

from stockspark_mcp.clients.auth import CredentialCache
from stockspark_mcp.clients.errors import (
    AuthFailure,
    RemoteRequestFailure,
    StockSparkError,
    TransportFailure,
)
from stockspark_mcp.constants import (
    GALLERY_UPLOAD_PATH,
    GALLERY_UPLOAD_URL_PATH,
    REQUEST_TIMEOUT_SECONDS,
    UPLOAD_TIMEOUT_SECONDS,
    VEHICLE_PATH,
)

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=REQUEST_TIMEOUT_SECONDS)
_UPLOAD_TIMEOUT = aiohttp.ClientTimeout(total=UPLOAD_TIMEOUT_SECONDS)
_REJECTED_STATUSES = frozenset({401, 403})

# field name -> (filename, content, content type)
FileParts = Mapping[str, tuple[str, bytes, str]]


def _build_form(files: FileParts) -> aiohttp.FormData:
    form = aiohttp.FormData()
    for field_name, (filename, content, content_type) in files.items():
        form.add_field(field_name, content, filename=filename, content_type=content_type)
    return form


def _decode_body(raw_text: str) -> Any:
    if not raw_text:
        return {}
    try:
        return json.loads(raw_text)
    except json.JSONDecodeError:
        return {"raw": raw_text}


def _extract_image_id(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    image_id = payload.get("id") or payload.get("imageId")
    return str(image_id) if image_id not in (None, "") else None


class StockSparkClient:
    """Async client for the StockSpark dealer API.

    Every request pulls the current token from the shared ``CredentialCache``.
    A 401/403 invalidates the token and the request is repeated once with a
    fresh one; a second rejection is terminal.
    """

    def __init__(
        self,
        credentials: CredentialCache,
        *,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.credentials = credentials
        self.settings = credentials.settings
        self.session = session
        self._owns_session = session is None

    async def __aenter__(self) -> StockSparkClient:
        if self.session is None:
            self.session = aiohttp.ClientSession()
            self._owns_session = True
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self.session and self._owns_session:
            await self.session.close()

    def _url(self, path: str, country: str | None) -> str:
        return f"{self.settings.api_url}/{country or self.settings.country}{path}"

    async def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        params: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
        files: FileParts | None = None,
        country: str | None = None,
        timeout: aiohttp.ClientTimeout = _REQUEST_TIMEOUT,
    ) -> Any:
        if not self.session:
            raise RuntimeError("Client not entered as context manager")

        url = self._url(path, country)
        for attempt in range(2):
            credential = await self.credentials.get_credential()
            request_headers = {"Authorization": f"Bearer {credential.token}"}
            if headers:
                request_headers.update(headers)

            kwargs: dict[str, Any] = {
                "params": dict(params) if params else None,
                "headers": request_headers,
                "timeout": timeout,
            }
            if files:
                kwargs["data"] = _build_form(files)
            elif json_body is not None:
                kwargs["json"] = json_body

            logger.debug("StockSpark %s %s (attempt %d)", method, url, attempt + 1)
            try:
                async with self.session.request(method, url, **kwargs) as resp:
                    status = resp.status
                    raw_text = await resp.text()
            except asyncio.TimeoutError as exc:
                raise TransportFailure(
                    "StockSpark request timed out.",
                    code="TIMEOUT",
                    details={"method": method, "path": path},
                ) from exc
            except aiohttp.ClientError as exc:
                logger.error("StockSpark client error (%s %s): %s", method, path, exc)
                raise TransportFailure(
                    "StockSpark request failed due to a network/client error.",
                    code="NETWORK_ERROR",
                    details={"method": method, "path": path, "error": str(exc)},
                ) from exc

            payload = _decode_body(raw_text)

            if status in _REJECTED_STATUSES:
                if attempt == 0:
                    logger.warning(
                        "StockSpark rejected token (HTTP %s) on %s %s; refreshing",
                        status,
                        method,
                        path,
                    )
                    self.credentials.invalidate()
                    continue
                raise AuthFailure(
                    f"StockSpark rejected a freshly issued token (HTTP {status}).",
                    code="AUTH_REJECTED",
                    status=status,
                    details=payload if isinstance(payload, dict) else {"response": payload},
                )

            if status >= 400:
                message = f"StockSpark request failed with HTTP {status}."
                if isinstance(payload, dict):
                    message = str(
                        payload.get("message")
                        or payload.get("error")
                        or payload.get("detail")
                        or message
                    )
                logger.warning("StockSpark %s %s -> HTTP %s", method, path, status)
                raise RemoteRequestFailure(
                    message,
                    code="HTTP_ERROR",
                    status=status,
                    details=payload if isinstance(payload, dict) else {"response": payload},
                )

            return payload

        raise StockSparkError(  # pragma: no cover
            "StockSpark request loop exited without a response.",
            code="UNREACHABLE",
        )

    async def get(self, path: str, params: Mapping[str, str] | None = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, data: Any) -> Any:
        return await self.request("POST", path, json_body=data)

    async def put(self, path: str, data: Any) -> Any:
        return await self.request("PUT", path, json_body=data)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)

    # ── Vehicles ─────────────────────────────────────────────────────

    async def get_vehicle(self, vehicle_id: int) -> dict[str, Any]:
        """Fetch the full vehicle record."""
        data = await self.get(VEHICLE_PATH.format(vehicle_id=vehicle_id))
        return data if isinstance(data, dict) else {"data": data}

    # ── Gallery ──────────────────────────────────────────────────────

    async def upload_gallery_image(
        self,
        vehicle_id: int,
        content: bytes,
        *,
        filename: str,
        media_type: str,
    ) -> str | None:
        """Upload raw image bytes as a multipart ``file`` part; returns the new image id."""
        payload = await self.request(
            "POST",
            GALLERY_UPLOAD_PATH.format(vehicle_id=vehicle_id),
            files={"file": (filename, content, media_type)},
            timeout=_UPLOAD_TIMEOUT,
        )
        return _extract_image_id(payload)

    async def upload_gallery_image_from_url(
        self,
        vehicle_id: int,
        url: str,
    ) -> str | None:
        """Ask StockSpark to fetch ``url`` into the gallery; returns the new image id."""
        payload = await self.request(
            "POST",
            GALLERY_UPLOAD_URL_PATH.format(vehicle_id=vehicle_id),
            json_body={"url": url},
            timeout=_UPLOAD_TIMEOUT,
        )
        return _extract_image_id(payload)

    async def get_vehicle_images(self, vehicle_id: int) -> dict[str, Any]:
        vehicle = await self.get_vehicle(vehicle_id)
        items = _gallery_items(vehicle)
        images = []
        for position, item in enumerate(items):
            if isinstance(item, dict):
                images.append({
                    "id": str(item.get("id", position)),
                    "url": item.get("url", ""),
                    "index": item.get("index", position + 1),
                    "main": bool(item.get("main", False)),
                    "type": item.get("type", "GALLERY_ITEM"),
                })
            else:
                images.append({
                    "id": str(position),
                    "url": str(item),
                    "index": position + 1,
                    "main": False,
                    "type": "GALLERY_ITEM",
                })
        return {
            "vehicleId": vehicle_id,
            "imageCount": len(images),
            "images": images,
            "hasImages": bool(images),
        }

    async def set_main_image(self, vehicle_id: int, image_id: str) -> dict[str, Any]:
        vehicle = await self.get_vehicle(vehicle_id)
        items = _gallery_items(vehicle)
        if not items:
            raise ValueError(f"No images found for vehicle {vehicle_id}.")

        found = False
        for position, item in enumerate(items):
            if not isinstance(item, dict):
                continue
            is_target = str(item.get("id", position)) == str(image_id)
            item["main"] = is_target
            found = found or is_target
        if not found:
            raise ValueError(f"Image with ID {image_id} not found on vehicle {vehicle_id}.")

        await self.put(VEHICLE_PATH.format(vehicle_id=vehicle_id), vehicle)
        logger.info("Set image %s as main for vehicle %s", image_id, vehicle_id)
        return {"vehicleId": vehicle_id, "mainImageId": str(image_id), "success": True}

    async def delete_image(self, vehicle_id: int, image_id: str) -> dict[str, Any]:
        vehicle = await self.get_vehicle(vehicle_id)
        items = _gallery_items(vehicle)
        if not items:
            raise ValueError(f"No images found for vehicle {vehicle_id}.")

        remaining = [
            item
            for position, item in enumerate(items)
            if not (isinstance(item, dict) and str(item.get("id", position)) == str(image_id))
        ]
        if len(remaining) == len(items):
            raise ValueError(f"Image with ID {image_id} not found on vehicle {vehicle_id}.")

        vehicle["images"]["GALLERY_ITEM"] = remaining
        await self.put(VEHICLE_PATH.format(vehicle_id=vehicle_id), vehicle)
        logger.info("Deleted image %s from vehicle %s", image_id, vehicle_id)
        return {
            "vehicleId": vehicle_id,
            "deletedImageId": str(image_id),
            "remainingImages": len(remaining),
        }


def _gallery_items(vehicle: dict[str, Any]) -> list[Any]:
    images = vehicle.get("images")
    if not isinstance(images, dict):
        return []
    items = images.get("GALLERY_ITEM")
    return items if isinstance(items, list) else []
