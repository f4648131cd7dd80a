"""Vehicle gallery tool implementations (batch upload, list, set main, delete)."""

from __future__ import annotations

from typing import Any

from stockspark_mcp.clients.auth import CredentialCache
from stockspark_mcp.clients.errors import AuthFailure, StockSparkError
from stockspark_mcp.clients.stockspark import StockSparkClient
from stockspark_mcp.ingestion.descriptors import parse_image_input, parse_inline_image
from stockspark_mcp.ingestion.pipeline import MediaIngestionPipeline, Parser
from stockspark_mcp.tools.responses import build_json_response, format_client_error

_TOOL_UPLOAD = "upload_vehicle_images"
_TOOL_UPLOAD_DATA = "upload_vehicle_images_from_data"
_TOOL_LIST = "get_vehicle_images"
_TOOL_SET_MAIN = "set_vehicle_main_image"
_TOOL_DELETE = "delete_vehicle_image"


def validate_vehicle_id(vehicle_id: Any) -> int:
    if isinstance(vehicle_id, bool):
        raise ValueError("Invalid vehicle ID: must be a positive number.")
    try:
        value = int(vehicle_id)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid vehicle ID {vehicle_id!r}: must be a positive number.") from exc
    if value <= 0 or str(value) != str(vehicle_id).strip():
        raise ValueError(f"Invalid vehicle ID {vehicle_id!r}: must be a positive number.")
    return value


def _require_image_id(image_id: Any) -> str:
    value = str(image_id or "").strip()
    if not value:
        raise ValueError("image_id is required. Use get_vehicle_images to list image IDs.")
    return value


def _fatal_report(vehicle_id: int, requested: int, exc: AuthFailure) -> dict[str, Any]:
    return {
        "success": False,
        "fatal": True,
        "vehicleId": vehicle_id,
        "requestedCount": requested,
        "uploadedCount": 0,
        "uploadedImages": [],
        "errors": [exc.to_dict()],
        "partial": False,
    }


async def _upload(
    credentials: CredentialCache,
    *,
    vehicle_id: Any,
    items: list[Any],
    main_image_index: int | None,
    parse: Parser,
    timeout: float | None,
) -> str:
    vid = validate_vehicle_id(vehicle_id)
    if not items:
        raise ValueError("At least one image is required.")

    async with StockSparkClient(credentials) as client:
        pipeline = MediaIngestionPipeline(
            client,
            max_concurrency=credentials.settings.upload_concurrency,
        )
        try:
            report = await pipeline.upload_inputs(
                vid,
                items,
                main_image_index,
                parse=parse,
                timeout=timeout,
            )
        except AuthFailure as exc:
            return build_json_response(_fatal_report(vid, len(items), exc))
    return build_json_response(report.to_dict())


async def upload_vehicle_images_impl(
    credentials: CredentialCache,
    *,
    vehicle_id: Any,
    images: list[Any],
    main_image_index: int | None = None,
    timeout: float | None = None,
) -> str:
    """Upload URLs, local file paths or MCP resource objects to a vehicle gallery."""
    return await _upload(
        credentials,
        vehicle_id=vehicle_id,
        items=list(images or []),
        main_image_index=main_image_index,
        parse=parse_image_input,
        timeout=timeout,
    )


async def upload_vehicle_images_from_data_impl(
    credentials: CredentialCache,
    *,
    vehicle_id: Any,
    image_data: list[Any],
    main_image_index: int | None = None,
    timeout: float | None = None,
) -> str:
    """Upload inline base64 payloads (``{data, mimeType, filename}``) to a vehicle gallery."""
    return await _upload(
        credentials,
        vehicle_id=vehicle_id,
        items=list(image_data or []),
        main_image_index=main_image_index,
        parse=parse_inline_image,
        timeout=timeout,
    )


async def get_vehicle_images_impl(credentials: CredentialCache, *, vehicle_id: Any) -> str:
    vid = validate_vehicle_id(vehicle_id)
    try:
        async with StockSparkClient(credentials) as client:
            result = await client.get_vehicle_images(vid)
    except StockSparkError as exc:
        return format_client_error(_TOOL_LIST, exc)
    return build_json_response(result)


async def set_vehicle_main_image_impl(
    credentials: CredentialCache,
    *,
    vehicle_id: Any,
    image_id: Any,
) -> str:
    vid = validate_vehicle_id(vehicle_id)
    target = _require_image_id(image_id)
    try:
        async with StockSparkClient(credentials) as client:
            result = await client.set_main_image(vid, target)
    except StockSparkError as exc:
        return format_client_error(_TOOL_SET_MAIN, exc)
    return build_json_response(result)


async def delete_vehicle_image_impl(
    credentials: CredentialCache,
    *,
    vehicle_id: Any,
    image_id: Any,
) -> str:
    vid = validate_vehicle_id(vehicle_id)
    target = _require_image_id(image_id)
    try:
        async with StockSparkClient(credentials) as client:
            result = await client.delete_image(vid, target)
    except StockSparkError as exc:
        return format_client_error(_TOOL_DELETE, exc)
    return build_json_response(result)
