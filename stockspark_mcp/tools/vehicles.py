"""Vehicle record lookups."""

from __future__ import annotations

from typing import Any

from stockspark_mcp.clients.auth import CredentialCache
from stockspark_mcp.clients.errors import StockSparkError
from stockspark_mcp.clients.stockspark import StockSparkClient
from stockspark_mcp.tools.images import validate_vehicle_id
from stockspark_mcp.tools.responses import build_json_response, format_client_error

_TOOL_GET_VEHICLE = "get_vehicle"


def _summarize_vehicle(vehicle: dict[str, Any]) -> dict[str, Any]:
    make = vehicle.get("make") if isinstance(vehicle.get("make"), dict) else {}
    model = vehicle.get("model") if isinstance(vehicle.get("model"), dict) else {}
    images = vehicle.get("images") if isinstance(vehicle.get("images"), dict) else {}
    gallery = images.get("GALLERY_ITEM") if isinstance(images.get("GALLERY_ITEM"), list) else []
    return {
        "id": vehicle.get("id"),
        "make": make.get("name") or vehicle.get("makeName") or "",
        "model": model.get("name") or vehicle.get("modelName") or "",
        "version": vehicle.get("version") or "",
        "numberPlate": vehicle.get("numberPlate") or "",
        "mileage": vehicle.get("mileage"),
        "price": vehicle.get("priceGross") or vehicle.get("price"),
        "status": vehicle.get("status") or "",
        "imageCount": len(gallery),
    }


async def get_vehicle_impl(
    credentials: CredentialCache,
    *,
    vehicle_id: Any,
    full: bool = False,
) -> str:
    """Fetch one vehicle record; compact summary unless ``full`` is set."""
    vid = validate_vehicle_id(vehicle_id)
    try:
        async with StockSparkClient(credentials) as client:
            vehicle = await client.get_vehicle(vid)
    except StockSparkError as exc:
        return format_client_error(_TOOL_GET_VEHICLE, exc)
    return build_json_response(vehicle if full else _summarize_vehicle(vehicle))
