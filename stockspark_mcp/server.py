"""StockSpark MCP server: FastMCP entry point for vehicle gallery tooling."""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from stockspark_mcp.clients.auth import CredentialCache
from stockspark_mcp.config import StockSparkSettings
from stockspark_mcp.tools.images import (
    delete_vehicle_image_impl,
    get_vehicle_images_impl,
    set_vehicle_main_image_impl,
    upload_vehicle_images_from_data_impl,
    upload_vehicle_images_impl,
)
from stockspark_mcp.tools.responses import log_and_return_tool_error
from stockspark_mcp.tools.vehicles import get_vehicle_impl

# Load .env from project root (no extra dependency)
_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"
if _ENV_FILE.is_file():
    for line in _ENV_FILE.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            k, _, v = line.partition("=")
            os.environ.setdefault(k.strip(), v.strip())

mcp = FastMCP("StockSpark")
logger = logging.getLogger(__name__)

_credential_cache_ref: CredentialCache | None = None
_credential_cache_override: CredentialCache | None = None


def set_credential_cache_override(cache: CredentialCache | None) -> None:
    """Inject a credential cache (tests) or clear the injected one."""
    global _credential_cache_override  # noqa: PLW0603
    _credential_cache_override = cache


def reset_credentials() -> None:
    """Forget the process credential cache; the next tool call re-reads settings."""
    global _credential_cache_ref  # noqa: PLW0603
    _credential_cache_ref = None


def _get_credential_cache() -> CredentialCache:
    """Lazy accessor: one cache per process, built from the environment on first use."""
    global _credential_cache_ref  # noqa: PLW0603
    if _credential_cache_override is not None:
        return _credential_cache_override
    if _credential_cache_ref is None:
        _credential_cache_ref = CredentialCache(StockSparkSettings.from_env())
    return _credential_cache_ref


@mcp.tool()
async def upload_vehicle_images(
    vehicle_id: int,
    images: list[str | dict],
    main_image_index: int = -1,
) -> str:
    """Upload images to a vehicle from local file paths, http(s) URLs or MCP resources.

    Accepts 1-50 images. ``main_image_index`` marks the cover photo (0-based,
    -1 for none). Returns a per-image report; failures for individual images
    do not stop the others.
    """
    try:
        return await upload_vehicle_images_impl(
            _get_credential_cache(),
            vehicle_id=vehicle_id,
            images=images,
            main_image_index=main_image_index,
        )
    except ValueError as exc:
        return str(exc)
    except Exception as exc:
        return log_and_return_tool_error(
            tool_name="upload_vehicle_images",
            exc=exc,
            user_message=(
                "I am having trouble uploading those images right now. "
                "Please try again in a moment."
            ),
        )


@mcp.tool()
async def upload_vehicle_images_from_data(
    vehicle_id: int,
    image_data: list[dict],
    main_image_index: int = -1,
) -> str:
    """Upload base64 image payloads (``{data, mimeType, filename}``) to a vehicle.

    Use for images pasted into a conversation. ``main_image_index`` marks the
    cover photo (0-based, -1 for none).
    """
    try:
        return await upload_vehicle_images_from_data_impl(
            _get_credential_cache(),
            vehicle_id=vehicle_id,
            image_data=image_data,
            main_image_index=main_image_index,
        )
    except ValueError as exc:
        return str(exc)
    except Exception as exc:
        return log_and_return_tool_error(
            tool_name="upload_vehicle_images_from_data",
            exc=exc,
            user_message=(
                "I am having trouble uploading that image data right now. "
                "Please try again in a moment."
            ),
        )


@mcp.tool()
async def get_vehicle_images(vehicle_id: int) -> str:
    """List a vehicle's gallery images with their IDs and main-image flag."""
    try:
        return await get_vehicle_images_impl(_get_credential_cache(), vehicle_id=vehicle_id)
    except ValueError as exc:
        return str(exc)
    except Exception as exc:
        return log_and_return_tool_error(
            tool_name="get_vehicle_images",
            exc=exc,
            user_message=(
                "I am having trouble retrieving vehicle images right now. "
                "Please try again in a moment."
            ),
        )


@mcp.tool()
async def set_vehicle_main_image(vehicle_id: int, image_id: str) -> str:
    """Make an existing gallery image the vehicle's main (cover) image."""
    try:
        return await set_vehicle_main_image_impl(
            _get_credential_cache(),
            vehicle_id=vehicle_id,
            image_id=image_id,
        )
    except ValueError as exc:
        return str(exc)
    except Exception as exc:
        return log_and_return_tool_error(
            tool_name="set_vehicle_main_image",
            exc=exc,
            user_message=(
                "I am having trouble updating the main image right now. "
                "Please try again in a moment."
            ),
        )


@mcp.tool()
async def delete_vehicle_image(vehicle_id: int, image_id: str) -> str:
    """Remove one image from a vehicle's gallery."""
    try:
        return await delete_vehicle_image_impl(
            _get_credential_cache(),
            vehicle_id=vehicle_id,
            image_id=image_id,
        )
    except ValueError as exc:
        return str(exc)
    except Exception as exc:
        return log_and_return_tool_error(
            tool_name="delete_vehicle_image",
            exc=exc,
            user_message=(
                "I am having trouble deleting that image right now. "
                "Please try again in a moment."
            ),
        )


@mcp.tool()
async def get_vehicle(vehicle_id: int, full: bool = False) -> str:
    """Get a vehicle record from StockSpark (compact summary unless full=True)."""
    try:
        return await get_vehicle_impl(_get_credential_cache(), vehicle_id=vehicle_id, full=full)
    except ValueError as exc:
        return str(exc)
    except Exception as exc:
        return log_and_return_tool_error(
            tool_name="get_vehicle",
            exc=exc,
            user_message=(
                "I am having trouble retrieving that vehicle right now. "
                "Please try again in a moment."
            ),
        )


def configure_logging(level: str | None = None) -> None:
    # stdout carries the MCP stdio protocol, so logs go to stderr.
    logging.basicConfig(
        level=(level or os.environ.get("LOG_LEVEL", "INFO")).upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> None:
    configure_logging()
    mcp.run()


if __name__ == "__main__":
    main()
