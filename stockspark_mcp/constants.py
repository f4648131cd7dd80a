"""Shared constants for the StockSpark API and image ingestion.

Single source of truth for endpoints, limits, and supported image types.
"""

from __future__ import annotations

AUTH_URL = "https://auth.motork.io/realms/prod/protocol/openid-connect/token"
CLIENT_ID = "carspark-api"
API_BASE_URL = "https://carspark-api.dealerk.com"
DEFAULT_COUNTRY = "it"

GALLERY_UPLOAD_PATH = "/vehicle/{vehicle_id}/images/gallery/upload"
GALLERY_UPLOAD_URL_PATH = "/vehicle/{vehicle_id}/images/gallery/upload-url"
VEHICLE_PATH = "/vehicle/{vehicle_id}"

TOKEN_SAFETY_MARGIN_SECONDS = 60

AUTH_TIMEOUT_SECONDS = 15
REQUEST_TIMEOUT_SECONDS = 30
UPLOAD_TIMEOUT_SECONDS = 60

MAX_IMAGES_PER_BATCH = 50
MAX_INLINE_IMAGE_BYTES = 2 * 1024 * 1024
DEFAULT_UPLOAD_CONCURRENCY = 3

SUPPORTED_IMAGE_TYPES: frozenset[str] = frozenset({
    "image/bmp",
    "image/gif",
    "image/jpeg",
    "image/png",
    "image/webp",
})

MEDIA_TYPE_ALIASES = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "image/x-png": "image/png",
    "image/x-ms-bmp": "image/bmp",
}
