"""Image descriptors, one variant per source kind, and their normalization.

Tool input arrives as a loose mix of URLs, filesystem paths and inline
base64 payloads. ``parse_image_input`` turns each raw item into a typed
descriptor, and ``normalize_descriptor`` validates it and produces the
bytes (or URL) that the upload call needs. Validation problems raise an
``ImageInputError`` subclass; the pipeline records those per item.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import mimetypes
import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Union
from urllib.parse import unquote, urlparse

from stockspark_mcp.constants import (
    MAX_INLINE_IMAGE_BYTES,
    MEDIA_TYPE_ALIASES,
    SUPPORTED_IMAGE_TYPES,
)

_DATA_URL_RE = re.compile(r"^data:(?P<type>[\w.+-]+/[\w.+-]+)?(?:;[\w=.+-]+)*;base64,", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")


class SourceKind(str, Enum):
    URL = "url"
    PATH = "path"
    INLINE = "inline"


# ── Errors ──────────────────────────────────────────────────────────


class ImageInputError(ValueError):
    """A single image could not be prepared for upload."""

    kind = "ImageInputError"
    code = "INVALID_IMAGE"


class InvalidEncoding(ImageInputError):
    kind = "InvalidEncoding"
    code = "INVALID_ENCODING"


class UnreadableSource(ImageInputError):
    kind = "UnreadableSource"
    code = "UNREADABLE_SOURCE"


class UnsupportedMediaType(ImageInputError):
    kind = "UnsupportedMediaType"
    code = "UNSUPPORTED_MEDIA_TYPE"


class UnsupportedSource(ImageInputError):
    kind = "UnsupportedSource"
    code = "UNSUPPORTED_SOURCE"


class ImageTooLarge(ImageInputError):
    kind = "ImageTooLarge"
    code = "IMAGE_TOO_LARGE"


# ── Descriptors ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class RemoteImage:
    url: str
    media_type: str = ""
    filename: str = ""
    kind: SourceKind = SourceKind.URL


@dataclass(frozen=True)
class LocalImage:
    path: str
    media_type: str = ""
    filename: str = ""
    kind: SourceKind = SourceKind.PATH


@dataclass(frozen=True)
class InlineImage:
    data: str
    media_type: str
    filename: str = ""
    kind: SourceKind = SourceKind.INLINE

    def __repr__(self) -> str:
        return (
            f"InlineImage(data=<{len(self.data)} chars>, media_type={self.media_type!r}, "
            f"filename={self.filename!r})"
        )


ImageDescriptor = Union[RemoteImage, LocalImage, InlineImage]


@dataclass(frozen=True)
class NormalizedImage:
    """A validated descriptor, ready for exactly one upload call."""

    index: int
    kind: SourceKind
    filename: str
    media_type: str
    content: bytes | None = None
    url: str | None = None

    def __repr__(self) -> str:
        size = len(self.content) if self.content is not None else 0
        return (
            f"NormalizedImage(index={self.index}, kind={self.kind.value}, "
            f"filename={self.filename!r}, media_type={self.media_type!r}, "
            f"bytes={size}, url={self.url!r})"
        )


# ── Parsing tool input ──────────────────────────────────────────────


def _is_url(value: str) -> bool:
    return value.startswith(("http://", "https://"))


def parse_image_input(raw: Any, index: int = 0) -> ImageDescriptor:
    """Turn one tool-supplied image item into a typed descriptor.

    Strings are URLs when they carry an http(s) scheme and filesystem paths
    otherwise. Mappings with a ``data`` key are inline payloads, either bare
    ``{data, mimeType, filename}`` objects or MCP ``resource`` objects.
    """
    if isinstance(raw, str):
        value = raw.strip()
        if not value:
            raise UnsupportedSource(f"Image {index + 1}: image reference is empty.")
        if _is_url(value):
            return RemoteImage(url=value)
        return LocalImage(path=value)

    if isinstance(raw, Mapping):
        if "data" in raw:
            data = raw["data"]
            if not isinstance(data, str) or not data.strip():
                raise InvalidEncoding("Inline image 'data' must be a non-empty base64 string.")
            uri = str(raw.get("uri") or "")
            filename = str(raw.get("filename") or raw.get("name") or "")
            if not filename and uri:
                filename = PurePosixPath(urlparse(uri).path).name
            media_type = str(raw.get("mimeType") or raw.get("mime_type") or "")
            return InlineImage(data=data, media_type=media_type, filename=filename)
        for key in ("url", "uri", "path"):
            value = raw.get(key)
            if isinstance(value, str) and value.strip():
                filename = str(raw.get("filename") or "")
                media_type = str(raw.get("mimeType") or "")
                if _is_url(value.strip()):
                    return RemoteImage(url=value.strip(), media_type=media_type, filename=filename)
                if key == "path":
                    return LocalImage(path=value.strip(), media_type=media_type, filename=filename)
        raise UnsupportedSource(
            "Image object must include 'data' (base64) or an http(s) 'url'/'uri' or a 'path'."
        )

    raise UnsupportedSource(
        f"Image {index + 1}: unsupported input of type {type(raw).__name__}; "
        "expected a URL, a file path, or an object with base64 'data'."
    )


def parse_inline_image(raw: Any, index: int) -> InlineImage:
    """Parse one ``{data, mimeType, filename}`` entry from the from-data tool."""
    if not isinstance(raw, Mapping):
        raise UnsupportedSource(f"Image {index + 1}: imageData must be an object.")
    data = raw.get("data")
    if not data:
        raise InvalidEncoding(f"Image {index + 1}: missing 'data' field.")
    if not isinstance(data, str):
        raise InvalidEncoding(f"Image {index + 1}: 'data' must be a base64 string.")
    media_type = raw.get("mimeType") or raw.get("mime_type")
    if not media_type:
        raise UnsupportedMediaType(f"Image {index + 1}: missing 'mimeType' field.")
    return InlineImage(
        data=data,
        media_type=str(media_type),
        filename=str(raw.get("filename") or ""),
    )


# ── Normalization ───────────────────────────────────────────────────


def canonical_media_type(value: str | None) -> str:
    if not value:
        return ""
    media_type = value.split(";", 1)[0].strip().lower()
    return MEDIA_TYPE_ALIASES.get(media_type, media_type)


def guess_media_type(name: str) -> str:
    guessed, _ = mimetypes.guess_type(name)
    return canonical_media_type(guessed)


def require_supported(media_type: str, *, label: str) -> str:
    if media_type not in SUPPORTED_IMAGE_TYPES:
        shown = media_type or "unknown"
        raise UnsupportedMediaType(
            f"{label}: media type '{shown}' is not a supported image type "
            f"({', '.join(sorted(SUPPORTED_IMAGE_TYPES))})."
        )
    return media_type


def decode_inline_payload(data: str, *, max_bytes: int = MAX_INLINE_IMAGE_BYTES) -> bytes:
    """Strictly decode a base64 payload, tolerating a ``data:`` URL prefix and whitespace."""
    cleaned = _DATA_URL_RE.sub("", data.strip(), count=1)
    cleaned = _WHITESPACE_RE.sub("", cleaned)
    if not cleaned:
        raise InvalidEncoding("Invalid base64 data: payload is empty.")
    try:
        content = base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidEncoding(f"Invalid base64 data: {exc}") from exc
    if not content:
        raise InvalidEncoding("Invalid base64 data: decoded to an empty payload.")
    if len(content) > max_bytes:
        raise ImageTooLarge(
            f"Image too large: {len(content)} bytes exceeds the "
            f"{max_bytes // (1024 * 1024)}MB limit. Resize the image before uploading."
        )
    return content


def default_filename(index: int, media_type: str) -> str:
    subtype = media_type.split("/", 1)[1] if "/" in media_type else "jpg"
    if subtype == "jpeg":
        subtype = "jpg"
    return f"image_{index + 1}.{subtype}"


def _read_file(path: Path) -> bytes:
    return path.read_bytes()


async def normalize_descriptor(descriptor: ImageDescriptor, index: int) -> NormalizedImage:
    """Validate one descriptor and produce the payload for its upload call."""
    if isinstance(descriptor, InlineImage):
        media_type = require_supported(
            canonical_media_type(descriptor.media_type),
            label=descriptor.filename or f"Image {index + 1}",
        )
        content = decode_inline_payload(descriptor.data)
        return NormalizedImage(
            index=index,
            kind=SourceKind.INLINE,
            filename=descriptor.filename or default_filename(index, media_type),
            media_type=media_type,
            content=content,
        )

    if isinstance(descriptor, LocalImage):
        try:
            path = Path(descriptor.path).expanduser()
        except RuntimeError as exc:
            raise UnreadableSource(f"Cannot resolve home directory in {descriptor.path}") from exc
        filename = descriptor.filename or path.name
        media_type = require_supported(
            canonical_media_type(descriptor.media_type) or guess_media_type(path.name),
            label=filename,
        )
        try:
            content = await asyncio.to_thread(_read_file, path)
        except FileNotFoundError as exc:
            raise UnreadableSource(f"File not found: {descriptor.path}") from exc
        except OSError as exc:
            raise UnreadableSource(f"Cannot read {descriptor.path}: {exc.strerror or exc}") from exc
        except ValueError as exc:
            # e.g. an embedded NUL byte in the path
            raise UnreadableSource(f"Invalid file path {descriptor.path!r}: {exc}") from exc
        if not content:
            raise UnreadableSource(f"File is empty: {descriptor.path}")
        return NormalizedImage(
            index=index,
            kind=SourceKind.PATH,
            filename=filename,
            media_type=media_type,
            content=content,
        )

    if isinstance(descriptor, RemoteImage):
        parsed = urlparse(descriptor.url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise UnsupportedSource(f"Invalid image URL: {descriptor.url}")
        url_name = unquote(PurePosixPath(parsed.path).name)
        media_type = canonical_media_type(descriptor.media_type) or guess_media_type(url_name)
        # No extension to go on: StockSpark checks the type of what it fetches.
        if media_type:
            require_supported(media_type, label=descriptor.url)
        return NormalizedImage(
            index=index,
            kind=SourceKind.URL,
            filename=descriptor.filename or url_name or "image.jpg",
            media_type=media_type,
            url=descriptor.url,
        )

    raise UnsupportedSource(f"Unknown image descriptor: {descriptor!r}")
