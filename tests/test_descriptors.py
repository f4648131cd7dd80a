"""Tests for image input parsing and normalization."""

from __future__ import annotations

import base64

import pytest

from stockspark_mcp.ingestion.descriptors import (
    ImageTooLarge,
    InlineImage,
    InvalidEncoding,
    LocalImage,
    RemoteImage,
    SourceKind,
    UnreadableSource,
    UnsupportedMediaType,
    UnsupportedSource,
    canonical_media_type,
    decode_inline_payload,
    default_filename,
    normalize_descriptor,
    parse_image_input,
    parse_inline_image,
)


class TestParseImageInput:
    def test_http_string_is_remote(self):
        assert parse_image_input("https://cdn.test/car.jpg") == RemoteImage(url="https://cdn.test/car.jpg")

    def test_other_string_is_local_path(self):
        assert parse_image_input("  /tmp/car.jpg ") == LocalImage(path="/tmp/car.jpg")

    def test_empty_string_rejected(self):
        with pytest.raises(UnsupportedSource):
            parse_image_input("   ")

    def test_resource_object_is_inline(self, png_b64):
        descriptor = parse_image_input(
            {"uri": "file:///uploads/front.png", "mimeType": "image/png", "data": png_b64}
        )
        assert isinstance(descriptor, InlineImage)
        assert descriptor.kind is SourceKind.INLINE
        assert descriptor.media_type == "image/png"
        assert descriptor.filename == "front.png"

    def test_explicit_filename_wins(self, png_b64):
        descriptor = parse_image_input(
            {"uri": "file:///x.png", "filename": "rear.png", "mimeType": "image/png", "data": png_b64}
        )
        assert descriptor.filename == "rear.png"

    def test_empty_inline_data_is_invalid_encoding(self):
        with pytest.raises(InvalidEncoding):
            parse_image_input({"data": "", "mimeType": "image/png"})

    def test_url_key_object(self):
        descriptor = parse_image_input({"url": "http://cdn.test/a.jpg", "filename": "a.jpg"})
        assert descriptor == RemoteImage(url="http://cdn.test/a.jpg", filename="a.jpg")

    def test_path_key_object(self):
        assert parse_image_input({"path": "/srv/a.jpg"}) == LocalImage(path="/srv/a.jpg")

    def test_object_without_source_rejected(self):
        with pytest.raises(UnsupportedSource):
            parse_image_input({"mimeType": "image/png"})

    def test_unsupported_type_rejected(self):
        with pytest.raises(UnsupportedSource, match="Image 3"):
            parse_image_input(42, index=2)


class TestParseInlineImage:
    def test_parses_entry(self, png_b64):
        descriptor = parse_inline_image(
            {"data": png_b64, "mimeType": "image/png", "filename": "a.png"}, 0
        )
        assert descriptor == InlineImage(data=png_b64, media_type="image/png", filename="a.png")

    def test_missing_data(self):
        with pytest.raises(InvalidEncoding, match="missing 'data'"):
            parse_inline_image({"mimeType": "image/png"}, 0)

    def test_missing_mime_type(self, png_b64):
        with pytest.raises(UnsupportedMediaType, match="mimeType"):
            parse_inline_image({"data": png_b64}, 0)

    def test_non_object(self):
        with pytest.raises(UnsupportedSource):
            parse_inline_image("https://cdn.test/a.jpg", 1)


class TestDecodeInlinePayload:
    def test_decoded_bytes_reencode_to_input(self):
        raw = bytes(range(256)) * 3
        encoded = base64.b64encode(raw).decode()

        decoded = decode_inline_payload(encoded)

        assert decoded == raw
        assert base64.b64encode(decoded).decode() == encoded

    def test_strips_data_url_prefix_and_whitespace(self, png_bytes, png_b64):
        wrapped = f"data:image/png;base64,{png_b64[:20]}\n{png_b64[20:]}"
        assert decode_inline_payload(wrapped) == png_bytes

    @pytest.mark.parametrize("payload", ["invalid-base64-data", "abc$", "   "])
    def test_rejects_invalid_payload(self, payload):
        with pytest.raises(InvalidEncoding):
            decode_inline_payload(payload)

    def test_rejects_oversized_payload(self):
        encoded = base64.b64encode(b"x" * 16).decode()
        with pytest.raises(ImageTooLarge):
            decode_inline_payload(encoded, max_bytes=8)


class TestMediaTypes:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("image/jpg", "image/jpeg"),
            ("IMAGE/PNG", "image/png"),
            ("image/jpeg; charset=binary", "image/jpeg"),
            ("", ""),
            (None, ""),
        ],
    )
    def test_canonical_media_type(self, value, expected):
        assert canonical_media_type(value) == expected

    def test_default_filename(self):
        assert default_filename(0, "image/jpeg") == "image_1.jpg"
        assert default_filename(4, "image/png") == "image_5.png"


class TestNormalizeDescriptor:
    async def test_inline(self, png_bytes, png_b64):
        image = await normalize_descriptor(InlineImage(data=png_b64, media_type="image/png"), 2)

        assert image.kind is SourceKind.INLINE
        assert image.content == png_bytes
        assert image.filename == "image_3.png"
        assert image.media_type == "image/png"

    async def test_inline_alias_media_type(self, png_b64):
        image = await normalize_descriptor(
            InlineImage(data=png_b64, media_type="image/jpg", filename="a.jpg"), 0
        )
        assert image.media_type == "image/jpeg"

    async def test_inline_unsupported_media_type(self, png_b64):
        with pytest.raises(UnsupportedMediaType, match="application/pdf"):
            await normalize_descriptor(InlineImage(data=png_b64, media_type="application/pdf"), 0)

    async def test_inline_invalid_base64(self):
        with pytest.raises(InvalidEncoding):
            await normalize_descriptor(
                InlineImage(data="invalid-base64-data", media_type="image/png"), 0
            )

    async def test_local_file(self, tmp_path, png_bytes):
        path = tmp_path / "front.png"
        path.write_bytes(png_bytes)

        image = await normalize_descriptor(LocalImage(path=str(path)), 0)

        assert image.kind is SourceKind.PATH
        assert image.filename == "front.png"
        assert image.media_type == "image/png"
        assert image.content == png_bytes

    async def test_local_missing_file(self, tmp_path):
        with pytest.raises(UnreadableSource, match="File not found"):
            await normalize_descriptor(LocalImage(path=str(tmp_path / "missing.jpg")), 0)

    async def test_local_empty_file(self, tmp_path):
        path = tmp_path / "empty.jpg"
        path.write_bytes(b"")
        with pytest.raises(UnreadableSource, match="empty"):
            await normalize_descriptor(LocalImage(path=str(path)), 0)

    async def test_local_directory_is_unreadable(self, tmp_path):
        folder = tmp_path / "photos.jpg"
        folder.mkdir()
        with pytest.raises(UnreadableSource):
            await normalize_descriptor(LocalImage(path=str(folder)), 0)

    async def test_local_path_with_nul_byte_is_unreadable(self):
        with pytest.raises(UnreadableSource, match="Invalid file path"):
            await normalize_descriptor(LocalImage(path="bad\x00name.jpg"), 0)

    async def test_local_unknown_home_is_unreadable(self, monkeypatch):
        def _no_home(self):
            raise RuntimeError("Could not determine home directory.")

        monkeypatch.setattr("stockspark_mcp.ingestion.descriptors.Path.expanduser", _no_home)
        with pytest.raises(UnreadableSource, match="home directory"):
            await normalize_descriptor(LocalImage(path="~nosuchuser/car.jpg"), 0)

    async def test_local_non_image_extension(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("hello")
        with pytest.raises(UnsupportedMediaType):
            await normalize_descriptor(LocalImage(path=str(path)), 0)

    async def test_remote(self):
        image = await normalize_descriptor(RemoteImage(url="https://cdn.test/cars/side.jpg"), 0)

        assert image.kind is SourceKind.URL
        assert image.url == "https://cdn.test/cars/side.jpg"
        assert image.filename == "side.jpg"
        assert image.content is None

    async def test_remote_without_extension(self):
        image = await normalize_descriptor(RemoteImage(url="https://cdn.test/render?id=7"), 0)
        assert image.filename == "render"
        assert image.media_type == ""

    async def test_remote_non_image_extension(self):
        with pytest.raises(UnsupportedMediaType):
            await normalize_descriptor(RemoteImage(url="https://cdn.test/brochure.pdf"), 0)

    async def test_remote_without_host(self):
        with pytest.raises(UnsupportedSource):
            await normalize_descriptor(RemoteImage(url="https://"), 0)
