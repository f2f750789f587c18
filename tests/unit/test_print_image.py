"""Tests for promptly.core.print_image - print-ready artwork."""

from __future__ import annotations

import io

import pytest
from PIL import Image

from promptly.core.errors import ValidationError
from promptly.core.print_image import (
    DEFAULT_PRINT_SIZE,
    PRINT_SIZES,
    detect_image_format,
    generate_print_ready,
)


def _encode(image: Image.Image, fmt: str) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def square_png() -> bytes:
    return _encode(Image.new("RGB", (64, 64), (200, 30, 30)), "PNG")


class TestDetectImageFormat:
    def test_png(self, square_png: bytes):
        assert detect_image_format(square_png) == "png"

    def test_jpeg(self):
        assert detect_image_format(_encode(Image.new("RGB", (8, 8)), "JPEG")) == "jpeg"

    def test_gif(self):
        assert detect_image_format(b"GIF89a" + b"\x00" * 10) == "gif"

    def test_webp(self):
        assert detect_image_format(b"RIFF\x24\x00\x00\x00WEBPVP8 ") == "webp"

    def test_unknown(self):
        assert detect_image_format(b"not an image") == "unknown"
        assert detect_image_format(b"") == "unknown"


class TestGeneratePrintReady:
    """Test generate_print_ready."""

    def test_default_canvas_and_dpi(self, square_png: bytes):
        output = Image.open(io.BytesIO(generate_print_ready(square_png)))
        assert output.format == "PNG"
        assert output.size == DEFAULT_PRINT_SIZE
        assert output.mode == "RGBA"
        dpi = output.info["dpi"]
        assert round(dpi[0]) == 300 and round(dpi[1]) == 300

    def test_contain_fit_centres_with_transparent_bands(self, square_png: bytes):
        """A square image on a tall canvas leaves transparent bands above and below."""
        output = Image.open(io.BytesIO(generate_print_ready(square_png)))
        width, height = output.size
        assert output.getpixel((width // 2, 5))[3] == 0
        assert output.getpixel((width // 2, height - 5))[3] == 0
        assert output.getpixel((width // 2, height // 2)) == (200, 30, 30, 255)

    def test_product_specific_size(self, square_png: bytes):
        output = Image.open(io.BytesIO(generate_print_ready(square_png, "A-BB-LA4411")))
        assert output.size == PRINT_SIZES["A-BB-LA4411"]

    def test_unknown_product_uses_default(self, square_png: bytes):
        output = Image.open(io.BytesIO(generate_print_ready(square_png, "NOPE-123")))
        assert output.size == DEFAULT_PRINT_SIZE

    def test_empty_input(self):
        with pytest.raises(ValidationError):
            generate_print_ready(b"")

    def test_undecodable_input(self):
        with pytest.raises(ValidationError):
            generate_print_ready(b"\x89PNG\r\n\x1a\n" + b"garbage")

    def test_oversized_input_rejected(self, square_png: bytes, monkeypatch):
        """Images past Pillow's decompression-bomb limit are a validation error."""
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
        with pytest.raises(ValidationError):
            generate_print_ready(square_png)
