"""Print-ready artwork generation.

Generated designs are usually around 1024px square.  Prodigi prints at 300
DPI, so artwork is scaled to the product's print area and centred on a
transparent canvas (no cropping, no distortion) before it is uploaded.
"""

from __future__ import annotations

import io
import logging

from PIL import Image, UnidentifiedImageError

from promptly.core.errors import ValidationError

logger = logging.getLogger(__name__)

PRINT_DPI = 300

# 15.6" x 19.3" at 300 DPI, the standard adult tee print area
DEFAULT_PRINT_SIZE = (4680, 5790)

PRINT_SIZES: dict[str, tuple[int, int]] = {
    "TEE-SS-STTU755": DEFAULT_PRINT_SIZE,
    "GLOBAL-TEE-GIL-64V00": DEFAULT_PRINT_SIZE,
    "A-KT-GD64000B": (3600, 4800),
    "A-BB-LA4411": (2400, 3000),
}

_MAGIC_BYTES: tuple[tuple[bytes, str], ...] = (
    (b"\x89PNG\r\n\x1a\n", "png"),
    (b"\xff\xd8\xff", "jpeg"),
    (b"GIF87a", "gif"),
    (b"GIF89a", "gif"),
)


def detect_image_format(data: bytes) -> str:
    """Detect the image format from magic bytes.

    Returns one of ``png``, ``jpeg``, ``gif``, ``webp`` or ``unknown``.
    """
    if not data or len(data) < 4:
        return "unknown"
    for magic, name in _MAGIC_BYTES:
        if data.startswith(magic):
            return name
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "webp"
    return "unknown"


def print_size_for(product_code: str | None) -> tuple[int, int]:
    if product_code and product_code in PRINT_SIZES:
        return PRINT_SIZES[product_code]
    return DEFAULT_PRINT_SIZE


def generate_print_ready(image_bytes: bytes, product_code: str | None = None) -> bytes:
    """Return a 300 DPI PNG of the artwork fitted to the product's print area.

    Args:
        image_bytes: Encoded source image.
        product_code: Prodigi SKU; unknown or missing SKUs use the default
            tee print area.

    Raises:
        ValidationError: Empty or undecodable input.
    """
    if not image_bytes:
        raise ValidationError("Image data is empty")

    if detect_image_format(image_bytes) == "unknown":
        logger.warning("Could not detect image format from magic bytes")

    try:
        with Image.open(io.BytesIO(image_bytes)) as source:
            source.load()
            artwork = source.convert("RGBA")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
        raise ValidationError(f"Failed to generate print-ready version: {e}") from e

    width, height = print_size_for(product_code)
    logger.info(
        f"Generating print-ready version {width}x{height}"
        + (f" for product {product_code}" if product_code else " (default)")
    )

    # Contain-fit, upscaling allowed
    scale = min(width / artwork.width, height / artwork.height)
    fitted_size = (max(1, round(artwork.width * scale)), max(1, round(artwork.height * scale)))
    fitted = artwork.resize(fitted_size, Image.Resampling.LANCZOS)

    canvas = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    offset = ((width - fitted.width) // 2, (height - fitted.height) // 2)
    canvas.paste(fitted, offset, fitted)

    output = io.BytesIO()
    canvas.save(output, format="PNG", dpi=(PRINT_DPI, PRINT_DPI), compress_level=6)
    return output.getvalue()
