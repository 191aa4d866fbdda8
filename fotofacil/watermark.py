"""Tiled watermark compositing for the public preview of a photo.

The preview keeps the original's dimensions, carries the reference mark at half
its own opacity on a regular grid, and is re-encoded as JPEG at quality 70 so it
cannot stand in for the paid original.
"""

import io
import logging
from typing import Iterator

from PIL import Image, UnidentifiedImageError

from .errors import WatermarkError

logger = logging.getLogger(__name__)

WATERMARK_PATH = "watermarks/selo.png"
PREVIEW_FORMAT = "JPEG"
PREVIEW_CONTENT_TYPE = "image/jpeg"
PREVIEW_QUALITY = 70

MIN_MARK_SIZE = 100
MARK_SCALE = 0.15
MARK_OPACITY = 0.5
GRID_STEP = 1.5


def load_watermark(data: bytes) -> Image.Image:
    try:
        mark = Image.open(io.BytesIO(data))
        mark.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise WatermarkError(f"Watermark image could not be decoded: {e}")
    return mark.convert("RGBA")


def mark_size_for(width: int, height: int) -> int:
    size = max(MIN_MARK_SIZE, int(min(width, height) * MARK_SCALE))
    # never larger than the canvas, or no tile could be placed at all
    return min(size, width, height)


def prepare_mark(mark: Image.Image, target: int) -> Image.Image:
    """Scale so the longest side equals ``target`` and halve every pixel's alpha."""
    ratio = target / max(mark.width, mark.height)
    size = (max(1, round(mark.width * ratio)), max(1, round(mark.height * ratio)))
    scaled = mark.resize(size, Image.Resampling.LANCZOS)

    alpha = scaled.getchannel("A").point(lambda a: int(a * MARK_OPACITY))
    scaled.putalpha(alpha)
    return scaled


def tile_positions(width: int, height: int, mark_w: int, mark_h: int) -> Iterator[tuple[int, int]]:
    spacing_x = width / 4
    spacing_y = height / 4

    y = spacing_y
    while y + mark_h <= height:
        x = spacing_x
        while x + mark_w <= width:
            yield int(x), int(y)
            x += spacing_x * GRID_STEP
        y += spacing_y * GRID_STEP


def apply_watermark(image_data: bytes, mark: Image.Image, quality: int = PREVIEW_QUALITY) -> bytes:
    try:
        src = Image.open(io.BytesIO(image_data))
        src.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise WatermarkError(f"Image could not be decoded: {e}")

    canvas = src.convert("RGBA")
    width, height = canvas.size

    tile = prepare_mark(mark, mark_size_for(width, height))
    positions = list(tile_positions(width, height, tile.width, tile.height))
    if not positions:
        positions = [((width - tile.width) // 2, (height - tile.height) // 2)]

    for x, y in positions:
        canvas.alpha_composite(tile, dest=(x, y))

    logger.debug("Watermarked %dx%d image with %d tiles", width, height, len(positions))

    out = io.BytesIO()
    canvas.convert("RGB").save(out, format=PREVIEW_FORMAT, quality=quality)
    return out.getvalue()
