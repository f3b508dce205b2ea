"""
Marker glyph rendering.

A marker is a base graphic pointing "up" at 0 degrees, rotated clockwise to
the photo's compass heading, with the photo's number drawn on top.
"""
import io
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Union

from PIL import Image, ImageDraw, ImageFont

import config

logger = logging.getLogger(__name__)

TEXT_COLOR = (26, 26, 26, 255)       # #1A1A1A
ACCENT_COLOR = (229, 57, 53, 255)    # pointer
BODY_COLOR = (255, 255, 255, 235)
FONT_RATIO = 0.32                    # number height relative to glyph edge

_DEFAULT_GLYPH_SIZE = 256


@dataclass(frozen=True, eq=False)
class MarkerGlyph:
    """Loaded-once base graphic for markers. Never mutated after creation."""
    image: Image.Image

    @classmethod
    def from_bytes(cls, data: bytes) -> "MarkerGlyph":
        img = Image.open(io.BytesIO(data))
        img.load()
        return cls(img.convert("RGBA"))

    @classmethod
    def from_file(cls, path: str) -> "MarkerGlyph":
        with open(path, "rb") as f:
            return cls.from_bytes(f.read())

    @classmethod
    def default(cls) -> "MarkerGlyph":
        """Built-in arrow: a pointer on top of a round body that holds the number."""
        s = _DEFAULT_GLYPH_SIZE
        img = Image.new("RGBA", (s, s), (0, 0, 0, 0))
        draw = ImageDraw.Draw(img)
        cx = s / 2
        draw.polygon([(cx, s * 0.04), (cx - s * 0.24, s * 0.40), (cx + s * 0.24, s * 0.40)], fill=ACCENT_COLOR)
        r = s * 0.30
        cy = s * 0.57
        draw.ellipse((cx - r, cy - r, cx + r, cy + r), fill=BODY_COLOR, outline=ACCENT_COLOR, width=max(2, s // 28))
        return cls(img)

    def scaled(self, size: int) -> Image.Image:
        """Copy of the glyph fitted (contain) and centered in a size x size square."""
        src = self.image
        ratio = min(size / src.width, size / src.height)
        w = max(1, round(src.width * ratio))
        h = max(1, round(src.height * ratio))
        resized = src.resize((w, h), Image.Resampling.LANCZOS)
        canvas = Image.new("RGBA", (size, size), (0, 0, 0, 0))
        canvas.paste(resized, ((size - w) // 2, (size - h) // 2), resized)
        return canvas


@lru_cache(maxsize=1)
def default_marker_glyph() -> MarkerGlyph:
    """
    Shared glyph for renderers that are not handed one explicitly.
    Call default_marker_glyph.cache_clear() after changing MARKER_ASSET_PATH.
    """
    if config.MARKER_ASSET_PATH:
        logger.info(f"Loading marker glyph from {config.MARKER_ASSET_PATH}")
        return MarkerGlyph.from_file(config.MARKER_ASSET_PATH)
    return MarkerGlyph.default()


def marker_font_size(size: int) -> int:
    return max(1, round(size * FONT_RATIO))


@lru_cache(maxsize=32)
def _font(size: int) -> Union[ImageFont.FreeTypeFont, ImageFont.ImageFont]:
    try:
        return ImageFont.truetype("DejaVuSans-Bold.ttf", size)
    except OSError:
        return ImageFont.load_default(size=size)


def render_marker(number: int, heading_degrees: Optional[float], size: int,
                  glyph: Optional[MarkerGlyph] = None) -> Image.Image:
    """
    Render one numbered marker.

    Args:
        number: Sequence number drawn at the center
        heading_degrees: Compass heading; None renders unrotated
        size: Edge length of the square output in pixels
        glyph: Base graphic (defaults to default_marker_glyph())

    Returns:
        New RGBA image of size x size
    """
    if size <= 0:
        raise ValueError(f"Marker size must be positive, got {size}")

    glyph = glyph or default_marker_glyph()
    rotation = heading_degrees if heading_degrees is not None else 0.0

    marker = glyph.scaled(size)
    if rotation % 360:
        # PIL rotates counter-clockwise; headings are clockwise from north
        marker = marker.rotate(-rotation, resample=Image.Resampling.BICUBIC)

    draw = ImageDraw.Draw(marker)
    draw.text((size / 2, size / 2), str(number), fill=TEXT_COLOR, font=_font(marker_font_size(size)), anchor="mm")
    return marker
