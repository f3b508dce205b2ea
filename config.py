"""
Service configuration.
All values are read from environment variables once at import time.
"""
import os
from dataclasses import dataclass


# API Key configuration
API_KEY = os.environ.get("API_KEY", "")  # Empty = no authentication
PORT = int(os.environ.get("PORT", 8000))

# ==========================================
# CAPTURE / FLATTENING SETTINGS
# ==========================================

FLOOR_CANVAS_SIZE = int(os.environ.get("FLOOR_CANVAS_SIZE", "600"))  # floor overview capture
ITEM_CANVAS_SIZE = int(os.environ.get("ITEM_CANVAS_SIZE", "400"))    # single-photo close-up
FLOOR_MARKER_SIZE = int(os.environ.get("FLOOR_MARKER_SIZE", "40"))
ITEM_MARKER_SIZE = int(os.environ.get("ITEM_MARKER_SIZE", "32"))

CAPTURE_SETTLE_DELAY = float(os.environ.get("CAPTURE_SETTLE_DELAY", "0.5"))  # seconds
CAPTURE_TIMEOUT = float(os.environ.get("CAPTURE_TIMEOUT", "30"))            # seconds, readiness join
CAPTURE_CONCURRENCY = int(os.environ.get("CAPTURE_CONCURRENCY", "4"))
MIN_CAPTURE_BYTES = int(os.environ.get("MIN_CAPTURE_BYTES", "1000"))

MARKER_ASSET_PATH = os.environ.get("MARKER_ASSET_PATH", "")  # Empty = built-in arrow glyph

# Local floorplan files are only read from inside this directory. Empty = local paths disabled
FLOORPLAN_ROOT = os.environ.get("FLOORPLAN_ROOT", "")

# Decoded floorplan size limit (Pillow decompression bomb check)
MAX_IMAGE_PIXELS = int(os.environ.get("MAX_IMAGE_PIXELS", "200000000"))

# PDF floorplan rasterization
PDF_SCALE = float(os.environ.get("PDF_SCALE", "2.0"))        # 2.0 = 144 DPI
MAX_DIMENSION = int(os.environ.get("MAX_DIMENSION", "4000"))  # pixels


@dataclass(frozen=True)
class CaptureSettings:
    """Knobs for one capture unit. Defaults come from the environment."""
    settle_delay: float = CAPTURE_SETTLE_DELAY
    timeout: float = CAPTURE_TIMEOUT
    min_bytes: int = MIN_CAPTURE_BYTES
    concurrency: int = CAPTURE_CONCURRENCY
