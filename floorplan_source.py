"""
Floorplan Source Module
Resolves a floorplan image reference (data URI, URL or path) to a decoded
PIL image. PDF floorplans are rasterized with PyMuPDF.
"""
import asyncio
import base64
import io
import logging
import os

import fitz  # PyMuPDF
import httpx
from PIL import Image

import config

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF"


async def download_file(url: str) -> bytes:
    """
    Download a file from a URL.

    Args:
        url: File URL to download

    Returns:
        File content as bytes
    """
    async with httpx.AsyncClient(timeout=60.0) as client:
        response = await client.get(url)
        response.raise_for_status()
        return response.content


def decode_data_uri(uri: str) -> bytes:
    """Payload of a base64 data URI (data:image/png;base64,....)."""
    header, _, payload = uri.partition(",")
    if not header.endswith(";base64"):
        raise ValueError("Only base64 data URIs are supported")
    return base64.b64decode(payload)


def resolve_local_path(path: str) -> str:
    """
    Resolve a local floorplan path inside FLOORPLAN_ROOT.

    Raises:
        ValueError: local paths are disabled, or the path resolves outside the root
    """
    if not config.FLOORPLAN_ROOT:
        raise ValueError("Local floorplan paths are disabled (FLOORPLAN_ROOT not set)")

    root = os.path.realpath(config.FLOORPLAN_ROOT)
    resolved = os.path.realpath(os.path.join(root, path))
    if os.path.commonpath([root, resolved]) != root:
        logger.warning(f"Rejected floorplan path outside FLOORPLAN_ROOT: {path}")
        raise ValueError(f"Floorplan path is outside FLOORPLAN_ROOT: {path}")
    return resolved


def _read_path(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


async def read_source(image_ref: str) -> bytes:
    """Raw bytes behind an image reference."""
    if image_ref.startswith("data:"):
        return decode_data_uri(image_ref)
    if image_ref.startswith(("http://", "https://")):
        logger.info(f"⬇️ Downloading floorplan: {image_ref}")
        return await download_file(image_ref)
    if image_ref.startswith("file://"):
        image_ref = image_ref[len("file://"):]
    return await asyncio.to_thread(_read_path, resolve_local_path(image_ref))


def pdf_to_image(pdf_content: bytes, scale: float = config.PDF_SCALE,
                 max_dimension: int = config.MAX_DIMENSION) -> Image.Image:
    """
    Render the first page of a PDF floorplan to a PIL image.

    Args:
        pdf_content: PDF file content as bytes
        scale: Scale factor for rendering (2.0 = 144 DPI)
        max_dimension: Maximum width or height in pixels before reducing scale

    Returns:
        RGB PIL Image of page 1
    """
    pdf_document = fitz.open(stream=pdf_content, filetype="pdf")
    try:
        if pdf_document.page_count == 0:
            raise ValueError("PDF floorplan has no pages")

        page = pdf_document[0]
        target_width = int(page.rect.width * scale)
        target_height = int(page.rect.height * scale)

        actual_scale = scale
        if target_width > max_dimension or target_height > max_dimension:
            actual_scale = scale * max_dimension / max(target_width, target_height)
            logger.info(f"PDF page too large ({target_width}x{target_height}), rendering at {actual_scale:.2f}x")

        pix = page.get_pixmap(matrix=fitz.Matrix(actual_scale, actual_scale), alpha=False)
        image = Image.open(io.BytesIO(pix.tobytes("png")))
        image.load()
        logger.info(f"PDF floorplan rasterized: {image.width}x{image.height} pixels")
        return image
    finally:
        pdf_document.close()


def decode_image(data: bytes) -> Image.Image:
    """Decode floorplan bytes (raster or PDF) into an RGBA image."""
    if data[:4] == PDF_MAGIC:
        image = pdf_to_image(data)
    else:
        image = Image.open(io.BytesIO(data))
        image.load()
    return image.convert("RGBA")


async def load_floorplan_image(image_ref: str) -> Image.Image:
    """
    Load and decode a floorplan image.

    Raises:
        httpx.HTTPError: download failed
        OSError / PIL.UnidentifiedImageError: unreadable or corrupt image
        PIL.Image.DecompressionBombError: image exceeds MAX_IMAGE_PIXELS
        ValueError: empty reference, bad data URI or path outside FLOORPLAN_ROOT
    """
    if not image_ref:
        raise ValueError("Floorplan has no image reference")
    data = await read_source(image_ref)
    return await asyncio.to_thread(decode_image, data)


def image_to_data_uri(image: Image.Image) -> str:
    """PNG data URI of an image."""
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")
