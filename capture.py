"""
Flattening / capture pipeline.

Renders a floorplan plus its markers off-screen and serializes the result
to PNG so a static report can embed it.

Each capture unit waits on two independent conditions before it snapshots:

    1. image_loaded   the floorplan image finished downloading and decoding
    2. surface_ready  the marker surface (projected positions + glyphs) is laid out

They resolve in any order. The snapshot happens once, on the transition
where both are true, followed by a short settle delay. Snapshotting
earlier produces blank or partial output.
"""
import asyncio
import base64
import io
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

import httpx
from PIL import Image

import config
from config import CaptureSettings
from floorplan_source import load_floorplan_image
from geo import UNASSIGNED_FLOOR, FloorplanReferenceFrame, Marker
from markers import MarkerGlyph, render_marker
from numbering import floor_markers
from photokey import PhotoKey
from projection import PercentPosition, is_displayable, project

logger = logging.getLogger(__name__)

ImageLoader = Callable[[str], Awaitable[Image.Image]]

# Floorplan load and decode failures become failed results; anything else propagates
LOAD_ERRORS = (OSError, ValueError, httpx.HTTPError, Image.DecompressionBombError)

FLOOR_UNIT = "floor"
ITEM_UNIT = "item"


# ==========================================
# READINESS JOIN
# ==========================================

class ReadinessJoin:
    """
    Two readiness flags and a single "both ready" transition.

    The transition fires exactly once regardless of arrival order. A
    cancelled join never fires.
    """

    def __init__(self, on_ready: Optional[Callable[[], None]] = None):
        self.image_loaded = False
        self.surface_ready = False
        self.fired = False
        self.cancelled = False
        self._on_ready = on_ready
        self._event = asyncio.Event()

    @property
    def ready(self) -> bool:
        return self.image_loaded and self.surface_ready

    def mark_image_loaded(self) -> None:
        self.image_loaded = True
        self._transition()

    def mark_surface_ready(self) -> None:
        self.surface_ready = True
        self._transition()

    def cancel(self) -> None:
        self.cancelled = True
        self._event.set()

    def _transition(self) -> None:
        if self.fired or self.cancelled or not self.ready:
            return
        self.fired = True
        self._event.set()
        if self._on_ready is not None:
            self._on_ready()

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """True once both flags are set; False on timeout or cancel."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return self.fired


# ==========================================
# RESULTS / REQUESTS
# ==========================================

@dataclass(frozen=True)
class CaptureResult:
    unit_id: str
    success: bool
    png: Optional[bytes] = None
    error: Optional[str] = None

    @classmethod
    def failed(cls, unit_id: str, error: str) -> "CaptureResult":
        return cls(unit_id=unit_id, success=False, error=error)

    @property
    def data_uri(self) -> Optional[str]:
        if not self.success or self.png is None:
            return None
        return "data:image/png;base64," + base64.b64encode(self.png).decode("ascii")

    def to_dict(self) -> dict:
        return {
            "unit_id": self.unit_id,
            "success": self.success,
            "image": self.data_uri,
            "bytes": len(self.png) if self.png else 0,
            "error": self.error,
        }


@dataclass(frozen=True)
class CaptureRequest:
    """One flattening unit: a floorplan frame and the markers drawn on it."""
    unit_id: str
    frame: FloorplanReferenceFrame
    markers: Tuple[Marker, ...]
    max_size: int = config.FLOOR_CANVAS_SIZE
    marker_size: int = config.FLOOR_MARKER_SIZE
    kind: str = FLOOR_UNIT
    key: str = ""  # floor id or item id the result belongs to


@dataclass(frozen=True)
class Placement:
    marker: Marker
    position: PercentPosition
    glyph: Image.Image = field(compare=False)


# ==========================================
# COMPOSITION
# ==========================================

def fit_canvas(width: int, height: int, max_size: int) -> Tuple[int, int]:
    """Aspect-preserving canvas whose longer side equals max_size."""
    if width <= 0 or height <= 0 or max_size <= 0:
        raise ValueError(f"Invalid canvas request: {width}x{height} into {max_size}")
    aspect = width / height
    if width > height:
        return max_size, max(1, round(max_size / aspect))
    return max(1, round(max_size * aspect)), max_size


def layout_markers(frame: FloorplanReferenceFrame, markers: Sequence[Marker], marker_size: int,
                   glyph: Optional[MarkerGlyph] = None) -> List[Placement]:
    """Project markers and render their glyphs; markers off the floorplan are dropped."""
    placements = []
    for marker in markers:
        position = project(frame, marker.coordinate)
        if not is_displayable(position):
            logger.info(f"Marker #{marker.number} ({marker.item_id}) falls outside the floorplan; skipped")
            continue
        glyph_image = render_marker(marker.number, marker.heading_degrees, marker_size, glyph)
        placements.append(Placement(marker, position, glyph_image))
    return placements


def compose(floorplan: Image.Image, placements: Sequence[Placement], max_size: int) -> Image.Image:
    """Floorplan scaled onto a white canvas with the marker glyphs on top."""
    width, height = fit_canvas(floorplan.width, floorplan.height, max_size)
    canvas = Image.new("RGBA", (width, height), (255, 255, 255, 255))
    scaled = floorplan.convert("RGBA").resize((width, height), Image.Resampling.LANCZOS)
    canvas.alpha_composite(scaled)

    for placement in placements:
        glyph = placement.glyph
        left = round(placement.position.x / 100 * width - glyph.width / 2)
        top = round(placement.position.y / 100 * height - glyph.height / 2)
        canvas.paste(glyph, (left, top), glyph)

    return canvas.convert("RGB")


def encode_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG", compress_level=6)
    return buffer.getvalue()


# ==========================================
# CAPTURE UNIT
# ==========================================

class FloorplanCapture:
    """
    A single capture unit with its own readiness state.

    Units never share images, canvases or joins, so any number of them can
    run side by side.
    """

    def __init__(self, request: CaptureRequest, glyph: Optional[MarkerGlyph] = None,
                 settings: Optional[CaptureSettings] = None, loader: ImageLoader = load_floorplan_image):
        self.request = request
        self.glyph = glyph
        self.settings = settings or CaptureSettings()
        self.join = ReadinessJoin()
        self._loader = loader
        self._image: Optional[Image.Image] = None
        self._placements: Optional[List[Placement]] = None
        self._error: Optional[BaseException] = None
        self._load_error: Optional[Exception] = None

    async def _load_image(self) -> None:
        try:
            self._image = await self._loader(self.request.frame.image_ref)
        except LOAD_ERRORS as e:
            self._load_error = e
            self.join.cancel()
            return
        self.join.mark_image_loaded()

    async def _prepare_surface(self) -> None:
        r = self.request
        self._placements = await asyncio.to_thread(layout_markers, r.frame, r.markers, r.marker_size, self.glyph)
        self.join.mark_surface_ready()

    async def _guard(self, step: Callable[[], Awaitable[None]]) -> None:
        try:
            await step()
        except Exception as e:
            self._error = e
            self.join.cancel()

    def cancel(self) -> None:
        self.join.cancel()

    def snapshot(self) -> bytes:
        """Compose and encode. Only valid after the readiness join fired."""
        if not self.join.fired:
            raise RuntimeError("Snapshot requested before floorplan and markers were ready")
        image = compose(self._image, self._placements, self.request.max_size)
        return encode_png(image)

    async def run(self) -> CaptureResult:
        unit_id = self.request.unit_id
        if not self.request.frame.is_valid:
            return CaptureResult.failed(unit_id, "floorplan frame has no valid scale")

        tasks = [
            asyncio.create_task(self._guard(self._load_image)),
            asyncio.create_task(self._guard(self._prepare_surface)),
        ]
        try:
            ready = await self.join.wait(self.settings.timeout)
            if self._load_error is not None:
                logger.warning(f"Floorplan for {unit_id} could not be loaded: {self._load_error}")
                return CaptureResult.failed(unit_id, f"floorplan could not be loaded: {self._load_error}")
            if self._error is not None:
                raise self._error
            if not ready:
                reason = "cancelled" if self.join.cancelled else (
                    f"timed out after {self.settings.timeout:.0f}s waiting for floorplan and markers"
                )
                return CaptureResult.failed(unit_id, reason)

            # final paint pass
            await asyncio.sleep(self.settings.settle_delay)
            if self.join.cancelled:
                return CaptureResult.failed(unit_id, "cancelled")
            png = await asyncio.to_thread(self.snapshot)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        if len(png) < self.settings.min_bytes:
            logger.warning(f"Capture {unit_id} produced only {len(png)} bytes")
            return CaptureResult.failed(unit_id, "capture produced an empty image")

        logger.info(f"✅ Captured {unit_id}: {len(png)} bytes, {len(self._placements)} marker(s)")
        return CaptureResult(unit_id=unit_id, success=True, png=png)


# ==========================================
# BATCH
# ==========================================

class CaptureBatch:
    """
    Runs many capture units with bounded concurrency.

    One unit failing never aborts the others. After cancel(), results that
    arrive late are discarded instead of being written into results.
    """

    def __init__(self, requests: Sequence[CaptureRequest], glyph: Optional[MarkerGlyph] = None,
                 settings: Optional[CaptureSettings] = None, loader: ImageLoader = load_floorplan_image,
                 on_result: Optional[Callable[[CaptureResult], None]] = None):
        self.requests = list(requests)
        self.glyph = glyph
        self.settings = settings or CaptureSettings()
        self.results: Dict[str, CaptureResult] = {}
        self.cancelled = False
        self._loader = loader
        self._on_result = on_result
        self._active: Set[FloorplanCapture] = set()

    def cancel(self) -> None:
        self.cancelled = True
        for capture in list(self._active):
            capture.cancel()

    def _record(self, result: CaptureResult) -> None:
        if self.cancelled:
            logger.info(f"Discarding late capture result for {result.unit_id}")
            return
        if not result.success:
            logger.warning(f"⚠️  Capture {result.unit_id} failed: {result.error}")
        self.results[result.unit_id] = result
        if self._on_result is not None:
            self._on_result(result)

    async def _run_one(self, request: CaptureRequest, semaphore: asyncio.Semaphore) -> None:
        async with semaphore:
            if self.cancelled:
                return
            capture = FloorplanCapture(request, self.glyph, self.settings, self._loader)
            self._active.add(capture)
            try:
                result = await capture.run()
            except Exception as e:
                logger.error(f"❌ Capture {request.unit_id} raised: {str(e)}", exc_info=True)
                result = CaptureResult.failed(request.unit_id, str(e))
            finally:
                self._active.discard(capture)
        self._record(result)

    async def run(self) -> Dict[str, CaptureResult]:
        semaphore = asyncio.Semaphore(max(1, self.settings.concurrency))
        logger.info(f"Capturing {len(self.requests)} unit(s), concurrency {self.settings.concurrency}")
        await asyncio.gather(*(self._run_one(r, semaphore) for r in self.requests))
        return dict(self.results)


# ==========================================
# EXPORT
# ==========================================

@dataclass
class ExportCaptures:
    """What report assembly receives: one result per floor and per photo."""
    floors: Dict[str, CaptureResult] = field(default_factory=dict)
    items: Dict[str, CaptureResult] = field(default_factory=dict)
    numbers: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "floors": {k: v.to_dict() for k, v in self.floors.items()},
            "items": {k: v.to_dict() for k, v in self.items.items()},
            "numbers": self.numbers,
        }


def plan_export_captures(photo_key: PhotoKey) -> List[CaptureRequest]:
    """
    One overview per numbered floor that has a floorplan and photos, plus
    one close-up per geotagged photo on such a floor.
    """
    numbers = photo_key.global_numbers()
    requests = []
    for floor_id in photo_key.ordered_floor_ids():
        floor = photo_key.floors[floor_id]
        if floor_id == UNASSIGNED_FLOOR or floor.floorplan is None or not floor.items:
            continue

        markers = floor_markers(floor.items, numbers)
        requests.append(CaptureRequest(
            unit_id=f"floor:{floor_id}",
            frame=floor.floorplan,
            markers=tuple(markers),
            max_size=config.FLOOR_CANVAS_SIZE,
            marker_size=config.FLOOR_MARKER_SIZE,
            kind=FLOOR_UNIT,
            key=floor_id,
        ))
        for marker in markers:
            requests.append(CaptureRequest(
                unit_id=f"item:{marker.item_id}",
                frame=floor.floorplan,
                markers=(marker,),
                max_size=config.ITEM_CANVAS_SIZE,
                marker_size=config.ITEM_MARKER_SIZE,
                kind=ITEM_UNIT,
                key=marker.item_id,
            ))
    return requests


def collect_export(photo_key: PhotoKey, requests: Sequence[CaptureRequest],
                   results: Dict[str, CaptureResult]) -> ExportCaptures:
    """Sort batch results by floor/item; units without a result become failures."""
    export = ExportCaptures(numbers=photo_key.global_numbers())
    for request in requests:
        result = results.get(request.unit_id) or CaptureResult.failed(request.unit_id, "no capture result")
        target = export.floors if request.kind == FLOOR_UNIT else export.items
        target[request.key] = result
    return export


async def export_captures(photo_key: PhotoKey, glyph: Optional[MarkerGlyph] = None,
                          settings: Optional[CaptureSettings] = None,
                          loader: ImageLoader = load_floorplan_image) -> ExportCaptures:
    """Flatten every floor overview and photo close-up of a photo key."""
    requests = plan_export_captures(photo_key)
    batch = CaptureBatch(requests, glyph=glyph, settings=settings, loader=loader)
    results = await batch.run()
    return collect_export(photo_key, requests, results)
