"""
Interactive floorplan alignment.

Two strategies bring a floor's reference frame into line with the real
positions of its geotagged photos:

  Mode A (stepped)   The overlay moves: discrete move / resize / rotate
                     steps around a seed, previewed as a bounding box with
                     a bearing.
  Mode B (pan/zoom)  The overlay is pinned to the viewport and the base map
                     moves underneath; the visible extent is committed.

Sessions never mutate the frame they started from. Cancel simply drops the
session; commit hands back a new frame for the caller to store.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple

from geo import (
    FloorplanReferenceFrame,
    GeoCoordinate,
    KeyItem,
    Marker,
    MarkerBounds,
    centroid,
    marker_bounds,
)
from numbering import floor_markers
from projection import PercentPosition, frame_from_extent, project

logger = logging.getLogger(__name__)

# Adjustment step sizes
COORD_STEP = 0.00005  # ~5 meters
ROTATION_STEP = 5     # degrees
SCALE_STEP = 0.1      # multiplier increment
MIN_SCALE = 0.2
MAX_SCALE = 3.0

_ROTATION_STEPS_PER_TURN = 360 // ROTATION_STEP

NO_GPS_MESSAGE = "No photos with GPS data on this floor"


class AlignmentError(Exception):
    """Raised when a session is driven in a way its state does not allow."""


class AlignmentMode(str, Enum):
    STEPPED = "stepped"
    PAN_ZOOM = "pan_zoom"


class SessionState(str, Enum):
    EDITING = "editing"
    CANNOT_ALIGN = "cannot_align"
    COMMITTED = "committed"
    CANCELLED = "cancelled"


class OverlayBounds(NamedTuple):
    south: float
    west: float
    north: float
    east: float
    bearing_degrees: float


class Extent(NamedTuple):
    center_lat: float
    center_lng: float
    lat_span: float
    lng_span: float


@dataclass(frozen=True)
class AlignmentResult:
    success: bool
    frame: Optional[FloorplanReferenceFrame] = None
    message: str = ""


def _usable(frame: Optional[FloorplanReferenceFrame]) -> bool:
    return frame is not None and frame.is_valid and not frame.is_unset


# ==========================================
# MODE A - STEPPED ADJUSTMENT
# ==========================================

@dataclass
class SteppedAlignment:
    """
    Stepped adjustment state.

    Position, size and rotation are stored as integer step counts from the
    seed, so any sequence of steps with zero net movement lands exactly on
    the seed values.
    """
    seed_center: GeoCoordinate
    base_lat_span: float
    base_lng_span: float  # <= 0 keeps the frame's longitude span unset
    seed_rotation: float = 0.0
    lat_steps: int = 0
    lng_steps: int = 0
    rotation_steps: int = 0
    scale_steps: int = 0

    @classmethod
    def seed(cls, frame: Optional[FloorplanReferenceFrame], markers: Sequence[Marker]) -> "SteppedAlignment":
        if _usable(frame):
            return cls(
                seed_center=frame.center,
                base_lat_span=frame.scale,
                base_lng_span=frame.secondary_span,
                seed_rotation=frame.bearing_degrees,
            )

        coords = [m.coordinate for m in markers]
        bounds = marker_bounds(coords)
        if bounds is None:
            raise AlignmentError(NO_GPS_MESSAGE)
        return cls(
            seed_center=centroid(coords),
            base_lat_span=bounds.lat_span,
            base_lng_span=bounds.lng_span,
        )

    @property
    def center_lat(self) -> float:
        return self.seed_center.latitude + self.lat_steps * COORD_STEP

    @property
    def center_lng(self) -> float:
        return self.seed_center.longitude + self.lng_steps * COORD_STEP

    @property
    def rotation_degrees(self) -> float:
        if self.rotation_steps == 0:
            return self.seed_rotation
        return (self.seed_rotation + self.rotation_steps * ROTATION_STEP) % 360

    @property
    def scale_multiplier(self) -> float:
        return self._multiplier(self.scale_steps)

    @staticmethod
    def _multiplier(steps: int) -> float:
        return min(max(1.0 + steps * SCALE_STEP, MIN_SCALE), MAX_SCALE)

    # Position controls
    def move_up(self) -> None:
        self.lat_steps += 1

    def move_down(self) -> None:
        self.lat_steps -= 1

    def move_left(self) -> None:
        self.lng_steps -= 1

    def move_right(self) -> None:
        self.lng_steps += 1

    # Size controls
    def size_up(self) -> None:
        if self.scale_multiplier < MAX_SCALE:
            self.scale_steps += 1

    def size_down(self) -> None:
        if self.scale_multiplier > MIN_SCALE:
            self.scale_steps -= 1

    # Rotation controls
    def rotate_clockwise(self) -> None:
        self.rotation_steps = (self.rotation_steps + 1) % _ROTATION_STEPS_PER_TURN

    def rotate_counter_clockwise(self) -> None:
        self.rotation_steps = (self.rotation_steps - 1) % _ROTATION_STEPS_PER_TURN

    def overlay_bounds(self) -> OverlayBounds:
        """SW/NE corners of the preview overlay plus its bearing."""
        lng_base = self.base_lng_span if self.base_lng_span > 0 else self.base_lat_span
        half_lat = self.base_lat_span * self.scale_multiplier / 2
        half_lng = lng_base * self.scale_multiplier / 2
        return OverlayBounds(
            south=self.center_lat - half_lat,
            west=self.center_lng - half_lng,
            north=self.center_lat + half_lat,
            east=self.center_lng + half_lng,
            bearing_degrees=self.rotation_degrees,
        )

    def to_frame(self, image_ref: str = "") -> FloorplanReferenceFrame:
        multiplier = self.scale_multiplier
        return FloorplanReferenceFrame(
            center=GeoCoordinate(latitude=self.center_lat, longitude=self.center_lng),
            scale=self.base_lat_span * multiplier,
            secondary_span=self.base_lng_span * multiplier if self.base_lng_span > 0 else self.base_lng_span,
            bearing_degrees=self.rotation_degrees,
            image_ref=image_ref,
        )

    def snapshot(self) -> Dict[str, float]:
        return {
            "center_lat": self.center_lat,
            "center_lng": self.center_lng,
            "rotation_degrees": self.rotation_degrees,
            "scale_multiplier": self.scale_multiplier,
        }


STEP_ACTIONS = (
    "move_up",
    "move_down",
    "move_left",
    "move_right",
    "size_up",
    "size_down",
    "rotate_clockwise",
    "rotate_counter_clockwise",
)


# ==========================================
# MODE B - PAN/ZOOM ADJUSTMENT
# ==========================================

@dataclass
class PanZoomAlignment:
    """Visible extent of the base map under a pinned floorplan overlay."""
    initial: Extent
    current: Optional[Extent] = None
    bearing_degrees: float = 0.0

    @classmethod
    def seed(cls, frame: Optional[FloorplanReferenceFrame], markers: Sequence[Marker]) -> "PanZoomAlignment":
        if _usable(frame):
            extent = Extent(frame.center.latitude, frame.center.longitude, frame.lat_span, frame.lng_span)
            return cls(initial=extent, bearing_degrees=frame.bearing_degrees)

        bounds: Optional[MarkerBounds] = marker_bounds(m.coordinate for m in markers)
        if bounds is None:
            raise AlignmentError(NO_GPS_MESSAGE)
        extent = Extent(bounds.center_lat, bounds.center_lng, bounds.lat_span * 2, bounds.lng_span * 2)
        bearing = frame.bearing_degrees if frame is not None else 0.0
        return cls(initial=extent, bearing_degrees=bearing)

    @property
    def extent(self) -> Extent:
        return self.current if self.current is not None else self.initial

    def update_region(self, center_lat: float, center_lng: float, lat_span: float, lng_span: float) -> None:
        if lat_span <= 0 or lng_span <= 0:
            raise ValueError(f"Region spans must be positive, got lat={lat_span}, lng={lng_span}")
        self.current = Extent(center_lat, center_lng, lat_span, lng_span)

    def pan(self, d_lat: float, d_lng: float) -> None:
        e = self.extent
        self.update_region(e.center_lat + d_lat, e.center_lng + d_lng, e.lat_span, e.lng_span)

    def zoom(self, factor: float) -> None:
        """factor > 1 zooms in (smaller extent), < 1 zooms out."""
        if factor <= 0:
            raise ValueError(f"Zoom factor must be positive, got {factor}")
        e = self.extent
        self.update_region(e.center_lat, e.center_lng, e.lat_span / factor, e.lng_span / factor)

    def to_frame(self, image_ref: str = "") -> FloorplanReferenceFrame:
        e = self.extent
        return frame_from_extent(e.center_lat, e.center_lng, e.lat_span, e.lng_span,
                                 bearing_degrees=self.bearing_degrees, image_ref=image_ref)

    def marker_positions(self, markers: Sequence[Marker]) -> List[Tuple[Marker, Optional[PercentPosition]]]:
        frame = self.to_frame()
        return [(m, project(frame, m.coordinate)) for m in markers]

    def snapshot(self) -> Dict[str, float]:
        return self.extent._asdict()


# ==========================================
# SESSION
# ==========================================

@dataclass
class AlignmentSession:
    mode: AlignmentMode
    markers: List[Marker]
    original: Optional[FloorplanReferenceFrame]
    strategy: Optional[object] = None
    state: SessionState = SessionState.EDITING
    message: str = ""
    result: Optional[AlignmentResult] = field(default=None, repr=False)

    def _editing(self) -> None:
        if self.state is not SessionState.EDITING:
            raise AlignmentError(f"Session is {self.state.value}, not editing")

    @property
    def stepped(self) -> SteppedAlignment:
        if not isinstance(self.strategy, SteppedAlignment):
            raise AlignmentError("Session is not in stepped mode")
        return self.strategy

    @property
    def pan_zoom(self) -> PanZoomAlignment:
        if not isinstance(self.strategy, PanZoomAlignment):
            raise AlignmentError("Session is not in pan/zoom mode")
        return self.strategy

    def apply(self, action: str) -> None:
        """Run one Mode A step by name."""
        self._editing()
        if action not in STEP_ACTIONS:
            raise ValueError(f"Unknown alignment action: {action}")
        getattr(self.stepped, action)()

    def update_region(self, center_lat: float, center_lng: float, lat_span: float, lng_span: float) -> None:
        self._editing()
        self.pan_zoom.update_region(center_lat, center_lng, lat_span, lng_span)

    def preview(self) -> dict:
        """Current adjustment state, in a form a UI can draw."""
        preview = {"mode": self.mode.value, "state": self.state.value, "message": self.message}
        if isinstance(self.strategy, SteppedAlignment):
            preview["adjustment"] = self.strategy.snapshot()
            preview["overlay"] = self.strategy.overlay_bounds()._asdict()
        elif isinstance(self.strategy, PanZoomAlignment):
            preview["adjustment"] = self.strategy.snapshot()
            preview["markers"] = [
                {"item_id": m.item_id, "number": m.number, "position": pos._asdict() if pos else None}
                for m, pos in self.strategy.marker_positions(self.markers)
            ]
        return preview

    def commit(self) -> AlignmentResult:
        if self.state is SessionState.CANNOT_ALIGN:
            return AlignmentResult(success=False, message=self.message)
        self._editing()

        image_ref = self.original.image_ref if self.original is not None else ""
        frame = self.strategy.to_frame(image_ref)
        self.state = SessionState.COMMITTED
        self.result = AlignmentResult(success=True, frame=frame)
        logger.info(
            f"Alignment committed ({self.mode.value}): center=({frame.center.latitude:.6f}, "
            f"{frame.center.longitude:.6f}), spans={frame.lat_span:.6f}x{frame.lng_span:.6f}, "
            f"bearing={frame.bearing_degrees:.0f}"
        )
        return self.result

    def cancel(self) -> None:
        if self.state in (SessionState.COMMITTED, SessionState.CANCELLED):
            raise AlignmentError(f"Session is already {self.state.value}")
        self.state = SessionState.CANCELLED
        self.strategy = None


def alignment_markers(items: Sequence[KeyItem], numbers: Optional[Mapping[str, int]] = None) -> List[Marker]:
    """Markers for the geotagged items of a floor; numbered by floor position unless numbers are given."""
    if numbers is None:
        numbers = {item.id: index for index, item in enumerate(items, start=1)}
    return floor_markers(items, numbers)


def start_alignment(items: Sequence[KeyItem],
                    frame: Optional[FloorplanReferenceFrame],
                    mode: AlignmentMode = AlignmentMode.STEPPED,
                    numbers: Optional[Mapping[str, int]] = None) -> AlignmentSession:
    """
    Open an alignment session for one floor.

    Args:
        items: The floor's photos (only geotagged ones become markers)
        frame: The floor's current reference frame, if any
        mode: Stepped (Mode A) or pan/zoom (Mode B)
        numbers: Optional global numbering for marker labels

    Returns:
        AlignmentSession; in CANNOT_ALIGN state when no photo has GPS data
    """
    mode = AlignmentMode(mode)
    markers = alignment_markers(items, numbers)

    if not markers:
        logger.info("Alignment requested for a floor without geotagged photos")
        return AlignmentSession(mode=mode, markers=[], original=frame,
                                state=SessionState.CANNOT_ALIGN, message=NO_GPS_MESSAGE)

    if mode is AlignmentMode.STEPPED:
        strategy = SteppedAlignment.seed(frame, markers)
    else:
        strategy = PanZoomAlignment.seed(frame, markers)

    logger.info(f"Alignment session started ({mode.value}) with {len(markers)} marker(s)")
    return AlignmentSession(mode=mode, markers=markers, original=frame, strategy=strategy)
