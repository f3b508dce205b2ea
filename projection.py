"""
Forward projection: geographic coordinate -> floorplan image position.

    x% = 50 + (deltaLng / lngSpan) * 100
    y% = 50 - (deltaLat / latSpan) * 100     (image y grows downward)

The projector never clamps. Whether an out-of-range position is drawn is
the renderer's decision (see is_displayable).
"""
from typing import NamedTuple, Optional

from geo import FloorplanReferenceFrame, GeoCoordinate

DISPLAY_LOWER = -20.0
DISPLAY_UPPER = 120.0


class PercentPosition(NamedTuple):
    x: float
    y: float


class PixelPosition(NamedTuple):
    x: float
    y: float


def project(frame: FloorplanReferenceFrame, point: GeoCoordinate) -> Optional[PercentPosition]:
    """
    Project a coordinate into percentage space of the floorplan image.

    Args:
        frame: Reference frame of the floorplan
        point: Coordinate to project

    Returns:
        PercentPosition, or None when the frame has a non-positive scale
    """
    if not frame.is_valid:
        return None

    delta_lat = point.latitude - frame.center.latitude
    delta_lng = point.longitude - frame.center.longitude

    x = 50 + (delta_lng / frame.lng_span) * 100
    y = 50 - (delta_lat / frame.lat_span) * 100
    return PercentPosition(x, y)


def project_to_pixels(frame: FloorplanReferenceFrame, point: GeoCoordinate,
                      width: float, height: float) -> Optional[PixelPosition]:
    """Project a coordinate onto a canvas of the given pixel size."""
    position = project(frame, point)
    if position is None:
        return None
    return PixelPosition(position.x / 100 * width, position.y / 100 * height)


def is_displayable(position: Optional[PercentPosition],
                   lower: float = DISPLAY_LOWER, upper: float = DISPLAY_UPPER) -> bool:
    """Renderer policy: show markers that land within [lower, upper] on both axes."""
    if position is None:
        return False
    return lower <= position.x <= upper and lower <= position.y <= upper


def frame_from_extent(center_lat: float, center_lng: float, lat_span: float, lng_span: float,
                      bearing_degrees: float = 0.0, image_ref: str = "") -> FloorplanReferenceFrame:
    """Build a frame whose image exactly covers a visible geographic extent."""
    if lat_span <= 0 or lng_span <= 0:
        raise ValueError(f"Extent spans must be positive, got lat={lat_span}, lng={lng_span}")
    return FloorplanReferenceFrame(
        center=GeoCoordinate(latitude=center_lat, longitude=center_lng),
        scale=lat_span,
        secondary_span=lng_span,
        bearing_degrees=bearing_degrees,
        image_ref=image_ref,
    )
