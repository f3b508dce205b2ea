"""
Coordinate model for floorplan georeferencing.

A floorplan reference frame is a simple affine mapping between
geographic coordinates and the floorplan image:

    image center  <->  frame.center
    image height  <->  frame.scale           (latitude span, degrees)
    image width   <->  frame.secondary_span  (longitude span, degrees;
                                              falls back to scale when unset)

bearing_degrees is a true angle and is only used by the alignment
preview overlay. It never doubles as a span.
"""
import logging
from typing import Any, Iterable, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

UNASSIGNED_FLOOR = "unassigned"

# Marker spans smaller than this collapse the overlay to a point
MIN_MARKER_SPAN = 0.0005


class GeoCoordinate(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float
    longitude: float


class FloorplanReferenceFrame(BaseModel):
    """Per-floor alignment of a floorplan image to geographic space."""
    model_config = ConfigDict(frozen=True)

    center: GeoCoordinate = Field(default_factory=lambda: GeoCoordinate(latitude=0.0, longitude=0.0))
    scale: float = 1.0             # latitude span of the image height
    secondary_span: float = 0.0    # longitude span of the image width, <= 0 means unset
    bearing_degrees: float = 0.0   # preview overlay rotation only
    image_ref: str = ""

    @classmethod
    def unset(cls, image_ref: str = "") -> "FloorplanReferenceFrame":
        """Sentinel frame written when an image is first attached to a floor."""
        return cls(image_ref=image_ref)

    @property
    def is_valid(self) -> bool:
        return self.scale > 0

    @property
    def is_unset(self) -> bool:
        return (
            self.center.latitude == 0.0
            and self.center.longitude == 0.0
            and self.scale == 1.0
            and self.secondary_span <= 0
        )

    @property
    def lat_span(self) -> float:
        return self.scale

    @property
    def lng_span(self) -> float:
        return self.secondary_span if self.secondary_span > 0 else self.scale


class Marker(BaseModel):
    """A numbered, heading-rotated location derived from a KeyItem."""
    model_config = ConfigDict(frozen=True)

    item_id: str
    number: int = Field(ge=1)
    heading_degrees: Optional[float] = None
    coordinate: GeoCoordinate


class KeyItem(BaseModel):
    """A photo handed over by the import layer."""
    id: str
    photo_uri: str = ""
    coordinates: Optional[GeoCoordinate] = None
    heading_degrees: Optional[float] = None
    floor_id: str = UNASSIGNED_FLOOR
    name: str = ""
    notes: str = ""


class MarkerBounds(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    @property
    def center_lat(self) -> float:
        return (self.min_lat + self.max_lat) / 2

    @property
    def center_lng(self) -> float:
        return (self.min_lng + self.max_lng) / 2

    @property
    def lat_span(self) -> float:
        return max(self.max_lat - self.min_lat, MIN_MARKER_SPAN)

    @property
    def lng_span(self) -> float:
        return max(self.max_lng - self.min_lng, MIN_MARKER_SPAN)


def marker_bounds(coordinates: Iterable[GeoCoordinate]) -> Optional[MarkerBounds]:
    """Bounding box of a set of coordinates, None when the set is empty."""
    coords = list(coordinates)
    if not coords:
        return None
    lats = [c.latitude for c in coords]
    lngs = [c.longitude for c in coords]
    return MarkerBounds(min_lat=min(lats), max_lat=max(lats), min_lng=min(lngs), max_lng=max(lngs))


def centroid(coordinates: Iterable[GeoCoordinate]) -> Optional[GeoCoordinate]:
    """Arithmetic mean of a set of coordinates."""
    coords = list(coordinates)
    if not coords:
        return None
    return GeoCoordinate(
        latitude=sum(c.latitude for c in coords) / len(coords),
        longitude=sum(c.longitude for c in coords) / len(coords),
    )


# ==========================================
# EXIF BOUNDARY
# ==========================================

def _number(value: Any) -> Optional[float]:
    # bool is an int subclass; EXIF never encodes coordinates as bools
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def parse_exif_location(exif: Optional[Mapping[str, Any]]) -> Tuple[Optional[GeoCoordinate], Optional[float]]:
    """
    Parse coordinates and compass heading out of an extracted EXIF mapping.

    Args:
        exif: EXIF tags as returned by the photo picker (may be None)

    Returns:
        (coordinates, heading_degrees); each is None when missing or malformed.
        South/West references negate the raw magnitude.
    """
    if not exif:
        return None, None

    coordinates = None
    latitude = _number(exif.get("GPSLatitude"))
    longitude = _number(exif.get("GPSLongitude"))
    if latitude is not None and longitude is not None:
        if exif.get("GPSLatitudeRef") == "S":
            latitude = -latitude
        if exif.get("GPSLongitudeRef") == "W":
            longitude = -longitude
        coordinates = GeoCoordinate(latitude=latitude, longitude=longitude)
    elif "GPSLatitude" in exif or "GPSLongitude" in exif:
        logger.warning("EXIF GPS tags present but not numeric; ignoring location")

    heading = _number(exif.get("GPSImgDirection"))
    return coordinates, heading
