"""
Photo key structure, floorplan frame lifecycle and EXIF parsing.
"""
import pytest

from geo import (
    UNASSIGNED_FLOOR,
    FloorplanReferenceFrame,
    GeoCoordinate,
    KeyItem,
    marker_bounds,
    parse_exif_location,
)
from photokey import PhotoKey


def aligned(image_ref="plan.png"):
    return FloorplanReferenceFrame(
        center=GeoCoordinate(latitude=40.0, longitude=-74.0), scale=0.01, image_ref=image_ref
    )


def test_new_key_has_unassigned_floor():
    key = PhotoKey(name="Survey")
    assert list(key.floors) == [UNASSIGNED_FLOOR]
    assert key.id


def test_attach_creates_unset_frame():
    key = PhotoKey()
    frame = key.attach_floorplan("1", "plan.png")
    assert frame.is_unset
    assert frame.is_valid
    assert frame.image_ref == "plan.png"


def test_replacing_image_keeps_alignment():
    key = PhotoKey()
    key.add_item("1", KeyItem(id="a"))
    key.attach_floorplan("1", "old.png")
    key.commit_frame("1", aligned("old.png"))

    frame = key.attach_floorplan("1", "new.png")
    assert frame.scale == 0.01
    assert frame.image_ref == "new.png"


def test_commit_requires_floorplan():
    key = PhotoKey()
    key.add_item("1", KeyItem(id="a"))
    with pytest.raises(KeyError):
        key.commit_frame("1", aligned())


def test_commit_keeps_image_when_frame_has_none():
    key = PhotoKey()
    key.add_item("1", KeyItem(id="a"))
    key.attach_floorplan("1", "plan.png")
    frame = key.commit_frame("1", aligned(image_ref=""))
    assert frame.image_ref == "plan.png"


def test_removing_last_item_drops_frame():
    key = PhotoKey()
    key.add_item("1", KeyItem(id="a"))
    key.add_item("1", KeyItem(id="b"))
    key.attach_floorplan("1", "plan.png")

    key.remove_item("1", "a")
    assert key.floors["1"].floorplan is not None
    key.remove_item("1", "b")
    assert key.floors["1"].floorplan is None


def test_moving_last_item_drops_frame():
    key = PhotoKey()
    key.add_item("1", KeyItem(id="a"))
    key.attach_floorplan("1", "plan.png")

    moved = key.move_item("a", "1", "2")
    assert moved.floor_id == "2"
    assert key.floors["1"].floorplan is None
    assert [i.id for i in key.floors["2"].items] == ["a"]


def test_unassigned_floor_keeps_its_frame():
    key = PhotoKey()
    key.add_item(UNASSIGNED_FLOOR, KeyItem(id="a"))
    key.attach_floorplan(UNASSIGNED_FLOOR, "plan.png")
    key.remove_item(UNASSIGNED_FLOOR, "a")
    assert key.floors[UNASSIGNED_FLOOR].floorplan is not None


def test_unknown_item_and_floor():
    key = PhotoKey()
    with pytest.raises(KeyError):
        key.remove_item(UNASSIGNED_FLOOR, "missing")
    with pytest.raises(KeyError):
        key.remove_item("9", "missing")
    with pytest.raises(KeyError):
        key.update_item(UNASSIGNED_FLOOR, "missing", name="x")


def test_update_item_touches_key():
    key = PhotoKey(last_modified="2000-01-01T00:00:00+00:00")
    key.add_item("1", KeyItem(id="a"))
    updated = key.update_item("1", "a", notes="cracked tile")
    assert updated.notes == "cracked tile"
    assert key.last_modified != "2000-01-01T00:00:00+00:00"


def test_global_numbers_follow_floor_order():
    key = PhotoKey()
    key.add_item(UNASSIGNED_FLOOR, KeyItem(id="u"))
    key.add_item("2", KeyItem(id="second"))
    key.add_item("1", KeyItem(id="first"))

    assert key.global_numbers() == {"first": 1, "second": 2, "u": 3}
    assert key.global_numbers(unassigned_first=True) == {"u": 1, "first": 2, "second": 3}


# ==========================================
# GEO HELPERS
# ==========================================

def test_marker_bounds_enforce_minimum_span():
    bounds = marker_bounds([GeoCoordinate(latitude=1.0, longitude=2.0)])
    assert bounds.lat_span == pytest.approx(0.0005)
    assert bounds.lng_span == pytest.approx(0.0005)
    assert marker_bounds([]) is None


def test_exif_south_west_are_negative():
    coordinates, heading = parse_exif_location({
        "GPSLatitude": 33.86,
        "GPSLatitudeRef": "S",
        "GPSLongitude": 151.21,
        "GPSLongitudeRef": "E",
        "GPSImgDirection": 270.5,
    })
    assert coordinates == GeoCoordinate(latitude=-33.86, longitude=151.21)
    assert heading == 270.5

    coordinates, _ = parse_exif_location({
        "GPSLatitude": 40.7, "GPSLatitudeRef": "N", "GPSLongitude": 74.0, "GPSLongitudeRef": "W",
    })
    assert coordinates == GeoCoordinate(latitude=40.7, longitude=-74.0)


@pytest.mark.parametrize("exif", [
    None,
    {},
    {"GPSLatitude": "40.7", "GPSLongitude": 74.0},
    {"GPSLatitude": 40.7},
])
def test_exif_without_usable_location(exif):
    coordinates, heading = parse_exif_location(exif)
    assert coordinates is None
    assert heading is None
