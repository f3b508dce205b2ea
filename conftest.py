from collections.abc import Generator
from typing import List

import pytest
from fastapi.testclient import TestClient
from PIL import Image

import app as service
from config import CaptureSettings
from floorplan_source import image_to_data_uri
from geo import FloorplanReferenceFrame, GeoCoordinate, KeyItem


@pytest.fixture()
def fast_settings() -> CaptureSettings:
    return CaptureSettings(settle_delay=0.0, timeout=5.0, min_bytes=1000, concurrency=2)


@pytest.fixture(autouse=True)
def clean_service_state(monkeypatch, fast_settings):
    monkeypatch.setattr(service.config, "API_KEY", "")
    monkeypatch.setattr(service.config, "FLOORPLAN_ROOT", "")
    monkeypatch.setattr(service, "capture_settings", fast_settings)
    service.jobs_store.clear()
    service.export_batches.clear()
    service.sessions_store.clear()
    yield
    service.jobs_store.clear()
    service.export_batches.clear()
    service.sessions_store.clear()


@pytest.fixture()
def client() -> Generator[TestClient, None, None]:
    with TestClient(service.app) as test_client:
        yield test_client


@pytest.fixture(scope="session")
def floorplan_image() -> Image.Image:
    # noise keeps the PNG well above the empty-capture threshold
    return Image.effect_noise((240, 160), 60).convert("RGBA")


@pytest.fixture(scope="session")
def floorplan_data_uri(floorplan_image) -> str:
    return image_to_data_uri(floorplan_image)


@pytest.fixture()
def frame(floorplan_data_uri) -> FloorplanReferenceFrame:
    return FloorplanReferenceFrame(
        center=GeoCoordinate(latitude=40.0, longitude=-74.0),
        scale=0.01,
        secondary_span=0.01,
        image_ref=floorplan_data_uri,
    )


@pytest.fixture()
def items() -> List[KeyItem]:
    return [
        KeyItem(id="a", coordinates=GeoCoordinate(latitude=40.001, longitude=-74.001), heading_degrees=90.0),
        KeyItem(id="b", coordinates=GeoCoordinate(latitude=39.999, longitude=-73.998)),
        KeyItem(id="c"),
    ]
