"""
HTTP surface tests.
"""
import pytest

import config
from geo import GeoCoordinate, KeyItem, Marker
from photokey import PhotoKey


def dump(models):
    return [m.model_dump() for m in models]


def test_root_and_health(client):
    assert client.get("/").json()["status"] == "running"
    assert client.get("/health").json() == {"status": "healthy"}


def test_api_key_enforced(client, monkeypatch):
    monkeypatch.setattr(config, "API_KEY", "secret")
    body = {"floors": {}}

    assert client.post("/api/numbering", json=body).status_code == 401
    assert client.post("/api/numbering", json=body, headers={"X-API-Key": "wrong"}).status_code == 403
    assert client.post("/api/numbering", json=body, headers={"X-API-Key": "secret"}).status_code == 200


# ==========================================
# PROJECTION / NUMBERING
# ==========================================

def test_project_points(client):
    response = client.post("/api/project", json={
        "frame": {"center": {"latitude": 40.0, "longitude": -74.0}, "scale": 0.01},
        "points": [{"latitude": 40.005, "longitude": -74.0}, {"latitude": 45.0, "longitude": -74.0}],
        "width": 600,
        "height": 400,
    })
    assert response.status_code == 200
    first, second = response.json()["positions"]

    assert first["position"]["x"] == pytest.approx(50.0)
    assert first["position"]["y"] == pytest.approx(0.0)
    assert first["pixel"]["x"] == pytest.approx(300.0)
    assert first["displayable"] is True
    assert second["displayable"] is False


def test_project_through_invalid_frame(client):
    response = client.post("/api/project", json={
        "frame": {"scale": -1},
        "points": [{"latitude": 0.0, "longitude": 0.0}],
    })
    body = response.json()
    assert body["valid_frame"] is False
    assert body["positions"] == [{"position": None, "displayable": False}]


def test_numbering_route(client):
    floors = {
        floor_id: [{"id": f"{floor_id}-{n}"} for n in (1, 2)]
        for floor_id in ("2", "1", "unassigned")
    }
    body = client.post("/api/numbering", json={"floors": floors}).json()

    assert body["floor_order"] == ["1", "2", "unassigned"]
    assert body["numbers"] == {
        "1-1": 1, "1-2": 2, "2-1": 3, "2-2": 4, "unassigned-1": 5, "unassigned-2": 6,
    }


def test_numbering_rejects_bad_payload(client):
    assert client.post("/api/numbering", json={"floors": {"1": [{"name": "no id"}]}}).status_code == 422


# ==========================================
# ALIGNMENT SESSIONS
# ==========================================

def test_stepped_session_roundtrip(client, items, frame):
    created = client.post("/api/alignment/sessions", json={
        "items": dump(items), "frame": frame.model_dump(), "mode": "stepped",
    }).json()
    session_id = created["session_id"]
    assert created["state"] == "editing"
    assert created["overlay"]["bearing_degrees"] == 0.0

    for action in ("move_up", "rotate_clockwise", "move_down", "rotate_counter_clockwise"):
        assert client.post(f"/api/alignment/sessions/{session_id}/step", json={"action": action}).status_code == 200

    committed = client.post(f"/api/alignment/sessions/{session_id}/commit").json()
    assert committed["success"] is True
    assert committed["frame"] == frame.model_dump()

    assert client.get(f"/api/alignment/sessions/{session_id}").status_code == 404
    again = client.post(f"/api/alignment/sessions/{session_id}/step", json={"action": "move_up"})
    assert again.status_code == 404


def test_pan_zoom_session(client, items, frame):
    session_id = client.post("/api/alignment/sessions", json={
        "items": dump(items), "frame": frame.model_dump(), "mode": "pan_zoom",
    }).json()["session_id"]

    region = {"center_lat": 40.002, "center_lng": -74.001, "lat_span": 0.004, "lng_span": 0.005}
    preview = client.post(f"/api/alignment/sessions/{session_id}/region", json=region).json()
    assert preview["adjustment"]["lat_span"] == pytest.approx(0.004)

    frame_out = client.post(f"/api/alignment/sessions/{session_id}/commit").json()["frame"]
    assert frame_out["scale"] == pytest.approx(0.004)
    assert frame_out["secondary_span"] == pytest.approx(0.005)


def test_session_rejects_wrong_inputs(client, items, frame):
    session_id = client.post("/api/alignment/sessions", json={
        "items": dump(items), "frame": frame.model_dump(),
    }).json()["session_id"]

    bad_action = client.post(f"/api/alignment/sessions/{session_id}/step", json={"action": "jump"})
    assert bad_action.status_code == 422

    region = {"center_lat": 40.0, "center_lng": -74.0, "lat_span": 0.01, "lng_span": 0.01}
    assert client.post(f"/api/alignment/sessions/{session_id}/region", json=region).status_code == 409


def test_session_without_gps(client, frame):
    created = client.post("/api/alignment/sessions", json={
        "items": [{"id": "x"}], "frame": frame.model_dump(),
    }).json()
    assert created["state"] == "cannot_align"

    committed = client.post(f"/api/alignment/sessions/{created['session_id']}/commit").json()
    assert committed["success"] is False
    assert committed["frame"] is None
    assert committed["message"] == "No photos with GPS data on this floor"
    assert client.get(f"/api/alignment/sessions/{created['session_id']}").status_code == 404


def test_cancel_session(client, items, frame):
    session_id = client.post("/api/alignment/sessions", json={
        "items": dump(items), "frame": frame.model_dump(),
    }).json()["session_id"]

    response = client.delete(f"/api/alignment/sessions/{session_id}")
    assert response.json()["state"] == "cancelled"
    assert client.get(f"/api/alignment/sessions/{session_id}").status_code == 404


def test_unknown_session(client):
    assert client.get("/api/alignment/sessions/nope").status_code == 404
    assert client.post("/api/alignment/sessions/nope/commit").status_code == 404


# ==========================================
# FLATTEN / EXPORT
# ==========================================

def test_flatten(client, frame):
    marker = Marker(item_id="a", number=1, heading_degrees=45.0,
                    coordinate=GeoCoordinate(latitude=40.001, longitude=-74.001))
    body = client.post("/api/flatten", json={
        "frame": frame.model_dump(), "markers": [marker.model_dump()],
    }).json()

    assert body["success"] is True
    assert body["image"].startswith("data:image/png;base64,")
    assert body["bytes"] > 1000


def test_flatten_unreadable_floorplan(client, frame):
    broken = frame.model_copy(update={"image_ref": "data:image/png;base64,bm90IGFuIGltYWdl"})
    body = client.post("/api/flatten", json={"frame": broken.model_dump(), "markers": []}).json()
    assert body["success"] is False
    assert body["error"]


@pytest.fixture()
def plan_dirs(tmp_path, floorplan_image, monkeypatch):
    root = tmp_path / "plans"
    outside = tmp_path / "outside"
    root.mkdir()
    outside.mkdir()
    floorplan_image.save(root / "plan.png")
    floorplan_image.save(outside / "private.png")
    monkeypatch.setattr(config, "FLOORPLAN_ROOT", str(root))
    return root, outside


def test_flatten_rejects_path_outside_floorplan_root(client, frame, plan_dirs):
    _, outside = plan_dirs
    for ref in (str(outside / "private.png"), "../outside/private.png"):
        leaked = frame.model_copy(update={"image_ref": ref})
        body = client.post("/api/flatten", json={"frame": leaked.model_dump(), "markers": []}).json()
        assert body["success"] is False
        assert body["image"] is None
        assert "outside FLOORPLAN_ROOT" in body["error"]


def test_flatten_reads_path_inside_floorplan_root(client, frame, plan_dirs):
    local = frame.model_copy(update={"image_ref": "plan.png"})
    body = client.post("/api/flatten", json={"frame": local.model_dump(), "markers": []}).json()
    assert body["success"] is True


def test_export_job(client, items, frame):
    key = PhotoKey(name="Site visit")
    for item in items:
        key.add_item("1", item)
    key.attach_floorplan("1", frame.image_ref)
    key.commit_frame("1", frame)
    key.add_item("unassigned", KeyItem(id="loose"))

    queued = client.post("/api/export", json={"photo_key": key.model_dump()}).json()
    assert queued["status"] == "queued"

    status = client.get(queued["status_url"]).json()
    assert status["status"] == "completed"
    assert status["progress"] == 100
    result = status["result"]
    assert result["floors"]["1"]["success"] is True
    assert set(result["items"]) == {"a", "b"}
    assert result["numbers"] == {"a": 1, "b": 2, "c": 3, "loose": 4}

    assert client.delete(f"/api/export/{queued['job_id']}").status_code == 409


def test_unknown_job(client):
    assert client.get("/api/status/missing").status_code == 404
    assert client.delete("/api/export/missing").status_code == 404
