"""
FastAPI application for the floorplan georeferencing service.
Projects photo coordinates onto floorplans, runs alignment sessions and
flattens floorplans with their markers into PNG captures for reports.
"""
from fastapi import FastAPI, HTTPException, BackgroundTasks, Header, Depends
from pydantic import BaseModel, Field
import logging
from PIL import Image
from typing import List, Dict, Optional
from datetime import datetime, timezone
import uvicorn
import uuid
import threading
from enum import Enum

import config
from alignment import AlignmentError, AlignmentMode, AlignmentSession, start_alignment
from capture import CaptureBatch, CaptureRequest, FloorplanCapture, collect_export, plan_export_captures
from config import CaptureSettings
from geo import FloorplanReferenceFrame, GeoCoordinate, KeyItem, Marker
from numbering import assign_global_numbers, sort_floor_ids
from photokey import PhotoKey
from projection import is_displayable, project, project_to_pixels

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Large floor plans are allowed, up to a configured bound
Image.MAX_IMAGE_PIXELS = config.MAX_IMAGE_PIXELS

SERVICE_NAME = "Floorplan Georeferencing Service"
SERVICE_VERSION = "1.0.0"


def verify_api_key(x_api_key: str = Header(None)):
    """Verify the API key from request header"""
    if not config.API_KEY:
        # If no API key is configured, allow all requests
        return True

    if x_api_key is None:
        raise HTTPException(
            status_code=401,
            detail="API key is required. Please provide X-API-Key header."
        )

    if x_api_key != config.API_KEY:
        raise HTTPException(
            status_code=403,
            detail="Invalid API key"
        )

    return True


# Job status tracking
class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# In-memory stores (for simple implementation)
jobs_store = {}
export_batches: Dict[str, CaptureBatch] = {}
jobs_lock = threading.Lock()

sessions_store: Dict[str, AlignmentSession] = {}
sessions_lock = threading.Lock()

# Capture knobs used by /api/flatten and export jobs
capture_settings = CaptureSettings()

# Initialize FastAPI app
app = FastAPI(
    title=SERVICE_NAME,
    description="Floorplan georeferencing, alignment and marker overlay capture",
    version=SERVICE_VERSION
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# Request models
class ProjectRequest(BaseModel):
    frame: FloorplanReferenceFrame
    points: List[GeoCoordinate]
    width: Optional[float] = Field(default=None, gt=0)
    height: Optional[float] = Field(default=None, gt=0)


class NumberingRequest(BaseModel):
    floors: Dict[str, List[KeyItem]]
    unassigned_first: bool = False


class StartAlignmentRequest(BaseModel):
    items: List[KeyItem]
    frame: Optional[FloorplanReferenceFrame] = None
    mode: AlignmentMode = AlignmentMode.STEPPED
    numbers: Optional[Dict[str, int]] = None


class StepRequest(BaseModel):
    action: str


class RegionRequest(BaseModel):
    center_lat: float
    center_lng: float
    lat_span: float
    lng_span: float


class FlattenRequest(BaseModel):
    frame: FloorplanReferenceFrame
    markers: List[Marker]
    max_size: int = Field(default=config.FLOOR_CANVAS_SIZE, gt=0)
    marker_size: int = Field(default=config.FLOOR_MARKER_SIZE, gt=0)


class ExportRequest(BaseModel):
    photo_key: PhotoKey


@app.get("/")
async def root():
    """Health check endpoint"""
    return {
        "service": SERVICE_NAME,
        "status": "running",
        "version": SERVICE_VERSION,
        "endpoints": ["/api/project", "/api/numbering", "/api/alignment/sessions", "/api/flatten", "/api/export"]
    }


@app.get("/health")
async def health():
    """Kubernetes/Container Apps health probe"""
    return {"status": "healthy"}


# ==========================================
# GEOREFERENCING
# ==========================================

@app.post("/api/project")
async def project_points(request: ProjectRequest, api_key_valid: bool = Depends(verify_api_key)):
    """
    Project coordinates through a floorplan reference frame.

    Returns one entry per point, in request order. An invalid frame yields
    position None for every point.
    """
    results = []
    for point in request.points:
        position = project(request.frame, point)
        entry = {
            "position": position._asdict() if position else None,
            "displayable": is_displayable(position),
        }
        if request.width and request.height:
            pixel = project_to_pixels(request.frame, point, request.width, request.height)
            entry["pixel"] = pixel._asdict() if pixel else None
        results.append(entry)

    if not request.frame.is_valid:
        logger.info(f"Projection requested through invalid frame (scale={request.frame.scale})")

    return {"valid_frame": request.frame.is_valid, "positions": results}


@app.post("/api/numbering")
async def number_markers(request: NumberingRequest, api_key_valid: bool = Depends(verify_api_key)):
    """Global 1-based marker numbers across all floors."""
    order = sort_floor_ids(request.floors.keys(), unassigned_first=request.unassigned_first)
    numbers = assign_global_numbers(request.floors, order)
    return {"floor_order": order, "numbers": numbers}


# ==========================================
# ALIGNMENT SESSIONS
# ==========================================

def _get_session(session_id: str) -> AlignmentSession:
    with sessions_lock:
        session = sessions_store.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Alignment session not found")
    return session


def _session_payload(session_id: str, session: AlignmentSession) -> dict:
    return {"session_id": session_id, **session.preview()}


@app.post("/api/alignment/sessions")
async def create_alignment_session(request: StartAlignmentRequest, api_key_valid: bool = Depends(verify_api_key)):
    """
    Start a stepped (Mode A) or pan/zoom (Mode B) alignment session.

    A floor without geotagged photos still gets a session, in the
    cannot_align state with an explanatory message.
    """
    try:
        session = start_alignment(request.items, request.frame, request.mode, request.numbers)
    except KeyError as e:
        raise HTTPException(status_code=422, detail=f"Missing marker number for item {e}")

    session_id = str(uuid.uuid4())
    with sessions_lock:
        sessions_store[session_id] = session

    logger.info(f"Alignment session {session_id} created ({session.mode.value}, {session.state.value})")
    return _session_payload(session_id, session)


@app.get("/api/alignment/sessions/{session_id}")
async def get_alignment_session(session_id: str, api_key_valid: bool = Depends(verify_api_key)):
    """Current adjustment state and preview of a session"""
    session = _get_session(session_id)
    return _session_payload(session_id, session)


@app.post("/api/alignment/sessions/{session_id}/step")
async def step_alignment_session(session_id: str, request: StepRequest, api_key_valid: bool = Depends(verify_api_key)):
    """Apply one Mode A adjustment step"""
    session = _get_session(session_id)
    try:
        session.apply(request.action)
    except AlignmentError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _session_payload(session_id, session)


@app.post("/api/alignment/sessions/{session_id}/region")
async def update_alignment_region(session_id: str, request: RegionRequest, api_key_valid: bool = Depends(verify_api_key)):
    """Record the visible map extent of a Mode B session"""
    session = _get_session(session_id)
    try:
        session.update_region(request.center_lat, request.center_lng, request.lat_span, request.lng_span)
    except AlignmentError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _session_payload(session_id, session)


@app.post("/api/alignment/sessions/{session_id}/commit")
async def commit_alignment_session(session_id: str, api_key_valid: bool = Depends(verify_api_key)):
    """
    Commit a session.

    Returns the new reference frame, or success False with a message when
    the floor cannot be aligned.
    """
    session = _get_session(session_id)
    try:
        result = session.commit()
    except AlignmentError as e:
        raise HTTPException(status_code=409, detail=str(e))

    # a committed (or unalignable) session is finished
    with sessions_lock:
        sessions_store.pop(session_id, None)

    return {
        "session_id": session_id,
        "success": result.success,
        "frame": result.frame.model_dump() if result.frame else None,
        "message": result.message
    }


@app.delete("/api/alignment/sessions/{session_id}")
async def cancel_alignment_session(session_id: str, api_key_valid: bool = Depends(verify_api_key)):
    """Cancel a session; the original frame is left untouched"""
    session = _get_session(session_id)
    try:
        session.cancel()
    except AlignmentError as e:
        raise HTTPException(status_code=409, detail=str(e))

    with sessions_lock:
        sessions_store.pop(session_id, None)

    logger.info(f"Alignment session {session_id} cancelled")
    return {"session_id": session_id, "state": session.state.value}


# ==========================================
# FLATTENING / EXPORT
# ==========================================

@app.post("/api/flatten")
async def flatten_floorplan(request: FlattenRequest, api_key_valid: bool = Depends(verify_api_key)):
    """
    Flatten one floorplan with its markers into a PNG.

    Capture failures (timeouts, undecodable images, empty output) come back
    as success False rather than an HTTP error.
    """
    capture_request = CaptureRequest(
        unit_id="flatten",
        frame=request.frame,
        markers=tuple(request.markers),
        max_size=request.max_size,
        marker_size=request.marker_size,
    )
    try:
        result = await FloorplanCapture(capture_request, settings=capture_settings).run()
    except Exception as e:
        logger.error(f"❌ Flatten failed: {str(e)}", exc_info=True)
        return {"success": False, "image": None, "bytes": 0, "error": str(e)}

    payload = result.to_dict()
    payload.pop("unit_id")
    return payload


def update_job_progress(job_id: str, progress: int, message: str):
    """Helper to update job progress"""
    with jobs_lock:
        if job_id in jobs_store:
            jobs_store[job_id]["progress"] = progress
            jobs_store[job_id]["message"] = message
            jobs_store[job_id]["updated_at"] = _now()


async def run_export_job(job_id: str, photo_key: PhotoKey):
    """Background task: flatten every floor overview and photo close-up"""
    requests = plan_export_captures(photo_key)
    total = len(requests)
    completed = 0

    def on_result(result):
        nonlocal completed
        completed += 1
        update_job_progress(job_id, int(completed / total * 100), f"Captured {completed}/{total}")

    batch = CaptureBatch(requests, settings=capture_settings, on_result=on_result)
    with jobs_lock:
        if jobs_store[job_id]["status"] == JobStatus.CANCELLED:
            return
        jobs_store[job_id]["status"] = JobStatus.PROCESSING
        jobs_store[job_id]["updated_at"] = _now()
        export_batches[job_id] = batch

    try:
        logger.info(f"Export job {job_id}: {total} capture unit(s)")
        results = await batch.run()

        if batch.cancelled:
            logger.info(f"Export job {job_id} was cancelled; results discarded")
            return

        export = collect_export(photo_key, requests, results)
        succeeded = sum(1 for r in results.values() if r.success)

        with jobs_lock:
            jobs_store[job_id]["status"] = JobStatus.COMPLETED
            jobs_store[job_id]["progress"] = 100
            jobs_store[job_id]["updated_at"] = _now()
            jobs_store[job_id]["message"] = f"{succeeded}/{total} captures succeeded"
            jobs_store[job_id]["result"] = export.to_dict()

        logger.info(f"✅ Export job {job_id} completed: {succeeded}/{total} captures succeeded")

    except Exception as e:
        logger.error(f"Job {job_id} failed: {str(e)}", exc_info=True)
        with jobs_lock:
            jobs_store[job_id]["status"] = JobStatus.FAILED
            jobs_store[job_id]["updated_at"] = _now()
            jobs_store[job_id]["message"] = str(e)
    finally:
        with jobs_lock:
            export_batches.pop(job_id, None)


@app.post("/api/export")
async def export_photo_key(request: ExportRequest, background_tasks: BackgroundTasks, api_key_valid: bool = Depends(verify_api_key)):
    """
    Queue an export capture job for a photo key (returns immediately).

    Returns:
        JSON response with job_id for tracking progress
    """
    photo_key = request.photo_key
    logger.info(f"Received export request for photo key {photo_key.id} ({len(photo_key.floors)} floor(s))")

    job_id = str(uuid.uuid4())
    now = _now()
    with jobs_lock:
        jobs_store[job_id] = {
            "job_id": job_id,
            "photo_key_id": photo_key.id,
            "status": JobStatus.QUEUED,
            "progress": 0,
            "message": "Job queued for processing",
            "created_at": now,
            "updated_at": now,
            "result": None
        }

    background_tasks.add_task(run_export_job, job_id, photo_key)

    logger.info(f"Job {job_id} queued for processing")

    return {
        "job_id": job_id,
        "status": JobStatus.QUEUED,
        "message": "Job queued for processing",
        "status_url": f"/api/status/{job_id}"
    }


@app.get("/api/status/{job_id}")
async def get_job_status(job_id: str, api_key_valid: bool = Depends(verify_api_key)):
    """Get the status of an export job"""
    with jobs_lock:
        if job_id not in jobs_store:
            raise HTTPException(status_code=404, detail="Job not found")

        job = jobs_store[job_id]
        return {
            "job_id": job_id,
            "status": job["status"],
            "progress": job.get("progress", 0),
            "message": job.get("message", ""),
            "created_at": job["created_at"],
            "updated_at": job["updated_at"],
            "result": job.get("result")
        }


@app.delete("/api/export/{job_id}")
async def cancel_export(job_id: str, api_key_valid: bool = Depends(verify_api_key)):
    """
    Cancel a queued or running export job.
    Captures that finish after cancellation are discarded.
    """
    with jobs_lock:
        job = jobs_store.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        if job["status"] not in (JobStatus.QUEUED, JobStatus.PROCESSING):
            raise HTTPException(status_code=409, detail=f"Job already {job['status'].value}")

        job["status"] = JobStatus.CANCELLED
        job["message"] = "Job cancelled"
        job["updated_at"] = _now()
        batch = export_batches.get(job_id)

    if batch is not None:
        batch.cancel()

    logger.info(f"Export job {job_id} cancelled")
    return {"job_id": job_id, "status": JobStatus.CANCELLED}


if __name__ == "__main__":
    # For local development
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
