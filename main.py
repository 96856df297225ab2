"""
FastAPI Backend for the Refraction Screening Application.
Provides endpoints that drive a test session from a browser client:
face tracker frames in, optotype sizes and results out.
"""

from typing import Optional, Dict, Any

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from refraction_engine import __version__
from refraction_engine.config import log_level_from_env
from refraction_engine.logging_setup import configure_logging
from session_service import get_session_service

configure_logging(log_level_from_env())

# Create FastAPI app
app = FastAPI(
    title="Refraction Screening API",
    description="API for camera-based visual acuity and far point refraction screening",
    version=__version__
)

# Add CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class CreateSessionRequest(BaseModel):
    """Optional device metadata and config overrides."""
    device_info: Optional[Dict[str, Any]] = None
    config: Optional[Dict[str, Any]] = None


class StartEyeRequest(BaseModel):
    eye: str


class FaceRequest(BaseModel):
    """Face tracker output for one frame."""
    face_pixel_width: float
    yaw: float = 0.0
    pitch: float = 0.0
    roll: float = 0.0
    confidence: float = Field(1.0, ge=0.0, le=1.0)


class FrameRequest(BaseModel):
    """A frame event; face is null when the tracker lost the face."""
    face: Optional[FaceRequest] = None


class CalibrateRequest(BaseModel):
    manual_distance_cm: Optional[float] = None


class ResponseRequest(BaseModel):
    direction: str


def _call(fn, *args):
    """Run a service call and map its errors to HTTP status codes."""
    try:
        return JSONResponse(content=fn(*args))
    except KeyError as e:
        raise HTTPException(status_code=404, detail=f"Not found: {e.args[0]}")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "Refraction Screening API", "version": __version__}


@app.post("/api/sessions")
def create_session(request: Optional[CreateSessionRequest] = None):
    """Open a new test session."""
    request = request or CreateSessionRequest()
    service = get_session_service()
    return _call(service.create_session, request.device_info, request.config)


@app.get("/api/sessions/{session_id}")
def session_status(session_id: str):
    return _call(get_session_service().status, session_id)


@app.delete("/api/sessions/{session_id}")
def close_session(session_id: str):
    """Close a session and free its records."""
    return _call(get_session_service().close_session, session_id)


@app.post("/api/sessions/{session_id}/eyes")
def start_eye(session_id: str, request: StartEyeRequest):
    """Start (or retest) one eye."""
    return _call(get_session_service().start_eye, session_id, request.eye)


@app.post("/api/sessions/{session_id}/frames")
def process_frame(session_id: str, request: FrameRequest):
    """Feed one face tracker frame; returns distance and optotype size."""
    face = request.face.model_dump() if request.face is not None else None
    return _call(get_session_service().process_frame, session_id, face)


@app.post("/api/sessions/{session_id}/calibrate")
def calibrate(session_id: str, request: Optional[CalibrateRequest] = None):
    manual = request.manual_distance_cm if request else None
    return _call(get_session_service().calibrate, session_id, manual)


@app.get("/api/sessions/{session_id}/optotype")
def next_optotype(session_id: str):
    """Next Landolt C to show."""
    return _call(get_session_service().next_optotype, session_id)


@app.post("/api/sessions/{session_id}/responses")
def submit_response(session_id: str, request: ResponseRequest):
    return _call(get_session_service().submit_response, session_id, request.direction)


@app.post("/api/sessions/{session_id}/far-point")
def record_far_point(session_id: str):
    """Capture the current distance as a far point."""
    return _call(get_session_service().record_far_point, session_id)


@app.post("/api/sessions/{session_id}/finalize")
def finalize(session_id: str):
    return _call(get_session_service().finalize, session_id)


@app.get("/api/records/{session_id}/{record_id}")
def export_record(session_id: str, record_id: str):
    """Full test record."""
    return _call(get_session_service().export_record, session_id, record_id)


@app.get("/api/records/{session_id}/{record_id}/summary")
def record_summary(session_id: str, record_id: str):
    return _call(get_session_service().record_summary, session_id, record_id)


if __name__ == "__main__":
    import uvicorn
    print("\n" + "="*60)
    print("  Refraction Screening API Server")
    print("="*60)
    print("\n  Starting server on http://0.0.0.0:8000")
    print("  API docs: http://localhost:8000/docs")
    print("\n" + "="*60 + "\n")

    uvicorn.run(app, host="0.0.0.0", port=8000)
