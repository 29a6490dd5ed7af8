from fastapi import Depends, FastAPI, WebSocket, WebSocketDisconnect, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import ValidationError
from typing import Callable, Dict
import asyncio
import functools
import logging
import uuid
from datetime import datetime

import cv2

from proctor.config import configure_logging, get_settings
from proctor.models.schemas import (
    MonitoringResponse,
    OperatorSnapshot,
    OperatorViewRequest,
    PointerMoveRequest,
    StartMonitoringRequest,
    StopMonitoringRequest,
)
from proctor.monitoring.capture import CAPTURE_ERROR_MESSAGES, detect_available_cameras
from proctor.monitoring.gaze_classifier import GazeClassifier
from proctor.monitoring.session import ProctoringSession


settings = get_settings()
configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Active proctoring sessions
proctoring_sessions: Dict[str, ProctoringSession] = {}


def get_session_factory() -> Callable[..., ProctoringSession]:
    return ProctoringSession


async def release_session(session: ProctoringSession):
    """Forget a session once it has been terminated and tear it down."""
    if proctoring_sessions.get(session.session_id) is session:
        del proctoring_sessions[session.session_id]
    logger.info("Releasing terminated session %s", session.session_id)
    await session.teardown()


def get_session(session_id: str) -> ProctoringSession:
    session = proctoring_sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Proctoring session not found")
    return session


@app.post("/start-monitoring", response_model=MonitoringResponse)
async def start_monitoring(
    request: StartMonitoringRequest,
    session_factory: Callable[..., ProctoringSession] = Depends(get_session_factory),
):
    """Start proctoring a candidate."""
    session_id = request.session_id or str(uuid.uuid4())

    if session_id in proctoring_sessions:
        return MonitoringResponse(
            status="already_started",
            session_id=session_id,
            message="Monitoring session already started",
        )

    try:
        session = session_factory(
            session_id=session_id,
            user_id=request.user_id,
            camera_index=request.camera_index,
        )
        session.on_terminated(functools.partial(release_session, session))
        # Kept even if the camera fails so the unmonitored state stays visible
        proctoring_sessions[session_id] = session
        started = await session.start()
    except Exception as e:
        logger.exception("Error starting monitoring")
        proctoring_sessions.pop(session_id, None)
        raise HTTPException(status_code=500, detail=f"Failed to start monitoring: {str(e)}")

    if not started:
        error = session.capture.last_error
        return MonitoringResponse(
            status="camera_unavailable",
            session_id=session_id,
            message=CAPTURE_ERROR_MESSAGES[error] if error else "Face detection is not available",
        )

    return MonitoringResponse(
        status="started",
        session_id=session_id,
        message="Monitoring started successfully",
    )


@app.post("/stop-monitoring", response_model=MonitoringResponse)
async def stop_monitoring(request: StopMonitoringRequest):
    """Stop proctoring and release the camera."""
    session = proctoring_sessions.pop(request.session_id, None)
    if session is None:
        return MonitoringResponse(
            status="not_found",
            session_id=request.session_id,
            message="Monitoring session not found",
        )

    try:
        await session.teardown()
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to stop monitoring: {str(e)}")

    return MonitoringResponse(
        status="stopped",
        session_id=request.session_id,
        message="Monitoring stopped successfully",
    )


@app.post("/sessions/{session_id}/camera/start", response_model=MonitoringResponse)
async def start_camera(session_id: str):
    """Retry opening the camera for an existing session."""
    session = get_session(session_id)
    if session.is_blocked:
        raise HTTPException(status_code=409, detail="Session is blocked")

    if not await session.start_capture():
        error = session.capture.last_error
        return MonitoringResponse(
            status="camera_unavailable",
            session_id=session_id,
            message=CAPTURE_ERROR_MESSAGES[error] if error else None,
        )
    return MonitoringResponse(status="camera_started", session_id=session_id)


@app.post("/sessions/{session_id}/camera/stop", response_model=MonitoringResponse)
async def stop_camera(session_id: str):
    session = get_session(session_id)
    await session.stop_capture()
    return MonitoringResponse(status="camera_stopped", session_id=session_id)


@app.post("/sessions/{session_id}/pointer")
async def record_pointer(session_id: str, request: PointerMoveRequest):
    """Record one pointer-move sample."""
    session = get_session(session_id)
    sample = session.handle_pointer_move(request.x, request.y)
    return {"recorded": sample is not None}


@app.put("/sessions/{session_id}/operator-view")
async def set_operator_view(session_id: str, request: OperatorViewRequest):
    session = get_session(session_id)
    session.operator_view_visible = request.visible
    return {"session_id": session_id, "visible": session.operator_view_visible}


@app.get("/sessions/{session_id}/snapshot", response_model=OperatorSnapshot)
async def get_snapshot(session_id: str):
    """Read-only operator view of the session."""
    session = get_session(session_id)
    if not session.operator_view_visible:
        raise HTTPException(status_code=403, detail="Operator view is hidden")
    return session.snapshot()


@app.websocket("/ws/{session_id}")
async def websocket_endpoint(websocket: WebSocket, session_id: str):
    """Pushes warnings to the candidate and receives pointer movement."""
    await websocket.accept()

    session = proctoring_sessions.get(session_id)
    if session is None:
        await websocket.send_json({"type": "error", "message": "Proctoring session not found"})
        await websocket.close()
        return

    session.notifier.add(websocket)
    logger.debug("WebSocket connected for session %s", session_id)

    try:
        await websocket.send_json({
            "type": "connected",
            "session_id": session_id,
            "message": "Connected to proctoring monitor",
        })

        while True:
            try:
                message = await asyncio.wait_for(websocket.receive_json(), timeout=30.0)
            except asyncio.TimeoutError:
                await websocket.send_json({
                    "type": "ping",
                    "timestamp": datetime.now().isoformat(),
                })
                continue

            message_type = message.get("type") if isinstance(message, dict) else None
            if message_type == "pointer_move":
                try:
                    move = PointerMoveRequest.model_validate(message)
                except ValidationError as e:
                    logger.debug("Rejected pointer_move for session %s: %s", session_id, e)
                    await websocket.send_json({"type": "error", "message": "pointer_move requires numeric x and y"})
                    continue
                session.handle_pointer_move(move.x, move.y)
            elif message_type == "ping":
                await websocket.send_json({"type": "pong"})
            else:
                await websocket.send_json({"type": "error", "message": f"Unknown message type: {message_type}"})
    except WebSocketDisconnect:
        logger.debug("WebSocket disconnected for session %s", session_id)
    except Exception as e:
        logger.error("WebSocket error for session %s: %s", session_id, e)
    finally:
        session.notifier.discard(websocket)


async def frame_stream_generator(session: ProctoringSession):
    """Generate multipart JPEG stream for the specified session."""
    boundary = b"--frame"
    while session.session_id in proctoring_sessions and not session.is_blocked:
        if not session.capture.is_active:
            await asyncio.sleep(0.1)
            continue

        frame = session.capture.get_latest_frame()
        if frame is None:
            await asyncio.sleep(0.05)
            continue

        success, buffer = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, 85])
        if not success:
            logger.error("Failed to encode frame for session %s", session.session_id)
            await asyncio.sleep(0.05)
            continue

        yield boundary + b"\r\nContent-Type: image/jpeg\r\n\r\n" + buffer.tobytes() + b"\r\n"
        await asyncio.sleep(settings.frame_interval)


@app.get("/stream/{session_id}")
async def stream_camera(session_id: str):
    """Live camera preview for a session."""
    session = get_session(session_id)
    return StreamingResponse(
        frame_stream_generator(session),
        media_type="multipart/x-mixed-replace; boundary=frame",
    )


@app.get("/cameras")
async def list_cameras():
    """List available camera indices on this machine."""
    availability = await asyncio.to_thread(detect_available_cameras)
    available = [idx for idx, ok in availability.items() if ok]
    return {"available_indices": available, "probed": list(availability.keys())}


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "active_sessions": len(proctoring_sessions),
        "timestamp": datetime.now().isoformat(),
    }


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    for session_id, session in list(proctoring_sessions.items()):
        try:
            await session.teardown()
        except Exception as e:
            logger.warning("Error tearing down session %s: %s", session_id, e)
    proctoring_sessions.clear()
    GazeClassifier.dispose()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
