from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from enum import Enum


class GazeState(str, Enum):
    CHECKING = "checking"
    GOOD = "good"
    AWAY = "away"
    NO_FACE = "no_face"
    ERROR = "error"


# Gaze states that count toward blocking.
VIOLATION_STATES = frozenset({GazeState.AWAY, GazeState.NO_FACE})

GAZE_STATUS_TEXT = {
    GazeState.GOOD: "Maintaining Eye Contact",
    GazeState.AWAY: "Not Looking at Camera",
    GazeState.NO_FACE: "Face Not Detected",
    GazeState.CHECKING: "Checking...",
    GazeState.ERROR: "Detection Error",
}


class SessionStatus(str, Enum):
    MONITORING = "monitoring"
    BLOCKED = "blocked"


class CaptureError(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    DEVICE_NOT_FOUND = "device_not_found"
    DEVICE_BUSY = "device_busy"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class AuditEventType(str, Enum):
    EYE_CONTACT_WARNING = "eye_contact_warning"
    CURSOR_TRACKING = "cursor_tracking"
    USER_BLOCKED = "user_blocked"


class CaptureConstraints(BaseModel):
    width: int = 640
    height: int = 480
    facing_mode: str = "user"
    camera_index: Optional[int] = None
    fps: int = 30
    audio: bool = False


class Landmark(BaseModel):
    x: float
    y: float
    z: float = 0.0


class GazeSample(BaseModel):
    left_eye: Landmark
    right_eye: Landmark
    nose_tip: Landmark
    timestamp: float


class ClassificationResult(BaseModel):
    state: GazeState
    sample: Optional[GazeSample] = None


class ViolationRecord(BaseModel):
    warning_number: int = Field(ge=1)
    triggered_at: float


class CursorSample(BaseModel):
    x: float
    y: float
    timestamp: float


class AuditEvent(BaseModel):
    user_id: str
    event_type: AuditEventType
    event_data: Dict[str, Any] = Field(default_factory=dict)


class OperatorSnapshot(BaseModel):
    gaze_state: GazeState
    status_text: str
    warning_count: int
    max_warnings: int
    session_status: SessionStatus
    is_capture_active: bool
    capture_error: Optional[CaptureError] = None
    recent_cursor_samples: List[CursorSample] = Field(default_factory=list)
    violations: List[ViolationRecord] = Field(default_factory=list)


class StartMonitoringRequest(BaseModel):
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    camera_index: Optional[int] = None


class StopMonitoringRequest(BaseModel):
    session_id: str


class MonitoringResponse(BaseModel):
    status: str
    session_id: str
    message: Optional[str] = None


class PointerMoveRequest(BaseModel):
    x: float
    y: float


class OperatorViewRequest(BaseModel):
    visible: bool
