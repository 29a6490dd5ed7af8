import asyncio
import logging
import time
from typing import Any, Callable, List, Optional, Protocol, Sequence, Tuple

import cv2
import numpy as np
from pydantic import BaseModel

from ..models.schemas import ClassificationResult, GazeSample, GazeState, Landmark

logger = logging.getLogger(__name__)

# MediaPipe FaceMesh landmark indices.
# 33: left eye outer corner, 468: right iris center (refined mesh only),
# 362: right eye inner corner, 4: nose tip.
LEFT_EYE_INDEX = 33
RIGHT_EYE_INDEX = 468
RIGHT_EYE_FALLBACK_INDEX = 362
NOSE_TIP_INDEX = 4

# Gaze policy thresholds, in coordinates normalized to the frame size.
EYE_LEVEL_THRESHOLD = 0.08
EYE_NOSE_CENTER_THRESHOLD = 0.12
EYE_NOSE_VERTICAL_THRESHOLD = 0.25


class DetectorConfig(BaseModel):
    max_faces: int = 1
    refine_landmarks: bool = True
    min_detection_confidence: float = 0.5
    min_tracking_confidence: float = 0.5


class FaceLandmarkDetector(Protocol):
    def estimate_faces(self, frame: np.ndarray) -> List[Sequence[Any]]: ...

    def dispose(self) -> None: ...


class MediaPipeFaceMeshDetector:
    """Face landmarks from MediaPipe FaceMesh; each landmark has normalized x, y, z."""

    def __init__(self, config: DetectorConfig):
        # mediapipe is only needed once a real detector is built
        import mediapipe as mp

        self.mp_face_mesh = mp.solutions.face_mesh
        self.face_mesh = self.mp_face_mesh.FaceMesh(
            static_image_mode=False,
            max_num_faces=config.max_faces,
            refine_landmarks=config.refine_landmarks,
            min_detection_confidence=config.min_detection_confidence,
            min_tracking_confidence=config.min_tracking_confidence,
        )

    def estimate_faces(self, frame: np.ndarray) -> List[Sequence[Any]]:
        rgb_frame = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        results = self.face_mesh.process(rgb_frame)
        if not results.multi_face_landmarks:
            return []
        return [list(face.landmark) for face in results.multi_face_landmarks]

    def dispose(self) -> None:
        self.face_mesh.close()


def create_detector(config: DetectorConfig) -> FaceLandmarkDetector:
    return MediaPipeFaceMeshDetector(config)


# Process-wide inference capability. Only this module creates or disposes it.
_detector: Optional[FaceLandmarkDetector] = None
_init_task: Optional[asyncio.Future] = None
# Serializes inference across sessions; FaceMesh is not safe to call concurrently.
_inference_lock: Optional[asyncio.Lock] = None


async def _build_detector(factory: Callable[[DetectorConfig], FaceLandmarkDetector], config: DetectorConfig):
    global _detector, _inference_lock
    detector = await asyncio.to_thread(factory, config)
    _inference_lock = asyncio.Lock()
    _detector = detector
    logger.info("Face detection model loaded successfully")
    return detector


def select_landmark_indices(count: int) -> Tuple[int, int, int]:
    """Indices of (left eye, right eye, nose tip) for a keypoint set of the given size."""
    left_eye = LEFT_EYE_INDEX if count > LEFT_EYE_INDEX else 0
    if count > RIGHT_EYE_INDEX:
        right_eye = RIGHT_EYE_INDEX
    elif count > RIGHT_EYE_FALLBACK_INDEX:
        right_eye = RIGHT_EYE_FALLBACK_INDEX
    else:
        right_eye = 1
    nose_tip = NOSE_TIP_INDEX if count > NOSE_TIP_INDEX else 2
    return left_eye, right_eye, nose_tip


def _landmark_at(keypoints: Sequence[Any], index: int) -> Optional[Landmark]:
    if index >= len(keypoints):
        return None
    point = keypoints[index]
    return Landmark(x=point.x, y=point.y, z=getattr(point, "z", 0.0) or 0.0)


def is_looking_forward(left_eye: Landmark, right_eye: Landmark, nose_tip: Landmark) -> bool:
    eye_vertical_diff = abs(left_eye.y - right_eye.y)
    eye_horizontal_center = (left_eye.x + right_eye.x) / 2
    eye_nose_horizontal_diff = abs(eye_horizontal_center - nose_tip.x)
    eye_y = (left_eye.y + right_eye.y) / 2
    return (
        eye_vertical_diff < EYE_LEVEL_THRESHOLD
        and eye_nose_horizontal_diff < EYE_NOSE_CENTER_THRESHOLD
        and abs(eye_y - nose_tip.y) < EYE_NOSE_VERTICAL_THRESHOLD
    )


def classify_landmarks(keypoints: Sequence[Any], timestamp: Optional[float] = None) -> ClassificationResult:
    """
    Classify one face's keypoints as GOOD or AWAY.

    Eyes must be level, centered over the nose, and at a plausible height
    above it. A keypoint set too short to supply all three points counts as
    no face.
    """
    left_idx, right_idx, nose_idx = select_landmark_indices(len(keypoints))
    left_eye = _landmark_at(keypoints, left_idx)
    right_eye = _landmark_at(keypoints, right_idx)
    nose_tip = _landmark_at(keypoints, nose_idx)

    if left_eye is None or right_eye is None or nose_tip is None:
        return ClassificationResult(state=GazeState.NO_FACE)

    sample = GazeSample(
        left_eye=left_eye,
        right_eye=right_eye,
        nose_tip=nose_tip,
        timestamp=timestamp if timestamp is not None else time.time() * 1000,
    )
    state = GazeState.GOOD if is_looking_forward(left_eye, right_eye, nose_tip) else GazeState.AWAY
    return ClassificationResult(state=state, sample=sample)


class GazeClassifier:
    """Turns video frames into gaze states using the shared face landmark detector."""

    def __init__(
        self,
        config: Optional[DetectorConfig] = None,
        detector_factory: Callable[[DetectorConfig], FaceLandmarkDetector] = create_detector,
    ):
        self.config = config or DetectorConfig()
        self.detector_factory = detector_factory

    @property
    def is_initialized(self) -> bool:
        return _detector is not None

    async def initialize(self) -> FaceLandmarkDetector:
        """Create the shared detector once; concurrent callers await the same request."""
        global _init_task
        if _detector is not None:
            return _detector

        if _init_task is None:
            _init_task = asyncio.ensure_future(_build_detector(self.detector_factory, self.config))
        task = _init_task
        try:
            return await asyncio.shield(task)
        except Exception:
            if _init_task is task:
                _init_task = None
            raise

    async def classify(self, frame: np.ndarray) -> ClassificationResult:
        detector = _detector
        lock = _inference_lock
        if detector is None or lock is None:
            logger.error("Classification requested before the face detector was initialized")
            return ClassificationResult(state=GazeState.ERROR)

        try:
            async with lock:
                faces = await asyncio.to_thread(detector.estimate_faces, frame)
        except Exception:
            logger.exception("Error detecting face")
            return ClassificationResult(state=GazeState.ERROR)

        if not faces:
            return ClassificationResult(state=GazeState.NO_FACE)
        return classify_landmarks(faces[0])

    @staticmethod
    def dispose():
        """Release the shared detector. A later initialize() builds a fresh one."""
        global _detector, _init_task, _inference_lock
        detector = _detector
        _detector = None
        _inference_lock = None
        if _init_task is not None and not _init_task.done():
            _init_task.cancel()
        _init_task = None
        if detector is not None:
            try:
                detector.dispose()
            except Exception as e:
                logger.warning("Error disposing face detector: %s", e)
