"""
MicroSense — MediaPipe Face Detector

FaceLandmarker (MediaPipe Tasks API) in a thread pool. The 478-point mesh
is reduced to the 68-point layout the heuristics engines expect, in pixel
coordinates; blendshape scores are passed through as expressions.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, List, Sequence

import numpy as np

from ..core.config import device_cfg
from ..core.errors import ModelLoadError
from ..core.models import BoundingBox, Detection

# -- Optional heavy imports --------------------------------------------------

try:
    import mediapipe as mp
except ImportError:
    mp = None  # type: ignore[assignment]

logger = logging.getLogger("microsense.detector")

# Mesh index for each of the 68 points: jaw (17), brows (10), nose (9),
# eyes (12), mouth (20)
MESH_TO_68: Sequence[int] = (
    127, 234, 93, 132, 58, 172, 136, 150, 176, 152, 400, 379, 365, 397, 288, 361, 454,
    70, 63, 105, 66, 107, 336, 296, 334, 293, 300,
    168, 197, 5, 4, 75, 97, 2, 326, 305,
    33, 160, 158, 133, 153, 144, 362, 385, 387, 263, 373, 380,
    61, 39, 37, 0, 267, 269, 291, 405, 314, 17, 84, 181, 78, 82, 13, 312, 308, 317, 14, 87,
)


def mesh_to_detection(points: np.ndarray, expressions: Any = None) -> Detection:
    """Build a Detection from an (N, 2) pixel-space mesh, N ≥ 455."""
    subset = points[list(MESH_TO_68)]
    x0, y0 = points.min(axis=0)
    x1, y1 = points.max(axis=0)
    return Detection(
        bounding_box=BoundingBox(float(x0), float(y0), float(x1 - x0), float(y1 - y0)),
        landmarks=tuple((float(x), float(y)) for x, y in subset),
        expressions=dict(expressions or {}),
    )


class MediaPipeFaceDetector:
    """
    Single-face landmark detector.

    Usage:
        detector = MediaPipeFaceDetector()
        await detector.load()                 # ModelLoadError on failure
        faces = await detector.detect(rgb)    # [] when no face
    """

    def __init__(self, model_path: Path = device_cfg.face_model, max_workers: int = device_cfg.detector_workers) -> None:
        self._model_path = Path(model_path)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="microsense-cv")
        self._landmarker: Any = None

    @property
    def loaded(self) -> bool:
        return self._landmarker is not None

    async def load(self) -> None:
        if self._landmarker is not None:
            return
        if mp is None:
            raise ModelLoadError("mediapipe is not installed")
        if not self._model_path.exists():
            raise ModelLoadError(f"Face model not found: {self._model_path}")

        loop = asyncio.get_running_loop()
        try:
            self._landmarker = await loop.run_in_executor(self._executor, self._create)
        except Exception as e:
            raise ModelLoadError(f"FaceLandmarker init failed: {e}") from e
        logger.info("FaceLandmarker loaded (Tasks API)")

    def _create(self) -> Any:
        BaseOptions = mp.tasks.BaseOptions
        FaceLandmarker = mp.tasks.vision.FaceLandmarker
        FaceLandmarkerOptions = mp.tasks.vision.FaceLandmarkerOptions
        RunningMode = mp.tasks.vision.RunningMode

        options = FaceLandmarkerOptions(
            base_options=BaseOptions(model_asset_path=str(self._model_path)),
            running_mode=RunningMode.IMAGE,
            num_faces=1,
            min_face_detection_confidence=0.5,
            min_face_presence_confidence=0.5,
            min_tracking_confidence=0.5,
            output_face_blendshapes=True,
            output_facial_transformation_matrixes=False,
        )
        return FaceLandmarker.create_from_options(options)

    async def detect(self, frame: np.ndarray) -> List[Detection]:
        if self._landmarker is None:
            return []
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self._detect_sync, frame)

    def _detect_sync(self, frame_rgb: np.ndarray) -> List[Detection]:
        h, w = frame_rgb.shape[:2]
        image = mp.Image(image_format=mp.ImageFormat.SRGB, data=np.ascontiguousarray(frame_rgb))
        result = self._landmarker.detect(image)

        detections: List[Detection] = []
        for i, face in enumerate(result.face_landmarks or []):
            points = np.array([(lm.x * w, lm.y * h) for lm in face], dtype=np.float64)
            blendshapes = {}
            if result.face_blendshapes and i < len(result.face_blendshapes):
                blendshapes = {b.category_name: float(b.score) for b in result.face_blendshapes[i]}
            detections.append(mesh_to_detection(points, blendshapes))
        return detections

    def close(self) -> None:
        if self._landmarker is not None:
            self._landmarker.close()
            self._landmarker = None
        self._executor.shutdown(wait=False)
