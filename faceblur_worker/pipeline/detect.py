"""
Face detection.

The YuNet model is loaded once per process on first use and shared by all
consumer threads. OpenCV detector objects are not safe to call concurrently,
so inference is serialized behind a lock.
"""

import os
import threading
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional

import cv2
import numpy as np

from ..errors import DetectionError
from ..models import BoundingBox, DetectedFace

logger = logging.getLogger("faceblur_worker")

# Landmark order of a YuNet result row after the box: five (x, y) pairs
YUNET_LANDMARKS = ("right_eye", "left_eye", "nose_tip", "mouth_right", "mouth_left")


class FaceDetector(ABC):
    """Finds faces in a BGR image"""

    @abstractmethod
    def detect(self, image: np.ndarray) -> List[DetectedFace]:
        pass


def create_yunet(model_path: str, score_threshold: float, nms_threshold: float, top_k: int) -> Any:
    if not os.path.exists(model_path):
        raise DetectionError(f"YuNet model not found at {model_path}")
    return cv2.FaceDetectorYN.create(
        model=model_path,
        config="",
        input_size=(320, 320),
        score_threshold=score_threshold,
        nms_threshold=nms_threshold,
        top_k=top_k,
    )


class YuNetFaceDetector(FaceDetector):
    """OpenCV YuNet face detector"""

    def __init__(self, model_path: str, score_threshold: float = 0.5, nms_threshold: float = 0.3,
                 top_k: int = 100, model_factory: Optional[Callable[..., Any]] = None):
        self.model_path = model_path
        self.score_threshold = score_threshold
        self.nms_threshold = nms_threshold
        self.top_k = top_k
        self.model_factory = model_factory or create_yunet
        self._model = None
        self._load_lock = threading.Lock()
        self._detect_lock = threading.Lock()

    def _get_model(self):
        if self._model is None:
            with self._load_lock:
                if self._model is None:
                    logger.info(f"[yunet] Loading face detector from {self.model_path}")
                    try:
                        self._model = self.model_factory(
                            self.model_path, self.score_threshold, self.nms_threshold, self.top_k
                        )
                    except cv2.error as e:
                        raise DetectionError(f"Failed to load YuNet model: {e}", cause=e)
                    logger.info("[yunet] Loaded successfully")
        return self._model

    def detect(self, image: np.ndarray) -> List[DetectedFace]:
        if image is None or image.size == 0:
            raise DetectionError("Cannot detect faces in an empty frame")
        if image.ndim == 2:
            image = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)

        model = self._get_model()
        height, width = image.shape[:2]

        with self._detect_lock:
            try:
                model.setInputSize((width, height))
                _, rows = model.detect(image)
            except cv2.error as e:
                raise DetectionError(f"Face detection failed: {e}", cause=e)

        if rows is None:
            return []

        faces = []
        for row in rows:
            confidence = float(row[14])
            if confidence < self.score_threshold:
                continue
            landmarks = {
                name: (float(row[4 + 2 * i]), float(row[5 + 2 * i]))
                for i, name in enumerate(YUNET_LANDMARKS)
            }
            faces.append(DetectedFace(
                box=BoundingBox(float(row[0]), float(row[1]), float(row[2]), float(row[3])),
                confidence=confidence,
                landmarks=landmarks,
            ))

        logger.info(f"[yunet] Detected {len(faces)} faces in {width}x{height} frame")
        return faces
