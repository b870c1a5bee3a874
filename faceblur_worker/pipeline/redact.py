import math
import logging
from typing import List, Optional, Tuple, Union

import cv2
import numpy as np

from ..errors import DetectionError, RedactionError
from ..models import BoundingBox, DetectedFace, RedactionMode

logger = logging.getLogger("faceblur_worker")

BAR_PADDING = 15
MIN_BAR_HEIGHT = 30

Region = Tuple[int, int, int, int]


def load_image(path: str) -> np.ndarray:
    image = cv2.imread(path, cv2.IMREAD_COLOR)
    if image is None:
        raise DetectionError(f"Frame {path} could not be decoded")
    return image


def encode_jpeg(image: np.ndarray, quality: int = 90) -> bytes:
    ok, buffer = cv2.imencode('.jpg', image, [cv2.IMWRITE_JPEG_QUALITY, quality])
    if not ok:
        raise RedactionError("JPEG encoding failed")
    return buffer.tobytes()


def clip_region(x0: float, y0: float, x1: float, y1: float, width: int, height: int) -> Optional[Region]:
    """Integer pixel region inside the image, None when nothing is left"""
    left = max(int(math.floor(x0)), 0)
    top = max(int(math.floor(y0)), 0)
    right = min(int(math.ceil(x1)), width)
    bottom = min(int(math.ceil(y1)), height)
    if right <= left or bottom <= top:
        return None
    return left, top, right, bottom


def box_region(box: BoundingBox, width: int, height: int) -> Optional[Region]:
    return clip_region(box.x, box.y, box.x + box.width, box.y + box.height, width, height)


def bar_region(face: DetectedFace, width: int, height: int) -> Optional[Region]:
    """
    Eye band covered by a black bar.

    Spans the eye and nose landmarks plus BAR_PADDING on every side and is
    at least MIN_BAR_HEIGHT tall. Without landmarks the whole box is used.
    """
    points = [point for name, point in face.landmarks.items() if "eye" in name or "nose" in name]
    if not points:
        return box_region(face.box, width, height)

    xs = [p[0] for p in points]
    ys = [p[1] for p in points]
    x0 = min(xs) - BAR_PADDING
    y0 = min(ys) - BAR_PADDING
    bar_width = max(xs) - min(xs) + 2 * BAR_PADDING
    bar_height = max(MIN_BAR_HEIGHT, max(ys) - min(ys) + 2 * BAR_PADDING)
    return clip_region(x0, y0, x0 + bar_width, y0 + bar_height, width, height)


def blur_faces(image: np.ndarray, faces: List[DetectedFace], intensity: int) -> np.ndarray:
    """Gaussian-blur each face box; pixels outside the boxes are untouched"""
    output = image.copy()
    if intensity <= 0:
        return output

    height, width = output.shape[:2]
    for face in faces:
        region = box_region(face.box, width, height)
        if region is None:
            continue
        left, top, right, bottom = region
        roi = output[top:bottom, left:right]
        output[top:bottom, left:right] = cv2.GaussianBlur(
            roi, (0, 0), sigmaX=float(intensity), sigmaY=float(intensity),
            borderType=cv2.BORDER_REPLICATE
        )
    return output


def cover_with_black_bars(image: np.ndarray, faces: List[DetectedFace]) -> np.ndarray:
    output = image.copy()
    height, width = output.shape[:2]
    for face in faces:
        region = bar_region(face, width, height)
        if region is None:
            continue
        left, top, right, bottom = region
        output[top:bottom, left:right] = 0
    return output


def redact(image: np.ndarray, faces: List[DetectedFace], mode: Union[str, RedactionMode],
           intensity: int) -> np.ndarray:
    """Apply the requested redaction to a copy of image"""
    if image is None or image.size == 0:
        raise RedactionError("Cannot redact an empty frame")
    try:
        mode = RedactionMode.parse(mode)
    except ValueError as e:
        raise RedactionError(f"Unknown redaction mode: {mode}", cause=e)

    try:
        if mode == RedactionMode.BLACK_BAR:
            return cover_with_black_bars(image, faces)
        return blur_faces(image, faces, intensity)
    except cv2.error as e:
        raise RedactionError(f"Redaction failed: {e}", cause=e)
