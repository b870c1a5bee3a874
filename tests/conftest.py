import os
from typing import List

import cv2
import numpy as np
import pytest

from faceblur_worker.adapters.local_adapter import LocalMediaStorageAdapter
from faceblur_worker.adapters.memory_adapter import InMemoryJobQueueAdapter, InMemoryStatusStore
from faceblur_worker.config import WorkerConfig
from faceblur_worker.models import BoundingBox, DetectedFace, VideoProbe
from faceblur_worker.pipeline.detect import FaceDetector


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StaticDetector(FaceDetector):
    """Returns the same faces for every frame"""

    def __init__(self, faces: List[DetectedFace] = None, error: Exception = None):
        self.faces = faces or []
        self.error = error
        self.calls = 0

    def detect(self, image):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.faces)


def make_face(x=100, y=80, width=120, height=150, confidence=0.93, landmarks=True) -> DetectedFace:
    points = {}
    if landmarks:
        points = {
            "right_eye": (x + 35.0, y + 55.0),
            "left_eye": (x + 85.0, y + 55.0),
            "nose_tip": (x + 60.0, y + 85.0),
            "mouth_right": (x + 40.0, y + 115.0),
            "mouth_left": (x + 80.0, y + 115.0),
        }
    return DetectedFace(BoundingBox(x, y, width, height), confidence, points)


def noisy_image(width=640, height=360, seed=7) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    config = WorkerConfig(
        QUEUE_BACKEND="memory",
        QUEUE_CONFIG={},
        STATUS_STORE_TYPE="memory",
        STATUS_STORE_CONFIG={},
        MEDIA_STORAGE_TYPE="local",
        MEDIA_STORAGE_CONFIG={"root_dir": str(tmp_path / "media")},
        TEMP_DIR=str(tmp_path / "tmp"),
        LOG_DIR=None,
        WEBHOOK_SECRET="test-secret",
        POLL_INTERVAL_MS=10,
        MAX_BACKOFF_MS=20,
    )
    return config


@pytest.fixture
def processing_queue(config, clock):
    return InMemoryJobQueueAdapter(config.processing_policy(), clock=clock)


@pytest.fixture
def webhook_queue(config, clock):
    return InMemoryJobQueueAdapter(config.webhook_policy(), clock=clock)


@pytest.fixture
def status_store():
    return InMemoryStatusStore()


@pytest.fixture
def media_storage(tmp_path):
    storage = LocalMediaStorageAdapter(str(tmp_path / "media"))
    storage.connect()
    yield storage
    storage.close()


@pytest.fixture
def input_video(media_storage):
    """A stand-in input file; probing and frame extraction are patched"""
    path = os.path.join(media_storage.root_dir, "uploads", "clip.mp4")
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(b"\x00\x00\x00\x18ftypmp42fake-video-bytes")
    return path


@pytest.fixture
def fake_media(monkeypatch):
    """Patch ffprobe/ffmpeg usage in the processor with deterministic stand-ins"""
    calls = {"extract": []}
    probe = VideoProbe(duration_sec=10.0, fps=30.0, width=1280, height=720, total_frames=300)

    def fake_probe(path, timeout=None):
        return calls.get("probe", probe)

    def fake_extract(input_path, output_path, timestamp_sec, width=1280, height=720, timeout=None):
        calls["extract"].append(timestamp_sec)
        cv2.imwrite(output_path, noisy_image(width, height))
        return output_path

    monkeypatch.setattr("faceblur_worker.processor.probe_video", fake_probe)
    monkeypatch.setattr("faceblur_worker.processor.extract_frame", fake_extract)
    return calls
