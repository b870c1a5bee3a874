"""
Domain models for the face redaction worker.

Defines the core data structures used throughout the system,
providing type safety and clear interfaces between components.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from .status import VideoStatus


DEFAULT_INTENSITY = 25


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RedactionMode(str, Enum):
    BLUR = "blur"
    BLACK_BAR = "black-bar"

    @classmethod
    def parse(cls, value: Union[str, "RedactionMode", None]) -> "RedactionMode":
        """Accept the canonical names plus the spellings older clients send"""
        if value is None:
            return cls.BLUR
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("_", "-")
        if normalized == "blackbar":
            normalized = cls.BLACK_BAR.value
        return cls(normalized)


class JobType(str, Enum):
    PROCESS_VIDEO = "process-video"
    SEND_WEBHOOK = "send-webhook"


@dataclass
class VideoRecord:
    """Represents one video's lifecycle record"""
    id: str
    filename: str
    input_url: str
    status: VideoStatus = VideoStatus.UPLOADED
    user_id: Optional[str] = None
    output_url: Optional[str] = None
    upload_progress: int = 0
    processing_progress: int = 0
    total_frames: int = 0
    faces_detected: int = 0
    frame_screenshot_url: Optional[str] = None
    frame_screenshot_public_id: Optional[str] = None
    blur_intensity: int = DEFAULT_INTENSITY
    processing_mode: RedactionMode = RedactionMode.BLUR
    error_message: Optional[str] = None
    processing_time_ms: Optional[int] = None
    notified_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "VideoRecord":
        data = {name: row[name] for name in VIDEO_COLUMNS if name in row}
        data["status"] = VideoStatus(data.get("status") or VideoStatus.UPLOADED.value)
        data["processing_mode"] = RedactionMode.parse(data.get("processing_mode"))
        if data.get("user_id") is not None:
            data["user_id"] = str(data["user_id"])
        data["id"] = str(data["id"])
        return cls(**data)


VIDEO_COLUMNS: Tuple[str, ...] = (
    "id", "filename", "input_url", "status", "user_id", "output_url",
    "upload_progress", "processing_progress", "total_frames", "faces_detected",
    "frame_screenshot_url", "frame_screenshot_public_id", "blur_intensity",
    "processing_mode", "error_message", "processing_time_ms", "notified_at",
    "created_at", "updated_at", "processed_at",
)

# Columns update_fields() may touch. Status goes through transition().
UPDATABLE_COLUMNS: Tuple[str, ...] = (
    "filename", "input_url", "output_url", "upload_progress", "processing_progress",
    "total_frames", "faces_detected", "frame_screenshot_url", "frame_screenshot_public_id",
    "blur_intensity", "processing_mode", "error_message", "processing_time_ms",
    "processed_at",
)


@dataclass
class BoundingBox:
    x: float
    y: float
    width: float
    height: float


@dataclass
class DetectedFace:
    """A face returned by the detector, in pixels of the analysed frame"""
    box: BoundingBox
    confidence: float
    landmarks: Dict[str, Tuple[float, float]] = field(default_factory=dict)

    def to_record(self, video_id: str, face_index: int) -> "FaceRecord":
        return FaceRecord(
            video_id=video_id,
            face_index=face_index,
            x=int(round(self.box.x)),
            y=int(round(self.box.y)),
            width=int(round(self.box.width)),
            height=int(round(self.box.height)),
            confidence=round(float(self.confidence), 4),
        )


@dataclass
class FaceRecord:
    """Persisted face detection, identified by (video_id, face_index)"""
    video_id: str
    face_index: int
    x: int
    y: int
    width: int
    height: int
    confidence: float


@dataclass
class ProcessingOptions:
    frame_index: int = 1
    intensity: int = DEFAULT_INTENSITY
    mode: RedactionMode = RedactionMode.BLUR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frame_index": self.frame_index,
            "intensity": self.intensity,
            "mode": self.mode.value,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ProcessingOptions":
        data = data or {}
        frame_index = data.get("frame_index", data.get("frameNumber"))
        intensity = data.get("intensity", data.get("blurIntensity"))
        mode = data.get("mode", data.get("processingMode"))
        return cls(
            frame_index=int(frame_index) if frame_index else 1,
            intensity=int(intensity) if intensity is not None else DEFAULT_INTENSITY,
            mode=RedactionMode.parse(mode),
        )


@dataclass
class ProcessingJob:
    """Payload of a process-video job"""
    video_id: str
    input_url: str
    options: ProcessingOptions = field(default_factory=ProcessingOptions)

    job_type = JobType.PROCESS_VIDEO

    def to_dict(self) -> Dict[str, Any]:
        return {
            "video_id": self.video_id,
            "input_url": self.input_url,
            "options": self.options.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessingJob":
        return cls(
            video_id=str(data["video_id"]),
            input_url=data["input_url"],
            options=ProcessingOptions.from_dict(data.get("options")),
        )


@dataclass
class WebhookJob:
    """Payload of a send-webhook job"""
    video_id: str
    status: VideoStatus
    output_url: Optional[str] = None
    processing_time_ms: int = 0
    error: Optional[str] = None

    job_type = JobType.SEND_WEBHOOK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "video_id": self.video_id,
            "status": self.status.value,
            "output_url": self.output_url,
            "processing_time_ms": self.processing_time_ms,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WebhookJob":
        status = VideoStatus(data["status"])
        if not status.is_terminal:
            raise ValueError(f"Webhook jobs carry a terminal status, got {status.value}")
        return cls(
            video_id=str(data["video_id"]),
            status=status,
            output_url=data.get("output_url"),
            processing_time_ms=int(data.get("processing_time_ms") or 0),
            error=data.get("error"),
        )


JobPayload = Union[ProcessingJob, WebhookJob]

_PAYLOAD_TYPES = {
    JobType.PROCESS_VIDEO: ProcessingJob,
    JobType.SEND_WEBHOOK: WebhookJob,
}


def decode_job_payload(job_type: Union[str, JobType], payload: Dict[str, Any]) -> JobPayload:
    """Turn a queued payload dict back into its typed job"""
    return _PAYLOAD_TYPES[JobType(job_type)].from_dict(payload)


@dataclass
class JobHandle:
    """A job as seen by a consumer holding its visibility lease"""
    id: str
    queue_name: str
    job_type: JobType
    payload: Dict[str, Any]
    attempts: int
    max_attempts: int
    priority: int = 1
    created_at: Optional[datetime] = None
    receipt: Any = None
    # Redelivered after a consumer lost the lease on the final attempt
    lease_expired: bool = False

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts >= self.max_attempts

    def decode(self) -> JobPayload:
        return decode_job_payload(self.job_type, self.payload)


@dataclass
class NackResult:
    dead_lettered: bool
    delay_sec: Optional[float] = None


@dataclass
class DeadLetter:
    """A job that exhausted its attempts, kept for manual inspection"""
    job_id: str
    queue_name: str
    job_type: str
    payload: Dict[str, Any]
    last_error: Optional[str]
    attempts: int
    failed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "queue_name": self.queue_name,
            "job_type": self.job_type,
            "payload": self.payload,
            "last_error": self.last_error,
            "attempts": self.attempts,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None,
        }


@dataclass
class VideoProbe:
    """Container facts read by ffprobe"""
    duration_sec: float
    fps: float
    width: int
    height: int
    total_frames: int


@dataclass
class PublishedMedia:
    locator: str
    delete_handle: str


@dataclass
class ProcessingResult:
    """Represents the result of video processing"""
    video_id: str
    status: VideoStatus
    stages_completed: List[str]
    faces_detected: int = 0
    total_frames: int = 0
    screenshot_url: Optional[str] = None
    processing_time_ms: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == VideoStatus.COMPLETED
