"""
Abstract base classes for job queues, the video status store and media storage.

Defines the interface that all adapters must implement, enabling
easy swapping between different queue backends (Postgres, SQS, in-memory),
status stores (Postgres, in-memory) and media storage (S3, local disk).
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List, Union

from ..backoff import QueuePolicy
from ..errors import VideoNotFoundError
from ..models import (
    DeadLetter,
    FaceRecord,
    JobHandle,
    JobType,
    NackResult,
    PublishedMedia,
    UPDATABLE_COLUMNS,
    VideoRecord,
)
from ..status import VideoStatus

logger = logging.getLogger("faceblur_worker")


class JobQueueAdapter(ABC):
    """
    Abstract base class for durable job queues.

    One adapter instance serves one named queue with its own retry policy.
    A claimed job is leased to a single consumer; if the lease runs out
    before ack/nack the job becomes claimable again.
    """

    def __init__(self, policy: QueuePolicy, poll_interval_ms: int = 1500,
                 backoff_multiplier: float = 1.5, max_backoff_ms: int = 12000):
        self.policy = policy
        self.poll_interval_ms = poll_interval_ms
        self.backoff_multiplier = backoff_multiplier
        self.max_backoff_ms = max_backoff_ms

    @property
    def name(self) -> str:
        return self.policy.name

    def connect(self) -> None:
        """Open connections. Default is a no-op."""

    def close(self) -> None:
        """Release connections. Default is a no-op."""

    @abstractmethod
    def enqueue(self, job_type: Union[str, JobType], payload: Dict[str, Any], delay: float = 0,
                priority: Optional[int] = None, max_attempts: Optional[int] = None) -> JobHandle:
        """
        Add a job to the queue.

        Args:
            job_type: Type tag used to dispatch the job to its handler
            payload: JSON-serializable job body
            delay: Seconds before the job becomes visible
            priority: Lower numbers are served first
            max_attempts: Overrides the queue policy

        Returns:
            Handle describing the queued job (attempts = 0)
        """
        pass

    @abstractmethod
    def claim(self, job_type: Union[str, JobType]) -> Optional[JobHandle]:
        """
        Atomically claim one visible job and start its lease.

        Returns:
            JobHandle with the attempt counter already incremented, None if nothing is ready
        """
        pass

    @abstractmethod
    def ack(self, handle: JobHandle) -> None:
        """Remove a successfully processed job"""
        pass

    @abstractmethod
    def nack(self, handle: JobHandle, error: str, retryable: bool = True) -> NackResult:
        """
        Report a failed attempt.

        Retryable failures with attempts left are rescheduled after the
        policy's backoff; everything else moves to the dead-letter state.
        """
        pass

    @abstractmethod
    def dead_letters(self, limit: int = 50) -> List[DeadLetter]:
        """Jobs that exhausted their attempts, newest first"""
        pass

    @abstractmethod
    def pending_count(self) -> int:
        """Number of jobs waiting to be claimed"""
        pass

    def dequeue(self, job_type: Union[str, JobType], wait_seconds: Optional[float] = None,
                stop_event: Optional[threading.Event] = None) -> Optional[JobHandle]:
        """
        Block until a job is claimed, the wait elapses or stop_event is set.

        wait_seconds=None waits until a job arrives or the consumer is stopped.
        Idle polling backs off exponentially up to max_backoff_ms.
        """
        deadline = None if wait_seconds is None else time.monotonic() + wait_seconds
        interval_ms = self.poll_interval_ms

        while True:
            handle = self.claim(job_type)
            if handle is not None:
                return handle

            if stop_event is not None and stop_event.is_set():
                return None

            sleep_sec = interval_ms / 1000.0
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                sleep_sec = min(sleep_sec, remaining)

            if stop_event is not None:
                if stop_event.wait(sleep_sec):
                    return None
            else:
                time.sleep(sleep_sec)

            interval_ms = min(interval_ms * self.backoff_multiplier, self.max_backoff_ms)

    def _should_retry(self, handle: JobHandle, retryable: bool) -> bool:
        return retryable and handle.attempts < handle.max_attempts

    def _max_attempts(self, max_attempts: Optional[int]) -> int:
        return max_attempts if max_attempts is not None else self.policy.max_attempts

    def _priority(self, priority: Optional[int]) -> int:
        return priority if priority is not None else self.policy.default_priority


class StatusStoreAdapter(ABC):
    """Abstract base class for the video status store"""

    def connect(self) -> None:
        """Open connections. Default is a no-op."""

    def close(self) -> None:
        """Release connections. Default is a no-op."""

    @abstractmethod
    def get(self, video_id: str) -> Optional[VideoRecord]:
        """
        Get a video record.

        Returns:
            VideoRecord if found, None otherwise
        """
        pass

    @abstractmethod
    def create(self, video_id: str, initial_fields: Dict[str, Any]) -> VideoRecord:
        """
        Create a video record in the uploaded state.

        Args:
            video_id: Opaque unique id
            initial_fields: filename, input_url and any optional columns
        """
        pass

    @abstractmethod
    def update_fields(self, video_id: str, fields: Dict[str, Any]) -> VideoRecord:
        """
        Update non-status columns of one video.

        processing_progress never decreases through this call.
        """
        pass

    @abstractmethod
    def transition(self, video_id: str, target: VideoStatus,
                   fields: Optional[Dict[str, Any]] = None) -> VideoRecord:
        """
        Move a video to `target` with a conditional update.

        Raises:
            InvalidTransitionError: current status is not an allowed source
            VideoNotFoundError: no such video
        """
        pass

    @abstractmethod
    def reset_for_reprocess(self, video_id: str, fields: Optional[Dict[str, Any]] = None) -> VideoRecord:
        """
        Reset a finished video to uploaded with progress 0, clearing
        detection results and deleting its face records.
        """
        pass

    @abstractmethod
    def replace_faces(self, video_id: str, faces: List[FaceRecord]) -> None:
        """Atomically delete the video's face records and insert `faces`"""
        pass

    @abstractmethod
    def delete_faces(self, video_id: str) -> int:
        """Delete all face records of a video, returning how many were removed"""
        pass

    @abstractmethod
    def get_faces(self, video_id: str) -> List[FaceRecord]:
        """Face records of a video ordered by face index"""
        pass

    @abstractmethod
    def mark_notified(self, video_id: str) -> bool:
        """
        Record that the terminal notification was queued.

        Returns:
            True for the first caller since the last reset, False afterwards
        """
        pass

    @abstractmethod
    def get_webhook_url(self, video_id: str) -> Optional[str]:
        """Callback URL of the video's owner, None if not configured"""
        pass

    @abstractmethod
    def get_stats(self) -> Dict[str, Any]:
        """
        Get storage statistics for monitoring.

        Returns:
            Dictionary with statistics
        """
        pass

    def require(self, video_id: str) -> VideoRecord:
        record = self.get(video_id)
        if record is None:
            raise VideoNotFoundError(video_id)
        return record

    @staticmethod
    def _check_columns(fields: Dict[str, Any]) -> None:
        if "status" in fields:
            raise ValueError("status can only change through transition()")
        unknown = set(fields) - set(UPDATABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown video columns: {', '.join(sorted(unknown))}")


class MediaStorageAdapter(ABC):
    """Abstract base class for binary media storage"""

    def connect(self) -> None:
        """Open connections. Default is a no-op."""

    def close(self) -> None:
        """Release connections. Default is a no-op."""

    @abstractmethod
    def fetch(self, locator: str) -> bytes:
        """
        Download media.

        Raises:
            TransientError: network or storage hiccup, worth retrying
            MalformedInputError: the locator cannot ever be served
        """
        pass

    @abstractmethod
    def publish(self, data: bytes, metadata: Dict[str, Any]) -> PublishedMedia:
        """
        Upload media.

        Args:
            data: Encoded bytes
            metadata: `key` (relative object name) and `content_type`

        Returns:
            Public locator plus the handle needed to delete it later
        """
        pass

    @abstractmethod
    def delete(self, delete_handle: str) -> None:
        """Delete previously published media"""
        pass
