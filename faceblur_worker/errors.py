"""
Error taxonomy for the face redaction worker.

Every failure the pipeline or the webhook subsystem can raise maps to one
of these classes. The queue consumer asks `is_retryable()` whether a job
should be rescheduled with backoff or moved straight to the dead-letter
state.
"""

from typing import Optional

import httpx
import psycopg
from botocore.exceptions import (
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)


class WorkerError(Exception):
    """Base class for all worker errors"""

    retryable = False

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(message)


class TransientError(WorkerError):
    """Infrastructure hiccup (network fetch, storage timeout). Retried by the queue."""

    retryable = True


class QueueUnavailableError(TransientError):
    """Queue backend unreachable. Consumers back off and retry."""


class DeliveryError(TransientError):
    """Webhook delivery failed (non-2xx response or connection failure)."""

    def __init__(self, message: str, status_code: Optional[int] = None, cause: Optional[Exception] = None):
        self.status_code = status_code
        super().__init__(message, cause=cause)


class MalformedInputError(WorkerError):
    """Unreadable media or a zero-duration video. Never retried."""


class DetectionError(WorkerError):
    """Face detection model failure or a corrupt frame."""


class RedactionError(WorkerError):
    """Redaction could not be applied to the frame."""


class PipelineTimeoutError(WorkerError):
    """Job exceeded its overall wall-clock deadline."""


class LeaseExpiredError(WorkerError):
    """A consumer lost its lease on the final attempt without finishing the job."""


class InvalidTransitionError(WorkerError):
    """Status change not allowed by the video state machine."""

    def __init__(self, video_id: str, current: Optional[str], target: str):
        self.video_id = video_id
        self.current = current
        self.target = target
        super().__init__(f"Video {video_id}: cannot move from {current} to {target}")


class VideoNotFoundError(WorkerError):
    """No video record exists for the given id."""

    def __init__(self, video_id: str):
        self.video_id = video_id
        super().__init__(f"Video {video_id} not found")


_TRANSIENT_LIBRARY_ERRORS = (
    psycopg.OperationalError,
    httpx.TransportError,
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionError,
    TimeoutError,
)


def is_retryable(error: BaseException) -> bool:
    """Decide whether a failed job should be rescheduled"""
    if isinstance(error, WorkerError):
        return error.retryable
    return isinstance(error, _TRANSIENT_LIBRARY_ERRORS)


def describe_error(error: BaseException) -> str:
    """Human-readable message stored on the video record"""
    message = str(error).strip()
    return message or error.__class__.__name__
