"""
In-process implementations of the job queue and the status store.

Used by tests and by single-process development runs (QUEUE_BACKEND=memory).
State lives in dictionaries guarded by a lock, so several consumer threads
can share one instance.
"""

import copy
import dataclasses
import itertools
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any, List, Union, Callable

from .base import JobQueueAdapter, StatusStoreAdapter
from ..backoff import QueuePolicy
from ..errors import InvalidTransitionError, VideoNotFoundError
from ..models import (
    DeadLetter,
    FaceRecord,
    JobHandle,
    JobType,
    NackResult,
    RedactionMode,
    VideoRecord,
    utc_now,
)
from ..status import (
    CHECKPOINT_PROGRESS,
    RESETTABLE_STATES,
    VideoStatus,
    allowed_sources,
    coerce_status,
)

logger = logging.getLogger("faceblur_worker")


@dataclass
class _QueuedJob:
    id: str
    job_type: JobType
    payload: Dict[str, Any]
    priority: int
    max_attempts: int
    available_at: float
    seq: int
    created_at: datetime
    state: str = "pending"  # pending, active, dead
    attempts: int = 0
    lease_expires_at: Optional[float] = None
    lease_token: Optional[str] = None
    last_error: Optional[str] = None
    dead_at: Optional[datetime] = None
    lease_expired: bool = False


class InMemoryJobQueueAdapter(JobQueueAdapter):
    """Lease-based queue held in process memory"""

    def __init__(self, policy: QueuePolicy, clock: Callable[[], float] = time.time, **poll_settings):
        super().__init__(policy, **poll_settings)
        self.clock = clock
        self._jobs: Dict[str, _QueuedJob] = {}
        self._lock = threading.Lock()
        self._seq = itertools.count()
        self.completed_count = 0

    def enqueue(self, job_type: Union[str, JobType], payload: Dict[str, Any], delay: float = 0,
                priority: Optional[int] = None, max_attempts: Optional[int] = None) -> JobHandle:
        job_type = JobType(job_type)
        job = _QueuedJob(
            id=str(uuid.uuid4()),
            job_type=job_type,
            payload=copy.deepcopy(payload),
            priority=self._priority(priority),
            max_attempts=self._max_attempts(max_attempts),
            available_at=self.clock() + max(delay, 0),
            seq=next(self._seq),
            created_at=utc_now(),
        )
        with self._lock:
            self._jobs[job.id] = job

        logger.debug(f"Enqueued {job_type.value} job {job.id} on {self.name}")
        return self._handle(job)

    def claim(self, job_type: Union[str, JobType]) -> Optional[JobHandle]:
        job_type = JobType(job_type)
        with self._lock:
            now = self.clock()
            self._expire_leases(now)

            ready = [
                job for job in self._jobs.values()
                if job.job_type == job_type and (
                    (job.state == "pending" and job.available_at <= now)
                    or (job.state == "active" and job.lease_expires_at <= now)
                )
            ]
            if not ready:
                return None

            job = min(ready, key=lambda j: (j.priority, j.available_at, j.seq))
            if job.state == "active" and job.attempts >= job.max_attempts:
                # Handed out once more so the consumer can record the failure
                job.lease_expired = True
                logger.error(f"Job {job.id} on {self.name} lost its lease on the final attempt")
            else:
                job.attempts += 1
            job.state = "active"
            job.lease_expires_at = now + self.policy.lease_seconds
            job.lease_token = str(uuid.uuid4())
            return self._handle(job)

    def ack(self, handle: JobHandle) -> None:
        with self._lock:
            job = self._owned(handle)
            if job is None:
                return
            del self._jobs[job.id]
            self.completed_count += 1

    def nack(self, handle: JobHandle, error: str, retryable: bool = True) -> NackResult:
        with self._lock:
            job = self._owned(handle)
            if job is None:
                return NackResult(dead_lettered=False)

            job.last_error = error
            job.lease_expires_at = None
            job.lease_token = None

            if self._should_retry(handle, retryable):
                delay = self.policy.backoff_for(handle.attempts)
                job.state = "pending"
                job.available_at = self.clock() + delay
                return NackResult(dead_lettered=False, delay_sec=delay)

            job.state = "dead"
            job.dead_at = utc_now()
            return NackResult(dead_lettered=True)

    def dead_letters(self, limit: int = 50) -> List[DeadLetter]:
        with self._lock:
            dead = [job for job in self._jobs.values() if job.state == "dead"]
        dead.sort(key=lambda j: j.dead_at, reverse=True)
        return [
            DeadLetter(
                job_id=job.id,
                queue_name=self.name,
                job_type=job.job_type.value,
                payload=copy.deepcopy(job.payload),
                last_error=job.last_error,
                attempts=job.attempts,
                failed_at=job.dead_at,
            )
            for job in dead[:limit]
        ]

    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for job in self._jobs.values() if job.state == "pending")

    def _expire_leases(self, now: float) -> None:
        for job in self._jobs.values():
            if job.state == "active" and job.lease_expires_at <= now and job.lease_expired:
                job.state = "dead"
                job.last_error = job.last_error or "Lease expired after final attempt"
                job.lease_token = None
                job.dead_at = utc_now()
                logger.error(f"Job {job.id} on {self.name} lost its lease again after the final attempt; dead-lettered")

    def _owned(self, handle: JobHandle) -> Optional[_QueuedJob]:
        job = self._jobs.get(handle.id)
        if job is None or job.state != "active" or job.lease_token != handle.receipt:
            logger.warning(f"Ignoring stale lease for job {handle.id} on {self.name}")
            return None
        return job

    def _handle(self, job: _QueuedJob) -> JobHandle:
        return JobHandle(
            id=job.id,
            queue_name=self.name,
            job_type=job.job_type,
            payload=copy.deepcopy(job.payload),
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            priority=job.priority,
            created_at=job.created_at,
            receipt=job.lease_token,
            lease_expired=job.lease_expired,
        )


class InMemoryStatusStore(StatusStoreAdapter):
    """Video records and face detections held in process memory"""

    def __init__(self):
        self._videos: Dict[str, VideoRecord] = {}
        self._faces: Dict[str, List[FaceRecord]] = {}
        self._webhook_urls: Dict[str, str] = {}
        self._lock = threading.RLock()

    def register_user(self, user_id: str, webhook_url: Optional[str]) -> None:
        with self._lock:
            if webhook_url:
                self._webhook_urls[str(user_id)] = webhook_url
            else:
                self._webhook_urls.pop(str(user_id), None)

    def get(self, video_id: str) -> Optional[VideoRecord]:
        with self._lock:
            record = self._videos.get(str(video_id))
            return dataclasses.replace(record) if record else None

    def create(self, video_id: str, initial_fields: Dict[str, Any]) -> VideoRecord:
        video_id = str(video_id)
        fields = dict(initial_fields)
        fields.pop("status", None)
        if "processing_mode" in fields:
            fields["processing_mode"] = RedactionMode.parse(fields["processing_mode"])
        now = utc_now()
        with self._lock:
            if video_id in self._videos:
                raise ValueError(f"Video {video_id} already exists")
            record = VideoRecord(id=video_id, created_at=now, updated_at=now, **fields)
            self._videos[video_id] = record
            return dataclasses.replace(record)

    def update_fields(self, video_id: str, fields: Dict[str, Any]) -> VideoRecord:
        self._check_columns(fields)
        with self._lock:
            record = self._locked_get(video_id)
            self._apply(record, fields)
            return dataclasses.replace(record)

    def transition(self, video_id: str, target: VideoStatus,
                   fields: Optional[Dict[str, Any]] = None) -> VideoRecord:
        target = coerce_status(target)
        fields = dict(fields or {})
        self._check_columns(fields)
        with self._lock:
            record = self._locked_get(video_id)
            if record.status not in allowed_sources(target):
                raise InvalidTransitionError(record.id, record.status.value, target.value)

            if target in CHECKPOINT_PROGRESS:
                fields["processing_progress"] = CHECKPOINT_PROGRESS[target]
            if target == VideoStatus.COMPLETED:
                fields.setdefault("processed_at", utc_now())

            record.status = target
            self._apply(record, fields)
            return dataclasses.replace(record)

    def reset_for_reprocess(self, video_id: str, fields: Optional[Dict[str, Any]] = None) -> VideoRecord:
        fields = dict(fields or {})
        self._check_columns(fields)
        with self._lock:
            record = self._locked_get(video_id)
            if record.status not in RESETTABLE_STATES:
                raise InvalidTransitionError(record.id, record.status.value, VideoStatus.UPLOADED.value)

            record.status = VideoStatus.UPLOADED
            record.processing_progress = 0
            record.faces_detected = 0
            record.frame_screenshot_url = None
            record.frame_screenshot_public_id = None
            record.error_message = None
            record.processing_time_ms = None
            record.processed_at = None
            record.notified_at = None
            self._apply(record, fields, monotonic_progress=False)
            self._faces.pop(record.id, None)
            return dataclasses.replace(record)

    def replace_faces(self, video_id: str, faces: List[FaceRecord]) -> None:
        with self._lock:
            self._locked_get(video_id)
            ordered = sorted(faces, key=lambda f: f.face_index)
            indexes = [f.face_index for f in ordered]
            if len(set(indexes)) != len(indexes):
                raise ValueError(f"Duplicate face index for video {video_id}")
            self._faces[str(video_id)] = [dataclasses.replace(f) for f in ordered]

    def delete_faces(self, video_id: str) -> int:
        with self._lock:
            return len(self._faces.pop(str(video_id), []))

    def get_faces(self, video_id: str) -> List[FaceRecord]:
        with self._lock:
            return [dataclasses.replace(f) for f in self._faces.get(str(video_id), [])]

    def mark_notified(self, video_id: str) -> bool:
        with self._lock:
            record = self._locked_get(video_id)
            if record.notified_at is not None:
                return False
            record.notified_at = utc_now()
            return True

    def get_webhook_url(self, video_id: str) -> Optional[str]:
        with self._lock:
            record = self._videos.get(str(video_id))
            if record is None or record.user_id is None:
                return None
            return self._webhook_urls.get(record.user_id)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            by_status: Dict[str, int] = {}
            for record in self._videos.values():
                by_status[record.status.value] = by_status.get(record.status.value, 0) + 1
            return {
                "store_type": "memory",
                "total_videos": len(self._videos),
                "videos_by_status": by_status,
                "total_faces": sum(len(faces) for faces in self._faces.values()),
            }

    def _locked_get(self, video_id: str) -> VideoRecord:
        record = self._videos.get(str(video_id))
        if record is None:
            raise VideoNotFoundError(str(video_id))
        return record

    @staticmethod
    def _apply(record: VideoRecord, fields: Dict[str, Any], monotonic_progress: bool = True) -> None:
        for name, value in fields.items():
            if name == "processing_mode":
                value = RedactionMode.parse(value)
            elif name == "processing_progress" and monotonic_progress:
                value = max(record.processing_progress, value)
            setattr(record, name, value)
        record.updated_at = utc_now()
