"""
Pipeline orchestration and execution management.

Handles pipeline execution flow, retry-versus-terminal decisions, the
failed status transition and the exactly-once terminal notification.
Coordinates between VideoProcessor and adapters.
"""

import time
import threading
import logging
from typing import Dict, Any
from datetime import datetime

from .adapters.base import JobQueueAdapter, StatusStoreAdapter, MediaStorageAdapter
from .config import WorkerConfig
from .errors import InvalidTransitionError, LeaseExpiredError, MalformedInputError, is_retryable, describe_error
from .logging_setup import log_exception
from .models import JobHandle, JobType, ProcessingJob, ProcessingResult, VideoRecord, WebhookJob
from .pipeline.detect import FaceDetector
from .processor import VideoProcessor, elapsed_ms
from .status import VideoStatus

logger = logging.getLogger("faceblur_worker")


class PipelineOrchestrator:
    """Manages pipeline execution flow and coordination"""

    def __init__(self, config: WorkerConfig, status_store: StatusStoreAdapter,
                 media_storage: MediaStorageAdapter, detector: FaceDetector,
                 webhook_queue: JobQueueAdapter):
        self.config = config
        self.status_store = status_store
        self.webhook_queue = webhook_queue
        self.processor = VideoProcessor(config, status_store, media_storage, detector)
        self._stats_lock = threading.Lock()
        self.reset_stats()

    def handle_processing_job(self, handle: JobHandle) -> ProcessingResult:
        """
        Execute the face redaction pipeline for one leased job.

        Args:
            handle: Claimed process-video job

        Returns:
            ProcessingResult of the completed video

        Raises:
            The pipeline error. Retryable errors on a non-final attempt leave
            the video in processing; anything else marks it failed and
            queues the failure notification before re-raising.
        """
        start_time = time.time()
        job = self._decode(handle)
        logger.info(f"CLAIMED: job {handle.id} for video {job.video_id} "
                    f"(attempt {handle.attempts}/{handle.max_attempts})")

        record = self.status_store.require(job.video_id)
        if record.status.is_terminal:
            logger.warning(f"Video {job.video_id} is already {record.status.value}; skipping pipeline for job {handle.id}")
            self.notify(self._webhook_from_record(record))
            return ProcessingResult(
                video_id=record.id,
                status=record.status,
                stages_completed=[],
                faces_detected=record.faces_detected,
                total_frames=record.total_frames,
                screenshot_url=record.frame_screenshot_url,
                processing_time_ms=record.processing_time_ms or 0,
                error=record.error_message,
            )

        if handle.lease_expired:
            error = LeaseExpiredError("Worker lease expired on final attempt")
            self._record_attempt(time.time() - start_time, failed=True)
            self._handle_failure(handle, job.video_id, error)
            raise error

        try:
            result = self.processor.process_video(handle, job)
        except Exception as e:
            self._record_attempt(time.time() - start_time, failed=True)
            self._handle_failure(handle, job.video_id, e)
            raise

        self._record_attempt(time.time() - start_time, failed=False)
        self.notify(WebhookJob(
            video_id=job.video_id,
            status=VideoStatus.COMPLETED,
            output_url=result.screenshot_url,
            processing_time_ms=result.processing_time_ms,
        ))
        return result

    def _decode(self, handle: JobHandle) -> ProcessingJob:
        """Decode the payload, failing the video when it cannot be read"""
        try:
            return handle.decode()
        except (KeyError, TypeError, ValueError) as e:
            error = MalformedInputError(f"Invalid job payload: {describe_error(e)}", cause=e)

        video_id = handle.payload.get("video_id") if isinstance(handle.payload, dict) else None
        logger.error(f"REJECTED: job {handle.id} for video {video_id}: {error}")
        if video_id is not None:
            self._handle_failure(handle, str(video_id), error)
        raise error

    def _handle_failure(self, handle: JobHandle, video_id: str, error: Exception) -> None:
        """
        Handle job failure with appropriate retry logic.

        Args:
            handle: Failed job
            video_id: Video the job was processing
            error: Exception raised by the pipeline
        """
        message = describe_error(error)

        if is_retryable(error) and not handle.is_final_attempt:
            logger.warning(f"RETRY: job {handle.id} for video {video_id} failed "
                           f"(attempt {handle.attempts}/{handle.max_attempts}): {message}")
            return

        log_exception(logger, f"FAILED: video {video_id} after {handle.attempts} attempts: {message}")
        processing_time_ms = elapsed_ms(handle)

        try:
            self.status_store.transition(video_id, VideoStatus.FAILED, {
                "error_message": message,
                "processing_time_ms": processing_time_ms,
            })
        except InvalidTransitionError as e:
            logger.warning(f"Not marking video {video_id} failed: {e}")
            return
        except Exception as e:
            log_exception(logger, f"Could not record failure of video {video_id}: {e}")
            return

        with self._stats_lock:
            self.stats['videos_failed'] += 1

        try:
            self.notify(WebhookJob(
                video_id=video_id,
                status=VideoStatus.FAILED,
                processing_time_ms=processing_time_ms,
                error=message,
            ))
        except Exception as e:
            log_exception(logger, f"Could not queue failure notification for video {video_id}: {e}")

    def notify(self, webhook_job: WebhookJob) -> bool:
        """
        Queue the terminal notification unless one was already queued.

        Returns:
            True if a send-webhook job was enqueued
        """
        video_id = webhook_job.video_id
        if self.status_store.require(video_id).notified_at is not None:
            logger.info(f"Video {video_id} already notified; skipping webhook")
            return False

        self.webhook_queue.enqueue(JobType.SEND_WEBHOOK, webhook_job.to_dict())
        logger.info(f"NOTIFY: queued {webhook_job.status.value} webhook for video {video_id}")

        # The marker follows the enqueue, so a crash in between duplicates the webhook rather than losing it
        try:
            self.status_store.mark_notified(video_id)
        except Exception as e:
            log_exception(logger, f"Could not record notification of video {video_id}: {e}")
        return True

    @staticmethod
    def _webhook_from_record(record: VideoRecord) -> WebhookJob:
        return WebhookJob(
            video_id=record.id,
            status=record.status,
            output_url=record.frame_screenshot_url,
            processing_time_ms=record.processing_time_ms or 0,
            error=record.error_message,
        )

    def _record_attempt(self, processing_time: float, failed: bool) -> None:
        with self._stats_lock:
            self.stats['total_processing_time'] += processing_time
            if failed:
                self.stats['attempts_failed'] += 1
            else:
                self.stats['videos_completed'] += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get orchestrator statistics"""
        with self._stats_lock:
            stats = dict(self.stats)
        uptime = (datetime.now() - stats['start_time']).total_seconds()
        attempts = stats['videos_completed'] + stats['attempts_failed']

        return {
            'videos_completed': stats['videos_completed'],
            'videos_failed': stats['videos_failed'],
            'attempts_failed': stats['attempts_failed'],
            'total_processing_time': stats['total_processing_time'],
            'average_processing_time': stats['total_processing_time'] / attempts if attempts > 0 else 0,
            'uptime_seconds': uptime,
            'success_rate': stats['videos_completed'] / attempts if attempts > 0 else 0
        }

    def reset_stats(self) -> None:
        """Reset orchestrator statistics"""
        with self._stats_lock:
            self.stats = {
                'videos_completed': 0,
                'videos_failed': 0,
                'attempts_failed': 0,
                'total_processing_time': 0.0,
                'start_time': datetime.now()
            }
        logger.debug("Orchestrator statistics reset")
