"""
Job submission for the upload API.

Creates video records, enqueues process-video jobs and resets finished
videos for reprocessing with new options.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from .adapters.base import JobQueueAdapter, StatusStoreAdapter, MediaStorageAdapter
from .models import JobHandle, JobType, ProcessingJob, ProcessingOptions, VideoRecord

logger = logging.getLogger("faceblur_worker")


class VideoJobProducer:
    """Producer side of the processing queue"""

    def __init__(self, status_store: StatusStoreAdapter, processing_queue: JobQueueAdapter,
                 media_storage: Optional[MediaStorageAdapter] = None):
        self.status_store = status_store
        self.processing_queue = processing_queue
        self.media_storage = media_storage

    def enqueue_processing_job(self, video_id: str, input_url: str,
                               options: Optional[ProcessingOptions] = None,
                               delay: float = 0, priority: Optional[int] = None) -> JobHandle:
        """
        Queue a process-video job.

        Raises whatever the queue raises (QueueUnavailableError for an
        unreachable backend); there is no inline processing fallback.
        """
        job = ProcessingJob(video_id=str(video_id), input_url=input_url,
                            options=options or ProcessingOptions())
        handle = self.processing_queue.enqueue(JobType.PROCESS_VIDEO, job.to_dict(),
                                               delay=delay, priority=priority)
        logger.info(f"Queued process-video job {handle.id} for video {video_id}")
        return handle

    def register_video(self, video_id: str, filename: str, input_url: str,
                       user_id: Optional[str] = None,
                       options: Optional[ProcessingOptions] = None,
                       priority: Optional[int] = None) -> Tuple[VideoRecord, JobHandle]:
        """Create an uploaded video record and queue its processing"""
        options = options or ProcessingOptions()
        fields: Dict[str, Any] = {
            "filename": filename,
            "input_url": input_url,
            "upload_progress": 100,
            "blur_intensity": options.intensity,
            "processing_mode": options.mode,
        }
        if user_id is not None:
            fields["user_id"] = str(user_id)

        record = self.status_store.create(video_id, fields)
        handle = self.enqueue_processing_job(video_id, input_url, options, priority=priority)
        return record, handle

    def reprocess_video(self, video_id: str, options: Optional[ProcessingOptions] = None,
                        priority: Optional[int] = None) -> JobHandle:
        """
        Reset a finished video and queue it again.

        Stored faces and the screenshot locator are cleared before the new
        job is enqueued. The old screenshot object is deleted best-effort.
        """
        record = self.status_store.require(video_id)
        old_screenshot = record.frame_screenshot_public_id
        options = options or ProcessingOptions(intensity=record.blur_intensity, mode=record.processing_mode)

        record = self.status_store.reset_for_reprocess(video_id, {
            "blur_intensity": options.intensity,
            "processing_mode": options.mode,
        })

        if old_screenshot and self.media_storage is not None:
            try:
                self.media_storage.delete(old_screenshot)
            except Exception as e:
                logger.warning(f"Could not delete old screenshot {old_screenshot} of video {video_id}: {e}")

        return self.enqueue_processing_job(video_id, record.input_url, options, priority=priority)

