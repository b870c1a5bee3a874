"""
Face redaction pipeline.

Runs one process-video job from fetch to the completed checkpoint:
fetch -> probe -> extract frame -> detect -> persist faces -> redact ->
publish screenshot -> face_detection_complete -> completed.

Failures propagate to the orchestrator, which decides between a retry
and a terminal failure.
"""

import os
import time
import logging
from typing import List, Optional

from .adapters.base import StatusStoreAdapter, MediaStorageAdapter
from .config import WorkerConfig
from .errors import MalformedInputError, PipelineTimeoutError
from .models import (
    JobHandle,
    ProcessingJob,
    ProcessingResult,
    PublishedMedia,
    RedactionMode,
    VideoRecord,
    utc_now,
)
from .pipeline.detect import FaceDetector
from .pipeline.media import probe_video, frame_timestamp, extract_frame
from .pipeline.redact import load_image, redact, encode_jpeg
from .pipeline.util import job_workspace, locator_extension, get_file_size_mb
from .status import VideoStatus

logger = logging.getLogger("faceblur_worker")


def screenshot_key(video_id: str, frame_index: int, mode: RedactionMode) -> str:
    suffix = "blackbar" if mode == RedactionMode.BLACK_BAR else "blurred"
    return f"screenshots/video_{video_id}_frame_{frame_index}_{suffix}.jpg"


class VideoProcessor:
    """Handles face redaction pipeline execution"""

    def __init__(self, config: WorkerConfig, status_store: StatusStoreAdapter,
                 media_storage: MediaStorageAdapter, detector: FaceDetector):
        self.config = config
        self.status_store = status_store
        self.media_storage = media_storage
        self.detector = detector

    def process_video(self, handle: JobHandle, job: ProcessingJob) -> ProcessingResult:
        """
        Process a single video through the complete pipeline.

        Args:
            handle: Leased queue job, used for attempt bookkeeping
            job: Decoded process-video payload

        Returns:
            ProcessingResult for a completed video

        Raises:
            Any pipeline error; nothing is swallowed here
        """
        started = time.monotonic()
        deadline = started + self.config.JOB_DEADLINE_SEC
        video_id = job.video_id
        options = job.options
        stages_completed: List[str] = []

        record = self.status_store.require(video_id)
        self._claim(record)
        stages_completed.append("claim")

        with job_workspace(video_id, base_dir=self.config.TEMP_DIR) as workspace:
            # Step 1: Fetch input
            logger.info(f"FETCH: Downloading input for video {video_id}")
            input_path = self._fetch_input(job.input_url, workspace)
            stages_completed.append("fetch")
            self._check_deadline(deadline, video_id, "fetch")

            # Step 2: Probe
            logger.info(f"PROBE: Reading stream info for video {video_id}")
            probe = probe_video(input_path, timeout=self.config.FFMPEG_TIMEOUT_SEC)
            self.status_store.update_fields(video_id, {"total_frames": probe.total_frames})
            stages_completed.append("probe")
            self._check_deadline(deadline, video_id, "probe")

            # Step 3: Extract frame
            timestamp = frame_timestamp(options.frame_index, probe.fps, probe.duration_sec)
            logger.info(f"FRAME: Extracting frame {options.frame_index} ({timestamp:.3f}s) for video {video_id}")
            frame_path = extract_frame(
                input_path,
                os.path.join(workspace, f"frame_{options.frame_index}.jpg"),
                timestamp,
                width=self.config.FRAME_WIDTH,
                height=self.config.FRAME_HEIGHT,
                timeout=self.config.FFMPEG_TIMEOUT_SEC,
            )
            frame = load_image(frame_path)
            stages_completed.append("frame")
            self._check_deadline(deadline, video_id, "frame")

            # Step 4: Detect faces
            logger.info(f"DETECT: Running face detection for video {video_id}")
            faces = self.detector.detect(frame)
            stages_completed.append("detect")
            self._check_deadline(deadline, video_id, "detect")

            # Step 5: Persist faces, replacing any rows from an earlier attempt
            records = [face.to_record(video_id, index) for index, face in enumerate(faces, start=1)]
            self.status_store.replace_faces(video_id, records)
            stages_completed.append("faces")

            # Step 6: Redact and publish
            screenshot: Optional[PublishedMedia] = None
            if faces:
                logger.info(f"REDACT: Applying {options.mode.value} to {len(faces)} faces for video {video_id}")
                redacted = redact(frame, faces, options.mode, options.intensity)
                screenshot = self.media_storage.publish(encode_jpeg(redacted), {
                    "key": screenshot_key(video_id, options.frame_index, options.mode),
                    "content_type": "image/jpeg",
                    "video_id": video_id,
                })
                stages_completed.append("publish")
            else:
                logger.info(f"REDACT: No faces found for video {video_id}, nothing to publish")

            self.status_store.transition(video_id, VideoStatus.FACE_DETECTION_COMPLETE, {
                "faces_detected": len(faces),
                "frame_screenshot_url": screenshot.locator if screenshot else None,
                "frame_screenshot_public_id": screenshot.delete_handle if screenshot else None,
                "blur_intensity": options.intensity,
                "processing_mode": options.mode,
            })

        processing_time_ms = elapsed_ms(handle, started)
        self.status_store.transition(video_id, VideoStatus.COMPLETED, {
            "processing_time_ms": processing_time_ms,
        })
        stages_completed.append("complete")

        logger.info(f"READY: Pipeline completed for video {video_id} in {processing_time_ms}ms ({len(faces)} faces)")

        return ProcessingResult(
            video_id=video_id,
            status=VideoStatus.COMPLETED,
            stages_completed=stages_completed,
            faces_detected=len(faces),
            total_frames=probe.total_frames,
            screenshot_url=screenshot.locator if screenshot else None,
            processing_time_ms=processing_time_ms,
        )

    def _claim(self, record: VideoRecord) -> None:
        """Enter processing, or resume a redelivered job past its detection checkpoint"""
        if record.status == VideoStatus.FACE_DETECTION_COMPLETE:
            logger.info(f"Video {record.id} already passed face detection; re-running from fetch")
            return
        self.status_store.transition(record.id, VideoStatus.PROCESSING, {"error_message": None})

    def _fetch_input(self, locator: str, workspace: str) -> str:
        data = self.media_storage.fetch(locator)
        if not data:
            raise MalformedInputError(f"Input {locator} is empty")

        input_path = os.path.join(workspace, f"input{locator_extension(locator)}")
        with open(input_path, "wb") as f:
            f.write(data)
        logger.info(f"Fetched {locator} ({get_file_size_mb(input_path):.2f} MB)")
        return input_path

    def _check_deadline(self, deadline: float, video_id: str, stage: str) -> None:
        if time.monotonic() > deadline:
            raise PipelineTimeoutError(
                f"Video {video_id} exceeded the {self.config.JOB_DEADLINE_SEC}s deadline after {stage}"
            )


def elapsed_ms(handle: JobHandle, started: Optional[float] = None) -> int:
    """Milliseconds since the job was accepted, falling back to this attempt's start"""
    if handle.created_at is not None:
        return max(int((utc_now() - handle.created_at).total_seconds() * 1000), 0)
    if started is not None:
        return int((time.monotonic() - started) * 1000)
    return 0
