"""
Main worker service.

Wires the queue, status store, media storage and face detector together
and runs a pool of consumer threads per queue: process-video jobs go to
the pipeline orchestrator, send-webhook jobs to the webhook notifier.
"""

import time
import signal
import sys
import logging
from typing import Optional, Dict, Any, Callable, List
from threading import Event, Thread

from .config import WorkerConfig
from .adapters.base import JobQueueAdapter, StatusStoreAdapter, MediaStorageAdapter
from .adapters.memory_adapter import InMemoryJobQueueAdapter, InMemoryStatusStore
from .adapters.postgres_adapter import PostgresJobQueueAdapter, PostgresStatusStore
from .adapters.sqs_adapter import SQSJobQueueAdapter
from .adapters.s3_adapter import S3MediaStorageAdapter
from .adapters.local_adapter import LocalMediaStorageAdapter
from .backoff import QueuePolicy
from .errors import QueueUnavailableError, is_retryable, describe_error
from .models import JobHandle, JobType
from .notifier import WebhookNotifier
from .orchestrator import PipelineOrchestrator
from .pipeline.detect import FaceDetector, YuNetFaceDetector
from .logging_setup import setup_logging, log_exception
from .http_server import start_health_server

logger = logging.getLogger("faceblur_worker")


class WorkerService:
    """Main worker service with adapter-based architecture"""

    def __init__(self, config: Optional[WorkerConfig] = None,
                 processing_queue: Optional[JobQueueAdapter] = None,
                 webhook_queue: Optional[JobQueueAdapter] = None,
                 status_store: Optional[StatusStoreAdapter] = None,
                 media_storage: Optional[MediaStorageAdapter] = None,
                 detector: Optional[FaceDetector] = None,
                 notifier: Optional[WebhookNotifier] = None):
        self.config = config or WorkerConfig.from_env()
        self.processing_queue = processing_queue
        self.webhook_queue = webhook_queue
        self.status_store = status_store
        self.media_storage = media_storage
        self.detector = detector
        self.notifier = notifier
        self.orchestrator: Optional[PipelineOrchestrator] = None
        self.handlers: Dict[JobType, Callable[[JobHandle], Any]] = {}
        self.queues: Dict[JobType, JobQueueAdapter] = {}
        self.health_server = None
        self.stop_event = Event()
        self.threads: List[Thread] = []
        self.running = False

    def initialize(self, setup_logs: bool = True):
        """Initialize worker with adapters based on configuration"""
        try:
            # Setup logging
            if setup_logs:
                setup_logging(self.config.LOG_LEVEL, self.config.LOG_DIR)

            # Validate configuration
            self.config.validate()

            # Initialize adapters
            self._initialize_adapters()

            if self.detector is None:
                self.detector = YuNetFaceDetector(
                    self.config.FACE_MODEL_PATH,
                    score_threshold=self.config.FACE_CONFIDENCE_THRESHOLD,
                    nms_threshold=self.config.FACE_NMS_THRESHOLD,
                    top_k=self.config.FACE_TOP_K,
                )

            # Initialize orchestrator and notifier
            self.orchestrator = PipelineOrchestrator(
                self.config, self.status_store, self.media_storage, self.detector, self.webhook_queue
            )
            if self.notifier is None:
                self.notifier = WebhookNotifier(
                    self.status_store,
                    secret=self.config.WEBHOOK_SECRET,
                    timeout=self.config.WEBHOOK_TIMEOUT_SEC,
                    event=self.config.WEBHOOK_EVENT,
                )

            self.queues = {
                JobType.PROCESS_VIDEO: self.processing_queue,
                JobType.SEND_WEBHOOK: self.webhook_queue,
            }
            self.handlers = {
                JobType.PROCESS_VIDEO: self.orchestrator.handle_processing_job,
                JobType.SEND_WEBHOOK: self.notifier.handle_webhook_job,
            }

            # Start health server if enabled
            self.health_server = start_health_server(self)

            logger.info("Worker service initialized successfully")

        except Exception as e:
            log_exception(logger, f"Failed to initialize worker service: {e}")
            raise

    def _initialize_adapters(self):
        """Create and connect any adapter that was not injected"""
        if self.status_store is None:
            self.status_store = self._create_status_store()
            self.status_store.connect()

        if self.media_storage is None:
            self.media_storage = self._create_media_storage()
            self.media_storage.connect()

        if self.processing_queue is None:
            self.processing_queue = self._create_queue_adapter(self.config.processing_policy(), "processing")
            self.processing_queue.connect()

        if self.webhook_queue is None:
            self.webhook_queue = self._create_queue_adapter(self.config.webhook_policy(), "webhook")
            self.webhook_queue.connect()

        logger.info(f"Initialized adapters: {self.config.QUEUE_BACKEND} queues, "
                    f"{self.config.STATUS_STORE_TYPE} status store, {self.config.MEDIA_STORAGE_TYPE} media storage")

    def _create_queue_adapter(self, policy: QueuePolicy, role: str) -> JobQueueAdapter:
        """Create job queue adapter based on configuration"""
        config = self.config.QUEUE_CONFIG or {}
        poll_settings = {
            "poll_interval_ms": self.config.POLL_INTERVAL_MS,
            "backoff_multiplier": self.config.BACKOFF_MULTIPLIER,
            "max_backoff_ms": self.config.MAX_BACKOFF_MS,
        }

        if self.config.QUEUE_BACKEND == "postgres":
            return PostgresJobQueueAdapter(
                policy,
                database_url=config["database_url"],
                pool_size=config.get("connection_pool_size", 5),
                timeout=config.get("connection_timeout", 10),
                **poll_settings
            )

        elif self.config.QUEUE_BACKEND == "sqs":
            return SQSJobQueueAdapter(
                policy,
                queue_url=config[f"{role}_queue_url"],
                dlq_url=config.get(f"{role}_dlq_url"),
                region=config.get("region", "us-east-1"),
                wait_time=config.get("wait_time_seconds", 20),
                **poll_settings
            )

        elif self.config.QUEUE_BACKEND == "memory":
            return InMemoryJobQueueAdapter(policy, **poll_settings)

        else:
            raise ValueError(f"Unsupported queue backend: {self.config.QUEUE_BACKEND}")

    def _create_status_store(self) -> StatusStoreAdapter:
        """Create status store adapter based on configuration"""
        if self.config.STATUS_STORE_TYPE == "postgres":
            config = self.config.STATUS_STORE_CONFIG or {}
            return PostgresStatusStore(
                database_url=config["database_url"],
                pool_size=config.get("connection_pool_size", 5),
                timeout=config.get("connection_timeout", 10)
            )

        elif self.config.STATUS_STORE_TYPE == "memory":
            return InMemoryStatusStore()

        else:
            raise ValueError(f"Unsupported status store type: {self.config.STATUS_STORE_TYPE}")

    def _create_media_storage(self) -> MediaStorageAdapter:
        """Create media storage adapter based on configuration"""
        config = self.config.MEDIA_STORAGE_CONFIG or {}

        if self.config.MEDIA_STORAGE_TYPE == "s3":
            return S3MediaStorageAdapter(
                bucket=config["bucket"],
                region=config.get("region", "us-east-1"),
                prefix=config.get("prefix", "video-face-blur/"),
                public_base_url=config.get("public_base_url"),
                fetch_timeout=config.get("fetch_timeout", 60.0)
            )

        elif self.config.MEDIA_STORAGE_TYPE == "local":
            return LocalMediaStorageAdapter(
                root_dir=config["root_dir"],
                public_base_url=config.get("public_base_url")
            )

        else:
            raise ValueError(f"Unsupported media storage type: {self.config.MEDIA_STORAGE_TYPE}")

    def start(self, block: bool = True):
        """Start consumer threads; with block=True wait until stop is requested"""
        if self.running:
            logger.warning("Worker service is already running")
            return

        self.running = True
        self.stop_event.clear()

        consumers = (
            (JobType.PROCESS_VIDEO, self.config.PROCESSING_CONCURRENCY),
            (JobType.SEND_WEBHOOK, self.config.WEBHOOK_CONCURRENCY),
        )
        for job_type, concurrency in consumers:
            for i in range(concurrency):
                thread = Thread(
                    target=self._consume,
                    args=(job_type,),
                    name=f"{job_type.value}-{i}",
                    daemon=True
                )
                thread.start()
                self.threads.append(thread)

        logger.info(f"Worker service started ({len(self.threads)} consumer threads)")

        if block:
            while not self.stop_event.is_set():
                self.stop_event.wait(1.0)

    def _consume(self, job_type: JobType):
        """Consumer loop for one thread"""
        backoff_interval = self.config.POLL_INTERVAL_MS
        logger.info(f"Consumer started, polling for {job_type.value} jobs...")

        while not self.stop_event.is_set():
            try:
                self.run_once(job_type, wait_seconds=None)
                backoff_interval = self.config.POLL_INTERVAL_MS
            except QueueUnavailableError as e:
                logger.warning(f"Queue unavailable for {job_type.value}: {e}; retrying in {backoff_interval / 1000.0:.1f}s")
                self.stop_event.wait(backoff_interval / 1000.0)
                backoff_interval = min(backoff_interval * self.config.BACKOFF_MULTIPLIER, self.config.MAX_BACKOFF_MS)
            except Exception as e:
                log_exception(logger, f"Unexpected error in {job_type.value} consumer loop: {str(e)}")
                # Use backoff for errors too
                self.stop_event.wait(backoff_interval / 1000.0)
                backoff_interval = min(backoff_interval * self.config.BACKOFF_MULTIPLIER, self.config.MAX_BACKOFF_MS)

        logger.info(f"Consumer for {job_type.value} stopped")

    def run_once(self, job_type: JobType, wait_seconds: Optional[float] = 0) -> bool:
        """
        Run one iteration of a consumer loop.

        Returns:
            True if a job was claimed and succeeded, False otherwise
        """
        queue = self.queues[job_type]
        handle = queue.dequeue(job_type, wait_seconds=wait_seconds, stop_event=self.stop_event)
        if handle is None:
            return False
        return self.dispatch(handle)

    def dispatch(self, handle: JobHandle) -> bool:
        """Run the handler for a claimed job, then ack or nack it"""
        queue = self.queues[handle.job_type]
        handler = self.handlers[handle.job_type]

        try:
            handler(handle)
        except Exception as e:
            message = describe_error(e)
            outcome = queue.nack(handle, message, retryable=is_retryable(e))
            if outcome.dead_lettered:
                logger.error(f"DEAD-LETTER: {handle.job_type.value} job {handle.id} on {queue.name} "
                             f"after {handle.attempts} attempts: {message}")
            elif outcome.delay_sec is not None:
                logger.warning(f"RETRY: {handle.job_type.value} job {handle.id} rescheduled in "
                               f"{outcome.delay_sec:.1f}s: {message}")
            return False

        queue.ack(handle)
        return True

    def request_stop(self):
        self.stop_event.set()

    def stop(self, timeout: float = 30.0):
        """Stop the worker service"""
        self.stop_event.set()

        deadline = time.monotonic() + timeout
        for thread in self.threads:
            thread.join(max(deadline - time.monotonic(), 0))
        self.threads = []
        self.running = False

        # Stop health server
        if self.health_server:
            self.health_server.stop()

        # Close adapters
        for adapter in (self.processing_queue, self.webhook_queue, self.media_storage, self.status_store):
            if adapter is not None:
                try:
                    adapter.close()
                except Exception as e:
                    log_exception(logger, f"Error closing {adapter.__class__.__name__}: {e}")
        if self.notifier:
            self.notifier.close()

        logger.info("Worker service stopped")

    def get_stats(self) -> Dict[str, Any]:
        """Get worker statistics"""
        stats = {
            'running': self.running,
            'config': {
                'queue_backend': self.config.QUEUE_BACKEND,
                'status_store_type': self.config.STATUS_STORE_TYPE,
                'media_storage_type': self.config.MEDIA_STORAGE_TYPE,
                'processing_concurrency': self.config.PROCESSING_CONCURRENCY,
                'webhook_concurrency': self.config.WEBHOOK_CONCURRENCY,
                'poll_interval_ms': self.config.POLL_INTERVAL_MS
            }
        }

        if self.orchestrator:
            stats['orchestrator'] = self.orchestrator.get_stats()

        return stats

    def reset_stats(self):
        """Reset worker statistics"""
        if self.orchestrator:
            self.orchestrator.reset_stats()
        logger.info("Worker statistics reset")


def main():
    """Main entry point"""
    worker = WorkerService()

    def signal_handler(signum, frame):
        """Handle shutdown signals"""
        logger.info(f"Received signal {signum}, shutting down...")
        worker.request_stop()

    # Setup signal handlers
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        worker.initialize()
        worker.start()
    except Exception as e:
        log_exception(logger, f"Worker failed to start: {str(e)}")
        sys.exit(1)
    finally:
        worker.stop()


if __name__ == "__main__":
    main()
