"""
Configuration management for the face redaction worker.

Centralizes all configuration loading from environment variables
and provides type-safe access to configuration values.
"""

import os
from typing import Dict, Any
from dataclasses import dataclass

from .backoff import QueuePolicy


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class WorkerConfig:
    """Configuration for the face redaction worker"""

    # Queue backend settings
    QUEUE_BACKEND: str = "postgres"  # postgres, sqs, memory
    QUEUE_CONFIG: Dict[str, Any] = None

    # Status store settings
    STATUS_STORE_TYPE: str = "postgres"  # postgres, memory
    STATUS_STORE_CONFIG: Dict[str, Any] = None

    # Media storage settings
    MEDIA_STORAGE_TYPE: str = "s3"  # s3, local
    MEDIA_STORAGE_CONFIG: Dict[str, Any] = None

    # Processing queue
    PROCESSING_QUEUE_NAME: str = "video-processing"
    PROCESSING_MAX_ATTEMPTS: int = 3
    PROCESSING_BACKOFF_BASE_SEC: float = 2.0
    PROCESSING_BACKOFF_MAX_SEC: float = 300.0
    PROCESSING_LEASE_SEC: int = 900
    PROCESSING_CONCURRENCY: int = 2

    # Webhook queue
    WEBHOOK_QUEUE_NAME: str = "webhook-notifications"
    WEBHOOK_MAX_ATTEMPTS: int = 5
    WEBHOOK_BACKOFF_BASE_SEC: float = 1.0
    WEBHOOK_BACKOFF_MAX_SEC: float = 300.0
    WEBHOOK_LEASE_SEC: int = 60
    WEBHOOK_CONCURRENCY: int = 2

    # Idle polling
    POLL_INTERVAL_MS: int = 1500
    BACKOFF_MULTIPLIER: float = 1.5
    MAX_BACKOFF_MS: int = 12000

    # Pipeline settings
    FRAME_WIDTH: int = 1280
    FRAME_HEIGHT: int = 720
    JOB_DEADLINE_SEC: int = 600
    FFMPEG_TIMEOUT_SEC: int = 120
    TEMP_DIR: str = None

    # Face detection
    FACE_MODEL_PATH: str = "/app/models/face_detection_yunet_2023mar.onnx"
    FACE_CONFIDENCE_THRESHOLD: float = 0.5
    FACE_NMS_THRESHOLD: float = 0.3
    FACE_TOP_K: int = 100

    # Webhook delivery
    WEBHOOK_SECRET: str = None
    WEBHOOK_TIMEOUT_SEC: float = 10.0
    WEBHOOK_EVENT: str = "video.processing.complete"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "/app/data/worker"

    # HTTP server
    ENABLE_HTTP_SERVER: bool = False
    HTTP_PORT: int = 8000

    # Data directory
    DATA_DIR: str = "/app/data"

    @classmethod
    def from_env(cls) -> 'WorkerConfig':
        """Load configuration from environment variables"""
        config = cls()

        # Backends
        config.QUEUE_BACKEND = os.getenv("QUEUE_BACKEND", "postgres")
        config.QUEUE_CONFIG = cls._parse_queue_config()
        config.STATUS_STORE_TYPE = os.getenv("STATUS_STORE_TYPE", "postgres")
        config.STATUS_STORE_CONFIG = cls._parse_status_store_config()
        config.MEDIA_STORAGE_TYPE = os.getenv("MEDIA_STORAGE_TYPE", "s3")
        config.MEDIA_STORAGE_CONFIG = cls._parse_media_storage_config()

        # Processing queue
        config.PROCESSING_QUEUE_NAME = os.getenv("PROCESSING_QUEUE_NAME", "video-processing")
        config.PROCESSING_MAX_ATTEMPTS = int(os.getenv("PROCESSING_MAX_ATTEMPTS", "3"))
        config.PROCESSING_BACKOFF_BASE_SEC = float(os.getenv("PROCESSING_BACKOFF_BASE_SEC", "2"))
        config.PROCESSING_BACKOFF_MAX_SEC = float(os.getenv("PROCESSING_BACKOFF_MAX_SEC", "300"))
        config.PROCESSING_LEASE_SEC = int(os.getenv("PROCESSING_LEASE_SEC", "900"))
        config.PROCESSING_CONCURRENCY = int(os.getenv("PROCESSING_CONCURRENCY", "2"))

        # Webhook queue
        config.WEBHOOK_QUEUE_NAME = os.getenv("WEBHOOK_QUEUE_NAME", "webhook-notifications")
        config.WEBHOOK_MAX_ATTEMPTS = int(os.getenv("WEBHOOK_MAX_ATTEMPTS", "5"))
        config.WEBHOOK_BACKOFF_BASE_SEC = float(os.getenv("WEBHOOK_BACKOFF_BASE_SEC", "1"))
        config.WEBHOOK_BACKOFF_MAX_SEC = float(os.getenv("WEBHOOK_BACKOFF_MAX_SEC", "300"))
        config.WEBHOOK_LEASE_SEC = int(os.getenv("WEBHOOK_LEASE_SEC", "60"))
        config.WEBHOOK_CONCURRENCY = int(os.getenv("WEBHOOK_CONCURRENCY", "2"))

        # Idle polling
        config.POLL_INTERVAL_MS = int(os.getenv("WORKER_POLL_MS", "1500"))
        config.BACKOFF_MULTIPLIER = float(os.getenv("WORKER_BACKOFF_MULTIPLIER", "1.5"))
        config.MAX_BACKOFF_MS = int(os.getenv("WORKER_MAX_BACKOFF_MS", "12000"))

        # Pipeline settings
        config.FRAME_WIDTH = int(os.getenv("FRAME_WIDTH", "1280"))
        config.FRAME_HEIGHT = int(os.getenv("FRAME_HEIGHT", "720"))
        config.JOB_DEADLINE_SEC = int(os.getenv("JOB_DEADLINE_SEC", "600"))
        config.FFMPEG_TIMEOUT_SEC = int(os.getenv("FFMPEG_TIMEOUT_SEC", "120"))
        config.TEMP_DIR = os.getenv("TEMP_DIR")

        # Face detection
        config.FACE_MODEL_PATH = os.getenv("FACE_MODEL_PATH", cls.FACE_MODEL_PATH)
        config.FACE_CONFIDENCE_THRESHOLD = float(os.getenv("FACE_CONFIDENCE_THRESHOLD", "0.5"))
        config.FACE_NMS_THRESHOLD = float(os.getenv("FACE_NMS_THRESHOLD", "0.3"))
        config.FACE_TOP_K = int(os.getenv("FACE_TOP_K", "100"))

        # Webhook delivery
        config.WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET")
        config.WEBHOOK_TIMEOUT_SEC = float(os.getenv("WEBHOOK_TIMEOUT_SEC", "10"))
        config.WEBHOOK_EVENT = os.getenv("WEBHOOK_EVENT", "video.processing.complete")

        # Logging
        config.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

        # HTTP server
        config.ENABLE_HTTP_SERVER = _env_bool("WORKER_DEV_HTTP")
        config.HTTP_PORT = int(os.getenv("WORKER_HTTP_PORT", "8000"))

        # Data directory
        config.DATA_DIR = os.getenv("DATA_DIR", "/app/data")
        config.LOG_DIR = os.getenv("LOG_DIR", os.path.join(config.DATA_DIR, "worker"))

        return config

    @classmethod
    def _parse_queue_config(cls) -> Dict[str, Any]:
        """Parse queue backend specific configuration"""
        queue_backend = os.getenv("QUEUE_BACKEND", "postgres")

        if queue_backend == "postgres":
            return {
                "database_url": os.getenv("DATABASE_URL"),
                "connection_pool_size": int(os.getenv("POSTGRES_POOL_SIZE", "5")),
                "connection_timeout": int(os.getenv("POSTGRES_TIMEOUT", "10"))
            }
        elif queue_backend == "sqs":
            return {
                "processing_queue_url": os.getenv("AWS_SQS_PROCESSING_QUEUE_URL"),
                "processing_dlq_url": os.getenv("AWS_SQS_PROCESSING_DLQ_URL"),
                "webhook_queue_url": os.getenv("AWS_SQS_WEBHOOK_QUEUE_URL"),
                "webhook_dlq_url": os.getenv("AWS_SQS_WEBHOOK_DLQ_URL"),
                "region": os.getenv("AWS_REGION", "us-east-1"),
                "wait_time_seconds": int(os.getenv("SQS_WAIT_TIME", "20"))
            }
        else:
            return {}

    @classmethod
    def _parse_status_store_config(cls) -> Dict[str, Any]:
        """Parse status store specific configuration"""
        store_type = os.getenv("STATUS_STORE_TYPE", "postgres")

        if store_type == "postgres":
            return {
                "database_url": os.getenv("DATABASE_URL"),
                "connection_pool_size": int(os.getenv("POSTGRES_POOL_SIZE", "5")),
                "connection_timeout": int(os.getenv("POSTGRES_TIMEOUT", "10"))
            }
        else:
            return {}

    @classmethod
    def _parse_media_storage_config(cls) -> Dict[str, Any]:
        """Parse media storage specific configuration"""
        storage_type = os.getenv("MEDIA_STORAGE_TYPE", "s3")

        if storage_type == "s3":
            return {
                "bucket": os.getenv("AWS_S3_BUCKET"),
                "region": os.getenv("AWS_REGION", "us-east-1"),
                "prefix": os.getenv("S3_PREFIX", "video-face-blur/"),
                "public_base_url": os.getenv("S3_PUBLIC_BASE_URL"),
                "fetch_timeout": float(os.getenv("MEDIA_FETCH_TIMEOUT", "60"))
            }
        elif storage_type == "local":
            return {
                "root_dir": os.getenv("MEDIA_ROOT", os.path.join(os.getenv("DATA_DIR", "/app/data"), "media")),
                "public_base_url": os.getenv("MEDIA_PUBLIC_BASE_URL")
            }
        else:
            return {}

    def validate(self) -> None:
        """Validate configuration and raise errors for missing required values"""
        required_vars = []

        if self.QUEUE_BACKEND == "postgres" and not (self.QUEUE_CONFIG or {}).get("database_url"):
            required_vars.append("DATABASE_URL")

        if self.STATUS_STORE_TYPE == "postgres" and not (self.STATUS_STORE_CONFIG or {}).get("database_url"):
            if "DATABASE_URL" not in required_vars:
                required_vars.append("DATABASE_URL")

        if self.QUEUE_BACKEND == "sqs":
            for key, var in (("processing_queue_url", "AWS_SQS_PROCESSING_QUEUE_URL"),
                             ("webhook_queue_url", "AWS_SQS_WEBHOOK_QUEUE_URL")):
                if not (self.QUEUE_CONFIG or {}).get(key):
                    required_vars.append(var)

        if self.MEDIA_STORAGE_TYPE == "s3" and not (self.MEDIA_STORAGE_CONFIG or {}).get("bucket"):
            required_vars.append("AWS_S3_BUCKET")

        if not self.WEBHOOK_SECRET:
            required_vars.append("WEBHOOK_SECRET")

        if required_vars:
            raise ValueError(f"Missing required environment variables: {', '.join(required_vars)}")

        if self.QUEUE_BACKEND == "memory" and self.STATUS_STORE_TYPE != "memory":
            raise ValueError("QUEUE_BACKEND=memory is single-process only; use STATUS_STORE_TYPE=memory with it")

    def processing_policy(self) -> QueuePolicy:
        return QueuePolicy(
            name=self.PROCESSING_QUEUE_NAME,
            max_attempts=self.PROCESSING_MAX_ATTEMPTS,
            backoff_base_sec=self.PROCESSING_BACKOFF_BASE_SEC,
            backoff_max_sec=self.PROCESSING_BACKOFF_MAX_SEC,
            lease_seconds=self.PROCESSING_LEASE_SEC,
        )

    def webhook_policy(self) -> QueuePolicy:
        return QueuePolicy(
            name=self.WEBHOOK_QUEUE_NAME,
            max_attempts=self.WEBHOOK_MAX_ATTEMPTS,
            backoff_base_sec=self.WEBHOOK_BACKOFF_BASE_SEC,
            backoff_max_sec=self.WEBHOOK_BACKOFF_MAX_SEC,
            lease_seconds=self.WEBHOOK_LEASE_SEC,
        )
