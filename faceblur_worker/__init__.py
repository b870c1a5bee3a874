"""Face redaction worker: queue-driven face detection and redaction for uploaded videos."""

__version__ = "0.1.0"
