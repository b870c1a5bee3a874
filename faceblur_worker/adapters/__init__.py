"""
Adapter pattern implementations for job queues, the status store and media storage.

This module provides abstract base classes and concrete implementations
for different queue backends (Postgres, SQS, in-memory), status stores
(Postgres, in-memory) and media storage (S3, local disk).
"""

from .base import JobQueueAdapter, StatusStoreAdapter, MediaStorageAdapter
from .memory_adapter import InMemoryJobQueueAdapter, InMemoryStatusStore

__all__ = [
    'JobQueueAdapter',
    'StatusStoreAdapter',
    'MediaStorageAdapter',
    'InMemoryJobQueueAdapter',
    'InMemoryStatusStore'
]
