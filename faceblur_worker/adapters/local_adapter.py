"""
Local filesystem adapter for media storage.

Inputs are read from absolute paths, file:// locators or paths relative to
the media root; http(s) inputs are downloaded. Published media is written
below the media root.
"""

import os
import logging
from typing import Optional, Dict, Any
from urllib.parse import urlparse

import httpx

from .base import MediaStorageAdapter
from .s3_adapter import fetch_http
from ..errors import MalformedInputError
from ..models import PublishedMedia
from ..pipeline.util import ensure_dir, resolve_media_path

logger = logging.getLogger("faceblur_worker")


class LocalMediaStorageAdapter(MediaStorageAdapter):
    """Filesystem implementation of media storage"""

    def __init__(self, root_dir: str, public_base_url: Optional[str] = None, fetch_timeout: float = 60.0):
        self.root_dir = root_dir
        self.public_base_url = public_base_url
        self.fetch_timeout = fetch_timeout
        self.http = None

    def connect(self):
        ensure_dir(self.root_dir)
        self.http = httpx.Client(timeout=self.fetch_timeout, follow_redirects=True)
        logger.info(f"Local media storage rooted at {self.root_dir}")

    def fetch(self, locator: str) -> bytes:
        if urlparse(locator).scheme in ("http", "https"):
            return fetch_http(self.http, locator)

        path = resolve_media_path(locator, self.root_dir)
        if not os.path.isfile(path):
            raise MalformedInputError(f"Input {locator} does not exist")
        with open(path, "rb") as f:
            return f.read()

    def publish(self, data: bytes, metadata: Dict[str, Any]) -> PublishedMedia:
        key = metadata['key'].lstrip("/")
        path = self._path_for(key)
        ensure_dir(os.path.dirname(path))
        with open(path, "wb") as f:
            f.write(data)

        if self.public_base_url:
            locator = f"{self.public_base_url.rstrip('/')}/{key}"
        else:
            locator = f"file://{path}"
        logger.info(f"Published {path} ({len(data)} bytes)")
        return PublishedMedia(locator=locator, delete_handle=key)

    def delete(self, delete_handle: str) -> None:
        path = self._path_for(delete_handle)
        if os.path.exists(path):
            os.remove(path)
            logger.info(f"Deleted {path}")

    def close(self):
        if self.http:
            self.http.close()

    def _path_for(self, key: str) -> str:
        root = os.path.abspath(self.root_dir)
        path = os.path.abspath(os.path.join(root, key))
        if os.path.commonpath([root, path]) != root:
            raise ValueError(f"Media key escapes the storage root: {key}")
        return path
