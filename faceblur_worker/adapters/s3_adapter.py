"""
AWS S3 adapter for media storage.

Fetches input videos from s3:// locators or plain http(s) URLs and
publishes redacted screenshots under the configured key prefix.
"""

import boto3
import httpx
import logging
from typing import Optional, Dict, Any
from urllib.parse import urlparse
from botocore.exceptions import ClientError

from .base import MediaStorageAdapter
from ..errors import MalformedInputError, TransientError
from ..models import PublishedMedia

logger = logging.getLogger("faceblur_worker")

_MISSING_OBJECT_CODES = {"NoSuchKey", "NoSuchBucket", "404", "NotFound"}


def fetch_http(client: httpx.Client, url: str) -> bytes:
    """
    GET a media URL.

    4xx responses are permanent, 5xx and connection failures are retried.
    """
    try:
        response = client.get(url)
    except httpx.TransportError as e:
        raise TransientError(f"Could not fetch {url}: {e}", cause=e)

    if response.status_code >= 500:
        raise TransientError(f"Fetching {url} returned HTTP {response.status_code}")
    if response.status_code >= 400:
        raise MalformedInputError(f"Fetching {url} returned HTTP {response.status_code}")
    return response.content


class S3MediaStorageAdapter(MediaStorageAdapter):
    """AWS S3 implementation of media storage"""

    def __init__(self, bucket: str, region: str = "us-east-1", prefix: str = "video-face-blur/",
                 public_base_url: Optional[str] = None, fetch_timeout: float = 60.0):
        self.bucket = bucket
        self.region = region
        self.prefix = prefix
        self.public_base_url = public_base_url
        self.fetch_timeout = fetch_timeout
        self.s3 = None
        self.http = None

    def connect(self):
        """Initialize S3 and HTTP clients"""
        try:
            self.s3 = boto3.client('s3', region_name=self.region)
            self.http = httpx.Client(timeout=self.fetch_timeout, follow_redirects=True)
            logger.info(f"S3 media storage connected to bucket: {self.bucket}")
        except Exception as e:
            logger.error(f"Failed to connect to S3: {e}")
            raise

    def fetch(self, locator: str) -> bytes:
        parsed = urlparse(locator)
        if parsed.scheme in ("http", "https"):
            return fetch_http(self.http, locator)
        if parsed.scheme != "s3":
            raise MalformedInputError(f"Unsupported input locator: {locator}")

        bucket, key = parsed.netloc, parsed.path.lstrip("/")
        try:
            response = self.s3.get_object(Bucket=bucket, Key=key)
            return response['Body'].read()
        except ClientError as e:
            code = e.response.get('Error', {}).get('Code', '')
            if code in _MISSING_OBJECT_CODES:
                raise MalformedInputError(f"Input {locator} does not exist", cause=e)
            raise TransientError(f"Could not fetch {locator}: {e}", cause=e)

    def publish(self, data: bytes, metadata: Dict[str, Any]) -> PublishedMedia:
        key = f"{self.prefix}{metadata['key']}"
        try:
            self.s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=metadata.get('content_type', 'application/octet-stream')
            )
        except ClientError as e:
            raise TransientError(f"Could not upload {key}: {e}", cause=e)

        logger.info(f"Published s3://{self.bucket}/{key} ({len(data)} bytes)")
        return PublishedMedia(locator=self._public_url(key), delete_handle=key)

    def delete(self, delete_handle: str) -> None:
        try:
            self.s3.delete_object(Bucket=self.bucket, Key=delete_handle)
            logger.info(f"Deleted s3://{self.bucket}/{delete_handle}")
        except ClientError as e:
            raise TransientError(f"Could not delete {delete_handle}: {e}", cause=e)

    def close(self):
        if self.http:
            self.http.close()
        self.s3 = None
        logger.info("S3 media storage connection closed")

    def _public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

