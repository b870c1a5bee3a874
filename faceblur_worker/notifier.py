"""
Webhook delivery.

Consumes send-webhook jobs and POSTs a signed JSON body to the video
owner's callback URL. The body is serialized once and the signature is
the hex HMAC-SHA256 of exactly those bytes.
"""

import hmac
import json
import hashlib
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import httpx

from .adapters.base import StatusStoreAdapter
from .errors import DeliveryError, LeaseExpiredError
from .models import JobHandle, WebhookJob, utc_now

logger = logging.getLogger("faceblur_worker")

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    """Constant-time check a subscriber can run on a received webhook"""
    return hmac.compare_digest(sign_payload(body, secret), signature or "")


def format_timestamp(moment: datetime) -> str:
    """ISO-8601 UTC with milliseconds, e.g. 2024-05-01T12:00:00.000Z"""
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def serialize_payload(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


class WebhookNotifier:
    """Delivers terminal-status webhooks"""

    def __init__(self, status_store: StatusStoreAdapter, secret: str, timeout: float = 10.0,
                 event: str = "video.processing.complete", client: Optional[httpx.Client] = None,
                 clock: Callable[[], datetime] = utc_now):
        """
        Args:
            status_store: Used to look up the owner's webhook URL
            secret: HMAC key shared with subscribers
            timeout: Per-request timeout in seconds
            event: Value of the event header
            client: Preconfigured httpx client (tests pass one with a mock transport)
            clock: Source of the payload timestamp
        """
        if not secret:
            raise ValueError("Webhook secret must be set")
        self.status_store = status_store
        self.secret = secret
        self.event = event
        self.clock = clock
        self.client = client or httpx.Client(timeout=timeout)

    def build_payload(self, job: WebhookJob) -> Dict[str, Any]:
        return {
            "videoId": job.video_id,
            "status": job.status.value,
            "timestamp": format_timestamp(self.clock()),
            "outputUrl": job.output_url,
            "processingTime": job.processing_time_ms,
            "error": job.error,
        }

    def deliver(self, job: WebhookJob) -> Optional[int]:
        """
        Send one webhook.

        Returns:
            HTTP status code, or None when the owner has no webhook URL

        Raises:
            DeliveryError: non-2xx response or transport failure
        """
        url = self.status_store.get_webhook_url(job.video_id)
        if not url:
            logger.info(f"No webhook URL configured for video {job.video_id}; skipping delivery")
            return None

        body = serialize_payload(self.build_payload(job))
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(body, self.secret),
            EVENT_HEADER: self.event,
        }

        try:
            response = self.client.post(url, content=body, headers=headers)
        except httpx.HTTPError as e:
            raise DeliveryError(f"Webhook to {url} failed: {e}", cause=e)

        if not response.is_success:
            raise DeliveryError(
                f"Webhook to {url} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        logger.info(f"WEBHOOK: delivered {job.status.value} for video {job.video_id} ({response.status_code})")
        return response.status_code

    def handle_webhook_job(self, handle: JobHandle) -> Optional[int]:
        job = handle.decode()
        logger.info(f"WEBHOOK: job {handle.id} for video {job.video_id} "
                    f"(attempt {handle.attempts}/{handle.max_attempts})")
        if handle.lease_expired:
            raise LeaseExpiredError(f"Worker lease expired on final webhook attempt for video {job.video_id}")
        return self.deliver(job)

    def close(self):
        self.client.close()
