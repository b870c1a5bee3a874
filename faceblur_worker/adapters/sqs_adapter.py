"""
AWS SQS adapter for job queues.

Each named queue maps to one SQS queue plus a dead-letter queue. The lease is
the message visibility timeout and the attempt counter is SQS's
ApproximateReceiveCount. SQS has no priorities; the priority argument is
carried in the message body but does not affect ordering.
"""

import boto3
import json
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Union
from botocore.exceptions import ClientError

from .base import JobQueueAdapter
from ..backoff import QueuePolicy
from ..errors import QueueUnavailableError
from ..models import DeadLetter, JobHandle, JobType, NackResult, utc_now

logger = logging.getLogger("faceblur_worker")

# SQS limits
MAX_DELAY_SECONDS = 900
MAX_VISIBILITY_TIMEOUT = 43200


class SQSJobQueueAdapter(JobQueueAdapter):
    """AWS SQS implementation of one named job queue"""

    def __init__(self, policy: QueuePolicy, queue_url: str, dlq_url: Optional[str] = None,
                 region: str = "us-east-1", wait_time: int = 20, **poll_settings):
        super().__init__(policy, **poll_settings)
        self.queue_url = queue_url
        self.dlq_url = dlq_url
        self.region = region
        self.wait_time = wait_time
        self.sqs = None

    def connect(self):
        """Initialize SQS client"""
        try:
            self.sqs = boto3.client('sqs', region_name=self.region)
            logger.info(f"SQS queue '{self.name}' connected: {self.queue_url}")
        except Exception as e:
            logger.error(f"Failed to connect to SQS: {e}")
            raise

    def _client(self):
        if not self.sqs:
            raise RuntimeError("SQS client not initialized. Call connect() first.")
        return self.sqs

    def enqueue(self, job_type: Union[str, JobType], payload: Dict[str, Any], delay: float = 0,
                priority: Optional[int] = None, max_attempts: Optional[int] = None) -> JobHandle:
        job_type = JobType(job_type)
        created_at = utc_now()
        body = {
            "job_type": job_type.value,
            "payload": payload,
            "priority": self._priority(priority),
            "max_attempts": self._max_attempts(max_attempts),
            "created_at": created_at.isoformat(),
        }
        try:
            response = self._client().send_message(
                QueueUrl=self.queue_url,
                MessageBody=json.dumps(body),
                DelaySeconds=min(int(max(delay, 0)), MAX_DELAY_SECONDS),
                MessageAttributes={
                    'job_type': {'DataType': 'String', 'StringValue': job_type.value}
                }
            )
        except ClientError as e:
            raise QueueUnavailableError(f"SQS send to {self.name} failed: {e}", cause=e)

        return JobHandle(
            id=response['MessageId'],
            queue_name=self.name,
            job_type=job_type,
            payload=payload,
            attempts=0,
            max_attempts=body["max_attempts"],
            priority=body["priority"],
            created_at=created_at,
        )

    def claim(self, job_type: Union[str, JobType]) -> Optional[JobHandle]:
        """Long-poll SQS for one message and lease it for the policy's lease time"""
        job_type = JobType(job_type)
        try:
            response = self._client().receive_message(
                QueueUrl=self.queue_url,
                MaxNumberOfMessages=1,
                WaitTimeSeconds=self.wait_time,
                VisibilityTimeout=min(self.policy.lease_seconds, MAX_VISIBILITY_TIMEOUT),
                AttributeNames=['ApproximateReceiveCount', 'SentTimestamp'],
                MessageAttributeNames=['All']
            )
        except ClientError as e:
            raise QueueUnavailableError(f"SQS receive from {self.name} failed: {e}", cause=e)

        messages = response.get('Messages', [])
        if not messages:
            return None

        message = messages[0]
        receipt_handle = message['ReceiptHandle']
        attempts = int(message.get('Attributes', {}).get('ApproximateReceiveCount', 1))

        try:
            body = json.loads(message['Body'])
            handle = JobHandle(
                id=message['MessageId'],
                queue_name=self.name,
                job_type=JobType(body['job_type']),
                payload=body['payload'],
                attempts=attempts,
                max_attempts=int(body.get('max_attempts', self.policy.max_attempts)),
                priority=int(body.get('priority', self.policy.default_priority)),
                created_at=self._created_at(body, message),
                receipt=receipt_handle,
            )
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.error(f"Failed to parse SQS message {message['MessageId']}: {e}")
            self._move_to_dlq(message['MessageId'], message['Body'], receipt_handle,
                              f"Unparseable message: {e}", attempts)
            return None

        if handle.job_type != job_type:
            logger.error(f"Message {handle.id} on {self.name} has job type {handle.job_type.value}, expected {job_type.value}")
            self._move_to_dlq(handle.id, message['Body'], receipt_handle,
                              f"Unexpected job type {handle.job_type.value}", attempts)
            return None

        # Received again after the final attempt's visibility lapsed
        if handle.attempts > handle.max_attempts + 1:
            logger.error(f"Job {handle.id} on {self.name} lost its lease again after the final attempt; dead-lettered")
            self._dead_letter(handle, "Lease expired after final attempt")
            return None
        if handle.attempts > handle.max_attempts:
            logger.error(f"Job {handle.id} on {self.name} lost its lease on the final attempt")
            handle.lease_expired = True

        logger.info(f"Claimed SQS {job_type.value} job {handle.id} (attempt {handle.attempts}/{handle.max_attempts})")
        return handle

    def ack(self, handle: JobHandle) -> None:
        """Delete message from SQS queue"""
        try:
            self._client().delete_message(QueueUrl=self.queue_url, ReceiptHandle=handle.receipt)
        except ClientError as e:
            logger.warning(f"Could not delete SQS message {handle.id}: {e}")

    def nack(self, handle: JobHandle, error: str, retryable: bool = True) -> NackResult:
        if self._should_retry(handle, retryable):
            delay = self.policy.backoff_for(handle.attempts)
            try:
                self._client().change_message_visibility(
                    QueueUrl=self.queue_url,
                    ReceiptHandle=handle.receipt,
                    VisibilityTimeout=min(int(delay), MAX_VISIBILITY_TIMEOUT)
                )
            except ClientError as e:
                logger.warning(f"Could not reschedule SQS message {handle.id}: {e}")
            return NackResult(dead_lettered=False, delay_sec=delay)

        self._dead_letter(handle, error)
        return NackResult(dead_lettered=True)

    def dead_letters(self, limit: int = 50) -> List[DeadLetter]:
        """Peek at the dead-letter queue without consuming it"""
        if not self.dlq_url:
            return []
        letters: List[DeadLetter] = []
        seen = set()
        while len(letters) < limit:
            try:
                response = self._client().receive_message(
                    QueueUrl=self.dlq_url,
                    MaxNumberOfMessages=min(limit - len(letters), 10),
                    VisibilityTimeout=0,
                    WaitTimeSeconds=0
                )
            except ClientError as e:
                raise QueueUnavailableError(f"SQS receive from {self.name} DLQ failed: {e}", cause=e)
            # Zero visibility means the same messages can come straight back
            fresh = [m for m in response.get('Messages', []) if m['MessageId'] not in seen]
            if not fresh:
                break
            for message in fresh[:limit - len(letters)]:
                seen.add(message['MessageId'])
                letters.append(self._parse_dead_letter(message))
        return letters

    def pending_count(self) -> int:
        try:
            response = self._client().get_queue_attributes(
                QueueUrl=self.queue_url,
                AttributeNames=['ApproximateNumberOfMessages']
            )
        except ClientError as e:
            raise QueueUnavailableError(f"SQS attributes for {self.name} failed: {e}", cause=e)
        return int(response['Attributes'].get('ApproximateNumberOfMessages', 0))

    def close(self):
        """Close SQS connection"""
        self.sqs = None
        logger.info(f"SQS queue '{self.name}' connection closed")

    def _dead_letter(self, handle: JobHandle, error: str) -> None:
        body = {
            "job_id": handle.id,
            "job_type": handle.job_type.value,
            "payload": handle.payload,
            "attempts": handle.attempts,
            "last_error": error,
            "failed_at": utc_now().isoformat(),
        }
        self._move_to_dlq(handle.id, json.dumps(body), handle.receipt, error, handle.attempts, wrapped=True)

    def _move_to_dlq(self, message_id: str, body: str, receipt_handle: str, error: str,
                     attempts: int, wrapped: bool = False) -> None:
        if not wrapped:
            body = json.dumps({
                "job_id": message_id,
                "job_type": None,
                "raw_body": body,
                "attempts": attempts,
                "last_error": error,
                "failed_at": utc_now().isoformat(),
            })
        if not self.dlq_url:
            # Keep the message on the source queue so it still shows up somewhere
            logger.error(f"No dead-letter queue configured for {self.name}; message {message_id} left in place: {error}")
            return
        try:
            self._client().send_message(QueueUrl=self.dlq_url, MessageBody=body)
        except ClientError as e:
            raise QueueUnavailableError(f"SQS send to {self.name} DLQ failed: {e}", cause=e)
        self._client().delete_message(QueueUrl=self.queue_url, ReceiptHandle=receipt_handle)

    def _parse_dead_letter(self, message: Dict[str, Any]) -> DeadLetter:
        try:
            body = json.loads(message['Body'])
        except json.JSONDecodeError:
            body = {"raw_body": message['Body']}
        failed_at = body.get("failed_at")
        return DeadLetter(
            job_id=str(body.get("job_id") or message['MessageId']),
            queue_name=self.name,
            job_type=body.get("job_type") or "unknown",
            payload=body.get("payload") or {"raw_body": body.get("raw_body")},
            last_error=body.get("last_error"),
            attempts=int(body.get("attempts") or 0),
            failed_at=datetime.fromisoformat(failed_at) if failed_at else None,
        )

    @staticmethod
    def _created_at(body: Dict[str, Any], message: Dict[str, Any]) -> Optional[datetime]:
        if body.get("created_at"):
            return datetime.fromisoformat(body["created_at"])
        sent = message.get('Attributes', {}).get('SentTimestamp')
        if sent:
            return datetime.fromtimestamp(int(sent) / 1000, tz=timezone.utc)
        return None
