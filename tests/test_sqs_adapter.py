import json
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from faceblur_worker.adapters.sqs_adapter import SQSJobQueueAdapter
from faceblur_worker.errors import QueueUnavailableError
from faceblur_worker.models import JobType

QUEUE_URL = "https://sqs.us-east-1.amazonaws.com/123/video-processing"
DLQ_URL = "https://sqs.us-east-1.amazonaws.com/123/video-processing-dlq"


def sqs_message(body, receive_count=1, message_id="m-1"):
    return {
        "MessageId": message_id,
        "ReceiptHandle": f"rh-{receive_count}",
        "Body": body if isinstance(body, str) else json.dumps(body),
        "Attributes": {"ApproximateReceiveCount": str(receive_count)},
    }


def job_body(job_type="process-video", max_attempts=3):
    return {
        "job_type": job_type,
        "payload": {"video_id": "v1", "input_url": "s3://media/clip.mp4"},
        "priority": 1,
        "max_attempts": max_attempts,
        "created_at": "2024-05-01T12:00:00+00:00",
    }


@pytest.fixture
def sqs():
    return MagicMock()


@pytest.fixture
def queue(config, sqs):
    adapter = SQSJobQueueAdapter(config.processing_policy(), QUEUE_URL, dlq_url=DLQ_URL, wait_time=0)
    adapter.sqs = sqs
    return adapter


class TestSQSJobQueueAdapter:
    def test_enqueue_body(self, queue, sqs):
        sqs.send_message.return_value = {"MessageId": "m-9"}
        handle = queue.enqueue(JobType.PROCESS_VIDEO, {"video_id": "v1"}, delay=5000)

        assert handle.id == "m-9"
        kwargs = sqs.send_message.call_args.kwargs
        assert kwargs["DelaySeconds"] == 900
        body = json.loads(kwargs["MessageBody"])
        assert body["job_type"] == "process-video"
        assert body["max_attempts"] == 3

    def test_claim_uses_lease_and_receive_count(self, queue, sqs):
        sqs.receive_message.return_value = {"Messages": [sqs_message(job_body(), receive_count=2)]}
        handle = queue.claim(JobType.PROCESS_VIDEO)

        assert handle.attempts == 2
        assert handle.receipt == "rh-2"
        assert handle.decode().video_id == "v1"
        assert sqs.receive_message.call_args.kwargs["VisibilityTimeout"] == 900

    def test_unparseable_message_goes_to_dlq(self, queue, sqs):
        sqs.receive_message.return_value = {"Messages": [sqs_message("not json")]}
        assert queue.claim(JobType.PROCESS_VIDEO) is None

        sent = sqs.send_message.call_args.kwargs
        assert sent["QueueUrl"] == DLQ_URL
        assert json.loads(sent["MessageBody"])["raw_body"] == "not json"
        sqs.delete_message.assert_called_once_with(QueueUrl=QUEUE_URL, ReceiptHandle="rh-1")

    def test_expired_final_lease_flagged_for_failure(self, queue, sqs):
        sqs.receive_message.return_value = {"Messages": [sqs_message(job_body(), receive_count=4)]}
        handle = queue.claim(JobType.PROCESS_VIDEO)

        assert handle.lease_expired
        assert handle.is_final_attempt
        sqs.send_message.assert_not_called()

        assert queue.nack(handle, "Worker lease expired on final attempt", retryable=False).dead_lettered
        body = json.loads(sqs.send_message.call_args.kwargs["MessageBody"])
        assert body["last_error"] == "Worker lease expired on final attempt"

    def test_lease_lost_again_is_dead_lettered(self, queue, sqs):
        sqs.receive_message.return_value = {"Messages": [sqs_message(job_body(), receive_count=5)]}
        assert queue.claim(JobType.PROCESS_VIDEO) is None
        body = json.loads(sqs.send_message.call_args.kwargs["MessageBody"])
        assert body["last_error"] == "Lease expired after final attempt"

    def test_retry_changes_visibility(self, queue, sqs):
        sqs.receive_message.return_value = {"Messages": [sqs_message(job_body(), receive_count=2)]}
        handle = queue.claim(JobType.PROCESS_VIDEO)

        outcome = queue.nack(handle, "timeout", retryable=True)
        assert not outcome.dead_lettered
        assert outcome.delay_sec == 4.0
        sqs.change_message_visibility.assert_called_once_with(
            QueueUrl=QUEUE_URL, ReceiptHandle="rh-2", VisibilityTimeout=4)

    def test_terminal_failure_moves_to_dlq(self, queue, sqs):
        sqs.receive_message.return_value = {"Messages": [sqs_message(job_body())]}
        handle = queue.claim(JobType.PROCESS_VIDEO)

        assert queue.nack(handle, "Input video has zero duration", retryable=False).dead_lettered
        body = json.loads(sqs.send_message.call_args.kwargs["MessageBody"])
        assert body["job_id"] == "m-1"
        assert body["last_error"] == "Input video has zero duration"

    def test_dead_letters_peek(self, queue, sqs):
        letter = {"job_id": "m-1", "job_type": "process-video", "payload": {"video_id": "v1"},
                  "attempts": 3, "last_error": "boom", "failed_at": "2024-05-01T12:00:00+00:00"}
        sqs.receive_message.side_effect = [{"Messages": [sqs_message(letter)]}, {"Messages": []}]
        letters = queue.dead_letters()
        assert [l.job_id for l in letters] == ["m-1"]
        assert letters[0].attempts == 3

    def test_client_error_is_queue_unavailable(self, queue, sqs):
        sqs.receive_message.side_effect = ClientError(
            {"Error": {"Code": "ServiceUnavailable", "Message": "down"}}, "ReceiveMessage")
        with pytest.raises(QueueUnavailableError):
            queue.claim(JobType.PROCESS_VIDEO)

    def test_dead_letters_listed_once_when_redelivered(self, queue, sqs):
        letter = {"job_id": "m-1", "job_type": "process-video", "payload": {"video_id": "v1"},
                  "attempts": 3, "last_error": "boom", "failed_at": "2024-05-01T12:00:00+00:00"}
        sqs.receive_message.return_value = {"Messages": [sqs_message(letter)]}

        letters = queue.dead_letters(limit=50)

        assert [l.job_id for l in letters] == ["m-1"]
        assert sqs.receive_message.call_count == 2

    def test_dead_letters_respects_limit(self, queue, sqs):
        batch = [sqs_message({"job_id": f"m-{n}", "job_type": "process-video", "attempts": 3}, message_id=f"m-{n}")
                 for n in range(5)]
        sqs.receive_message.return_value = {"Messages": batch}

        assert len(queue.dead_letters(limit=3)) == 3
