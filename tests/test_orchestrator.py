import json
import os

import httpx
import pytest

from faceblur_worker.errors import DetectionError, MalformedInputError, QueueUnavailableError, TransientError
from faceblur_worker.models import JobType, ProcessingOptions, RedactionMode
from faceblur_worker.notifier import WebhookNotifier
from faceblur_worker.producer import VideoJobProducer
from faceblur_worker.service import WorkerService
from faceblur_worker.status import VideoStatus

from conftest import StaticDetector, make_face

HOOK_URL = "https://hooks.example.com/cb"


@pytest.fixture
def deliveries():
    return []


@pytest.fixture
def detector():
    return StaticDetector([make_face(), make_face(x=400, y=100)])


@pytest.fixture
def service(config, processing_queue, webhook_queue, status_store, media_storage, detector, deliveries):
    def handler(request):
        deliveries.append(json.loads(request.content))
        return httpx.Response(200)

    notifier = WebhookNotifier(status_store, config.WEBHOOK_SECRET,
                               client=httpx.Client(transport=httpx.MockTransport(handler)))
    service = WorkerService(
        config,
        processing_queue=processing_queue,
        webhook_queue=webhook_queue,
        status_store=status_store,
        media_storage=media_storage,
        detector=detector,
        notifier=notifier,
    )
    service.initialize(setup_logs=False)
    yield service
    service.stop()


@pytest.fixture
def producer(status_store, processing_queue, media_storage):
    return VideoJobProducer(status_store, processing_queue, media_storage)


@pytest.fixture
def uploaded(producer, status_store, input_video):
    status_store.register_user("u1", HOOK_URL)

    def upload(video_id="v1", **options):
        producer.register_video(video_id, "clip.mp4", input_video, user_id="u1",
                                options=ProcessingOptions(**options))
        return video_id
    return upload


def run_processing(service):
    return service.run_once(JobType.PROCESS_VIDEO, wait_seconds=0)


def run_webhooks(service):
    delivered = 0
    while service.run_once(JobType.SEND_WEBHOOK, wait_seconds=0):
        delivered += 1
    return delivered


class TestHappyPath:
    def test_faces_detected_and_blurred(self, service, uploaded, status_store, media_storage, fake_media, deliveries):
        video_id = uploaded()
        assert run_processing(service)

        record = status_store.get(video_id)
        assert record.status == VideoStatus.COMPLETED
        assert record.processing_progress == 100
        assert record.faces_detected == 2
        assert record.total_frames == 300
        assert record.frame_screenshot_public_id == "screenshots/video_v1_frame_1_blurred.jpg"
        assert os.path.exists(os.path.join(media_storage.root_dir, record.frame_screenshot_public_id))
        assert [f.face_index for f in status_store.get_faces(video_id)] == [1, 2]
        assert fake_media["extract"] == [1.0]

        assert run_webhooks(service) == 1
        assert deliveries[0]["status"] == "completed"
        assert deliveries[0]["videoId"] == "v1"
        assert deliveries[0]["outputUrl"] == record.frame_screenshot_url
        assert deliveries[0]["error"] is None

    def test_no_faces_publishes_nothing(self, service, uploaded, status_store, detector, fake_media, deliveries):
        detector.faces = []
        video_id = uploaded()
        assert run_processing(service)

        record = status_store.get(video_id)
        assert record.status == VideoStatus.COMPLETED
        assert record.faces_detected == 0
        assert record.frame_screenshot_url is None
        assert status_store.get_faces(video_id) == []

        run_webhooks(service)
        assert deliveries[0]["outputUrl"] is None

    def test_black_bar_and_frame_index(self, service, uploaded, status_store, fake_media):
        video_id = uploaded(frame_index=60, mode=RedactionMode.BLACK_BAR, intensity=40)
        assert run_processing(service)

        record = status_store.get(video_id)
        assert record.frame_screenshot_public_id.endswith("_frame_60_blackbar.jpg")
        assert record.processing_mode == RedactionMode.BLACK_BAR
        assert record.blur_intensity == 40
        assert fake_media["extract"] == [2.0]


class TestRetries:
    def test_transient_failures_exhaust_attempts(self, service, uploaded, status_store, media_storage,
                                                 processing_queue, clock, fake_media, deliveries, monkeypatch):
        def unreachable(locator):
            raise TransientError("connection reset by peer")
        monkeypatch.setattr(media_storage, "fetch", unreachable)
        video_id = uploaded()

        assert not run_processing(service)
        assert status_store.get(video_id).status == VideoStatus.PROCESSING
        assert run_webhooks(service) == 0

        clock.advance(2)
        assert not run_processing(service)
        assert status_store.get(video_id).status == VideoStatus.PROCESSING

        clock.advance(4)
        assert not run_processing(service)
        record = status_store.get(video_id)
        assert record.status == VideoStatus.FAILED
        assert record.error_message == "connection reset by peer"

        letters = processing_queue.dead_letters()
        assert len(letters) == 1
        assert letters[0].attempts == 3

        assert run_webhooks(service) == 1
        assert deliveries[0]["status"] == "failed"
        assert deliveries[0]["error"] == "connection reset by peer"

    def test_transient_then_success_notifies_once(self, service, uploaded, status_store, media_storage,
                                                  clock, fake_media, deliveries, monkeypatch):
        real_fetch = media_storage.fetch
        attempts = []

        def flaky(locator):
            attempts.append(locator)
            if len(attempts) == 1:
                raise TransientError("timeout")
            return real_fetch(locator)

        monkeypatch.setattr(media_storage, "fetch", flaky)
        video_id = uploaded()

        assert not run_processing(service)
        clock.advance(2)
        assert run_processing(service)

        assert status_store.get(video_id).status == VideoStatus.COMPLETED
        assert run_webhooks(service) == 1
        assert [d["status"] for d in deliveries] == ["completed"]

    def test_malformed_input_is_not_retried(self, service, uploaded, status_store, processing_queue,
                                            clock, fake_media, deliveries, monkeypatch):
        def zero_duration(path, timeout=None):
            raise MalformedInputError("Input video has zero duration")
        monkeypatch.setattr("faceblur_worker.processor.probe_video", zero_duration)
        video_id = uploaded()

        assert not run_processing(service)

        record = status_store.get(video_id)
        assert record.status == VideoStatus.FAILED
        assert record.error_message == "Input video has zero duration"
        assert processing_queue.dead_letters()[0].attempts == 1

        clock.advance(600)
        assert not run_processing(service)

        run_webhooks(service)
        assert len(deliveries) == 1
        assert deliveries[0]["status"] == "failed"

    def test_detection_failure_is_terminal(self, service, uploaded, status_store, detector, fake_media):
        detector.error = DetectionError("Face detection failed: bad model")
        video_id = uploaded()
        assert not run_processing(service)
        assert status_store.get(video_id).status == VideoStatus.FAILED

    def test_lost_final_lease_fails_and_notifies(self, service, uploaded, status_store, processing_queue,
                                                 clock, fake_media, deliveries):
        video_id = uploaded()
        for _ in range(3):
            # a worker that claims and dies without acking
            assert processing_queue.claim(JobType.PROCESS_VIDEO) is not None
            status_store.transition(video_id, VideoStatus.PROCESSING)
            clock.advance(processing_queue.policy.lease_seconds + 1)

        assert not run_processing(service)

        record = status_store.get(video_id)
        assert record.status == VideoStatus.FAILED
        assert record.error_message == "Worker lease expired on final attempt"
        letters = processing_queue.dead_letters()
        assert len(letters) == 1
        assert letters[0].last_error == "Worker lease expired on final attempt"

        assert run_webhooks(service) == 1
        assert deliveries[0]["status"] == "failed"
        assert deliveries[0]["error"] == "Worker lease expired on final attempt"

    def test_invalid_payload_fails_video(self, service, status_store, processing_queue, producer,
                                         fake_media, deliveries):
        status_store.register_user("u1", HOOK_URL)
        producer.register_video("v1", "clip.mp4", "uploads/clip.mp4", user_id="u1")
        processing_queue.ack(processing_queue.claim(JobType.PROCESS_VIDEO))
        processing_queue.enqueue(JobType.PROCESS_VIDEO, {
            "video_id": "v1", "input_url": "uploads/clip.mp4", "options": {"mode": "pixelate"},
        })

        assert not run_processing(service)

        record = status_store.get("v1")
        assert record.status == VideoStatus.FAILED
        assert record.error_message.startswith("Invalid job payload")
        assert "pixelate" in record.error_message
        assert processing_queue.dead_letters()[0].attempts == 1

        assert run_webhooks(service) == 1
        assert deliveries[0]["status"] == "failed"

    def test_payload_without_video_id_is_dead_lettered(self, service, processing_queue, fake_media):
        processing_queue.enqueue(JobType.PROCESS_VIDEO, {"input_url": "uploads/clip.mp4"})
        assert not run_processing(service)
        assert processing_queue.dead_letters()[0].last_error.startswith("Invalid job payload")


class TestRedelivery:
    def test_terminal_video_is_not_reprocessed(self, service, uploaded, producer, status_store,
                                               detector, fake_media, deliveries):
        video_id = uploaded()
        assert run_processing(service)
        run_webhooks(service)

        producer.enqueue_processing_job(video_id, status_store.get(video_id).input_url)
        assert run_processing(service)

        assert detector.calls == 1
        assert run_webhooks(service) == 0
        assert len(deliveries) == 1

    def test_failed_webhook_enqueue_is_recovered(self, service, uploaded, status_store, webhook_queue,
                                                 clock, fake_media, deliveries, monkeypatch):
        real_enqueue = webhook_queue.enqueue
        calls = []

        def flaky_enqueue(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise QueueUnavailableError("queue down")
            return real_enqueue(*args, **kwargs)

        monkeypatch.setattr(webhook_queue, "enqueue", flaky_enqueue)
        video_id = uploaded()

        assert not run_processing(service)
        record = status_store.get(video_id)
        assert record.status == VideoStatus.COMPLETED
        assert record.notified_at is None

        clock.advance(2)
        assert run_processing(service)
        assert run_webhooks(service) == 1
        assert deliveries[0]["status"] == "completed"

    def test_notification_marker_failure_keeps_queued_webhook(self, service, uploaded, status_store,
                                                              webhook_queue, fake_media, deliveries, monkeypatch):
        def store_down(video_id):
            raise ConnectionError("status store unreachable")
        monkeypatch.setattr(status_store, "mark_notified", store_down)
        video_id = uploaded()

        assert run_processing(service)
        assert status_store.get(video_id).status == VideoStatus.COMPLETED
        assert webhook_queue.pending_count() == 1
        assert run_webhooks(service) == 1
        assert deliveries[0]["status"] == "completed"


class TestStats:
    def test_counts(self, service, uploaded, fake_media):
        uploaded()
        run_processing(service)
        stats = service.get_stats()
        assert stats["orchestrator"]["videos_completed"] == 1
        assert stats["config"]["queue_backend"] == "memory"
