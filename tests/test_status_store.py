import pytest

from faceblur_worker.errors import InvalidTransitionError, VideoNotFoundError
from faceblur_worker.models import FaceRecord, RedactionMode
from faceblur_worker.status import VideoStatus


def create_video(store, video_id="v1", **extra):
    fields = {"filename": "clip.mp4", "input_url": "uploads/clip.mp4", "user_id": "u1"}
    fields.update(extra)
    return store.create(video_id, fields)


def face(index, video_id="v1"):
    return FaceRecord(video_id, index, 10 * index, 20, 50, 60, 0.9)


class TestTransitions:
    def test_new_video_is_uploaded(self, status_store):
        record = create_video(status_store)
        assert record.status == VideoStatus.UPLOADED
        assert record.processing_progress == 0

    def test_checkpoints_set_progress(self, status_store):
        create_video(status_store)
        assert status_store.transition("v1", VideoStatus.PROCESSING).processing_progress == 10
        assert status_store.transition("v1", VideoStatus.FACE_DETECTION_COMPLETE).processing_progress == 50
        completed = status_store.transition("v1", VideoStatus.COMPLETED)
        assert completed.processing_progress == 100
        assert completed.processed_at is not None

    def test_rejected_transition_leaves_record_untouched(self, status_store):
        create_video(status_store)
        with pytest.raises(InvalidTransitionError):
            status_store.transition("v1", VideoStatus.COMPLETED, {"faces_detected": 3})
        record = status_store.get("v1")
        assert record.status == VideoStatus.UPLOADED
        assert record.faces_detected == 0

    def test_terminal_status_cannot_be_left(self, status_store):
        create_video(status_store)
        status_store.transition("v1", VideoStatus.FAILED, {"error_message": "boom"})
        with pytest.raises(InvalidTransitionError):
            status_store.transition("v1", VideoStatus.PROCESSING)

    def test_failed_keeps_progress(self, status_store):
        create_video(status_store)
        status_store.transition("v1", VideoStatus.PROCESSING)
        record = status_store.transition("v1", VideoStatus.FAILED, {"error_message": "boom"})
        assert record.processing_progress == 10
        assert record.error_message == "boom"

    def test_unknown_video(self, status_store):
        with pytest.raises(VideoNotFoundError):
            status_store.transition("missing", VideoStatus.PROCESSING)


class TestUpdateFields:
    def test_progress_never_decreases(self, status_store):
        create_video(status_store)
        status_store.transition("v1", VideoStatus.PROCESSING)
        status_store.transition("v1", VideoStatus.FACE_DETECTION_COMPLETE)
        record = status_store.update_fields("v1", {"processing_progress": 10})
        assert record.processing_progress == 50

    def test_status_is_not_an_updatable_field(self, status_store):
        create_video(status_store)
        with pytest.raises(ValueError):
            status_store.update_fields("v1", {"status": "completed"})

    def test_unknown_column(self, status_store):
        create_video(status_store)
        with pytest.raises(ValueError):
            status_store.update_fields("v1", {"colour": "red"})

    def test_mode_alias_is_normalized(self, status_store):
        create_video(status_store)
        record = status_store.update_fields("v1", {"processing_mode": "blackbar"})
        assert record.processing_mode == RedactionMode.BLACK_BAR


class TestFaces:
    def test_replace_faces_is_idempotent(self, status_store):
        create_video(status_store)
        status_store.replace_faces("v1", [face(1), face(2)])
        status_store.replace_faces("v1", [face(1), face(2)])
        faces = status_store.get_faces("v1")
        assert [f.face_index for f in faces] == [1, 2]

    def test_replace_with_fewer_faces(self, status_store):
        create_video(status_store)
        status_store.replace_faces("v1", [face(1), face(2), face(3)])
        status_store.replace_faces("v1", [face(1)])
        assert len(status_store.get_faces("v1")) == 1

    def test_duplicate_index_rejected(self, status_store):
        create_video(status_store)
        with pytest.raises(ValueError):
            status_store.replace_faces("v1", [face(1), face(1)])


class TestReset:
    def test_reset_clears_results(self, status_store):
        create_video(status_store)
        status_store.transition("v1", VideoStatus.PROCESSING)
        status_store.replace_faces("v1", [face(1)])
        status_store.transition("v1", VideoStatus.FACE_DETECTION_COMPLETE, {
            "faces_detected": 1,
            "frame_screenshot_url": "http://cdn/x.jpg",
            "frame_screenshot_public_id": "screenshots/x.jpg",
        })
        status_store.transition("v1", VideoStatus.COMPLETED)
        status_store.mark_notified("v1")

        record = status_store.reset_for_reprocess("v1", {"blur_intensity": 40})
        assert record.status == VideoStatus.UPLOADED
        assert record.processing_progress == 0
        assert record.faces_detected == 0
        assert record.frame_screenshot_url is None
        assert record.blur_intensity == 40
        assert record.notified_at is None
        assert status_store.get_faces("v1") == []

    def test_reset_refused_while_processing(self, status_store):
        create_video(status_store)
        status_store.transition("v1", VideoStatus.PROCESSING)
        with pytest.raises(InvalidTransitionError):
            status_store.reset_for_reprocess("v1")


class TestNotification:
    def test_mark_notified_once(self, status_store):
        create_video(status_store)
        assert status_store.mark_notified("v1")
        assert not status_store.mark_notified("v1")
        assert status_store.get("v1").notified_at is not None

    def test_webhook_url_follows_owner(self, status_store):
        create_video(status_store)
        assert status_store.get_webhook_url("v1") is None
        status_store.register_user("u1", "https://hooks.example.com/cb")
        assert status_store.get_webhook_url("v1") == "https://hooks.example.com/cb"
