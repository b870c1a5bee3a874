import threading

import cv2
import numpy as np
import pytest

from faceblur_worker.errors import DetectionError
from faceblur_worker.pipeline.detect import YuNetFaceDetector

from conftest import noisy_image


class FakeYuNet:
    def __init__(self, rows):
        self.rows = rows
        self.input_sizes = []

    def setInputSize(self, size):
        self.input_sizes.append(size)

    def detect(self, image):
        return 1, self.rows


def yunet_row(x, y, w, h, score):
    landmarks = [x + 10, y + 20, x + 30, y + 20, x + 20, y + 30, x + 12, y + 40, x + 28, y + 40]
    return [x, y, w, h] + landmarks + [score]


class TestYuNetFaceDetector:
    def test_parses_rows(self):
        model = FakeYuNet(np.array([yunet_row(10, 20, 40, 50, 0.92)], dtype=np.float32))
        detector = YuNetFaceDetector("model.onnx", model_factory=lambda *args: model)

        faces = detector.detect(noisy_image(320, 240))
        assert len(faces) == 1
        assert faces[0].box.width == 40
        assert faces[0].confidence == pytest.approx(0.92)
        assert faces[0].landmarks["right_eye"] == (20.0, 40.0)
        assert faces[0].landmarks["nose_tip"] == (30.0, 50.0)
        assert model.input_sizes == [(320, 240)]

    def test_filters_low_confidence(self):
        rows = np.array([yunet_row(0, 0, 10, 10, 0.3), yunet_row(50, 50, 10, 10, 0.8)], dtype=np.float32)
        detector = YuNetFaceDetector("model.onnx", score_threshold=0.5,
                                     model_factory=lambda *args: FakeYuNet(rows))
        faces = detector.detect(noisy_image())
        assert [f.box.x for f in faces] == [50]

    def test_no_faces(self):
        detector = YuNetFaceDetector("model.onnx", model_factory=lambda *args: FakeYuNet(None))
        assert detector.detect(noisy_image()) == []

    def test_model_loaded_once_across_threads(self):
        loads = []

        def factory(*args):
            loads.append(args)
            return FakeYuNet(None)

        detector = YuNetFaceDetector("model.onnx", model_factory=factory)
        threads = [threading.Thread(target=detector.detect, args=(noisy_image(),)) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(loads) == 1

    def test_missing_model_file(self, tmp_path):
        detector = YuNetFaceDetector(str(tmp_path / "absent.onnx"))
        with pytest.raises(DetectionError, match="not found"):
            detector.detect(noisy_image())

    def test_empty_frame(self):
        detector = YuNetFaceDetector("model.onnx", model_factory=lambda *args: FakeYuNet(None))
        with pytest.raises(DetectionError):
            detector.detect(np.zeros((0, 0, 3), dtype=np.uint8))

    def test_opencv_failure_is_detection_error(self):
        class Broken(FakeYuNet):
            def detect(self, image):
                raise cv2.error("inference failed")

        detector = YuNetFaceDetector("model.onnx", model_factory=lambda *args: Broken(None))
        with pytest.raises(DetectionError):
            detector.detect(noisy_image())
