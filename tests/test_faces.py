from __future__ import annotations

import asyncio

import numpy as np
from PIL import Image

import smartcrop_faces
from smartcrop_faces import (
    DEFAULT_FACE_WEIGHT,
    FaceDetector,
    NullDetector,
    build_detector,
    detect_regions,
    yolo_like_boxes,
)
from smartcrop_engine import _load_rgb
from smartcrop_types import BoundingBox, ImageSource
from helpers import image_bytes, make_image


def _rotated_jpeg(tmp_path, width=400, height=200):
    exif = Image.Exif()
    exif[0x0112] = 6
    path = tmp_path / "portrait.jpg"
    make_image(width=width, height=height).save(path, exif=exif)
    return str(path)


class _BrokenDetector:
    def detect(self, source):
        raise RuntimeError("model exploded")


class _FixedDetector:
    def __init__(self, boxes):
        self.boxes = boxes
        self.calls = 0

    def detect(self, source):
        self.calls += 1
        return self.boxes


def test_disabled_detection_is_null_detector():
    assert isinstance(build_detector(False), NullDetector)


def test_missing_opencv_disables_detection(monkeypatch, capsys):
    monkeypatch.setattr(smartcrop_faces, "cv2", None)
    assert isinstance(build_detector(True), NullDetector)
    assert "skipping faceDetection" in capsys.readouterr().err


def test_detection_failure_is_soft(photo_bytes, capsys):
    boxes = asyncio.run(detect_regions(_BrokenDetector(), ImageSource(data=photo_bytes)))
    assert boxes == []
    err = capsys.readouterr().err
    assert "Face detection failed: model exploded" in err


def test_detect_regions_returns_detector_boxes(photo_bytes):
    faces = [BoundingBox(1, 2, 3, 4), BoundingBox(5, 6, 7, 8)]
    detector = _FixedDetector(faces)
    assert asyncio.run(detect_regions(detector, ImageSource(data=photo_bytes))) == faces
    assert detector.calls == 1


def test_undecodable_input_is_soft():
    boxes = asyncio.run(detect_regions(FaceDetector(), ImageSource(data=b"not an image")))
    assert boxes == []


def test_face_detector_on_flat_image_finds_nothing(monkeypatch):
    monkeypatch.delenv("SMARTCROP_YOLO_MODEL", raising=False)
    monkeypatch.setattr(smartcrop_faces, "ort", None)
    detector = FaceDetector()
    boxes = asyncio.run(detect_regions(detector, ImageSource(data=image_bytes(make_image(200, 200)))))
    assert boxes == []


def test_boxes_are_clipped_and_weighted(monkeypatch):
    detector = FaceDetector()
    monkeypatch.setattr(detector, "_load_backend", lambda: None)
    monkeypatch.setattr(detector, "_cascade_boxes", lambda bgr: [(-5, 10, 50, 60, 0.9), (390, 0, 420, 30, 0.8), (10, 10, 10, 40, 0.9)])
    boxes = detector.detect(ImageSource(data=image_bytes(make_image(400, 200))))
    assert boxes == [
        BoundingBox(0, 10, 50, 50, DEFAULT_FACE_WEIGHT),
        BoundingBox(390, 0, 10, 30, DEFAULT_FACE_WEIGHT),
    ]


def test_yolo_xyxy_output():
    out = np.array(
        [
            [
                [10.0, 20.0, 110.0, 140.0, 0.9],
                [30.0, 40.0, 60.0, 90.0, 0.1],
            ]
        ]
    )
    assert yolo_like_boxes(out, 640, 640, 0.25) == [(10, 20, 110, 140, 0.9)]


def test_yolo_normalized_center_output():
    out = np.array([[0.5, 0.5, 0.25, 0.5, 0.8, 1.0], [0.6, 0.6, 0.2, 0.2, 0.9, 0.1]])
    boxes = yolo_like_boxes(out, 640, 640, 0.25)
    assert boxes == [(240, 160, 400, 480, 0.8)]


def test_detector_frame_matches_analyzer_for_rotated_jpeg(tmp_path):
    path = _rotated_jpeg(tmp_path)
    with open(path, "rb") as fh:
        data = fh.read()
    for source in (ImageSource(path=path), ImageSource(data=data)):
        height, width = smartcrop_faces._decode_bgr(source).shape[:2]
        assert (width, height) == _load_rgb(source).size == (400, 200)


def test_boxes_stay_in_stored_pixels_for_rotated_jpeg(tmp_path, monkeypatch):
    detector = FaceDetector()
    monkeypatch.setattr(detector, "_load_backend", lambda: None)
    monkeypatch.setattr(detector, "_cascade_boxes", lambda bgr: [(300, 10, 390, 60, 1.0)])
    boxes = detector.detect(ImageSource(path=_rotated_jpeg(tmp_path)))
    assert boxes == [BoundingBox(300, 10, 90, 50, DEFAULT_FACE_WEIGHT)]
