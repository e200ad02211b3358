"""Face detection used to boost the crop towards people.

Backends, first available wins:
- ultralytics YOLO face model (``SMARTCROP_YOLO_MODEL``)
- ONNX face model through onnxruntime (``SMARTCROP_FACE_ONNX_PATH`` or ``models/*.onnx``)
- OpenCV Haar cascade (``SMARTCROP_FACE_CASCADE_PATH``, ``models/*.xml`` or the one shipped with OpenCV)

Detection is an enhancement: ``detect_regions`` never raises, it logs the
cause and returns no regions. numpy and opencv are installed with the package;
the import guards only let a broken install degrade to no detection.
"""

from __future__ import annotations

import asyncio
import os
from typing import Any, List, Optional, Tuple

from smartcrop_errors import DetectionError, log_err
from smartcrop_types import BoundingBox, ImageSource

try:
    import numpy as np
except Exception:  # noqa: BLE001
    np = None

try:
    import cv2  # type: ignore
except Exception:  # noqa: BLE001
    cv2 = None

try:
    import onnxruntime as ort  # type: ignore
except Exception:  # noqa: BLE001
    ort = None

try:
    from ultralytics import YOLO
except Exception:  # noqa: BLE001
    YOLO = None

# Every detected face boosts the crop equally; detector confidence only filters.
DEFAULT_FACE_WEIGHT = 1.0
DEFAULT_MIN_SCORE = 0.25
ONNX_INPUT_SIZE = 640
NMS_THRESHOLD = 0.45

MODEL_DIRS = (
    "models",
    os.path.join(os.path.dirname(os.path.abspath(__file__)), "models"),
)

RawBox = Tuple[int, int, int, int, float]


def _min_score() -> float:
    try:
        return float(os.getenv("SMARTCROP_FACE_MIN_SCORE", DEFAULT_MIN_SCORE))
    except ValueError:
        return DEFAULT_MIN_SCORE


def get_yolo_device() -> str:
    device = os.getenv("SMARTCROP_YOLO_DEVICE", "cpu").strip()
    return device or "cpu"


def _model_candidates(env_name: str, filenames: Tuple[str, ...]) -> List[str]:
    candidates = []
    env_path = os.environ.get(env_name, "").strip()
    if env_path:
        candidates.append(env_path)
    for folder in MODEL_DIRS:
        candidates.extend(os.path.join(folder, name) for name in filenames)
    return candidates


class NullDetector:
    """Detection disabled: no regions, no model loading."""

    def detect(self, source: ImageSource) -> List[BoundingBox]:
        return []


class FaceDetector:
    def __init__(self, min_score: Optional[float] = None) -> None:
        self.min_score = _min_score() if min_score is None else min_score
        self._backend: Any = None
        self._backend_name = ""

    def _load_backend(self) -> None:
        if self._backend is not None:
            return

        yolo_model = os.getenv("SMARTCROP_YOLO_MODEL", "").strip()
        if yolo_model and YOLO is not None:
            self._backend = YOLO(yolo_model)
            self._backend_name = "yolo"
            return

        if ort is not None:
            for path in _model_candidates("SMARTCROP_FACE_ONNX_PATH", ("face.onnx", "yolov5n-face.onnx")):
                if not os.path.exists(path):
                    continue
                try:
                    self._backend = ort.InferenceSession(path, providers=["CPUExecutionProvider"])
                    self._backend_name = "onnx"
                    return
                except Exception as err:  # noqa: BLE001
                    log_err(f"cannot load face model {path}: {err}")

        cascade_dir = getattr(getattr(cv2, "data", None), "haarcascades", "")
        candidates = _model_candidates("SMARTCROP_FACE_CASCADE_PATH", ("haarcascade_frontalface_default.xml",))
        candidates.append(os.path.join(cascade_dir, "haarcascade_frontalface_default.xml"))
        for path in candidates:
            if not path or not os.path.exists(path):
                continue
            cascade = cv2.CascadeClassifier(path)
            if not cascade.empty():
                self._backend = cascade
                self._backend_name = "cascade"
                return

        raise DetectionError("no face detection model available")

    def detect(self, source: ImageSource) -> List[BoundingBox]:
        bgr = _decode_bgr(source)
        self._load_backend()
        if self._backend_name == "yolo":
            raw = self._yolo_boxes(bgr)
        elif self._backend_name == "onnx":
            raw = self._onnx_boxes(bgr)
        else:
            raw = self._cascade_boxes(bgr)

        h, w = bgr.shape[:2]
        boxes = []
        for x1, y1, x2, y2, _score in raw:
            x1, x2 = max(0, min(x1, w)), max(0, min(x2, w))
            y1, y2 = max(0, min(y1, h)), max(0, min(y2, h))
            if x2 <= x1 or y2 <= y1:
                continue
            boxes.append(BoundingBox(x=x1, y=y1, width=x2 - x1, height=y2 - y1, weight=DEFAULT_FACE_WEIGHT))
        return boxes

    def _yolo_boxes(self, bgr: Any) -> List[RawBox]:
        results = self._backend.predict(bgr, conf=self.min_score, device=get_yolo_device(), verbose=False)
        result = results[0]
        if result.boxes is None or len(result.boxes) == 0:
            return []
        xyxy = result.boxes.xyxy.cpu().numpy()
        scores = result.boxes.conf.cpu().numpy()
        return [
            (int(round(b[0])), int(round(b[1])), int(round(b[2])), int(round(b[3])), float(s))
            for b, s in zip(xyxy, scores)
        ]

    def _onnx_boxes(self, bgr: Any) -> List[RawBox]:
        h, w = bgr.shape[:2]
        resized = cv2.resize(bgr, (ONNX_INPUT_SIZE, ONNX_INPUT_SIZE), interpolation=cv2.INTER_AREA)
        rgb = cv2.cvtColor(resized, cv2.COLOR_BGR2RGB).astype(np.float32) / 255.0
        tensor = np.transpose(rgb, (2, 0, 1))[None, :, :, :]

        input_name = self._backend.get_inputs()[0].name
        outputs = self._backend.run(None, {input_name: tensor})

        raw: List[RawBox] = []
        for out in outputs:
            raw.extend(yolo_like_boxes(np.asarray(out), ONNX_INPUT_SIZE, ONNX_INPUT_SIZE, self.min_score))
        if not raw:
            return []

        sx = float(w) / float(ONNX_INPUT_SIZE)
        sy = float(h) / float(ONNX_INPUT_SIZE)
        return [
            (int(round(x1 * sx)), int(round(y1 * sy)), int(round(x2 * sx)), int(round(y2 * sy)), score)
            for x1, y1, x2, y2, score in _nms(raw, self.min_score)
        ]

    def _cascade_boxes(self, bgr: Any) -> List[RawBox]:
        h, w = bgr.shape[:2]
        gray = cv2.cvtColor(bgr, cv2.COLOR_BGR2GRAY)
        min_side = max(16, int(round(min(w, h) * 0.06)))
        faces = self._backend.detectMultiScale(
            gray,
            scaleFactor=1.1,
            minNeighbors=4,
            minSize=(min_side, min_side),
            flags=cv2.CASCADE_SCALE_IMAGE,
        )
        if faces is None or len(faces) == 0:
            return []
        # The cascade gives no confidence.
        return [(int(x), int(y), int(x + fw), int(y + fh), 1.0) for x, y, fw, fh in faces]


def _decode_bgr(source: ImageSource) -> Any:
    # Stored pixel order, like the analyzer and renderer; EXIF orientation is applied after the crop.
    flags = cv2.IMREAD_COLOR | cv2.IMREAD_IGNORE_ORIENTATION
    if source.data is not None:
        bgr = cv2.imdecode(np.frombuffer(source.data, dtype=np.uint8), flags)
    else:
        bgr = cv2.imread(source.path, flags)
    if bgr is None or bgr.size == 0:
        raise DetectionError(f"cannot decode {source.name} for face detection")
    return bgr


def yolo_like_boxes(output: Any, input_w: int, input_h: int, min_score: float) -> List[RawBox]:
    """Parse a YOLO-style output tensor, either xyxy+score or cx,cy,w,h,obj,cls..."""
    boxes: List[RawBox] = []
    arr = output
    if arr.ndim == 3 and arr.shape[0] == 1:
        arr = arr[0]
    if arr.ndim != 2 or arr.shape[1] < 5 or arr.shape[0] == 0:
        return boxes

    xyxy_like = float(np.mean((arr[:, 2] > arr[:, 0]) & (arr[:, 3] > arr[:, 1])))
    for row in arr:
        a, b, c, d = float(row[0]), float(row[1]), float(row[2]), float(row[3])
        score = float(row[4])
        if arr.shape[1] > 5:
            cls_prob = float(np.max(row[5:]))
            if cls_prob > 0.0:
                score *= cls_prob
        if score < min_score:
            continue
        if xyxy_like > 0.9:
            x1, y1, x2, y2 = a, b, c, d
        else:
            x1, y1, x2, y2 = a - c / 2.0, b - d / 2.0, a + c / 2.0, b + d / 2.0
        if max(abs(x1), abs(y1), abs(x2), abs(y2)) <= 1.5:
            x1, x2 = x1 * input_w, x2 * input_w
            y1, y2 = y1 * input_h, y2 * input_h
        boxes.append((int(round(x1)), int(round(y1)), int(round(x2)), int(round(y2)), score))
    return boxes


def _nms(raw: List[RawBox], min_score: float) -> List[RawBox]:
    rects = [[x1, y1, max(1, x2 - x1), max(1, y2 - y1)] for x1, y1, x2, y2, _ in raw]
    scores = [float(box[4]) for box in raw]
    indices = cv2.dnn.NMSBoxes(rects, scores, score_threshold=min_score, nms_threshold=NMS_THRESHOLD)
    if indices is None or len(indices) == 0:
        return raw
    keep = [int(np.asarray(i).reshape(-1)[0]) for i in indices]
    return [raw[i] for i in sorted(keep)]


def build_detector(enabled: bool) -> Any:
    """Pick the detector variant once, at configuration time."""
    if not enabled:
        return NullDetector()
    if cv2 is None or np is None:
        log_err("opencv is not available, skipping faceDetection")
        return NullDetector()
    return FaceDetector()


async def detect_regions(detector: Any, source: ImageSource) -> List[BoundingBox]:
    try:
        return list(await asyncio.to_thread(detector.detect, source))
    except Exception as err:  # noqa: BLE001
        log_err(f"Face detection failed: {err}")
        log_err("skipping faceDetection")
        return []
