"""Content-aware crop scoring.

Builds an importance map from edge detail, skin tones, saturation and boost
regions, slides candidate windows of the target aspect ratio over it and keeps
the best-scoring one. Option names follow the smartcrop conventions
(``minScale``, ``ruleOfThirds``, ...) so they can be forwarded from the CLI.
"""

from __future__ import annotations

import math
from typing import Any, Iterable, Mapping

import numpy as np
from PIL import Image, UnidentifiedImageError

from smartcrop_errors import AnalysisError
from smartcrop_types import BoundingBox, CropRect, CropResult, ImageSource

DEFAULT_SETTINGS: dict[str, Any] = {
    "width": 0,
    "height": 0,
    "aspect": 0,
    "cropWidth": 0,
    "cropHeight": 0,
    "detailWeight": 0.2,
    "skinColor": (0.78, 0.57, 0.44),
    "skinBias": 0.01,
    "skinBrightnessMin": 0.2,
    "skinBrightnessMax": 1.0,
    "skinThreshold": 0.8,
    "skinWeight": 1.8,
    "saturationBrightnessMin": 0.05,
    "saturationBrightnessMax": 0.9,
    "saturationThreshold": 0.4,
    "saturationBias": 0.2,
    "saturationWeight": 0.1,
    "scoreDownSample": 8,
    "step": 8,
    "scaleStep": 0.1,
    "minScale": 1.0,
    "maxScale": 1.0,
    "edgeRadius": 0.4,
    "edgeWeight": -20.0,
    "outsideImportance": -0.5,
    "boostWeight": 100.0,
    "ruleOfThirds": True,
    "prescale": True,
}

PRESCALE_SIDE = 256
MAX_CANDIDATES = 20000


def _settings(options: Mapping[str, Any]) -> dict[str, Any]:
    settings = dict(DEFAULT_SETTINGS)
    for key, default in DEFAULT_SETTINGS.items():
        value = options.get(key)
        if value is None:
            continue
        try:
            if isinstance(default, bool):
                settings[key] = value if isinstance(value, bool) else str(value).strip().lower() == "true"
            elif isinstance(default, tuple):
                settings[key] = tuple(float(v) for v in value)
            else:
                settings[key] = float(value)
        except (TypeError, ValueError) as err:
            raise AnalysisError(f"invalid value for {key}: {value!r}") from err
    settings["boost"] = _boost_list(options.get("boost") or ())
    return settings


def _boost_list(items: Iterable[Any]) -> list[BoundingBox]:
    boxes = []
    for item in items:
        if isinstance(item, BoundingBox):
            boxes.append(item)
        else:
            try:
                boxes.append(BoundingBox.from_mapping(item))
            except (KeyError, TypeError, ValueError, AttributeError) as err:
                raise AnalysisError(f"invalid boost region {item!r}") from err
    return boxes


def _load_rgb(source: ImageSource) -> Image.Image:
    try:
        with source.open() as img:
            return img.convert("RGB")
    except FileNotFoundError as err:
        raise AnalysisError(f"image not found: {source.name}") from err
    except (UnidentifiedImageError, OSError, ValueError) as err:
        raise AnalysisError(f"cannot decode image {source.name}: {err}") from err


def _luminance(rgb: np.ndarray) -> np.ndarray:
    # Channel weights as used by the reference smartcrop scorer.
    return 0.5126 * rgb[..., 2] + 0.7152 * rgb[..., 1] + 0.0722 * rgb[..., 0]


def _edge_detail(lum: np.ndarray) -> np.ndarray:
    detail = lum.copy()
    detail[1:-1, 1:-1] = (
        4.0 * lum[1:-1, 1:-1] - lum[:-2, 1:-1] - lum[2:, 1:-1] - lum[1:-1, :-2] - lum[1:-1, 2:]
    )
    return detail


def _skin_channel(rgb: np.ndarray, lightness: np.ndarray, s: dict[str, Any]) -> np.ndarray:
    mag = np.sqrt(np.sum(rgb * rgb, axis=2))
    safe = np.where(mag > 0, mag, 1.0)
    diff = rgb / safe[..., None] - np.asarray(s["skinColor"], dtype=np.float64)
    skin = 1.0 - np.sqrt(np.sum(diff * diff, axis=2))
    threshold = s["skinThreshold"]
    mask = (
        (mag > 0)
        & (skin > threshold)
        & (lightness >= s["skinBrightnessMin"])
        & (lightness <= s["skinBrightnessMax"])
    )
    return np.where(mask, (skin - threshold) * (255.0 / (1.0 - threshold)), 0.0)


def _saturation_channel(rgb: np.ndarray, lightness: np.ndarray, s: dict[str, Any]) -> np.ndarray:
    high = rgb.max(axis=2) / 255.0
    low = rgb.min(axis=2) / 255.0
    light = (high + low) / 2.0
    spread = high - low
    denom = np.where(light > 0.5, 2.0 - high - low, high + low)
    sat = np.divide(spread, denom, out=np.zeros_like(spread), where=(spread > 0) & (denom > 0))
    threshold = s["saturationThreshold"]
    mask = (
        (sat > threshold)
        & (lightness >= s["saturationBrightnessMin"])
        & (lightness <= s["saturationBrightnessMax"])
    )
    return np.where(mask, (sat - threshold) * (255.0 / (1.0 - threshold)), 0.0)


def _boost_channel(shape: tuple[int, int], boosts: list[BoundingBox], prescale: float) -> np.ndarray:
    channel = np.zeros(shape, dtype=np.float64)
    for box in boosts:
        x0 = int(box.x * prescale)
        y0 = int(box.y * prescale)
        x1 = x0 + int(box.width * prescale)
        y1 = y0 + int(box.height * prescale)
        if x1 <= 0 or y1 <= 0:
            continue
        channel[max(0, y0) : y1, max(0, x0) : x1] += box.weight * 255.0
    return channel


def _importance_channels(rgb: np.ndarray, boosts: list[BoundingBox], prescale: float, s: dict[str, Any]) -> np.ndarray:
    """Stack of (skin, detail, saturation, boost) bytes, shape (h, w, 4)."""
    lum = _luminance(rgb)
    lightness = lum / 255.0
    channels = np.stack(
        [
            _skin_channel(rgb, lightness, s),
            _edge_detail(lum),
            _saturation_channel(rgb, lightness, s),
            _boost_channel(lum.shape, boosts, prescale),
        ],
        axis=2,
    )
    return np.clip(np.round(channels), 0, 255)


def _down_sample(channels: np.ndarray, factor: int) -> np.ndarray:
    rows = channels.shape[0] // factor
    cols = channels.shape[1] // factor
    if rows == 0 or cols == 0:
        return np.zeros((rows, cols, 4), dtype=np.float64)
    blocks = channels[: rows * factor, : cols * factor].reshape(rows, factor, cols, factor, 4)
    mean = blocks.mean(axis=(1, 3))
    peak = blocks.max(axis=(1, 3))
    out = mean * 0.5 + peak * 0.5
    out[..., 3] = mean[..., 3]
    return out


def _generate_crops(image_w: int, image_h: int, crop_w: float, crop_h: float, s: dict[str, Any]) -> list[tuple[float, float, float, float]]:
    step = int(s["step"])
    scale_step = s["scaleStep"]
    if step <= 0 or scale_step <= 0:
        raise AnalysisError("step and scaleStep must be positive")

    crops: list[tuple[float, float, float, float]] = []
    scale = s["maxScale"]
    while scale >= s["minScale"]:
        w = crop_w * scale
        h = crop_h * scale
        y = 0
        while y + h <= image_h:
            x = 0
            while x + w <= image_w:
                crops.append((float(x), float(y), w, h))
                x += step
            y += step
        if len(crops) > MAX_CANDIDATES:
            raise AnalysisError(f"too many crop candidates ({len(crops)}); raise step or scaleStep")
        scale -= scale_step
    return crops


def _thirds(values: np.ndarray) -> np.ndarray:
    shifted = (np.mod(values - 1.0 / 3.0 + 1.0, 2.0) * 0.5 - 0.5) * 16.0
    return np.maximum(1.0 - shifted * shifted, 0.0)


def _importance(crop: tuple[float, float, float, float], xs: np.ndarray, ys: np.ndarray, s: dict[str, Any]) -> np.ndarray:
    cx, cy, cw, ch = crop
    inside = (xs >= cx) & (xs < cx + cw) & (ys >= cy) & (ys < cy + ch)
    px = np.abs(0.5 - (xs - cx) / cw) * 2.0
    py = np.abs(0.5 - (ys - cy) / ch) * 2.0
    dx = np.maximum(px - 1.0 + s["edgeRadius"], 0.0)
    dy = np.maximum(py - 1.0 + s["edgeRadius"], 0.0)
    d = (dx * dx + dy * dy) * s["edgeWeight"]
    base = 1.41 - np.sqrt(px * px + py * py)
    if s["ruleOfThirds"]:
        base = base + np.maximum(0.0, base + d + 0.5) * 1.2 * (_thirds(px) + _thirds(py))
    return np.where(inside, base + d, s["outsideImportance"])


def _score(
    maps: np.ndarray, crop: tuple[float, float, float, float], xs: np.ndarray, ys: np.ndarray, s: dict[str, Any]
) -> dict[str, float]:
    importance = _importance(crop, xs, ys, s)
    skin = maps[..., 0] / 255.0
    detail = maps[..., 1] / 255.0
    saturation = maps[..., 2] / 255.0
    boost = maps[..., 3] / 255.0

    score = {
        "detail": float(np.sum(detail * importance)),
        "saturation": float(np.sum(saturation * (detail + s["saturationBias"]) * importance)),
        "skin": float(np.sum(skin * (detail + s["skinBias"]) * importance)),
        "boost": float(np.sum(boost * importance)),
    }
    area = crop[2] * crop[3]
    score["total"] = (
        score["detail"] * s["detailWeight"]
        + score["skin"] * s["skinWeight"]
        + score["saturation"] * s["saturationWeight"]
        + score["boost"] * s["boostWeight"]
    ) / area
    return score


def _to_source_rect(
    crop: tuple[float, float, float, float], score: dict[str, float], prescale: float, image_w: int, image_h: int
) -> CropRect:
    x, y, w, h = (int(math.floor(v / prescale)) for v in crop)
    w = max(1, min(w, image_w))
    h = max(1, min(h, image_h))
    x = max(0, min(x, image_w - w))
    y = max(0, min(y, image_h - h))
    return CropRect(x=x, y=y, width=w, height=h, score=score)


class SmartCropAnalyzer:
    """Default crop analyzer: ``analyze(source, options) -> CropResult``."""

    def analyze(self, source: ImageSource, options: Mapping[str, Any]) -> CropResult:
        s = _settings(options)
        image = _load_rgb(source)
        image_w, image_h = image.size
        if image_w <= 0 or image_h <= 0:
            raise AnalysisError(f"image {source.name} has no pixels")

        width, height = s["width"], s["height"]
        if s["aspect"]:
            width, height = s["aspect"], 1.0
        if width < 0 or height < 0:
            raise AnalysisError("width and height must not be negative")

        crop_w, crop_h = s["cropWidth"], s["cropHeight"]
        prescale = 1.0
        if width and height:
            scale = min(image_w / width, image_h / height)
            crop_w = max(1, math.floor(width * scale))
            crop_h = max(1, math.floor(height * scale))
            s["minScale"] = min(s["maxScale"], max(1.0 / scale, s["minScale"]))
            if s["prescale"]:
                prescale = min(max(PRESCALE_SIDE / image_w, PRESCALE_SIDE / image_h), 1.0)
                if prescale < 1.0:
                    scaled_size = (max(1, int(image_w * prescale)), max(1, int(image_h * prescale)))
                    image = image.resize(scaled_size, Image.Resampling.BILINEAR)
                    crop_w = max(1, math.floor(crop_w * prescale))
                    crop_h = max(1, math.floor(crop_h * prescale))
                else:
                    prescale = 1.0

        work_w, work_h = image.size
        if not crop_w or not crop_h:
            crop_w = crop_h = min(work_w, work_h)

        rgb = np.asarray(image, dtype=np.float64)
        channels = _importance_channels(rgb, s["boost"], prescale, s)
        factor = max(1, int(s["scoreDownSample"]))
        maps = _down_sample(channels, factor)
        ys, xs = np.mgrid[0 : maps.shape[0], 0 : maps.shape[1]]
        xs = xs.astype(np.float64) * factor
        ys = ys.astype(np.float64) * factor

        candidates = _generate_crops(work_w, work_h, crop_w, crop_h, s)
        if not candidates:
            raise AnalysisError(f"no crop of {crop_w}x{crop_h} fits into {work_w}x{work_h}")

        scored = [(crop, _score(maps, crop, xs, ys, s)) for crop in candidates]
        # Stable sort keeps the first candidate on ties.
        scored.sort(key=lambda item: item[1]["total"], reverse=True)
        rects = tuple(_to_source_rect(crop, score, prescale, image_w, image_h) for crop, score in scored)
        return CropResult(top_crop=rects[0], crops=rects)
