"""Data model shared by the pipeline stages."""

from __future__ import annotations

import io
from dataclasses import dataclass, field
from typing import Any, Mapping

from PIL import Image

STDIN_NAME = "<stdin>"


@dataclass(frozen=True)
class ImageSource:
    """Either a file path (read lazily by each stage) or a fully drained byte buffer."""

    path: str | None = None
    data: bytes | None = None

    def __post_init__(self) -> None:
        if (self.path is None) == (self.data is None):
            raise ValueError("ImageSource needs exactly one of path or data")

    @property
    def name(self) -> str:
        return self.path if self.path is not None else STDIN_NAME

    def open(self) -> Image.Image:
        if self.path is not None:
            return Image.open(self.path)
        return Image.open(io.BytesIO(self.data))


@dataclass(frozen=True)
class BoundingBox:
    x: int
    y: int
    width: int
    height: int
    weight: float = 1.0

    def __post_init__(self) -> None:
        if self.weight < 0:
            raise ValueError(f"boost weight must be non-negative, got {self.weight}")

    @classmethod
    def from_mapping(cls, item: Mapping[str, Any]) -> "BoundingBox":
        return cls(
            x=int(item["x"]),
            y=int(item["y"]),
            width=int(item["width"]),
            height=int(item["height"]),
            weight=float(item.get("weight", 1.0)),
        )


@dataclass(frozen=True)
class CropRect:
    x: int
    y: int
    width: int
    height: int
    score: Mapping[str, float] = field(default_factory=dict)

    @property
    def box(self) -> tuple[int, int, int, int]:
        """Pillow-style ``(left, upper, right, lower)``."""
        return self.x, self.y, self.x + self.width, self.y + self.height

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
        }
        if self.score:
            out["score"] = {key: float(value) for key, value in self.score.items()}
        return out


@dataclass(frozen=True)
class CropResult:
    top_crop: CropRect
    crops: tuple[CropRect, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "topCrop": self.top_crop.to_dict(),
            "crops": [crop.to_dict() for crop in self.crops],
        }


@dataclass(frozen=True)
class RenderOptions:
    output_format: str = "jpg"
    quality: int | None = None
