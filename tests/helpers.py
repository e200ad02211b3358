from __future__ import annotations

import io

import numpy as np
from PIL import Image


def make_image(width: int = 400, height: int = 200, detail_box=None, seed: int = 7) -> Image.Image:
    """Flat gray image, optionally with a patch of noise where the detail is."""
    arr = np.full((height, width, 3), 96, dtype=np.uint8)
    if detail_box is not None:
        x, y, w, h = detail_box
        rng = np.random.default_rng(seed)
        arr[y : y + h, x : x + w] = rng.integers(0, 256, size=(h, w, 3), dtype=np.uint8)
    return Image.fromarray(arr)


def image_bytes(img: Image.Image, fmt: str = "PNG") -> bytes:
    out = io.BytesIO()
    img.save(out, format=fmt)
    return out.getvalue()
