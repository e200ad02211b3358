from __future__ import annotations

import pytest
from PIL import Image

from helpers import image_bytes, make_image


@pytest.fixture
def detail_image() -> Image.Image:
    return make_image(detail_box=(300, 40, 80, 120))


@pytest.fixture
def photo_path(tmp_path, detail_image) -> str:
    path = tmp_path / "photo.png"
    detail_image.save(path)
    return str(path)


@pytest.fixture
def photo_bytes(detail_image) -> bytes:
    return image_bytes(detail_image)
