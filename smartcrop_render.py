"""Render a chosen crop: crop, resize, sharpen, sRGB, orient, strip, encode."""

from __future__ import annotations

import io
import os
from typing import Any

from PIL import Image, ImageCms, ImageFilter, UnidentifiedImageError

from smartcrop_errors import RenderError
from smartcrop_types import CropRect, ImageSource, RenderOptions

try:
    import pillow_avif  # noqa: F401
except Exception:
    pillow_avif = None

# ImageMagick unsharp "2x0.5+1+0.008": sigma 0.5, amount 100%, threshold 0.008 * 255.
UNSHARP = ImageFilter.UnsharpMask(radius=0.5, percent=100, threshold=2)

LOSSY_FORMATS = ("JPEG", "WEBP", "AVIF")
ALPHA_FORMATS = ("PNG", "WEBP", "AVIF", "TIFF", "GIF")
EXIF_ORIENTATION = 0x0112

_ORIENTATION_TRANSPOSE = {
    2: Image.Transpose.FLIP_LEFT_RIGHT,
    3: Image.Transpose.ROTATE_180,
    4: Image.Transpose.FLIP_TOP_BOTTOM,
    5: Image.Transpose.TRANSPOSE,
    6: Image.Transpose.ROTATE_270,
    7: Image.Transpose.TRANSVERSE,
    8: Image.Transpose.ROTATE_90,
}


def clamp_quality(value: int) -> int:
    return max(1, min(100, int(value)))


def pil_format(name: str) -> str:
    """Map ``jpg``, ``png``, ``.webp``, ... to a Pillow format name."""
    ext = "." + name.strip().lower().lstrip(".")
    fmt = Image.registered_extensions().get(ext)
    if fmt is None:
        raise RenderError(f"unsupported output format: {name}")
    return fmt


def format_for_path(path: str, fallback: str) -> str:
    ext = os.path.splitext(path)[1].lower()
    if ext and ext in Image.registered_extensions():
        return ext[1:]
    return fallback


def _orientation(img: Image.Image) -> int:
    try:
        return int(img.getexif().get(EXIF_ORIENTATION, 1))
    except Exception:  # noqa: BLE001
        return 1


def _working_mode(img: Image.Image) -> Image.Image:
    if img.mode in ("RGB", "RGBA", "L", "LA", "CMYK"):
        return img
    has_alpha = img.mode in ("PA", "RGBa", "La") or "transparency" in img.info
    return img.convert("RGBA" if has_alpha else "RGB")


def _to_srgb(img: Image.Image, icc_profile: bytes | None) -> Image.Image:
    alpha = img.getchannel("A") if img.mode in ("RGBA", "LA") else None
    base = img.convert("RGB") if img.mode in ("RGBA", "LA") else img
    if icc_profile:
        try:
            src = ImageCms.ImageCmsProfile(io.BytesIO(icc_profile))
            base = ImageCms.profileToProfile(base, src, ImageCms.createProfile("sRGB"), outputMode="RGB")
        except (ImageCms.PyCMSError, OSError, ValueError):
            base = base.convert("RGB")
    else:
        base = base.convert("RGB")
    if alpha is not None:
        base.putalpha(alpha)
    return base


def _for_encoder(img: Image.Image, fmt: str) -> Image.Image:
    if img.mode == "RGBA" and fmt not in ALPHA_FORMATS:
        flat = Image.new("RGB", img.size, (255, 255, 255))
        flat.paste(img, mask=img.getchannel("A"))
        return flat
    return img


def render_image(img: Image.Image, crop: CropRect, width: int, height: int) -> Image.Image:
    if width <= 0 or height <= 0:
        raise RenderError(f"invalid output size {width}x{height}")
    if crop.width <= 0 or crop.height <= 0:
        raise RenderError(f"invalid crop rectangle {crop.to_dict()}")
    if crop.x < 0 or crop.y < 0 or crop.x + crop.width > img.width or crop.y + crop.height > img.height:
        raise RenderError(f"crop {crop.to_dict()} is outside the {img.width}x{img.height} image")

    icc_profile = img.info.get("icc_profile")
    orientation = _orientation(img)

    out = _working_mode(img).crop(crop.box)
    out = out.resize((width, height), Image.Resampling.LANCZOS)
    out = out.filter(UNSHARP)
    out = _to_srgb(out, icc_profile)
    transpose = _ORIENTATION_TRANSPOSE.get(orientation)
    if transpose is not None:
        out = out.transpose(transpose)
    # Strip: nothing from the source (EXIF, ICC, comments) reaches the encoder.
    out.info = {}
    return out


def encode_image(img: Image.Image, options: RenderOptions) -> bytes:
    fmt = pil_format(options.output_format)
    save_kwargs: dict[str, Any] = {}
    if options.quality and fmt in LOSSY_FORMATS:
        save_kwargs["quality"] = clamp_quality(options.quality)
    output = io.BytesIO()
    try:
        _for_encoder(img, fmt).save(output, format=fmt, **save_kwargs)
    except (OSError, ValueError, KeyError) as err:
        raise RenderError(f"cannot encode {fmt}: {err}") from err
    return output.getvalue()


def render_crop(source: ImageSource, crop: CropRect, width: int, height: int, options: RenderOptions) -> bytes:
    """Cut ``crop`` out of ``source`` and encode it at ``width`` x ``height``."""
    try:
        with source.open() as img:
            img.load()
            rendered = render_image(img, crop, width, height)
    except RenderError:
        raise
    except (UnidentifiedImageError, OSError, ValueError) as err:
        raise RenderError(f"cannot render {source.name}: {err}") from err
    return encode_image(rendered, options)
