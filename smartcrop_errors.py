"""Error taxonomy for the smartcrop pipeline."""

from __future__ import annotations

import sys


def log_err(message: str) -> None:
    print(message, file=sys.stderr)


class SmartCropError(Exception):
    """Base class for every failure the pipeline reports."""


class InputError(SmartCropError):
    """Stdin could not be drained or the input file is unreadable."""


class ConfigError(SmartCropError):
    """Config file or option values are unusable."""


class DetectionError(SmartCropError):
    """Face detection failed. Always recovered: detection is skipped for the run."""


class AnalysisError(SmartCropError):
    """The crop analyzer rejected the image or the options."""


class RenderError(SmartCropError):
    """Cropping, resizing or encoding the output image failed."""


class WriteError(SmartCropError):
    """The rendered image could not be written to the output path."""
