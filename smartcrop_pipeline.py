"""One smartcrop run: resolve input, detect faces, merge, analyze, dispatch output.

Every stage is awaited in order; blocking work runs in a worker thread so the
event loop only sequences it. The first unrecovered error ends the chain.
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from typing import Any, BinaryIO, Mapping, Optional, TextIO

from smartcrop_engine import SmartCropAnalyzer
from smartcrop_errors import AnalysisError, InputError, RenderError, SmartCropError, WriteError
from smartcrop_faces import build_detector, detect_regions
from smartcrop_options import STREAM_SENTINEL, CropConfig, apply_detections
from smartcrop_render import format_for_path, render_crop
from smartcrop_types import CropResult, ImageSource, RenderOptions


async def resolve_input(descriptor: str, stream: Optional[BinaryIO] = None) -> ImageSource:
    if descriptor == STREAM_SENTINEL:
        stream = stream if stream is not None else sys.stdin.buffer
        try:
            data = await asyncio.to_thread(stream.read)
        except (OSError, ValueError) as err:
            raise InputError(f"failed to read image from stdin: {err}") from err
        if not data:
            raise InputError("no image data on stdin")
        return ImageSource(data=bytes(data))

    if not os.path.isfile(descriptor):
        raise InputError(f"input image not found: {descriptor}")
    return ImageSource(path=descriptor)


async def analyze_crop(analyzer: Any, source: ImageSource, options: Mapping[str, Any]) -> CropResult:
    try:
        return await asyncio.to_thread(analyzer.analyze, source, options)
    except SmartCropError:
        raise
    except Exception as err:  # noqa: BLE001
        raise AnalysisError(f"crop analysis failed for {source.name}: {err}") from err


def format_report(result: CropResult) -> str:
    return json.dumps(result.to_dict(), indent=2)


async def _render(renderer: Any, source: ImageSource, result: CropResult, config: CropConfig, output_format: str) -> bytes:
    options = RenderOptions(output_format=output_format, quality=config.quality)
    try:
        return await asyncio.to_thread(renderer, source, result.top_crop, config.width, config.height, options)
    except SmartCropError:
        raise
    except Exception as err:  # noqa: BLE001
        raise RenderError(f"rendering {source.name} failed: {err}") from err


def _write_file(path: str, data: bytes) -> None:
    with open(path, "wb") as fh:
        fh.write(data)


async def dispatch_output(
    result: CropResult,
    config: CropConfig,
    source: ImageSource,
    output: Optional[str],
    renderer: Any = render_crop,
    report_stream: Optional[TextIO] = None,
    binary_stream: Optional[BinaryIO] = None,
) -> None:
    # Stdout carries image bytes when streaming, so the report goes nowhere then.
    if output != STREAM_SENTINEL:
        print(format_report(result), file=report_stream if report_stream is not None else sys.stdout)

    if not output or not config.has_size:
        return

    if output == STREAM_SENTINEL:
        data = await _render(renderer, source, result, config, config.output_format)
        stream = binary_stream if binary_stream is not None else sys.stdout.buffer
        try:
            stream.write(data)
            stream.flush()
        except (OSError, ValueError) as err:
            raise WriteError(f"cannot write image to stdout: {err}") from err
        return

    data = await _render(renderer, source, result, config, format_for_path(output, config.output_format))
    try:
        await asyncio.to_thread(_write_file, output, data)
    except OSError as err:
        raise WriteError(f"cannot write {output}: {err}") from err


async def run_pipeline(
    config: CropConfig,
    input_descriptor: str,
    output: Optional[str] = None,
    analyzer: Any = None,
    detector: Any = None,
    renderer: Any = render_crop,
    input_stream: Optional[BinaryIO] = None,
    report_stream: Optional[TextIO] = None,
    binary_stream: Optional[BinaryIO] = None,
) -> CropResult:
    analyzer = analyzer if analyzer is not None else SmartCropAnalyzer()
    if detector is None or not config.face_detection:
        detector = build_detector(config.face_detection)

    source = await resolve_input(input_descriptor, input_stream)
    boxes = await detect_regions(detector, source)
    config = apply_detections(config, boxes)
    result = await analyze_crop(analyzer, source, config.crop_options)
    await dispatch_output(
        result,
        config,
        source,
        output,
        renderer=renderer,
        report_stream=report_stream,
        binary_stream=binary_stream,
    )
    return result
