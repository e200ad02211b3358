"""Command-line options, JSON config file layer and the fixed-precedence merge.

Precedence, lowest to highest: ``DEFAULT_OPTIONS`` < config file < CLI flags.
Every option the CLI does not know is forwarded verbatim to the crop analyzer.
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Sequence

from smartcrop_errors import ConfigError
from smartcrop_types import BoundingBox

STREAM_SENTINEL = "-"

DEFAULT_OPTIONS: Mapping[str, Any] = MappingProxyType(
    {
        "quality": 90,
        "outputFormat": "jpg",
        "faceDetection": False,
    }
)

# Pipeline control only, never forwarded to the analyzer.
RESERVED_KEYS = frozenset({"config", "quality", "faceDetection", "outputFormat"})

KNOWN_OPTIONS = frozenset({"width", "height", "faceDetection", "outputFormat", "quality", "config"})

_TRUE_WORDS = ("true", "yes", "on", "1")
_FALSE_WORDS = ("false", "no", "off", "0")
_NUMBER_RE = re.compile(r"^-?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?$")


@dataclass(frozen=True)
class CropConfig:
    width: int | None = None
    height: int | None = None
    face_detection: bool = False
    output_format: str = "jpg"
    quality: int | None = 90
    crop_options: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def has_size(self) -> bool:
        return bool(self.width) and bool(self.height)


def camel_case(name: str) -> str:
    head, *rest = name.split("-")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def parse_bool(text: Any) -> bool:
    if isinstance(text, bool):
        return text
    lowered = str(text).strip().lower()
    if lowered in _TRUE_WORDS:
        return True
    if lowered in _FALSE_WORDS:
        return False
    raise argparse.ArgumentTypeError(f"expected a boolean, got {text!r}")


def parse_value(text: str) -> Any:
    stripped = text.strip()
    lowered = stripped.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if stripped.startswith(("[", "{")):
        try:
            return json.loads(stripped)
        except json.JSONDecodeError:
            return text
    if _NUMBER_RE.match(stripped):
        try:
            return int(stripped)
        except ValueError:
            return float(stripped)
    return text


def _is_bool_word(token: str) -> bool:
    return token.strip().lower() in _TRUE_WORDS + _FALSE_WORDS


def _takes_value(token: str) -> bool:
    # "-" alone is the stdin/stdout sentinel, not a value.
    if token == STREAM_SENTINEL:
        return False
    return not token.startswith("-") or bool(_NUMBER_RE.match(token))


def split_forwarded_options(argv: Sequence[str]) -> tuple[list[str], dict[str, Any]]:
    """Pull unknown ``--name [value]`` options out of ``argv``.

    Returns the arguments argparse should see (known options rewritten to
    their camelCase spelling) and the forwarded options with coerced values.
    """
    passthrough: list[str] = []
    forwarded: dict[str, Any] = {}
    i = 0
    while i < len(argv):
        token = argv[i]
        if token == "--":
            passthrough.extend(argv[i:])
            break
        if not token.startswith("--"):
            passthrough.append(token)
            i += 1
            continue

        name, has_value, value = token[2:].partition("=")
        key = camel_case(name)
        nxt = argv[i + 1] if i + 1 < len(argv) else None

        if key == "help":
            passthrough.append(token)
        elif key in ("faceDetection", "noFaceDetection"):
            if key == "noFaceDetection":
                flag = "false"
            elif has_value:
                flag = value
            elif nxt is not None and _is_bool_word(nxt):
                flag = nxt
                i += 1
            else:
                flag = "true"
            passthrough.append(f"--faceDetection={flag}")
        elif key in KNOWN_OPTIONS:
            passthrough.append(f"--{key}={value}" if has_value else f"--{key}")
        elif has_value:
            forwarded[key] = parse_value(value)
        elif key.startswith("no") and key[2:3].isupper():
            forwarded[key[2].lower() + key[3:]] = False
        elif nxt is not None and _takes_value(nxt):
            forwarded[key] = parse_value(nxt)
            i += 1
        else:
            forwarded[key] = True
        i += 1
    return passthrough, forwarded


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="smartcrop",
        usage="%(prog)s [OPTION] FILE [OUTPUT]",
        description="Find the best crop of an image and optionally render it.",
        epilog=(
            "example:\n"
            "  smartcrop --width 100 --height 100 photo.jpg square-thumbnail.jpg\n"
            "    generate a 100x100 thumbnail from photo.jpg\n\n"
            "Any other --name value is forwarded as an option to the crop analyzer."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("input", metavar="FILE", help="input image, '-' reads stdin")
    parser.add_argument(
        "output",
        metavar="OUTPUT",
        nargs="?",
        default=None,
        help="output image, '-' writes to stdout; omit to print the crop report only",
    )
    parser.add_argument("--config", default=None, help="path to a config.json")
    parser.add_argument("--width", type=int, default=None, help="width of the crop")
    parser.add_argument("--height", type=int, default=None, help="height of the crop")
    parser.add_argument(
        "--faceDetection",
        type=parse_bool,
        default=None,
        help="bias the crop towards detected faces (default: false)",
    )
    parser.add_argument("--outputFormat", default=None, help="output image format (default: jpg)")
    parser.add_argument("--quality", type=int, default=None, help="quality of the output image (default: 90)")
    return parser


def parse_args(argv: Sequence[str]) -> tuple[argparse.Namespace, dict[str, Any]]:
    passthrough, forwarded = split_forwarded_options(list(argv))
    args = build_arg_parser().parse_args(passthrough)
    return args, forwarded


def cli_options(args: argparse.Namespace, forwarded: Mapping[str, Any]) -> dict[str, Any]:
    """CLI layer of the merge; ``None`` means the flag was not given."""
    options: dict[str, Any] = dict(forwarded)
    options.update(
        {
            "width": args.width,
            "height": args.height,
            "faceDetection": args.faceDetection,
            "outputFormat": args.outputFormat,
            "quality": args.quality,
            "config": args.config,
        }
    )
    return options


def load_config_file(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            payload = json.load(fh)
    except OSError as err:
        raise ConfigError(f"cannot read config file {path}: {err}") from err
    except json.JSONDecodeError as err:
        raise ConfigError(f"config file {path} is not valid JSON: {err}") from err
    if not isinstance(payload, dict):
        raise ConfigError(f"config file {path} must contain a JSON object")
    return payload


def _optional_int(name: str, value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as err:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from err


def _boost_boxes(value: Any) -> tuple[BoundingBox, ...]:
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"boost must be a list of regions, got {type(value).__name__}")
    boxes: list[BoundingBox] = []
    for item in value:
        if isinstance(item, BoundingBox):
            boxes.append(item)
            continue
        try:
            boxes.append(BoundingBox.from_mapping(item))
        except (KeyError, TypeError, ValueError, AttributeError) as err:
            raise ConfigError(f"invalid boost region {item!r}: {err}") from err
    return tuple(boxes)


def merge_options(
    cli: Mapping[str, Any],
    file_options: Mapping[str, Any] | None = None,
    defaults: Mapping[str, Any] = DEFAULT_OPTIONS,
) -> CropConfig:
    merged: dict[str, Any] = dict(defaults)
    merged.update(file_options or {})
    merged.update({key: value for key, value in cli.items() if value is not None})

    width = _optional_int("width", merged.get("width"))
    height = _optional_int("height", merged.get("height"))
    quality = _optional_int("quality", merged.get("quality"))

    crop_options = {key: value for key, value in merged.items() if key not in RESERVED_KEYS}
    if width is not None:
        crop_options["width"] = width
    if height is not None:
        crop_options["height"] = height
    if "boost" in crop_options:
        crop_options["boost"] = _boost_boxes(crop_options["boost"])

    try:
        face_detection = parse_bool(merged.get("faceDetection", False))
    except argparse.ArgumentTypeError as err:
        raise ConfigError(f"faceDetection: {err}") from err

    return CropConfig(
        width=width,
        height=height,
        face_detection=face_detection,
        output_format=str(merged.get("outputFormat") or "jpg"),
        # 0 means "renderer default", as an unset quality does.
        quality=quality or None,
        crop_options=MappingProxyType(crop_options),
    )


def build_config(args: argparse.Namespace, forwarded: Mapping[str, Any]) -> CropConfig:
    file_options = load_config_file(args.config) if args.config else {}
    return merge_options(cli_options(args, forwarded), file_options)


def apply_detections(config: CropConfig, boxes: Sequence[BoundingBox]) -> CropConfig:
    """Detected regions replace any configured boost; no detections keeps it."""
    if not boxes:
        return config
    crop_options = dict(config.crop_options)
    crop_options["boost"] = tuple(boxes)
    return dataclasses.replace(config, crop_options=MappingProxyType(crop_options))
