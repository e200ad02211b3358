from __future__ import annotations

import json

import pytest

from smartcrop_errors import ConfigError
from smartcrop_options import (
    apply_detections,
    build_config,
    merge_options,
    parse_args,
    parse_value,
    split_forwarded_options,
)
from smartcrop_types import BoundingBox


class TestSplitForwardedOptions:
    def test_known_options_stay_for_argparse(self):
        passthrough, forwarded = split_forwarded_options(["--width", "100", "photo.jpg", "out.jpg"])
        assert passthrough == ["--width", "100", "photo.jpg", "out.jpg"]
        assert forwarded == {}

    def test_unknown_options_are_forwarded_and_coerced(self):
        passthrough, forwarded = split_forwarded_options(
            ["--minScale", "0.8", "photo.jpg", "--ruleOfThirds", "false", "--step=4", "--no-prescale", "--debug"]
        )
        assert passthrough == ["photo.jpg"]
        assert forwarded == {
            "minScale": 0.8,
            "ruleOfThirds": False,
            "step": 4,
            "prescale": False,
            "debug": True,
        }

    def test_kebab_case_is_camel_cased(self):
        passthrough, forwarded = split_forwarded_options(["--output-format", "png", "--edge-weight", "-20", "in.jpg"])
        assert passthrough == ["--outputFormat", "png", "in.jpg"]
        assert forwarded == {"edgeWeight": -20}

    def test_face_detection_flag_does_not_swallow_input(self):
        passthrough, _ = split_forwarded_options(["--faceDetection", "photo.jpg"])
        assert passthrough == ["--faceDetection=true", "photo.jpg"]

    def test_face_detection_explicit_value(self):
        passthrough, _ = split_forwarded_options(["--face-detection", "false", "photo.jpg"])
        assert passthrough == ["--faceDetection=false", "photo.jpg"]

    def test_stdin_sentinel_is_not_an_option_value(self):
        passthrough, forwarded = split_forwarded_options(["--debug", "-", "-"])
        assert passthrough == ["-", "-"]
        assert forwarded == {"debug": True}


def test_parse_value_json_and_numbers():
    assert parse_value('[{"x": 1}]') == [{"x": 1}]
    assert parse_value("12") == 12
    assert parse_value("1.5") == 1.5
    assert parse_value("sRGB") == "sRGB"


def test_parse_args_positionals():
    args, forwarded = parse_args(["--width", "100", "--height", "50", "photo.jpg", "-", "--minScale", "0.9"])
    assert args.input == "photo.jpg"
    assert args.output == "-"
    assert args.width == 100
    assert args.height == 50
    assert args.faceDetection is None
    assert forwarded == {"minScale": 0.9}


class TestMergeOptions:
    def test_defaults(self):
        config = merge_options({})
        assert config.quality == 90
        assert config.output_format == "jpg"
        assert config.face_detection is False
        assert config.width is None
        assert not config.has_size

    def test_precedence_defaults_file_cli(self):
        config = merge_options(
            {"quality": 80, "width": None, "height": 60},
            {"quality": 70, "width": 10, "height": 20, "minScale": 0.5, "outputFormat": "png"},
        )
        assert config.quality == 80
        assert config.width == 10
        assert config.height == 60
        assert config.output_format == "png"
        assert config.crop_options["minScale"] == 0.5

    def test_reserved_keys_not_forwarded(self):
        config = merge_options(
            {"quality": 50, "faceDetection": True, "config": "c.json", "outputFormat": "png", "width": 5, "step": 4}
        )
        assert set(config.crop_options) == {"width", "step"}
        assert config.face_detection is True

    def test_zero_quality_means_renderer_default(self):
        assert merge_options({"quality": 0}).quality is None

    def test_boost_is_parsed_into_boxes(self):
        config = merge_options({}, {"boost": [{"x": 1, "y": 2, "width": 3, "height": 4, "weight": 0.5}]})
        assert config.crop_options["boost"] == (BoundingBox(1, 2, 3, 4, 0.5),)

    def test_boost_must_be_a_list(self):
        with pytest.raises(ConfigError):
            merge_options({}, {"boost": {"x": 1}})

    def test_bad_width(self):
        with pytest.raises(ConfigError):
            merge_options({}, {"width": "wide"})

    def test_crop_options_are_read_only(self):
        config = merge_options({"width": 10})
        with pytest.raises(TypeError):
            config.crop_options["width"] = 20


class TestApplyDetections:
    def test_detections_replace_configured_boost(self):
        config = merge_options({}, {"boost": [{"x": 0, "y": 0, "width": 1, "height": 1}]})
        faces = [BoundingBox(10, 10, 20, 20), BoundingBox(50, 10, 20, 20)]
        merged = apply_detections(config, faces)
        assert merged.crop_options["boost"] == tuple(faces)
        assert config.crop_options["boost"] == (BoundingBox(0, 0, 1, 1),)

    def test_no_detections_keep_config(self):
        config = merge_options({"width": 10})
        assert apply_detections(config, []) is config
        assert "boost" not in config.crop_options


class TestConfigFile:
    def test_build_config_reads_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"width": 64, "height": 32, "quality": 75, "maxScale": 1.0}), encoding="utf-8")
        args, forwarded = parse_args(["--config", str(path), "--quality", "85", "photo.jpg"])
        config = build_config(args, forwarded)
        assert (config.width, config.height, config.quality) == (64, 32, 85)
        assert config.crop_options["maxScale"] == 1.0
        assert "config" not in config.crop_options

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{nope", encoding="utf-8")
        args, forwarded = parse_args(["--config", str(path), "photo.jpg"])
        with pytest.raises(ConfigError):
            build_config(args, forwarded)

    def test_config_must_be_an_object(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("[1, 2]", encoding="utf-8")
        args, forwarded = parse_args(["--config", str(path), "photo.jpg"])
        with pytest.raises(ConfigError):
            build_config(args, forwarded)

    def test_missing_file(self, tmp_path):
        args, forwarded = parse_args(["--config", str(tmp_path / "nope.json"), "photo.jpg"])
        with pytest.raises(ConfigError):
            build_config(args, forwarded)
