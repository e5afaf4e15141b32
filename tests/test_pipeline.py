# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""End-to-end pipeline and CLI tests (EXR decoding is stubbed)."""

from __future__ import annotations

import io
import logging

import numpy as np
import pytest
from PIL import Image

import exr_to_uhdr
from exr_to_uhdr import ConversionConfig, ImageFormat, OutputPaths, Pipeline, main
from uhdr_codecs import PNG_SIGNATURE
from uhdr_color import D50, REC_709, REC_2020, ExplicitPrimaries, CIExy, NamedPreset
from uhdr_container import extract_gain_map, find_xmp, parse_hdrgm_xmp, read_mpf
from uhdr_errors import (
    DegenerateColorSpace,
    DiagnosticKind,
    MalformedInput,
    MissingColorSpaceMetadata,
    WriteFailure,
)
from uhdr_tone import HDRImage


def _kinds(result) -> set[DiagnosticKind]:
    return {d.kind for d in result.diagnostics}


@pytest.fixture
def stub_exr(monkeypatch, two_by_two):
    """Make every EXR path decode to the 2x2 scene; names containing 'bad' fail."""

    def fake_read(path):
        if "bad" in path.name:
            raise MalformedInput(f"Cannot read OpenEXR file {path}")
        return two_by_two

    monkeypatch.setattr(exr_to_uhdr, "read_exr", fake_read)


class TestConversionConfig:
    def test_defaults(self):
        config = ConversionConfig()
        assert config.exposure == 1.0
        assert config.offset_sdr == pytest.approx(1 / 64)
        assert config.jpeg_quality == 100
        assert config.workers >= 1

    @pytest.mark.parametrize(
        "options",
        [
            {"exposure": 0.0},
            {"exposure": float("inf")},
            {"jpeg_quality": 101},
            {"gain_map_quality": 0},
            {"gain_map_scale": 0},
            {"clip_fraction": -0.5},
            {"outlier_ratio": 1.0},
            {"emit_ultra_hdr": False},
        ],
    )
    def test_invalid(self, options):
        with pytest.raises(ValueError):
            ConversionConfig(**options)


class TestColorResolution:
    def test_uses_exr_chromaticities(self, colorful):
        hdr = HDRImage(colorful.pixels, REC_2020)
        result = Pipeline(ConversionConfig(workers=1)).convert(hdr)
        assert result.input_space is REC_2020
        assert result.output_space is REC_2020
        assert DiagnosticKind.MISSING_CHROMATICITIES not in _kinds(result)

    def test_missing_chromaticities_assumes_rec709(self, untagged):
        result = Pipeline(ConversionConfig(workers=1)).convert(untagged)
        assert result.input_space is REC_709
        assert DiagnosticKind.MISSING_CHROMATICITIES in _kinds(result)

    def test_strict_mode_fails(self, untagged):
        with pytest.raises(MissingColorSpaceMetadata):
            Pipeline(ConversionConfig(strict=True, workers=1)).convert(untagged)

    def test_strict_mode_with_explicit_space(self, untagged):
        config = ConversionConfig(strict=True, input_color_space=NamedPreset("rec2020"), workers=1)
        result = Pipeline(config).convert(untagged)
        assert result.input_space.same_primaries(REC_2020)
        assert DiagnosticKind.MISSING_CHROMATICITIES not in _kinds(result)

    def test_explicit_overrides_exr(self, two_by_two):
        config = ConversionConfig(input_color_space=NamedPreset("rec2020"), workers=1)
        result = Pipeline(config).convert(two_by_two)
        assert result.input_space.same_primaries(REC_2020)

    def test_gamut_reduction_warning(self, two_by_two):
        hdr = HDRImage(two_by_two.pixels, REC_2020)
        config = ConversionConfig(output_color_space=NamedPreset("rec709"), workers=1)
        result = Pipeline(config).convert(hdr)
        assert result.output_space is REC_709
        assert DiagnosticKind.GAMUT_REDUCTION in _kinds(result)

    def test_no_gamut_warning_when_widening(self, two_by_two):
        config = ConversionConfig(output_color_space=NamedPreset("rec2020"), workers=1)
        result = Pipeline(config).convert(two_by_two)
        assert DiagnosticKind.GAMUT_REDUCTION not in _kinds(result)

    def test_output_white_applies_to_input_copy(self, two_by_two):
        config = ConversionConfig(output_white_point=D50, workers=1)
        result = Pipeline(config).convert(two_by_two)
        assert result.output_space.white == D50
        assert result.output_space.red == REC_709.red
        assert result.input_space is REC_709

    def test_input_white_override(self, two_by_two):
        config = ConversionConfig(input_white_point=D50, workers=1)
        result = Pipeline(config).convert(two_by_two)
        assert result.input_space.white == D50
        assert result.output_space == result.input_space

    def test_white_point_from_decoded_image(self, two_by_two):
        hdr = HDRImage(two_by_two.pixels, REC_709, white_point=D50)
        result = Pipeline(ConversionConfig(workers=1)).convert(hdr)
        assert result.input_space.white == D50
        assert result.input_space.red == REC_709.red
        assert result.output_space == result.input_space

    def test_configured_white_beats_decoded_white(self, two_by_two):
        white = CIExy(0.32, 0.33)
        hdr = HDRImage(two_by_two.pixels, REC_709, white_point=D50)
        result = Pipeline(ConversionConfig(input_white_point=white, workers=1)).convert(hdr)
        assert result.input_space.white == white

    def test_degenerate_space_rejected_before_rendering(self, two_by_two):
        bad = ExplicitPrimaries(CIExy(0.1, 0.1), CIExy(0.2, 0.2), CIExy(0.3, 0.3), CIExy(0.3127, 0.329))
        with pytest.raises(DegenerateColorSpace):
            Pipeline(ConversionConfig(output_color_space=bad, workers=1)).convert(two_by_two)

    def test_negative_chromaticities_warning_for_png(self, two_by_two):
        config = ConversionConfig(
            output_color_space=NamedPreset("aces-ap0"),
            emit_plain_sdr=True,
            output_format=ImageFormat.PNG,
            workers=1,
        )
        result = Pipeline(config).convert(two_by_two)
        assert DiagnosticKind.NEGATIVE_CHROMATICITIES in _kinds(result)


class TestConvert:
    def test_two_by_two_scene(self, two_by_two):
        result = Pipeline(ConversionConfig(workers=1)).convert(two_by_two)
        sdr = result.sdr_image.pixels
        values = result.gain_map.values[:, :, 0]

        assert tuple(sdr[0, 0]) == (255, 255, 255)
        assert tuple(sdr[1, 1]) == (255, 255, 255)
        assert sdr[1, 0, 0] < sdr[0, 1, 0]
        assert values[1, 1] == 255
        assert values[1, 0] == 0
        assert values[1, 1] > values[0, 0] > values[0, 1]
        assert DiagnosticKind.HIGHLIGHT_CLIPPING in _kinds(result)

    def test_outlier_ratio_trims_isolated_highlight(self):
        # A smooth 1..2 ramp plus one very bright pixel
        flat = np.append(np.linspace(1.0, 2.0, 399), 256.0).reshape(20, 20)
        hdr = HDRImage(np.repeat(flat[..., np.newaxis], 3, axis=2), REC_709)

        full = Pipeline(ConversionConfig(workers=1)).convert(hdr).gain_map
        result = Pipeline(ConversionConfig(outlier_ratio=0.01, workers=1)).convert(hdr)
        trimmed = result.gain_map

        assert full.gain_max[0] > 7.5
        assert trimmed.gain_max[0] < 1.5
        assert trimmed.gain_min[0] == pytest.approx(full.gain_min[0])
        # The bright pixel is clamped to the top code, the ramp spreads out
        assert trimmed.values[19, 19, 0] == 255
        assert trimmed.values[10, 0, 0] > 100
        assert full.values[10, 0, 0] < 40
        fields = parse_hdrgm_xmp(find_xmp(extract_gain_map(result.ultra_hdr)))
        assert float(fields["GainMapMax"]) == pytest.approx(trimmed.gain_max[0], abs=1e-5)

    def test_ultra_hdr_structure(self, colorful):
        result = Pipeline(ConversionConfig(workers=2)).convert(colorful)
        data = result.ultra_hdr
        primary, secondary = read_mpf(data)
        assert primary.size + secondary.size == len(data)

        fields = parse_hdrgm_xmp(find_xmp(extract_gain_map(data)))
        assert float(fields["GainMapMax"]) == pytest.approx(result.gain_map.gain_max[0], abs=1e-5)

        with Image.open(io.BytesIO(data)) as img:
            assert img.size == (colorful.width, colorful.height)
            assert img.info.get("icc_profile")

    def test_no_icc(self, colorful):
        result = Pipeline(ConversionConfig(embed_icc=False, workers=1)).convert(colorful)
        with Image.open(io.BytesIO(result.ultra_hdr)) as img:
            assert not img.info.get("icc_profile")

    def test_optional_outputs(self, colorful):
        config = ConversionConfig(
            emit_plain_sdr=True,
            output_format=ImageFormat.PNG,
            emit_gain_map_file=True,
            gain_map_format=ImageFormat.PNG,
            multichannel_gain_map=True,
            workers=1,
        )
        result = Pipeline(config).convert(colorful)
        assert result.sdr.startswith(PNG_SIGNATURE)
        assert result.gain_map_image.startswith(PNG_SIGNATURE)
        assert result.gain_map.is_multichannel
        assert extract_gain_map(result.ultra_hdr).startswith(PNG_SIGNATURE)

    def test_plain_sdr_jpeg_is_base_image(self, colorful):
        config = ConversionConfig(emit_ultra_hdr=False, emit_plain_sdr=True, workers=1)
        result = Pipeline(config).convert(colorful)
        assert result.ultra_hdr is None
        assert result.sdr.startswith(b"\xff\xd8")
        assert find_xmp(result.sdr) is None

    def test_standalone_gain_map_has_metadata(self, colorful):
        config = ConversionConfig(emit_gain_map_file=True, workers=1)
        result = Pipeline(config).convert(colorful)
        fields = parse_hdrgm_xmp(find_xmp(result.gain_map_image))
        assert fields["Version"] == "1.0"

    def test_degenerate_map_diagnostic(self):
        hdr = HDRImage(np.full((2, 2, 3), 0.5, dtype=np.float32), REC_709)
        result = Pipeline(ConversionConfig(workers=1)).convert(hdr)
        assert DiagnosticKind.DEGENERATE_GAIN_MAP in _kinds(result)
        assert read_mpf(result.ultra_hdr)

    def test_exposure_changes_base(self, two_by_two):
        bright = Pipeline(ConversionConfig(exposure=4.0, workers=1)).convert(two_by_two)
        normal = Pipeline(ConversionConfig(workers=1)).convert(two_by_two)
        assert bright.sdr_image.pixels[1, 0, 0] > normal.sdr_image.pixels[1, 0, 0]

    def test_diagnostics_logged(self, untagged, caplog):
        with caplog.at_level(logging.WARNING):
            Pipeline(ConversionConfig(workers=1)).convert(untagged)
        assert any("Rec.709" in r.getMessage() for r in caplog.records)

    def test_input_not_mutated(self, colorful):
        before = colorful.pixels.copy()
        Pipeline(ConversionConfig(output_color_space=NamedPreset("rec2020"), workers=1)).convert(colorful)
        np.testing.assert_array_equal(colorful.pixels, before)


class TestRun:
    def test_writes_requested_outputs(self, tmp_path, stub_exr):
        outputs = OutputPaths(
            ultra_hdr=tmp_path / "out.jpg",
            sdr=tmp_path / "sdr.jpg",
            gain_map=tmp_path / "map.jpg",
        )
        config = ConversionConfig(emit_plain_sdr=True, emit_gain_map_file=True, workers=1)
        result = Pipeline(config).run(tmp_path / "scene.exr", outputs)

        assert (tmp_path / "out.jpg").read_bytes() == result.ultra_hdr
        assert (tmp_path / "sdr.jpg").read_bytes() == result.sdr
        assert (tmp_path / "map.jpg").read_bytes() == result.gain_map_image

    def test_nothing_written_when_output_not_produced(self, tmp_path, stub_exr):
        outputs = OutputPaths(ultra_hdr=tmp_path / "out.jpg", sdr=tmp_path / "sdr.jpg")
        with pytest.raises(ValueError):
            Pipeline(ConversionConfig(workers=1)).run(tmp_path / "scene.exr", outputs)
        assert list(tmp_path.iterdir()) == []

    def test_malformed_input_writes_nothing(self, tmp_path):
        with pytest.raises(MalformedInput):
            Pipeline(ConversionConfig(workers=1)).run(
                tmp_path / "missing.exr", OutputPaths(ultra_hdr=tmp_path / "out.jpg")
            )
        assert not (tmp_path / "out.jpg").exists()

    def test_write_failure(self, tmp_path, stub_exr):
        blocker = tmp_path / "blocker"
        blocker.write_bytes(b"")
        with pytest.raises(WriteFailure):
            Pipeline(ConversionConfig(workers=1)).run(
                tmp_path / "scene.exr", OutputPaths(ultra_hdr=blocker / "out.jpg")
            )

    def test_failed_output_removes_the_others(self, tmp_path, stub_exr):
        blocker = tmp_path / "blocker"
        blocker.write_bytes(b"")
        outputs = OutputPaths(ultra_hdr=tmp_path / "out.jpg", sdr=blocker / "sdr.jpg")
        config = ConversionConfig(emit_plain_sdr=True, workers=1)
        with pytest.raises(WriteFailure, match="sdr.jpg"):
            Pipeline(config).run(tmp_path / "scene.exr", outputs)

        assert not (tmp_path / "out.jpg").exists()
        assert sorted(p.name for p in tmp_path.iterdir()) == ["blocker"]


class TestCli:
    def test_single_file(self, tmp_path, stub_exr):
        exr = tmp_path / "scene.exr"
        assert main([str(exr), "-j", "1"]) == 0
        data = (tmp_path / "scene.jpg").read_bytes()
        assert read_mpf(data)[1].size > 0

    def test_extra_outputs(self, tmp_path, stub_exr):
        exr = tmp_path / "scene.exr"
        code = main([
            str(exr), "-o", str(tmp_path / "u.jpg"),
            "--sdr", str(tmp_path / "s.png"), "--gain-map", str(tmp_path / "g.png"),
        ])
        assert code == 0
        assert (tmp_path / "u.jpg").exists()
        assert (tmp_path / "s.png").read_bytes().startswith(PNG_SIGNATURE)
        assert (tmp_path / "g.png").read_bytes().startswith(PNG_SIGNATURE)

    def test_no_ultra_hdr(self, tmp_path, stub_exr):
        exr = tmp_path / "scene.exr"
        assert main([str(exr), "--no-ultra-hdr", "--sdr", str(tmp_path / "s.jpg")]) == 0
        assert not (tmp_path / "scene.jpg").exists()
        assert (tmp_path / "s.jpg").exists()

    def test_missing_input_exits_1(self, tmp_path):
        assert main([str(tmp_path / "missing.exr")]) == 1
        assert list(tmp_path.iterdir()) == []

    def test_strict_without_chromaticities(self, tmp_path, monkeypatch, untagged):
        monkeypatch.setattr(exr_to_uhdr, "read_exr", lambda path: untagged)
        assert main([str(tmp_path / "scene.exr"), "--strict"]) == 1
        assert main([str(tmp_path / "scene.exr"), "--strict", "-i", "rec709"]) == 0

    def test_degenerate_primaries_exit_1(self, tmp_path, stub_exr):
        code = main([str(tmp_path / "scene.exr"), "-c", "0.1,0.1,0.2,0.2,0.3,0.3,0.3127,0.329"])
        assert code == 1

    def test_bad_arguments_exit_1(self, tmp_path):
        with pytest.raises(SystemExit) as exc:
            main([str(tmp_path / "a.exr"), "--transfer", "pq"])
        assert exc.value.code == 1

        with pytest.raises(SystemExit) as exc:
            main([str(tmp_path / "a.exr"), str(tmp_path / "b.exr"), "-o", "x.jpg"])
        assert exc.value.code == 1

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["--version"])
        assert exc.value.code == 0
        assert exr_to_uhdr.__version__ in capsys.readouterr().out

    def test_batch(self, tmp_path, stub_exr):
        out = tmp_path / "out"
        files = [str(tmp_path / f"shot{i}.exr") for i in range(3)]
        assert main([*files, "--output-dir", str(out), "-j", "2"]) == 0
        assert sorted(p.name for p in out.iterdir()) == ["shot0.jpg", "shot1.jpg", "shot2.jpg"]

    def test_batch_with_failure(self, tmp_path, stub_exr):
        files = [str(tmp_path / "good.exr"), str(tmp_path / "bad.exr")]
        assert main([*files, "--output-dir", str(tmp_path)]) == 1
        assert (tmp_path / "good.jpg").exists()
        assert not (tmp_path / "bad.jpg").exists()


class TestCliConfig:
    def test_exposure_is_in_stops(self, tmp_path):
        args = exr_to_uhdr._parse_args([str(tmp_path / "a.exr"), "-e", "1.5"])
        outputs = exr_to_uhdr._outputs_for(tmp_path / "a.exr", args)
        config = exr_to_uhdr._config_for(args, outputs, 1)
        assert config.exposure == pytest.approx(2.0 ** 1.5)

    def test_negative_exposure(self, tmp_path):
        args = exr_to_uhdr._parse_args([str(tmp_path / "a.exr"), "-e", "-1"])
        config = exr_to_uhdr._config_for(args, exr_to_uhdr._outputs_for(tmp_path / "a.exr", args), 1)
        assert config.exposure == pytest.approx(0.5)

    def test_formats_follow_suffix(self, tmp_path):
        args = exr_to_uhdr._parse_args([
            str(tmp_path / "a.exr"), "--sdr", "s.PNG", "--gain-map", "g.jpg",
        ])
        outputs = exr_to_uhdr._outputs_for(tmp_path / "a.exr", args)
        config = exr_to_uhdr._config_for(args, outputs, 1)
        assert config.output_format is ImageFormat.PNG
        assert config.gain_map_format is ImageFormat.JPEG
        assert config.emit_plain_sdr and config.emit_gain_map_file

    def test_color_arguments(self, tmp_path):
        args = exr_to_uhdr._parse_args([
            str(tmp_path / "a.exr"), "-i", "aces-ap1", "--output-white", "5000K", "--transfer", "gamma2.2",
        ])
        assert args.input_chromaticities == NamedPreset("aces-ap1")
        assert args.output_white.x == pytest.approx(0.3451, abs=1e-3)
        assert args.transfer.value == "gamma2.2"

    def test_default_output_next_to_input(self, tmp_path):
        args = exr_to_uhdr._parse_args([str(tmp_path / "scene.exr")])
        outputs = exr_to_uhdr._outputs_for(tmp_path / "scene.exr", args)
        assert outputs.ultra_hdr == tmp_path / "scene.jpg"
        assert outputs.sdr is None

    def test_outlier_ratio_argument(self, tmp_path):
        args = exr_to_uhdr._parse_args([str(tmp_path / "a.exr"), "--outlier-ratio", "0.002"])
        config = exr_to_uhdr._config_for(args, exr_to_uhdr._outputs_for(tmp_path / "a.exr", args), 1)
        assert config.outlier_ratio == pytest.approx(0.002)
        assert config.gain_map_settings().outlier_ratio == pytest.approx(0.002)
