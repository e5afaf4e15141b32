#!/usr/bin/env -S uv run --quiet --script
# /// script
# requires-python = ">=3.12"
# dependencies = [
#     "numpy>=1.26",
#     "scipy>=1.11",
#     "rich>=13.0",
#     "pypng==0.20220715.0",
#     "Pillow>=10.0",
#     "OpenEXR>=3.2",
# ]
# ///
#
# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
#

"""
Convert scene-referred OpenEXR images to Ultra HDR JPEG.

Pipeline:
1. Decode the EXR (linear light, optional chromaticities)
2. Resolve input/output color spaces and convert the pixels
3. Render an 8-bit SDR base image (exposure, clamp, transfer function)
4. Compute the gain map that restores the HDR rendition from the SDR base
5. Encode SDR (JPEG + ICC profile) and gain map (JPEG or PNG)
6. Assemble the Ultra HDR container (XMP + MPF) and write outputs atomically

Usage:
    exr2uhdr render.exr
    exr2uhdr render.exr -o render_uhdr.jpg --sdr render_sdr.png -e 1.5
    exr2uhdr shots/*.exr --output-dir out -j 8
"""

from __future__ import annotations

import argparse
import logging
import math
import os
import sys
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import ClassVar, Final, NoReturn, override

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from uhdr_codecs import encode_jpeg, encode_png, read_exr, write_files_atomic
from uhdr_color import (
    REC_709,
    CIExy,
    ColorSpace,
    ColorSpaceChoice,
    contains_space,
    convert,
    parse_color_space,
    parse_white_point,
)
from uhdr_container import assemble, embed_gain_map_xmp
from uhdr_errors import Diagnostic, DiagnosticKind, MissingColorSpaceMetadata, UltraHDRError
from uhdr_gainmap import GainMap, GainMapComputer, GainMapSettings
from uhdr_icc import create_icc_profile
from uhdr_tone import HDRImage, SDRImage, ToneRenderer, ToneSettings
from uhdr_transfer import TransferFunction, parse_transfer

__all__: Final[list[str]] = [
    "ImageFormat",
    "ConversionConfig",
    "ConversionResult",
    "OutputPaths",
    "Pipeline",
    "main",
]

__version__: Final[str] = "1.0.0"

logger = logging.getLogger(__name__)

console = Console()


# =============================================================================
# Configuration
# =============================================================================


class ImageFormat(StrEnum):
    """Encoding of the plain SDR output and the gain map image."""

    JPEG = "jpeg"
    PNG = "png"

    @classmethod
    def from_path(cls, path: Path) -> ImageFormat:
        """PNG for a .png suffix, JPEG otherwise."""
        return cls.PNG if path.suffix.lower() == ".png" else cls.JPEG


def _get_cpu_count() -> int:
    """Get CPU count with fallback."""
    return os.cpu_count() or 1


@dataclass(frozen=True, slots=True, kw_only=True)
class ConversionConfig:
    """Immutable options of one conversion.

    `exposure` is a linear multiplier (the CLI takes stops and converts).
    Color space fields left as None fall back to the EXR metadata and then
    to Rec.709 for the input, and to the input space for the output.
    """

    input_color_space: ColorSpaceChoice | None = None
    input_white_point: CIExy | None = None
    output_color_space: ColorSpaceChoice | None = None
    output_white_point: CIExy | None = None
    exposure: float = 1.0
    output_format: ImageFormat = ImageFormat.JPEG
    gain_map_format: ImageFormat = ImageFormat.JPEG
    emit_ultra_hdr: bool = True
    emit_plain_sdr: bool = False
    emit_gain_map_file: bool = False
    strict: bool = False
    transfer: TransferFunction = TransferFunction.SRGB
    jpeg_quality: int = 100
    gain_map_quality: int = 100
    gain_map_gamma: float = 1.0
    offset_sdr: float = 1 / 64
    offset_hdr: float = 1 / 64
    gain_map_scale: int = 1
    multichannel_gain_map: bool = False
    outlier_ratio: float = 0.0
    clip_threshold: float = 1.0
    clip_fraction: float = 0.01
    embed_icc: bool = True
    workers: int = field(default_factory=_get_cpu_count)

    def __post_init__(self) -> None:
        if not math.isfinite(self.exposure) or self.exposure <= 0:
            raise ValueError(f"exposure must be a positive finite multiplier, got {self.exposure}")
        if not 1 <= self.jpeg_quality <= 100:
            raise ValueError(f"jpeg_quality must be within 1-100, got {self.jpeg_quality}")
        if not 1 <= self.gain_map_quality <= 100:
            raise ValueError(f"gain_map_quality must be within 1-100, got {self.gain_map_quality}")
        if not (self.emit_ultra_hdr or self.emit_plain_sdr or self.emit_gain_map_file):
            raise ValueError("Nothing to produce: enable at least one output")
        # Surface bad values here rather than mid-pipeline
        self.tone_settings()
        self.gain_map_settings()

    def tone_settings(self) -> ToneSettings:
        return ToneSettings(
            transfer=self.transfer,
            clip_threshold=self.clip_threshold,
            clip_fraction=self.clip_fraction,
            workers=self.workers,
        )

    def gain_map_settings(self) -> GainMapSettings:
        return GainMapSettings(
            gamma=self.gain_map_gamma,
            offset_sdr=self.offset_sdr,
            offset_hdr=self.offset_hdr,
            scale=self.gain_map_scale,
            multichannel=self.multichannel_gain_map,
            outlier_ratio=self.outlier_ratio,
            workers=self.workers,
        )


@dataclass(frozen=True, slots=True)
class OutputPaths:
    """Destination of each output; None skips it."""

    ultra_hdr: Path | None = None
    sdr: Path | None = None
    gain_map: Path | None = None

    def items(self) -> list[tuple[str, Path]]:
        named = [("Ultra HDR", self.ultra_hdr), ("SDR", self.sdr), ("Gain map", self.gain_map)]
        return [(name, path) for name, path in named if path is not None]


@dataclass(frozen=True, slots=True)
class ConversionResult:
    """Everything a conversion produced, before anything is written."""

    ultra_hdr: bytes | None
    sdr: bytes | None
    gain_map_image: bytes | None
    gain_map: GainMap
    sdr_image: SDRImage
    input_space: ColorSpace
    output_space: ColorSpace
    diagnostics: tuple[Diagnostic, ...]

    def payload(self, name: str) -> bytes | None:
        return {"Ultra HDR": self.ultra_hdr, "SDR": self.sdr, "Gain map": self.gain_map_image}[name]


# =============================================================================
# Pipeline
# =============================================================================


@dataclass(slots=True)
class Pipeline:
    """EXR -> Ultra HDR conversion.

    `convert` is pure: it turns an HDRImage into encoded payloads. `run` adds
    decoding and writing, and is the only place touching the filesystem.
    """

    config: ConversionConfig = field(default_factory=ConversionConfig)

    def resolve_spaces(self, hdr: HDRImage) -> tuple[ColorSpace, ColorSpace, list[Diagnostic]]:
        """Decide the input and output color spaces.

        Returns:
            Tuple of (input space, output space, diagnostics)

        Raises:
            MissingColorSpaceMetadata: Strict mode and nothing describes the input
            DegenerateColorSpace: A chosen space or white point is singular
        """
        config = self.config
        diagnostics: list[Diagnostic] = []

        if config.input_color_space is not None:
            input_space = config.input_color_space.resolve()
        elif hdr.color_space is not None:
            input_space = hdr.color_space
        elif config.strict:
            raise MissingColorSpaceMetadata(
                "EXR has no chromaticities attribute and no input color space was given"
            )
        else:
            input_space = REC_709
            diagnostics.append(Diagnostic(
                DiagnosticKind.MISSING_CHROMATICITIES,
                "Assuming Rec.709 (sRGB) primaries for the input EXR",
            ))

        input_white = config.input_white_point or hdr.white_point
        if input_white is not None and input_white != input_space.white:
            input_space = input_space.with_white(input_white)

        if config.output_color_space is not None:
            output_space = config.output_color_space.resolve()
        else:
            output_space = input_space
        if config.output_white_point is not None and config.output_white_point != output_space.white:
            # Applies to a copy of the input space too, which forces a conversion
            output_space = output_space.with_white(config.output_white_point)

        if not contains_space(output_space, input_space):
            diagnostics.append(Diagnostic(
                DiagnosticKind.GAMUT_REDUCTION,
                f"Output gamut {output_space.name} is smaller than input {input_space.name}, "
                "check the output for artifacts",
            ))

        if (
            config.emit_plain_sdr
            and config.output_format is ImageFormat.PNG
            and output_space.has_negatives()
        ):
            diagnostics.append(Diagnostic(
                DiagnosticKind.NEGATIVE_CHROMATICITIES,
                f"{output_space.name} has negative chromaticities; "
                "they are clamped to 0 in the PNG cHRM chunk",
            ))

        return input_space, output_space, diagnostics

    def convert(self, hdr: HDRImage) -> ConversionResult:
        """Produce every requested payload from a decoded HDR image."""
        config = self.config
        input_space, output_space, diagnostics = self.resolve_spaces(hdr)

        if output_space.same_primaries(input_space):
            working = HDRImage(hdr.pixels, output_space)
        else:
            logger.debug("Converting %s -> %s", input_space.name, output_space.name)
            working = HDRImage(convert(hdr.pixels, input_space, output_space), output_space)

        sdr_image, tone_diagnostics = ToneRenderer(config.tone_settings()).render(
            working, config.exposure
        )
        diagnostics.extend(tone_diagnostics)

        gain_map = GainMapComputer(config.gain_map_settings()).compute(
            working, sdr_image, config.exposure
        )
        if gain_map.is_degenerate:
            diagnostics.append(Diagnostic(
                DiagnosticKind.DEGENERATE_GAIN_MAP,
                f"Gain map has no dynamic range (log2 gain {gain_map.gain_min[0]:.4f}), "
                "storing a constant map",
            ))
        logger.debug(
            "Gain map %dx%dx%d, log2 range %s..%s",
            gain_map.width, gain_map.height, gain_map.channels,
            gain_map.gain_min, gain_map.gain_max,
        )

        icc_profile = (
            create_icc_profile(output_space, config.transfer) if config.embed_icc else None
        )
        sdr_jpeg = encode_jpeg(sdr_image.pixels, config.jpeg_quality, icc_profile)
        gain_map_bytes = self._encode_gain_map(gain_map)

        ultra_hdr = None
        if config.emit_ultra_hdr:
            ultra_hdr = assemble(sdr_jpeg, gain_map_bytes, gain_map)

        sdr = None
        if config.emit_plain_sdr:
            if config.output_format is ImageFormat.PNG:
                sdr = encode_png(
                    sdr_image.pixels, color_space=output_space, transfer=config.transfer
                )
            else:
                sdr = sdr_jpeg

        gain_map_image = None
        if config.emit_gain_map_file:
            gain_map_image, _ = embed_gain_map_xmp(gain_map_bytes, gain_map)

        for diagnostic in diagnostics:
            logger.warning("%s", diagnostic.message)

        return ConversionResult(
            ultra_hdr=ultra_hdr,
            sdr=sdr,
            gain_map_image=gain_map_image,
            gain_map=gain_map,
            sdr_image=sdr_image,
            input_space=input_space,
            output_space=output_space,
            diagnostics=tuple(diagnostics),
        )

    def run(self, exr_path: Path, outputs: OutputPaths) -> ConversionResult:
        """Decode, convert and write the requested outputs.

        Nothing is written unless every requested payload was produced, and a
        failed write removes the outputs of this run that were already in place.
        """
        hdr = read_exr(exr_path)
        result = self.convert(hdr)

        pending: list[tuple[Path, bytes]] = []
        for name, path in outputs.items():
            data = result.payload(name)
            if data is None:
                raise ValueError(f"{name} output requested but disabled in the configuration")
            pending.append((path, data))

        write_files_atomic(pending)
        return result

    def _encode_gain_map(self, gain_map: GainMap) -> bytes:
        values = gain_map.values
        if self.config.gain_map_format is ImageFormat.PNG:
            return encode_png(values)
        return encode_jpeg(values, self.config.gain_map_quality)


# =============================================================================
# Logging
# =============================================================================


class _AnsiColor(StrEnum):
    """ANSI color codes for terminal output."""

    GREEN = "\033[0;32m"
    YELLOW = "\033[1;33m"
    RED = "\033[0;31m"
    GRAY = "\033[0;37m"
    RESET = "\033[0m"


class _ColoredFormatter(logging.Formatter):
    """Logging formatter with colored output."""

    _LEVEL_COLORS: ClassVar[dict[int, str]] = {
        logging.DEBUG: _AnsiColor.GRAY,
        logging.INFO: _AnsiColor.GREEN,
        logging.WARNING: _AnsiColor.YELLOW,
        logging.ERROR: _AnsiColor.RED,
    }

    @override
    def format(self, record: logging.LogRecord) -> str:
        color = self._LEVEL_COLORS.get(record.levelno, _AnsiColor.RESET)
        return f"{color}[{record.levelname}]{_AnsiColor.RESET} {record.getMessage()}"


def _setup_logging(verbose: bool) -> None:
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    # Replace a handler left by an earlier call, sys.stderr may have changed
    for existing in [h for h in root.handlers if isinstance(h.formatter, _ColoredFormatter)]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_ColoredFormatter())
    root.addHandler(handler)


# =============================================================================
# CLI
# =============================================================================


class _ArgumentParser(argparse.ArgumentParser):
    """Argument parser exiting with status 1 on usage errors."""

    @override
    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _color_space_arg(text: str) -> ColorSpaceChoice:
    try:
        return parse_color_space(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def _white_point_arg(text: str) -> CIExy:
    try:
        return parse_white_point(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def _transfer_arg(text: str) -> TransferFunction:
    try:
        return parse_transfer(text)
    except UltraHDRError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = _ArgumentParser(
        prog="exr2uhdr",
        description="Convert scene-referred OpenEXR images to Ultra HDR JPEG.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Color spaces: rec709, srgb, rec2020, rec2100, aces-ap0, aces-ap1, display-p3,
or eight numbers 'rx,ry,gx,gy,bx,by,wx,wy'.
White points: d50, d65, aces, a temperature like 5000K, or 'x,y'.

Examples:
  %(prog)s render.exr                          # Writes render.jpg
  %(prog)s render.exr -o out.jpg -e -0.5       # Darken by half a stop
  %(prog)s render.exr -c display-p3 --sdr sdr.png --gain-map map.jpg
  %(prog)s shots/*.exr --output-dir out -j {_get_cpu_count()}
""",
    )

    parser.add_argument("exr", type=Path, nargs="+", help="Scene-referred linear-light OpenEXR file(s)")

    outputs = parser.add_argument_group("outputs")
    outputs.add_argument("-o", "--output", type=Path, help="Ultra HDR JPEG path (single input only)")
    outputs.add_argument("--sdr", type=Path, metavar="PATH", help="Also write the plain SDR image (.jpg or .png)")
    outputs.add_argument("--gain-map", type=Path, metavar="PATH", help="Also write the gain map image (.jpg or .png)")
    outputs.add_argument("--output-dir", type=Path, help="Directory for outputs named after each input")
    outputs.add_argument("--no-ultra-hdr", action="store_true", help="Skip the Ultra HDR JPEG")

    color = parser.add_argument_group("color")
    color.add_argument(
        "-i", "--input-chromaticities", type=_color_space_arg,
        help="What the linear-light RGB channels refer to (overrides the EXR)",
    )
    color.add_argument("--input-white", type=_white_point_arg, help="Override the input white point")
    color.add_argument(
        "-c", "--output-chromaticities", type=_color_space_arg,
        help="Output color space (default: same as input)",
    )
    color.add_argument("--output-white", type=_white_point_arg, help="Override the output white point")
    color.add_argument(
        "-e", "--exposure", type=float, default=0.0, metavar="EV",
        help="Re-expose the shot by this many stops (default: 0)",
    )
    color.add_argument(
        "--transfer", type=_transfer_arg, default=TransferFunction.SRGB,
        help="SDR transfer function: srgb, gamma2.2, gamma2.4 (default: srgb)",
    )
    color.add_argument(
        "--strict", action="store_true",
        help="Fail instead of assuming Rec.709 when the EXR has no chromaticities",
    )

    encoding = parser.add_argument_group("encoding")
    encoding.add_argument("--quality", type=int, default=100, help="SDR JPEG quality 1-100 (default: 100)")
    encoding.add_argument("--gain-map-quality", type=int, default=100, help="Gain map JPEG quality 1-100 (default: 100)")
    encoding.add_argument("--gain-map-scale", type=int, default=1, help="Gain map downscale factor (default: 1)")
    encoding.add_argument("--multichannel", action="store_true", help="Store one gain per RGB channel")
    encoding.add_argument(
        "--outlier-ratio",
        type=float,
        default=0.0,
        help="Fraction of pixels allowed outside the gain range, split between both ends (default: 0)",
    )

    parser.add_argument(
        "-j", "--jobs", type=int, default=_get_cpu_count(),
        help=f"Parallel workers (default: {_get_cpu_count()})",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    args = parser.parse_args(argv)

    if len(args.exr) > 1 and (args.output or args.sdr or args.gain_map):
        parser.error("-o/--output, --sdr and --gain-map need a single input; use --output-dir")
    if args.jobs < 1:
        parser.error(f"--jobs must be >= 1, got {args.jobs}")
    return args


def _outputs_for(exr: Path, args: argparse.Namespace) -> OutputPaths:
    """Output paths of one input file."""
    directory = args.output_dir or exr.parent
    ultra_hdr = None
    if not args.no_ultra_hdr:
        ultra_hdr = args.output or directory / f"{exr.stem}.jpg"
    return OutputPaths(ultra_hdr=ultra_hdr, sdr=args.sdr, gain_map=args.gain_map)


def _config_for(args: argparse.Namespace, outputs: OutputPaths, workers: int) -> ConversionConfig:
    return ConversionConfig(
        input_color_space=args.input_chromaticities,
        input_white_point=args.input_white,
        output_color_space=args.output_chromaticities,
        output_white_point=args.output_white,
        exposure=2.0 ** args.exposure,
        output_format=ImageFormat.from_path(outputs.sdr) if outputs.sdr else ImageFormat.JPEG,
        gain_map_format=ImageFormat.from_path(outputs.gain_map) if outputs.gain_map else ImageFormat.JPEG,
        emit_ultra_hdr=outputs.ultra_hdr is not None,
        emit_plain_sdr=outputs.sdr is not None,
        emit_gain_map_file=outputs.gain_map is not None,
        strict=args.strict,
        transfer=args.transfer,
        jpeg_quality=args.quality,
        gain_map_quality=args.gain_map_quality,
        gain_map_scale=args.gain_map_scale,
        multichannel_gain_map=args.multichannel,
        outlier_ratio=args.outlier_ratio,
        workers=workers,
    )


def _print_summary(exr: Path, outputs: OutputPaths, result: ConversionResult) -> None:
    gain_map = result.gain_map
    table = Table(title=exr.name, show_header=False, title_justify="left")
    table.add_column("Property", style="cyan")
    table.add_column("Value")

    table.add_row("Input space", result.input_space.name)
    table.add_row("Output space", result.output_space.name)
    table.add_row("Size", f"{result.sdr_image.width}x{result.sdr_image.height}")
    table.add_row("Gain map", f"{gain_map.width}x{gain_map.height}x{gain_map.channels}")
    table.add_row("Log2 gain min", ", ".join(f"{v:.3f}" for v in gain_map.gain_min))
    table.add_row("Log2 gain max", ", ".join(f"{v:.3f}" for v in gain_map.gain_max))
    table.add_row("HDR capacity", f"{gain_map.hdr_capacity_min:.3f} - {gain_map.hdr_capacity_max:.3f}")
    for name, path in outputs.items():
        table.add_row(name, str(path))

    console.print(table)


def _convert_one(exr: Path, args: argparse.Namespace, workers: int) -> tuple[OutputPaths, ConversionResult]:
    outputs = _outputs_for(exr, args)
    config = _config_for(args, outputs, workers)
    return outputs, Pipeline(config).run(exr, outputs)


def _process_batch(args: argparse.Namespace) -> int:
    """Convert several EXR files, one pipeline per file."""
    failures = 0
    console.print(f"Found [bold]{len(args.exr)}[/bold] files to convert.")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Converting...", total=len(args.exr))

        with ThreadPoolExecutor(max_workers=args.jobs) as executor:
            futures = {executor.submit(_convert_one, exr, args, 1): exr for exr in args.exr}
            for future in as_completed(futures):
                exr = futures[future]
                progress.update(task, description=f"[cyan]{exr.name}[/cyan]")
                try:
                    outputs, _ = future.result()
                    if args.verbose:
                        for _, path in outputs.items():
                            console.print(f"  [green]Created {path}[/green]")
                except (UltraHDRError, ValueError) as e:
                    failures += 1
                    console.print(f"  [red]{exr.name}: {e}[/red]")
                progress.advance(task)

    if failures:
        console.print(f"[red]{failures} of {len(args.exr)} files failed[/red]")
        return 1
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point."""
    args = _parse_args(argv)
    _setup_logging(args.verbose)

    if len(args.exr) > 1:
        return _process_batch(args)

    exr = args.exr[0]
    try:
        outputs, result = _convert_one(exr, args, args.jobs)
    except (UltraHDRError, ValueError) as e:
        logger.error("%s", e)
        return 1

    _print_summary(exr, outputs, result)
    for _, path in outputs.items():
        console.print(f"[green]Created {path}[/green]")
    return 0


if __name__ == "__main__":
    sys.exit(main())
