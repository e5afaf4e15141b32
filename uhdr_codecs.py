# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Codec and file-system collaborators of the conversion pipeline.

- OpenEXR decoding (OpenEXR/Imath bindings) into an HDRImage
- baseline JPEG encoding (Pillow)
- 8-bit PNG encoding (pypng) with gAMA, cHRM and arbitrary extra chunks
- atomic file writes

Everything here raises the uhdr_errors kinds; third-party exceptions are
chained with `from`.
"""

from __future__ import annotations

import io
import logging
import os
import struct
import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Final

import Imath
import numpy as np
import OpenEXR
import png
from numpy.typing import NDArray
from PIL import Image

from uhdr_color import CIExy, ColorSpace
from uhdr_errors import EncodeFailure, MalformedInput, WriteFailure
from uhdr_tone import HDRImage
from uhdr_transfer import TransferFunction

__all__: Final[list[str]] = [
    "read_exr",
    "encode_jpeg",
    "encode_png",
    "insert_png_chunks",
    "chrm_chunk",
    "write_file_atomic",
    "write_files_atomic",
]

logger = logging.getLogger(__name__)

PNG_SIGNATURE: Final[bytes] = b"\x89PNG\r\n\x1a\n"


# =============================================================================
# OpenEXR Decoding
# =============================================================================


def _xy(value: Any) -> CIExy:
    return CIExy(float(value.x), float(value.y))


def _exr_color_space(chromaticities: Any) -> ColorSpace | None:
    """Build a ColorSpace from the EXR 'chromaticities' header attribute."""
    if chromaticities is None:
        return None
    if hasattr(chromaticities, "red"):
        red, green, blue, white = (
            _xy(chromaticities.red),
            _xy(chromaticities.green),
            _xy(chromaticities.blue),
            _xy(chromaticities.white),
        )
    else:
        # Newer bindings return the eight floats as a flat tuple
        rx, ry, gx, gy, bx, by, wx, wy = (float(v) for v in chromaticities)
        red, green, blue, white = CIExy(rx, ry), CIExy(gx, gy), CIExy(bx, by), CIExy(wx, wy)
    return ColorSpace("exr", red, green, blue, white)


def read_exr(path: Path) -> HDRImage:
    """Decode an OpenEXR file into linear-light float32 RGB.

    R, G and B channels are read as FLOAT. Luminance-only files (a single Y
    channel) are replicated to RGB. The 'chromaticities' attribute, when
    present, becomes the image color space.

    Raises:
        MalformedInput: Missing file, unreadable EXR, or no usable channels
    """
    if not path.is_file():
        raise MalformedInput(f"EXR file not found: {path}")

    try:
        exr_file = OpenEXR.InputFile(str(path))
    except Exception as e:
        raise MalformedInput(f"Cannot read OpenEXR file {path}: {e}") from e

    try:
        header = exr_file.header()
        dw = header["dataWindow"]
        width = dw.max.x - dw.min.x + 1
        height = dw.max.y - dw.min.y + 1
        channels = header["channels"]

        if all(name in channels for name in ("R", "G", "B")):
            names = ("R", "G", "B")
        elif "Y" in channels:
            logger.debug("Luminance-only EXR, replicating Y to RGB")
            names = ("Y", "Y", "Y")
        else:
            raise MalformedInput(
                f"No R/G/B or Y channels in {path} (found {', '.join(sorted(channels))})"
            )

        pt = Imath.PixelType(Imath.PixelType.FLOAT)
        planes = {
            name: np.frombuffer(exr_file.channel(name, pt), dtype=np.float32).reshape(height, width)
            for name in set(names)
        }
        pixels = np.stack([planes[name] for name in names], axis=-1)
        color_space = _exr_color_space(header.get("chromaticities"))
    except MalformedInput:
        raise
    except Exception as e:
        raise MalformedInput(f"Failed to decode OpenEXR file {path}: {e}") from e
    finally:
        exr_file.close()

    logger.debug(
        "Read %s: %dx%d, chromaticities %s",
        path.name, width, height, "present" if color_space else "missing",
    )
    return HDRImage(pixels, color_space)


# =============================================================================
# JPEG Encoding
# =============================================================================


def encode_jpeg(
    pixels: NDArray[np.uint8],
    quality: int,
    icc_profile: bytes | None = None,
) -> bytes:
    """Encode 8-bit grayscale (H, W[, 1]) or RGB (H, W, 3) pixels as baseline JPEG."""
    if pixels.size == 0:
        raise EncodeFailure(f"Cannot encode empty image of shape {pixels.shape}")
    if not 1 <= quality <= 100:
        raise EncodeFailure(f"JPEG quality must be within 1-100, got {quality}")

    data = np.ascontiguousarray(pixels, dtype=np.uint8)
    if data.ndim == 3 and data.shape[2] == 1:
        data = data[:, :, 0]

    options: dict[str, Any] = {"quality": quality, "subsampling": 0}
    if icc_profile:
        options["icc_profile"] = icc_profile

    buffer = io.BytesIO()
    try:
        Image.fromarray(data).save(buffer, format="JPEG", **options)
    except (OSError, ValueError, TypeError) as e:
        raise EncodeFailure(f"JPEG encoder rejected {data.shape} image: {e}") from e
    return buffer.getvalue()


# =============================================================================
# PNG Encoding
# =============================================================================


def chrm_chunk(space: ColorSpace) -> tuple[bytes, bytes]:
    """cHRM chunk for a color space. Negative coordinates are clamped to 0."""
    values = []
    for c in (space.white, space.red, space.green, space.blue):
        values.extend([max(0.0, c.x), max(0.0, c.y)])
    return b"cHRM", struct.pack(">8I", *(int(round(v * 100000)) for v in values))


def insert_png_chunks(png_bytes: bytes, chunks: Sequence[tuple[bytes, bytes]]) -> bytes:
    """Insert ancillary chunks right before the first IDAT chunk."""
    if not png_bytes.startswith(PNG_SIGNATURE):
        raise MalformedInput("Not a PNG stream")

    try:
        existing = list(png.Reader(bytes=png_bytes).chunks())
    except png.Error as e:
        raise MalformedInput(f"Cannot parse PNG stream: {e}") from e

    output: list[tuple[bytes, bytes]] = []
    inserted = False
    for chunk_type, data in existing:
        if chunk_type == b"IDAT" and not inserted:
            output.extend(chunks)
            inserted = True
        output.append((chunk_type, data))

    if not inserted:
        raise MalformedInput("PNG stream has no IDAT chunk")

    buffer = io.BytesIO()
    png.write_chunks(buffer, output)
    return buffer.getvalue()


def encode_png(
    pixels: NDArray[np.uint8],
    *,
    color_space: ColorSpace | None = None,
    transfer: TransferFunction | None = None,
    extra_chunks: Sequence[tuple[bytes, bytes]] = (),
) -> bytes:
    """Encode 8-bit grayscale or RGB pixels as PNG using pypng.

    Writes gAMA for `transfer` and cHRM for `color_space` when given.
    """
    if pixels.size == 0:
        raise EncodeFailure(f"Cannot encode empty image of shape {pixels.shape}")

    data = np.ascontiguousarray(pixels, dtype=np.uint8)
    if data.ndim == 2:
        data = data[:, :, np.newaxis]
    height, width, planes = data.shape
    if planes not in (1, 3):
        raise EncodeFailure(f"PNG encoder expects 1 or 3 channels, got {planes}")

    writer_options: dict[str, Any] = {
        "width": width,
        "height": height,
        "bitdepth": 8,
        "greyscale": planes == 1,
    }
    if transfer is not None:
        writer_options["gamma"] = transfer.png_gamma

    buffer = io.BytesIO()
    try:
        writer = png.Writer(**writer_options)
        # pypng expects rows as (H, W*planes)
        writer.write(buffer, data.reshape(height, width * planes))
    except (png.Error, ValueError) as e:
        raise EncodeFailure(f"PNG encoder rejected {data.shape} image: {e}") from e

    chunks: list[tuple[bytes, bytes]] = []
    if color_space is not None:
        chunks.append(chrm_chunk(color_space))
    chunks.extend(extra_chunks)
    if not chunks:
        return buffer.getvalue()
    return insert_png_chunks(buffer.getvalue(), chunks)


# =============================================================================
# File Output
# =============================================================================


def write_files_atomic(files: Sequence[tuple[Path, bytes]]) -> None:
    """Write several files as one unit.

    Every payload is first written to a temporary sibling of its target.
    Only when all of them are on disk are they renamed into place. On any
    failure the temporaries are removed, along with the targets already
    renamed by this call, so either every file is written or none is.
    """
    staged: list[tuple[str, Path]] = []
    replaced: list[Path] = []
    current: Path | None = None
    try:
        for path, data in files:
            current = path
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
            ) as f:
                staged.append((f.name, path))
                f.write(data)
        for tmp_name, path in staged:
            current = path
            os.replace(tmp_name, path)
            replaced.append(path)
    except OSError as e:
        for tmp_name, _ in staged:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
        for done in replaced:
            done.unlink(missing_ok=True)
        raise WriteFailure(f"Cannot write {current}: {e}") from e

    for path, data in files:
        logger.debug("Wrote %s (%d bytes)", path, len(data))


def write_file_atomic(path: Path, data: bytes) -> None:
    """Write bytes to `path` via a temporary sibling and rename.

    A failed write never leaves a partial file at `path`.
    """
    write_files_atomic([(path, data)])
