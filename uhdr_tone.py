# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
SDR rendition of scene-referred HDR images.

The SDR base is produced by a deliberately simple policy: scale by the
exposure multiplier, hard clamp to [0, 1], apply the display transfer
function and quantize to 8 bits. Highlights above 1.0 are not compressed;
recovering them is the job of the gain map.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Final

import numpy as np
from numpy.typing import ArrayLike, NDArray

from uhdr_color import CIExy, ColorSpace, luminance_coefficients
from uhdr_errors import Diagnostic, DiagnosticKind, MalformedInput
from uhdr_transfer import TransferFunction

__all__: Final[list[str]] = [
    "HDRImage",
    "SDRImage",
    "ToneSettings",
    "ToneRenderer",
    "apply_exposure",
    "luminance",
    "map_row_bands",
]

logger = logging.getLogger(__name__)

_FLOAT32_MAX: Final[float] = float(np.finfo(np.float32).max)


# =============================================================================
# Image Buffers
# =============================================================================


@dataclass(frozen=True, slots=True)
class HDRImage:
    """Scene-referred linear-light RGB image as decoded from OpenEXR.

    `color_space` is None when the file carried no chromaticities.
    The pixel buffer is copied and frozen on construction.
    """

    pixels: NDArray[np.float32]
    color_space: ColorSpace | None = None
    white_point: CIExy | None = None

    def __post_init__(self) -> None:
        pixels = np.array(self.pixels, dtype=np.float32)
        if pixels.ndim != 3 or pixels.shape[2] != 3:
            raise MalformedInput(f"Expected (height, width, 3) pixels, got shape {pixels.shape}")
        if pixels.shape[0] < 1 or pixels.shape[1] < 1:
            raise MalformedInput(f"Image must be at least 1x1, got {pixels.shape[1]}x{pixels.shape[0]}")

        # NaN/Inf can appear in renders; keep them from poisoning min/max
        pixels = np.nan_to_num(pixels, nan=0.0, posinf=_FLOAT32_MAX, neginf=-_FLOAT32_MAX)
        pixels.setflags(write=False)
        object.__setattr__(self, "pixels", pixels)

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])


@dataclass(frozen=True, slots=True)
class SDRImage:
    """Display-referred, gamma-encoded 8-bit RGB image."""

    pixels: NDArray[np.uint8]
    color_space: ColorSpace
    transfer: TransferFunction

    def __post_init__(self) -> None:
        pixels = np.array(self.pixels, dtype=np.uint8)
        pixels.setflags(write=False)
        object.__setattr__(self, "pixels", pixels)

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    def to_linear(self) -> NDArray[np.float64]:
        """Decode back to linear light in [0, 1]."""
        return self.transfer.decode(self.pixels.astype(np.float64) / 255.0)


# =============================================================================
# Pixel Helpers
# =============================================================================


def apply_exposure(pixels: ArrayLike, exposure: float) -> NDArray[np.float64]:
    """Scale linear light by the exposure multiplier (new float64 array)."""
    return np.asarray(pixels, dtype=np.float64) * exposure


def luminance(pixels: ArrayLike, space: ColorSpace) -> NDArray[np.float64]:
    """Relative luminance of linear RGB pixels in `space`."""
    return np.asarray(pixels, dtype=np.float64) @ luminance_coefficients(space)


def map_row_bands(
    func: Callable[..., NDArray],
    arrays: Sequence[NDArray],
    workers: int,
) -> NDArray:
    """Apply `func` to disjoint row bands of `arrays` and stack the results.

    Every worker reads its own slice of the inputs and returns a new band;
    bands are concatenated in row order, so no locking is needed.
    """
    height = arrays[0].shape[0]
    bands = max(1, min(workers, height))
    if bands == 1:
        return func(*arrays)

    bounds = np.linspace(0, height, bands + 1).astype(int)
    slices = [slice(lo, hi) for lo, hi in zip(bounds[:-1], bounds[1:])]

    def run(rows: slice) -> NDArray:
        return func(*(a[rows] for a in arrays))

    with ThreadPoolExecutor(max_workers=bands) as executor:
        parts = list(executor.map(run, slices))
    return np.concatenate(parts, axis=0)


# =============================================================================
# Tone Renderer
# =============================================================================


@dataclass(frozen=True, slots=True, kw_only=True)
class ToneSettings:
    """SDR rendering options."""

    transfer: TransferFunction = TransferFunction.SRGB
    # Pixels brighter than 1 + clip_threshold count as clipped highlights
    clip_threshold: float = 1.0
    # Warn when more than this fraction of pixels is clipped
    clip_fraction: float = 0.01
    workers: int = 1

    def __post_init__(self) -> None:
        if self.clip_threshold < 0:
            raise ValueError(f"clip_threshold must be >= 0, got {self.clip_threshold}")
        if not 0.0 <= self.clip_fraction <= 1.0:
            raise ValueError(f"clip_fraction must be within [0, 1], got {self.clip_fraction}")
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")


@dataclass(slots=True)
class ToneRenderer:
    """Clamp-and-encode SDR renderer."""

    settings: ToneSettings = field(default_factory=ToneSettings)

    def render_pixel(self, rgb: ArrayLike, exposure: float = 1.0) -> tuple[int, int, int]:
        """Render a single linear RGB triple to 8-bit encoded values."""
        _check_exposure(exposure)
        r, g, b = self._encode(np.asarray(rgb, dtype=np.float64).reshape(1, 3), exposure)[0]
        return int(r), int(g), int(b)

    def render(
        self,
        hdr: HDRImage,
        exposure: float = 1.0,
        color_space: ColorSpace | None = None,
    ) -> tuple[SDRImage, list[Diagnostic]]:
        """Render the SDR base image.

        Args:
            hdr: Linear-light source image
            exposure: Linear multiplier applied before clamping
            color_space: Space the pixels are in, when `hdr` carries none

        Returns:
            Tuple of the SDR image and any highlight-clipping diagnostic
        """
        _check_exposure(exposure)
        space = color_space or hdr.color_space
        if space is None:
            raise ValueError("HDR image has no color space; pass one explicitly")

        encoded = map_row_bands(
            lambda band: self._encode(band, exposure),
            [hdr.pixels],
            self.settings.workers,
        )
        sdr = SDRImage(encoded, space, self.settings.transfer)

        diagnostics: list[Diagnostic] = []
        clipped = self.clipped_fraction(hdr, exposure)
        if clipped > self.settings.clip_fraction:
            message = (
                f"{clipped:.1%} of pixels exceed {1 + self.settings.clip_threshold:g}x "
                f"SDR white after exposure and were clipped in the base image"
            )
            logger.debug("Highlight clipping: %s", message)
            diagnostics.append(Diagnostic(DiagnosticKind.HIGHLIGHT_CLIPPING, message))

        return sdr, diagnostics

    def clipped_fraction(self, hdr: HDRImage, exposure: float = 1.0) -> float:
        """Fraction of pixels whose brightest channel exceeds the clip threshold."""
        peak = np.max(hdr.pixels, axis=-1).astype(np.float64) * exposure
        return float(np.mean(peak > 1.0 + self.settings.clip_threshold))

    def _encode(self, band: NDArray, exposure: float) -> NDArray[np.uint8]:
        clamped = np.clip(apply_exposure(band, exposure), 0.0, 1.0)
        encoded = self.settings.transfer.encode(clamped)
        return np.round(encoded * 255.0).astype(np.uint8)


def _check_exposure(exposure: float) -> None:
    if not np.isfinite(exposure) or exposure <= 0:
        raise ValueError(f"Exposure must be a positive finite multiplier, got {exposure}")
