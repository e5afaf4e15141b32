# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Gain map computation for Ultra HDR.

The gain map stores, per pixel, the log2 ratio between the HDR and SDR
renditions, normalized to [0, 1] with the image's own min/max and quantized
to 8 bits:

    pixel_gain   = (hdr + offset_hdr) / (sdr + offset_sdr)
    log_recovery = (log2(pixel_gain) - gain_min) / (gain_max - gain_min)
    stored       = round(255 * clamp(log_recovery, 0, 1) ^ (1 / gamma))

A viewer inverts it with:

    hdr = (sdr + offset_sdr) * 2 ^ (gain_min + (stored / 255) ^ gamma * (gain_max - gain_min)) - offset_hdr

Both renditions MUST be linear light in the same color space.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Final

import numpy as np
from numpy.typing import NDArray
from scipy import ndimage

from uhdr_color import convert, luminance_coefficients
from uhdr_tone import HDRImage, SDRImage, apply_exposure, map_row_bands

__all__: Final[list[str]] = [
    "GainMap",
    "GainMapSettings",
    "GainMapComputer",
    "find_min_max_without_outliers",
]

logger = logging.getLogger(__name__)

# Gain spans (log2) narrower than this produce a constant map
DEGENERATE_SPAN: Final[float] = 1e-6
# Stored value of a degenerate (constant-gain) map
DEGENERATE_VALUE: Final[int] = 128


# =============================================================================
# Gain Map
# =============================================================================


@dataclass(frozen=True, slots=True, kw_only=True)
class GainMap:
    """Quantized gain map plus the metadata needed to invert it.

    `values` has shape (height, width, channels) with one channel for a
    luminance map or three for a per-channel map. Min/max are log2 values,
    one per channel.
    """

    values: NDArray[np.uint8]
    gain_min: tuple[float, ...]
    gain_max: tuple[float, ...]
    gamma: float
    offset_sdr: float
    offset_hdr: float
    hdr_capacity_min: float
    hdr_capacity_max: float

    def __post_init__(self) -> None:
        values = np.array(self.values, dtype=np.uint8)
        if values.ndim == 2:
            values = values[:, :, np.newaxis]
        values.setflags(write=False)
        object.__setattr__(self, "values", values)

    @property
    def height(self) -> int:
        return int(self.values.shape[0])

    @property
    def width(self) -> int:
        return int(self.values.shape[1])

    @property
    def channels(self) -> int:
        return int(self.values.shape[2])

    @property
    def is_multichannel(self) -> bool:
        return self.channels == 3

    @property
    def is_degenerate(self) -> bool:
        """True when some channel has no dynamic range and stores a constant."""
        return any(lo == hi for lo, hi in zip(self.gain_min, self.gain_max))

    def log2_gain(self) -> NDArray[np.float64]:
        """Dequantize to log2 gain, shape (height, width, channels)."""
        recovery = self.values.astype(np.float64) / 255.0
        if self.gamma != 1.0:
            recovery = np.power(recovery, self.gamma)
        lo = np.asarray(self.gain_min)
        hi = np.asarray(self.gain_max)
        return lo + recovery * (hi - lo)

    def reconstruct(self, sdr: SDRImage) -> NDArray[np.float64]:
        """Rebuild linear HDR from the SDR base the way an Ultra HDR viewer does."""
        sdr_linear = sdr.to_linear()
        log_gain = self.log2_gain()

        # Gain map may be lower resolution than the base image
        if (self.height, self.width) != (sdr.height, sdr.width):
            log_gain = ndimage.zoom(
                log_gain,
                (sdr.height / self.height, sdr.width / self.width, 1),
                order=1,
            )

        gain = np.power(2.0, log_gain)
        return (sdr_linear + self.offset_sdr) * gain - self.offset_hdr


# =============================================================================
# Outlier Rejection
# =============================================================================


def find_min_max_without_outliers(
    gain_values: NDArray[np.floating],
    outlier_ratio: float = 0.001,
    bucket_size: float = 0.01,
    max_buckets: int = 10000,
) -> tuple[float, float]:
    """Min/max of log2 gain values, ignoring sparse extremes.

    The values are binned at `bucket_size`. A bound moves inward to the far
    edge of an empty bin when at most `outlier_ratio / 2` of all values lie
    beyond that bin, so a few isolated extremes separated from the rest by
    a gap are dropped while a populated tail keeps its full extent.
    """
    if gain_values.size == 0:
        return 0.0, 0.0

    lo = float(gain_values.min())
    hi = float(gain_values.max())
    budget = round(gain_values.size * outlier_ratio / 2.0)
    if budget == 0 or hi - lo <= bucket_size * 2:
        return lo, hi

    bins = min(int(np.ceil((hi - lo) / bucket_size)), max_buckets)
    counts, edges = np.histogram(gain_values, bins=bins, range=(lo, hi))
    empty = counts == 0
    # Values in bins [0, i] and in bins [i, end]
    at_or_below = np.cumsum(counts)
    at_or_above = np.cumsum(counts[::-1])[::-1]

    low_cut = np.flatnonzero(empty & (at_or_below <= budget))
    if low_cut.size:
        lo = float(edges[low_cut[-1] + 1])
    high_cut = np.flatnonzero(empty & (at_or_above <= budget))
    if high_cut.size:
        hi = float(edges[high_cut[0]])
    return lo, hi


# =============================================================================
# Gain Map Computation
# =============================================================================


@dataclass(frozen=True, slots=True, kw_only=True)
class GainMapSettings:
    """Gain map encoding parameters."""

    gamma: float = 1.0
    # Ultra HDR default offsets, keep ratios finite near black
    offset_sdr: float = 1 / 64
    offset_hdr: float = 1 / 64
    # Downscale factor of the stored map relative to the base image
    scale: int = 1
    multichannel: bool = False
    # 0 keeps the absolute min/max (every pixel exactly invertible)
    outlier_ratio: float = 0.0
    epsilon: float = 1e-10
    workers: int = 1

    def __post_init__(self) -> None:
        if not self.gamma > 0:
            raise ValueError(f"gamma must be > 0, got {self.gamma}")
        if self.offset_sdr < 0 or self.offset_hdr < 0:
            raise ValueError("offsets must be >= 0")
        if self.scale < 1:
            raise ValueError(f"scale must be >= 1, got {self.scale}")
        if not 0.0 <= self.outlier_ratio < 1.0:
            raise ValueError(f"outlier_ratio must be within [0, 1), got {self.outlier_ratio}")
        if not self.epsilon > 0:
            raise ValueError(f"epsilon must be > 0, got {self.epsilon}")
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")


@dataclass(slots=True)
class GainMapComputer:
    """Computes a GainMap from an HDR image and its SDR rendition.

    Pure: the same inputs always give the same map.
    """

    settings: GainMapSettings = field(default_factory=GainMapSettings)

    def compute(self, hdr: HDRImage, sdr: SDRImage, exposure: float = 1.0) -> GainMap:
        """Compute the gain map.

        Args:
            hdr: Linear-light HDR image (before exposure)
            sdr: SDR rendition of `hdr`
            exposure: Multiplier the SDR was rendered with

        Returns:
            Quantized GainMap with its metadata
        """
        if (hdr.height, hdr.width) != (sdr.height, sdr.width):
            raise ValueError(
                f"HDR ({hdr.width}x{hdr.height}) and SDR ({sdr.width}x{sdr.height}) sizes differ"
            )

        space = hdr.color_space or sdr.color_space
        sdr_linear = sdr.to_linear()
        if not sdr.color_space.same_primaries(space):
            sdr_linear = convert(sdr_linear, sdr.color_space, space)
        coefficients = luminance_coefficients(space)

        log_gain = map_row_bands(
            lambda h, s: self._log2_gain(h, s, exposure, coefficients),
            [hdr.pixels, sdr_linear],
            self.settings.workers,
        )

        if self.settings.scale > 1:
            log_gain = self._downscale(log_gain)

        return self.quantize(log_gain)

    def quantize(self, log_gain: NDArray[np.floating]) -> GainMap:
        """Normalize and quantize a (height, width, channels) log2 gain array."""
        settings = self.settings
        if log_gain.ndim == 2:
            log_gain = log_gain[:, :, np.newaxis]

        values = np.empty(log_gain.shape, dtype=np.uint8)
        gain_min: list[float] = []
        gain_max: list[float] = []

        for c in range(log_gain.shape[2]):
            channel = log_gain[:, :, c]
            lo, hi = find_min_max_without_outliers(
                channel.ravel(), outlier_ratio=settings.outlier_ratio
            )

            if hi - lo < DEGENERATE_SPAN:
                # No dynamic range: constant map, equal bounds, nothing to divide by
                logger.debug("Gain channel %d is degenerate (log2 gain %.6f)", c, lo)
                values[:, :, c] = DEGENERATE_VALUE
                gain_min.append(lo)
                gain_max.append(lo)
                continue

            normalized = np.clip((channel - lo) / (hi - lo), 0.0, 1.0)
            if settings.gamma != 1.0:
                normalized = np.power(normalized, 1.0 / settings.gamma)
            values[:, :, c] = np.round(normalized * 255.0).astype(np.uint8)
            gain_min.append(lo)
            gain_max.append(hi)

        capacity_min = max(0.0, min(gain_min))
        capacity_max = max(capacity_min, max(gain_max))

        return GainMap(
            values=values,
            gain_min=tuple(gain_min),
            gain_max=tuple(gain_max),
            gamma=settings.gamma,
            offset_sdr=settings.offset_sdr,
            offset_hdr=settings.offset_hdr,
            hdr_capacity_min=capacity_min,
            hdr_capacity_max=capacity_max,
        )

    def _log2_gain(
        self,
        hdr_band: NDArray,
        sdr_band: NDArray,
        exposure: float,
        coefficients: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        settings = self.settings
        hdr_exposed = apply_exposure(hdr_band, exposure)

        if settings.multichannel:
            hdr_value = hdr_exposed
            sdr_value = sdr_band
        else:
            hdr_value = (hdr_exposed @ coefficients)[..., np.newaxis]
            sdr_value = (sdr_band @ coefficients)[..., np.newaxis]

        # Negative values can occur from color transforms
        hdr_value = np.maximum(hdr_value, 0.0)
        sdr_value = np.maximum(sdr_value, 0.0)

        ratio = (hdr_value + settings.offset_hdr) / np.maximum(
            sdr_value + settings.offset_sdr, settings.epsilon
        )
        return np.log2(np.maximum(ratio, settings.epsilon))

    def _downscale(self, log_gain: NDArray[np.float64]) -> NDArray[np.float64]:
        height, width = log_gain.shape[:2]
        target_h = max(1, math.ceil(height / self.settings.scale))
        target_w = max(1, math.ceil(width / self.settings.scale))
        return ndimage.zoom(
            log_gain, (target_h / height, target_w / width, 1), order=1
        )
