# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""Shared fixtures: small synthetic HDR images."""

from __future__ import annotations

import numpy as np
import pytest

from uhdr_color import REC_709
from uhdr_tone import HDRImage


@pytest.fixture
def two_by_two() -> HDRImage:
    """Row-major [(4,4,4), (1,1,1)], [(0.25,0.25,0.25), (16,16,16)] in Rec.709."""
    pixels = np.array(
        [
            [[4.0, 4.0, 4.0], [1.0, 1.0, 1.0]],
            [[0.25, 0.25, 0.25], [16.0, 16.0, 16.0]],
        ],
        dtype=np.float32,
    )
    return HDRImage(pixels, REC_709)


@pytest.fixture
def gray_ramp() -> HDRImage:
    """8x16 neutral ramp from deep shadow to 8x SDR white."""
    values = np.geomspace(0.005, 8.0, 16, dtype=np.float32)
    pixels = np.repeat(np.tile(values, (8, 1))[:, :, np.newaxis], 3, axis=2)
    return HDRImage(pixels, REC_709)


@pytest.fixture
def colorful() -> HDRImage:
    """Deterministic saturated 12x10 image with highlights up to 6x."""
    rng = np.random.default_rng(1234)
    pixels = rng.uniform(0.0, 6.0, size=(12, 10, 3)).astype(np.float32)
    return HDRImage(pixels, REC_709)


@pytest.fixture
def untagged(colorful: HDRImage) -> HDRImage:
    """Same pixels as `colorful` without chromaticities."""
    return HDRImage(colorful.pixels)
