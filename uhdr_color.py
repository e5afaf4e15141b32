# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Chromaticity and white-point math for linear RGB color spaces.

A color space is defined by the CIE xy chromaticities of its red, green and
blue primaries plus its white point. From those we derive the 3x3 matrix that
takes linear RGB to CIE XYZ (http://www.brucelindbloom.com, "RGB/XYZ Matrices")
and chain two such matrices to convert between arbitrary RGB spaces:

    rgb_dst = M_to_xyz(dst)^-1 . M_to_xyz(src) . rgb_src
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Final, Self

import numpy as np
from numpy.typing import ArrayLike, NDArray

from uhdr_errors import DegenerateColorSpace

__all__: Final[list[str]] = [
    "CIExy",
    "ColorSpace",
    "NamedPreset",
    "ExplicitPrimaries",
    "ColorSpaceChoice",
    "PRESETS",
    "ILLUMINANTS",
    "REC_709",
    "REC_2020",
    "DISPLAY_P3",
    "matrix_to_xyz",
    "matrix_from_xyz",
    "conversion_matrix",
    "convert",
    "luminance_coefficients",
    "contains_color",
    "contains_space",
    "parse_color_space",
    "parse_white_point",
]

# Determinant magnitude below which a primaries matrix is treated as singular
DEGENERACY_EPSILON: Final[float] = 1e-8


# =============================================================================
# Chromaticity Coordinates
# =============================================================================


@dataclass(frozen=True, slots=True)
class CIExy:
    """CIE 1931 xy chromaticity coordinates."""

    x: float
    y: float

    def to_xyz(self, luma: float = 1.0) -> NDArray[np.float64]:
        """Lift to CIE XYZ with the given luminance Y (xyY -> XYZ)."""
        if luma <= 0.0:
            return np.zeros(3)
        if abs(self.y) < DEGENERACY_EPSILON:
            raise DegenerateColorSpace(f"Chromaticity ({self.x}, {self.y}) has y = 0")
        return np.array([
            self.x * luma / self.y,
            luma,
            (1.0 - self.x - self.y) * luma / self.y,
        ])

    def has_negatives(self) -> bool:
        return self.x < 0.0 or self.y < 0.0

    @classmethod
    def from_temperature(cls, kelvin: float) -> Self:
        """White point on the CIE daylight locus for a correlated color temperature.

        The polynomial is only defined between 4000 K and 25000 K.
        """
        if not 4000.0 <= kelvin <= 25000.0:
            raise ValueError(f"Temperature must be within 4000-25000 K, got {kelvin:g} K")

        t = float(kelvin)
        if t <= 7000.0:
            x = 0.244063 + 0.09911e3 / t + 2.9678e6 / t**2 - 4.6070e9 / t**3
        else:
            x = 0.237040 + 0.24748e3 / t + 1.9018e6 / t**2 - 2.0064e9 / t**3
        y = -3.000 * x**2 + 2.870 * x - 0.275
        return cls(x, y)


# =============================================================================
# Color Space
# =============================================================================


def _rgb_to_xyz_matrix(
    red: CIExy, green: CIExy, blue: CIExy, white: CIExy
) -> NDArray[np.float64]:
    primaries = np.column_stack([red.to_xyz(), green.to_xyz(), blue.to_xyz()])
    if abs(np.linalg.det(primaries)) < DEGENERACY_EPSILON:
        raise DegenerateColorSpace(
            "Primaries are collinear and do not span an RGB space"
        )

    # Scale each primary so that RGB (1, 1, 1) lands on the white point
    scale = np.linalg.solve(primaries, white.to_xyz())
    matrix = primaries * scale
    if abs(np.linalg.det(matrix)) < DEGENERACY_EPSILON:
        raise DegenerateColorSpace(
            "White point coincides with a primary or edge of the gamut"
        )
    return matrix


@dataclass(frozen=True, slots=True)
class ColorSpace:
    """Linear RGB space defined by primaries and white point.

    The RGB->XYZ matrix and its inverse are computed once at construction,
    so a degenerate definition is rejected before any pixel is processed.
    """

    name: str
    red: CIExy
    green: CIExy
    blue: CIExy
    white: CIExy
    _to_xyz: NDArray[np.float64] = field(init=False, repr=False, compare=False)
    _from_xyz: NDArray[np.float64] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        to_xyz = _rgb_to_xyz_matrix(self.red, self.green, self.blue, self.white)
        from_xyz = np.linalg.inv(to_xyz)
        to_xyz.setflags(write=False)
        from_xyz.setflags(write=False)
        object.__setattr__(self, "_to_xyz", to_xyz)
        object.__setattr__(self, "_from_xyz", from_xyz)

    @property
    def to_xyz(self) -> NDArray[np.float64]:
        return self._to_xyz

    @property
    def from_xyz(self) -> NDArray[np.float64]:
        return self._from_xyz

    @property
    def chromaticities(self) -> tuple[CIExy, CIExy, CIExy, CIExy]:
        """(red, green, blue, white)."""
        return (self.red, self.green, self.blue, self.white)

    def same_primaries(self, other: ColorSpace) -> bool:
        """True if both spaces share primaries and white point, ignoring names."""
        return self.chromaticities == other.chromaticities

    def with_white(self, white: CIExy) -> ColorSpace:
        """Copy of this space with the white point replaced."""
        return dataclasses.replace(self, name=f"{self.name}/custom-white", white=white)

    def has_negatives(self) -> bool:
        return any(c.has_negatives() for c in self.chromaticities)


# =============================================================================
# Matrix Operations
# =============================================================================


def matrix_to_xyz(space: ColorSpace) -> NDArray[np.float64]:
    """3x3 matrix taking linear RGB in `space` to CIE XYZ."""
    return space.to_xyz


def matrix_from_xyz(space: ColorSpace) -> NDArray[np.float64]:
    """3x3 matrix taking CIE XYZ to linear RGB in `space`."""
    return space.from_xyz


def conversion_matrix(source: ColorSpace, destination: ColorSpace) -> NDArray[np.float64]:
    """Matrix converting linear RGB from `source` to `destination`."""
    return destination.from_xyz @ source.to_xyz


def convert(pixels: ArrayLike, source: ColorSpace, destination: ColorSpace) -> NDArray[np.float64]:
    """Convert one pixel (3,) or any (..., 3) array of linear RGB between spaces.

    Always returns a new array.
    """
    rgb = np.asarray(pixels, dtype=np.float64)
    if rgb.shape[-1:] != (3,):
        raise ValueError(f"Expected trailing RGB axis of size 3, got shape {rgb.shape}")
    if source.same_primaries(destination):
        return rgb.copy()
    return rgb @ conversion_matrix(source, destination).T


def luminance_coefficients(space: ColorSpace) -> NDArray[np.float64]:
    """Weights giving relative luminance Y from linear RGB (Y row of RGB->XYZ)."""
    return space.to_xyz[1].copy()


# =============================================================================
# Gamut Containment
# =============================================================================


def contains_color(space: ColorSpace, color: CIExy) -> bool:
    """Does the primaries triangle of `space` contain `color`?"""

    def sign(p1: CIExy, p2: CIExy, p3: CIExy) -> float:
        return (p1.x - p3.x) * (p2.y - p3.y) - (p2.x - p3.x) * (p1.y - p3.y)

    d1 = sign(color, space.red, space.green)
    d2 = sign(color, space.green, space.blue)
    d3 = sign(color, space.blue, space.red)

    has_neg = d1 < 0 or d2 < 0 or d3 < 0
    has_pos = d1 > 0 or d2 > 0 or d3 > 0
    return not (has_neg and has_pos)


def contains_space(outer: ColorSpace, inner: ColorSpace) -> bool:
    """Does `outer` cover every primary of `inner`? White points are ignored."""
    return all(contains_color(outer, c) for c in (inner.red, inner.green, inner.blue))


# =============================================================================
# Presets
# =============================================================================

D50: Final[CIExy] = CIExy(0.34567, 0.35850)
# ITU values as used in Rec. 709 and Rec. 2020
D65: Final[CIExy] = CIExy(0.3127, 0.3290)
ACES_WHITE: Final[CIExy] = CIExy(0.32168, 0.33767)

REC_709: Final[ColorSpace] = ColorSpace(
    "rec709", CIExy(0.640, 0.330), CIExy(0.300, 0.600), CIExy(0.150, 0.060), D65
)
REC_2020: Final[ColorSpace] = ColorSpace(
    "rec2020", CIExy(0.708, 0.292), CIExy(0.170, 0.797), CIExy(0.131, 0.046), D65
)
ACES_AP0: Final[ColorSpace] = ColorSpace(
    "aces-ap0", CIExy(0.7347, 0.2653), CIExy(0.0, 1.0), CIExy(0.0001, -0.0770), ACES_WHITE
)
ACES_AP1: Final[ColorSpace] = ColorSpace(
    "aces-ap1", CIExy(0.713, 0.293), CIExy(0.165, 0.830), CIExy(0.128, 0.044), ACES_WHITE
)
DISPLAY_P3: Final[ColorSpace] = ColorSpace(
    "display-p3", CIExy(0.680, 0.320), CIExy(0.265, 0.690), CIExy(0.150, 0.060), D65
)

PRESETS: Final[Mapping[str, ColorSpace]] = MappingProxyType({
    "rec709": REC_709,
    "srgb": REC_709,
    "rec2020": REC_2020,
    "rec2100": dataclasses.replace(REC_2020, name="rec2100"),
    "aces-ap0": ACES_AP0,
    "aces-ap1": ACES_AP1,
    "display-p3": DISPLAY_P3,
})

ILLUMINANTS: Final[Mapping[str, CIExy]] = MappingProxyType({
    "d50": D50,
    "d65": D65,
    "aces": ACES_WHITE,
})


# =============================================================================
# User Choices
# =============================================================================


@dataclass(frozen=True, slots=True)
class NamedPreset:
    """Color space chosen by preset name."""

    name: str

    def resolve(self) -> ColorSpace:
        try:
            return PRESETS[self.name.lower()]
        except KeyError:
            choices = ", ".join(PRESETS)
            raise ValueError(f"Unknown color space {self.name!r} (choose from {choices})") from None


@dataclass(frozen=True, slots=True)
class ExplicitPrimaries:
    """Color space given as explicit primaries and white point."""

    red: CIExy
    green: CIExy
    blue: CIExy
    white: CIExy

    def resolve(self) -> ColorSpace:
        return ColorSpace("custom", self.red, self.green, self.blue, self.white)


ColorSpaceChoice = NamedPreset | ExplicitPrimaries


def _parse_floats(text: str, count: int) -> list[float]:
    parts = [p.strip() for p in text.split(",")]
    if len(parts) != count:
        raise ValueError(f"Expected {count} comma-separated numbers, got {text!r}")
    try:
        return [float(p) for p in parts]
    except ValueError:
        raise ValueError(f"Not a list of numbers: {text!r}") from None


def parse_color_space(text: str) -> ColorSpaceChoice:
    """Parse a preset name or 'rx,ry,gx,gy,bx,by,wx,wy'."""
    if "," in text:
        rx, ry, gx, gy, bx, by, wx, wy = _parse_floats(text, 8)
        return ExplicitPrimaries(CIExy(rx, ry), CIExy(gx, gy), CIExy(bx, by), CIExy(wx, wy))

    choice = NamedPreset(text.strip())
    choice.resolve()
    return choice


def parse_white_point(text: str) -> CIExy:
    """Parse an illuminant name ('d65'), a temperature ('5000K') or 'x,y'."""
    value = text.strip().lower()
    if value in ILLUMINANTS:
        return ILLUMINANTS[value]
    if value.endswith("k"):
        try:
            kelvin = float(value[:-1])
        except ValueError:
            raise ValueError(f"Not a temperature: {text!r}") from None
        return CIExy.from_temperature(kelvin)
    x, y = _parse_floats(value, 2)
    return CIExy(x, y)
