# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Exceptions and non-fatal diagnostics shared by the EXR to Ultra HDR modules.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Final

__all__: Final[list[str]] = [
    "UltraHDRError",
    "DegenerateColorSpace",
    "MissingColorSpaceMetadata",
    "UnsupportedTransferFunction",
    "MalformedInput",
    "EncodeFailure",
    "WriteFailure",
    "DiagnosticKind",
    "Diagnostic",
]


# =============================================================================
# Exceptions
# =============================================================================


class UltraHDRError(Exception):
    """Base exception for EXR to Ultra HDR conversion errors."""

    pass


class DegenerateColorSpace(UltraHDRError):
    """Primaries and white point do not span a usable RGB space."""

    pass


class MissingColorSpaceMetadata(UltraHDRError):
    """Input has no chromaticities and strict mode forbids the default."""

    pass


class UnsupportedTransferFunction(UltraHDRError):
    """Requested transfer function is not implemented."""

    pass


class MalformedInput(UltraHDRError):
    """Input file or stream could not be decoded."""

    pass


class EncodeFailure(UltraHDRError):
    """JPEG or PNG encoder rejected the pixel buffer."""

    pass


class WriteFailure(UltraHDRError):
    """Output file could not be written."""

    pass


# =============================================================================
# Diagnostics
# =============================================================================


class DiagnosticKind(StrEnum):
    """Kinds of warnings reported alongside a successful conversion."""

    MISSING_CHROMATICITIES = "missing-chromaticities"
    HIGHLIGHT_CLIPPING = "highlight-clipping"
    DEGENERATE_GAIN_MAP = "degenerate-gain-map"
    GAMUT_REDUCTION = "gamut-reduction"
    NEGATIVE_CHROMATICITIES = "negative-chromaticities"


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """A non-fatal warning produced by one of the conversion stages."""

    kind: DiagnosticKind
    message: str

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"
