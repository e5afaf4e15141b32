# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Display transfer functions used to gamma-encode the SDR rendition.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Final

import numpy as np
from numpy.typing import ArrayLike, NDArray

from uhdr_errors import UnsupportedTransferFunction

__all__: Final[list[str]] = [
    "TransferFunction",
    "parse_transfer",
]


class TransferFunction(StrEnum):
    """Supported SDR transfer functions."""

    SRGB = "srgb"
    GAMMA_2_2 = "gamma2.2"
    GAMMA_2_4 = "gamma2.4"

    @property
    def exponent(self) -> float | None:
        """Pure power-law exponent, or None for the piecewise sRGB curve."""
        match self:
            case TransferFunction.GAMMA_2_2:
                return 2.2
            case TransferFunction.GAMMA_2_4:
                return 2.4
            case _:
                return None

    @property
    def png_gamma(self) -> float:
        """File gamma for the PNG gAMA chunk (sRGB uses the 1/2.2 approximation)."""
        return 1.0 / (self.exponent or 2.2)

    def encode(self, linear: ArrayLike) -> NDArray[np.float64]:
        """Linear light [0, 1] -> encoded signal [0, 1]. Input is clamped first."""
        v = np.clip(np.asarray(linear, dtype=np.float64), 0.0, 1.0)
        if self.exponent is not None:
            return np.power(v, 1.0 / self.exponent)
        return np.where(v <= 0.0031308, v * 12.92, 1.055 * np.power(v, 1.0 / 2.4) - 0.055)

    def decode(self, encoded: ArrayLike) -> NDArray[np.float64]:
        """Encoded signal [0, 1] -> linear light [0, 1]."""
        v = np.clip(np.asarray(encoded, dtype=np.float64), 0.0, 1.0)
        if self.exponent is not None:
            return np.power(v, self.exponent)
        return np.where(v <= 0.04045, v / 12.92, np.power((v + 0.055) / 1.055, 2.4))


def parse_transfer(name: str | TransferFunction) -> TransferFunction:
    """Look up a transfer function by name."""
    try:
        return TransferFunction(str(name).strip().lower())
    except ValueError:
        choices = ", ".join(t.value for t in TransferFunction)
        raise UnsupportedTransferFunction(
            f"Unsupported transfer function {name!r} (choose from {choices})"
        ) from None
