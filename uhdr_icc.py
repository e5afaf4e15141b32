# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Minimal ICC v2 display profile writer (matrix/TRC RGB).

Produces the profile embedded in the SDR base JPEG so viewers know which
primaries, white point and transfer curve the 8-bit values are in.

Profile layout (ICC.1:2001-04, all values big-endian):
- 128-byte header
- tag table: count + (signature, offset, size) per tag
- tag data, each element 4-byte aligned:
  desc, cprt, wtpt, rXYZ, gXYZ, bXYZ, rTRC/gTRC/bTRC (shared curve)
"""

from __future__ import annotations

import struct
from typing import Final

import numpy as np
from numpy.typing import NDArray

from uhdr_color import D50, ColorSpace
from uhdr_transfer import TransferFunction

__all__: Final[list[str]] = [
    "create_icc_profile",
    "bradford_adaptation",
]

# Bradford cone response matrix
BRADFORD: Final[NDArray[np.float64]] = np.array([
    [0.8951, 0.2664, -0.1614],
    [-0.7502, 1.7135, 0.0367],
    [0.0389, -0.0685, 1.0296],
])

# Entries of the sampled curve used for the piecewise sRGB TRC
CURVE_POINTS: Final[int] = 1024


def bradford_adaptation(
    source_white: NDArray[np.float64], destination_white: NDArray[np.float64]
) -> NDArray[np.float64]:
    """Chromatic adaptation matrix between two XYZ white points."""
    src_cone = BRADFORD @ source_white
    dst_cone = BRADFORD @ destination_white
    return np.linalg.inv(BRADFORD) @ np.diag(dst_cone / src_cone) @ BRADFORD


def _s15fixed16(value: float) -> bytes:
    return struct.pack(">i", int(round(value * 65536.0)))


def _xyz_tag(xyz: NDArray[np.float64]) -> bytes:
    return b"XYZ " + bytes(4) + b"".join(_s15fixed16(float(v)) for v in xyz)


def _text_tag(text: str) -> bytes:
    return b"text" + bytes(4) + text.encode("ascii") + b"\x00"


def _desc_tag(text: str) -> bytes:
    ascii_text = text.encode("ascii") + b"\x00"
    parts = [
        b"desc",
        bytes(4),
        struct.pack(">I", len(ascii_text)),
        ascii_text,
        struct.pack(">II", 0, 0),  # Unicode language code and count
        struct.pack(">HB", 0, 0),  # ScriptCode code and count
        bytes(67),
    ]
    return b"".join(parts)


def _curve_tag(transfer: TransferFunction) -> bytes:
    exponent = transfer.exponent
    if exponent is not None:
        # Single entry: u8Fixed8Number gamma
        return b"curv" + bytes(4) + struct.pack(">IH", 1, int(round(exponent * 256.0)))

    samples = transfer.decode(np.linspace(0.0, 1.0, CURVE_POINTS))
    table = np.round(samples * 65535.0).astype(">u2")
    return b"curv" + bytes(4) + struct.pack(">I", CURVE_POINTS) + table.tobytes()


def _pad4(data: bytes) -> bytes:
    return data + bytes(-len(data) % 4)


def create_icc_profile(
    space: ColorSpace,
    transfer: TransferFunction,
    description: str | None = None,
) -> bytes:
    """Serialize an ICC v2.1 display profile for an RGB space and transfer curve.

    Colorants are Bradford-adapted to the D50 profile connection space.
    """
    d50 = D50.to_xyz()
    white = space.white.to_xyz()
    adapted = bradford_adaptation(white, d50) @ space.to_xyz
    curve = _curve_tag(transfer)

    if description is None:
        description = f"{space.name} {transfer.value}"

    tags: list[tuple[bytes, bytes]] = [
        (b"desc", _desc_tag(description)),
        (b"cprt", _text_tag("No copyright, use freely")),
        (b"wtpt", _xyz_tag(white)),
        (b"rXYZ", _xyz_tag(adapted[:, 0])),
        (b"gXYZ", _xyz_tag(adapted[:, 1])),
        (b"bXYZ", _xyz_tag(adapted[:, 2])),
        (b"rTRC", curve),
        (b"gTRC", curve),
        (b"bTRC", curve),
    ]

    table_size = 4 + 12 * len(tags)
    offset = 128 + table_size
    table = [struct.pack(">I", len(tags))]
    body: list[bytes] = []
    placed: dict[bytes, int] = {}

    for signature, data in tags:
        # TRC tags share one data element
        if data in placed:
            table.append(struct.pack(">4sII", signature, placed[data], len(data)))
            continue
        placed[data] = offset
        table.append(struct.pack(">4sII", signature, offset, len(data)))
        padded = _pad4(data)
        body.append(padded)
        offset += len(padded)

    profile_size = offset
    header = b"".join([
        struct.pack(">I", profile_size),
        bytes(4),  # Preferred CMM
        struct.pack(">I", 0x02100000),  # Version 2.1.0
        b"mntr",
        b"RGB ",
        b"XYZ ",
        bytes(12),  # Creation date (left zero for reproducible output)
        b"acsp",
        bytes(4),  # Primary platform
        struct.pack(">I", 0),  # Flags
        bytes(4),  # Device manufacturer
        bytes(4),  # Device model
        bytes(8),  # Device attributes
        struct.pack(">I", 0),  # Perceptual intent
        b"".join(_s15fixed16(float(v)) for v in (0.9642, 1.0, 0.8249)),
        bytes(4),  # Creator
        bytes(16),  # Profile ID
        bytes(28),  # Reserved
    ])
    assert len(header) == 128, f"Expected 128-byte header, got {len(header)}"

    return header + b"".join(table) + b"".join(body)
