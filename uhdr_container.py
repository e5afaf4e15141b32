# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Ultra HDR JPEG container assembly and parsing.

Output layout:
1. Primary (SDR) JPEG
   - SOI, APP0 JFIF (from the encoder)
   - APP1 XMP: GContainer directory (Primary + GainMap item with Item:Length)
   - APP2 MPF: Multi-Picture index (2 images, sizes and offsets)
   - remaining encoder segments (ICC APP2, tables, scan), EOI
2. Gain map image, appended directly after the primary EOI
   - JPEG: APP1 XMP with hdrgm:* parameters after SOI/APP0
   - PNG: iTXt 'XML:com.adobe.xmp' chunk with the same XMP

Only the MPF fields readers need to locate the gain map are filled in:
number of images, and size/offset of each image. Optional fields stay zero.
"""

from __future__ import annotations

import struct
import xml.etree.ElementTree as ET
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import Final

from uhdr_codecs import PNG_SIGNATURE, insert_png_chunks
from uhdr_errors import MalformedInput
from uhdr_gainmap import GainMap

__all__: Final[list[str]] = [
    "JpegSegment",
    "MPEntry",
    "iter_segments",
    "insert_app_segments",
    "make_xmp_segment",
    "gain_map_xmp",
    "container_xmp",
    "create_mpf_segment",
    "embed_gain_map_xmp",
    "assemble",
    "read_mpf",
    "extract_gain_map",
    "find_xmp",
    "parse_hdrgm_xmp",
]

XMP_NAMESPACE: Final[bytes] = b"http://ns.adobe.com/xap/1.0/\x00"
MPF_IDENTIFIER: Final[bytes] = b"MPF\x00"
NS_RDF: Final[str] = "http://www.w3.org/1999/02/22-rdf-syntax-ns#"
NS_HDRGM: Final[str] = "http://ns.adobe.com/hdr-gain-map/1.0/"
NS_CONTAINER: Final[str] = "http://ns.google.com/photos/1.0/container/"
NS_ITEM: Final[str] = "http://ns.google.com/photos/1.0/container/item/"

SOI: Final[bytes] = b"\xff\xd8"
MARKER_APP0: Final[int] = 0xE0
MARKER_APP1: Final[int] = 0xE1
MARKER_APP2: Final[int] = 0xE2
MARKER_SOS: Final[int] = 0xDA
# Markers without a length field
STANDALONE_MARKERS: Final[frozenset[int]] = frozenset({0x01, *range(0xD0, 0xD9)})

# MP Entry attribute of the primary image: baseline MP primary image
MP_PRIMARY_ATTRIBUTE: Final[int] = 0x00030000

# MPF tags
TAG_MPF_VERSION: Final[int] = 0xB000
TAG_NUMBER_OF_IMAGES: Final[int] = 0xB001
TAG_MP_ENTRY: Final[int] = 0xB002

MAX_SEGMENT_PAYLOAD: Final[int] = 0xFFFF - 2


# =============================================================================
# JPEG Segments
# =============================================================================


@dataclass(frozen=True, slots=True)
class JpegSegment:
    """A marker segment of a JPEG stream.

    Attributes:
        marker: Marker byte following 0xFF (e.g. 0xE1 for APP1)
        offset: Position of the 0xFF byte in the stream
        payload: Segment data excluding marker and length field
    """

    marker: int
    offset: int
    payload: bytes

    @property
    def end(self) -> int:
        """Position right after this segment."""
        return self.offset + 4 + len(self.payload)


def iter_segments(data: bytes) -> Iterator[JpegSegment]:
    """Yield header segments of a JPEG stream up to (excluding) Start of Scan."""
    if not data.startswith(SOI):
        raise MalformedInput("Not a JPEG stream (missing SOI marker)")

    pos = 2
    while pos + 4 <= len(data):
        if data[pos] != 0xFF:
            raise MalformedInput(f"Expected marker at offset {pos}")
        marker = data[pos + 1]
        if marker == 0xFF:
            # Fill byte
            pos += 1
            continue
        if marker == MARKER_SOS:
            return
        if marker in STANDALONE_MARKERS:
            pos += 2
            continue

        length = struct.unpack(">H", data[pos + 2 : pos + 4])[0]
        if length < 2 or pos + 2 + length > len(data):
            raise MalformedInput(f"Truncated segment 0x{marker:02X} at offset {pos}")
        yield JpegSegment(marker=marker, offset=pos, payload=data[pos + 4 : pos + 2 + length])
        pos += 2 + length


def build_segment(marker: int, payload: bytes) -> bytes:
    """Serialize one marker segment."""
    if len(payload) > MAX_SEGMENT_PAYLOAD:
        raise ValueError(f"Segment payload too large: {len(payload)} bytes")
    return bytes([0xFF, marker]) + struct.pack(">H", len(payload) + 2) + payload


def _insertion_point(jpeg: bytes) -> int:
    """Offset right after SOI and any leading APP0 (JFIF/JFXX) segments."""
    pos = len(SOI)
    for segment in iter_segments(jpeg):
        if segment.marker != MARKER_APP0:
            break
        pos = segment.end
    return pos


def insert_app_segments(jpeg: bytes, segments: Sequence[bytes]) -> bytes:
    """Insert serialized segments after SOI/APP0, keeping the rest intact."""
    pos = _insertion_point(jpeg)
    return jpeg[:pos] + b"".join(segments) + jpeg[pos:]


def make_xmp_segment(xml: str) -> bytes:
    """APP1 segment carrying an XMP packet."""
    return build_segment(MARKER_APP1, XMP_NAMESPACE + xml.encode("utf-8"))


# =============================================================================
# XMP
# =============================================================================


def _wrap_xmp(description: str) -> str:
    return (
        "<?xpacket begin=\"\ufeff\" id=\"W5M0MpCehiHzreSzNTczkc9d\"?>\n"
        "<x:xmpmeta xmlns:x=\"adobe:ns:meta/\" x:xmptk=\"exr2uhdr\">\n"
        f"  <rdf:RDF xmlns:rdf=\"{NS_RDF}\">\n"
        f"{description}"
        "  </rdf:RDF>\n"
        "</x:xmpmeta>\n"
        "<?xpacket end=\"w\"?>"
    )


def _seq(name: str, values: Sequence[float]) -> str:
    items = "".join(f"          <rdf:li>{v:.6f}</rdf:li>\n" for v in values)
    return (
        f"      <hdrgm:{name}>\n"
        "        <rdf:Seq>\n"
        f"{items}"
        "        </rdf:Seq>\n"
        f"      </hdrgm:{name}>\n"
    )


def gain_map_xmp(gain_map: GainMap) -> str:
    """hdrgm XMP packet describing how to apply the gain map.

    Min/max are written as attributes for a luminance map and as rdf:Seq
    elements (one entry per channel) for a per-channel map.
    """
    attributes = [
        'hdrgm:Version="1.0"',
        'hdrgm:BaseRenditionIsHDR="False"',
    ]
    children = ""
    if gain_map.is_multichannel:
        children = _seq("GainMapMin", gain_map.gain_min) + _seq("GainMapMax", gain_map.gain_max)
    else:
        attributes.append(f'hdrgm:GainMapMin="{gain_map.gain_min[0]:.6f}"')
        attributes.append(f'hdrgm:GainMapMax="{gain_map.gain_max[0]:.6f}"')
    attributes.extend([
        f'hdrgm:Gamma="{gain_map.gamma:.6f}"',
        f'hdrgm:OffsetSDR="{gain_map.offset_sdr:.6f}"',
        f'hdrgm:OffsetHDR="{gain_map.offset_hdr:.6f}"',
        f'hdrgm:HDRCapacityMin="{gain_map.hdr_capacity_min:.6f}"',
        f'hdrgm:HDRCapacityMax="{gain_map.hdr_capacity_max:.6f}"',
    ])

    joined = "\n      ".join(attributes)
    description = (
        f"    <rdf:Description rdf:about=\"\" xmlns:hdrgm=\"{NS_HDRGM}\"\n"
        f"      {joined}>\n"
        f"{children}"
        "    </rdf:Description>\n"
    )
    return _wrap_xmp(description)


def container_xmp(gain_map_length: int, gain_map_mime: str = "image/jpeg") -> str:
    """GContainer directory XMP for the primary image."""
    description = (
        "    <rdf:Description rdf:about=\"\"\n"
        f"      xmlns:Container=\"{NS_CONTAINER}\"\n"
        f"      xmlns:Item=\"{NS_ITEM}\"\n"
        f"      xmlns:hdrgm=\"{NS_HDRGM}\"\n"
        "      hdrgm:Version=\"1.0\">\n"
        "      <Container:Directory>\n"
        "        <rdf:Seq>\n"
        "          <rdf:li rdf:parseType=\"Resource\">\n"
        "            <Container:Item Item:Semantic=\"Primary\" Item:Mime=\"image/jpeg\"/>\n"
        "          </rdf:li>\n"
        "          <rdf:li rdf:parseType=\"Resource\">\n"
        f"            <Container:Item Item:Semantic=\"GainMap\" Item:Mime=\"{gain_map_mime}\""
        f" Item:Length=\"{gain_map_length}\"/>\n"
        "          </rdf:li>\n"
        "        </rdf:Seq>\n"
        "      </Container:Directory>\n"
        "    </rdf:Description>\n"
    )
    return _wrap_xmp(description)


def find_xmp(jpeg: bytes) -> str | None:
    """Return the first XMP packet in the JPEG header, if any."""
    for segment in iter_segments(jpeg):
        if segment.marker == MARKER_APP1 and segment.payload.startswith(XMP_NAMESPACE):
            return segment.payload[len(XMP_NAMESPACE) :].decode("utf-8")
    return None


def parse_hdrgm_xmp(xml: str) -> dict[str, str | list[str]]:
    """Read hdrgm:* fields from an XMP packet.

    Scalar fields come back as strings, rdf:Seq fields as lists of strings.
    """
    start = xml.find("<x:xmpmeta")
    end = xml.rfind("</x:xmpmeta>")
    if start < 0 or end < 0:
        raise MalformedInput("No x:xmpmeta element in XMP packet")

    try:
        root = ET.fromstring(xml[start : end + len("</x:xmpmeta>")])
    except ET.ParseError as e:
        raise MalformedInput(f"Invalid XMP: {e}") from e

    fields: dict[str, str | list[str]] = {}
    prefix = f"{{{NS_HDRGM}}}"
    for description in root.iter(f"{{{NS_RDF}}}Description"):
        for key, value in description.attrib.items():
            if key.startswith(prefix):
                fields[key[len(prefix) :]] = value
        for child in description:
            if child.tag.startswith(prefix):
                items = [li.text or "" for li in child.iter(f"{{{NS_RDF}}}li")]
                fields[child.tag[len(prefix) :]] = items
    return fields


# =============================================================================
# Multi-Picture Format
# =============================================================================


@dataclass(frozen=True, slots=True)
class MPEntry:
    """One image of the MP index.

    Attributes:
        attribute: MP image attribute flags
        size: Image length in bytes (SOI to EOI)
        offset: Absolute position of the image in the file
    """

    attribute: int
    size: int
    offset: int


def create_mpf_segment(primary_size: int, secondary_size: int, secondary_offset: int) -> bytes:
    """APP2 MPF segment with an MP Index IFD for two images (big-endian).

    Args:
        primary_size: Length of the primary image in bytes
        secondary_size: Length of the gain map image in bytes
        secondary_offset: Gain map position relative to the MPF TIFF header

    Layout: 'MPF\\0' | TIFF header | IFD (3 entries) | next IFD = 0 | MP entries
    """
    tiff_header = b"MM\x00\x2a" + struct.pack(">I", 8)
    entry_count = 3
    ifd_size = 2 + 12 * entry_count + 4
    mp_entries_offset = len(tiff_header) + ifd_size

    mp_entries = b"".join([
        struct.pack(">IIIHH", MP_PRIMARY_ATTRIBUTE, primary_size, 0, 0, 0),
        struct.pack(">IIIHH", 0, secondary_size, secondary_offset, 0, 0),
    ])

    ifd = b"".join([
        struct.pack(">H", entry_count),
        # MPFVersion: UNDEFINED x4, value inline
        struct.pack(">HHI4s", TAG_MPF_VERSION, 7, 4, b"0100"),
        # NumberOfImages: LONG x1
        struct.pack(">HHII", TAG_NUMBER_OF_IMAGES, 4, 1, 2),
        # MPEntry: UNDEFINED x32, stored after the IFD
        struct.pack(">HHII", TAG_MP_ENTRY, 7, len(mp_entries), mp_entries_offset),
        struct.pack(">I", 0),
    ])

    return build_segment(MARKER_APP2, MPF_IDENTIFIER + tiff_header + ifd + mp_entries)


def read_mpf(data: bytes) -> list[MPEntry]:
    """Parse the MP index of a multi-picture JPEG.

    Returns:
        Entries with absolute offsets (the first image starts at 0)

    Raises:
        MalformedInput: No MPF segment or an inconsistent index
    """
    for segment in iter_segments(data):
        if segment.marker == MARKER_APP2 and segment.payload.startswith(MPF_IDENTIFIER):
            break
    else:
        raise MalformedInput("No MPF segment found")

    tiff = segment.payload[len(MPF_IDENTIFIER) :]
    tiff_position = segment.offset + 4 + len(MPF_IDENTIFIER)

    match tiff[:4]:
        case b"MM\x00\x2a":
            endian = ">"
        case b"II\x2a\x00":
            endian = "<"
        case _:
            raise MalformedInput("Invalid MPF TIFF header")

    try:
        ifd_offset = struct.unpack(endian + "I", tiff[4:8])[0]
        count = struct.unpack(endian + "H", tiff[ifd_offset : ifd_offset + 2])[0]
        entries_blob = b""
        for i in range(count):
            start = ifd_offset + 2 + 12 * i
            tag, _, length, value = struct.unpack(endian + "HHII", tiff[start : start + 12])
            if tag == TAG_MP_ENTRY:
                entries_blob = tiff[value : value + length]

        entries: list[MPEntry] = []
        for i in range(len(entries_blob) // 16):
            attribute, size, offset, _, _ = struct.unpack(
                endian + "IIIHH", entries_blob[16 * i : 16 * (i + 1)]
            )
            absolute = 0 if i == 0 else tiff_position + offset
            entries.append(MPEntry(attribute=attribute, size=size, offset=absolute))
    except struct.error as e:
        raise MalformedInput(f"Truncated MPF index: {e}") from e

    if not entries:
        raise MalformedInput("MPF index has no MP entries")
    return entries


def extract_gain_map(data: bytes) -> bytes:
    """Locate the secondary (gain map) image through the MP index."""
    entries = read_mpf(data)
    if len(entries) < 2:
        raise MalformedInput(f"MPF index lists {len(entries)} image(s), expected 2")

    entry = entries[1]
    if entry.offset + entry.size > len(data):
        raise MalformedInput("MPF gain map entry points past the end of the file")
    return data[entry.offset : entry.offset + entry.size]


# =============================================================================
# Assembly
# =============================================================================


def _itxt_xmp_chunk(xml: str) -> tuple[bytes, bytes]:
    # keyword, NUL, compression flag, compression method, language, NUL, translated keyword, NUL
    return b"iTXt", b"XML:com.adobe.xmp\x00\x00\x00\x00\x00" + xml.encode("utf-8")


def embed_gain_map_xmp(gain_map_image: bytes, gain_map: GainMap) -> tuple[bytes, str]:
    """Attach hdrgm XMP to an encoded gain map image.

    Returns:
        Tuple of (image bytes with XMP, MIME type)
    """
    xml = gain_map_xmp(gain_map)
    if gain_map_image.startswith(SOI):
        return insert_app_segments(gain_map_image, [make_xmp_segment(xml)]), "image/jpeg"
    if gain_map_image.startswith(PNG_SIGNATURE):
        return insert_png_chunks(gain_map_image, [_itxt_xmp_chunk(xml)]), "image/png"
    raise MalformedInput("Gain map image is neither JPEG nor PNG")


def assemble(sdr_jpeg: bytes, gain_map_image: bytes, gain_map: GainMap) -> bytes:
    """Build an Ultra HDR JPEG from an SDR JPEG and an encoded gain map.

    Args:
        sdr_jpeg: Encoded SDR base image
        gain_map_image: Encoded gain map (JPEG or PNG), without XMP
        gain_map: Gain map metadata written to XMP

    Returns:
        Primary image followed by the gain map image
    """
    if not sdr_jpeg.startswith(SOI):
        raise MalformedInput("SDR base image is not a JPEG stream")

    secondary, mime = embed_gain_map_xmp(gain_map_image, gain_map)
    xmp_segment = make_xmp_segment(container_xmp(len(secondary), mime))

    # MPF size is independent of its values: lay out with a placeholder first
    placeholder = create_mpf_segment(0, 0, 0)
    insert_at = _insertion_point(sdr_jpeg)
    mpf_position = insert_at + len(xmp_segment)
    primary = insert_app_segments(sdr_jpeg, [xmp_segment, placeholder])

    tiff_position = mpf_position + 4 + len(MPF_IDENTIFIER)
    mpf = create_mpf_segment(
        primary_size=len(primary),
        secondary_size=len(secondary),
        secondary_offset=len(primary) - tiff_position,
    )
    primary = primary[:mpf_position] + mpf + primary[mpf_position + len(mpf) :]

    return primary + secondary
