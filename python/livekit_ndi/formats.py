"""
  ==============================================================================

   This file is part of the livekit-ndi bridge.
   Copyright (c) 2025 - kunitoki@gmail.com

   livekit-ndi is an open source tool subject to open-source licensing.

   The code included in this file is provided under the terms of the ISC license
   http://www.isc.org/downloads/software-support-policy/isc-license. Permission
   to use, copy, modify, and/or distribute this software for any purpose with or
   without fee is hereby granted provided that the above copyright notice and
   this permission notice appear in all copies.

   LIVEKIT-NDI IS PROVIDED "AS IS" WITHOUT ANY WARRANTY, AND ALL WARRANTIES,
   WHETHER EXPRESSED OR IMPLIED, INCLUDING MERCHANTABILITY AND FITNESS FOR
   PURPOSE, ARE DISCLAIMED.

  ==============================================================================

Pixel format mapping from LiveKit video buffer types to NDI FourCC codes.

LiveKit delivers frames in one of eleven buffer layouts while the NDI sender
only accepts a handful of FourCCs. Layouts without a faithful counterpart are
still forwarded using the closest FourCC so that receivers keep a picture, but
every such mapping is reported as a warning naming the offending tag. Receivers
may render wrong colours or chroma for those tags; losing the stream entirely
is considered worse.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from fractions import Fraction
import logging
from typing import Dict, FrozenSet, Optional, Set

from .frames import OutgoingVideoSample, RawVideoFrame, micros_to_ndi_timestamp

__all__ = [
    "APPROXIMATE_FORMATS",
    "FourCCMapping",
    "OutputFourCC",
    "PIXEL_FORMAT_TABLE",
    "PixelFormatMapper",
    "UnsupportedPixelFormatError",
    "VideoBufferType",
    "line_stride_for",
    "map_pixel_format",
    "translate_video_frame",
]

_logger = logging.getLogger(__name__)


class VideoBufferType(IntEnum):
    """Buffer layouts reported by ``livekit.rtc.VideoFrame.type``."""

    RGBA = 0
    ABGR = 1
    ARGB = 2
    BGRA = 3
    RGB24 = 4
    I420 = 5
    I420A = 6
    I422 = 7
    I444 = 8
    I010 = 9
    NV12 = 10


class OutputFourCC(str, Enum):
    """FourCC codes declared to the NDI sender."""

    RGBA = "RGBA"
    BGRA = "BGRA"
    I420 = "I420"
    NV12 = "NV12"


class UnsupportedPixelFormatError(ValueError):
    """Raised for unknown buffer types when no fallback FourCC is configured."""


PIXEL_FORMAT_TABLE: Dict[VideoBufferType, OutputFourCC] = {
    VideoBufferType.RGBA: OutputFourCC.RGBA,
    VideoBufferType.ABGR: OutputFourCC.RGBA,  # channel order left as is
    VideoBufferType.ARGB: OutputFourCC.RGBA,  # channel order left as is
    VideoBufferType.BGRA: OutputFourCC.BGRA,
    VideoBufferType.RGB24: OutputFourCC.RGBA,  # no alpha byte in the source
    VideoBufferType.I420: OutputFourCC.I420,
    VideoBufferType.I420A: OutputFourCC.I420,  # alpha plane dropped
    VideoBufferType.I422: OutputFourCC.I420,  # 4:2:2 chroma read as 4:2:0
    VideoBufferType.I444: OutputFourCC.I420,  # 4:4:4 chroma read as 4:2:0
    VideoBufferType.I010: OutputFourCC.I420,  # 10-bit samples read as 8-bit
    VideoBufferType.NV12: OutputFourCC.NV12,
}

APPROXIMATE_FORMATS: FrozenSet[int] = frozenset(
    {
        VideoBufferType.ABGR,
        VideoBufferType.ARGB,
        VideoBufferType.RGB24,
        VideoBufferType.I420A,
        VideoBufferType.I422,
        VideoBufferType.I444,
        VideoBufferType.I010,
    }
)


@dataclass(frozen=True, slots=True)
class FourCCMapping:
    """Result of mapping one buffer type tag."""

    tag: int
    fourcc: OutputFourCC
    known: bool

    @property
    def exact (self) -> bool:
        return self.known and self.tag not in APPROXIMATE_FORMATS


def _resolve (tag: int, unknown_fallback: Optional[OutputFourCC]) -> FourCCMapping:
    try:
        buffer_type = VideoBufferType(tag)
    except ValueError:
        if unknown_fallback is None:
            raise UnsupportedPixelFormatError(f"Unknown video buffer type: {tag}") from None
        return FourCCMapping(tag=int(tag), fourcc=OutputFourCC(unknown_fallback), known=False)

    return FourCCMapping(tag=int(tag), fourcc=PIXEL_FORMAT_TABLE[buffer_type], known=True)


def _warn (mapping: FourCCMapping) -> None:
    if mapping.known:
        _logger.warning(
            "Maybe unsupported frame fourcc type: %d (%s); sending as %s",
            mapping.tag,
            VideoBufferType(mapping.tag).name,
            mapping.fourcc.value,
        )
    else:
        _logger.warning(
            "Unknown frame fourcc type: %d; sending as %s",
            mapping.tag,
            mapping.fourcc.value,
        )


def map_pixel_format (tag: int, unknown_fallback: Optional[OutputFourCC] = OutputFourCC.RGBA) -> FourCCMapping:
    """Map a LiveKit buffer type *tag* to the FourCC declared to NDI.

    Approximate and unknown tags log a warning on every call. Unknown tags use
    *unknown_fallback*; pass ``None`` to raise
    :class:`UnsupportedPixelFormatError` instead.
    """

    mapping = _resolve(tag, unknown_fallback)
    if not mapping.exact:
        _warn(mapping)
    return mapping


class PixelFormatMapper:
    """Per-stream mapper that warns once per mismatched tag.

    A video track delivers the same buffer type frame after frame, so repeating
    the warning at frame rate only buries other log output. Set
    ``repeat_warnings`` to restore the per-frame behaviour of
    :func:`map_pixel_format`.
    """

    def __init__ (
        self,
        unknown_fallback: Optional[OutputFourCC] = OutputFourCC.RGBA,
        repeat_warnings: bool = False,
    ) -> None:
        self._unknown_fallback = unknown_fallback
        self._repeat_warnings = repeat_warnings
        self._warned: Set[int] = set()

    @property
    def warned_tags (self) -> FrozenSet[int]:
        return frozenset(self._warned)

    def map (self, tag: int) -> FourCCMapping:
        mapping = _resolve(tag, self._unknown_fallback)
        if not mapping.exact and (self._repeat_warnings or mapping.tag not in self._warned):
            self._warned.add(mapping.tag)
            _warn(mapping)
        return mapping


def line_stride_for (fourcc: OutputFourCC, width: int) -> int:
    """Bytes per row of the first plane for *fourcc* at *width* pixels."""

    if fourcc in (OutputFourCC.RGBA, OutputFourCC.BGRA):
        return width * 4
    # I420 and NV12 start with a full resolution 8-bit luma plane.
    return width


def translate_video_frame (
    frame: RawVideoFrame,
    frame_rate: Fraction,
    mapping: Optional[FourCCMapping] = None,
) -> OutgoingVideoSample:
    """Turn one LiveKit frame into one NDI video sample.

    The pixel data is passed through untouched. When *mapping* is omitted the
    frame's tag is resolved with :func:`map_pixel_format`.
    """

    if mapping is None:
        mapping = map_pixel_format(frame.pixel_format)

    aspect = frame.width / frame.height if frame.height > 0 else 0.0

    return OutgoingVideoSample(
        fourcc=mapping.fourcc.value,
        width=frame.width,
        height=frame.height,
        line_stride_bytes=line_stride_for(mapping.fourcc, frame.width),
        frame_rate=frame_rate,
        picture_aspect_ratio=aspect,
        timestamp=micros_to_ndi_timestamp(frame.capture_timestamp_us),
        data=frame.data,
    )
