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

Frame shapes exchanged between the LiveKit streams and the NDI senders.

Raw frames are built from LiveKit frame events and live only for the duration
of one stream callback. Outgoing samples are what the sender adapters consume.
Nothing here is buffered or retained by the bridge.
"""
from __future__ import annotations

from dataclasses import dataclass
from fractions import Fraction
from typing import Any, Union

__all__ = [
    "BufferLike",
    "RawVideoFrame",
    "RawAudioFrame",
    "OutgoingVideoSample",
    "OutgoingAudioSample",
    "micros_to_ndi_timestamp",
]


BufferLike = Union[bytes, bytearray, memoryview]


def micros_to_ndi_timestamp (micros: int) -> int:
    """Convert a capture timestamp in microseconds to NDI's 100 ns units."""

    return int(micros) * 10


@dataclass(slots=True)
class RawVideoFrame:
    pixel_format: int
    width: int
    height: int
    data: BufferLike
    capture_timestamp_us: int = 0

    @classmethod
    def from_event (cls, event: Any) -> "RawVideoFrame":
        """Build a frame from a ``livekit.rtc.VideoFrameEvent``."""

        frame = event.frame
        return cls(
            pixel_format=int(frame.type),
            width=int(frame.width),
            height=int(frame.height),
            data=frame.data,
            capture_timestamp_us=int(event.timestamp_us),
        )


@dataclass(slots=True)
class RawAudioFrame:
    sample_rate: int
    num_channels: int
    samples_per_channel: int
    data: BufferLike

    @classmethod
    def from_event (cls, event: Any) -> "RawAudioFrame":
        """Build a frame from a ``livekit.rtc.AudioFrameEvent``."""

        frame = event.frame
        return cls(
            sample_rate=int(frame.sample_rate),
            num_channels=int(frame.num_channels),
            samples_per_channel=int(frame.samples_per_channel),
            data=frame.data,
        )


@dataclass(slots=True)
class OutgoingVideoSample:
    fourcc: str
    width: int
    height: int
    line_stride_bytes: int
    frame_rate: Fraction
    picture_aspect_ratio: float
    timestamp: int
    data: BufferLike

    @property
    def frame_rate_numerator (self) -> int:
        return self.frame_rate.numerator

    @property
    def frame_rate_denominator (self) -> int:
        return self.frame_rate.denominator


@dataclass(slots=True)
class OutgoingAudioSample:
    sample_rate: int
    num_channels: int
    samples_per_channel: int
    channel_stride_bytes: int
    data: bytes
