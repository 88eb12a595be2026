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
"""

from __future__ import annotations

from enum import Enum
import logging
from typing import Iterable, Union

import numpy as np

from .frames import BufferLike, OutgoingAudioSample, RawAudioFrame

__all__ = [
    "AudioConverter",
    "AudioPolicy",
    "INT16_CLAMP_BOUND",
    "LEGACY_CLAMP_BOUND",
    "convert_samples",
]

_logger = logging.getLogger(__name__)


INT16_CLAMP_BOUND = 32768
LEGACY_CLAMP_BOUND = 65535

_FLOAT32_LE = np.dtype("<f4")


class AudioPolicy(str, Enum):
    NORMALIZE = "normalize"
    PASSTHROUGH = "passthrough"


def _as_int_array (samples: Union[BufferLike, Iterable[int]]) -> np.ndarray:
    if isinstance(samples, (bytes, bytearray, memoryview)):
        view = memoryview(samples)
        if view.format == "h":
            return np.frombuffer(view, dtype=np.int16)
        return np.frombuffer(view.cast("B"), dtype=np.int16)
    if isinstance(samples, np.ndarray):
        return samples
    return np.asarray(list(samples), dtype=np.int64)


def convert_samples (samples: Union[BufferLike, Iterable[int]], clamp_bound: int = INT16_CLAMP_BOUND) -> bytes:
    """Convert interleaved 16-bit PCM to interleaved little-endian float32 bytes.

    Each sample is clamped to ``[-clamp_bound, clamp_bound]`` and divided by
    ``clamp_bound``, so every output value lies in ``[-1, 1]``. The result is
    exactly four bytes per input sample.
    """

    if clamp_bound <= 0:
        raise ValueError("clamp_bound must be positive")

    ints = _as_int_array(samples)
    if ints.size == 0:
        return b""

    bound = float(clamp_bound)
    scaled = np.clip(ints.astype(np.float64), -bound, bound) / bound
    return scaled.astype(_FLOAT32_LE).tobytes()


class AudioConverter:
    """Turns LiveKit audio frames into NDI audio samples.

    ``NORMALIZE`` is the production path. ``PASSTHROUGH`` forwards the 16-bit
    bytes untouched while the sender still reads them as float32, and declares
    the channel stride as the per-channel sample count. It only exists to
    reproduce the old experimental bridge and is never selected by default; the
    cyndilib sender refuses those payloads because their size does not match
    float32 samples.
    """

    def __init__ (
        self,
        policy: AudioPolicy = AudioPolicy.NORMALIZE,
        clamp_bound: int = INT16_CLAMP_BOUND,
        interleaved_stride: bool = True,
    ) -> None:
        if clamp_bound <= 0:
            raise ValueError("clamp_bound must be positive")

        self.policy = AudioPolicy(policy)
        self.clamp_bound = int(clamp_bound)
        self.interleaved_stride = interleaved_stride

        if self.policy is AudioPolicy.PASSTHROUGH:
            _logger.warning(
                "Audio passthrough selected: 16-bit PCM is not float32, so the cyndilib "
                "sender drops every passthrough frame; only custom sender factories receive it"
            )

    def translate (self, frame: RawAudioFrame) -> OutgoingAudioSample:
        if self.policy is AudioPolicy.PASSTHROUGH:
            return OutgoingAudioSample(
                sample_rate=frame.sample_rate,
                num_channels=frame.num_channels,
                samples_per_channel=frame.samples_per_channel,
                channel_stride_bytes=frame.samples_per_channel,
                data=bytes(frame.data),
            )

        stride = 4 * frame.num_channels if self.interleaved_stride else 4

        return OutgoingAudioSample(
            sample_rate=frame.sample_rate,
            num_channels=frame.num_channels,
            samples_per_channel=frame.samples_per_channel,
            channel_stride_bytes=stride,
            data=convert_samples(frame.data, self.clamp_bound),
        )

    def __repr__ (self) -> str:
        return (
            f"AudioConverter(policy={self.policy.value!r}, clamp_bound={self.clamp_bound!r}, "
            f"interleaved_stride={self.interleaved_stride!r})"
        )
