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

Per-participant translation from LiveKit frames to NDI samples.

The bridge is the one place where frames meet senders: the track router hands
it raw frames, it maps pixel formats and converts audio, and it forwards the
result to the participant's sender handle. Translation is synchronous and
one-in-one-out; nothing is queued. Frames that arrive before (or without) a
sender are dropped and counted.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from fractions import Fraction
import logging
import math
import time
from typing import Any, Callable, Dict, List, MutableMapping, Optional

from .audio import INT16_CLAMP_BOUND, AudioConverter, AudioPolicy
from .formats import OutputFourCC, PixelFormatMapper, UnsupportedPixelFormatError, translate_video_frame
from .frames import RawAudioFrame, RawVideoFrame
from .senders import SenderFactory, SenderHandle, SenderRegistry, _default_sender_factory

__all__ = ["BridgeConfig", "LiveKitNDIBridge", "ParticipantMetrics"]

_logger = logging.getLogger(__name__)


TimeProvider = Callable[[], float]

DEFAULT_FRAME_RATE = Fraction(30000, 1001)


@dataclass(slots=True)
class BridgeConfig:
    """Configuration for one bridged room session."""

    identity: str = "NDI_ROBOT"
    audio_policy: AudioPolicy = AudioPolicy.NORMALIZE
    clamp_bound: int = INT16_CLAMP_BOUND
    interleaved_audio_stride: bool = True
    frame_rate: Fraction | float | tuple[int, int] = DEFAULT_FRAME_RATE
    unknown_pixel_format: Optional[OutputFourCC] = OutputFourCC.RGBA
    repeat_format_warnings: bool = False
    audio_sample_rate: int = 48000
    audio_channels: int = 1
    ndi_groups: str = ""
    clock_video: bool = False
    clock_audio: bool = False
    use_async_send: bool = True
    sender_name_template: str = "{identity}"
    sender_options: MutableMapping[str, Any] = field(default_factory=dict)
    auto_subscribe: bool = True
    dynacast: bool = False
    shutdown_timeout: float = 5.0
    drop_log_interval: float = 5.0
    rooms_poll_interval: float = 1.0

    def __post_init__ (self) -> None:
        if not self.identity:
            raise ValueError("identity must not be empty")

        self.audio_policy = AudioPolicy(self.audio_policy)
        if self.unknown_pixel_format is not None:
            self.unknown_pixel_format = OutputFourCC(self.unknown_pixel_format)

        if self.clamp_bound <= 0:
            raise ValueError("clamp_bound must be positive")

        if isinstance(self.frame_rate, Fraction):
            pass
        elif isinstance(self.frame_rate, tuple):
            if len(self.frame_rate) != 2:
                raise TypeError("frame_rate tuples must be (numerator, denominator)")
            if self.frame_rate[1] == 0:
                raise ValueError("frame_rate denominator must not be zero")
            self.frame_rate = Fraction(self.frame_rate[0], self.frame_rate[1])
        elif isinstance(self.frame_rate, (float, int)):
            if not math.isfinite(self.frame_rate):
                raise ValueError("frame_rate must be finite")
            self.frame_rate = Fraction(self.frame_rate).limit_denominator()
        else:
            raise TypeError("frame_rate must be a Fraction, float, or tuple")

        if self.frame_rate <= 0:
            raise ValueError("frame_rate must be positive")

        if self.audio_sample_rate <= 0 or self.audio_channels <= 0:
            raise ValueError("audio_sample_rate and audio_channels must be positive")

        if "{identity}" not in self.sender_name_template:
            raise ValueError("sender_name_template must contain '{identity}'")

        for name in ("shutdown_timeout", "drop_log_interval", "rooms_poll_interval"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")


@dataclass(slots=True)
class ParticipantMetrics:
    """Runtime statistics for one participant's sender."""

    video_frames_sent: int = 0
    audio_frames_sent: int = 0
    frames_dropped: int = 0
    format_warnings: int = 0
    last_video_timestamp: Optional[int] = None
    last_activity_time: float = 0.0


class _Participant:
    """Book-keeping for a single participant identity."""

    def __init__ (self, identity: str, config: BridgeConfig, now: float) -> None:
        self.identity = identity
        self.mapper = PixelFormatMapper(config.unknown_pixel_format, config.repeat_format_warnings)
        self.metrics = ParticipantMetrics(last_activity_time=now)
        self._drop_log_interval = config.drop_log_interval
        self._last_drop_log = float("-inf")
        self._drops_since_log = 0

    def record_drop (self, now: float, reason: str) -> None:
        self.metrics.frames_dropped += 1
        self._drops_since_log += 1
        if now - self._last_drop_log >= self._drop_log_interval:
            _logger.info("Dropped %d frame(s) for %s: %s", self._drops_since_log, self.identity, reason)
            self._last_drop_log = now
            self._drops_since_log = 0

    def snapshot (self) -> ParticipantMetrics:
        return ParticipantMetrics(
            video_frames_sent=self.metrics.video_frames_sent,
            audio_frames_sent=self.metrics.audio_frames_sent,
            frames_dropped=self.metrics.frames_dropped,
            format_warnings=self.metrics.format_warnings,
            last_video_timestamp=self.metrics.last_video_timestamp,
            last_activity_time=self.metrics.last_activity_time,
        )


def _default_time_provider () -> float:
    return time.monotonic()


class LiveKitNDIBridge:
    """Coordinates frame translation and NDI senders for one room session."""

    def __init__ (
        self,
        config: Optional[BridgeConfig] = None,
        sender_factory: Optional[SenderFactory] = None,
        time_provider: TimeProvider = _default_time_provider,
    ) -> None:
        self.config = config or BridgeConfig()
        self._registry = SenderRegistry(sender_factory or _default_sender_factory, self.config)
        self._audio = AudioConverter(
            self.config.audio_policy,
            self.config.clamp_bound,
            self.config.interleaved_audio_stride,
        )
        self._time_provider = time_provider
        self._participants: Dict[str, _Participant] = {}

    def __enter__ (self) -> "LiveKitNDIBridge":
        return self

    def __exit__ (self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def registry (self) -> SenderRegistry:
        return self._registry

    async def prepare_participant (self, identity: str) -> Optional[SenderHandle]:
        self._participant(identity)
        return await self._registry.ensure(identity)

    def push_video (self, identity: str, frame: RawVideoFrame) -> bool:
        participant = self._participant(identity)
        now = self._time_provider()

        try:
            mapping = participant.mapper.map(frame.pixel_format)
        except UnsupportedPixelFormatError:
            participant.record_drop(now, f"unsupported pixel format {frame.pixel_format}")
            return False

        if not mapping.exact:
            participant.metrics.format_warnings += 1

        handle = self._registry.get(identity)
        if handle is None:
            participant.record_drop(now, self._missing_sender_reason(identity))
            return False

        sample = translate_video_frame(frame, self.config.frame_rate, mapping)  # type: ignore[arg-type]
        try:
            handle.send_video(sample)
        except Exception:
            _logger.exception("NDI video send failed for %s", identity)
            participant.record_drop(now, "video send failed")
            return False

        participant.metrics.video_frames_sent += 1
        participant.metrics.last_video_timestamp = sample.timestamp
        participant.metrics.last_activity_time = now
        return True

    def push_audio (self, identity: str, frame: RawAudioFrame) -> bool:
        participant = self._participant(identity)
        now = self._time_provider()

        handle = self._registry.get(identity)
        if handle is None:
            participant.record_drop(now, self._missing_sender_reason(identity))
            return False

        sample = self._audio.translate(frame)
        try:
            handle.send_audio(sample)
        except Exception:
            _logger.exception("NDI audio send failed for %s", identity)
            participant.record_drop(now, "audio send failed")
            return False

        participant.metrics.audio_frames_sent += 1
        participant.metrics.last_activity_time = now
        return True

    def list_participants (self) -> List[str]:
        return list(self._participants.keys())

    def get_participant_metrics (self, identity: str) -> ParticipantMetrics:
        return self._participants[identity].snapshot()

    def get_all_participant_metrics (self) -> Dict[str, ParticipantMetrics]:
        return {identity: participant.snapshot() for identity, participant in list(self._participants.items())}

    def close (self) -> None:
        self._registry.close()

    def _participant (self, identity: str) -> _Participant:
        participant = self._participants.get(identity)
        if participant is None:
            participant = _Participant(identity, self.config, self._time_provider())
            self._participants[identity] = participant
        return participant

    def _missing_sender_reason (self, identity: str) -> str:
        if self._registry.failed(identity):
            return "sender creation failed"
        return "sender not ready"
