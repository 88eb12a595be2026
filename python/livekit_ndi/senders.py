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

NDI sender handles, one per LiveKit participant identity.

Handles are created lazily on the first subscribed track of a participant and
kept until the bridge closes; unsubscribing a track never releases them.
Creation goes through :class:`SenderRegistry`, which guarantees a single
factory call per identity even when several tracks of the same participant are
subscribed back to back.
"""
from __future__ import annotations

import asyncio
from fractions import Fraction
import logging
import threading
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, Set

import numpy as np

from .frames import OutgoingAudioSample, OutgoingVideoSample

try:  # pragma: no cover - optional dependency handled lazily
    import cyndilib
except ImportError:  # pragma: no cover - exercised in tests via dependency injection
    cyndilib = None  # type: ignore

if TYPE_CHECKING:  # pragma: no cover
    from .bridge import BridgeConfig

__all__ = ["SenderFactory", "SenderHandle", "SenderRegistry"]

_logger = logging.getLogger(__name__)


class SenderHandle(Protocol):
    """Protocol implemented by the NDI sender adapters."""

    def send_video (self, sample: OutgoingVideoSample) -> None: ...

    def send_audio (self, sample: OutgoingAudioSample) -> None: ...

    def close (self) -> None: ...

    def get_connection_count (self) -> int: ...


class SenderFactory(Protocol):
    """Factory protocol used to create the sender handle of one participant."""

    def __call__ (self, identity: str, config: "BridgeConfig") -> SenderHandle: ...


class SenderRegistry:
    """Owns the identity → sender handle mapping for one room session."""

    def __init__ (self, factory: SenderFactory, config: "BridgeConfig") -> None:
        self._factory = factory
        self._config = config
        self._handles: Dict[str, SenderHandle] = {}
        self._pending: Dict[str, "asyncio.Task[Optional[SenderHandle]]"] = {}
        self._failed: Set[str] = set()
        self._closed = False
        self._lock = threading.Lock()

    async def ensure (self, identity: str) -> Optional[SenderHandle]:
        """Return the handle for *identity*, creating it on first use.

        Concurrent callers for the same identity share one creation task that
        outlives any of them, so cancelling a caller never cancels the
        creation. A failed creation is logged and remembered; it is not
        retried.
        """

        handle = self._handles.get(identity)
        if handle is not None:
            return handle
        if identity in self._failed or self._closed:
            return None

        pending = self._pending.get(identity)
        if pending is None:
            pending = asyncio.get_running_loop().create_task(self._create(identity))
            self._pending[identity] = pending
        return await asyncio.shield(pending)

    async def _create (self, identity: str) -> Optional[SenderHandle]:
        loop = asyncio.get_running_loop()
        try:
            handle = await loop.run_in_executor(None, self._build, identity)
        except Exception:
            _logger.exception("Failed to create NDI sender for %s", identity)
            self._failed.add(identity)
            handle = None
        finally:
            self._pending.pop(identity, None)

        if handle is not None:
            _logger.info("Created NDI sender for %s", identity)
        return handle

    def _build (self, identity: str) -> Optional[SenderHandle]:
        # Runs on the executor. A handle finished after close() is closed, not registered.
        handle = self._factory(identity, self._config)
        with self._lock:
            if not self._closed:
                self._handles[identity] = handle
                return handle
        _close_quietly(identity, handle)
        return None

    def get (self, identity: str) -> Optional[SenderHandle]:
        return self._handles.get(identity)

    def failed (self, identity: str) -> bool:
        return identity in self._failed

    def identities (self) -> List[str]:
        return list(self._handles.keys())

    def close (self) -> None:
        with self._lock:
            self._closed = True
            handles = list(self._handles.items())
            self._handles.clear()
        for identity, handle in handles:
            _close_quietly(identity, handle)


def _close_quietly (identity: str, handle: SenderHandle) -> None:
    try:
        handle.close()
    except Exception:  # pragma: no cover - finalisation should not raise
        _logger.exception("Failed to close NDI sender for %s", identity)


class _CyndiLibSenderHandle:
    """Concrete :class:`SenderHandle` that wraps :mod:`cyndilib` senders."""

    def __init__ (self, sender: Any, video_frame: Any, audio_frame: Any, use_async: bool) -> None:
        self._sender = sender
        self._video_frame = video_frame
        self._audio_frame = audio_frame
        self._use_async = use_async
        self._fourcc: Optional[str] = None
        self._resolution: Optional[tuple[int, int]] = None
        self._frame_rate: Optional[Fraction] = None
        self._line_stride: Optional[int] = None
        self._audio_format: Optional[tuple[int, int]] = None
        self._payload_warned = False
        self._last_connection_count = -1

    def send_video (self, sample: OutgoingVideoSample) -> None:
        if sample.fourcc != self._fourcc:
            try:
                self._video_frame.set_fourcc(getattr(cyndilib.FourCC, sample.fourcc))
                self._fourcc = sample.fourcc
            except Exception:  # pragma: no cover - frame format locked by the SDK
                _logger.debug("Failed to switch NDI FourCC to %s", sample.fourcc, exc_info=True)

        resolution = (sample.width, sample.height)
        if resolution != self._resolution:
            try:
                self._video_frame.set_resolution(sample.width, sample.height)
                self._resolution = resolution
            except Exception:  # pragma: no cover - defensive, API documented as safe
                _logger.debug("Failed to apply resolution %dx%d", sample.width, sample.height, exc_info=True)

        if sample.line_stride_bytes != self._line_stride:
            try:
                setter = getattr(self._video_frame, "_set_line_stride", None)
                if callable(setter):
                    setter(sample.line_stride_bytes)
                    self._line_stride = sample.line_stride_bytes
            except Exception:  # pragma: no cover - defensive
                _logger.debug("Failed to apply explicit line stride; continuing", exc_info=True)

        if sample.frame_rate != self._frame_rate:
            try:
                self._video_frame.set_frame_rate(sample.frame_rate)
                self._frame_rate = sample.frame_rate
            except Exception:  # pragma: no cover - defensive
                _logger.debug("Failed to apply frame rate %s", sample.frame_rate, exc_info=True)

        try:
            if hasattr(self._video_frame, "ptr") and hasattr(self._video_frame.ptr, "timestamp"):
                self._video_frame.ptr.timestamp = sample.timestamp
        except Exception:  # pragma: no cover - best effort only
            _logger.debug("Unable to set NDI timestamp on video frame")

        contiguous = memoryview(sample.data).cast("B")
        self._sender.write_video(contiguous)
        if self._use_async:
            self._sender.send_video_async()
        else:
            self._sender.send_video()

    def send_audio (self, sample: OutgoingAudioSample) -> None:
        channels = max(1, sample.num_channels)
        samples = sample.samples_per_channel
        expected = 4 * samples * channels
        received = memoryview(sample.data).nbytes
        if received != expected:
            log = _logger.debug if self._payload_warned else _logger.warning
            self._payload_warned = True
            log("Audio payload holds %d bytes, expected %d bytes of float32 samples; dropping", received, expected)
            return

        floats = np.frombuffer(sample.data, dtype="<f4")
        if sample.channel_stride_bytes == 4 * channels:
            # Interleaved frames → planar (channels, samples) as cyndilib expects.
            layout = floats.reshape(samples, channels).T
        elif sample.channel_stride_bytes == 4:
            # A 4-byte stride declares each channel's samples contiguous.
            layout = floats.reshape(channels, samples)
        else:
            _logger.debug("Unsupported audio channel stride %d; dropping", sample.channel_stride_bytes)
            return

        audio_format = (sample.sample_rate, channels)
        if audio_format != self._audio_format:
            try:
                self._audio_frame.sample_rate = sample.sample_rate
                self._audio_frame.num_channels = channels
                self._audio_format = audio_format
            except Exception:  # pragma: no cover - format locked once the sender is open
                _logger.debug("Failed to switch NDI audio format to %s", audio_format, exc_info=True)

        self._sender.write_audio(np.ascontiguousarray(layout, dtype=np.float32))

    def close (self) -> None:
        try:
            self._sender.close()
        except Exception:  # pragma: no cover - finalisation should not raise
            _logger.debug("NDI sender close failed", exc_info=True)

    def get_connection_count (self) -> int:
        getter = getattr(self._sender, "get_num_connections", None)
        if not callable(getter):
            return -1

        try:
            self._last_connection_count = int(getter(0))
        except TypeError:
            self._last_connection_count = int(getter())
        except Exception:  # pragma: no cover - diagnostics only
            _logger.debug("get_num_connections failed", exc_info=True)
            return self._last_connection_count

        return self._last_connection_count


def _default_sender_factory (identity: str, config: "BridgeConfig") -> SenderHandle:
    if cyndilib is None:  # pragma: no cover - executed only in production without injection
        raise ImportError("cyndilib is not installed; install cyndilib>=0.0.8 to stream over NDI")

    sender_kwargs = dict(config.sender_options)
    sender_kwargs.setdefault("clock_video", config.clock_video)
    sender_kwargs.setdefault("clock_audio", config.clock_audio)

    name = config.sender_name_template.format(identity=identity)
    sender = cyndilib.Sender(name, ndi_groups=config.ndi_groups, **sender_kwargs)

    video_frame = cyndilib.VideoSendFrame()
    video_frame.set_fourcc(cyndilib.FourCC.RGBA)
    video_frame.set_frame_rate(config.frame_rate)
    sender.set_video_frame(video_frame)

    audio_frame = cyndilib.AudioSendFrame()
    audio_frame.sample_rate = config.audio_sample_rate
    audio_frame.num_channels = config.audio_channels
    # One second of samples covers every frame size LiveKit emits.
    audio_frame.set_max_num_samples(config.audio_sample_rate)
    sender.set_audio_frame(audio_frame)

    sender.open()

    return _CyndiLibSenderHandle(sender, video_frame, audio_frame, config.use_async_send)
