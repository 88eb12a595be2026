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

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Set

from livekit import rtc

from .bridge import LiveKitNDIBridge
from .frames import RawAudioFrame, RawVideoFrame

__all__ = ["TrackRouter"]

_logger = logging.getLogger(__name__)


VideoStreamFactory = Callable[[Any], Any]
AudioStreamFactory = Callable[..., Any]


class TrackRouter:
    """Routes subscribed LiveKit tracks into :class:`LiveKitNDIBridge`.

    Every subscribed track gets its own consumer task that first waits for the
    participant's sender and then pushes each frame of the track's stream
    through the bridge as it arrives. Unsubscribing cancels the consumer only;
    the participant's sender stays registered until the bridge is closed.
    """

    def __init__ (
        self,
        room: Any,
        bridge: LiveKitNDIBridge,
        video_stream_factory: VideoStreamFactory = rtc.VideoStream,
        audio_stream_factory: AudioStreamFactory = rtc.AudioStream,
    ) -> None:
        self._room = room
        self._bridge = bridge
        self._video_stream_factory = video_stream_factory
        self._audio_stream_factory = audio_stream_factory
        self._tasks: Dict[str, asyncio.Task[None]] = {}
        self._background: Set["asyncio.Future[Any]"] = set()
        self.disconnected = asyncio.Event()
        self.disconnect_reason: Optional[Any] = None

    def attach (self) -> None:
        self._room.on("track_subscribed", self._on_track_subscribed)
        self._room.on("track_unsubscribed", self._on_track_unsubscribed)
        self._room.on("disconnected", self._on_disconnected)

    def active_tracks (self) -> list[str]:
        return [sid for sid, task in self._tasks.items() if not task.done()]

    async def close (self) -> None:
        tasks = list(self._tasks.values()) + list(self._background)
        self._tasks.clear()
        self._background.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _on_track_subscribed (self, track: Any, publication: Any, participant: Any) -> None:
        identity = participant.identity
        sid = track.sid

        if not sid:
            _logger.debug("Ignoring %s track without sid from %s", track.kind, identity)
            self._prepare_in_background(identity)
            return

        if track.kind == rtc.TrackKind.KIND_VIDEO:
            consumer = self._consume_video(track, identity)
        elif track.kind == rtc.TrackKind.KIND_AUDIO:
            consumer = self._consume_audio(track, identity)
        else:
            _logger.warning("Ignoring track %s of unsupported kind %s from %s", sid, track.kind, identity)
            self._prepare_in_background(identity)
            return

        _logger.info("SUBSCRIBE: %s | %s | %s", identity, track.kind, sid)
        previous = self._tasks.pop(sid, None)
        if previous is not None:
            previous.cancel()
        task = asyncio.ensure_future(consumer)
        self._tasks[sid] = task
        task.add_done_callback(lambda finished, sid=sid: self._forget(sid, finished))

    def _on_track_unsubscribed (self, track: Any, publication: Any, participant: Any) -> None:
        _logger.info("UNSUBSCRIBE: %s | %s | %s", participant.identity, track.kind, track.sid)
        task = self._tasks.pop(track.sid, None)
        if task is not None:
            task.cancel()

    def _on_disconnected (self, reason: Any = None) -> None:
        _logger.info("disconnected %s", reason)
        self.disconnect_reason = reason
        self.disconnected.set()

    def _prepare_in_background (self, identity: str) -> None:
        future = asyncio.ensure_future(self._bridge.prepare_participant(identity))
        self._background.add(future)
        future.add_done_callback(self._background.discard)

    def _forget (self, sid: str, task: "asyncio.Task[None]") -> None:
        if self._tasks.get(sid) is task:
            del self._tasks[sid]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _logger.error("Track consumer %s failed", sid, exc_info=exc)

    async def _consume_video (self, track: Any, identity: str) -> None:
        await self._bridge.prepare_participant(identity)
        stream = self._video_stream_factory(track)
        try:
            async for event in stream:
                self._bridge.push_video(identity, RawVideoFrame.from_event(event))
            _logger.info("video stream for %s ended", identity)
        finally:
            await _close_stream(stream)
            _logger.info("video stream for %s is closed", identity)

    async def _consume_audio (self, track: Any, identity: str) -> None:
        await self._bridge.prepare_participant(identity)
        config = self._bridge.config
        stream = self._audio_stream_factory(
            track,
            sample_rate=config.audio_sample_rate,
            num_channels=config.audio_channels,
        )
        try:
            async for event in stream:
                self._bridge.push_audio(identity, RawAudioFrame.from_event(event))
            _logger.info("audio stream for %s ended", identity)
        finally:
            await _close_stream(stream)
            _logger.info("audio stream for %s is closed", identity)


async def _close_stream (stream: Any) -> None:
    closer = getattr(stream, "aclose", None)
    if not callable(closer):
        return
    try:
        await closer()
    except Exception:  # pragma: no cover - stream teardown is best effort
        _logger.debug("Failed to close LiveKit stream", exc_info=True)
