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
from fractions import Fraction
import logging
import struct
from typing import Dict, List

import numpy as np
import pytest

from livekit_ndi import BridgeConfig, LiveKitNDIBridge
from livekit_ndi.audio import LEGACY_CLAMP_BOUND, AudioPolicy
from livekit_ndi.formats import OutputFourCC
from livekit_ndi.frames import OutgoingAudioSample, OutgoingVideoSample, RawAudioFrame, RawVideoFrame
import livekit_ndi.bridge as bridge_module


class FakeSenderHandle:
    def __init__ (self, identity: str) -> None:
        self.identity = identity
        self.video: List[OutgoingVideoSample] = []
        self.audio: List[OutgoingAudioSample] = []
        self.closed = False
        self.fail_sends = False

    def send_video (self, sample: OutgoingVideoSample) -> None:
        if self.fail_sends:
            raise RuntimeError("sender gone")
        self.video.append(sample)

    def send_audio (self, sample: OutgoingAudioSample) -> None:
        if self.fail_sends:
            raise RuntimeError("sender gone")
        self.audio.append(sample)

    def close (self) -> None:
        self.closed = True

    def get_connection_count (self) -> int:
        return 1


class FakeSenderFactory:
    def __init__ (self, failing: tuple[str, ...] = ()) -> None:
        self.failing = failing
        self.senders: Dict[str, FakeSenderHandle] = {}
        self.calls: List[str] = []

    def __call__ (self, identity: str, config: BridgeConfig) -> FakeSenderHandle:
        self.calls.append(identity)
        if identity in self.failing:
            raise RuntimeError("NDI sender name already in use")
        handle = FakeSenderHandle(identity)
        self.senders[identity] = handle
        return handle


class FakeClock:
    def __init__ (self) -> None:
        self.now = 100.0

    def __call__ (self) -> float:
        return self.now


def _video (tag: int = 5, timestamp_us: int = 0) -> RawVideoFrame:
    return RawVideoFrame(pixel_format=tag, width=4, height=2, data=bytes(12), capture_timestamp_us=timestamp_us)


def _audio (*samples: int) -> RawAudioFrame:
    return RawAudioFrame(
        sample_rate=48000,
        num_channels=1,
        samples_per_channel=len(samples),
        data=np.asarray(samples, dtype=np.int16).tobytes(),
    )


def _prepare (bridge: LiveKitNDIBridge, *identities: str) -> None:
    async def scenario () -> None:
        for identity in identities:
            await bridge.prepare_participant(identity)

    asyncio.run(scenario())


def test_config_normalises_frame_rate_inputs () -> None:
    assert BridgeConfig(frame_rate=(60000, 1001)).frame_rate == Fraction(60000, 1001)
    assert BridgeConfig(frame_rate=25).frame_rate == Fraction(25, 1)
    assert BridgeConfig().frame_rate == Fraction(30000, 1001)


@pytest.mark.parametrize(
    "kwargs, error",
    [
        ({"frame_rate": (30, 0)}, ValueError),
        ({"frame_rate": (30,)}, TypeError),
        ({"frame_rate": float("nan")}, ValueError),
        ({"frame_rate": 0}, ValueError),
        ({"frame_rate": "fast"}, TypeError),
        ({"clamp_bound": 0}, ValueError),
        ({"identity": ""}, ValueError),
        ({"audio_channels": 0}, ValueError),
        ({"sender_name_template": "static"}, ValueError),
        ({"shutdown_timeout": -1.0}, ValueError),
        ({"audio_policy": "louder"}, ValueError),
    ],
)
def test_invalid_configuration_rejected (kwargs: dict, error: type) -> None:
    with pytest.raises(error):
        BridgeConfig(**kwargs)


def test_video_and_audio_reach_the_participant_sender () -> None:
    factory = FakeSenderFactory()
    bridge = LiveKitNDIBridge(BridgeConfig(clamp_bound=LEGACY_CLAMP_BOUND), sender_factory=factory, time_provider=FakeClock())
    _prepare(bridge, "alice")

    assert bridge.push_video("alice", _video(5, timestamp_us=2_000)) is True
    assert bridge.push_audio("alice", _audio(0, 16383, -16384, 32767)) is True

    sender = factory.senders["alice"]
    assert sender.video[0].fourcc == "I420"
    assert sender.video[0].timestamp == 20_000
    assert sender.video[0].frame_rate == Fraction(30000, 1001)

    audio = sender.audio[0]
    assert audio.channel_stride_bytes == 4
    values = struct.unpack("<4f", audio.data)
    assert values == pytest.approx((0.0, 0.25, -0.25, 0.5), abs=1e-4)

    metrics = bridge.get_participant_metrics("alice")
    assert metrics.video_frames_sent == 1
    assert metrics.audio_frames_sent == 1
    assert metrics.frames_dropped == 0
    assert metrics.last_video_timestamp == 20_000


def test_frames_before_sender_exists_are_dropped () -> None:
    factory = FakeSenderFactory()
    bridge = LiveKitNDIBridge(sender_factory=factory, time_provider=FakeClock())

    assert bridge.push_video("early", _video()) is False
    assert bridge.push_audio("early", _audio(1, 2)) is False

    assert factory.calls == []
    assert bridge.get_participant_metrics("early").frames_dropped == 2


def test_failed_sender_isolates_participant (caplog: pytest.LogCaptureFixture) -> None:
    factory = FakeSenderFactory(failing=("X",))
    bridge = LiveKitNDIBridge(sender_factory=factory, time_provider=FakeClock())
    _prepare(bridge, "X", "Y")

    assert "Failed to create NDI sender for X" in caplog.text

    for _ in range(3):
        assert bridge.push_video("X", _video()) is False
        assert bridge.push_audio("X", _audio(5)) is False
        assert bridge.push_video("Y", _video()) is True
        assert bridge.push_audio("Y", _audio(5)) is True

    assert factory.calls == ["X", "Y"]
    assert bridge.get_participant_metrics("X").frames_dropped == 6
    assert len(factory.senders["Y"].video) == 3
    assert len(factory.senders["Y"].audio) == 3


def test_drop_logging_is_rate_limited (caplog: pytest.LogCaptureFixture) -> None:
    clock = FakeClock()
    bridge = LiveKitNDIBridge(BridgeConfig(drop_log_interval=5.0), sender_factory=FakeSenderFactory(), time_provider=clock)

    with caplog.at_level(logging.INFO, logger="livekit_ndi.bridge"):
        for _ in range(10):
            bridge.push_video("late", _video())
        clock.now += 6.0
        bridge.push_video("late", _video())

    drops = [record for record in caplog.records if record.getMessage().startswith("Dropped")]
    assert len(drops) == 2
    assert drops[0].args[0] == 1
    assert drops[1].args[0] == 10


def test_approximate_formats_are_counted_and_warned_once (caplog: pytest.LogCaptureFixture) -> None:
    factory = FakeSenderFactory()
    bridge = LiveKitNDIBridge(sender_factory=factory, time_provider=FakeClock())
    _prepare(bridge, "bob")

    with caplog.at_level(logging.WARNING, logger="livekit_ndi.formats"):
        for _ in range(4):
            bridge.push_video("bob", _video(tag=1))

    assert [sample.fourcc for sample in factory.senders["bob"].video] == ["RGBA"] * 4
    assert bridge.get_participant_metrics("bob").format_warnings == 4
    assert len([record for record in caplog.records if record.name == "livekit_ndi.formats"]) == 1


def test_unknown_format_dropped_when_no_fallback () -> None:
    factory = FakeSenderFactory()
    bridge = LiveKitNDIBridge(BridgeConfig(unknown_pixel_format=None), sender_factory=factory, time_provider=FakeClock())
    _prepare(bridge, "cy")

    assert bridge.push_video("cy", _video(tag=99)) is False
    assert factory.senders["cy"].video == []
    assert bridge.get_participant_metrics("cy").frames_dropped == 1


def test_unknown_format_uses_configured_fallback () -> None:
    factory = FakeSenderFactory()
    bridge = LiveKitNDIBridge(BridgeConfig(unknown_pixel_format=OutputFourCC.BGRA), sender_factory=factory, time_provider=FakeClock())
    _prepare(bridge, "di")

    assert bridge.push_video("di", _video(tag=99)) is True
    assert factory.senders["di"].video[0].fourcc == "BGRA"


def test_send_failures_are_contained () -> None:
    factory = FakeSenderFactory()
    bridge = LiveKitNDIBridge(sender_factory=factory, time_provider=FakeClock())
    _prepare(bridge, "eve")
    factory.senders["eve"].fail_sends = True

    assert bridge.push_video("eve", _video()) is False
    assert bridge.push_audio("eve", _audio(1)) is False
    assert bridge.get_participant_metrics("eve").frames_dropped == 2


def test_passthrough_policy_forwards_raw_audio () -> None:
    factory = FakeSenderFactory()
    bridge = LiveKitNDIBridge(BridgeConfig(audio_policy=AudioPolicy.PASSTHROUGH), sender_factory=factory, time_provider=FakeClock())
    _prepare(bridge, "fay")

    frame = _audio(1, 2, 3)
    assert bridge.push_audio("fay", frame) is True
    assert factory.senders["fay"].audio[0].data == bytes(frame.data)


def test_close_releases_senders_and_context_manager () -> None:
    factory = FakeSenderFactory()
    with LiveKitNDIBridge(sender_factory=factory, time_provider=FakeClock()) as bridge:
        _prepare(bridge, "gil", "hana")
        assert sorted(bridge.list_participants()) == ["gil", "hana"]
        assert sorted(bridge.get_all_participant_metrics()) == ["gil", "hana"]

    assert all(sender.closed for sender in factory.senders.values())


def test_metrics_snapshot_tolerates_participant_added_meanwhile (monkeypatch: pytest.MonkeyPatch) -> None:
    bridge = LiveKitNDIBridge(sender_factory=FakeSenderFactory(), time_provider=FakeClock())
    _prepare(bridge, "ida")
    original_snapshot = bridge_module._Participant.snapshot

    def snapshot_with_arrival (participant: bridge_module._Participant) -> bridge_module.ParticipantMetrics:
        # Another thread subscribing a new participant while the status API reads.
        bridge.push_video("late", RawVideoFrame(pixel_format=3, width=1, height=1, data=bytes(4)))
        return original_snapshot(participant)

    monkeypatch.setattr(bridge_module._Participant, "snapshot", snapshot_with_arrival)

    metrics = bridge.get_all_participant_metrics()

    assert list(metrics) == ["ida"]
    assert sorted(bridge.list_participants()) == ["ida", "late"]
