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

import argparse
from fractions import Fraction
import sys
import time

import numpy as np

from livekit_ndi.audio import AudioConverter
from livekit_ndi.formats import PixelFormatMapper, translate_video_frame
from livekit_ndi.frames import RawAudioFrame, RawVideoFrame


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Benchmark livekit_ndi frame translation throughput.")
    parser.add_argument("--frames", type=int, default=1000, help="Number of frames to translate (default: %(default)s)")
    parser.add_argument("--width", type=int, default=1920, help="Video width in pixels (default: %(default)s)")
    parser.add_argument("--height", type=int, default=1080, help="Video height in pixels (default: %(default)s)")
    parser.add_argument("--sample-rate", type=int, default=48000, help="Audio sample rate (default: %(default)s)")
    parser.add_argument("--channels", type=int, default=2, help="Audio channel count (default: %(default)s)")
    parser.add_argument("--audio-frame-ms", type=int, default=10, help="Audio frame duration in ms (default: %(default)s)")
    return parser.parse_args()


def benchmark_video(frames: int, width: int, height: int) -> tuple[float, bool]:
    payload = bytearray(width * height * 3 // 2)
    frame = RawVideoFrame(pixel_format=5, width=width, height=height, data=memoryview(payload))
    mapper = PixelFormatMapper()
    addresses: set[int] = set()
    start = time.perf_counter()

    for index in range(frames):
        frame.capture_timestamp_us = index * 33_366
        sample = translate_video_frame(frame, Fraction(30000, 1001), mapper.map(frame.pixel_format))
        array = np.frombuffer(memoryview(sample.data).cast("B"), dtype=np.uint8)
        addresses.add(int(array.__array_interface__["data"][0]))

    elapsed = time.perf_counter() - start
    return elapsed, len(addresses) == 1


def benchmark_audio(frames: int, sample_rate: int, channels: int, frame_ms: int) -> float:
    samples_per_channel = sample_rate * frame_ms // 1000
    rng = np.random.default_rng(0)
    pcm = rng.integers(-32768, 32767, size=samples_per_channel * channels, dtype=np.int16)
    frame = RawAudioFrame(sample_rate, channels, samples_per_channel, pcm.tobytes())
    converter = AudioConverter()
    start = time.perf_counter()

    for _ in range(frames):
        converter.translate(frame)

    return time.perf_counter() - start


def main() -> int:
    args = parse_args()

    video_elapsed, zero_copy = benchmark_video(args.frames, args.width, args.height)
    audio_elapsed = benchmark_audio(args.frames, args.sample_rate, args.channels, args.audio_frame_ms)

    video_fps = args.frames / video_elapsed if video_elapsed > 0 else float("inf")
    audio_rate = args.frames / audio_elapsed if audio_elapsed > 0 else float("inf")

    print(f"Video frames translated: {args.frames} ({args.width}x{args.height} I420)")
    print(f"Video time: {video_elapsed:.3f} s ({video_fps:.1f} frames/s)")
    print(f"Audio frames converted: {args.frames} ({args.audio_frame_ms} ms, {args.channels} ch)")
    print(f"Audio time: {audio_elapsed:.3f} s ({audio_rate:.1f} frames/s)")
    print(f"Zero-Copy: {'PASSED' if zero_copy else 'FAILED'}")

    return 0 if zero_copy else 1


if __name__ == "__main__":
    sys.exit(main())
