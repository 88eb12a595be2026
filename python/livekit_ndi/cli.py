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
import asyncio
import contextlib
from fractions import Fraction
import logging
import os
import signal
import sys
from typing import Any, Dict, Optional, Sequence, Union

from .audio import INT16_CLAMP_BOUND, LEGACY_CLAMP_BOUND, AudioPolicy
from .bridge import BridgeConfig, LiveKitNDIBridge
from .formats import OutputFourCC
from .servers import (
    InvalidServerError,
    SelectionAborted,
    ServerListError,
    ServerProfile,
    find_server,
    load_server_profiles,
    prompt_choice,
)
from .session import open_session, wait_for_rooms

__all__ = ["main"]

_logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_SHUTDOWN_TIMEOUT = 1
EXIT_STARTUP_ERROR = 2


def _build_parser () -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Republish LiveKit room participants as NDI sources")
    parser.add_argument("--servers-file", default="./servers.json", help="JSON list of LiveKit servers (default: ./servers.json)")
    parser.add_argument("--server", help="Server NAME to use instead of prompting")
    parser.add_argument("--room", help="Room name to join instead of prompting")
    parser.add_argument("--identity", default="NDI_ROBOT", help="Participant identity used to join the room")
    parser.add_argument("--audio-policy", choices=[policy.value for policy in AudioPolicy], default=AudioPolicy.NORMALIZE.value, help="Audio conversion policy (default: normalize)")
    parser.add_argument("--clamp-bound", default="int16", help="Audio clamp bound: 'int16' (32768), 'legacy' (65535) or an integer")
    parser.add_argument("--legacy-audio-stride", action="store_true", help="Declare a fixed 4-byte audio channel stride")
    parser.add_argument("--frame-rate", default="30000/1001", help="Frame rate declared to NDI receivers (default: 30000/1001)")
    parser.add_argument("--unknown-pixel-format", choices=[fourcc.value for fourcc in OutputFourCC] + ["error"], default=OutputFourCC.RGBA.value, help="FourCC used for unknown LiveKit buffer types, or 'error' to drop them")
    parser.add_argument("--repeat-format-warnings", action="store_true", help="Warn on every frame with an approximate pixel format")
    parser.add_argument("--sample-rate", type=int, default=48000, help="Audio sample rate requested from LiveKit (default: 48000)")
    parser.add_argument("--channels", type=int, default=1, help="Audio channel count requested from LiveKit (default: 1)")
    parser.add_argument("--ndi-groups", default="", help="Comma-separated NDI group names")
    parser.add_argument("--sender-name", default="{identity}", help="NDI source name template (default: '{identity}')")
    parser.add_argument("--sender-option", action="append", default=[], metavar="KEY=VALUE", help="Additional cyndilib Sender options")
    parser.add_argument("--sync-send", dest="use_async_send", action="store_false", default=True, help="Send video synchronously instead of using cyndilib's async queue")
    parser.add_argument("--shutdown-timeout", type=float, default=5.0, help="Seconds allowed for leaving the room before forcing exit")
    parser.add_argument("--rest-host", default="127.0.0.1", help="Host interface for the optional REST status server")
    parser.add_argument("--rest-port", type=int, help="Port for the optional REST status server")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO)")
    parser.add_argument("--metrics-interval", type=float, default=30.0, help="Seconds between periodic metrics logs; set to 0 to disable")
    return parser


def _parse_key_value_pairs (pairs: Sequence[str], option: str) -> Dict[str, str]:
    result: Dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise ValueError(f"{option} expects KEY=VALUE entries; received '{pair}'")
        key, value = pair.split("=", 1)
        result[key.strip()] = value.strip()
    return result


def _coerce_scalar (value: str) -> Any:
    lowered = value.lower()
    if lowered in {"true", "false"}:
        return lowered == "true"

    try:
        return int(value)
    except ValueError:
        try:
            return float(value)
        except ValueError:
            return value


def _parse_frame_rate (value: Union[str, Fraction]) -> Fraction:
    if isinstance(value, Fraction):
        rate = value
    else:
        text = str(value).strip()
        try:
            if "/" in text:
                numerator, denominator = text.split("/", 1)
                rate = Fraction(int(numerator), int(denominator))
            else:
                rate = Fraction(text).limit_denominator(1001)
        except (ValueError, ZeroDivisionError) as exc:
            raise ValueError(f"Invalid frame rate '{value}'") from exc

    if rate <= 0:
        raise ValueError(f"Frame rate must be positive; received '{value}'")
    return rate


def _parse_clamp_bound (value: str) -> int:
    lowered = value.strip().lower()
    if lowered == "int16":
        return INT16_CLAMP_BOUND
    if lowered == "legacy":
        return LEGACY_CLAMP_BOUND

    try:
        bound = int(lowered)
    except ValueError as exc:
        raise ValueError(f"--clamp-bound expects 'int16', 'legacy' or an integer; received '{value}'") from exc

    if bound <= 0:
        raise ValueError("--clamp-bound must be positive")
    return bound


def _build_config (args: argparse.Namespace) -> BridgeConfig:
    sender_options = {
        key: _coerce_scalar(value)
        for key, value in _parse_key_value_pairs(args.sender_option, "--sender-option").items()
    }
    unknown = None if args.unknown_pixel_format == "error" else OutputFourCC(args.unknown_pixel_format)

    return BridgeConfig(
        identity=args.identity,
        audio_policy=AudioPolicy(args.audio_policy),
        clamp_bound=_parse_clamp_bound(args.clamp_bound),
        interleaved_audio_stride=not args.legacy_audio_stride,
        frame_rate=_parse_frame_rate(args.frame_rate),
        unknown_pixel_format=unknown,
        repeat_format_warnings=args.repeat_format_warnings,
        audio_sample_rate=args.sample_rate,
        audio_channels=args.channels,
        ndi_groups=args.ndi_groups,
        use_async_send=args.use_async_send,
        sender_name_template=args.sender_name,
        sender_options=sender_options,
        shutdown_timeout=args.shutdown_timeout,
    )


def _select_server (args: argparse.Namespace) -> ServerProfile:
    profiles = load_server_profiles(args.servers_file)
    name = args.server
    if name is None:
        name = prompt_choice("Select server", [profile.name for profile in profiles])
    return find_server(profiles, name)


def _select_room (args: argparse.Namespace, config: BridgeConfig, profile: ServerProfile) -> str:
    if args.room is not None:
        return args.room
    rooms = asyncio.run(wait_for_rooms(profile, config.rooms_poll_interval))
    return prompt_choice("Select room", rooms)


async def _log_metrics (bridge: LiveKitNDIBridge, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        for identity, metrics in bridge.get_all_participant_metrics().items():
            _logger.info(
                "Participant %s → video=%d audio=%d dropped=%d format_warnings=%d",
                identity,
                metrics.video_frames_sent,
                metrics.audio_frames_sent,
                metrics.frames_dropped,
                metrics.format_warnings,
            )


async def _run (args: argparse.Namespace, config: BridgeConfig, profile: ServerProfile, room_name: str) -> int:
    loop = asyncio.get_running_loop()

    bridge = LiveKitNDIBridge(config)
    active_servers: list[Any] = []

    if args.rest_port is not None:
        from .rest_server import start_rest_server

        active_servers.append(start_rest_server(bridge, host=args.rest_host, port=args.rest_port))

    stop_event = asyncio.Event()

    def _handle_signal (signum: int) -> None:  # pragma: no cover - signal handler
        _logger.info("Received signal %s; stopping", signum)
        stop_event.set()

    installed: list[int] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, _handle_signal, signum)
            installed.append(signum)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - Windows event loops
            _logger.debug("Signal handlers unavailable for %s", signum)

    session = None
    metrics_task: Optional[asyncio.Task[None]] = None
    clean = True

    try:
        session = await open_session(profile, room_name, bridge)

        if args.metrics_interval > 0:
            metrics_task = asyncio.ensure_future(_log_metrics(bridge, args.metrics_interval))

        waiters = [
            asyncio.ensure_future(stop_event.wait()),
            asyncio.ensure_future(session.disconnected.wait()),
        ]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
    finally:
        if metrics_task is not None:
            metrics_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await metrics_task

        if session is not None:
            clean = await session.close()
        else:
            bridge.close()

        for server in active_servers:
            try:
                server.close()
            except Exception:  # pragma: no cover - shutdown best effort
                _logger.exception("Failed to stop REST status server cleanly")

        for signum in installed:
            loop.remove_signal_handler(signum)

    return EXIT_OK if clean else EXIT_SHUTDOWN_TIMEOUT


def _force_exit (code: int) -> None:  # pragma: no cover - terminates the interpreter
    logging.shutdown()
    os._exit(code)


def main (argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    try:
        config = _build_config(args)
    except (TypeError, ValueError) as exc:
        parser.error(str(exc))

    try:
        profile = _select_server(args)
        room_name = _select_room(args, config, profile)
    except (ServerListError, InvalidServerError, SelectionAborted) as exc:
        _logger.error("%s", exc)
        return EXIT_STARTUP_ERROR
    except KeyboardInterrupt:
        _logger.info("Selection interrupted")
        return EXIT_OK

    try:
        code = asyncio.run(_run(args, config, profile, room_name))
    except KeyboardInterrupt:  # pragma: no cover - interactive guard
        _logger.info("Stopping due to keyboard interrupt")
        return EXIT_OK

    if code == EXIT_SHUTDOWN_TIMEOUT:
        _logger.error("Forcing exit after shutdown timeout")
        _force_exit(code)

    return code


if __name__ == "__main__":  # pragma: no cover - manual invocation
    sys.exit(main())
