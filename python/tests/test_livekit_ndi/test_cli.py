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
import json
from pathlib import Path
from typing import Any, List

import pytest

import livekit_ndi.cli as cli
from livekit_ndi.audio import AudioPolicy
from livekit_ndi.formats import OutputFourCC


def _servers_file (tmp_path: Path) -> Path:
    path = tmp_path / "servers.json"
    path.write_text(
        json.dumps(
            [
                {
                    "NAME": "local",
                    "LIVEKIT_URL": "ws://localhost:7880",
                    "LIVEKIT_API_KEY": "devkey",
                    "LIVEKIT_API_SECRET": "secret",
                }
            ]
        ),
        encoding="utf-8",
    )
    return path


def test_parse_frame_rate_fraction_string () -> None:
    assert cli._parse_frame_rate("60000/1001") == Fraction(60000, 1001)


def test_parse_frame_rate_decimal_string () -> None:
    assert cli._parse_frame_rate("59.94") == Fraction(2997, 50)
    assert cli._parse_frame_rate("25") == Fraction(25, 1)


def test_parse_frame_rate_rejects_zero () -> None:
    with pytest.raises(ValueError):
        cli._parse_frame_rate("0")


def test_parse_frame_rate_rejects_invalid_input () -> None:
    with pytest.raises(ValueError):
        cli._parse_frame_rate("not-a-number")
    with pytest.raises(ValueError):
        cli._parse_frame_rate("30/0")


def test_parse_frame_rate_accepts_fraction_instance () -> None:
    rate = Fraction(24, 1)
    assert cli._parse_frame_rate(rate) is rate


def test_parse_clamp_bound_aliases () -> None:
    assert cli._parse_clamp_bound("int16") == 32768
    assert cli._parse_clamp_bound("LEGACY") == 65535
    assert cli._parse_clamp_bound("1000") == 1000
    with pytest.raises(ValueError):
        cli._parse_clamp_bound("0")
    with pytest.raises(ValueError):
        cli._parse_clamp_bound("loud")


def test_parse_key_value_pairs_requires_separator () -> None:
    assert cli._parse_key_value_pairs(["a=1", " b = x=y "], "--sender-option") == {"a": "1", "b": "x=y"}
    with pytest.raises(ValueError):
        cli._parse_key_value_pairs(["broken"], "--sender-option")


def test_build_config_from_arguments () -> None:
    args = cli._build_parser().parse_args(
        [
            "--identity", "BOT",
            "--audio-policy", "passthrough",
            "--clamp-bound", "legacy",
            "--legacy-audio-stride",
            "--frame-rate", "25",
            "--unknown-pixel-format", "error",
            "--sender-option", "clock_video=true",
            "--sender-option", "retries=3",
            "--sync-send",
            "--channels", "2",
        ]
    )

    config = cli._build_config(args)

    assert config.identity == "BOT"
    assert config.audio_policy is AudioPolicy.PASSTHROUGH
    assert config.clamp_bound == 65535
    assert config.interleaved_audio_stride is False
    assert config.frame_rate == Fraction(25, 1)
    assert config.unknown_pixel_format is None
    assert config.sender_options == {"clock_video": True, "retries": 3}
    assert config.use_async_send is False
    assert config.audio_channels == 2


def test_build_config_defaults () -> None:
    config = cli._build_config(cli._build_parser().parse_args([]))

    assert config.identity == "NDI_ROBOT"
    assert config.audio_policy is AudioPolicy.NORMALIZE
    assert config.clamp_bound == 32768
    assert config.frame_rate == Fraction(30000, 1001)
    assert config.unknown_pixel_format is OutputFourCC.RGBA
    assert config.auto_subscribe is True
    assert config.dynacast is False


def test_main_fails_before_connecting_without_server_list (tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    async def unexpected (*args: Any) -> int:
        raise AssertionError("room connection must not be attempted")

    monkeypatch.setattr(cli, "_run", unexpected)

    assert cli.main(["--servers-file", str(tmp_path / "missing.json")]) == cli.EXIT_STARTUP_ERROR


def test_main_rejects_unknown_server (tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    async def unexpected (*args: Any) -> int:
        raise AssertionError("room connection must not be attempted")

    monkeypatch.setattr(cli, "_run", unexpected)

    assert cli.main(["--servers-file", str(_servers_file(tmp_path)), "--server", "remote"]) == cli.EXIT_STARTUP_ERROR


def test_main_prompts_for_server_and_runs (tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    prompts: List[Any] = []
    runs: List[Any] = []

    def fake_prompt (message: str, choices: List[str], *args: Any, **kwargs: Any) -> str:
        prompts.append((message, list(choices)))
        return choices[0]

    async def fake_run (args: argparse.Namespace, config: Any, profile: Any, room_name: str) -> int:
        runs.append((room_name, config.identity, profile.name))
        return cli.EXIT_OK

    monkeypatch.setattr(cli, "prompt_choice", fake_prompt)
    monkeypatch.setattr(cli, "_run", fake_run)

    code = cli.main(["--servers-file", str(_servers_file(tmp_path)), "--room", "studio"])

    assert code == cli.EXIT_OK
    assert prompts == [("Select server", ["local"])]
    assert runs == [("studio", "NDI_ROBOT", "local")]


def test_invalid_option_values_exit_through_parser (tmp_path: Path) -> None:
    with pytest.raises(SystemExit):
        cli.main(["--servers-file", str(_servers_file(tmp_path)), "--frame-rate", "fast"])


def test_main_lists_rooms_and_prompts_before_running (tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    prompts: List[Any] = []
    runs: List[Any] = []

    async def fake_wait_for_rooms (profile: Any, poll_interval: float) -> List[str]:
        return ["lobby", "studio"]

    def fake_prompt (message: str, choices: List[str], *args: Any, **kwargs: Any) -> str:
        prompts.append((message, list(choices)))
        return choices[-1]

    async def fake_run (args: argparse.Namespace, config: Any, profile: Any, room_name: str) -> int:
        runs.append(room_name)
        return cli.EXIT_OK

    monkeypatch.setattr(cli, "wait_for_rooms", fake_wait_for_rooms)
    monkeypatch.setattr(cli, "prompt_choice", fake_prompt)
    monkeypatch.setattr(cli, "_run", fake_run)

    code = cli.main(["--servers-file", str(_servers_file(tmp_path)), "--server", "local"])

    assert code == cli.EXIT_OK
    assert prompts == [("Select room", ["lobby", "studio"])]
    assert runs == ["studio"]


@pytest.mark.parametrize("extra_args", [[], ["--server", "local"]])
def test_interrupt_at_prompt_exits_cleanly (tmp_path: Path, monkeypatch: pytest.MonkeyPatch, extra_args: List[str]) -> None:
    async def fake_wait_for_rooms (profile: Any, poll_interval: float) -> List[str]:
        return ["lobby"]

    def interrupted_prompt (*args: Any, **kwargs: Any) -> str:
        raise KeyboardInterrupt

    async def unexpected (*args: Any) -> int:
        raise AssertionError("room connection must not be attempted")

    monkeypatch.setattr(cli, "wait_for_rooms", fake_wait_for_rooms)
    monkeypatch.setattr(cli, "prompt_choice", interrupted_prompt)
    monkeypatch.setattr(cli, "_run", unexpected)

    assert cli.main(["--servers-file", str(_servers_file(tmp_path))] + extra_args) == cli.EXIT_OK
