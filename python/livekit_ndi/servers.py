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

from dataclasses import dataclass
import json
import logging
from pathlib import Path
import sys
from typing import Any, Callable, List, Mapping, Sequence, TextIO, Union

__all__ = [
    "InvalidServerError",
    "SelectionAborted",
    "ServerListError",
    "ServerProfile",
    "find_server",
    "load_server_profiles",
    "prompt_choice",
]

_logger = logging.getLogger(__name__)


class ServerListError(RuntimeError):
    """Raised when the server list file cannot be read or parsed."""


class InvalidServerError(LookupError):
    """Raised when the selected server name matches no profile."""


class SelectionAborted(RuntimeError):
    """Raised when an interactive prompt reaches end of input."""


_REQUIRED_KEYS = ("NAME", "LIVEKIT_URL", "LIVEKIT_API_KEY", "LIVEKIT_API_SECRET")


@dataclass(frozen=True, slots=True)
class ServerProfile:
    name: str
    url: str
    api_key: str
    api_secret: str

    @classmethod
    def from_mapping (cls, entry: Mapping[str, Any]) -> "ServerProfile":
        missing = [key for key in _REQUIRED_KEYS if key not in entry]
        if missing:
            raise ServerListError(f"Server entry is missing {', '.join(missing)}")
        return cls(
            name=str(entry["NAME"]),
            url=str(entry["LIVEKIT_URL"]),
            api_key=str(entry["LIVEKIT_API_KEY"]),
            api_secret=str(entry["LIVEKIT_API_SECRET"]),
        )

    def __repr__ (self) -> str:
        return f"ServerProfile(name={self.name!r}, url={self.url!r})"


def load_server_profiles (path: Union[str, Path]) -> List[ServerProfile]:
    """Read the JSON array of server credentials at *path*."""

    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ServerListError(f"Unable to read server list '{path}': {exc}") from exc

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ServerListError(f"Server list '{path}' is not valid JSON: {exc}") from exc

    if not isinstance(payload, list):
        raise ServerListError(f"Server list '{path}' must contain a JSON array")

    profiles: List[ServerProfile] = []
    for index, entry in enumerate(payload):
        if not isinstance(entry, Mapping):
            raise ServerListError(f"Server list entry {index} is not an object")
        profiles.append(ServerProfile.from_mapping(entry))

    _logger.debug("Loaded %d server profile(s) from %s", len(profiles), path)
    return profiles


def find_server (profiles: Sequence[ServerProfile], name: str) -> ServerProfile:
    for profile in profiles:
        if profile.name == name:
            return profile
    raise InvalidServerError("Invalid Server")


def prompt_choice (
    message: str,
    choices: Sequence[str],
    input_func: Callable[[str], str] = input,
    output: TextIO | None = None,
) -> str:
    """Ask the user to pick one of *choices* by number or by exact name."""

    if not choices:
        raise ValueError(f"No choices available for '{message}'")

    stream = output if output is not None else sys.stdout
    print(message, file=stream)
    for index, choice in enumerate(choices, start=1):
        print(f"  {index}) {choice}", file=stream)

    while True:
        try:
            answer = input_func("> ").strip()
        except EOFError as exc:
            raise SelectionAborted(f"No selection made for '{message}'") from exc

        if answer in choices:
            return answer

        if answer.isdigit():
            position = int(answer)
            if 1 <= position <= len(choices):
                return choices[position - 1]

        print(f"Please enter a number between 1 and {len(choices)}", file=stream)
