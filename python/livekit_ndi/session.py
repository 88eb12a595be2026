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

LiveKit room discovery, authentication and the lifetime of one bridged room.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional

from livekit import api, rtc

from .bridge import BridgeConfig, LiveKitNDIBridge
from .router import TrackRouter
from .servers import ServerProfile

__all__ = [
    "RoomSession",
    "connect_room",
    "create_access_token",
    "open_session",
    "wait_for_rooms",
]

_logger = logging.getLogger(__name__)


ApiFactory = Callable[[str, str, str], Any]
RoomFactory = Callable[[], Any]


def _http_url (url: str) -> str:
    if url.startswith("wss://"):
        return "https://" + url[len("wss://"):]
    if url.startswith("ws://"):
        return "http://" + url[len("ws://"):]
    return url


def _default_api_factory (url: str, api_key: str, api_secret: str) -> Any:
    return api.LiveKitAPI(_http_url(url), api_key, api_secret)


def create_access_token (profile: ServerProfile, identity: str, room_name: str) -> str:
    """Issue a join token for *room_name* signed with the profile's API secret."""

    token = (
        api.AccessToken(profile.api_key, profile.api_secret)
        .with_identity(identity)
        .with_grants(api.VideoGrants(room_join=True, room=room_name))
    )
    return token.to_jwt()


async def wait_for_rooms (
    profile: ServerProfile,
    poll_interval: float = 1.0,
    api_factory: ApiFactory = _default_api_factory,
) -> List[str]:
    """Poll the room service until at least one room exists and return the names."""

    client = api_factory(profile.url, profile.api_key, profile.api_secret)
    announced = False
    try:
        while True:
            response = await client.room.list_rooms(api.ListRoomsRequest())
            names = [room.name for room in response.rooms]
            if names:
                if announced:
                    _logger.info("Found %d room(s) on %s", len(names), profile.name)
                return names
            if not announced:
                _logger.info("Waiting for rooms on %s", profile.name)
                announced = True
            await asyncio.sleep(poll_interval)
    finally:
        await client.aclose()


async def connect_room (
    profile: ServerProfile,
    token: str,
    config: BridgeConfig,
    room_factory: RoomFactory = rtc.Room,
) -> Any:
    room = room_factory()
    options = rtc.RoomOptions(auto_subscribe=config.auto_subscribe, dynacast=config.dynacast)
    await room.connect(profile.url, token, options=options)
    _logger.info("Connected to room %s on %s as %s", getattr(room, "name", "?"), profile.name, config.identity)
    return room


class RoomSession:
    """Owns one connected room together with its router and bridge."""

    def __init__ (self, room: Any, router: TrackRouter, bridge: LiveKitNDIBridge) -> None:
        self.room = room
        self.router = router
        self.bridge = bridge
        self._closed = False

    @property
    def disconnected (self) -> asyncio.Event:
        return self.router.disconnected

    async def close (self, timeout: Optional[float] = None) -> bool:
        """Leave the room and release senders; ``False`` when *timeout* expired."""

        if self._closed:
            return True
        self._closed = True

        limit = self.bridge.config.shutdown_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(self._teardown(), timeout=limit if limit > 0 else None)
        except asyncio.TimeoutError:
            _logger.error("Room shutdown did not finish within %.1f s", limit)
            return False
        return True

    async def _teardown (self) -> None:
        try:
            await self.room.disconnect()
        except Exception:
            _logger.exception("Room disconnect failed")
        await self.router.close()
        self.bridge.close()


async def open_session (
    profile: ServerProfile,
    room_name: str,
    bridge: LiveKitNDIBridge,
    room_factory: RoomFactory = rtc.Room,
) -> RoomSession:
    """Authenticate, connect and start routing tracks into *bridge*."""

    token = create_access_token(profile, bridge.config.identity, room_name)
    room = room_factory()
    router = TrackRouter(room, bridge)
    # Handlers go in before connecting so tracks subscribed during the join are seen.
    router.attach()
    await connect_room(profile, token, bridge.config, room_factory=lambda: room)
    return RoomSession(room, router, bridge)
