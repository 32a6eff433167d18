# Copyright (C) 2026 grodz
#
# This file is part of Lute.
#
# Lute is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""
HTTP Control API

JSON routes used by the browser control panel. Every request names a voice
channel (`channelId`, query string for GET, JSON body for POST); the channel
selects the guild whose player is driven. GET routes only read and never
create a player.

Errors from the engine are turned into status codes by error_middleware:

    ChannelNotFound, NoActiveSession   -> 404
    InvalidTrackReference, bad bodies  -> 400
    InvalidTransition                  -> 409
    TranscodeSpawnFailure              -> 500
    VoiceConnectionError               -> 502
"""

import logging
import math
import re
from typing import Callable, Optional

from aiohttp import web

from core.errors import (
    ChannelNotFound,
    InvalidTrackReference,
    InvalidTransition,
    NoActiveSession,
    PlaybackError,
    TranscodeSpawnFailure,
    VoiceConnectionError,
)
from core.playback import NowPlaying

logger = logging.getLogger(__name__)

SNOWFLAKE_RE = re.compile(r'^\d{17,20}$')

ERROR_STATUS = {
    ChannelNotFound: 404,
    NoActiveSession: 404,
    InvalidTrackReference: 400,
    InvalidTransition: 409,
    TranscodeSpawnFailure: 500,
    VoiceConnectionError: 502,
}


class RequestError(ValueError):
    """Malformed request body or parameter."""


def _status_for(error: PlaybackError) -> int:
    for cls in type(error).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except PlaybackError as e:
        status = _status_for(e)
        if status >= 500:
            logger.error(f"{request.method} {request.path} failed: {e}")
        else:
            logger.debug(f"{request.method} {request.path} rejected ({status}): {e}")
        return web.json_response({"error": str(e)}, status=status)
    except ValueError as e:
        # RequestError, bad JSON and out-of-range values
        logger.debug(f"{request.method} {request.path} bad request: {e}")
        return web.json_response({"error": str(e)}, status=400)


def parse_channel_id(value) -> int:
    """
    Validate a Discord channel id (17-20 digit snowflake).

    Raises:
        RequestError: if the value is missing or malformed
    """
    if isinstance(value, bool) or value is None:
        raise RequestError("channelId is required")
    text = str(value).strip()
    if not SNOWFLAKE_RE.match(text):
        raise RequestError(f"invalid channelId: {value!r}")
    return int(text)


def _number(body: dict, key: str) -> float:
    value = body.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise RequestError(f"{key} must be a finite number")
    return float(value)


class ControlServer:
    """
    aiohttp application around a PlayerRegistry.

    Args:
        registry: PlayerRegistry
        resolve_channel: channel id -> voice channel (raises ChannelNotFound)
        default_volume: guild id -> volume reported before the guild has a player
        host: Bind address
        port: Bind port
    """

    def __init__(self, registry, resolve_channel: Callable[[int], object],
                 host: str = "127.0.0.1", port: int = 3000,
                 default_volume: Callable[[int], float] = lambda guild_id: 0.5):
        self.registry = registry
        self.resolve_channel = resolve_channel
        self.default_volume = default_volume
        self.host = host
        self.port = port
        self.app: Optional[web.Application] = None
        self.runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        self.app = web.Application(middlewares=[error_middleware])
        self._setup_routes()
        return self.app

    async def start(self):
        if self.app is None:
            self.build_app()
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()
        logger.info(f"Control API at http://{self.host}:{self.port}")

    async def stop(self):
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
            logger.debug("Control API stopped")

    def _setup_routes(self):
        router = self.app.router

        # Playback
        router.add_post("/play-audio", self._handle_play)
        router.add_post("/toggle-pause", self._handle_toggle_pause)
        router.add_get("/pause-status", self._handle_pause_status)
        router.add_post("/stop-audio", self._handle_stop)
        router.add_post("/seek", self._handle_seek)
        router.add_get("/now-playing", self._handle_now_playing)

        # Settings
        router.add_post("/toggle-repeat", self._handle_toggle_repeat)
        router.add_get("/repeat-status", self._handle_repeat_status)
        router.add_post("/set-volume", self._handle_set_volume)
        router.add_get("/get-volume", self._handle_get_volume)

        # Connection
        router.add_post("/switch-channel", self._handle_switch_channel)
        router.add_post("/disconnect", self._handle_disconnect)

        # Queue
        router.add_get("/playlist", self._handle_queue)
        router.add_post("/playlist/add", self._handle_queue_add)
        router.add_post("/playlist/set", self._handle_queue_set)
        router.add_post("/playlist/shuffle", self._handle_queue_shuffle)
        router.add_post("/playlist/clear", self._handle_queue_clear)
        router.add_post("/playlist/play", self._handle_queue_play)
        router.add_post("/playlist/skip", self._handle_queue_skip)

        router.add_get("/health", self._handle_health)

    # =========================================================================
    # Request Helpers
    # =========================================================================

    async def _body(self, request: web.Request) -> dict:
        if not request.body_exists:
            return {}
        body = await request.json()
        if not isinstance(body, dict):
            raise RequestError("request body must be a JSON object")
        return body

    async def _target(self, request: web.Request):
        """Resolve (body, channel, player) for a POST, creating the guild's player if needed."""
        body = await self._body(request)
        channel = self.resolve_channel(parse_channel_id(body.get("channelId")))
        player = await self.registry.get_player(channel.guild.id)
        return body, channel, player

    def _lookup(self, request: web.Request):
        """Resolve (guild_id, player or None) for a read-only request. Never creates a player."""
        channel = self.resolve_channel(parse_channel_id(request.query.get("channelId")))
        guild_id = channel.guild.id
        return guild_id, self.registry.get(guild_id)

    # =========================================================================
    # Playback
    # =========================================================================

    async def _handle_play(self, request: web.Request) -> web.Response:
        body, channel, player = await self._target(request)
        file_name = body.get("fileName")
        if not isinstance(file_name, str):
            raise RequestError("fileName is required")
        started = await player.play(file_name, channel)
        return web.json_response({"started": started})

    async def _handle_toggle_pause(self, request: web.Request) -> web.Response:
        _, _, player = await self._target(request)
        paused = await player.toggle_pause()
        return web.json_response({"paused": paused})

    async def _handle_pause_status(self, request: web.Request) -> web.Response:
        _, player = self._lookup(request)
        return web.json_response({"paused": player is not None and player.paused})

    async def _handle_stop(self, request: web.Request) -> web.Response:
        _, _, player = await self._target(request)
        stopped = await player.stop()
        return web.json_response({"stopped": stopped})

    async def _handle_seek(self, request: web.Request) -> web.Response:
        body, _, player = await self._target(request)
        offset = _number(body, "offsetSecs")
        ok = await player.seek(offset)
        return web.json_response({"ok": ok}, status=200 if ok else 500)

    async def _handle_now_playing(self, request: web.Request) -> web.Response:
        _, player = self._lookup(request)
        info = await player.now_playing() if player is not None else NowPlaying()
        return web.json_response(info.to_dict())

    # =========================================================================
    # Settings
    # =========================================================================

    async def _handle_toggle_repeat(self, request: web.Request) -> web.Response:
        _, _, player = await self._target(request)
        return web.json_response({"repeatEnabled": player.toggle_repeat()})

    async def _handle_repeat_status(self, request: web.Request) -> web.Response:
        _, player = self._lookup(request)
        return web.json_response({"repeatEnabled": player is not None and player.repeat_status})

    async def _handle_set_volume(self, request: web.Request) -> web.Response:
        body, _, player = await self._target(request)
        volume = await player.set_volume(_number(body, "volume"))
        return web.json_response({"volume": volume})

    async def _handle_get_volume(self, request: web.Request) -> web.Response:
        guild_id, player = self._lookup(request)
        volume = player.get_volume() if player is not None else self.default_volume(guild_id)
        return web.json_response({"volume": volume})

    # =========================================================================
    # Connection
    # =========================================================================

    async def _handle_switch_channel(self, request: web.Request) -> web.Response:
        _, channel, player = await self._target(request)
        switched = await player.switch_channel(channel)
        return web.json_response({"switched": switched})

    async def _handle_disconnect(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        channel = self.resolve_channel(parse_channel_id(body.get("channelId")))
        guild_id = channel.guild.id

        player = self.registry.get(guild_id)
        disconnected = False
        if player is not None:
            disconnected = await player.disconnect()
            await self.registry.remove(guild_id)
        return web.json_response({"disconnected": disconnected})

    # =========================================================================
    # Queue
    # =========================================================================

    async def _handle_queue(self, request: web.Request) -> web.Response:
        _, player = self._lookup(request)
        return web.json_response({"queue": player.queue_snapshot() if player is not None else []})

    async def _handle_queue_add(self, request: web.Request) -> web.Response:
        body, _, player = await self._target(request)
        file_name = body.get("fileName")
        if not isinstance(file_name, str):
            raise RequestError("fileName is required")
        return web.json_response({"queue": player.queue_add(file_name)})

    async def _handle_queue_set(self, request: web.Request) -> web.Response:
        body, _, player = await self._target(request)
        tracks = body.get("queue")
        if not isinstance(tracks, list) or not all(isinstance(t, str) for t in tracks):
            raise RequestError("queue must be a list of track names")
        return web.json_response({"queue": player.queue_set(tracks)})

    async def _handle_queue_shuffle(self, request: web.Request) -> web.Response:
        _, _, player = await self._target(request)
        return web.json_response({"queue": player.queue_shuffle()})

    async def _handle_queue_clear(self, request: web.Request) -> web.Response:
        _, _, player = await self._target(request)
        return web.json_response({"queue": player.queue_clear()})

    async def _handle_queue_play(self, request: web.Request) -> web.Response:
        _, channel, player = await self._target(request)
        started = await player.start_queue(channel)
        return web.json_response({"started": started, "queue": player.queue_snapshot()})

    async def _handle_queue_skip(self, request: web.Request) -> web.Response:
        _, channel, player = await self._target(request)
        started = await player.skip(channel)
        return web.json_response({"started": started, "queue": player.queue_snapshot()})

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "guilds": len(self.registry)})
