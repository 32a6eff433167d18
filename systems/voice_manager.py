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
Voice Management System

Thin adapter over disnake.VoiceClient for one guild: joining and moving
between channels, handing streams to the audio player, swapping the active
stream in place, pause/resume/stop and disconnecting.

disnake errors are translated into VoiceConnectionError here so the engine
only ever deals with the playback error taxonomy.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional, Tuple

import disnake

from core.errors import VoiceConnectionError
from utils.discord_helpers import safe_disconnect, safe_voice_state_change

logger = logging.getLogger(__name__)


class ConnectResult(Enum):
    """
    Outcome of VoiceManager.connect().

    UNCHANGED: Already connected to the requested channel
    MOVED: Existing connection moved to another channel (audio keeps flowing)
    JOINED: Fresh connection (any previous audio player is gone)
    """
    UNCHANGED = 0
    MOVED = 1
    JOINED = 2


class VoiceManager:
    """
    Owns the voice connection for one guild.

    Attributes:
        guild_id: Discord guild ID for logging
        voice_client: Current disnake voice client, or None
        connect_timeout: Seconds to wait for a voice handshake
    """

    def __init__(self, guild_id: int, connect_timeout: float = 10.0):
        self.guild_id = guild_id
        self.connect_timeout = connect_timeout
        self.voice_client: Optional[disnake.VoiceClient] = None

    # =========================================================================
    # Voice State Utilities
    # =========================================================================

    @staticmethod
    def get_voice_state_safe(voice_client: Optional[disnake.VoiceClient]) -> Optional[Tuple[bool, bool]]:
        """
        Safely get voice state.

        Returns:
            Tuple of (is_playing, is_paused) or None if not connected or error
        """
        if not voice_client or not voice_client.is_connected():
            return None

        try:
            return (voice_client.is_playing(), voice_client.is_paused())
        except (disnake.ClientException, RuntimeError) as e:
            logger.debug(f"Voice state check failed: {e}")
            return None

    def is_connected(self) -> bool:
        return bool(self.voice_client and self.voice_client.is_connected())

    @property
    def channel_id(self) -> Optional[int]:
        if not self.is_connected() or not self.voice_client.channel:
            return None
        return self.voice_client.channel.id

    def is_active(self) -> bool:
        """True while a stream is loaded (playing or paused)."""
        state = self.get_voice_state_safe(self.voice_client)
        return bool(state and (state[0] or state[1]))

    # =========================================================================
    # Connection
    # =========================================================================

    async def connect(self, channel: Optional[disnake.VoiceChannel]) -> ConnectResult:
        """
        Make sure the connection targets `channel`.

        Args:
            channel: Voice channel to bind to, or None to keep the current one

        Raises:
            VoiceConnectionError: if the channel cannot be joined or moved to
        """
        vc = self.voice_client
        if vc and vc.is_connected():
            if channel is None or (vc.channel and vc.channel.id == channel.id):
                return ConnectResult.UNCHANGED
            try:
                await vc.move_to(channel)
            except (disnake.ClientException, disnake.HTTPException, asyncio.TimeoutError) as e:
                raise VoiceConnectionError(f"move to #{channel} failed: {e}") from e
            logger.info(f"Guild {self.guild_id}: Moved to voice channel #{channel}")
            return ConnectResult.MOVED

        if channel is None:
            raise VoiceConnectionError("not connected to a voice channel")

        # Drop stale clients (ours or one disnake still tracks for the guild)
        await safe_disconnect(vc, force=True)
        self.voice_client = None
        existing = getattr(channel.guild, 'voice_client', None)
        if existing is not None:
            await safe_disconnect(existing, force=True)

        try:
            self.voice_client = await channel.connect(timeout=self.connect_timeout, reconnect=True)
        except (asyncio.TimeoutError, disnake.ClientException, OSError) as e:
            self.voice_client = None
            raise VoiceConnectionError(f"joining #{channel} failed: {e}") from e

        # Self-deafen (bot doesn't need to hear users)
        await safe_voice_state_change(channel.guild, channel, self_deaf=True)
        logger.info(f"Guild {self.guild_id}: Joined voice channel #{channel}")
        return ConnectResult.JOINED

    async def disconnect(self) -> None:
        """Leave voice. Safe to call when not connected."""
        vc, self.voice_client = self.voice_client, None
        if vc is not None:
            await safe_disconnect(vc, force=True)
            logger.info(f"Guild {self.guild_id}: Disconnected from voice")

    # =========================================================================
    # Audio Player
    # =========================================================================

    def play(self, source: disnake.AudioSource, after: Callable[[Optional[Exception]], None]) -> None:
        """
        Start streaming `source`.

        Raises:
            VoiceConnectionError: if not connected or the client refuses
        """
        if not self.is_connected():
            raise VoiceConnectionError("not connected to a voice channel")
        try:
            self.voice_client.play(source, after=after)
        except (disnake.ClientException, TypeError) as e:
            raise VoiceConnectionError(f"voice client refused stream: {e}") from e

    def swap(self, source: disnake.AudioSource) -> Optional[disnake.AudioSource]:
        """
        Replace the stream of the running audio player and return the old one.

        The audio player resumes itself while swapping, so a paused player is
        paused again afterwards.

        Raises:
            VoiceConnectionError: if nothing is loaded
        """
        vc = self.voice_client
        if not self.is_connected():
            raise VoiceConnectionError("not connected to a voice channel")
        was_paused = vc.is_paused()
        old = vc.source
        try:
            vc.source = source
        except (ValueError, TypeError) as e:
            raise VoiceConnectionError(f"cannot swap stream: {e}") from e
        if was_paused:
            vc.pause()
        return old

    def pause(self) -> None:
        if self.voice_client and self.voice_client.is_playing():
            self.voice_client.pause()

    def resume(self) -> None:
        if self.voice_client and self.voice_client.is_paused():
            self.voice_client.resume()

    def stop(self) -> None:
        """Stop the audio player (its after-callback still fires)."""
        if self.is_active():
            self.voice_client.stop()
