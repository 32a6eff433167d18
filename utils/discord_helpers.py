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
Discord Helper Utilities

- format_guild_log(): Guild label for log lines
- resolve_voice_channel(): Map a channel id to a voice channel via the cache
- safe_disconnect(): Leave voice without raising
- safe_voice_state_change(): Self-deafen without failing the caller
"""

import logging
from typing import Optional, Union

import disnake

from core.errors import ChannelNotFound

logger = logging.getLogger(__name__)

VoiceLikeChannel = Union[disnake.VoiceChannel, disnake.StageChannel]


def format_guild_log(guild_or_id, bot=None) -> str:
    """
    Label a guild for log output: its name, plus the id when DEBUG is on.

    Accepts a Guild, a guild id (looked up through `bot` if given) or None.
    """
    if isinstance(guild_or_id, int):
        guild_id = guild_or_id
        guild = bot.get_guild(guild_id) if bot is not None else None
    else:
        guild = guild_or_id
        guild_id = getattr(guild, "id", None)

    name = getattr(guild, "name", None)
    if name is None:
        return f"Guild #{guild_id}" if guild_id else "Unknown guild"
    if logger.isEnabledFor(logging.DEBUG):
        return f"{name} (#{guild_id})"
    return name


def resolve_voice_channel(bot, channel_id: int) -> VoiceLikeChannel:
    """
    Look up a voice channel in the bot's cache.

    Raises:
        ChannelNotFound: if the id is unknown or not a voice/stage channel
    """
    channel = bot.get_channel(channel_id)
    if not isinstance(channel, (disnake.VoiceChannel, disnake.StageChannel)):
        raise ChannelNotFound(channel_id)
    return channel


async def safe_disconnect(voice_client: Optional[disnake.VoiceClient], force: bool = True) -> bool:
    """
    Disconnect `voice_client` if there is one.

    Returns False when Discord or the transport refused; nothing is raised
    because every caller is already tearing down.
    """
    if voice_client is None:
        return True
    try:
        await voice_client.disconnect(force=force)
    except (disnake.ClientException, disnake.HTTPException, OSError) as e:
        logger.debug("Voice disconnect failed: %s", e)
        return False
    return True


async def safe_voice_state_change(guild: disnake.Guild, channel: VoiceLikeChannel, self_deaf: bool = True) -> bool:
    """Update the bot's own voice state. Returns False if Discord rejected it."""
    try:
        await guild.change_voice_state(channel=channel, self_deaf=self_deaf)
    except (disnake.ClientException, disnake.HTTPException) as e:
        logger.debug("Voice state change failed: %s", e)
        return False
    return True
