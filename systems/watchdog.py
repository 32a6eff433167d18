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
Transcode Watchdog

ffmpeg children have no timeout of their own. If a stream keeps running well
past the end of its track (a stuck decoder, a voice client that never reports
the end), the player is torn down and the process killed.
"""

import asyncio
import logging

logger = logging.getLogger(__name__)


async def sweep_hung_players(registry, grace: float) -> int:
    """
    Check every player once.

    Returns:
        Number of players torn down
    """
    killed = 0
    # Snapshot iteration to prevent crashes during modifications
    for player in registry.players():
        try:
            if await player.check_hung(grace):
                killed += 1
        except Exception:
            logger.exception(f"Guild {player.guild_id}: Watchdog check failed")
    return killed


async def transcode_watchdog(registry, interval: float, grace: float, bot=None):
    """
    Background loop around sweep_hung_players().

    Args:
        registry: PlayerRegistry to monitor
        interval: Seconds between sweeps
        grace: Seconds a stream may overrun its track
        bot: Optional disnake client; the loop ends once it is closed
    """
    if bot is not None:
        await bot.wait_until_ready()
    logger.debug(f"Transcode watchdog started (every {interval}s, grace {grace}s)")

    while bot is None or not bot.is_closed():
        try:
            await asyncio.sleep(interval)
            killed = await sweep_hung_players(registry, grace)
            if killed:
                logger.info(f"Watchdog tore down {killed} hung stream(s)")
        except asyncio.CancelledError:
            logger.debug("Transcode watchdog cancelled, shutting down")
            break
        except Exception:
            logger.exception("Transcode watchdog error")
