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
Lute Playback Bot
========================================================
VERSION: 1.0.0
========================================================

Plays local audio files into Discord voice channels, driven by an HTTP
control API. One playback session per guild.
"""

import asyncio
import functools
import logging
import os
import signal
from pathlib import Path
from typing import Optional

import disnake
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from core.player import GuildPlayer, PlayerRegistry
from core.track import DurationCache, TrackResolver
from core.transcode import OverlayMixer, SeekTranscoder
from handlers.http_api import ControlServer
from systems.voice_manager import VoiceManager
from systems.watchdog import transcode_watchdog
from utils.config import ConfigManager, validate_configuration
from utils.discord_helpers import format_guild_log, resolve_voice_channel
from utils.state import StateManager

# =============================================================================
# LOGGING SETUP
# =============================================================================

class LuteFormatter(logging.Formatter):
    """Formatter that prints fixed-width level tags: DBUG, INFO, WARN, FAIL, CRIT."""

    LEVEL_TAGS = {
        logging.DEBUG: 'DBUG',
        logging.INFO: 'INFO',
        logging.WARNING: 'WARN',
        logging.ERROR: 'FAIL',
        logging.CRITICAL: 'CRIT',
    }

    def formatMessage(self, record):
        # Work on a copy so other handlers still see the stock levelname
        tagged = logging.makeLogRecord(record.__dict__)
        tagged.levelname = self.LEVEL_TAGS.get(record.levelno, record.levelname[:4])
        return super().formatMessage(tagged)


LIBRARY_LOGGERS = ('disnake', 'disnake.player', 'disnake.voice_client', 'aiohttp.access')


def configure_logging(level_name: str, suppress_library_logs: bool = True):
    """(Re)apply the log level once settings are loaded."""
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    logging.getLogger().setLevel(level)
    for name in LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING if suppress_library_logs else level)


# Root handler; level is re-applied by configure_logging() after settings load
handler = logging.StreamHandler()
handler.setFormatter(LuteFormatter(
    fmt='[%(asctime)s] [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
))
logging.basicConfig(level=logging.INFO, handlers=[handler])
logger = logging.getLogger('lute')

# =============================================================================
# BOT SETUP
# =============================================================================

ROOT = Path(__file__).parent
CONFIG_PATH = Path(os.getenv("CONFIG_PATH") or str(ROOT / "config"))
DATA_PATH = Path(os.getenv("DATA_PATH") or str(ROOT / "data"))

intents = disnake.Intents.none()
intents.guilds = True
intents.voice_states = True

bot = disnake.Client(intents=intents)

config_manager = ConfigManager(CONFIG_PATH)
state_manager = StateManager(DATA_PATH)
registry: Optional[PlayerRegistry] = None
control_server: Optional[ControlServer] = None

# Global watchdog task
_watchdog_task: Optional[asyncio.Task] = None

# Shutdown flag to prevent double shutdown
_is_shutting_down = False

# Initialization flag to prevent on_ready from running setup code on reconnects
_is_initialized = False


def make_player_factory(config: ConfigManager, state: StateManager):
    """Build the callable PlayerRegistry uses to create a guild's player."""
    resolver = TrackResolver(
        config.audio_dir,
        config.get("allowed_extensions"),
        config.get("noises_folder"),
    )
    ffmpeg = config.get("ffmpeg")
    transcoder = SeekTranscoder(ffmpeg["executable"], ffmpeg["before_options"])
    mixer = OverlayMixer(ffmpeg["executable"], ffmpeg["before_options"])
    durations = DurationCache()
    connect_timeout = config.get("voice")["connect_timeout"]

    def factory(guild_id: int) -> GuildPlayer:
        return GuildPlayer(
            guild_id,
            voice=VoiceManager(guild_id, connect_timeout=connect_timeout),
            resolver=resolver,
            transcoder=transcoder,
            mixer=mixer,
            durations=durations,
            volume=state.get_volume(guild_id, config.default_volume),
            store=state,
        )

    return factory

# =============================================================================
# BOT EVENTS
# =============================================================================

@bot.event
async def on_ready():
    """
    Gateway ready.

    Starts the control API and the watchdog on first connect only; gateway
    reconnects fire on_ready again.
    """
    global _watchdog_task, _is_initialized

    if _is_initialized:
        logger.info("Gateway session resumed, services already running")
        return
    _is_initialized = True

    # Copyright and license info (as required by GPL 3.0)
    logger.info('Lute v1.0.0 - Copyright (C) 2026 grodz')
    logger.info('Licensed under GPL 3.0 or later')

    logger.info(f'Bot connected as {bot.user} ({len(bot.guilds)} guilds)')

    await control_server.start()

    watchdog = config_manager.get("watchdog")
    _watchdog_task = asyncio.create_task(
        transcode_watchdog(registry, watchdog["interval"], watchdog["grace"], bot=bot)
    )

    # Show shutdown instruction last
    logger.info("Ready. Ctrl+C or SIGTERM stops the bot")


@bot.event
async def on_voice_state_update(member, before, after):
    """Forget a guild's session when the bot is disconnected from voice."""
    if member.id != bot.user.id or not before.channel or after.channel:
        return

    player = registry.get(member.guild.id)
    # A reconnect in progress already holds a fresh connection
    if player is None or player.voice.is_connected():
        return

    logger.info(f"{format_guild_log(member.guild)}: Disconnected from voice, dropping session")
    await registry.remove(member.guild.id)


@bot.event
async def on_guild_remove(guild):
    """Drop the session of a guild the bot was removed from."""
    logger.info(f"Removed from {format_guild_log(guild)}, dropping session")
    await registry.remove(guild.id)

# =============================================================================
# GRACEFUL SHUTDOWN
# =============================================================================

async def shutdown_bot():
    """
    Stop everything in dependency order. Safe to call twice.

    Cancels the watchdog, tears down every player (killing ffmpeg children),
    stops the control API, flushes state and closes the gateway connection.
    Called by signal handlers (SIGTERM, SIGINT).
    """
    global _is_shutting_down
    if _is_shutting_down:
        return
    _is_shutting_down = True

    logger.info("Shutting down...")

    if _watchdog_task and not _watchdog_task.done():
        logger.info("Stopping watchdog...")
        _watchdog_task.cancel()
        try:
            await _watchdog_task
        except asyncio.CancelledError:
            pass

    if registry is not None:
        logger.info(f"Shutting down {len(registry)} player(s)...")
        await registry.shutdown()

    if control_server is not None:
        await control_server.stop()

    logger.info("Flushing state to disk...")
    await state_manager.save()

    logger.info("Closing gateway connection...")
    await bot.close()
    logger.info("Bye")


def handle_shutdown_signal(loop: asyncio.AbstractEventLoop, signum: int):
    """
    Loop signal handler for SIGTERM and SIGINT.

    Schedules the async shutdown sequence on the running loop.
    """
    signal_name = signal.Signals(signum).name
    logger.info(f"{signal_name} received")
    loop.create_task(shutdown_bot())

# =============================================================================
# MAIN
# =============================================================================

async def main():
    global registry, control_server

    await config_manager.load()
    logging_settings = config_manager.get("logging")
    configure_logging(logging_settings["level"], logging_settings["suppress_library_logs"])

    await validate_configuration(config_manager)
    await state_manager.load()

    registry = PlayerRegistry(make_player_factory(config_manager, state_manager))
    http = config_manager.get("http")
    control_server = ControlServer(
        registry,
        functools.partial(resolve_voice_channel, bot),
        host=http["host"],
        port=http["port"],
        default_volume=lambda guild_id: state_manager.get_volume(guild_id, config_manager.default_volume),
    )

    # SIGINT = Ctrl+C, SIGTERM = systemd stop / kill
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, handle_shutdown_signal, loop, signum)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    logger.info("Connecting to Discord...")
    try:
        await bot.start(os.getenv("DISCORD_TOKEN").strip())
    finally:
        if not _is_shutting_down:
            await shutdown_bot()


if __name__ == '__main__':
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
