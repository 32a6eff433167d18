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
Playback Sessions and Track-End Callbacks

The voice client calls its `after` callback from the audio thread whenever a
stream stops: end of file, manual stop, disconnect or an error. Each play
attempt gets a PlaybackSession token so the callback can tell whether it still
belongs to the current stream before anything is scheduled on the event loop.
"""

import asyncio
from time import monotonic as _now
import logging
from dataclasses import dataclass, field
from itertools import count
from typing import Optional

logger = logging.getLogger(__name__)


_SESSION_IDS = count(1)


@dataclass(slots=True)
class PlaybackSession:
    """Token that scopes callbacks to a specific play attempt.

    Each playback session receives a unique ``id`` so asynchronous callbacks can
    verify that they are still acting on the most recent request. The
    ``track`` is stored for logging, while ``started_at`` records when the
    stream was handed to the voice client. The ``cancelled`` flag is toggled
    when a newer session supersedes the current one or the stream is stopped
    on purpose, allowing in-flight callbacks to bail out early.
    """

    id: int = field(default_factory=lambda: next(_SESSION_IDS))
    track: Optional[str] = None
    started_at: float = field(default_factory=_now)
    cancelled: bool = False

    def cancel(self) -> None:
        """Mark the session as cancelled so callbacks know to exit early."""
        self.cancelled = True


@dataclass(frozen=True, slots=True)
class NowPlaying:
    """Snapshot returned by GuildPlayer.now_playing()."""

    track: Optional[str] = None
    elapsed: float = 0.0
    duration: float = 0.0
    paused: bool = False

    def to_dict(self) -> dict:
        return {
            "track": self.track,
            "elapsed": self.elapsed,
            "duration": self.duration,
            "paused": self.paused,
        }


def make_after_callback(player, session: PlaybackSession, loop: asyncio.AbstractEventLoop):
    """
    Build the `after` callback for one play attempt.

    CRITICAL: the returned function runs in the voice client's audio thread,
    not the event loop thread. It never touches player state; it only hands
    the event to player.handle_track_end() on the loop, which re-checks the
    session under the player's lock.
    """
    guild_id = player.guild_id

    def after_track(error: Optional[Exception]):
        if error:
            logger.error(f"Guild {guild_id} playback error: {error}")

        if session.cancelled:
            logger.debug(f"Guild {guild_id}: Ignoring callback from superseded playback session")
            return

        if loop.is_closed():
            return

        asyncio.run_coroutine_threadsafe(player.handle_track_end(session, error), loop)

    return after_track
