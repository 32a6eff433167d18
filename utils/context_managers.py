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
Context Managers for Safe State Management

Provides context managers that guarantee cleanup even when errors occur.
"""

from contextlib import contextmanager
from typing import Any

from core.transcode import release_source


@contextmanager
def suppress_callbacks(player: Any):
    """
    Stop the voice client without letting its after-callback act.

    Usage:
        with suppress_callbacks(player):
            player.voice.stop()  # after_track fires, sees a cancelled session, exits

    The active playback session is invalidated before the body runs, so any
    in-flight callback for the previous stream exits early, both in the audio
    thread and once it reaches the event loop.

    Args:
        player: GuildPlayer instance
    """
    player.cancel_active_session()
    yield


@contextmanager
def released_on_error(source: Any):
    """
    Kill a freshly spawned stream if the block that installs it fails.

    Usage:
        source = transcoder.open(path)
        with released_on_error(source):
            voice.play(source, after=...)

    Once the block completes, ownership has passed to the player and the
    stream is released by its teardown instead.
    """
    try:
        yield source
    except BaseException:
        release_source(source)
        raise
