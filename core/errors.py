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
Playback Errors

Every failure the engine reports to its callers derives from PlaybackError.
The HTTP layer maps each type to a status code in one place.
"""


class PlaybackError(Exception):
    """Base class for playback control failures."""


class ChannelNotFound(PlaybackError):
    """No voice channel (and therefore no guild) matches the given id."""

    def __init__(self, channel_id):
        super().__init__(f"channel {channel_id} not found")
        self.channel_id = channel_id


class NoActiveSession(PlaybackError):
    """Operation needs a loaded track but nothing is playing."""


class InvalidTransition(PlaybackError):
    """Operation is not allowed in the session's current state."""

    def __init__(self, state, event):
        super().__init__(f"cannot {event.name.lower()} while {state.name.lower()}")
        self.state = state
        self.event = event


class InvalidTrackReference(PlaybackError):
    """Track reference failed validation (traversal, absolute path, extension)."""

    def __init__(self, track, reason: str = "invalid track reference"):
        super().__init__(f"{reason}: {track!r}")
        self.track = track
        self.reason = reason


class TranscodeSpawnFailure(PlaybackError):
    """The ffmpeg child process could not be started."""


class VoiceConnectionError(PlaybackError):
    """Voice transport failure. Always ends in a full session teardown."""
