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
Playback Clock

Track position is never read back from the voice client. It is derived from
timestamps recorded at play/pause/resume/seek, and capped at the track duration.

All timestamps are monotonic seconds (see time.monotonic). Every transition
returns a new clock; nothing here reads the time on its own, so the arithmetic
can be tested with plain numbers.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True, slots=True)
class PlaybackClock:
    """
    Position of the current track.

    Exactly one of the two fields is set while a track is loaded:
    - started_at: virtual start time of a running track (now - elapsed)
    - paused_elapsed: elapsed seconds frozen at the moment of pausing

    Both None means nothing is loaded (elapsed reads as 0).
    """

    started_at: Optional[float] = None
    paused_elapsed: Optional[float] = None

    def __post_init__(self):
        if self.started_at is not None and self.paused_elapsed is not None:
            raise ValueError("clock cannot be running and paused at the same time")

    @classmethod
    def started(cls, now: float) -> "PlaybackClock":
        """Clock for a track that starts playing from the beginning at `now`."""
        return cls(started_at=now)

    def raw_elapsed(self, now: float) -> float:
        """Elapsed seconds without the duration cap (never negative)."""
        if self.paused_elapsed is not None:
            return max(0.0, self.paused_elapsed)
        if self.started_at is not None:
            return max(0.0, now - self.started_at)
        return 0.0

    def elapsed(self, now: float, duration: Optional[float] = None) -> float:
        """
        Elapsed seconds, clamped to [0, duration].

        Args:
            now: Current monotonic time
            duration: Track length in seconds, or None when unknown (no upper cap)
        """
        value = self.raw_elapsed(now)
        if duration is not None:
            value = min(value, max(0.0, duration))
        return value

    def pause(self, now: float) -> "PlaybackClock":
        """Freeze the position at `now`."""
        if self.started_at is None:
            return self
        return PlaybackClock(paused_elapsed=now - self.started_at)

    def resume(self, now: float) -> "PlaybackClock":
        """Restart from the frozen position: started_at = now - paused_elapsed."""
        if self.paused_elapsed is None:
            return self
        return PlaybackClock(started_at=now - self.paused_elapsed)

    def seek(self, offset: float, now: float) -> "PlaybackClock":
        """
        Re-anchor to `offset` seconds.

        A running clock gets started_at = now - offset. A paused clock keeps
        its paused state and simply holds `offset`.
        """
        if self.paused_elapsed is not None:
            return PlaybackClock(paused_elapsed=offset)
        return PlaybackClock(started_at=now - offset)
