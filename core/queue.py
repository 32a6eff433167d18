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

"""Per-guild FIFO of pending track references."""

import random
from collections import deque
from typing import Iterable, List, Optional


class TrackQueue:
    """
    Pending tracks for one guild.

    Entries are opaque track references (relative paths). Validation happens
    before anything reaches the queue; the queue itself never checks files.
    An entry is popped before it is attempted and never put back.
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self._entries: deque[str] = deque()
        self._rng = rng or random.Random()

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    def snapshot(self) -> List[str]:
        """Copy of the queue, front first."""
        return list(self._entries)

    def add(self, track: str) -> List[str]:
        self._entries.append(track)
        return self.snapshot()

    def set(self, tracks: Iterable[str]) -> List[str]:
        """Replace the whole queue."""
        self._entries = deque(tracks)
        return self.snapshot()

    def clear(self) -> List[str]:
        self._entries.clear()
        return self.snapshot()

    def shuffle(self) -> List[str]:
        """Uniform in-place permutation (random.shuffle is Fisher-Yates)."""
        entries = list(self._entries)
        self._rng.shuffle(entries)
        self._entries = deque(entries)
        return self.snapshot()

    def pop_next(self) -> Optional[str]:
        """Remove and return the front entry, or None when empty."""
        if not self._entries:
            return None
        return self._entries.popleft()
