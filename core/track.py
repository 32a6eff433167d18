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
Track References and Durations

A track reference is a relative POSIX-style path under the audio directory,
e.g. "ambience/rain.mp3". TrackResolver validates references and maps them to
files; DurationCache probes and memoizes track lengths with Mutagen.
"""

import asyncio
import logging
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, Iterable, Optional

from mutagen import File as MutagenFile, MutagenError

from core.errors import InvalidTrackReference

logger = logging.getLogger(__name__)

DEFAULT_EXTENSIONS = ('.mp3', '.wav', '.ogg', '.m4a')


def display_name(track: str) -> str:
    """
    Track reference without its extension.

    Example:
        "ambience/rain.mp3" → "ambience/rain"
    """
    return str(PurePosixPath(track).with_suffix(''))


class TrackResolver:
    """
    Validates track references and resolves them inside the audio directory.

    Rejected references:
    - empty values
    - anything containing ".." or starting with "/"
    - extensions outside allowed_extensions
    - paths that resolve outside audio_dir (symlink tricks included)

    Backslashes are normalized to forward slashes first, so Windows-style
    references from the browser work.

    Attributes:
        audio_dir: Root of the track library
        allowed_extensions: Lowercase extensions including the dot
        noises_folder: Top-level folder whose tracks are mixed as interrupts
    """

    def __init__(self, audio_dir: Path, allowed_extensions: Iterable[str] = DEFAULT_EXTENSIONS,
                 noises_folder: Optional[str] = "noises"):
        self.audio_dir = Path(audio_dir).resolve()
        self.allowed_extensions = frozenset(ext.lower() for ext in allowed_extensions)
        self.noises_folder = noises_folder or None

    def normalize(self, raw) -> str:
        """
        Validate a raw reference and return its normalized form.

        Raises:
            InvalidTrackReference: if the reference is rejected
        """
        if raw is None or raw == "":
            raise InvalidTrackReference(raw, "empty track reference")

        rel_path = str(raw).replace('\\', '/')
        if '..' in rel_path or rel_path.startswith('/'):
            raise InvalidTrackReference(raw, "path traversal")
        if PurePosixPath(rel_path).suffix.lower() not in self.allowed_extensions:
            raise InvalidTrackReference(raw, "extension not allowed")

        self._resolve_inside(rel_path, raw)
        return rel_path

    def resolve(self, track: str) -> Path:
        """Validate `track` and return its absolute path (the file may not exist)."""
        return self._resolve_inside(self.normalize(track), track)

    def is_noise(self, track: str) -> bool:
        """True when the track lives in the interrupt folder."""
        if not self.noises_folder:
            return False
        parts = PurePosixPath(track).parts
        return len(parts) > 1 and parts[0].lower() == self.noises_folder.lower()

    def _resolve_inside(self, rel_path: str, raw) -> Path:
        full_path = (self.audio_dir / rel_path).resolve()
        if full_path == self.audio_dir or self.audio_dir not in full_path.parents:
            raise InvalidTrackReference(raw, "outside audio directory")
        return full_path


def probe_duration(path: Path) -> float:
    """
    Read a track's length in seconds with Mutagen (synchronous).

    Returns 0.0 when the file is missing, unreadable or has no stream info.
    """
    try:
        audio = MutagenFile(path)
    except (MutagenError, OSError) as e:
        logger.debug(f"Duration probe failed for {path.name}: {e}")
        return 0.0
    if audio is None or getattr(audio, 'info', None) is None:
        return 0.0
    return float(getattr(audio.info, 'length', 0.0) or 0.0)


class DurationCache:
    """
    Memoized track durations, keyed by track reference.

    The first lookup probes the file in a worker thread; every later lookup is
    served from memory. Entries are never invalidated, so a track replaced on
    disk keeps the duration it had when first probed.
    """

    def __init__(self, probe: Callable[[Path], float] = probe_duration):
        self._probe = probe
        self._durations: Dict[str, float] = {}

    def peek(self, track: str) -> Optional[float]:
        """Cached duration, or None if the track was never probed."""
        return self._durations.get(track)

    async def get(self, track: str, path: Path) -> float:
        cached = self._durations.get(track)
        if cached is not None:
            return cached

        duration = await asyncio.to_thread(self._probe, path)
        self._durations[track] = duration
        return duration
