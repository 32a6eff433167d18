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
FFmpeg Transcoding

Every stream handed to the voice client is an ffmpeg child process decoding a
file into raw PCM (48kHz, stereo, signed 16-bit) on its stdout:

- SeekTranscoder: one input, optionally starting at an offset (-ss). Used for
  normal playback (offset 0), seeking and repeat.
- OverlayMixer: the main track from its current offset mixed with an
  interrupt track (amix, duration=first so the main track bounds the length).

Streams are wrapped in PCMVolumeTransformer so the volume can change live.
Calling cleanup() on the wrapper kills the ffmpeg process; it is safe to call
more than once.
"""

import logging
import shlex
import subprocess
from pathlib import Path
from typing import List, Optional

import disnake

from core.errors import TranscodeSpawnFailure

logger = logging.getLogger(__name__)

SAMPLING_RATE = 48000
CHANNELS = 2
FRAME_LENGTH_MS = 20
SAMPLE_SIZE = 2 * CHANNELS  # s16le
FRAME_SIZE = SAMPLING_RATE * FRAME_LENGTH_MS // 1000 * SAMPLE_SIZE  # 3840 bytes

OUTPUT_OPTIONS = ['-vn', '-f', 's16le', '-ar', str(SAMPLING_RATE), '-ac', str(CHANNELS)]

MIX_FILTER = '[0:a][1:a]amix=inputs=2:duration=first:dropout_transition=0'


def format_offset(offset: float) -> str:
    """ffmpeg-friendly seconds value (millisecond precision)."""
    return f"{max(0.0, offset):.3f}"


class TranscodeStream(disnake.FFmpegAudio):
    """
    Raw PCM audio read from an ffmpeg child process.

    Same framing as disnake.FFmpegPCMAudio, but the full argument list is
    supplied by the caller so several inputs and filters can be used.
    """

    def __init__(self, label: str, args: List[str], *, executable: str = 'ffmpeg'):
        super().__init__(label, executable=executable, args=args)

    def read(self) -> bytes:
        ret = self._stdout.read(FRAME_SIZE)
        if len(ret) != FRAME_SIZE:
            return b''
        return ret

    def is_opus(self) -> bool:
        return False

    @property
    def pid(self) -> Optional[int]:
        process = getattr(self, '_process', None)
        return process.pid if isinstance(process, subprocess.Popen) else None


class _FFmpegLauncher:
    """Shared spawning logic for the transcoder and the mixer."""

    def __init__(self, executable: str = 'ffmpeg', before_options: str = '-hide_banner -nostdin'):
        self.executable = executable
        self.before_options = shlex.split(before_options or '')

    def _output_args(self) -> List[str]:
        return [*OUTPUT_OPTIONS, '-loglevel', 'warning', 'pipe:1']

    def _spawn(self, label: str, args: List[str], volume: float) -> disnake.PCMVolumeTransformer:
        try:
            stream = TranscodeStream(label, args, executable=self.executable)
        except disnake.ClientException as e:
            logger.error(f"ffmpeg spawn failed for {label}: {e}")
            raise TranscodeSpawnFailure(str(e)) from e

        logger.debug(f"Spawned ffmpeg (pid {stream.pid}) for {label}")
        return disnake.PCMVolumeTransformer(stream, volume=volume)


class SeekTranscoder(_FFmpegLauncher):
    """Decodes one track into raw PCM, optionally starting at an offset."""

    def build_args(self, path: Path, offset: float = 0.0) -> List[str]:
        args = list(self.before_options)
        if offset > 0:
            args += ['-ss', format_offset(offset)]
        args += ['-i', str(path)]
        return args + self._output_args()

    def open(self, path: Path, *, offset: float = 0.0, volume: float = 0.5) -> disnake.PCMVolumeTransformer:
        """
        Spawn a decode stream.

        Raises:
            TranscodeSpawnFailure: if ffmpeg cannot be started
        """
        label = f"{Path(path).name} @ {format_offset(offset)}s"
        return self._spawn(label, self.build_args(path, offset), volume)


class OverlayMixer(_FFmpegLauncher):
    """Mixes an interrupt track over the main track from its current position."""

    def build_args(self, main_path: Path, offset: float, overlay_path: Path) -> List[str]:
        args = list(self.before_options)
        if offset > 0:
            args += ['-ss', format_offset(offset)]
        args += [
            '-i', str(main_path),
            '-i', str(overlay_path),
            '-filter_complex', MIX_FILTER,
        ]
        return args + self._output_args()

    def mix(self, main_path: Path, offset: float, overlay_path: Path, *,
            volume: float = 0.5) -> disnake.PCMVolumeTransformer:
        """
        Spawn a mixed stream.

        Raises:
            TranscodeSpawnFailure: if ffmpeg cannot be started
        """
        label = f"{Path(main_path).name} @ {format_offset(offset)}s + {Path(overlay_path).name}"
        return self._spawn(label, self.build_args(main_path, offset, overlay_path), volume)


def release_source(source) -> None:
    """
    Kill the ffmpeg process behind `source` (None is a no-op).

    Cleanup failures are logged and swallowed: the process is already gone or
    was never started, and teardown must carry on either way.
    """
    if source is None:
        return
    try:
        source.cleanup()
    except (OSError, RuntimeError, AttributeError) as e:
        logger.debug("source.cleanup() failed: %s", e, exc_info=True)
