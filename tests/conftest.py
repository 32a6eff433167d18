"""Test configuration and fixtures."""

from pathlib import Path
from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest

from core.errors import TranscodeSpawnFailure, VoiceConnectionError
from core.player import GuildPlayer
from core.track import DurationCache, TrackResolver
from systems.voice_manager import ConnectResult

GUILD_ID = 1234
CHANNEL_A = 111111111111111111
CHANNEL_B = 222222222222222222

TRACK_LENGTHS = {
    "a.mp3": 10.0,
    "b.mp3": 20.0,
    "horn.mp3": 3.0,
}


class FakeClock:
    """Manually advanced replacement for time.monotonic."""

    def __init__(self, start: float = 1000.0) -> None:
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class FakeSource:
    """Stands in for a PCMVolumeTransformer around an ffmpeg stream."""

    def __init__(self, label: str, volume: float) -> None:
        self.label = label
        self.volume = volume
        self.cleaned = False

    def cleanup(self) -> None:
        self.cleaned = True


class FakeTranscoder:
    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.fail = False

    def open(self, path: Path, *, offset: float = 0.0, volume: float = 0.5) -> FakeSource:
        if self.fail:
            raise TranscodeSpawnFailure("ffmpeg missing")
        self.calls.append((Path(path).name, offset, volume))
        return FakeSource(f"{Path(path).name}@{offset}", volume)


class FakeMixer:
    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.fail = False

    def mix(self, main_path: Path, offset: float, overlay_path: Path, *, volume: float = 0.5) -> FakeSource:
        if self.fail:
            raise TranscodeSpawnFailure("ffmpeg missing")
        self.calls.append((Path(main_path).name, offset, Path(overlay_path).name))
        return FakeSource(f"{Path(main_path).name}+{Path(overlay_path).name}", volume)


class FakeVoice:
    """Same interface as VoiceManager, without Discord."""

    def __init__(self) -> None:
        self.connected = False
        self.channel_id: Optional[int] = None
        self.source = None
        self.after = None
        self.paused = False
        self.stops = 0
        self.fail_connect = False
        self.connects: List[ConnectResult] = []

    def is_connected(self) -> bool:
        return self.connected

    async def connect(self, channel) -> ConnectResult:
        if self.fail_connect:
            raise VoiceConnectionError("voice gateway timed out")
        if self.connected:
            if channel is None or channel.id == self.channel_id:
                result = ConnectResult.UNCHANGED
            else:
                self.channel_id = channel.id
                result = ConnectResult.MOVED
        elif channel is None:
            raise VoiceConnectionError("not connected to a voice channel")
        else:
            self.connected = True
            self.channel_id = channel.id
            result = ConnectResult.JOINED
        self.connects.append(result)
        return result

    async def disconnect(self) -> None:
        self.connected = False
        self.channel_id = None
        self.source = None

    def play(self, source, after) -> None:
        if not self.connected:
            raise VoiceConnectionError("not connected to a voice channel")
        self.source = source
        self.after = after
        self.paused = False

    def swap(self, source):
        old, self.source = self.source, source
        return old

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    def stop(self) -> None:
        if self.source is not None:
            self.stops += 1
        self.source = None
        self.paused = False


def fake_channel(channel_id: int, guild_id: int = GUILD_ID):
    return SimpleNamespace(id=channel_id, guild=SimpleNamespace(id=guild_id))


@pytest.fixture
def audio_dir(tmp_path: Path) -> Path:
    """Audio library with two main tracks and one interrupt track."""
    root = tmp_path / "audio"
    (root / "noises").mkdir(parents=True)
    (root / "a.mp3").write_bytes(b"ID3")
    (root / "b.mp3").write_bytes(b"ID3")
    (root / "noises" / "horn.mp3").write_bytes(b"ID3")
    return root


@pytest.fixture
def resolver(audio_dir: Path) -> TrackResolver:
    return TrackResolver(audio_dir, noises_folder="noises")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_player(resolver: TrackResolver, clock: FakeClock):
    """Factory for GuildPlayers wired to fakes."""
    durations = DurationCache(probe=lambda path: TRACK_LENGTHS.get(path.name, 0.0))

    def factory(guild_id: int = GUILD_ID, **kwargs) -> GuildPlayer:
        kwargs.setdefault("voice", FakeVoice())
        kwargs.setdefault("transcoder", FakeTranscoder())
        kwargs.setdefault("mixer", FakeMixer())
        return GuildPlayer(
            guild_id,
            resolver=resolver,
            durations=durations,
            now=clock,
            **kwargs,
        )

    return factory


@pytest.fixture
def player(make_player) -> GuildPlayer:
    return make_player()


@pytest.fixture
def channel_a():
    return fake_channel(CHANNEL_A)


@pytest.fixture
def channel_b():
    return fake_channel(CHANNEL_B)


@pytest.fixture
def channels(channel_a, channel_b) -> Dict[int, SimpleNamespace]:
    return {CHANNEL_A: channel_a, CHANNEL_B: channel_b}
