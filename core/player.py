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
Guild Player - Per-Guild Playback Engine

Drives one guild's playback: the state machine, the active ffmpeg stream, the
playback clock and the track queue. Uses composition to delegate to:

- VoiceManager: voice connection and the disnake audio player
- SeekTranscoder / OverlayMixer: ffmpeg streams
- TrackResolver / DurationCache: track validation and lengths

Every mutating operation runs under the player's lock, including the
end-of-track callback which disnake fires from its audio thread.
"""

import asyncio
from time import monotonic as _now
import logging
from typing import Callable, Dict, Iterable, List, Optional

from core.clock import PlaybackClock
from core.errors import (
    InvalidTrackReference,
    NoActiveSession,
    TranscodeSpawnFailure,
    VoiceConnectionError,
)
from core.playback import NowPlaying, PlaybackSession, make_after_callback
from core.queue import TrackQueue
from core.state import PlaybackEvent, PlaybackMode, PlaybackState, can_transition, next_state
from core.track import display_name
from core.transcode import release_source
from systems.voice_manager import ConnectResult
from utils.context_managers import released_on_error, suppress_callbacks

logger = logging.getLogger(__name__)


class GuildPlayer:
    """
    Playback session for one guild.

    Attributes:
        guild_id: Discord guild ID
        voice: VoiceManager (or anything with the same interface)
        state: Current PlaybackState
        source: Active volume-wrapped stream, or None
        track: Main track reference being played, or None
        clock: PlaybackClock for the main track
        volume: Playback volume (0.0 - 1.0)
        repeat: Replay the same track when it ends
        queue: Pending track references
    """

    def __init__(self, guild_id: int, *, voice, resolver, transcoder, mixer, durations,
                 volume: float = 0.5, store=None, now: Callable[[], float] = _now):
        self.guild_id = guild_id

        # =====================================================================
        # DELEGATE SYSTEMS (Composition Pattern)
        # =====================================================================
        self.voice = voice
        self.resolver = resolver
        self.transcoder = transcoder
        self.mixer = mixer
        self.durations = durations
        self.store = store
        self._now = now

        # =====================================================================
        # PLAYBACK STATE
        # =====================================================================
        self.state = PlaybackState.IDLE
        self.source = None
        self.track: Optional[str] = None
        self.clock = PlaybackClock()
        self.volume = volume
        self.repeat = False
        self.queue = TrackQueue()

        # =====================================================================
        # RACE CONDITION FLAGS
        # =====================================================================
        self._lock = asyncio.Lock()
        # Session token used by playback.py to discard superseded callbacks.
        self._session: Optional[PlaybackSession] = None

    # =========================================================================
    # Read-only Views
    # =========================================================================

    @property
    def mode(self) -> Optional[PlaybackMode]:
        if self.state is PlaybackState.NOISE:
            return PlaybackMode.NOISE
        if self.state in (PlaybackState.PLAYING, PlaybackState.PAUSED):
            return PlaybackMode.MAIN
        return None

    @property
    def paused(self) -> bool:
        return self.state is PlaybackState.PAUSED

    @property
    def session(self) -> Optional[PlaybackSession]:
        return self._session

    @property
    def repeat_status(self) -> bool:
        return self.repeat

    def get_volume(self) -> float:
        return self.volume

    def is_active(self) -> bool:
        """True while a track is loaded (playing, paused or mixed)."""
        return self.track is not None and self.state is not PlaybackState.IDLE

    def cancel_active_session(self):
        """Invalidate the current playback session token.

        Any manual stop, seek replacement or teardown must cancel the session
        so lingering callbacks from the old stream exit without touching
        player state.
        """
        if self._session is not None:
            self._session.cancel()
        self._session = None

    # =========================================================================
    # Playback
    # =========================================================================

    async def play(self, track, channel) -> bool:
        """
        Play `track` in `channel`, replacing whatever is active.

        Interrupt tracks are mixed over the current track instead when a main
        track is playing.

        Returns:
            True if the track started, False if the file is missing or ffmpeg
            could not be spawned

        Raises:
            InvalidTrackReference: before anything else is touched
            VoiceConnectionError: after tearing the session down
        """
        track = self.resolver.normalize(track)
        async with self._lock:
            return await self._play(track, channel)

    async def _play(self, track: str, channel=None, overlay: bool = True) -> bool:
        if overlay and self.state is PlaybackState.PLAYING and self.resolver.is_noise(track):
            return await self._overlay(track)

        path = self.resolver.resolve(track)
        if not path.is_file():
            logger.warning(f"Guild {self.guild_id}: Track file missing: {track}")
            return False

        if self.state is not PlaybackState.IDLE:
            self._teardown_player(PlaybackEvent.STOP)

        self.state = next_state(self.state, PlaybackEvent.PLAY)
        try:
            await self.voice.connect(channel)
        except VoiceConnectionError:
            await self._teardown_all(PlaybackEvent.TRANSPORT_ERROR)
            raise

        try:
            source = self.transcoder.open(path, volume=self.volume)
        except TranscodeSpawnFailure as e:
            logger.error(f"Guild {self.guild_id}: Could not start {track}: {e}")
            self.state = next_state(self.state, PlaybackEvent.START_FAILED)
            return False

        try:
            self._start(track, source, PlaybackEvent.STARTED)
        except VoiceConnectionError:
            await self._teardown_all(PlaybackEvent.TRANSPORT_ERROR)
            raise

        await self.durations.get(track, path)
        logger.info(f"Guild {self.guild_id}: Now playing {display_name(track)}")
        return True

    def _start(self, track: str, source, event: Optional[PlaybackEvent]):
        """Hand `source` to the voice client under a fresh session token."""
        self.cancel_active_session()
        session = PlaybackSession(track=track)
        self._session = session
        try:
            with released_on_error(source):
                self.voice.play(source, make_after_callback(self, session, asyncio.get_running_loop()))
        except VoiceConnectionError:
            self._session = None
            raise

        self.source = source
        self.track = track
        self.clock = PlaybackClock.started(self._now())
        if event is not None:
            self.state = next_state(self.state, event)

    async def _overlay(self, track: str) -> bool:
        """Mix interrupt `track` over the main track from its current position."""
        overlay_path = self.resolver.resolve(track)
        if not overlay_path.is_file():
            logger.warning(f"Guild {self.guild_id}: Interrupt file missing: {track}")
            return False

        main_path = self.resolver.resolve(self.track)
        offset = self._elapsed()
        try:
            source = self.mixer.mix(main_path, offset, overlay_path, volume=self.volume)
        except TranscodeSpawnFailure as e:
            logger.error(f"Guild {self.guild_id}: Could not mix {track}: {e}")
            return False

        self._replace_source(source)
        self.state = next_state(self.state, PlaybackEvent.OVERLAY)
        logger.info(f"Guild {self.guild_id}: Mixing {display_name(track)} over {display_name(self.track)}")
        return True

    def _replace_source(self, source):
        """
        Swap the stream under the running audio player and kill the old one.

        The session token is kept: the audio player (and its after-callback)
        survives the swap.
        """
        with released_on_error(source):
            old = self.voice.swap(source)
        self.source = source
        release_source(old)

    # =========================================================================
    # End of Track
    # =========================================================================

    async def handle_track_end(self, session: PlaybackSession, error: Optional[Exception] = None):
        """
        React to the voice client finishing a stream.

        Scheduled on the loop by the after-callback built in playback.py.
        """
        async with self._lock:
            if session.cancelled or session is not self._session:
                logger.debug(f"Guild {self.guild_id}: Ignoring stale track-end for session {session.id}")
                return

            if error is not None:
                logger.warning(f"Guild {self.guild_id}: Stream failed, tearing down: {error}")
                await self._teardown_all(PlaybackEvent.TRANSPORT_ERROR)
                return

            if self.state is PlaybackState.NOISE:
                # Mixed stream ended: the main track is not resumed
                self._teardown_player(PlaybackEvent.TRACK_ENDED)
                return

            if self.state is not PlaybackState.PLAYING:
                self._teardown_player(PlaybackEvent.STOP)
                return

            try:
                if self.repeat:
                    if not await self._repeat():
                        self._teardown_player(PlaybackEvent.TRACK_ENDED)
                    return

                if await self._play_next():
                    return
            except VoiceConnectionError as e:
                logger.warning(f"Guild {self.guild_id}: Voice lost while advancing: {e}")
                return

            logger.debug(f"Guild {self.guild_id}: Queue exhausted")
            self._teardown_player(
                PlaybackEvent.TRACK_ENDED
                if can_transition(self.state, PlaybackEvent.TRACK_ENDED)
                else PlaybackEvent.STOP
            )

    async def _repeat(self) -> bool:
        track = self.track
        path = self.resolver.resolve(track)
        if not path.is_file():
            logger.warning(f"Guild {self.guild_id}: Repeat track vanished: {track}")
            return False
        try:
            source = self.transcoder.open(path, volume=self.volume)
        except TranscodeSpawnFailure as e:
            logger.error(f"Guild {self.guild_id}: Could not repeat {track}: {e}")
            return False

        release_source(self.source)
        try:
            self._start(track, source, PlaybackEvent.REPEAT)
        except VoiceConnectionError:
            await self._teardown_all(PlaybackEvent.TRANSPORT_ERROR)
            raise
        logger.debug(f"Guild {self.guild_id}: Repeating {display_name(track)}")
        return True

    async def _play_next(self, channel=None) -> bool:
        while True:
            track = self.queue.pop_next()
            if track is None:
                return False
            try:
                if await self._play(track, channel, overlay=False):
                    return True
            except InvalidTrackReference as e:
                logger.warning(f"Guild {self.guild_id}: Dropping queue entry: {e}")
            logger.debug(f"Guild {self.guild_id}: Skipped unplayable queue entry {track}")

    # =========================================================================
    # Transport Controls
    # =========================================================================

    async def pause(self) -> bool:
        """
        Pause the main track.

        Returns:
            The new paused flag (True)

        Raises:
            NoActiveSession: nothing loaded
            InvalidTransition: not playing (already paused, or mixing)
        """
        async with self._lock:
            self._require_track()
            self.state = next_state(self.state, PlaybackEvent.PAUSE)
            self.voice.pause()
            self.clock = self.clock.pause(self._now())
            logger.debug(f"Guild {self.guild_id}: Paused")
            return self.paused

    async def resume(self) -> bool:
        """Resume a paused track. Returns the new paused flag (False)."""
        async with self._lock:
            self._require_track()
            self.state = next_state(self.state, PlaybackEvent.RESUME)
            self.voice.resume()
            self.clock = self.clock.resume(self._now())
            logger.debug(f"Guild {self.guild_id}: Resumed")
            return self.paused

    async def toggle_pause(self) -> bool:
        if self.state is PlaybackState.PAUSED:
            return await self.resume()
        return await self.pause()

    async def stop(self) -> bool:
        """
        Tear down the player and the current track. The connection stays.

        Returns:
            False when nothing was active (no-op)
        """
        async with self._lock:
            if self.state is PlaybackState.IDLE and self.source is None:
                return False
            self._teardown_player(PlaybackEvent.STOP)
            logger.info(f"Guild {self.guild_id}: Stopped")
            return True

    async def seek(self, offset: float) -> bool:
        """
        Restart the main track at `offset` seconds via a fresh transcode.

        Returns:
            False if ffmpeg could not be spawned (playback untouched)

        Raises:
            NoActiveSession: nothing loaded
            InvalidTransition: mixing an interrupt track
        """
        async with self._lock:
            self._require_track()
            target = next_state(self.state, PlaybackEvent.SEEK)

            path = self.resolver.resolve(self.track)
            duration = await self.durations.get(self.track, path)
            offset = min(max(0.0, float(offset)), duration)

            try:
                source = self.transcoder.open(path, offset=offset, volume=self.volume)
            except TranscodeSpawnFailure as e:
                logger.error(f"Guild {self.guild_id}: Seek failed: {e}")
                return False

            try:
                self._replace_source(source)
            except VoiceConnectionError:
                await self._teardown_all(PlaybackEvent.TRANSPORT_ERROR)
                raise

            self.clock = self.clock.seek(offset, self._now())
            self.state = target
            logger.debug(f"Guild {self.guild_id}: Seeked to {offset:.1f}s")
            return True

    async def set_volume(self, volume: float) -> float:
        """
        Set live volume and remember it for this guild.

        Raises:
            ValueError: volume outside 0.0 - 1.0
        """
        volume = float(volume)
        if not 0.0 <= volume <= 1.0:
            raise ValueError(f"volume must be between 0 and 1, got {volume}")

        self.volume = volume
        if self.source is not None:
            self.source.volume = volume
        if self.store is not None:
            self.store.set_volume(self.guild_id, volume)
            await self.store.save()
        return volume

    def toggle_repeat(self) -> bool:
        self.repeat = not self.repeat
        logger.debug(f"Guild {self.guild_id}: Repeat {'on' if self.repeat else 'off'}")
        return self.repeat

    async def now_playing(self) -> NowPlaying:
        if self.track is None:
            return NowPlaying()

        duration = await self.durations.get(self.track, self.resolver.resolve(self.track))
        return NowPlaying(
            track=display_name(self.track),
            elapsed=round(self._elapsed(duration), 1),
            duration=round(duration, 1),
            paused=self.paused,
        )

    # =========================================================================
    # Connection
    # =========================================================================

    async def switch_channel(self, channel) -> bool:
        """
        Bind the connection to `channel`.

        Moving keeps audio flowing. A fresh join (connection was lost) starts
        the active track again from its current position.

        Returns:
            False when already in `channel`
        """
        async with self._lock:
            try:
                result = await self.voice.connect(channel)
            except VoiceConnectionError:
                await self._teardown_all(PlaybackEvent.TRANSPORT_ERROR)
                raise

            if result is ConnectResult.JOINED and self.is_active():
                await self._resubscribe()
            return result is not ConnectResult.UNCHANGED

    async def _resubscribe(self):
        if self.state is PlaybackState.NOISE:
            self._teardown_player(PlaybackEvent.STOP)
            return

        track = self.track
        path = self.resolver.resolve(track)
        offset = self._elapsed()
        try:
            source = self.transcoder.open(path, offset=offset, volume=self.volume)
        except TranscodeSpawnFailure as e:
            logger.error(f"Guild {self.guild_id}: Could not restart {track} after rejoin: {e}")
            self._teardown_player(PlaybackEvent.STOP)
            return

        clock = self.clock
        release_source(self.source)
        try:
            self._start(track, source, None)
        except VoiceConnectionError:
            await self._teardown_all(PlaybackEvent.TRANSPORT_ERROR)
            raise
        self.clock = clock
        if self.paused:
            self.voice.pause()
        logger.info(f"Guild {self.guild_id}: Restarted {display_name(track)} at {offset:.1f}s after rejoin")

    async def disconnect(self) -> bool:
        """Full teardown including the connection. Idempotent."""
        async with self._lock:
            was_connected = self.voice.is_connected() or self.is_active()
            await self._teardown_all(PlaybackEvent.DISCONNECT)
            return was_connected

    # =========================================================================
    # Queue
    # =========================================================================

    def queue_snapshot(self) -> List[str]:
        return self.queue.snapshot()

    def queue_add(self, track) -> List[str]:
        return self.queue.add(self.resolver.normalize(track))

    def queue_set(self, tracks: Iterable) -> List[str]:
        """Replace the queue. One invalid entry rejects the whole list."""
        validated = [self.resolver.normalize(track) for track in tracks]
        return self.queue.set(validated)

    def queue_clear(self) -> List[str]:
        return self.queue.clear()

    def queue_shuffle(self) -> List[str]:
        return self.queue.shuffle()

    async def play_next(self, channel=None) -> bool:
        """
        Start the first playable queue entry.

        Returns:
            False once the queue is exhausted without starting anything
        """
        async with self._lock:
            return await self._play_next(channel)

    async def start_queue(self, channel=None) -> bool:
        """
        Start the queue unless a track is already loaded.

        Returns:
            False when something is playing or paused (left untouched)

        Raises:
            NoActiveSession: queue empty, or no entry could be started
        """
        async with self._lock:
            if self.is_active():
                return False
            if not self.queue:
                raise NoActiveSession("queue is empty")
            if not await self._play_next(channel):
                raise NoActiveSession("no playable track in the queue")
            return True

    async def skip(self, channel=None) -> bool:
        """Move on to the next queue entry, stopping when there is none."""
        async with self._lock:
            if await self._play_next(channel):
                return True
            if self.state is not PlaybackState.IDLE:
                self._teardown_player(PlaybackEvent.STOP)
            return False

    # =========================================================================
    # Watchdog
    # =========================================================================

    async def check_hung(self, grace: float) -> bool:
        """
        Tear down a stream that has outlived its track by more than `grace`.

        Returns:
            True if the player was torn down
        """
        async with self._lock:
            if self.state not in (PlaybackState.PLAYING, PlaybackState.NOISE):
                return False
            duration = self.durations.peek(self.track)
            if not duration:
                return False
            elapsed = self.clock.raw_elapsed(self._now())
            if elapsed <= duration + grace:
                return False

            logger.warning(
                f"Guild {self.guild_id}: Stream for {self.track} still running "
                f"{elapsed - duration:.1f}s past its end, killing it"
            )
            self._teardown_player(PlaybackEvent.STOP)
            return True

    # =========================================================================
    # Teardown
    # =========================================================================

    def _teardown_player(self, event: PlaybackEvent):
        """Stop the stream, kill its process and reset track and timing."""
        with suppress_callbacks(self):
            self.voice.stop()
        release_source(self.source)
        self.source = None
        self.track = None
        self.clock = PlaybackClock()
        self.state = next_state(self.state, event)

    async def _teardown_all(self, event: PlaybackEvent):
        """Player teardown plus the connection and repeat flag."""
        self._teardown_player(event)
        self.repeat = False
        await self.voice.disconnect()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_track(self):
        if self.track is None or self.state is PlaybackState.IDLE:
            raise NoActiveSession("nothing is playing")

    def _elapsed(self, duration: Optional[float] = None) -> float:
        if duration is None and self.track is not None:
            duration = self.durations.peek(self.track)
        # Not probed yet: no upper cap. A failed probe (0.0) pins elapsed to 0.
        return self.clock.elapsed(self._now(), duration)


# =============================================================================
# Player Management
# =============================================================================

class PlayerRegistry:
    """
    Explicit guild id → GuildPlayer map.

    Players are created lazily by `factory(guild_id)` and removed (with a full
    teardown) on disconnect.
    """

    def __init__(self, factory: Callable[[int], GuildPlayer]):
        self._factory = factory
        self._players: Dict[int, GuildPlayer] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._players)

    def __contains__(self, guild_id: int) -> bool:
        return guild_id in self._players

    def get(self, guild_id: int) -> Optional[GuildPlayer]:
        return self._players.get(guild_id)

    def players(self) -> List[GuildPlayer]:
        return list(self._players.values())

    async def get_player(self, guild_id: int) -> GuildPlayer:
        """Get or create the player for a guild."""
        # Fast path - no lock
        if guild_id in self._players:
            return self._players[guild_id]

        # Slow path - need lock for creation
        async with self._lock:
            # Double-check
            if guild_id in self._players:
                return self._players[guild_id]

            player = self._factory(guild_id)
            self._players[guild_id] = player
            logger.debug(f"Guild {guild_id}: Player created")

        return self._players[guild_id]

    async def remove(self, guild_id: int) -> bool:
        """Disconnect and forget a guild's player. Safe for unknown guilds."""
        async with self._lock:
            player = self._players.pop(guild_id, None)
        if player is None:
            return False
        await player.disconnect()
        logger.debug(f"Guild {guild_id}: Player removed")
        return True

    async def shutdown(self):
        """Disconnect every player (used on process exit)."""
        for guild_id in list(self._players):
            try:
                await self.remove(guild_id)
            except Exception as e:
                logger.error(f"Guild {guild_id}: Error during shutdown: {e}", exc_info=True)
