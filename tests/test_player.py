"""Tests for the per-guild playback engine."""

import asyncio

import pytest

from conftest import CHANNEL_B, FakeVoice
from core.errors import InvalidTrackReference, InvalidTransition, NoActiveSession, VoiceConnectionError
from core.player import GuildPlayer, PlayerRegistry
from core.state import PlaybackMode, PlaybackState
from utils.state import StateManager


class TestPlay:
    """Starting tracks."""

    @pytest.mark.asyncio
    async def test_play_starts_track(self, player, channel_a) -> None:
        started = await player.play("a.mp3", channel_a)

        assert started is True
        assert player.state is PlaybackState.PLAYING
        assert player.mode is PlaybackMode.MAIN
        assert player.track == "a.mp3"
        assert player.voice.channel_id == channel_a.id
        assert player.voice.source is player.source
        assert player.transcoder.calls == [("a.mp3", 0.0, 0.5)]

    @pytest.mark.asyncio
    async def test_play_replaces_active_track(self, player, channel_a) -> None:
        await player.play("a.mp3", channel_a)
        first = player.source

        await player.play("b.mp3", channel_a)

        assert first.cleaned
        assert player.track == "b.mp3"
        assert player.state is PlaybackState.PLAYING

    @pytest.mark.asyncio
    async def test_invalid_reference_rejected_before_engine(self, player, channel_a) -> None:
        with pytest.raises(InvalidTrackReference):
            await player.play("../secret.mp3", channel_a)

        assert not player.voice.is_connected()
        assert player.state is PlaybackState.IDLE

    @pytest.mark.asyncio
    async def test_missing_file_returns_false(self, player, channel_a) -> None:
        assert await player.play("nope.mp3", channel_a) is False
        assert player.state is PlaybackState.IDLE

    @pytest.mark.asyncio
    async def test_spawn_failure_returns_false(self, player, channel_a) -> None:
        player.transcoder.fail = True

        assert await player.play("a.mp3", channel_a) is False
        assert player.state is PlaybackState.IDLE
        assert player.track is None

    @pytest.mark.asyncio
    async def test_connection_failure_tears_down(self, player, channel_a) -> None:
        player.voice.fail_connect = True
        player.toggle_repeat()

        with pytest.raises(VoiceConnectionError):
            await player.play("a.mp3", channel_a)

        assert player.state is PlaybackState.IDLE
        assert player.repeat is False

    @pytest.mark.asyncio
    async def test_uses_current_volume(self, player, channel_a) -> None:
        await player.set_volume(0.25)
        await player.play("a.mp3", channel_a)

        assert player.source.volume == 0.25


class TestPauseResume:
    """Clock arithmetic through pause and resume."""

    @pytest.mark.asyncio
    async def test_pause_then_resume_scenario(self, player, channel_a, clock) -> None:
        await player.play("a.mp3", channel_a)
        clock.advance(3)

        assert await player.pause() is True
        info = await player.now_playing()
        assert info.elapsed == 3.0
        assert info.paused is True
        assert player.voice.paused

        clock.advance(30)  # time spent paused does not count
        assert await player.resume() is False
        clock.advance(2)

        info = await player.now_playing()
        assert info.elapsed == pytest.approx(5.0)
        assert info.paused is False
        assert info.duration == 10.0
        assert info.track == "a"

    @pytest.mark.asyncio
    async def test_pause_resume_keeps_elapsed(self, player, channel_a, clock) -> None:
        await player.play("a.mp3", channel_a)
        clock.advance(4.2)
        await player.pause()
        await player.resume()

        assert (await player.now_playing()).elapsed == pytest.approx(4.2)

    @pytest.mark.asyncio
    async def test_toggle_pause(self, player, channel_a) -> None:
        await player.play("a.mp3", channel_a)

        assert await player.toggle_pause() is True
        assert await player.toggle_pause() is False

    @pytest.mark.asyncio
    async def test_pause_without_track(self, player) -> None:
        with pytest.raises(NoActiveSession):
            await player.pause()

    @pytest.mark.asyncio
    async def test_resume_while_playing_rejected(self, player, channel_a) -> None:
        await player.play("a.mp3", channel_a)

        with pytest.raises(InvalidTransition):
            await player.resume()

    @pytest.mark.asyncio
    async def test_elapsed_capped_at_duration(self, player, channel_a, clock) -> None:
        await player.play("a.mp3", channel_a)
        clock.advance(50)

        assert (await player.now_playing()).elapsed == 10.0


class TestSeek:
    """Seek via re-transcode."""

    @pytest.mark.asyncio
    async def test_seek_while_playing(self, player, channel_a, clock) -> None:
        await player.play("a.mp3", channel_a)
        old = player.source
        clock.advance(1)

        assert await player.seek(6) is True
        clock.advance(1)

        assert (await player.now_playing()).elapsed == pytest.approx(7.0)
        assert player.transcoder.calls[-1] == ("a.mp3", 6.0, 0.5)
        assert old.cleaned
        assert player.voice.source is player.source

    @pytest.mark.asyncio
    async def test_seek_while_paused(self, player, channel_a, clock) -> None:
        await player.play("a.mp3", channel_a)
        clock.advance(4)
        await player.pause()

        assert await player.seek(7) is True
        clock.advance(5)

        info = await player.now_playing()
        assert info.elapsed == pytest.approx(7.0)
        assert info.paused is True
        assert player.state is PlaybackState.PAUSED

    @pytest.mark.asyncio
    async def test_seek_clamped_to_duration(self, player, channel_a) -> None:
        await player.play("a.mp3", channel_a)

        await player.seek(99)

        assert player.transcoder.calls[-1][1] == 10.0
        assert (await player.now_playing()).elapsed == 10.0

    @pytest.mark.asyncio
    async def test_unprobeable_track_pins_elapsed_to_zero(self, player, channel_a, audio_dir, clock) -> None:
        (audio_dir / "c.mp3").write_bytes(b"not audio")
        await player.play("c.mp3", channel_a)
        clock.advance(5)

        info = await player.now_playing()
        assert (info.elapsed, info.duration) == (0.0, 0.0)

        assert await player.seek(3) is True
        assert player.transcoder.calls[-1][1] == 0.0
        clock.advance(2)
        assert (await player.now_playing()).elapsed == 0.0

    @pytest.mark.asyncio
    async def test_seek_spawn_failure_leaves_playback(self, player, channel_a, clock) -> None:
        await player.play("a.mp3", channel_a)
        source = player.source
        clock.advance(2)
        player.transcoder.fail = True

        assert await player.seek(8) is False
        assert player.source is source
        assert not source.cleaned
        assert player.state is PlaybackState.PLAYING
        assert (await player.now_playing()).elapsed == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_seek_without_track(self, player) -> None:
        with pytest.raises(NoActiveSession):
            await player.seek(3)


class TestOverlay:
    """Interrupt tracks mixed over the main track."""

    @pytest.mark.asyncio
    async def test_overlay_mixes_from_current_position(self, player, channel_a, clock) -> None:
        await player.play("a.mp3", channel_a)
        main = player.source
        clock.advance(2.5)

        assert await player.play("noises/horn.mp3", channel_a) is True

        assert player.state is PlaybackState.NOISE
        assert player.mode is PlaybackMode.NOISE
        assert player.mixer.calls == [("a.mp3", 2.5, "horn.mp3")]
        assert player.track == "a.mp3"
        assert main.cleaned

    @pytest.mark.asyncio
    async def test_overlay_end_tears_down_every_time(self, player, channel_a, clock) -> None:
        for _ in range(3):
            await player.play("a.mp3", channel_a)
            clock.advance(1)
            await player.play("noises/horn.mp3", channel_a)
            assert player.state is PlaybackState.NOISE

            await player.handle_track_end(player.session, None)

            assert player.state is PlaybackState.IDLE
            assert player.track is None
            assert player.voice.is_connected()

        assert len(player.transcoder.calls) == 3

    @pytest.mark.asyncio
    async def test_interrupt_when_idle_plays_normally(self, player, channel_a) -> None:
        await player.play("noises/horn.mp3", channel_a)

        assert player.state is PlaybackState.PLAYING
        assert player.mixer.calls == []

    @pytest.mark.asyncio
    async def test_pause_and_seek_rejected_while_mixing(self, player, channel_a) -> None:
        await player.play("a.mp3", channel_a)
        await player.play("noises/horn.mp3", channel_a)

        with pytest.raises(InvalidTransition):
            await player.pause()
        with pytest.raises(InvalidTransition):
            await player.seek(1)

    @pytest.mark.asyncio
    async def test_mix_failure_keeps_main_track(self, player, channel_a) -> None:
        await player.play("a.mp3", channel_a)
        player.mixer.fail = True

        assert await player.play("noises/horn.mp3", channel_a) is False
        assert player.state is PlaybackState.PLAYING
        assert player.track == "a.mp3"


class TestTrackEnd:
    """End-of-track handling."""

    @pytest.mark.asyncio
    async def test_stale_callback_ignored(self, player, channel_a) -> None:
        await player.play("a.mp3", channel_a)
        stale = player.session
        await player.play("b.mp3", channel_a)

        await player.handle_track_end(stale, None)

        assert stale.cancelled
        assert player.track == "b.mp3"
        assert player.state is PlaybackState.PLAYING

    @pytest.mark.asyncio
    async def test_advances_queue(self, player, channel_a) -> None:
        await player.play("a.mp3", channel_a)
        player.queue_add("b.mp3")

        await player.handle_track_end(player.session, None)

        assert player.track == "b.mp3"
        assert player.queue_snapshot() == []

    @pytest.mark.asyncio
    async def test_queue_exhausted_keeps_connection(self, player, channel_a) -> None:
        await player.play("a.mp3", channel_a)

        await player.handle_track_end(player.session, None)

        assert player.state is PlaybackState.IDLE
        assert player.source is None
        assert player.voice.is_connected()

    @pytest.mark.asyncio
    async def test_repeat_replays_track(self, player, channel_a, clock) -> None:
        await player.play("a.mp3", channel_a)
        first_session = player.session
        player.queue_add("b.mp3")
        player.toggle_repeat()
        clock.advance(10)

        await player.handle_track_end(first_session, None)

        assert player.track == "a.mp3"
        assert player.session is not first_session
        assert player.queue_snapshot() == ["b.mp3"]
        assert (await player.now_playing()).elapsed == 0.0
        assert len(player.transcoder.calls) == 2

    @pytest.mark.asyncio
    async def test_stream_error_tears_down_everything(self, player, channel_a) -> None:
        await player.play("a.mp3", channel_a)
        player.toggle_repeat()

        await player.handle_track_end(player.session, RuntimeError("socket closed"))

        assert player.state is PlaybackState.IDLE
        assert not player.voice.is_connected()
        assert player.repeat is False

    @pytest.mark.asyncio
    async def test_stop_wins_over_pending_advance(self, player, channel_a) -> None:
        await player.play("a.mp3", channel_a)
        player.queue_add("b.mp3")
        session = player.session
        after = player.voice.after

        assert await player.stop() is True
        await asyncio.to_thread(after, None)
        await player.handle_track_end(session, None)

        assert session.cancelled
        assert player.state is PlaybackState.IDLE
        assert player.track is None
        assert player.queue_snapshot() == ["b.mp3"]
        assert player.transcoder.calls == [("a.mp3", 0.0, 0.5)]


class TestStopAndVolume:

    @pytest.mark.asyncio
    async def test_stop_without_session_is_noop(self, player) -> None:
        assert await player.stop() is False
        assert await player.stop() is False

    @pytest.mark.asyncio
    async def test_stop_releases_source(self, player, channel_a) -> None:
        await player.play("a.mp3", channel_a)
        source = player.source

        assert await player.stop() is True
        assert source.cleaned
        assert player.state is PlaybackState.IDLE
        assert player.voice.is_connected()
        assert await player.stop() is False

    @pytest.mark.asyncio
    async def test_volume_applies_live_and_persists(self, make_player, channel_a, tmp_path) -> None:
        store = StateManager(tmp_path / "data")
        player = make_player(store=store)
        await player.play("a.mp3", channel_a)

        assert await player.set_volume(0.8) == 0.8

        assert player.source.volume == 0.8
        assert player.get_volume() == 0.8
        assert store.get_volume(player.guild_id) == 0.8
        assert (tmp_path / "data" / "state.json").exists()

    @pytest.mark.asyncio
    async def test_volume_out_of_range(self, player) -> None:
        with pytest.raises(ValueError):
            await player.set_volume(1.5)
        assert player.get_volume() == 0.5

    def test_toggle_repeat_twice(self, player) -> None:
        original = player.repeat_status
        player.toggle_repeat()
        player.toggle_repeat()
        assert player.repeat_status == original


class TestQueueOps:

    @pytest.mark.asyncio
    async def test_play_next_on_empty_queue(self, player) -> None:
        assert await player.play_next() is False
        assert player.state is PlaybackState.IDLE

    @pytest.mark.asyncio
    async def test_play_next_discards_unplayable(self, player, channel_a) -> None:
        player.queue_set(["gone.mp3", "b.mp3", "a.mp3"])

        assert await player.play_next(channel_a) is True

        assert player.track == "b.mp3"
        assert player.queue_snapshot() == ["a.mp3"]

    @pytest.mark.asyncio
    async def test_play_next_all_unplayable(self, player, channel_a) -> None:
        player.queue_set(["gone.mp3", "missing.mp3"])

        assert await player.play_next(channel_a) is False
        assert player.queue_snapshot() == []

    def test_queue_set_rejects_whole_list(self, player) -> None:
        player.queue_set(["a.mp3"])

        with pytest.raises(InvalidTrackReference):
            player.queue_set(["b.mp3", "../../etc/passwd.mp3"])

        assert player.queue_snapshot() == ["a.mp3"]

    @pytest.mark.asyncio
    async def test_queue_entries_never_overlay(self, player, channel_a) -> None:
        await player.play("a.mp3", channel_a)
        player.queue_add("noises/horn.mp3")

        await player.handle_track_end(player.session, None)

        assert player.state is PlaybackState.PLAYING
        assert player.track == "noises/horn.mp3"
        assert player.mixer.calls == []

    @pytest.mark.asyncio
    async def test_start_queue_leaves_active_track_alone(self, player, channel_a) -> None:
        await player.play("a.mp3", channel_a)
        player.queue_add("b.mp3")

        assert await player.start_queue(channel_a) is False

        assert player.track == "a.mp3"
        assert player.queue_snapshot() == ["b.mp3"]

    @pytest.mark.asyncio
    async def test_start_queue_nothing_playable(self, player, channel_a) -> None:
        with pytest.raises(NoActiveSession):
            await player.start_queue(channel_a)

        player.queue_set(["gone.mp3"])
        with pytest.raises(NoActiveSession):
            await player.start_queue(channel_a)
        assert player.state is PlaybackState.IDLE

    @pytest.mark.asyncio
    async def test_skip_stops_when_exhausted(self, player, channel_a) -> None:
        await player.play("a.mp3", channel_a)

        assert await player.skip() is False
        assert player.state is PlaybackState.IDLE


class TestConnection:

    @pytest.mark.asyncio
    async def test_switch_to_same_channel_is_noop(self, player, channel_a) -> None:
        await player.play("a.mp3", channel_a)

        assert await player.switch_channel(channel_a) is False

    @pytest.mark.asyncio
    async def test_switch_moves_without_restarting(self, player, channel_a, channel_b) -> None:
        await player.play("a.mp3", channel_a)
        source = player.source

        assert await player.switch_channel(channel_b) is True

        assert player.voice.channel_id == CHANNEL_B
        assert player.source is source
        assert player.state is PlaybackState.PLAYING

    @pytest.mark.asyncio
    async def test_rejoin_restarts_at_current_position(self, player, channel_a, channel_b, clock) -> None:
        await player.play("a.mp3", channel_a)
        clock.advance(4)
        player.voice.connected = False  # connection dropped underneath us

        assert await player.switch_channel(channel_b) is True

        assert player.transcoder.calls[-1] == ("a.mp3", 4.0, 0.5)
        assert player.state is PlaybackState.PLAYING
        assert (await player.now_playing()).elapsed == pytest.approx(4.0)

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, player, channel_a) -> None:
        await player.play("a.mp3", channel_a)
        player.toggle_repeat()

        assert await player.disconnect() is True
        assert not player.voice.is_connected()
        assert player.repeat is False
        assert await player.disconnect() is False


class TestWatchdogCheck:

    @pytest.mark.asyncio
    async def test_hung_stream_torn_down(self, player, channel_a, clock) -> None:
        await player.play("a.mp3", channel_a)
        source = player.source
        clock.advance(16)

        assert await player.check_hung(grace=5) is True
        assert source.cleaned
        assert player.state is PlaybackState.IDLE

    @pytest.mark.asyncio
    async def test_stream_within_grace_kept(self, player, channel_a, clock) -> None:
        await player.play("a.mp3", channel_a)
        clock.advance(12)

        assert await player.check_hung(grace=5) is False
        assert player.state is PlaybackState.PLAYING

    @pytest.mark.asyncio
    async def test_paused_stream_never_hung(self, player, channel_a, clock) -> None:
        await player.play("a.mp3", channel_a)
        await player.pause()
        clock.advance(600)

        assert await player.check_hung(grace=5) is False


class TestRegistry:

    @pytest.mark.asyncio
    async def test_get_player_is_lazy_and_stable(self, make_player) -> None:
        registry = PlayerRegistry(make_player)

        assert registry.get(1) is None
        players = await asyncio.gather(*(registry.get_player(1) for _ in range(5)))

        assert all(p is players[0] for p in players)
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_remove_disconnects(self, make_player, channel_a) -> None:
        registry = PlayerRegistry(make_player)
        player = await registry.get_player(channel_a.guild.id)
        await player.play("a.mp3", channel_a)

        assert await registry.remove(channel_a.guild.id) is True

        assert not player.voice.is_connected()
        assert channel_a.guild.id not in registry
        assert await registry.remove(channel_a.guild.id) is False

    @pytest.mark.asyncio
    async def test_shutdown_empties_registry(self, make_player) -> None:
        registry = PlayerRegistry(lambda gid: make_player(gid, voice=FakeVoice()))
        await registry.get_player(1)
        await registry.get_player(2)

        await registry.shutdown()

        assert len(registry) == 0

    def test_players_are_independent(self, make_player) -> None:
        first: GuildPlayer = make_player(1)
        second: GuildPlayer = make_player(2)

        first.queue_add("a.mp3")

        assert second.queue_snapshot() == []
