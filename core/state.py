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
Playback State Machine

IDLE -> CONNECTING -> PLAYING <-> PAUSED -> IDLE, plus NOISE which is only
entered from PLAYING (an interrupt track mixed over the main track) and always
ends back in IDLE.

TRANSITIONS holds an entry for every (state, event) pair. None marks a pair
that is not allowed.
"""

from enum import Enum
from typing import Dict, Optional, Tuple

from core.errors import InvalidTransition


class PlaybackState(Enum):
    """
    Current state of a guild's playback.

    IDLE: Nothing loaded (may or may not be connected to voice)
    CONNECTING: A play request is joining voice / spawning its stream
    PLAYING: A main track is streaming
    PAUSED: A main track is loaded but halted
    NOISE: An interrupt track is mixed over the main track
    """
    IDLE = 0
    CONNECTING = 1
    PLAYING = 2
    PAUSED = 3
    NOISE = 4


class PlaybackMode(Enum):
    """What the active stream carries."""
    MAIN = "main"
    NOISE = "noise"


class PlaybackEvent(Enum):
    PLAY = "play"
    STARTED = "started"
    START_FAILED = "start_failed"
    PAUSE = "pause"
    RESUME = "resume"
    SEEK = "seek"
    OVERLAY = "overlay"
    REPEAT = "repeat"
    TRACK_ENDED = "track_ended"
    STOP = "stop"
    DISCONNECT = "disconnect"
    TRANSPORT_ERROR = "transport_error"


S = PlaybackState
E = PlaybackEvent

_ALLOWED: Dict[Tuple[PlaybackState, PlaybackEvent], PlaybackState] = {
    (S.IDLE, E.PLAY): S.CONNECTING,
    (S.CONNECTING, E.STARTED): S.PLAYING,
    (S.CONNECTING, E.START_FAILED): S.IDLE,
    (S.PLAYING, E.PAUSE): S.PAUSED,
    (S.PAUSED, E.RESUME): S.PLAYING,
    (S.PLAYING, E.SEEK): S.PLAYING,
    (S.PAUSED, E.SEEK): S.PAUSED,
    (S.PLAYING, E.OVERLAY): S.NOISE,
    (S.PLAYING, E.REPEAT): S.PLAYING,
    (S.PLAYING, E.TRACK_ENDED): S.IDLE,
    (S.NOISE, E.TRACK_ENDED): S.IDLE,
}

# Teardown events are valid from anywhere (stop/disconnect are idempotent)
for _state in PlaybackState:
    for _event in (E.STOP, E.DISCONNECT, E.TRANSPORT_ERROR):
        _ALLOWED[(_state, _event)] = S.IDLE

TRANSITIONS: Dict[Tuple[PlaybackState, PlaybackEvent], Optional[PlaybackState]] = {
    (state, event): _ALLOWED.get((state, event))
    for state in PlaybackState
    for event in PlaybackEvent
}

del S, E, _state, _event


def can_transition(state: PlaybackState, event: PlaybackEvent) -> bool:
    return TRANSITIONS[(state, event)] is not None


def next_state(state: PlaybackState, event: PlaybackEvent) -> PlaybackState:
    """
    Look up the state reached from `state` on `event`.

    Raises:
        InvalidTransition: if the pair is not allowed
    """
    target = TRANSITIONS[(state, event)]
    if target is None:
        raise InvalidTransition(state, event)
    return target
