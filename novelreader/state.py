"""Playback states and the pure transition function of the player.

The narration player is driven by callbacks: the audio output reports
that a chunk started, paused or ended; the fetcher resolves, fails or
is aborted; the fallback synthesizer finishes or errors. Each of these
events is a :class:`Trigger`, and :func:`transition` maps the current
state plus a trigger to the next state without touching anything else.
Keeping the mapping pure lets the player's side effects (fetching,
binding audio, persisting progress) live elsewhere and keeps the state
rules testable on their own.
"""

from __future__ import annotations

from enum import Enum


class PlaybackState(str, Enum):
    STOPPED = "stopped"
    LOADING = "loading"
    PLAYING = "playing"
    PAUSED = "paused"


class Trigger(str, Enum):
    FETCH_STARTED = "fetch_started"
    FETCH_RESOLVED = "fetch_resolved"
    FETCH_ABORTED = "fetch_aborted"
    FETCH_FAILED = "fetch_failed"
    SURFACE_PLAYING = "surface_playing"
    SURFACE_PAUSED = "surface_paused"
    CHUNK_ENDED = "chunk_ended"
    CHUNK_ERROR = "chunk_error"
    FALLBACK_STARTED = "fallback_started"
    FALLBACK_FAILED = "fallback_failed"
    QUEUE_EXHAUSTED = "queue_exhausted"
    STOP_REQUESTED = "stop_requested"


_TERMINAL_TRIGGERS = {
    Trigger.STOP_REQUESTED,
    Trigger.QUEUE_EXHAUSTED,
    Trigger.FALLBACK_FAILED,
}


def transition(state: PlaybackState, trigger: Trigger) -> PlaybackState:
    """Return the state that follows ``state`` when ``trigger`` fires.

    Triggers that carry no state change of their own (a resolved fetch,
    an ended chunk that is followed by the next one, a surface error
    that is followed by a fallback attempt) return ``state`` unchanged;
    the follow-up trigger decides. An aborted primary fetch never
    leaves the player in ``loading``.
    """
    if trigger in _TERMINAL_TRIGGERS:
        return PlaybackState.STOPPED
    if trigger is Trigger.FETCH_STARTED:
        return PlaybackState.LOADING
    if trigger is Trigger.FETCH_ABORTED:
        return PlaybackState.STOPPED if state is PlaybackState.LOADING else state
    if trigger is Trigger.FALLBACK_STARTED:
        return PlaybackState.PLAYING
    if trigger is Trigger.SURFACE_PLAYING:
        return state if state is PlaybackState.STOPPED else PlaybackState.PLAYING
    if trigger is Trigger.SURFACE_PAUSED:
        return state if state is PlaybackState.STOPPED else PlaybackState.PAUSED
    return state
