"""The playback surface and the arbiter that hands it out.

The host environment provides one audio output and one on-device
speech synthesizer. Players never own them outright: they ask the
:class:`PlaybackArbiter` for them. Acquiring the arbiter stops the
previous owner before the surface is bound to the new one, so at most
one narration is audible at any time, whichever player type started
it.

The surface reports progress through a listener (``on_playing``,
``on_paused``, ``on_ended``, ``on_error``). The arbiter is that
listener and relays each event to the current owner only, so a player
that lost ownership never hears about audio it no longer controls.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .state import PlaybackState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AudioBlob:
    """Synthesized audio bytes plus the media type the server declared."""

    data: bytes
    content_type: str = "audio/mpeg"

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class AudioResource:
    """An audio blob loaded into the output, ready to be played.

    ``handle`` is whatever the output needs to find the audio again (a
    temporary file path for the subprocess output). Resources must be
    handed back through :meth:`AudioOutput.release` once superseded.
    """

    handle: Any
    size: int = 0
    released: bool = field(default=False, compare=False)


@dataclass(frozen=True)
class Voice:
    """An entry of the on-device synthesizer's voice catalog."""

    id: str
    name: str = ""
    lang: str = ""


class PlaybackListener(Protocol):
    def on_playing(self) -> None: ...

    def on_paused(self) -> None: ...

    def on_ended(self) -> None: ...

    def on_error(self, error: Exception) -> None: ...


class PlaybackOwner(PlaybackListener, Protocol):
    @property
    def state(self) -> PlaybackState: ...

    def revoke(self) -> None: ...


class AudioOutput(Protocol):
    """``load`` and ``play`` report failures as ``PlaybackSurfaceError``."""

    def set_listener(self, listener: Optional[PlaybackListener]) -> None: ...

    def set_metadata(self, metadata: Optional[Dict[str, Any]]) -> None: ...

    def load(self, blob: AudioBlob) -> AudioResource: ...

    def release(self, resource: AudioResource) -> None: ...

    async def play(self, resource: AudioResource) -> None: ...

    def pause(self) -> None: ...

    def resume(self) -> None: ...

    def stop(self) -> None: ...

    def set_playback_rate(self, rate: float) -> None: ...


class SpeechSynthesizer(Protocol):
    async def voices(self) -> List[Voice]: ...

    async def speak(self, text: str, voice: Optional[Voice] = None) -> None: ...

    def cancel(self) -> None: ...


def _normalise_tag(tag: str) -> str:
    return tag.strip().replace("_", "-").lower()


def select_voice(voices: Sequence[Voice], locale: str) -> Optional[Voice]:
    """Pick the voice best matching ``locale`` (a BCP 47 style tag).

    An exact tag match wins, then a voice whose primary language subtag
    matches (``vi`` for ``vi-VN``). ``None`` means "use the synthesizer's
    default voice".
    """
    wanted = _normalise_tag(locale)
    if not wanted:
        return None
    for voice in voices:
        if _normalise_tag(voice.lang) == wanted:
            return voice
    primary = wanted.split("-")[0]
    for voice in voices:
        if _normalise_tag(voice.lang).split("-")[0] == primary:
            return voice
    return None


class PlaybackArbiter:
    """Grants exclusive use of the shared output and synthesizer.

    The arbiter is the output's only listener and forwards surface
    events to the current owner. ``acquire(owner)`` revokes whichever
    owner came before. ``release(owner)`` gives the surface up and
    resets the published state; ``detach(owner)`` gives it up but leaves
    the audio running and its state published, so that the next player
    to :meth:`attach` can take the session over instead of starting
    blind. While nobody owns the surface, its events still update the
    published state.
    """

    def __init__(self, output: AudioOutput, synthesizer: SpeechSynthesizer) -> None:
        self._output = output
        self._synthesizer = synthesizer
        self._owner: Optional[PlaybackOwner] = None
        self._state = PlaybackState.STOPPED
        output.set_listener(self)

    @property
    def output(self) -> AudioOutput:
        return self._output

    @property
    def synthesizer(self) -> SpeechSynthesizer:
        return self._synthesizer

    @property
    def owner(self) -> Optional[PlaybackOwner]:
        return self._owner

    @property
    def state(self) -> PlaybackState:
        return self._state

    def attach(self, player: PlaybackOwner) -> PlaybackState:
        """Return the state a freshly constructed ``player`` starts in.

        If another owner is active the new player starts stopped. If no
        one owns the surface but a session is still published as
        running, the new player adopts that state and becomes owner.
        """
        if self._owner is not None or self._state is PlaybackState.STOPPED:
            return PlaybackState.STOPPED
        logger.debug("Taking over running %s session", self._state.value)
        self._owner = player
        return self._state

    def acquire(self, owner: PlaybackOwner) -> None:
        previous = self._owner
        if previous is owner:
            return
        # Cleared before revoking so the previous owner's stop() does not
        # release the surface on its own.
        self._owner = None
        if previous is not None:
            logger.debug("Revoking playback from %r", previous)
            previous.revoke()
        self._owner = owner
        self._state = owner.state

    def release(self, owner: PlaybackOwner) -> None:
        if self._owner is not owner:
            return
        self._owner = None
        self._state = PlaybackState.STOPPED

    def detach(self, owner: PlaybackOwner) -> None:
        if self._owner is owner:
            self._owner = None

    def publish(self, owner: PlaybackOwner, state: PlaybackState) -> None:
        if self._owner is owner:
            self._state = state

    def is_owner(self, player: PlaybackOwner) -> bool:
        return self._owner is player

    def on_playing(self) -> None:
        if self._owner is not None:
            self._owner.on_playing()
        elif self._state is not PlaybackState.STOPPED:
            self._state = PlaybackState.PLAYING

    def on_paused(self) -> None:
        if self._owner is not None:
            self._owner.on_paused()
        elif self._state is not PlaybackState.STOPPED:
            self._state = PlaybackState.PAUSED

    def on_ended(self) -> None:
        if self._owner is not None:
            self._owner.on_ended()
        else:
            self._state = PlaybackState.STOPPED

    def on_error(self, error: Exception) -> None:
        if self._owner is not None:
            self._owner.on_error(error)
        else:
            logger.warning("Playback error with no active owner: %s", error)
            self._state = PlaybackState.STOPPED
