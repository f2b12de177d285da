"""Error taxonomy for the narration player.

Every failure raised by the fetcher, the playback surface or the
fallback synthesizer derives from :class:`NarrationError` so callers
can handle the whole family with a single ``except`` clause. The
player distinguishes the members as follows:

* ``Aborted`` – an in-flight fetch was cancelled. When the abort came
  from the caller's signal it is swallowed silently; when it came from
  the fetch timeout (``timed_out=True``) it is recovered like any other
  network failure, by falling back to on-device speech.
* ``SynthesisRequestFailed`` and ``EmptyAudioPayload`` – the synthesis
  endpoint did not produce usable audio; recovered via fallback.
* ``PlaybackSurfaceError`` – the audio output failed to decode or play
  a chunk; recovered via fallback with the chunk's text.
* ``FallbackSynthesisFailed`` – the fallback itself failed; terminal
  for the current session.
"""

from __future__ import annotations

from typing import Optional


class NarrationError(Exception):
    """Base class for every narration failure."""


class Aborted(NarrationError):
    """A fetch was cancelled before it produced audio."""

    def __init__(self, message: str = "Audio request aborted", *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


class SynthesisRequestFailed(NarrationError):
    """The synthesis endpoint answered with a non-success status.

    ``status`` is ``None`` when no response was received at all
    (connection refused, protocol error and the like).
    """

    def __init__(self, status: Optional[int], detail: str = "") -> None:
        message = f"TTS request failed with status {status}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.status = status
        self.detail = detail


class EmptyAudioPayload(NarrationError):
    """The synthesis endpoint answered with zero bytes."""

    def __init__(self, message: str = "Received empty audio payload") -> None:
        super().__init__(message)


class PlaybackSurfaceError(NarrationError):
    """The audio output could not decode or play a chunk."""


class FallbackSynthesisFailed(NarrationError):
    """The on-device speech synthesizer failed."""
