"""Play a synthesis response while it is still being downloaded.

Where :class:`~novelreader.player.NarrationPlayer` asks for one chunk at
a time, :class:`StreamingPlayer` posts the whole text once and plays
the streamed response body in segments as they arrive. It shares the
output with the narration player through the same arbiter, so starting
one stops the other.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

import httpx

from .errors import PlaybackSurfaceError, SynthesisRequestFailed
from .playback import AudioBlob, AudioResource, PlaybackArbiter
from .state import PlaybackState, Trigger, transition

logger = logging.getLogger(__name__)

DEFAULT_SEGMENT_BYTES = 64 * 1024


@dataclass
class _Stream:
    segments: Deque[AudioBlob] = field(default_factory=deque)
    content_type: str = "audio/mpeg"
    complete: bool = False
    playing: bool = False
    received: int = 0


class StreamingPlayer:
    """Plays one streamed synthesis response through the shared output.

    Segments are cut every ``segment_bytes`` bytes of body. MP3 decoders
    resynchronise on the next frame header, so a cut in the middle of a
    frame costs at most a few milliseconds of audio.
    """

    def __init__(self, arbiter: PlaybackArbiter, client: httpx.AsyncClient,
                 endpoint: str = "/api/stream", voice: Optional[str] = None,
                 segment_bytes: int = DEFAULT_SEGMENT_BYTES) -> None:
        self._arbiter = arbiter
        self.client = client
        self.endpoint = endpoint
        self.voice = voice
        self.segment_bytes = segment_bytes
        self._stream: Optional[_Stream] = None
        self._reader: Optional[asyncio.Task] = None
        self._resource: Optional[AudioResource] = None
        self._observers: List[Callable[[PlaybackState], None]] = []
        self._tasks: Set[asyncio.Task] = set()
        self._state = PlaybackState.STOPPED
        self._state = arbiter.attach(self)

    def __repr__(self) -> str:
        return f"<StreamingPlayer {self._state.value}>"

    @property
    def state(self) -> PlaybackState:
        return self._state

    def subscribe(self, observer: Callable[[PlaybackState], None]) -> Callable[[], None]:
        self._observers.append(observer)
        return lambda: self._observers.remove(observer) if observer in self._observers else None

    async def stream(self, text: str) -> None:
        """Download and play the narration of ``text``.

        Returns once the whole body has been received; playback of the
        last segments may still be in progress. Raises
        ``SynthesisRequestFailed`` if the endpoint refuses the request or
        the connection fails. Returns quietly when stopped meanwhile.
        """
        self.stop()
        current = self._stream = _Stream()
        self._arbiter.acquire(self)
        self._fire(Trigger.FETCH_STARTED)
        reader = self._reader = asyncio.ensure_future(self._read_body(current, text))
        await asyncio.wait({reader})
        if reader.cancelled():
            return
        exc = reader.exception()
        if exc is not None:
            logger.error("Streaming synthesis failed: %s", exc)
            if current is self._stream:
                self.stop()
            raise exc
        logger.info("Received %d bytes of streamed audio", current.received)

    def pause(self) -> None:
        if self._state is PlaybackState.PLAYING and self._arbiter.is_owner(self):
            self._arbiter.output.pause()

    def resume(self) -> None:
        if self._state is PlaybackState.PAUSED:
            self._arbiter.acquire(self)
            self._arbiter.output.resume()

    def stop(self) -> None:
        current = self._stream
        self._stream = None
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
        self._reader = None
        if self._arbiter.owner in (None, self):
            if self._resource is not None or current is not None or self._state is not PlaybackState.STOPPED:
                self._arbiter.output.stop()
        self._release_resource()
        self._fire(Trigger.STOP_REQUESTED)
        self._arbiter.release(self)

    def revoke(self) -> None:
        self.stop()

    def close(self) -> None:
        self.stop()

    # Surface events

    def on_playing(self) -> None:
        self._fire(Trigger.SURFACE_PLAYING)

    def on_paused(self) -> None:
        self._fire(Trigger.SURFACE_PAUSED)

    def on_ended(self) -> None:
        self._release_resource()
        current = self._stream
        if current is None:
            self._fire(Trigger.QUEUE_EXHAUSTED)
            self._arbiter.release(self)
            return
        current.playing = False
        self._spawn(self._play_next(current))

    def on_error(self, error: Exception) -> None:
        logger.error("Streamed audio could not be played: %s", error)
        self.stop()

    # Internals

    async def _read_body(self, current: _Stream, text: str) -> None:
        payload: Dict[str, Any] = {"text": text}
        if self.voice:
            payload["voice"] = self.voice
        try:
            async with self.client.stream("POST", self.endpoint, json=payload) as response:
                if not response.is_success:
                    raise SynthesisRequestFailed(response.status_code)
                current.content_type = response.headers.get("content-type", current.content_type)
                if not current.content_type.startswith("audio/"):
                    logger.warning("Unexpected audio content type %r", current.content_type)
                buffer = bytearray()
                async for data in response.aiter_bytes():
                    current.received += len(data)
                    buffer.extend(data)
                    if len(buffer) >= self.segment_bytes:
                        self._enqueue(current, bytes(buffer))
                        buffer.clear()
                if buffer:
                    self._enqueue(current, bytes(buffer))
        except httpx.HTTPError as exc:
            raise SynthesisRequestFailed(None, str(exc)) from exc
        current.complete = True
        if not current.playing and not current.segments and current is self._stream:
            if not current.received:
                logger.warning("Synthesis stream was empty")
            self._finish()

    def _enqueue(self, current: _Stream, data: bytes) -> None:
        if current is not self._stream:
            return
        current.segments.append(AudioBlob(data, current.content_type))
        logger.debug("Queued segment %d (%d bytes)", len(current.segments), len(data))
        if not current.playing:
            self._spawn(self._play_next(current))

    async def _play_next(self, current: _Stream) -> None:
        if current is not self._stream or current.playing:
            return
        if not current.segments:
            if current.complete:
                self._finish()
            else:
                # Playback caught up with the download.
                self._fire(Trigger.FETCH_STARTED)
            return
        blob = current.segments.popleft()
        current.playing = True
        output = self._arbiter.output
        self._release_resource()
        try:
            self._resource = output.load(blob)
            await output.play(self._resource)
        except PlaybackSurfaceError as exc:
            logger.error("Streamed audio could not be played: %s", exc)
            if current is self._stream:
                self.stop()

    def _finish(self) -> None:
        logger.info("Streamed narration finished")
        self._stream = None
        self._reader = None
        self._release_resource()
        self._fire(Trigger.QUEUE_EXHAUSTED)
        self._arbiter.release(self)

    def _fire(self, trigger: Trigger) -> None:
        state = transition(self._state, trigger)
        if state is self._state:
            return
        self._state = state
        self._arbiter.publish(self, state)
        for observer in list(self._observers):
            observer(state)

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Streaming task failed", exc_info=task.exception())

    def _release_resource(self) -> None:
        if self._resource is not None:
            self._arbiter.output.release(self._resource)
            self._resource = None
