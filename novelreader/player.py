"""The narration player: chunked, prefetching text-to-speech playback.

A call to :meth:`NarrationPlayer.play` splits the text into chunks and
plays them one after the other. Audio for each chunk is fetched from
the synthesis endpoint just before it is due; once a chunk is audible
the next one or two are fetched in the background so that the gap
between chunks is as short as possible. When the endpoint cannot
provide audio for a chunk (error status, empty body, timeout) or the
output cannot play it, the chunk is spoken by the host's on-device
synthesizer instead and the queue carries on afterwards.

For a narration started with a ``resume_key`` the index of the chunk
being played is persisted on every advance; a later ``play()`` with the
same key picks up at that chunk. Finishing the text clears the saved
index, stopping early keeps it.

The player runs entirely on the asyncio event loop. ``play()`` only
schedules work, so it must be called while a loop is running. Events
from the audio output arrive through the listener methods
(``on_playing``, ``on_paused``, ``on_ended``, ``on_error``), which the
:class:`~novelreader.playback.PlaybackArbiter` forwards while this
player owns the output.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from functools import partial
from itertools import islice
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from .chunker import split_text
from .config import NarrationConfig
from .errors import Aborted, FallbackSynthesisFailed, NarrationError, PlaybackSurfaceError
from .fetcher import AbortController
from .playback import AudioBlob, AudioResource, PlaybackArbiter, select_voice
from .state import PlaybackState, Trigger, transition
from .storage import NarrationPreferences

logger = logging.getLogger(__name__)

StateObserver = Callable[[PlaybackState], None]


@dataclass
class QueueItem:
    """One pending chunk; ``index`` is its position in the whole text."""

    index: int
    text: str


@dataclass
class NarrationSession:
    """Everything that belongs to a single ``play()`` call."""

    full_text: str
    chunks: List[str]
    queue: Deque[QueueItem]
    current_index: int = 0
    resume_key: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    on_ended: Optional[Callable[[], None]] = None
    current_text: Optional[str] = None
    progress: float = 0.0

    def update_progress(self) -> None:
        total = self.current_index + len(self.queue)
        self.progress = self.current_index / total * 100 if total else 0.0


class NarrationPlayer:
    """Plays narration text chunk by chunk through the shared surface.

    ``fetcher`` is anything with an ``async fetch(text, signal)`` method
    returning an :class:`~novelreader.playback.AudioBlob`, normally an
    :class:`~novelreader.fetcher.AudioFetcher`.
    """

    def __init__(self, arbiter: PlaybackArbiter, fetcher: Any,
                 preferences: NarrationPreferences,
                 config: Optional[NarrationConfig] = None) -> None:
        self._arbiter = arbiter
        self._fetcher = fetcher
        self._preferences = preferences
        self._config = config or NarrationConfig()
        self._session: Optional[NarrationSession] = None
        self._abort: Optional[AbortController] = None
        self._prefetch_abort: Optional[AbortController] = None
        self._prefetched: Dict[int, asyncio.Task] = {}
        self._resource: Optional[AudioResource] = None
        self._speech_session: Optional[NarrationSession] = None
        self._tasks: Set[asyncio.Task] = set()
        self._observers: List[StateObserver] = []
        self._closed = False
        self._state = PlaybackState.STOPPED
        self._state = arbiter.attach(self)

    def __repr__(self) -> str:
        return f"<NarrationPlayer {self._state.value}>"

    # Observers

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def progress(self) -> float:
        """Percentage of chunks already played in the current session."""
        return self._session.progress if self._session is not None else 0.0

    @property
    def current_index(self) -> int:
        return self._session.current_index if self._session is not None else 0

    @property
    def metadata(self) -> Optional[Dict[str, Any]]:
        return self._session.metadata if self._session is not None else None

    def subscribe(self, observer: StateObserver) -> Callable[[], None]:
        """Call ``observer`` with every new state; returns an unsubscriber."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    # Controls

    def play(self, text: str, on_ended: Optional[Callable[[], None]] = None,
             resume_key: Optional[str] = None,
             metadata: Optional[Dict[str, Any]] = None) -> None:
        """Start narrating ``text``, replacing whatever was playing.

        ``on_ended`` is called once the last chunk has finished.
        ``resume_key`` scopes the persisted progress, and ``metadata``
        (title, chapter and so on) is handed to the output for display.
        """
        if self._closed:
            logger.debug("Ignoring play() on a closed player")
            return
        self.stop()
        chunks = split_text(text, self._config.chunking)
        if not chunks[0]:
            logger.info("Nothing to narrate")
            return
        start = self._restore_index(resume_key, len(chunks))
        session = NarrationSession(
            full_text=text,
            chunks=chunks,
            queue=deque(QueueItem(i, chunk) for i, chunk in enumerate(chunks) if i >= start),
            current_index=start,
            resume_key=resume_key,
            metadata=metadata,
            on_ended=on_ended,
        )
        session.update_progress()
        self._session = session
        self._arbiter.acquire(self)
        self._arbiter.output.set_metadata(metadata)
        logger.info("Narrating %d chunks, starting at chunk %d", len(chunks), start)
        self._spawn(self._play_next_chunk(session))

    def pause(self) -> None:
        if self._closed or self._state is not PlaybackState.PLAYING:
            return
        if self._speech_session is not None:
            logger.debug("Pause is not supported while on-device speech is playing")
            return
        if self._arbiter.is_owner(self):
            self._arbiter.output.pause()

    def resume(self) -> None:
        if self._closed or self._state is not PlaybackState.PAUSED:
            return
        self._arbiter.acquire(self)
        self._arbiter.output.resume()

    def set_playback_rate(self, rate: float) -> None:
        """Change the playback rate now (if audio is bound) and remember it."""
        if rate <= 0:
            raise ValueError("Playback rate must be positive")
        self._preferences.playback_rate = rate
        if self._resource is not None and self._arbiter.is_owner(self):
            self._arbiter.output.set_playback_rate(rate)

    def stop(self) -> None:
        """Abort fetches, silence the output and forget the session.

        Persisted progress is left alone so the next ``play()`` with the
        same resume key continues where this one stopped.
        """
        session = self._session
        self._session = None
        self._abort_fetches()
        if self._arbiter.owner in (None, self):
            if self._resource is not None or session is not None or self._state is not PlaybackState.STOPPED:
                self._arbiter.output.stop()
            if self._speech_session is not None:
                self._arbiter.synthesizer.cancel()
        self._speech_session = None
        self._release_resource()
        self._fire(Trigger.STOP_REQUESTED)
        self._arbiter.release(self)

    def revoke(self) -> None:
        """Called by the arbiter when another player takes the surface."""
        logger.debug("Playback revoked")
        self.stop()

    def detach(self) -> None:
        """Hand the running audio over to whichever player attaches next.

        The current chunk keeps playing but this player stops driving
        the session; it cannot be used afterwards.
        """
        self._closed = True
        self._session = None
        self._abort_fetches()
        self._release_resource()
        self._arbiter.detach(self)

    def close(self) -> None:
        self.stop()
        self._closed = True

    # Surface events

    def on_playing(self) -> None:
        self._fire(Trigger.SURFACE_PLAYING)

    def on_paused(self) -> None:
        self._fire(Trigger.SURFACE_PAUSED)

    def on_ended(self) -> None:
        session = self._session
        if session is None:
            # Audio taken over from a detached player has run out.
            self._fire(Trigger.QUEUE_EXHAUSTED)
            self._arbiter.release(self)
            return
        self._advance(session)

    def on_error(self, error: Exception) -> None:
        logger.error("Audio playback error: %s", error)
        self._release_resource()
        session = self._session
        if session is None:
            self._fire(Trigger.STOP_REQUESTED)
            self._arbiter.release(self)
            return
        self._fire(Trigger.CHUNK_ERROR)
        if session.current_text:
            self._fallback(session, session.current_text, error)

    # Chunk loop

    def _restore_index(self, resume_key: Optional[str], total: int) -> int:
        if resume_key is None:
            return 0
        stored = self._preferences.load_progress(resume_key)
        if stored is not None and 0 < stored < total:
            logger.info("Resuming %s at chunk %d of %d", resume_key, stored, total)
            return stored
        return 0

    async def _play_next_chunk(self, session: NarrationSession) -> None:
        if session is not self._session or not session.queue:
            return
        item = session.queue.popleft()
        session.current_text = item.text
        logger.debug("Chunk %d: %r", item.index, item.text[:50])

        error: NarrationError
        try:
            blob = await self._obtain_audio(session, item)
        except Aborted as exc:
            if not exc.timed_out:
                logger.debug("Fetch for chunk %d aborted", item.index)
                if session is self._session:
                    self._fire(Trigger.FETCH_ABORTED)
                return
            error = exc
        except NarrationError as exc:
            error = exc
        else:
            if session is not self._session:
                logger.debug("Discarding audio for chunk %d of a finished session", item.index)
                return
            self._fire(Trigger.FETCH_RESOLVED)
            try:
                await self._start_playback(blob)
            except PlaybackSurfaceError as exc:
                error = exc
            else:
                if session is self._session:
                    self._prefetch_upcoming(session)
                return

        if session is not self._session:
            return
        self._fire(Trigger.FETCH_FAILED)
        self._fallback(session, item.text, error)

    async def _obtain_audio(self, session: NarrationSession, item: QueueItem) -> AudioBlob:
        task = self._prefetched.pop(item.index, None)
        if task is not None:
            if not task.done():
                self._fire(Trigger.FETCH_STARTED)
            try:
                return await task
            except Aborted:
                if session is not self._session:
                    raise
                logger.debug("Prefetch for chunk %d was cancelled, fetching on demand", item.index)
            except NarrationError as exc:
                logger.info("Prefetch for chunk %d failed (%s), fetching on demand", item.index, exc)

        self._fire(Trigger.FETCH_STARTED)
        if self._abort is not None:
            self._abort.abort()
        controller = self._abort = AbortController()
        return await self._fetcher.fetch(item.text, controller.signal)

    async def _start_playback(self, blob: AudioBlob) -> None:
        output = self._arbiter.output
        self._release_resource()
        self._resource = output.load(blob)
        # Outputs may reset the rate whenever their source changes.
        rate = self._preferences.playback_rate
        if rate is not None:
            output.set_playback_rate(rate)
        await output.play(self._resource)

    def _prefetch_upcoming(self, session: NarrationSession) -> None:
        upcoming = list(islice(session.queue, self._config.prefetch_depth))
        if not upcoming:
            return
        if self._prefetch_abort is not None:
            self._prefetch_abort.abort()
        for index, task in list(self._prefetched.items()):
            if not task.done() or task.cancelled() or task.exception() is not None:
                del self._prefetched[index]
        controller = self._prefetch_abort = AbortController()
        for offset, item in enumerate(upcoming, start=1):
            if item.index in self._prefetched:
                continue
            logger.debug("Prefetching chunk +%d: %r", offset, item.text[:30])
            task = asyncio.ensure_future(self._fetcher.fetch(item.text, controller.signal))
            task.add_done_callback(partial(self._prefetch_done, item.index))
            self._prefetched[item.index] = task

    @staticmethod
    def _prefetch_done(index: int, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, Aborted) and not exc.timed_out:
            logger.debug("Prefetch of chunk %d aborted", index)
        else:
            logger.warning("Failed to prefetch chunk %d: %s", index, exc)

    def _advance(self, session: NarrationSession) -> None:
        if session is not self._session:
            return
        self._fire(Trigger.CHUNK_ENDED)
        self._release_resource()
        if not session.queue:
            self._finish(session)
            return
        session.current_index += 1
        session.update_progress()
        if session.resume_key is not None:
            self._preferences.save_progress(session.resume_key, session.current_index)
        self._spawn(self._play_next_chunk(session))

    def _finish(self, session: NarrationSession) -> None:
        logger.info("Narration finished after %d chunks", len(session.chunks))
        self._session = None
        self._abort_fetches()
        self._fire(Trigger.QUEUE_EXHAUSTED)
        if session.resume_key is not None:
            self._preferences.clear_progress(session.resume_key)
        self._arbiter.release(self)
        if session.on_ended is not None:
            session.on_ended()

    # Fallback

    def _fallback(self, session: NarrationSession, text: str, error: Exception) -> None:
        logger.warning("Falling back to on-device speech for chunk %d: %s",
                       session.current_index, error)
        self._release_resource()
        self._fire(Trigger.FALLBACK_STARTED)
        self._speech_session = session
        self._spawn(self._speak(session, text))

    async def _speak(self, session: NarrationSession, text: str) -> None:
        synthesizer = self._arbiter.synthesizer
        try:
            voice = select_voice(await synthesizer.voices(), self._config.locale)
            await synthesizer.speak(text, voice)
        except FallbackSynthesisFailed as exc:
            if session is self._session:
                logger.error("On-device speech failed as well: %s", exc)
                self._session = None
                self._abort_fetches()
                self._fire(Trigger.FALLBACK_FAILED)
                self._arbiter.release(self)
            return
        finally:
            if self._speech_session is session:
                self._speech_session = None
        self._advance(session)

    # Plumbing

    def _fire(self, trigger: Trigger) -> None:
        state = transition(self._state, trigger)
        if state is self._state:
            return
        logger.debug("%s: %s -> %s", trigger.value, self._state.value, state.value)
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
            logger.error("Narration task failed", exc_info=task.exception())

    def _abort_fetches(self) -> None:
        for controller in (self._abort, self._prefetch_abort):
            if controller is not None:
                controller.abort()
        self._abort = None
        self._prefetch_abort = None
        self._prefetched.clear()

    def _release_resource(self) -> None:
        if self._resource is not None:
            self._arbiter.output.release(self._resource)
            self._resource = None
