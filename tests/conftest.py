"""Shared fixtures: an in-memory playback surface and a scriptable fetcher."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

import pytest

from novelreader.config import ChunkingConfig, NarrationConfig
from novelreader.errors import Aborted, FallbackSynthesisFailed
from novelreader.fetcher import AbortSignal
from novelreader.playback import AudioBlob, AudioResource, PlaybackArbiter, Voice
from novelreader.player import NarrationPlayer
from novelreader.storage import MemoryStore, NarrationPreferences

# One sentence per chunk, which makes chunk boundaries easy to predict.
SENTENCE_CHUNKS = ChunkingConfig(first_chunk_chars=1, chunk_chars=1, max_chunks=100)


async def settle(rounds: int = 20) -> None:
    """Let scheduled tasks and callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeOutput:
    """Audio output that plays nothing and reports what it was asked to do.

    Tests end or break the current chunk with :meth:`finish` and
    :meth:`fail`, standing in for the real device's callbacks.
    """

    def __init__(self) -> None:
        self.listener = None
        self.metadata = None
        self.loaded: List[AudioBlob] = []
        self.released: List[AudioResource] = []
        self.played: List[AudioResource] = []
        self.rate_at_play: List[Optional[float]] = []
        self.rate: Optional[float] = None
        self.current: Optional[AudioResource] = None
        self.paused = False
        self.stops = 0
        self.play_error: Optional[Exception] = None
        self.load_error: Optional[Exception] = None

    def set_listener(self, listener) -> None:
        self.listener = listener

    def set_metadata(self, metadata) -> None:
        self.metadata = metadata

    def load(self, blob: AudioBlob) -> AudioResource:
        if self.load_error is not None:
            error, self.load_error = self.load_error, None
            raise error
        self.loaded.append(blob)
        return AudioResource(blob, blob.size)

    def release(self, resource: AudioResource) -> None:
        resource.released = True
        self.released.append(resource)

    async def play(self, resource: AudioResource) -> None:
        if self.play_error is not None:
            raise self.play_error
        self.current = resource
        self.paused = False
        self.played.append(resource)
        self.rate_at_play.append(self.rate)
        self.listener.on_playing()

    def pause(self) -> None:
        self.paused = True
        self.listener.on_paused()

    def resume(self) -> None:
        self.paused = False
        self.listener.on_playing()

    def stop(self) -> None:
        self.stops += 1
        self.current = None

    def set_playback_rate(self, rate: float) -> None:
        self.rate = rate

    @property
    def played_data(self) -> List[bytes]:
        return [resource.handle.data for resource in self.played]

    def finish(self) -> None:
        self.current = None
        self.listener.on_ended()

    def fail(self, error: Exception) -> None:
        self.listener.on_error(error)


class FakeSynthesizer:
    def __init__(self, voices: Optional[List[Voice]] = None, fail: bool = False) -> None:
        self.catalog = voices if voices is not None else [
            Voice("en", "English", "en-US"),
            Voice("vi", "Vietnamese", "vi-VN"),
        ]
        self.fail = fail
        self.spoken: List[tuple] = []
        self.cancelled = 0

    async def voices(self) -> List[Voice]:
        return list(self.catalog)

    async def speak(self, text: str, voice: Optional[Voice] = None) -> None:
        self.spoken.append((text, voice))
        if self.fail:
            raise FallbackSynthesisFailed("speech engine unavailable")

    def cancel(self) -> None:
        self.cancelled += 1


class FakeFetcher:
    """Returns ``b"audio:<text>"`` for every text unless told otherwise.

    ``gate(text)`` makes fetches of ``text`` wait until the returned
    event is set. ``fail(text, error)`` makes them raise. With
    ``honor_abort=False`` a gated fetch ignores its abort signal and
    resolves anyway, like a request whose response was already on the
    wire.
    """

    def __init__(self, honor_abort: bool = True) -> None:
        self.honor_abort = honor_abort
        self.calls: List[str] = []
        self.signals: List[Optional[AbortSignal]] = []
        self.gates: Dict[str, asyncio.Event] = {}
        self.failures: Dict[str, List[Exception]] = {}
        self.permanent: Dict[str, Exception] = {}

    def gate(self, text: str) -> asyncio.Event:
        event = self.gates[text] = asyncio.Event()
        return event

    def fail(self, text: str, error: Exception, once: bool = False) -> None:
        if once:
            self.failures.setdefault(text, []).append(error)
        else:
            self.permanent[text] = error

    async def fetch(self, text: str, signal: Optional[AbortSignal] = None) -> AudioBlob:
        self.calls.append(text)
        self.signals.append(signal)
        if signal is not None and signal.aborted:
            raise Aborted()
        gate = self.gates.get(text)
        if gate is not None and not gate.is_set():
            waiters = {asyncio.ensure_future(gate.wait())}
            if signal is not None and self.honor_abort:
                waiters.add(asyncio.ensure_future(signal.wait()))
            _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            for waiter in pending:
                waiter.cancel()
            if signal is not None and signal.aborted and self.honor_abort:
                raise Aborted()
        if self.failures.get(text):
            raise self.failures[text].pop(0)
        if text in self.permanent:
            raise self.permanent[text]
        return AudioBlob(f"audio:{text}".encode())


@pytest.fixture
def output() -> FakeOutput:
    return FakeOutput()


@pytest.fixture
def synthesizer() -> FakeSynthesizer:
    return FakeSynthesizer()


@pytest.fixture
def arbiter(output, synthesizer) -> PlaybackArbiter:
    return PlaybackArbiter(output, synthesizer)


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def preferences() -> NarrationPreferences:
    return NarrationPreferences(MemoryStore())


@pytest.fixture
def config(tmp_path) -> NarrationConfig:
    return NarrationConfig(state_file=tmp_path / "state.json", chunking=SENTENCE_CHUNKS)


@pytest.fixture
def make_player(arbiter, fetcher, preferences, config):
    def _make(**overrides) -> NarrationPlayer:
        return NarrationPlayer(
            overrides.get("arbiter", arbiter),
            overrides.get("fetcher", fetcher),
            overrides.get("preferences", preferences),
            overrides.get("config", config),
        )

    return _make


@pytest.fixture
def record_states():
    """Subscribe to a player and collect every state it enters."""

    def _record(player) -> list:
        states: list = []
        player.subscribe(states.append)
        return states

    return _record
