"""Tests for the streaming player."""

import asyncio
import logging

import httpx
import pytest

from novelreader.errors import PlaybackSurfaceError, SynthesisRequestFailed
from novelreader.state import PlaybackState
from novelreader.streaming import StreamingPlayer

from .conftest import settle


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://tts.test")


def _audio(body) -> httpx.Response:
    return httpx.Response(200, headers={"content-type": "audio/mpeg"}, content=body)


class TestStreamingPlayer:
    """StreamingPlayer.stream() and its controls."""

    @pytest.mark.asyncio
    async def test_plays_segments_in_arrival_order(self, arbiter, output):
        """Should play every segment in order and stop after the last one."""
        async def body():
            yield b"aaaa"
            yield b"bbbb"
            yield b"cc"

        async with _client(lambda request: _audio(body())) as client:
            player = StreamingPlayer(arbiter, client, segment_bytes=4)
            states = []
            player.subscribe(states.append)

            await player.stream("Xin chào.")
            await settle()
            for _ in range(3):
                output.finish()
                await settle()

        assert output.played_data == [b"aaaa", b"bbbb", b"cc"]
        assert states == [PlaybackState.LOADING, PlaybackState.PLAYING, PlaybackState.STOPPED]
        assert arbiter.owner is None
        assert all(resource.released for resource in output.played)

    @pytest.mark.asyncio
    async def test_waits_in_loading_when_playback_catches_up(self, arbiter, output):
        """Should show loading while the next segment has not arrived."""
        more = asyncio.Event()

        async def body():
            yield b"aaaa"
            await more.wait()
            yield b"bbbb"

        async with _client(lambda request: _audio(body())) as client:
            player = StreamingPlayer(arbiter, client, segment_bytes=4)
            task = asyncio.ensure_future(player.stream("Text."))
            await settle()
            assert player.state is PlaybackState.PLAYING
            output.finish()
            await settle()
            assert player.state is PlaybackState.LOADING

            more.set()
            await task
            await settle()

        assert player.state is PlaybackState.PLAYING
        assert output.played_data == [b"aaaa", b"bbbb"]

    @pytest.mark.asyncio
    async def test_error_status_raises_and_stops(self, arbiter):
        """Should stop and raise SynthesisRequestFailed on a non-success status."""
        async with _client(lambda request: httpx.Response(500, text="TTS synthesis failed")) as client:
            player = StreamingPlayer(arbiter, client)
            with pytest.raises(SynthesisRequestFailed) as excinfo:
                await player.stream("Text.")

        assert excinfo.value.status == 500
        assert player.state is PlaybackState.STOPPED
        assert arbiter.owner is None

    @pytest.mark.asyncio
    async def test_stop_cancels_download(self, arbiter, output):
        """Should stop reading the body and return quietly."""
        never = asyncio.Event()

        async def body():
            yield b"aaaa"
            await never.wait()
            yield b"bbbb"

        async with _client(lambda request: _audio(body())) as client:
            player = StreamingPlayer(arbiter, client, segment_bytes=4)
            task = asyncio.ensure_future(player.stream("Text."))
            await settle()
            player.stop()
            await task

        assert player.state is PlaybackState.STOPPED
        assert output.played_data == [b"aaaa"]
        assert output.played[0].released

    @pytest.mark.asyncio
    async def test_load_failure_stops(self, arbiter, output):
        """Should stop and release the output when a segment cannot be loaded."""
        output.load_error = PlaybackSurfaceError("disk full")

        async with _client(lambda request: _audio(b"aaaa")) as client:
            player = StreamingPlayer(arbiter, client, segment_bytes=4)
            await player.stream("Text.")
            await settle()

        assert player.state is PlaybackState.STOPPED
        assert output.played == []
        assert arbiter.owner is None

    @pytest.mark.asyncio
    async def test_unexpected_playback_failure_is_logged(self, arbiter, output, caplog, monkeypatch):
        """Should keep track of playback tasks and log the ones that fail."""
        caplog.set_level(logging.ERROR, logger="novelreader")
        monkeypatch.setattr(logging.getLogger("novelreader"), "propagate", True)
        output.play_error = RuntimeError("device vanished")

        async with _client(lambda request: _audio(b"aaaa")) as client:
            player = StreamingPlayer(arbiter, client, segment_bytes=4)
            await player.stream("Text.")
            await settle()

        assert "Streaming task failed" in caplog.text
        assert player._tasks == set()

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, arbiter, output):
        """Should pause and resume the current segment."""
        async def body():
            yield b"aaaa"

        async with _client(lambda request: _audio(body())) as client:
            player = StreamingPlayer(arbiter, client, segment_bytes=4)
            await player.stream("Text.")
            await settle()
            player.pause()
            assert player.state is PlaybackState.PAUSED
            player.resume()

        assert player.state is PlaybackState.PLAYING

    @pytest.mark.asyncio
    async def test_streaming_stops_narration_player(self, arbiter, output, make_player):
        """Should revoke a running narration when streaming starts."""
        narration = make_player()
        narration.play("One. Two.")
        await settle()

        async def body():
            yield b"stream"

        async with _client(lambda request: _audio(body())) as client:
            player = StreamingPlayer(arbiter, client, segment_bytes=4)
            await player.stream("Text.")
            await settle()

        assert narration.state is PlaybackState.STOPPED
        assert arbiter.owner is player
        assert output.played_data == [b"audio:One.", b"stream"]
