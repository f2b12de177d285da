"""Command line entry point.

``novelreader serve`` runs the API with uvicorn. ``novelreader narrate``
reads a chapter (or a local text file) aloud through the desktop
playback surface, resuming where the previous narration of the same
chapter stopped. Interrupting with Ctrl-C keeps the saved position.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import httpx
import uvicorn

from .config import NarrationConfig
from .devices import Pyttsx3Synthesizer, SubprocessAudioOutput
from .errors import SynthesisRequestFailed
from .fetcher import AudioFetcher
from .logging_config import setup_logging
from .playback import PlaybackArbiter
from .player import NarrationPlayer
from .state import PlaybackState
from .storage import JsonFileStore, NarrationPreferences
from .streaming import StreamingPlayer

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="novelreader", description="Novel reader with text-to-speech narration")
    parser.add_argument("--log-level", default=None, help="Logging level (default: NOVELREADER_LOG_LEVEL or INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the API server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    narrate = sub.add_parser("narrate", help="Read a chapter or text file aloud")
    narrate.add_argument("--server", required=True, help="Base URL of the API server")
    narrate.add_argument("--novel", type=int, help="Novel id")
    narrate.add_argument("--chapter", type=int, help="Chapter number")
    narrate.add_argument("--file", type=Path, help="Narrate a local UTF-8 text file instead")
    narrate.add_argument("--rate", type=float, help="Playback rate, remembered for later sessions")
    narrate.add_argument("--voice", help="Voice requested from the synthesis endpoint")
    narrate.add_argument("--stream", action="store_true",
                         help="Stream the whole text in one request instead of chunk by chunk")
    return parser


async def _load_text(client: httpx.AsyncClient,
                     args: argparse.Namespace) -> Tuple[str, str, Dict[str, Any]]:
    """Return the text to narrate, its resume key and display metadata."""
    if args.file is not None:
        path = args.file.expanduser().resolve()
        return path.read_text(encoding="utf-8"), f"file:{path}", {"title": path.name}
    response = await client.get(f"/api/novel/{args.novel}/chapters/{args.chapter}")
    response.raise_for_status()
    chapter = response.json()
    metadata = {
        "title": chapter["chapter_name"],
        "novel_id": args.novel,
        "chapter_number": args.chapter,
    }
    return chapter["chapter_content"], f"{args.novel}:{args.chapter}", metadata


async def narrate(args: argparse.Namespace, config: NarrationConfig) -> int:
    voice = args.voice or config.voice
    async with httpx.AsyncClient(base_url=args.server) as client:
        try:
            text, resume_key, metadata = await _load_text(client, args)
        except (httpx.HTTPError, OSError) as exc:
            logger.error("Cannot load text to narrate: %s", exc)
            return 1
        if not text.strip():
            logger.error("Nothing to narrate")
            return 1

        output = SubprocessAudioOutput(config.player_command)
        arbiter = PlaybackArbiter(output, Pyttsx3Synthesizer())
        preferences = NarrationPreferences(JsonFileStore(config.state_file))
        if args.rate is not None:
            preferences.playback_rate = args.rate

        finished = asyncio.Event()

        def on_state(state: PlaybackState) -> None:
            logger.debug("Player is %s", state.value)
            if state is PlaybackState.STOPPED:
                finished.set()

        if args.stream:
            streamer = StreamingPlayer(arbiter, client, config.endpoint, voice)
            streamer.subscribe(on_state)
            if preferences.playback_rate is not None:
                output.set_playback_rate(preferences.playback_rate)
            output.set_metadata(metadata)
            try:
                await streamer.stream(text)
                await finished.wait()
            except SynthesisRequestFailed as exc:
                logger.error("Streaming narration failed: %s", exc)
                return 1
            finally:
                streamer.close()
            return 0

        fetcher = AudioFetcher(client, config.endpoint, voice, config.fetch_timeout)
        player = NarrationPlayer(arbiter, fetcher, preferences, config)
        player.subscribe(on_state)
        try:
            player.play(text, resume_key=resume_key, metadata=metadata)
            await finished.wait()
        finally:
            if player.metadata is not None:
                logger.info("Stopped at chunk %d (%.0f%%)", player.current_index, player.progress)
            player.close()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    if args.command == "serve":
        uvicorn.run("novelreader.main:app", host=args.host, port=args.port)
        return 0

    if args.file is None and (args.novel is None or args.chapter is None):
        logger.error("narrate needs either --file or both --novel and --chapter")
        return 2
    config = NarrationConfig.from_env()
    try:
        return asyncio.run(narrate(args, config))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
