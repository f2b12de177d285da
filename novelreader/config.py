"""Configuration for the narration client.

Settings are read from environment variables, in the same way the
server reads ``NOVELREADER_DB`` and ``OPENAI_API_KEY``. Numeric values
that fail to parse fall back to their defaults rather than aborting
start-up; a typo in an environment variable should not prevent a
chapter from being read aloud.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional

DEFAULT_PLAYER_COMMAND = "ffplay -nodisp -autoexit -loglevel quiet"


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    try:
        return int(environ[name])
    except (KeyError, ValueError):
        return default


def _env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    try:
        return float(environ[name])
    except (KeyError, ValueError):
        return default


@dataclass
class ChunkingConfig:
    """Tuning constants for :func:`novelreader.chunker.split_text`.

    ``first_chunk_chars`` is deliberately small so the first synthesis
    request returns quickly. ``chunk_chars`` is the target for every
    later chunk; it is raised for long texts so that roughly
    ``max_chunks`` requests cover the whole text, but never lowered.
    """

    first_chunk_chars: int = 200
    chunk_chars: int = 600
    max_chunks: int = 30


@dataclass
class NarrationConfig:
    """Settings for the narration player and its collaborators."""

    endpoint: str = "/api/stream"
    voice: Optional[str] = None
    locale: str = "vi-VN"
    fetch_timeout: float = 45.0
    prefetch_depth: int = 2
    state_file: Path = field(default_factory=lambda: Path.home() / ".novelreader" / "state.json")
    player_command: List[str] = field(default_factory=lambda: shlex.split(DEFAULT_PLAYER_COMMAND))
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "NarrationConfig":
        """Build a configuration from ``environ`` (``os.environ`` by default)."""
        env = os.environ if environ is None else environ
        defaults = cls()
        chunking = ChunkingConfig(
            first_chunk_chars=_env_int(env, "NOVELREADER_FIRST_CHUNK_CHARS", defaults.chunking.first_chunk_chars),
            chunk_chars=_env_int(env, "NOVELREADER_CHUNK_CHARS", defaults.chunking.chunk_chars),
            max_chunks=_env_int(env, "NOVELREADER_MAX_CHUNKS", defaults.chunking.max_chunks),
        )
        player = env.get("NOVELREADER_PLAYER")
        state_file = env.get("NOVELREADER_STATE_FILE")
        return cls(
            endpoint=env.get("NOVELREADER_ENDPOINT", defaults.endpoint),
            voice=env.get("NOVELREADER_VOICE") or None,
            locale=env.get("NOVELREADER_LOCALE", defaults.locale),
            fetch_timeout=_env_float(env, "NOVELREADER_FETCH_TIMEOUT", defaults.fetch_timeout),
            state_file=Path(state_file).expanduser() if state_file else defaults.state_file,
            player_command=shlex.split(player) if player else defaults.player_command,
            chunking=chunking,
        )
