"""Server-side speech synthesis providers.

A provider has a ``name`` and an async ``synthesize(text, voice=None)``
returning ``(audio_bytes, seconds)``, where ``seconds`` is an estimate
of how long the audio plays. Two providers ship:

``silent``
    Repeats a bundled one-second silent MP3 once per estimated second
    of speech. Useful for development and tests, and the default.
``openai``
    Calls OpenAI's ``/v1/audio/speech`` endpoint with ``httpx``.
    Enabled when ``OPENAI_API_KEY`` is set.

:func:`get_provider` picks one based on ``NOVELREADER_TTS_PROVIDER``.
"""

from __future__ import annotations

import base64
import logging
import math
import os
from typing import Dict, Mapping, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

# Roughly 120 words per minute.
CHARS_PER_SECOND = 15

# About one second of silent mono MP3 at 24 kHz
# (``ffmpeg -f lavfi -i anullsrc=r=24000:cl=mono -t 1 -q:a 9``).
SILENT_MP3_BASE64 = (
    "SUQzBAAAAAAAI1RTU0UAAAAPAAADTGF2ZjU4Ljc2LjEwMAAAAAAAAAAAAAAA/+M4wAAAAAAAAAAAA"
    "EluZm8AAAAPAAAAAwAAAbAAqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqq1dXV1dXV1dXV1"
    "dXV1dXV1dXV1dXV1dXV1dXV1dXV1dXV//////////////////////////////AAAAAExhdmM1OC4xMwAA"
    "AAAAAAAAAAAAACQDkAAAAAAAAAGw9wrNaQAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"
    "AAAAAAAAAA/+MYxAAAAANIAAAAAExBTUUzLjEwMFVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVV"
    "VVVVVVVVVVVVVVVVVVVVVVVVVVVV/+MYxDsAAANIAAAAAFVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVV"
    "VVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVV/+MYxHYAAANIAAAAAFVV"
    "VVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVV"
)

# 631 characters; the single trailing "=" is restored before decoding.
_silent = SILENT_MP3_BASE64
SILENT_MP3_BYTES: bytes = base64.b64decode(_silent + "=" * (-len(_silent) % 4))


def estimate_seconds(text: str) -> int:
    return max(1, math.ceil(len(text) / CHARS_PER_SECOND))


class SilentTTSProvider:
    """Produces silence lasting about as long as reading ``text`` would."""

    name = "silent"

    async def synthesize(self, text: str, voice: Optional[str] = None) -> Tuple[bytes, int]:
        seconds = estimate_seconds(text)
        # MP3 streams can be joined at frame boundaries.
        return SILENT_MP3_BYTES * seconds, seconds


class OpenAITTSProvider:
    """Text-to-speech through OpenAI's audio API.

    Supported voices include ``alloy``, ``echo``, ``fable``, ``onyx``,
    ``nova`` and ``shimmer``; the voice passed to :meth:`synthesize`
    overrides the one given here. Non-2xx responses raise
    ``httpx.HTTPStatusError``.
    """

    name = "openai"
    url = "https://api.openai.com/v1/audio/speech"

    def __init__(self, api_key: str, voice: str = "alloy", model: str = "tts-1",
                 response_format: str = "mp3", speed: float = 1.0,
                 timeout: float = 60.0) -> None:
        self.api_key = api_key
        self.voice = voice
        self.model = model
        self.response_format = response_format
        self.speed = speed
        self.timeout = timeout

    async def synthesize(self, text: str, voice: Optional[str] = None) -> Tuple[bytes, int]:
        payload = {
            "model": self.model,
            "input": text,
            "voice": voice or self.voice,
            "response_format": self.response_format,
            "speed": self.speed,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, headers=headers, json=payload)
            response.raise_for_status()
            audio_bytes = response.content
        return audio_bytes, estimate_seconds(text)


def available_providers(environ: Optional[Mapping[str, str]] = None) -> Dict[str, object]:
    env = os.environ if environ is None else environ
    providers: Dict[str, object] = {SilentTTSProvider.name: SilentTTSProvider()}
    api_key = env.get("OPENAI_API_KEY")
    if api_key:
        providers[OpenAITTSProvider.name] = OpenAITTSProvider(
            api_key=api_key, voice=env.get("OPENAI_TTS_VOICE", "alloy"))
    return providers


def get_provider(environ: Optional[Mapping[str, str]] = None):
    """Return the provider named by ``NOVELREADER_TTS_PROVIDER``.

    Unknown or unavailable names fall back to the silent provider with
    a warning.
    """
    env = os.environ if environ is None else environ
    providers = available_providers(env)
    wanted = env.get("NOVELREADER_TTS_PROVIDER", SilentTTSProvider.name)
    provider = providers.get(wanted)
    if provider is None:
        logger.warning("TTS provider %r is not available, using silent audio", wanted)
        provider = providers[SilentTTSProvider.name]
    return provider
