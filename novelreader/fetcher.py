"""Fetch synthesized audio for one chunk of text.

:class:`AudioFetcher` posts ``{"text": ..., "voice": ...}`` to the
synthesis endpoint with ``httpx`` and returns the response body as an
:class:`~novelreader.playback.AudioBlob`. Each call can be cancelled
through an :class:`AbortSignal` and is bounded by a timeout; both end
the call with :class:`~novelreader.errors.Aborted`, which records
whether it was the timeout that fired so the caller can tell a request
that was given up on from one that was simply no longer wanted.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from .errors import Aborted, EmptyAudioPayload, SynthesisRequestFailed
from .playback import AudioBlob

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 45.0


class AbortSignal(asyncio.Event):
    """Set once the owning controller aborts."""

    @property
    def aborted(self) -> bool:
        return self.is_set()


class AbortController:
    """Creates a signal and aborts every operation listening to it."""

    def __init__(self) -> None:
        self.signal = AbortSignal()

    def abort(self) -> None:
        self.signal.set()


class AudioFetcher:
    """Turns a chunk of text into audio bytes via the synthesis endpoint.

    The fetcher borrows an ``httpx.AsyncClient`` (whose ``base_url``
    points at the API server) rather than owning one, so several
    fetchers and the streaming player can share a connection pool.
    """

    def __init__(self, client: httpx.AsyncClient, endpoint: str = "/api/stream",
                 voice: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.client = client
        self.endpoint = endpoint
        self.voice = voice
        self.timeout = timeout

    async def fetch(self, text: str, signal: Optional[AbortSignal] = None) -> AudioBlob:
        """Return the audio for ``text``.

        Raises ``Aborted`` when ``signal`` fires or the timeout elapses
        first, ``SynthesisRequestFailed`` for a non-success response or a
        transport failure, and ``EmptyAudioPayload`` for an empty body.
        """
        if signal is not None and signal.aborted:
            raise Aborted()
        request = asyncio.ensure_future(self._request(text))
        waiters = {request}
        if signal is not None:
            waiters.add(asyncio.ensure_future(signal.wait()))
        try:
            done, _ = await asyncio.wait(waiters, timeout=self.timeout,
                                         return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()
        if signal is not None and signal.aborted:
            if request.done() and not request.cancelled():
                request.exception()
            raise Aborted()
        if request in done:
            return request.result()
        raise Aborted(f"Audio request timed out after {self.timeout}s", timed_out=True)

    async def _request(self, text: str) -> AudioBlob:
        payload: Dict[str, Any] = {"text": text}
        if self.voice:
            payload["voice"] = self.voice
        try:
            response = await self.client.post(self.endpoint, json=payload)
        except httpx.HTTPError as exc:
            raise SynthesisRequestFailed(None, str(exc)) from exc
        if not response.is_success:
            raise SynthesisRequestFailed(response.status_code)
        data = response.content
        if not data:
            raise EmptyAudioPayload()
        content_type = response.headers.get("content-type", "")
        if not content_type.startswith("audio/"):
            logger.warning("Unexpected audio content type %r", content_type)
        logger.debug("Fetched %d bytes of %s for %r", len(data), content_type, text[:30])
        return AudioBlob(data, content_type)
