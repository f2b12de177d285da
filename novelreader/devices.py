"""Concrete playback surface for running narration on a desktop.

``SubprocessAudioOutput`` plays each audio blob with an external
command-line player (``ffplay`` unless configured otherwise), and
``Pyttsx3Synthesizer`` speaks text with the operating system's speech
engine through ``pyttsx3``. Pause and resume stop and continue the
player process with ``SIGSTOP``/``SIGCONT``, so they need a POSIX host.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import tempfile
import threading
from typing import Any, Dict, List, Optional, Sequence, Set

import pyttsx3

from .config import DEFAULT_PLAYER_COMMAND
from .errors import FallbackSynthesisFailed, PlaybackSurfaceError
from .playback import AudioBlob, AudioResource, PlaybackListener, Voice

logger = logging.getLogger(__name__)

_SUFFIXES = {
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/ogg": ".ogg",
    "audio/aac": ".aac",
}


def atempo_filter(rate: float) -> str:
    """Build an ffmpeg ``atempo`` chain for ``rate``.

    A single ``atempo`` stage only accepts factors between 0.5 and 2.0,
    so larger changes are made of several stages.
    """
    stages: List[str] = []
    while rate > 2.0:
        stages.append("atempo=2.0")
        rate /= 2.0
    while rate < 0.5:
        stages.append("atempo=0.5")
        rate /= 0.5
    stages.append(f"atempo={rate:g}")
    return ",".join(stages)


class SubprocessAudioOutput:
    """Audio output that hands every resource to a player process.

    Loading a blob writes it to a temporary file; releasing the resource
    deletes the file. Only one process plays at a time: ``play`` and
    ``stop`` terminate the previous one without reporting it as ended.
    """

    def __init__(self, command: Optional[Sequence[str]] = None) -> None:
        self.command = list(command) if command else DEFAULT_PLAYER_COMMAND.split()
        self.metadata: Optional[Dict[str, Any]] = None
        self._listener: Optional[PlaybackListener] = None
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._paused = False
        self._rate = 1.0
        self._watchers: Set[asyncio.Task] = set()

    def set_listener(self, listener: Optional[PlaybackListener]) -> None:
        self._listener = listener

    def set_metadata(self, metadata: Optional[Dict[str, Any]]) -> None:
        self.metadata = metadata
        if metadata and metadata.get("title"):
            logger.info("Now playing: %s", metadata["title"])

    def load(self, blob: AudioBlob) -> AudioResource:
        suffix = _SUFFIXES.get(blob.content_type.split(";")[0].strip(), ".mp3")
        try:
            fd, path = tempfile.mkstemp(prefix="novelreader-", suffix=suffix)
        except OSError as exc:
            raise PlaybackSurfaceError(f"Cannot create audio file: {exc}") from exc
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(blob.data)
        except OSError as exc:
            os.unlink(path)
            raise PlaybackSurfaceError(f"Cannot write audio file {path}: {exc}") from exc
        return AudioResource(path, blob.size)

    def release(self, resource: AudioResource) -> None:
        if resource.released:
            return
        resource.released = True
        try:
            os.unlink(resource.handle)
        except OSError as exc:
            logger.debug("Could not remove %s: %s", resource.handle, exc)

    def _argv(self, resource: AudioResource) -> List[str]:
        argv = list(self.command)
        if self._rate != 1.0 and os.path.basename(argv[0]) == "ffplay":
            argv += ["-af", atempo_filter(self._rate)]
        argv.append(str(resource.handle))
        return argv

    async def play(self, resource: AudioResource) -> None:
        self._terminate()
        argv = self._argv(resource)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise PlaybackSurfaceError(f"Cannot start audio player {argv[0]!r}: {exc}") from exc
        if resource.released:
            # Stopped while the process was starting.
            proc.kill()
            await proc.wait()
            return
        self._terminate()
        self._proc = proc
        self._paused = False
        watcher = asyncio.ensure_future(self._watch(proc))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watch_done)
        if self._listener is not None:
            self._listener.on_playing()

    def _watch_done(self, task: asyncio.Task) -> None:
        self._watchers.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Audio player watcher failed", exc_info=task.exception())

    async def _watch(self, proc: asyncio.subprocess.Process) -> None:
        _, stderr = await proc.communicate()
        if proc is not self._proc:
            return
        self._proc = None
        if self._listener is None:
            return
        if proc.returncode == 0:
            self._listener.on_ended()
        else:
            detail = stderr.decode("utf-8", "replace").strip().splitlines()[-1:] if stderr else []
            self._listener.on_error(PlaybackSurfaceError(
                f"Audio player exited with status {proc.returncode}"
                + (f": {detail[0]}" if detail else "")))

    def pause(self) -> None:
        if self._proc is None or self._paused:
            return
        self._proc.send_signal(signal.SIGSTOP)
        self._paused = True
        if self._listener is not None:
            self._listener.on_paused()

    def resume(self) -> None:
        if self._proc is None or not self._paused:
            return
        self._proc.send_signal(signal.SIGCONT)
        self._paused = False
        if self._listener is not None:
            self._listener.on_playing()

    def stop(self) -> None:
        self._terminate()

    def set_playback_rate(self, rate: float) -> None:
        # ffplay cannot change tempo mid-stream; the rate applies from the next play().
        self._rate = rate

    def _terminate(self) -> None:
        proc = self._proc
        self._proc = None
        if proc is None or proc.returncode is not None:
            return
        try:
            if self._paused:
                proc.send_signal(signal.SIGCONT)
            proc.terminate()
        except ProcessLookupError:
            pass
        self._paused = False


def _voice_language(raw: Any) -> str:
    """Language tag of a pyttsx3 voice.

    Drivers disagree on the format: espeak reports bytes with a leading
    priority byte (``b"\\x05vi"``), others plain strings.
    """
    languages = getattr(raw, "languages", None) or []
    if not languages:
        return ""
    lang = languages[0]
    if isinstance(lang, bytes):
        lang = lang.decode("latin-1")
    return "".join(ch for ch in str(lang) if ch.isprintable())


class Pyttsx3Synthesizer:
    """On-device speech through ``pyttsx3``, run in the default executor.

    The engine is created lazily on first use. ``runAndWait`` blocks, so
    utterances are serialised with an asyncio lock and the engine itself
    is only touched under a thread lock.
    """

    def __init__(self, rate: Optional[int] = None, driver_name: Optional[str] = None) -> None:
        self.rate = rate
        self.driver_name = driver_name
        self._engine: Optional[Any] = None
        self._lock = threading.Lock()
        self._executor_lock = asyncio.Lock()

    def _get_engine(self) -> Any:
        if self._engine is None:
            self._engine = pyttsx3.init(self.driver_name)
            if self.rate is not None:
                self._engine.setProperty("rate", self.rate)
        return self._engine

    async def voices(self) -> List[Voice]:
        loop = asyncio.get_running_loop()

        def _list() -> List[Voice]:
            with self._lock:
                raw = self._get_engine().getProperty("voices") or []
            return [Voice(v.id, getattr(v, "name", "") or "", _voice_language(v)) for v in raw]

        try:
            return await loop.run_in_executor(None, _list)
        except Exception as exc:
            raise FallbackSynthesisFailed(f"Cannot list on-device voices: {exc}") from exc

    async def speak(self, text: str, voice: Optional[Voice] = None) -> None:
        loop = asyncio.get_running_loop()

        def _speak() -> None:
            with self._lock:
                engine = self._get_engine()
                if voice is not None:
                    engine.setProperty("voice", voice.id)
                engine.say(text)
                engine.runAndWait()

        async with self._executor_lock:
            try:
                await loop.run_in_executor(None, _speak)
            except Exception as exc:
                raise FallbackSynthesisFailed(f"On-device speech failed: {exc}") from exc

    def cancel(self) -> None:
        if self._engine is not None:
            self._engine.stop()
