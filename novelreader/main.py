"""FastAPI application for the novel reader service.

The API serves novels and chapters from SQLite and synthesizes speech
for the narration client:

* ``POST /api/stream`` returns the narration of ``text`` as a streamed
  ``audio/mpeg`` body. This is the endpoint
  :class:`~novelreader.fetcher.AudioFetcher` and
  :class:`~novelreader.streaming.StreamingPlayer` talk to.
* ``POST /api/tts`` returns the same audio base64-encoded in JSON.
* ``/api/novels`` and ``/api/novel/...`` list, create and upload novels
  and chapters.

The database is initialised on startup; the TTS provider is chosen from
the environment (see :func:`novelreader.tts.get_provider`).
"""

from __future__ import annotations

import base64
import logging
from typing import Any, AsyncIterator, Dict, List

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from . import db, extractor, tts
from .chunker import split_text
from .config import ChunkingConfig

logger = logging.getLogger(__name__)

app = FastAPI(title="Novel Reader")

PROVIDER = tts.get_provider()

# Long texts are synthesized piecewise; 4096 characters is OpenAI's input limit.
SYNTHESIS_CHUNKING = ChunkingConfig(first_chunk_chars=1000, chunk_chars=3200, max_chunks=1000)


@app.on_event("startup")
async def on_startup() -> None:
    db.init_db()
    logger.info("Using TTS provider %r, database %s", PROVIDER.name, db.DB_PATH)


async def _read_json(request: Request) -> Dict[str, Any]:
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return data


async def _read_synthesis_request(request: Request) -> Dict[str, Any]:
    data = await _read_json(request)
    text = data.get("text")
    if not isinstance(text, str) or not text.strip():
        raise HTTPException(status_code=400, detail="Text is required")
    return data


async def _synthesize(text: str, voice: Any) -> bytes:
    try:
        audio, _ = await PROVIDER.synthesize(text, voice)
    except Exception as exc:
        logger.exception("TTS synthesis failed for %d characters", len(text))
        raise HTTPException(status_code=500, detail="TTS synthesis failed") from exc
    return audio


@app.post("/api/stream")
async def stream_endpoint(request: Request) -> Response:
    """Stream narration audio for ``text``, one synthesized piece at a time.

    The first piece is synthesized before the response starts so that a
    failing provider still produces a proper 500. Failures further into
    the text end the stream early.
    """
    data = await _read_synthesis_request(request)
    voice = data.get("voice")
    pieces = split_text(data["text"], SYNTHESIS_CHUNKING)
    first = await _synthesize(pieces[0], voice)

    async def body() -> AsyncIterator[bytes]:
        yield first
        for piece in pieces[1:]:
            try:
                audio, _ = await PROVIDER.synthesize(piece, voice)
            except Exception:
                logger.exception("TTS synthesis failed mid-stream, ending response")
                return
            yield audio

    return StreamingResponse(body(), media_type="audio/mpeg")


@app.post("/api/tts")
async def tts_endpoint(request: Request) -> Response:
    """Synthesize ``text`` and return it as ``{"audioContent": base64}``."""
    data = await _read_synthesis_request(request)
    voice = data.get("voice")
    audio = b"".join([await _synthesize(piece, voice)
                      for piece in split_text(data["text"], SYNTHESIS_CHUNKING)])
    return JSONResponse({"audioContent": base64.b64encode(audio).decode("ascii")})


@app.get("/api/novels")
async def list_novels() -> Response:
    return JSONResponse(db.list_novels())


@app.post("/api/novels")
async def create_novel(request: Request) -> Response:
    """Create a novel from ``name`` plus optional author, description, genre, image."""
    data = await _read_json(request)
    if not str(data.get("name") or "").strip():
        raise HTTPException(status_code=400, detail="Missing 'name' in request body")
    novel_id = db.insert_novel(data)
    logger.info("Created novel %d: %s", novel_id, data["name"])
    return JSONResponse({"success": True, "novel_id": novel_id}, status_code=201)


def _require_novel(novel_id: int) -> Dict[str, Any]:
    novel = db.get_novel(novel_id)
    if not novel:
        raise HTTPException(status_code=404, detail="Novel not found")
    return novel


@app.get("/api/novel/{novel_id}/chapters")
async def chapter_list(novel_id: int) -> Response:
    _require_novel(novel_id)
    chapters: List[Dict[str, Any]] = db.get_chapters(novel_id)
    return JSONResponse(chapters)


@app.get("/api/novel/{novel_id}/chapters/{chapter_number}")
async def chapter_detail(novel_id: int, chapter_number: int) -> Response:
    chapter = db.get_chapter(novel_id, chapter_number)
    if not chapter:
        raise HTTPException(status_code=404, detail="Chapter not found")
    return JSONResponse(chapter)


@app.post("/api/novel/{novel_id}/upload")
async def upload_chapters(novel_id: int, request: Request) -> Response:
    """Parse chapter headings out of ``text`` and store the chapters.

    Existing chapter numbers are skipped unless ``overwrite`` is true,
    in which case they are updated.
    """
    _require_novel(novel_id)
    data = await _read_json(request)
    text = data.get("text")
    if not isinstance(text, str) or not text.strip():
        raise HTTPException(status_code=400, detail="Missing 'text' in request body")
    chapters = extractor.parse_chapters(text)
    if not chapters:
        raise HTTPException(status_code=422, detail="No chapter headings found")
    # Only a JSON true overwrites; strings such as "false" do not.
    counts = db.save_chapters(novel_id, chapters, overwrite=data.get("overwrite") is True)
    logger.info("Upload for novel %d complete: %s", novel_id, counts)
    return JSONResponse({"parsed": len(chapters), **counts})
