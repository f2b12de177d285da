"""Sentence-bounded text chunking for speech synthesis.

Narration text is split into chunks, one synthesis request each. Small
chunks start playing sooner; large chunks mean fewer requests and
fewer audible seams. The splitter therefore:

* segments the text into sentence-like pieces on ``. ! ? ;`` (and
  ``…``) followed by whitespace, tolerating closing quotes and
  brackets after the punctuation, and on newlines;
* greedily packs whole pieces into a chunk until the next piece would
  push it over the target length;
* uses a smaller target for the first chunk, so the first request
  returns quickly;
* raises the target for later chunks when the text is long, so that
  the number of requests stays near ``max_chunks``.

A piece longer than the target is never cut; it becomes a chunk of its
own. Every emitted chunk is stripped and non-empty, and the chunks
joined together contain exactly the non-whitespace content of the
input.
"""

from __future__ import annotations

import math
import re
from typing import List, Optional

from .config import ChunkingConfig

_SENTENCE_END = re.compile(r"[.!?;…]+[\"'”’»)\]]*(?:\s+|$)|\n\s*")


def split_sentences(text: str) -> List[str]:
    """Split ``text`` into sentence pieces that join back to ``text``.

    Trailing whitespace stays attached to the piece it follows, so
    ``"".join(split_sentences(text)) == text`` always holds.
    """
    pieces: List[str] = []
    start = 0
    for match in _SENTENCE_END.finditer(text):
        pieces.append(text[start:match.end()])
        start = match.end()
    if start < len(text):
        pieces.append(text[start:])
    return pieces


def _later_chunk_target(text: str, config: ChunkingConfig) -> int:
    """Target length for every chunk after the first one."""
    target = config.chunk_chars
    if config.max_chunks > 1:
        remaining = max(0, len(text) - config.first_chunk_chars)
        target = max(target, math.ceil(remaining / (config.max_chunks - 1)))
    return target


def split_text(text: str, config: Optional[ChunkingConfig] = None) -> List[str]:
    """Split ``text`` into an ordered list of playable chunks.

    Blank input yields a single chunk equal to the trimmed input (the
    empty string). Otherwise every chunk is stripped and non-empty, and
    no sentence is split across two chunks.
    """
    if config is None:
        config = ChunkingConfig()
    if not text.strip():
        return [text.strip()]

    chunks: List[str] = []
    target = config.first_chunk_chars
    later_target = _later_chunk_target(text, config)
    buf = ""
    for sentence in split_sentences(text):
        if buf.strip() and len((buf + sentence).strip()) > target:
            chunks.append(buf.strip())
            buf = ""
            target = later_target
        buf += sentence
    if buf.strip():
        chunks.append(buf.strip())
    return chunks
