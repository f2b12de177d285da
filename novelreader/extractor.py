"""Split an uploaded novel text into chapters.

Uploads are plain text with a heading line per chapter, either
Vietnamese (``Chương 12: Tiêu đề``) or English (``Chapter 12 - Title``).
Everything between one heading and the next is that chapter's content.
Text before the first heading is ignored.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, List

CHAPTER_HEADING = re.compile(
    r"^[ \t]*(?:Chương|Chapter)[ \t]+(\d+)[ \t]*[:.\-–—]?[ \t]*(.*?)[ \t]*$",
    re.IGNORECASE | re.MULTILINE,
)

# Unicode combining diacritical marks.
_COMBINING_MARKS = re.compile("[\u0300-\u036f]")


def normalize_name(name: str) -> str:
    """Strip Vietnamese diacritics so chapter names can be searched as ASCII."""
    decomposed = unicodedata.normalize("NFD", name)
    return _COMBINING_MARKS.sub("", decomposed).replace("đ", "d").replace("Đ", "D")


def parse_chapters(text: str) -> List[Dict[str, Any]]:
    """Return ``chapter_number``/``chapter_name``/``chapter_content`` dicts.

    A heading without a title gets ``"Chapter N"`` as its name. Chapters
    are returned in the order they appear in ``text``.
    """
    matches = list(CHAPTER_HEADING.finditer(text))
    chapters: List[Dict[str, Any]] = []
    for i, match in enumerate(matches):
        number = int(match.group(1))
        name = match.group(2).strip() or f"Chapter {number}"
        end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
        chapters.append({
            "chapter_number": number,
            "chapter_name": name,
            "chapter_name_normalized": normalize_name(name),
            "chapter_content": text[match.end():end].strip(),
        })
    return chapters
