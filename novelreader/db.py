"""Database helpers for the novel reader service.

Novels and their chapters live in an SQLite database. Each helper opens
its own connection with the standard ``sqlite3`` module and closes it
before returning, so the helpers are safe to call from any request
handler. Rows come back as plain dictionaries.

Chapters are identified within a novel by ``chapter_number``; the pair
``(novel_id, chapter_number)`` is unique.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("NOVELREADER_DB", "novelreader.db")


def get_connection() -> sqlite3.Connection:
    """Return a new connection whose rows can be turned into dicts."""
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db() -> None:
    """Create the tables if they do not exist yet. Safe to call repeatedly."""
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS novels (
            id INTEGER PRIMARY KEY,
            novel_name TEXT NOT NULL,
            novel_description TEXT NOT NULL DEFAULT '',
            novel_author TEXT NOT NULL DEFAULT '',
            novel_genre TEXT NOT NULL DEFAULT '',
            novel_image_link TEXT
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS chapters (
            id INTEGER PRIMARY KEY,
            novel_id INTEGER NOT NULL REFERENCES novels(id),
            chapter_number INTEGER NOT NULL,
            chapter_name TEXT NOT NULL,
            chapter_name_normalized TEXT NOT NULL,
            chapter_content TEXT NOT NULL,
            UNIQUE (novel_id, chapter_number)
        )
        """
    )
    conn.commit()
    conn.close()


def insert_novel(novel: Dict[str, Any]) -> int:
    """Insert a novel and return its new id.

    ``novel`` uses the request field names (``name``, ``author``,
    ``description``, ``genre``, ``image``); missing text fields are
    stored as empty strings.
    """
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO novels(novel_name, novel_author, novel_description,
                           novel_genre, novel_image_link)
        VALUES (?, ?, ?, ?, ?)
        """,
        (
            novel["name"],
            novel.get("author") or "",
            novel.get("description") or "",
            novel.get("genre") or "",
            novel.get("image"),
        ),
    )
    novel_id = cur.lastrowid
    conn.commit()
    conn.close()
    return novel_id


def get_novel(novel_id: int) -> Optional[Dict[str, Any]]:
    conn = get_connection()
    cur = conn.cursor()
    cur.execute("SELECT * FROM novels WHERE id = ?", (novel_id,))
    row = cur.fetchone()
    conn.close()
    return dict(row) if row else None


def list_novels() -> List[Dict[str, Any]]:
    """Return all novels, most recently added first."""
    conn = get_connection()
    cur = conn.cursor()
    cur.execute("SELECT * FROM novels ORDER BY id DESC")
    rows = cur.fetchall()
    conn.close()
    return [dict(row) for row in rows]


def save_chapters(novel_id: int, chapters: List[Dict[str, Any]],
                  overwrite: bool = False) -> Dict[str, int]:
    """Store parsed chapters for a novel.

    A chapter whose number already exists is skipped, or updated in
    place when ``overwrite`` is true. Returns how many chapters were
    inserted, updated and skipped.
    """
    counts = {"inserted": 0, "updated": 0, "skipped": 0}
    conn = get_connection()
    cur = conn.cursor()
    for chapter in chapters:
        values = (
            chapter["chapter_name"],
            chapter["chapter_name_normalized"],
            chapter["chapter_content"],
            novel_id,
            chapter["chapter_number"],
        )
        try:
            cur.execute(
                """
                INSERT INTO chapters(chapter_name, chapter_name_normalized,
                                     chapter_content, novel_id, chapter_number)
                VALUES (?, ?, ?, ?, ?)
                """,
                values,
            )
        except sqlite3.IntegrityError:
            if not overwrite:
                logger.info("Chapter %d already exists, skipping", chapter["chapter_number"])
                counts["skipped"] += 1
                continue
            cur.execute(
                """
                UPDATE chapters SET chapter_name = ?, chapter_name_normalized = ?,
                                    chapter_content = ?
                WHERE novel_id = ? AND chapter_number = ?
                """,
                values,
            )
            logger.info("Updated chapter %d: %s", chapter["chapter_number"], chapter["chapter_name"])
            counts["updated"] += 1
        else:
            logger.info("Uploaded chapter %d: %s", chapter["chapter_number"], chapter["chapter_name"])
            counts["inserted"] += 1
    conn.commit()
    conn.close()
    return counts


def get_chapters(novel_id: int) -> List[Dict[str, Any]]:
    """Return the chapter list of a novel (without content), in order."""
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT chapter_number, chapter_name, chapter_name_normalized
        FROM chapters WHERE novel_id = ? ORDER BY chapter_number ASC
        """,
        (novel_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [dict(row) for row in rows]


def get_chapter(novel_id: int, chapter_number: int) -> Optional[Dict[str, Any]]:
    conn = get_connection()
    cur = conn.cursor()
    cur.execute(
        "SELECT * FROM chapters WHERE novel_id = ? AND chapter_number = ?",
        (novel_id, chapter_number),
    )
    row = cur.fetchone()
    conn.close()
    return dict(row) if row else None
