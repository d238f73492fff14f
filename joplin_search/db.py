from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Optional, Sequence

import aiosqlite

from .errors import DatabaseError
from .types import Note


DEFAULT_BUSY_TIMEOUT_MS = 5000

_NOTE_COLUMNS = "id, title, body, updated_time"

# Joplin keeps conflicted copies and soft-deleted notes in the same table.
_LIVE_NOTE_FILTER = "is_conflict = 0 AND deleted_time = 0"


@asynccontextmanager
async def connect(db_path: str, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> AsyncIterator[aiosqlite.Connection]:
    """Open the Joplin database read-only.

    journal_mode has to be issued before query_only: query_only also blocks
    pragma writes.
    """
    if not os.path.isfile(db_path):
        raise DatabaseError(f"Database not found: {db_path}")
    try:
        conn = await aiosqlite.connect(db_path)
    except Exception as exc:
        raise DatabaseError(f"Failed to open database {db_path}: {exc}") from exc
    try:
        try:
            await conn.execute("PRAGMA journal_mode=WAL;")
            await conn.execute("PRAGMA query_only=ON;")
            await conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)};")
        except Exception as exc:
            raise DatabaseError(f"Failed to configure database {db_path}: {exc}") from exc
        yield conn
    finally:
        await conn.close()


def _row_to_note(row: Sequence[Any]) -> Optional[Note]:
    note_id, title, body, updated_time = row
    if not isinstance(note_id, str) or isinstance(updated_time, bool) or not isinstance(updated_time, int):
        logging.warning("Skipping malformed note row (id=%r)", note_id)
        return None
    return Note(
        id=note_id,
        title=title if isinstance(title, str) else "",
        body=body if isinstance(body, str) else "",
        updated_time=updated_time,
    )


def _rows_to_notes(rows: Sequence[Sequence[Any]]) -> List[Note]:
    notes: List[Note] = []
    for row in rows:
        note = _row_to_note(row)
        if note is None or not note.body.strip():
            continue
        notes.append(note)
    return notes


async def _fetchall(conn: aiosqlite.Connection, sql: str, params: Sequence[Any] = ()) -> List[Any]:
    try:
        async with conn.execute(sql, tuple(params)) as cursor:
            return list(await cursor.fetchall())
    except Exception as exc:
        raise DatabaseError(f"Query failed: {exc}") from exc


async def get_all_notes(conn: aiosqlite.Connection) -> List[Note]:
    """All live, non-empty notes, most recently updated first."""
    rows = await _fetchall(
        conn,
        f"""
        SELECT {_NOTE_COLUMNS}
        FROM notes
        WHERE {_LIVE_NOTE_FILTER}
          AND trim(body) != ''
        ORDER BY updated_time DESC
        """,
    )
    return _rows_to_notes(rows)


async def get_note_by_id(conn: aiosqlite.Connection, note_id: str) -> Optional[Note]:
    rows = await _fetchall(
        conn,
        f"SELECT {_NOTE_COLUMNS} FROM notes WHERE id = ? AND {_LIVE_NOTE_FILTER} LIMIT 1",
        (note_id,),
    )
    if not rows:
        return None
    return _row_to_note(rows[0])


async def has_notes_since(conn: aiosqlite.Connection, since_ms: int) -> bool:
    """Cheap probe: has any note changed or been deleted after since_ms?"""
    changed = await _fetchall(
        conn,
        f"SELECT 1 FROM notes WHERE {_LIVE_NOTE_FILTER} AND updated_time > ? LIMIT 1",
        (int(since_ms),),
    )
    if changed:
        return True
    deleted = await _fetchall(
        conn,
        "SELECT 1 FROM notes WHERE is_conflict = 0 AND deleted_time > ? LIMIT 1",
        (int(since_ms),),
    )
    return bool(deleted)


async def get_deleted_note_ids_since(conn: aiosqlite.Connection, since_ms: int) -> List[str]:
    rows = await _fetchall(
        conn,
        "SELECT id FROM notes WHERE is_conflict = 0 AND deleted_time > ?",
        (int(since_ms),),
    )
    return [row[0] for row in rows if isinstance(row[0], str)]


async def get_notes_since(conn: aiosqlite.Connection, since_ms: int) -> List[Note]:
    rows = await _fetchall(
        conn,
        f"""
        SELECT {_NOTE_COLUMNS}
        FROM notes
        WHERE {_LIVE_NOTE_FILTER}
          AND trim(body) != ''
          AND updated_time > ?
        ORDER BY updated_time DESC
        """,
        (int(since_ms),),
    )
    return _rows_to_notes(rows)
