"""tagging_schema.py

SQLAlchemy Core schema for the annotation store (data.db).

Design goals:
- One generic *note* row per annotation; clips, tackles and free-form notes differ
  only in which child rows they carry.
- Child tables reference notes(id) with ON DELETE CASCADE, so deleting a note is a
  single statement.
- *videos* is the canonical record of a file keyed by its exact path string.

DDL is compiled for the SQLite dialect and executed on a plain sqlite3 connection;
queries elsewhere are raw SQL against that connection.

NOTE: timing columns are REAL seconds. "end" is a keyword, quote it in raw SQL.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Sequence

from sqlalchemy import (
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    text,
)
from sqlalchemy.dialects import sqlite as sqlite_dialect
from sqlalchemy.schema import CreateIndex, CreateTable

from tagging_errors import StoreError

logger = logging.getLogger(__name__)

APP_DIR_NAME = "tagging-rugby"
DB_FILENAME = "data.db"

TACKLE_OUTCOMES = ("completed", "missed", "possible", "other")

metadata = MetaData()

notes = Table(
    "notes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("category", String, nullable=True),
    Column("created_at", String, nullable=False, server_default=text("CURRENT_TIMESTAMP")),
    Index("idx_notes_category", "category"),
)

videos = Table(
    "videos",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("path", Text, nullable=False, unique=True),
    Column("filename", Text, nullable=True),
    Column("extension", String(32), nullable=True),
    Column("format", String(32), nullable=True),
    Column("filesize", Integer, nullable=True),
    Column("duration", Float, nullable=True),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String, nullable=False, unique=True),
    Column("created_at", String, nullable=False, server_default=text("CURRENT_TIMESTAMP")),
)

note_timing = Table(
    "note_timing",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("note_id", Integer, ForeignKey("notes.id", ondelete="CASCADE"), nullable=False),
    Column("start", Float, nullable=False),
    Column("end", Float, nullable=False),
    CheckConstraint('"end" >= start', name="ck_note_timing_order"),
    Index("idx_note_timing_note", "note_id"),
)

note_videos = Table(
    "note_videos",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("note_id", Integer, ForeignKey("notes.id", ondelete="CASCADE"), nullable=False),
    Column("path", Text, nullable=False),
    Column("duration", Float, nullable=True),
    Column("stopped_at", Float, nullable=True),
    Column("size", Integer, nullable=True),
    Column("format", String(32), nullable=True),
    Index("idx_note_videos_note", "note_id"),
    Index("idx_note_videos_path", "path"),
)

note_details = Table(
    "note_details",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("note_id", Integer, ForeignKey("notes.id", ondelete="CASCADE"), nullable=False),
    Column("type", String, nullable=False),
    Column("note", Text, nullable=False),
    Index("idx_note_details_note", "note_id"),
)

note_zones = Table(
    "note_zones",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("note_id", Integer, ForeignKey("notes.id", ondelete="CASCADE"), nullable=False),
    Column("zone", String, nullable=False),
    Index("idx_note_zones_note", "note_id"),
)

note_highlights = Table(
    "note_highlights",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("note_id", Integer, ForeignKey("notes.id", ondelete="CASCADE"), nullable=False),
    Column("type", String, nullable=False),
    Index("idx_note_highlights_note", "note_id"),
)

note_tackles = Table(
    "note_tackles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("note_id", Integer, ForeignKey("notes.id", ondelete="CASCADE"), nullable=False),
    Column("player", String, nullable=False),
    Column("team", String, nullable=True),
    Column("attempt", Integer, nullable=False, server_default="1"),
    Column("outcome", String, nullable=False),
    Column("followed", String, nullable=True),
    CheckConstraint(
        "outcome IN ({})".format(", ".join(f"'{o}'" for o in TACKLE_OUTCOMES)),
        name="ck_note_tackles_outcome",
    ),
    Index("idx_note_tackles_note", "note_id"),
    Index("idx_note_tackles_player", "player"),
)

CHILD_TABLES = (
    note_timing,
    note_videos,
    note_details,
    note_zones,
    note_highlights,
    note_tackles,
)

# Forward-only additions for stores created before the column existed.
# (table, column, DDL type)
COLUMN_ADDITIONS: tuple[tuple[str, str, str], ...] = (
    ("videos", "stop_time", "REAL"),
)


def default_data_dir() -> Path:
    env = os.environ.get("TAGGING_RUGBY_DATA_DIR")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".local" / "share" / APP_DIR_NAME


def default_db_path() -> Path:
    env = os.environ.get("TAGGING_RUGBY_DB")
    if env:
        return Path(env).expanduser()
    return default_data_dir() / DB_FILENAME


def connect_db(db_path: str | os.PathLike[str]) -> sqlite3.Connection:
    # isolation_level=None: transactions are opened explicitly with begin_immediate().
    con = sqlite3.connect(str(db_path), isolation_level=None)
    con.row_factory = sqlite3.Row
    # Cascade delete depends on this; sqlite defaults it to off per connection.
    con.execute("PRAGMA foreign_keys = ON")
    con.execute("PRAGMA busy_timeout = 5000")
    con.execute("SELECT 1").fetchone()
    return con


def _ddl(element: Any) -> str:
    return str(element.compile(dialect=sqlite_dialect.dialect())).strip()


def _columns(con: sqlite3.Connection, table: str) -> set[str]:
    return {r["name"] for r in con.execute(f"PRAGMA table_info({table})").fetchall()}


def create_schema_if_needed(con: sqlite3.Connection) -> None:
    for t in metadata.sorted_tables:
        con.execute(_ddl(CreateTable(t, if_not_exists=True)))
        for ix in t.indexes:
            con.execute(_ddl(CreateIndex(ix, if_not_exists=True)))
    for table, column, ddl_type in COLUMN_ADDITIONS:
        if column not in _columns(con, table):
            logger.debug("schema: adding %s.%s", table, column)
            con.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl_type}")


def open_db(db_path: str | os.PathLike[str] | None = None) -> sqlite3.Connection:
    """Open (and create if missing) the store, bringing the schema up to date."""
    p = Path(db_path) if db_path else default_db_path()
    try:
        p.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
        con = connect_db(p)
    except (OSError, sqlite3.Error) as e:
        raise StoreError(f"failed to open database {p}: {e}") from e
    try:
        create_schema_if_needed(con)
    except sqlite3.Error as e:
        con.close()
        raise StoreError(f"failed to initialize schema: {e}") from e
    logger.debug("opened store %s", p)
    return con


def begin_immediate(con: sqlite3.Connection) -> None:
    con.execute("BEGIN IMMEDIATE")


@contextmanager
def transaction(con: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """BEGIN IMMEDIATE ... COMMIT; rolls back and raises StoreError on sqlite errors."""
    try:
        begin_immediate(con)
    except sqlite3.Error as e:
        logger.warning("store transaction could not start: %s", e)
        raise StoreError(f"database is busy: {e}") from e
    try:
        yield con
        con.execute("COMMIT")
    except sqlite3.Error as e:
        con.execute("ROLLBACK")
        logger.warning("store transaction rolled back: %s", e)
        raise StoreError(str(e)) from e
    except BaseException:
        con.execute("ROLLBACK")
        raise


def fetchall(con: sqlite3.Connection, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
    try:
        return con.execute(sql, tuple(params)).fetchall()
    except sqlite3.Error as e:
        raise StoreError(str(e)) from e


def fetchone(con: sqlite3.Connection, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
    try:
        return con.execute(sql, tuple(params)).fetchone()
    except sqlite3.Error as e:
        raise StoreError(str(e)) from e
