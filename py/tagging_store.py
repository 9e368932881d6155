"""tagging_store.py

Typed insert/select/delete operations on the note graph:

  note -> note_timing, note_videos, note_details, note_zones, note_highlights, note_tackles

Every write is one BEGIN IMMEDIATE transaction; a failure in any step rolls the whole
note back. Listings are scoped to one video path (matched exactly) and ordered by
ascending start time.

Conventions for detail rows (note_details.type):
  text         free-form note text (note add)
  description  clip description
  notes        tackle notes
  player/team  player/team on notes and clips
"""

from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass, field
from typing import Iterable

from tagging_errors import NotFoundError, ValidationError
from tagging_schema import TACKLE_OUTCOMES, fetchall, fetchone, transaction

logger = logging.getLogger(__name__)

TEXT_DETAIL_TYPES = ("text", "description", "notes")
STAR = "star"


@dataclass
class Note:
    id: int
    category: str | None
    created_at: str


@dataclass
class NoteTiming:
    start: float
    end: float
    id: int | None = None
    note_id: int | None = None


@dataclass
class NoteVideo:
    path: str
    duration: float | None = None
    stopped_at: float | None = None
    size: int | None = None
    format: str | None = None
    id: int | None = None
    note_id: int | None = None


@dataclass
class NoteDetail:
    type: str
    note: str
    id: int | None = None
    note_id: int | None = None


@dataclass
class NoteZone:
    zone: str
    id: int | None = None
    note_id: int | None = None


@dataclass
class NoteHighlight:
    type: str
    id: int | None = None
    note_id: int | None = None


@dataclass
class NoteTackle:
    player: str
    outcome: str
    attempt: int = 1
    team: str | None = None
    followed: str | None = None
    id: int | None = None
    note_id: int | None = None


@dataclass
class NoteChildren:
    timings: list[NoteTiming] = field(default_factory=list)
    videos: list[NoteVideo] = field(default_factory=list)
    details: list[NoteDetail] = field(default_factory=list)
    zones: list[NoteZone] = field(default_factory=list)
    highlights: list[NoteHighlight] = field(default_factory=list)
    tackles: list[NoteTackle] = field(default_factory=list)

    def detail(self, type_: str) -> str | None:
        for d in self.details:
            if d.type == type_:
                return d.note
        return None


@dataclass
class NoteListRow:
    id: int
    category: str | None
    start: float
    end: float
    text: str | None = None
    player: str | None = None
    team: str | None = None
    outcome: str | None = None
    attempt: int | None = None
    zone: str | None = None
    starred: bool = False
    created_at: str = ""

    @property
    def is_tackle(self) -> bool:
        return self.outcome is not None


@dataclass
class ClipRow:
    id: int
    start: float
    end: float
    description: str
    category: str | None
    video_path: str

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass
class TackleRow:
    id: int
    start: float
    player: str
    team: str | None
    attempt: int
    outcome: str
    followed: str | None
    notes: str | None
    zone: str | None
    starred: bool


@dataclass
class PlayerStats:
    player: str
    total: int = 0
    completed: int = 0
    missed: int = 0
    possible: int = 0
    other: int = 0
    starred: int = 0

    @property
    def completion_pct(self) -> float:
        denom = self.completed + self.missed
        if denom == 0:
            return 0.0
        return self.completed / denom * 100


def validate_outcome(outcome: str) -> str:
    if outcome not in TACKLE_OUTCOMES:
        raise ValidationError(
            f"invalid outcome '{outcome}': must be one of: missed, completed, possible, other"
        )
    return outcome


def _validate_timing(t: NoteTiming) -> None:
    if t.end < t.start:
        raise ValidationError(f"end ({t.end:.3f}) must not be before start ({t.start:.3f})")
    if t.start < 0:
        raise ValidationError("start must not be negative")


def _validate_tackle(k: NoteTackle) -> None:
    if not (k.player or "").strip():
        raise ValidationError("--player is required")
    validate_outcome(k.outcome)
    if int(k.attempt) < 1:
        raise ValidationError("attempt must be a positive integer")


def _validate_children(children: NoteChildren) -> None:
    if not children.timings:
        raise ValidationError("a note needs at least one timing")
    if not children.videos:
        raise ValidationError("a note needs at least one video")
    for t in children.timings:
        _validate_timing(t)
    for v in children.videos:
        if not v.path:
            raise ValidationError("video path is empty")
    for k in children.tackles:
        _validate_tackle(k)


def ensure_video(con: sqlite3.Connection, v: NoteVideo) -> int:
    """Resolve-or-insert the videos row for v.path (exact match). Caller holds the transaction."""
    row = con.execute("SELECT id FROM videos WHERE path = ?", (v.path,)).fetchone()
    if row:
        if v.duration:
            con.execute(
                "UPDATE videos SET duration = ? WHERE id = ? AND duration IS NULL",
                (v.duration, row["id"]),
            )
        return int(row["id"])
    filename = os.path.basename(v.path)
    ext = os.path.splitext(filename)[1].lstrip(".").lower() or None
    cur = con.execute(
        """
        INSERT INTO videos (path, filename, extension, format, filesize, duration)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (v.path, filename, ext, v.format or ext, v.size, v.duration),
    )
    return int(cur.lastrowid)


def _insert_timings(con: sqlite3.Connection, note_id: int, rows: Iterable[NoteTiming]) -> None:
    for t in rows:
        con.execute(
            'INSERT INTO note_timing (note_id, start, "end") VALUES (?, ?, ?)',
            (note_id, float(t.start), float(t.end)),
        )


def _insert_details(con: sqlite3.Connection, note_id: int, rows: Iterable[NoteDetail]) -> None:
    for d in rows:
        con.execute(
            "INSERT INTO note_details (note_id, type, note) VALUES (?, ?, ?)",
            (note_id, d.type, d.note),
        )


def _insert_zones(con: sqlite3.Connection, note_id: int, rows: Iterable[NoteZone]) -> None:
    for z in rows:
        con.execute("INSERT INTO note_zones (note_id, zone) VALUES (?, ?)", (note_id, z.zone))


def _insert_highlights(con: sqlite3.Connection, note_id: int, rows: Iterable[NoteHighlight]) -> None:
    for h in rows:
        con.execute("INSERT INTO note_highlights (note_id, type) VALUES (?, ?)", (note_id, h.type))


def _insert_tackles(con: sqlite3.Connection, note_id: int, rows: Iterable[NoteTackle]) -> None:
    for k in rows:
        con.execute(
            """
            INSERT INTO note_tackles (note_id, player, team, attempt, outcome, followed)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (note_id, k.player, k.team, int(k.attempt), k.outcome, k.followed),
        )


def insert_note_with_children(
    con: sqlite3.Connection, category: str | None, children: NoteChildren
) -> int:
    _validate_children(children)
    with transaction(con):
        cur = con.execute("INSERT INTO notes (category) VALUES (?)", (category or None,))
        note_id = int(cur.lastrowid)
        for v in children.videos:
            ensure_video(con, v)
            con.execute(
                """
                INSERT INTO note_videos (note_id, path, duration, stopped_at, size, format)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (note_id, v.path, v.duration, v.stopped_at, v.size, v.format),
            )
        _insert_timings(con, note_id, children.timings)
        _insert_details(con, note_id, children.details)
        _insert_zones(con, note_id, children.zones)
        _insert_highlights(con, note_id, children.highlights)
        _insert_tackles(con, note_id, children.tackles)
    logger.debug("inserted note %d (category=%s)", note_id, category)
    return note_id


def update_note_with_children(
    con: sqlite3.Connection,
    note_id: int,
    *,
    category: str | None = None,
    timing: NoteTiming | None = None,
    details: dict[str, str | None] | None = None,
    zones: list[str] | None = None,
    highlights: list[str] | None = None,
    tackle: NoteTackle | None = None,
) -> None:
    """Replace the given child kinds of one note.

    Arguments left as None are untouched. `details` maps detail type -> text; every
    row of each listed type is deleted and a non-empty text is re-inserted.
    """
    if timing is not None:
        _validate_timing(timing)
    if tackle is not None:
        _validate_tackle(tackle)
    with transaction(con):
        if not con.execute("SELECT 1 FROM notes WHERE id = ?", (note_id,)).fetchone():
            raise NotFoundError(f"note with ID {note_id} not found")
        if category is not None:
            con.execute("UPDATE notes SET category = ? WHERE id = ?", (category or None, note_id))
        if details:
            for type_, value in details.items():
                con.execute("DELETE FROM note_details WHERE note_id = ? AND type = ?", (note_id, type_))
                if value:
                    _insert_details(con, note_id, [NoteDetail(type_, value)])
        if zones is not None:
            con.execute("DELETE FROM note_zones WHERE note_id = ?", (note_id,))
            _insert_zones(con, note_id, [NoteZone(z) for z in zones if z])
        if highlights is not None:
            con.execute("DELETE FROM note_highlights WHERE note_id = ?", (note_id,))
            _insert_highlights(con, note_id, [NoteHighlight(h) for h in highlights if h])
        if tackle is not None:
            con.execute("DELETE FROM note_tackles WHERE note_id = ?", (note_id,))
            _insert_tackles(con, note_id, [tackle])
        if timing is not None:
            _update_timing(con, note_id, timing)
    logger.debug("updated note %d", note_id)


def _update_timing(con: sqlite3.Connection, note_id: int, timing: NoteTiming) -> None:
    row = con.execute(
        "SELECT id FROM note_timing WHERE note_id = ? ORDER BY id LIMIT 1", (note_id,)
    ).fetchone()
    if row:
        con.execute(
            'UPDATE note_timing SET start = ?, "end" = ? WHERE id = ?',
            (float(timing.start), float(timing.end), row["id"]),
        )
    else:
        _insert_timings(con, note_id, [timing])


def update_note_timing(con: sqlite3.Connection, note_id: int, start: float, end: float) -> None:
    timing = NoteTiming(start, end)
    _validate_timing(timing)
    with transaction(con):
        if not con.execute("SELECT 1 FROM notes WHERE id = ?", (note_id,)).fetchone():
            raise NotFoundError(f"note with ID {note_id} not found")
        _update_timing(con, note_id, timing)


def delete_note(con: sqlite3.Connection, note_id: int) -> bool:
    with transaction(con):
        cur = con.execute("DELETE FROM notes WHERE id = ?", (note_id,))
    logger.debug("deleted note %d (rows=%d)", note_id, cur.rowcount)
    return cur.rowcount > 0


def select_note(con: sqlite3.Connection, note_id: int) -> Note | None:
    r = fetchone(con, "SELECT id, category, created_at FROM notes WHERE id = ?", (note_id,))
    if not r:
        return None
    return Note(id=r["id"], category=r["category"], created_at=r["created_at"])


def select_timings_by_note(con: sqlite3.Connection, note_id: int) -> list[NoteTiming]:
    rows = fetchall(
        con,
        'SELECT id, note_id, start, "end" FROM note_timing WHERE note_id = ? ORDER BY id',
        (note_id,),
    )
    return [NoteTiming(start=r["start"], end=r["end"], id=r["id"], note_id=r["note_id"]) for r in rows]


def select_videos_by_note(con: sqlite3.Connection, note_id: int) -> list[NoteVideo]:
    rows = fetchall(
        con,
        """
        SELECT id, note_id, path, duration, stopped_at, size, format
        FROM note_videos WHERE note_id = ? ORDER BY id
        """,
        (note_id,),
    )
    return [
        NoteVideo(
            path=r["path"],
            duration=r["duration"],
            stopped_at=r["stopped_at"],
            size=r["size"],
            format=r["format"],
            id=r["id"],
            note_id=r["note_id"],
        )
        for r in rows
    ]


def select_details_by_note(con: sqlite3.Connection, note_id: int) -> list[NoteDetail]:
    rows = fetchall(
        con, "SELECT id, note_id, type, note FROM note_details WHERE note_id = ? ORDER BY id", (note_id,)
    )
    return [NoteDetail(type=r["type"], note=r["note"], id=r["id"], note_id=r["note_id"]) for r in rows]


def select_zones_by_note(con: sqlite3.Connection, note_id: int) -> list[NoteZone]:
    rows = fetchall(con, "SELECT id, note_id, zone FROM note_zones WHERE note_id = ? ORDER BY id", (note_id,))
    return [NoteZone(zone=r["zone"], id=r["id"], note_id=r["note_id"]) for r in rows]


def select_highlights_by_note(con: sqlite3.Connection, note_id: int) -> list[NoteHighlight]:
    rows = fetchall(
        con, "SELECT id, note_id, type FROM note_highlights WHERE note_id = ? ORDER BY id", (note_id,)
    )
    return [NoteHighlight(type=r["type"], id=r["id"], note_id=r["note_id"]) for r in rows]


def select_tackles_by_note(con: sqlite3.Connection, note_id: int) -> list[NoteTackle]:
    rows = fetchall(
        con,
        """
        SELECT id, note_id, player, team, attempt, outcome, followed
        FROM note_tackles WHERE note_id = ? ORDER BY id
        """,
        (note_id,),
    )
    return [
        NoteTackle(
            player=r["player"],
            outcome=r["outcome"],
            attempt=r["attempt"],
            team=r["team"],
            followed=r["followed"],
            id=r["id"],
            note_id=r["note_id"],
        )
        for r in rows
    ]


def text_detail_type(con: sqlite3.Connection, note_id: int) -> str:
    """The detail type that holds this note's visible text.

    An existing text/description/notes row wins; otherwise tackles use `notes`,
    clips `description` and everything else `text`.
    """
    r = fetchone(
        con,
        """
        SELECT type FROM note_details
        WHERE note_id = ? AND type IN ('text', 'description', 'notes')
        ORDER BY id LIMIT 1
        """,
        (note_id,),
    )
    if r:
        return r["type"]
    if fetchone(con, "SELECT 1 FROM note_tackles WHERE note_id = ?", (note_id,)):
        return "notes"
    if fetchone(con, 'SELECT 1 FROM note_timing WHERE note_id = ? AND "end" > start', (note_id,)):
        return "description"
    return "text"


def select_children(con: sqlite3.Connection, note_id: int) -> NoteChildren:
    return NoteChildren(
        timings=select_timings_by_note(con, note_id),
        videos=select_videos_by_note(con, note_id),
        details=select_details_by_note(con, note_id),
        zones=select_zones_by_note(con, note_id),
        highlights=select_highlights_by_note(con, note_id),
        tackles=select_tackles_by_note(con, note_id),
    )


_LIST_SQL = """
SELECT
  n.id AS id,
  n.category AS category,
  n.created_at AS created_at,
  COALESCE(MIN(t.start), 0) AS start,
  COALESCE(MAX(t."end"), 0) AS "end",
  (SELECT d.note FROM note_details d
     WHERE d.note_id = n.id AND d.type IN ('text', 'description', 'notes')
     ORDER BY d.id LIMIT 1) AS text,
  COALESCE(
    (SELECT k.player FROM note_tackles k WHERE k.note_id = n.id ORDER BY k.id LIMIT 1),
    (SELECT d.note FROM note_details d WHERE d.note_id = n.id AND d.type = 'player' ORDER BY d.id LIMIT 1)
  ) AS player,
  COALESCE(
    (SELECT k.team FROM note_tackles k WHERE k.note_id = n.id ORDER BY k.id LIMIT 1),
    (SELECT d.note FROM note_details d WHERE d.note_id = n.id AND d.type = 'team' ORDER BY d.id LIMIT 1)
  ) AS team,
  (SELECT k.outcome FROM note_tackles k WHERE k.note_id = n.id ORDER BY k.id LIMIT 1) AS outcome,
  (SELECT k.attempt FROM note_tackles k WHERE k.note_id = n.id ORDER BY k.id LIMIT 1) AS attempt,
  (SELECT z.zone FROM note_zones z WHERE z.note_id = n.id ORDER BY z.id LIMIT 1) AS zone,
  EXISTS (SELECT 1 FROM note_highlights h WHERE h.note_id = n.id AND h.type = 'star') AS starred
FROM notes n
JOIN note_videos v ON v.note_id = n.id
LEFT JOIN note_timing t ON t.note_id = n.id
WHERE v.path = ?
GROUP BY n.id
ORDER BY COALESCE(MIN(t.start), 0) ASC, n.id ASC
"""


def list_notes_for_video(con: sqlite3.Connection, video_path: str) -> list[NoteListRow]:
    rows = fetchall(con, _LIST_SQL, (video_path,))
    return [
        NoteListRow(
            id=r["id"],
            category=r["category"],
            start=float(r["start"]),
            end=float(r["end"]),
            text=r["text"],
            player=r["player"],
            team=r["team"],
            outcome=r["outcome"],
            attempt=r["attempt"],
            zone=r["zone"],
            starred=bool(r["starred"]),
            created_at=r["created_at"] or "",
        )
        for r in rows
    ]


def count_notes_for_video(con: sqlite3.Connection, video_path: str) -> int:
    r = fetchone(
        con, "SELECT COUNT(DISTINCT note_id) AS n FROM note_videos WHERE path = ?", (video_path,)
    )
    return int(r["n"]) if r else 0


def list_clips_for_video(con: sqlite3.Connection, video_path: str) -> list[ClipRow]:
    rows = fetchall(
        con,
        """
        SELECT n.id AS id, n.category AS category, t.start AS start, t."end" AS "end",
          COALESCE((SELECT d.note FROM note_details d
                      WHERE d.note_id = n.id AND d.type = 'description'
                      ORDER BY d.id LIMIT 1), '') AS description,
          v.path AS video_path
        FROM notes n
        JOIN note_videos v ON v.note_id = n.id
        JOIN note_timing t ON t.note_id = n.id
        WHERE v.path = ? AND t."end" > t.start
        GROUP BY n.id
        ORDER BY t.start ASC, n.id ASC
        """,
        (video_path,),
    )
    return [_clip_row(r) for r in rows]


def select_clip(con: sqlite3.Connection, clip_id: int) -> ClipRow:
    r = fetchone(
        con,
        """
        SELECT n.id AS id, n.category AS category, t.start AS start, t."end" AS "end",
          COALESCE((SELECT d.note FROM note_details d
                      WHERE d.note_id = n.id AND d.type = 'description'
                      ORDER BY d.id LIMIT 1), '') AS description,
          (SELECT v.path FROM note_videos v WHERE v.note_id = n.id ORDER BY v.id LIMIT 1) AS video_path
        FROM notes n
        JOIN note_timing t ON t.note_id = n.id
        WHERE n.id = ? AND t."end" > t.start
        ORDER BY t.id LIMIT 1
        """,
        (clip_id,),
    )
    if not r:
        raise NotFoundError(f"clip not found: ID {clip_id}")
    return _clip_row(r)


def _clip_row(r: sqlite3.Row) -> ClipRow:
    return ClipRow(
        id=r["id"],
        start=float(r["start"]),
        end=float(r["end"]),
        description=r["description"] or "",
        category=r["category"],
        video_path=r["video_path"] or "",
    )


def list_tackles_for_video(
    con: sqlite3.Connection,
    video_path: str,
    player: str | None = None,
    outcome: str | None = None,
    starred: bool = False,
) -> list[TackleRow]:
    if outcome:
        validate_outcome(outcome)
    where = ["v.path = ?"]
    params: list[object] = [video_path]
    if player:
        where.append("k.player = ?")
        params.append(player)
    if outcome:
        where.append("k.outcome = ?")
        params.append(outcome)
    if starred:
        where.append("EXISTS (SELECT 1 FROM note_highlights h WHERE h.note_id = n.id AND h.type = 'star')")
    rows = fetchall(
        con,
        f"""
        SELECT n.id AS id, COALESCE(MIN(t.start), 0) AS start,
          k.player AS player, k.team AS team, k.attempt AS attempt,
          k.outcome AS outcome, k.followed AS followed,
          (SELECT d.note FROM note_details d WHERE d.note_id = n.id AND d.type = 'notes'
             ORDER BY d.id LIMIT 1) AS notes,
          (SELECT z.zone FROM note_zones z WHERE z.note_id = n.id ORDER BY z.id LIMIT 1) AS zone,
          EXISTS (SELECT 1 FROM note_highlights h WHERE h.note_id = n.id AND h.type = 'star') AS starred
        FROM notes n
        JOIN note_tackles k ON k.note_id = n.id
        JOIN note_videos v ON v.note_id = n.id
        LEFT JOIN note_timing t ON t.note_id = n.id
        WHERE {" AND ".join(where)}
        GROUP BY n.id, k.id
        ORDER BY COALESCE(MIN(t.start), 0) ASC, n.id ASC
        """,
        params,
    )
    return [
        TackleRow(
            id=r["id"],
            start=float(r["start"]),
            player=r["player"],
            team=r["team"],
            attempt=r["attempt"],
            outcome=r["outcome"],
            followed=r["followed"],
            notes=r["notes"],
            zone=r["zone"],
            starred=bool(r["starred"]),
        )
        for r in rows
    ]


def tackle_stats(con: sqlite3.Connection, video_path: str | None = None) -> list[PlayerStats]:
    """Per-player tackle counts, for one video or (video_path=None) across all videos."""
    sql = """
        SELECT k.player AS player, k.outcome AS outcome,
          EXISTS (SELECT 1 FROM note_highlights h WHERE h.note_id = k.note_id AND h.type = 'star') AS starred
        FROM note_tackles k
    """
    params: tuple = ()
    if video_path is not None:
        sql += " WHERE EXISTS (SELECT 1 FROM note_videos v WHERE v.note_id = k.note_id AND v.path = ?)"
        params = (video_path,)
    stats: dict[str, PlayerStats] = {}
    for r in fetchall(con, sql, params):
        s = stats.setdefault(r["player"], PlayerStats(player=r["player"]))
        s.total += 1
        setattr(s, r["outcome"], getattr(s, r["outcome"]) + 1)
        if r["starred"]:
            s.starred += 1
    return sorted(stats.values(), key=lambda s: (-s.total, s.player))


def update_video_stop_time(con: sqlite3.Connection, video_path: str, stop_time: float) -> None:
    with transaction(con):
        ensure_video(con, NoteVideo(path=video_path))
        con.execute("UPDATE videos SET stop_time = ? WHERE path = ?", (float(stop_time), video_path))


def get_video_stop_time(con: sqlite3.Connection, video_path: str) -> float | None:
    r = fetchone(con, "SELECT stop_time FROM videos WHERE path = ?", (video_path,))
    if not r or r["stop_time"] is None:
        return None
    return float(r["stop_time"])


def require_note(con: sqlite3.Connection, note_id: int) -> Note:
    note = select_note(con, note_id)
    if note is None:
        raise NotFoundError(f"note with ID {note_id} not found")
    return note


@dataclass
class Category:
    id: int
    name: str


def list_categories(con: sqlite3.Connection) -> list[Category]:
    rows = fetchall(con, "SELECT id, name FROM categories ORDER BY name ASC")
    return [Category(id=r["id"], name=r["name"]) for r in rows]


def add_category(con: sqlite3.Connection, name: str) -> int:
    name = (name or "").strip()
    if not name:
        raise ValidationError("category name is required")
    with transaction(con):
        if con.execute("SELECT 1 FROM categories WHERE name = ?", (name,)).fetchone():
            raise ValidationError(f"category '{name}' already exists")
        cur = con.execute("INSERT INTO categories (name) VALUES (?)", (name,))
    return int(cur.lastrowid)


def delete_category(con: sqlite3.Connection, name: str) -> None:
    with transaction(con):
        cur = con.execute("DELETE FROM categories WHERE name = ?", (name,))
    if cur.rowcount == 0:
        raise NotFoundError(f"category '{name}' not found")
