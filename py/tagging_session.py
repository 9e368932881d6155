"""tagging_session.py

The verb layer shared by the CLI and the TUI.

Each verb is: connect to the player -> read live state -> one store transaction ->
return a result for the front-end to present. In CLI mode the player connection and
the database are opened per verb and released on exit; in TUI mode the controller
is given a live client and connection that it reuses.

The only mutable state held here is the clip start marker (ClipMarkerSlot).
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Iterator

import clip_export as exporter
import tagging_store as store
from mpv_ipc import MpvClient
from tagging_config import Settings
from tagging_errors import NotFoundError, ValidationError, VideoChangedError
from tagging_schema import TACKLE_OUTCOMES, open_db
from tagging_store import (
    ClipRow,
    NoteChildren,
    NoteDetail,
    NoteHighlight,
    NoteListRow,
    NoteTackle,
    NoteTiming,
    NoteVideo,
    NoteZone,
    PlayerStats,
    TackleRow,
)
from tagging_time import format_time, parse_time

logger = logging.getLogger(__name__)

CLIP_CATEGORY = "clip"
TACKLE_CATEGORY = "tackle"
DEFAULT_EDIT_SPAN = 2.0


@dataclass
class ClipMarker:
    timestamp: float
    video_path: str


class ClipMarkerSlot:
    """Single pending clip start, guarded by one lock.

    With `persist_path` the slot mirrors itself to a JSON file so `clip start` and
    `clip end` issued from separate processes pair up.
    """

    def __init__(self, persist_path: Path | None = None) -> None:
        self._lock = threading.Lock()
        self._marker: ClipMarker | None = None
        self._persist_path = persist_path

    def set(self, marker: ClipMarker) -> None:
        with self._lock:
            self._marker = marker
            self._save(marker)

    def peek(self) -> ClipMarker | None:
        with self._lock:
            return self._load()

    def take(self) -> ClipMarker | None:
        """Return the marker and clear it."""
        with self._lock:
            marker = self._load()
            self._marker = None
            self._save(None)
            return marker

    def clear(self) -> None:
        with self._lock:
            self._marker = None
            self._save(None)

    def _load(self) -> ClipMarker | None:
        if self._persist_path is None:
            return self._marker
        try:
            with open(self._persist_path, "r", encoding="utf-8") as f:
                obj = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("ignoring unreadable clip marker %s: %s", self._persist_path, e)
            return None
        try:
            return ClipMarker(timestamp=float(obj["timestamp"]), video_path=str(obj["video_path"]))
        except (KeyError, TypeError, ValueError):
            logger.warning("ignoring malformed clip marker %s", self._persist_path)
            return None

    def _save(self, marker: ClipMarker | None) -> None:
        p = self._persist_path
        if p is None:
            return
        if marker is None:
            try:
                p.unlink()
            except FileNotFoundError:
                pass
            return
        p.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".marker-", suffix=".json", dir=str(p.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(asdict(marker), f)
            os.replace(tmp, p)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise


@dataclass
class TackleInput:
    player: str
    outcome: str
    attempt: str | int = 1
    team: str | None = None
    followed: str | None = None
    notes: str | None = None
    zone: str | None = None
    star: bool = False


def parse_attempt(value: str | int | None) -> int:
    if value is None or value == "":
        return 1
    try:
        n = int(str(value).strip())
    except ValueError:
        raise ValidationError(f"invalid attempt '{value}': must be a positive integer") from None
    if n < 1:
        raise ValidationError(f"invalid attempt '{value}': must be a positive integer")
    return n


def validate_tackle(inp: TackleInput) -> NoteTackle:
    """Check a tackle before any IO happens."""
    player = (inp.player or "").strip()
    if not player:
        raise ValidationError("--player is required")
    outcome = (inp.outcome or "").strip().lower()
    if outcome not in TACKLE_OUTCOMES:
        raise ValidationError(
            f"invalid outcome '{inp.outcome}': must be one of: missed, completed, possible, other"
        )
    return NoteTackle(
        player=player,
        outcome=outcome,
        attempt=parse_attempt(inp.attempt),
        team=(inp.team or None),
        followed=(inp.followed or None),
    )


def _tackle_children(inp: TackleInput, tackle: NoteTackle) -> NoteChildren:
    children = NoteChildren(tackles=[tackle])
    if inp.notes:
        children.details.append(NoteDetail("notes", inp.notes))
    if inp.zone:
        children.zones.append(NoteZone(inp.zone))
    if inp.star:
        children.highlights.append(NoteHighlight(store.STAR))
    return children


def _person_details(player: str | None, team: str | None) -> list[NoteDetail]:
    out = []
    if player:
        out.append(NoteDetail("player", player))
    if team:
        out.append(NoteDetail("team", team))
    return out


def player_report(s: PlayerStats) -> str:
    lines = [
        f"Tackle Statistics for {s.player}",
        "================================",
        "",
        "Summary",
        "-------",
        f"Total:      {s.total}",
        f"Completed:  {s.completed}",
        f"Missed:     {s.missed}",
        f"Possible:   {s.possible}",
        f"Other:      {s.other}",
        f"Starred:    {s.starred}",
        f"Completion: {s.completion_pct:.1f}%",
    ]
    return "\n".join(lines) + "\n"


@dataclass
class LiveState:
    path: str
    time_pos: float
    duration: float | None = None


@dataclass
class ClipEndResult:
    note_id: int
    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass
class NoteAddResult:
    note_id: int
    timestamp: float


@dataclass
class OpenReport:
    video_path: str
    note_count: int
    stop_time: float | None

    def line(self) -> str:
        if self.note_count:
            msg = f"Resuming session: {self.note_count} notes"
            if self.stop_time:
                msg += f" (last stopped at {format_time(self.stop_time)})"
            return msg
        return "Video session started"


class SessionController:
    def __init__(
        self,
        settings: Settings,
        marker: ClipMarkerSlot | None = None,
        client: MpvClient | None = None,
        con: sqlite3.Connection | None = None,
        client_factory: Callable[[str, float], MpvClient] | None = None,
    ) -> None:
        self.settings = settings
        self.marker = marker if marker is not None else ClipMarkerSlot()
        self.client = client
        self.con = con
        self.client_factory = client_factory or (lambda ep, timeout: MpvClient(ep, timeout=timeout))

    # resources

    @contextmanager
    def player(self) -> Iterator[MpvClient]:
        if self.client is not None:
            yield self.client
            return
        client = self.client_factory(self.settings.socket, self.settings.timeout)
        client.connect()
        try:
            yield client
        finally:
            client.close()

    @contextmanager
    def db(self) -> Iterator[sqlite3.Connection]:
        if self.con is not None:
            yield self.con
            return
        con = open_db(self.settings.db_path)
        try:
            yield con
        finally:
            con.close()

    def read_live(self, client: MpvClient, with_duration: bool = False) -> LiveState:
        path = client.get_path()
        pos = client.get_time_pos()
        duration = None
        if with_duration:
            duration = client.get_duration()
        return LiveState(path=path, time_pos=pos, duration=duration)

    def current_path(self) -> str:
        with self.player() as client:
            return client.get_path()

    # clips

    def clip_start(self) -> ClipMarker:
        with self.player() as client:
            live = self.read_live(client)
        marker = ClipMarker(timestamp=live.time_pos, video_path=live.path)
        self.marker.set(marker)
        logger.debug("clip start marked at %.3f in %s", marker.timestamp, marker.video_path)
        return marker

    def clip_end(
        self,
        description: str,
        category: str | None = None,
        player: str | None = None,
        team: str | None = None,
    ) -> ClipEndResult:
        with self.player() as client:
            live = self.read_live(client, with_duration=True)
        marker = self.marker.take()
        if marker is None:
            raise ValidationError("no clip start marked. Use 'clip start' first")
        if live.path != marker.video_path:
            raise VideoChangedError(marker.video_path, live.path)
        if live.time_pos <= marker.timestamp:
            raise ValidationError(
                f"clip end ({format_time(live.time_pos)}) must be after start ({format_time(marker.timestamp)})"
            )
        note_id = self._insert_clip(marker.timestamp, live.time_pos, live, description, category, player, team)
        return ClipEndResult(note_id=note_id, start=marker.timestamp, end=live.time_pos)

    def clip_add(
        self,
        start: str,
        end: str,
        description: str,
        category: str | None = None,
        player: str | None = None,
        team: str | None = None,
    ) -> ClipEndResult:
        start_s = parse_time(start)
        end_s = parse_time(end)
        if end_s <= start_s:
            raise ValidationError(f"end time ({end}) must be after start time ({start})")
        with self.player() as client:
            path = client.get_path()
        live = LiveState(path=path, time_pos=end_s)
        note_id = self._insert_clip(start_s, end_s, live, description, category, player, team)
        return ClipEndResult(note_id=note_id, start=start_s, end=end_s)

    def _insert_clip(
        self,
        start: float,
        end: float,
        live: LiveState,
        description: str,
        category: str | None,
        player: str | None,
        team: str | None,
    ) -> int:
        children = NoteChildren(
            timings=[NoteTiming(start, end)],
            videos=[NoteVideo(path=live.path, duration=live.duration, stopped_at=end)],
            details=[NoteDetail("description", description or "")],
        )
        children.details += _person_details(player, team)
        with self.db() as con:
            return store.insert_note_with_children(con, category or CLIP_CATEGORY, children)

    def clip_play(self, clip_id: int) -> ClipRow:
        with self.db() as con:
            clip = store.select_clip(con, clip_id)
        with self.player() as client:
            client.seek(clip.start)
            client.set_ab_loop(clip.start, clip.end)
        return clip

    def clip_stop(self) -> None:
        with self.player() as client:
            client.clear_ab_loop()

    def clip_list(self) -> tuple[str, list[ClipRow]]:
        path = self.current_path()
        with self.db() as con:
            return path, store.list_clips_for_video(con, path)

    def clip_export(
        self,
        clip_id: int,
        output: str = "",
        fmt: str = exporter.DEFAULT_FORMAT,
        reencode: bool = False,
        runner: exporter.Runner | None = None,
    ) -> str:
        fmt = exporter.validate_format(fmt)
        with self.db() as con:
            clip = store.select_clip(con, clip_id)
        req = exporter.ExportRequest(clip.id, clip.video_path, clip.start, clip.end, output)
        return exporter.export_clip(req, fmt, reencode, runner)

    def clip_export_all(
        self,
        fmt: str = exporter.DEFAULT_FORMAT,
        reencode: bool = False,
        runner: exporter.Runner | None = None,
        on_progress: Callable | None = None,
    ) -> exporter.ExportSummary:
        fmt = exporter.validate_format(fmt)
        path, clips = self.clip_list()
        reqs = [exporter.ExportRequest(c.id, path, c.start, c.end) for c in clips]
        if not reqs:
            return exporter.ExportSummary()
        return exporter.export_many(reqs, fmt, reencode, runner, on_progress)

    # notes

    def note_add(
        self,
        category: str | None = None,
        player: str | None = None,
        team: str | None = None,
        text: str | None = None,
    ) -> NoteAddResult:
        with self.player() as client:
            live = self.read_live(client, with_duration=True)
        children = NoteChildren(
            timings=[NoteTiming(live.time_pos, live.time_pos)],
            videos=[NoteVideo(path=live.path, duration=live.duration, stopped_at=live.time_pos)],
        )
        if text:
            children.details.append(NoteDetail("text", text))
        children.details += _person_details(player, team)
        with self.db() as con:
            note_id = store.insert_note_with_children(con, category, children)
        return NoteAddResult(note_id=note_id, timestamp=live.time_pos)

    def note_list(self, video_path: str | None = None) -> tuple[str, list[NoteListRow]]:
        path = video_path or self.current_path()
        with self.db() as con:
            return path, store.list_notes_for_video(con, path)

    def note_goto(self, note_id: int) -> float:
        with self.db() as con:
            store.require_note(con, note_id)
            timings = store.select_timings_by_note(con, note_id)
        start = timings[0].start if timings else 0.0
        with self.player() as client:
            client.seek(start)
        return start

    def note_show(self, note_id: int) -> tuple[store.Note, NoteChildren]:
        with self.db() as con:
            note = store.require_note(con, note_id)
            return note, store.select_children(con, note_id)

    def note_delete(
        self,
        note_id: int,
        force: bool = False,
        confirm: Callable[[store.Note, NoteChildren], bool] | None = None,
    ) -> bool:
        """Returns False when the user declined the confirmation."""
        with self.db() as con:
            note = store.require_note(con, note_id)
            if not force:
                if confirm is None:
                    raise ValidationError("refusing to delete without confirmation (use --force)")
                if not confirm(note, store.select_children(con, note_id)):
                    return False
            store.delete_note(con, note_id)
        logger.info("deleted note %d", note_id)
        return True

    def note_edit(
        self,
        note_id: int,
        category: str | None = None,
        text: str | None = None,
        start: str | None = None,
        end: str | None = None,
    ) -> None:
        with self.db() as con:
            timing = self._edited_timing(con, note_id, start, end)
            details = None
            if text is not None:
                store.require_note(con, note_id)
                details = {store.text_detail_type(con, note_id): text}
            store.update_note_with_children(con, note_id, category=category, timing=timing, details=details)

    def _edited_timing(
        self, con: sqlite3.Connection, note_id: int, start: str | None, end: str | None
    ) -> NoteTiming | None:
        if start is None and end is None:
            return None
        store.require_note(con, note_id)
        timings = store.select_timings_by_note(con, note_id)
        cur = timings[0] if timings else NoteTiming(0.0, 0.0)
        start_s = parse_time(start) if start is not None else cur.start
        end_s = parse_time(end) if end is not None else cur.end
        if end_s < start_s:
            if end is not None:
                raise ValidationError(f"end time ({end}) must not be before start time")
            end_s = start_s + DEFAULT_EDIT_SPAN
        return NoteTiming(start_s, end_s)

    # tackles

    def tackle_add(self, inp: TackleInput) -> NoteAddResult:
        tackle = validate_tackle(inp)
        with self.player() as client:
            live = self.read_live(client, with_duration=True)
        children = _tackle_children(inp, tackle)
        children.timings.append(NoteTiming(live.time_pos, live.time_pos))
        children.videos.append(NoteVideo(path=live.path, duration=live.duration, stopped_at=live.time_pos))
        with self.db() as con:
            note_id = store.insert_note_with_children(con, TACKLE_CATEGORY, children)
        return NoteAddResult(note_id=note_id, timestamp=live.time_pos)

    def tackle_list(
        self, player: str | None = None, outcome: str | None = None, starred: bool = False
    ) -> tuple[str, list[TackleRow]]:
        if outcome:
            store.validate_outcome(outcome)
        path = self.current_path()
        with self.db() as con:
            return path, store.list_tackles_for_video(con, path, player, outcome, starred)

    def tackle_edit(
        self, note_id: int, inp: TackleInput, start: str | None = None, end: str | None = None
    ) -> None:
        tackle = validate_tackle(inp)
        with self.db() as con:
            if not store.select_tackles_by_note(con, note_id):
                store.require_note(con, note_id)
                raise ValidationError(f"note {note_id} is not a tackle")
            timing = self._edited_timing(con, note_id, start, end)
            store.update_note_with_children(
                con,
                note_id,
                timing=timing,
                details={"notes": inp.notes or None},
                zones=[inp.zone] if inp.zone else [],
                highlights=[store.STAR] if inp.star else [],
                tackle=tackle,
            )

    def tackle_input_for(self, note_id: int) -> TackleInput:
        """Current values of a tackle, for pre-filling an edit form."""
        note, children = self.note_show(note_id)
        if not children.tackles:
            raise ValidationError(f"note {note.id} is not a tackle")
        k = children.tackles[0]
        return TackleInput(
            player=k.player,
            outcome=k.outcome,
            attempt=k.attempt,
            team=k.team,
            followed=k.followed,
            notes=children.detail("notes"),
            zone=children.zones[0].zone if children.zones else None,
            star=any(h.type == store.STAR for h in children.highlights),
        )

    def tackle_stats(self, all_videos: bool = False) -> tuple[str | None, list[PlayerStats]]:
        path = None if all_videos else self.current_path()
        with self.db() as con:
            return path, store.tackle_stats(con, path)

    def tackle_export(self, player: str, output: str = "") -> str:
        """Write one player's tackle summary (all videos) to a text file; returns its path."""
        player = (player or "").strip()
        if not player:
            raise ValidationError("--player is required")
        with self.db() as con:
            stats = {s.player: s for s in store.tackle_stats(con)}
        s = stats.get(player)
        if s is None or s.total == 0:
            raise NotFoundError(f"no tackles found for player '{player}'")
        out = output or f"{player}-tackles.txt"
        try:
            with open(out, "w", encoding="utf-8") as f:
                f.write(player_report(s))
        except OSError as e:
            raise ValidationError(f"failed to create output file: {e}") from e
        logger.info("wrote tackle stats for %s to %s", player, out)
        return out

    # categories

    def category_list(self) -> list[store.Category]:
        with self.db() as con:
            return store.list_categories(con)

    def category_add(self, name: str) -> int:
        with self.db() as con:
            return store.add_category(con, name)

    def category_delete(self, name: str) -> None:
        with self.db() as con:
            store.delete_category(con, name)

    # session

    def open_report(self, video_path: str) -> OpenReport:
        with self.db() as con:
            return OpenReport(
                video_path=video_path,
                note_count=store.count_notes_for_video(con, video_path),
                stop_time=store.get_video_stop_time(con, video_path),
            )

    def record_stop_time(self, video_path: str, position: float) -> None:
        with self.db() as con:
            store.update_video_stop_time(con, video_path, position)
