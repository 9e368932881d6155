"""tui_app.py

curses front-end: reads keys, ticks every 250 ms, runs the commands returned by
tui_model.update through the SessionController, and draws the columns.

The player connection and the database stay open for the whole session.
"""

from __future__ import annotations

import curses
import logging
import time
from dataclasses import asdict, replace
from typing import Any

import tagging_store as store
import tui_model as tm
from mpv_ipc import MpvClient
from tagging_config import Settings, setup_file_logging
from tagging_errors import NotConnectedError, TaggingError, ValidationError
from tagging_schema import open_db
from tagging_session import ClipMarkerSlot, SessionController, TackleInput
from tagging_time import format_time, parse_time
from tui_layout import ColumnLayout

logger = logging.getLogger(__name__)

HELP_LINES = (
    "j/k     move",
    "g/G     top/bottom",
    "enter   seek to note",
    "space   play/pause",
    "h/l     seek -/+ step",
    "[ ] < > step size",
    "m       mute",
    "n       add note",
    "t       add tackle",
    "e       edit tackle",
    "x       delete note",
    "/       filter",
    "*       starred only",
    ":       command",
    "?       help",
    "q       quit",
)

COMMAND_HELP = (
    ":cs  :ce [DESC]      clip start, clip end",
    ":clip list|play ID|stop",
    ":seek TIME           jump to time",
    ":pause  :play  :mute",
    ":speed [X]           show or set speed",
    ":nn TEXT             quick note",
    ":q                   quit",
)

_KEY_NAMES = {
    curses.KEY_UP: "up",
    curses.KEY_DOWN: "down",
    curses.KEY_LEFT: "left",
    curses.KEY_RIGHT: "right",
    curses.KEY_ENTER: "enter",
    curses.KEY_BACKSPACE: "backspace",
    curses.KEY_BTAB: "shift-tab",
    curses.KEY_RESIZE: "resize",
}
_CHAR_NAMES = {
    "\n": "enter",
    "\r": "enter",
    "\t": "tab",
    "\x1b": "esc",
    "\x7f": "backspace",
    "\x08": "backspace",
    "\x03": "ctrl-c",
    " ": "space",
}


def key_name(ch: Any) -> str | None:
    if isinstance(ch, int):
        return _KEY_NAMES.get(ch)
    return _CHAR_NAMES.get(ch, ch)


def _truthy(s: str | None) -> bool:
    return (s or "").strip().lower() in ("y", "yes", "1", "true", "*")


def tackle_input_from_form(values: dict) -> TackleInput:
    return TackleInput(
        player=values.get("player", ""),
        outcome=values.get("outcome", ""),
        attempt=values.get("attempt") or 1,
        team=values.get("team") or None,
        followed=values.get("followed") or None,
        notes=values.get("notes") or None,
        zone=values.get("zone") or None,
        star=_truthy(values.get("star")),
    )


class Runtime:
    """Executes tui_model commands; every result comes back as a message."""

    def __init__(self, ctl: SessionController, video_path: str) -> None:
        self.ctl = ctl
        self.video_path = video_path

    @property
    def client(self) -> MpvClient:
        if self.ctl.client is None:
            raise NotConnectedError()
        return self.ctl.client

    def ensure_connected(self) -> MpvClient:
        client = self.client
        if not client.connected:
            logger.info("reconnecting to mpv at %s", client.endpoint)
            client.connect()
        return client

    def run(self, cmd: Any) -> Any:
        try:
            return self._run(cmd)
        except TaggingError as e:
            logger.warning("%s failed: %s", type(cmd).__name__, e)
            if isinstance(cmd, (tm.PollPlayer, tm.Seek, tm.SeekRelative, tm.TogglePause, tm.ToggleMute)):
                return tm.PlayerStatus(error=str(e))
            if isinstance(cmd, tm.LoadNotes):
                return tm.NotesLoaded(notes=(), error=str(e))
            if isinstance(cmd, tm.LoadTackle):
                return tm.TackleFormLoaded(cmd.note_id, {}, error=str(e))
            return tm.StoreDone(error=str(e))

    def _run(self, cmd: Any) -> Any:
        if isinstance(cmd, tm.PollPlayer):
            self.ensure_connected()
            return self.poll()
        if isinstance(cmd, tm.LoadNotes):
            _, notes = self.ctl.note_list(self.video_path)
            with self.ctl.db() as con:
                stats = store.tackle_stats(con, self.video_path)
            return tm.NotesLoaded(notes=tuple(notes), stats=tuple(stats))
        if isinstance(cmd, tm.SaveNote):
            v = cmd.values
            res = self.ctl.note_add(
                category=v.get("category") or None,
                player=v.get("player") or None,
                team=v.get("team") or None,
                text=v.get("text") or None,
            )
            return tm.StoreDone(f"Note {res.note_id} added at {format_time(res.timestamp)}")
        if isinstance(cmd, tm.SaveTackle):
            inp = tackle_input_from_form(cmd.values)
            if cmd.edit_id is not None:
                self.ctl.tackle_edit(cmd.edit_id, inp)
                return tm.StoreDone(f"Tackle {cmd.edit_id} updated")
            res = self.ctl.tackle_add(inp)
            return tm.StoreDone(f"Tackle {res.note_id} added at {format_time(res.timestamp)}")
        if isinstance(cmd, tm.LoadTackle):
            return tm.TackleFormLoaded(cmd.note_id, asdict(self.ctl.tackle_input_for(cmd.note_id)))
        if isinstance(cmd, tm.DeleteNote):
            self.ctl.note_delete(cmd.note_id, force=True)
            return tm.StoreDone(f"Note {cmd.note_id} deleted")
        if isinstance(cmd, tm.Seek):
            self.client.seek(cmd.seconds)
            return self.poll()
        if isinstance(cmd, tm.SeekRelative):
            self.client.seek_relative(cmd.delta)
            return self.poll()
        if isinstance(cmd, tm.TogglePause):
            self.client.toggle_pause()
            status = self.poll()
            if status.time_pos is not None:
                self.ctl.record_stop_time(self.video_path, status.time_pos)
            return status
        if isinstance(cmd, tm.ToggleMute):
            muted = self.client.toggle_mute()
            return replace(self.poll(), muted=muted)
        if isinstance(cmd, tm.RunCommand):
            return tm.StoreDone(self.execute(cmd.line))
        if isinstance(cmd, tm.Quit):
            if cmd.time_pos is not None:
                self.ctl.record_stop_time(self.video_path, cmd.time_pos)
            return None
        raise ValueError(f"unknown command: {cmd!r}")

    def poll(self) -> tm.PlayerStatus:
        return tm.PlayerStatus(
            time_pos=self.client.get_time_pos(),
            duration=self.client.get_duration(),
            paused=self.client.get_paused(),
        )

    # ":" command line

    def execute(self, line: str) -> str:
        """Run one command-line entry; returns the status message."""
        verb, _, arg = line.strip().partition(" ")
        arg = arg.strip()
        verb = verb.lower()
        if verb == "clip":
            verb, _, arg = arg.partition(" ")
            verb = "clip-" + verb.lower()
            arg = arg.strip()
        handler = self._commands.get(verb)
        if handler is None:
            raise ValidationError(f"unknown command: {line.strip()}")
        return handler(self, arg)

    def _clip_start(self, arg: str) -> str:
        marker = self.ctl.clip_start()
        return f"Clip start marked at {format_time(marker.timestamp)}"

    def _clip_end(self, arg: str) -> str:
        res = self.ctl.clip_end(arg)
        return f"Clip {res.note_id} saved ({format_time(res.start)} - {format_time(res.end)})"

    def _clip_list(self, arg: str) -> str:
        _, clips = self.ctl.clip_list()
        if not clips:
            return "No clips for this video"
        return f"{len(clips)} clip(s): " + ", ".join(
            f"#{c.id} {format_time(c.start)}-{format_time(c.end)}" for c in clips
        )

    def _clip_play(self, arg: str) -> str:
        try:
            clip_id = int(arg)
        except ValueError:
            raise ValidationError(f"invalid ID: {arg}") from None
        clip = self.ctl.clip_play(clip_id)
        return f"Looping clip {clip.id}"

    def _clip_stop(self, arg: str) -> str:
        self.ctl.clip_stop()
        return "Loop cleared"

    def _seek(self, arg: str) -> str:
        seconds = parse_time(arg)
        self.client.seek(seconds)
        return f"Seek to {format_time(seconds)}"

    def _pause(self, arg: str) -> str:
        self.client.set_property("pause", True)
        return "Paused"

    def _play(self, arg: str) -> str:
        self.client.set_property("pause", False)
        return "Playing"

    def _mute(self, arg: str) -> str:
        return "Muted" if self.client.toggle_mute() else "Unmuted"

    def _speed(self, arg: str) -> str:
        if not arg:
            return f"Speed: {self.client.get_speed():g}x"
        try:
            speed = float(arg)
        except ValueError:
            raise ValidationError(f"invalid speed: {arg}") from None
        if not speed > 0:
            raise ValidationError(f"invalid speed: {arg}")
        self.client.set_speed(speed)
        return f"Speed: {speed:g}x"

    def _quick_note(self, arg: str) -> str:
        if not arg:
            raise ValidationError("note text is required")
        res = self.ctl.note_add(text=arg)
        return f"Note {res.note_id} added at {format_time(res.timestamp)}"

    _commands = {
        "cs": _clip_start,
        "ce": _clip_end,
        "clip-start": _clip_start,
        "clip-end": _clip_end,
        "clip-list": _clip_list,
        "clip-play": _clip_play,
        "clip-stop": _clip_stop,
        "seek": _seek,
        "pause": _pause,
        "p": _pause,
        "play": _play,
        "mute": _mute,
        "m": _mute,
        "speed": _speed,
        "nn": _quick_note,
    }


# --- drawing -----------------------------------------------------------------


def _put(win: Any, y: int, x: int, text: str, width: int, attr: int = curses.A_NORMAL) -> None:
    h, w = win.getmaxyx()
    if y < 0 or y >= h or x >= w or width <= 0:
        return
    # the bottom-right cell cannot be written without an error
    limit = min(width, w - x - (1 if y == h - 1 else 0))
    try:
        win.addstr(y, x, text[:limit].ljust(limit), attr)
    except curses.error:
        pass


def note_line(n: store.NoteListRow) -> str:
    mark = "*" if n.starred else " "
    if n.is_tackle:
        body = f"{n.player} {n.outcome}"
    else:
        body = n.text or n.category or ""
    return f"{mark}{format_time(n.start)} {body}"


def detail_lines(model: tm.Model) -> list[str]:
    if model.form is not None and model.mode in (tm.NOTE_FORM, tm.TACKLE_FORM, tm.CONFIRM_DISCARD):
        f = model.form
        title = "Note" if f.kind == tm.NOTE_FORM else ("Edit tackle" if f.edit_id else "Tackle")
        lines = [title, ""]
        for i, (label, value) in enumerate(zip(f.labels, f.values)):
            cursor = ">" if i == f.focus else " "
            lines.append(f"{cursor} {label}: {value}")
        lines += ["", "tab next  enter next/save  esc cancel"]
        return lines
    n = tm.selected_note(model)
    if n is None:
        return ["No notes for this video", "", "n: add note   t: add tackle"]
    lines = [f"#{n.id}  {format_time(n.start)}"]
    if n.end > n.start:
        lines[0] += f" - {format_time(n.end)}"
    if n.category:
        lines.append(f"category: {n.category}")
    if n.player:
        lines.append(f"player:   {n.player}" + (f" ({n.team})" if n.team else ""))
    if n.outcome:
        lines.append(f"outcome:  {n.outcome} (attempt {n.attempt})")
    if n.zone:
        lines.append(f"zone:     {n.zone}")
    if n.starred:
        lines.append("starred")
    if n.text:
        lines += ["", n.text]
    return lines


def stats_lines(model: tm.Model) -> list[str]:
    lines = ["Tackles", ""]
    if not model.stats:
        return lines + ["none yet"]
    for s in model.stats:
        lines.append(f"{s.player:<10} {s.completed}/{s.total} {s.completion_pct:5.1f}%")
    return lines


def status_line(model: tm.Model) -> str:
    if model.mode == tm.COMMAND:
        return ":" + model.command
    state = "paused" if model.paused else "playing"
    if not model.connected:
        state = "disconnected"
    parts = [f"{format_time(model.time_pos)} / {format_time(model.duration)}", state, f"step {model.step:g}s"]
    if model.muted:
        parts.append("muted")
    if model.filter.editing or model.filter.text:
        parts.append(f"/{model.filter.text}")
    if model.filter.starred_only:
        parts.append("starred")
    if model.status:
        parts.append(model.status)
    return "  ".join(parts)


def help_lines() -> list[str]:
    return ["Keys", ""] + list(HELP_LINES) + ["", "Commands", ""] + list(COMMAND_HELP) + ["", "any key closes"]


def draw_help(win: Any) -> None:
    h, w = win.getmaxyx()
    lines = help_lines()
    width = min(w - 2, max(len(line) for line in lines) + 4)
    top = max(0, (h - len(lines) - 2) // 2)
    left = max(0, (w - width) // 2)
    _put(win, top, left, "", width, curses.A_REVERSE)
    for i, line in enumerate(lines[: max(0, h - top - 2)]):
        _put(win, top + 1 + i, left, "  " + line, width, curses.A_REVERSE)
    _put(win, top + 1 + len(lines), left, "", width, curses.A_REVERSE)


def draw(win: Any, model: tm.Model) -> None:
    win.erase()
    h, _ = win.getmaxyx()
    layout: ColumnLayout = model.layout
    body_h = max(1, h - 2)
    rows = tm.visible_notes(model)

    if layout.mini:
        _put(win, 0, 0, model.video_path, layout.widths[0], curses.A_BOLD)
        for i, line in enumerate(detail_lines(model)[: body_h - 1]):
            _put(win, i + 1, 0, line, layout.widths[0])
        _put(win, h - 1, 0, status_line(model), layout.widths[0], curses.A_REVERSE)
        if model.show_help:
            draw_help(win)
        win.refresh()
        return

    x = 0
    w1 = layout.widths[0]
    _put(win, 0, x, f"Notes ({len(rows)})", w1, curses.A_BOLD)
    top = max(0, model.selected - (body_h - 2))
    for i, n in enumerate(rows[top : top + body_h - 1]):
        attr = curses.A_REVERSE if top + i == model.selected else curses.A_NORMAL
        _put(win, i + 1, x, note_line(n), w1, attr)

    columns = [detail_lines(model), stats_lines(model), list(HELP_LINES)]
    x += w1
    for col, width in enumerate(layout.widths[1 : layout.columns]):
        win.vline(0, x, curses.ACS_VLINE, body_h)
        x += 1
        for i, line in enumerate(columns[col][:body_h]):
            _put(win, i, x, line, width)
        x += width

    _put(win, h - 1, 0, status_line(model), layout.term_width, curses.A_REVERSE)
    if model.show_help:
        draw_help(win)
    win.refresh()


# --- loop --------------------------------------------------------------------


def event_loop(stdscr: Any, runtime: Runtime, model: tm.Model) -> tm.Model:
    curses.use_default_colors()
    curses.curs_set(0)
    stdscr.timeout(int(tm.TICK_SECONDS * 1000 / 5))
    stdscr.keypad(True)

    def dispatch(msg: Any) -> None:
        nonlocal model
        while msg is not None:
            model, cmd = tm.update(model, msg)
            msg = runtime.run(cmd) if cmd is not None else None

    h, w = stdscr.getmaxyx()
    dispatch(tm.ResizeMsg(w, h))
    # a successful StoreDone reloads the note list
    dispatch(tm.StoreDone(message="Ready"))
    next_tick = 0.0
    while not model.quitting:
        now = time.monotonic()
        if now >= next_tick:
            dispatch(tm.TickMsg())
            next_tick = now + tm.TICK_SECONDS
        draw(stdscr, model)
        try:
            ch = stdscr.get_wch()
        except curses.error:
            continue
        except KeyboardInterrupt:
            dispatch(tm.Interrupt())
            continue
        name = key_name(ch)
        if name == "resize":
            h, w = stdscr.getmaxyx()
            dispatch(tm.ResizeMsg(w, h))
        elif name:
            dispatch(tm.KeyMsg(name))
    return model


def run_tui(settings: Settings, client: MpvClient, video_arg: str) -> None:
    setup_file_logging(settings)
    try:
        video_path = client.get_path()
    except TaggingError:
        video_path = video_arg
    con = open_db(settings.db_path)
    try:
        ctl = SessionController(settings, marker=ClipMarkerSlot(), client=client, con=con)
        runtime = Runtime(ctl, video_path)
        curses.wrapper(event_loop, runtime, tm.initial_model(video_path))
    finally:
        con.close()
    logger.info("tui session ended for %s", video_path)
