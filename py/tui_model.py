"""tui_model.py

State and update function for the TUI.

`update(model, msg)` is pure: it returns the next model and at most one command
describing a side effect (player call, store write). tui_app runs the command and
feeds the result back in as another message.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from tagging_store import NoteListRow, PlayerStats
from tui_layout import ColumnLayout, compute_column_widths

TICK_SECONDS = 0.25
STEP_SIZES = (0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0)
DEFAULT_STEP_INDEX = 2

# overlay modes
IDLE = "idle"
NOTE_FORM = "note-form"
TACKLE_FORM = "tackle-form"
CONFIRM_DISCARD = "confirm-discard"
CONFIRM_DELETE = "confirm-delete"
COMMAND = "command"

NOTE_FIELDS = (
    ("text", "Note"),
    ("category", "Category"),
    ("player", "Player"),
    ("team", "Team"),
)
TACKLE_FIELDS = (
    ("player", "Player"),
    ("team", "Team"),
    ("attempt", "Attempt"),
    ("outcome", "Outcome"),
    ("followed", "Followed"),
    ("notes", "Notes"),
    ("zone", "Zone"),
    ("star", "Star (y/n)"),
)


# --- messages ----------------------------------------------------------------


@dataclass(frozen=True)
class KeyMsg:
    key: str


@dataclass(frozen=True)
class TickMsg:
    pass


@dataclass(frozen=True)
class ResizeMsg:
    width: int
    height: int


@dataclass(frozen=True)
class Interrupt:
    pass


@dataclass(frozen=True)
class PlayerStatus:
    time_pos: float | None = None
    duration: float | None = None
    paused: bool | None = None
    muted: bool | None = None
    error: str | None = None


@dataclass(frozen=True)
class NotesLoaded:
    notes: tuple[NoteListRow, ...]
    stats: tuple[PlayerStats, ...] = ()
    error: str | None = None


@dataclass(frozen=True)
class StoreDone:
    message: str = ""
    error: str | None = None


@dataclass(frozen=True)
class FormSubmitted:
    kind: str
    values: dict
    edit_id: int | None = None


@dataclass(frozen=True)
class TackleFormLoaded:
    note_id: int
    values: dict
    error: str | None = None


# --- commands ----------------------------------------------------------------


@dataclass(frozen=True)
class PollPlayer:
    pass


@dataclass(frozen=True)
class LoadNotes:
    pass


@dataclass(frozen=True)
class SaveNote:
    values: dict


@dataclass(frozen=True)
class SaveTackle:
    values: dict
    edit_id: int | None = None


@dataclass(frozen=True)
class LoadTackle:
    note_id: int


@dataclass(frozen=True)
class DeleteNote:
    note_id: int


@dataclass(frozen=True)
class Seek:
    seconds: float


@dataclass(frozen=True)
class SeekRelative:
    delta: float


@dataclass(frozen=True)
class TogglePause:
    pass


@dataclass(frozen=True)
class ToggleMute:
    pass


@dataclass(frozen=True)
class RunCommand:
    line: str


@dataclass(frozen=True)
class Quit:
    time_pos: float | None


Command = Any


# --- model -------------------------------------------------------------------


@dataclass(frozen=True)
class FormState:
    kind: str
    names: tuple[str, ...]
    labels: tuple[str, ...]
    values: tuple[str, ...]
    focus: int = 0
    edit_id: int | None = None
    submitting: bool = False

    @classmethod
    def new(cls, kind: str, initial: dict | None = None, edit_id: int | None = None) -> "FormState":
        fields = NOTE_FIELDS if kind == NOTE_FORM else TACKLE_FIELDS
        initial = initial or {}
        return cls(
            kind=kind,
            names=tuple(n for n, _ in fields),
            labels=tuple(label for _, label in fields),
            values=tuple(_field_text(initial.get(n)) for n, _ in fields),
            edit_id=edit_id,
        )

    @property
    def has_data(self) -> bool:
        return any(v.strip() for v in self.values)

    def as_dict(self) -> dict:
        return dict(zip(self.names, self.values))

    def set_focused(self, value: str) -> "FormState":
        vals = list(self.values)
        vals[self.focus] = value
        return replace(self, values=tuple(vals))

    @property
    def focused_value(self) -> str:
        return self.values[self.focus]


def _field_text(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, bool):
        return "y" if v else ""
    return str(v)


@dataclass(frozen=True)
class FilterState:
    text: str = ""
    editing: bool = False
    starred_only: bool = False

    @property
    def active(self) -> bool:
        return bool(self.text) or self.starred_only


@dataclass(frozen=True)
class Model:
    video_path: str
    layout: ColumnLayout = field(default_factory=lambda: compute_column_widths(80))
    height: int = 24
    notes: tuple[NoteListRow, ...] = ()
    stats: tuple[PlayerStats, ...] = ()
    selected: int = 0
    mode: str = IDLE
    form: FormState | None = None
    delete_id: int | None = None
    filter: FilterState = FilterState()
    time_pos: float = 0.0
    duration: float = 0.0
    paused: bool = True
    muted: bool = False
    connected: bool = True
    step_index: int = DEFAULT_STEP_INDEX
    status: str = ""
    quitting: bool = False
    command: str = ""
    show_help: bool = False

    @property
    def step(self) -> float:
        return STEP_SIZES[self.step_index]


def initial_model(video_path: str, width: int = 80, height: int = 24) -> Model:
    return Model(video_path=video_path, layout=compute_column_widths(width), height=height)


def note_matches(note: NoteListRow, text: str) -> bool:
    q = text.strip().lower()
    if not q:
        return True
    haystack = [str(note.id), note.text or "", note.player or "", note.category or ""]
    return any(q in h.lower() for h in haystack)


def visible_notes(model: Model) -> list[NoteListRow]:
    out = []
    for n in model.notes:
        if model.filter.starred_only and not n.starred:
            continue
        if not note_matches(n, model.filter.text):
            continue
        out.append(n)
    return out


def selected_note(model: Model) -> NoteListRow | None:
    rows = visible_notes(model)
    if not rows:
        return None
    return rows[min(model.selected, len(rows) - 1)]


def _clamp_selection(model: Model) -> Model:
    n = len(visible_notes(model))
    sel = 0 if n == 0 else max(0, min(model.selected, n - 1))
    return replace(model, selected=sel) if sel != model.selected else model


# --- update ------------------------------------------------------------------


def update(model: Model, msg: Any) -> tuple[Model, Command | None]:
    if isinstance(msg, TickMsg):
        if model.quitting:
            return model, None
        return model, PollPlayer()
    if isinstance(msg, ResizeMsg):
        return replace(model, layout=compute_column_widths(msg.width), height=msg.height), None
    if isinstance(msg, Interrupt):
        return _interrupt(model)
    if isinstance(msg, PlayerStatus):
        return _player_status(model, msg), None
    if isinstance(msg, NotesLoaded):
        if msg.error:
            return replace(model, status=f"error: {msg.error}"), None
        return _clamp_selection(replace(model, notes=tuple(msg.notes), stats=tuple(msg.stats))), None
    if isinstance(msg, StoreDone):
        return _store_done(model, msg)
    if isinstance(msg, FormSubmitted):
        return _form_submitted(model, msg)
    if isinstance(msg, TackleFormLoaded):
        if msg.error:
            return replace(model, status=f"error: {msg.error}"), None
        form = FormState.new(TACKLE_FORM, msg.values, edit_id=msg.note_id)
        return replace(model, mode=TACKLE_FORM, form=form, status=f"Editing tackle {msg.note_id}"), None
    if isinstance(msg, KeyMsg):
        return _key(model, msg.key)
    return model, None


def _interrupt(model: Model) -> tuple[Model, Command | None]:
    if model.mode != IDLE or model.filter.editing or model.show_help:
        return (
            replace(
                model,
                mode=IDLE,
                form=None,
                delete_id=None,
                command="",
                show_help=False,
                filter=replace(model.filter, editing=False),
                status="Cancelled",
            ),
            None,
        )
    return replace(model, quitting=True), Quit(model.time_pos if model.connected else None)


def _player_status(model: Model, msg: PlayerStatus) -> Model:
    if msg.error:
        return replace(model, connected=False, status=f"player: {msg.error}")
    changes: dict[str, Any] = {"connected": True}
    if msg.time_pos is not None:
        changes["time_pos"] = msg.time_pos
    if msg.duration is not None:
        changes["duration"] = msg.duration
    if msg.paused is not None:
        changes["paused"] = msg.paused
    if msg.muted is not None:
        changes["muted"] = msg.muted
    if not model.connected:
        changes["status"] = ""
    return replace(model, **changes)


def _store_done(model: Model, msg: StoreDone) -> tuple[Model, Command | None]:
    if msg.error:
        if model.mode == CONFIRM_DELETE:
            return replace(model, mode=IDLE, delete_id=None, status=f"error: {msg.error}"), None
        form = replace(model.form, submitting=False) if model.form else None
        return replace(model, form=form, status=f"error: {msg.error}"), None
    return replace(model, mode=IDLE, form=None, delete_id=None, status=msg.message), LoadNotes()


def _form_submitted(model: Model, msg: FormSubmitted) -> tuple[Model, Command | None]:
    form = replace(model.form, submitting=True) if model.form else None
    model = replace(model, form=form, status="Saving...")
    if msg.kind == NOTE_FORM:
        return model, SaveNote(dict(msg.values))
    return model, SaveTackle(dict(msg.values), msg.edit_id)


def _key(model: Model, key: str) -> tuple[Model, Command | None]:
    if key == "ctrl-c":
        return _interrupt(model)
    if model.show_help:
        return replace(model, show_help=False), None
    if model.mode in (NOTE_FORM, TACKLE_FORM):
        return _form_key(model, key)
    if model.mode == CONFIRM_DISCARD:
        return _confirm_discard_key(model, key)
    if model.mode == CONFIRM_DELETE:
        return _confirm_delete_key(model, key)
    if model.mode == COMMAND:
        return _command_key(model, key)
    if model.filter.editing:
        return _filter_key(model, key)
    return _idle_key(model, key)


def _idle_key(model: Model, key: str) -> tuple[Model, Command | None]:
    rows = visible_notes(model)
    if key in ("j", "down"):
        return replace(model, selected=min(model.selected + 1, max(0, len(rows) - 1))), None
    if key in ("k", "up"):
        return replace(model, selected=max(0, model.selected - 1)), None
    if key == "g":
        return replace(model, selected=0), None
    if key == "G":
        return replace(model, selected=max(0, len(rows) - 1)), None
    if key == "enter":
        note = selected_note(model)
        if note is None:
            return model, None
        return replace(model, status=f"Seek to note {note.id}"), Seek(note.start)
    if key in (" ", "space"):
        return model, TogglePause()
    if key in ("h", "left"):
        return model, SeekRelative(-model.step)
    if key in ("l", "right"):
        return model, SeekRelative(model.step)
    if key in ("[", "<", ","):
        idx = max(0, model.step_index - 1)
        return replace(model, step_index=idx, status=f"Step: {STEP_SIZES[idx]:g}s"), None
    if key in ("]", ">", "."):
        idx = min(len(STEP_SIZES) - 1, model.step_index + 1)
        return replace(model, step_index=idx, status=f"Step: {STEP_SIZES[idx]:g}s"), None
    if key == "m":
        return model, ToggleMute()
    if key == ":":
        return replace(model, mode=COMMAND, command="", status=""), None
    if key == "?":
        return replace(model, show_help=True), None
    if key == "n":
        return replace(model, mode=NOTE_FORM, form=FormState.new(NOTE_FORM), status=""), None
    if key == "t":
        return replace(model, mode=TACKLE_FORM, form=FormState.new(TACKLE_FORM, {"attempt": 1}), status=""), None
    if key == "e":
        note = selected_note(model)
        if note is None or not note.is_tackle:
            return replace(model, status="Select a tackle to edit"), None
        return model, LoadTackle(note.id)
    if key == "x":
        note = selected_note(model)
        if note is None:
            return model, None
        return (
            replace(
                model,
                mode=CONFIRM_DELETE,
                delete_id=note.id,
                status=f"Delete note {note.id}? [y/N]",
            ),
            None,
        )
    if key == "/":
        return replace(model, filter=replace(model.filter, editing=True), status=""), None
    if key == "*":
        f = replace(model.filter, starred_only=not model.filter.starred_only)
        return _clamp_selection(replace(model, filter=f, selected=0)), None
    if key == "q":
        return replace(model, quitting=True), Quit(model.time_pos if model.connected else None)
    return model, None


def _filter_key(model: Model, key: str) -> tuple[Model, Command | None]:
    f = model.filter
    if key == "space":
        key = " "
    if key == "enter":
        f = replace(f, editing=False)
    elif key == "esc":
        f = replace(f, editing=False, text="")
    elif key == "backspace":
        f = replace(f, text=f.text[:-1])
    elif len(key) == 1 and key.isprintable():
        f = replace(f, text=f.text + key)
    else:
        return model, None
    return _clamp_selection(replace(model, filter=f, selected=0)), None


def _form_key(model: Model, key: str) -> tuple[Model, Command | None]:
    form = model.form
    if form is None:
        return replace(model, mode=IDLE), None
    if form.submitting:
        return model, None
    if key == "esc":
        if form.has_data:
            return replace(model, mode=CONFIRM_DISCARD, status="Discard this form? [y/N]"), None
        return replace(model, mode=IDLE, form=None, status=""), None
    if key == "tab":
        return replace(model, form=replace(form, focus=(form.focus + 1) % len(form.values))), None
    if key == "shift-tab":
        return replace(model, form=replace(form, focus=(form.focus - 1) % len(form.values))), None
    if key == "enter":
        if form.focus < len(form.values) - 1:
            return replace(model, form=replace(form, focus=form.focus + 1)), None
        return update(model, FormSubmitted(form.kind, form.as_dict(), form.edit_id))
    if key == "backspace":
        return replace(model, form=form.set_focused(form.focused_value[:-1])), None
    if key == "space":
        key = " "
    if len(key) == 1 and key.isprintable():
        return replace(model, form=form.set_focused(form.focused_value + key)), None
    return model, None


def _confirm_discard_key(model: Model, key: str) -> tuple[Model, Command | None]:
    form = model.form
    if key in ("y", "Y"):
        return replace(model, mode=IDLE, form=None, status="Discarded"), None
    back = form.kind if form else IDLE
    return replace(model, mode=back, status=""), None


def _confirm_delete_key(model: Model, key: str) -> tuple[Model, Command | None]:
    if key in ("y", "Y") and model.delete_id is not None:
        return replace(model, status=f"Deleting note {model.delete_id}..."), DeleteNote(model.delete_id)
    return replace(model, mode=IDLE, delete_id=None, status="Cancelled"), None


def _command_key(model: Model, key: str) -> tuple[Model, Command | None]:
    if key == "space":
        key = " "
    if key == "esc" or (key == "backspace" and not model.command):
        return replace(model, mode=IDLE, command="", status=""), None
    if key == "backspace":
        return replace(model, command=model.command[:-1]), None
    if key == "enter":
        line = model.command.strip()
        model = replace(model, mode=IDLE, command="")
        if not line:
            return model, None
        if line in ("q", "quit"):
            return replace(model, quitting=True), Quit(model.time_pos if model.connected else None)
        if line in ("h", "help"):
            return replace(model, show_help=True), None
        return replace(model, status=f":{line}"), RunCommand(line)
    if len(key) == 1 and key.isprintable():
        return replace(model, command=model.command + key), None
    return model, None
