#!/usr/bin/env python3
r"""tagging-rugby: annotate rugby video in mpv from the terminal.

Examples:
  tagging-rugby open match.mp4 --tui
  tagging-rugby note add -x "good line speed" -p 7
  tagging-rugby clip start
  tagging-rugby clip end "try from lineout" -c try
  tagging-rugby tackle add -p 12 -o completed -z 22m -s
  tagging-rugby clip export --all -f webm --reencode

Every verb except `open`, `doctor` and `version` talks to an already running mpv
through its IPC endpoint (--socket / TAGGING_RUGBY_SOCKET).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from typing import Any, Iterable, Sequence

import deps_check
from clip_export import DEFAULT_FORMAT, VALID_FORMATS
from tagging_config import Settings, resolve_settings, setup_logging
from tagging_errors import TaggingError, ValidationError
from tagging_schema import TACKLE_OUTCOMES
from tagging_session import ClipMarkerSlot, SessionController, TackleInput
from tagging_store import Note, NoteChildren
from tagging_time import format_time

logger = logging.getLogger(__name__)

__version__ = "0.1.0"

DELETE_PROMPT = "Are you sure you want to delete this note? [y/N] "


def _truncate(s: str | None, width: int) -> str:
    s = (s or "").replace("\n", " ")
    if len(s) <= width:
        return s
    return s[: max(0, width - 1)] + "…"


def print_table(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> None:
    data = [[("" if v is None else str(v)) for v in r] for r in rows]
    widths = [len(h) for h in headers]
    for r in data:
        for i, v in enumerate(r):
            widths[i] = max(widths[i], len(v))
    fmt = "  ".join(f"{{:<{w}}}" for w in widths)
    print(fmt.format(*headers).rstrip())
    print(fmt.format(*("-" * w for w in widths)).rstrip())
    for r in data:
        print(fmt.format(*r).rstrip())


def print_jsonl(items: Iterable[Any]) -> None:
    for it in items:
        obj = asdict(it)
        print(json.dumps(obj, ensure_ascii=False))


def positive_id(s: str) -> int:
    try:
        n = int(s)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid ID: {s}") from None
    if n < 1:
        raise argparse.ArgumentTypeError(f"invalid ID: {s}")
    return n


def _controller(settings: Settings) -> SessionController:
    return SessionController(settings, marker=ClipMarkerSlot(settings.marker_path))


def describe_note(note: Note, children: NoteChildren) -> list[str]:
    lines = [f"Note {note.id}"]
    if note.category:
        lines.append(f"  category: {note.category}")
    for t in children.timings:
        if t.end > t.start:
            lines.append(f"  time: {format_time(t.start)} - {format_time(t.end)}")
        else:
            lines.append(f"  time: {format_time(t.start)}")
    for v in children.videos:
        lines.append(f"  video: {v.path}")
    for d in children.details:
        lines.append(f"  {d.type}: {d.note}")
    for k in children.tackles:
        lines.append(f"  tackle: {k.player} attempt {k.attempt} {k.outcome}")
    for z in children.zones:
        lines.append(f"  zone: {z.zone}")
    if children.highlights:
        lines.append("  highlights: " + ", ".join(h.type for h in children.highlights))
    return lines


def confirm_delete(note: Note, children: NoteChildren) -> bool:
    for line in describe_note(note, children):
        print(line)
    try:
        answer = input(DELETE_PROMPT)
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


# --- verbs -----------------------------------------------------------------


def cmd_version(settings: Settings, args: argparse.Namespace) -> int:
    print(f"tagging-rugby {__version__}")
    return 0


def cmd_doctor(settings: Settings, args: argparse.Namespace) -> int:
    missing = 0
    for st in deps_check.check_all():
        if st.found:
            print(f"[ok]      {st.name}: {st.path}")
        else:
            missing += 1
            print(f"[missing] {st.name}: install from {st.install_url}")
    print(f"database: {settings.db_path}")
    print(f"socket:   {settings.socket}")
    return 1 if missing else 0


def cmd_open(settings: Settings, args: argparse.Namespace) -> int:
    from mpv_launch import launch_player

    player = launch_player(args.video, settings.socket, timeout=settings.timeout)
    try:
        ctl = SessionController(settings, marker=ClipMarkerSlot(settings.marker_path))
        print(ctl.open_report(args.video).line())
        if args.tui:
            from tui_app import run_tui

            run_tui(settings, player.client, args.video)
            return 0
        return player.wait()
    finally:
        player.kill()


def cmd_note_add(settings: Settings, args: argparse.Namespace) -> int:
    res = _controller(settings).note_add(args.category, args.player, args.team, args.text)
    print(f"Note {res.note_id} added at {format_time(res.timestamp)}")
    return 0


def cmd_note_list(settings: Settings, args: argparse.Namespace) -> int:
    path, rows = _controller(settings).note_list()
    if args.json:
        print_jsonl(rows)
        return 0
    if not rows:
        print(f"No notes found for {path}")
        return 0
    print_table(
        ["ID", "TIME", "CATEGORY", "PLAYER", "TEXT", "*"],
        [
            (r.id, format_time(r.start), r.category, r.player, _truncate(r.text, 50), "*" if r.starred else "")
            for r in rows
        ],
    )
    return 0


def cmd_note_goto(settings: Settings, args: argparse.Namespace) -> int:
    start = _controller(settings).note_goto(args.id)
    print(f"Seeked to {format_time(start)}")
    return 0


def cmd_note_delete(settings: Settings, args: argparse.Namespace) -> int:
    deleted = _controller(settings).note_delete(args.id, force=args.force, confirm=confirm_delete)
    if not deleted:
        print("Cancelled")
        return 0
    print(f"Note {args.id} deleted")
    return 0


def cmd_note_edit(settings: Settings, args: argparse.Namespace) -> int:
    if args.category is None and args.text is None and args.start is None and args.end is None:
        raise ValidationError("nothing to edit: pass -c, -x, --start or --end")
    _controller(settings).note_edit(args.id, args.category, args.text, args.start, args.end)
    print(f"Note {args.id} updated")
    return 0


def cmd_clip_start(settings: Settings, args: argparse.Namespace) -> int:
    marker = _controller(settings).clip_start()
    print(f"Clip start marked at {format_time(marker.timestamp)}")
    return 0


def cmd_clip_end(settings: Settings, args: argparse.Namespace) -> int:
    res = _controller(settings).clip_end(args.description, args.category, args.player, args.team)
    print(
        f"Clip {res.note_id} saved: {format_time(res.start)} - {format_time(res.end)} "
        f"({res.duration:.1f}s)"
    )
    return 0


def cmd_clip_add(settings: Settings, args: argparse.Namespace) -> int:
    res = _controller(settings).clip_add(
        args.start, args.end, args.description, args.category, args.player, args.team
    )
    print(
        f"Clip {res.note_id} saved: {format_time(res.start)} - {format_time(res.end)} "
        f"({res.duration:.1f}s)"
    )
    return 0


def cmd_clip_play(settings: Settings, args: argparse.Namespace) -> int:
    clip = _controller(settings).clip_play(args.id)
    print(f"Looping clip {clip.id}: {format_time(clip.start)} - {format_time(clip.end)}")
    return 0


def cmd_clip_stop(settings: Settings, args: argparse.Namespace) -> int:
    _controller(settings).clip_stop()
    print("A-B loop cleared")
    return 0


def cmd_clip_list(settings: Settings, args: argparse.Namespace) -> int:
    path, clips = _controller(settings).clip_list()
    if args.json:
        print_jsonl(clips)
        return 0
    if not clips:
        print(f"No clips found for {path}")
        return 0
    print_table(
        ["ID", "START", "END", "DURATION", "CATEGORY", "DESCRIPTION"],
        [
            (
                c.id,
                format_time(c.start),
                format_time(c.end),
                f"{c.duration:.1f}s",
                c.category,
                _truncate(c.description, 50),
            )
            for c in clips
        ],
    )
    return 0


def cmd_clip_export(settings: Settings, args: argparse.Namespace) -> int:
    ctl = _controller(settings)
    if args.all:
        def progress(req, out, err) -> None:
            if err is not None:
                print(f"Failed to export clip {req.clip_id}: {err}")

        summary = ctl.clip_export_all(args.format, args.reencode, on_progress=progress)
        if summary.total == 0:
            print("No clips found for current video.")
            return 0
        print()
        print(summary.line())
        return 0 if summary.ok else 1
    if args.id is None:
        raise ValidationError("clip ID required (or use --all to export all clips)")
    out = ctl.clip_export(args.id, args.output, args.format, args.reencode)
    print(f"Exported clip {args.id} to {out}")
    return 0


def _tackle_input(args: argparse.Namespace) -> TackleInput:
    return TackleInput(
        player=args.player or "",
        outcome=args.outcome or "",
        attempt=args.attempt,
        team=args.team,
        followed=args.followed,
        notes=args.notes,
        zone=args.zone,
        star=args.star,
    )


def cmd_tackle_add(settings: Settings, args: argparse.Namespace) -> int:
    res = _controller(settings).tackle_add(_tackle_input(args))
    print(f"Tackle {res.note_id} added at {format_time(res.timestamp)}")
    return 0


def cmd_tackle_list(settings: Settings, args: argparse.Namespace) -> int:
    path, rows = _controller(settings).tackle_list(args.player, args.outcome, args.star)
    if args.json:
        print_jsonl(rows)
        return 0
    if not rows:
        print(f"No tackles found for {path}")
        return 0
    print_table(
        ["ID", "TIME", "PLAYER", "TEAM", "ATT", "OUTCOME", "ZONE", "*", "NOTES"],
        [
            (
                r.id,
                format_time(r.start),
                r.player,
                r.team,
                r.attempt,
                r.outcome,
                r.zone,
                "*" if r.starred else "",
                _truncate(r.notes, 40),
            )
            for r in rows
        ],
    )
    return 0


def cmd_tackle_edit(settings: Settings, args: argparse.Namespace) -> int:
    ctl = _controller(settings)
    cur = ctl.tackle_input_for(args.id)
    merged = TackleInput(
        player=args.player if args.player is not None else cur.player,
        outcome=args.outcome if args.outcome is not None else cur.outcome,
        attempt=args.attempt if args.attempt is not None else cur.attempt,
        team=args.team if args.team is not None else cur.team,
        followed=args.followed if args.followed is not None else cur.followed,
        notes=args.notes if args.notes is not None else cur.notes,
        zone=args.zone if args.zone is not None else cur.zone,
        star=cur.star if args.star is None else args.star,
    )
    ctl.tackle_edit(args.id, merged, args.start, args.end)
    print(f"Tackle {args.id} updated")
    return 0


def cmd_tackle_stats(settings: Settings, args: argparse.Namespace) -> int:
    path, stats = _controller(settings).tackle_stats(all_videos=args.all_videos)
    if args.json:
        for s in stats:
            obj = asdict(s)
            obj["completion_pct"] = round(s.completion_pct, 1)
            print(json.dumps(obj, ensure_ascii=False))
        return 0
    if not stats:
        print("No tackles recorded" + (f" for {path}" if path else ""))
        return 0
    print_table(
        ["PLAYER", "TOTAL", "COMPLETED", "MISSED", "POSSIBLE", "OTHER", "STARRED", "PCT"],
        [
            (s.player, s.total, s.completed, s.missed, s.possible, s.other, s.starred, f"{s.completion_pct:.1f}%")
            for s in stats
        ],
    )
    return 0


def cmd_tackle_export(settings: Settings, args: argparse.Namespace) -> int:
    out = _controller(settings).tackle_export(args.player, args.output)
    print(f"Exported tackle stats for {args.player} to {out}")
    return 0


def cmd_category_list(settings: Settings, args: argparse.Namespace) -> int:
    cats = _controller(settings).category_list()
    if args.json:
        print_jsonl(cats)
        return 0
    if not cats:
        print("No categories found.")
        return 0
    print_table(["ID", "NAME"], [(c.id, c.name) for c in cats])
    print(f"\n{len(cats)} category(ies) found.")
    return 0


def cmd_category_add(settings: Settings, args: argparse.Namespace) -> int:
    cat_id = _controller(settings).category_add(args.name)
    print(f"Category added: ID {cat_id}, name '{args.name}'")
    return 0


def cmd_category_delete(settings: Settings, args: argparse.Namespace) -> int:
    _controller(settings).category_delete(args.name)
    print(f"Category '{args.name}' deleted.")
    return 0


# --- parser ----------------------------------------------------------------


def _add_person_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument("-c", "--category", default=None)
    p.add_argument("-p", "--player", default=None)
    p.add_argument("-t", "--team", default=None)


def _add_tackle_flags(p: argparse.ArgumentParser, editing: bool = False) -> None:
    p.add_argument("-p", "--player", default=None, required=not editing)
    p.add_argument("-t", "--team", default=None)
    p.add_argument("-a", "--attempt", default=None if editing else "1")
    p.add_argument(
        "-o",
        "--outcome",
        default=None,
        required=not editing,
        help="one of: " + ", ".join(TACKLE_OUTCOMES),
    )
    p.add_argument("-f", "--followed", default=None)
    p.add_argument("-n", "--notes", default=None)
    p.add_argument("-z", "--zone", default=None)
    if editing:
        star = p.add_mutually_exclusive_group()
        star.add_argument("-s", "--star", dest="star", action="store_true", default=None)
        star.add_argument("--no-star", dest="star", action="store_false", default=None)
    else:
        p.add_argument("-s", "--star", action="store_true")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="tagging-rugby",
        description="Annotate rugby video in mpv: notes, clips and tackles.",
    )
    ap.add_argument("--db", default=None, help="database file (env TAGGING_RUGBY_DB)")
    ap.add_argument("--socket", default=None, help="mpv IPC endpoint (env TAGGING_RUGBY_SOCKET)")
    ap.add_argument("-v", "--verbose", action="store_true")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("open", help="launch mpv on a video")
    p.add_argument("video")
    p.add_argument("--tui", action="store_true", help="run the terminal UI alongside the player")
    p.set_defaults(func=cmd_open)

    p = sub.add_parser("doctor", help="check external dependencies")
    p.set_defaults(func=cmd_doctor)

    p = sub.add_parser("version")
    p.set_defaults(func=cmd_version)

    # note
    note = sub.add_parser("note", help="free-form notes").add_subparsers(dest="note_cmd", required=True)
    p = note.add_parser("add", help="add a note at the current position")
    _add_person_flags(p)
    p.add_argument("-x", "--text", default=None)
    p.set_defaults(func=cmd_note_add)
    p = note.add_parser("list", help="list notes for the current video")
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=cmd_note_list)
    p = note.add_parser("goto", help="seek to a note")
    p.add_argument("id", type=positive_id)
    p.set_defaults(func=cmd_note_goto)
    p = note.add_parser("delete", help="delete a note and everything attached to it")
    p.add_argument("id", type=positive_id)
    p.add_argument("-f", "--force", action="store_true", help="skip confirmation")
    p.set_defaults(func=cmd_note_delete)
    p = note.add_parser("edit", help="edit a note")
    p.add_argument("id", type=positive_id)
    p.add_argument("-c", "--category", default=None)
    p.add_argument("-x", "--text", default=None)
    p.add_argument("--start", default=None)
    p.add_argument("--end", default=None)
    p.set_defaults(func=cmd_note_edit)

    # clip
    clip = sub.add_parser("clip", help="bounded clips").add_subparsers(dest="clip_cmd", required=True)
    p = clip.add_parser("start", help="mark the clip start at the current position")
    p.set_defaults(func=cmd_clip_start)
    p = clip.add_parser("end", help="save a clip from the marked start to the current position")
    p.add_argument("description")
    _add_person_flags(p)
    p.set_defaults(func=cmd_clip_end)
    p = clip.add_parser("add", help="save a clip with explicit times")
    p.add_argument("start")
    p.add_argument("end")
    p.add_argument("description")
    _add_person_flags(p)
    p.set_defaults(func=cmd_clip_add)
    p = clip.add_parser("play", help="loop a clip in the player")
    p.add_argument("id", type=positive_id)
    p.set_defaults(func=cmd_clip_play)
    p = clip.add_parser("stop", help="clear the A-B loop")
    p.set_defaults(func=cmd_clip_stop)
    p = clip.add_parser("list", help="list clips for the current video")
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=cmd_clip_list)
    p = clip.add_parser("export", help="export clips with ffmpeg")
    p.add_argument("id", nargs="?", type=positive_id, default=None)
    p.add_argument("-o", "--output", default="")
    p.add_argument("-f", "--format", default=DEFAULT_FORMAT, choices=VALID_FORMATS)
    p.add_argument("--reencode", action="store_true")
    p.add_argument("--all", action="store_true", help="export every clip of the current video")
    p.set_defaults(func=cmd_clip_export)

    # tackle
    tackle = sub.add_parser("tackle", help="tackle events").add_subparsers(dest="tackle_cmd", required=True)
    p = tackle.add_parser("add", help="record a tackle at the current position")
    _add_tackle_flags(p)
    p.set_defaults(func=cmd_tackle_add)
    p = tackle.add_parser("list", help="list tackles for the current video")
    p.add_argument("--player", default=None)
    p.add_argument("--outcome", default=None, choices=TACKLE_OUTCOMES)
    p.add_argument("--star", action="store_true", help="starred only")
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=cmd_tackle_list)
    p = tackle.add_parser("edit", help="edit a tackle")
    p.add_argument("id", type=positive_id)
    _add_tackle_flags(p, editing=True)
    p.add_argument("--start", default=None)
    p.add_argument("--end", default=None)
    p.set_defaults(func=cmd_tackle_edit)
    p = tackle.add_parser("stats", help="per-player tackle statistics")
    p.add_argument("--all-videos", action="store_true")
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=cmd_tackle_stats)
    p = tackle.add_parser("export", help="write one player's tackle summary to a text file")
    p.add_argument("-p", "--player", required=True)
    p.add_argument("-o", "--output", default="")
    p.set_defaults(func=cmd_tackle_export)

    # category
    category = sub.add_parser("category", help="note categories").add_subparsers(dest="category_cmd", required=True)
    p = category.add_parser("list", help="list categories")
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=cmd_category_list)
    p = category.add_parser("add", help="add a category")
    p.add_argument("name")
    p.set_defaults(func=cmd_category_add)
    p = category.add_parser("delete", help="delete a category")
    p.add_argument("name")
    p.set_defaults(func=cmd_category_delete)

    return ap


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    settings = resolve_settings(db=args.db, socket=args.socket, verbose=args.verbose)
    logger.debug("settings: %s", settings)
    try:
        return int(args.func(settings, args) or 0)
    except TaggingError as e:
        logger.debug("%s failed", args.command, exc_info=True)
        print(f"error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("interrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
