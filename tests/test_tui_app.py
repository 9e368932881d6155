import curses
from unittest import mock

import pytest

import tagging_store as store
import tui_model as tm
from mpv_ipc import DISCONNECTED, MpvClient
from tagging_errors import StoreError, ValidationError, WireError
from tagging_schema import open_db
from tagging_session import ClipMarkerSlot, SessionController
from tui_app import Runtime, key_name, status_line, tackle_input_from_form


@pytest.fixture
def runtime(settings, fake_mpv):
    client = MpvClient(fake_mpv.path, timeout=2.0).connect()
    con = open_db(settings.db_path)
    ctl = SessionController(settings, marker=ClipMarkerSlot(), client=client, con=con)
    yield Runtime(ctl, "/v.mp4")
    client.close()
    con.close()


def test_key_names():
    assert key_name(curses.KEY_UP) == "up"
    assert key_name(curses.KEY_BTAB) == "shift-tab"
    assert key_name(10**6) is None
    assert key_name("\n") == "enter"
    assert key_name("\x1b") == "esc"
    assert key_name("\x7f") == "backspace"
    assert key_name(" ") == "space"
    assert key_name(":") == ":"


@pytest.mark.parametrize("star, expected", [("y", True), ("Yes", True), ("*", True), ("", False), ("n", False)])
def test_tackle_form_star(star, expected):
    inp = tackle_input_from_form({"player": "7", "outcome": "missed", "star": star})
    assert inp.star is expected


def test_tackle_form_blanks_become_defaults():
    inp = tackle_input_from_form({"player": "7", "outcome": "missed", "attempt": "", "team": "", "zone": ""})
    assert (inp.attempt, inp.team, inp.zone, inp.followed, inp.notes) == (1, None, None, None, None)


def test_errors_map_to_messages():
    ctl = mock.Mock()
    ctl.client = None
    rt = Runtime(ctl, "/v.mp4")
    assert rt.run(tm.PollPlayer()) == tm.PlayerStatus(error="mpv: not connected")
    assert rt.run(tm.Seek(3.0)) == tm.PlayerStatus(error="mpv: not connected")
    assert rt.run(tm.ToggleMute()) == tm.PlayerStatus(error="mpv: not connected")

    ctl.note_list.side_effect = StoreError("disk I/O error")
    assert rt.run(tm.LoadNotes()) == tm.NotesLoaded(notes=(), error="disk I/O error")

    ctl.tackle_input_for.side_effect = ValidationError("note 3 is not a tackle")
    assert rt.run(tm.LoadTackle(3)) == tm.TackleFormLoaded(3, {}, error="note 3 is not a tackle")

    ctl.note_add.side_effect = WireError("mpv: timeout after 2.0s waiting for get_property")
    done = rt.run(tm.SaveNote({"text": "x"}))
    assert done == tm.StoreDone(error="mpv: timeout after 2.0s waiting for get_property")

    ctl.note_delete.side_effect = StoreError("database is busy")
    assert rt.run(tm.DeleteNote(1)).error == "database is busy"


def test_poll_and_playback(runtime, fake_mpv):
    fake_mpv.props["time-pos"] = 42.0
    assert runtime.run(tm.PollPlayer()) == tm.PlayerStatus(time_pos=42.0, duration=120.0, paused=True)

    status = runtime.run(tm.SeekRelative(-2.0))
    assert status.time_pos == 40.0

    status = runtime.run(tm.ToggleMute())
    assert status.muted is True
    assert fake_mpv.props["mute"] is True


def test_pause_and_quit_record_stop_time(runtime, fake_mpv):
    con = runtime.ctl.con
    fake_mpv.props["time-pos"] = 42.0
    status = runtime.run(tm.TogglePause())
    assert status.paused is False
    assert store.get_video_stop_time(con, "/v.mp4") == 42.0

    assert runtime.run(tm.Quit(50.0)) is None
    assert store.get_video_stop_time(con, "/v.mp4") == 50.0
    assert runtime.run(tm.Quit(None)) is None
    assert store.get_video_stop_time(con, "/v.mp4") == 50.0


def test_forms_write_through_to_the_store(runtime, fake_mpv):
    fake_mpv.props["time-pos"] = 65.0
    done = runtime.run(tm.SaveNote({"text": "good ruck speed", "category": "ruck", "player": "", "team": ""}))
    assert done == tm.StoreDone("Note 1 added at 0:01:05")

    fake_mpv.props["time-pos"] = 70.0
    done = runtime.run(tm.SaveTackle({"player": "7", "outcome": "missed", "attempt": "1", "star": "y"}))
    assert done == tm.StoreDone("Tackle 2 added at 0:01:10")

    loaded = runtime.run(tm.LoadNotes())
    assert [n.id for n in loaded.notes] == [1, 2]
    assert loaded.notes[1].starred
    assert [(s.player, s.missed) for s in loaded.stats] == [("7", 1)]

    form = runtime.run(tm.LoadTackle(2))
    assert (form.values["player"], form.values["star"]) == ("7", True)
    values = dict(form.values, outcome="completed", star="")
    assert runtime.run(tm.SaveTackle(values, edit_id=2)) == tm.StoreDone("Tackle 2 updated")

    assert runtime.run(tm.DeleteNote(1)) == tm.StoreDone("Note 1 deleted")
    loaded = runtime.run(tm.LoadNotes())
    assert [(n.id, n.outcome, n.starred) for n in loaded.notes] == [(2, "completed", False)]


def test_poll_reconnects_after_channel_closed(runtime, fake_mpv):
    client = runtime.ctl.client
    client.close()
    assert client.state == DISCONNECTED
    status = runtime.run(tm.PollPlayer())
    assert status.error is None
    assert client.connected

    client.close()
    fake_mpv.close()
    status = runtime.run(tm.PollPlayer())
    assert "failed to connect to mpv" in status.error
    assert client.state == DISCONNECTED


def test_command_line_clips(runtime, fake_mpv):
    fake_mpv.props["time-pos"] = 10.0
    assert runtime.execute("cs") == "Clip start marked at 0:00:10"
    fake_mpv.props["time-pos"] = 25.0
    assert runtime.execute("ce try from lineout") == "Clip 1 saved (0:00:10 - 0:00:25)"
    assert runtime.execute("clip list") == "1 clip(s): #1 0:00:10-0:00:25"
    assert runtime.execute("clip play 1") == "Looping clip 1"
    assert (fake_mpv.props["ab-loop-a"], fake_mpv.props["ab-loop-b"]) == (10.0, 25.0)
    assert runtime.execute("CLIP STOP") == "Loop cleared"
    assert fake_mpv.props["ab-loop-a"] == "no"

    _, notes = runtime.ctl.note_list("/v.mp4")
    assert notes[0].text == "try from lineout"


def test_command_line_player_controls(runtime, fake_mpv):
    assert runtime.execute("seek 1:30") == "Seek to 0:01:30"
    assert fake_mpv.props["time-pos"] == 90.0
    assert runtime.execute("play") == "Playing"
    assert fake_mpv.props["pause"] is False
    assert runtime.execute("p") == "Paused"
    assert fake_mpv.props["pause"] is True
    assert runtime.execute("mute") == "Muted"
    assert runtime.execute("m") == "Unmuted"
    assert runtime.execute("speed") == "Speed: 1x"
    assert runtime.execute("speed 1.5") == "Speed: 1.5x"
    assert fake_mpv.props["speed"] == 1.5
    assert runtime.execute("nn quick one") == "Note 1 added at 0:01:30"


@pytest.mark.parametrize(
    "line, error",
    [
        ("speed 0", "invalid speed: 0"),
        ("speed fast", "invalid speed: fast"),
        ("clip play x", "invalid ID: x"),
        ("clip play 9", "clip not found: ID 9"),
        ("seek soon", "invalid time format"),
        ("nn", "note text is required"),
        ("warp 9", "unknown command: warp 9"),
    ],
)
def test_command_line_errors_come_back_as_store_done(runtime, line, error):
    done = runtime.run(tm.RunCommand(line))
    assert isinstance(done, tm.StoreDone)
    assert error in done.error


def test_status_line_shows_command_and_mute():
    m = tm.initial_model("/v.mp4")
    m, _ = tm.update(m, tm.PlayerStatus(time_pos=5.0, muted=True))
    assert "muted" in status_line(m)
    for k in (":", "c", "s"):
        m, _ = tm.update(m, tm.KeyMsg(k))
    assert status_line(m) == ":cs"
