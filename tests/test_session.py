import pytest

from tagging_errors import NoPlayerError, NotFoundError, ValidationError, VideoChangedError
from tagging_schema import CHILD_TABLES
from tagging_session import ClipMarker, ClipMarkerSlot, SessionController, TackleInput, validate_tackle


def test_clip_round_trip(controller, fake_mpv, db_rows):
    fake_mpv.props.update({"path": "/v.mp4", "time-pos": 10.0})
    marker = controller.clip_start()
    assert marker == ClipMarker(10.0, "/v.mp4")

    fake_mpv.props["time-pos"] = 25.5
    res = controller.clip_end("try")
    assert (res.start, res.end) == (10.0, 25.5)

    path, clips = controller.clip_list()
    assert path == "/v.mp4"
    assert len(clips) == 1
    clip = clips[0]
    assert (clip.start, clip.end, clip.description, clip.video_path) == (10.0, 25.5, "try", "/v.mp4")
    assert clip.duration == pytest.approx(15.5)
    assert controller.marker.peek() is None


def test_clip_end_refuses_when_video_changed(controller, fake_mpv, db_rows):
    fake_mpv.props.update({"path": "/a.mp4", "time-pos": 3.0})
    controller.clip_start()
    fake_mpv.props.update({"path": "/b.mp4", "time-pos": 9.0})

    with pytest.raises(VideoChangedError, match="video changed since clip start was marked"):
        controller.clip_end("x")
    assert db_rows("SELECT id FROM notes") == []


def test_clip_end_without_start(controller, fake_mpv):
    with pytest.raises(ValidationError, match="no clip start marked"):
        controller.clip_end("x")


def test_clip_end_must_be_after_start(controller, fake_mpv, db_rows):
    fake_mpv.props["time-pos"] = 20.0
    controller.clip_start()
    with pytest.raises(ValidationError, match="must be after start"):
        controller.clip_end("backwards")
    assert db_rows("SELECT id FROM notes") == []


def test_clip_add_parses_times(controller, fake_mpv):
    res = controller.clip_add("1:00", "0:01:05.5", "maul", category="set-piece", player="2")
    assert (res.start, res.end) == (60, 65.5)
    _, rows = controller.note_list()
    assert rows[0].category == "set-piece"
    assert rows[0].player == "2"
    with pytest.raises(ValidationError):
        controller.clip_add("10", "10", "zero length")


def test_clip_play_and_stop_drive_ab_loop(controller, fake_mpv):
    res = controller.clip_add("12", "15.25", "lineout")
    controller.clip_play(res.note_id)
    assert fake_mpv.props["time-pos"] == 12.0
    assert (fake_mpv.props["ab-loop-a"], fake_mpv.props["ab-loop-b"]) == (12.0, 15.25)

    controller.clip_stop()
    assert (fake_mpv.props["ab-loop-a"], fake_mpv.props["ab-loop-b"]) == ("no", "no")

    with pytest.raises(NotFoundError, match="clip not found: ID 99"):
        controller.clip_play(99)


def test_note_add_list_goto(controller, fake_mpv):
    for t, text in [(40.0, "late"), (5.0, "early"), (20.0, "middle")]:
        fake_mpv.props["time-pos"] = t
        controller.note_add(text=text, category="general")
    path, rows = controller.note_list()
    assert [r.text for r in rows] == ["early", "middle", "late"]

    fake_mpv.props["time-pos"] = 0.0
    assert controller.note_goto(rows[1].id) == 20.0
    assert fake_mpv.props["time-pos"] == 20.0


def test_note_delete_cascade_and_confirmation(controller, fake_mpv, db_rows):
    fake_mpv.props["time-pos"] = 7.0
    note_id = controller.note_add(text="delete me").note_id

    assert controller.note_delete(note_id, confirm=lambda note, children: False) is False
    assert db_rows("SELECT id FROM notes WHERE id = ?", (note_id,))

    seen = []

    def confirm(note, children):
        seen.append(children.detail("text"))
        return True

    assert controller.note_delete(note_id, confirm=confirm) is True
    assert seen == ["delete me"]
    for t in CHILD_TABLES:
        assert db_rows(f"SELECT id FROM {t.name} WHERE note_id = ?", (note_id,)) == []

    with pytest.raises(NotFoundError, match=f"note with ID {note_id} not found"):
        controller.note_delete(note_id, force=True)


def test_note_edit(controller, fake_mpv):
    fake_mpv.props["time-pos"] = 30.0
    note_id = controller.note_add(text="first draft").note_id
    controller.note_edit(note_id, category="defence", text="final", start="0:35")
    note, children = controller.note_show(note_id)
    assert note.category == "defence"
    assert children.detail("text") == "final"
    # end was before the new start, so it moves to start + 2s
    assert (children.timings[0].start, children.timings[0].end) == (35, 37)


def test_tackle_validation_before_any_io(tmp_path, sock_dir):
    from tagging_config import Settings

    settings = Settings(tmp_path, tmp_path / "data.db", str(sock_dir / "nobody.sock"))
    ctl = SessionController(settings)
    with pytest.raises(ValidationError, match="invalid outcome 'great'"):
        ctl.tackle_add(TackleInput(player="7", outcome="great"))
    with pytest.raises(ValidationError, match="--player is required"):
        ctl.tackle_add(TackleInput(player="", outcome="missed"))
    with pytest.raises(ValidationError, match="positive integer"):
        ctl.tackle_add(TackleInput(player="7", outcome="missed", attempt="0"))
    with pytest.raises(ValidationError, match="positive integer"):
        ctl.tackle_add(TackleInput(player="7", outcome="missed", attempt="two"))
    assert not (tmp_path / "data.db").exists()
    with pytest.raises(NoPlayerError):
        ctl.tackle_add(TackleInput(player="7", outcome="missed"))


def test_validate_tackle_normalises():
    k = validate_tackle(TackleInput(player=" 7 ", outcome="Completed", attempt="3", team=""))
    assert (k.player, k.outcome, k.attempt, k.team) == ("7", "completed", 3, None)


def test_tackle_add_list_edit_stats(controller, fake_mpv):
    fake_mpv.props["time-pos"] = 11.0
    a = controller.tackle_add(
        TackleInput(player="7", outcome="missed", followed="12", notes="high", zone="22m", star=True)
    ).note_id
    fake_mpv.props["time-pos"] = 14.0
    controller.tackle_add(TackleInput(player="7", outcome="completed", attempt=2))

    _, rows = controller.tackle_list()
    assert [r.outcome for r in rows] == ["missed", "completed"]
    first = rows[0]
    assert (first.followed, first.notes, first.zone, first.starred) == ("12", "high", "22m", True)
    _, starred = controller.tackle_list(starred=True)
    assert [r.id for r in starred] == [a]

    inp = controller.tackle_input_for(a)
    inp.outcome = "completed"
    inp.star = False
    inp.notes = None
    controller.tackle_edit(a, inp, start="10")
    note, children = controller.note_show(a)
    assert note.category == "tackle"
    assert children.tackles[0].outcome == "completed"
    assert children.highlights == []
    assert children.detail("notes") is None
    assert children.zones[0].zone == "22m"
    assert children.timings[0].start == 10

    _, stats = controller.tackle_stats()
    assert (stats[0].player, stats[0].completed, stats[0].total) == ("7", 2, 2)
    assert stats[0].completion_pct == 100.0


def test_tackle_edit_rejects_plain_note(controller, fake_mpv):
    note_id = controller.note_add(text="not a tackle").note_id
    with pytest.raises(ValidationError, match="not a tackle"):
        controller.tackle_edit(note_id, TackleInput(player="1", outcome="other"))


def test_marker_slot_persists_between_processes(tmp_path, settings, fake_mpv):
    marker_path = tmp_path / "data" / "marker.json"
    fake_mpv.props["time-pos"] = 10.0
    SessionController(settings, marker=ClipMarkerSlot(marker_path)).clip_start()
    assert marker_path.exists()

    fake_mpv.props["time-pos"] = 12.0
    res = SessionController(settings, marker=ClipMarkerSlot(marker_path)).clip_end("two invocations")
    assert (res.start, res.end) == (10.0, 12.0)
    assert not marker_path.exists()


def test_marker_slot_ignores_corrupt_file(tmp_path):
    p = tmp_path / "marker.json"
    p.write_text("{not json")
    slot = ClipMarkerSlot(p)
    assert slot.peek() is None
    slot.set(ClipMarker(1.0, "/v.mp4"))
    assert slot.take() == ClipMarker(1.0, "/v.mp4")
    assert slot.take() is None


def test_open_report_and_stop_time(controller, fake_mpv):
    assert controller.open_report("/v.mp4").line() == "Video session started"
    controller.note_add(text="one")
    controller.record_stop_time("/v.mp4", 75.0)
    report = controller.open_report("/v.mp4")
    assert report.note_count == 1
    assert report.line() == "Resuming session: 1 notes (last stopped at 0:01:15)"


def test_export_format_default_is_mp4():
    import inspect

    import clip_export

    for method in (SessionController.clip_export, SessionController.clip_export_all):
        assert inspect.signature(method).parameters["fmt"].default == clip_export.DEFAULT_FORMAT == "mp4"


def test_point_notes_and_tackles_are_not_clips(controller, fake_mpv, runner):
    fake_mpv.props["time-pos"] = 7.0
    note_id = controller.note_add(text="point in time").note_id
    tackle_id = controller.tackle_add(TackleInput(player="7", outcome="missed")).note_id

    for bad in (note_id, tackle_id):
        with pytest.raises(NotFoundError, match=f"clip not found: ID {bad}"):
            controller.clip_play(bad)
        with pytest.raises(NotFoundError, match=f"clip not found: ID {bad}"):
            controller.clip_export(bad, runner=runner)
    assert runner.calls == []
    assert fake_mpv.props["ab-loop-a"] == "no"


def test_note_edit_text_keeps_the_detail_type(controller, fake_mpv, db_rows):
    clip_id = controller.clip_add("10", "20", "old description").note_id
    controller.note_edit(clip_id, text="new text")
    _, rows = controller.note_list()
    assert [r.text for r in rows] == ["new text"]
    details = db_rows("SELECT type, note FROM note_details WHERE note_id = ?", (clip_id,))
    assert details == [{"type": "description", "note": "new text"}]
    assert controller.clip_list()[1][0].description == "new text"

    fake_mpv.props["time-pos"] = 30.0
    tackle_id = controller.tackle_add(TackleInput(player="9", outcome="completed")).note_id
    controller.note_edit(tackle_id, text="good leg drive")
    _, children = controller.note_show(tackle_id)
    assert [(d.type, d.note) for d in children.details] == [("notes", "good leg drive")]

    plain_id = controller.note_add().note_id
    controller.note_edit(plain_id, text="added later")
    _, children = controller.note_show(plain_id)
    assert [(d.type, d.note) for d in children.details] == [("text", "added later")]

    with pytest.raises(NotFoundError):
        controller.note_edit(999, text="nothing here")


def test_tackle_export_writes_player_report(controller, fake_mpv, tmp_path):
    fake_mpv.props["time-pos"] = 3.0
    controller.tackle_add(TackleInput(player="7", outcome="completed", star=True))
    controller.tackle_add(TackleInput(player="7", outcome="missed"))
    fake_mpv.props["path"] = "/second-half.mp4"
    controller.tackle_add(TackleInput(player="7", outcome="completed"))

    out = tmp_path / "seven.txt"
    assert controller.tackle_export("7", str(out)) == str(out)
    text = out.read_text(encoding="utf-8")
    assert text.startswith("Tackle Statistics for 7\n")
    assert "Total:      3\n" in text
    assert "Completed:  2\n" in text
    assert "Missed:     1\n" in text
    assert "Starred:    1\n" in text
    assert text.endswith("Completion: 66.7%\n")


def test_tackle_export_errors(controller, fake_mpv, tmp_path, monkeypatch):
    with pytest.raises(ValidationError, match="--player is required"):
        controller.tackle_export("  ")
    with pytest.raises(NotFoundError, match="no tackles found for player '4'"):
        controller.tackle_export("4")

    controller.tackle_add(TackleInput(player="4", outcome="other"))
    with pytest.raises(ValidationError, match="failed to create output file"):
        controller.tackle_export("4", str(tmp_path / "missing" / "dir" / "out.txt"))

    monkeypatch.chdir(tmp_path)
    assert controller.tackle_export("4") == "4-tackles.txt"
    assert (tmp_path / "4-tackles.txt").read_text().startswith("Tackle Statistics for 4")


def test_categories(controller):
    assert controller.category_list() == []
    b = controller.category_add("ruck")
    a = controller.category_add(" attack ")
    assert [(c.id, c.name) for c in controller.category_list()] == [(a, "attack"), (b, "ruck")]
    with pytest.raises(ValidationError, match="category 'ruck' already exists"):
        controller.category_add("ruck")
    with pytest.raises(ValidationError, match="category name is required"):
        controller.category_add("")
    controller.category_delete("ruck")
    assert [c.name for c in controller.category_list()] == ["attack"]
    with pytest.raises(NotFoundError, match="category 'ruck' not found"):
        controller.category_delete("ruck")
