from unittest import mock

import pytest

import clip_export
from clip_export import ExportRequest, build_ffmpeg_args, export_clip, export_many, resolve_output_path
from conftest import RecordingRunner
from tagging_errors import DependencyError, ExportFailedError, ValidationError


def test_stream_copy_argument_order():
    out = resolve_output_path("", 7, "mp4")
    args = build_ffmpeg_args("/v.mp4", 12.0, 15.25, out, "mp4", reencode=False)
    assert args == ["-y", "-ss", "12.000", "-i", "/v.mp4", "-to", "3.250", "-c", "copy", "clip-7.mp4"]


@pytest.mark.parametrize(
    "fmt,codecs",
    [
        ("webm", ["-c:v", "libvpx-vp9", "-c:a", "libopus"]),
        ("mp4", ["-c:v", "libx264", "-c:a", "aac"]),
        ("mkv", ["-c:v", "libx264", "-c:a", "aac"]),
    ],
)
def test_reencode_codecs(fmt, codecs):
    args = build_ffmpeg_args("/v.mp4", 1.0, 2.0, f"out.{fmt}", fmt, reencode=True)
    assert args[7:-1] == codecs
    assert args[-1] == f"out.{fmt}"


def test_output_path_gets_extension_when_missing():
    assert resolve_output_path("highlights/try", 3, "webm") == "highlights/try.webm"
    assert resolve_output_path("keep.mov", 3, "mp4") == "keep.mov"
    assert resolve_output_path("", 3, "mkv") == "clip-3.mkv"


def test_invalid_format_and_empty_range():
    with pytest.raises(ValidationError, match="invalid format 'avi'"):
        clip_export.validate_format("avi")
    with pytest.raises(ValidationError):
        build_ffmpeg_args("/v.mp4", 5.0, 5.0, "x.mp4", "mp4", False)


def test_export_clip_failure_is_typed(runner):
    runner.returncodes = [1]
    with pytest.raises(ExportFailedError) as ei:
        export_clip(ExportRequest(4, "/v.mp4", 1.0, 3.0), runner=runner)
    assert ei.value.returncode == 1
    assert ei.value.output_path == "clip-4.mp4"


def test_export_many_continues_after_failure():
    runner = RecordingRunner(returncodes=[0, 1, 0])
    reqs = [ExportRequest(i, "/v.mp4", float(i), float(i) + 2) for i in (1, 2, 3)]
    progress = []
    summary = export_many(reqs, "mp4", False, runner, lambda req, out, err: progress.append((req.clip_id, out)))
    assert len(runner.calls) == 3
    assert summary.succeeded == ["clip-1.mp4", "clip-3.mp4"]
    assert [cid for cid, _ in summary.failed] == [2]
    assert summary.line() == "Exported 2/3 clips successfully."
    assert progress == [(1, "clip-1.mp4"), (2, None), (3, "clip-3.mp4")]
    assert not summary.ok


def test_missing_ffmpeg_fails_early():
    with mock.patch("deps_check.shutil.which", return_value=None):
        with pytest.raises(DependencyError, match="https://ffmpeg.org/download.html"):
            export_clip(ExportRequest(1, "/v.mp4", 0.0, 1.0))


def test_run_ffmpeg_inherits_output():
    with mock.patch("clip_export.subprocess.run") as run:
        run.return_value.returncode = 0
        assert clip_export.run_ffmpeg(["-y"]) == 0
    run.assert_called_once_with(["ffmpeg", "-y"])


def test_controller_exports_stored_clip(controller, fake_mpv, runner):
    a = controller.clip_add("12", "15.25", "first").note_id
    controller.clip_add("30", "31", "second")

    out = controller.clip_export(a, runner=runner)
    assert out == f"clip-{a}.mp4"
    assert runner.calls[0][:9] == ["-y", "-ss", "12.000", "-i", "/v.mp4", "-to", "3.250", "-c", "copy"]

    summary = controller.clip_export_all("webm", True, runner)
    assert summary.line() == "Exported 2/2 clips successfully."
    assert all("libvpx-vp9" in call for call in runner.calls[1:])
