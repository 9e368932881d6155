"""clip_export.py

Cut clips out of a video with ffmpeg.

Argument order matters: -ss goes before -i (input-side seek), and -to is the clip
length relative to that seek point.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field
from typing import Callable, Sequence

from deps_check import require_ffmpeg
from tagging_errors import ExportFailedError, ValidationError

logger = logging.getLogger(__name__)

VALID_FORMATS = ("mp4", "webm", "mkv")
DEFAULT_FORMAT = "mp4"

Runner = Callable[[Sequence[str]], int]


def validate_format(fmt: str) -> str:
    f = (fmt or DEFAULT_FORMAT).lower().lstrip(".")
    if f not in VALID_FORMATS:
        raise ValidationError(f"invalid format '{fmt}': must be one of: {', '.join(VALID_FORMATS)}")
    return f


def default_output_path(clip_id: int, fmt: str) -> str:
    return f"clip-{clip_id}.{fmt}"


def resolve_output_path(output: str, clip_id: int, fmt: str) -> str:
    if not output:
        return default_output_path(clip_id, fmt)
    if not os.path.splitext(output)[1]:
        return f"{output}.{fmt}"
    return output


def build_ffmpeg_args(
    video_path: str, start: float, end: float, output_path: str, fmt: str, reencode: bool
) -> list[str]:
    if end <= start:
        raise ValidationError(f"clip end ({end:.3f}) must be after start ({start:.3f})")
    args = [
        "-y",
        "-ss",
        f"{start:.3f}",
        "-i",
        video_path,
        "-to",
        f"{end - start:.3f}",
    ]
    if not reencode:
        args += ["-c", "copy"]
    elif fmt == "webm":
        args += ["-c:v", "libvpx-vp9", "-c:a", "libopus"]
    else:
        args += ["-c:v", "libx264", "-c:a", "aac"]
    args.append(output_path)
    return args


def run_ffmpeg(args: Sequence[str]) -> int:
    # stdout/stderr inherited so ffmpeg's progress is shown as-is
    cp = subprocess.run(["ffmpeg", *args])
    return cp.returncode


@dataclass
class ExportRequest:
    clip_id: int
    video_path: str
    start: float
    end: float
    output: str = ""


@dataclass
class ExportSummary:
    total: int = 0
    succeeded: list[str] = field(default_factory=list)
    failed: list[tuple[int, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def line(self) -> str:
        return f"Exported {len(self.succeeded)}/{self.total} clips successfully."


def export_clip(
    req: ExportRequest,
    fmt: str = DEFAULT_FORMAT,
    reencode: bool = False,
    runner: Runner | None = None,
) -> str:
    """Export one clip; returns the output path. Raises ExportFailedError on non-zero exit."""
    fmt = validate_format(fmt)
    out = resolve_output_path(req.output, req.clip_id, fmt)
    args = build_ffmpeg_args(req.video_path, req.start, req.end, out, fmt, reencode)
    if runner is None:
        require_ffmpeg()
        runner = run_ffmpeg
    logger.info("ffmpeg %s", " ".join(args))
    rc = runner(args)
    if rc != 0:
        logger.warning("ffmpeg failed rc=%s for clip %s", rc, req.clip_id)
        raise ExportFailedError(out, rc)
    return out


def export_many(
    reqs: Sequence[ExportRequest],
    fmt: str = DEFAULT_FORMAT,
    reencode: bool = False,
    runner: Runner | None = None,
    on_progress: Callable[[ExportRequest, str | None, Exception | None], None] | None = None,
) -> ExportSummary:
    """Export every clip independently; a failure does not stop the batch."""
    fmt = validate_format(fmt)
    if runner is None:
        require_ffmpeg()
        runner = run_ffmpeg
    summary = ExportSummary(total=len(reqs))
    for req in reqs:
        try:
            out = export_clip(req, fmt, reencode, runner)
        except (ExportFailedError, ValidationError) as e:
            summary.failed.append((req.clip_id, str(e)))
            if on_progress:
                on_progress(req, None, e)
            continue
        summary.succeeded.append(out)
        if on_progress:
            on_progress(req, out, None)
    return summary
