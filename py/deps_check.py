"""deps_check.py

Locate the external binaries (mpv, ffmpeg) on PATH.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass

from tagging_errors import DependencyError

MPV_INSTALL_URL = "https://mpv.io/installation/"
FFMPEG_INSTALL_URL = "https://ffmpeg.org/download.html"


@dataclass
class DependencyStatus:
    name: str
    path: str | None
    install_url: str

    @property
    def found(self) -> bool:
        return self.path is not None


def check_mpv() -> DependencyStatus:
    return DependencyStatus("mpv", shutil.which("mpv"), MPV_INSTALL_URL)


def check_ffmpeg() -> DependencyStatus:
    return DependencyStatus("ffmpeg", shutil.which("ffmpeg"), FFMPEG_INSTALL_URL)


def check_all() -> list[DependencyStatus]:
    return [check_mpv(), check_ffmpeg()]


def _require(status: DependencyStatus) -> str:
    if status.path is None:
        raise DependencyError(status.name, status.install_url)
    return status.path


def require_mpv() -> str:
    return _require(check_mpv())


def require_ffmpeg() -> str:
    return _require(check_ffmpeg())
