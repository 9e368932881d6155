"""tagging_config.py

Runtime settings, resolved once at startup: CLI flag > environment > default.

  TAGGING_RUGBY_DB        database file
  TAGGING_RUGBY_SOCKET    mpv IPC endpoint
  TAGGING_RUGBY_DATA_DIR  data directory (database, clip marker, TUI log)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from mpv_ipc import DEFAULT_TIMEOUT, default_endpoint
from tagging_schema import DB_FILENAME, default_data_dir

MARKER_FILENAME = "marker.json"
TUI_LOG_FILENAME = "tui.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    db_path: Path
    socket: str
    timeout: float = DEFAULT_TIMEOUT
    verbose: bool = False

    @property
    def marker_path(self) -> Path:
        return self.data_dir / MARKER_FILENAME

    @property
    def tui_log_path(self) -> Path:
        return self.data_dir / TUI_LOG_FILENAME


def resolve_settings(
    db: str | None = None,
    socket: str | None = None,
    verbose: bool = False,
    timeout: float | None = None,
) -> Settings:
    data_dir = default_data_dir()
    if db:
        db_path = Path(db).expanduser()
    elif os.environ.get("TAGGING_RUGBY_DB"):
        db_path = Path(os.environ["TAGGING_RUGBY_DB"]).expanduser()
    else:
        db_path = data_dir / DB_FILENAME
    return Settings(
        data_dir=data_dir,
        db_path=db_path,
        socket=socket or default_endpoint(),
        timeout=timeout if timeout is not None else DEFAULT_TIMEOUT,
        verbose=verbose,
    )


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
    )


def setup_file_logging(settings: Settings) -> None:
    """Send log records to a file so they do not draw over the curses screen."""
    settings.data_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    handler = logging.FileHandler(settings.tui_log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if settings.verbose else logging.INFO)
