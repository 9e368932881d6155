#!/usr/bin/env python3
r"""Timestamp parsing and formatting.

Accepted input forms, tried in order:
  H:MM:SS   -> hours*3600 + minutes*60 + seconds
  MM:SS     -> minutes*60 + seconds
  12.5      -> seconds (non-negative decimal)

Output is always H:MM:SS with zero-padded minutes and seconds.
"""

from __future__ import annotations

import re

from tagging_errors import InvalidTimeFormatError

_HMS_RE = re.compile(r"^(\d+):([0-5]?\d):([0-5]?\d(?:\.\d+)?)$")
_MS_RE = re.compile(r"^(\d+):([0-5]?\d(?:\.\d+)?)$")
_SECONDS_RE = re.compile(r"^(\d+(?:\.\d*)?|\.\d+)$")


def parse_time(text: str) -> float:
    s = str(text or "").strip()
    m = _HMS_RE.match(s)
    if m:
        return int(m.group(1)) * 3600 + int(m.group(2)) * 60 + _num(m.group(3))
    m = _MS_RE.match(s)
    if m:
        return int(m.group(1)) * 60 + _num(m.group(2))
    if _SECONDS_RE.match(s):
        return float(s)
    raise InvalidTimeFormatError(s)


def _num(s: str) -> float:
    v = float(s)
    return int(v) if v.is_integer() else v


def format_time(seconds: float) -> str:
    """Format seconds as H:MM:SS (e.g. 0:01:30, 1:11:22). Negative input clamps to 0."""
    if seconds is None or seconds < 0:
        seconds = 0
    total = int(seconds)
    hours = total // 3600
    mins = (total % 3600) // 60
    secs = total % 60
    return f"{hours}:{mins:02d}:{secs:02d}"


def format_hms_slug(seconds: float) -> str:
    """H-MM-SS, safe for filenames."""
    return format_time(seconds).replace(":", "-")
