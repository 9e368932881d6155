#!/usr/bin/env python3
r"""Error kinds shared by the player channel, the store, and the session verbs.

Every error a verb can surface is a TaggingError; `kind` names its category so the
CLI and the TUI can present it without caring where it came from.
"""

from __future__ import annotations

NO_PLAYER_HINT = "is the player running with a video open?"


class TaggingError(RuntimeError):
    kind = "error"


class NoPlayerError(TaggingError):
    kind = "no-player"

    def __init__(self, endpoint: str, reason: str = "") -> None:
        self.endpoint = endpoint
        detail = f" ({reason})" if reason else ""
        super().__init__(f"failed to connect to mpv at {endpoint}{detail}\n({NO_PLAYER_HINT})")


class WireError(TaggingError):
    kind = "wire"


class ChannelClosedError(WireError):
    def __init__(self, reason: str = "channel closed") -> None:
        super().__init__(reason)


class NotConnectedError(WireError):
    def __init__(self) -> None:
        super().__init__("mpv: not connected")


class CommandFailedError(TaggingError):
    kind = "command-failed"

    def __init__(self, command: str, error: str) -> None:
        self.command = command
        self.error = error
        super().__init__(f"mpv: {command}: {error}")


class PropertyTypeError(CommandFailedError):
    def __init__(self, name: str, expected: str, got: str) -> None:
        super().__init__(f"get_property {name}", f"expected {expected}, got {got}")


class StoreError(TaggingError):
    kind = "store"


class ValidationError(TaggingError):
    kind = "validation"


class NotFoundError(ValidationError):
    pass


class InvalidTimeFormatError(ValidationError):
    def __init__(self, text: str) -> None:
        self.text = text
        super().__init__(f"invalid time format: {text!r}")


class VideoChangedError(ValidationError):
    def __init__(self, started: str, current: str) -> None:
        self.started = started
        self.current = current
        super().__init__("video changed since clip start was marked")


class ExportFailedError(TaggingError):
    kind = "subprocess"

    def __init__(self, output_path: str, returncode: int) -> None:
        self.output_path = output_path
        self.returncode = returncode
        super().__init__(f"ffmpeg export failed: {output_path} (rc={returncode})")


class DependencyError(TaggingError):
    kind = "dependency"

    def __init__(self, name: str, install_url: str) -> None:
        self.name = name
        self.install_url = install_url
        super().__init__(f"{name} not found. Install from: {install_url}")
