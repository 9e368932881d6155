"""mpv_ipc.py

Synchronous client for mpv's JSON IPC (--input-ipc-server).

Wire format: one JSON object per line, both directions.
  request : {"command": [name, arg1, ...], "request_id": N}
  response: {"request_id": N, "error": "success" | <message>, "data": <value>}
  event   : {"event": <name>, ...}            (no request_id)

One background reader per connection routes responses to the waiting command by
request_id and hands events to subscribers. Callers see plain blocking methods.

States: disconnected -> connecting -> ready -> closing -> disconnected.
Commands are accepted only in `ready`.
"""

from __future__ import annotations

import functools
import itertools
import json
import logging
import os
import socket
import sys
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from tagging_errors import (
    ChannelClosedError,
    CommandFailedError,
    NoPlayerError,
    NotConnectedError,
    PropertyTypeError,
    WireError,
)

logger = logging.getLogger(__name__)

DEFAULT_SOCKET_PATH = "/tmp/tagging-rugby-mpv.sock"
DEFAULT_PIPE_PATH = r"\\.\pipe\tagging-rugby-mpv"
DEFAULT_TIMEOUT = 5.0

DISCONNECTED = "disconnected"
CONNECTING = "connecting"
READY = "ready"
CLOSING = "closing"

AB_LOOP_OFF = "no"


def default_endpoint() -> str:
    env = os.environ.get("TAGGING_RUGBY_SOCKET")
    if env:
        return env
    if sys.platform == "win32":
        return DEFAULT_PIPE_PATH
    return DEFAULT_SOCKET_PATH


@dataclass
class Response:
    request_id: int
    error: str
    data: Any = None

    @property
    def ok(self) -> bool:
        return self.error == "success"


@dataclass
class Event:
    name: str
    data: Any = None
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class PropertyValue:
    """A response `data` value tagged with its JSON kind."""

    name: str
    kind: str  # number | string | bool | none | other
    value: Any

    @classmethod
    def of(cls, name: str, value: Any) -> "PropertyValue":
        if isinstance(value, bool):
            kind = "bool"
        elif isinstance(value, (int, float)):
            kind = "number"
        elif isinstance(value, str):
            kind = "string"
        elif value is None:
            kind = "none"
        else:
            kind = "other"
        return cls(name=name, kind=kind, value=value)

    def expect_number(self) -> float:
        if self.kind != "number":
            raise PropertyTypeError(self.name, "number", self.kind)
        return float(self.value)

    def expect_str(self) -> str:
        if self.kind != "string":
            raise PropertyTypeError(self.name, "string", self.kind)
        return str(self.value)

    def expect_bool(self) -> bool:
        if self.kind != "bool":
            raise PropertyTypeError(self.name, "bool", self.kind)
        return bool(self.value)


def encode_request(request_id: int, name: str, *args: Any) -> bytes:
    msg = {"command": [name, *args], "request_id": request_id}
    return (json.dumps(msg, ensure_ascii=False) + "\n").encode("utf-8")


def decode_message(line: bytes | str) -> Response | Event:
    """Parse one line. Raises ValueError on anything that is not a JSON object."""
    if isinstance(line, bytes):
        line = line.decode("utf-8")
    obj = json.loads(line)
    if not isinstance(obj, dict):
        raise ValueError(f"expected JSON object, got {type(obj).__name__}")
    if "request_id" in obj and "event" not in obj:
        return Response(
            request_id=int(obj.get("request_id") or 0),
            error=str(obj.get("error", "success")),
            data=obj.get("data"),
        )
    return Event(name=str(obj.get("event", "")), data=obj.get("data"), raw=obj)


class _Slot:
    __slots__ = ("done", "response", "failure")

    def __init__(self) -> None:
        self.done = threading.Event()
        self.response: Response | None = None
        self.failure: Exception | None = None


ERROR_BROKEN_PIPE = 109
PIPE_POLL_INTERVAL = 0.01


@functools.lru_cache(maxsize=None)
def _kernel32() -> Any:
    import ctypes

    return ctypes.WinDLL("kernel32", use_last_error=True)


def _peek_named_pipe(handle: int) -> int:
    """Bytes waiting in the pipe, or -1 once the other end has gone away."""
    import ctypes

    avail = ctypes.c_ulong(0)
    ok = _kernel32().PeekNamedPipe(
        ctypes.c_void_p(handle), None, 0, None, ctypes.byref(avail), None
    )
    if not ok:
        err = ctypes.get_last_error()
        if err == ERROR_BROKEN_PIPE:
            return -1
        raise ctypes.WinError(err)
    return int(avail.value)


class _PipeStream:
    """Windows named pipe.

    The handle is synchronous, so a blocking ReadFile would hold up every
    WriteFile behind it. The reader therefore polls PeekNamedPipe and only reads
    bytes that are already there; shutdown() stops the polling.
    """

    def __init__(self, f: Any, available: Callable[[], int]) -> None:
        self._f = f
        self._available = available
        self._buf = bytearray()
        self._stop = threading.Event()

    @classmethod
    def open(cls, path: str) -> "_PipeStream":
        import msvcrt

        f = open(path, "r+b", buffering=0)
        handle = msvcrt.get_osfhandle(f.fileno())
        return cls(f, lambda: _peek_named_pipe(handle))

    def sendall(self, data: bytes) -> None:
        self._f.write(data)

    def readline(self) -> bytes:
        while True:
            i = self._buf.find(b"\n")
            if i >= 0:
                line = bytes(self._buf[: i + 1])
                del self._buf[: i + 1]
                return line
            if self._stop.is_set():
                return b""
            n = self._available()
            if n < 0:
                line = bytes(self._buf)
                self._buf.clear()
                return line
            if n == 0:
                self._stop.wait(PIPE_POLL_INTERVAL)
                continue
            self._buf += self._f.read(n)

    def shutdown(self) -> None:
        self._stop.set()

    def close(self) -> None:
        self._stop.set()
        self._f.close()


class _SocketStream:
    def __init__(self, path: str, timeout: float) -> None:
        self._sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self._sock.settimeout(timeout)
        try:
            self._sock.connect(path)
        except OSError:
            self._sock.close()
            raise
        self._sock.settimeout(None)
        self._rfile = self._sock.makefile("rb")

    def sendall(self, data: bytes) -> None:
        self._sock.sendall(data)

    def readline(self) -> bytes:
        return self._rfile.readline()

    def shutdown(self) -> None:
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass

    def close(self) -> None:
        self._rfile.close()
        self._sock.close()


def _open_stream(endpoint: str, timeout: float) -> _PipeStream | _SocketStream:
    if endpoint.startswith("\\\\.\\pipe\\"):
        return _PipeStream.open(endpoint)
    return _SocketStream(endpoint, timeout)


class MpvClient:
    def __init__(self, endpoint: str = "", timeout: float = DEFAULT_TIMEOUT) -> None:
        self.endpoint = endpoint or default_endpoint()
        self.timeout = timeout
        self.state = DISCONNECTED
        self._stream: _PipeStream | _SocketStream | None = None
        self._reader: threading.Thread | None = None
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._pending: dict[int, _Slot] = {}
        self._subscribers: list[Callable[[Event], None]] = []

    def __enter__(self) -> "MpvClient":
        if self.state == DISCONNECTED:
            self.connect()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # connection lifecycle

    def connect(self) -> "MpvClient":
        with self._lock:
            if self.state != DISCONNECTED:
                raise WireError(f"mpv: cannot connect in state {self.state}")
            self.state = CONNECTING
        try:
            stream = _open_stream(self.endpoint, self.timeout)
        except OSError as e:
            with self._lock:
                self.state = DISCONNECTED
            raise NoPlayerError(self.endpoint, str(e)) from e
        with self._lock:
            self._stream = stream
            self.state = READY
        self._reader = threading.Thread(target=self._read_loop, name="mpv-ipc-reader", daemon=True)
        self._reader.start()
        logger.debug("mpv: connected to %s", self.endpoint)
        return self

    @property
    def connected(self) -> bool:
        return self.state == READY

    def close(self) -> None:
        """Idempotent. Fails every pending command with ChannelClosedError."""
        self._shutdown("channel closed")
        reader = self._reader
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=1.0)
        self._reader = None

    def _shutdown(self, reason: str) -> None:
        with self._lock:
            if self.state in (DISCONNECTED, CLOSING):
                return
            self.state = CLOSING
            stream = self._stream
            self._stream = None
            pending = list(self._pending.values())
            self._pending.clear()
        for slot in pending:
            slot.failure = ChannelClosedError(reason)
            slot.done.set()
        if stream is not None:
            stream.shutdown()
            try:
                stream.close()
            except OSError as e:
                logger.debug("mpv: close: %s", e)
        with self._lock:
            self.state = DISCONNECTED
        logger.debug("mpv: closed (%s)", reason)

    # reader

    def _read_loop(self) -> None:
        while True:
            stream = self._stream
            if stream is None:
                return
            try:
                line = stream.readline()
            except (OSError, ValueError) as e:
                if self.state == READY:
                    logger.warning("mpv: read failed: %s", e)
                self._shutdown(f"channel closed: {e}")
                return
            if not line:
                self._shutdown("channel closed: EOF")
                return
            line = line.strip()
            if not line:
                continue
            try:
                msg = decode_message(line)
            except ValueError as e:
                logger.warning("mpv: malformed message %r: %s", line[:200], e)
                self._shutdown("channel closed: malformed JSON from player")
                return
            if isinstance(msg, Response):
                self._deliver(msg)
            else:
                self._publish(msg)

    def _deliver(self, resp: Response) -> None:
        with self._lock:
            slot = self._pending.pop(resp.request_id, None)
        if slot is None:
            logger.debug("mpv: discarding response for unknown request_id %s", resp.request_id)
            return
        slot.response = resp
        slot.done.set()

    def _publish(self, event: Event) -> None:
        for cb in list(self._subscribers):
            try:
                cb(event)
            except Exception:
                logger.exception("mpv: event subscriber failed on %s", event.name)

    def subscribe(self, callback: Callable[[Event], None]) -> Callable[[], None]:
        """Register an event callback (runs on the reader thread). Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # commands

    def command(self, name: str, *args: Any) -> Any:
        slot = _Slot()
        with self._lock:
            if self.state != READY or self._stream is None:
                raise NotConnectedError()
            request_id = next(self._ids)
            self._pending[request_id] = slot
            stream = self._stream
        payload = encode_request(request_id, name, *args)
        try:
            with self._write_lock:
                stream.sendall(payload)
        except OSError as e:
            logger.warning("mpv: write failed: %s", e)
            self._shutdown(f"channel closed: {e}")
            raise ChannelClosedError(f"channel closed: {e}") from e

        if not slot.done.wait(self.timeout):
            with self._lock:
                self._pending.pop(request_id, None)
            self._shutdown(f"channel closed: timeout on {name}")
            raise WireError(f"mpv: timeout after {self.timeout:.1f}s waiting for {name}")
        if slot.failure is not None:
            raise slot.failure
        resp = slot.response
        if resp is None:
            raise WireError(f"mpv: no response for {name}")
        if not resp.ok:
            logger.debug("mpv: %s failed: %s", name, resp.error)
            raise CommandFailedError(name, resp.error)
        return resp.data

    def get_property(self, name: str) -> PropertyValue:
        return PropertyValue.of(name, self.command("get_property", name))

    def set_property(self, name: str, value: Any) -> None:
        self.command("set_property", name, value)

    def observe_property(self, observer_id: int, name: str) -> None:
        self.command("observe_property", observer_id, name)

    # typed helpers

    def get_time_pos(self) -> float:
        return self.get_property("time-pos").expect_number()

    def get_duration(self) -> float:
        return self.get_property("duration").expect_number()

    def get_path(self) -> str:
        return self.get_property("path").expect_str()

    def get_paused(self) -> bool:
        return self.get_property("pause").expect_bool()

    def toggle_pause(self) -> bool:
        paused = not self.get_paused()
        self.set_property("pause", paused)
        return paused

    def seek(self, seconds: float) -> None:
        self.command("seek", float(seconds), "absolute")

    def seek_relative(self, delta: float) -> None:
        self.command("seek", float(delta), "relative")

    def set_ab_loop(self, a: float, b: float) -> None:
        self.set_property("ab-loop-a", float(a))
        self.set_property("ab-loop-b", float(b))

    def clear_ab_loop(self) -> None:
        self.set_property("ab-loop-a", AB_LOOP_OFF)
        self.set_property("ab-loop-b", AB_LOOP_OFF)

    def show_text(self, text: str, duration_ms: int = 2000) -> None:
        self.command("show-text", text, duration_ms)

    def get_mute(self) -> bool:
        return self.get_property("mute").expect_bool()

    def toggle_mute(self) -> bool:
        muted = not self.get_mute()
        self.set_property("mute", muted)
        return muted

    def get_speed(self) -> float:
        return self.get_property("speed").expect_number()

    def set_speed(self, speed: float) -> None:
        self.set_property("speed", float(speed))
