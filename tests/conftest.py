import json
import shutil
import socket
import sys
import tempfile
import threading
import time
from pathlib import Path

import pytest

# py/ holds flat modules (no package); make them importable without installing.
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "py"))

from tagging_config import Settings
from tagging_schema import open_db
from tagging_session import ClipMarkerSlot, SessionController


class FakeMpv:
    """Speaks mpv's JSON IPC on a real unix socket, backed by a property dict."""

    def __init__(self, path):
        self.path = path
        self.props = {
            "path": "/v.mp4",
            "time-pos": 0.0,
            "duration": 120.0,
            "pause": True,
            "ab-loop-a": "no",
            "ab-loop-b": "no",
            "mute": False,
            "speed": 1.0,
        }
        self.requests = []
        self.silent = set()
        self.chatty = False
        self._conns = []
        self._lock = threading.Lock()
        self._server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self._server.bind(path)
        self._server.listen(8)
        self._closed = False
        threading.Thread(target=self._accept_loop, daemon=True).start()

    def _accept_loop(self):
        while not self._closed:
            try:
                conn, _ = self._server.accept()
            except OSError:
                return
            with self._lock:
                self._conns.append(conn)
            threading.Thread(target=self._serve, args=(conn,), daemon=True).start()

    def _serve(self, conn):
        rfile = conn.makefile("rb")
        try:
            for line in rfile:
                req = json.loads(line)
                with self._lock:
                    self.requests.append(req)
                if self.chatty:
                    self._send(conn, {"event": "property-change", "name": "time-pos", "data": 1.0})
                resp = self.reply(req)
                if resp is not None:
                    self._send(conn, resp)
        except (OSError, ValueError):
            pass
        finally:
            rfile.close()

    def _send(self, conn, obj):
        try:
            conn.sendall((json.dumps(obj) + "\n").encode())
        except OSError:
            pass

    def reply(self, req):
        cmd = req["command"]
        name, args = cmd[0], cmd[1:]
        rid = req["request_id"]
        if name in self.silent:
            return None
        if name == "get_property":
            if args[0] not in self.props:
                return {"request_id": rid, "error": "property unavailable", "data": None}
            return {"request_id": rid, "error": "success", "data": self.props[args[0]]}
        if name == "set_property":
            self.props[args[0]] = args[1]
            return {"request_id": rid, "error": "success", "data": None}
        if name == "seek":
            if len(args) > 1 and args[1] == "relative":
                self.props["time-pos"] = self.props["time-pos"] + float(args[0])
            else:
                self.props["time-pos"] = float(args[0])
            return {"request_id": rid, "error": "success", "data": None}
        if name in ("show-text", "observe_property"):
            return {"request_id": rid, "error": "success", "data": None}
        return {"request_id": rid, "error": "invalid parameter", "data": None}

    def commands(self, name):
        with self._lock:
            return [r["command"] for r in self.requests if r["command"][0] == name]

    def send_raw(self, data):
        with self._lock:
            conns = list(self._conns)
        for c in conns:
            try:
                c.sendall(data)
            except OSError:
                pass

    def emit(self, obj):
        self.send_raw((json.dumps(obj) + "\n").encode())

    def close(self):
        self._closed = True
        with self._lock:
            conns = list(self._conns)
        for c in conns:
            try:
                c.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            c.close()
        try:
            # wake the thread blocked in accept() so the listener really goes away
            self._server.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._server.close()


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def sock_dir():
    # unix socket paths are limited to ~100 bytes; pytest's tmp_path can be longer
    d = tempfile.mkdtemp(prefix="tr-")
    yield Path(d)
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def fake_mpv(sock_dir):
    fake = FakeMpv(str(sock_dir / "mpv.sock"))
    yield fake
    fake.close()


@pytest.fixture
def settings(tmp_path, fake_mpv):
    return Settings(
        data_dir=tmp_path / "data",
        db_path=tmp_path / "data" / "data.db",
        socket=fake_mpv.path,
        timeout=2.0,
    )


@pytest.fixture
def controller(settings):
    return SessionController(settings, marker=ClipMarkerSlot())


@pytest.fixture
def con(tmp_path):
    c = open_db(tmp_path / "store.db")
    yield c
    c.close()


@pytest.fixture
def db_rows(settings):
    """Read-only helper: run a query against the controller's database."""

    def run(sql, params=()):
        c = open_db(settings.db_path)
        try:
            return [dict(r) for r in c.execute(sql, params).fetchall()]
        finally:
            c.close()

    return run


class RecordingRunner:
    """Stands in for the ffmpeg subprocess; records argument lists."""

    def __init__(self, returncodes=None):
        self.calls = []
        self.returncodes = list(returncodes or [])

    def __call__(self, args):
        self.calls.append(list(args))
        if self.returncodes:
            return self.returncodes.pop(0)
        return 0


@pytest.fixture
def runner():
    return RecordingRunner()
