from unittest import mock

import pytest

from mpv_launch import build_mpv_args, launch_player
from tagging_errors import DependencyError, NoPlayerError, ValidationError


class FakeProc:
    def __init__(self):
        self.pid = 4242
        self.returncode = None
        self.killed = False

    def poll(self):
        return self.returncode

    def kill(self):
        self.killed = True
        self.returncode = -9

    def wait(self):
        if self.returncode is None:
            self.returncode = 0
        return self.returncode


class FlakyClient:
    """Refuses the first `failures` connects."""

    attempts = 0

    def __init__(self, failures, endpoint):
        self.failures = failures
        self.endpoint = endpoint
        self.closed = False

    def connect(self):
        FlakyClient.attempts += 1
        if FlakyClient.attempts <= self.failures:
            raise NoPlayerError(self.endpoint, "not yet")
        return self

    def close(self):
        self.closed = True


@pytest.fixture
def video(tmp_path):
    p = tmp_path / "match.mp4"
    p.write_bytes(b"\x00")
    return str(p)


@pytest.fixture(autouse=True)
def reset_attempts():
    FlakyClient.attempts = 0


def test_mpv_args():
    args = build_mpv_args("/v.mp4", "/tmp/x.sock")
    assert args[0] == "mpv"
    assert "--pause" in args
    assert "--idle=yes" in args
    assert "--input-ipc-server=/tmp/x.sock" in args
    assert args[-1] == "/v.mp4"


def test_launch_waits_for_endpoint(video, sock_dir):
    proc = FakeProc()
    popen = mock.Mock(return_value=proc)
    endpoint = str(sock_dir / "mpv.sock")
    player = launch_player(
        video,
        endpoint,
        interval=0,
        popen=popen,
        client_factory=lambda ep: FlakyClient(3, ep),
        check_binary=False,
    )
    assert FlakyClient.attempts == 4
    assert popen.call_args[0][0] == build_mpv_args(video, endpoint)
    assert player.endpoint == endpoint

    assert player.wait() == 0
    assert player.client.closed


def test_launch_gives_up_and_kills(video, sock_dir):
    proc = FakeProc()
    with pytest.raises(NoPlayerError, match="gave up after 5 attempts"):
        launch_player(
            video,
            str(sock_dir / "mpv.sock"),
            attempts=5,
            interval=0,
            popen=mock.Mock(return_value=proc),
            client_factory=lambda ep: FlakyClient(100, ep),
            check_binary=False,
        )
    assert FlakyClient.attempts == 5
    assert proc.killed


def test_launch_reports_early_exit(video, sock_dir):
    proc = FakeProc()
    proc.returncode = 2
    with pytest.raises(NoPlayerError, match="exited early with code 2"):
        launch_player(
            video,
            str(sock_dir / "mpv.sock"),
            interval=0,
            popen=mock.Mock(return_value=proc),
            client_factory=lambda ep: FlakyClient(0, ep),
            check_binary=False,
        )


def test_launch_checks_inputs(tmp_path, video):
    with pytest.raises(ValidationError, match="video not found"):
        launch_player(str(tmp_path / "nope.mp4"), check_binary=False)
    with mock.patch("deps_check.shutil.which", return_value=None):
        with pytest.raises(DependencyError, match="https://mpv.io/installation/"):
            launch_player(video)


def test_stale_socket_is_removed(video, sock_dir):
    stale = sock_dir / "mpv.sock"
    stale.write_text("")
    launch_player(
        video,
        str(stale),
        interval=0,
        popen=mock.Mock(return_value=FakeProc()),
        client_factory=lambda ep: FlakyClient(0, ep),
        check_binary=False,
    )
    assert not stale.exists()
