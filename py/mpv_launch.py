"""mpv_launch.py

Start mpv with the IPC endpoint enabled and wait until the endpoint accepts
connections. The returned PlayerProcess owns both the child and the connected client.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from typing import Callable

from deps_check import require_mpv
from mpv_ipc import DEFAULT_TIMEOUT, MpvClient, default_endpoint
from tagging_errors import NoPlayerError, ValidationError

logger = logging.getLogger(__name__)

CONNECT_ATTEMPTS = 50
CONNECT_INTERVAL = 0.1


def build_mpv_args(video: str, endpoint: str) -> list[str]:
    return [
        "mpv",
        "--pause",
        "--idle=yes",
        "--force-window=immediate",
        f"--input-ipc-server={endpoint}",
        video,
    ]


class PlayerProcess:
    def __init__(self, proc: subprocess.Popen, client: MpvClient, endpoint: str) -> None:
        self.proc = proc
        self.client = client
        self.endpoint = endpoint

    @property
    def pid(self) -> int:
        return self.proc.pid

    def wait(self) -> int:
        """Block until mpv exits; returns its exit code."""
        rc = self.proc.wait()
        self.client.close()
        logger.debug("mpv exited rc=%s", rc)
        return rc

    def kill(self) -> None:
        self.client.close()
        if self.proc.poll() is None:
            self.proc.kill()
            self.proc.wait()
        logger.debug("mpv killed pid=%s", self.proc.pid)


def launch_player(
    video: str,
    endpoint: str = "",
    *,
    attempts: int = CONNECT_ATTEMPTS,
    interval: float = CONNECT_INTERVAL,
    timeout: float | None = None,
    popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    client_factory: Callable[[str], MpvClient] | None = None,
    check_binary: bool = True,
) -> PlayerProcess:
    if not os.path.exists(video):
        raise ValidationError(f"video not found: {video}")
    if check_binary:
        require_mpv()
    endpoint = endpoint or default_endpoint()
    if not endpoint.startswith("\\\\.\\pipe\\") and os.path.exists(endpoint):
        # stale socket from a previous run
        os.unlink(endpoint)

    args = build_mpv_args(video, endpoint)
    logger.info("launching: %s", " ".join(args))
    proc = popen(args, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)

    if client_factory is None:
        client_factory = lambda ep: MpvClient(ep, timeout=timeout or DEFAULT_TIMEOUT)  # noqa: E731

    last_error: Exception | None = None
    for _ in range(attempts):
        if proc.poll() is not None:
            raise NoPlayerError(endpoint, f"mpv exited early with code {proc.returncode}")
        client = client_factory(endpoint)
        try:
            client.connect()
            logger.debug("mpv endpoint ready at %s", endpoint)
            return PlayerProcess(proc, client, endpoint)
        except NoPlayerError as e:
            last_error = e
            time.sleep(interval)

    proc.kill()
    proc.wait()
    reason = f"gave up after {attempts} attempts"
    if last_error is not None:
        logger.debug("last connect error: %s", last_error)
    raise NoPlayerError(endpoint, reason)
