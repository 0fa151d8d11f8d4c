# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""In-container supervisor (the image's entrypoint).

Starts sshd as a child, then polls until one of:

- the stop-request file ``$CODIUM_WS/.codium-devcontainer-stop`` exists
  (it is deleted and the supervisor terminates),
- no established connection to port 22 has been seen for
  ``IDLE_GRACE_SECONDS`` of consecutive polls,
- SIGTERM or SIGINT is received,

and then stops sshd and exits 0.  If sshd dies on its own the supervisor
exits 1 so the container stops with a failure status.

This module is copied into the image verbatim and executed by the
image's ``python3``.  It must only import the standard library.
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import subprocess
import sys
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from types import FrameType
from typing import Protocol


logger = logging.getLogger("codium_devcontainer.supervisor")

STOP_FILE_NAME = ".codium-devcontainer-stop"
SSH_PORT = 22

DEFAULT_WORKSPACE = "/workspace"
DEFAULT_CHECK_INTERVAL = 2
DEFAULT_IDLE_GRACE_SECONDS = 60
DEFAULT_SSHD = "/usr/sbin/sshd"

STATE_STARTING = "starting"
STATE_SUPERVISING = "supervising"
STATE_TERMINATING = "terminating"

_TCP_ESTABLISHED = "01"
_CHILD_STOP_TIMEOUT = 10.0


class ChildProcess(Protocol):
    """The subset of ``subprocess.Popen`` the supervisor relies on."""

    def poll(self) -> int | None: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    def wait(self, timeout: float | None = None) -> int: ...


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default
    if value < 1:
        logger.warning("Ignoring non-positive %s=%d", name, value)
        return default
    return value


@dataclass(frozen=True)
class SupervisorSettings:
    """Supervisor tuning, normally read from the environment.

    Attributes:
        workspace: Directory watched for the stop-request file
            (``CODIUM_WS``).
        check_interval: Seconds between polls (``CHECK_INTERVAL``).
        idle_grace_seconds: Consecutive idle seconds before terminating
            (``IDLE_GRACE_SECONDS``).
    """

    workspace: Path = Path(DEFAULT_WORKSPACE)
    check_interval: int = DEFAULT_CHECK_INTERVAL
    idle_grace_seconds: int = DEFAULT_IDLE_GRACE_SECONDS

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None
    ) -> SupervisorSettings:
        env = os.environ if environ is None else environ
        return cls(
            workspace=Path(env.get("CODIUM_WS") or DEFAULT_WORKSPACE),
            check_interval=_env_int(
                env, "CHECK_INTERVAL", DEFAULT_CHECK_INTERVAL
            ),
            idle_grace_seconds=_env_int(
                env, "IDLE_GRACE_SECONDS", DEFAULT_IDLE_GRACE_SECONDS
            ),
        )

    @property
    def stop_file(self) -> Path:
        return self.workspace / STOP_FILE_NAME


def _ss_has_established(output: str, port: int) -> bool:
    suffix = f":{port}"
    for line in output.splitlines()[1:]:
        fields = line.split()
        if len(fields) < 5:
            continue
        if fields[0].startswith("ESTAB") and fields[3].endswith(suffix):
            return True
    return False


def _proc_has_established(port: int) -> bool:
    for table in ("/proc/net/tcp", "/proc/net/tcp6"):
        try:
            with open(table) as f:
                lines = f.readlines()[1:]
        except OSError:
            continue
        for line in lines:
            fields = line.split()
            if len(fields) < 4 or fields[3] != _TCP_ESTABLISHED:
                continue
            _, _, local_port = fields[1].rpartition(":")
            if int(local_port, 16) == port:
                return True
    return False


def has_established_connection(port: int = SSH_PORT) -> bool:
    """Snapshot the connection table for an ESTABLISHED socket on *port*.

    Uses ``ss -tan``; when ``ss`` is not installed the kernel's
    ``/proc/net/tcp`` tables are read instead.
    """
    try:
        result = subprocess.run(
            ["ss", "-tan"],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return _proc_has_established(port)
    if result.returncode != 0:
        return _proc_has_established(port)
    return _ss_has_established(result.stdout, port)


def spawn_sshd(sshd: str = DEFAULT_SSHD) -> subprocess.Popen[bytes]:
    """Start sshd in the foreground (``-D``) as a child process."""
    logger.info("Starting %s", sshd)
    return subprocess.Popen([sshd, "-D", "-e"])


class Supervisor:
    """Idle watchdog owning the sshd child.

    The probe, sleep and child factory are injectable so the state
    machine can be driven without sshd or a real clock.

    Attributes:
        state: One of ``starting``, ``supervising``, ``terminating``.
        idle_elapsed: Seconds of consecutive polls without a connection.
        polls: Number of completed polls.
    """

    def __init__(
        self,
        settings: SupervisorSettings,
        *,
        probe: Callable[[], bool] = has_established_connection,
        sleep: Callable[[float], None] = time.sleep,
        spawn: Callable[[], ChildProcess] = spawn_sshd,
        install_signals: bool = True,
    ) -> None:
        self.settings = settings
        self.state = STATE_STARTING
        self.idle_elapsed = 0
        self.polls = 0
        self._probe = probe
        self._sleep = sleep
        self._spawn = spawn
        self._install_signals = install_signals
        self._child: ChildProcess | None = None
        self._termination_requested = False

    def request_termination(
        self, signum: int = 0, frame: FrameType | None = None
    ) -> None:
        """Signal handler: terminate at the next checkpoint."""
        if signum:
            logger.info("Received signal %d", signum)
        self._termination_requested = True

    def start(self) -> None:
        """Launch sshd and install signal handlers."""
        self._child = self._spawn()
        if self._install_signals:
            signal.signal(signal.SIGTERM, self.request_termination)
            signal.signal(signal.SIGINT, self.request_termination)
        self.state = STATE_SUPERVISING

    def poll(self) -> bool:
        """Run one supervision check.

        Returns:
            True if the supervisor should terminate.
        """
        self.polls += 1
        stop_file = self.settings.stop_file
        if stop_file.exists():
            stop_file.unlink(missing_ok=True)
            logger.info("Stop requested via %s", stop_file)
            return True

        if self._probe():
            self.idle_elapsed = 0
            return False

        self.idle_elapsed += self.settings.check_interval
        if self.idle_elapsed >= self.settings.idle_grace_seconds:
            logger.info(
                "No active SSH sessions for %ds; stopping.",
                self.settings.idle_grace_seconds,
            )
            return True
        return False

    def child_alive(self) -> bool:
        return self._child is not None and self._child.poll() is None

    def run(self) -> int:
        """Supervise until termination.

        Returns:
            Process exit status: 0 after an orderly stop, 1 if sshd died.
        """
        self.start()
        while True:
            if self._termination_requested or self.poll():
                return self.terminate()

            self._sleep(self.settings.check_interval)

            if self._termination_requested:
                return self.terminate()
            if not self.child_alive():
                logger.error("sshd exited unexpectedly")
                return 1

    def terminate(self) -> int:
        """Stop sshd and return the success exit status."""
        self.state = STATE_TERMINATING
        child = self._child
        if child is not None and child.poll() is None:
            child.terminate()
            try:
                child.wait(timeout=_CHILD_STOP_TIMEOUT)
            except subprocess.TimeoutExpired:
                logger.warning("sshd ignored SIGTERM, killing")
                child.kill()
                child.wait()
        return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="codium-supervisor",
        description="Run sshd and stop the container when idle.",
    )
    parser.add_argument(
        "--sshd",
        default=DEFAULT_SSHD,
        help=f"sshd binary (default: {DEFAULT_SSHD})",
    )
    args = parser.parse_args(argv)

    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            stream=sys.stderr,
        )

    settings = SupervisorSettings.from_env()
    logger.info(
        "Supervising (workspace=%s interval=%ds grace=%ds)",
        settings.workspace,
        settings.check_interval,
        settings.idle_grace_seconds,
    )
    supervisor = Supervisor(settings, spawn=lambda: spawn_sshd(args.sshd))
    return supervisor.run()


if __name__ == "__main__":
    sys.exit(main())
