# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""SSH access to the session container.

- ``SshBootstrap`` installs the operator's public key into the container
  and verifies that a non-interactive login works.  A failed login is a
  soft failure: ``setup_access`` returns False and the caller offers an
  interactive fallback.
- ``SshConfigStore`` maintains ``Host codium-devcontainer-<slug>`` blocks
  in the SSH client config so editors can connect by alias.
- ``open_session`` launches an interactive ``ssh`` and returns a handle
  whose ``closed`` future resolves with the exit status.
- ``write_stop_request`` asks the in-container supervisor to shut down.

Host keys change with every rebuild, so all connections disable strict
host key checking and use ``/dev/null`` as known-hosts file.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import tempfile
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import Future
from pathlib import Path

from codium_devcontainer.decisions import (
    NOTICE_ERROR,
    NOTICE_WARNING,
    DecisionProvider,
)
from codium_devcontainer.locks import FileLock
from codium_devcontainer.logging import DiagnosticSink, LoggingSink
from codium_devcontainer.reconciler import ROOT_USER, is_valid_username
from codium_devcontainer.runtime import ContainerRuntime
from codium_devcontainer.supervisor import STOP_FILE_NAME


logger = logging.getLogger(__name__)

#: Public keys tried, in order, before asking the operator.
KEY_CANDIDATES = ("id_ed25519.pub", "id_rsa.pub")

LOOPBACK = "127.0.0.1"

#: Options shared by every ssh invocation against a session container.
_HOST_KEY_OPTIONS = (
    "-o",
    "StrictHostKeyChecking=no",
    "-o",
    "UserKnownHostsFile=/dev/null",
)

CLIENT_CONFIG_HINT = (
    "SSH config parsing failed due to an invalid option in ~/.ssh/config. "
    "Comment out or remove non-standard options, then retry."
)

_INSTALL_KEY_SCRIPT = """\
set -e
d={ssh_dir}
mkdir -p "$d"
chmod 700 "$d"
touch "$d/authorized_keys"
chmod 600 "$d/authorized_keys"
chown -R {user}:"$(id -gn {user})" "$d"
"""

# Appends the key from stdin unless an identical line is present.
_APPEND_KEY_SCRIPT = """\
key=$(cat)
f={authorized_keys}
grep -qxF "$key" "$f" || printf '%s\\n' "$key" >> "$f"
"""


def login_failure_hint(user: str, stderr: str) -> str:
    """Explain a failed non-interactive login to the operator.

    Args:
        user: User the login was attempted as.
        stderr: The ssh client's error output.
    """
    if "Bad configuration option" in stderr:
        return CLIENT_CONFIG_HINT
    return (
        f"SSH login failed for user '{user}'. If the container uses "
        f"'root' and root login is disabled, set 'remoteUser' in "
        f"devcontainer.json to a non-root user or adjust sshd_config."
    )


def default_home(user: str) -> str:
    return "/root" if user == ROOT_USER else f"/home/{user}"


class SshBootstrap:
    """Installs the operator's key and verifies SSH login.

    Args:
        runtime: Engine adapter for ``exec`` into the container.
        decisions: Used to pick a key file and report soft failures.
        ssh_command: SSH client binary.
        probe_timeout: Timeout for the login probe (seconds).
        ssh_dir: Local directory holding candidate keys.
        sink: Receives the probe's command line and output.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        decisions: DecisionProvider,
        *,
        ssh_command: str = "ssh",
        probe_timeout: float = 30.0,
        ssh_dir: Path | None = None,
        sink: DiagnosticSink | None = None,
    ) -> None:
        self._runtime = runtime
        self._decisions = decisions
        self._ssh = ssh_command
        self._probe_timeout = probe_timeout
        self._ssh_dir = ssh_dir or Path.home() / ".ssh"
        self._sink: DiagnosticSink = sink or LoggingSink()

    def setup_access(self, container: str, user: str, port: int) -> bool:
        """Install the public key for *user* and verify login on *port*.

        Returns:
            True if a non-interactive login succeeded.
        """
        key_path = self.resolve_public_key()
        if key_path is not None:
            self.install_key(container, user, key_path)
        return self.verify_login(user, port)

    def resolve_public_key(self) -> Path | None:
        for name in KEY_CANDIDATES:
            candidate = self._ssh_dir / name
            if candidate.is_file():
                logger.debug("Using public key %s", candidate)
                return candidate

        picked = self._decisions.pick_file(
            "Select public SSH key (*.pub)", self._ssh_dir
        )
        if picked is None:
            self._decisions.notify(
                NOTICE_ERROR,
                "No SSH public key selected. Cannot configure SSH access.",
            )
        return picked

    def resolve_home(self, container: str, user: str) -> str:
        """Home directory of *user* inside *container*."""
        if not is_valid_username(user):
            return default_home(user)
        result = self._runtime.exec(
            container, ["sh", "-c", f"eval echo ~{user}"]
        )
        home = result.stdout.strip() if result.ok else ""
        if home.startswith("/"):
            return home
        return default_home(user)

    def install_key(self, container: str, user: str, key_path: Path) -> bool:
        """Add the key in *key_path* to *user*'s ``authorized_keys``.

        The key is not appended again if an identical line exists.

        Returns:
            True if both container commands succeeded.
        """
        if not is_valid_username(user):
            self._decisions.notify(
                NOTICE_WARNING, f"Refusing to install key for user {user!r}"
            )
            return False
        try:
            key = key_path.read_text(encoding="utf-8").strip()
        except OSError as e:
            self._decisions.notify(
                NOTICE_WARNING, f"Cannot read public key {key_path}: {e}"
            )
            return False
        if not key:
            self._decisions.notify(
                NOTICE_WARNING, f"Public key {key_path} is empty"
            )
            return False

        ssh_dir = f"{self.resolve_home(container, user).rstrip('/')}/.ssh"
        prepare = self._runtime.exec(
            container,
            [
                "sh",
                "-c",
                _INSTALL_KEY_SCRIPT.format(
                    ssh_dir=shlex.quote(ssh_dir), user=user
                ),
            ],
            user=ROOT_USER,
        )
        if not prepare.ok:
            logger.warning(
                "Preparing %s failed: %s", ssh_dir, prepare.output.strip()
            )
            return False

        append = self._runtime.exec(
            container,
            [
                "sh",
                "-c",
                _APPEND_KEY_SCRIPT.format(
                    authorized_keys=shlex.quote(f"{ssh_dir}/authorized_keys")
                ),
            ],
            stdin=key + "\n",
            user=ROOT_USER,
        )
        if not append.ok:
            logger.warning(
                "Installing public key failed: %s", append.output.strip()
            )
            return False
        logger.info("Installed %s for %s in %s", key_path.name, user, ssh_dir)
        return True

    def verify_login(self, user: str, port: int) -> bool:
        """Attempt ``ssh ... true`` without any interaction.

        The operator's own client config is read, so an option the local
        ssh does not understand is reported as a client config problem.

        Returns:
            True on success.  On failure the operator is told whether the
            local client config or the container side is at fault.
        """
        argv = [
            self._ssh,
            "-o",
            "BatchMode=yes",
            *_HOST_KEY_OPTIONS,
            "-o",
            f"ConnectTimeout={max(1, int(self._probe_timeout))}",
            "-p",
            str(port),
            f"{user}@{LOOPBACK}",
            "true",
        ]
        self._sink.command(argv)
        try:
            result = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=self._probe_timeout,
                stdin=subprocess.DEVNULL,
            )
        except FileNotFoundError:
            self._decisions.notify(
                NOTICE_ERROR, f"SSH client not found: {self._ssh}"
            )
            return False
        except subprocess.TimeoutExpired:
            self._decisions.notify(
                NOTICE_WARNING,
                f"SSH login check timed out after "
                f"{self._probe_timeout:.0f}s",
            )
            return False

        output = (result.stdout or "") + (result.stderr or "")
        if output:
            self._sink.output(output)
        if result.returncode == 0:
            logger.info("SSH login verified for %s on port %d", user, port)
            return True

        self._decisions.notify(
            NOTICE_WARNING, login_failure_hint(user, result.stderr or "")
        )
        return False


# ---------------------------------------------------------------------------
# SSH client config
# ---------------------------------------------------------------------------


def render_host_block(alias: str, port: int, user: str) -> str:
    return (
        f"Host {alias}\n"
        f"  HostName {LOOPBACK}\n"
        f"  Port {port}\n"
        f"  User {user}\n"
        f"  StrictHostKeyChecking no\n"
        f"  UserKnownHostsFile /dev/null\n"
    )


def _is_block_start(line: str) -> bool:
    keyword = line.strip().split(None, 1)[:1]
    return bool(keyword) and keyword[0].lower() in ("host", "match")


def upsert_host_block(config_text: str, alias: str, block: str) -> str:
    """Replace the ``Host <alias>`` block in *config_text*, or append it.

    The block extends to the next ``Host``/``Match`` line or end of file.
    Only a ``Host`` line naming exactly *alias* matches.
    """
    lines = config_text.splitlines(keepends=True)
    start = None
    for i, line in enumerate(lines):
        fields = line.split()
        if len(fields) == 2 and fields[0].lower() == "host":
            if fields[1] == alias:
                start = i
                break

    if start is None:
        if config_text and not config_text.endswith("\n"):
            config_text += "\n"
        return config_text + block

    end = start + 1
    while end < len(lines) and not _is_block_start(lines[end]):
        end += 1
    return "".join(lines[:start]) + block + "".join(lines[end:])


class SshConfigStore:
    """Read-modify-write of the SSH client config under a file lock."""

    def __init__(self, path: Path, lock_timeout: float = 30.0) -> None:
        self.path = path
        self._lock_path = path.with_name(path.name + ".lock")
        self._lock_timeout = lock_timeout

    def upsert_host(self, alias: str, port: int, user: str) -> None:
        """Point host alias *alias* at ``127.0.0.1:<port>`` as *user*."""
        with FileLock(self._lock_path, timeout=self._lock_timeout):
            try:
                current = self.path.read_text(encoding="utf-8")
            except FileNotFoundError:
                current = ""
            updated = upsert_host_block(
                current, alias, render_host_block(alias, port, user)
            )
            if updated != current:
                self._write(updated)
        logger.info("SSH host alias %s -> %s:%d", alias, LOOPBACK, port)

    def _write(self, text: str) -> None:
        """Atomically replace the config file with mode 0600."""
        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}."
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


# ---------------------------------------------------------------------------
# Interactive sessions
# ---------------------------------------------------------------------------


class SshSessionHandle:
    """A running interactive ssh process.

    Continuations registered with ``on_closed`` run on a background
    thread when ssh exits; ``closed`` resolves with the exit status only
    after they have finished, so ``wait()`` never returns while cleanup
    is still in flight.

    Attributes:
        closed: Resolves with the ssh exit status.
    """

    def __init__(self, process: subprocess.Popen[bytes]) -> None:
        self._process = process
        self.closed: Future[int] = Future()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[int], None]] = []
        self._exited = False
        self._waiter = threading.Thread(
            target=self._wait, name="ssh-session", daemon=True
        )
        self._waiter.start()

    def _wait(self) -> None:
        try:
            status = self._process.wait()
        except Exception as e:
            self.closed.set_exception(e)
            return
        with self._lock:
            self._exited = True
            callbacks = list(self._callbacks)
        for callback in callbacks:
            self._invoke(callback, status)
        self.closed.set_result(status)

    @staticmethod
    def _invoke(callback: Callable[[int], None], status: int) -> None:
        try:
            callback(status)
        except Exception:
            logger.exception("Session close callback failed")

    def on_closed(self, callback: Callable[[int], None]) -> None:
        """Run *callback* with the exit status when the session ends.

        Runs immediately if the session has already ended.  Exceptions
        raised by the callback are logged.
        """
        with self._lock:
            if not self._exited:
                self._callbacks.append(callback)
                return
        self._invoke(callback, self.closed.result())

    def wait(self, timeout: float | None = None) -> int:
        """Block until the session and its continuations have finished."""
        return self.closed.result(timeout=timeout)


def session_argv(
    user: str,
    port: int,
    *,
    ssh_command: str = "ssh",
    workdir: str | None = None,
) -> list[str]:
    """Command line for an interactive session (not BatchMode)."""
    argv = [
        ssh_command,
        "-F",
        "/dev/null",
        *_HOST_KEY_OPTIONS,
        "-p",
        str(port),
    ]
    if workdir:
        argv.append("-t")
    argv.append(f"{user}@{LOOPBACK}")
    if workdir:
        argv.append(
            f'cd {shlex.quote(workdir)} && exec "${{SHELL:-/bin/sh}}" -l'
        )
    return argv


def open_session(
    user: str,
    port: int,
    *,
    ssh_command: str = "ssh",
    workdir: str | None = None,
    popen: Callable[[Sequence[str]], subprocess.Popen[bytes]] | None = None,
) -> SshSessionHandle:
    """Start an interactive ssh session attached to this terminal.

    Raises:
        FileNotFoundError: If the ssh client is not installed.
    """
    argv = session_argv(
        user, port, ssh_command=ssh_command, workdir=workdir
    )
    logger.info("$ %s", shlex.join(argv))
    process = (popen or subprocess.Popen)(argv)
    return SshSessionHandle(process)


def write_stop_request(workspace: Path) -> Path:
    """Ask the container's supervisor to terminate.

    The workspace is bind-mounted, so the supervisor sees the file on
    its next poll.
    """
    path = workspace / STOP_FILE_NAME
    path.write_text("stop\n", encoding="utf-8")
    logger.info("Wrote stop request %s", path)
    return path
