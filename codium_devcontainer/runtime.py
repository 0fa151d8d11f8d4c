# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Container engine adapter.

Wraps the docker/podman CLI as typed operations.  Every command line and
its combined output is handed to a ``DiagnosticSink``.

Failure classification:

- **Resource-absent** (container does not exist): query operations
  (``exists``, ``is_running``, ``created_at``, ``mapped_port``) return
  ``False``/``None``; mutating operations raise
  ``ContainerNotFoundError``; ``remove`` returns ``False``.
- **Engine unavailable** (binary missing, socket permission denied,
  daemon not reachable, timeout): ``EngineUnavailableError``.
- **Engine fatal** (any other non-zero exit): ``EngineError`` carrying
  the captured output.  Build failures raise ``BuildError``.

Container queries always pass ``--type container`` because image and
container share the same name.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from codium_devcontainer.errors import (
    BuildError,
    ContainerNotFoundError,
    EngineError,
    EngineUnavailableError,
)
from codium_devcontainer.logging import DiagnosticSink, LoggingSink


logger = logging.getLogger(__name__)

#: Port sshd listens on inside the container.
SSH_CONTAINER_PORT = 22

DEFAULT_COMMAND_TIMEOUT = 120.0
DEFAULT_BUILD_TIMEOUT = 1800.0

# Lowercased stderr fragments that mean "the container does not exist".
_NOT_FOUND_MARKERS = (
    "no such container",
    "no such object",
    "no container with name or id",
)

# Lowercased stderr fragments that mean the engine itself is unusable.
_UNAVAILABLE_MARKERS = (
    "permission denied while trying to connect",
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "cannot connect to podman",
    "unable to connect to podman",
)

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


@dataclass(frozen=True)
class CommandResult:
    """Captured result of one engine invocation.

    Attributes:
        argv: Full command line that was executed.
        returncode: Process exit status.
        stdout: Captured standard output.
        stderr: Captured standard error (empty for streamed commands,
            whose stderr is merged into stdout).
    """

    argv: list[str]
    returncode: int
    stdout: str
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr."""
        if self.stdout and self.stderr:
            sep = "" if self.stdout.endswith("\n") else "\n"
            return f"{self.stdout}{sep}{self.stderr}"
        return self.stdout or self.stderr


@dataclass(frozen=True)
class PortMapping:
    """Publish *container_port* on *host_ip*:*host_port*."""

    host_port: int
    container_port: int = SSH_CONTAINER_PORT
    host_ip: str = "127.0.0.1"

    def to_arg(self) -> str:
        return f"{self.host_ip}:{self.host_port}:{self.container_port}"


@dataclass(frozen=True)
class BindMount:
    """A host directory bind-mounted into the container.

    Attributes:
        host_path: Absolute path on the host.
        container_path: Path inside the container.
        read_only: Whether the mount is read-only.
    """

    host_path: Path
    container_path: str
    read_only: bool = False

    def to_arg(self) -> str:
        suffix = ":ro" if self.read_only else ""
        return f"{self.host_path}:{self.container_path}{suffix}"


def _is_not_found(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in _NOT_FOUND_MARKERS)


def _is_unavailable(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in _UNAVAILABLE_MARKERS)


def parse_engine_timestamp(value: str) -> datetime | None:
    """Parse an engine RFC 3339 timestamp into an aware datetime.

    Engines report nanosecond precision (``2024-05-01T10:00:00.123456789Z``)
    which ``datetime`` cannot represent; the fraction is truncated to
    microseconds.

    Returns:
        Parsed timestamp, or None if *value* is empty or malformed.
    """
    value = value.strip()
    if not value:
        return None
    value = _FRACTION_RE.sub(r"\1", value)
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _host_port_from(bindings: object) -> int | None:
    """Extract the first HostPort from an engine port-binding list."""
    if not isinstance(bindings, list):
        return None
    for binding in bindings:
        if not isinstance(binding, dict):
            continue
        try:
            port = int(binding.get("HostPort", ""))
        except (TypeError, ValueError):
            continue
        if port > 0:
            return port
    return None


class ContainerRuntime:
    """Typed wrapper around the container engine CLI.

    Thread Safety: Stateless apart from configuration; safe to share.
    Serializing operations on the same container is the caller's job.
    """

    def __init__(
        self,
        container_command: str = "docker",
        *,
        sink: DiagnosticSink | None = None,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        build_timeout: float = DEFAULT_BUILD_TIMEOUT,
    ) -> None:
        self._cmd = container_command
        self._sink: DiagnosticSink = sink or LoggingSink()
        self._timeout = timeout
        self._build_timeout = build_timeout

    @property
    def command(self) -> str:
        """Engine binary name (``docker`` or ``podman``)."""
        return self._cmd

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def inspect(self, name: str) -> dict[str, Any] | None:
        """Return the engine's inspect document for container *name*.

        Returns:
            The parsed inspect object, or None if the container is absent.

        Raises:
            EngineError: If inspect fails for any other reason.
        """
        result = self._run(["inspect", "--type", "container", name])
        if not result.ok:
            if _is_not_found(result.output):
                return None
            raise self._error(result, f"Failed to inspect container {name}")
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise EngineError(
                f"Unparseable inspect output for {name}",
                argv=result.argv,
                returncode=result.returncode,
                output=result.output,
            ) from e
        if isinstance(data, list):
            data = data[0] if data else None
        return data if isinstance(data, dict) else None

    def exists(self, name: str) -> bool:
        return self.inspect(name) is not None

    def is_running(self, name: str) -> bool:
        info = self.inspect(name)
        if info is None:
            return False
        return bool(info.get("State", {}).get("Running", False))

    def created_at(self, name: str) -> datetime | None:
        """Container creation time, or None if absent or unparseable."""
        info = self.inspect(name)
        if info is None:
            return None
        return parse_engine_timestamp(str(info.get("Created", "")))

    def mapped_port(
        self, name: str, container_port: int = SSH_CONTAINER_PORT
    ) -> int | None:
        """Host port currently published for *container_port*, if any.

        Only the live mapping (``NetworkSettings.Ports``) counts; a
        stopped container has none, even though its configured binding
        is still recorded.
        """
        info = self.inspect(name)
        if info is None:
            return None
        live = (info.get("NetworkSettings") or {}).get("Ports") or {}
        return _host_port_from(live.get(f"{container_port}/tcp"))

    def ping(self) -> bool:
        """Return True if the engine daemon answers ``info``."""
        try:
            return self._run(["info"]).ok
        except EngineUnavailableError:
            return False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, name: str) -> None:
        """Start container *name* (no-op for a running container).

        Raises:
            ContainerNotFoundError: If the container does not exist.
            EngineError: If the engine fails to start it.
        """
        self._check(self._run(["start", name]), f"Failed to start {name}")
        logger.debug("Started container %s", name)

    def restart(self, name: str) -> None:
        self._check(self._run(["restart", name]), f"Failed to restart {name}")
        logger.debug("Restarted container %s", name)

    def stop(self, name: str) -> None:
        """Stop container *name*.

        Raises:
            ContainerNotFoundError: If the container does not exist.
            EngineError: If the engine fails to stop it.
        """
        self._check(self._run(["stop", name]), f"Failed to stop {name}")
        logger.debug("Stopped container %s", name)

    def remove(self, name: str) -> bool:
        """Force-remove container *name* (idempotent).

        Returns:
            True if a container was removed, False if none existed.

        Raises:
            EngineError: If removal fails for another reason.
        """
        result = self._run(["rm", "-f", name])
        if result.ok:
            logger.debug("Removed container: %s", name)
            return True
        if _is_not_found(result.output):
            logger.debug("Container already gone: %s", name)
            return False
        raise self._error(result, f"Failed to remove {name}")

    def build(
        self,
        dockerfile: Path,
        tag: str,
        build_args: Mapping[str, str],
        context_dir: Path,
    ) -> None:
        """Build image *tag* from *dockerfile* with *context_dir* as context.

        Raises:
            BuildError: If the build exits non-zero or times out.
        """
        args = ["build", "-t", tag, "-f", str(dockerfile)]
        for key, value in build_args.items():
            args.extend(["--build-arg", f"{key}={value}"])
        args.append(str(context_dir))

        result = self._stream(args, timeout=self._build_timeout)
        if not result.ok:
            raise BuildError(
                f"Image build failed for {tag} "
                f"(exit code {result.returncode})",
                argv=result.argv,
                returncode=result.returncode,
                output=result.output,
            )

    def run(
        self,
        tag: str,
        name: str,
        *,
        env: Mapping[str, str],
        port_mapping: PortMapping,
        bind_mount: BindMount,
        workdir: str,
    ) -> str:
        """Create and start a detached container.

        Returns:
            The new container's ID.

        Raises:
            EngineError: If the engine refuses to create the container.
        """
        args = ["run", "-d", "--name", name]
        for key, value in env.items():
            args.extend(["-e", f"{key}={value}"])
        args.extend(["-p", port_mapping.to_arg()])
        args.extend(["-v", bind_mount.to_arg()])
        args.extend(["-w", workdir])
        args.append(tag)

        result = self._check(
            self._run(args), f"Failed to run container {name}"
        )
        container_id = result.stdout.strip().splitlines()[-1:]
        logger.info(
            "Container %s started on %s", name, port_mapping.to_arg()
        )
        return container_id[0] if container_id else ""

    def exec(
        self,
        name: str,
        command: Sequence[str],
        stdin: str | None = None,
        *,
        user: str | None = None,
        workdir: str | None = None,
    ) -> CommandResult:
        """Run *command* inside container *name*.

        The command's own exit status is returned, not raised, so callers
        can treat "command printed nothing" and "command failed" alike.

        Raises:
            ContainerNotFoundError: If the container does not exist.
            EngineUnavailableError: If the engine cannot be reached.
        """
        args = ["exec"]
        if stdin is not None:
            args.append("-i")
        if user:
            args.extend(["-u", user])
        if workdir:
            args.extend(["-w", workdir])
        args.append(name)
        args.extend(command)

        result = self._run(args, input=stdin)
        if not result.ok and _is_not_found(result.stderr):
            raise self._error(result, f"Container {name} does not exist")
        return result

    # ------------------------------------------------------------------
    # Process plumbing
    # ------------------------------------------------------------------

    def _run(
        self,
        args: Sequence[str],
        *,
        input: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run an engine command and capture its output."""
        argv = [self._cmd, *args]
        self._sink.command(argv)
        effective_timeout = timeout if timeout is not None else self._timeout
        try:
            proc = subprocess.run(
                argv,
                input=input,
                capture_output=True,
                text=True,
                timeout=effective_timeout,
            )
        except FileNotFoundError as e:
            raise EngineUnavailableError(
                f"Container engine not found: {self._cmd}", argv=argv
            ) from e
        except subprocess.TimeoutExpired as e:
            raise EngineUnavailableError(
                f"{self._cmd} {args[0]} timed out after "
                f"{effective_timeout:.0f}s",
                argv=argv,
            ) from e

        result = CommandResult(
            argv=argv,
            returncode=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
        )
        if result.output:
            self._sink.output(result.output)
        if not result.ok and _is_unavailable(result.stderr):
            raise EngineUnavailableError(
                f"Container engine unavailable: {result.stderr.strip()}",
                argv=argv,
                returncode=result.returncode,
                output=result.output,
            )
        return result

    def _stream(self, args: Sequence[str], *, timeout: float) -> CommandResult:
        """Run an engine command, forwarding output line by line.

        Used for long-running commands (builds) so the operator sees
        progress.  stderr is merged into stdout.
        """
        argv = [self._cmd, *args]
        self._sink.command(argv)
        try:
            process = subprocess.Popen(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except FileNotFoundError as e:
            raise EngineUnavailableError(
                f"Container engine not found: {self._cmd}", argv=argv
            ) from e

        timed_out = threading.Event()

        def _kill() -> None:
            timed_out.set()
            process.kill()

        timer = threading.Timer(timeout, _kill)
        timer.start()
        lines: list[str] = []
        try:
            if process.stdout:
                for line in process.stdout:
                    lines.append(line)
                    self._sink.output(line)
            process.wait()
        finally:
            timer.cancel()

        output = "".join(lines)
        if timed_out.is_set():
            raise EngineUnavailableError(
                f"{self._cmd} {args[0]} timed out after {timeout:.0f}s",
                argv=argv,
                returncode=process.returncode,
                output=output,
            )
        if process.returncode != 0 and _is_unavailable(output):
            raise EngineUnavailableError(
                "Container engine unavailable",
                argv=argv,
                returncode=process.returncode,
                output=output,
            )
        return CommandResult(
            argv=argv, returncode=process.returncode, stdout=output
        )

    def _check(self, result: CommandResult, message: str) -> CommandResult:
        if not result.ok:
            raise self._error(result, message)
        return result

    @staticmethod
    def _error(result: CommandResult, message: str) -> EngineError:
        detail = result.stderr.strip() or result.stdout.strip()
        full = f"{message}: {detail}" if detail else message
        if _is_not_found(result.output):
            return ContainerNotFoundError(
                full,
                argv=result.argv,
                returncode=result.returncode,
                output=result.output,
            )
        return EngineError(
            full,
            argv=result.argv,
            returncode=result.returncode,
            output=result.output,
        )
