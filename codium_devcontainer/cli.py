# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""codium-devcontainer CLI - multi-command entry point.

Provides ``codium-devcontainer <command>``.  Running it with no arguments
prints version and usage information.

Subcommands:

* ``open``           - reuse or build the workspace container and connect
* ``rebuild``        - rebuild the container, then connect
* ``up``             - build and run, connect; remove the container on exit
* ``status``         - show the workspace container's state
* ``stop``           - ask the container to stop (``--now`` to force)
* ``add-dockerfile`` - copy the Dockerfile template into ``.devcontainer/``
* ``check``          - verify config and system dependencies
* ``init``           - create a stub tool config file
* ``supervise``      - run the in-container supervisor locally
"""

from __future__ import annotations

import argparse
import functools
import logging
import shutil
import subprocess
import sys
from collections.abc import Callable
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

from codium_devcontainer import supervisor
from codium_devcontainer._style import Style, use_color
from codium_devcontainer.build import (
    USER_DOCKERFILE_NAME,
    BuildPipeline,
    install_template,
)
from codium_devcontainer.config import (
    DEVCONTAINER_DIR,
    ToolConfig,
    devcontainer_path,
    get_config_path,
    get_dotenv_path,
    get_lock_dir,
    get_state_dir,
)
from codium_devcontainer.decisions import (
    KEY_CONFIG_CHANGED,
    KEY_CONTAINER_RUNNING,
    KEY_OVERWRITE_DOCKERFILE,
    OPTION_CANCEL,
    OPTION_OVERWRITE,
    DecisionProvider,
    PolicyDecisionProvider,
    TerminalDecisionProvider,
)
from codium_devcontainer.errors import (
    ContainerNotFoundError,
    DevcontainerError,
    EngineError,
    OperationCancelledError,
)
from codium_devcontainer.logging import configure_logging
from codium_devcontainer.ports import find_free_port
from codium_devcontainer.reconciler import ReadySession, SessionReconciler
from codium_devcontainer.runtime import ContainerRuntime
from codium_devcontainer.session import Session, resolve_session
from codium_devcontainer.ssh import (
    SshBootstrap,
    SshConfigStore,
    open_session,
    write_stop_request,
)


logger = logging.getLogger(__name__)

_PROG = "codium-devcontainer"

# Known subcommand names.
_SUBCOMMANDS = frozenset(
    {
        "open",
        "rebuild",
        "up",
        "status",
        "stop",
        "add-dockerfile",
        "check",
        "init",
        "supervise",
    }
)

_USAGE = """\
usage: codium-devcontainer <command> [args]

commands:
  open            Reuse or build the workspace container and connect
  rebuild         Rebuild the workspace container and connect
  up              Build and run, connect; remove the container on exit
  status          Show the workspace container's state
  stop            Ask the container to stop (--now to stop immediately)
  add-dockerfile  Copy the Dockerfile template into .devcontainer/
  check           Verify config and system dependencies
  init            Create a stub tool config file
  supervise       Run the in-container supervisor (debugging)

Run 'codium-devcontainer <command> --help' for command-specific help.\
"""

_EXIT_CANCELLED = 130

#: Full diagnostic trace of the most recent runs.
_LOG_FILE_NAME = "codium-devcontainer.log"


def _package_version() -> str:
    try:
        return version(_PROG)
    except PackageNotFoundError:
        return "dev"


# ── Version parsing (check) ─────────────────────────────────────────


def _parse_version(output: str) -> tuple[int, ...]:
    """Extract a numeric version tuple from command output.

    Looks for the first token that starts with a digit and parses it as a
    dotted version string.  For example::

        Docker version 27.3.1, build ce12230  -> (27, 3, 1)
        OpenSSH_9.6p1 Ubuntu-3ubuntu13.5      -> (9, 6)

    Raises:
        ValueError: If no version number is found.
    """
    for token in output.replace("_", " ").replace(",", " ").split():
        if token and token[0].isdigit():
            parts: list[int] = []
            for segment in token.split("."):
                digits = ""
                for ch in segment:
                    if ch.isdigit():
                        digits += ch
                    else:
                        break
                if digits:
                    parts.append(int(digits))
            if parts:
                return tuple(parts)
    raise ValueError(f"Cannot parse version from: {output!r}")


def _fmt_version(v: tuple[int, ...]) -> str:
    """Format a version tuple as a dotted string."""
    return ".".join(str(p) for p in v)


def _check_dependency(name: str, version_cmd: list[str]) -> tuple[bool, str]:
    """Check a single dependency is installed and report its version.

    Returns:
        ``(ok, detail)`` - *ok* is True when the binary exists and
        reports a version.
    """
    path = shutil.which(name)
    if path is None:
        return False, f"{name}: not found"

    try:
        result = subprocess.run(
            version_cmd,
            capture_output=True,
            text=True,
            timeout=10,
        )
        raw = result.stdout.strip() or result.stderr.strip()
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return False, f"{name}: found at {path} but failed to get version"

    try:
        parsed = _parse_version(raw)
    except ValueError:
        return False, f"{name}: cannot parse version from: {raw}"
    return True, f"{name}: {_fmt_version(parsed)}"


# ── Shared plumbing ─────────────────────────────────────────────────


def _common_parser() -> argparse.ArgumentParser:
    """Options shared by every workspace command."""
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument(
        "-w",
        "--workspace",
        type=Path,
        default=Path.cwd(),
        help="project folder (default: current directory)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="tool config file (default: XDG config path)",
    )
    parser.add_argument(
        "--debug", action="store_true", help="show the full command trace"
    )
    parser.add_argument(
        "-y",
        "--yes",
        "--no-input",
        dest="yes",
        action="store_true",
        help="never prompt; answer from the configured decision policy",
    )
    return parser


def _parser(command: str, description: str) -> argparse.ArgumentParser:
    return argparse.ArgumentParser(
        prog=f"{_PROG} {command}",
        description=description,
        parents=[_common_parser()],
    )


def _setup_logging(args: argparse.Namespace) -> None:
    level = logging.DEBUG if args.debug else logging.INFO
    configure_logging(
        level=level,
        format_string=None if args.debug else "%(message)s",
        log_file=get_state_dir() / _LOG_FILE_NAME,
    )


def _make_decisions(config: ToolConfig, yes: bool) -> DecisionProvider:
    interactive = not yes and sys.stdin.isatty()
    return PolicyDecisionProvider(
        {
            KEY_CONFIG_CHANGED: config.on_config_changed,
            KEY_CONTAINER_RUNNING: config.on_container_running,
        },
        fallback=TerminalDecisionProvider() if interactive else None,
    )


@dataclass
class _App:
    """Components wired from the tool config for one command run."""

    config: ToolConfig
    runtime: ContainerRuntime
    decisions: DecisionProvider
    reconciler: SessionReconciler
    bootstrap: SshBootstrap
    ssh_config: SshConfigStore


def _build_app(args: argparse.Namespace) -> _App:
    config = ToolConfig.from_yaml(args.config)
    runtime = ContainerRuntime(
        config.container_command,
        timeout=config.command_timeout,
        build_timeout=config.build_timeout,
    )
    decisions = _make_decisions(config, args.yes)
    reconciler = SessionReconciler(
        runtime,
        BuildPipeline(runtime),
        decisions,
        port_allocator=functools.partial(
            find_free_port, fallback=config.fallback_port
        ),
        lock_dir=get_lock_dir(),
        lock_timeout=config.build_timeout,
        check_interval=config.check_interval,
        idle_grace_seconds=config.idle_grace_seconds,
    )
    bootstrap = SshBootstrap(
        runtime,
        decisions,
        ssh_command=config.ssh_command,
        probe_timeout=config.ssh_probe_timeout,
    )
    return _App(
        config=config,
        runtime=runtime,
        decisions=decisions,
        reconciler=reconciler,
        bootstrap=bootstrap,
        ssh_config=SshConfigStore(config.ssh_config_path),
    )


def _reports_errors(
    func: Callable[[list[str]], int],
) -> Callable[[list[str]], int]:
    """Turn package errors into one summarized line and an exit code.

    The detail (including captured engine output) goes to the log.
    """

    @functools.wraps(func)
    def wrapper(argv: list[str]) -> int:
        try:
            return func(argv)
        except OperationCancelledError as e:
            print(f"{_PROG}: {e}", file=sys.stderr)
            return _EXIT_CANCELLED
        except DevcontainerError as e:
            output = getattr(e, "output", "")
            if output:
                logger.debug("Command output:\n%s", output)
            logger.debug("Failure detail", exc_info=True)
            print(f"{_PROG}: error: {e}", file=sys.stderr)
            return 1

    return wrapper


def _remove_container(runtime: ContainerRuntime, name: str) -> None:
    try:
        runtime.remove(name)
        logger.info("Removed container %s after session closed", name)
    except EngineError as e:
        logger.warning("Failed to remove container %s: %s", name, e)


def _run_post_start(
    runtime: ContainerRuntime, session: Session, user: str
) -> None:
    """Run ``postStartCommand`` steps; failures are logged, not fatal."""
    for step in session.post_start:
        logger.info("postStartCommand: %s", step)
        try:
            result = runtime.exec(
                session.container_name,
                ["sh", "-c", step],
                user=user,
                workdir=session.container_workspace,
            )
        except EngineError as e:
            logger.warning("postStartCommand failed: %s", e)
            continue
        if not result.ok:
            logger.warning(
                "postStartCommand exited %d: %s",
                result.returncode,
                step,
            )


def _connect(
    app: _App,
    session: Session,
    ready: ReadySession,
    *,
    remove_on_close: bool,
    detach: bool,
) -> int:
    """Bootstrap SSH and hand the terminal to an interactive session.

    When the non-interactive login check fails, the session is opened
    anyway as a manual fallback and the container is removed once it
    closes.
    """
    s = Style(use_color())
    user = app.reconciler.resolve_effective_user(session)
    ok = app.bootstrap.setup_access(ready.container_name, user, ready.port)
    app.ssh_config.upsert_host(session.host_alias, ready.port, user)

    if ready.started:
        _run_post_start(app.runtime, session, user)

    print(
        f"{s.green('Ready:')} {user}@127.0.0.1:{ready.port} "
        f"(ssh {s.cyan(session.host_alias)})"
    )
    if detach:
        return 0

    try:
        handle = open_session(
            user,
            ready.port,
            ssh_command=app.config.ssh_command,
            workdir=session.container_workspace,
        )
    except FileNotFoundError as e:
        raise DevcontainerError(
            f"SSH client not found: {app.config.ssh_command}"
        ) from e
    if remove_on_close or not ok:
        name = ready.container_name
        handle.on_closed(lambda _status: _remove_container(app.runtime, name))
    return handle.wait()


# ── Workspace commands ──────────────────────────────────────────────


@_reports_errors
def cmd_open(argv: list[str]) -> int:
    """Reuse or build the workspace container and connect over SSH."""
    parser = _parser("open", "Reuse or build the container and connect.")
    parser.add_argument(
        "--detach",
        action="store_true",
        help="prepare the container and SSH alias without connecting",
    )
    args = parser.parse_args(argv)
    _setup_logging(args)

    app = _build_app(args)
    session = resolve_session(args.workspace, app.config)
    ready = app.reconciler.ensure_ready(session, force_rebuild=False)
    return _connect(
        app, session, ready, remove_on_close=False, detach=args.detach
    )


@_reports_errors
def cmd_rebuild(argv: list[str]) -> int:
    """Rebuild the workspace container and connect over SSH.

    A running container is only killed after confirmation; choosing
    "Reuse" connects to it instead.
    """
    parser = _parser("rebuild", "Rebuild the container and connect.")
    parser.add_argument(
        "--detach",
        action="store_true",
        help="rebuild without connecting",
    )
    args = parser.parse_args(argv)
    _setup_logging(args)

    app = _build_app(args)
    session = resolve_session(args.workspace, app.config)
    ready = app.reconciler.ensure_ready(
        session, force_rebuild=True, confirm_kill=True
    )
    return _connect(
        app, session, ready, remove_on_close=False, detach=args.detach
    )


@_reports_errors
def cmd_up(argv: list[str]) -> int:
    """Build and run a fresh container; remove it when the session ends."""
    parser = _parser(
        "up", "Build and run the container, remove it on disconnect."
    )
    args = parser.parse_args(argv)
    _setup_logging(args)

    app = _build_app(args)
    session = resolve_session(args.workspace, app.config)
    ready = app.reconciler.ensure_ready(session, force_rebuild=True)
    return _connect(app, session, ready, remove_on_close=True, detach=False)


@_reports_errors
def cmd_status(argv: list[str]) -> int:
    """Print the workspace container's state."""
    args = _parser("status", "Show the container's state.").parse_args(argv)
    _setup_logging(args)
    s = Style(use_color())

    app = _build_app(args)
    session = resolve_session(args.workspace, app.config)
    name = session.container_name

    print(s.bold(session.container_name))
    print(f"  Workspace:  {s.dim(str(session.workspace))}")
    print(f"  Base image: {session.base_image}")
    if not app.runtime.exists(name):
        print(f"  Container:  {s.yellow('absent')}")
        return 0

    running = app.runtime.is_running(name)
    state = s.green("running") if running else s.yellow("stopped")
    print(f"  Container:  {state}")
    port = app.runtime.mapped_port(name)
    print(f"  SSH port:   {port if port is not None else s.dim('none')}")
    created = app.runtime.created_at(name)
    if created is not None:
        print(f"  Created:    {created.isoformat(timespec='seconds')}")
    if app.reconciler.is_stale(session):
        print(
            f"  {s.yellow('Stale:')} devcontainer.json changed since the "
            f"container was created"
        )
    return 0


@_reports_errors
def cmd_stop(argv: list[str]) -> int:
    """Request the container to stop.

    By default a stop-request file is written into the workspace and the
    supervisor shuts the container down on its next poll.
    """
    parser = _parser("stop", "Ask the container to stop.")
    parser.add_argument(
        "--now",
        action="store_true",
        help="stop through the container engine instead",
    )
    args = parser.parse_args(argv)
    _setup_logging(args)

    workspace = args.workspace.expanduser().resolve()
    if not args.now:
        path = write_stop_request(workspace)
        print(f"Stop requested: {path}")
        return 0

    app = _build_app(args)
    session = resolve_session(workspace, app.config)
    try:
        app.runtime.stop(session.container_name)
    except ContainerNotFoundError:
        print(f"No container {session.container_name}")
        return 0
    print(f"Stopped {session.container_name}")
    return 0


@_reports_errors
def cmd_add_dockerfile(argv: list[str]) -> int:
    """Copy the bundled Dockerfile template to ``.devcontainer/``."""
    args = _parser(
        "add-dockerfile", "Add the Dockerfile template to the workspace."
    ).parse_args(argv)
    _setup_logging(args)

    workspace = args.workspace.expanduser().resolve()
    destination = workspace / DEVCONTAINER_DIR / USER_DOCKERFILE_NAME
    if destination.exists():
        config = ToolConfig.from_yaml(args.config)
        choice = _make_decisions(config, args.yes).choose(
            KEY_OVERWRITE_DOCKERFILE,
            f"A {DEVCONTAINER_DIR}/{USER_DOCKERFILE_NAME} already exists. "
            f"Overwrite?",
            [OPTION_OVERWRITE, OPTION_CANCEL],
        )
        if choice != OPTION_OVERWRITE:
            print("Left existing Dockerfile unchanged.")
            return 0

    install_template(destination)
    print(f"Template Dockerfile added to {destination}")
    return 0


# ── init / check ────────────────────────────────────────────────────


def cmd_init(argv: list[str]) -> int:
    """Create a stub tool configuration file.

    Creates ``~/.config/codium-devcontainer/config.yaml`` with a commented
    template if the file does not already exist.

    Returns:
        Exit code (always 0).
    """
    config_path = get_config_path()

    if config_path.exists():
        print(f"Config already exists: {config_path}")
        return 0

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(_STUB_CONFIG)
    print(f"Created stub config: {config_path}")
    return 0


def cmd_check(argv: list[str]) -> int:
    """Run readiness checks.

    Returns:
        0 if all checks pass, 1 if any check fails.
    """
    parser = _parser("check", "Verify config and system dependencies.")
    args = parser.parse_args(argv)
    s = Style(use_color())
    all_ok = True

    print(s.bold(f"codium-devcontainer {_package_version()}"))
    print()

    # ── Configuration ───────────────────────────────────────────
    print(s.bold("Configuration"))
    config_path = args.config or get_config_path()
    print(f"  Config file: {s.dim(str(config_path))}")
    config = ToolConfig()
    if not config_path.exists():
        print(f"  Status:      {s.dim('not found, using defaults')}")
    else:
        try:
            config = ToolConfig.from_yaml(config_path)
            print(
                f"  Status:      {s.green('ok')} - engine "
                f"{config.container_command}"
            )
        except DevcontainerError as e:
            print(f"  Status:      {s.red('error')} - {e}")
            all_ok = False

    dotenv_path = get_dotenv_path()
    if dotenv_path.exists():
        print(f"  Env file:    {s.dim(str(dotenv_path))}")

    workspace = args.workspace.expanduser().resolve()
    dc_path = devcontainer_path(workspace)
    if dc_path.exists():
        print(f"  Workspace:   {s.dim(str(dc_path))}")
    else:
        print(f"  Workspace:   {s.yellow('no devcontainer.json')}")
    print()

    # ── System dependencies ─────────────────────────────────────
    print(s.bold("Dependencies"))
    engine = config.container_command
    for name, version_cmd in [
        (engine, [engine, "--version"]),
        (config.ssh_command, [config.ssh_command, "-V"]),
    ]:
        ok, detail = _check_dependency(name, version_cmd)
        if ok:
            print(f"  {s.green('✓')} {detail}")
        else:
            print(f"  {s.red('✗')} {detail}")
            all_ok = False

    runtime = ContainerRuntime(engine, timeout=config.command_timeout)
    try:
        reachable = runtime.ping()
    except EngineError:
        reachable = False
    if reachable:
        print(f"  {s.green('✓')} {engine} daemon: reachable")
    else:
        print(f"  {s.red('✗')} {engine} daemon: not reachable")
        all_ok = False
    print()

    if all_ok:
        print(s.green("All checks passed."))
    else:
        print(s.red("Some checks failed."))

    return 0 if all_ok else 1


def cmd_supervise(argv: list[str]) -> int:
    """Run the in-container supervisor in the foreground."""
    return supervisor.main(argv)


# ── CLI plumbing ────────────────────────────────────────────────────


_DISPATCH: dict[str, str] = {
    "open": "cmd_open",
    "rebuild": "cmd_rebuild",
    "up": "cmd_up",
    "status": "cmd_status",
    "stop": "cmd_stop",
    "add-dockerfile": "cmd_add_dockerfile",
    "check": "cmd_check",
    "init": "cmd_init",
    "supervise": "cmd_supervise",
}


def _print_info() -> None:
    """Print version information and available commands."""
    s = Style(use_color())
    print(s.bold(f"codium-devcontainer {_package_version()}"))
    print()
    print(_USAGE)


def cli() -> None:
    """Entry point for ``codium-devcontainer``.

    When no arguments are given, prints version and usage information.
    """
    argv = sys.argv[1:]

    if not argv or argv[0] == "--help":
        _print_info()
        sys.exit(0)

    if argv[0] not in _SUBCOMMANDS:
        print(f"{_PROG}: unknown command '{argv[0]}'", file=sys.stderr)
        print(_USAGE, file=sys.stderr)
        sys.exit(2)

    command = argv[0]
    rest = argv[1:]

    # Look up handler by name so tests can mock individual commands.
    import codium_devcontainer.cli as _self

    handler = getattr(_self, _DISPATCH[command])
    sys.exit(handler(rest))


#: Stub configuration template written by ``codium-devcontainer init``.
_STUB_CONFIG = """\
# codium-devcontainer configuration
#
# Every key is optional.  Values may reference environment variables
# with !env VAR_NAME (a .env file next to this one is loaded first).

# container_command: docker        # or podman
# fallback_image: node:22-bookworm # when devcontainer.json has no image
# fallback_port: 2222              # when no free port can be allocated
# ssh_command: ssh
# ssh_config_path: ~/.ssh/config

# timeouts:
#   command: 120     # seconds, ordinary engine commands
#   build: 1800      # seconds, image builds
#   ssh_probe: 30    # seconds, non-interactive login check

# supervisor:
#   check_interval: 2        # CHECK_INTERVAL inside the container
#   idle_grace_seconds: 60   # IDLE_GRACE_SECONDS inside the container

# Answers used instead of prompting: ask, rebuild or reuse.
# decisions:
#   config_changed: ask
#   container_running: ask
"""
