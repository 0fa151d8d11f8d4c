# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Session reconciliation.

``SessionReconciler.ensure_ready`` converges one workspace's container
to "running, up to date and reachable over SSH" and returns the mapped
port:

1. Absent container: build and run.
2. Present container, not forced: if devcontainer.json is newer than the
   container, ask whether to rebuild or reuse.
3. Reused container: start it (``start``, falling back to ``restart``) and
   read the mapped SSH port.  No port means a rebuild is needed.
4. Rebuild decided on a running container (unless forced without
   ``confirm_kill``): ask before killing it.  "Reuse" keeps it if a
   port can be found.
5. Rebuild: build, then replace the container (stop, ``rm -f``, run)
   on the previously mapped port if there was one, else a fresh port.

Dismissing any question raises ``OperationCancelledError``; nothing
destructive has happened at that point.  Reconciliation of one
workspace is serialized with a per-slug ``FileLock``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from codium_devcontainer.build import BuildPipeline
from codium_devcontainer.decisions import (
    KEY_CONFIG_CHANGED,
    KEY_CONTAINER_RUNNING,
    NOTICE_INFO,
    NOTICE_WARNING,
    OPTION_KILL_REBUILD,
    OPTION_REBUILD,
    OPTION_REUSE,
    DecisionProvider,
)
from codium_devcontainer.errors import (
    EngineError,
    EngineUnavailableError,
    OperationCancelledError,
)
from codium_devcontainer.locks import FileLock
from codium_devcontainer.ports import find_free_port
from codium_devcontainer.runtime import (
    BindMount,
    ContainerRuntime,
    PortMapping,
)
from codium_devcontainer.session import Session


logger = logging.getLogger(__name__)

ROOT_USER = "root"

# Login names safe to interpolate into a shell command line.
_USERNAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]*$")

_FIND_LOGIN_USER = (
    "awk -F: '$3>=1000 && $1!=\"nobody\" {print $1}' /etc/passwd "
    "| head -n1"
)
_FIRST_HOME_DIR = "ls -1 /home 2>/dev/null | head -n1"


def is_valid_username(name: str) -> bool:
    return bool(_USERNAME_RE.match(name))


@dataclass(frozen=True)
class ReadySession:
    """Result of a successful reconciliation.

    Attributes:
        port: Host port mapped to the container's SSH port.
        container_name: Name of the running container.
        rebuilt: True if the image was built and the container replaced.
        started: True if this reconciliation started or created the
            container (post-start commands are due).
    """

    port: int
    container_name: str
    rebuilt: bool = False
    started: bool = False


class SessionReconciler:
    """Decides between reuse, start and rebuild for one workspace.

    Args:
        runtime: Engine adapter.
        build_pipeline: Builds the session image.
        decisions: Answers rebuild/reuse questions and shows notices.
        port_allocator: Returns a free host port for new containers.
        lock_dir: Directory for per-workspace lock files; None disables
            locking (single-caller use such as tests).
        lock_timeout: Seconds to wait for a concurrent reconciliation.
        check_interval: ``CHECK_INTERVAL`` passed to the supervisor.
        idle_grace_seconds: ``IDLE_GRACE_SECONDS`` passed to the
            supervisor.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        build_pipeline: BuildPipeline,
        decisions: DecisionProvider,
        *,
        port_allocator: Callable[[], int] = find_free_port,
        lock_dir: Path | None = None,
        lock_timeout: float = 600.0,
        check_interval: int = 2,
        idle_grace_seconds: int = 60,
    ) -> None:
        self._runtime = runtime
        self._build = build_pipeline
        self._decisions = decisions
        self._allocate_port = port_allocator
        self._lock_dir = lock_dir
        self._lock_timeout = lock_timeout
        self._check_interval = check_interval
        self._idle_grace_seconds = idle_grace_seconds

    def ensure_ready(
        self,
        session: Session,
        force_rebuild: bool = False,
        *,
        confirm_kill: bool = False,
    ) -> ReadySession:
        """Converge the session's container and return its SSH port.

        Args:
            session: Workspace session.
            force_rebuild: Build and replace the container unconditionally.
            confirm_kill: With force_rebuild, still ask before killing a
                running container; "Reuse" then keeps it.

        Returns:
            The live port and container identity.

        Raises:
            OperationCancelledError: If a decision point was dismissed.
            EngineError: If an engine command that must succeed failed.
            BuildError: If the image build failed.
            LockTimeoutError: If another reconciliation holds the lock.
        """
        if self._lock_dir is None:
            return self._reconcile(session, force_rebuild, confirm_kill)
        lock = FileLock(
            self._lock_dir / f"{session.slug}.lock", timeout=self._lock_timeout
        )
        with lock:
            return self._reconcile(session, force_rebuild, confirm_kill)

    def _reconcile(
        self, session: Session, force_rebuild: bool, confirm_kill: bool
    ) -> ReadySession:
        name = session.container_name
        should_rebuild = force_rebuild
        port: int | None = None
        started = False

        if not self._runtime.exists(name):
            logger.info("Container %s does not exist, building", name)
            should_rebuild = True
        else:
            if not force_rebuild and self.is_stale(session):
                choice = self._decisions.choose(
                    KEY_CONFIG_CHANGED,
                    "Devcontainer configuration changed since container "
                    "creation. How would you like to proceed?",
                    [OPTION_REBUILD, OPTION_REUSE],
                )
                if choice is None:
                    raise OperationCancelledError("Operation cancelled")
                should_rebuild = choice == OPTION_REBUILD
                logger.info(
                    "Decision: %s existing container",
                    "rebuild" if should_rebuild else "reuse",
                )

            if should_rebuild:
                # A live port is kept for the replacement
                port = self._runtime.mapped_port(name)
            else:
                started = self._ensure_started(name)
                port = self._runtime.mapped_port(name)
                if port is None:
                    self._decisions.notify(
                        NOTICE_WARNING,
                        "Could not detect mapped SSH port for the container. "
                        "Rebuilding to allocate a new port.",
                    )
                    should_rebuild = True

            if (
                should_rebuild
                and (confirm_kill or not force_rebuild)
                and self._runtime.is_running(name)
            ):
                choice = self._decisions.choose(
                    KEY_CONTAINER_RUNNING,
                    "Container is currently running. How would you like "
                    "to proceed?",
                    [OPTION_KILL_REBUILD, OPTION_REUSE],
                )
                if choice is None:
                    raise OperationCancelledError("Operation cancelled")
                if choice == OPTION_REUSE:
                    logger.info("Decision: reuse running container")
                    started = self._ensure_started(name) or started
                    reused_port = self._runtime.mapped_port(name)
                    if reused_port is not None:
                        port = reused_port
                        should_rebuild = False
                    else:
                        self._decisions.notify(
                            NOTICE_WARNING,
                            "Could not detect mapped SSH port for the "
                            "running container. Rebuilding to allocate a "
                            "new port.",
                        )

        if should_rebuild:
            if port is None:
                port = self._allocate_port()
            self._build.build(session)
            self._replace_container(session, port)
            # Re-derive: the engine owns the mapping of the new container
            port = self._runtime.mapped_port(name) or port
            started = True

        if port is None:
            raise EngineError(f"No SSH port mapped for container {name}")

        logger.info("Container %s ready on port %d", name, port)
        return ReadySession(
            port=port,
            container_name=name,
            rebuilt=should_rebuild,
            started=started,
        )

    def is_stale(self, session: Session) -> bool:
        """True if devcontainer.json changed after the container was created.

        A missing fingerprint or creation time is never stale.
        """
        fingerprint = session.config_fingerprint
        if fingerprint is None:
            return False
        created = self._runtime.created_at(session.container_name)
        if created is None:
            return False
        return fingerprint > created

    def _ensure_started(self, name: str) -> bool:
        """Start *name*, falling back to ``restart``.

        A container that cannot be started either way is left as is; the
        caller sees no mapped port and rebuilds.

        Returns:
            True if the container was not running before.
        """
        was_running = self._runtime.is_running(name)
        try:
            self._runtime.start(name)
        except EngineUnavailableError:
            raise
        except EngineError as e:
            logger.warning("Start of %s failed (%s), restarting", name, e)
            try:
                self._runtime.restart(name)
            except EngineUnavailableError:
                raise
            except EngineError as restart_error:
                logger.warning(
                    "Restart of %s failed: %s", name, restart_error
                )
        return not was_running

    def _replace_container(self, session: Session, port: int) -> None:
        """Stop and remove any existing container, then run a new one."""
        name = session.container_name
        try:
            self._runtime.stop(name)
        except EngineUnavailableError:
            raise
        except EngineError as e:
            logger.debug("Ignoring stop failure for %s: %s", name, e)
        try:
            self._runtime.remove(name)
        except EngineUnavailableError:
            raise
        except EngineError as e:
            logger.debug("Ignoring remove failure for %s: %s", name, e)

        workdir = session.container_workspace
        env = dict(session.devcontainer.container_env)
        env.update(
            {
                "CODIUM_WS": workdir,
                "CHECK_INTERVAL": str(self._check_interval),
                "IDLE_GRACE_SECONDS": str(self._idle_grace_seconds),
            }
        )
        self._runtime.run(
            session.image_name,
            name,
            env=env,
            port_mapping=PortMapping(host_port=port),
            bind_mount=BindMount(
                host_path=session.workspace, container_path=workdir
            ),
            workdir=workdir,
        )

    def resolve_effective_user(self, session: Session) -> str:
        """Determine which container user SSH should log in as.

        Uses ``remoteUser`` when configured.  Otherwise asks the
        container (``whoami``); for root, looks for a regular login
        account (uid >= 1000) and then the first directory under
        ``/home``.

        Raises:
            ContainerNotFoundError: If the container vanished.
        """
        if session.remote_user:
            return session.remote_user

        name = session.container_name
        result = self._runtime.exec(name, ["whoami"])
        user = result.stdout.strip() if result.ok else ""
        if not user:
            self._decisions.notify(
                NOTICE_WARNING,
                "Could not detect container user with 'whoami'. "
                "Falling back to 'root'.",
            )
            user = ROOT_USER
        if user != ROOT_USER:
            return user

        alternative = self._first_line(name, _FIND_LOGIN_USER)
        if not alternative:
            alternative = self._first_line(name, _FIRST_HOME_DIR)
        if alternative and is_valid_username(alternative):
            self._decisions.notify(
                NOTICE_INFO,
                f"Detected default user 'root'; using '{alternative}' for "
                f"SSH. Set 'remoteUser' in devcontainer.json to force a "
                f"specific user.",
            )
            return alternative

        self._decisions.notify(
            NOTICE_INFO,
            "Container default user is 'root' and no other login user was "
            "found; connecting as 'root'.",
        )
        return ROOT_USER

    def _first_line(self, name: str, script: str) -> str:
        result = self._runtime.exec(name, ["sh", "-c", script])
        if not result.ok:
            return ""
        lines = result.stdout.strip().splitlines()
        return lines[0].strip() if lines else ""
