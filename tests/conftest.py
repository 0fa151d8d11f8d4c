# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Shared pytest fixtures and fakes for codium-devcontainer tests."""

import json
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from codium_devcontainer.config import ToolConfig
from codium_devcontainer.dotenv_loader import reset_dotenv_state
from codium_devcontainer.errors import ContainerNotFoundError, EngineError
from codium_devcontainer.logging import SecretFilter
from codium_devcontainer.runtime import BindMount, CommandResult, PortMapping
from codium_devcontainer.session import Session, resolve_session


@pytest.fixture(autouse=True)
def _isolate_global_state() -> Iterator[None]:
    """Reset class-level secrets and the dotenv guard between tests."""
    SecretFilter.clear_secrets()
    reset_dotenv_state()
    yield
    SecretFilter.clear_secrets()
    reset_dotenv_state()


@dataclass
class FakeContainer:
    running: bool = True
    port: int | None = 40001
    created: datetime | None = None


class FakeRuntime:
    """In-memory stand-in for ``ContainerRuntime``.

    Records every mutating call in ``calls`` as ``(operation, name)``
    tuples.  Like the engine, a port is reported only while the
    container runs.  ``exec_handler`` decides what commands run inside
    a container print.
    """

    command = "docker"

    def __init__(self) -> None:
        self.containers: dict[str, FakeContainer] = {}
        self.calls: list[tuple[str, str]] = []
        self.run_kwargs: list[dict] = []
        self.exec_calls: list[dict] = []
        self.exec_handler: Callable[[Sequence[str]], CommandResult] | None = (
            None
        )
        self.start_error: EngineError | None = None
        self.restart_error: EngineError | None = None
        self.stop_error: EngineError | None = None

    def add(
        self,
        name: str,
        *,
        running: bool = True,
        port: int | None = 40001,
        created: datetime | None = None,
    ) -> FakeContainer:
        if created is None:
            # Newer than any devcontainer.json written by a test
            created = datetime.now(UTC) + timedelta(hours=1)
        container = FakeContainer(running=running, port=port, created=created)
        self.containers[name] = container
        return container

    def exists(self, name: str) -> bool:
        return name in self.containers

    def is_running(self, name: str) -> bool:
        container = self.containers.get(name)
        return container is not None and container.running

    def created_at(self, name: str) -> datetime | None:
        container = self.containers.get(name)
        return container.created if container else None

    def mapped_port(self, name: str, container_port: int = 22) -> int | None:
        container = self.containers.get(name)
        return container.port if container and container.running else None

    def start(self, name: str) -> None:
        self.calls.append(("start", name))
        if self.start_error is not None:
            raise self.start_error
        self._require(name).running = True

    def restart(self, name: str) -> None:
        self.calls.append(("restart", name))
        if self.restart_error is not None:
            raise self.restart_error
        self._require(name).running = True

    def stop(self, name: str) -> None:
        self.calls.append(("stop", name))
        if self.stop_error is not None:
            raise self.stop_error
        self._require(name).running = False

    def remove(self, name: str) -> bool:
        self.calls.append(("remove", name))
        return self.containers.pop(name, None) is not None

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
        self.calls.append(("run", name))
        self.run_kwargs.append(
            {
                "tag": tag,
                "env": dict(env),
                "port_mapping": port_mapping,
                "bind_mount": bind_mount,
                "workdir": workdir,
            }
        )
        self.containers[name] = FakeContainer(
            running=True,
            port=port_mapping.host_port,
            created=datetime.now(UTC) + timedelta(hours=1),
        )
        return "abc123"

    def exec(
        self,
        name: str,
        command: Sequence[str],
        stdin: str | None = None,
        *,
        user: str | None = None,
        workdir: str | None = None,
    ) -> CommandResult:
        self.exec_calls.append(
            {
                "name": name,
                "command": list(command),
                "stdin": stdin,
                "user": user,
                "workdir": workdir,
            }
        )
        if name not in self.containers:
            raise ContainerNotFoundError(f"Container {name} does not exist")
        if self.exec_handler is not None:
            return self.exec_handler(command)
        return CommandResult(argv=list(command), returncode=0, stdout="")

    def _require(self, name: str) -> FakeContainer:
        container = self.containers.get(name)
        if container is None:
            raise ContainerNotFoundError(f"No such container: {name}")
        return container


class ScriptedDecisions:
    """Decision provider answering from a fixed script.

    Attributes:
        prompts: ``(key, options)`` for every ``choose`` call.
        notices: ``(level, message)`` for every ``notify`` call.
    """

    def __init__(
        self,
        answers: Sequence[str | None] = (),
        picked_file: Path | None = None,
    ) -> None:
        self._answers = list(answers)
        self._picked_file = picked_file
        self.prompts: list[tuple[str, list[str]]] = []
        self.picks: list[str] = []
        self.notices: list[tuple[str, str]] = []

    def choose(
        self, key: str, prompt: str, options: Sequence[str]
    ) -> str | None:
        self.prompts.append((key, list(options)))
        if not self._answers:
            raise AssertionError(f"Unexpected decision prompt: {key}")
        return self._answers.pop(0)

    def pick_file(self, prompt: str, start_dir: Path) -> Path | None:
        self.picks.append(prompt)
        return self._picked_file

    def notify(self, level: str, message: str) -> None:
        self.notices.append((level, message))


def write_devcontainer(workspace: Path, content: dict | str) -> Path:
    """Write ``.devcontainer/devcontainer.json`` under *workspace*."""
    path = workspace / ".devcontainer" / "devcontainer.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    text = content if isinstance(content, str) else json.dumps(content)
    path.write_text(text)
    return path


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """A project folder named ``My App`` with a minimal devcontainer.json."""
    path = tmp_path / "My App"
    path.mkdir()
    write_devcontainer(
        path,
        {
            "image": "python:3.12",
            "postCreateCommand": "pip install -e .",
            "postStartCommand": ["echo started"],
        },
    )
    return path


@pytest.fixture
def session(workspace: Path) -> Session:
    return resolve_session(workspace, ToolConfig())
