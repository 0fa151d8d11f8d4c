# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for codium_devcontainer/runtime.py."""

import json
import subprocess
from datetime import UTC, datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from codium_devcontainer.errors import (
    BuildError,
    ContainerNotFoundError,
    EngineError,
    EngineUnavailableError,
)
from codium_devcontainer.runtime import (
    BindMount,
    CommandResult,
    ContainerRuntime,
    PortMapping,
    parse_engine_timestamp,
)


NOT_FOUND = "Error: No such container: codium-devcontainer-app"


def _completed(
    returncode: int = 0, stdout: str = "", stderr: str = ""
) -> MagicMock:
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


def _inspect_doc(**fields: object) -> str:
    doc: dict[str, object] = {
        "Created": "2024-05-01T10:00:00.123456789Z",
        "State": {"Running": True},
        "NetworkSettings": {"Ports": {}},
        "HostConfig": {"PortBindings": {}},
    }
    doc.update(fields)
    return json.dumps([doc])


class TestCommandResult:
    """Tests for CommandResult."""

    def test_output_combines_streams(self) -> None:
        """output joins stdout and stderr on separate lines."""
        result = CommandResult(["x"], 1, stdout="out", stderr="err")
        assert result.output == "out\nerr"
        assert result.ok is False

    def test_output_single_stream(self) -> None:
        """output is the non-empty stream alone."""
        assert CommandResult(["x"], 0, stdout="", stderr="e").output == "e"


class TestArgs:
    """Tests for PortMapping and BindMount rendering."""

    def test_port_mapping_loopback(self) -> None:
        """Ports are published on loopback only by default."""
        assert PortMapping(40000).to_arg() == "127.0.0.1:40000:22"

    def test_bind_mount_read_only(self) -> None:
        """Read-only mounts get the :ro suffix."""
        mount = BindMount(Path("/src"), "/workspace/src", read_only=True)
        assert mount.to_arg() == "/src:/workspace/src:ro"


class TestParseEngineTimestamp:
    """Tests for parse_engine_timestamp."""

    def test_nanoseconds_truncated(self) -> None:
        """Nanosecond fractions are truncated to microseconds."""
        parsed = parse_engine_timestamp("2024-05-01T10:00:00.123456789Z")
        assert parsed == datetime(2024, 5, 1, 10, 0, 0, 123456, tzinfo=UTC)

    def test_offset_preserved(self) -> None:
        """Explicit offsets produce aware datetimes."""
        parsed = parse_engine_timestamp("2024-05-01T12:00:00+02:00")
        assert parsed == datetime(
            2024, 5, 1, 12, 0, tzinfo=timezone(timedelta(hours=2))
        )

    def test_naive_assumed_utc(self) -> None:
        """Timestamps without an offset are treated as UTC."""
        parsed = parse_engine_timestamp("2024-05-01T10:00:00")
        assert parsed is not None
        assert parsed.tzinfo == UTC

    @pytest.mark.parametrize("value", ["", "   ", "yesterday"])
    def test_invalid(self, value: str) -> None:
        """Empty or malformed values yield None."""
        assert parse_engine_timestamp(value) is None


class TestQueries:
    """Tests for inspect-based queries."""

    @patch("codium_devcontainer.runtime.subprocess.run")
    def test_inspect_targets_containers(self, mock_run: MagicMock) -> None:
        """inspect passes --type container (image shares the name)."""
        mock_run.return_value = _completed(stdout=_inspect_doc())
        runtime = ContainerRuntime("podman")

        info = runtime.inspect("app")

        assert info is not None
        assert mock_run.call_args[0][0] == [
            "podman",
            "inspect",
            "--type",
            "container",
            "app",
        ]

    @patch("codium_devcontainer.runtime.subprocess.run")
    def test_absent_container(self, mock_run: MagicMock) -> None:
        """Not-found output means absent, not an error."""
        mock_run.return_value = _completed(1, stderr=NOT_FOUND)
        runtime = ContainerRuntime()

        assert runtime.inspect("app") is None
        assert runtime.exists("app") is False
        assert runtime.is_running("app") is False
        assert runtime.created_at("app") is None
        assert runtime.mapped_port("app") is None

    @patch("codium_devcontainer.runtime.subprocess.run")
    def test_podman_not_found_wording(self, mock_run: MagicMock) -> None:
        """Podman's wording is also recognized."""
        mock_run.return_value = _completed(
            125, stderr="Error: no container with name or ID \"app\" found"
        )
        assert ContainerRuntime("podman").exists("app") is False

    @patch("codium_devcontainer.runtime.subprocess.run")
    def test_inspect_other_failure_raises(self, mock_run: MagicMock) -> None:
        """Unexpected inspect failures raise EngineError."""
        mock_run.return_value = _completed(1, stderr="weird failure")

        with pytest.raises(EngineError) as exc_info:
            ContainerRuntime().inspect("app")

        assert not isinstance(exc_info.value, ContainerNotFoundError)
        assert exc_info.value.output == "weird failure"

    @patch("codium_devcontainer.runtime.subprocess.run")
    def test_running_and_created(self, mock_run: MagicMock) -> None:
        """State and creation time are read from the inspect document."""
        mock_run.return_value = _completed(
            stdout=_inspect_doc(State={"Running": False})
        )
        runtime = ContainerRuntime()

        assert runtime.exists("app") is True
        assert runtime.is_running("app") is False
        assert runtime.created_at("app") == datetime(
            2024, 5, 1, 10, 0, 0, 123456, tzinfo=UTC
        )

    @patch("codium_devcontainer.runtime.subprocess.run")
    def test_mapped_port_live(self, mock_run: MagicMock) -> None:
        """The live port mapping is reported."""
        mock_run.return_value = _completed(
            stdout=_inspect_doc(
                NetworkSettings={
                    "Ports": {
                        "22/tcp": [{"HostIp": "127.0.0.1", "HostPort": "40123"}]
                    }
                },
                HostConfig={
                    "PortBindings": {"22/tcp": [{"HostPort": "40999"}]}
                },
            )
        )
        assert ContainerRuntime().mapped_port("app") == 40123

    @patch("codium_devcontainer.runtime.subprocess.run")
    def test_mapped_port_ignores_configured_binding(
        self, mock_run: MagicMock
    ) -> None:
        """A stopped container's configured binding is not a live port."""
        mock_run.return_value = _completed(
            stdout=_inspect_doc(
                State={"Running": False},
                NetworkSettings={"Ports": {}},
                HostConfig={
                    "PortBindings": {"22/tcp": [{"HostPort": "40999"}]}
                },
            )
        )
        assert ContainerRuntime().mapped_port("app") is None

    @patch("codium_devcontainer.runtime.subprocess.run")
    def test_mapped_port_none(self, mock_run: MagicMock) -> None:
        """No binding for port 22 yields None."""
        mock_run.return_value = _completed(
            stdout=_inspect_doc(
                NetworkSettings={"Ports": {"22/tcp": None}},
                HostConfig={"PortBindings": {"80/tcp": [{"HostPort": "8080"}]}},
            )
        )
        assert ContainerRuntime().mapped_port("app") is None

    @patch("codium_devcontainer.runtime.subprocess.run")
    def test_unparseable_inspect(self, mock_run: MagicMock) -> None:
        """Garbage inspect output is an engine error."""
        mock_run.return_value = _completed(stdout="not json")

        with pytest.raises(EngineError, match="Unparseable"):
            ContainerRuntime().inspect("app")


class TestFailureClassification:
    """Tests for engine error mapping."""

    @patch("codium_devcontainer.runtime.subprocess.run")
    def test_missing_binary(self, mock_run: MagicMock) -> None:
        """A missing engine binary is EngineUnavailableError."""
        mock_run.side_effect = FileNotFoundError("docker")

        with pytest.raises(EngineUnavailableError, match="not found"):
            ContainerRuntime().exists("app")

    @patch("codium_devcontainer.runtime.subprocess.run")
    def test_timeout(self, mock_run: MagicMock) -> None:
        """A hung engine call is EngineUnavailableError."""
        mock_run.side_effect = subprocess.TimeoutExpired(["docker"], 5)

        with pytest.raises(EngineUnavailableError, match="timed out"):
            ContainerRuntime(timeout=5).start("app")

    @patch("codium_devcontainer.runtime.subprocess.run")
    def test_permission_denied(self, mock_run: MagicMock) -> None:
        """Socket permission errors are EngineUnavailableError."""
        mock_run.return_value = _completed(
            1,
            stderr=(
                "permission denied while trying to connect to the Docker "
                "daemon socket at unix:///var/run/docker.sock"
            ),
        )

        with pytest.raises(EngineUnavailableError):
            ContainerRuntime().exists("app")

    @patch("codium_devcontainer.runtime.subprocess.run")
    def test_ping(self, mock_run: MagicMock) -> None:
        """ping reports daemon reachability without raising."""
        mock_run.return_value = _completed(
            1, stderr="Cannot connect to the Docker daemon"
        )
        assert ContainerRuntime().ping() is False

        mock_run.return_value = _completed(0, stdout="Server: ...")
        assert ContainerRuntime().ping() is True

    @patch("codium_devcontainer.runtime.subprocess.run")
    def test_start_absent_raises_not_found(self, mock_run: MagicMock) -> None:
        """Mutating an absent container raises ContainerNotFoundError."""
        mock_run.return_value = _completed(1, stderr=NOT_FOUND)

        with pytest.raises(ContainerNotFoundError):
            ContainerRuntime().start("app")

    @patch("codium_devcontainer.runtime.subprocess.run")
    def test_stop_failure(self, mock_run: MagicMock) -> None:
        """Other stop failures carry the engine output."""
        mock_run.return_value = _completed(1, stderr="driver failed")

        with pytest.raises(EngineError) as exc_info:
            ContainerRuntime().stop("app")

        assert "driver failed" in str(exc_info.value)
        assert exc_info.value.argv == ["docker", "stop", "app"]
        assert exc_info.value.returncode == 1

    @patch("codium_devcontainer.runtime.subprocess.run")
    def test_remove(self, mock_run: MagicMock) -> None:
        """remove reports whether a container existed."""
        mock_run.return_value = _completed(0, stdout="app\n")
        assert ContainerRuntime().remove("app") is True
        assert mock_run.call_args[0][0] == ["docker", "rm", "-f", "app"]

        mock_run.return_value = _completed(1, stderr=NOT_FOUND)
        assert ContainerRuntime().remove("app") is False


class TestRunAndExec:
    """Tests for run and exec argument construction."""

    @patch("codium_devcontainer.runtime.subprocess.run")
    def test_run(self, mock_run: MagicMock) -> None:
        """run publishes the port, mounts the workspace and sets env."""
        mock_run.return_value = _completed(stdout="deadbeef\n")
        runtime = ContainerRuntime()

        container_id = runtime.run(
            "codium-devcontainer-app",
            "codium-devcontainer-app",
            env={"CODIUM_WS": "/workspace/app", "CHECK_INTERVAL": "2"},
            port_mapping=PortMapping(40000),
            bind_mount=BindMount(Path("/home/me/app"), "/workspace/app"),
            workdir="/workspace/app",
        )

        assert container_id == "deadbeef"
        assert mock_run.call_args[0][0] == [
            "docker",
            "run",
            "-d",
            "--name",
            "codium-devcontainer-app",
            "-e",
            "CODIUM_WS=/workspace/app",
            "-e",
            "CHECK_INTERVAL=2",
            "-p",
            "127.0.0.1:40000:22",
            "-v",
            "/home/me/app:/workspace/app",
            "-w",
            "/workspace/app",
            "codium-devcontainer-app",
        ]

    @patch("codium_devcontainer.runtime.subprocess.run")
    def test_exec_with_stdin(self, mock_run: MagicMock) -> None:
        """stdin input enables -i and is passed to the process."""
        mock_run.return_value = _completed()
        runtime = ContainerRuntime()

        runtime.exec("app", ["cat"], stdin="key\n", user="root", workdir="/w")

        argv = mock_run.call_args[0][0]
        assert argv == [
            "docker",
            "exec",
            "-i",
            "-u",
            "root",
            "-w",
            "/w",
            "app",
            "cat",
        ]
        assert mock_run.call_args[1]["input"] == "key\n"

    @patch("codium_devcontainer.runtime.subprocess.run")
    def test_exec_failure_returned(self, mock_run: MagicMock) -> None:
        """A failing command's status is returned, not raised."""
        mock_run.return_value = _completed(2, stderr="ls: cannot access")

        result = ContainerRuntime().exec("app", ["ls", "/nope"])

        assert result.returncode == 2
        assert not result.ok

    @patch("codium_devcontainer.runtime.subprocess.run")
    def test_exec_absent_container(self, mock_run: MagicMock) -> None:
        """exec into an absent container raises ContainerNotFoundError."""
        mock_run.return_value = _completed(1, stderr=NOT_FOUND)

        with pytest.raises(ContainerNotFoundError):
            ContainerRuntime().exec("app", ["whoami"])

    @patch("codium_devcontainer.runtime.subprocess.run")
    def test_sink_receives_trace(self, mock_run: MagicMock) -> None:
        """Command line and output go to the diagnostic sink."""
        mock_run.return_value = _completed(stdout="vscode\n")
        sink = MagicMock()

        ContainerRuntime(sink=sink).exec("app", ["whoami"])

        sink.command.assert_called_once_with(
            ["docker", "exec", "app", "whoami"]
        )
        sink.output.assert_called_once_with("vscode\n")


class TestBuild:
    """Tests for streamed image builds."""

    @staticmethod
    def _popen(returncode: int, lines: list[str]) -> MagicMock:
        process = MagicMock()
        process.stdout = iter(lines)
        process.returncode = returncode
        return process

    @patch("codium_devcontainer.runtime.subprocess.Popen")
    def test_build_arguments(self, mock_popen: MagicMock) -> None:
        """Build args and context are passed to the engine."""
        mock_popen.return_value = self._popen(0, ["Step 1/3\n"])
        sink = MagicMock()

        ContainerRuntime(sink=sink).build(
            Path("/ws/.devcontainer/Dockerfile.codium-temp"),
            "codium-devcontainer-ws",
            {"BASE_IMAGE": "python:3.12", "USERNAME": "dev"},
            Path("/ws"),
        )

        assert mock_popen.call_args[0][0] == [
            "docker",
            "build",
            "-t",
            "codium-devcontainer-ws",
            "-f",
            "/ws/.devcontainer/Dockerfile.codium-temp",
            "--build-arg",
            "BASE_IMAGE=python:3.12",
            "--build-arg",
            "USERNAME=dev",
            "/ws",
        ]
        sink.output.assert_called_once_with("Step 1/3\n")

    @patch("codium_devcontainer.runtime.subprocess.Popen")
    def test_build_failure(self, mock_popen: MagicMock) -> None:
        """Non-zero build exit raises BuildError with the log."""
        mock_popen.return_value = self._popen(
            1, ["Step 1/3\n", "E: Unable to locate package\n"]
        )

        with pytest.raises(BuildError) as exc_info:
            ContainerRuntime().build(
                Path("Dockerfile"), "tag", {}, Path("/ws")
            )

        assert "Unable to locate package" in exc_info.value.output
        assert exc_info.value.returncode == 1

    @patch("codium_devcontainer.runtime.subprocess.Popen")
    def test_build_missing_engine(self, mock_popen: MagicMock) -> None:
        """A missing engine binary is EngineUnavailableError."""
        mock_popen.side_effect = FileNotFoundError("docker")

        with pytest.raises(EngineUnavailableError):
            ContainerRuntime().build(
                Path("Dockerfile"), "tag", {}, Path("/ws")
            )
