# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Exception hierarchy for codium-devcontainer.

Resource-absent conditions are normally expressed as ``False``/``None``
return values by the runtime adapter's query operations.  The
exceptions below cover everything that aborts an operation.
"""

from __future__ import annotations

from collections.abc import Sequence


class DevcontainerError(Exception):
    """Base exception for all codium-devcontainer failures."""


class ConfigError(DevcontainerError):
    """Raised when tool config or devcontainer.json is missing or invalid."""


class OperationCancelledError(DevcontainerError):
    """Raised when a required decision point was declined or dismissed."""


class EngineError(DevcontainerError):
    """Raised when a container engine command fails.

    Attributes:
        argv: The command that failed (may be empty).
        returncode: Exit status of the command, or None if it never ran.
        output: Combined stdout/stderr captured from the command.
    """

    def __init__(
        self,
        message: str,
        *,
        argv: Sequence[str] = (),
        returncode: int | None = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.argv = list(argv)
        self.returncode = returncode
        self.output = output


class EngineUnavailableError(EngineError):
    """Engine binary missing, socket permission denied, or call timed out."""


class ContainerNotFoundError(EngineError):
    """The named container does not exist."""


class BuildError(EngineError):
    """Image build failed or its staged artifacts could not be prepared."""
