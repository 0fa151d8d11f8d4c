# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Disposable, SSH-reachable development containers for a project folder.

The host side decides whether a workspace's container can be reused or
must be (re)built, maps its SSH port and installs the operator's key.
Inside the container, the supervisor owns sshd and stops the container
once nobody has been connected for the idle grace period.
"""

from codium_devcontainer.build import BuildPipeline
from codium_devcontainer.config import DevcontainerConfig, ToolConfig
from codium_devcontainer.decisions import (
    DecisionProvider,
    PolicyDecisionProvider,
    TerminalDecisionProvider,
)
from codium_devcontainer.errors import (
    BuildError,
    ConfigError,
    ContainerNotFoundError,
    DevcontainerError,
    EngineError,
    EngineUnavailableError,
    OperationCancelledError,
)
from codium_devcontainer.ports import find_free_port
from codium_devcontainer.reconciler import ReadySession, SessionReconciler
from codium_devcontainer.runtime import ContainerRuntime
from codium_devcontainer.session import (
    Session,
    make_workspace_slug,
    resolve_session,
)
from codium_devcontainer.ssh import (
    SshBootstrap,
    SshConfigStore,
    SshSessionHandle,
    open_session,
    write_stop_request,
)


__all__ = [
    # build
    "BuildPipeline",
    # config
    "DevcontainerConfig",
    "ToolConfig",
    # decisions
    "DecisionProvider",
    "PolicyDecisionProvider",
    "TerminalDecisionProvider",
    # errors
    "BuildError",
    "ConfigError",
    "ContainerNotFoundError",
    "DevcontainerError",
    "EngineError",
    "EngineUnavailableError",
    "OperationCancelledError",
    # ports
    "find_free_port",
    # reconciler
    "ReadySession",
    "SessionReconciler",
    # runtime
    "ContainerRuntime",
    # session
    "Session",
    "make_workspace_slug",
    "resolve_session",
    # ssh
    "SshBootstrap",
    "SshConfigStore",
    "SshSessionHandle",
    "open_session",
    "write_stop_request",
]
