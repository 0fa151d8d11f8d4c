# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Workspace session model.

A session pairs one project folder with one managed container.  Image,
container and SSH host alias all share the name
``codium-devcontainer-<slug>``, so the engine's name uniqueness enforces
one container per workspace.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from codium_devcontainer.config import DevcontainerConfig, ToolConfig


#: Prefix shared by image, container and host alias names.
NAME_PREFIX = "codium-devcontainer-"

#: Slug used when the folder name has no usable characters.
SLUG_FALLBACK = "workspace"

#: Parent directory of the workspace mount inside the container.
CONTAINER_WORKSPACE_ROOT = "/workspace"

_SLUG_INVALID = re.compile(r"[^a-z0-9._-]+")


def make_workspace_slug(name: str) -> str:
    """Derive an engine-safe identifier from a folder name.

    The name is lowercased, every run of characters outside
    ``[a-z0-9._-]`` becomes a single ``-``, and leading/trailing
    separators are stripped.

    Example:
        make_workspace_slug("My Project!")  # "my-project"
        make_workspace_slug("...")  # "workspace"
    """
    slug = _SLUG_INVALID.sub("-", name.lower()).strip("._-")
    return slug or SLUG_FALLBACK


@dataclass(frozen=True)
class Session:
    """One workspace's container lifecycle identity.

    Attributes:
        workspace: Absolute path of the project folder on the host.
        slug: Sanitized identifier derived from the folder name.
        base_image: Image passed as ``BASE_IMAGE`` to the build.
        remote_user: Configured user, or None to resolve at runtime.
        devcontainer: Parsed devcontainer.json.
    """

    workspace: Path
    slug: str
    base_image: str
    remote_user: str | None
    devcontainer: DevcontainerConfig

    @property
    def image_name(self) -> str:
        return f"{NAME_PREFIX}{self.slug}"

    @property
    def container_name(self) -> str:
        return f"{NAME_PREFIX}{self.slug}"

    @property
    def host_alias(self) -> str:
        """SSH ``Host`` alias written to the client config."""
        return f"{NAME_PREFIX}{self.slug}"

    @property
    def container_workspace(self) -> str:
        """Mount point of the workspace inside the container."""
        return f"{CONTAINER_WORKSPACE_ROOT}/{self.workspace.name}"

    @property
    def devcontainer_dir(self) -> Path:
        return self.devcontainer.path.parent

    @property
    def config_fingerprint(self) -> datetime | None:
        """Current devcontainer.json mtime (read on every access)."""
        return self.devcontainer.fingerprint()

    @property
    def post_create(self) -> list[str]:
        return list(self.devcontainer.post_create)

    @property
    def post_start(self) -> list[str]:
        return list(self.devcontainer.post_start)


def resolve_session(workspace: Path, tool_config: ToolConfig) -> Session:
    """Build the session for *workspace* from its devcontainer.json.

    Raises:
        ConfigError: If devcontainer.json is missing or malformed.
    """
    workspace = workspace.expanduser().resolve()
    devcontainer = DevcontainerConfig.load(workspace)
    return Session(
        workspace=workspace,
        slug=make_workspace_slug(workspace.name),
        base_image=devcontainer.image or tool_config.fallback_image,
        remote_user=devcontainer.remote_user,
        devcontainer=devcontainer,
    )
