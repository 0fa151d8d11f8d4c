# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Configuration for codium-devcontainer.

Two sources are read:

- The **tool config** (``~/.config/codium-devcontainer/config.yaml``)
  holds host-side settings: which engine to drive, timeouts, supervisor
  tuning and the headless decision policy.  Every key is optional and
  values may use ``!env VAR`` to pull from the environment.
- The project's **devcontainer.json** (``.devcontainer/devcontainer.json``)
  supplies the base image, remote user and lifecycle commands.  It is
  JSON with comments, parsed with ``json5``.
"""

from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, overload

import json5
import yaml
from platformdirs import user_config_path, user_state_path

from codium_devcontainer.dotenv_loader import load_dotenv_once
from codium_devcontainer.errors import ConfigError
from codium_devcontainer.logging import SecretFilter


logger = logging.getLogger(__name__)

#: Application name for XDG path resolution.
_APP_NAME = "codium-devcontainer"

#: Directory inside the workspace holding devcontainer files.
DEVCONTAINER_DIR = ".devcontainer"

#: Image used when devcontainer.json does not declare one.
FALLBACK_IMAGE = "node:22-bookworm"

DECISION_ASK = "ask"
DECISION_REBUILD = "rebuild"
DECISION_REUSE = "reuse"
_DECISION_VALUES = frozenset({DECISION_ASK, DECISION_REBUILD, DECISION_REUSE})

# containerEnv keys whose values are redacted from logs.
_SECRET_KEY_HINTS = ("TOKEN", "SECRET", "PASSWORD", "API_KEY")

_BOOL_TRUTHY = frozenset({"true", "1", "yes", "on"})
_BOOL_FALSY = frozenset({"false", "0", "no", "off"})


def get_config_path() -> Path:
    """Return the default tool config file path.

    Uses XDG: ``$XDG_CONFIG_HOME/codium-devcontainer/config.yaml``
    (typically ``~/.config/codium-devcontainer/config.yaml``).
    """
    return user_config_path(_APP_NAME) / "config.yaml"


def get_dotenv_path() -> Path:
    """Return the ``.env`` file path inside the XDG config directory."""
    return user_config_path(_APP_NAME) / ".env"


def get_state_dir() -> Path:
    """Return the state directory.

    Uses XDG: ``$XDG_STATE_HOME/codium-devcontainer`` (typically
    ``~/.local/state/codium-devcontainer``).
    """
    return user_state_path(_APP_NAME)


def get_lock_dir() -> Path:
    """Return the directory holding per-workspace reconciliation locks."""
    return get_state_dir() / "locks"


# ---------------------------------------------------------------------------
# YAML tag placeholders
# ---------------------------------------------------------------------------


class _EnvVar:
    """Placeholder for an unresolved ``!env VAR_NAME`` tag."""

    def __init__(self, var_name: str) -> None:
        self.var_name = var_name


def _env_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> _EnvVar:
    """Handle ``!env VAR_NAME`` in YAML."""
    value = loader.construct_scalar(node)  # type: ignore[arg-type]
    return _EnvVar(str(value))


def _make_loader() -> type[yaml.SafeLoader]:
    """Create a YAML loader that understands ``!env``."""

    class EnvLoader(yaml.SafeLoader):
        pass

    EnvLoader.add_constructor("!env", _env_constructor)
    return EnvLoader


# ---------------------------------------------------------------------------
# Value resolution
# ---------------------------------------------------------------------------


def _coerce_bool(value: object) -> bool:
    """Coerce a value to bool, handling string representations."""
    if isinstance(value, bool):
        return value
    s = str(value).lower().strip()
    if s in _BOOL_TRUTHY:
        return True
    if s in _BOOL_FALSY:
        return False
    raise ConfigError(f"Cannot convert {value!r} to bool")


def _raw_resolve(value: object) -> str | None:
    """Resolve an ``_EnvVar`` to its string value, or stringify literals.

    Returns None if the value is None or the env var is not set.
    """
    if isinstance(value, _EnvVar):
        return os.environ.get(value.var_name)
    if value is None:
        return None
    return str(value)


_MISSING = object()


@overload
def _resolve[T](value: object, coerce: type[T], *, default: T) -> T: ...


@overload
def _resolve[T](value: object, coerce: type[T]) -> T | None: ...


def _resolve(
    value: object,
    coerce: type[Any],
    *,
    default: object = _MISSING,
) -> Any:
    """Resolve a YAML value, handling ``!env`` tags and type coercion.

    Args:
        value: Raw value from YAML (may be ``_EnvVar``, None, or a
            literal already parsed by PyYAML).
        coerce: Target type (``str``, ``int``, ``float``, ``bool``,
            ``Path``).
        default: Default when value is absent.

    Returns:
        The resolved, coerced value, or None when absent without default.

    Raises:
        ConfigError: If the value cannot be coerced to *coerce*.
    """
    if not isinstance(value, _EnvVar) and value is not None:
        if coerce is bool:
            return _coerce_bool(value)
        if isinstance(value, coerce) and not isinstance(value, bool):
            return value

    resolved = _raw_resolve(value)
    if resolved is None or resolved == "":
        return None if default is _MISSING else default

    if coerce is bool:
        return _coerce_bool(resolved)
    if coerce is Path:
        return Path(resolved).expanduser()
    try:
        return coerce(resolved)
    except ValueError as e:
        raise ConfigError(
            f"Cannot convert {resolved!r} to {coerce.__name__}"
        ) from e


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Config '{key}' must be a mapping")
    return value


def _default_ssh_config_path() -> Path:
    return Path.home() / ".ssh" / "config"


# ---------------------------------------------------------------------------
# Tool config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolConfig:
    """Host-side settings.

    Attributes:
        container_command: Container engine binary (docker or podman).
        fallback_image: Base image used when devcontainer.json has none.
        fallback_port: Host port used when no free port can be allocated.
        ssh_command: SSH client binary.
        command_timeout: Timeout for ordinary engine commands (seconds).
        build_timeout: Timeout for image builds (seconds).
        ssh_probe_timeout: Timeout for the non-interactive login probe.
        check_interval: Supervisor poll interval (``CHECK_INTERVAL``).
        idle_grace_seconds: Supervisor idle threshold
            (``IDLE_GRACE_SECONDS``).
        on_config_changed: Headless answer to "config changed since the
            container was created" (ask, rebuild or reuse).
        on_container_running: Headless answer to "container is running,
            kill and rebuild?" (ask, rebuild or reuse).
        ssh_config_path: SSH client config receiving host aliases.
    """

    container_command: str = "docker"
    fallback_image: str = FALLBACK_IMAGE
    fallback_port: int = 2222
    ssh_command: str = "ssh"
    command_timeout: float = 120.0
    build_timeout: float = 1800.0
    ssh_probe_timeout: float = 30.0
    check_interval: int = 2
    idle_grace_seconds: int = 60
    on_config_changed: str = DECISION_ASK
    on_container_running: str = DECISION_ASK
    ssh_config_path: Path = field(default_factory=_default_ssh_config_path)

    def __post_init__(self) -> None:
        """Validate configuration.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.container_command:
            raise ValueError("container_command must not be empty")
        if not 1 <= self.fallback_port <= 65535:
            raise ValueError(
                f"Fallback port out of range: {self.fallback_port}"
            )
        for name in ("command_timeout", "build_timeout", "ssh_probe_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0: {getattr(self, name)}")
        if self.check_interval < 1:
            raise ValueError(
                f"Check interval must be >= 1s: {self.check_interval}"
            )
        if self.idle_grace_seconds < self.check_interval:
            raise ValueError(
                f"Idle grace ({self.idle_grace_seconds}s) must be >= check "
                f"interval ({self.check_interval}s)"
            )
        for name in ("on_config_changed", "on_container_running"):
            if getattr(self, name) not in _DECISION_VALUES:
                raise ValueError(
                    f"{name} must be one of "
                    f"{', '.join(sorted(_DECISION_VALUES))}: "
                    f"{getattr(self, name)!r}"
                )

    @classmethod
    def from_yaml(cls, config_path: Path | None = None) -> ToolConfig:
        """Load configuration from a YAML file.

        Values tagged with ``!env VAR_NAME`` are resolved from the
        environment at load time.  A ``.env`` file is loaded first if
        present.

        Args:
            config_path: Path to YAML config file.  Defaults to
                ``~/.config/codium-devcontainer/config.yaml`` (XDG); a
                missing default file yields the built-in defaults.

        Returns:
            ToolConfig instance.

        Raises:
            ConfigError: If an explicit file is missing or a value is
                invalid.
        """
        load_dotenv_once(get_dotenv_path())

        explicit = config_path is not None
        if config_path is None:
            config_path = get_config_path()

        if not config_path.exists():
            if explicit:
                raise ConfigError(f"Config file not found: {config_path}")
            logger.debug("No tool config at %s, using defaults", config_path)
            return cls()

        with open(config_path) as f:
            try:
                raw = yaml.load(f, Loader=_make_loader())
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise ConfigError(
                f"Config file must be a YAML mapping: {config_path}"
            )

        return cls._from_raw(raw)

    @classmethod
    def _from_raw(cls, raw: dict) -> ToolConfig:
        """Build config from parsed (but unresolved) YAML dict."""
        timeouts = _section(raw, "timeouts")
        supervisor = _section(raw, "supervisor")
        decisions = _section(raw, "decisions")
        defaults = cls()

        try:
            return cls(
                container_command=_resolve(
                    raw.get("container_command"),
                    str,
                    default=defaults.container_command,
                ),
                fallback_image=_resolve(
                    raw.get("fallback_image"),
                    str,
                    default=defaults.fallback_image,
                ),
                fallback_port=_resolve(
                    raw.get("fallback_port"),
                    int,
                    default=defaults.fallback_port,
                ),
                ssh_command=_resolve(
                    raw.get("ssh_command"), str, default=defaults.ssh_command
                ),
                command_timeout=_resolve(
                    timeouts.get("command"),
                    float,
                    default=defaults.command_timeout,
                ),
                build_timeout=_resolve(
                    timeouts.get("build"),
                    float,
                    default=defaults.build_timeout,
                ),
                ssh_probe_timeout=_resolve(
                    timeouts.get("ssh_probe"),
                    float,
                    default=defaults.ssh_probe_timeout,
                ),
                check_interval=_resolve(
                    supervisor.get("check_interval"),
                    int,
                    default=defaults.check_interval,
                ),
                idle_grace_seconds=_resolve(
                    supervisor.get("idle_grace_seconds"),
                    int,
                    default=defaults.idle_grace_seconds,
                ),
                on_config_changed=_resolve(
                    decisions.get("config_changed"),
                    str,
                    default=defaults.on_config_changed,
                ),
                on_container_running=_resolve(
                    decisions.get("container_running"),
                    str,
                    default=defaults.on_container_running,
                ),
                ssh_config_path=_resolve(
                    raw.get("ssh_config_path"),
                    Path,
                    default=defaults.ssh_config_path,
                ),
            )
        except ValueError as e:
            raise ConfigError(str(e)) from e


# ---------------------------------------------------------------------------
# devcontainer.json
# ---------------------------------------------------------------------------


def normalize_commands(value: object) -> list[str]:
    """Normalize a lifecycle command directive to a list of shell steps.

    Accepted shapes:

    - ``None`` or empty: no steps.
    - A string: one step.
    - A list of strings: one step per element.
    - A mapping of name to string or argument list: one step per entry,
      in declaration order; argument lists are shell-quoted and joined.

    Raises:
        ConfigError: If the directive has any other shape.
    """
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        steps: list[str] = []
        for item in value:
            if not isinstance(item, str):
                raise ConfigError(
                    f"Command list entries must be strings, got {item!r}"
                )
            if item.strip():
                steps.append(item)
        return steps
    if isinstance(value, dict):
        steps = []
        for name, item in value.items():
            if isinstance(item, str):
                if item.strip():
                    steps.append(item)
            elif isinstance(item, list) and all(
                isinstance(arg, str) for arg in item
            ):
                if item:
                    steps.append(shlex.join(item))
            else:
                raise ConfigError(
                    f"Command {name!r} must be a string or list of strings"
                )
        return steps
    raise ConfigError(
        f"Command must be a string, list or mapping, got "
        f"{type(value).__name__}"
    )


def devcontainer_path(workspace: Path) -> Path:
    """Return ``<workspace>/.devcontainer/devcontainer.json``."""
    return workspace / DEVCONTAINER_DIR / "devcontainer.json"


@dataclass(frozen=True)
class DevcontainerConfig:
    """Fields consumed from devcontainer.json.

    Attributes:
        path: Location of the parsed file.
        image: Declared base image, or None.
        remote_user: Declared remote user, or None.
        post_create: Steps appended to the image build.
        post_start: Steps run in the container after it (re)starts.
        container_env: Environment passed to ``run``.
    """

    path: Path
    image: str | None = None
    remote_user: str | None = None
    post_create: tuple[str, ...] = ()
    post_start: tuple[str, ...] = ()
    container_env: dict[str, str] = field(default_factory=dict)

    @classmethod
    def load(cls, workspace: Path) -> DevcontainerConfig:
        """Parse ``.devcontainer/devcontainer.json`` under *workspace*.

        Raises:
            ConfigError: If the file is missing or malformed.
        """
        path = devcontainer_path(workspace)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise ConfigError(
                f"No devcontainer.json found at {path}"
            ) from e
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}") from e

        try:
            raw = json5.loads(text)
        except ValueError as e:
            raise ConfigError(f"Invalid devcontainer.json {path}: {e}") from e

        if not isinstance(raw, dict):
            raise ConfigError(f"devcontainer.json must be an object: {path}")

        env_raw = raw.get("containerEnv") or {}
        if not isinstance(env_raw, dict):
            raise ConfigError("containerEnv must be an object")
        container_env = {str(k): str(v) for k, v in env_raw.items()}
        for key, value in container_env.items():
            if any(hint in key.upper() for hint in _SECRET_KEY_HINTS):
                SecretFilter.register_secret(value)

        config = cls(
            path=path,
            image=_optional_str(raw.get("image")),
            remote_user=_optional_str(raw.get("remoteUser")),
            post_create=tuple(normalize_commands(raw.get("postCreateCommand"))),
            post_start=tuple(normalize_commands(raw.get("postStartCommand"))),
            container_env=container_env,
        )
        logger.debug(
            "Loaded %s: image=%s remoteUser=%s postCreate=%d postStart=%d",
            path,
            config.image,
            config.remote_user,
            len(config.post_create),
            len(config.post_start),
        )
        return config

    def fingerprint(self) -> datetime | None:
        """Modification time of the file, or None if it has vanished."""
        try:
            mtime = self.path.stat().st_mtime
        except OSError:
            return None
        return datetime.fromtimestamp(mtime, tz=UTC)


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
