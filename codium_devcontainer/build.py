# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Image build pipeline.

A build stages two files into the workspace's ``.devcontainer/``
directory, invokes the engine with the workspace as build context, and
removes both files again whether or not the build succeeded:

- ``codium-supervisor.py`` - the in-container supervisor, copied into
  the image as its entrypoint.
- ``Dockerfile.codium-temp`` - the Dockerfile template followed by one
  ``RUN`` step per ``postCreateCommand`` entry.

Each staged file carries an ownership marker.  Only marked files are
ever overwritten or removed, so a user-authored file of the same name is
left untouched.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from importlib.resources import files
from pathlib import Path

from codium_devcontainer.errors import BuildError
from codium_devcontainer.runtime import ContainerRuntime
from codium_devcontainer.session import Session


logger = logging.getLogger(__name__)

SUPERVISOR_STAGED_NAME = "codium-supervisor.py"
TEMP_DOCKERFILE_NAME = "Dockerfile.codium-temp"
USER_DOCKERFILE_NAME = "Dockerfile"

SUPERVISOR_MARKER = "# Added by codium-devcontainer: supervisor"
DOCKERFILE_MARKER = "# Added by codium-devcontainer: temporary build file"
POST_CREATE_MARKER = (
    "# Added by codium-devcontainer (temp): postCreateCommand"
)


def get_template_path() -> Path:
    """Path of the bundled Dockerfile template."""
    return Path(str(files("codium_devcontainer._bundled") / "Dockerfile"))


def get_supervisor_content() -> str:
    """Supervisor script as staged into the build context.

    The module source is prefixed with a shebang and the ownership
    marker.
    """
    source = (
        files("codium_devcontainer")
        .joinpath("supervisor.py")
        .read_text(encoding="utf-8")
    )
    return f"#!/usr/bin/env python3\n{SUPERVISOR_MARKER}\n{source}"


def render_dockerfile(template: str, post_create: Sequence[str]) -> str:
    """Append post-create ``RUN`` steps to a Dockerfile template.

    Anything after an existing post-create marker in *template* is
    dropped first, so rendering an already-rendered file does not
    duplicate steps.

    Args:
        template: Dockerfile template text.
        post_create: Shell steps, one ``RUN`` line each.

    Returns:
        The synthesized Dockerfile, ending with the ownership marker.
    """
    text = template
    if POST_CREATE_MARKER in text:
        text = text[: text.index(POST_CREATE_MARKER)]
    if DOCKERFILE_MARKER in text:
        text = text.replace(f"{DOCKERFILE_MARKER}\n", "")
    if text and not text.endswith("\n"):
        text += "\n"

    steps = [step for step in post_create if step.strip()]
    if steps:
        text += POST_CREATE_MARKER + "\n"
        text += "".join(f"RUN {step}\n" for step in steps)
    return text + DOCKERFILE_MARKER + "\n"


def _has_marker(path: Path, marker: str) -> bool:
    try:
        return marker in path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return False


def _remove_if_marked(path: Path, marker: str) -> None:
    """Delete *path* if it carries *marker*; log (not raise) on failure."""
    if not path.exists() or not _has_marker(path, marker):
        return
    try:
        path.unlink()
        logger.debug("Removed staged %s", path)
    except OSError as e:
        logger.warning("Failed to remove staged %s: %s", path, e)


def install_template(destination: Path) -> Path:
    """Copy the bundled Dockerfile template to *destination*.

    Overwrites an existing file; callers decide whether that is allowed.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_text(
        get_template_path().read_text(encoding="utf-8"), encoding="utf-8"
    )
    logger.info("Wrote Dockerfile template to %s", destination)
    return destination


class BuildPipeline:
    """Stages build inputs and builds the session image.

    Args:
        runtime: Engine adapter used for the build.
        template_path: Dockerfile template.  When None, the workspace's
            ``.devcontainer/Dockerfile`` is used if it was derived from
            the bundled template (it copies the staged supervisor),
            otherwise the bundled template.
    """

    def __init__(
        self, runtime: ContainerRuntime, template_path: Path | None = None
    ) -> None:
        self._runtime = runtime
        self._template_path = template_path

    def template_for(self, session: Session) -> Path:
        if self._template_path is not None:
            return self._template_path
        user_dockerfile = session.devcontainer_dir / USER_DOCKERFILE_NAME
        if user_dockerfile.is_file():
            if _has_marker(user_dockerfile, SUPERVISOR_STAGED_NAME):
                return user_dockerfile
            logger.info(
                "Ignoring %s: it does not install %s",
                user_dockerfile,
                SUPERVISOR_STAGED_NAME,
            )
        return get_template_path()

    def build(
        self, session: Session, post_create: Sequence[str] | None = None
    ) -> None:
        """Build ``session.image_name`` from the template plus steps.

        Args:
            session: Workspace session to build for.
            post_create: Extra build steps; defaults to the session's
                ``postCreateCommand``.

        Raises:
            BuildError: If a user-authored temporary Dockerfile is in the
                way, staging fails, or the engine build fails.
        """
        steps = session.post_create if post_create is None else post_create
        devcontainer_dir = session.devcontainer_dir
        temp_dockerfile = devcontainer_dir / TEMP_DOCKERFILE_NAME
        staged_supervisor = devcontainer_dir / SUPERVISOR_STAGED_NAME

        if temp_dockerfile.exists() and not _has_marker(
            temp_dockerfile, DOCKERFILE_MARKER
        ):
            raise BuildError(
                f"Refusing to overwrite {temp_dockerfile}: it was not "
                f"created by codium-devcontainer"
            )

        template_path = self.template_for(session)
        try:
            template = template_path.read_text(encoding="utf-8")
        except OSError as e:
            raise BuildError(
                f"Cannot read Dockerfile template {template_path}: {e}"
            ) from e

        try:
            self._stage_supervisor(staged_supervisor)
            temp_dockerfile.write_text(
                render_dockerfile(template, steps), encoding="utf-8"
            )
            logger.info(
                "Prepared %s with %d postCreateCommand step(s)",
                temp_dockerfile.name,
                len(steps),
            )

            build_args = {"BASE_IMAGE": session.base_image}
            if session.remote_user:
                build_args["USERNAME"] = session.remote_user

            logger.info(
                "Building image %s (base: %s)",
                session.image_name,
                session.base_image,
            )
            start_time = time.time()
            self._runtime.build(
                temp_dockerfile,
                session.image_name,
                build_args,
                session.workspace,
            )
            logger.info(
                "Image built in %.2fs: %s",
                time.time() - start_time,
                session.image_name,
            )
        except OSError as e:
            raise BuildError(f"Failed to stage build files: {e}") from e
        finally:
            _remove_if_marked(temp_dockerfile, DOCKERFILE_MARKER)
            _remove_if_marked(staged_supervisor, SUPERVISOR_MARKER)

    def _stage_supervisor(self, path: Path) -> None:
        if path.exists():
            if _has_marker(path, SUPERVISOR_MARKER):
                logger.debug("Supervisor already staged at %s", path)
            else:
                logger.info("Using user-provided supervisor %s", path)
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(get_supervisor_content(), encoding="utf-8")
        path.chmod(0o755)
        logger.debug("Staged supervisor at %s", path)
