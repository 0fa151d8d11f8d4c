# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Idempotent .env loading for ``!env`` tags in the tool config.

The loader reads environment variables from two locations (in order):

1. ``~/.config/codium-devcontainer/.env`` (XDG config directory)
2. ``.env`` in the current working directory

Variables set by the first file are **not** overwritten by the second
(``python-dotenv`` respects existing env vars by default).
"""

import logging
from pathlib import Path

from dotenv import load_dotenv


logger = logging.getLogger(__name__)

_dotenv_loaded = False


def load_dotenv_once(xdg_env: Path) -> None:
    """Load .env files once, if not already loaded.

    Args:
        xdg_env: The ``.env`` file inside the XDG config directory.
    """
    global _dotenv_loaded
    if _dotenv_loaded:
        return

    if xdg_env.exists():
        load_dotenv(xdg_env)
        logger.debug("Loaded .env from %s", xdg_env)

    cwd_env = Path.cwd() / ".env"
    if cwd_env.exists():
        load_dotenv(cwd_env)
        logger.debug("Loaded .env from %s", cwd_env)

    _dotenv_loaded = True


def reset_dotenv_state() -> None:
    """Reset the dotenv loaded state. For testing only."""
    global _dotenv_loaded
    _dotenv_loaded = False
