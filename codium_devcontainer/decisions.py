# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Decision points surfaced to the operator.

The reconciler and SSH bootstrap never talk to a UI directly.  They ask
an injected ``DecisionProvider``:

- ``choose`` for binary decisions (rebuild vs reuse); ``None`` means the
  operator dismissed the prompt and the operation is cancelled.
- ``pick_file`` for selecting a public key when no conventional key
  exists.
- ``notify`` for informational notices and soft failures.

``TerminalDecisionProvider`` prompts on a TTY.  ``PolicyDecisionProvider``
answers from the tool config's ``decisions`` section and delegates
``ask`` entries to an optional interactive fallback; without one it
answers with the first offered option, which is the proceeding
(destructive) choice for every decision point in this package.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Protocol, TextIO

from codium_devcontainer._style import Style, use_color
from codium_devcontainer.config import (
    DECISION_ASK,
    DECISION_REBUILD,
    DECISION_REUSE,
)


logger = logging.getLogger(__name__)

#: Decision keys (match the tool config's ``decisions`` section).
KEY_CONFIG_CHANGED = "config_changed"
KEY_CONTAINER_RUNNING = "container_running"
KEY_OVERWRITE_DOCKERFILE = "overwrite_dockerfile"

OPTION_REBUILD = "Rebuild"
OPTION_KILL_REBUILD = "Kill & Rebuild"
OPTION_REUSE = "Reuse"
OPTION_OVERWRITE = "Overwrite"
OPTION_CANCEL = "Cancel"

NOTICE_INFO = "info"
NOTICE_WARNING = "warning"
NOTICE_ERROR = "error"

_POLICY_OPTIONS: dict[str, frozenset[str]] = {
    DECISION_REBUILD: frozenset({OPTION_REBUILD, OPTION_KILL_REBUILD}),
    DECISION_REUSE: frozenset({OPTION_REUSE}),
}

_LOG_LEVELS = {
    NOTICE_INFO: logging.INFO,
    NOTICE_WARNING: logging.WARNING,
    NOTICE_ERROR: logging.ERROR,
}


class DecisionProvider(Protocol):
    """Synchronous decision capability injected into host-side flows."""

    def choose(
        self, key: str, prompt: str, options: Sequence[str]
    ) -> str | None:
        """Return one of *options*, or None if dismissed."""
        ...

    def pick_file(self, prompt: str, start_dir: Path) -> Path | None:
        """Return a chosen file, or None if dismissed."""
        ...

    def notify(self, level: str, message: str) -> None:
        """Show an informational, warning or error notice."""
        ...


class TerminalDecisionProvider:
    """Prompts on the controlling terminal.

    Empty input or end-of-file dismisses a prompt.
    """

    def __init__(
        self,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
        color: bool | None = None,
    ) -> None:
        self._in = stdin or sys.stdin
        self._out = stdout or sys.stderr
        self._s = Style(use_color(self._out) if color is None else color)

    def _readline(self, prompt: str) -> str | None:
        self._out.write(prompt)
        self._out.flush()
        line = self._in.readline()
        if not line:
            self._out.write("\n")
            return None
        return line.strip()

    def choose(
        self, key: str, prompt: str, options: Sequence[str]
    ) -> str | None:
        s = self._s
        self._out.write(f"{s.bold(prompt)}\n")
        for i, option in enumerate(options, 1):
            self._out.write(f"  {s.cyan(str(i))}) {option}\n")

        while True:
            answer = self._readline(f"Choice [1-{len(options)}]: ")
            if not answer:
                return None
            if answer.isdigit() and 1 <= int(answer) <= len(options):
                return options[int(answer) - 1]
            for option in options:
                if option.lower() == answer.lower():
                    return option
            self._out.write(f"{s.yellow('Invalid choice:')} {answer}\n")

    def pick_file(self, prompt: str, start_dir: Path) -> Path | None:
        answer = self._readline(f"{self._s.bold(prompt)} [{start_dir}/]: ")
        if not answer:
            return None
        path = Path(answer).expanduser()
        if not path.is_absolute():
            path = start_dir / path
        if not path.is_file():
            self._out.write(f"{self._s.red('Not a file:')} {path}\n")
            return None
        return path

    def notify(self, level: str, message: str) -> None:
        s = self._s
        if level == NOTICE_ERROR:
            label = s.red("error:")
        elif level == NOTICE_WARNING:
            label = s.yellow("warning:")
        else:
            label = s.cyan("note:")
        self._out.write(f"{label} {message}\n")
        self._out.flush()


class PolicyDecisionProvider:
    """Answers decision points from a configured policy.

    Args:
        policy: Decision key to ``ask``, ``rebuild`` or ``reuse``.
        fallback: Provider consulted for ``ask`` entries, unknown keys,
            file picks and notices.  When None, ``ask`` answers with the
            first option, file picks are dismissed and notices are
            logged.
    """

    def __init__(
        self,
        policy: Mapping[str, str] | None = None,
        fallback: DecisionProvider | None = None,
    ) -> None:
        self._policy = dict(policy or {})
        self._fallback = fallback

    def choose(
        self, key: str, prompt: str, options: Sequence[str]
    ) -> str | None:
        setting = self._policy.get(key, DECISION_ASK)
        accepted = _POLICY_OPTIONS.get(setting)
        if accepted is not None:
            for option in options:
                if option in accepted:
                    logger.info("%s -> %s (policy)", prompt, option)
                    return option

        if self._fallback is not None:
            return self._fallback.choose(key, prompt, options)
        if not options:
            return None
        logger.info("%s -> %s (non-interactive)", prompt, options[0])
        return options[0]

    def pick_file(self, prompt: str, start_dir: Path) -> Path | None:
        if self._fallback is not None:
            return self._fallback.pick_file(prompt, start_dir)
        logger.info("%s: no interactive input, skipping", prompt)
        return None

    def notify(self, level: str, message: str) -> None:
        if self._fallback is not None:
            self._fallback.notify(level, message)
            return
        logger.log(_LOG_LEVELS.get(level, logging.INFO), "%s", message)
