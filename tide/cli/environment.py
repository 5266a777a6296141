"""Process environment fixes applied before a run.

launchd and cron start tide with a minimal ``PATH``, so ``check_command``
lookups for Homebrew and user-installed tools would fail there.
"""

from __future__ import annotations

import logging
import os
from typing import MutableMapping

logger = logging.getLogger(__name__)

# Apple Silicon prefix first, then Intel.
HOMEBREW_BIN_DIRS = ("/opt/homebrew/bin", "/usr/local/bin")


def extend_path(
    environ: MutableMapping[str, str] | None = None,
    *,
    brew_dirs: tuple[str, ...] = HOMEBREW_BIN_DIRS,
) -> list[str]:
    """Put the Homebrew bin directory and ``~/.local/bin`` in front of ``PATH``.

    Returns the directories that were prepended, last one first on ``PATH``.
    """
    if environ is None:
        environ = os.environ

    prepended = []
    for directory in brew_dirs:
        if os.path.exists(os.path.join(directory, "brew")):
            prepended.append(directory)
            break

    local_bin = os.path.expanduser("~/.local/bin")
    if os.path.isdir(local_bin):
        prepended.append(local_bin)

    for directory in prepended:
        _prepend(environ, directory)

    if prepended:
        logger.debug("PATH is now %s", environ["PATH"])
    return prepended


def _prepend(environ: MutableMapping[str, str], directory: str) -> None:
    entries = [entry for entry in environ.get("PATH", "").split(os.pathsep) if entry]
    entries = [entry for entry in entries if entry != directory]
    environ["PATH"] = os.pathsep.join([directory, *entries])
