from __future__ import annotations

import os
import shutil
from dataclasses import dataclass

from tide.config import TaskConfig

DISABLED_REASON = "disabled"


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    reason: str | None = None

    @classmethod
    def skip(cls, reason: str) -> Eligibility:
        return cls(False, reason)


ELIGIBLE = Eligibility(True)


def evaluate(task: TaskConfig) -> Eligibility:
    """Decide whether ``task`` may run. Checks are conjunctive and read-only."""
    if not task.enabled:
        return Eligibility.skip(DISABLED_REASON)

    if task.check_command is not None and shutil.which(task.check_command) is None:
        return Eligibility.skip(f"missing command: {task.check_command}")

    if task.check_path is not None:
        path = os.path.expanduser(task.check_path)
        if not os.path.exists(path):
            return Eligibility.skip(f"missing path: {path}")

    return ELIGIBLE
