from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterator


class TaskStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"


class GroupOutcome(Enum):
    ALL_OK = "all_ok"
    HAS_OPTIONAL_FAILURES = "has_optional_failures"
    HAS_REQUIRED_FAILURE = "has_required_failure"


class RunOutcome(Enum):
    SUCCEEDED = "succeeded"
    FAILED_REQUIRED = "failed_required"
    ABORTED = "aborted"


UPSTREAM_FAILURE_REASON = "upstream required failure"


@dataclass(frozen=True)
class TaskResult:
    """Outcome of one enabled task.

    ``exit_code`` and ``signal`` are only set for failures; ``exit_code`` is
    ``None`` when the process could not be spawned at all.
    """

    group: str
    task: str
    status: TaskStatus
    required: bool = True
    duration_s: float = 0.0
    exit_code: int | None = None
    signal: int | None = None
    stderr_excerpt: str = ""
    reason: str | None = None
    hint: str | None = None
    simulated: bool = False

    @classmethod
    def success(
        cls, group: str, task: str, duration_s: float, *, required: bool = True, simulated: bool = False
    ) -> TaskResult:
        return cls(group, task, TaskStatus.SUCCESS, required, duration_s, simulated=simulated)

    @classmethod
    def failed(
        cls,
        group: str,
        task: str,
        duration_s: float,
        *,
        required: bool = True,
        exit_code: int | None = None,
        signal: int | None = None,
        stderr_excerpt: str = "",
        hint: str | None = None,
    ) -> TaskResult:
        return cls(
            group,
            task,
            TaskStatus.FAILED,
            required,
            duration_s,
            exit_code=exit_code,
            signal=signal,
            stderr_excerpt=stderr_excerpt,
            hint=hint,
        )

    @classmethod
    def skipped(cls, group: str, task: str, reason: str, *, required: bool = True) -> TaskResult:
        return cls(group, task, TaskStatus.SKIPPED, required, reason=reason)

    @classmethod
    def timed_out(
        cls, group: str, task: str, duration_s: float, *, required: bool = True, hint: str | None = None
    ) -> TaskResult:
        return cls(group, task, TaskStatus.TIMED_OUT, required, duration_s, hint=hint)

    @property
    def is_failure(self) -> bool:
        return self.status in (TaskStatus.FAILED, TaskStatus.TIMED_OUT)

    @property
    def is_required_failure(self) -> bool:
        return self.required and self.is_failure

    def summary(self) -> str:
        """One-line description suitable for alerts and log files."""
        match self.status:
            case TaskStatus.SUCCESS:
                return "simulated" if self.simulated else "ok"
            case TaskStatus.SKIPPED:
                return f"skipped: {self.reason}"
            case TaskStatus.TIMED_OUT:
                return f"timed out after {self.duration_s:.0f}s"
            case TaskStatus.FAILED:
                if self.signal is not None:
                    head = f"killed by signal {self.signal}"
                elif self.exit_code is None:
                    head = "failed to start"
                else:
                    head = f"exit code {self.exit_code}"
                excerpt = self.stderr_excerpt.strip().splitlines()
                if excerpt:
                    head = f"{head}: {excerpt[-1]}"
                return head


@dataclass(frozen=True)
class GroupReport:
    name: str
    results: tuple[TaskResult, ...]
    outcome: GroupOutcome

    def __iter__(self) -> Iterator[TaskResult]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def get(self, task: str) -> TaskResult:
        for result in self.results:
            if result.task == task:
                return result
        raise KeyError(task)


@dataclass(frozen=True)
class RunReport:
    groups: tuple[GroupReport, ...]
    outcome: RunOutcome
    duration_s: float = 0.0
    dry_run: bool = False

    def __iter__(self) -> Iterator[tuple[str, str, TaskResult]]:
        for group in self.groups:
            for result in group.results:
                yield group.name, result.task, result

    def group(self, name: str) -> GroupReport:
        for group in self.groups:
            if group.name == name:
                return group
        raise KeyError(name)

    def result(self, group: str, task: str) -> TaskResult:
        return self.group(group).get(task)

    def count(self, status: TaskStatus) -> int:
        return sum(1 for _, _, result in self if result.status == status)

    def exit_code(self) -> int:
        match self.outcome:
            case RunOutcome.SUCCEEDED:
                return 0
            case RunOutcome.FAILED_REQUIRED:
                return 1
            case RunOutcome.ABORTED:
                return 130


def group_outcome(results: list[TaskResult] | tuple[TaskResult, ...]) -> GroupOutcome:
    if any(result.is_required_failure for result in results):
        return GroupOutcome.HAS_REQUIRED_FAILURE
    if any(result.is_failure for result in results):
        return GroupOutcome.HAS_OPTIONAL_FAILURES
    return GroupOutcome.ALL_OK


class ExecutorError(Exception):
    def __init__(self, *args: object) -> None:
        super().__init__(*args)


class SecretStoreUnavailable(ExecutorError):
    def __init__(self, *args: object) -> None:
        super().__init__(*args)
