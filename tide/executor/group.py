from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Protocol

from tide.config import GroupConfig, TaskConfig

from .budget import ConcurrencyBudget
from .credentials import CredentialSession, escalation_warning
from .events import EventKind, EventSink, NullSink, RunEvent, emit
from .preconditions import evaluate
from .types import UPSTREAM_FAILURE_REASON, GroupReport, TaskResult, TaskStatus, group_outcome

logger = logging.getLogger(__name__)


class TaskRunner(Protocol):
    @property
    def cancelled(self) -> bool: ...

    def cancel(self) -> None: ...

    def run(
        self,
        task: TaskConfig,
        session: CredentialSession,
        *,
        group: str = "",
        timeout: float | None = None,
    ) -> TaskResult: ...


class GroupExecutor:
    def __init__(
        self,
        runner: TaskRunner,
        *,
        events: EventSink | None = None,
        continue_on_required_failure: bool = False,
        verbose: bool = False,
    ):
        self.runner = runner
        self.events = events or NullSink()
        self.continue_on_required_failure = continue_on_required_failure
        self.verbose = verbose

    def run_group(
        self,
        group: GroupConfig,
        budget: ConcurrencyBudget,
        session: CredentialSession,
        *,
        parallel: bool | None = None,
        skip_optional: bool = False,
    ) -> GroupReport:
        """Run the enabled tasks of ``group`` and report them in declared order.

        ``parallel`` overrides ``group.parallel``. With ``skip_optional`` set,
        optional tasks are skipped without evaluation.
        """
        if parallel is None:
            parallel = group.parallel

        logger.info(
            "Group '%s': %d task(s), %s", group.name, len(group), "parallel" if parallel else "sequential"
        )
        if parallel:
            results = self._run_parallel(group, budget, session, skip_optional)
        else:
            results = self._run_sequential(group, budget, session, skip_optional)

        return GroupReport(group.name, tuple(results), group_outcome(results))

    def _run_sequential(
        self,
        group: GroupConfig,
        budget: ConcurrencyBudget,
        session: CredentialSession,
        skip_optional: bool,
    ) -> list[TaskResult]:
        results: list[TaskResult] = []

        for task in group.tasks:
            if self.runner.cancelled:
                break

            result = self._precheck(group, task, skip_optional)
            if result is None:
                with budget.slot():
                    result = self._execute(group, task, session)
            if result is _DROPPED:
                continue

            results.append(result)
            self._report(result)

            if result.is_required_failure and not self.continue_on_required_failure:
                logger.warning(
                    "Required task '%s' failed, skipping the rest of group '%s'", task.name, group.name
                )
                break

        return results

    def _run_parallel(
        self,
        group: GroupConfig,
        budget: ConcurrencyBudget,
        session: CredentialSession,
        skip_optional: bool,
    ) -> list[TaskResult]:
        resolved: dict[int, TaskResult] = {}
        submitted: list[tuple[int, TaskConfig]] = []

        for index, task in enumerate(group.tasks):
            result = self._precheck(group, task, skip_optional)
            if result is None:
                submitted.append((index, task))
            elif result is not _DROPPED:
                resolved[index] = result
                self._report(result)

        if submitted:
            with ThreadPoolExecutor(
                max_workers=len(submitted), thread_name_prefix=f"tide-{group.name}"
            ) as pool:
                futures = {
                    pool.submit(self._execute_in_slot, group, task, budget, session): index
                    for index, task in submitted
                }
                for future in as_completed(futures):
                    result = future.result()
                    if result is _DROPPED:
                        continue
                    resolved[futures[future]] = result
                    self._report(result)

        return [resolved[index] for index in sorted(resolved)]

    def _precheck(self, group: GroupConfig, task: TaskConfig, skip_optional: bool) -> TaskResult | None:
        """Resolve a task without running it, or return None when it must run."""
        if not task.enabled:
            return _DROPPED

        if skip_optional and not task.required:
            return TaskResult.skipped(group.name, task.name, UPSTREAM_FAILURE_REASON, required=False)

        eligibility = evaluate(task)
        if not eligibility.eligible:
            logger.info("Skipping '%s': %s", task.name, eligibility.reason)
            return TaskResult.skipped(group.name, task.name, eligibility.reason, required=task.required)

        if self.verbose:
            warning = escalation_warning(task)
            if warning is not None:
                logger.warning(warning)
                emit(
                    self.events,
                    RunEvent(EventKind.ESCALATION_SUSPECTED, warning, group=group.name, task=task.name),
                )

        return None

    def _execute_in_slot(
        self,
        group: GroupConfig,
        task: TaskConfig,
        budget: ConcurrencyBudget,
        session: CredentialSession,
    ) -> TaskResult:
        with budget.slot():
            return self._execute(group, task, session)

    def _execute(self, group: GroupConfig, task: TaskConfig, session: CredentialSession) -> TaskResult:
        # Interrupted while waiting for a slot: never started, never reported.
        if self.runner.cancelled:
            return _DROPPED
        return self.runner.run(task, session, group=group.name)

    def _report(self, result: TaskResult) -> None:
        emit(
            self.events,
            RunEvent(
                EventKind.TASK_RESOLVED,
                result.summary(),
                group=result.group,
                task=result.task,
                result=result,
            ),
        )

        if result.status == TaskStatus.TIMED_OUT:
            emit(
                self.events,
                RunEvent(
                    EventKind.TASK_TIMED_OUT,
                    f"Task '{result.task}' (group: {result.group}) timed out. It may be waiting for input.",
                    group=result.group,
                    task=result.task,
                    result=result,
                ),
            )

        if result.is_required_failure:
            emit(
                self.events,
                RunEvent(
                    EventKind.REQUIRED_TASK_FAILED,
                    f"Task '{result.task}' (group: {result.group}) failed: {result.summary()}",
                    group=result.group,
                    task=result.task,
                    result=result,
                ),
            )


# Sentinel for tasks that produce no result at all.
_DROPPED = TaskResult("", "", TaskStatus.SKIPPED, reason="dropped")
