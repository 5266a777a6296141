from __future__ import annotations

import logging
import signal
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from tide.config import GroupConfig, RunPlan, Settings

from .budget import ConcurrencyBudget
from .credentials import NO_SESSION, AuthMode, CredentialManager, CredentialSession
from .events import EventKind, EventSink, NullSink, RunEvent, emit
from .group import GroupExecutor, TaskRunner
from .runner import CommandRunner, SimulatedRunner
from .types import GroupOutcome, GroupReport, RunOutcome, RunReport, TaskStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunOptions:
    dry_run: bool = False
    verbose: bool = False
    groups: tuple[str, ...] | None = None
    skip_groups: tuple[str, ...] = ()
    parallel_limit: int | None = None
    parallel_all: bool = False
    continue_on_required_failure: bool = False


class Orchestrator:
    def __init__(
        self,
        settings: Settings,
        *,
        credentials: CredentialManager | None = None,
        runner: TaskRunner | None = None,
        events: EventSink | None = None,
    ):
        self.settings = settings
        self.credentials = credentials
        self.runner = runner
        self.events = events or NullSink()
        self.interrupted = False
        self._active_runner: TaskRunner | None = None

    def select_groups(self, plan: RunPlan, options: RunOptions) -> list[GroupConfig]:
        return [group for group in plan.select(options.groups, options.skip_groups) if group.enabled]

    def execute(self, plan: RunPlan, options: RunOptions | None = None) -> RunReport:
        options = options or RunOptions()
        groups = self.select_groups(plan, options)
        limit = options.parallel_limit or self.settings.parallel_limit
        budget = ConcurrencyBudget(limit)
        runner = self._make_runner(options)
        executor = GroupExecutor(
            runner,
            events=self.events,
            continue_on_required_failure=options.continue_on_required_failure,
            verbose=options.verbose or self.settings.verbose,
        )

        self.interrupted = False
        self._active_runner = runner
        start = time.monotonic()
        reports: list[GroupReport] = []

        # Ctrl+C at the password prompt declines authentication, so the
        # run-level handlers go in only afterwards.
        session = self._authenticate(groups, options)
        with self._interrupt_handlers():
            with self._keepalive(session):
                skip_optional = False
                for group in groups:
                    if self.interrupted:
                        break

                    report = executor.run_group(
                        group,
                        budget,
                        session,
                        parallel=self._is_parallel(group, options),
                        skip_optional=skip_optional,
                    )
                    reports.append(report)

                    if (
                        report.outcome == GroupOutcome.HAS_REQUIRED_FAILURE
                        and self.settings.skip_optional_on_error
                        and not skip_optional
                    ):
                        logger.warning("Skipping remaining optional tasks due to failure")
                        skip_optional = True

        self._active_runner = None
        report = RunReport(
            groups=tuple(reports),
            outcome=self._outcome(reports),
            duration_s=0.0 if options.dry_run else time.monotonic() - start,
            dry_run=options.dry_run,
        )
        logger.info("Run finished: %s", report.outcome.value)
        emit(self.events, RunEvent(EventKind.RUN_COMPLETED, _completion_message(report)))
        return report

    def interrupt(self) -> None:
        """Stop scheduling and terminate every running task of the current run."""
        self.interrupted = True
        if self._active_runner is not None:
            self._active_runner.cancel()

    def _make_runner(self, options: RunOptions) -> TaskRunner:
        if options.dry_run:
            return SimulatedRunner()
        if self.runner is not None:
            return self.runner
        return CommandRunner(self.credentials)

    def _authenticate(self, groups: list[GroupConfig], options: RunOptions) -> CredentialSession:
        if options.dry_run or self.credentials is None:
            return NO_SESSION
        if not any(task.enabled for group in groups for task in group):
            return NO_SESSION
        return self.credentials.ensure_authenticated(AuthMode.PROACTIVE)

    @contextmanager
    def _keepalive(self, session: CredentialSession) -> Iterator[None]:
        if self.credentials is None or not session.authenticated:
            yield
            return
        with self.credentials.keepalive():
            yield

    def _is_parallel(self, group: GroupConfig, options: RunOptions) -> bool:
        if group.parallel:
            return True
        # Global parallel mode keeps groups with sudo work sequential.
        wants_parallel = options.parallel_all or self.settings.parallel_execution
        return wants_parallel and not group.has_sudo_task()

    def _outcome(self, reports: list[GroupReport]) -> RunOutcome:
        if self.interrupted:
            return RunOutcome.ABORTED
        if any(report.outcome == GroupOutcome.HAS_REQUIRED_FAILURE for report in reports):
            return RunOutcome.FAILED_REQUIRED
        return RunOutcome.SUCCEEDED

    @contextmanager
    def _interrupt_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)
        received: list[int] = []
        wake = threading.Event()

        # The handler may run while the main thread holds runner locks, so it
        # only records the signal. The watcher does the termination.
        def _handler(signum: int, _: object | None) -> None:
            received.append(signum)
            self.interrupted = True
            wake.set()

        def _watch() -> None:
            wake.wait()
            if not received:
                return
            try:
                name = signal.Signals(received[0]).name
            except ValueError:
                name = str(received[0])
            logger.warning("Received %s, aborting run", name)
            self.interrupt()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return

        watcher = threading.Thread(target=_watch, name="tide-interrupt", daemon=True)
        watcher.start()
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
            wake.set()
            watcher.join()


def _completion_message(report: RunReport) -> str:
    success = report.count(TaskStatus.SUCCESS)
    failed = report.count(TaskStatus.FAILED) + report.count(TaskStatus.TIMED_OUT)
    skipped = report.count(TaskStatus.SKIPPED)
    return (
        f"Run {report.outcome.value}: {success} succeeded, {failed} failed, "
        f"{skipped} skipped in {report.duration_s:.0f} seconds."
    )
