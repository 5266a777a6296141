from __future__ import annotations

import argparse
import sys
import threading

from tide.config import ConfigError, load_project, resolve_config_path, write_default_config
from tide.executor import (
    CredentialManager,
    EventKind,
    KeychainSecretStore,
    Orchestrator,
    RunEvent,
    RunOptions,
    RunReport,
    SudoAuthenticator,
    TaskResult,
    TaskStatus,
    TerminalPrompter,
)
from tide.logs import configure_logging, resolve_log_path

from .args import build_parser
from .environment import extend_path


def run_cli(argv: list[str] | None = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)

        match args.command:
            case "run":
                return cmd_run(args)
            case "list":
                return cmd_list(args)
            case "init":
                return cmd_init(args)
            case _:
                return 2

    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    except KeyboardInterrupt:
        return 130


def cmd_run(args: argparse.Namespace) -> int:
    config_path = resolve_config_path(args.config)
    project = load_project(config_path)
    settings = project.settings
    verbose = args.verbose or settings.verbose
    log_file = resolve_log_path(settings.log_file, config_path) if settings.log_file else None
    try:
        configure_logging(verbose=verbose, quiet=args.quiet, log_file=log_file)
    except OSError as exc:
        raise ConfigError(f"Cannot open log file {log_file}: {exc.strerror or exc}") from exc

    if log_file is not None and not args.quiet:
        print(f"Task output will be logged to {log_file}")

    extend_path()

    options = RunOptions(
        dry_run=args.dry_run,
        verbose=verbose,
        groups=tuple(args.groups) if args.groups is not None else None,
        skip_groups=tuple(args.skip_groups),
        parallel_limit=args.parallel,
        parallel_all=args.parallel_all,
        continue_on_required_failure=args.keep_going,
    )
    console = ConsoleSink(quiet=args.quiet, alerts=settings.desktop_notifications)
    prompter = TerminalPrompter()
    credentials = None
    if not args.dry_run:
        credentials = CredentialManager(
            SudoAuthenticator(),
            prompter,
            KeychainSecretStore() if sys.platform == "darwin" else None,
            label=settings.keychain_label,
            events=console,
        )
    orchestrator = Orchestrator(settings, credentials=credentials, events=console)

    groups = orchestrator.select_groups(project.plan, options)
    count = sum(1 for group in groups for task in group if task.enabled)
    if count == 0:
        print("No tasks to run!")
        return 0

    if not args.force and not args.quiet:
        print(f"Ready to run {count} tasks")
        if args.dry_run:
            print("DRY RUN MODE - No changes will be made")
        if not prompter.confirm("Continue?"):
            print("Cancelled by user")
            return 0

    report = orchestrator.execute(project.plan, options)
    if not args.quiet:
        _print_summary(report)
    return report.exit_code()


def cmd_list(args: argparse.Namespace) -> int:
    config_path = resolve_config_path(args.config)
    project = load_project(config_path)
    for group in project.plan.select(args.groups, args.skip_groups):
        mode = "parallel" if group.parallel else "sequential"
        state = "" if group.enabled else " (disabled)"
        print(f"{group.name} [{mode}]{state}")
        if args.verbose and group.description:
            print(f"  {group.description}")

        for task in group:
            flags = [
                "required" if task.required else "optional",
                *(["sudo"] if task.sudo else []),
                *([] if task.enabled else ["disabled"]),
            ]
            print(f"  {task.name} ({', '.join(flags)})")
            if args.verbose:
                print(f"      Command: {task.command_line()}")

    if not args.quiet:
        print()
        print(f"Using config file: {config_path}")
    return 0


def cmd_init(args: argparse.Namespace) -> int:
    path = write_default_config(resolve_config_path(args.config), overwrite=args.overwrite)
    print(f"Config created: {path}")
    return 0


class ConsoleSink:
    """Prints task results as they resolve and alert events to stderr."""

    def __init__(self, *, quiet: bool, alerts: bool):
        self.quiet = quiet
        self.alerts = alerts
        self._lock = threading.Lock()

    def emit(self, event: RunEvent) -> None:
        if self.quiet:
            return

        with self._lock:
            if event.kind == EventKind.TASK_RESOLVED and event.result is not None:
                print(format_result(event.result), flush=True)
            elif event.is_alert and self.alerts:
                print(f"! {event.message}", file=sys.stderr, flush=True)


def format_result(result: TaskResult) -> str:
    name = f"{result.group}/{result.task}"
    match result.status:
        case TaskStatus.SUCCESS if result.simulated:
            return f"DRY {name}"
        case TaskStatus.SUCCESS:
            return f"OK {name}, {result.duration_s:.3f}s"
        case TaskStatus.SKIPPED:
            return f"SKIP {name} ({result.reason})"
        case TaskStatus.TIMED_OUT:
            return f"TIMEOUT {name}, {result.duration_s:.3f}s"
        case _:
            code = result.exit_code if result.signal is None else f"signal {result.signal}"
            return f"FAIL {name}, {result.duration_s:.3f}s, exit code = {code}"


def _print_summary(rr: RunReport) -> None:
    failed = rr.count(TaskStatus.FAILED) + rr.count(TaskStatus.TIMED_OUT)
    print()
    print(
        f"Summary: {rr.count(TaskStatus.SUCCESS)} succeeded, {failed} failed, "
        f"{rr.count(TaskStatus.SKIPPED)} skipped, total {rr.duration_s:.1f}s "
        f"({rr.outcome.value})"
    )

    ran = [result for _, _, result in rr if result.status != TaskStatus.SKIPPED]
    if ran and not rr.dry_run:
        longest = max(ran, key=lambda result: result.duration_s)
        print(f"Longest task: {longest.group}/{longest.task} ({longest.duration_s:.1f}s)")

    for _, _, result in rr:
        if not result.is_failure:
            continue
        print(f"  {result.group}/{result.task}: {result.summary()}")
        if result.hint:
            print(f"    {result.hint}")
