from __future__ import annotations

import argparse


def _csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from exc
    if number < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tide", description="Refresh your system with the update wave"
    )

    parser.add_argument(
        "-c",
        "--config",
        default=None,
        help="Path to config file (default: ~/.config/tide/config.yml)",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        required=True,
    )

    # run
    run = subparsers.add_parser("run", help="Run tasks")
    _add_group_filters(run)
    run.add_argument(
        "-j",
        "--parallel",
        type=_positive_int,
        default=None,
        help="Maximum parallel tasks (default: settings.parallel_limit)",
    )
    run.add_argument(
        "--parallel-all",
        action="store_true",
        help="Run every group without sudo tasks in parallel",
    )
    run.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        help="Show what would be executed without running anything",
    )
    run.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="Run without asking for confirmation",
    )
    run.add_argument(
        "--keep-going",
        action="store_true",
        help="Continue a sequential group after a required task fails",
    )
    _add_output_flags(run)

    # list
    listing = subparsers.add_parser("list", help="List configured groups and tasks")
    _add_group_filters(listing)
    _add_output_flags(listing)

    # init
    init = subparsers.add_parser("init", help="Write a default config file")
    init.add_argument(
        "--overwrite",
        action="store_true",
        help="Replace an existing config file",
    )

    return parser


def _add_output_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Minimal output",
    )


def _add_group_filters(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-g",
        "--groups",
        type=_csv,
        default=None,
        help="Only these groups (comma-separated)",
    )
    parser.add_argument(
        "-x",
        "--skip-groups",
        type=_csv,
        default=[],
        help="Skip these groups (comma-separated)",
    )
