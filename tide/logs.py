"""Logging setup for the command line tool."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
OUTPUT_FORMAT = "[%(asctime)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def resolve_log_path(log_file: str, config_path: str | Path | None = None) -> Path:
    path = Path(log_file).expanduser()
    if not path.is_absolute() and config_path is not None:
        path = Path(config_path).expanduser().resolve().parent / path
    return path


def configure_logging(
    *, verbose: bool = False, quiet: bool = False, log_file: Path | None = None
) -> None:
    """Route engine logs to stderr and, when configured, everything to a file.

    Task output goes to the ``tide.output`` logger. It reaches the terminal
    only in verbose mode and the log file whenever one is set.
    """
    root = logging.getLogger("tide")
    output = logging.getLogger("tide.output")
    for logger in (root, output):
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

    root.setLevel(logging.DEBUG)
    output.setLevel(logging.INFO)
    output.propagate = False

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    if quiet:
        console.setLevel(logging.ERROR)
    elif verbose:
        console.setLevel(logging.INFO)
    else:
        console.setLevel(logging.WARNING)
    root.addHandler(console)

    if verbose and not quiet:
        passthrough = logging.StreamHandler(sys.stderr)
        passthrough.setFormatter(logging.Formatter("%(message)s"))
        output.addHandler(passthrough)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
        file_handler.setLevel(logging.INFO)
        root.addHandler(file_handler)

        output_handler = logging.FileHandler(log_file, encoding="utf-8")
        output_handler.setFormatter(logging.Formatter(OUTPUT_FORMAT, DATE_FORMAT))
        output.addHandler(output_handler)
