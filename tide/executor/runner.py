"""Run one task as an isolated child process.

Every child gets ``stdin`` from ``/dev/null`` and its own process group, so a
timeout or an interrupt can take down the whole tree it spawned. Task-level
problems never raise out of :meth:`CommandRunner.run`; they come back as a
:class:`~tide.executor.types.TaskResult`.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from collections import deque
from typing import IO

from tide.config import TaskConfig

from .credentials import (
    NO_SESSION,
    AuthMode,
    Authenticator,
    CredentialManager,
    CredentialSession,
    SudoAuthenticator,
    suggests_escalation,
)
from .types import TaskResult

logger = logging.getLogger(__name__)
output_logger = logging.getLogger("tide.output")

DEFAULT_TIMEOUT_S = 300
STDERR_EXCERPT_CHARS = 4096
TERMINATE_GRACE_S = 2.0
_READER_JOIN_S = 2.0


class _Tail:
    """Keeps the last ``limit`` characters of a line stream."""

    def __init__(self, limit: int):
        self.limit = limit
        self._lines: deque[str] = deque()
        self._size = 0

    def append(self, line: str) -> None:
        self._lines.append(line)
        self._size += len(line)
        while self._size > self.limit and len(self._lines) > 1:
            self._size -= len(self._lines.popleft())

    def text(self) -> str:
        return "".join(self._lines)[-self.limit :]


def _signal_group(process: subprocess.Popen, sig: int) -> None:
    if os.name != "posix":
        if sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()
        return

    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        # Escalated children can refuse signals from the unprivileged parent.
        logger.warning("Not permitted to signal process group %d", process.pid)


def terminate_process_tree(process: subprocess.Popen, grace_s: float = TERMINATE_GRACE_S) -> None:
    """SIGTERM the child's process group, then SIGKILL whatever is left."""
    _signal_group(process, signal.SIGTERM)
    try:
        process.wait(timeout=grace_s)
    except subprocess.TimeoutExpired:
        pass
    # Descendants may ignore SIGTERM even when the leader exits.
    _signal_group(process, signal.SIGKILL)
    try:
        process.wait(timeout=grace_s)
    except subprocess.TimeoutExpired:
        logger.error("Process %d survived SIGKILL", process.pid)


class ProcessRegistry:
    """Tracks running children so a run interrupt can reach all of them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._processes: set[subprocess.Popen] = set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._processes)

    def add(self, process: subprocess.Popen) -> None:
        with self._lock:
            self._processes.add(process)

    def discard(self, process: subprocess.Popen) -> None:
        with self._lock:
            self._processes.discard(process)

    def terminate_all(self, grace_s: float = TERMINATE_GRACE_S) -> int:
        """Signal every tracked group without blocking the caller.

        SIGTERM goes out immediately and a timer delivers SIGKILL after
        ``grace_s``. Takes the registry lock, so never call it from a signal
        handler.
        """
        with self._lock:
            processes = list(self._processes)

        for process in processes:
            _signal_group(process, signal.SIGTERM)

        if processes:
            killer = threading.Timer(grace_s, self._kill, args=(processes,))
            killer.daemon = True
            killer.start()

        return len(processes)

    @staticmethod
    def _kill(processes: list[subprocess.Popen]) -> None:
        for process in processes:
            _signal_group(process, signal.SIGKILL)


class CommandRunner:
    def __init__(
        self,
        credentials: CredentialManager | None = None,
        authenticator: Authenticator | None = None,
        *,
        default_timeout_s: float = DEFAULT_TIMEOUT_S,
        grace_s: float = TERMINATE_GRACE_S,
        stderr_limit: int = STDERR_EXCERPT_CHARS,
    ):
        self.credentials = credentials
        if authenticator is None:
            authenticator = credentials.authenticator if credentials else SudoAuthenticator()
        self.authenticator = authenticator
        self.default_timeout_s = default_timeout_s
        self.grace_s = grace_s
        self.stderr_limit = stderr_limit
        self.processes = ProcessRegistry()
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()
        count = self.processes.terminate_all(self.grace_s)
        if count:
            logger.warning("Terminating %d running task(s)", count)

    def run(
        self,
        task: TaskConfig,
        session: CredentialSession = NO_SESSION,
        *,
        group: str = "",
        timeout: float | None = None,
    ) -> TaskResult:
        timeout_s = timeout or task.timeout or self.default_timeout_s
        argv = list(task.command)

        if task.sudo:
            if session is NO_SESSION and self.credentials is not None:
                session = self.credentials.ensure_authenticated(AuthMode.LAZY)
            argv = self.authenticator.wrap(argv)

        cwd = os.path.expanduser(task.working_dir) if task.working_dir else None
        env = {**os.environ, **task.env}
        label = f"[{group}] {task.name}"

        logger.info("Running %s :: %s", label, " ".join(argv))
        output_logger.info("> %s :: %s", label, " ".join(argv))

        start = time.monotonic()
        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
                env=env,
                # Own process group, same session: sudo keeps its tty timestamp.
                process_group=0 if os.name == "posix" else None,
            )
        except (OSError, ValueError) as exc:
            duration = time.monotonic() - start
            logger.error("Could not start %s: %s", label, exc)
            return TaskResult.failed(
                group,
                task.name,
                duration,
                required=task.required,
                stderr_excerpt=str(exc),
                hint=_spawn_hint(task, exc),
            )

        self.processes.add(process)
        stderr_tail = _Tail(self.stderr_limit)
        readers = [
            _start_reader(process.stdout, label, None),
            _start_reader(process.stderr, label, stderr_tail),
        ]
        timed_out = False
        try:
            if self.cancelled:
                _signal_group(process, signal.SIGTERM)
            try:
                process.wait(timeout=timeout_s)
            except subprocess.TimeoutExpired:
                timed_out = True
                logger.warning("%s timed out after %ss, terminating", label, timeout_s)
                terminate_process_tree(process, self.grace_s)
        finally:
            self.processes.discard(process)
            for reader in readers:
                reader.join(timeout=_READER_JOIN_S)

        duration = time.monotonic() - start
        returncode = process.returncode

        if timed_out:
            return TaskResult.timed_out(
                group,
                task.name,
                duration,
                required=task.required,
                hint=_timeout_hint(task, timeout_s),
            )

        if returncode == 0:
            logger.info("%s succeeded in %.2fs", label, duration)
            return TaskResult.success(group, task.name, duration, required=task.required)

        excerpt = stderr_tail.text()
        if self.cancelled:
            hint = "Interrupted before completion."
        else:
            hint = _failure_hint(task, session, excerpt)
        logger.warning("%s failed with return code %s", label, returncode)
        return TaskResult.failed(
            group,
            task.name,
            duration,
            required=task.required,
            exit_code=returncode if returncode is not None and returncode >= 0 else None,
            signal=-returncode if returncode is not None and returncode < 0 else None,
            stderr_excerpt=excerpt,
            hint=hint,
        )


class SimulatedRunner:
    """Dry-run stand-in: resolves every task as a zero-duration success."""

    def __init__(self) -> None:
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def run(
        self,
        task: TaskConfig,
        session: CredentialSession = NO_SESSION,
        *,
        group: str = "",
        timeout: float | None = None,
    ) -> TaskResult:
        output_logger.info("> [%s] %s :: %s (dry run)", group, task.name, task.command_line())
        return TaskResult.success(group, task.name, 0.0, required=task.required, simulated=True)


def _start_reader(stream: IO[bytes] | None, label: str, tail: _Tail | None) -> threading.Thread:
    def _pump() -> None:
        if stream is None:
            return
        with stream:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="replace")
                if tail is not None:
                    tail.append(line)
                output_logger.info("  %s | %s", label, line.rstrip("\n"))

    reader = threading.Thread(target=_pump, name=f"tide-output {label}", daemon=True)
    reader.start()
    return reader


def _timeout_hint(task: TaskConfig, timeout_s: float) -> str:
    hint = f"Command timed out after {timeout_s:g} seconds. It may be waiting for input (like a sudo password)."
    if not task.sudo and suggests_escalation(task.command_line()):
        hint += " Consider setting 'sudo: true'."
    return hint + " Raise 'timeout' in the task config if it needs longer."


def _failure_hint(task: TaskConfig, session: CredentialSession, stderr: str) -> str:
    if task.sudo and not session.authenticated:
        return "Sudo authentication was skipped or failed. Run again and authenticate."
    if not task.sudo and (
        suggests_escalation(task.command_line())
        or suggests_escalation(stderr)
        or "permission denied" in stderr.lower()
    ):
        return "The command may need elevated privileges. Consider setting 'sudo: true'."
    return "Check the task output (set 'log_file' or run with --verbose)."


def _spawn_hint(task: TaskConfig, exc: Exception) -> str:
    if isinstance(exc, FileNotFoundError):
        if task.working_dir and exc.filename == os.path.expanduser(task.working_dir):
            return f"Working directory '{task.working_dir}' does not exist."
        return f"'{task.command[0]}' was not found on PATH. Add a 'check_command' to skip it when missing."
    if isinstance(exc, PermissionError):
        return f"'{task.command[0]}' is not executable."
    return "Check the command and working_dir of this task."
