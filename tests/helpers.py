"""Builders and fakes shared by the test modules."""

from __future__ import annotations

import sys
import threading
import time

from tide.config import GroupConfig, TaskConfig
from tide.executor.credentials import NO_SESSION, CredentialSession
from tide.executor.types import TaskResult


def py(code: str) -> tuple[str, ...]:
    """Argument vector running ``code`` with the current interpreter."""
    return (sys.executable, "-c", code)


def task(name: str, code: str = "pass", **fields) -> TaskConfig:
    fields.setdefault("command", py(code))
    return TaskConfig(name=name, **fields)


def group(name: str, *tasks: TaskConfig, **fields) -> GroupConfig:
    return GroupConfig(name=name, tasks=tuple(tasks), **fields)


class FakeRunner:
    """Resolves tasks from a name -> outcome table and records concurrency.

    Outcomes: "ok", "fail", "timeout". Unlisted tasks succeed.
    """

    def __init__(self, outcomes: dict[str, str] | None = None, delay_s: float = 0.0):
        self.outcomes = outcomes or {}
        self.delay_s = delay_s
        self.calls: list[str] = []
        self.sessions: list[CredentialSession] = []
        self.max_concurrent = 0
        self._concurrent = 0
        self._lock = threading.Lock()
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def run(self, task: TaskConfig, session: CredentialSession = NO_SESSION, *, group: str = "", timeout=None):
        with self._lock:
            self.calls.append(task.name)
            self.sessions.append(session)
            self._concurrent += 1
            self.max_concurrent = max(self.max_concurrent, self._concurrent)
        try:
            if self.delay_s:
                time.sleep(self.delay_s)
        finally:
            with self._lock:
                self._concurrent -= 1

        match self.outcomes.get(task.name, "ok"):
            case "fail":
                return TaskResult.failed(group, task.name, 0.01, required=task.required, exit_code=1)
            case "timeout":
                return TaskResult.timed_out(group, task.name, 0.01, required=task.required)
            case _:
                return TaskResult.success(group, task.name, 0.01, required=task.required)


class FakeAuthenticator:
    def __init__(
        self,
        *,
        available: bool = True,
        cached: bool = False,
        password: str | None = "hunter2",
    ):
        self._available = available
        self.cached = cached
        self.password = password
        self.attempts: list[str] = []
        self.refreshes = 0
        self.wrapped: list[list[str]] = []

    def available(self) -> bool:
        return self._available

    def has_cached_timestamp(self) -> bool:
        return self.cached

    def authenticate(self, secret: str) -> bool:
        self.attempts.append(secret)
        return self.password is not None and secret == self.password

    def refresh(self) -> bool:
        self.refreshes += 1
        return True

    def wrap(self, argv: list[str]) -> list[str]:
        self.wrapped.append(list(argv))
        return list(argv)


class FakePrompter:
    def __init__(self, answer: str | None = None, confirm: bool = True, delay_s: float = 0.0):
        self.answer = answer
        self.confirm_answer = confirm
        self.delay_s = delay_s
        self.asked = 0
        self.confirmed = 0

    def ask_secret(self, message: str, timeout_s: float) -> str | None:
        self.asked += 1
        if self.delay_s:
            time.sleep(self.delay_s)
        return self.answer

    def confirm(self, message: str, default: bool = True) -> bool:
        self.confirmed += 1
        return self.confirm_answer


class FakeSecretStore:
    def __init__(self, secrets: dict[str, str] | None = None, error: Exception | None = None):
        self.secrets = dict(secrets or {})
        self.error = error
        self.stored: list[tuple[str, str]] = []

    def lookup(self, label: str) -> str | None:
        if self.error is not None:
            raise self.error
        return self.secrets.get(label)

    def store(self, label: str, secret: str) -> None:
        if self.error is not None:
            raise self.error
        self.stored.append((label, secret))
        self.secrets[label] = secret
