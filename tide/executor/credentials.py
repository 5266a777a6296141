"""Run-scoped sudo authentication.

A run authenticates at most once. The session moves from ``NONE`` to either
``AUTHENTICATED`` or ``DECLINED`` exactly one time and is read without locking
afterwards. Declining is a normal outcome: non-sudo tasks are unaffected and
sudo tasks still get a best-effort attempt.
"""

from __future__ import annotations

import logging
import os
import re
import select
import shutil
import subprocess
import sys
import termios
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Protocol

from tide.config import TaskConfig

from .events import EventKind, EventSink, NullSink, RunEvent, emit
from .keychain import SecretStore
from .types import SecretStoreUnavailable

logger = logging.getLogger(__name__)

DEFAULT_PROMPT_TIMEOUT_S = 60.0
KEEPALIVE_INTERVAL_S = 60.0
ESCALATION_KEYWORDS = ("sudo", "doas", "pkexec")
_ESCALATION_PATTERN = re.compile(r"\b(?:" + "|".join(ESCALATION_KEYWORDS) + r")\b", re.IGNORECASE)


class AuthMode(Enum):
    PROACTIVE = "proactive"
    LAZY = "lazy"


class SessionState(Enum):
    NONE = "none"
    AUTHENTICATED = "authenticated"
    DECLINED = "declined"


@dataclass(frozen=True)
class CredentialSession:
    state: SessionState
    handle: str | None = None
    reason: str | None = None

    @property
    def authenticated(self) -> bool:
        return self.state == SessionState.AUTHENTICATED

    @property
    def declined(self) -> bool:
        return self.state == SessionState.DECLINED


NO_SESSION = CredentialSession(SessionState.NONE)


def suggests_escalation(text: str) -> bool:
    return _ESCALATION_PATTERN.search(text) is not None


def escalation_warning(task: TaskConfig) -> str | None:
    """Warn about tasks that look like they escalate without ``sudo: true``."""
    if task.sudo or not suggests_escalation(task.command_line()):
        return None
    return f"Task '{task.name}' may call sudo internally. Consider setting 'sudo: true'"


class Authenticator(Protocol):
    def available(self) -> bool: ...

    def has_cached_timestamp(self) -> bool: ...

    def authenticate(self, secret: str) -> bool: ...

    def refresh(self) -> bool: ...

    def wrap(self, argv: list[str]) -> list[str]: ...


class SudoAuthenticator:
    def __init__(self, executable: str = "sudo", timeout_s: float = 30.0):
        self.executable = executable
        self.timeout_s = timeout_s

    def available(self) -> bool:
        return shutil.which(self.executable) is not None

    def has_cached_timestamp(self) -> bool:
        return self._quiet([self.executable, "-n", "true"])

    def authenticate(self, secret: str) -> bool:
        try:
            result = subprocess.run(
                [self.executable, "-S", "-v", "-p", ""],
                input=secret + "\n",
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("sudo authentication could not run: %s", type(exc).__name__)
            return False
        return result.returncode == 0

    def refresh(self) -> bool:
        return self._quiet([self.executable, "-n", "-v"])

    def wrap(self, argv: list[str]) -> list[str]:
        if argv and argv[0] == self.executable:
            return list(argv)
        # -n: never prompt, stdin is closed anyway.
        return [self.executable, "-n", *argv]

    def _quiet(self, argv: list[str]) -> bool:
        try:
            result = subprocess.run(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=self.timeout_s,
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        return result.returncode == 0


class Prompter(Protocol):
    def ask_secret(self, message: str, timeout_s: float) -> str | None: ...

    def confirm(self, message: str, default: bool = True) -> bool: ...


class TerminalPrompter:
    """Reads answers from the controlling terminal.

    ``ask_secret`` returns ``None`` when the user cancels, when stdin is not a
    terminal, or when nothing is typed before ``timeout_s``. Echo is restored
    on every path out of the prompt.
    """

    def __init__(self, tty_path: str = "/dev/tty"):
        self.tty_path = tty_path

    def ask_secret(self, message: str, timeout_s: float) -> str | None:
        if not sys.stdin.isatty():
            return None

        try:
            fd = os.open(self.tty_path, os.O_RDWR | os.O_NOCTTY)
        except OSError:
            return None

        try:
            return self._read_secret(fd, message, timeout_s)
        except KeyboardInterrupt:
            return None
        finally:
            os.close(fd)

    def _read_secret(self, fd: int, message: str, timeout_s: float) -> str | None:
        saved = termios.tcgetattr(fd)
        silent = termios.tcgetattr(fd)
        silent[3] &= ~termios.ECHO
        termios.tcsetattr(fd, termios.TCSAFLUSH, silent)
        try:
            os.write(fd, f"{message}: ".encode())
            deadline = time.monotonic() + timeout_s
            buffer = b""
            while b"\n" not in buffer:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                ready, _, _ = select.select([fd], [], [], remaining)
                if not ready:
                    return None
                chunk = os.read(fd, 1024)
                if not chunk:
                    # EOF (Ctrl+D)
                    return None
                buffer += chunk
            return buffer.split(b"\n", 1)[0].rstrip(b"\r").decode("utf-8", errors="replace")
        finally:
            termios.tcsetattr(fd, termios.TCSAFLUSH, saved)
            os.write(fd, b"\n")

    def confirm(self, message: str, default: bool = True) -> bool:
        if not sys.stdin.isatty():
            return False

        suffix = "[Y/n]" if default else "[y/N]"
        try:
            answer = input(f"{message} {suffix} ").strip().lower()
        except (EOFError, KeyboardInterrupt):
            return False

        if not answer:
            return default
        return answer in ("y", "yes")


class CredentialManager:
    def __init__(
        self,
        authenticator: Authenticator,
        prompter: Prompter,
        secret_store: SecretStore | None = None,
        *,
        label: str,
        events: EventSink | None = None,
        prompt_timeout_s: float = DEFAULT_PROMPT_TIMEOUT_S,
    ):
        self.authenticator = authenticator
        self.prompter = prompter
        self.secret_store = secret_store
        self.label = label
        self.events = events or NullSink()
        self.prompt_timeout_s = prompt_timeout_s
        self._session = NO_SESSION
        self._transition = threading.Lock()

    @property
    def session(self) -> CredentialSession:
        return self._session

    def ensure_authenticated(self, mode: AuthMode = AuthMode.PROACTIVE) -> CredentialSession:
        if self._session is not NO_SESSION:
            return self._session

        with self._transition:
            if self._session is NO_SESSION:
                logger.debug("Starting %s sudo authentication", mode.value)
                self._session = self._authenticate()
                if self._session.authenticated:
                    logger.info("Sudo authenticated (%s)", self._session.handle)
                else:
                    logger.warning(
                        "Sudo authentication declined: %s. Tasks requiring sudo may fail or time out.",
                        self._session.reason,
                    )

        return self._session

    @contextmanager
    def keepalive(self, interval_s: float = KEEPALIVE_INTERVAL_S) -> Iterator[None]:
        """Keep the sudo timestamp fresh while the block runs."""
        if not self._session.authenticated:
            yield
            return

        stop = threading.Event()

        def _refresh() -> None:
            while not stop.wait(interval_s):
                if not self.authenticator.refresh():
                    logger.warning("Could not refresh the sudo timestamp")

        worker = threading.Thread(target=_refresh, name="tide-sudo-keepalive", daemon=True)
        worker.start()
        try:
            yield
        finally:
            stop.set()
            worker.join(timeout=1)

    def _authenticate(self) -> CredentialSession:
        if not self.authenticator.available():
            return CredentialSession(SessionState.DECLINED, reason="sudo unavailable")

        if self.authenticator.has_cached_timestamp():
            return CredentialSession(SessionState.AUTHENTICATED, handle="cached")

        stored = self._lookup_secret()
        if stored is not None:
            if self.authenticator.authenticate(stored):
                return CredentialSession(SessionState.AUTHENTICATED, handle="secret-store")
            logger.warning("Stored sudo password is outdated, prompting for a new one")

        emit(
            self.events,
            RunEvent(
                EventKind.AWAITING_CREDENTIAL,
                "Some tasks may require sudo privileges. Check your terminal.",
            ),
        )
        secret = self.prompter.ask_secret(
            "Enter sudo password (leave empty to skip)", self.prompt_timeout_s
        )
        if not secret:
            return CredentialSession(SessionState.DECLINED, reason="skipped by user")

        if not self.authenticator.authenticate(secret):
            return CredentialSession(SessionState.DECLINED, reason="authentication failed")

        if stored is None:
            self._offer_to_save(secret)

        return CredentialSession(SessionState.AUTHENTICATED, handle="prompt")

    def _lookup_secret(self) -> str | None:
        if self.secret_store is None:
            return None
        try:
            return self.secret_store.lookup(self.label)
        except SecretStoreUnavailable as exc:
            logger.warning("Secret store unavailable, falling back to prompt: %s", exc)
            return None

    def _offer_to_save(self, secret: str) -> None:
        if self.secret_store is None:
            return
        if not self.prompter.confirm("Save password to keychain for future use?"):
            return
        try:
            self.secret_store.store(self.label, secret)
        except SecretStoreUnavailable as exc:
            logger.warning("Could not save password: %s", exc)
            return
        logger.info("Password saved to keychain (service: %s)", self.label)
