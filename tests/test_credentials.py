from __future__ import annotations

import io
import logging
import os
import select
import sys
import threading
import time
from pathlib import Path

import pytest

from tests.helpers import FakeAuthenticator, FakePrompter, FakeSecretStore, task
from tide.executor.credentials import (
    NO_SESSION,
    AuthMode,
    CredentialManager,
    SessionState,
    SudoAuthenticator,
    TerminalPrompter,
    escalation_warning,
    suggests_escalation,
)
from tide.executor.events import CollectingSink, EventKind
from tide.executor.types import SecretStoreUnavailable

LABEL = "tide-test"


def manager(authenticator=None, prompter=None, store=None, events=None) -> CredentialManager:
    return CredentialManager(
        authenticator or FakeAuthenticator(),
        prompter or FakePrompter(),
        store,
        label=LABEL,
        events=events,
    )


def test_starts_without_session() -> None:
    assert manager().session is NO_SESSION


def test_unavailable_sudo_declines_without_prompting() -> None:
    prompter = FakePrompter("hunter2")
    session = manager(FakeAuthenticator(available=False), prompter).ensure_authenticated()

    assert session.state == SessionState.DECLINED
    assert session.reason == "sudo unavailable"
    assert prompter.asked == 0


def test_cached_timestamp_is_enough() -> None:
    authenticator = FakeAuthenticator(cached=True)
    prompter = FakePrompter("hunter2")
    session = manager(authenticator, prompter).ensure_authenticated()

    assert session.authenticated
    assert session.handle == "cached"
    assert authenticator.attempts == []
    assert prompter.asked == 0


def test_secret_store_hit_skips_prompt() -> None:
    prompter = FakePrompter()
    store = FakeSecretStore({LABEL: "hunter2"})
    session = manager(prompter=prompter, store=store).ensure_authenticated()

    assert session.handle == "secret-store"
    assert prompter.asked == 0
    assert store.stored == []


def test_stale_secret_falls_back_to_prompt_without_save_offer() -> None:
    authenticator = FakeAuthenticator()
    prompter = FakePrompter("hunter2")
    store = FakeSecretStore({LABEL: "old"})
    session = manager(authenticator, prompter, store).ensure_authenticated()

    assert session.handle == "prompt"
    assert authenticator.attempts == ["old", "hunter2"]
    assert prompter.confirmed == 0
    assert store.stored == []


def test_prompt_then_save_when_confirmed() -> None:
    prompter = FakePrompter("hunter2", confirm=True)
    store = FakeSecretStore()
    session = manager(prompter=prompter, store=store).ensure_authenticated()

    assert session.handle == "prompt"
    assert store.stored == [(LABEL, "hunter2")]


def test_prompt_without_save_when_refused() -> None:
    store = FakeSecretStore()
    manager(prompter=FakePrompter("hunter2", confirm=False), store=store).ensure_authenticated()
    assert store.stored == []


def test_no_save_offer_without_store() -> None:
    prompter = FakePrompter("hunter2")
    assert manager(prompter=prompter).ensure_authenticated().authenticated
    assert prompter.confirmed == 0


@pytest.mark.parametrize("answer", [None, ""])
def test_empty_answer_declines(answer) -> None:
    authenticator = FakeAuthenticator()
    session = manager(authenticator, FakePrompter(answer)).ensure_authenticated()

    assert session.declined
    assert session.reason == "skipped by user"
    assert authenticator.attempts == []


def test_wrong_password_declines() -> None:
    store = FakeSecretStore()
    session = manager(prompter=FakePrompter("wrong"), store=store).ensure_authenticated()

    assert session.declined
    assert session.reason == "authentication failed"
    assert store.stored == []


def test_unavailable_store_falls_back_to_prompt(caplog) -> None:
    caplog.set_level(logging.WARNING)
    prompter = FakePrompter("hunter2")
    store = FakeSecretStore(error=SecretStoreUnavailable("locked"))
    session = manager(prompter=prompter, store=store).ensure_authenticated()

    assert session.authenticated
    assert prompter.asked == 1
    assert "Secret store unavailable" in caplog.text
    assert "Could not save password" in caplog.text


def test_secret_never_logged(caplog) -> None:
    caplog.set_level(logging.DEBUG)
    store = FakeSecretStore({LABEL: "s3cr3t-old"})
    manager(prompter=FakePrompter("s3cr3t-new"), store=store).ensure_authenticated()
    assert "s3cr3t" not in caplog.text


def test_awaiting_credential_event_before_prompt() -> None:
    sink = CollectingSink()
    manager(prompter=FakePrompter("hunter2"), events=sink).ensure_authenticated()
    events = sink.of_kind(EventKind.AWAITING_CREDENTIAL)
    assert len(events) == 1
    assert events[0].is_alert


def test_no_awaiting_event_when_cached() -> None:
    sink = CollectingSink()
    manager(FakeAuthenticator(cached=True), events=sink).ensure_authenticated()
    assert sink.events == []


def test_transition_happens_once() -> None:
    authenticator = FakeAuthenticator()
    prompter = FakePrompter("hunter2")
    credentials = manager(authenticator, prompter)

    first = credentials.ensure_authenticated(AuthMode.PROACTIVE)
    second = credentials.ensure_authenticated(AuthMode.LAZY)

    assert first is second
    assert prompter.asked == 1
    assert authenticator.attempts == ["hunter2"]


def test_declined_is_terminal() -> None:
    prompter = FakePrompter(None)
    credentials = manager(prompter=prompter)
    credentials.ensure_authenticated()
    prompter.answer = "hunter2"

    assert credentials.ensure_authenticated(AuthMode.LAZY).declined
    assert prompter.asked == 1


def test_concurrent_callers_prompt_once() -> None:
    prompter = FakePrompter("hunter2", delay_s=0.2)
    credentials = manager(prompter=prompter)
    sessions = []

    def _call() -> None:
        sessions.append(credentials.ensure_authenticated(AuthMode.LAZY))

    threads = [threading.Thread(target=_call) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert prompter.asked == 1
    assert len(sessions) == 5
    assert all(session is sessions[0] for session in sessions)
    assert sessions[0].authenticated


def test_keepalive_refreshes_while_active() -> None:
    authenticator = FakeAuthenticator(cached=True)
    credentials = manager(authenticator)
    credentials.ensure_authenticated()

    with credentials.keepalive(interval_s=0.05):
        time.sleep(0.3)
    refreshes = authenticator.refreshes
    time.sleep(0.15)

    assert refreshes >= 2
    assert authenticator.refreshes == refreshes


def test_keepalive_is_noop_without_session() -> None:
    authenticator = FakeAuthenticator()
    with manager(authenticator).keepalive(interval_s=0.01):
        time.sleep(0.05)
    assert authenticator.refreshes == 0


@pytest.mark.parametrize(
    "text, expected",
    [
        ("sudo softwareupdate -i", True),
        ("brew upgrade && SUDO true", True),
        ("pkexec apt upgrade", True),
        ("doas pkg_add -u", True),
        ("pseudosudoku", False),
        ("brew upgrade", False),
    ],
)
def test_suggests_escalation(text: str, expected: bool) -> None:
    assert suggests_escalation(text) is expected


def test_escalation_warning() -> None:
    assert escalation_warning(task("a", command=("sh", "-c", "sudo true"))) == (
        "Task 'a' may call sudo internally. Consider setting 'sudo: true'"
    )
    assert escalation_warning(task("a", command=("sudo", "true"), sudo=True)) is None
    assert escalation_warning(task("a", command=("brew", "update"))) is None


def test_sudo_wrap_is_non_interactive() -> None:
    sudo = SudoAuthenticator()
    assert sudo.wrap(["brew", "update"]) == ["sudo", "-n", "brew", "update"]
    assert sudo.wrap(["sudo", "-n", "true"]) == ["sudo", "-n", "true"]


def test_sudo_unavailable_when_executable_missing() -> None:
    sudo = SudoAuthenticator(executable="tide-definitely-missing-sudo")
    assert sudo.available() is False
    assert sudo.has_cached_timestamp() is False
    assert sudo.authenticate("hunter2") is False


ROOT = Path(__file__).resolve().parent.parent

_PROMPT_SCRIPT = """
import termios
from tide.executor.credentials import TerminalPrompter
answer = TerminalPrompter().ask_secret("pw", {timeout})
echo = bool(termios.tcgetattr(0)[3] & termios.ECHO)
print("RESULT", repr(answer), echo)
"""


def _prompt_on_pty(timeout_s: float, typed: bytes | None = None) -> str:
    """Runs ``ask_secret`` in a child attached to a fresh pty and returns its output."""
    import pty

    env = dict(os.environ, PYTHONPATH=str(ROOT))
    code = _PROMPT_SCRIPT.format(timeout=timeout_s)
    pid, master = pty.fork()
    if pid == 0:
        try:
            os.execve(sys.executable, [sys.executable, "-c", code], env)
        finally:
            os._exit(127)

    output = b""
    deadline = time.monotonic() + 20
    try:
        while time.monotonic() < deadline:
            ready, _, _ = select.select([master], [], [], 0.5)
            if not ready:
                continue
            try:
                chunk = os.read(master, 1024)
            except OSError:
                break
            if not chunk:
                break
            output += chunk
            if typed is not None and b"pw: " in output:
                os.write(master, typed)
                typed = None
    finally:
        os.close(master)
        os.waitpid(pid, 0)
    return output.decode("utf-8", errors="replace")


pty_only = pytest.mark.skipif(
    not sys.platform.startswith(("linux", "darwin")), reason="needs a pseudo terminal"
)


@pty_only
def test_prompt_timeout_restores_echo() -> None:
    output = _prompt_on_pty(0.5)
    assert "pw: " in output
    assert "RESULT None True" in output


@pty_only
def test_prompt_reads_answer_without_echo() -> None:
    output = _prompt_on_pty(10, typed=b"hunter2\n")
    before, _, after = output.partition("RESULT")
    assert "hunter2" not in before
    assert after.strip() == "'hunter2' True"


def test_prompt_without_terminal_returns_none(monkeypatch) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO())
    assert TerminalPrompter().ask_secret("pw", 0.1) is None
