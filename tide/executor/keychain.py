"""Secret storage for the sudo password.

The default store drives the macOS ``security`` tool and keeps a generic
password under the configured service label. Anything exposing the same two
methods can be passed to :class:`~tide.executor.credentials.CredentialManager`.
"""

from __future__ import annotations

import logging
import subprocess
from typing import Protocol

from .types import SecretStoreUnavailable

logger = logging.getLogger(__name__)

KEYCHAIN_ACCOUNT = "root"
_SECURITY_TIMEOUT_S = 15
# `security` exit status for "The specified item could not be found".
_ITEM_NOT_FOUND = 44


class SecretStore(Protocol):
    def lookup(self, label: str) -> str | None: ...

    def store(self, label: str, secret: str) -> None: ...


class KeychainSecretStore:
    def __init__(self, executable: str = "security", account: str = KEYCHAIN_ACCOUNT):
        self.executable = executable
        self.account = account

    def lookup(self, label: str) -> str | None:
        result = self._security(
            ["find-generic-password", "-s", label, "-a", self.account, "-w"]
        )
        if result.returncode == _ITEM_NOT_FOUND:
            return None
        if result.returncode != 0:
            raise SecretStoreUnavailable(
                f"keychain lookup failed with exit code {result.returncode}"
            )

        secret = result.stdout.rstrip("\n")
        return secret or None

    def store(self, label: str, secret: str) -> None:
        # -U updates an existing item. A trailing -w makes `security` read the
        # password and its confirmation from stdin, keeping it out of argv.
        result = self._security(
            ["add-generic-password", "-U", "-s", label, "-a", self.account, "-w"],
            input=f"{secret}\n{secret}\n",
        )
        if result.returncode != 0:
            raise SecretStoreUnavailable(
                f"keychain store failed with exit code {result.returncode}"
            )

    def _security(
        self, args: list[str], input: str | None = None
    ) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(
                [self.executable, *args],
                input=input,
                stdin=subprocess.DEVNULL if input is None else None,
                capture_output=True,
                text=True,
                timeout=_SECURITY_TIMEOUT_S,
            )
        except FileNotFoundError as exc:
            raise SecretStoreUnavailable(f"{self.executable} not found") from exc
        except subprocess.TimeoutExpired as exc:
            raise SecretStoreUnavailable(f"{self.executable} did not answer") from exc
        except OSError as exc:
            raise SecretStoreUnavailable(str(exc)) from exc
