from .budget import ConcurrencyBudget
from .credentials import (
    AuthMode,
    CredentialManager,
    CredentialSession,
    SessionState,
    SudoAuthenticator,
    TerminalPrompter,
)
from .events import CollectingSink, EventKind, EventSink, RunEvent
from .group import GroupExecutor
from .keychain import KeychainSecretStore, SecretStore
from .orchestrator import Orchestrator, RunOptions
from .preconditions import Eligibility, evaluate
from .runner import CommandRunner, SimulatedRunner
from .types import (
    ExecutorError,
    GroupOutcome,
    GroupReport,
    RunOutcome,
    RunReport,
    SecretStoreUnavailable,
    TaskResult,
    TaskStatus,
)

__all__ = [
    "Orchestrator",
    "RunOptions",
    "GroupExecutor",
    "CommandRunner",
    "SimulatedRunner",
    "ConcurrencyBudget",
    "CredentialManager",
    "CredentialSession",
    "SessionState",
    "AuthMode",
    "SudoAuthenticator",
    "TerminalPrompter",
    "SecretStore",
    "KeychainSecretStore",
    "Eligibility",
    "evaluate",
    "EventKind",
    "EventSink",
    "RunEvent",
    "CollectingSink",
    "TaskResult",
    "TaskStatus",
    "GroupReport",
    "GroupOutcome",
    "RunReport",
    "RunOutcome",
    "ExecutorError",
    "SecretStoreUnavailable",
]
