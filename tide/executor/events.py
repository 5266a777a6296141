from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from .types import TaskResult

logger = logging.getLogger(__name__)


class EventKind(Enum):
    AWAITING_CREDENTIAL = "awaiting_credential"
    ESCALATION_SUSPECTED = "escalation_suspected"
    TASK_RESOLVED = "task_resolved"
    TASK_TIMED_OUT = "task_timed_out"
    REQUIRED_TASK_FAILED = "required_task_failed"
    RUN_COMPLETED = "run_completed"


ALERT_KINDS = frozenset(
    {
        EventKind.AWAITING_CREDENTIAL,
        EventKind.TASK_TIMED_OUT,
        EventKind.REQUIRED_TASK_FAILED,
        EventKind.RUN_COMPLETED,
    }
)


@dataclass(frozen=True)
class RunEvent:
    kind: EventKind
    message: str
    group: str | None = None
    task: str | None = None
    result: TaskResult | None = None

    @property
    def is_alert(self) -> bool:
        return self.kind in ALERT_KINDS


class EventSink(Protocol):
    def emit(self, event: RunEvent) -> None:
        """Receive one engine event. Called from worker threads."""


class NullSink:
    def emit(self, event: RunEvent) -> None:
        return None


class CollectingSink:
    """Keeps every event in memory, in emission order."""

    def __init__(self) -> None:
        self.events: list[RunEvent] = []

    def emit(self, event: RunEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: EventKind) -> list[RunEvent]:
        return [event for event in self.events if event.kind == kind]


def emit(sink: EventSink, event: RunEvent) -> None:
    # Listener errors never reach the engine.
    try:
        sink.emit(event)
    except Exception:
        logger.exception("Event sink failed on %s", event.kind.value)
