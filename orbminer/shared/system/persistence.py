"""
Event Sinks
===========
Fire-and-forget structured events for external persistence.

A sink failure is logged and dropped; it never fails a chain action.
"""

from __future__ import annotations

import json
import os
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from orbminer.shared.system.logging import Logger


class EventKind(Enum):
    ATTEMPTED = "attempted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    SNAPSHOT = "snapshot"


@dataclass(frozen=True)
class BotEvent:
    kind: EventKind
    action: str  # deploy | checkpoint | claim_sol | claim_orb | claim_yield | stake | swap | balance
    round_id: Optional[int] = None
    amount: Optional[float] = None
    signature: Optional[str] = None
    fee_sol: Optional[float] = None
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


class EventSink:
    """Interface: accept one event."""

    def emit(self, event: BotEvent) -> None:
        raise NotImplementedError


class NullEventSink(EventSink):
    def emit(self, event: BotEvent) -> None:
        pass


class LoggingEventSink(EventSink):
    """Routes events to the file log."""

    def emit(self, event: BotEvent) -> None:
        Logger.debug(f"[EVENT] {json.dumps(event.to_dict(), default=str)}")


class JsonlEventSink(EventSink):
    """Appends one JSON object per line."""

    def __init__(self, path: str):
        self.path = path
        directory = os.path.dirname(path)
        if directory and not os.path.exists(directory):
            os.makedirs(directory)

    def emit(self, event: BotEvent) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(event.to_dict(), default=str) + "\n")


def safe_emit(sink: EventSink, event: BotEvent) -> None:
    """Emit without letting a sink error escape."""
    try:
        sink.emit(event)
    except Exception as e:
        Logger.warning(f"[EVENT] Sink {type(sink).__name__} dropped {event.action}/{event.kind.value}: {e}")
