from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from packages.core.schemas.chart import EntityCategory

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    AGGREGATE = "aggregate"
    CONFLICT_DETECTED = "conflict-detected"
    DIFF_GENERATED = "diff-generated"


class AuditEvent(BaseModel):
    """Audit-worthy occurrence. Identifiers, counts and outcome codes only."""

    model_config = ConfigDict(frozen=True)

    action: AuditAction
    patient_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    outcome: str
    version: Optional[int] = None
    from_version: Optional[int] = None
    to_version: Optional[int] = None
    conflict_id: Optional[str] = None
    category: Optional[EntityCategory] = None
    counts: Dict[str, int] = Field(default_factory=dict)


class AuditSink(ABC):
    """Receiver for audit events. Persistence belongs to the audit service."""

    @abstractmethod
    def emit(self, event: AuditEvent) -> None:
        """Record one event. Must not raise for well-formed events."""


class LoggingAuditSink(AuditSink):
    def emit(self, event: AuditEvent) -> None:
        logger.info(
            "audit action=%s patient_id=%s outcome=%s version=%s conflict_id=%s counts=%s",
            event.action.value,
            event.patient_id,
            event.outcome,
            event.version,
            event.conflict_id,
            event.counts,
        )


class InMemoryAuditSink(AuditSink):
    def __init__(self) -> None:
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def emit(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> List[AuditEvent]:
        with self._lock:
            return list(self._events)

    def actions(self) -> List[str]:
        return [event.action.value for event in self.events]


__all__ = [
    "AuditAction",
    "AuditEvent",
    "AuditSink",
    "LoggingAuditSink",
    "InMemoryAuditSink",
]
