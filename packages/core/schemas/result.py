from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from packages.core.schemas.chart import (
    EntityCategory,
    EntityPayload,
    EventDate,
    MedicalEntity,
    SourceReference,
)


class RejectedEntity(BaseModel):
    """An extracted entity dropped at intake. Carries field names, never values."""

    model_config = ConfigDict(frozen=True)

    document_id: str
    index: int
    category: Optional[str] = None
    kind: str
    fields: Tuple[str, ...] = ()


class IngestFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    document_id: str
    kind: str
    attempts: int = 1
    message: str = ""


class IntakeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    patient_id: str
    document_id: str
    entities: Tuple[MedicalEntity, ...] = ()
    rejected: Tuple[RejectedEntity, ...] = ()


class BatchReport(BaseModel):
    patient_id: str
    succeeded: List[IntakeResult] = Field(default_factory=list)
    failed: List[IngestFailure] = Field(default_factory=list)

    @property
    def rejected(self) -> List[RejectedEntity]:
        return [item for result in self.succeeded for item in result.rejected]


class ClinicalEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: Optional[EventDate] = None
    entity_ref: str
    category: EntityCategory
    semantic_key: str


class Timeline(BaseModel):
    model_config = ConfigDict(frozen=True)

    events: Tuple[ClinicalEvent, ...] = ()


class ConflictValue(BaseModel):
    """One of the divergent assertions inside a conflict, typed by category."""

    model_config = ConfigDict(frozen=True)

    entity_id: str
    event_date: Optional[EventDate] = None
    status: Optional[str] = None
    confidence: float = 0.0
    document_ids: Tuple[str, ...] = ()
    payload: EntityPayload


class ConflictResolution(BaseModel):
    model_config = ConfigDict(frozen=True)

    resolved_by: str
    resolved_at: datetime
    chosen_entity_id: Optional[str] = None
    note: str = ""


class Conflict(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    category: EntityCategory
    semantic_key: str
    conflicting_values: Tuple[ConflictValue, ...] = Field(min_length=2)
    differing_fields: Tuple[str, ...] = ()
    sources: Tuple[SourceReference, ...] = Field(min_length=2)
    detected_at: datetime
    resolution: Optional[ConflictResolution] = None

    @property
    def document_ids(self) -> List[str]:
        return sorted({source.document_id for source in self.sources})


class PatientSummary(BaseModel):
    """One committed, immutable aggregation result for a patient."""

    model_config = ConfigDict(frozen=True)

    patient_id: str
    version: int = 0
    complete: Literal[True] = True
    entities: Dict[EntityCategory, Tuple[MedicalEntity, ...]] = Field(default_factory=dict)
    timeline: Timeline = Field(default_factory=Timeline)
    conflicts: Tuple[Conflict, ...] = ()
    last_updated: datetime
    document_ids: Tuple[str, ...] = ()
    ingest_failures: Tuple[IngestFailure, ...] = ()
    rejected_entities: Tuple[RejectedEntity, ...] = ()
    excluded_conflict_groups: int = 0
    input_fingerprint: str = ""

    def entity_index(self) -> Dict[str, MedicalEntity]:
        return {
            entity.id: entity
            for entities in self.entities.values()
            for entity in entities
        }

    def entity_count(self) -> int:
        return sum(len(entities) for entities in self.entities.values())


class PartialSummary(BaseModel):
    """Returned when no valid entity could be assembled. Never committed."""

    model_config = ConfigDict(frozen=True)

    patient_id: str
    incomplete: Literal[True] = True
    reason: str
    ingest_failures: Tuple[IngestFailure, ...] = ()
    rejected_entities: Tuple[RejectedEntity, ...] = ()
    last_updated: datetime


class EventModification(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: EntityCategory
    semantic_key: str
    previous: Tuple[ClinicalEvent, ...]
    current: Tuple[ClinicalEvent, ...]
    changed_fields: Tuple[str, ...] = ()


class TimelineDiff(BaseModel):
    model_config = ConfigDict(frozen=True)

    patient_id: str
    from_version: int
    to_version: int
    added_events: Tuple[ClinicalEvent, ...] = ()
    modified_events: Tuple[EventModification, ...] = ()
    removed_events: Tuple[ClinicalEvent, ...] = ()
    generated_at: datetime

    def is_empty(self) -> bool:
        return not (self.added_events or self.modified_events or self.removed_events)


__all__ = [
    "RejectedEntity",
    "IngestFailure",
    "IntakeResult",
    "BatchReport",
    "ClinicalEvent",
    "Timeline",
    "ConflictValue",
    "ConflictResolution",
    "Conflict",
    "PatientSummary",
    "PartialSummary",
    "EventModification",
    "TimelineDiff",
]
