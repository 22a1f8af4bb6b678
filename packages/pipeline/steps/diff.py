from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set, Tuple

from packages.core.schemas.chart import MedicalEntity
from packages.core.schemas.result import (
    ClinicalEvent,
    EventModification,
    PatientSummary,
    TimelineDiff,
)
from packages.pipeline.steps.aggregate import (
    Identity,
    group_by_identity,
    normalized_fields,
    payload_fingerprint,
)
from packages.pipeline.steps.timeline import event_for


def _signature(members: Iterable[MedicalEntity]) -> List[Tuple[str, float]]:
    return sorted((payload_fingerprint(member), member.confidence) for member in members)


def _changed_fields(
    previous: List[MedicalEntity], current: List[MedicalEntity]
) -> Tuple[str, ...]:
    def values_by_field(members: List[MedicalEntity]) -> Dict[str, Set[str]]:
        values: Dict[str, Set[str]] = {}
        for member in members:
            for name, value in normalized_fields(member).items():
                values.setdefault(name, set()).add(repr(value))
        return values

    before = values_by_field(previous)
    after = values_by_field(current)
    changed = {
        name
        for name in set(before) | set(after)
        if before.get(name, set()) != after.get(name, set())
    }
    if sorted(m.confidence for m in previous) != sorted(m.confidence for m in current):
        changed.add("confidence")
    return tuple(sorted(changed))


def _events_in_order(
    summary: PatientSummary, refs: Set[str], fallback: Iterable[MedicalEntity]
) -> Tuple[ClinicalEvent, ...]:
    ordered = [event for event in summary.timeline.events if event.entity_ref in refs]
    seen = {event.entity_ref for event in ordered}
    ordered.extend(event_for(entity) for entity in fallback if entity.id not in seen)
    return tuple(ordered)


def _identity_order(identity: Identity) -> tuple:
    category, semantic_key = identity
    return (category.value, semantic_key)


def diff_snapshots(
    previous: PatientSummary,
    current: PatientSummary,
    *,
    generated_at: Optional[datetime] = None,
) -> TimelineDiff:
    """Compare two committed snapshots by ``(category, semantic_key)``.

    Removed means no longer asserted by the newer aggregation; the older
    snapshot stays intact and retrievable. Neither input is modified.
    """
    if previous.patient_id != current.patient_id:
        raise ValueError("cannot diff snapshots of different patients")

    before = group_by_identity(previous.entities)
    after = group_by_identity(current.entities)

    added: List[MedicalEntity] = []
    removed: List[MedicalEntity] = []
    modified: List[EventModification] = []
    for identity in sorted(set(before) | set(after), key=_identity_order):
        old = before.get(identity)
        new = after.get(identity)
        if old is None and new is not None:
            added.extend(new)
        elif new is None and old is not None:
            removed.extend(old)
        elif old is not None and new is not None and _signature(old) != _signature(new):
            category, semantic_key = identity
            modified.append(
                EventModification(
                    category=category,
                    semantic_key=semantic_key,
                    previous=_events_in_order(previous, {m.id for m in old}, old),
                    current=_events_in_order(current, {m.id for m in new}, new),
                    changed_fields=_changed_fields(old, new),
                )
            )

    return TimelineDiff(
        patient_id=current.patient_id,
        from_version=previous.version,
        to_version=current.version,
        added_events=_events_in_order(current, {m.id for m in added}, added),
        modified_events=tuple(modified),
        removed_events=_events_in_order(previous, {m.id for m in removed}, removed),
        generated_at=generated_at or datetime.now(timezone.utc),
    )


__all__ = ["diff_snapshots"]
