from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from packages.core.schemas.chart import Attestation, EntityCategory, MedicalEntity
from packages.ingest.extraction.semantic_key import normalize_text
from packages.pipeline.steps.confidence import annotate_entity

Identity = Tuple[EntityCategory, str]


def payload_fields(entity: MedicalEntity) -> Dict[str, Any]:
    """Everything that makes two assertions the same fact: date, status and payload."""
    fields = entity.payload.model_dump(mode="json", exclude={"category"})
    fields["event_date"] = entity.event_date.isoformat() if entity.event_date else None
    fields["status"] = entity.status
    return fields


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return normalize_text(value)
    if isinstance(value, dict):
        return {key: _normalize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    return value


def normalized_fields(entity: MedicalEntity) -> Dict[str, Any]:
    return {key: _normalize(value) for key, value in payload_fields(entity).items()}


def payload_fingerprint(entity: MedicalEntity) -> str:
    encoded = json.dumps(normalized_fields(entity), sort_keys=True, separators=(",", ":"))
    return hashlib.sha1(encoded.encode("utf-8")).hexdigest()


def entity_id(category: EntityCategory, semantic_key: str, fingerprint: str) -> str:
    digest = hashlib.sha1(f"{category.value}|{semantic_key}|{fingerprint}".encode("utf-8"))
    return f"{category.value}-{digest.hexdigest()[:16]}"


def _merge_attestations(members: Iterable[MedicalEntity]) -> Tuple[Attestation, ...]:
    best: Dict[Any, Attestation] = {}
    for member in members:
        for attestation in member.attestations:
            current = best.get(attestation.source)
            if current is None or attestation.confidence > current.confidence:
                best[attestation.source] = attestation
    return tuple(sorted(best.values(), key=lambda item: item.source.sort_key()))


def _entity_order(entity: MedicalEntity) -> tuple:
    return (entity.semantic_key, entity.earliest_extraction, entity.id)


def aggregate_entities(
    entities: Iterable[MedicalEntity],
) -> Dict[EntityCategory, List[MedicalEntity]]:
    """Coalesce identical assertions and keep divergent ones side by side.

    Entities are grouped by ``(category, semantic_key)``. Inside a group,
    records with the same payload fingerprint merge into one record whose
    attestations are the union of all contributors. Records whose payloads
    differ are kept as separate records sharing the key; nothing is dropped
    and no value is overwritten.
    """
    buckets: Dict[Tuple[EntityCategory, str, str], List[MedicalEntity]] = {}
    for entity in entities:
        fingerprint = payload_fingerprint(entity)
        buckets.setdefault((entity.category, entity.semantic_key, fingerprint), []).append(entity)

    grouped: Dict[EntityCategory, List[MedicalEntity]] = {category: [] for category in EntityCategory}
    for (category, semantic_key, fingerprint), members in buckets.items():
        members.sort(key=lambda member: (member.earliest_extraction, member.id))
        merged = members[0].model_copy(
            update={
                "id": entity_id(category, semantic_key, fingerprint),
                "attestations": _merge_attestations(members),
            }
        )
        grouped[category].append(annotate_entity(merged))

    for category in grouped:
        grouped[category].sort(key=_entity_order)
    return grouped


def group_by_identity(
    grouped: Mapping[EntityCategory, Iterable[MedicalEntity]],
) -> Dict[Identity, List[MedicalEntity]]:
    identities: Dict[Identity, List[MedicalEntity]] = {}
    for category, entities in grouped.items():
        for entity in entities:
            identities.setdefault((category, entity.semantic_key), []).append(entity)
    return identities


__all__ = [
    "Identity",
    "payload_fields",
    "normalized_fields",
    "payload_fingerprint",
    "entity_id",
    "aggregate_entities",
    "group_by_identity",
]
