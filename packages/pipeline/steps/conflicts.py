from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, NamedTuple, Optional

from packages.core.errors import ConflictAnalysisError
from packages.core.schemas.chart import EntityCategory, MedicalEntity
from packages.core.schemas.result import Conflict, ConflictValue
from packages.pipeline.steps.aggregate import (
    group_by_identity,
    normalized_fields,
    payload_fingerprint,
)

logger = logging.getLogger(__name__)


class ConflictScan(NamedTuple):
    conflicts: List[Conflict]
    excluded_groups: int


def _variants(
    category: EntityCategory, members: Iterable[MedicalEntity]
) -> Dict[str, List[MedicalEntity]]:
    variants: Dict[str, List[MedicalEntity]] = {}
    for member in members:
        payload_category = getattr(member.payload, "category", None)
        if member.category != category or payload_category != category.value:
            raise ConflictAnalysisError(category.value, "category_mismatch")
        try:
            fingerprint = payload_fingerprint(member)
        except (AttributeError, TypeError, ValueError) as exc:
            raise ConflictAnalysisError(category.value, "unreadable_payload") from exc
        variants.setdefault(fingerprint, []).append(member)
    return variants


def _differing_fields(variants: Dict[str, List[MedicalEntity]]) -> tuple[str, ...]:
    field_values: Dict[str, set] = {}
    for members in variants.values():
        for name, value in normalized_fields(members[0]).items():
            field_values.setdefault(name, set()).add(repr(value))
    return tuple(sorted(name for name, values in field_values.items() if len(values) > 1))


def _conflict_id(category: EntityCategory, semantic_key: str, fingerprints: Iterable[str]) -> str:
    raw = "|".join([category.value, semantic_key, *sorted(fingerprints)])
    return f"conflict-{hashlib.sha1(raw.encode('utf-8')).hexdigest()[:16]}"


def _compare_group(
    category: EntityCategory,
    semantic_key: str,
    members: List[MedicalEntity],
    detected_at: datetime,
) -> Optional[Conflict]:
    variants = _variants(category, members)
    if len(variants) < 2:
        return None

    document_ids = {document_id for member in members for document_id in member.document_ids}
    if len(document_ids) < 2:
        # Divergence inside a single document is extraction noise, not disagreement.
        return None

    ordered = sorted(
        variants.items(),
        key=lambda item: (min(member.earliest_extraction for member in item[1]), item[0]),
    )
    values = []
    for _, variant_members in ordered:
        first = min(variant_members, key=lambda member: (member.earliest_extraction, member.id))
        values.append(
            ConflictValue(
                entity_id=first.id,
                event_date=first.event_date,
                status=first.status,
                confidence=max(member.confidence for member in variant_members),
                document_ids=tuple(
                    sorted({doc for member in variant_members for doc in member.document_ids})
                ),
                payload=first.payload,
            )
        )

    sources = {source for member in members for source in member.sources}
    return Conflict(
        id=_conflict_id(category, semantic_key, variants),
        category=category,
        semantic_key=semantic_key,
        conflicting_values=tuple(values),
        differing_fields=_differing_fields(variants),
        sources=tuple(sorted(sources, key=lambda source: source.sort_key())),
        detected_at=detected_at,
    )


def _conflict_order(conflict: Conflict) -> tuple:
    earliest = min(source.extraction_timestamp for source in conflict.sources)
    return (conflict.category.value, conflict.semantic_key, earliest, conflict.id)


def detect_conflicts(
    grouped: Mapping[EntityCategory, Iterable[MedicalEntity]],
    *,
    detected_at: Optional[datetime] = None,
) -> ConflictScan:
    """Flag semantic-key groups whose documents disagree.

    A group becomes a conflict only when it holds at least two distinct
    payloads and those payloads come from at least two documents. Nothing is
    resolved or mutated. A group that cannot be compared is skipped and
    counted in ``excluded_groups``.
    """
    detected_at = detected_at or datetime.now(timezone.utc)
    conflicts: List[Conflict] = []
    excluded = 0
    for (category, semantic_key), members in group_by_identity(grouped).items():
        try:
            conflict = _compare_group(category, semantic_key, members, detected_at)
        except ConflictAnalysisError as exc:
            excluded += 1
            logger.warning(
                "Excluded group from conflict analysis category=%s reason=%s members=%d",
                exc.category,
                exc.reason,
                len(members),
            )
            continue
        if conflict is not None:
            conflicts.append(conflict)

    conflicts.sort(key=_conflict_order)
    return ConflictScan(conflicts=conflicts, excluded_groups=excluded)


__all__ = ["ConflictScan", "detect_conflicts"]
