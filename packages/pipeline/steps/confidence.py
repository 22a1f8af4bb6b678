from __future__ import annotations

import math
from typing import Any, Iterable, Mapping

from packages.core.schemas.chart import Attestation, EntityCategory, MedicalEntity


def normalize_confidence(value: Any) -> float:
    """Read an extractor confidence; anything missing or outside [0, 1] counts as 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number) or number < 0.0 or number > 1.0:
        return 0.0
    return number


def combined_confidence(attestations: Iterable[Attestation]) -> float:
    """Corroboration takes the strongest supporting extraction, never less."""
    return max((normalize_confidence(item.confidence) for item in attestations), default=0.0)


def annotate_entity(entity: MedicalEntity) -> MedicalEntity:
    confidence = combined_confidence(entity.attestations)
    if confidence == entity.confidence:
        return entity
    return entity.model_copy(update={"confidence": confidence})


def annotate_confidences(
    grouped: Mapping[EntityCategory, Iterable[MedicalEntity]],
) -> dict[EntityCategory, list[MedicalEntity]]:
    return {
        category: [annotate_entity(entity) for entity in entities]
        for category, entities in grouped.items()
    }


__all__ = [
    "normalize_confidence",
    "combined_confidence",
    "annotate_entity",
    "annotate_confidences",
]
