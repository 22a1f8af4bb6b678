from __future__ import annotations

from datetime import date
from typing import Iterable, Mapping, Union

from packages.core.schemas.chart import EntityCategory, MedicalEntity
from packages.core.schemas.result import ClinicalEvent, Timeline

EntityInput = Union[Mapping[EntityCategory, Iterable[MedicalEntity]], Iterable[MedicalEntity]]


def _iter_entities(entities: EntityInput) -> Iterable[MedicalEntity]:
    if isinstance(entities, Mapping):
        for items in entities.values():
            yield from items
    else:
        yield from entities


def timeline_sort_key(entity: MedicalEntity) -> tuple:
    """Total order: dated first, lower-bound date, coarser precision, provenance, key."""
    if entity.event_date is None:
        date_part = (1, date.max, 0)
    else:
        date_part = (0, entity.event_date.lower_bound(), entity.event_date.precision_rank)
    return (
        *date_part,
        entity.earliest_extraction,
        entity.semantic_key,
        entity.category.value,
        entity.id,
    )


def event_for(entity: MedicalEntity) -> ClinicalEvent:
    return ClinicalEvent(
        timestamp=entity.event_date,
        entity_ref=entity.id,
        category=entity.category,
        semantic_key=entity.semantic_key,
    )


def build_timeline(entities: EntityInput) -> Timeline:
    """One event per entity in deterministic chronological order.

    Low-confidence and conflicting entities are included; undated entities go
    last.
    """
    ordered = sorted(_iter_entities(entities), key=timeline_sort_key)
    return Timeline(events=tuple(event_for(entity) for entity in ordered))


__all__ = ["timeline_sort_key", "event_for", "build_timeline"]
