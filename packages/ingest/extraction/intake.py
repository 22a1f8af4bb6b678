from __future__ import annotations

import hashlib
import logging
from typing import Any, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError

from packages.core.config import ReconcilerSettings
from packages.core.errors import ValidationError
from packages.core.schemas.chart import (
    PAYLOAD_MODELS,
    Attestation,
    EntityCategory,
    EventDate,
    MedicalEntity,
    SourceReference,
)
from packages.core.schemas.result import IntakeResult, RejectedEntity
from packages.ingest.extraction.semantic_key import build_semantic_key
from packages.pipeline.steps.confidence import normalize_confidence

logger = logging.getLogger(__name__)


def _get(mapping: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in mapping:
            return mapping[name]
    return None


def _clean_value(value: Any, field: str) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        return text or None
    if isinstance(value, bool):
        raise ValidationError("unsupported_field_type", fields=[field])
    if isinstance(value, (int, float)):
        return str(value)
    raise ValidationError("unsupported_field_type", fields=[field])


def _field_names(exc: PydanticValidationError) -> list[str]:
    names = []
    for error in exc.errors():
        loc = error.get("loc") or ()
        names.append(str(loc[0]) if loc else "unknown")
    return names


def _intake_id(document_id: str, index: int) -> str:
    digest = hashlib.sha1(f"{document_id}#{index}".encode("utf-8")).hexdigest()
    return f"intake-{digest[:16]}"


def _parse_category(raw: Any) -> EntityCategory:
    try:
        return EntityCategory(str(raw).strip().lower())
    except ValueError as exc:
        raise ValidationError("unknown_category") from exc


def _parse_date(value: Any, field: str) -> Optional[EventDate]:
    try:
        return EventDate.parse(value)
    except ValueError as exc:
        raise ValidationError("unparseable_date", fields=[field]) from exc


def _source_for(
    item: Mapping[str, Any],
    document_id: str,
    defaults: Mapping[str, Any],
) -> SourceReference:
    raw_source = item.get("source")
    if raw_source is None:
        raw_source = {}
    if not isinstance(raw_source, Mapping):
        raise ValidationError("invalid_source", fields=["source"])
    merged = {key: value for key, value in defaults.items() if value is not None}
    for key, value in raw_source.items():
        if value is not None:
            merged[key] = value
    try:
        source = SourceReference.model_validate(merged)
    except PydanticValidationError as exc:
        raise ValidationError("invalid_source", fields=_field_names(exc)) from exc
    if source.document_id != document_id:
        raise ValidationError("source_document_mismatch", fields=["document_id"])
    return source


def _intake_entity(
    item: Any,
    index: int,
    document_id: str,
    defaults: Mapping[str, Any],
    settings: ReconcilerSettings,
) -> MedicalEntity:
    if not isinstance(item, Mapping):
        raise ValidationError("entity_not_mapping")
    category = _parse_category(item.get("category"))
    rule = settings.rule_for(category)
    try:
        fields = item.get("fields")
        if not isinstance(fields, Mapping):
            raise ValidationError("fields_not_mapping", fields=["fields"])

        payload_model = PAYLOAD_MODELS[category]
        wanted = [name for name in payload_model.model_fields if name != "category"]
        cleaned: dict[str, Any] = {}
        for name in [*wanted, rule.date_field]:
            if name in fields:
                cleaned[name] = _clean_value(fields[name], name)

        missing = [name for name in rule.required_fields if not cleaned.get(name)]
        if rule.required_any and not any(cleaned.get(name) for name in rule.required_any):
            missing.extend(rule.required_any)
        if missing:
            raise ValidationError("missing_required_fields", fields=missing)

        event_date = _parse_date(cleaned.get(rule.date_field), rule.date_field)
        payload_data: dict[str, Any] = {}
        for name in wanted:
            value = cleaned.get(name)
            if value is None:
                continue
            payload_data[name] = _parse_date(value, name) if name.endswith("_date") else value
        try:
            payload = payload_model(**payload_data)
        except PydanticValidationError as exc:
            raise ValidationError("invalid_payload", fields=_field_names(exc)) from exc

        status = _clean_value(_get(item, "status") or fields.get("status"), "status")
        source = _source_for(item, document_id, defaults)
        confidence = normalize_confidence(item.get("confidence"))
    except ValidationError as exc:
        exc.category = category.value
        raise

    return MedicalEntity(
        id=_intake_id(document_id, index),
        category=category,
        semantic_key=build_semantic_key(category, payload, event_date, rule),
        event_date=event_date,
        status=status,
        confidence=confidence,
        attestations=(Attestation(source=source, confidence=confidence),),
        payload=payload,
    )


def intake_document(
    patient_id: str,
    document_id: str,
    raw: Any,
    settings: Optional[ReconcilerSettings] = None,
) -> IntakeResult:
    """Validate one document's extraction result and normalize its entities.

    Invalid entities are dropped and listed in ``rejected``. A document whose
    envelope is unusable raises ``ValidationError`` for the whole document.
    """
    settings = settings or ReconcilerSettings()
    if not document_id:
        raise ValidationError("missing_document_id")
    if not isinstance(raw, Mapping):
        raise ValidationError("document_not_mapping", document_id=document_id)

    declared_id = _get(raw, "document_id", "documentId")
    if declared_id is not None and str(declared_id) != document_id:
        raise ValidationError("document_id_mismatch", document_id=document_id)

    items = raw.get("entities")
    if not isinstance(items, list):
        raise ValidationError("entities_not_list", document_id=document_id)

    defaults = {
        "document_id": document_id,
        "document_name": _get(raw, "document_name", "documentName"),
        "extraction_timestamp": _get(raw, "extraction_timestamp", "extractionTimestamp"),
    }

    entities: list[MedicalEntity] = []
    rejected: list[RejectedEntity] = []
    for index, item in enumerate(items):
        try:
            entities.append(_intake_entity(item, index, document_id, defaults, settings))
        except ValidationError as exc:
            logger.warning(
                "Dropped entity document_id=%s index=%d category=%s reason=%s fields=%s",
                document_id,
                index,
                exc.category or "unknown",
                exc.reason,
                ",".join(exc.fields),
            )
            rejected.append(
                RejectedEntity(
                    document_id=document_id,
                    index=index,
                    category=exc.category,
                    kind=exc.reason,
                    fields=exc.fields,
                )
            )

    logger.info(
        "Intake patient_id=%s document_id=%s accepted=%d rejected=%d",
        patient_id,
        document_id,
        len(entities),
        len(rejected),
    )
    return IntakeResult(
        patient_id=patient_id,
        document_id=document_id,
        entities=tuple(entities),
        rejected=tuple(rejected),
    )


__all__ = ["intake_document"]
