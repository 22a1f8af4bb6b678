from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from packages.core.schemas.chart import EntityCategory, EventDate, MedicalEntity, SourceReference
from packages.core.schemas.result import Conflict, PartialSummary, PatientSummary, TimelineDiff

_CATEGORY_TITLES = {
    EntityCategory.DIAGNOSIS: "Diagnoses",
    EntityCategory.MEDICATION: "Medications",
    EntityCategory.PROCEDURE: "Procedures",
    EntityCategory.ALLERGY: "Allergies",
    EntityCategory.LAB_TEST: "Lab Tests",
}


def _escape_table(value: object) -> str:
    text = "" if value is None else str(value)
    return text.replace("|", "\\|")


def _format_date(value: Optional[EventDate]) -> str:
    return value.isoformat() if value else "undated"


def _normalize_timestamp(value: Optional[datetime]) -> str:
    if value is None:
        return "unknown"
    return value.isoformat()


def _format_sources(sources: Iterable[SourceReference]) -> str:
    parts = []
    for source in sources:
        page = f" p.{source.page_number}" if source.page_number is not None else ""
        parts.append(f"{source.document_name or source.document_id}{page}")
    return "; ".join(parts) or "none"


def _conflict_lines(conflict: Conflict) -> list[str]:
    fields = ", ".join(conflict.differing_fields) or "unknown"
    lines = [f"- {conflict.category.value}: differing fields {fields}"]
    for value in conflict.conflicting_values:
        documents = ", ".join(value.document_ids)
        lines.append(
            f"  - {value.payload.label()} ({_format_date(value.event_date)}) from {documents}"
        )
    return lines


def _entity_row(entity: MedicalEntity) -> str:
    return "| {date} | {label} | {status} | {confidence:.2f} | {sources} |".format(
        date=_format_date(entity.event_date),
        label=_escape_table(entity.label()),
        status=_escape_table(entity.status or ""),
        confidence=entity.confidence,
        sources=_escape_table(_format_sources(entity.sources)),
    )


def render_summary_md(summary: PatientSummary) -> str:
    entities = summary.entity_index()
    lines: list[str] = [
        "# Patient Record Summary",
        f"Patient ID: {summary.patient_id}",
        f"Version: {summary.version}",
        f"Last updated: {_normalize_timestamp(summary.last_updated)}",
        f"Documents: {len(summary.document_ids)}",
        "",
    ]

    for category in EntityCategory:
        items = summary.entities.get(category) or ()
        lines.append(f"## {_CATEGORY_TITLES[category]}")
        if not items:
            lines.append("None recorded.")
            lines.append("")
            continue
        lines.append("| Date | Entry | Status | Confidence | Sources |")
        lines.append("| --- | --- | --- | --- | --- |")
        for entity in items:
            lines.append(_entity_row(entity))
        lines.append("")

    lines.append("## Conflicts")
    if summary.conflicts:
        for conflict in summary.conflicts:
            lines.extend(_conflict_lines(conflict))
    else:
        lines.append("No cross-document conflicts detected.")
    if summary.excluded_conflict_groups:
        lines.append(f"({summary.excluded_conflict_groups} group(s) could not be compared.)")

    lines.append("")
    lines.append("## Timeline")
    if summary.timeline.events:
        for event in summary.timeline.events:
            entity = entities.get(event.entity_ref)
            label = entity.label() if entity else event.entity_ref
            lines.append(f"- {_format_date(event.timestamp)} [{event.category.value}] {label}")
    else:
        lines.append("No events.")

    lines.append("")
    lines.append("## Ingest Issues")
    if summary.ingest_failures or summary.rejected_entities:
        for failure in summary.ingest_failures:
            lines.append(f"- Document {failure.document_id}: {failure.kind} ({failure.message})")
        for item in summary.rejected_entities:
            fields = ", ".join(item.fields) or "-"
            lines.append(
                f"- Document {item.document_id} entity #{item.index}: {item.kind} [{fields}]"
            )
    else:
        lines.append("None.")

    return "\n".join(lines).strip() + "\n"


def render_partial_md(partial: PartialSummary) -> str:
    lines = [
        "# Patient Record Summary (INCOMPLETE)",
        f"Patient ID: {partial.patient_id}",
        f"Reason: {partial.reason}",
        "",
        "## Ingest Issues",
    ]
    for failure in partial.ingest_failures:
        lines.append(f"- Document {failure.document_id}: {failure.kind} ({failure.message})")
    for item in partial.rejected_entities:
        lines.append(f"- Document {item.document_id} entity #{item.index}: {item.kind}")
    if not (partial.ingest_failures or partial.rejected_entities):
        lines.append("No documents were ingested.")
    return "\n".join(lines).strip() + "\n"


def render_diff_md(diff: TimelineDiff) -> str:
    lines = [
        "# Timeline Changes",
        f"Patient ID: {diff.patient_id}",
        f"From version {diff.from_version} to version {diff.to_version}",
        "",
        "## Added",
    ]
    lines.extend(
        f"- {_format_date(event.timestamp)} [{event.category.value}] {event.entity_ref}"
        for event in diff.added_events
    )
    if not diff.added_events:
        lines.append("None.")
    lines.extend(["", "## Modified"])
    for change in diff.modified_events:
        fields = ", ".join(change.changed_fields) or "-"
        lines.append(f"- [{change.category.value}] fields: {fields}")
    if not diff.modified_events:
        lines.append("None.")
    lines.extend(["", "## No Longer Asserted"])
    lines.extend(
        f"- {_format_date(event.timestamp)} [{event.category.value}] {event.entity_ref}"
        for event in diff.removed_events
    )
    if not diff.removed_events:
        lines.append("None.")
    return "\n".join(lines).strip() + "\n"


__all__ = ["render_summary_md", "render_partial_md", "render_diff_md"]
