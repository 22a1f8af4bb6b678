"""Failure taxonomy for intake and reconciliation.

Messages built here carry identifiers, categories, field names and failure
kinds only. Extracted values must never reach an exception message.
"""
from __future__ import annotations

from typing import Iterable, Optional


class ReconcilerError(Exception):
    kind = "reconciler_error"


class ValidationError(ReconcilerError):
    """A malformed entity or document. Dropped and reported, never fatal to a batch."""

    kind = "validation_error"

    def __init__(
        self,
        reason: str,
        *,
        document_id: Optional[str] = None,
        category: Optional[str] = None,
        fields: Iterable[str] = (),
    ) -> None:
        self.reason = reason
        self.document_id = document_id
        self.category = category
        self.fields = tuple(sorted(set(fields)))
        parts = [f"reason={reason}"]
        if document_id:
            parts.append(f"document_id={document_id}")
        if category:
            parts.append(f"category={category}")
        if self.fields:
            parts.append(f"fields={','.join(self.fields)}")
        super().__init__("validation failed: " + " ".join(parts))


class TransientExtractionError(ReconcilerError):
    """Raised by the extraction collaborator for retryable failures (timeouts, 5xx)."""

    kind = "transient_extraction_error"


class PermanentIngestFailure(ReconcilerError):
    kind = "permanent_ingest_failure"

    def __init__(self, document_id: str, attempts: int, cause: str) -> None:
        self.document_id = document_id
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"document {document_id} failed permanently after {attempts} attempt(s): {cause}"
        )


class AggregationIncomplete(ReconcilerError):
    kind = "aggregation_incomplete"

    def __init__(self, patient_id: str, reason: str) -> None:
        self.patient_id = patient_id
        self.reason = reason
        super().__init__(f"aggregation incomplete for patient {patient_id}: {reason}")


class ConflictAnalysisError(ReconcilerError):
    kind = "conflict_analysis_error"

    def __init__(self, category: str, reason: str) -> None:
        self.category = category
        self.reason = reason
        super().__init__(f"conflict analysis failed: category={category} reason={reason}")


class AggregationCancelled(ReconcilerError):
    kind = "aggregation_cancelled"

    def __init__(self, patient_id: str, stage: str) -> None:
        self.patient_id = patient_id
        self.stage = stage
        super().__init__(f"aggregation for patient {patient_id} cancelled during {stage}")


class SnapshotNotFound(ReconcilerError):
    kind = "snapshot_not_found"

    def __init__(self, patient_id: str, version: Optional[int] = None) -> None:
        self.patient_id = patient_id
        self.version = version
        if version is None:
            message = f"no committed snapshot for patient {patient_id}"
        else:
            message = f"snapshot version {version} not found for patient {patient_id}"
        super().__init__(message)


__all__ = [
    "ReconcilerError",
    "ValidationError",
    "TransientExtractionError",
    "PermanentIngestFailure",
    "AggregationIncomplete",
    "ConflictAnalysisError",
    "AggregationCancelled",
    "SnapshotNotFound",
]
