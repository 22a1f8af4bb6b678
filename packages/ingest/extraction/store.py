from __future__ import annotations

import hashlib
import threading
from typing import Dict, List, NamedTuple, Tuple

from packages.core.schemas.chart import MedicalEntity
from packages.core.schemas.result import IngestFailure, IntakeResult


class IntakeView(NamedTuple):
    results: Tuple[IntakeResult, ...]
    failures: Tuple[IngestFailure, ...]
    fingerprint: str


class IntakeStore:
    """Latest intake outcome per (patient, document).

    Recording a document again replaces whatever that document contributed
    before, so re-ingesting never duplicates entities.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._results: Dict[str, Dict[str, IntakeResult]] = {}
        self._failures: Dict[str, Dict[str, IngestFailure]] = {}

    def record_result(self, result: IntakeResult) -> None:
        with self._lock:
            self._results.setdefault(result.patient_id, {})[result.document_id] = result
            self._failures.get(result.patient_id, {}).pop(result.document_id, None)

    def record_failure(self, patient_id: str, failure: IngestFailure) -> None:
        with self._lock:
            self._results.get(patient_id, {}).pop(failure.document_id, None)
            self._failures.setdefault(patient_id, {})[failure.document_id] = failure

    def results(self, patient_id: str) -> List[IntakeResult]:
        with self._lock:
            by_document = dict(self._results.get(patient_id, {}))
        return [by_document[document_id] for document_id in sorted(by_document)]

    def failures(self, patient_id: str) -> List[IngestFailure]:
        with self._lock:
            by_document = dict(self._failures.get(patient_id, {}))
        return [by_document[document_id] for document_id in sorted(by_document)]

    def entities(self, patient_id: str) -> List[MedicalEntity]:
        return [entity for result in self.results(patient_id) for entity in result.entities]

    def view(self, patient_id: str) -> IntakeView:
        """Consistent read of one patient's inputs plus their content hash."""
        with self._lock:
            results = dict(self._results.get(patient_id, {}))
            failures = dict(self._failures.get(patient_id, {}))
        digest = hashlib.sha256()
        for document_id in sorted(results):
            digest.update(b"R")
            digest.update(results[document_id].model_dump_json().encode("utf-8"))
        for document_id in sorted(failures):
            digest.update(b"F")
            digest.update(failures[document_id].model_dump_json().encode("utf-8"))
        return IntakeView(
            results=tuple(results[document_id] for document_id in sorted(results)),
            failures=tuple(failures[document_id] for document_id in sorted(failures)),
            fingerprint=digest.hexdigest(),
        )

    def fingerprint(self, patient_id: str) -> str:
        return self.view(patient_id).fingerprint


__all__ = ["IntakeView", "IntakeStore"]
