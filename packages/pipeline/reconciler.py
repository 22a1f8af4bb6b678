from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from packages.core.audit import AuditAction, AuditEvent, AuditSink, LoggingAuditSink
from packages.core.config import ReconcilerSettings
from packages.core.errors import (
    AggregationCancelled,
    AggregationIncomplete,
    SnapshotNotFound,
    ValidationError,
)
from packages.core.schemas.chart import MedicalEntity
from packages.core.schemas.result import (
    BatchReport,
    Conflict,
    IngestFailure,
    IntakeResult,
    PartialSummary,
    PatientSummary,
    Timeline,
    TimelineDiff,
)
from packages.ingest.extraction.batch import ExtractionFetcher, ingest_batch
from packages.ingest.extraction.intake import intake_document
from packages.ingest.extraction.store import IntakeStore, IntakeView
from packages.pipeline.steps.aggregate import aggregate_entities
from packages.pipeline.steps.conflicts import detect_conflicts
from packages.pipeline.steps.diff import diff_snapshots
from packages.pipeline.steps.timeline import build_timeline
from packages.pipeline.store import InMemorySnapshotStore, SnapshotStore

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    INTAKE_COLLECTING = "intake-collecting"
    AGGREGATING = "aggregating"
    CONFLICT_CHECKING = "conflict-checking"
    TIMELINE_BUILDING = "timeline-building"
    SNAPSHOT_COMMITTED = "snapshot-committed"
    AGGREGATION_FAILED = "aggregation-failed"
    ABORTED = "aborted"


_TRANSITIONS = {
    RunState.INTAKE_COLLECTING: {
        RunState.AGGREGATING,
        RunState.AGGREGATION_FAILED,
        RunState.ABORTED,
    },
    RunState.AGGREGATING: {RunState.CONFLICT_CHECKING, RunState.ABORTED},
    RunState.CONFLICT_CHECKING: {RunState.TIMELINE_BUILDING, RunState.ABORTED},
    RunState.TIMELINE_BUILDING: {RunState.SNAPSHOT_COMMITTED, RunState.ABORTED},
    RunState.SNAPSHOT_COMMITTED: set(),
    RunState.AGGREGATION_FAILED: set(),
    RunState.ABORTED: set(),
}

StageHook = Callable[[str, RunState], None]


class AggregationRun:
    def __init__(self, patient_id: str, hook: Optional[StageHook] = None) -> None:
        self.patient_id = patient_id
        self.state = RunState.INTAKE_COLLECTING
        self.history: List[RunState] = [self.state]
        self._hook = hook

    @property
    def finished(self) -> bool:
        return not _TRANSITIONS[self.state]

    def advance(self, state: RunState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal run transition {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)
        if self._hook is not None:
            self._hook(self.patient_id, state)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _collect_entities(
    patient_id: str, results: Tuple[IntakeResult, ...], failures: Tuple[IngestFailure, ...]
) -> List[MedicalEntity]:
    entities = [entity for result in results for entity in result.entities]
    if not entities:
        reason = "no_valid_entities" if (results or failures) else "no_documents"
        raise AggregationIncomplete(patient_id, reason)
    return entities


class _Cancellation:
    """Purge signal for one run.

    ``lock`` is held across the final check and the commit, so a purge either
    lands before the commit and stops it, or finds the run closed.
    """

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.requested = False
        self.closed = False

    def request(self) -> bool:
        with self.lock:
            if self.closed:
                return False
            self.requested = True
            return True


class _PatientSlot:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


_RUN_HISTORY_LIMIT = 1024


class RecordReconciler:
    """Per-patient reconciliation service.

    Intake runs in parallel per document. Aggregation for one patient is
    serialized behind a per-patient lock and commits all-or-nothing; runs for
    different patients do not block each other.
    """

    def __init__(
        self,
        settings: Optional[ReconcilerSettings] = None,
        *,
        intake_store: Optional[IntakeStore] = None,
        snapshot_store: Optional[SnapshotStore] = None,
        audit_sink: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
        stage_hook: Optional[StageHook] = None,
        run_history_limit: int = _RUN_HISTORY_LIMIT,
    ) -> None:
        self.settings = settings or ReconcilerSettings()
        self.intake_store = intake_store or IntakeStore()
        self.snapshot_store = snapshot_store or InMemorySnapshotStore()
        self.audit_sink = audit_sink or LoggingAuditSink()
        self._clock = clock
        self._sleep = sleep
        self._stage_hook = stage_hook
        self._run_history_limit = run_history_limit
        self._guard = threading.Lock()
        self._slots: Dict[str, _PatientSlot] = {}
        self._cancellations: Dict[str, _Cancellation] = {}
        self._runs: OrderedDict[str, AggregationRun] = OrderedDict()

    @contextmanager
    def _exclusive(self, patient_id: str) -> Iterator[None]:
        """Serialize work for one patient; the slot is dropped once nobody waits on it."""
        with self._guard:
            slot = self._slots.get(patient_id)
            if slot is None:
                slot = _PatientSlot()
                self._slots[patient_id] = slot
            slot.users += 1
        try:
            with slot.lock:
                yield
        finally:
            with self._guard:
                slot.users -= 1
                if slot.users == 0:
                    self._slots.pop(patient_id, None)

    def _remember_run(self, run: AggregationRun) -> None:
        with self._guard:
            self._runs[run.patient_id] = run
            self._runs.move_to_end(run.patient_id)
            while len(self._runs) > self._run_history_limit:
                self._runs.popitem(last=False)

    def ingest_document(self, patient_id: str, document_id: str, raw: Any) -> IntakeResult:
        """Intake a document payload already in hand, replacing any earlier intake of it."""
        try:
            result = intake_document(patient_id, document_id, raw, self.settings)
        except ValidationError as exc:
            self.intake_store.record_failure(
                patient_id,
                IngestFailure(document_id=document_id, kind=exc.kind, message=exc.reason),
            )
            raise
        self.intake_store.record_result(result)
        return result

    def ingest_documents(
        self, patient_id: str, fetchers: Mapping[str, ExtractionFetcher]
    ) -> BatchReport:
        return ingest_batch(
            patient_id,
            fetchers,
            self.settings,
            store=self.intake_store,
            sleep=self._sleep,
        )

    def aggregate(self, patient_id: str) -> Union[PatientSummary, PartialSummary]:
        """Commit a new snapshot, or return the latest one when inputs are unchanged.

        Returns a ``PartialSummary`` flagged incomplete when no valid entity
        is available. Raises ``AggregationCancelled`` when the patient's
        session is purged mid-run; nothing is committed in that case.
        """
        with self._exclusive(patient_id):
            view = self.intake_store.view(patient_id)
            latest = self.snapshot_store.latest(patient_id)
            if latest is not None and latest.input_fingerprint == view.fingerprint:
                logger.info(
                    "Aggregation inputs unchanged patient_id=%s version=%d",
                    patient_id,
                    latest.version,
                )
                self._audit(AuditAction.AGGREGATE, patient_id, "unchanged", version=latest.version)
                return latest

            cancel = _Cancellation()
            run = AggregationRun(patient_id, hook=self._stage_hook)
            with self._guard:
                self._cancellations[patient_id] = cancel
            self._remember_run(run)
            try:
                return self._run(patient_id, run, cancel, view)
            except AggregationCancelled as exc:
                run.advance(RunState.ABORTED)
                logger.warning(
                    "Aggregation aborted patient_id=%s stage=%s", patient_id, exc.stage
                )
                self._audit(AuditAction.AGGREGATE, patient_id, "cancelled")
                raise
            finally:
                with cancel.lock:
                    cancel.closed = True
                with self._guard:
                    if self._cancellations.get(patient_id) is cancel:
                        del self._cancellations[patient_id]

    def _checkpoint(self, run: AggregationRun, cancel: _Cancellation) -> None:
        if cancel.requested:
            raise AggregationCancelled(run.patient_id, run.state.value)

    def _run(
        self,
        patient_id: str,
        run: AggregationRun,
        cancel: _Cancellation,
        view: IntakeView,
    ) -> Union[PatientSummary, PartialSummary]:
        results = view.results
        failures = view.failures
        rejected = tuple(item for result in results for item in result.rejected)
        self._checkpoint(run, cancel)

        try:
            entities = _collect_entities(patient_id, results, failures)
        except AggregationIncomplete as exc:
            with cancel.lock:
                cancel.closed = True
            run.advance(RunState.AGGREGATION_FAILED)
            logger.warning(
                "Aggregation failed patient_id=%s reason=%s failed_documents=%d",
                patient_id,
                exc.reason,
                len(failures),
            )
            self._audit(
                AuditAction.AGGREGATE,
                patient_id,
                "incomplete",
                counts={"failed_documents": len(failures), "rejected_entities": len(rejected)},
            )
            return PartialSummary(
                patient_id=patient_id,
                reason=exc.reason,
                ingest_failures=failures,
                rejected_entities=rejected,
                last_updated=self._clock(),
            )

        run.advance(RunState.AGGREGATING)
        grouped = aggregate_entities(entities)
        self._checkpoint(run, cancel)

        run.advance(RunState.CONFLICT_CHECKING)
        now = self._clock()
        scan = detect_conflicts(grouped, detected_at=now)
        self._checkpoint(run, cancel)

        run.advance(RunState.TIMELINE_BUILDING)
        timeline = build_timeline(grouped)

        summary = PatientSummary(
            patient_id=patient_id,
            entities={category: tuple(items) for category, items in grouped.items()},
            timeline=timeline,
            conflicts=tuple(scan.conflicts),
            last_updated=now,
            document_ids=tuple(result.document_id for result in results),
            ingest_failures=failures,
            rejected_entities=rejected,
            excluded_conflict_groups=scan.excluded_groups,
            input_fingerprint=view.fingerprint,
        )
        with cancel.lock:
            self._checkpoint(run, cancel)
            committed = self.snapshot_store.commit(summary)
            cancel.closed = True
        run.advance(RunState.SNAPSHOT_COMMITTED)

        logger.info(
            "Snapshot committed patient_id=%s version=%d entities=%d conflicts=%d documents=%d",
            patient_id,
            committed.version,
            committed.entity_count(),
            len(committed.conflicts),
            len(committed.document_ids),
        )
        self._audit(
            AuditAction.AGGREGATE,
            patient_id,
            "committed",
            version=committed.version,
            counts={
                "documents": len(committed.document_ids),
                "failed_documents": len(failures),
                "entities": committed.entity_count(),
                "conflicts": len(committed.conflicts),
            },
        )
        for conflict in committed.conflicts:
            self._audit(
                AuditAction.CONFLICT_DETECTED,
                patient_id,
                "flagged",
                version=committed.version,
                conflict_id=conflict.id,
                category=conflict.category,
                counts={"documents": len(conflict.document_ids)},
            )
        return committed

    def purge_session(self, patient_id: str) -> bool:
        """Abort the in-flight run for ``patient_id``.

        Returns ``True`` only when the run will not commit. A run that has
        already committed, or no run at all, gives ``False``.
        """
        with self._guard:
            cancel = self._cancellations.get(patient_id)
        if cancel is None or not cancel.request():
            return False
        logger.warning("Session purged, cancelling aggregation patient_id=%s", patient_id)
        return True

    def last_run(self, patient_id: str) -> Optional[AggregationRun]:
        with self._guard:
            return self._runs.get(patient_id)

    def get_snapshot(self, patient_id: str, version: Optional[int] = None) -> PatientSummary:
        if version is None:
            latest = self.snapshot_store.latest(patient_id)
            if latest is None:
                raise SnapshotNotFound(patient_id)
            return latest
        return self.snapshot_store.get(patient_id, version)

    def get_timeline(self, patient_id: str) -> Timeline:
        return self.get_snapshot(patient_id).timeline

    def get_conflicts(self, patient_id: str) -> List[Conflict]:
        return list(self.get_snapshot(patient_id).conflicts)

    def get_diff(self, patient_id: str, from_version: int, to_version: int) -> TimelineDiff:
        previous = self.snapshot_store.get(patient_id, from_version)
        current = self.snapshot_store.get(patient_id, to_version)
        diff = diff_snapshots(previous, current, generated_at=self._clock())
        self._audit(
            AuditAction.DIFF_GENERATED,
            patient_id,
            "generated",
            from_version=from_version,
            to_version=to_version,
            counts={
                "added": len(diff.added_events),
                "modified": len(diff.modified_events),
                "removed": len(diff.removed_events),
            },
        )
        return diff

    def _audit(self, action: AuditAction, patient_id: str, outcome: str, **fields: Any) -> None:
        self.audit_sink.emit(
            AuditEvent(
                action=action,
                patient_id=patient_id,
                timestamp=self._clock(),
                outcome=outcome,
                **fields,
            )
        )


__all__ = ["RunState", "AggregationRun", "RecordReconciler"]
