import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from packages.core.audit import AuditAction, InMemoryAuditSink
from packages.core.errors import AggregationCancelled, SnapshotNotFound, ValidationError
from packages.core.schemas.result import PartialSummary, PatientSummary
from packages.pipeline.reconciler import RecordReconciler, RunState
from tests.builders import diagnosis, document, medication, ts


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def _reconciler(**kwargs) -> RecordReconciler:
    kwargs.setdefault("audit_sink", InMemoryAuditSink())
    return RecordReconciler(clock=_Clock(), sleep=lambda _: None, **kwargs)


def _ingest_metformin(reconciler: RecordReconciler, patient_id: str = "p1") -> None:
    reconciler.ingest_document(
        patient_id,
        "doc-a",
        document("doc-a", [medication(dosage="500mg"), diagnosis("Hypertension")], extraction_timestamp=ts(9)),
    )
    reconciler.ingest_document(
        patient_id,
        "doc-b",
        document("doc-b", [medication(dosage="850mg")], extraction_timestamp=ts(10)),
    )


def test_aggregate_commits_versioned_snapshot() -> None:
    reconciler = _reconciler()
    _ingest_metformin(reconciler)

    summary = reconciler.aggregate("p1")

    assert isinstance(summary, PatientSummary)
    assert summary.version == 1
    assert summary.document_ids == ("doc-a", "doc-b")
    assert len(summary.conflicts) == 1
    assert len(summary.timeline.events) == summary.entity_count() == 3
    assert reconciler.last_run("p1").history == [
        RunState.INTAKE_COLLECTING,
        RunState.AGGREGATING,
        RunState.CONFLICT_CHECKING,
        RunState.TIMELINE_BUILDING,
        RunState.SNAPSHOT_COMMITTED,
    ]
    assert reconciler.get_snapshot("p1", 1) == summary
    assert reconciler.get_conflicts("p1") == list(summary.conflicts)
    assert reconciler.get_timeline("p1") == summary.timeline


def test_unchanged_inputs_return_latest_snapshot() -> None:
    reconciler = _reconciler()
    _ingest_metformin(reconciler)

    first = reconciler.aggregate("p1")
    _ingest_metformin(reconciler)
    second = reconciler.aggregate("p1")

    assert second.version == first.version == 1
    assert reconciler.snapshot_store.versions("p1") == [1]


def test_new_document_produces_next_version_and_diff() -> None:
    reconciler = _reconciler()
    _ingest_metformin(reconciler)
    reconciler.aggregate("p1")
    reconciler.ingest_document("p1", "doc-c", document("doc-c", [diagnosis("Diabetes")]))

    second = reconciler.aggregate("p1")
    diff = reconciler.get_diff("p1", 1, 2)

    assert second.version == 2
    assert [event.semantic_key for event in diff.added_events] == ["diabetes"]
    assert reconciler.get_snapshot("p1", 1).version == 1


def test_no_valid_entities_returns_partial_summary() -> None:
    reconciler = _reconciler()
    with pytest.raises(ValidationError):
        reconciler.ingest_document("p1", "doc-a", {"document_id": "doc-a", "entities": None})

    result = reconciler.aggregate("p1")

    assert isinstance(result, PartialSummary)
    assert result.incomplete is True
    assert result.reason == "no_valid_entities"
    assert [failure.document_id for failure in result.ingest_failures] == ["doc-a"]
    assert reconciler.snapshot_store.versions("p1") == []
    assert reconciler.last_run("p1").state == RunState.AGGREGATION_FAILED


def test_no_documents_returns_partial_summary() -> None:
    result = _reconciler().aggregate("p1")

    assert isinstance(result, PartialSummary)
    assert result.reason == "no_documents"


def test_purge_cancels_in_flight_aggregation_without_commit() -> None:
    holder = {}

    def hook(patient_id: str, state: RunState) -> None:
        if state == RunState.CONFLICT_CHECKING:
            holder["reconciler"].purge_session(patient_id)

    reconciler = _reconciler(stage_hook=hook)
    holder["reconciler"] = reconciler
    _ingest_metformin(reconciler)

    with pytest.raises(AggregationCancelled) as excinfo:
        reconciler.aggregate("p1")

    assert excinfo.value.stage == RunState.CONFLICT_CHECKING.value
    assert reconciler.snapshot_store.versions("p1") == []
    assert reconciler.last_run("p1").state == RunState.ABORTED
    outcomes = [event.outcome for event in reconciler.audit_sink.events]
    assert outcomes == ["cancelled"]


def test_purge_without_running_aggregation() -> None:
    assert _reconciler().purge_session("p1") is False


def test_audit_events_carry_identifiers_only() -> None:
    reconciler = _reconciler()
    _ingest_metformin(reconciler)
    summary = reconciler.aggregate("p1")
    reconciler.get_diff("p1", 1, 1)

    sink = reconciler.audit_sink
    assert sink.actions() == [
        AuditAction.AGGREGATE.value,
        AuditAction.CONFLICT_DETECTED.value,
        AuditAction.DIFF_GENERATED.value,
    ]
    conflict_event = sink.events[1]
    assert conflict_event.conflict_id == summary.conflicts[0].id
    dumped = " ".join(event.model_dump_json() for event in sink.events)
    for value in ("Metformin", "metformin", "500mg", "850mg", "Hypertension"):
        assert value not in dumped


def test_missing_snapshot_raises() -> None:
    reconciler = _reconciler()
    with pytest.raises(SnapshotNotFound):
        reconciler.get_timeline("p1")
    with pytest.raises(SnapshotNotFound):
        reconciler.get_diff("p1", 1, 2)


def test_same_patient_aggregations_are_serialized() -> None:
    active = {"count": 0, "max": 0}
    lock = threading.Lock()

    def hook(patient_id: str, state: RunState) -> None:
        with lock:
            if state == RunState.AGGREGATING:
                active["count"] += 1
                active["max"] = max(active["max"], active["count"])
            elif state == RunState.SNAPSHOT_COMMITTED:
                active["count"] -= 1
        time.sleep(0.01)

    reconciler = _reconciler(stage_hook=hook)
    _ingest_metformin(reconciler)
    barrier = threading.Barrier(4)
    results = []

    def run(index: int) -> None:
        reconciler.ingest_document(
            "p1", f"doc-x{index}", document(f"doc-x{index}", [diagnosis(f"Condition {index}")])
        )
        barrier.wait()
        results.append(reconciler.aggregate("p1"))

    threads = [threading.Thread(target=run, args=(index,)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert active["max"] == 1
    versions = reconciler.snapshot_store.versions("p1")
    assert versions == list(range(1, len(versions) + 1))
    assert len(results) == 4


def test_fetched_snapshot_cannot_change_the_committed_version() -> None:
    reconciler = _reconciler()
    reconciler.ingest_document("p1", "doc-a", document("doc-a", [diagnosis("Asthma")]))
    committed = reconciler.aggregate("p1")

    committed.entities.clear()
    reconciler.get_snapshot("p1", 1).entities.clear()
    reconciler.get_snapshot("p1").entities.clear()

    assert reconciler.get_snapshot("p1", 1).entity_count() == 1


def test_purge_after_commit_reports_nothing_cancelled() -> None:
    purges = []

    def hook(patient_id: str, state: RunState) -> None:
        if state == RunState.SNAPSHOT_COMMITTED:
            purges.append(holder["reconciler"].purge_session(patient_id))

    holder = {}
    reconciler = _reconciler(stage_hook=hook)
    holder["reconciler"] = reconciler
    _ingest_metformin(reconciler)

    summary = reconciler.aggregate("p1")

    assert purges == [False]
    assert summary.version == 1
    assert reconciler.snapshot_store.versions("p1") == [1]


def test_purge_during_final_stage_prevents_commit() -> None:
    purges = []

    def hook(patient_id: str, state: RunState) -> None:
        if state == RunState.TIMELINE_BUILDING:
            purges.append(holder["reconciler"].purge_session(patient_id))

    holder = {}
    reconciler = _reconciler(stage_hook=hook)
    holder["reconciler"] = reconciler
    _ingest_metformin(reconciler)

    with pytest.raises(AggregationCancelled) as excinfo:
        reconciler.aggregate("p1")

    assert purges == [True]
    assert excinfo.value.stage == RunState.TIMELINE_BUILDING.value
    assert reconciler.snapshot_store.versions("p1") == []


def test_other_patients_aggregate_while_one_is_blocked() -> None:
    entered = threading.Event()
    release = threading.Event()

    def hook(patient_id: str, state: RunState) -> None:
        if patient_id == "p1" and state == RunState.AGGREGATING:
            entered.set()
            release.wait(timeout=5)

    reconciler = _reconciler(stage_hook=hook)
    _ingest_metformin(reconciler, "p1")
    _ingest_metformin(reconciler, "p2")
    blocked = threading.Thread(target=reconciler.aggregate, args=("p1",))
    blocked.start()
    try:
        assert entered.wait(timeout=5)

        other = reconciler.aggregate("p2")

        assert other.version == 1
        assert not release.is_set()
        assert reconciler.snapshot_store.versions("p1") == []
    finally:
        release.set()
        blocked.join(timeout=5)

    assert reconciler.snapshot_store.versions("p1") == [1]


def test_idle_patient_locks_are_released() -> None:
    reconciler = _reconciler()
    for patient_id in ("p1", "p2", "p3"):
        _ingest_metformin(reconciler, patient_id)
        reconciler.aggregate(patient_id)

    assert reconciler._slots == {}
    assert reconciler._cancellations == {}


def test_run_history_is_bounded() -> None:
    reconciler = _reconciler(run_history_limit=2)
    for patient_id in ("p1", "p2", "p3"):
        _ingest_metformin(reconciler, patient_id)
        reconciler.aggregate(patient_id)

    assert reconciler.last_run("p1") is None
    assert reconciler.last_run("p3").state == RunState.SNAPSHOT_COMMITTED
