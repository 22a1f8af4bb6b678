from __future__ import annotations

import threading
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from packages.core.config import ReconcilerSettings
from packages.core.errors import AggregationCancelled, SnapshotNotFound, ValidationError
from packages.pipeline.reconciler import RecordReconciler
from packages.pipeline.store import FileSnapshotStore

router = APIRouter(prefix="/v1/patients")

_reconciler: Optional[RecordReconciler] = None
_reconciler_lock = threading.Lock()


def get_reconciler() -> RecordReconciler:
    global _reconciler
    with _reconciler_lock:
        if _reconciler is None:
            settings = ReconcilerSettings.from_env()
            snapshot_store = (
                FileSnapshotStore(settings.snapshot_dir) if settings.snapshot_dir else None
            )
            _reconciler = RecordReconciler(settings, snapshot_store=snapshot_store)
        return _reconciler


def _error(status: int, code: str, message: str, detail: Optional[dict] = None) -> JSONResponse:
    payload = {"error": {"code": code, "message": message, "detail": detail or {}}}
    return JSONResponse(status_code=status, content=payload)


def _ok(payload: Any) -> JSONResponse:
    return JSONResponse(status_code=200, content=jsonable_encoder(payload))


@router.post("/{patient_id}/documents/{document_id}")
def ingest_document(
    patient_id: str,
    document_id: str,
    payload: Dict[str, Any] = Body(...),
    reconciler: RecordReconciler = Depends(get_reconciler),
) -> JSONResponse:
    try:
        result = reconciler.ingest_document(patient_id, document_id, payload)
    except ValidationError as exc:
        return _error(
            422,
            "invalid_document",
            "extraction result rejected",
            {"document_id": document_id, "reason": exc.reason},
        )
    return _ok(
        {
            "patient_id": patient_id,
            "document_id": document_id,
            "accepted": len(result.entities),
            "rejected": [item.model_dump(mode="json") for item in result.rejected],
        }
    )


@router.post("/{patient_id}/aggregate")
def aggregate(
    patient_id: str, reconciler: RecordReconciler = Depends(get_reconciler)
) -> JSONResponse:
    try:
        summary = reconciler.aggregate(patient_id)
    except AggregationCancelled as exc:
        return _error(409, "aggregation_cancelled", "aggregation was cancelled", {"stage": exc.stage})
    return _ok(summary)


@router.get("/{patient_id}/timeline")
def timeline(
    patient_id: str, reconciler: RecordReconciler = Depends(get_reconciler)
) -> JSONResponse:
    try:
        return _ok(reconciler.get_timeline(patient_id))
    except SnapshotNotFound:
        return _error(404, "not_found", "no committed snapshot", {"patient_id": patient_id})


@router.get("/{patient_id}/conflicts")
def conflicts(
    patient_id: str, reconciler: RecordReconciler = Depends(get_reconciler)
) -> JSONResponse:
    try:
        return _ok(reconciler.get_conflicts(patient_id))
    except SnapshotNotFound:
        return _error(404, "not_found", "no committed snapshot", {"patient_id": patient_id})


@router.get("/{patient_id}/snapshots/{version}")
def snapshot(
    patient_id: str, version: int, reconciler: RecordReconciler = Depends(get_reconciler)
) -> JSONResponse:
    try:
        return _ok(reconciler.get_snapshot(patient_id, version))
    except SnapshotNotFound:
        return _error(
            404, "not_found", "snapshot not found", {"patient_id": patient_id, "version": version}
        )


@router.get("/{patient_id}/diff")
def diff(
    patient_id: str,
    from_version: int = Query(..., ge=1),
    to_version: int = Query(..., ge=1),
    reconciler: RecordReconciler = Depends(get_reconciler),
) -> JSONResponse:
    try:
        return _ok(reconciler.get_diff(patient_id, from_version, to_version))
    except SnapshotNotFound as exc:
        return _error(
            404,
            "not_found",
            "snapshot not found",
            {"patient_id": patient_id, "version": exc.version},
        )


@router.post("/{patient_id}/session/purge")
def purge_session(
    patient_id: str, reconciler: RecordReconciler = Depends(get_reconciler)
) -> JSONResponse:
    cancelled = reconciler.purge_session(patient_id)
    return _ok({"patient_id": patient_id, "cancelled": cancelled})
