from __future__ import annotations

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from apps.api.routers.patients import router as patients_router
from packages.core.config import ReconcilerSettings

app = FastAPI(title="Patient Record Reconciler API")
app.include_router(patients_router)

@app.get("/")
def root() -> dict:
    return {
        "name": "patient-record-reconciler",
        "status": "ok",
        "endpoints": ["/healthz", "/readyz", "/v1/patients"],
    }


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> JSONResponse:
    try:
        ReconcilerSettings.from_env()
    except Exception as exc:
        return JSONResponse(status_code=500, content={"status": "error", "detail": str(exc)})
    return JSONResponse(status_code=200, content={"status": "ok"})


__all__ = ["app"]
