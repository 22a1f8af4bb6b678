from __future__ import annotations

import hashlib
import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from packages.core.errors import SnapshotNotFound
from packages.core.schemas.result import PatientSummary

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")
_VERSION_FILE = re.compile(r"^v(\d+)\.json$")


class SnapshotStore(ABC):
    """Append-only, versioned log of committed snapshots per patient.

    ``commit`` assigns the next version and never replaces an existing one.
    Every read returns a fresh copy, so nothing a caller does to a returned
    snapshot reaches the stored version.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def commit(self, summary: PatientSummary) -> PatientSummary:
        with self._lock:
            while True:
                version = (self._latest_version(summary.patient_id) or 0) + 1
                committed = summary.model_copy(update={"version": version}, deep=True)
                try:
                    self._write(committed)
                except FileExistsError:
                    # Another writer published this version first.
                    continue
                return committed.model_copy(deep=True)

    def latest(self, patient_id: str) -> Optional[PatientSummary]:
        version = self._latest_version(patient_id)
        if version is None:
            return None
        return self.get(patient_id, version)

    def get(self, patient_id: str, version: int) -> PatientSummary:
        summary = self._read(patient_id, version)
        if summary is None:
            raise SnapshotNotFound(patient_id, version)
        return summary

    @abstractmethod
    def versions(self, patient_id: str) -> List[int]:
        """Committed versions for ``patient_id`` in ascending order."""

    def _latest_version(self, patient_id: str) -> Optional[int]:
        versions = self.versions(patient_id)
        return versions[-1] if versions else None

    @abstractmethod
    def _write(self, summary: PatientSummary) -> None:
        """Publish ``summary``; raise ``FileExistsError`` if its version is taken."""

    @abstractmethod
    def _read(self, patient_id: str, version: int) -> Optional[PatientSummary]:
        """Return a new object on every call, or ``None`` when absent."""


class InMemorySnapshotStore(SnapshotStore):
    """Holds serialized snapshots and re-validates them on read."""

    def __init__(self) -> None:
        super().__init__()
        self._snapshots: Dict[str, Dict[int, str]] = {}

    def versions(self, patient_id: str) -> List[int]:
        return sorted(self._snapshots.get(patient_id, {}))

    def _write(self, summary: PatientSummary) -> None:
        versions = self._snapshots.setdefault(summary.patient_id, {})
        if summary.version in versions:
            raise FileExistsError(summary.version)
        versions[summary.version] = summary.model_dump_json()

    def _read(self, patient_id: str, version: int) -> Optional[PatientSummary]:
        raw = self._snapshots.get(patient_id, {}).get(version)
        if raw is None:
            return None
        return PatientSummary.model_validate_json(raw)


def patient_dir_name(patient_id: str) -> str:
    """Directory name for a patient: the id itself when filesystem-safe, else a digest."""
    if _SAFE_ID.match(patient_id) and patient_id not in (".", ".."):
        return patient_id
    digest = hashlib.sha256(patient_id.encode("utf-8")).hexdigest()
    return f"~{digest}"


class FileSnapshotStore(SnapshotStore):
    """Snapshots as ``<root>/<patient>/v000001.json``, one file per version.

    Versions are published with a hard link, which fails instead of
    overwriting, so several processes can share one root.
    """

    def __init__(self, root: Path) -> None:
        super().__init__()
        self.root = Path(root)

    def _patient_dir(self, patient_id: str) -> Path:
        return self.root / patient_dir_name(patient_id)

    def _path(self, patient_id: str, version: int) -> Path:
        return self._patient_dir(patient_id) / f"v{version:06d}.json"

    def versions(self, patient_id: str) -> List[int]:
        directory = self._patient_dir(patient_id)
        if not directory.is_dir():
            return []
        versions = []
        for path in directory.iterdir():
            match = _VERSION_FILE.match(path.name)
            if match:
                versions.append(int(match.group(1)))
        return sorted(versions)

    def _write(self, summary: PatientSummary) -> None:
        path = self._path(summary.patient_id, summary.version)
        path.parent.mkdir(parents=True, exist_ok=True)
        handle, temp_name = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            with os.fdopen(handle, "w", encoding="utf-8") as temp:
                temp.write(summary.model_dump_json(indent=2))
            os.link(temp_name, path)
        finally:
            os.unlink(temp_name)

    def _read(self, patient_id: str, version: int) -> Optional[PatientSummary]:
        path = self._path(patient_id, version)
        if not path.exists():
            return None
        return PatientSummary.model_validate_json(path.read_text(encoding="utf-8"))


__all__ = ["SnapshotStore", "InMemorySnapshotStore", "FileSnapshotStore", "patient_dir_name"]
