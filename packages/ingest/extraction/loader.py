from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Dict


def _reader(file_path: Path) -> Callable[[], Any]:
    def read() -> Any:
        with file_path.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    return read


def load_extraction_dir(path: Path) -> Dict[str, Callable[[], Any]]:
    """Map document ids to lazy readers for the extraction JSON files under ``path``.

    Each file is named ``<document_id>.json``. Reading happens when the
    reader is called, so one corrupt file only fails its own document.
    """
    if not path.exists():
        raise FileNotFoundError(f"Extraction path not found: {path}")

    if path.is_file():
        return {path.stem: _reader(path)}

    if not path.is_dir():
        raise FileNotFoundError(f"Extraction directory not found: {path}")

    return {file_path.stem: _reader(file_path) for file_path in sorted(path.glob("*.json"))}


__all__ = ["load_extraction_dir"]
