"""
scribeline.io - File helpers for reports and batch results.

Reports written by the transcription CLI are read here; the CLI's ``--output``
file is written atomically so an interrupted batch never leaves half a file.
"""

from __future__ import annotations

import json
import tempfile
from pathlib import Path
from typing import Any


def read_json(path: Path) -> Any:
    """Read a UTF-8 JSON file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        json.JSONDecodeError: If the file contains invalid JSON
    """
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def json_files_by_age(directory: Path) -> list[Path]:
    """List ``*.json`` files in a directory, oldest first by mtime.

    A missing directory yields an empty list.
    """
    if not directory.is_dir():
        return []
    return sorted(directory.glob("*.json"), key=lambda p: p.stat().st_mtime)


def write_json(path: Path, data: Any, indent: int = 2) -> None:
    """Write JSON next to ``path`` and move it into place.

    Args:
        path: Destination; parent directories are created
        data: JSON-serializable data
        indent: Indentation for pretty printing
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        delete=False,
        suffix=".tmp",
    ) as tmp:
        tmp_path = Path(tmp.name)
        try:
            json.dump(data, tmp, indent=indent, ensure_ascii=False)
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise
    tmp_path.replace(path)


def write_batch_results(path: Path, summary, results) -> None:
    """Write a batch summary and its job results as one JSON document."""
    write_json(
        path,
        {
            "summary": summary.model_dump(),
            "results": [r.model_dump(mode="json") for r in results],
        },
    )
