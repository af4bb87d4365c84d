"""
scribeline.tools - Locating external executables.

Every external binary (the transcription CLI, ffmpeg, ffprobe) is found
through a ToolResolver so tests can substitute a fake instead of touching
the real filesystem or PATH.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class ToolResolver(Protocol):
    """Anything that can locate one executable."""

    name: str

    def locate(self) -> Path | None: ...


class PathListResolver:
    """Check a fixed list of install directories, then PATH."""

    def __init__(self, name: str, search_paths: list[str] | None = None, use_path: bool = True):
        self.name = name
        self.search_paths = search_paths or []
        self.use_path = use_path

    def candidates(self) -> list[Path]:
        return [Path(p).expanduser() / self.name for p in self.search_paths]

    def locate(self) -> Path | None:
        for candidate in self.candidates():
            if candidate.is_file() and os.access(candidate, os.X_OK):
                logger.debug("Found %s at %s", self.name, candidate)
                return candidate

        if self.use_path:
            found = shutil.which(self.name)
            if found:
                logger.debug("Found %s via PATH: %s", self.name, found)
                return Path(found)

        logger.debug(
            "%s not found. Checked: %s",
            self.name,
            ", ".join(str(c) for c in self.candidates()) or "(no fixed paths)",
        )
        return None


class StaticResolver:
    """Resolver pinned to a known path (or to nothing)."""

    def __init__(self, path: Path | str | None, name: str | None = None):
        self.path = Path(path) if path is not None else None
        self.name = name or (self.path.name if self.path else "tool")

    def locate(self) -> Path | None:
        return self.path


def tool_version(path: Path, flag: str = "-version", timeout: float = 5.0) -> str:
    """Return the first line of a tool's version output, or 'unknown'."""
    try:
        proc = subprocess.run(
            [str(path), flag],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (OSError, subprocess.SubprocessError):
        return "unknown"
    output = (proc.stdout or proc.stderr).strip()
    return output.splitlines()[0] if output else "unknown"
