"""
scribeline.media - Media file discovery and probing.

Finds transcribable files in directories and probes their duration with
ffprobe when it is available.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from scribeline.models import AUDIO_EXTENSIONS, VIDEO_EXTENSIONS, MediaSource
from scribeline.tools import ToolResolver

logger = logging.getLogger(__name__)


def is_media_file(path: Path) -> bool:
    ext = path.suffix.lower().lstrip(".")
    return ext in AUDIO_EXTENSIONS or ext in VIDEO_EXTENSIONS


def find_media_files(directory: Path) -> list[Path]:
    """Recursively find audio and video files, skipping hidden entries.

    Args:
        directory: Directory to scan

    Returns:
        Media files sorted by file name
    """
    found = []
    for path in directory.rglob("*"):
        relative = path.relative_to(directory)
        if any(part.startswith(".") for part in relative.parts):
            continue
        if path.is_file() and is_media_file(path):
            found.append(path)
    return sorted(found, key=lambda p: (p.name, str(p)))


def expand_sources(paths: list[Path]) -> list[MediaSource]:
    """Expand a mix of files and directories into ordered media sources.

    Directories contribute their media files; explicit files are kept even
    with unknown extensions. Duplicates keep their first position.
    """
    sources: list[MediaSource] = []
    seen: set[Path] = set()
    for path in paths:
        files = find_media_files(path) if path.is_dir() else [path]
        for file in files:
            resolved = file.resolve()
            if resolved in seen:
                continue
            seen.add(resolved)
            sources.append(MediaSource.from_path(file))
    return sources


def probe_duration(path: Path, resolver: ToolResolver, timeout: float = 30.0) -> float | None:
    """Probe a media file's duration in seconds using ffprobe.

    Returns None when ffprobe is unavailable or cannot read the file.
    """
    ffprobe = resolver.locate()
    if ffprobe is None:
        return None

    cmd = [
        str(ffprobe),
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "csv=p=0",
        str(path),
    ]
    try:
        proc = subprocess.run(
            cmd, capture_output=True, encoding="utf-8", errors="replace", timeout=timeout
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("ffprobe failed for %s: %s", path, e)
        return None

    if proc.returncode != 0:
        return None
    try:
        return float(proc.stdout.strip())
    except ValueError:
        return None
