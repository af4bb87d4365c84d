"""
scribeline.validation - Dependency checks for ``scribeline doctor``.

Checks that the transcription CLI, ffmpeg and ffprobe can be located, that
the scratch directory has room for extracted audio, and how diarization
will be performed.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Any

import httpx

from scribeline.config import ScribelineConfig
from scribeline.exceptions import DependencyError
from scribeline.tools import PathListResolver, ToolResolver, tool_version

FFMPEG_HINT = "Install with: brew install ffmpeg (macOS) or apt install ffmpeg (Linux)"
TRANSCRIBER_HINT = "Install with: brew install whisperkit-cli, or add its directory to tool_search_paths"


def check_tool(
    resolver: ToolResolver,
    install_hint: str,
    version_flag: str = "-version",
) -> dict[str, str]:
    """Locate a tool and read its version.

    Returns:
        Dict with 'path' and 'version'

    Raises:
        DependencyError: If the tool cannot be located
    """
    path = resolver.locate()
    if path is None:
        raise DependencyError(resolver.name, "not found in search paths or PATH", install_hint)
    return {"path": str(path), "version": tool_version(path, version_flag)}


def check_transcriber(config: ScribelineConfig) -> dict[str, str]:
    resolver = PathListResolver(config.tool_name, config.tool_search_paths)
    return check_tool(resolver, TRANSCRIBER_HINT, version_flag="--version")


def check_ffmpeg(config: ScribelineConfig) -> dict[str, dict[str, str]]:
    """Check ffmpeg and ffprobe.

    Raises:
        DependencyError: If either is missing
    """
    return {
        "ffmpeg": check_tool(
            PathListResolver(config.transcoder_name, config.transcoder_search_paths), FFMPEG_HINT
        ),
        "ffprobe": check_tool(
            PathListResolver(config.probe_name, config.transcoder_search_paths), FFMPEG_HINT
        ),
    }


def check_disk_space(path: Path, required_mb: int) -> dict[str, Any]:
    """Check if there's enough disk space at the given path.

    Args:
        path: Path to check (nearest existing parent is used)
        required_mb: Required space in megabytes

    Returns:
        Dict with 'available_mb', 'required_mb', 'sufficient'
    """
    check_path = path
    while not check_path.exists() and check_path != check_path.parent:
        check_path = check_path.parent

    stat = shutil.disk_usage(check_path)
    available_mb = stat.free // (1024 * 1024)
    return {
        "available_mb": available_mb,
        "required_mb": required_mb,
        "sufficient": available_mb >= required_mb,
    }


def check_diarization_server(url: str, timeout: float = 5.0) -> dict[str, Any]:
    """Check whether the diarization service answers at all.

    Any HTTP response counts as reachable; the endpoint only accepts uploads.

    Returns:
        Dict with 'reachable' and either 'status_code' or 'error'
    """
    try:
        response = httpx.get(url, timeout=timeout)
    except httpx.HTTPError as e:
        return {"reachable": False, "error": str(e)}
    return {"reachable": True, "status_code": response.status_code}

