"""
scribeline.diarize - Speaker diarization and speaker/segment merging.
"""

from __future__ import annotations

from scribeline.diarize.client import DiarizationClient, parse_spans
from scribeline.diarize.merge import merge_speakers

__all__ = ["DiarizationClient", "merge_speakers", "parse_spans"]
