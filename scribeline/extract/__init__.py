"""
scribeline.extract - Audio extraction from video files.

Pipeline Stage 1: turn a (possibly damaged) video container into a single
decodable scratch audio file via an ordered fallback chain.
"""

from __future__ import annotations

from scribeline.extract.audio import AudioExtractor

__all__ = ["AudioExtractor"]
