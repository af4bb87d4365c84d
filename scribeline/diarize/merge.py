"""
scribeline.diarize.merge - Attach speaker ids to transcript segments.

A segment belongs to the first speaker span whose half-open interval
[start, end) contains the segment's start time.
"""

from __future__ import annotations

from bisect import bisect_right

from scribeline.models import SpeakerSpan, TranscriptSegment


def speaker_at(
    time: float,
    spans: list[SpeakerSpan],
    starts: list[float] | None = None,
) -> str | None:
    """Return the speaker active at ``time`` in spans sorted by start.

    Args:
        time: Point in seconds
        spans: Speaker spans sorted by ``start_seconds``
        starts: Precomputed span starts, to avoid rebuilding them per call

    Returns:
        Speaker id, or None if no span covers ``time``
    """
    if starts is None:
        starts = [s.start_seconds for s in spans]
    # Only spans starting at or before ``time`` can contain it
    for span in spans[: bisect_right(starts, time)]:
        if time < span.end_seconds:
            return span.speaker_id
    return None


def merge_speakers(
    segments: list[TranscriptSegment],
    spans: list[SpeakerSpan],
) -> list[TranscriptSegment]:
    """Copy segments, setting ``speaker_id`` from the diarization spans.

    Segments outside every span get ``speaker_id=None``. Inputs are not
    modified, and merging a merged list again gives the same result.
    """
    ordered = sorted(spans, key=lambda s: s.start_seconds)
    starts = [s.start_seconds for s in ordered]
    return [
        seg.model_copy(update={"speaker_id": speaker_at(seg.start_seconds, ordered, starts)})
        for seg in segments
    ]
