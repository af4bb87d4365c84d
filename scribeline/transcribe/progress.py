"""
scribeline.transcribe.progress - Live progress and preview decoding.

Turns raw output lines of the transcription CLI into ProgressEvents:
elapsed/remaining timers, the completion fraction, preview text from
timestamped segment lines, and a coarse status string.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable

from scribeline.models import ProgressEvent, ProgressState
from scribeline.transcribe.report import clean_segment_text
from scribeline.utils import parse_clock

logger = logging.getLogger(__name__)

ANSI_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b[@-Z\\-_]")
CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")

ELAPSED_RE = re.compile(r"elapsed[^:]*:\s*([^|,]+)", re.IGNORECASE)
REMAINING_RE = re.compile(r"remaining[^:]*:\s*([^|,]+)", re.IGNORECASE)
PREVIEW_RE = re.compile(r"^\s*\[\s*([\d:.]+)\s*-->\s*([\d:.]+)\s*\]\s*(.*)$")

# First match wins
STATUS_KEYWORDS: list[tuple[tuple[str, ...], str]] = [
    (("loading", "model"), "Loading model"),
    (("transcribing",), "Transcribing"),
    (("transcription of",), "Extracting text"),
    (("error", "failed"), "Error reported"),
    (("complete", "done"), "Done"),
    (("processing", "audio"), "Processing audio"),
]


def strip_terminal_codes(line: str) -> str:
    """Remove ANSI escape sequences and stray control characters."""
    return CONTROL_CHARS_RE.sub("", ANSI_RE.sub("", line))


def status_for(line: str) -> str | None:
    lowered = line.lower()
    for keywords, status in STATUS_KEYWORDS:
        if any(k in lowered for k in keywords):
            return status
    return None


class ProgressParser:
    """Stateful line decoder for one job.

    ``feed`` never raises. Errors raised by the callback are logged and
    swallowed so a broken observer cannot fail the job.
    """

    def __init__(
        self,
        state: ProgressState | None = None,
        callback: Callable[[ProgressEvent], None] | None = None,
    ) -> None:
        self.state = state or ProgressState()
        self.callback = callback

    def feed(self, line: str) -> ProgressEvent | None:
        clean = strip_terminal_codes(line).strip()
        if not clean:
            return None

        # Preview text may itself contain "elapsed:" or "remaining:"
        event = self._parse_preview(clean) or self._parse_progress(clean) or self._parse_status(clean)
        if event is None:
            self.state.unrecognized.append(clean)
            return None

        self._emit(event)
        return event

    def _parse_progress(self, line: str) -> ProgressEvent | None:
        elapsed_match = ELAPSED_RE.search(line)
        remaining_match = REMAINING_RE.search(line)
        if elapsed_match is None or remaining_match is None:
            return None

        state = self.state
        elapsed = parse_clock(elapsed_match.group(1))
        if elapsed is not None:
            state.elapsed_seconds = elapsed
        # Placeholders like "Estimating..." mean nothing is known yet
        state.remaining_seconds = parse_clock(remaining_match.group(1)) or 0.0

        e, r = state.elapsed_seconds, state.remaining_seconds
        if e is not None and r:
            state.fraction = e / (e + r)

        return ProgressEvent(
            elapsed_seconds=state.elapsed_seconds,
            remaining_seconds=state.remaining_seconds,
            fraction=state.fraction,
        )

    def _parse_preview(self, line: str) -> ProgressEvent | None:
        match = PREVIEW_RE.match(line)
        if match is None:
            return None
        text = clean_segment_text(match.group(3))
        if not text:
            return ProgressEvent()
        self.state.append_preview(text)
        self.state.status = "Transcribing"
        return ProgressEvent(preview_append=text, status=self.state.status)

    def _parse_status(self, line: str) -> ProgressEvent | None:
        status = status_for(line)
        if status is None:
            return None
        self.state.status = status
        return ProgressEvent(status=status)

    def _emit(self, event: ProgressEvent) -> None:
        if self.callback is None:
            return
        try:
            self.callback(event)
        except Exception:
            logger.exception("Progress callback failed")
