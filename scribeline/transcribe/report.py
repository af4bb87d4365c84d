"""
scribeline.transcribe.report - Transcript recovery from report files and output.

The transcription CLI writes a JSON report into the directory passed as
``--report-path``. That report is the primary source of text and segment
timings; when it is missing or unreadable, the text following the
"Transcription of ..." line in the captured output is used instead.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from scribeline.exceptions import EmptyResultError, ReportParseError
from scribeline.io import json_files_by_age, read_json
from scribeline.models import TranscriptSegment

logger = logging.getLogger(__name__)

CONTROL_TOKEN_RE = re.compile(r"<\|[^|>]*\|>")
MULTI_SPACE_RE = re.compile(r"\s{2,}")

TRANSCRIPTION_MARKERS = ("Transcription of", "Transcription:")
OUTPUT_TEXT_MARKER = "Transcription of"

SEGMENT_KEYS = ("segments", "transcriptionSegments")


def clean_segment_text(text: str) -> str:
    """Remove model control tokens like ``<|en|>`` and collapse whitespace."""
    return MULTI_SPACE_RE.sub(" ", CONTROL_TOKEN_RE.sub("", text)).strip()


def has_transcription_marker(output: str) -> bool:
    """True if captured output shows the tool got as far as printing text."""
    return any(marker in output for marker in TRANSCRIPTION_MARKERS)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class ParsedResult(BaseModel):
    """Text and segments recovered for one job."""

    full_text: str
    segments: list[TranscriptSegment] = Field(default_factory=list)
    language: str | None = None
    from_report: bool = True


class ResultParser:
    """Recover a transcript from a report directory or captured output."""

    def find_report(self, report_dir: Path) -> Path | None:
        """Locate the report file, preferring the newest when several exist."""
        reports = json_files_by_age(report_dir)
        if not reports:
            return None
        if len(reports) > 1:
            logger.warning(
                "Found %d report files in %s, using newest: %s",
                len(reports),
                report_dir,
                reports[-1].name,
            )
        return reports[-1]

    def parse_segment(self, item: Any, position: int) -> TranscriptSegment:
        """Validate one raw report segment.

        Raises:
            ReportParseError: If text/start/end are missing or inconsistent
        """
        if not isinstance(item, dict):
            raise ReportParseError(f"segment {position} is not an object")

        text, start, end = item.get("text"), item.get("start"), item.get("end")
        if not isinstance(text, str):
            raise ReportParseError(f"segment {position} has no text")
        if not _is_number(start) or not _is_number(end):
            raise ReportParseError(f"segment {position} has non-numeric timing")

        try:
            return TranscriptSegment(
                index=position,
                start_seconds=float(start),
                end_seconds=float(end),
                text=clean_segment_text(text),
            )
        except ValidationError as e:
            raise ReportParseError(f"segment {position} is invalid: {e.errors()[0]['msg']}") from e

    def parse_segments(self, items: list[Any]) -> list[TranscriptSegment]:
        """Keep every well-formed segment, sorted by start and re-indexed."""
        segments: list[TranscriptSegment] = []
        for position, item in enumerate(items):
            try:
                segment = self.parse_segment(item, position)
            except ReportParseError as e:
                logger.warning("Skipping report segment: %s", e)
                continue
            if not segment.text:
                continue
            segments.append(segment)

        segments.sort(key=lambda s: s.start_seconds)
        return [s.model_copy(update={"index": i}) for i, s in enumerate(segments)]

    def parse_report(self, path: Path) -> ParsedResult:
        """Parse a JSON report file.

        Raises:
            ReportParseError: If the file is unreadable or not a JSON object
        """
        try:
            data = read_json(path)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ReportParseError(f"Cannot read report {path.name}: {e}") from e
        if not isinstance(data, dict):
            raise ReportParseError(f"Report {path.name} is not a JSON object")

        raw_segments = None
        for key in SEGMENT_KEYS:
            if isinstance(data.get(key), list):
                raw_segments = data[key]
                break

        segments = self.parse_segments(raw_segments) if raw_segments is not None else []
        if segments:
            full_text = clean_segment_text(" ".join(s.text for s in segments))
        else:
            top_level = data.get("text")
            full_text = clean_segment_text(top_level) if isinstance(top_level, str) else ""

        language = data.get("language")
        return ParsedResult(
            full_text=full_text,
            segments=segments,
            language=language if isinstance(language, str) else None,
        )

    def parse_output(self, captured_output: str) -> str:
        """Extract the text printed after the first ``Transcription of`` line."""
        lines = captured_output.splitlines()
        for i, line in enumerate(lines):
            if line.startswith(OUTPUT_TEXT_MARKER):
                body = " ".join(part.strip() for part in lines[i + 1 :] if part.strip())
                return clean_segment_text(body)
        return ""

    def parse(self, report_dir: Path, captured_output: str, exit_code: int) -> ParsedResult:
        """Recover the transcript for a finished process.

        Args:
            report_dir: Directory passed to the tool as ``--report-path``
            captured_output: All output lines the tool printed
            exit_code: The tool's exit status

        Returns:
            ParsedResult with non-empty ``full_text``

        Raises:
            EmptyResultError: If neither source yields any text
        """
        report = self.find_report(report_dir)
        if report is not None:
            try:
                parsed = self.parse_report(report)
            except ReportParseError as e:
                logger.warning("%s; falling back to captured output", e)
            else:
                if parsed.full_text:
                    return parsed
                logger.debug("Report %s contained no text", report.name)
        else:
            logger.debug("No report file in %s", report_dir)

        text = self.parse_output(captured_output)
        if text:
            return ParsedResult(full_text=text, from_report=False)

        raise EmptyResultError(interrupted=exit_code != 0, exit_code=exit_code)
