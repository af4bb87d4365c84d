"""
scribeline.models - Data model shared by every pipeline stage.

Transcripts, segments and speaker spans are pydantic models so they validate
on construction and serialize with ``model_dump()`` for the CLI's JSON output.
"""

from __future__ import annotations

import threading
from collections import deque
from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, model_validator

AUDIO_EXTENSIONS = frozenset({"wav", "mp3", "m4a", "aac", "flac", "ogg", "wma"})
VIDEO_EXTENSIONS = frozenset({"mp4", "mov", "avi", "mkv", "m4v", "flv", "webm", "3gp"})


class MediaKind(str, Enum):
    AUDIO = "audio"
    VIDEO = "video"


class JobState(str, Enum):
    """Lifecycle of a single job."""

    PENDING = "pending"
    EXTRACTING = "extracting"
    RUNNING = "running"
    PARSING_RESULT = "parsing_result"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES

    @property
    def succeeded(self) -> bool:
        return self in (JobState.COMPLETED, JobState.PARTIAL)


_TERMINAL_STATES = frozenset(
    {
        JobState.COMPLETED,
        JobState.PARTIAL,
        JobState.FAILED,
        JobState.CANCELLED,
        JobState.TIMED_OUT,
    }
)


class ErrorKind(str, Enum):
    EXTRACTION = "extraction"
    TOOL_NOT_FOUND = "tool_not_found"
    PROCESS_SPAWN = "process_spawn"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    NON_ZERO_EXIT = "non_zero_exit"
    EMPTY_RESULT = "empty_result"
    REPORT_PARSE = "report_parse"
    DIARIZATION = "diarization"


class MediaSource(BaseModel):
    """A caller-supplied input file."""

    model_config = ConfigDict(frozen=True)

    path: Path
    kind: MediaKind

    @classmethod
    def from_path(cls, path: Path | str) -> MediaSource:
        """Classify a path as audio or video by extension.

        Unknown extensions are treated as audio and handed to the tool as-is.
        """
        path = Path(path)
        ext = path.suffix.lower().lstrip(".")
        kind = MediaKind.VIDEO if ext in VIDEO_EXTENSIONS else MediaKind.AUDIO
        return cls(path=path, kind=kind)


class ExtractionResult:
    """Scratch audio produced by the extractor, owned by exactly one job.

    The file is removed by ``release()``; there is no finalizer, so callers
    must release it on every path.
    """

    def __init__(self, temp_audio_path: Path, method_used: str) -> None:
        self.temp_audio_path = temp_audio_path
        self.method_used = method_used
        self._lock = threading.Lock()
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> bool:
        """Delete the scratch file. Returns True only on the first call."""
        with self._lock:
            if self._released:
                return False
            self._released = True
        self.temp_audio_path.unlink(missing_ok=True)
        return True

    def __repr__(self) -> str:
        return f"ExtractionResult({self.temp_audio_path!s}, method={self.method_used!r})"


class ProgressEvent(BaseModel):
    """One decoded progress or preview update."""

    elapsed_seconds: float | None = None
    remaining_seconds: float | None = None
    fraction: float | None = None
    preview_append: str | None = None
    status: str | None = None


class ProgressState:
    """Per-job progress accumulator.

    Elapsed/remaining are last-write-wins; ``preview`` only ever grows.
    """

    def __init__(self, unrecognized_limit: int = 200) -> None:
        self.elapsed_seconds: float | None = None
        self.remaining_seconds: float | None = None
        self.fraction: float = 0.0
        self.status: str = ""
        self._preview: list[str] = []
        self.unrecognized: deque[str] = deque(maxlen=unrecognized_limit)

    @property
    def preview(self) -> str:
        return " ".join(self._preview)

    def append_preview(self, text: str) -> None:
        self._preview.append(text)


class TranscriptSegment(BaseModel):
    index: int
    start_seconds: float = Field(ge=0.0)
    end_seconds: float = Field(ge=0.0)
    text: str
    speaker_id: str | None = None

    @model_validator(mode="after")
    def check_order(self) -> TranscriptSegment:
        if self.end_seconds < self.start_seconds:
            raise ValueError("segment end must not precede its start")
        return self


class Transcript(BaseModel):
    full_text: str
    segments: list[TranscriptSegment] = Field(default_factory=list)
    source_duration: float | None = None
    model_identifier: str = "auto"
    language: str | None = None
    partial: bool = False
    exit_code: int | None = None
    extraction_method: str | None = None

    @model_validator(mode="after")
    def check_monotonic(self) -> Transcript:
        previous = None
        for seg in self.segments:
            if previous is not None and seg.start_seconds < previous:
                raise ValueError("segments must be ordered by start time")
            previous = seg.start_seconds
        return self

    @property
    def speakers(self) -> list[str]:
        """Unique speaker ids in order of first appearance."""
        seen: list[str] = []
        for seg in self.segments:
            if seg.speaker_id and seg.speaker_id not in seen:
                seen.append(seg.speaker_id)
        return seen


class SpeakerSpan(BaseModel):
    start_seconds: float
    end_seconds: float
    speaker_id: str


class JobResult(BaseModel):
    """Terminal record of one job, as reported by the batch."""

    job_id: str
    source: MediaSource
    state: JobState
    transcript: Transcript | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    extraction_method: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class BatchSummary(BaseModel):
    total: int = 0
    succeeded: int = 0
    partial: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def attempted(self) -> int:
        return self.succeeded + self.failed

    @property
    def all_failed(self) -> bool:
        """Every job that was started failed."""
        return self.attempted > 0 and self.succeeded == 0
