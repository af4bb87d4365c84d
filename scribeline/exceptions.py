"""
scribeline.exceptions - Custom exception classes.

All Scribeline-specific exceptions inherit from ScribelineError. Job-ending
failures inherit from TranscriptionError and carry an ErrorKind.
"""

from __future__ import annotations

from scribeline.models import ErrorKind


class ScribelineError(Exception):
    """Base exception for all Scribeline errors."""

    pass


class ConfigError(ScribelineError):
    """Configuration loading or validation error."""

    pass


class ExtractionError(ScribelineError):
    """Audio extraction error (every fallback tier failed)."""

    kind = ErrorKind.EXTRACTION


class DependencyError(ScribelineError):
    """Required dependency missing or misconfigured."""

    def __init__(self, dependency: str, message: str, install_hint: str | None = None):
        self.dependency = dependency
        self.message = message
        self.install_hint = install_hint
        super().__init__(f"{dependency}: {message}")


class TranscriptionError(ScribelineError):
    """Transcription job error."""

    kind = ErrorKind.NON_ZERO_EXIT


class ToolNotFoundError(TranscriptionError, DependencyError):
    """The transcription CLI could not be located."""

    kind = ErrorKind.TOOL_NOT_FOUND

    def __init__(self, dependency: str, searched: list[str] | None = None):
        self.searched = searched or []
        hint = "Install with: pip install whisperkit, or set tool_search_paths in scribeline.yaml"
        DependencyError.__init__(self, dependency, "executable not found", hint)


class ProcessSpawnError(TranscriptionError):
    """The transcription subprocess could not be started."""

    kind = ErrorKind.PROCESS_SPAWN


class JobTimeoutError(TranscriptionError):
    """The transcription subprocess exceeded the per-file timeout."""

    kind = ErrorKind.TIMEOUT


class JobCancelledError(TranscriptionError):
    """The job was cancelled while in flight."""

    kind = ErrorKind.CANCELLED


class NonZeroExitError(TranscriptionError):
    """The tool exited non-zero without emitting a transcription."""

    kind = ErrorKind.NON_ZERO_EXIT

    def __init__(self, exit_code: int, detail: str):
        self.exit_code = exit_code
        self.detail = detail
        summary = detail.strip() or f"Unknown error (exit code: {exit_code})"
        super().__init__(f"Transcription failed (exit code {exit_code}): {summary}")


class EmptyResultError(TranscriptionError):
    """No transcript text could be recovered."""

    kind = ErrorKind.EMPTY_RESULT

    def __init__(self, interrupted: bool, exit_code: int | None = None):
        self.interrupted = interrupted
        self.exit_code = exit_code
        if interrupted:
            message = (
                f"Transcription was cancelled or interrupted (exit code: {exit_code}) "
                "before producing any text"
            )
        else:
            message = "No transcription text found in report or output"
        super().__init__(message)


class ReportParseError(ScribelineError):
    """A report file or a single report segment could not be parsed."""

    kind = ErrorKind.REPORT_PARSE


class DiarizationError(ScribelineError):
    """Speaker diarization failed. Never fails a job."""

    kind = ErrorKind.DIARIZATION
