"""
scribeline.transcribe - Transcription job execution.

Pipeline Stage 2: supervise the transcription CLI for one file, decode its
progress output and recover the transcript from its report.
"""

from __future__ import annotations

from scribeline.transcribe.executor import CancelToken, JobExecutor, build_arguments
from scribeline.transcribe.progress import ProgressParser
from scribeline.transcribe.report import ResultParser, clean_segment_text

__all__ = [
    "CancelToken",
    "JobExecutor",
    "ProgressParser",
    "ResultParser",
    "build_arguments",
    "clean_segment_text",
]
