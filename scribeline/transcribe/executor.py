"""
scribeline.transcribe.executor - Supervises one transcription job.

A job optionally extracts audio from video, spawns the transcription CLI,
streams its output through the progress parser, enforces the per-file
timeout and cancellation, recovers the transcript and attaches speakers.
Every scratch resource is released in ``finally`` blocks, whichever way the
job ends.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
import threading
import time
from collections.abc import Callable
from enum import Enum
from pathlib import Path

from scribeline.config import ScribelineConfig
from scribeline.diarize.merge import merge_speakers
from scribeline.exceptions import (
    DiarizationError,
    JobCancelledError,
    JobTimeoutError,
    NonZeroExitError,
    ProcessSpawnError,
    ToolNotFoundError,
)
from scribeline.extract.audio import AudioExtractor
from scribeline.media import probe_duration
from scribeline.models import (
    ExtractionResult,
    JobState,
    MediaKind,
    MediaSource,
    ProgressEvent,
    ProgressState,
    Transcript,
)
from scribeline.tools import PathListResolver, ToolResolver
from scribeline.transcribe.progress import ProgressParser
from scribeline.transcribe.report import ParsedResult, ResultParser, has_transcription_marker
from scribeline.transcribe.streams import ExitEvent, LineEvent, OutputChannel
from scribeline.utils import format_duration, tail

logger = logging.getLogger(__name__)

StateCallback = Callable[[JobState], None]
ProgressCallback = Callable[[ProgressEvent], None]


class CancelToken:
    """Thread-safe cancellation flag with wake-up listeners."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._listeners: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            listeners = list(self._listeners)
        for listener in listeners:
            listener()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def add_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register a wake-up hook; returns a function that removes it.

        Fires immediately if the token is already cancelled.
        """
        with self._lock:
            fire_now = self._event.is_set()
            if not fire_now:
                self._listeners.append(listener)
        if fire_now:
            listener()

        def remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove


class StopReason(str, Enum):
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class StopContext:
    """Records why a running process was stopped and stops it exactly once."""

    def __init__(self, process: subprocess.Popen, grace_seconds: float) -> None:
        self.process = process
        self.grace_seconds = grace_seconds
        self._lock = threading.Lock()
        self._reason: StopReason | None = None

    @property
    def reason(self) -> StopReason | None:
        return self._reason

    def request(self, reason: StopReason) -> bool:
        """Stop the process for ``reason``. Only the first request has effect."""
        with self._lock:
            if self._reason is not None:
                return False
            self._reason = reason
        logger.info("Stopping transcription process (%s)", reason.value)
        self._terminate()
        return True

    def _terminate(self) -> None:
        if self.process.poll() is not None:
            return
        self.process.terminate()
        try:
            self.process.wait(timeout=self.grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("Process ignored terminate for %.1fs, killing", self.grace_seconds)
            self.process.kill()
            self.process.wait()


def build_arguments(
    tool: Path,
    audio_path: Path,
    report_dir: Path,
    config: ScribelineConfig,
) -> list[str]:
    """Build the argv for one transcription run (no shell involved)."""
    args = [
        str(tool),
        "transcribe",
        "--audio-path",
        str(audio_path),
        "--language",
        config.language,
        "--verbose",
        "--report",
        "--report-path",
        str(report_dir),
    ]
    if config.model_path is not None:
        args += ["--model-path", str(config.model_path)]
    elif config.model != "auto":
        args += ["--model", config.model]
    return args


class JobExecutor:
    """Runs a single media file through the full transcription pipeline."""

    def __init__(
        self,
        config: ScribelineConfig,
        tool_resolver: ToolResolver | None = None,
        probe_resolver: ToolResolver | None = None,
        extractor: AudioExtractor | None = None,
        diarizer=None,
        result_parser: ResultParser | None = None,
    ) -> None:
        self.config = config
        self.tool_resolver = tool_resolver or PathListResolver(
            config.tool_name, config.tool_search_paths
        )
        self.probe_resolver = probe_resolver or PathListResolver(
            config.probe_name, config.transcoder_search_paths
        )
        self.extractor = extractor or AudioExtractor.from_config(
            config, probe_resolver=self.probe_resolver
        )
        self.diarizer = diarizer
        self.result_parser = result_parser or ResultParser()

    def run(
        self,
        source: MediaSource | Path,
        cancel: CancelToken | None = None,
        progress: ProgressCallback | None = None,
        on_state: StateCallback | None = None,
        state: ProgressState | None = None,
    ) -> Transcript:
        """Transcribe one file.

        Args:
            source: Audio or video file
            cancel: Token that stops the job when cancelled
            progress: Receives decoded progress/preview events
            on_state: Receives every lifecycle state the job enters
            state: Accumulator for progress, created if not given

        Returns:
            Transcript (``partial=True`` when the tool exited non-zero
            after printing its transcription)

        Raises:
            TranscriptionError: Subclass describing why the job failed
            ExtractionError: If no audio could be extracted from a video
        """
        if not isinstance(source, MediaSource):
            source = MediaSource.from_path(source)
        cancel = cancel or CancelToken()
        if cancel.cancelled:
            raise JobCancelledError(f"Cancelled before start: {source.path.name}")

        extraction: ExtractionResult | None = None
        try:
            audio_path = source.path
            if source.kind is MediaKind.VIDEO:
                self._notify(on_state, JobState.EXTRACTING)
                extraction = self.extractor.extract(source, cancel=cancel)
                audio_path = extraction.temp_audio_path
                if cancel.cancelled:
                    raise JobCancelledError(f"Cancelled after extraction: {source.path.name}")

            parser = ProgressParser(state, progress)
            parsed, exit_code = self._transcribe(audio_path, cancel, parser, on_state)

            segments = parsed.segments
            if self.diarizer is not None and segments:
                segments = self._attach_speakers(audio_path, segments, cancel)

            duration = probe_duration(source.path, self.probe_resolver)
            language = parsed.language or (
                self.config.language if self.config.language != "auto" else None
            )
            return Transcript(
                full_text=parsed.full_text,
                segments=segments,
                source_duration=duration,
                model_identifier=self.config.model_identifier,
                language=language,
                partial=exit_code != 0,
                exit_code=exit_code,
                extraction_method=extraction.method_used if extraction else None,
            )
        finally:
            if extraction is not None and extraction.release():
                logger.debug("Removed scratch audio %s", extraction.temp_audio_path)

    def _transcribe(
        self,
        audio_path: Path,
        cancel: CancelToken,
        parser: ProgressParser,
        on_state: StateCallback | None,
    ) -> tuple[ParsedResult, int]:
        tool = self.tool_resolver.locate()
        if tool is None:
            searched = getattr(self.tool_resolver, "search_paths", None)
            raise ToolNotFoundError(self.tool_resolver.name, searched=searched)

        if self.config.scratch_dir is not None:
            self.config.scratch_dir.mkdir(parents=True, exist_ok=True)
        report_dir = Path(tempfile.mkdtemp(prefix="scribeline-report-", dir=self.config.scratch_dir))
        process: subprocess.Popen | None = None
        channel: OutputChannel | None = None
        try:
            args = build_arguments(tool, audio_path, report_dir, self.config)
            logger.debug("Running: %s", " ".join(args))
            try:
                process = subprocess.Popen(
                    args,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                )
            except OSError as e:
                raise ProcessSpawnError(f"Failed to start {tool}: {e}") from e

            self._notify(on_state, JobState.RUNNING)
            channel = OutputChannel(process)
            channel.start()

            captured: list[str] = []
            exit_code = self._supervise(process, channel, parser, cancel, captured)
            output = "\n".join(captured)

            if exit_code != 0:
                if not has_transcription_marker(output):
                    raise NonZeroExitError(exit_code, tail(output))
                logger.warning(
                    "Process exited with code %d but printed a transcription; keeping it as partial",
                    exit_code,
                )

            self._notify(on_state, JobState.PARSING_RESULT)
            return self.result_parser.parse(report_dir, output, exit_code), exit_code
        finally:
            if process is not None and process.poll() is None:
                process.kill()
                process.wait()
            if channel is not None:
                channel.close()
            shutil.rmtree(report_dir, ignore_errors=True)

    def _supervise(
        self,
        process: subprocess.Popen,
        channel: OutputChannel,
        parser: ProgressParser,
        cancel: CancelToken,
        captured: list[str],
    ) -> int:
        """Consume output until the process exits, times out or is cancelled."""
        config = self.config
        stop = StopContext(process, config.termination_grace_seconds)
        deadline = time.monotonic() + config.job_timeout_seconds
        remove_listener = cancel.add_listener(lambda: channel.wake("cancel"))

        try:
            while True:
                if cancel.cancelled:
                    stop.request(StopReason.CANCELLED)
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    stop.request(StopReason.TIMEOUT)
                    break

                event = channel.get(timeout=min(remaining, config.poll_interval_seconds))
                if isinstance(event, LineEvent):
                    captured.append(event.text)
                    parser.feed(event.text)
                elif isinstance(event, ExitEvent):
                    self._settle(channel, parser, captured)
                    return event.code
        finally:
            remove_listener()

        if stop.reason is StopReason.TIMEOUT:
            raise JobTimeoutError(
                f"Transcription timed out after {format_duration(config.job_timeout_seconds)}"
            )
        raise JobCancelledError("Transcription cancelled")

    def _settle(
        self,
        channel: OutputChannel,
        parser: ProgressParser,
        captured: list[str],
    ) -> None:
        """Drain output still buffered after exit, for at most settle_seconds."""
        deadline = time.monotonic() + self.config.settle_seconds
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            event = channel.get(timeout=min(remaining, self.config.poll_interval_seconds))
            if isinstance(event, LineEvent):
                captured.append(event.text)
                parser.feed(event.text)
            elif event is None and channel.readers_done():
                return

    def _attach_speakers(self, audio_path: Path, segments, cancel: CancelToken):
        try:
            spans = self.diarizer.diarize(audio_path, cancel=cancel)
        except Exception as e:
            if cancel.cancelled:
                raise JobCancelledError("Cancelled during diarization") from e
            if isinstance(e, DiarizationError):
                logger.warning("Diarization failed, continuing without speakers: %s", e)
            else:
                logger.exception("Unexpected diarization error, continuing without speakers")
            return segments
        return merge_speakers(segments, spans)

    def _notify(self, on_state: StateCallback | None, state: JobState) -> None:
        if on_state is None:
            return
        try:
            on_state(state)
        except Exception:
            logger.exception("State callback failed")

