"""
scribeline.batch - Sequential batch orchestration.

Jobs run strictly one after another on the calling thread. Other threads
(a folder watcher, a signal handler, a UI) may submit files or cancel the
batch while it runs; those are the only operations that cross threads.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from scribeline.config import ScribelineConfig
from scribeline.diarize.client import DiarizationClient
from scribeline.exceptions import ScribelineError
from scribeline.models import (
    BatchSummary,
    ErrorKind,
    JobResult,
    JobState,
    MediaSource,
    ProgressEvent,
    ProgressState,
)
from scribeline.transcribe.executor import CancelToken, JobExecutor

logger = logging.getLogger(__name__)

# Failures that end a job in a state other than plain "failed"
_STATE_FOR_KIND = {
    ErrorKind.TIMEOUT: JobState.TIMED_OUT,
    ErrorKind.CANCELLED: JobState.CANCELLED,
}


class JobHandle:
    """Caller-visible view of one submitted job."""

    def __init__(self, job_id: str, source: MediaSource) -> None:
        self.job_id = job_id
        self.source = source
        self.state = JobState.PENDING
        self.progress = ProgressState()
        self.result: JobResult | None = None
        self.cancel_token = CancelToken()
        self._done = threading.Event()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the job reaches a terminal state."""
        return self._done.wait(timeout)

    def cancel(self) -> None:
        """Cancel this job only; a running job is terminated."""
        self.cancel_token.cancel()

    def _finish(self, result: JobResult) -> None:
        self.state = result.state
        self.result = result
        self._done.set()

    def __repr__(self) -> str:
        return f"JobHandle({self.job_id}, {self.source.path.name}, {self.state.value})"


class BatchRun:
    """Ordered job list with a cursor that only moves forward."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.handles: list[JobHandle] = []
        self.cursor = 0
        self.cancelled = threading.Event()
        self.current: JobHandle | None = None

    def append(self, handle: JobHandle) -> None:
        with self.lock:
            self.handles.append(handle)

    def take_next(self) -> JobHandle | None:
        with self.lock:
            if self.cursor >= len(self.handles):
                self.current = None
                return None
            handle = self.handles[self.cursor]
            self.cursor += 1
            self.current = handle
            return handle

    def pending(self) -> list[JobHandle]:
        with self.lock:
            return self.handles[self.cursor :]


class BatchOrchestrator:
    """Runs submitted files through a JobExecutor one at a time.

    A job's failure is recorded on its handle and never stops the batch.
    """

    def __init__(
        self,
        config: ScribelineConfig,
        executor: JobExecutor | None = None,
        on_job_state: Callable[[JobHandle], None] | None = None,
        on_progress: Callable[[JobHandle, ProgressEvent], None] | None = None,
    ) -> None:
        self.config = config
        if executor is None:
            diarizer = DiarizationClient.from_config(config) if config.diarization.enabled else None
            executor = JobExecutor(config, diarizer=diarizer)
        self.executor = executor
        self.on_job_state = on_job_state
        self.on_progress = on_progress
        self.batch = BatchRun()
        self._counter = 0
        self._counter_lock = threading.Lock()

    @property
    def handles(self) -> list[JobHandle]:
        with self.batch.lock:
            return list(self.batch.handles)

    def submit(self, path: Path | str | MediaSource) -> JobHandle:
        """Queue a file. Safe to call from any thread, including mid-run.

        Files submitted after ``cancel_batch`` are cancelled immediately.
        """
        source = path if isinstance(path, MediaSource) else MediaSource.from_path(path)
        with self._counter_lock:
            self._counter += 1
            job_id = f"job_{self._counter:03d}"

        handle = JobHandle(job_id, source)
        self.batch.append(handle)
        logger.debug("Queued %s: %s", job_id, source.path)
        if self.batch.cancelled.is_set():
            self._mark_cancelled(handle, "Batch cancelled before start")
        return handle

    def submit_many(self, paths: list) -> list[JobHandle]:
        return [self.submit(p) for p in paths]

    def cancel_batch(self, terminate_current: bool = True) -> None:
        """Stop starting new jobs and cancel every pending one.

        Args:
            terminate_current: Also terminate the job in flight; if False it
                is allowed to finish
        """
        self.batch.cancelled.set()
        for handle in self.batch.pending():
            self._mark_cancelled(handle, "Batch cancelled before start")
        current = self.batch.current
        if terminate_current and current is not None and not current.done:
            current.cancel()
        logger.info("Batch cancelled")

    def run(self) -> list[JobResult]:
        """Run every submitted job (including ones added mid-run) in order.

        Returns:
            Results of all jobs, in submission order
        """
        while True:
            handle = self.batch.take_next()
            if handle is None:
                break
            if handle.done:
                continue
            if self.batch.cancelled.is_set():
                self._mark_cancelled(handle, "Batch cancelled before start")
                continue
            self._run_job(handle)

        return [h.result for h in self.handles if h.result is not None]

    def _run_job(self, handle: JobHandle) -> None:
        started_at = datetime.now()
        source = handle.source
        transcript = None
        error_kind: ErrorKind | None = None
        error_message: str | None = None

        try:
            transcript = self.executor.run(
                source,
                cancel=handle.cancel_token,
                progress=lambda event: self._progress(handle, event),
                on_state=lambda state: self._set_state(handle, state),
                state=handle.progress,
            )
        except ScribelineError as e:
            error_kind = getattr(e, "kind", None)
            error_message = str(e)
            logger.warning("%s failed: %s", source.path.name, e)
        except Exception as e:
            error_message = f"Unexpected error: {e}"
            logger.exception("Unexpected error transcribing %s", source.path.name)

        if transcript is not None:
            state = JobState.PARTIAL if transcript.partial else JobState.COMPLETED
        else:
            state = _STATE_FOR_KIND.get(error_kind, JobState.FAILED)

        result = JobResult(
            job_id=handle.job_id,
            source=source,
            state=state,
            transcript=transcript,
            error_kind=error_kind,
            error_message=error_message,
            extraction_method=transcript.extraction_method if transcript else None,
            started_at=started_at,
            finished_at=datetime.now(),
        )
        handle._finish(result)
        self._notify(handle)

    def _mark_cancelled(self, handle: JobHandle, message: str) -> None:
        if handle.done:
            return
        handle._finish(
            JobResult(
                job_id=handle.job_id,
                source=handle.source,
                state=JobState.CANCELLED,
                error_kind=ErrorKind.CANCELLED,
                error_message=message,
            )
        )
        self._notify(handle)

    def _set_state(self, handle: JobHandle, state: JobState) -> None:
        handle.state = state
        self._notify(handle)

    def _notify(self, handle: JobHandle) -> None:
        if self.on_job_state is None:
            return
        try:
            self.on_job_state(handle)
        except Exception:
            logger.exception("Job state callback failed")

    def _progress(self, handle: JobHandle, event: ProgressEvent) -> None:
        if self.on_progress is not None:
            self.on_progress(handle, event)

    def summary(self) -> BatchSummary:
        """Count jobs by outcome. Timed-out jobs count as failed."""
        summary = BatchSummary()
        for handle in self.handles:
            summary.total += 1
            state = handle.state
            if state.succeeded:
                summary.succeeded += 1
                if state is JobState.PARTIAL:
                    summary.partial += 1
            elif state in (JobState.FAILED, JobState.TIMED_OUT):
                summary.failed += 1
            elif state is JobState.CANCELLED:
                summary.cancelled += 1
        return summary
