"""Tests for scribeline.batch module."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from scribeline.batch import BatchOrchestrator
from scribeline.config import ScribelineConfig
from scribeline.exceptions import ExtractionError, JobCancelledError
from scribeline.models import ErrorKind, JobState, Transcript
from scribeline.tools import StaticResolver
from scribeline.transcribe.executor import JobExecutor

# Behaves by file name: "bad" fails, "slow" hangs, anything else succeeds
BATCH_TOOL = """\
audio = pathlib.Path(opt("--audio-path"))
if "bad" in audio.name:
    say("Error: decoder crashed", sys.stderr)
    sys.exit(1)
if "slow" in audio.name:
    say("Loading model...")
    time.sleep(30)
write_report({"text": "Text of " + audio.stem})
"""


@pytest.fixture
def media_dir(tmp_path: Path) -> Path:
    path = tmp_path / "media"
    path.mkdir()
    for name in ("a.wav", "bad.wav", "c.wav", "slow.wav", "bad2.wav"):
        (path / name).write_bytes(b"RIFF")
    return path


@pytest.fixture
def make_orchestrator(
    make_tool: Callable[..., Path], fast_config: ScribelineConfig
) -> Callable[..., BatchOrchestrator]:
    tool = make_tool(BATCH_TOOL)

    def factory(config: ScribelineConfig | None = None, **kwargs) -> BatchOrchestrator:
        config = config or fast_config
        executor = JobExecutor(
            config,
            tool_resolver=StaticResolver(tool),
            probe_resolver=StaticResolver(None),
        )
        return BatchOrchestrator(config, executor=executor, **kwargs)

    return factory


class ScriptedExecutor:
    """Executor stand-in returning or raising a fixed outcome per file name."""

    def __init__(self, outcomes: dict):
        self.outcomes = outcomes
        self.seen: list[str] = []

    def run(self, source, cancel=None, progress=None, on_state=None, state=None):
        if cancel is not None and cancel.cancelled:
            raise JobCancelledError("Cancelled before start")
        self.seen.append(source.path.name)
        outcome = self.outcomes[source.path.name]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestBatchRun:
    def test_failure_does_not_stop_batch(
        self, make_orchestrator: Callable[..., BatchOrchestrator], media_dir: Path
    ) -> None:
        orchestrator = make_orchestrator()
        orchestrator.submit_many([media_dir / "a.wav", media_dir / "bad.wav", media_dir / "c.wav"])

        results = orchestrator.run()

        assert [r.job_id for r in results] == ["job_001", "job_002", "job_003"]
        assert [r.state for r in results] == [
            JobState.COMPLETED,
            JobState.FAILED,
            JobState.COMPLETED,
        ]
        assert results[0].transcript.full_text == "Text of a"
        assert results[2].transcript.full_text == "Text of c"
        assert results[1].error_kind is ErrorKind.NON_ZERO_EXIT
        assert "decoder crashed" in results[1].error_message

        summary = orchestrator.summary()
        assert (summary.total, summary.succeeded, summary.failed) == (3, 2, 1)
        assert not summary.all_failed

    def test_all_failed(
        self, make_orchestrator: Callable[..., BatchOrchestrator], media_dir: Path
    ) -> None:
        orchestrator = make_orchestrator()
        orchestrator.submit_many([media_dir / "bad.wav", media_dir / "bad2.wav"])
        orchestrator.run()

        summary = orchestrator.summary()
        assert summary.failed == 2
        assert summary.all_failed

    def test_timeout_maps_to_timed_out(
        self,
        make_orchestrator: Callable[..., BatchOrchestrator],
        fast_config: ScribelineConfig,
        media_dir: Path,
    ) -> None:
        config = fast_config.model_copy(update={"job_timeout_seconds": 0.5})
        orchestrator = make_orchestrator(config)
        orchestrator.submit_many([media_dir / "slow.wav", media_dir / "a.wav"])

        results = orchestrator.run()

        assert results[0].state is JobState.TIMED_OUT
        assert results[0].error_kind is ErrorKind.TIMEOUT
        assert results[1].state is JobState.COMPLETED
        assert orchestrator.summary().failed == 1

    def test_states_reported_in_order(
        self, make_orchestrator: Callable[..., BatchOrchestrator], media_dir: Path
    ) -> None:
        seen = []
        orchestrator = make_orchestrator(on_job_state=lambda h: seen.append((h.job_id, h.state)))
        orchestrator.submit(media_dir / "a.wav")
        orchestrator.run()

        assert seen == [
            ("job_001", JobState.RUNNING),
            ("job_001", JobState.PARSING_RESULT),
            ("job_001", JobState.COMPLETED),
        ]

    def test_handles_finish(
        self, make_orchestrator: Callable[..., BatchOrchestrator], media_dir: Path
    ) -> None:
        orchestrator = make_orchestrator()
        handle = orchestrator.submit(media_dir / "a.wav")
        assert handle.state is JobState.PENDING
        assert not handle.done

        orchestrator.run()

        assert handle.wait(timeout=1)
        assert handle.state is JobState.COMPLETED
        assert handle.result.started_at <= handle.result.finished_at


class TestBatchCancellation:
    def test_cancel_terminates_current_and_pending(
        self, make_orchestrator: Callable[..., BatchOrchestrator], media_dir: Path
    ) -> None:
        def on_state(handle) -> None:
            if handle.job_id == "job_001" and handle.state is JobState.RUNNING:
                orchestrator.cancel_batch()

        orchestrator = make_orchestrator(on_job_state=on_state)
        orchestrator.submit_many([media_dir / "slow.wav", media_dir / "a.wav", media_dir / "c.wav"])

        results = orchestrator.run()

        assert [r.state for r in results] == [JobState.CANCELLED] * 3
        assert results[1].error_message == "Batch cancelled before start"
        assert orchestrator.summary().cancelled == 3
        assert orchestrator.summary().attempted == 0

    def test_cancel_lets_current_finish(
        self, make_orchestrator: Callable[..., BatchOrchestrator], media_dir: Path
    ) -> None:
        def on_state(handle) -> None:
            if handle.job_id == "job_001" and handle.state is JobState.RUNNING:
                orchestrator.cancel_batch(terminate_current=False)

        orchestrator = make_orchestrator(on_job_state=on_state)
        orchestrator.submit_many([media_dir / "a.wav", media_dir / "c.wav"])

        results = orchestrator.run()

        assert [r.state for r in results] == [JobState.COMPLETED, JobState.CANCELLED]

    def test_submit_after_cancel(self, fast_config: ScribelineConfig, media_dir: Path) -> None:
        orchestrator = BatchOrchestrator(fast_config, executor=ScriptedExecutor({}))
        orchestrator.cancel_batch()

        handle = orchestrator.submit(media_dir / "a.wav")

        assert handle.done
        assert handle.state is JobState.CANCELLED
        assert orchestrator.run()[0].error_kind is ErrorKind.CANCELLED

    def test_cancel_single_job(self, fast_config: ScribelineConfig, media_dir: Path) -> None:
        executor = ScriptedExecutor(
            {"a.wav": Transcript(full_text="a"), "c.wav": Transcript(full_text="c")}
        )
        orchestrator = BatchOrchestrator(fast_config, executor=executor)
        first, second = orchestrator.submit_many([media_dir / "a.wav", media_dir / "c.wav"])
        first.cancel()

        orchestrator.run()

        assert first.state is JobState.CANCELLED
        assert second.state is JobState.COMPLETED


class TestBatchSubmission:
    def test_submit_during_run(self, fast_config: ScribelineConfig, media_dir: Path) -> None:
        executor = ScriptedExecutor(
            {"a.wav": Transcript(full_text="a"), "c.wav": Transcript(full_text="c")}
        )

        def on_state(handle) -> None:
            if handle.job_id == "job_001" and handle.state is JobState.COMPLETED:
                orchestrator.submit(media_dir / "c.wav")

        orchestrator = BatchOrchestrator(fast_config, executor=executor, on_job_state=on_state)
        orchestrator.submit(media_dir / "a.wav")

        results = orchestrator.run()

        assert executor.seen == ["a.wav", "c.wav"]
        assert [r.job_id for r in results] == ["job_001", "job_002"]

    def test_partial_counts_as_success(self, fast_config: ScribelineConfig, media_dir: Path) -> None:
        executor = ScriptedExecutor(
            {"a.wav": Transcript(full_text="half", partial=True, exit_code=15)}
        )
        orchestrator = BatchOrchestrator(fast_config, executor=executor)
        orchestrator.submit(media_dir / "a.wav")

        results = orchestrator.run()

        assert results[0].state is JobState.PARTIAL
        summary = orchestrator.summary()
        assert (summary.succeeded, summary.partial, summary.failed) == (1, 1, 0)

    def test_extraction_failure_recorded(
        self, fast_config: ScribelineConfig, tmp_path: Path
    ) -> None:
        video = tmp_path / "clip.mkv"
        video.write_bytes(b"\x1a\x45\xdf\xa3")
        executor = ScriptedExecutor(
            {"clip.mkv": ExtractionError("All extraction methods failed. direct_remux: broken")}
        )
        orchestrator = BatchOrchestrator(fast_config, executor=executor)
        orchestrator.submit(video)

        result = orchestrator.run()[0]

        assert result.state is JobState.FAILED
        assert result.error_kind is ErrorKind.EXTRACTION
        assert "direct_remux" in result.error_message

    def test_unexpected_error_recorded(self, fast_config: ScribelineConfig, media_dir: Path) -> None:
        executor = ScriptedExecutor({"a.wav": RuntimeError("kaboom"), "c.wav": Transcript(full_text="c")})
        orchestrator = BatchOrchestrator(fast_config, executor=executor)
        orchestrator.submit_many([media_dir / "a.wav", media_dir / "c.wav"])

        results = orchestrator.run()

        assert results[0].state is JobState.FAILED
        assert results[0].error_kind is None
        assert "kaboom" in results[0].error_message
        assert results[1].state is JobState.COMPLETED

    def test_failing_state_callback_does_not_stop_batch(
        self, fast_config: ScribelineConfig, media_dir: Path
    ) -> None:
        def explode(handle) -> None:
            raise RuntimeError("ui crashed")

        executor = ScriptedExecutor({"a.wav": Transcript(full_text="a")})
        orchestrator = BatchOrchestrator(fast_config, executor=executor, on_job_state=explode)
        orchestrator.submit(media_dir / "a.wav")

        assert orchestrator.run()[0].state is JobState.COMPLETED
