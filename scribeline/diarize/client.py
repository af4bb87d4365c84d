"""
scribeline.diarize.client - Speaker diarization sources.

Uses the transcription CLI's own ``--diarize`` mode when its help text
advertises one, otherwise uploads the audio to a diarization HTTP service.
Both return speaker spans sorted by start time.
"""

from __future__ import annotations

import json
import logging
import subprocess
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import Any, TypeVar

import httpx

from scribeline.config import DiarizationSettings
from scribeline.exceptions import DiarizationError
from scribeline.models import SpeakerSpan
from scribeline.tools import PathListResolver, ToolResolver

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SPEAKER = "SPEAKER_00"
CAPABILITY_HINTS = ("diar", "speaker")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_spans(payload: Any, default_speaker: str | None = None) -> list[SpeakerSpan]:
    """Convert a ``{"segments": [{start, end, speaker}]}`` payload into spans.

    Args:
        payload: Decoded JSON response
        default_speaker: Speaker for items without one; if None, such items
            are skipped

    Returns:
        Spans sorted by start time; malformed items are skipped

    Raises:
        DiarizationError: If the payload has no segment list
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("segments"), list):
        raise DiarizationError("Invalid response from diarization server: missing segments")

    spans: list[SpeakerSpan] = []
    for item in payload["segments"]:
        if not isinstance(item, dict):
            continue
        start, end = item.get("start"), item.get("end")
        speaker = item.get("speaker")
        if not _is_number(start) or not _is_number(end):
            continue
        if not isinstance(speaker, str):
            if default_speaker is None:
                continue
            speaker = default_speaker
        spans.append(SpeakerSpan(start_seconds=float(start), end_seconds=float(end), speaker_id=speaker))

    spans.sort(key=lambda s: s.start_seconds)
    return spans


def _decode_json_output(output: str) -> Any:
    """Decode JSON printed by a CLI, tolerating log lines around it."""
    try:
        return json.loads(output)
    except json.JSONDecodeError:
        pass
    first, last = output.find("{"), output.rfind("}")
    if first == -1 or last <= first:
        raise DiarizationError("Diarization output contained no JSON")
    try:
        return json.loads(output[first : last + 1])
    except json.JSONDecodeError as e:
        raise DiarizationError(f"Diarization output is not valid JSON: {e}") from e


class DiarizationClient:
    """Produces speaker spans for an audio file.

    The native-capability probe runs once per client, so a batch that
    shares one client probes the CLI only once.
    """

    def __init__(
        self,
        settings: DiarizationSettings,
        tool_resolver: ToolResolver,
        transport: httpx.BaseTransport | None = None,
        poll_interval: float = 0.1,
        probe_timeout: float = 10.0,
    ) -> None:
        self.settings = settings
        self.tool_resolver = tool_resolver
        self.transport = transport
        self.poll_interval = poll_interval
        self.probe_timeout = probe_timeout
        self._native: bool | None = None
        self._probe_lock = threading.Lock()

    @classmethod
    def from_config(cls, config) -> DiarizationClient:
        resolver = PathListResolver(config.tool_name, config.tool_search_paths)
        return cls(config.diarization, resolver, poll_interval=config.poll_interval_seconds)

    def supports_native(self) -> bool:
        """Check (once) whether the CLI's help text mentions diarization."""
        with self._probe_lock:
            if self._native is None:
                self._native = self._probe()
            return self._native

    def _probe(self) -> bool:
        tool = self.tool_resolver.locate()
        if tool is None:
            return False
        try:
            proc = subprocess.run(
                [str(tool), "transcribe", "--help"],
                stdin=subprocess.DEVNULL,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.probe_timeout,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("Could not check %s for diarization support: %s", tool, e)
            return False

        help_text = (proc.stdout + proc.stderr).lower()
        supported = any(hint in help_text for hint in CAPABILITY_HINTS)
        if supported:
            logger.info("%s supports diarization", tool.name)
        else:
            logger.info("%s does not support diarization, using %s", tool.name, self.settings.server_url)
        return supported

    def diarize(self, audio_path: Path, cancel=None) -> list[SpeakerSpan]:
        """Run diarization on an audio file.

        Args:
            audio_path: Normalized audio file
            cancel: Optional token; checked while waiting for the result

        Returns:
            Speaker spans sorted by start time

        Raises:
            DiarizationError: On any failure, including cancellation
        """
        if self.supports_native():
            tool = self.tool_resolver.locate()
            if tool is not None:
                return self._diarize_native(tool, audio_path, cancel)
        return self._wait_cancellable(lambda: self._diarize_http(audio_path), cancel)

    def _diarize_native(self, tool: Path, audio_path: Path, cancel) -> list[SpeakerSpan]:
        args = [
            str(tool),
            "transcribe",
            "--audio-path",
            str(audio_path),
            "--diarize",
            "--output-format",
            "json",
        ]
        try:
            proc = subprocess.Popen(
                args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as e:
            raise DiarizationError(f"Failed to start {tool}: {e}") from e

        deadline = time.monotonic() + self.settings.timeout_seconds
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                stopped = cancel is not None and cancel.cancelled
                if stopped or time.monotonic() >= deadline:
                    proc.kill()
                    proc.communicate()
                    reason = "cancelled" if stopped else "timed out"
                    raise DiarizationError(f"WhisperKit diarization {reason}") from None

        if proc.returncode != 0:
            detail = (stderr or stdout).strip()[-400:]
            raise DiarizationError(f"WhisperKit diarization failed: {detail}")
        return parse_spans(_decode_json_output(stdout), default_speaker=DEFAULT_SPEAKER)

    def _diarize_http(self, audio_path: Path) -> list[SpeakerSpan]:
        try:
            with httpx.Client(timeout=self.settings.timeout_seconds, transport=self.transport) as client:
                with audio_path.open("rb") as audio_stream:
                    response = client.post(
                        self.settings.server_url,
                        files={"audio": (audio_path.name, audio_stream, "audio/mpeg")},
                    )
        except httpx.HTTPError as e:
            raise DiarizationError(f"Diarization server request failed: {e}") from e
        except OSError as e:
            raise DiarizationError(f"Cannot read audio file: {e}") from e

        if response.status_code != 200:
            raise DiarizationError(
                f"Server returned status {response.status_code}: {response.text[:400]}"
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise DiarizationError("Invalid response from diarization server") from e
        return parse_spans(payload)

    def _wait_cancellable(self, fn: Callable[[], T], cancel) -> T:
        """Run ``fn`` on a worker thread, giving up early if cancelled."""
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="scribeline-diarize")
        future = pool.submit(fn)
        try:
            while True:
                try:
                    return future.result(timeout=self.poll_interval)
                except FutureTimeoutError:
                    if cancel is not None and cancel.cancelled:
                        future.cancel()
                        raise DiarizationError("Diarization cancelled") from None
        finally:
            pool.shutdown(wait=False)
