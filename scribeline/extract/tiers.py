"""
scribeline.extract.tiers - Audio extraction strategies.

Each tier turns a video container into a decodable audio file in its own
way, from cheapest to most forgiving:

1. direct_remux         - stream-copy the audio track, no re-encode
2. composition_remux    - map only the detected audio tracks, dropping
                          video/data tracks and corrupt packets
3. sample_transcode     - decode raw PCM samples and re-encode them with
                          soundfile, bypassing container validation
4. external_transcoder  - a located ffmpeg binary transcoding to AAC

A tier either writes a complete file at ``output`` or raises. Every
subprocess a tier starts runs under a ProcessWatchdog, so a hung ffmpeg is
killed at the tier's timeout or as soon as the job is cancelled.
"""

from __future__ import annotations

import json
import logging
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import Any, Protocol

import ffmpeg
import numpy as np
import soundfile as sf

from scribeline.exceptions import ExtractionError, JobCancelledError
from scribeline.tools import ToolResolver

logger = logging.getLogger(__name__)

PCM_SAMPLE_RATE = 16000
PCM_CHANNELS = 1
PCM_FRAME_BYTES = 2 * PCM_CHANNELS
PCM_CHUNK_BYTES = PCM_FRAME_BYTES * PCM_SAMPLE_RATE * 10

TRACK_LISTING_TIMEOUT = 60.0


class ExtractionTier(Protocol):
    name: str
    suffix: str

    def run(self, source: Path, output: Path, cancel=None) -> None: ...


class ProcessWatchdog:
    """Kills a process when its deadline passes or its job is cancelled.

    Use as a context manager around every blocking read or wait on the
    process, then call ``check()`` to turn a kill into the right error.
    """

    def __init__(self, process: subprocess.Popen, timeout: float, cancel=None) -> None:
        self.process = process
        self.timeout = timeout
        self.cancel = cancel
        self.reason: str | None = None
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._remove_listener = None

    def __enter__(self) -> ProcessWatchdog:
        self._timer = threading.Timer(self.timeout, self._fire, args=("timeout",))
        self._timer.daemon = True
        self._timer.start()
        if self.cancel is not None:
            self._remove_listener = self.cancel.add_listener(lambda: self._fire("cancelled"))
        return self

    def __exit__(self, *exc_info) -> None:
        if self._timer is not None:
            self._timer.cancel()
        if self._remove_listener is not None:
            self._remove_listener()

    def _fire(self, reason: str) -> None:
        with self._lock:
            if self.reason is not None or self.process.poll() is not None:
                return
            self.reason = reason
        logger.debug("Killing %s (%s)", self.process.args[0], reason)
        self.process.kill()

    def check(self, label: str) -> None:
        """Raise if the watchdog killed the process.

        Raises:
            JobCancelledError: If the job was cancelled
            ExtractionError: If the deadline passed
        """
        if self.reason == "cancelled":
            raise JobCancelledError(f"Cancelled during audio extraction ({label})")
        if self.reason == "timeout":
            raise ExtractionError(f"{label} timed out after {self.timeout:g}s")


def _tool_label(cmd: str | Path) -> str:
    return Path(cmd).name


def _run_watched(
    args: list[str],
    timeout: float,
    cancel=None,
) -> tuple[int, str, str]:
    """Run a command to completion under a watchdog.

    Returns:
        Tuple of (returncode, stdout, stderr), decoded leniently

    Raises:
        ExtractionError: If the command is missing, fails to start or times out
        JobCancelledError: If ``cancel`` fires while it runs
    """
    label = _tool_label(args[0])
    try:
        proc = subprocess.Popen(
            args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise ExtractionError(f"{label} not found") from e
    except OSError as e:
        raise ExtractionError(f"{label} failed to start: {e}") from e

    watchdog = ProcessWatchdog(proc, timeout, cancel)
    with watchdog:
        stdout, stderr = proc.communicate()
    watchdog.check(label)
    return (
        proc.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


def _run_ffmpeg(stream: Any, cmd: str, timeout: float, cancel=None) -> None:
    """Run a compiled ffmpeg-python graph, raising ExtractionError on failure."""
    returncode, _, stderr = _run_watched(stream.compile(cmd=cmd), timeout, cancel)
    if returncode != 0:
        raise ExtractionError(stderr.strip() or f"{_tool_label(cmd)} exited with {returncode}")


def list_audio_streams(
    source: Path,
    probe_cmd: str = "ffprobe",
    timeout: float = TRACK_LISTING_TIMEOUT,
    cancel=None,
) -> list[dict[str, Any]]:
    """Return the audio stream descriptions of a media file.

    Runs the same ffprobe query as ffmpeg-python, under a watchdog.
    """
    args = [probe_cmd, "-v", "error", "-show_format", "-show_streams", "-of", "json", str(source)]
    returncode, stdout, stderr = _run_watched(args, timeout, cancel)
    if returncode != 0:
        raise ExtractionError(f"ffprobe failed: {stderr.strip() or f'exit code {returncode}'}")
    try:
        info = json.loads(stdout)
    except ValueError as e:
        raise ExtractionError("ffprobe returned invalid JSON") from e
    return [s for s in info.get("streams", []) if s.get("codec_type") == "audio"]


class DirectRemuxTier:
    """Copy the default audio track into an audio-only container."""

    name = "direct_remux"
    suffix = ".mka"

    def __init__(self, ffmpeg_cmd: str = "ffmpeg", timeout: float = 1800.0) -> None:
        self.ffmpeg_cmd = ffmpeg_cmd
        self.timeout = timeout

    def run(self, source: Path, output: Path, cancel=None) -> None:
        stream = (
            ffmpeg.input(str(source))
            .output(str(output), vn=None, acodec="copy", format="matroska")
            .global_args("-hide_banner", "-nostdin")
            .overwrite_output()
        )
        _run_ffmpeg(stream, self.ffmpeg_cmd, self.timeout, cancel)


class CompositionRemuxTier:
    """Rebuild a container holding only the detected audio tracks.

    Video, subtitle and data tracks are never read into the output, so a
    corrupt video sample table cannot break audio timing.
    """

    name = "composition_remux"
    suffix = ".mka"

    def __init__(
        self,
        ffmpeg_cmd: str = "ffmpeg",
        probe_cmd: str = "ffprobe",
        timeout: float = 1800.0,
    ) -> None:
        self.ffmpeg_cmd = ffmpeg_cmd
        self.probe_cmd = probe_cmd
        self.timeout = timeout

    def run(self, source: Path, output: Path, cancel=None) -> None:
        audio_streams = list_audio_streams(
            source,
            self.probe_cmd,
            timeout=min(self.timeout, TRACK_LISTING_TIMEOUT),
            cancel=cancel,
        )
        if not audio_streams:
            raise ExtractionError("No audio tracks found in video file")

        for i, s in enumerate(audio_streams):
            logger.debug("Audio track %d: codec=%s", i, s.get("codec_name"))

        inp = ffmpeg.input(
            str(source),
            fflags="+genpts+discardcorrupt",
            err_detect="ignore_err",
        )
        tracks = [inp[f"a:{i}"] for i in range(len(audio_streams))]
        stream = (
            ffmpeg.output(
                *tracks,
                str(output),
                vn=None,
                sn=None,
                dn=None,
                acodec="copy",
                format="matroska",
            )
            .global_args("-hide_banner", "-nostdin")
            .overwrite_output()
        )
        _run_ffmpeg(stream, self.ffmpeg_cmd, self.timeout, cancel)


class SampleTranscodeTier:
    """Decode raw PCM and re-encode the sample buffers with soundfile.

    Only sample data passes between reader and writer, so inconsistent
    container metadata cannot fail the export. A reader that stops
    producing data is killed by the watchdog, which ends the pump at EOF.
    """

    name = "sample_transcode"
    suffix = ".wav"

    def __init__(self, ffmpeg_cmd: str = "ffmpeg", timeout: float = 1800.0) -> None:
        self.ffmpeg_cmd = ffmpeg_cmd
        self.timeout = timeout

    def run(self, source: Path, output: Path, cancel=None) -> None:
        stream = (
            ffmpeg.input(str(source), err_detect="ignore_err")["a:0"]
            .output(
                "pipe:",
                format="s16le",
                acodec="pcm_s16le",
                ac=PCM_CHANNELS,
                ar=PCM_SAMPLE_RATE,
            )
            .global_args("-hide_banner", "-nostdin", "-loglevel", "error")
        )
        args = stream.compile(cmd=self.ffmpeg_cmd)
        label = _tool_label(self.ffmpeg_cmd)

        with tempfile.TemporaryFile() as stderr_file:
            try:
                proc = subprocess.Popen(
                    args,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=stderr_file,
                )
            except OSError as e:
                raise ExtractionError(f"Reader failed to start: {e}") from e

            watchdog = ProcessWatchdog(proc, self.timeout, cancel)
            try:
                with watchdog:
                    frames = self._pump(proc, output)
                    returncode = proc.wait()
            finally:
                if proc.poll() is None:
                    proc.kill()
                    proc.wait()
                if proc.stdout is not None:
                    proc.stdout.close()
            watchdog.check(label)

            stderr_file.seek(0)
            stderr = stderr_file.read().decode("utf-8", errors="replace").strip()

        if frames == 0:
            raise ExtractionError(f"Reader produced no audio samples: {stderr or 'no output'}")
        if returncode != 0:
            logger.warning(
                "Reader exited with %d after %d samples; keeping decoded audio",
                returncode,
                frames,
            )

    def _pump(self, proc: subprocess.Popen, output: Path) -> int:
        """Copy PCM from the reader into the writer. Returns frames written."""
        assert proc.stdout is not None
        frames = 0
        carry = b""
        with sf.SoundFile(
            str(output),
            mode="w",
            samplerate=PCM_SAMPLE_RATE,
            channels=PCM_CHANNELS,
            subtype="PCM_16",
            format="WAV",
        ) as writer:
            while True:
                chunk = proc.stdout.read(PCM_CHUNK_BYTES)
                if not chunk:
                    break
                data = carry + chunk
                usable = len(data) - len(data) % PCM_FRAME_BYTES
                carry = data[usable:]
                if not usable:
                    continue
                samples = np.frombuffer(data[:usable], dtype="<i2")
                if PCM_CHANNELS > 1:
                    samples = samples.reshape(-1, PCM_CHANNELS)
                writer.write(samples)
                frames += len(samples)
        return frames


class ExternalTranscoderTier:
    """Last resort: a located ffmpeg binary transcoding audio to AAC."""

    name = "external_transcoder"
    suffix = ".m4a"

    def __init__(self, resolver: ToolResolver, timeout: float = 1800.0) -> None:
        self.resolver = resolver
        self.timeout = timeout

    def command(self, ffmpeg_path: Path, source: Path, output: Path) -> list[str]:
        # -hide_banner/-loglevel keep stderr empty unless something failed
        return [
            str(ffmpeg_path),
            "-hide_banner",
            "-loglevel",
            "error",
            "-i",
            str(source),
            "-vn",
            "-c:a",
            "aac",
            "-b:a",
            "64k",
            "-y",
            str(output),
        ]

    def run(self, source: Path, output: Path, cancel=None) -> None:
        ffmpeg_path = self.resolver.locate()
        if ffmpeg_path is None:
            raise ExtractionError(f"{self.resolver.name} not found in any known location")

        returncode, _, stderr = _run_watched(
            self.command(ffmpeg_path, source, output),
            self.timeout,
            cancel,
        )
        stderr = stderr.strip()
        if returncode != 0 or stderr:
            raise ExtractionError(f"FFmpeg failed: {stderr or f'exit code {returncode}'}")
