"""
scribeline.extract.audio - Fallback-chain audio extraction.

Runs the extraction tiers in order until one produces a non-empty audio
file. Earlier failures are logged and swallowed; only an exhausted chain
raises ExtractionError. A cancelled job stops the chain between tiers and
kills the running tier's subprocess.
"""

from __future__ import annotations

import logging
import tempfile
import uuid
from pathlib import Path
from typing import Any

from scribeline.exceptions import ExtractionError, JobCancelledError
from scribeline.extract.tiers import (
    CompositionRemuxTier,
    DirectRemuxTier,
    ExternalTranscoderTier,
    ExtractionTier,
    SampleTranscodeTier,
)
from scribeline.models import ExtractionResult, MediaSource
from scribeline.tools import PathListResolver, StaticResolver, ToolResolver

logger = logging.getLogger(__name__)


class AudioExtractor:
    """Turns a video source into exactly one scratch audio file."""

    def __init__(
        self,
        tiers: list[ExtractionTier],
        scratch_dir: Path | None = None,
    ) -> None:
        if not tiers:
            raise ValueError("AudioExtractor needs at least one tier")
        self.tiers = tiers
        self.scratch_dir = scratch_dir

    @classmethod
    def from_config(
        cls,
        config: Any,
        ffmpeg_resolver: ToolResolver | None = None,
        probe_resolver: ToolResolver | None = None,
    ) -> AudioExtractor:
        """Build the standard four-tier chain from a ScribelineConfig.

        ffmpeg and ffprobe are located once and every tier runs the same
        binaries. A tool that can't be located falls back to its bare name
        for the ffmpeg-python tiers, leaving the lookup to PATH.
        """
        ffmpeg_resolver = ffmpeg_resolver or PathListResolver(
            config.transcoder_name, config.transcoder_search_paths
        )
        probe_resolver = probe_resolver or PathListResolver(
            config.probe_name, config.transcoder_search_paths
        )
        ffmpeg_path = ffmpeg_resolver.locate()
        probe_path = probe_resolver.locate()
        ffmpeg_cmd = str(ffmpeg_path) if ffmpeg_path else config.transcoder_name
        probe_cmd = str(probe_path) if probe_path else config.probe_name

        timeout = config.job_timeout_seconds
        tiers: list[ExtractionTier] = [
            DirectRemuxTier(ffmpeg_cmd=ffmpeg_cmd, timeout=timeout),
            CompositionRemuxTier(ffmpeg_cmd=ffmpeg_cmd, probe_cmd=probe_cmd, timeout=timeout),
            SampleTranscodeTier(ffmpeg_cmd=ffmpeg_cmd, timeout=timeout),
            ExternalTranscoderTier(
                StaticResolver(ffmpeg_path, name=config.transcoder_name), timeout=timeout
            ),
        ]
        return cls(tiers, scratch_dir=config.scratch_dir)

    def _scratch_stem(self) -> Path:
        directory = self.scratch_dir or Path(tempfile.gettempdir())
        directory.mkdir(parents=True, exist_ok=True)
        return directory / f"scribeline-audio-{uuid.uuid4().hex}"

    def extract(self, source: MediaSource | Path, cancel=None) -> ExtractionResult:
        """Extract audio from a video file.

        Args:
            source: Video to extract from
            cancel: Token checked between tiers and watched during each one

        Returns:
            ExtractionResult owning the scratch file; call ``release()``
            when done with it

        Raises:
            ExtractionError: If every tier failed
            JobCancelledError: If ``cancel`` fired; no scratch file is left
        """
        path = source.path if isinstance(source, MediaSource) else Path(source)
        if not path.exists():
            raise ExtractionError(f"Source file not found: {path}")

        stem = self._scratch_stem()
        failures: list[str] = []

        for tier in self.tiers:
            if cancel is not None and cancel.cancelled:
                raise JobCancelledError(f"Cancelled during audio extraction: {path.name}")
            output = stem.with_suffix(tier.suffix)
            logger.debug("Trying %s for %s", tier.name, path.name)
            try:
                tier.run(path, output, cancel=cancel)
                if not output.exists() or output.stat().st_size == 0:
                    raise ExtractionError("produced no audio")
            except JobCancelledError:
                output.unlink(missing_ok=True)
                raise
            except Exception as e:
                output.unlink(missing_ok=True)
                if cancel is not None and cancel.cancelled:
                    raise JobCancelledError(
                        f"Cancelled during audio extraction: {path.name}"
                    ) from e
                failures.append(f"{tier.name}: {e}")
                logger.warning("Audio extraction via %s failed for %s: %s", tier.name, path.name, e)
                continue

            logger.info("Extracted audio from %s via %s", path.name, tier.name)
            return ExtractionResult(output, tier.name)

        raise ExtractionError("All extraction methods failed. " + "; ".join(failures))
