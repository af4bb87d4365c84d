"""
Test configuration and shared fixtures.
"""

from __future__ import annotations

import json
import os
import sys
import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest
import yaml

from scribeline.config import ScribelineConfig

TOOL_PREAMBLE = """\
#!{python}
import json
import pathlib
import sys
import time

argv = sys.argv[1:]


def opt(name):
    return argv[argv.index(name) + 1] if name in argv else None


def say(text, stream=sys.stdout):
    stream.write(text + "\\n")
    stream.flush()


def write_report(data):
    report_dir = pathlib.Path(opt("--report-path"))
    (report_dir / "report.json").write_text(json.dumps(data))

"""


@pytest.fixture
def make_tool(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing an executable fake CLI whose behavior is ``body``.

    The body runs after a preamble that defines ``argv``, ``opt(name)``,
    ``say(text)`` and ``write_report(data)``.
    """
    counter = {"n": 0}

    def factory(body: str, name: str | None = None) -> Path:
        counter["n"] += 1
        path = tmp_path / "bin" / (name or f"fake-tool-{counter['n']}")
        path.parent.mkdir(parents=True, exist_ok=True)
        script = TOOL_PREAMBLE.format(python=sys.executable) + textwrap.dedent(body)
        path.write_text(script)
        os.chmod(path, 0o755)
        return path

    return factory


@pytest.fixture
def fast_config(tmp_path: Path) -> ScribelineConfig:
    """Config with short timeouts and a private scratch directory."""
    return ScribelineConfig(
        job_timeout_seconds=20.0,
        termination_grace_seconds=1.0,
        settle_seconds=0.5,
        poll_interval_seconds=0.02,
        scratch_dir=tmp_path / "scratch",
    )


@pytest.fixture
def audio_file(tmp_path: Path) -> Path:
    """An input file the fake tools can be pointed at."""
    path = tmp_path / "media" / "interview.wav"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"RIFF0000WAVEfmt ")
    return path


@pytest.fixture
def sample_report() -> dict:
    """Return a report in the layout the transcription CLI writes."""
    return {
        "text": "<|startoftranscript|><|en|> Hello there. General Kenobi.",
        "language": "en",
        "segments": [
            {"id": 1, "start": 2.5, "end": 4.0, "text": "<|2.50|> General  Kenobi.<|4.00|>"},
            {"id": 0, "start": 0.0, "end": 2.5, "text": "<|en|><|0.00|> Hello there."},
        ],
    }


@pytest.fixture
def tmp_config_file(tmp_path: Path) -> Path:
    """Write a scribeline.yaml with a few non-default values."""
    path = tmp_path / "scribeline.yaml"
    with open(path, "w") as f:
        yaml.dump(
            {
                "language": "de",
                "model": "small",
                "job_timeout_seconds": 60,
                "diarization": {"enabled": True},
            },
            f,
        )
    return path


@pytest.fixture
def report_tool(make_tool: Callable[..., Path]) -> Callable[..., Path]:
    """Factory for a fake CLI that prints lines, writes a report and exits."""

    def factory(
        report: dict | None,
        exit_code: int = 0,
        lines: list[str] | None = None,
    ) -> Path:
        body = [f"say({line!r})" for line in (lines or [])]
        if report is not None:
            body.append(f"write_report(json.loads({json.dumps(report)!r}))")
        body.append(f"sys.exit({exit_code})")
        return make_tool("\n".join(body) + "\n")

    return factory
