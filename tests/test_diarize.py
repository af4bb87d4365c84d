"""Tests for scribeline.diarize package."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest

from scribeline.config import DiarizationSettings
from scribeline.diarize.client import DEFAULT_SPEAKER, DiarizationClient, parse_spans
from scribeline.diarize.merge import merge_speakers, speaker_at
from scribeline.exceptions import DiarizationError
from scribeline.models import SpeakerSpan, TranscriptSegment
from scribeline.tools import StaticResolver
from scribeline.transcribe.executor import CancelToken

SERVER_URL = "http://diarizer.test/diarize"


def _span(start: float, end: float, speaker: str) -> SpeakerSpan:
    return SpeakerSpan(start_seconds=start, end_seconds=end, speaker_id=speaker)


def _segment(index: int, start: float, end: float, text: str = "x") -> TranscriptSegment:
    return TranscriptSegment(index=index, start_seconds=start, end_seconds=end, text=text)


def _http_client(handler, **kwargs) -> DiarizationClient:
    return DiarizationClient(
        DiarizationSettings(enabled=True, server_url=SERVER_URL, timeout_seconds=5),
        StaticResolver(None),
        transport=httpx.MockTransport(handler),
        poll_interval=0.02,
        **kwargs,
    )


class TestMergeSpeakers:
    def test_segments_take_speaker_of_containing_span(self) -> None:
        segments = [_segment(0, 0.5, 1.0, "a"), _segment(1, 1.2, 2.0, "b"), _segment(2, 3.5, 4.0, "c")]
        spans = [_span(0.0, 1.0, "S0"), _span(1.0, 3.0, "S1"), _span(3.0, 5.0, "S0")]

        merged = merge_speakers(segments, spans)

        assert [s.speaker_id for s in merged] == ["S0", "S1", "S0"]
        assert [s.text for s in merged] == ["a", "b", "c"]
        assert all(s.speaker_id is None for s in segments)

    def test_boundary_belongs_to_next_span(self) -> None:
        spans = [_span(0.0, 1.0, "S0"), _span(1.0, 2.0, "S1")]
        assert speaker_at(1.0, spans) == "S1"

    def test_first_matching_span_wins_on_overlap(self) -> None:
        spans = [_span(2.0, 6.0, "S1"), _span(0.0, 5.0, "S0")]
        merged = merge_speakers([_segment(0, 3.0, 4.0)], spans)
        assert merged[0].speaker_id == "S0"

    def test_uncovered_segment_has_no_speaker(self) -> None:
        merged = merge_speakers([_segment(0, 9.0, 10.0)], [_span(0.0, 1.0, "S0")])
        assert merged[0].speaker_id is None

    def test_no_spans(self) -> None:
        merged = merge_speakers([_segment(0, 0.0, 1.0)], [])
        assert merged[0].speaker_id is None

    def test_merge_is_idempotent(self) -> None:
        segments = [_segment(0, 0.0, 1.0), _segment(1, 1.5, 2.0)]
        spans = [_span(0.0, 1.2, "S0"), _span(1.2, 3.0, "S1")]

        once = merge_speakers(segments, spans)

        assert merge_speakers(once, spans) == once


class TestParseSpans:
    def test_sorted_and_converted(self) -> None:
        spans = parse_spans(
            {
                "segments": [
                    {"start": 2.0, "end": 3.0, "speaker": "SPEAKER_01"},
                    {"start": 0, "end": 2, "speaker": "SPEAKER_00"},
                ]
            }
        )
        assert [(s.start_seconds, s.speaker_id) for s in spans] == [
            (0.0, "SPEAKER_00"),
            (2.0, "SPEAKER_01"),
        ]

    def test_malformed_items_skipped(self) -> None:
        spans = parse_spans(
            {
                "segments": [
                    {"start": "0", "end": 1, "speaker": "A"},
                    {"start": 0, "end": 1},
                    "junk",
                    {"start": 1, "end": 2, "speaker": "B"},
                ]
            }
        )
        assert [s.speaker_id for s in spans] == ["B"]

    def test_default_speaker_fills_missing(self) -> None:
        spans = parse_spans({"segments": [{"start": 0, "end": 1}]}, default_speaker=DEFAULT_SPEAKER)
        assert spans[0].speaker_id == DEFAULT_SPEAKER

    @pytest.mark.parametrize("payload", [{}, {"segments": "nope"}, [], None])
    def test_missing_segments_raises(self, payload) -> None:
        with pytest.raises(DiarizationError):
            parse_spans(payload)


class TestHttpDiarization:
    def test_uploads_audio_field(self, audio_file: Path) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = request.read()
            return httpx.Response(
                200, json={"segments": [{"start": 0.0, "end": 1.5, "speaker": "SPEAKER_00"}]}
            )

        spans = _http_client(handler).diarize(audio_file)

        assert spans == [_span(0.0, 1.5, "SPEAKER_00")]
        assert seen["url"] == SERVER_URL
        assert b'name="audio"' in seen["body"]
        assert b'filename="interview.wav"' in seen["body"]
        assert audio_file.read_bytes() in seen["body"]

    def test_error_status(self, audio_file: Path) -> None:
        client = _http_client(lambda request: httpx.Response(500, text="model crashed"))
        with pytest.raises(DiarizationError, match="status 500: model crashed"):
            client.diarize(audio_file)

    def test_invalid_json(self, audio_file: Path) -> None:
        client = _http_client(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(DiarizationError, match="Invalid response"):
            client.diarize(audio_file)

    def test_connection_error(self, audio_file: Path) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(DiarizationError, match="request failed"):
            _http_client(handler).diarize(audio_file)

    def test_cancel_while_waiting(self, audio_file: Path) -> None:
        release = threading.Event()

        def handler(request: httpx.Request) -> httpx.Response:
            release.wait(5)
            return httpx.Response(200, json={"segments": []})

        token = CancelToken()
        timer = threading.Timer(0.1, token.cancel)
        timer.start()
        try:
            with pytest.raises(DiarizationError, match="cancelled"):
                _http_client(handler).diarize(audio_file, cancel=token)
        finally:
            release.set()
            timer.cancel()


NATIVE_TOOL = """\
if argv[:2] == ["transcribe", "--help"]:
    say("  --diarize   Enable speaker diarization")
    sys.exit(0)
assert "--diarize" in argv
say("Diarizing...")
say(json.dumps({"segments": [{"start": 0, "end": 2}, {"start": 2, "end": 4, "speaker": "SPEAKER_01"}]}))
"""


class TestNativeDiarization:
    def _client(self, tool: Path, **settings) -> DiarizationClient:
        return DiarizationClient(
            DiarizationSettings(enabled=True, **settings),
            StaticResolver(tool),
            transport=httpx.MockTransport(lambda r: httpx.Response(599)),
            poll_interval=0.02,
        )

    def test_native_output_parsed(self, make_tool: Callable[..., Path], audio_file: Path) -> None:
        client = self._client(make_tool(NATIVE_TOOL))

        spans = client.diarize(audio_file)

        assert client.supports_native()
        assert [s.speaker_id for s in spans] == [DEFAULT_SPEAKER, "SPEAKER_01"]

    def test_capability_check_runs_once(
        self, make_tool: Callable[..., Path], audio_file: Path, tmp_path: Path
    ) -> None:
        counter = tmp_path / "help_calls.txt"
        tool = make_tool(
            f"if argv[:2] == ['transcribe', '--help']:\n"
            f"    with open({str(counter)!r}, 'a') as f:\n"
            f"        f.write('help\\n')\n"
            f"    say('usage: transcribe --audio-path PATH')\n"
        )
        client = self._client(tool)

        assert not client.supports_native()
        assert not client.supports_native()
        assert counter.read_text().count("help") == 1

    def test_falls_back_to_server_without_native(
        self, make_tool: Callable[..., Path], audio_file: Path
    ) -> None:
        tool = make_tool("say('usage: transcribe --audio-path PATH')\n")
        client = DiarizationClient(
            DiarizationSettings(enabled=True, server_url=SERVER_URL),
            StaticResolver(tool),
            transport=httpx.MockTransport(
                lambda r: httpx.Response(200, json={"segments": [{"start": 0, "end": 1, "speaker": "S9"}]})
            ),
            poll_interval=0.02,
        )

        assert [s.speaker_id for s in client.diarize(audio_file)] == ["S9"]

    def test_native_failure(self, make_tool: Callable[..., Path], audio_file: Path) -> None:
        tool = make_tool(
            "if '--help' in argv:\n"
            "    say('--diarize')\n"
            "    sys.exit(0)\n"
            "say('no speakers model', sys.stderr)\n"
            "sys.exit(4)\n"
        )
        with pytest.raises(DiarizationError, match="no speakers model"):
            self._client(tool).diarize(audio_file)

    def test_native_timeout(self, make_tool: Callable[..., Path], audio_file: Path) -> None:
        tool = make_tool(
            "if '--help' in argv:\n"
            "    say('--diarize')\n"
            "    sys.exit(0)\n"
            "time.sleep(30)\n"
        )
        with pytest.raises(DiarizationError, match="timed out"):
            self._client(tool, timeout_seconds=0.3).diarize(audio_file)

    def test_native_output_with_log_noise(
        self, make_tool: Callable[..., Path], audio_file: Path
    ) -> None:
        payload = json.dumps({"segments": [{"start": 0, "end": 1, "speaker": "A"}]})
        tool = make_tool(
            "if '--help' in argv:\n"
            "    say('speaker diarization available')\n"
            "    sys.exit(0)\n"
            f"sys.stdout.write('Loaded model\\n' + {payload!r} + '\\nDone\\n')\n"
        )
        assert [s.speaker_id for s in self._client(tool).diarize(audio_file)] == ["A"]

    def test_undecodable_help_text(self, make_tool: Callable[..., Path], audio_file: Path) -> None:
        tool = make_tool(
            "if '--help' in argv:\n"
            "    sys.stdout.buffer.write(b'\\xff\\xfe diarize\\n')\n"
            "    sys.exit(0)\n"
            "sys.stdout.buffer.write(b'\\xff progress\\n')\n"
            "say(json.dumps({'segments': [{'start': 0, 'end': 1, 'speaker': 'A'}]}))\n"
        )
        client = self._client(tool)

        assert client.supports_native()
        assert [s.speaker_id for s in client.diarize(audio_file)] == ["A"]

    def test_undecodable_failure_output(self, make_tool: Callable[..., Path], audio_file: Path) -> None:
        tool = make_tool(
            "if '--help' in argv:\n"
            "    say('--diarize')\n"
            "    sys.exit(0)\n"
            "sys.stderr.buffer.write(b'\\xff\\xfe crashed\\n')\n"
            "sys.exit(3)\n"
        )
        with pytest.raises(DiarizationError, match="crashed"):
            self._client(tool).diarize(audio_file)
