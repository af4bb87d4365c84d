"""
scribeline.transcribe.streams - Output channel for a running subprocess.

Reader threads own the process pipes and push decoded lines into a single
queue; a waiter thread pushes the exit status. The job's control loop is the
only consumer, so ``queue.get(timeout=...)`` acts as one wait over output,
process exit, deadlines and cancellation wake-ups.
"""

from __future__ import annotations

import logging
import queue
import re
import subprocess
import threading
from typing import IO, NamedTuple

logger = logging.getLogger(__name__)

LINE_SPLIT_RE = re.compile(rb"\r\n|\r|\n")
READ_SIZE = 4096


class LineEvent(NamedTuple):
    stream: str
    text: str


class ExitEvent(NamedTuple):
    code: int


class WakeEvent(NamedTuple):
    reason: str


ChannelEvent = LineEvent | ExitEvent | WakeEvent


def split_lines(buffer: bytes) -> tuple[list[bytes], bytes]:
    """Split on ``\\n``/``\\r``; returns complete lines and the unterminated rest."""
    parts = LINE_SPLIT_RE.split(buffer)
    return parts[:-1], parts[-1]


class OutputChannel:
    """Streams a process's stdout/stderr and exit status into one queue."""

    def __init__(self, process: subprocess.Popen) -> None:
        self.process = process
        self.events: queue.Queue[ChannelEvent] = queue.Queue()
        self._readers: list[threading.Thread] = []
        self._waiter: threading.Thread | None = None
        self._closed = threading.Event()

    def start(self) -> None:
        for name, pipe in (("stdout", self.process.stdout), ("stderr", self.process.stderr)):
            if pipe is not None:
                self._readers.append(self._spawn(self._read, f"reader-{name}", name, pipe))
        self._waiter = self._spawn(self._wait, "waiter")

    def _spawn(self, target, name: str, *args) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, name=f"scribeline-{name}", daemon=True)
        thread.start()
        return thread

    def _read(self, stream: str, pipe: IO[bytes]) -> None:
        pending = b""
        try:
            while True:
                chunk = pipe.read1(READ_SIZE) if hasattr(pipe, "read1") else pipe.read(READ_SIZE)
                if not chunk:
                    break
                lines, pending = split_lines(pending + chunk)
                for raw in lines:
                    self._push_line(stream, raw)
        except (OSError, ValueError) as e:
            logger.debug("Reader for %s stopped: %s", stream, e)
        if pending:
            self._push_line(stream, pending)

    def _push_line(self, stream: str, raw: bytes) -> None:
        text = raw.decode("utf-8", errors="replace")
        if text.strip():
            self.events.put(LineEvent(stream, text))

    def _wait(self) -> None:
        code = self.process.wait()
        # Exit is queued after the last line whenever the readers reach EOF promptly
        for thread in self._readers:
            thread.join(timeout=0.5)
        self.events.put(ExitEvent(code))

    def readers_done(self) -> bool:
        return not any(thread.is_alive() for thread in self._readers)

    def wake(self, reason: str) -> None:
        """Interrupt a pending ``get`` in the control loop."""
        self.events.put(WakeEvent(reason))

    def get(self, timeout: float | None) -> ChannelEvent | None:
        try:
            return self.events.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self, timeout: float = 1.0) -> None:
        """Join the worker threads and close drained pipes. Safe to call twice.

        A reader still blocked (a grandchild holding the pipe open) is left
        to die with the process; closing its pipe would block on the reader.
        """
        if self._closed.is_set():
            return
        self._closed.set()
        for thread in self._readers:
            thread.join(timeout=timeout)
        if self._waiter is not None:
            self._waiter.join(timeout=timeout)
        if any(thread.is_alive() for thread in self._readers):
            logger.debug("Output reader still running after close; leaving pipes open")
            return
        for pipe in (self.process.stdout, self.process.stderr):
            if pipe is not None:
                pipe.close()
