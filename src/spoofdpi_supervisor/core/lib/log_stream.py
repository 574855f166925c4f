"""Normalization of the child process output stream.

The child's combined stdout/stderr arrives in arbitrary chunks that may split
lines, UTF-8 sequences and terminal escape codes. This module turns those
chunks into a bounded sequence of clean log lines:
- ANSI/VT100 escape sequences are removed
- CR and CR-LF terminators become LF
- Unterminated output is held back until the rest of the line arrives
- Blank lines are dropped
- Consecutive duplicates collapse into a single ``line (×N)`` entry
- The oldest entries are pruned in batches once the high-water mark is passed

Mutation happens from the background reader thread; readers always receive a
snapshot copy.

Example:
    normalizer = LogStreamNormalizer()
    normalizer.feed(b"\\x1b[31mERROR\\x1b[0m\\n")
    normalizer.messages  # ["ERROR"]
"""

import codecs
import re
import threading
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Final

ANSI_ESCAPE: Final = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")

MAX_LINES: Final = 500
PRUNE_BATCH: Final = 100


@dataclass(frozen=True)
class LogLine:
    """Single stored log entry.

    Attributes:
        text: Clean line content
        timestamp: When the line (or its first occurrence) was emitted
        repeat: How many consecutive times the line was seen
    """

    text: str
    timestamp: datetime = field(default_factory=datetime.now)
    repeat: int = 1

    def render(self, with_time: bool = False) -> str:
        text = f"{self.text} (×{self.repeat})" if self.repeat > 1 else self.text
        if with_time:
            return f"[{self.timestamp:%H:%M:%S}] {text}"
        return text


class LogStreamNormalizer:
    """Reassemble, clean and deduplicate output chunks into log lines."""

    def __init__(
        self,
        max_lines: int = MAX_LINES,
        prune_batch: int = PRUNE_BATCH,
        on_line: Callable[[LogLine], None] | None = None,
    ) -> None:
        if prune_batch < 1 or prune_batch > max_lines:
            raise ValueError("prune_batch must be between 1 and max_lines")
        self.max_lines = max_lines
        self.prune_batch = prune_batch
        self.on_line = on_line
        self._lines: list[LogLine] = []
        self._partial = ""
        self._last_text: str | None = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._lock = threading.Lock()

    @property
    def lines(self) -> list[LogLine]:
        with self._lock:
            return list(self._lines)

    @property
    def messages(self) -> list[str]:
        """Rendered lines, oldest first."""
        return [line.render() for line in self.lines]

    @property
    def transcript(self) -> list[str]:
        """Rendered lines prefixed with their time, oldest first."""
        return [line.render(with_time=True) for line in self.lines]

    @property
    def partial(self) -> str:
        return self._partial

    def feed(self, chunk: bytes | str) -> list[LogLine]:
        """Consume one chunk of raw output.

        Args:
            chunk: Raw bytes from the pipe or already decoded text

        Returns:
            list[LogLine]: Entries added or rewritten by this chunk
        """
        with self._lock:
            text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
            text = ANSI_ESCAPE.sub("", text)
            text = text.replace("\r\n", "\n").replace("\r", "\n")

            segments = (self._partial + text).split("\n")
            # A trailing terminator leaves an empty last segment
            self._partial = segments.pop()

            emitted = []
            for segment in segments:
                line = self._emit(segment)
                if line is not None:
                    emitted.append(line)
        self._notify(emitted)
        return emitted

    def append(self, message: str) -> LogLine | None:
        """Record a message that did not come from the child's output."""
        with self._lock:
            line = self._emit(message)
        if line is not None:
            self._notify([line])
        return line

    def normalize(self, chunks: Iterable[bytes | str]) -> Iterator[LogLine]:
        """Lazily yield lines as the given chunks complete them."""
        for chunk in chunks:
            yield from self.feed(chunk)

    def reset(self) -> None:
        """Drop the partial line and dedup state without flushing them."""
        with self._lock:
            self._partial = ""
            self._last_text = None
            self._decoder.reset()

    def clear(self) -> None:
        """Remove all stored lines."""
        with self._lock:
            self._lines.clear()
            self._partial = ""
            self._last_text = None
            self._decoder.reset()

    def _emit(self, raw: str) -> LogLine | None:
        # Escape sequences split across chunks only become whole here
        text = ANSI_ESCAPE.sub("", raw).strip()
        if not text:
            return None

        if text == self._last_text and self._lines:
            previous = self._lines[-1]
            line = replace(previous, repeat=previous.repeat + 1)
            self._lines[-1] = line
            return line

        line = LogLine(text)
        self._lines.append(line)
        self._last_text = text
        if len(self._lines) > self.max_lines:
            del self._lines[: self.prune_batch]
        return line

    def _notify(self, lines: list[LogLine]) -> None:
        if self.on_line is None:
            return
        for line in lines:
            self.on_line(line)
