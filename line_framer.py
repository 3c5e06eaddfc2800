import codecs
import gzip
import logging
import re
import zlib
from bisect import bisect_right
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, List, Tuple, Union

# --- Configuration & Constants ---
DEFAULT_CHUNK_SIZE: int = 64 * 1024  # Disk reads arrive in 64KB buffers
CHECKPOINT_INTERVAL: int = 1000  # Record a line -> byte offset checkpoint every N lines
DEFAULT_ENCODING: str = "utf-8"

LINE_BREAK_RE: re.Pattern = re.compile(r'(\r?\n)')
# Undecodable input bytes are carried as lone surrogates (surrogateescape) until dispatch.
ESCAPED_BYTE_RE: re.Pattern = re.compile("[\udc80-\udcff]")

LineHandler = Callable[[int, str], None]
ChunkSource = Union[str, Path, BinaryIO]


class StreamReadError(IOError):
    """Raised when the underlying file source fails while being streamed."""


@dataclass
class LineIndex:
    """
    Sparse map of line numbers to the byte offset at which each line starts.

    Only every `checkpoint_interval`-th line is recorded (lines 1, 1+N, 1+2N, ...), which
    is enough to seek close to any line and read forward from there.
    """
    checkpoint_interval: int = CHECKPOINT_INTERVAL
    line_numbers: List[int] = field(default_factory=list)
    byte_offsets: List[int] = field(default_factory=list)
    total_lines: int = 0
    total_bytes: int = 0

    def add(self, line_number: int, byte_offset: int):
        if self.line_numbers and line_number <= self.line_numbers[-1]:
            return
        self.line_numbers.append(line_number)
        self.byte_offsets.append(byte_offset)

    def nearest(self, line_number: int) -> Tuple[int, int]:
        """Returns (checkpoint_line, byte_offset) for the closest checkpoint at or before line_number."""
        pos = bisect_right(self.line_numbers, line_number) - 1
        if pos < 0:
            return 1, 0
        return self.line_numbers[pos], self.byte_offsets[pos]

    def __len__(self) -> int:
        return len(self.line_numbers)


class LineFramer:
    """
    Reassembles arbitrarily sized text (or UTF-8 byte) chunks into complete lines.

    Every complete line is handed to `on_line(line_number, text)` with a 1-based,
    cumulative line number. The trailing fragment of each chunk is carried over and
    prepended to the next one; `close()` flushes it as the final line when non-empty.
    The dispatched lines depend only on the concatenated stream, never on where the
    chunk boundaries fall.

    Attributes:
        index: Checkpoints of line start byte offsets (when offset tracking is on).
        line_number: Number of the last dispatched line (first_line_number - 1 before any).
        byte_offset: Byte offset at which the next line starts.
    """

    def __init__(self, on_line: LineHandler, checkpoint_interval: int = CHECKPOINT_INTERVAL,
                 first_line_number: int = 1, first_byte_offset: int = 0,
                 encoding: str = DEFAULT_ENCODING, track_offsets: bool = True):
        if checkpoint_interval <= 0:
            raise ValueError("checkpoint_interval must be positive")
        self.on_line = on_line
        self.encoding = encoding
        self.track_offsets = track_offsets
        self.line_number = first_line_number - 1
        self.byte_offset = first_byte_offset
        self.index = LineIndex(checkpoint_interval=checkpoint_interval)
        self.stopped = False
        self.closed = False
        self._carry = ""
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="surrogateescape")

    def feed(self, chunk: Union[str, bytes]) -> int:
        """Consumes one chunk and dispatches every line it completes. Returns the number dispatched."""
        if self.stopped or self.closed:
            return 0
        text = self._decoder.decode(chunk) if isinstance(chunk, (bytes, bytearray)) else chunk
        if not text:
            return 0

        parts = LINE_BREAK_RE.split(self._carry + text)
        # parts alternates [line, terminator, line, terminator, ..., trailing fragment]
        self._carry = parts[-1]
        dispatched = 0
        for i in range(0, len(parts) - 1, 2):
            self._dispatch(parts[i], parts[i + 1])
            dispatched += 1
            if self.stopped:
                self._carry = ""
                break
        return dispatched

    def close(self) -> int:
        """Signals end of stream: flushes the decoder and dispatches any carried partial line."""
        if self.closed:
            return 0
        dispatched = 0
        if not self.stopped:
            tail = self._decoder.decode(b"", final=True)
            if tail:
                dispatched += self.feed(tail)
            if self._carry and not self.stopped:
                self._dispatch(self._carry, "")
                dispatched += 1
        self._carry = ""
        self.closed = True
        self.index.total_lines = self.line_number
        self.index.total_bytes = self.byte_offset
        return dispatched

    def stop(self):
        """Stops dispatching; any further input (including the carried fragment) is ignored."""
        self.stopped = True

    def _dispatch(self, line: str, terminator: str):
        self.line_number += 1
        if self.track_offsets:
            if (self.line_number - 1) % self.index.checkpoint_interval == 0:
                self.index.add(self.line_number, self.byte_offset)
            self.byte_offset += len(line.encode(self.encoding, errors="surrogateescape")) + len(terminator)
        if ESCAPED_BYTE_RE.search(line):
            line = line.encode(self.encoding, errors="surrogateescape").decode(self.encoding, errors="replace")
        self.on_line(self.line_number, line)


# --- File Streaming ---
def _is_gzip_name(name: str) -> bool:
    return name.lower().endswith((".gz", ".tgz"))


def iter_file_chunks(source: ChunkSource, chunk_size: int = DEFAULT_CHUNK_SIZE,
                     start_offset: int = 0) -> Iterator[bytes]:
    """
    Yields raw byte chunks from a path or a binary file object, decompressing .gz sources.

    Args:
        source: A filesystem path or an object with a binary `read` method (e.g. an upload).
        chunk_size: Maximum bytes per yielded chunk.
        start_offset: Decompressed byte offset to start reading from (see LineIndex).

    Raises:
        StreamReadError: If opening, seeking, reading or decompressing fails.
    """
    name = str(getattr(source, "name", source))
    try:
        if hasattr(source, "read"):
            stream = gzip.GzipFile(fileobj=source, mode="rb") if _is_gzip_name(name) else source
        elif _is_gzip_name(name):
            stream = gzip.open(source, "rb")
        else:
            stream = open(source, "rb")
    except OSError as e:
        logging.error(f"Could not open log source {name}: {e}", exc_info=True)
        raise StreamReadError(f"Could not open {name}: {e}") from e

    owns_stream = stream is not source
    try:
        if start_offset:
            stream.seek(start_offset)
        while True:
            chunk = stream.read(chunk_size)
            if not chunk:
                break
            yield chunk
    except (OSError, EOFError, zlib.error) as e:
        logging.error(f"Error while streaming {name}: {e}", exc_info=True)
        raise StreamReadError(f"Error while reading {name}: {e}") from e
    finally:
        if owns_stream:
            stream.close()


def build_line_index(source: ChunkSource, checkpoint_interval: int = CHECKPOINT_INTERVAL,
                     chunk_size: int = DEFAULT_CHUNK_SIZE) -> LineIndex:
    """Scans a whole source once and returns its line -> byte offset checkpoints."""
    framer = LineFramer(lambda _number, _line: None, checkpoint_interval=checkpoint_interval)
    for chunk in iter_file_chunks(source, chunk_size):
        framer.feed(chunk)
    framer.close()
    logging.info(f"Indexed {framer.index.total_lines:,} lines ({len(framer.index)} checkpoints).")
    return framer.index
