"""
Tests for chunk-to-line framing, byte offset checkpoints and file streaming.

Covers:
1. Line splitting across arbitrary chunk boundaries (text and UTF-8 bytes)
2. Checkpoint recording and nearest-checkpoint lookup
3. File and gzip streaming, including read errors
"""

import gzip
import random

import pytest

from line_framer import LineFramer, LineIndex, StreamReadError, build_line_index, iter_file_chunks

SAMPLE_TEXT = (
    "first line\r\n"
    "\n"
    "second: héllo wörld ✓\n"
    "[ 12.345678] kernel\r\n"
    "\r\n"
    "last line without newline"
)


def _frame(chunks, **kwargs):
    lines = []
    framer = LineFramer(lambda number, line: lines.append((number, line)), **kwargs)
    for chunk in chunks:
        framer.feed(chunk)
    framer.close()
    return lines, framer


def _random_splits(data, rng, max_size=7):
    pieces, pos = [], 0
    while pos < len(data):
        size = rng.randint(1, max_size)
        pieces.append(data[pos:pos + size])
        pos += size
    return pieces


class TestLineFramer:

    def test_basic_lines(self):
        lines, framer = _frame(["a\nb\nc"])
        assert lines == [(1, "a"), (2, "b"), (3, "c")]
        assert framer.line_number == 3

    def test_crlf_and_trailing_newline(self):
        """A trailing terminator does not produce an extra empty line."""
        lines, _ = _frame(["a\r\nb\r\n"])
        assert lines == [(1, "a"), (2, "b")]

    def test_empty_lines_are_kept(self):
        lines, _ = _frame(["a\n\nb\n"])
        assert lines == [(1, "a"), (2, ""), (3, "b")]

    def test_carry_is_only_flushed_on_close(self):
        lines = []
        framer = LineFramer(lambda number, line: lines.append(line))
        assert framer.feed("partial") == 0
        assert framer.feed(" line\nnext") == 1
        assert lines == ["partial line"]
        assert framer.close() == 1
        assert lines == ["partial line", "next"]

    def test_crlf_split_across_chunks(self):
        lines, _ = _frame(["one\r", "\ntwo"])
        assert lines == [(1, "one"), (2, "two")]

    def test_text_chunk_invariance(self):
        """Every split of the same text yields the same numbered lines."""
        expected, _ = _frame([SAMPLE_TEXT])
        assert _frame(list(SAMPLE_TEXT))[0] == expected
        rng = random.Random(1234)
        for _ in range(50):
            assert _frame(_random_splits(SAMPLE_TEXT, rng))[0] == expected

    def test_byte_chunk_invariance(self):
        """Multibyte characters split across byte chunks are decoded intact."""
        expected, expected_framer = _frame([SAMPLE_TEXT])
        data = SAMPLE_TEXT.encode("utf-8")
        lines, framer = _frame([data[i:i + 1] for i in range(len(data))])
        assert lines == expected
        assert framer.byte_offset == expected_framer.byte_offset == len(data)
        rng = random.Random(99)
        for _ in range(50):
            assert _frame(_random_splits(data, rng))[0] == expected

    def test_first_line_number(self):
        lines, _ = _frame(["x\ny\n"], first_line_number=41)
        assert lines == [(41, "x"), (42, "y")]

    def test_stop_ignores_remaining_input(self):
        lines = []
        framer = LineFramer(lambda number, line: lines.append(line))

        def on_line(number, line):
            lines.append(line)
            if number == 2:
                framer.stop()

        framer.on_line = on_line
        framer.feed("a\nb\nc\nd")
        assert framer.feed("e\n") == 0
        assert framer.close() == 0
        assert lines == ["a", "b"]

    def test_invalid_checkpoint_interval(self):
        with pytest.raises(ValueError):
            LineFramer(lambda number, line: None, checkpoint_interval=0)


class TestCheckpoints:

    def test_offsets_recorded_every_interval(self):
        _, framer = _frame(["ab\ncd\r\nef\ngh"], checkpoint_interval=2)
        index = framer.index
        assert index.line_numbers == [1, 3]
        assert index.byte_offsets == [0, 7]
        assert index.total_lines == 4
        assert index.total_bytes == 12

    def test_offsets_count_encoded_bytes(self):
        _, framer = _frame(["é\nx"], checkpoint_interval=1)
        assert framer.index.byte_offsets == [0, 3]

    def test_offsets_count_raw_bytes_of_invalid_input(self):
        """Undecodable bytes count as one byte each and reach the handler as U+FFFD."""
        data = b"".join(b"line %d \xff\xfe\n" % n for n in range(1, 31))
        expected_offsets = [data.index(b"line %d " % n) for n in (1, 11, 21)]

        lines, framer = _frame([data[i:i + 7] for i in range(0, len(data), 7)], checkpoint_interval=10)
        assert framer.index.byte_offsets == expected_offsets
        assert framer.index.total_bytes == len(data)
        assert lines[24] == (25, "line 25 \ufffd\ufffd")

    def test_nearest(self):
        index = LineIndex(checkpoint_interval=10, line_numbers=[1, 11, 21], byte_offsets=[0, 100, 250])
        assert index.nearest(0) == (1, 0)
        assert index.nearest(1) == (1, 0)
        assert index.nearest(15) == (11, 100)
        assert index.nearest(21) == (21, 250)
        assert index.nearest(10_000) == (21, 250)
        assert LineIndex().nearest(50) == (1, 0)

    def test_add_ignores_out_of_order_lines(self):
        index = LineIndex()
        index.add(1, 0)
        index.add(1, 5)
        assert len(index) == 1


class TestFileStreaming:

    def test_reads_file_in_chunks(self, tmp_path):
        path = tmp_path / "app.log"
        path.write_bytes(SAMPLE_TEXT.encode("utf-8"))
        chunks = list(iter_file_chunks(path, chunk_size=4))
        assert all(len(chunk) <= 4 for chunk in chunks)
        assert b"".join(chunks) == SAMPLE_TEXT.encode("utf-8")

    def test_reads_gzip(self, tmp_path):
        path = tmp_path / "app.log.gz"
        with gzip.open(path, "wb") as f:
            f.write(SAMPLE_TEXT.encode("utf-8"))
        assert b"".join(iter_file_chunks(path, chunk_size=5)) == SAMPLE_TEXT.encode("utf-8")

    def test_reads_file_object_without_closing_it(self, tmp_path):
        path = tmp_path / "app.log"
        path.write_bytes(b"one\ntwo\n")
        with open(path, "rb") as f:
            assert b"".join(iter_file_chunks(f)) == b"one\ntwo\n"
            assert not f.closed

    def test_missing_file(self, tmp_path):
        with pytest.raises(StreamReadError):
            list(iter_file_chunks(tmp_path / "missing.log"))

    def test_corrupt_gzip(self, tmp_path):
        path = tmp_path / "broken.gz"
        path.write_bytes(b"definitely not gzip data")
        with pytest.raises(StreamReadError):
            list(iter_file_chunks(path))

    def test_build_line_index_and_seek(self, tmp_path):
        """Reading from a checkpoint offset starts exactly at the checkpointed line."""
        path = tmp_path / "numbered.log"
        path.write_text("".join(f"line {n}\n" for n in range(1, 26)), encoding="utf-8")

        index = build_line_index(path, checkpoint_interval=10, chunk_size=16)
        assert index.line_numbers == [1, 11, 21]
        assert index.total_lines == 25

        line_number, offset = index.nearest(15)
        assert line_number == 11
        tail = b"".join(iter_file_chunks(path, start_offset=offset)).decode("utf-8")
        assert tail.startswith("line 11\n")
