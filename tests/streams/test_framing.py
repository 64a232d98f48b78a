"""Tests for line framing."""

from freqlab.streams.framing import LineFramer


def test_feed_splits_complete_lines():
    """Test complete lines are returned and the remainder is buffered."""
    framer = LineFramer()

    assert framer.feed(b"one\ntwo\nthr") == ["one", "two"]
    assert framer.pending == 3
    assert framer.feed(b"ee\n") == ["three"]
    assert framer.pending == 0


def test_crlf_endings_are_stripped():
    """Test CRLF line endings produce clean lines."""
    framer = LineFramer()

    assert framer.feed(b"a\r\nb\r\n") == ["a", "b"]


def test_line_split_across_chunks():
    """Test a line split over many chunks is reassembled."""
    framer = LineFramer()
    lines = []
    for byte in b'{"type": "result"}\n':
        lines.extend(framer.feed(bytes([byte])))

    assert lines == ['{"type": "result"}']


def test_multibyte_character_split_across_chunks():
    """Test UTF-8 sequences split between chunks decode correctly."""
    framer = LineFramer()
    data = "café\n".encode("utf-8")

    assert framer.feed(data[:4]) == []
    assert framer.feed(data[4:]) == ["café"]


def test_invalid_bytes_are_replaced():
    """Test undecodable bytes do not raise."""
    framer = LineFramer()

    assert framer.feed(b"bad \xff byte\n") == ["bad � byte"]


def test_flush_returns_unterminated_tail():
    """Test flush() returns the final line without newline."""
    framer = LineFramer()
    framer.feed(b"done\npartial")

    assert framer.flush() == "partial"
    assert framer.flush() is None


def test_flush_ignores_whitespace_tail():
    """Test a blank remainder is not reported as a line."""
    framer = LineFramer()
    framer.feed(b"line\n  ")

    assert framer.flush() is None


def test_overlong_line_is_force_split():
    """Test a line longer than the limit is emitted without waiting."""
    framer = LineFramer(max_line_bytes=8)

    assert framer.feed(b"0123456789") == ["0123456789"]
    assert framer.pending == 0
