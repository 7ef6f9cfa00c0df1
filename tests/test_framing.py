"""Tests for uloop_sdk.framing."""

import json

import pytest

from uloop_sdk.framing import (
    MAX_MESSAGE_SIZE,
    ContentLengthDecoder,
    LineDecoder,
    encode_frame,
    encode_line,
    parse_content_length,
)


def _frames(*messages) -> bytes:
    return b"".join(encode_frame(m) for m in messages)


class TestEncodeFrame:
    """Content-Length counts bytes, not characters."""

    def test_header_and_body(self):
        frame = encode_frame({"a": 1})
        header, body = frame.split(b"\r\n\r\n", 1)
        assert header == f"Content-Length: {len(body)}".encode()
        assert json.loads(body) == {"a": 1}

    def test_multibyte_length(self):
        frame = encode_frame({"text": "héllo ✓"})
        header, body = frame.split(b"\r\n\r\n", 1)
        declared = int(header.split(b":")[1])
        assert declared == len(body)
        assert declared > len(json.dumps({"text": "héllo ✓"}, ensure_ascii=False))

    def test_encode_line_is_newline_terminated(self):
        line = encode_line({"type": "TOOLS_CHANGED"})
        assert line.endswith(b"\n")
        assert line.count(b"\n") == 1


class TestParseContentLength:
    """Header parsing never raises."""

    def test_valid(self):
        assert parse_content_length("Content-Length: 42") == 42

    def test_case_insensitive_and_extra_headers(self):
        header = "Content-Type: application/json\r\ncontent-length:  7 "
        assert parse_content_length(header) == 7

    def test_lf_only_lines(self):
        assert parse_content_length("X-Other: 1\ncontent-length: 3") == 3

    @pytest.mark.parametrize("header", [
        "",
        "Content-Type: application/json",
        "Content-Length: abc",
        "Content-Length: -5",
        "Content-Length: 1.5",
        "Content-Length:",
    ])
    def test_invalid_is_minus_one(self, header):
        assert parse_content_length(header) == -1

    def test_oversized_is_rejected(self):
        assert parse_content_length(f"Content-Length: {MAX_MESSAGE_SIZE + 1}") == -1


class TestContentLengthDecoder:
    """Incremental decoding across arbitrary chunk boundaries."""

    def test_single_frame(self):
        decoder = ContentLengthDecoder()
        decoder.feed(encode_frame({"id": 1}))
        assert decoder.drain() == [{"id": 1}]
        assert decoder.buffered == 0

    def test_many_frames_in_one_chunk(self):
        decoder = ContentLengthDecoder()
        decoder.feed(_frames({"id": 1}, {"id": 2}, {"id": 3}))
        assert [m["id"] for m in decoder.drain()] == [1, 2, 3]

    def test_every_split_point_yields_same_messages(self):
        data = _frames({"id": 1, "text": "ünïcode"}, {"id": 2, "result": [1, 2, 3]})
        for split in range(len(data) + 1):
            decoder = ContentLengthDecoder()
            decoder.feed(data[:split])
            received = decoder.drain()
            decoder.feed(data[split:])
            received.extend(decoder.drain())
            assert received == [{"id": 1, "text": "ünïcode"}, {"id": 2, "result": [1, 2, 3]}], split

    def test_byte_by_byte(self):
        data = _frames({"id": "a"}, {"id": "b"})
        decoder = ContentLengthDecoder()
        received = []
        for i in range(len(data)):
            decoder.feed(data[i:i + 1])
            received.extend(decoder.drain())
        assert received == [{"id": "a"}, {"id": "b"}]

    def test_leftover_bytes_kept(self):
        second = encode_frame({"id": 2})
        decoder = ContentLengthDecoder()
        decoder.feed(encode_frame({"id": 1}) + second[:5])
        assert decoder.drain() == [{"id": 1}]
        assert decoder.buffered == 5
        decoder.feed(second[5:])
        assert decoder.drain() == [{"id": 2}]

    def test_incomplete_body_returns_nothing(self):
        frame = encode_frame({"id": 1})
        decoder = ContentLengthDecoder()
        decoder.feed(frame[:-1])
        assert decoder.next_frame() is None
        assert decoder.buffered == len(frame) - 1

    def test_malformed_header_is_skipped(self):
        decoder = ContentLengthDecoder()
        decoder.feed(b"Content-Length: nope\r\n\r\n" + encode_frame({"id": 3}))
        assert decoder.drain() == [{"id": 3}]
        assert decoder.buffered == 0

    def test_lf_separator(self):
        decoder = ContentLengthDecoder()
        decoder.feed(b"Content-Length: 2\n\n{}")
        assert decoder.drain() == [{}]

    def test_bad_json_is_dropped_and_stream_continues(self):
        bad = b"Content-Length: 5\r\n\r\n{oops"
        decoder = ContentLengthDecoder()
        decoder.feed(bad + encode_frame({"id": 9}))
        assert decoder.drain() == [{"id": 9}]

    def test_overflow_clears_buffer(self):
        decoder = ContentLengthDecoder(max_size=16)
        decoder.feed(b"x" * 40)
        assert decoder.buffered == 0


class TestLineDecoder:
    """Newline-delimited JSON for the push channel."""

    def test_several_lines_in_one_chunk(self):
        decoder = LineDecoder()
        messages = decoder.feed(b'{"type":"A"}\n{"type":"B"}\n')
        assert messages == [{"type": "A"}, {"type": "B"}]

    def test_partial_line_is_buffered(self):
        decoder = LineDecoder()
        assert decoder.feed(b'{"type":') == []
        assert decoder.pending == b'{"type":'
        assert decoder.feed(b'"A"}\n') == [{"type": "A"}]
        assert decoder.pending == b""

    def test_bad_line_does_not_affect_neighbours(self):
        decoder = LineDecoder()
        messages = decoder.feed(b'{"type":"A"}\nnot json\n{"type":"B"}\n')
        assert messages == [{"type": "A"}, {"type": "B"}]

    def test_blank_lines_and_crlf(self):
        decoder = LineDecoder()
        assert decoder.feed(b'\n\r\n{"type":"A"}\r\n') == [{"type": "A"}]

    def test_oversized_partial_line_dropped(self):
        decoder = LineDecoder(max_line=8)
        decoder.feed(b"x" * 20)
        assert decoder.pending == b""
