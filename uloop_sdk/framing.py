"""Wire framing for the two Unity channels.

Request/response socket (client -> Unity):

    Content-Length: <N>\\r\\n
    \\r\\n
    <N bytes of UTF-8 JSON>

Push-notification socket (Unity -> client): one JSON object per line.

Both decoders are incremental. Feed them whatever chunks the socket returns;
they hold partial data until a full unit has arrived and keep leftover bytes
for the next one. Undecodable units are logged and dropped so one bad message
never desynchronizes or closes the stream.
"""

import json
import logging
import re
from typing import Any, Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

CONTENT_LENGTH_HEADER = "Content-Length"
HEADER_SEPARATOR = b"\r\n\r\n"
LF_HEADER_SEPARATOR = b"\n\n"
MAX_MESSAGE_SIZE = 1024 * 1024  # 1 MiB max

_HEADER_LINE = re.compile(r"\r?\n")


def encode_frame(message: Dict[str, Any]) -> bytes:
    """Frame a JSON message with a Content-Length header."""
    payload = json.dumps(message, ensure_ascii=False).encode("utf-8")
    header = f"{CONTENT_LENGTH_HEADER}: {len(payload)}\r\n\r\n".encode("ascii")
    return header + payload


def encode_line(message: Dict[str, Any]) -> bytes:
    """Encode a JSON message as a single newline-terminated line."""
    return (json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8")


def parse_content_length(header: str) -> int:
    """Extract the Content-Length value from a header block.

    Returns:
        The declared length, or -1 if the header is missing, not a
        non-negative integer, or larger than MAX_MESSAGE_SIZE.
    """
    for line in _HEADER_LINE.split(header):
        name, sep, value = line.partition(":")
        if not sep or name.strip().lower() != CONTENT_LENGTH_HEADER.lower():
            continue
        value = value.strip()
        if not (value.isascii() and value.isdigit()):
            return -1
        length = int(value)
        if length > MAX_MESSAGE_SIZE:
            logger.warning(f"Content-Length {length} exceeds limit {MAX_MESSAGE_SIZE}")
            return -1
        return length
    return -1


def _find_separator(buffer: bytes) -> Tuple[int, int]:
    """Locate the header/body separator.

    Returns:
        (header_end, separator_length), or (-1, 0) if none found yet.
    """
    crlf = buffer.find(HEADER_SEPARATOR)
    lf = buffer.find(LF_HEADER_SEPARATOR)
    if crlf == -1 and lf == -1:
        return -1, 0
    if lf == -1 or (crlf != -1 and crlf < lf):
        return crlf, len(HEADER_SEPARATOR)
    return lf, len(LF_HEADER_SEPARATOR)


class ContentLengthDecoder:
    """Incremental decoder for Content-Length framed JSON.

    Usage:
        decoder = ContentLengthDecoder()
        decoder.feed(chunk)
        for message in decoder.messages():
            handle(message)
    """

    def __init__(self, max_size: int = MAX_MESSAGE_SIZE):
        self._buffer = bytearray()
        self._max_size = max_size

    @property
    def buffered(self) -> int:
        """Number of bytes held waiting for a complete frame."""
        return len(self._buffer)

    def feed(self, data: bytes) -> None:
        self._buffer.extend(data)
        if len(self._buffer) > self._max_size * 2:
            # No separator in sight; the header is garbage.
            logger.warning(
                f"Frame buffer overflow ({len(self._buffer)} bytes), discarding"
            )
            self._buffer.clear()

    def clear(self) -> None:
        self._buffer.clear()

    def next_frame(self) -> Optional[bytes]:
        """Pop the next complete frame body, or None if incomplete."""
        while True:
            header_end, sep_len = _find_separator(self._buffer)
            if header_end == -1:
                return None

            header = bytes(self._buffer[:header_end]).decode("utf-8", errors="replace")
            length = parse_content_length(header)
            if length >= 0:
                break
            logger.warning(f"Dropping frame with invalid header: {header[:200]!r}")
            del self._buffer[:header_end + sep_len]

        body_start = header_end + sep_len
        body_end = body_start + length
        if len(self._buffer) < body_end:
            return None

        body = bytes(self._buffer[body_start:body_end])
        del self._buffer[:body_end]
        return body

    def messages(self) -> Iterator[Any]:
        """Yield every complete, decodable message currently buffered."""
        while True:
            body = self.next_frame()
            if body is None:
                return
            try:
                yield json.loads(body.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                logger.warning(f"Dropping undecodable frame ({len(body)} bytes): {e}")

    def drain(self) -> List[Any]:
        return list(self.messages())


class LineDecoder:
    """Incremental decoder for newline-delimited JSON."""

    def __init__(self, max_line: int = MAX_MESSAGE_SIZE):
        self._buffer = b""
        self._max_line = max_line

    @property
    def pending(self) -> bytes:
        """Bytes of an incomplete trailing line."""
        return self._buffer

    def feed(self, data: bytes) -> List[Any]:
        """Add a chunk and return the messages of every completed line."""
        self._buffer += data
        *lines, self._buffer = self._buffer.split(b"\n")

        if len(self._buffer) > self._max_line:
            logger.warning(f"Dropping oversized partial line ({len(self._buffer)} bytes)")
            self._buffer = b""

        messages = []
        for raw in lines:
            line = raw.strip()
            if not line:
                continue
            try:
                messages.append(json.loads(line.decode("utf-8")))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                preview = line[:200].decode("utf-8", errors="replace")
                logger.warning(f"Dropping malformed line: {e} ({preview!r})")
        return messages


__all__ = [
    "CONTENT_LENGTH_HEADER",
    "MAX_MESSAGE_SIZE",
    "encode_frame",
    "encode_line",
    "parse_content_length",
    "ContentLengthDecoder",
    "LineDecoder",
]
