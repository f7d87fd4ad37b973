"""
replbridge.codec.bencode - Bencode encoding and resumable decoding for nREPL

nREPL frames every message as a bencoded map:
    i42e            integer
    5:hello         byte string, length-prefixed
    l...e           list
    d...e           dictionary (string keys, sorted)

Components:
- encode(): Serializes Python values to bencode bytes
- BencodeDecoder: Buffers partial reads and yields complete top-level values
- decode(): Convenience decoder for a single complete value
"""

import re
from typing import Any, Iterator, Optional

from replbridge.errors import MalformedMessage

# Longest length prefix we accept before calling the input garbage
_MAX_LENGTH_DIGITS = 12

_INT_RE = re.compile(rb"-?(0|[1-9][0-9]*)")
_PARTIAL_INT_RE = re.compile(rb"-?[0-9]*")


# =============================================================================
# Encoding
# =============================================================================


def encode(value: Any) -> bytes:
    """
    Encode a value as bencode.

    Args:
        value: A str, bytes, int, bool, list/tuple or dict with string keys.

    Returns:
        The encoded bytes.

    Raises:
        TypeError: If the value (or something nested in it) cannot be encoded.
    """
    buf = bytearray()
    _encode_into(value, buf)
    return bytes(buf)


def _encode_bytes(data: bytes, buf: bytearray) -> None:
    buf += b"%d:" % len(data)
    buf += data


def _encode_into(value: Any, buf: bytearray) -> None:
    if isinstance(value, bool):
        buf += b"i%de" % int(value)
    elif isinstance(value, int):
        buf += b"i%de" % value
    elif isinstance(value, str):
        _encode_bytes(value.encode("utf-8"), buf)
    elif isinstance(value, (bytes, bytearray)):
        _encode_bytes(bytes(value), buf)
    elif isinstance(value, (list, tuple)):
        buf += b"l"
        for item in value:
            _encode_into(item, buf)
        buf += b"e"
    elif isinstance(value, dict):
        items = []
        for key, item in value.items():
            if isinstance(key, str):
                key = key.encode("utf-8")
            elif not isinstance(key, bytes):
                raise TypeError(
                    f"bencode dictionary keys must be strings, got {type(key).__name__}"
                )
            items.append((key, item))
        items.sort(key=lambda pair: pair[0])
        buf += b"d"
        for key, item in items:
            _encode_bytes(key, buf)
            _encode_into(item, buf)
        buf += b"e"
    else:
        raise TypeError(f"Cannot bencode value of type {type(value).__name__}")


# =============================================================================
# Decoding
# =============================================================================


class _NeedMore(Exception):
    """Internal signal: the buffer ends in the middle of a value."""


def _is_digit(byte: int) -> bool:
    return 48 <= byte <= 57


def _parse_string(buf: bytearray, pos: int) -> tuple[bytes, int]:
    colon = buf.find(b":", pos)
    if colon == -1:
        prefix = bytes(buf[pos:])
        if not prefix.isdigit() or len(prefix) > _MAX_LENGTH_DIGITS:
            raise MalformedMessage(f"Invalid string length prefix at offset {pos}")
        raise _NeedMore()

    prefix = bytes(buf[pos:colon])
    if (
        not prefix.isdigit()
        or len(prefix) > _MAX_LENGTH_DIGITS
        or (len(prefix) > 1 and prefix.startswith(b"0"))
    ):
        raise MalformedMessage(f"Invalid string length prefix {prefix!r}")

    start = colon + 1
    end = start + int(prefix)
    if end > len(buf):
        raise _NeedMore()
    return bytes(buf[start:end]), end


def _parse_int(buf: bytearray, pos: int) -> tuple[int, int]:
    end = buf.find(b"e", pos + 1)
    if end == -1:
        if not _PARTIAL_INT_RE.fullmatch(bytes(buf[pos + 1 :])):
            raise MalformedMessage(f"Invalid integer at offset {pos}")
        raise _NeedMore()

    digits = bytes(buf[pos + 1 : end])
    if not _INT_RE.fullmatch(digits) or digits == b"-0":
        raise MalformedMessage(f"Invalid integer {digits!r}")
    return int(digits), end + 1


def _parse(buf: bytearray, pos: int) -> tuple[Any, int]:
    """Parse one value starting at pos. Returns (value, next position)."""
    if pos >= len(buf):
        raise _NeedMore()

    c = buf[pos]
    if c == ord("i"):
        return _parse_int(buf, pos)

    if c == ord("l"):
        items = []
        pos += 1
        while True:
            if pos >= len(buf):
                raise _NeedMore()
            if buf[pos] == ord("e"):
                return items, pos + 1
            item, pos = _parse(buf, pos)
            items.append(item)

    if c == ord("d"):
        result: dict[str, Any] = {}
        pos += 1
        while True:
            if pos >= len(buf):
                raise _NeedMore()
            if buf[pos] == ord("e"):
                return result, pos + 1
            if not _is_digit(buf[pos]):
                raise MalformedMessage(
                    f"Dictionary key at offset {pos} is not a string"
                )
            key, pos = _parse_string(buf, pos)
            value, pos = _parse(buf, pos)
            result[key.decode("utf-8", errors="replace")] = value

    if _is_digit(c):
        raw, pos = _parse_string(buf, pos)
        return raw.decode("utf-8", errors="replace"), pos

    raise MalformedMessage(f"Unexpected byte {bytes([c])!r} at offset {pos}")


class BencodeDecoder:
    """
    Resumable bencode decoder.

    Bytes are fed as they arrive from the socket; each call to next_value()
    consumes exactly one complete top-level value and leaves any trailing
    partial bytes buffered for the next call.
    """

    def __init__(self):
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet consumed."""
        return len(self._buffer)

    def feed(self, data: bytes) -> None:
        """Buffer newly received bytes."""
        self._buffer += data

    def next_value(self) -> Optional[Any]:
        """
        Decode the next complete top-level value.

        Returns:
            The decoded value, or None if more bytes are needed.

        Raises:
            MalformedMessage: If the buffered bytes are structurally invalid.
        """
        if not self._buffer:
            return None
        try:
            value, end = _parse(self._buffer, 0)
        except _NeedMore:
            return None
        except MalformedMessage as e:
            e.data = bytes(self._buffer)
            raise
        except RecursionError:
            raise MalformedMessage("bencode value nested too deeply", bytes(self._buffer))
        except ValueError as e:
            raise MalformedMessage(f"Unreadable bencode value: {e}", bytes(self._buffer))
        del self._buffer[:end]
        return value

    def values(self) -> Iterator[Any]:
        """Yield every complete value currently buffered."""
        while True:
            value = self.next_value()
            if value is None:
                return
            yield value


def decode(data: bytes) -> Any:
    """
    Decode a single complete bencoded value.

    Raises:
        MalformedMessage: If data is invalid, incomplete, or has trailing bytes.
    """
    decoder = BencodeDecoder()
    decoder.feed(data)
    value = decoder.next_value()
    if value is None:
        raise MalformedMessage("Incomplete bencode value", data)
    if decoder.pending:
        raise MalformedMessage("Trailing bytes after bencode value", data)
    return value
