from __future__ import annotations

import io
import socket
from typing import BinaryIO

import cbor2

from .constants import HELLO_LEN_BYTES, MAX_ENVELOPE_BYTES, MAX_NAME_LEN


class DecodeError(Exception):
    """The stream did not yield a well-formed frame."""


class StreamClosed(DecodeError):
    """The peer closed the stream (cleanly, or in the middle of a frame)."""


class NameTooLong(DecodeError):
    def __init__(self, size: int) -> None:
        super().__init__(f"username was too long: {size} > {MAX_NAME_LEN} bytes")
        self.size = size


class FrameTooLarge(DecodeError):
    pass


def encode(obj) -> bytes:
    return cbor2.dumps(obj)


def decode(b: bytes):
    return cbor2.loads(b)


class _BoundedReader(io.RawIOBase):
    # Caps the bytes a single decode may pull from the stream, so a hostile
    # length header cannot make us allocate or wait for an arbitrary amount.
    # Not seekable: the decoder must not try to rewind a socket.

    def __init__(self, fp: BinaryIO, limit: int) -> None:
        super().__init__()
        self.fp = fp
        self.limit = limit
        self.consumed = 0

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def _take(self, n: int) -> bytes:
        if self.consumed + n > self.limit:
            raise FrameTooLarge(f"frame exceeds {self.limit} bytes")
        data = self.fp.read(n)
        self.consumed += len(data)
        return data

    def read(self, n: int = -1) -> bytes:
        if n is None or n < 0:
            raise FrameTooLarge(f"unbounded read; frame limit is {self.limit} bytes")
        return self._take(n)

    def readinto(self, b) -> int:
        view = memoryview(b).cast("B")
        data = self._take(len(view))
        view[: len(data)] = data
        return len(data)


def read_envelope(fp: BinaryIO, *, max_bytes: int = MAX_ENVELOPE_BYTES):
    """Read exactly one CBOR item from a buffered binary stream.

    CBOR items carry their own length headers, so consecutive calls on the
    same stream recover the sequence of items that was written. The decoder
    is told to read only what it needs (``read_size=1``); any read-ahead
    would swallow the start of the next frame.

    Raises StreamClosed on EOF and DecodeError on malformed or oversized
    frames. Transport errors propagate as OSError.
    """

    reader = _BoundedReader(fp, max_bytes)
    try:
        return cbor2.CBORDecoder(reader, read_size=1).decode()
    except DecodeError:
        raise
    except EOFError as e:
        if reader.consumed == 0:
            raise StreamClosed("connection closed by peer") from e
        raise StreamClosed(
            f"connection closed mid-frame after {reader.consumed} bytes"
        ) from e
    except OSError:
        raise
    except cbor2.CBORDecodeError as e:
        if isinstance(e.__cause__, DecodeError):
            raise e.__cause__ from None
        raise DecodeError(f"malformed frame: {e}") from e
    except Exception as e:
        raise DecodeError(f"undecodable frame: {type(e).__name__}: {e}") from e


def write_envelope(sock: socket.socket, env: dict) -> int:
    payload = encode(env)
    sock.sendall(payload)
    return len(payload)


def encode_hello(name: str) -> bytes:
    raw = name.encode("utf-8")
    if not raw:
        raise ValueError("username must not be empty")
    if len(raw) > MAX_NAME_LEN:
        raise ValueError(f"username cannot be more than {MAX_NAME_LEN} bytes")
    return len(raw).to_bytes(HELLO_LEN_BYTES, "big") + raw


def read_hello(fp: BinaryIO) -> bytes:
    """Read the connect-time name frame: one length byte, then the name."""

    head = fp.read(HELLO_LEN_BYTES)
    if len(head) < HELLO_LEN_BYTES:
        raise StreamClosed("connection closed before handshake")

    size = int.from_bytes(head, "big")
    if size > MAX_NAME_LEN:
        # Checked before the body is read: a conforming client never sends this.
        raise NameTooLong(size)

    raw = fp.read(size)
    if len(raw) < size:
        raise StreamClosed(
            f"connection closed during handshake ({len(raw)}/{size} bytes)"
        )
    return raw
