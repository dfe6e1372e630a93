from __future__ import annotations

import logging
import queue
import socket
import threading
from typing import TYPE_CHECKING, Any, BinaryIO

from .codec import DecodeError, StreamClosed, read_envelope, write_envelope
from .constants import K_BODY, K_ERROR, K_FROM, K_TO
from .envelope import byte_len, validate_envelope

if TYPE_CHECKING:
    from .registry import ConnectionRegistry
    from .stats import StatsManager


class Connection:
    """An open client stream paired with the name it registered under."""

    def __init__(
        self,
        name: str,
        sock: socket.socket,
        *,
        addr: Any = None,
        reader: BinaryIO | None = None,
    ) -> None:
        self.name = name
        self.sock = sock
        self.addr = addr
        self.reader = reader if reader is not None else sock.makefile("rb")
        self._send_lock = threading.Lock()
        self._closed = False

    def send(self, env: dict) -> int:
        """Write one envelope. Raises OSError if the transport is broken."""
        with self._send_lock:
            if self._closed:
                raise ConnectionError(f"connection to {self.name!r} is closed")
            return write_envelope(self.sock, env)

    def close(self) -> None:
        with self._send_lock:
            if self._closed:
                return
            self._closed = True
        try:
            # Unblocks a reader thread parked in recv() on this socket.
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self.reader.close()
        except OSError:
            pass
        self.sock.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def __repr__(self) -> str:
        return f"Connection(name={self.name!r}, addr={self.addr!r})"


class InboundPipeline:
    """
    Reads envelopes from one accepted connection and feeds the router queue.

    Each envelope is validated against the size limits and stamped with the
    connection's registered name before it is queued. The first protocol
    violation, decode error or transport error ends the loop; the peer is not
    told why. On exit the connection is closed and its name unregistered.
    """

    put_timeout_s = 0.5

    def __init__(
        self,
        conn: Connection,
        registry: ConnectionRegistry,
        router_queue: queue.Queue,
        stats: StatsManager | None = None,
    ) -> None:
        self.conn = conn
        self.registry = registry
        self.router_queue = router_queue
        self.stats = stats
        self.log = logging.getLogger("dmrelay.session")

    def _inc(self, key: str, delta: int = 1) -> None:
        if self.stats is not None:
            self.stats.inc(key, delta)

    def run(self) -> None:
        try:
            self._read_loop()
        finally:
            self.conn.close()
            self.registry.unregister(self.conn.name, self.conn)
            self.log.info("User %s disconnected or kicked", self.conn.name)

    def _read_loop(self) -> None:
        name = self.conn.name
        while True:
            try:
                env = read_envelope(self.conn.reader)
            except StreamClosed as e:
                self.log.debug("Stream ended user=%s: %s", name, e)
                return
            except DecodeError as e:
                self._inc("msgs_bad")
                self.log.warning("Bad frame from user=%s: %s", name, e)
                return
            except (OSError, ValueError) as e:
                # ValueError: the reader was closed underneath us by close().
                if not self.conn.closed:
                    self.log.info("Read failed user=%s: %s", name, e)
                return
            except Exception:
                self._inc("msgs_bad")
                self.log.exception("Unexpected read failure user=%s", name)
                return

            try:
                validate_envelope(env)
            except (TypeError, ValueError) as e:
                self._inc("msgs_bad")
                self.log.warning("User %s tried to send an invalid message: %s", name, e)
                return

            # The relay is authoritative for sender identity.
            env[K_FROM] = name
            env[K_ERROR] = False

            self._inc("msgs_in")
            self._inc("bytes_in", byte_len(env[K_BODY]))

            if not self._enqueue(env):
                return

            if self.log.isEnabledFor(logging.DEBUG):
                self.log.debug(
                    "Queued user=%s to=%s bytes=%s",
                    name,
                    env[K_TO],
                    byte_len(env[K_BODY]),
                )

    def _enqueue(self, env: dict[int, Any]) -> bool:
        # Blocks while the router queue is full, but gives up once the
        # connection has been closed (kick or shutdown).
        while True:
            try:
                self.router_queue.put(env, timeout=self.put_timeout_s)
                return True
            except queue.Full:
                if self.conn.closed:
                    self.log.debug(
                        "Dropped queued message from closed user=%s", self.conn.name
                    )
                    return False
