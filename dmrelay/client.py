from __future__ import annotations

import logging
import socket
import threading
from collections.abc import Callable

from .codec import DecodeError, StreamClosed, encode_hello, read_envelope, write_envelope
from .constants import K_BODY, K_ERROR, K_FROM
from .envelope import check_outgoing, make_envelope


class RelayClient:
    """
    Reference client for the relay.

    Connects, sends the name handshake, then writes user envelopes and reads
    whatever the relay sends back (messages from other users or error
    envelopes). The relay sets the sender field itself, so ``send`` leaves it
    empty.
    """

    def __init__(self, host: str, port: int, name: str) -> None:
        self.host = host
        self.port = int(port)
        self.name = name
        self.log = logging.getLogger("dmrelay.client")
        self._sock: socket.socket | None = None
        self._reader = None
        self._send_lock = threading.Lock()

    def connect(self, timeout: float | None = None) -> None:
        hello = encode_hello(self.name)
        sock = socket.create_connection((self.host, self.port), timeout=timeout)
        sock.settimeout(None)
        try:
            sock.sendall(hello)
        except OSError:
            sock.close()
            raise
        self._sock = sock
        self._reader = sock.makefile("rb")
        self.log.debug("Connected to %s:%s as %s", self.host, self.port, self.name)

    def settimeout(self, timeout: float | None) -> None:
        self._require_sock().settimeout(timeout)

    def _require_sock(self) -> socket.socket:
        if self._sock is None:
            raise RuntimeError("client is not connected")
        return self._sock

    def send(self, to: str, body: str) -> None:
        """Send one message. Raises ValueError if it exceeds the size limits."""
        problem = check_outgoing(to, body)
        if problem is not None:
            raise ValueError(problem)
        sock = self._require_sock()
        with self._send_lock:
            write_envelope(sock, make_envelope(to=to, body=body))

    def send_raw(self, env: dict) -> None:
        sock = self._require_sock()
        with self._send_lock:
            write_envelope(sock, env)

    def receive(self) -> dict:
        """Block for the next envelope from the relay."""
        self._require_sock()
        return read_envelope(self._reader)

    def listen(
        self,
        on_message: Callable[[str, str], None],
        on_error: Callable[[str], None],
    ) -> str:
        """Dispatch incoming envelopes until the stream ends.

        Returns a short reason describing why the loop stopped.
        """
        self._require_sock()
        reader = self._reader
        while True:
            try:
                env = read_envelope(reader)
            except StreamClosed:
                return "Connection closed by server"
            except DecodeError as e:
                self.log.warning("Bad frame from server: %s", e)
                return f"Bad data from server: {e}"
            except OSError as e:
                return f"Connection lost: {e}"
            except ValueError:
                # close() released the reader underneath us.
                return "Disconnected"

            if not isinstance(env, dict):
                continue
            body = env.get(K_BODY)
            text = body if isinstance(body, str) else ""
            if env.get(K_ERROR):
                on_error(text)
            else:
                src = env.get(K_FROM)
                on_message(src if isinstance(src, str) else "", text)

    def close(self) -> None:
        sock, self._sock = self._sock, None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        if self._reader is not None:
            try:
                self._reader.close()
            except OSError:
                pass
        sock.close()

    def __enter__(self) -> RelayClient:
        self.connect()
        return self

    def __exit__(self, *exc) -> None:
        self.close()
