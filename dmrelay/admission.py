from __future__ import annotations

import logging
import queue
import socket
from typing import TYPE_CHECKING, Any

from .codec import DecodeError, read_hello
from .constants import ERR_NAME_TAKEN
from .envelope import make_error
from .session import Connection, InboundPipeline

if TYPE_CHECKING:
    from .registry import ConnectionRegistry
    from .stats import StatsManager


class AdmissionError(Exception):
    """A raw connection was refused during the handshake."""


class NameTaken(AdmissionError):
    def __init__(self, name: str) -> None:
        super().__init__(f"username {name!r} is taken")
        self.name = name


class AdmissionHandler:
    """
    Connect-time handshake for one raw connection.

    The client sends a one-byte length followed by its display name. Oversized
    or malformed names close the socket without a reply, since a conforming
    client never sends them. A name already in use gets a single error
    envelope before the socket is closed. Otherwise the connection is
    registered and an InboundPipeline for it is returned.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        router_queue: queue.Queue,
        stats: StatsManager | None = None,
        *,
        handshake_timeout_s: float = 0.0,
    ) -> None:
        self.registry = registry
        self.router_queue = router_queue
        self.stats = stats
        self.handshake_timeout_s = float(handshake_timeout_s or 0.0)
        self.log = logging.getLogger("dmrelay.admission")

    def _inc(self, key: str) -> None:
        if self.stats is not None:
            self.stats.inc(key)

    def admit(self, sock: socket.socket, addr: Any = None) -> InboundPipeline:
        sock.settimeout(self.handshake_timeout_s if self.handshake_timeout_s > 0 else None)
        reader = sock.makefile("rb")

        try:
            raw = read_hello(reader)
            name = raw.decode("utf-8")
            if not name:
                raise AdmissionError("empty username")
        except (DecodeError, UnicodeDecodeError, OSError) as e:
            self._inc("connections_rejected")
            reader.close()
            sock.close()
            raise AdmissionError(f"handshake failed from {addr}: {e}") from e
        except AdmissionError:
            self._inc("connections_rejected")
            reader.close()
            sock.close()
            raise

        sock.settimeout(None)
        conn = Connection(name, sock, addr=addr, reader=reader)

        if not self.registry.register(name, conn):
            self._inc("names_taken")
            try:
                conn.send(make_error(ERR_NAME_TAKEN))
                self._inc("errors_sent")
            except OSError as e:
                self.log.debug("Could not notify %s that %r is taken: %s", addr, name, e)
            finally:
                conn.close()
            raise NameTaken(name)

        self._inc("connections_accepted")
        self.log.info("User %s connected addr=%s", name, addr)
        return InboundPipeline(conn, self.registry, self.router_queue, self.stats)
