from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .session import Connection


class ConnectionRegistry:
    """
    Directory of connected clients, keyed by display name.

    This is the single source of truth for who is online:
    - Admission inserts a name once its handshake succeeds
    - The owning inbound pipeline removes it when its stream ends
    - The router looks up recipients (and senders, to bounce errors)

    Every operation holds one lock for an in-memory dict update only; no I/O
    happens under it. Names are case-sensitive.
    """

    def __init__(self) -> None:
        self.log = logging.getLogger("dmrelay.registry")
        self._lock = threading.Lock()
        self._by_name: dict[str, Connection] = {}

    def register(self, name: str, conn: Connection) -> bool:
        """Insert ``name`` unless it is taken. Returns False if it was."""
        with self._lock:
            if name in self._by_name:
                return False
            self._by_name[name] = conn
            return True

    def unregister(self, name: str, conn: Connection | None = None) -> Connection | None:
        """
        Remove ``name``. No-op if absent.

        When ``conn`` is given the entry is only removed if it still belongs to
        that connection, so a late cleanup never evicts a newer registration.
        """
        with self._lock:
            current = self._by_name.get(name)
            if current is None:
                return None
            if conn is not None and current is not conn:
                return None
            return self._by_name.pop(name)

    def lookup(self, name: str) -> Connection | None:
        with self._lock:
            return self._by_name.get(name)

    def names(self) -> list[str]:
        with self._lock:
            return list(self._by_name.keys())

    def clear_all(self) -> list[Connection]:
        """Empty the registry and return the handles for teardown."""
        with self._lock:
            conns = list(self._by_name.values())
            self._by_name.clear()
            return conns

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_name)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._by_name
