"""Statistics tracking and reporting for the relay."""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .registry import ConnectionRegistry


class StatsManager:
    """
    Lifetime counters for the relay.

    Tracks:
    - Connections accepted and rejected at admission
    - Messages queued, rejected, forwarded and dropped
    - Error envelopes sent back to clients
    - Message body bytes in/out
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "connections_accepted": 0,
            "connections_rejected": 0,
            "names_taken": 0,
            "msgs_in": 0,
            "msgs_bad": 0,
            "msgs_forwarded": 0,
            "msgs_dropped": 0,
            "errors_sent": 0,
            "bytes_in": 0,
            "bytes_out": 0,
        }

    def set_start_time(self) -> None:
        """Set the start time for uptime calculations."""
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        with self._lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return self._counters.get(key, 0)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def format_stats(self, registry: ConnectionRegistry | None = None) -> str:
        """Format current statistics as a single human-readable line."""
        from . import __version__

        started = self.started_monotonic
        uptime_s = (time.monotonic() - started) if started is not None else 0.0
        c = self.snapshot()
        online = len(registry) if registry is not None else 0

        return (
            f"dmrelay {__version__} uptime_s={uptime_s:.1f} online={online} "
            "conns: accepted={} rejected={} names_taken={} "
            "msgs: in={} bad={} fwd={} dropped={} errors_sent={} "
            "bytes: in={} out={}".format(
                c.get("connections_accepted", 0),
                c.get("connections_rejected", 0),
                c.get("names_taken", 0),
                c.get("msgs_in", 0),
                c.get("msgs_bad", 0),
                c.get("msgs_forwarded", 0),
                c.get("msgs_dropped", 0),
                c.get("errors_sent", 0),
                c.get("bytes_in", 0),
                c.get("bytes_out", 0),
            )
        )
