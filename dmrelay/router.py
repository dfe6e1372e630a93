from __future__ import annotations

import logging
import queue
from typing import TYPE_CHECKING

from .constants import K_BODY, K_FROM, K_TO
from .envelope import byte_len, make_envelope, not_connected_error

if TYPE_CHECKING:
    from .registry import ConnectionRegistry
    from .stats import StatsManager

_STOP = object()


class MessageRouter:
    """
    Single consumer of the router queue.

    For each queued envelope, in arrival order:
    - Forward sender and content to the recipient if it is registered
    - Otherwise bounce an error envelope to the sender, if it is still here
    - Otherwise drop the message

    Write failures are logged and the message dropped; the broken
    connection's own pipeline notices and unregisters it. Nothing here
    raises to the caller.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        router_queue: queue.Queue,
        stats: StatsManager | None = None,
    ) -> None:
        self.registry = registry
        self.queue = router_queue
        self.stats = stats
        self.log = logging.getLogger("dmrelay.router")

    def _inc(self, key: str, delta: int = 1) -> None:
        if self.stats is not None:
            self.stats.inc(key, delta)

    def run(self) -> None:
        """Drain the queue until stop() is called."""
        while self.route_next():
            pass
        self.log.debug("Router stopped")

    def route_next(self, timeout: float | None = None) -> bool:
        """Route one queued envelope. Returns False once stopped."""
        env = self.queue.get(timeout=timeout)
        try:
            if env is _STOP:
                return False
            self.route(env)
            return True
        finally:
            self.queue.task_done()

    def stop(self) -> None:
        """Ask run() to return after everything queued before this call."""
        self.queue.put(_STOP)

    def route(self, env: dict) -> None:
        try:
            self._route(env)
        except Exception:
            self._inc("msgs_dropped")
            self.log.exception("Unexpected routing failure; dropping message")

    def _route(self, env: dict) -> None:
        to = env[K_TO]
        src = env[K_FROM]
        body = env[K_BODY]

        recipient = self.registry.lookup(to)
        if recipient is not None:
            try:
                recipient.send(make_envelope(to=to, src=src, body=body))
            except OSError as e:
                self._inc("msgs_dropped")
                self.log.warning("Delivery to %s failed; dropping message: %s", to, e)
                return
            self._inc("msgs_forwarded")
            self._inc("bytes_out", byte_len(body))
            self.log.info("%s to %s: %s", src, to, body)
            return

        self.log.info("User %s does not exist", to)

        sender = self.registry.lookup(src)
        if sender is None:
            # The sender left between queueing and routing; nobody to tell.
            self._inc("msgs_dropped")
            self.log.info("Sender %s does not exist either. Dropping message", src)
            return

        self._inc("msgs_dropped")
        try:
            sender.send(not_connected_error(to, to=src))
        except OSError as e:
            self.log.warning("Error notice to %s failed: %s", src, e)
            return
        self._inc("errors_sent")
