from __future__ import annotations

import logging
import queue
import signal
import socket
import threading
from typing import Any

from .admission import AdmissionError, AdmissionHandler, NameTaken
from .config import RelayRuntimeConfig
from .registry import ConnectionRegistry
from .router import MessageRouter
from .stats import StatsManager


class RelayService:
    """
    The relay process: one listening socket, an accept loop, a thread per
    client connection (admission, then its inbound pipeline) and a single
    router thread draining the shared bounded queue.
    """

    def __init__(self, config: RelayRuntimeConfig) -> None:
        self.config = config
        self.log = logging.getLogger("dmrelay.relay")

        self._shutdown = threading.Event()
        self._stop_lock = threading.Lock()
        self._stopped = False

        self.registry = ConnectionRegistry()
        self.stats_manager = StatsManager()
        self.queue: queue.Queue = queue.Queue(maxsize=max(1, int(config.queue_size)))
        self.router = MessageRouter(self.registry, self.queue, self.stats_manager)
        self.admission = AdmissionHandler(
            self.registry,
            self.queue,
            self.stats_manager,
            handshake_timeout_s=config.handshake_timeout_s,
        )

        self._server: socket.socket | None = None
        self._accept_thread: threading.Thread | None = None
        self._router_thread: threading.Thread | None = None

    @property
    def address(self) -> tuple[str, int]:
        if self._server is None:
            raise RuntimeError("relay is not listening")
        host, port = self._server.getsockname()[:2]
        return host, port

    @property
    def is_running(self) -> bool:
        return self._server is not None and not self._shutdown.is_set()

    def start(self) -> None:
        """Bind the listening socket and start the worker threads.

        Raises OSError if the address cannot be bound.
        """
        self.stats_manager.set_start_time()

        self._server = socket.create_server(
            (self.config.listen_host, int(self.config.listen_port))
        )
        # Lets the accept loop notice shutdown without relying on close()
        # interrupting a blocked accept().
        self._server.settimeout(0.5)

        self._router_thread = threading.Thread(
            target=self.router.run, name="dmrelay-router", daemon=True
        )
        self._router_thread.start()

        self._accept_thread = threading.Thread(
            target=self._accept_loop, name="dmrelay-accept", daemon=True
        )
        self._accept_thread.start()

        host, port = self.address
        self.log.info("Listening for connections on %s:%s", host, port)
        self.log.info(
            "Policy queue_size=%s handshake_timeout_s=%s",
            self.queue.maxsize,
            self.config.handshake_timeout_s,
        )

    def _accept_loop(self) -> None:
        server = self._server
        assert server is not None
        while not self._shutdown.is_set():
            try:
                sock, addr = server.accept()
            except TimeoutError:
                continue
            except OSError as e:
                if self._shutdown.is_set():
                    break
                self.log.warning("Accept failed: %s", e)
                continue

            threading.Thread(
                target=self._serve_client,
                args=(sock, addr),
                name=f"dmrelay-client-{addr[0]}:{addr[1]}",
                daemon=True,
            ).start()

        self.log.debug("Accept loop stopped")

    def _serve_client(self, sock: socket.socket, addr: Any) -> None:
        try:
            pipeline = self.admission.admit(sock, addr)
        except NameTaken as e:
            self.log.info("Rejected connection from %s: %s", addr, e)
            return
        except AdmissionError as e:
            self.log.warning("Rejected connection from %s: %s", addr, e)
            return

        if self._shutdown.is_set():
            # Registered after stop() emptied the registry.
            pipeline.conn.close()
        pipeline.run()

    def run_forever(self) -> None:
        if self._server is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            self._shutdown.wait(0.25)

    def wait(self, timeout: float | None = None) -> bool:
        return self._shutdown.wait(timeout)

    def stop(self) -> None:
        """Stop accepting, close every client connection and stop the router."""
        with self._stop_lock:
            if self._stopped:
                return
            self._stopped = True
        self._shutdown.set()

        if self._server is not None:
            try:
                self._server.close()
            except OSError:
                pass

        conns = self.registry.clear_all()
        for conn in conns:
            conn.close()
        if conns:
            self.log.info("Closed %s client connection(s)", len(conns))

        self.router.stop()
        for t in (self._accept_thread, self._router_thread):
            if t is not None and t is not threading.current_thread():
                t.join(timeout=2.0)

        self.log.info("%s", self.stats_manager.format_stats(self.registry))
