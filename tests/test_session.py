import queue
import socket
import threading
import time

import pytest

from dmrelay.codec import encode
from dmrelay.constants import K_BODY, K_ERROR, K_FROM, K_TO
from dmrelay.envelope import make_envelope
from dmrelay.registry import ConnectionRegistry
from dmrelay.session import Connection, InboundPipeline
from dmrelay.stats import StatsManager


def _wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not met in time")


class _Harness:
    def __init__(self, maxsize: int = 0) -> None:
        self.server, self.client = socket.socketpair()
        self.client.settimeout(5.0)
        self.registry = ConnectionRegistry()
        self.queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self.stats = StatsManager()
        self.conn = Connection("alice", self.server)
        assert self.registry.register("alice", self.conn)
        self.pipeline = InboundPipeline(self.conn, self.registry, self.queue, self.stats)
        self.thread = threading.Thread(target=self.pipeline.run, daemon=True)
        self.thread.start()

    def send(self, env) -> None:
        self.client.sendall(encode(env))

    def wait_stopped(self) -> None:
        self.thread.join(timeout=5.0)
        assert not self.thread.is_alive()

    def close(self) -> None:
        self.client.close()
        self.conn.close()


@pytest.fixture
def harness():
    h = _Harness()
    yield h
    h.close()


def test_pipeline_stamps_sender(harness) -> None:
    harness.send(make_envelope(to="bob", src="mallory", body="hi", error=True))

    env = harness.queue.get(timeout=5.0)
    assert env[K_TO] == "bob"
    assert env[K_BODY] == "hi"
    assert env[K_FROM] == "alice"
    assert env[K_ERROR] is False
    assert harness.stats.get("msgs_in") == 1


def test_pipeline_stamps_sender_when_missing(harness) -> None:
    harness.send({0: "bob", 2: "hi"})

    env = harness.queue.get(timeout=5.0)
    assert env[K_FROM] == "alice"


def test_pipeline_preserves_order(harness) -> None:
    for i in range(20):
        harness.send(make_envelope(to="bob", body=f"msg {i}"))

    bodies = [harness.queue.get(timeout=5.0)[K_BODY] for _ in range(20)]
    assert bodies == [f"msg {i}" for i in range(20)]


def test_pipeline_accepts_limits(harness) -> None:
    harness.send(make_envelope(to="r" * 32, body="m" * 2048))

    env = harness.queue.get(timeout=5.0)
    assert env[K_TO] == "r" * 32
    assert len(env[K_BODY]) == 2048


def test_oversized_content_disconnects(harness) -> None:
    harness.send(make_envelope(to="bob", body="m" * 2049))

    harness.wait_stopped()
    assert harness.queue.empty()
    assert harness.registry.lookup("alice") is None
    assert harness.client.recv(1) == b""
    assert harness.stats.get("msgs_bad") == 1


def test_oversized_recipient_disconnects(harness) -> None:
    harness.send(make_envelope(to="r" * 33, body="hi"))

    harness.wait_stopped()
    assert harness.queue.empty()
    assert harness.registry.lookup("alice") is None


def test_malformed_frame_disconnects(harness) -> None:
    harness.client.sendall(b"\xff\xff\xff")

    harness.wait_stopped()
    assert harness.registry.lookup("alice") is None
    assert harness.stats.get("msgs_bad") == 1


def test_wrong_shape_disconnects(harness) -> None:
    harness.send(["bob", "hi"])

    harness.wait_stopped()
    assert harness.queue.empty()
    assert harness.registry.lookup("alice") is None


def test_messages_before_violation_are_kept(harness) -> None:
    harness.send(make_envelope(to="bob", body="ok"))
    harness.send(make_envelope(to="bob", body="m" * 5000))

    harness.wait_stopped()
    assert harness.queue.get(timeout=1.0)[K_BODY] == "ok"
    assert harness.queue.empty()


def test_peer_close_unregisters(harness) -> None:
    harness.client.shutdown(socket.SHUT_WR)

    harness.wait_stopped()
    assert harness.registry.lookup("alice") is None
    assert harness.conn.closed
    assert harness.stats.get("msgs_bad") == 0


def test_local_close_unregisters(harness) -> None:
    harness.conn.close()

    harness.wait_stopped()
    assert harness.registry.lookup("alice") is None


def test_full_queue_applies_backpressure() -> None:
    h = _Harness(maxsize=1)
    try:
        for i in range(3):
            h.send(make_envelope(to="bob", body=f"msg {i}"))

        received = [h.queue.get(timeout=5.0)[K_BODY] for _ in range(3)]
        assert received == ["msg 0", "msg 1", "msg 2"]
    finally:
        h.close()


def test_close_releases_pipeline_blocked_on_full_queue() -> None:
    h = _Harness(maxsize=1)
    h.pipeline.put_timeout_s = 0.05
    try:
        h.queue.put(make_envelope(to="bob", body="filler"))
        h.send(make_envelope(to="bob", body="stuck"))
        _wait_until(lambda: h.stats.get("msgs_in") == 1)

        h.conn.close()

        h.wait_stopped()
        assert h.registry.lookup("alice") is None
        assert h.queue.get_nowait()[K_BODY] == "filler"
        assert h.queue.empty()
    finally:
        h.close()


def test_unexpected_read_error_unregisters(monkeypatch) -> None:
    def _explode(fp):
        raise RuntimeError("decoder bug")

    monkeypatch.setattr("dmrelay.session.read_envelope", _explode)
    server, client = socket.socketpair()
    registry = ConnectionRegistry()
    stats = StatsManager()
    conn = Connection("alice", server)
    assert registry.register("alice", conn)
    pipeline = InboundPipeline(conn, registry, queue.Queue(), stats)

    try:
        pipeline.run()
    finally:
        client.close()

    assert registry.lookup("alice") is None
    assert conn.closed
    assert stats.get("msgs_bad") == 1


def test_connection_send_after_close_fails() -> None:
    server, client = socket.socketpair()
    conn = Connection("alice", server)
    conn.close()
    conn.close()

    with pytest.raises(OSError):
        conn.send(make_envelope(to="alice", src="bob", body="hi"))
    client.close()
