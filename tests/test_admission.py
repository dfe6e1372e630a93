import queue
import socket

import pytest

from dmrelay.admission import AdmissionError, AdmissionHandler, NameTaken
from dmrelay.codec import StreamClosed, encode_hello, read_envelope
from dmrelay.constants import ERR_NAME_TAKEN, K_BODY, K_ERROR
from dmrelay.registry import ConnectionRegistry
from dmrelay.session import Connection, InboundPipeline
from dmrelay.stats import StatsManager


@pytest.fixture
def registry() -> ConnectionRegistry:
    return ConnectionRegistry()


@pytest.fixture
def stats() -> StatsManager:
    return StatsManager()


@pytest.fixture
def handler(registry, stats) -> AdmissionHandler:
    return AdmissionHandler(registry, queue.Queue(), stats, handshake_timeout_s=5.0)


@pytest.fixture
def pair():
    server, client = socket.socketpair()
    client.settimeout(5.0)
    yield server, client
    client.close()
    server.close()


def _drain(sock: socket.socket) -> bytes:
    data = b""
    while True:
        chunk = sock.recv(4096)
        if not chunk:
            return data
        data += chunk


def test_admit_registers_name(handler, registry, stats, pair) -> None:
    server, client = pair
    client.sendall(encode_hello("alice"))

    pipeline = handler.admit(server, "test")

    assert isinstance(pipeline, InboundPipeline)
    assert pipeline.conn.name == "alice"
    assert registry.lookup("alice") is pipeline.conn
    assert stats.get("connections_accepted") == 1
    pipeline.conn.close()


def test_admit_accepts_32_byte_name(handler, registry, pair) -> None:
    server, client = pair
    client.sendall(encode_hello("n" * 32))

    pipeline = handler.admit(server)

    assert registry.lookup("n" * 32) is pipeline.conn
    pipeline.conn.close()


def test_admit_drops_33_byte_name_silently(handler, registry, stats, pair) -> None:
    server, client = pair
    client.sendall(bytes([33]))

    with pytest.raises(AdmissionError) as exc:
        handler.admit(server)

    assert not isinstance(exc.value, NameTaken)
    assert len(registry) == 0
    assert stats.get("connections_rejected") == 1
    # No reply of any kind, just a closed stream.
    assert _drain(client) == b""


def test_admit_rejects_taken_name(handler, registry, stats, pair) -> None:
    server, client = pair
    other_server, other_client = socket.socketpair()
    original = Connection("alice", other_server)
    registry.register("alice", original)

    client.sendall(encode_hello("alice"))
    with pytest.raises(NameTaken):
        handler.admit(server)

    reader = client.makefile("rb")
    env = read_envelope(reader)
    assert env[K_ERROR] is True
    assert env[K_BODY] == ERR_NAME_TAKEN
    with pytest.raises(StreamClosed):
        read_envelope(reader)

    assert registry.lookup("alice") is original
    assert stats.get("names_taken") == 1
    assert stats.get("errors_sent") == 1

    original.close()
    other_client.close()


def test_admit_rejects_empty_name(handler, registry, pair) -> None:
    server, client = pair
    client.sendall(b"\x00")

    with pytest.raises(AdmissionError):
        handler.admit(server)
    assert len(registry) == 0


def test_admit_rejects_invalid_utf8(handler, registry, pair) -> None:
    server, client = pair
    client.sendall(b"\x02\xff\xfe")

    with pytest.raises(AdmissionError):
        handler.admit(server)
    assert len(registry) == 0


def test_admit_peer_closes_mid_handshake(handler, registry, pair) -> None:
    server, client = pair
    client.sendall(b"\x05al")
    client.shutdown(socket.SHUT_WR)

    with pytest.raises(AdmissionError):
        handler.admit(server)
    assert len(registry) == 0


def test_admit_times_out_silent_peer(registry, pair) -> None:
    server, client = pair
    handler = AdmissionHandler(registry, queue.Queue(), handshake_timeout_s=0.2)

    with pytest.raises(AdmissionError):
        handler.admit(server)
    assert len(registry) == 0
