from __future__ import annotations

import socket
import threading
import time

import pytest

from fcvm.api.transport import Request, UnixTransport
from fcvm.errors import ConnectError, Disconnected, MalformedResponse, TransportTimeout


def _read_request(sock: socket.socket) -> bytes:
    data = b""
    while b"\r\n\r\n" not in data:
        chunk = sock.recv(4096)
        if not chunk:
            return data
        data += chunk
    head, _, body = data.partition(b"\r\n\r\n")
    for line in head.split(b"\r\n"):
        if line.lower().startswith(b"content-length:"):
            length = int(line.split(b":", 1)[1])
            while len(body) < length:
                body += sock.recv(4096)
    return head


def _serve(sock: socket.socket, *replies):
    """Answer one request per reply; each reply is a list of byte fragments."""

    def run():
        for fragments in replies:
            if not _read_request(sock):
                return
            for fragment in fragments:
                sock.sendall(fragment)
                time.sleep(0.01)

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread


@pytest.fixture
def pair():
    client, server = socket.socketpair(socket.AF_UNIX, socket.SOCK_STREAM)
    yield UnixTransport(client, "test.sock", timeout=2.0), server
    server.close()
    client.close()


def test_request_encoding_always_sets_length_for_put():
    raw = Request("PUT", "/actions").encode()
    assert raw.startswith(b"PUT /actions HTTP/1.1\r\n")
    assert b"Content-Length: 0\r\n" in raw
    assert raw.endswith(b"\r\n\r\n")
    assert b"Content-Length" not in Request("GET", "/").encode()


def test_fragmented_response_is_reassembled(pair):
    transport, server = pair
    _serve(server, [b"HTTP/1.1 200 OK\r\nContent-Le", b"ngth: 13\r\n", b"\r\n{\"id\": ", b"\"vm1\"}"])
    response = transport.send(Request("GET", "/"))
    assert response.status == 200
    assert response.ok
    assert response.body == b'{"id": "vm1"}'


def test_keep_alive_carries_several_requests(pair):
    transport, server = pair
    _serve(
        server,
        [b"HTTP/1.1 204 No Content\r\n\r\n"],
        [b"HTTP/1.1 200 OK\r\nContent-Length: 2\r\n\r\n{}"],
    )
    assert transport.send(Request("PUT", "/machine-config", b"{}")).status == 204
    assert transport.send(Request("GET", "/machine-config")).body == b"{}"


def test_chunked_body(pair):
    transport, server = pair
    _serve(server, [b"HTTP/1.1 200 OK\r\nTransfer-Encoding: chunked\r\n\r\n", b"4\r\n{\"a\"\r\n", b"3\r\n: 1\r\n1\r\n}\r\n0\r\n\r\n"])
    assert transport.send(Request("GET", "/")).body == b'{"a": 1}'


def test_peer_close_is_sticky_disconnected(pair):
    transport, server = pair

    def close_after_request():
        _read_request(server)
        server.shutdown(socket.SHUT_RDWR)

    threading.Thread(target=close_after_request, daemon=True).start()
    with pytest.raises(Disconnected):
        transport.send(Request("GET", "/"))
    assert transport.closed
    with pytest.raises(Disconnected):
        transport.send(Request("GET", "/"))


def test_malformed_status_line_poisons_connection(pair):
    transport, server = pair
    _serve(server, [b"garbage\r\n\r\n"])
    with pytest.raises(MalformedResponse):
        transport.send(Request("GET", "/"))
    with pytest.raises(Disconnected):
        transport.send(Request("GET", "/"))


def test_bad_content_length_is_malformed(pair):
    transport, server = pair
    _serve(server, [b"HTTP/1.1 200 OK\r\nContent-Length: nope\r\n\r\n"])
    with pytest.raises(MalformedResponse):
        transport.send(Request("GET", "/"))


def test_timeout_then_disconnected(pair):
    transport, server = pair
    with pytest.raises(TransportTimeout):
        transport.send(Request("GET", "/"), timeout=0.2)
    with pytest.raises(Disconnected):
        transport.send(Request("GET", "/"))


def test_abort_fails_in_flight_call(pair):
    transport, _server = pair
    errors = []

    def call():
        try:
            transport.send(Request("GET", "/"), timeout=5.0)
        except Exception as e:
            errors.append(e)

    thread = threading.Thread(target=call)
    thread.start()
    time.sleep(0.2)
    started = time.monotonic()
    transport.abort("process exited")
    thread.join(timeout=2.0)
    assert not thread.is_alive()
    assert time.monotonic() - started < 2.0
    assert len(errors) == 1 and isinstance(errors[0], Disconnected)


def test_connection_close_header_marks_transport_closed(pair):
    transport, server = pair
    _serve(server, [b"HTTP/1.1 200 OK\r\nConnection: close\r\nContent-Length: 2\r\n\r\n{}"])
    assert transport.send(Request("GET", "/")).body == b"{}"
    assert transport.closed


def test_connect_to_missing_socket(short_dir):
    with pytest.raises(ConnectError) as exc:
        UnixTransport.connect(short_dir / "missing.sock", timeout=0.5)
    assert exc.value.path.endswith("missing.sock")


def test_close_is_idempotent(pair):
    transport, _ = pair
    transport.close()
    transport.close()
    with pytest.raises(Disconnected):
        transport.send(Request("GET", "/"))
