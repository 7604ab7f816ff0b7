import os
import socket
import threading

import pytest

from tunnelkit.http import HTTPServer, HTTPTunnel


class _SockConn:
    def __init__(self, sock):
        self._sock = sock

    def read(self, size):
        return self._sock.recv(size)

    def write(self, data):
        self._sock.sendall(data)
        return len(data)

    def close(self):
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()


class _TCPUnderlay:
    def __init__(self):
        self._listener = socket.socket()
        self._listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._listener.bind(("127.0.0.1", 0))
        self._listener.listen()
        self._listener.settimeout(0.1)
        self.port = self._listener.getsockname()[1]
        self._closed = threading.Event()

    def accept_conn(self, overlay):
        while not self._closed.is_set():
            try:
                sock, _ = self._listener.accept()
            except TimeoutError:
                continue
            sock.settimeout(None)
            return _SockConn(sock)
        raise ConnectionError("closed")

    def close(self):
        self._closed.set()
        self._listener.close()


@pytest.fixture
def server():
    underlay = _TCPUnderlay()
    srv = HTTPServer(None, underlay)
    yield srv, underlay.port
    srv.close()


def _read_until(conn, marker):
    data = b""
    while marker not in data:
        chunk = conn.read(4096)
        assert chunk
        data += chunk
    return data


def _client(port, request, results):
    sock = socket.create_connection(("127.0.0.1", port))
    sock.settimeout(5)
    sock.sendall(request)
    data = b""
    while b"HelloWorld" not in data:
        chunk = sock.recv(4096)
        if not chunk:
            break
        data += chunk
    results.append(data)
    sock.close()


@pytest.mark.parametrize("round_", range(3))
def test_plain_request(server, round_):
    srv, port = server
    results = []
    request = f"GET / HTTP/1.1\r\nHost: 127.0.0.1:{port}\r\n\r\n".encode()
    thread = threading.Thread(target=_client, args=(port, request, results))
    thread.start()
    conn = srv.accept_conn(None)
    assert str(conn.metadata.address) == f"127.0.0.1:{port}"
    forwarded = _read_until(conn, b"\r\n\r\n")
    assert forwarded.startswith(b"GET / HTTP/1.1\r\n")
    conn.write(b"HTTP/1.1 200 OK\r\nContent-Length: 10\r\n\r\nHelloWorld")
    thread.join(5)
    assert results[0].endswith(b"HelloWorld")
    assert results[0].startswith(b"HTTP/1.1 200 OK")
    with pytest.raises(ConnectionError):
        conn.read(100)


def test_absolute_url_defaults_port_80(server):
    srv, port = server
    results = []
    request = (
        b"POST http://example.com/a?b=1 HTTP/1.1\r\nHost: example.com\r\n"
        b"Content-Length: 4\r\n\r\nbody"
    )
    thread = threading.Thread(target=_client, args=(port, request, results))
    thread.start()
    conn = srv.accept_conn(None)
    assert conn.metadata.address.domain_name == "example.com"
    assert conn.metadata.address.port == 80
    forwarded = _read_until(conn, b"body")
    assert forwarded.startswith(b"POST /a?b=1 HTTP/1.1\r\nHost: example.com\r\n")
    conn.write(b"HTTP/1.1 200 OK\r\nContent-Length: 10\r\n\r\nHelloWorld")
    thread.join(5)
    assert results[0].endswith(b"HelloWorld")


def test_connect(server):
    srv, port = server
    client = socket.create_connection(("127.0.0.1", port))
    client.settimeout(5)
    client.sendall(b"CONNECT example.com:443 HTTP/1.1\r\nHost: example.com:443\r\n\r\n")
    conn = srv.accept_conn(None)
    assert conn.metadata.address.port == 443
    assert conn.metadata.address.domain_name == "example.com"
    expected = b"HTTP/1.1 200 Connection established\r\n\r\n"
    received = b""
    while len(received) < len(expected):
        received += client.recv(len(expected) - len(received))
    assert received == expected
    payload = os.urandom(1024)
    client.sendall(payload)
    got = b""
    while len(got) < 1024:
        got += conn.read(1024 - len(got))
    assert got == payload
    reply = os.urandom(512)
    conn.write(reply)
    back = b""
    while len(back) < 512:
        back += client.recv(512 - len(back))
    assert back == reply
    client.close()
    conn.close()


def test_accept_after_close_raises():
    srv = HTTPServer(None, _TCPUnderlay())
    srv.close()
    with pytest.raises(ConnectionError):
        srv.accept_packet(None)
    with pytest.raises(ConnectionError):
        srv.accept_conn(None)


def test_tunnel_has_no_client():
    tunnel = HTTPTunnel()
    assert tunnel.name == "HTTP"
    with pytest.raises(RuntimeError):
        tunnel.new_client(None, None)