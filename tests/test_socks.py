import socket
import threading

import pytest

from tunnelkit.metadata import Address, AddressType, Metadata
from tunnelkit.socks import (
    ASSOCIATE,
    CONNECT,
    SocksConfig,
    SocksServer,
    SocksTunnel,
)


class _StreamConn:
    def __init__(self, sock):
        self.sock = sock

    def read(self, size):
        return self.sock.recv(size)

    def write(self, data):
        self.sock.sendall(data)
        return len(data)

    def close(self):
        self.sock.close()


class FakeUnderlay:
    def __init__(self):
        self.listener = socket.create_server(("127.0.0.1", 0))
        self.listener.settimeout(0.1)
        self.port = self.listener.getsockname()[1]
        self.udp = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.udp.bind(("127.0.0.1", 0))
        self.udp.settimeout(0.1)
        self.udp_port = self.udp.getsockname()[1]
        self.closed = threading.Event()

    def accept_conn(self, overlay):
        while not self.closed.is_set():
            try:
                sock, _ = self.listener.accept()
            except TimeoutError:
                continue
            except OSError:
                break
            return _StreamConn(sock)
        raise ConnectionError("closed")

    def accept_packet(self, overlay):
        return self.udp

    def close(self):
        self.closed.set()
        self.listener.close()
        self.udp.close()


def _recv_exact(sock, size):
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        assert chunk
        data += chunk
    return data


def _conn_read_exact(conn, size):
    data = b""
    while len(data) < size:
        chunk = conn.read(size - len(data))
        assert chunk
        data += chunk
    return data


@pytest.fixture
def env():
    underlay = FakeUnderlay()
    config = SocksConfig(local_host="127.0.0.1", local_port=underlay.udp_port)
    server = SocksTunnel().new_server(config, underlay)
    yield server, underlay
    server.close()


def _request(underlay, command, address):
    client = socket.create_connection(("127.0.0.1", underlay.port), timeout=5)
    client.sendall(b"\x05\x01\x00")
    assert _recv_exact(client, 2) == b"\x05\x00"
    client.sendall(bytes([5, command, 0]) + address.to_bytes())
    return client


def test_connect_handshake_and_relay(env):
    server, underlay = env
    target = Address(address_type=AddressType.DOMAIN_NAME, domain_name="example.com", port=80)
    client = _request(underlay, CONNECT, target)
    try:
        assert _recv_exact(client, 10) == b"\x05\x00\x00\x01" + b"\x00" * 6
        conn = server.accept_conn(None)
        assert conn.metadata.command == CONNECT
        assert conn.metadata.address.domain_name == "example.com"
        assert conn.metadata.address.port == 80
        client.sendall(b"ping")
        assert _conn_read_exact(conn, 4) == b"ping"
        assert conn.write(b"pong") == 4
        assert _recv_exact(client, 4) == b"pong"
        conn.close()
    finally:
        client.close()


def test_associate_reply_carries_udp_address(env):
    server, underlay = env
    target = Address(address_type=AddressType.IPV4, ip=None, port=0)
    target = Address.from_host_port("udp", "0.0.0.0", 0)
    client = _request(underlay, ASSOCIATE, target)
    try:
        reply = _recv_exact(client, 10)
        assert reply == b"\x05\x00\x00\x01\x7f\x00\x00\x01" + underlay.udp_port.to_bytes(2, "big")
    finally:
        client.close()


def test_invalid_version_closes_connection(env):
    _, underlay = env
    client = socket.create_connection(("127.0.0.1", underlay.port), timeout=5)
    try:
        client.sendall(b"\x04\x01\x00")
        assert client.recv(16) == b""
    finally:
        client.close()


def test_udp_packet_in_and_out(env):
    server, underlay = env
    udp_client = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    udp_client.settimeout(5)
    try:
        source = Address(address_type=AddressType.DOMAIN_NAME, domain_name="google.com", port=12345)
        payload = bytes(range(256)) * 4
        udp_client.sendto(b"\x00\x00\x00" + source.to_bytes() + payload, ("127.0.0.1", underlay.udp_port))

        packet = server.accept_packet(None)
        received, metadata = packet.read_with_metadata()
        assert metadata.address.domain_name == "google.com"
        assert metadata.address.port == 12345
        assert received == payload

        reply = b"reply-payload"
        sender = Address.from_host_port("udp", "123.123.234.234", 12345)
        assert packet.write_with_metadata(reply, Metadata(address=sender)) == len(reply)
        data, _ = udp_client.recvfrom(4096)
        assert data[:3] == b"\x00\x00\x00"
        assert data[3:] == b"\x01" + bytes([123, 123, 234, 234]) + (12345).to_bytes(2, "big") + reply

        udp_client.sendto(b"\x00\x00\x00" + source.to_bytes() + b"second", ("127.0.0.1", underlay.udp_port))
        again, _ = packet.read_with_metadata()
        assert again == b"second"
        packet.close()
    finally:
        udp_client.close()


def test_closed_packet_conn_rejects_io(env):
    server, underlay = env
    udp_client = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        target = Address.from_host_port("udp", "10.0.0.1", 53)
        udp_client.sendto(b"\x00\x00\x00" + target.to_bytes() + b"x", ("127.0.0.1", underlay.udp_port))
        packet = server.accept_packet(None)
        packet.close()
        with pytest.raises(ConnectionError):
            packet.write_with_metadata(b"data", Metadata(address=target))
        with pytest.raises(ConnectionError):
            packet.read_with_metadata()
    finally:
        udp_client.close()


def test_closed_server_refuses_accept():
    underlay = FakeUnderlay()
    server = SocksServer(SocksConfig(), underlay)
    server.close()
    with pytest.raises(ConnectionError):
        server.accept_conn(None)
    with pytest.raises(ConnectionError):
        server.accept_packet(None)


def test_tunnel_has_no_client_and_defaults():
    tunnel = SocksTunnel()
    assert tunnel.name == "SOCKS"
    assert SocksConfig().udp_timeout == 60
    with pytest.raises(RuntimeError):
        tunnel.new_client(SocksConfig(), None)