"""Outbound tunnel that connects directly, or through a SOCKS5 forward proxy."""

from __future__ import annotations

import io
import logging
import socket
import threading
from dataclasses import dataclass, field
from ipaddress import IPv4Address
from typing import Any, Optional

from tunnelkit.metadata import Address, AddressError, Metadata

logger = logging.getLogger(__name__)

NAME = "FREEDOM"

MAX_PACKET_SIZE = 1024 * 8

_SOCKS_CONNECT = 1
_SOCKS_UDP_ASSOCIATE = 3


@dataclass
class TCPConfig:
    prefer_ipv4: bool = False
    keep_alive: bool = True
    no_delay: bool = True


@dataclass
class ForwardProxyConfig:
    enabled: bool = False
    proxy_host: str = ""
    proxy_port: int = 0
    username: str = ""
    password: str = ""


@dataclass
class FreedomConfig:
    local_host: str = ""
    local_port: int = 0
    tcp: TCPConfig = field(default_factory=TCPConfig)
    forward_proxy: ForwardProxyConfig = field(default_factory=ForwardProxyConfig)


def _host_of(address: Address) -> str:
    return address.domain_name if address.ip is None else str(address.ip)


class _SocketReader:
    def __init__(self, sock: socket.socket):
        self._sock = sock

    def read(self, size: int) -> bytes:
        return self._sock.recv(size)


def _recv_exact(sock: socket.socket, size: int) -> bytes:
    data = bytearray()
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            raise ConnectionError("connection closed by socks proxy")
        data += chunk
    return bytes(data)


def _connect(host: str, port: int, prefer_ipv4: bool) -> socket.socket:
    family = socket.AF_INET if prefer_ipv4 else socket.AF_UNSPEC
    last_error: Optional[OSError] = None
    for fam, kind, proto, _, sockaddr in socket.getaddrinfo(host, port, family, socket.SOCK_STREAM):
        sock = socket.socket(fam, kind, proto)
        try:
            sock.connect(sockaddr)
            return sock
        except OSError as exc:
            sock.close()
            last_error = exc
    raise last_error or ConnectionError(f"no address for {host}")


def _socks_handshake(sock: socket.socket, username: str, password: str) -> None:
    sock.sendall(b"\x05\x02\x00\x02" if username else b"\x05\x01\x00")
    version, method = _recv_exact(sock, 2)
    if version != 5:
        raise ConnectionError(f"invalid socks version {version}")
    if method == 2:
        if not username:
            raise ConnectionError("socks proxy requires authentication")
        user = username.encode()
        secret = password.encode()
        sock.sendall(b"\x01" + bytes([len(user)]) + user + bytes([len(secret)]) + secret)
        _, status = _recv_exact(sock, 2)
        if status != 0:
            raise ConnectionError("socks authentication failed")
    elif method != 0:
        raise ConnectionError("socks proxy rejected all methods")


def _socks_request(sock: socket.socket, command: int, address: Address) -> Address:
    sock.sendall(bytes([5, command, 0]) + address.to_bytes())
    _, reply, _ = _recv_exact(sock, 3)
    if reply != 0:
        raise ConnectionError(f"socks request failed with code {reply}")
    return Address.read_from(_SocketReader(sock))


def _open_udp(prefer_ipv4: bool) -> socket.socket:
    if not prefer_ipv4 and socket.has_ipv6:
        sock = socket.socket(socket.AF_INET6, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            sock.bind(("::", 0))
            return sock
        except OSError:
            sock.close()
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("0.0.0.0", 0))
    return sock


class FreedomConn:
    """A plain outbound TCP stream."""

    metadata = None

    def __init__(self, sock: socket.socket):
        self._sock = sock

    def read(self, size: int) -> bytes:
        return self._sock.recv(size)

    def write(self, data: bytes) -> int:
        self._sock.sendall(data)
        return len(data)

    def close(self) -> None:
        self._sock.close()

    def __enter__(self) -> FreedomConn:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class FreedomPacketConn:
    """A UDP socket sending straight to each packet's target."""

    def __init__(self, sock: socket.socket):
        self._sock = sock

    def write_with_metadata(self, payload: bytes, metadata: Metadata) -> int:
        address = metadata.address
        ip = address.resolve_ip()
        if self._sock.family == socket.AF_INET6 and isinstance(ip, IPv4Address):
            target = (f"::ffff:{ip}", address.port)
        else:
            target = (str(ip), address.port)
        return self._sock.sendto(payload, target)

    def read_with_metadata(self) -> tuple[bytes, Metadata]:
        data, source = self._sock.recvfrom(MAX_PACKET_SIZE)
        address = Address.from_host_port("udp", source[0], source[1])
        return data, Metadata(address=address)

    def close(self) -> None:
        self._sock.close()

    def __enter__(self) -> FreedomPacketConn:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class ProxiedPacketConn:
    """UDP packets relayed through a SOCKS5 UDP ASSOCIATE session."""

    def __init__(self, sock: socket.socket, relay: tuple[str, int], control: Any):
        self._sock = sock
        self._relay = relay
        self._control = control

    def write_with_metadata(self, payload: bytes, metadata: Metadata) -> int:
        packet = b"\x00\x00\x00" + metadata.address.to_bytes() + payload
        self._sock.sendto(packet, self._relay)
        logger.debug("sent udp packet to %s with metadata %s", self._relay, metadata)
        return len(payload)

    def read_with_metadata(self) -> tuple[bytes, Metadata]:
        data, source = self._sock.recvfrom(MAX_PACKET_SIZE)
        logger.debug("recv udp packet from %s", source)
        reader = io.BytesIO(data[3:])
        try:
            address = Address.read_from(reader)
        except AddressError as exc:
            raise AddressError("socks5 failed to parse addr in the packet") from exc
        return reader.read(), Metadata(address=address)

    def close(self) -> None:
        try:
            self._control.close()
        finally:
            self._sock.close()

    def __enter__(self) -> ProxiedPacketConn:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class FreedomClient:
    """Dials targets directly or via a configured SOCKS5 forward proxy."""

    def __init__(self, config: Optional[FreedomConfig] = None, underlay: Any = None):
        config = config or FreedomConfig()
        self.tcp = config.tcp
        self.forward_proxy = config.forward_proxy
        self.proxy_address = Address.from_host_port(
            "tcp", config.forward_proxy.proxy_host, config.forward_proxy.proxy_port
        )
        self._closed = threading.Event()

    def _check_open(self) -> None:
        if self._closed.is_set():
            raise ConnectionError("freedom client closed")

    def _proxy_control(self) -> socket.socket:
        proxy = self.forward_proxy
        sock = _connect(_host_of(self.proxy_address), self.proxy_address.port, False)
        try:
            _socks_handshake(sock, proxy.username, proxy.password)
        except (OSError, AddressError):
            sock.close()
            raise
        return sock

    def dial_conn(self, address: Address, overlay: Any = None) -> FreedomConn:
        self._check_open()
        if self.forward_proxy.enabled:
            try:
                sock = self._proxy_control()
            except OSError as exc:
                raise ConnectionError("freedom failed to init socks dialer") from exc
            try:
                _socks_request(sock, _SOCKS_CONNECT, address)
            except (OSError, AddressError) as exc:
                sock.close()
                raise ConnectionError(
                    f"freedom failed to dial target address via socks proxy {address}"
                ) from exc
            return FreedomConn(sock)
        try:
            sock = _connect(_host_of(address), address.port, self.tcp.prefer_ipv4)
        except OSError as exc:
            raise ConnectionError(f"freedom failed to dial {address}") from exc
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, int(self.tcp.keep_alive))
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, int(self.tcp.no_delay))
        return FreedomConn(sock)

    def dial_packet(self, overlay: Any = None) -> FreedomPacketConn | ProxiedPacketConn:
        self._check_open()
        if self.forward_proxy.enabled:
            try:
                control = self._proxy_control()
            except OSError as exc:
                raise ConnectionError("freedom failed to negotiate socks") from exc
            try:
                bound = _socks_request(
                    control, _SOCKS_UDP_ASSOCIATE, Address.from_host_port("udp", "1.1.1.1", 53)
                )
                ip = bound.resolve_ip()
                if ip.is_unspecified:
                    ip = self.proxy_address.resolve_ip()
            except (OSError, AddressError) as exc:
                control.close()
                raise ConnectionError("freedom failed to dial udp to socks") from exc
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            try:
                sock.bind(("127.0.0.1", 0))
            except OSError as exc:
                sock.close()
                control.close()
                raise ConnectionError("freedom failed to listen udp") from exc
            return ProxiedPacketConn(sock, (str(ip), bound.port), control)
        try:
            sock = _open_udp(self.tcp.prefer_ipv4)
        except OSError as exc:
            raise ConnectionError("freedom failed to listen udp socket") from exc
        return FreedomPacketConn(sock)

    def close(self) -> None:
        self._closed.set()

    def __enter__(self) -> FreedomClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class FreedomTunnel:
    """Factory for the client side of the direct tunnel."""

    name = NAME

    def new_client(self, config: Optional[FreedomConfig], underlay: Any) -> FreedomClient:
        return FreedomClient(config, underlay)

    def new_server(self, config: Any, underlay: Any) -> Any:
        raise RuntimeError("freedom tunnel has no server side")