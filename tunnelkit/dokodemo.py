"""Port-forwarding server: every connection goes to one fixed target."""

from __future__ import annotations

import logging
import queue
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from tunnelkit.metadata import Address, Metadata

logger = logging.getLogger(__name__)

NAME = "DOKODEMO"

MAX_PACKET_SIZE = 1024 * 8

_POLL = 0.1


def _take(items: queue.Queue, closed: Callable[[], bool], message: str) -> Any:
    while not closed():
        try:
            return items.get(timeout=_POLL)
        except queue.Empty:
            continue
    raise ConnectionError(message)


def _give(items: queue.Queue, item: Any, closed: Callable[[], bool]) -> bool:
    while not closed():
        try:
            items.put(item, timeout=_POLL)
            return True
        except queue.Full:
            continue
    return False


def _listen(host: str, port: int, kind: int) -> socket.socket:
    family, sock_type, proto, _, sockaddr = socket.getaddrinfo(
        host or None, port, type=kind, flags=socket.AI_PASSIVE
    )[0]
    sock = socket.socket(family, sock_type, proto)
    try:
        if kind == socket.SOCK_STREAM:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(sockaddr)
            sock.listen()
        else:
            sock.bind(sockaddr)
        sock.settimeout(_POLL)
    except OSError:
        sock.close()
        raise
    return sock


@dataclass
class DokodemoConfig:
    local_host: str = ""
    local_port: int = 0
    target_host: str = ""
    target_port: int = 0
    udp_timeout: int = 60


class DokodemoConn:
    """An accepted TCP connection carrying the fixed target as metadata."""

    def __init__(self, sock: socket.socket, metadata: Metadata):
        self._sock = sock
        self.metadata = metadata

    def read(self, size: int) -> bytes:
        return self._sock.recv(size)

    def write(self, data: bytes) -> int:
        self._sock.sendall(data)
        return len(data)

    def close(self) -> None:
        self._sock.close()

    def __enter__(self) -> DokodemoConn:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class DokodemoPacketConn:
    """A UDP session with one source, fed by the server's dispatcher."""

    def __init__(self, metadata: Metadata, source: Any, server_closed: threading.Event):
        self.metadata = metadata
        self.source = source
        self._input: queue.Queue = queue.Queue(16)
        self._output: queue.Queue = queue.Queue(16)
        self._closed = threading.Event()
        self._server_closed = server_closed

    @property
    def closed(self) -> bool:
        return self._closed.is_set() or self._server_closed.is_set()

    def read_with_metadata(self) -> tuple[bytes, Metadata]:
        payload = _take(self._input, lambda: self.closed, "dokodemo packet conn closed")
        return payload, self.metadata

    def write_with_metadata(self, payload: bytes, metadata: Metadata) -> int:
        """Queue a packet for the session's source; ``metadata`` is ignored."""
        if not _give(self._output, bytes(payload), lambda: self.closed):
            raise ConnectionError("dokodemo packet conn failed to write")
        return len(payload)

    def close(self) -> None:
        # The shared UDP socket stays open.
        self._closed.set()

    def __enter__(self) -> DokodemoPacketConn:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class DokodemoServer:
    """Listens on TCP and UDP and forwards everything to one target address."""

    def __init__(self, config: DokodemoConfig, underlay: Any = None):
        self._target = Address.from_host_port("tcp", config.target_host, config.target_port)
        listen = Address.from_host_port("tcp", config.local_host, config.local_port)
        host = listen.domain_name if listen.ip is None else str(listen.ip)
        self._tcp = _listen(host, listen.port, socket.SOCK_STREAM)
        try:
            self._udp = _listen(host, listen.port, socket.SOCK_DGRAM)
        except OSError:
            self._tcp.close()
            raise
        self._timeout = float(config.udp_timeout)
        self._packets: queue.Queue = queue.Queue(32)
        self._mapping: dict[Any, DokodemoPacketConn] = {}
        self._mapping_lock = threading.Lock()
        self._closed = threading.Event()
        threading.Thread(target=self._dispatch_loop, name="dokodemo-udp", daemon=True).start()

    def accept_conn(self, overlay: Any = None) -> DokodemoConn:
        while not self._closed.is_set():
            try:
                sock, _ = self._tcp.accept()
            except TimeoutError:
                continue
            except OSError as exc:
                if self._closed.is_set():
                    break
                raise ConnectionError("dokodemo failed to accept connection") from exc
            return DokodemoConn(sock, Metadata(address=self._target))
        raise ConnectionError("dokodemo server closed")

    def accept_packet(self, overlay: Any = None) -> DokodemoPacketConn:
        return _take(self._packets, self._closed.is_set, "dokodemo server closed")

    def close(self) -> None:
        self._closed.set()
        self._tcp.close()
        self._udp.close()

    def __enter__(self) -> DokodemoServer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _dispatch_loop(self) -> None:
        fixed = Metadata(address=self._target)
        while not self._closed.is_set():
            try:
                data, source = self._udp.recvfrom(MAX_PACKET_SIZE)
            except TimeoutError:
                continue
            except OSError as exc:
                if not self._closed.is_set():
                    logger.error("dokodemo failed to read from udp socket: %s", exc)
                return
            logger.debug("udp packet from %s", source)
            with self._mapping_lock:
                conn = self._mapping.get(source)
                is_new = conn is None
                if conn is None:
                    conn = DokodemoPacketConn(fixed, source, self._closed)
                    self._mapping[source] = conn
            _give(conn._input, data, lambda c=conn: c.closed)
            if is_new:
                _give(self._packets, conn, self._closed.is_set)
                threading.Thread(target=self._respond_loop, args=(conn,), daemon=True).start()

    def _respond_loop(self, conn: DokodemoPacketConn) -> None:
        deadline = time.monotonic() + self._timeout
        while not self._closed.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                with self._mapping_lock:
                    self._mapping.pop(conn.source, None)
                conn.close()
                logger.debug("closing timeout packetConn")
                return
            try:
                payload = conn._output.get(timeout=min(_POLL, remaining))
            except queue.Empty:
                continue
            try:
                self._udp.sendto(payload, conn.source)
            except OSError as exc:
                logger.error("dokodemo udp write error: %s", exc)
                return
            deadline = time.monotonic() + self._timeout


class DokodemoTunnel:
    """Factory for the server side of the port-forwarding tunnel."""

    name = NAME
    _factories: dict[str, Callable[[Any, Any], Any]] = {"server": DokodemoServer}

    def _build(self, side: str, config: Any, underlay: Any) -> Any:
        factory = self._factories.get(side)
        if factory is None:
            raise RuntimeError(f"{self.name.lower()} tunnel has no {side} side")
        return factory(config, underlay)

    def new_server(self, config: DokodemoConfig, underlay: Any) -> DokodemoServer:
        return self._build("server", config, underlay)

    def new_client(self, config: Any, underlay: Any) -> Any:
        return self._build("client", config, underlay)