"""Local inbound listener that splits connections between SOCKS5 and HTTP."""

from __future__ import annotations

import logging
import queue
import socket
import threading
from dataclasses import dataclass
from typing import Any, Callable

from tunnelkit.freedom import FreedomConn
from tunnelkit.http import HTTPTunnel
from tunnelkit.socks import SocksTunnel

logger = logging.getLogger(__name__)

NAME = "ADAPTER"

_POLL = 0.1
_SOCKS_VERSION = 5


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
class AdapterConfig:
    local_host: str = ""
    local_port: int = 0


class AdapterServer:
    """Listens on one TCP/UDP port and hands streams to SOCKS or HTTP overlays."""

    def __init__(self, config: AdapterConfig, underlay: Any = None):
        try:
            self._tcp = _listen(config.local_host, config.local_port, socket.SOCK_STREAM)
        except OSError as exc:
            raise ConnectionError("adapter failed to create tcp listener") from exc
        try:
            self._udp = _listen(config.local_host, config.local_port, socket.SOCK_DGRAM)
        except OSError as exc:
            self._tcp.close()
            raise ConnectionError("adapter failed to create udp listener") from exc
        self._socks_conns: queue.Queue = queue.Queue(32)
        self._http_conns: queue.Queue = queue.Queue(32)
        self._socks_lock = threading.Lock()
        self._next_socks = False
        self._closed = threading.Event()
        logger.info("adapter listening on tcp/udp: %s:%d", config.local_host, config.local_port)
        threading.Thread(target=self._accept_loop, name="adapter-accept", daemon=True).start()

    def _accept_loop(self) -> None:
        while not self._closed.is_set():
            try:
                sock, _ = self._tcp.accept()
            except TimeoutError:
                continue
            except OSError:
                if self._closed.is_set():
                    logger.debug("exiting")
                    return
                continue
            try:
                head = sock.recv(3, socket.MSG_PEEK)
            except OSError as exc:
                logger.error("failed to detect proxy protocol type: %s", exc)
                sock.close()
                continue
            if not head:
                logger.error("failed to detect proxy protocol type: connection closed")
                sock.close()
                continue
            with self._socks_lock:
                to_socks = head[0] == _SOCKS_VERSION and self._next_socks
            if to_socks:
                logger.debug("socks5 connection")
                target = self._socks_conns
            else:
                logger.debug("http connection")
                target = self._http_conns
            if not _give(target, FreedomConn(sock), self._closed.is_set):
                sock.close()

    def accept_conn(self, overlay: Any) -> FreedomConn:
        """Return the next stream meant for ``overlay`` (an HTTP or SOCKS tunnel)."""
        if isinstance(overlay, HTTPTunnel):
            return _take(self._http_conns, self._closed.is_set, "adapter closed")
        if isinstance(overlay, SocksTunnel):
            with self._socks_lock:
                self._next_socks = True
            return _take(self._socks_conns, self._closed.is_set, "adapter closed")
        raise ValueError("invalid overlay")

    def accept_packet(self, overlay: Any = None) -> socket.socket:
        """Return the shared UDP socket."""
        return self._udp

    def close(self) -> None:
        self._closed.set()
        self._tcp.close()
        self._udp.close()

    def __enter__(self) -> AdapterServer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class AdapterTunnel:
    """Factory for the server side of the adapter."""

    name = NAME

    def new_server(self, config: AdapterConfig, underlay: Any) -> AdapterServer:
        return AdapterServer(config, underlay)

    def new_client(self, config: Any, underlay: Any) -> Any:
        raise RuntimeError("adapter tunnel has no client side")