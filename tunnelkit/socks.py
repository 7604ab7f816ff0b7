"""SOCKS5 server tunnel handling TCP CONNECT and UDP ASSOCIATE."""

from __future__ import annotations

import io
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from tunnelkit.metadata import Address, AddressError, Metadata

logger = logging.getLogger(__name__)

NAME = "SOCKS"

CONNECT = 1
ASSOCIATE = 3

MAX_PACKET_SIZE = 1024 * 8

_SESSION_IDLE = 5.0
_POLL = 0.1
_CONNECT_REPLY = bytes([0x05, 0x00, 0x00, 0x01, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00])


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


def _read_exact(conn: Any, size: int) -> bytes:
    data = bytearray()
    while len(data) < size:
        chunk = conn.read(size - len(data))
        if not chunk:
            raise ConnectionError("connection closed during socks handshake")
        data += chunk
    return bytes(data)


@dataclass
class SocksConfig:
    local_host: str = ""
    local_port: int = 0
    udp_timeout: int = 60


class SocksConn:
    """A stream accepted through a SOCKS CONNECT request."""

    def __init__(self, conn: Any, metadata: Metadata):
        self._conn = conn
        self.metadata = metadata

    def read(self, size: int) -> bytes:
        return self._conn.read(size)

    def write(self, data: bytes) -> int:
        return self._conn.write(data)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> SocksConn:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


@dataclass
class _PacketInfo:
    metadata: Metadata
    payload: bytes


class SocksPacketConn:
    """A UDP session with one SOCKS client, fed by the server's dispatcher."""

    def __init__(self, source: Any, server_closed: threading.Event):
        self.source = source
        self._input: queue.Queue = queue.Queue(128)
        self._output: queue.Queue = queue.Queue(128)
        self._closed = threading.Event()
        self._server_closed = server_closed

    @property
    def closed(self) -> bool:
        return self._closed.is_set() or self._server_closed.is_set()

    def write_with_metadata(self, payload: bytes, metadata: Metadata) -> int:
        """Queue a packet to be sent back to the client from ``metadata``'s address."""
        if not _give(self._output, _PacketInfo(metadata, bytes(payload)), lambda: self.closed):
            raise ConnectionError("socks packet conn closed")
        return len(payload)

    def read_with_metadata(self) -> tuple[bytes, Metadata]:
        """Wait for the next packet from the client and its target."""
        info = _take(self._input, lambda: self.closed, "socks packet conn closed")
        return info.payload, info.metadata

    def close(self) -> None:
        self._closed.set()

    def __enter__(self) -> SocksPacketConn:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class SocksServer:
    """SOCKS5 server over an underlying stream server and a UDP socket."""

    def __init__(self, config: SocksConfig, underlay: Any):
        try:
            packet_socket = underlay.accept_packet(SocksTunnel())
        except OSError as exc:
            raise ConnectionError("socks failed to listen packet from underlying server") from exc
        self._underlay = underlay
        self._packet_socket = packet_socket
        self._local_host = config.local_host
        self._local_port = config.local_port
        self._conns: queue.Queue = queue.Queue(32)
        self._packets: queue.Queue = queue.Queue(32)
        self._mapping: dict[Any, SocksPacketConn] = {}
        self._mapping_lock = threading.Lock()
        self._closed = threading.Event()
        threading.Thread(target=self._accept_loop, name="socks-accept", daemon=True).start()
        threading.Thread(target=self._dispatch_loop, name="socks-udp", daemon=True).start()
        logger.debug("socks server created")

    def accept_conn(self, overlay: Any = None) -> SocksConn:
        return _take(self._conns, self._closed.is_set, "socks server closed")

    def accept_packet(self, overlay: Any = None) -> SocksPacketConn:
        return _take(self._packets, self._closed.is_set, "socks server closed")

    def close(self) -> None:
        self._closed.set()
        self._underlay.close()

    def __enter__(self) -> SocksServer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _handshake(self, conn: Any) -> SocksConn:
        version = _read_exact(conn, 1)[0]
        if version != 5:
            raise ConnectionError(f"invalid socks version {version}")
        nmethods = _read_exact(conn, 1)[0]
        _read_exact(conn, nmethods)
        conn.write(b"\x05\x00")
        header = _read_exact(conn, 3)
        address = Address.read_from(conn)
        return SocksConn(conn, Metadata(command=header[1], address=address))

    def _serve(self, conn: Any) -> None:
        try:
            socks_conn = self._handshake(conn)
        except (OSError, AddressError) as exc:
            logger.error("socks failed to handshake with client: %s", exc)
            conn.close()
            return
        metadata = socks_conn.metadata
        logger.info("socks connection, metadata %s", metadata)
        if metadata.command == CONNECT:
            try:
                socks_conn.write(_CONNECT_REPLY)
            except OSError as exc:
                logger.error("socks failed to respond CONNECT: %s", exc)
                socks_conn.close()
                return
            if not _give(self._conns, socks_conn, self._closed.is_set):
                socks_conn.close()
        elif metadata.command == ASSOCIATE:
            bound = Address.from_host_port("udp", self._local_host, self._local_port)
            try:
                socks_conn.write(b"\x05\x00\x00" + bound.to_bytes())
                socks_conn.read(16)
                logger.debug("socks udp session ends")
            except (OSError, AddressError) as exc:
                logger.error("socks failed to respond to associate request: %s", exc)
            finally:
                socks_conn.close()
        else:
            logger.error("unknown socks command %d", metadata.command)
            socks_conn.close()

    def _accept_loop(self) -> None:
        while True:
            try:
                conn = self._underlay.accept_conn(SocksTunnel())
            except OSError as exc:
                logger.error("socks accept err: %s", exc)
                return
            threading.Thread(target=self._serve, args=(conn,), daemon=True).start()

    def _open_session(self, source: Any) -> SocksPacketConn:
        session = SocksPacketConn(source, self._closed)
        threading.Thread(target=self._respond_loop, args=(session,), daemon=True).start()
        with self._mapping_lock:
            self._mapping[source] = session
        _give(self._packets, session, self._closed.is_set)
        logger.info("socks new udp session from %s", source)
        return session

    def _respond_loop(self, session: SocksPacketConn) -> None:
        try:
            deadline = time.monotonic() + _SESSION_IDLE
            while not session.closed:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.info("socks udp session timeout, closed")
                    with self._mapping_lock:
                        self._mapping.pop(session.source, None)
                    return
                try:
                    info = session._output.get(timeout=min(_POLL, remaining))
                except queue.Empty:
                    continue
                try:
                    packet = b"\x00\x00\x00" + info.metadata.address.to_bytes() + info.payload
                except AddressError as exc:
                    logger.error("socks cannot encode reply address: %s", exc)
                    continue
                try:
                    self._packet_socket.sendto(packet, session.source)
                except OSError:
                    logger.error("socks failed to respond packet to %s", session.source)
                    return
                logger.debug("socks respond udp packet to %s metadata %s", session.source, info.metadata)
                deadline = time.monotonic() + _SESSION_IDLE
        finally:
            session.close()

    def _dispatch_loop(self) -> None:
        while not self._closed.is_set():
            try:
                data, source = self._packet_socket.recvfrom(MAX_PACKET_SIZE)
            except TimeoutError:
                continue
            except OSError as exc:
                if not self._closed.is_set():
                    logger.error("socks udp socket error: %s", exc)
                return
            logger.debug("socks recv udp packet from %s", source)
            with self._mapping_lock:
                session: Optional[SocksPacketConn] = self._mapping.get(source)
            if session is None:
                session = self._open_session(source)
            reader = io.BytesIO(data[3:])
            try:
                address = Address.read_from(reader)
            except AddressError as exc:
                logger.error("socks failed to parse incoming packet: %s", exc)
                continue
            info = _PacketInfo(Metadata(address=address), reader.read())
            try:
                session._input.put_nowait(info)
            except queue.Full:
                logger.warning("socks udp queue full")


class SocksTunnel:
    """Factory for the server side of the SOCKS tunnel."""

    name = NAME
    _factories: dict[str, Callable[[Any, Any], Any]] = {"server": SocksServer}

    def _build(self, side: str, config: Any, underlay: Any) -> Any:
        factory = self._factories.get(side)
        if factory is None:
            raise RuntimeError(f"{self.name.lower()} tunnel has no {side} side")
        return factory(config, underlay)

    def new_server(self, config: SocksConfig, underlay: Any) -> SocksServer:
        return self._build("server", config, underlay)

    def new_client(self, config: Any, underlay: Any) -> Any:
        return self._build("client", config, underlay)