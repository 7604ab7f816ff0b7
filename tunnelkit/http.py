"""HTTP proxy server tunnel handling CONNECT and plain forwarded requests."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional
from urllib.parse import urlsplit

from tunnelkit.metadata import Address, AddressError, Metadata

logger = logging.getLogger(__name__)

NAME = "HTTP"

_POLL = 0.1
_MAX_LINE = 65536


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


class _Reader:
    """Buffered reader over a ``read(size)`` function."""

    def __init__(self, read: Callable[[int], bytes]):
        self._read = read
        self._buf = bytearray()
        self._eof = False

    def _fill(self) -> bool:
        if self._eof:
            return False
        chunk = self._read(4096)
        if not chunk:
            self._eof = True
            return False
        self._buf += chunk
        return True

    def _take(self, size: int) -> bytes:
        out = bytes(self._buf[:size])
        del self._buf[:size]
        return out

    def readline(self) -> bytes:
        while b"\n" not in self._buf:
            if len(self._buf) > _MAX_LINE:
                raise ValueError("http line too long")
            if not self._fill():
                return self._take(len(self._buf))
        return self._take(self._buf.index(b"\n") + 1)

    def read_exact(self, size: int) -> bytes:
        while len(self._buf) < size:
            if not self._fill():
                raise ConnectionError("unexpected end of http message")
        return self._take(size)

    def read_to_eof(self) -> bytes:
        while self._fill():
            pass
        return self._take(len(self._buf))

    def read_some(self, size: int) -> bytes:
        if self._buf:
            return self._take(size)
        if self._eof:
            return b""
        return self._read(size)


def _header(headers: list[tuple[str, str]], name: str) -> Optional[str]:
    for key, value in headers:
        if key.lower() == name:
            return value
    return None


def _read_head(reader: _Reader) -> tuple[str, list[tuple[str, str]]]:
    line = reader.readline()
    if not line:
        raise ConnectionError("connection closed")
    start = line.decode("latin-1").strip()
    headers = []
    while True:
        line = reader.readline()
        if not line:
            raise ConnectionError("unexpected end of http headers")
        if line in (b"\r\n", b"\n"):
            break
        name, sep, value = line.decode("latin-1").partition(":")
        if not sep:
            raise ValueError(f"malformed header line {line!r}")
        headers.append((name.strip(), value.strip()))
    return start, headers


def _read_body(reader: _Reader, headers: list[tuple[str, str]], to_eof: bool) -> bytes:
    encoding = _header(headers, "transfer-encoding")
    if encoding and "chunked" in encoding.lower():
        out = bytearray()
        while True:
            line = reader.readline()
            if not line:
                raise ConnectionError("unexpected end of chunked body")
            out += line
            size = int(line.split(b";")[0].strip(), 16)
            if size == 0:
                break
            out += reader.read_exact(size + 2)
        while True:
            line = reader.readline()
            if not line:
                raise ConnectionError("unexpected end of chunked trailer")
            out += line
            if not line.strip():
                break
        return bytes(out)
    length = _header(headers, "content-length")
    if length is not None:
        return reader.read_exact(int(length))
    return reader.read_to_eof() if to_eof else b""


def _parse_version(proto: str) -> tuple[int, int]:
    name, _, numbers = proto.partition("/")
    major, _, minor = numbers.partition(".")
    if name.upper() != "HTTP" or not major.isdigit() or not minor.isdigit():
        raise ValueError(f"malformed HTTP version {proto!r}")
    return int(major), int(minor)


@dataclass
class _Request:
    method: str
    target: str
    version: tuple[int, int]
    headers: list[tuple[str, str]]
    body: bytes

    @property
    def host(self) -> str:
        if "://" in self.target:
            return urlsplit(self.target).netloc
        if not self.target.startswith("/") and self.target != "*":
            return self.target
        return _header(self.headers, "host") or ""

    @property
    def request_uri(self) -> str:
        if "://" not in self.target:
            return self.target
        parts = urlsplit(self.target)
        uri = parts.path or "/"
        return f"{uri}?{parts.query}" if parts.query else uri

    def serialize(self) -> bytes:
        lines = [f"{self.method} {self.request_uri} HTTP/1.1", f"Host: {self.host}"]
        lines += [f"{k}: {v}" for k, v in self.headers if k.lower() != "host"]
        return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1") + self.body


def _read_request(reader: _Reader) -> _Request:
    start, headers = _read_head(reader)
    parts = start.split()
    if len(parts) != 3:
        raise ValueError(f"malformed request line {start!r}")
    method, target, proto = parts
    version = _parse_version(proto)
    body = b"" if method.upper() == "CONNECT" else _read_body(reader, headers, False)
    return _Request(method, target, version, headers, body)


def _read_response(reader: _Reader, method: str) -> bytes:
    start, headers = _read_head(reader)
    parts = start.split(None, 2)
    if len(parts) < 2 or not parts[1].isdigit():
        raise ValueError(f"malformed status line {start!r}")
    _parse_version(parts[0])
    status = int(parts[1])
    if method.upper() == "HEAD" or status < 200 or status in (204, 304):
        body = b""
    else:
        body = _read_body(reader, headers, True)
    lines = [start] + [f"{k}: {v}" for k, v in headers]
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1") + body


class _Pipe:
    """In-memory byte pipe; reads return b"" once closed and drained."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._buf = bytearray()
        self._closed = False

    def write(self, data: bytes) -> int:
        with self._cond:
            if self._closed:
                raise ConnectionError("http conn closed")
            self._buf += data
            self._cond.notify_all()
        return len(data)

    def read(self, size: int) -> bytes:
        with self._cond:
            while not self._buf and not self._closed:
                self._cond.wait()
            out = bytes(self._buf[:size])
            del self._buf[:size]
            return out

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class ConnectConn:
    """A client stream opened with an HTTP CONNECT request."""

    def __init__(self, conn: Any, reader: _Reader, metadata: Metadata):
        self._conn = conn
        self._reader = reader
        self.metadata = metadata

    def read(self, size: int) -> bytes:
        return self._reader.read_some(size)

    def write(self, data: bytes) -> int:
        return self._conn.write(data)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> ConnectConn:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class OtherConn:
    """One plain HTTP request/response exchange relayed to the target."""

    def __init__(self, conn: Any, metadata: Metadata):
        self.conn = conn
        self.metadata = metadata
        self._requests = _Pipe()
        self._responses = _Pipe()
        self._closed = threading.Event()

    def read(self, size: int) -> bytes:
        """Read the forwarded request; raises once the exchange is over."""
        data = self._requests.read(size)
        if not data:
            self._closed.wait()
            raise ConnectionError("http conn closed")
        return data

    def write(self, data: bytes) -> int:
        """Write the target's response."""
        return self._responses.write(data)

    def close(self) -> None:
        self._closed.set()
        self._requests.close()
        self._responses.close()

    def __enter__(self) -> OtherConn:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class HTTPServer:
    """HTTP proxy server over an underlying stream server."""

    def __init__(self, config: Any, underlay: Any):
        self._underlay = underlay
        self._conns: queue.Queue = queue.Queue(32)
        self._closed = threading.Event()
        threading.Thread(target=self._accept_loop, name="http-accept", daemon=True).start()

    def accept_conn(self, overlay: Any = None) -> ConnectConn | OtherConn:
        return _take(self._conns, self._closed.is_set, "http server closed")

    def accept_packet(self, overlay: Any = None) -> Any:
        self._closed.wait()
        raise ConnectionError("http server closed")

    def close(self) -> None:
        self._closed.set()
        self._underlay.close()

    def __enter__(self) -> HTTPServer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _accept_loop(self) -> None:
        while not self._closed.is_set():
            try:
                conn = self._underlay.accept_conn(HTTPTunnel())
            except OSError as exc:
                if self._closed.is_set():
                    logger.error("http closed")
                    return
                logger.error("http failed to accept connection: %s", exc)
                continue
            threading.Thread(target=self._serve, args=(conn,), daemon=True).start()

    def _serve(self, conn: Any) -> None:
        reader = _Reader(conn.read)
        try:
            request = _read_request(reader)
        except (OSError, ValueError) as exc:
            logger.error("not a valid http request: %s", exc)
            conn.close()
            return
        if request.method.upper() == "CONNECT":
            self._serve_connect(conn, reader, request)
        else:
            try:
                self._serve_plain(conn, reader, request)
            finally:
                conn.close()

    def _serve_connect(self, conn: Any, reader: _Reader, request: _Request) -> None:
        try:
            address = Address.from_addr("tcp", request.host)
        except AddressError as exc:
            logger.error("invalid http dest address: %s", exc)
            conn.close()
            return
        major, minor = request.version
        try:
            conn.write(f"HTTP/{major}.{minor} 200 Connection established\r\n\r\n".encode())
        except OSError:
            logger.error("http failed to respond connect request")
            conn.close()
            return
        tunnel_conn = ConnectConn(conn, reader, Metadata(address=address))
        if not _give(self._conns, tunnel_conn, self._closed.is_set):
            conn.close()

    def _serve_plain(self, conn: Any, reader: _Reader, request: _Request) -> None:
        while True:
            try:
                address = Address.from_addr("tcp", request.host)
            except AddressError:
                address = Address.from_host_port("tcp", request.host, 80)
            logger.debug("http dest %s", address)
            exchange = OtherConn(conn, Metadata(address=address))
            if not _give(self._conns, exchange, self._closed.is_set):
                exchange.close()
                return
            try:
                exchange._requests.write(request.serialize())
                response = _read_response(_Reader(exchange._responses.read), request.method)
                conn.write(response)
            except (OSError, ValueError) as exc:
                logger.error("http failed to relay the exchange: %s", exc)
                exchange.close()
                return
            exchange.close()
            try:
                request = _read_request(reader)
            except (OSError, ValueError) as exc:
                logger.debug("http failed to read the request from local: %s", exc)
                return


class HTTPTunnel:
    """Factory for the server side of the HTTP proxy tunnel."""

    name = NAME

    def new_server(self, config: Any, underlay: Any) -> HTTPServer:
        return HTTPServer(config, underlay)

    def new_client(self, config: Any, underlay: Any) -> Any:
        raise RuntimeError("http tunnel has no client side")