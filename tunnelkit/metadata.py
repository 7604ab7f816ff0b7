"""Target addresses and request metadata in the SOCKS5-style wire format."""

from __future__ import annotations

import socket
from dataclasses import dataclass
from enum import IntEnum
from ipaddress import IPv4Address, IPv6Address, ip_address
from typing import BinaryIO, Optional, Union

IPAddress = Union[IPv4Address, IPv6Address]


class AddressError(ValueError):
    """Raised when an address cannot be parsed, encoded or resolved."""


class AddressType(IntEnum):
    IPV4 = 1
    DOMAIN_NAME = 3
    IPV6 = 4


def _parse_ip(host: str) -> Optional[IPAddress]:
    """Parse an IP literal, folding IPv4-mapped IPv6 addresses to IPv4."""
    if "%" in host:
        return None
    try:
        ip = ip_address(host)
    except ValueError:
        return None
    if isinstance(ip, IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _split_host_port(addr: str) -> tuple[str, str]:
    if addr.startswith("["):
        end = addr.find("]")
        if end < 0:
            raise AddressError(f"missing ']' in address {addr!r}")
        host, rest = addr[1:end], addr[end + 1:]
        if not rest.startswith(":"):
            raise AddressError(f"missing port in address {addr!r}")
        return host, rest[1:]
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise AddressError(f"missing port in address {addr!r}")
    if ":" in host:
        raise AddressError(f"too many colons in address {addr!r}")
    return host, port


def _read_exact(reader: BinaryIO, size: int, what: str) -> bytes:
    data = bytearray()
    while len(data) < size:
        chunk = reader.read(size - len(data))
        if not chunk:
            raise AddressError(f"failed to read {what}")
        data += chunk
    return bytes(data)


@dataclass(kw_only=True)
class Address:
    """A destination: an IP address or a domain name, plus a port."""

    address_type: int
    domain_name: str = ""
    port: int = 0
    network_type: str = ""
    ip: Optional[IPAddress] = None

    def __str__(self) -> str:
        if self.address_type == AddressType.IPV4:
            return f"{self.ip}:{self.port}"
        if self.address_type == AddressType.IPV6:
            return f"[{self.ip}]:{self.port}"
        if self.address_type == AddressType.DOMAIN_NAME:
            return f"{self.domain_name}:{self.port}"
        return "INVALID_ADDRESS_TYPE"

    def network(self) -> str:
        return self.network_type

    def resolve_ip(self) -> IPAddress:
        """Return the IP address, looking the domain name up if necessary."""
        if self.address_type in (AddressType.IPV4, AddressType.IPV6) and self.ip is not None:
            return self.ip
        if self.ip is not None:
            return self.ip
        try:
            infos = socket.getaddrinfo(self.domain_name, None)
        except (OSError, UnicodeError) as exc:
            raise AddressError(f"failed to resolve {self.domain_name}") from exc
        if not infos:
            raise AddressError(f"no address found for {self.domain_name}")
        raw = str(infos[0][4][0]).split("%", 1)[0]
        resolved = _parse_ip(raw)
        if resolved is None:
            raise AddressError(f"invalid resolved address {raw!r}")
        self.ip = resolved
        return resolved

    @classmethod
    def from_addr(cls, network: str, addr: str) -> Address:
        """Build an address from a "host:port" string."""
        host, port_text = _split_host_port(addr)
        try:
            port = int(port_text, 10)
        except ValueError as exc:
            raise AddressError(f"invalid port {port_text!r}") from exc
        return cls.from_host_port(network, host, port)

    @classmethod
    def from_host_port(cls, network: str, host: str, port: int) -> Address:
        ip = _parse_ip(host)
        if ip is None:
            return cls(
                address_type=AddressType.DOMAIN_NAME,
                domain_name=host,
                port=port,
                network_type=network,
            )
        kind = AddressType.IPV4 if isinstance(ip, IPv4Address) else AddressType.IPV6
        return cls(address_type=kind, ip=ip, port=port, network_type=network)

    @classmethod
    def read_from(cls, reader: BinaryIO) -> Address:
        """Decode an address (ATYP, address, port) from a binary reader."""
        try:
            atyp = _read_exact(reader, 1, "ATYP")[0]
        except AddressError as exc:
            raise AddressError("unable to read ATYP") from exc
        if atyp == AddressType.IPV4:
            buf = _read_exact(reader, 6, "IPv4")
            return cls(
                address_type=AddressType.IPV4,
                ip=IPv4Address(buf[:4]),
                port=int.from_bytes(buf[4:6], "big"),
            )
        if atyp == AddressType.IPV6:
            buf = _read_exact(reader, 18, "IPv6")
            return cls(
                address_type=AddressType.IPV6,
                ip=IPv6Address(buf[:16]),
                port=int.from_bytes(buf[16:18], "big"),
            )
        if atyp == AddressType.DOMAIN_NAME:
            length = _read_exact(reader, 1, "domain name length")[0]
            buf = _read_exact(reader, length + 2, "domain name")
            host = buf[:length].decode("utf-8", "surrogateescape")
            port = int.from_bytes(buf[length:], "big")
            # Some clients send an IP literal as a domain name.
            ip = _parse_ip(host)
            if ip is None:
                return cls(address_type=AddressType.DOMAIN_NAME, domain_name=host, port=port)
            kind = AddressType.IPV4 if isinstance(ip, IPv4Address) else AddressType.IPV6
            return cls(address_type=kind, ip=ip, port=port)
        raise AddressError(f"invalid ATYP {atyp}")

    def to_bytes(self) -> bytes:
        """Encode the address as ATYP, address and big-endian port."""
        if self.address_type == AddressType.DOMAIN_NAME:
            name = self.domain_name.encode("utf-8", "surrogateescape")
            if len(name) > 255:
                raise AddressError("domain name too long")
            body = bytes([len(name)]) + name
        elif self.address_type == AddressType.IPV4:
            ip = self.ip
            if isinstance(ip, IPv6Address) and ip.ipv4_mapped is not None:
                ip = ip.ipv4_mapped
            if not isinstance(ip, IPv4Address):
                raise AddressError(f"not an IPv4 address: {self.ip}")
            body = ip.packed
        elif self.address_type == AddressType.IPV6:
            ip = self.ip
            if isinstance(ip, IPv4Address):
                ip = IPv6Address(f"::ffff:{ip}")
            if not isinstance(ip, IPv6Address):
                raise AddressError(f"not an IP address: {self.ip}")
            body = ip.packed
        else:
            raise AddressError(f"invalid ATYP {int(self.address_type)}")
        return bytes([int(self.address_type)]) + body + (self.port & 0xFFFF).to_bytes(2, "big")

    def write_to(self, writer: BinaryIO) -> None:
        writer.write(self.to_bytes())


@dataclass(kw_only=True)
class Metadata:
    """A command byte followed by a target address."""

    command: int = 0
    address: Address

    def __str__(self) -> str:
        return str(self.address)

    @classmethod
    def read_from(cls, reader: BinaryIO) -> Metadata:
        command = _read_exact(reader, 1, "command")[0]
        try:
            address = Address.read_from(reader)
        except AddressError as exc:
            raise AddressError("failed to marshal address") from exc
        return cls(command=command, address=address)

    def write_to(self, writer: BinaryIO) -> None:
        data = bytes([self.command & 0xFF]) + self.address.to_bytes()
        # use tcp by default
        self.address.network_type = "tcp"
        writer.write(data)

    def network(self) -> str:
        return self.address.network()