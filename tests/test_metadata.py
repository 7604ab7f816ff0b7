import io
from ipaddress import IPv4Address, IPv6Address

import pytest

from tunnelkit.metadata import Address, AddressError, AddressType, Metadata


def test_ipv4_wire_bytes():
    addr = Address.from_host_port("tcp", "127.0.0.1", 80)
    assert addr.address_type is AddressType.IPV4
    assert addr.to_bytes() == b"\x01\x7f\x00\x00\x01\x00\x50"


def test_domain_wire_bytes():
    addr = Address.from_host_port("tcp", "example.com", 443)
    assert addr.address_type is AddressType.DOMAIN_NAME
    assert addr.to_bytes() == b"\x03\x0bexample.com\x01\xbb"


def test_ipv6_string_has_brackets():
    addr = Address.from_host_port("tcp", "::1", 443)
    assert str(addr) == "[::1]:443"


@pytest.mark.parametrize(
    "host,port",
    [("10.1.2.3", 8080), ("2001:db8::1", 53), ("example.com", 65535)],
)
def test_round_trip(host, port):
    original = Address.from_host_port("udp", host, port)
    decoded = Address.read_from(io.BytesIO(original.to_bytes()))
    assert decoded.address_type == original.address_type
    assert decoded.port == port
    assert decoded.ip == original.ip
    assert decoded.domain_name == original.domain_name
    assert str(decoded) == str(original)


def test_write_to_matches_to_bytes():
    addr = Address.from_host_port("tcp", "2001:db8::1", 1)
    buf = io.BytesIO()
    addr.write_to(buf)
    assert buf.getvalue() == addr.to_bytes()


def test_from_addr_domain():
    addr = Address.from_addr("tcp", "example.com:80")
    assert str(addr) == "example.com:80"
    assert addr.port == 80
    assert addr.network() == "tcp"


def test_from_addr_bracketed_ipv6():
    addr = Address.from_addr("udp", "[::1]:53")
    assert addr.address_type is AddressType.IPV6
    assert addr.ip == IPv6Address("::1")
    assert addr.port == 53
    assert addr.network() == "udp"


@pytest.mark.parametrize("text", ["example.com", "a:b:c", "host:port"])
def test_from_addr_rejects_bad_input(text):
    with pytest.raises(AddressError):
        Address.from_addr("tcp", text)


def test_ipv4_mapped_host_is_ipv4():
    addr = Address.from_host_port("tcp", "::ffff:10.0.0.1", 1)
    assert addr.address_type is AddressType.IPV4
    assert addr.ip == IPv4Address("10.0.0.1")


def test_domain_holding_ip_literal_is_decoded_as_ip():
    name = b"127.0.0.1"
    data = b"\x03" + bytes([len(name)]) + name + (80).to_bytes(2, "big")
    addr = Address.read_from(io.BytesIO(data))
    assert addr.address_type is AddressType.IPV4
    assert addr.ip == IPv4Address("127.0.0.1")
    assert addr.port == 80
    assert addr.domain_name == ""


def test_invalid_atyp():
    with pytest.raises(AddressError, match="invalid ATYP 2"):
        Address.read_from(io.BytesIO(b"\x02\x00\x00"))


@pytest.mark.parametrize("data", [b"", b"\x01\x7f\x00", b"\x04" + b"\x00" * 10, b"\x03\x05ab"])
def test_truncated_input(data):
    with pytest.raises(AddressError):
        Address.read_from(io.BytesIO(data))


def test_encoding_invalid_type_raises():
    with pytest.raises(AddressError, match="invalid ATYP"):
        Address(address_type=2, port=1).to_bytes()


def test_invalid_type_string():
    assert str(Address(address_type=7)) == "INVALID_ADDRESS_TYPE"


def test_resolve_ip_returns_known_ip():
    addr = Address.from_host_port("tcp", "192.0.2.7", 1)
    assert addr.resolve_ip() == IPv4Address("192.0.2.7")


def test_resolve_localhost_caches_result():
    addr = Address.from_host_port("tcp", "localhost", 1)
    resolved = addr.resolve_ip()
    assert resolved.is_loopback
    assert addr.ip == resolved


def test_metadata_round_trip_and_network():
    meta = Metadata(command=1, address=Address.from_host_port("udp", "example.com", 443))
    buf = io.BytesIO()
    meta.write_to(buf)
    assert meta.network() == "tcp"
    data = buf.getvalue()
    assert data[0] == 1
    assert data[1:] == meta.address.to_bytes()
    decoded = Metadata.read_from(io.BytesIO(data))
    assert decoded.command == 1
    assert str(decoded) == str(meta)


def test_metadata_bad_address():
    with pytest.raises(AddressError, match="failed to marshal address"):
        Metadata.read_from(io.BytesIO(b"\x01\x09"))