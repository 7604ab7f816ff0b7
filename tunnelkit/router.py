"""Rule-based outbound router choosing between proxy, direct and block."""

from __future__ import annotations

import logging
import queue
import re
import socket
import threading
import time
from dataclasses import dataclass, field
from enum import IntEnum
from ipaddress import IPv4Address, IPv6Address, ip_address, ip_network
from typing import Any, Callable, Optional, Union

from tunnelkit.freedom import FreedomClient
from tunnelkit.metadata import Address, AddressError, AddressType, Metadata

logger = logging.getLogger(__name__)

NAME = "ROUTER"

MAX_PACKET_SIZE = 1024 * 8

_POLL = 0.1

IPAddress = Union[IPv4Address, IPv6Address]


class RouterError(ConnectionError):
    """Raised when the router blocks, rejects or fails to route a target."""


class Policy(IntEnum):
    BLOCK = 0
    BYPASS = 1
    PROXY = 2


class DomainStrategy(IntEnum):
    AS_IS = 0
    IP_IF_NON_MATCH = 1
    IP_ON_DEMAND = 2


class DomainType(IntEnum):
    PLAIN = 0
    REGEX = 1
    DOMAIN = 2
    FULL = 3


@dataclass(frozen=True)
class DomainRule:
    type: DomainType
    value: str
    attributes: tuple[str, ...] = ()


@dataclass(frozen=True)
class CIDRRule:
    ip: IPAddress
    prefix: int


@dataclass
class RouterConfig:
    enabled: bool = False
    bypass: list[str] = field(default_factory=list)
    proxy: list[str] = field(default_factory=list)
    block: list[str] = field(default_factory=list)
    domain_strategy: str = "as_is"
    default_policy: str = "proxy"
    geoip: str = "geoip.dat"
    geosite: str = "geosite.dat"


_STRATEGIES = {
    "as_is": DomainStrategy.AS_IS,
    "as-is": DomainStrategy.AS_IS,
    "asis": DomainStrategy.AS_IS,
    "ip_if_non_match": DomainStrategy.IP_IF_NON_MATCH,
    "ip-if-non-match": DomainStrategy.IP_IF_NON_MATCH,
    "ipifnonmatch": DomainStrategy.IP_IF_NON_MATCH,
    "ip_on_demand": DomainStrategy.IP_ON_DEMAND,
    "ip-on-demand": DomainStrategy.IP_ON_DEMAND,
    "ipondemand": DomainStrategy.IP_ON_DEMAND,
}

_POLICIES = {"proxy": Policy.PROXY, "bypass": Policy.BYPASS, "block": Policy.BLOCK}


def _fold(ip: IPAddress) -> IPAddress:
    if isinstance(ip, IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def match_domain(rules: list[DomainRule], target: str) -> bool:
    """Return True if ``target`` matches any of the domain rules."""
    for rule in rules:
        if rule.type == DomainType.FULL:
            if rule.value == target:
                logger.debug("domain %s hit domain(full) rule: %s", target, rule.value)
                return True
        elif rule.type == DomainType.DOMAIN:
            if target.endswith(rule.value):
                idx = target.find(rule.value)
                if idx == 0 or target[idx - 1] == ".":
                    logger.debug("domain %s hit domain rule: %s", target, rule.value)
                    return True
        elif rule.type == DomainType.PLAIN:
            if rule.value in target:
                logger.debug("domain %s hit keyword rule: %s", target, rule.value)
                return True
        elif rule.type == DomainType.REGEX:
            try:
                matched = re.search(rule.value, target) is not None
            except re.error:
                logger.error("invalid regex %s", rule.value)
                return False
            if matched:
                logger.debug("domain %s hit regex rule: %s", target, rule.value)
                return True
        else:
            logger.debug("unknown rule type: %s", rule.type)
    return False


def match_ip(rules: list[CIDRRule], target: Optional[IPAddress]) -> bool:
    """Return True if ``target`` lies in any rule's network of the same family."""
    if target is None:
        return False
    target = _fold(target)
    is_v4 = isinstance(target, IPv4Address)
    bits = 32 if is_v4 else 128
    for rule in rules:
        rule_ip = _fold(rule.ip)
        if isinstance(rule_ip, IPv4Address) != is_v4:
            continue
        if rule.prefix < 0 or rule.prefix > bits:
            continue
        if target in ip_network((rule_ip, rule.prefix), strict=False):
            return True
    return False


def load_code(config: RouterConfig, prefix: str) -> list[tuple[str, Policy]]:
    """Collect (code, policy) pairs for rules with ``prefix``: proxy, bypass, block."""
    codes: list[tuple[str, Policy]] = []
    for rules, policy in (
        (config.proxy, Policy.PROXY),
        (config.bypass, Policy.BYPASS),
        (config.block, Policy.BLOCK),
    ):
        for rule in rules:
            if not rule.startswith(prefix):
                continue
            rest = rule[len(prefix):]
            if rest:
                codes.append((rest, policy))
            else:
                logger.warning("invalid empty rule: %s", rule)
    return codes


def _open_udp() -> socket.socket:
    if socket.has_ipv6:
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


def _give(items: queue.Queue, item: Any, closed: Callable[[], bool]) -> bool:
    while not closed():
        try:
            items.put(item, timeout=_POLL)
            return True
        except queue.Full:
            continue
    return False


class RouterClient:
    """Routes each target to the underlying proxy, a direct dial, or a block."""

    def __init__(self, config: Optional[RouterConfig], underlay: Any, direct: Any = None):
        config = config or RouterConfig()
        strategy = _STRATEGIES.get(config.domain_strategy.lower())
        if strategy is None:
            raise RouterError(f"unknown strategy: {config.domain_strategy}")
        policy = _POLICIES.get(config.default_policy.lower())
        if policy is None:
            raise RouterError(f"unknown policy: {config.default_policy}")
        self.domain_strategy = strategy
        self.default_policy = policy
        self.domains: dict[Policy, list[DomainRule]] = {p: [] for p in Policy}
        self.cidrs: dict[Policy, list[CIDRRule]] = {p: [] for p in Policy}
        self._load_rules(config)
        self._underlay = underlay
        self._direct = direct if direct is not None else FreedomClient()
        self._closed = threading.Event()
        logger.info("router client created")

    def _load_rules(self, config: RouterConfig) -> None:
        for code, _ in load_code(config, "geoip:"):
            logger.error("geoip:%s not loaded: geodata file %s is not supported", code, config.geoip)
        for code, _ in load_code(config, "geosite:"):
            at = code.find("@")
            if at == 0 or (at > 0 and code.endswith("@")):
                logger.warning("geosite:%s invalid", code)
                continue
            logger.error(
                "geosite:%s not loaded: geodata file %s is not supported", code, config.geosite
            )
        for code, policy in load_code(config, "domain:"):
            self.domains[policy].append(DomainRule(DomainType.DOMAIN, code.lower()))
        for code, policy in load_code(config, "keyword:"):
            self.domains[policy].append(DomainRule(DomainType.PLAIN, code.lower()))
        for prefix in ("regex:", "regexp:"):
            for code, policy in load_code(config, prefix):
                try:
                    re.compile(code)
                except re.error as exc:
                    raise RouterError(f"invalid regular expression: {code}") from exc
                self.domains[policy].append(DomainRule(DomainType.REGEX, code))
        for code, policy in load_code(config, "full:"):
            self.domains[policy].append(DomainRule(DomainType.FULL, code.lower()))
        for code, policy in load_code(config, "cidr:"):
            parts = code.split("/")
            if len(parts) != 2:
                raise RouterError(f"invalid cidr: {code}")
            try:
                ip = _fold(ip_address(parts[0]))
            except ValueError as exc:
                raise RouterError(f"invalid cidr ip: {code}") from exc
            try:
                prefix = int(parts[1], 10)
            except ValueError as exc:
                raise RouterError("invalid prefix") from exc
            if prefix < 0:
                raise RouterError("invalid prefix")
            self.cidrs[policy].append(CIDRRule(ip, prefix))

    def _match_resolved(self, address: Address) -> Optional[Policy]:
        try:
            ip = address.resolve_ip()
        except AddressError:
            return None
        for policy in Policy:
            if match_ip(self.cidrs[policy], ip):
                return policy
        return None

    def route(self, address: Address) -> Policy:
        """Decide the policy for ``address``."""
        if address.address_type == AddressType.DOMAIN_NAME:
            if self.domain_strategy == DomainStrategy.IP_ON_DEMAND:
                found = self._match_resolved(address)
                if found is not None:
                    return found
            for policy in Policy:
                if match_domain(self.domains[policy], address.domain_name):
                    return policy
            if self.domain_strategy == DomainStrategy.IP_IF_NON_MATCH:
                found = self._match_resolved(address)
                if found is not None:
                    return found
        else:
            for policy in Policy:
                if match_ip(self.cidrs[policy], address.ip):
                    return policy
        return self.default_policy

    def dial_conn(self, address: Address, overlay: Any = None) -> Any:
        policy = self.route(address)
        if policy == Policy.PROXY:
            return self._underlay.dial_conn(address, overlay)
        if policy == Policy.BLOCK:
            raise RouterError(f"router blocked address: {address}")
        try:
            return self._direct.dial_conn(address, RouterTunnel())
        except OSError as exc:
            raise RouterError("router dial error") from exc

    def dial_packet(self, overlay: Any = None) -> RouterPacketConn:
        try:
            sock = _open_udp()
        except OSError as exc:
            raise RouterError("router failed to dial udp (direct)") from exc
        try:
            proxy = self._underlay.dial_packet(overlay)
        except OSError as exc:
            sock.close()
            raise RouterError("router failed to dial udp (proxy)") from exc
        return RouterPacketConn(self, sock, proxy, self._closed)

    def close(self) -> None:
        self._closed.set()
        self._direct.close()
        self._underlay.close()

    def __enter__(self) -> RouterClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class RouterPacketConn:
    """UDP packets routed per target, merging replies from proxy and direct paths."""

    def __init__(
        self,
        client: RouterClient,
        sock: socket.socket,
        proxy: Any,
        client_closed: threading.Event,
    ):
        self._client = client
        self._sock = sock
        self._sock.settimeout(_POLL)
        self._proxy = proxy
        self._packets: queue.Queue = queue.Queue(16)
        self._closed = threading.Event()
        self._client_closed = client_closed
        threading.Thread(target=self._proxy_loop, name="router-proxy", daemon=True).start()
        threading.Thread(target=self._direct_loop, name="router-direct", daemon=True).start()

    @property
    def closed(self) -> bool:
        return self._closed.is_set() or self._client_closed.is_set()

    def _proxy_loop(self) -> None:
        while not self.closed:
            try:
                payload, metadata = self._proxy.read_with_metadata()
            except (OSError, AddressError) as exc:
                if self.closed:
                    return
                logger.error("router packetConn error: %s", exc)
                time.sleep(_POLL)
                continue
            _give(self._packets, (payload, metadata), lambda: self.closed)

    def _direct_loop(self) -> None:
        while not self.closed:
            try:
                data, source = self._sock.recvfrom(MAX_PACKET_SIZE)
            except TimeoutError:
                continue
            except OSError as exc:
                if self.closed:
                    return
                logger.error("router packetConn error: %s", exc)
                time.sleep(_POLL)
                continue
            host = str(source[0]).split("%", 1)[0]
            address = Address.from_host_port("udp", host, source[1])
            _give(self._packets, (data, Metadata(address=address)), lambda: self.closed)

    def write_with_metadata(self, payload: bytes, metadata: Metadata) -> int:
        policy = self._client.route(metadata.address)
        if policy == Policy.PROXY:
            return self._proxy.write_with_metadata(payload, metadata)
        if policy == Policy.BLOCK:
            raise RouterError(f"router blocked address (udp): {metadata.address}")
        try:
            ip = metadata.address.resolve_ip()
        except AddressError as exc:
            raise RouterError("router failed to resolve udp address") from exc
        host = str(ip)
        if self._sock.family == socket.AF_INET6 and isinstance(ip, IPv4Address):
            host = f"::ffff:{ip}"
        return self._sock.sendto(payload, (host, metadata.address.port))

    def read_with_metadata(self) -> tuple[bytes, Metadata]:
        while not self.closed:
            try:
                return self._packets.get(timeout=_POLL)
            except queue.Empty:
                continue
        raise EOFError("router packet conn closed")

    def close(self) -> None:
        self._closed.set()
        try:
            self._proxy.close()
        finally:
            self._sock.close()

    def __enter__(self) -> RouterPacketConn:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class RouterTunnel:
    """Factory for the client side of the router tunnel."""

    name = NAME

    def new_client(self, config: Optional[RouterConfig], underlay: Any) -> RouterClient:
        return RouterClient(config, underlay)

    def new_server(self, config: Any, underlay: Any) -> Any:
        raise RuntimeError("router tunnel has no server side")