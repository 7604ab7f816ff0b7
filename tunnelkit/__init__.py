"""Stackable proxy tunnel layers: SOCKS5 and HTTP front ends, port forwarding,
direct dialing, rule-based routing, and per-user traffic accounting."""

__version__ = "0.1.0"

__all__ = [
    "adapter",
    "dokodemo",
    "freedom",
    "http",
    "memory",
    "metadata",
    "mysql",
    "router",
    "socks",
    "statistic",
]