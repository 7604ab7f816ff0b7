"""In-memory user table with traffic, speed and IP accounting."""

from __future__ import annotations

import contextlib
import hashlib
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from tunnelkit.statistic import (
    Authenticator,
    StatisticError,
    User,
    register_authenticator_creator,
)

logger = logging.getLogger(__name__)

NAME = "MEMORY"

_U64 = (1 << 64) - 1


@dataclass
class MemoryConfig:
    passwords: list[str] = field(default_factory=list)


class RateLimiter:
    """Token bucket refilled at ``rate`` tokens per second, holding up to ``burst``."""

    def __init__(self, rate: float, burst: int, cancelled: Optional[threading.Event] = None):
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = rate
        self.burst = burst
        self._cancelled = cancelled if cancelled is not None else threading.Event()
        self._lock = threading.Lock()
        self._tokens = float(burst)
        self._last = time.monotonic()

    def wait(self, n: int) -> bool:
        """Block until ``n`` tokens are available.

        Returns False without waiting the full time if ``n`` exceeds the
        burst size or the limiter is cancelled.
        """
        if n > self.burst or self._cancelled.is_set():
            return False
        with self._lock:
            now = time.monotonic()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.rate)
            self._last = now
            self._tokens -= n
            delay = -self._tokens / self.rate if self._tokens < 0 else 0.0
        if delay <= 0:
            return True
        return not self._cancelled.wait(delay)


class MemoryUser(User):
    """A user tracked in memory, with a background speed sampler."""

    def __init__(self, hash: str, *, speed_interval: float = 1.0):
        self._hash = hash
        self._lock = threading.Lock()
        self._sent = 0
        self._recv = 0
        self._last_sent = 0
        self._last_recv = 0
        self._send_speed = 0
        self._recv_speed = 0
        self._ip_lock = threading.Lock()
        self._ips: set[str] = set()
        self._ip_limit = 0
        self._limiter_lock = threading.Lock()
        self._send_limiter: Optional[RateLimiter] = None
        self._recv_limiter: Optional[RateLimiter] = None
        self._done = threading.Event()
        self._speed_interval = speed_interval
        self._updater = threading.Thread(
            target=self._update_speed_loop, name=f"speed-{hash[:8]}", daemon=True
        )
        self._updater.start()

    @property
    def hash(self) -> str:
        return self._hash

    def add_ip(self, ip: str) -> bool:
        with self._ip_lock:
            if self._ip_limit <= 0 or ip in self._ips:
                return True
            if len(self._ips) + 1 > self._ip_limit:
                return False
            self._ips.add(ip)
            return True

    def del_ip(self, ip: str) -> bool:
        with self._ip_lock:
            if self._ip_limit <= 0:
                return True
            if ip not in self._ips:
                return False
            self._ips.remove(ip)
            return True

    @property
    def ip_count(self) -> int:
        return len(self._ips)

    @property
    def ip_limit(self) -> int:
        return self._ip_limit

    @ip_limit.setter
    def ip_limit(self, n: int) -> None:
        self._ip_limit = n

    def add_traffic(self, sent: int, recv: int) -> None:
        with self._limiter_lock:
            send_limiter, recv_limiter = self._send_limiter, self._recv_limiter
        if send_limiter is not None and sent >= 0:
            send_limiter.wait(sent)
        elif recv_limiter is not None and recv >= 0:
            recv_limiter.wait(recv)
        with self._lock:
            self._sent = (self._sent + sent) & _U64
            self._recv = (self._recv + recv) & _U64

    @property
    def traffic(self) -> tuple[int, int]:
        with self._lock:
            return self._sent, self._recv

    def set_traffic(self, sent: int, recv: int) -> None:
        with self._lock:
            self._sent = sent & _U64
            self._recv = recv & _U64

    def reset_traffic(self) -> tuple[int, int]:
        with self._lock:
            sent, recv = self._sent, self._recv
            self._sent = self._recv = 0
            self._last_sent = self._last_recv = 0
        return sent, recv

    @property
    def speed(self) -> tuple[int, int]:
        with self._lock:
            return self._send_speed, self._recv_speed

    @property
    def speed_limit(self) -> tuple[int, int]:
        with self._limiter_lock:
            send = int(self._send_limiter.rate) if self._send_limiter else 0
            recv = int(self._recv_limiter.rate) if self._recv_limiter else 0
        return send, recv

    def set_speed_limit(self, send: int, recv: int) -> None:
        with self._limiter_lock:
            self._send_limiter = RateLimiter(send, send * 2, self._done) if send > 0 else None
            self._recv_limiter = RateLimiter(recv, recv * 2, self._done) if recv > 0 else None

    def close(self) -> None:
        self.reset_traffic()
        self._cancel()

    def _cancel(self) -> None:
        self._done.set()

    def _update_speed_loop(self) -> None:
        while not self._done.wait(self._speed_interval):
            with self._lock:
                self._send_speed = (self._sent - self._last_sent) & _U64
                self._recv_speed = (self._recv - self._last_recv) & _U64
                self._last_sent = self._sent
                self._last_recv = self._recv


class MemoryAuthenticator(Authenticator):
    """Authenticator holding its users in a dictionary."""

    def __init__(self, *, speed_interval: float = 1.0):
        self._users: dict[str, MemoryUser] = {}
        self._lock = threading.Lock()
        self._speed_interval = speed_interval

    def auth_user(self, hash: str) -> Optional[MemoryUser]:
        with self._lock:
            return self._users.get(hash)

    def add_user(self, hash: str) -> None:
        with self._lock:
            if hash in self._users:
                raise StatisticError(f"hash {hash} is already exist")
            self._users[hash] = MemoryUser(hash, speed_interval=self._speed_interval)

    def del_user(self, hash: str) -> None:
        with self._lock:
            user = self._users.pop(hash, None)
        if user is None:
            raise StatisticError(f"hash {hash} not found")
        user.close()

    def list_users(self) -> list[MemoryUser]:
        with self._lock:
            return list(self._users.values())

    def close(self) -> None:
        """Stop the background work of every user."""
        for user in self.list_users():
            user._cancel()


def create_memory_authenticator(config: MemoryConfig) -> MemoryAuthenticator:
    """Build an authenticator holding the SHA-224 hashes of the configured passwords."""
    auth = MemoryAuthenticator()
    for password in config.passwords:
        with contextlib.suppress(StatisticError):
            auth.add_user(hashlib.sha224(password.encode()).hexdigest())
    logger.debug("memory authenticator created")
    return auth


register_authenticator_creator(NAME, create_memory_authenticator)