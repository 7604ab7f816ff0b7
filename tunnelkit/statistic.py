"""User accounting interfaces and the authenticator registry."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class StatisticError(Exception):
    """Raised for authenticator and user-table errors."""


class User(ABC):
    """A user whose traffic, speed and client IPs are tracked."""

    @property
    @abstractmethod
    def hash(self) -> str:
        """The user's password hash."""

    @abstractmethod
    def add_traffic(self, sent: int, recv: int) -> None:
        """Account transferred bytes, throttling if a speed limit is set."""

    @property
    @abstractmethod
    def traffic(self) -> tuple[int, int]:
        """Total (sent, recv) bytes."""

    @abstractmethod
    def set_traffic(self, sent: int, recv: int) -> None:
        """Overwrite the traffic counters."""

    @abstractmethod
    def reset_traffic(self) -> tuple[int, int]:
        """Zero the counters and return their previous values."""

    @property
    @abstractmethod
    def speed(self) -> tuple[int, int]:
        """Most recently measured (sent, recv) speed."""

    @property
    @abstractmethod
    def speed_limit(self) -> tuple[int, int]:
        """Current (send, recv) limit; 0 means unlimited."""

    @abstractmethod
    def set_speed_limit(self, send: int, recv: int) -> None:
        """Set limits in bytes per second; values <= 0 remove a limit."""

    @abstractmethod
    def add_ip(self, ip: str) -> bool:
        """Record a client IP; False if the IP limit would be exceeded."""

    @abstractmethod
    def del_ip(self, ip: str) -> bool:
        """Forget a client IP; False if it was not recorded."""

    @property
    @abstractmethod
    def ip_count(self) -> int:
        """Number of recorded client IPs."""

    @property
    @abstractmethod
    def ip_limit(self) -> int:
        """Maximum number of client IPs; <= 0 means unlimited."""

    @abstractmethod
    def close(self) -> None:
        """Release the user's resources."""


class Authenticator(ABC):
    """A table of users keyed by password hash."""

    @abstractmethod
    def auth_user(self, hash: str) -> Optional[User]:
        """Return the user for ``hash``, or None if unknown."""

    @abstractmethod
    def add_user(self, hash: str) -> None:
        """Add a user; raises StatisticError if it already exists."""

    @abstractmethod
    def del_user(self, hash: str) -> None:
        """Remove a user; raises StatisticError if it does not exist."""

    @abstractmethod
    def list_users(self) -> list[User]:
        """All current users."""

    @abstractmethod
    def close(self) -> None:
        """Release the authenticator's resources."""

    def __enter__(self) -> Authenticator:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


Creator = Callable[[Any], Authenticator]

_creators: dict[str, Creator] = {}
_created: dict[int, tuple[Any, Authenticator]] = {}
_created_lock = threading.Lock()


def register_authenticator_creator(name: str, creator: Creator) -> None:
    """Register a factory under an (upper-case) driver name."""
    _creators[name] = creator


def new_authenticator(context: Any, name: str) -> Authenticator:
    """Return the authenticator for ``context``, creating it on first use."""
    with _created_lock:
        entry = _created.get(id(context))
        if entry is not None:
            logger.debug("authenticator has been created: %s", name)
            return entry[1]
        creator = _creators.get(name.upper())
        if creator is None:
            raise StatisticError(f"auth driver name {name} not found")
        auth = creator(context)
        _created[id(context)] = (context, auth)
        return auth