"""User table kept in memory and synchronised with a MySQL ``users`` table."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Optional

import pymysql

from tunnelkit.memory import MemoryConfig, create_memory_authenticator
from tunnelkit.statistic import (
    Authenticator,
    StatisticError,
    User,
    register_authenticator_creator,
)

logger = logging.getLogger(__name__)

NAME = "MYSQL"

_UPDATE = (
    "UPDATE `users` SET `upload`=`upload`+%s, `download`=`download`+%s WHERE `password`=%s;"
)
_SELECT = "SELECT password,quota,download,upload FROM users"

_DB_ERRORS = (pymysql.MySQLError, OSError)


@dataclass
class MySQLConfig:
    enabled: bool = False
    server_host: str = ""
    server_port: int = 3306
    database: str = ""
    username: str = ""
    password: str = ""
    check_rate: int = 30


def connect_database(config: MySQLConfig) -> Any:
    """Open a connection to the configured MySQL server."""
    try:
        return pymysql.connect(
            host=config.server_host,
            port=config.server_port,
            user=config.username,
            password=config.password,
            database=config.database,
            charset="utf8",
            autocommit=True,
            connect_timeout=5,
        )
    except _DB_ERRORS as exc:
        raise StatisticError("Failed to connect to database server") from exc


class MySQLAuthenticator(Authenticator):
    """In-memory users, periodically flushed to and refreshed from MySQL."""

    def __init__(
        self,
        config: MySQLConfig,
        connection: Any,
        memory: Optional[Authenticator] = None,
        *,
        run_updater: bool = True,
    ):
        self._db = connection
        self._memory = memory if memory is not None else create_memory_authenticator(MemoryConfig())
        self._interval = float(config.check_rate)
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        if run_updater:
            threading.Thread(target=self._update_loop, name="mysql-updater", daemon=True).start()
        logger.debug("mysql authenticator created")

    def auth_user(self, hash: str) -> Optional[User]:
        return self._memory.auth_user(hash)

    def add_user(self, hash: str) -> None:
        self._memory.add_user(hash)

    def del_user(self, hash: str) -> None:
        self._memory.del_user(hash)

    def list_users(self) -> list[User]:
        return self._memory.list_users()

    def _flush_traffic(self) -> None:
        for user in self._memory.list_users():
            user_hash = user.hash
            sent, recv = user.reset_traffic()
            try:
                with self._db.cursor() as cursor:
                    # Upload and download are seen from the user's side.
                    cursor.execute(_UPDATE, (recv, sent, user_hash))
            except _DB_ERRORS as exc:
                logger.error("failed to update data to user table: %s", exc)
                continue
        logger.info("buffered data has been written into the database")

    def _pull_users(self) -> bool:
        try:
            with self._db.cursor() as cursor:
                cursor.execute(_SELECT)
                rows = cursor.fetchall()
        except _DB_ERRORS as exc:
            logger.error("failed to pull data from the database: %s", exc)
            return False
        for row in rows:
            try:
                user_hash, quota, download, upload = row
                quota, download, upload = int(quota), int(download), int(upload)
            except (TypeError, ValueError) as exc:
                logger.error("failed to obtain data from the query result: %s", exc)
                break
            try:
                if download + upload < quota or quota < 0:
                    self._memory.add_user(user_hash)
                else:
                    self._memory.del_user(user_hash)
            except StatisticError:
                pass
        return True

    def sync(self) -> bool:
        """Write buffered traffic to the database, then refresh the user table.

        Returns False if the user table could not be read.
        """
        with self._lock:
            self._flush_traffic()
            return self._pull_users()

    def _update_loop(self) -> None:
        while not self._stopped.is_set():
            self.sync()
            if self._stopped.wait(self._interval):
                logger.debug("MySQL daemon exiting...")
                return

    def close(self) -> None:
        self._stopped.set()
        try:
            self._memory.close()
        finally:
            try:
                self._db.close()
            except _DB_ERRORS:
                pass


def _create_authenticator(context: Any) -> MySQLAuthenticator:
    config = context if isinstance(context, MySQLConfig) else MySQLConfig()
    return MySQLAuthenticator(config, connect_database(config))


register_authenticator_creator(NAME, _create_authenticator)