import socket

import pymysql
import pytest

from tunnelkit.mysql import MySQLAuthenticator, MySQLConfig, connect_database
from tunnelkit.statistic import StatisticError


class FakeCursor:
    def __init__(self, db):
        self._db = db
        self._rows = []

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def execute(self, sql, args=None):
        if sql.startswith("SELECT"):
            if self._db.fail_select:
                raise pymysql.err.OperationalError(2006, "gone away")
            self._rows = list(self._db.rows)
        else:
            if args[2] in self._db.fail_update_for:
                raise pymysql.err.OperationalError(2006, "gone away")
            self._db.updates.append(args)
        return 1

    def fetchall(self):
        return self._rows


class FakeConnection:
    def __init__(self, rows=()):
        self.rows = list(rows)
        self.updates = []
        self.fail_select = False
        self.fail_update_for = set()
        self.closed = False

    def cursor(self):
        return FakeCursor(self)

    def close(self):
        self.closed = True


def _auth(db):
    return MySQLAuthenticator(MySQLConfig(), db, run_updater=False)


def test_sync_adds_users_within_quota():
    db = FakeConnection([("aaa", 100, 10, 20), ("bbb", -1, 500, 500), ("ccc", 10, 5, 5)])
    auth = _auth(db)
    try:
        assert auth.sync() is True
        assert auth.auth_user("aaa") is not None and auth.auth_user("aaa").hash == "aaa"
        assert auth.auth_user("bbb").hash == "bbb"
        assert auth.auth_user("ccc") is None
        assert sorted(u.hash for u in auth.list_users()) == ["aaa", "bbb"]
    finally:
        auth.close()


def test_sync_removes_user_over_quota():
    db = FakeConnection([("aaa", 10, 5, 10)])
    auth = _auth(db)
    try:
        auth.add_user("aaa")
        auth.sync()
        assert auth.auth_user("aaa") is None
    finally:
        auth.close()


def test_sync_writes_swapped_traffic_and_resets():
    db = FakeConnection()
    auth = _auth(db)
    try:
        auth.add_user("user1")
        user = auth.auth_user("user1")
        user.add_traffic(100, 200)
        auth.sync()
        assert db.updates == [(200, 100, "user1")]
        assert user.traffic == (0, 0)
    finally:
        auth.close()


def test_failed_update_does_not_stop_other_users():
    db = FakeConnection()
    db.fail_update_for = {"bad"}
    auth = _auth(db)
    try:
        auth.add_user("bad")
        auth.add_user("good")
        auth.sync()
        assert [args[2] for args in db.updates] == ["good"]
    finally:
        auth.close()


def test_failed_select_keeps_users():
    db = FakeConnection([("aaa", 10, 50, 50)])
    db.fail_select = True
    auth = _auth(db)
    try:
        auth.add_user("aaa")
        assert auth.sync() is False
        assert auth.auth_user("aaa").hash == "aaa"
    finally:
        auth.close()


def test_duplicate_and_missing_users_raise():
    auth = _auth(FakeConnection())
    try:
        auth.add_user("user2")
        with pytest.raises(StatisticError):
            auth.add_user("user2")
        auth.del_user("user2")
        with pytest.raises(StatisticError):
            auth.del_user("user2")
    finally:
        auth.close()


def test_close_closes_connection():
    db = FakeConnection()
    auth = _auth(db)
    auth.close()
    assert db.closed is True


def test_background_updater_pulls_users():
    db = FakeConnection([("aaa", -1, 0, 0)])
    auth = MySQLAuthenticator(MySQLConfig(check_rate=1), db)
    try:
        import time

        deadline = time.monotonic() + 5
        while auth.auth_user("aaa") is None and time.monotonic() < deadline:
            time.sleep(0.05)
        assert auth.auth_user("aaa").hash == "aaa"
    finally:
        auth.close()


def test_connect_database_failure_raises():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.bind(("127.0.0.1", 0))
        port = probe.getsockname()[1]
    password = "password"
    config = MySQLConfig(
        enabled=True,
        server_host="127.0.0.1",
        server_port=port,
        database="trojan",
        username="user",
        password=password,
    )
    with pytest.raises(StatisticError):
        connect_database(config)