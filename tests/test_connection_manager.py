import threading
import time

import pytest

from tenderflow.db.connection import ConnectionManager, ConnectionState
from tenderflow.errors import ConnectionUnavailable, NotFound, TransactionFailed, TransactionTimeout


class _FakeCursor:
    def __init__(self, conn: "_FakeConn") -> None:
        self._conn = conn
        self.description = None
        self._rows: list[tuple] = []

    def execute(self, sql, params=()):
        self._conn.statements.append(sql)
        if self._conn.fail_on and self._conn.fail_on in sql:
            if self._conn.kill_on_failure:
                self._conn.alive = False
            raise RuntimeError("statement failed")
        if sql.startswith("SELECT"):
            self.description = [("value",)]
            self._rows = [(1,)]

    def fetchall(self):
        return self._rows

    def close(self):
        return None


class _FakeConn:
    def __init__(self) -> None:
        self.alive = True
        self.closed = False
        self.statements: list[str] = []
        self.fail_on: str | None = None
        self.kill_on_failure = False

    def cursor(self):
        return _FakeCursor(self)

    def close(self):
        self.closed = True


class _FakeDialect:
    name = "fake"
    begin_sql = "BEGIN"

    def __init__(self) -> None:
        self.connections: list[_FakeConn] = []
        self.connect_failures = 0
        self.gate: threading.Event | None = None

    def connect(self):
        if self.gate is not None:
            self.gate.wait(5)
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise RuntimeError("connection refused")
        conn = _FakeConn()
        self.connections.append(conn)
        return conn

    @staticmethod
    def render(sql):
        return sql

    @staticmethod
    def adapt_param(value):
        return value

    @staticmethod
    def is_alive(conn):
        return conn.alive

    @staticmethod
    def timeout_sql(timeout_ms):
        return None

    def describe(self):
        return {"backend": self.name}


def _manager(dialect: _FakeDialect, **kwargs) -> ConnectionManager:
    kwargs.setdefault("reconnect_delay_s", 0)
    kwargs.setdefault("sleep", lambda _s: None)
    return ConnectionManager(dialect, **kwargs)


def _lose_session(manager: ConnectionManager, dialect: _FakeDialect) -> None:
    conn = dialect.connections[-1]
    conn.fail_on = "SELECT broken"
    conn.kill_on_failure = True
    with pytest.raises(ConnectionUnavailable) as exc:
        manager.execute("SELECT broken")
    assert exc.value.code == "DB_SESSION_LOST"


def test_open_connects_and_reports_health():
    dialect = _FakeDialect()
    manager = _manager(dialect).open()
    assert manager.state is ConnectionState.CONNECTED
    health = manager.health()
    assert health["connected"] is True
    assert health["state"] == "connected"
    assert health["backend"] == "fake"


def test_open_failure_marks_manager_down():
    dialect = _FakeDialect()
    dialect.connect_failures = 1
    manager = _manager(dialect)
    with pytest.raises(ConnectionUnavailable) as exc:
        manager.open()
    assert exc.value.code == "DB_CONNECT_FAILED"
    assert manager.state is ConnectionState.DOWN


def test_calls_before_open_and_after_close_are_rejected():
    dialect = _FakeDialect()
    manager = _manager(dialect)
    with pytest.raises(ConnectionUnavailable) as exc:
        manager.execute("SELECT 1")
    assert exc.value.code == "DB_NOT_OPENED"

    manager.open()
    manager.close()
    assert dialect.connections[0].closed
    with pytest.raises(ConnectionUnavailable) as exc:
        manager.with_transaction(lambda tx: tx.execute("SELECT 1"))
    assert exc.value.code == "DB_CLOSED"


def test_lost_session_reconnects_in_background():
    dialect = _FakeDialect()
    manager = _manager(dialect).open()
    _lose_session(manager, dialect)

    assert manager.wait_until_settled(timeout=2) is ConnectionState.CONNECTED
    assert len(dialect.connections) == 2
    assert dialect.connections[0].closed
    assert manager.execute("SELECT 1") == [{"value": 1}]


def test_calls_are_rejected_while_reconnecting():
    dialect = _FakeDialect()
    manager = _manager(dialect).open()
    dialect.gate = threading.Event()
    _lose_session(manager, dialect)

    assert manager.state is ConnectionState.RETRYING
    with pytest.raises(ConnectionUnavailable) as exc:
        manager.with_transaction(lambda tx: tx.execute("SELECT 1"))
    assert exc.value.code == "DB_RECONNECTING"
    assert exc.value.retryable is True

    dialect.gate.set()
    assert manager.wait_until_settled(timeout=2) is ConnectionState.CONNECTED


def test_exhausted_reconnects_mark_down_and_call_handler():
    dialect = _FakeDialect()
    went_down = threading.Event()
    sleeps: list[float] = []
    manager = ConnectionManager(
        dialect,
        reconnect_attempts=3,
        reconnect_delay_s=0.25,
        on_down=went_down.set,
        sleep=sleeps.append,
    ).open()
    dialect.connect_failures = 3
    _lose_session(manager, dialect)

    assert went_down.wait(2)
    assert manager.state is ConnectionState.DOWN
    assert sleeps == [0.25, 0.25]
    with pytest.raises(ConnectionUnavailable) as exc:
        manager.execute("SELECT 1")
    assert exc.value.code == "DB_DOWN"
    assert manager.health()["connected"] is False


def test_transaction_commits_on_success():
    dialect = _FakeDialect()
    manager = _manager(dialect).open()

    result = manager.with_transaction(lambda tx: tx.fetchone("SELECT 1"))

    assert result == {"value": 1}
    statements = dialect.connections[0].statements
    assert statements[-3:] == ["BEGIN", "SELECT 1", "COMMIT"]


def test_unexpected_error_rolls_back_and_raises_transaction_failed():
    dialect = _FakeDialect()
    manager = _manager(dialect).open()

    def _body(tx):
        tx.execute("INSERT INTO bids VALUES (1)")
        raise KeyError("boom")

    with pytest.raises(TransactionFailed) as exc:
        manager.with_transaction(_body)
    assert exc.value.code == "TRANSACTION_FAILED"
    statements = dialect.connections[0].statements
    assert statements[-1] == "ROLLBACK"
    assert "COMMIT" not in statements
    assert manager.state is ConnectionState.CONNECTED


def test_domain_error_rolls_back_and_propagates_unchanged():
    dialect = _FakeDialect()
    manager = _manager(dialect).open()

    def _body(tx):
        tx.execute("SELECT 1")
        raise NotFound("bid not found", code="BID_NOT_FOUND")

    with pytest.raises(NotFound) as exc:
        manager.with_transaction(_body)
    assert exc.value.code == "BID_NOT_FOUND"
    assert dialect.connections[0].statements[-1] == "ROLLBACK"


def test_statement_after_deadline_times_out():
    dialect = _FakeDialect()
    manager = _manager(dialect, tx_timeout_s=0.01).open()

    def _body(tx):
        time.sleep(0.05)
        tx.execute("SELECT 1")

    with pytest.raises(TransactionTimeout) as exc:
        manager.with_transaction(_body)
    assert exc.value.code == "TRANSACTION_TIMEOUT"
    assert dialect.connections[0].statements[-1] == "ROLLBACK"


def test_nested_transaction_joins_outer_one():
    dialect = _FakeDialect()
    manager = _manager(dialect).open()

    def _outer(tx):
        inner = manager.with_transaction(lambda inner_tx: inner_tx)
        assert inner is tx
        manager.execute("SELECT 1")
        return "done"

    assert manager.with_transaction(_outer) == "done"
    statements = dialect.connections[0].statements
    assert statements.count("BEGIN") == 1
    assert statements.count("COMMIT") == 1


def test_second_caller_waits_for_session_and_gives_up():
    dialect = _FakeDialect()
    manager = _manager(dialect, lock_wait_s=0.05).open()
    entered = threading.Event()
    release = threading.Event()

    def _hold(tx):
        entered.set()
        release.wait(2)

    worker = threading.Thread(target=manager.with_transaction, args=(_hold,))
    worker.start()
    try:
        assert entered.wait(2)
        with pytest.raises(ConnectionUnavailable) as exc:
            manager.execute("SELECT 1")
        assert exc.value.code == "DB_SESSION_BUSY"
    finally:
        release.set()
        worker.join(2)
    assert manager.execute("SELECT 1") == [{"value": 1}]
