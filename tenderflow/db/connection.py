from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from enum import Enum
from typing import Any, TypeVar

from tenderflow.errors import ApiError, ConnectionUnavailable, TransactionFailed, TransactionTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RETRYING = "retrying"
    DOWN = "down"
    CLOSED = "closed"


class Transaction:
    """Handle passed to transaction bodies; every statement checks the time budget."""

    def __init__(self, manager: "ConnectionManager", conn: Any, *, deadline: float) -> None:
        self._manager = manager
        self._conn = conn
        self._deadline = deadline
        self.closed = False

    @property
    def dialect(self) -> Any:
        return self._manager.dialect

    def execute(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        if self.closed:
            raise RuntimeError("transaction is already closed")
        if time.monotonic() > self._deadline:
            raise TransactionTimeout()
        return self._manager._run(self._conn, sql, params)

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        rows = self.execute(sql, params)
        return rows[0] if rows else None


class ConnectionManager:
    """Owns the one database session shared by every lifecycle operation.

    All access is serialized on a single lock, so two transaction bodies never
    interleave statements. A lost session moves the manager to ``retrying``;
    a background loop reconnects with a fixed delay and callers are rejected
    with ``ConnectionUnavailable`` until it settles as ``connected`` or
    ``down``.
    """

    def __init__(
        self,
        dialect: Any,
        *,
        reconnect_attempts: int = 3,
        reconnect_delay_s: float = 2.0,
        tx_timeout_s: float = 10.0,
        lock_wait_s: float = 15.0,
        on_down: Callable[[], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.dialect = dialect
        self.reconnect_attempts = max(1, int(reconnect_attempts))
        self.reconnect_delay_s = max(0.0, float(reconnect_delay_s))
        self.tx_timeout_s = max(0.001, float(tx_timeout_s))
        self.lock_wait_s = max(0.0, float(lock_wait_s))
        self._on_down = on_down
        self._sleep = sleep
        self._conn: Any = None
        self._state = ConnectionState.CONNECTING
        self._state_lock = threading.Lock()
        self._session_lock = threading.Lock()
        self._local = threading.local()
        self._settled = threading.Event()
        self._settled.set()
        self._recovery_thread: threading.Thread | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    def open(self) -> "ConnectionManager":
        with self._state_lock:
            if self._state is ConnectionState.CONNECTED:
                return self
            try:
                conn = self.dialect.connect()
                self._probe(conn)
            except Exception as exc:
                self._state = ConnectionState.DOWN
                logger.error("database connection failed backend=%s error=%s", self.dialect.name, exc)
                raise ConnectionUnavailable("could not connect to database", code="DB_CONNECT_FAILED") from exc
            self._conn = conn
            self._state = ConnectionState.CONNECTED
        logger.info("database connected backend=%s", self.dialect.name)
        return self

    def close(self) -> None:
        with self._state_lock:
            previous = self._state
            self._state = ConnectionState.CLOSED
            conn, self._conn = self._conn, None
        self._settled.set()
        if conn is not None:
            self._close_quietly(conn)
        if previous is not ConnectionState.CLOSED:
            logger.info("database connection closed")

    def wait_until_settled(self, timeout: float | None = None) -> ConnectionState:
        self._settled.wait(timeout)
        return self._state

    def execute(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        current = self._current_tx()
        if current is not None:
            return current.execute(sql, params)
        self._ensure_available()
        self._acquire()
        try:
            self._ensure_available()
            try:
                return self._run(self._conn, sql, params)
            except Exception as exc:
                if self._handle_failure(exc):
                    raise ConnectionUnavailable("database session lost", code="DB_SESSION_LOST") from exc
                raise
        finally:
            self._session_lock.release()

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        rows = self.execute(sql, params)
        return rows[0] if rows else None

    def with_transaction(self, fn: Callable[[Transaction], T]) -> T:
        current = self._current_tx()
        if current is not None:
            return fn(current)
        self._ensure_available()
        self._acquire()
        try:
            self._ensure_available()
            conn = self._conn
            try:
                self._run(conn, self.dialect.begin_sql, ())
                timeout_sql = self.dialect.timeout_sql(int(self.tx_timeout_s * 1000))
                if timeout_sql:
                    self._run(conn, timeout_sql, ())
            except Exception as exc:
                if self._handle_failure(exc):
                    raise ConnectionUnavailable("database session lost", code="DB_SESSION_LOST") from exc
                self._rollback(conn)
                raise TransactionFailed("could not open transaction") from exc

            tx = Transaction(self, conn, deadline=time.monotonic() + self.tx_timeout_s)
            self._local.tx = tx
            try:
                result = fn(tx)
                self._run(conn, "COMMIT", ())
                return result
            except ApiError:
                self._rollback(conn)
                raise
            except Exception as exc:
                self._rollback(conn)
                self._handle_failure(exc)
                logger.error("transaction rolled back error=%s: %s", type(exc).__name__, exc)
                raise TransactionFailed(f"transaction rolled back: {type(exc).__name__}") from exc
            finally:
                tx.closed = True
                self._local.tx = None
        finally:
            self._session_lock.release()

    def health(self) -> dict[str, Any]:
        start = time.perf_counter()
        try:
            self.execute("SELECT 1")
            connected = True
        except ConnectionUnavailable:
            connected = False
        return {
            "state": self._state.value,
            "connected": connected,
            "latency_ms": round((time.perf_counter() - start) * 1000, 2),
            **self.dialect.describe(),
        }

    def _current_tx(self) -> Transaction | None:
        tx = getattr(self._local, "tx", None)
        if tx is None or tx.closed:
            return None
        return tx

    def _ensure_available(self) -> None:
        state = self._state
        if state is ConnectionState.CONNECTED:
            return
        if state is ConnectionState.RETRYING:
            raise ConnectionUnavailable("database reconnect in progress", code="DB_RECONNECTING")
        if state is ConnectionState.DOWN:
            raise ConnectionUnavailable("database connection is down", code="DB_DOWN")
        if state is ConnectionState.CLOSED:
            raise ConnectionUnavailable("connection manager is closed", code="DB_CLOSED")
        raise ConnectionUnavailable("database connection has not been opened", code="DB_NOT_OPENED")

    def _acquire(self) -> None:
        if not self._session_lock.acquire(timeout=self.lock_wait_s):
            raise ConnectionUnavailable("timed out waiting for the database session", code="DB_SESSION_BUSY")

    def _run(self, conn: Any, sql: str, params: Sequence[Any]) -> list[dict[str, Any]]:
        rendered = self.dialect.render(sql)
        adapted = tuple(self.dialect.adapt_param(p) for p in params)
        start = time.perf_counter()
        cur = conn.cursor()
        try:
            if adapted:
                cur.execute(rendered, adapted)
            else:
                cur.execute(rendered)
            if cur.description is None:
                rows: list[dict[str, Any]] = []
            else:
                columns = [d[0] for d in cur.description]
                rows = [dict(zip(columns, row)) for row in cur.fetchall()]
        finally:
            cur.close()
        logger.debug("query executed in %.1fms: %s", (time.perf_counter() - start) * 1000, rendered[:100])
        return rows

    def _probe(self, conn: Any) -> None:
        self._run(conn, "SELECT 1", ())

    def _rollback(self, conn: Any) -> None:
        try:
            self._run(conn, "ROLLBACK", ())
        except Exception as exc:
            logger.warning("rollback failed error=%s", exc)

    def _handle_failure(self, exc: BaseException) -> bool:
        """Return True when the failure took the session down."""
        conn = self._conn
        if conn is not None and self.dialect.is_alive(conn):
            return False
        logger.error("database session lost error=%s", exc)
        self._start_recovery()
        return True

    def _start_recovery(self) -> None:
        with self._state_lock:
            if self._state is not ConnectionState.CONNECTED:
                return
            self._state = ConnectionState.RETRYING
            self._settled.clear()
            conn, self._conn = self._conn, None
        if conn is not None:
            self._close_quietly(conn)
        self._recovery_thread = threading.Thread(
            target=self._reconnect_loop,
            name="tenderflow-db-reconnect",
            daemon=True,
        )
        self._recovery_thread.start()

    def _reconnect_loop(self) -> None:
        for attempt in range(1, self.reconnect_attempts + 1):
            logger.info("attempting to reconnect to database (%s/%s)", attempt, self.reconnect_attempts)
            try:
                conn = self.dialect.connect()
                self._probe(conn)
            except Exception as exc:
                logger.error("reconnection attempt failed (%s/%s): %s", attempt, self.reconnect_attempts, exc)
                if attempt < self.reconnect_attempts:
                    self._sleep(self.reconnect_delay_s)
                continue
            with self._state_lock:
                if self._state is ConnectionState.CLOSED:
                    self._close_quietly(conn)
                    self._settled.set()
                    return
                self._conn = conn
                self._state = ConnectionState.CONNECTED
            logger.info("database reconnected successfully")
            self._settled.set()
            return

        with self._state_lock:
            if self._state is not ConnectionState.CLOSED:
                self._state = ConnectionState.DOWN
        logger.critical("all reconnection attempts failed; database session is down")
        self._settled.set()
        if self._on_down is not None:
            self._on_down()

    @staticmethod
    def _close_quietly(conn: Any) -> None:
        try:
            conn.close()
        except Exception as exc:
            logger.warning("error closing database connection: %s", exc)
