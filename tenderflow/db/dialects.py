from __future__ import annotations

import re
import sqlite3
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


def _unicode_lower(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


def validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class SqliteDialect:
    """Single-file SQLite session; used for local runs and the test-suite."""

    name = "sqlite"
    json_placeholder = "%s"
    for_update = ""
    begin_sql = "BEGIN IMMEDIATE"

    def __init__(self, path: str, *, timeout_s: float = 5.0) -> None:
        if not path.strip():
            raise ValueError("sqlite path must not be empty")
        self.path = path.strip()
        self.timeout_s = timeout_s

    def connect(self) -> sqlite3.Connection:
        if self.path != ":memory:":
            Path(self.path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode: transactions are opened explicitly by the manager.
        conn = sqlite3.connect(
            str(Path(self.path).expanduser()) if self.path != ":memory:" else self.path,
            timeout=self.timeout_s,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.execute("PRAGMA foreign_keys = ON")
        # built-in LOWER only folds ASCII
        conn.create_function("LOWER", 1, _unicode_lower, deterministic=True)
        return conn

    @staticmethod
    def render(sql: str) -> str:
        return sql.replace("%s", "?")

    @staticmethod
    def adapt_param(value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=UTC)
            return value.astimezone(UTC).isoformat()
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, bool):
            return int(value)
        return value

    @staticmethod
    def is_alive(conn: Any) -> bool:
        try:
            conn.execute("SELECT 1").fetchone()
        except sqlite3.ProgrammingError:
            return False
        except sqlite3.OperationalError:
            return False
        return True

    @staticmethod
    def is_unique_violation(exc: BaseException) -> bool:
        return isinstance(exc, sqlite3.IntegrityError) and "UNIQUE" in str(exc).upper()

    @staticmethod
    def timeout_sql(timeout_ms: int) -> str | None:
        return None

    def describe(self) -> dict[str, Any]:
        return {"backend": self.name, "database": self.path}


class PostgresDialect:
    name = "postgres"
    json_placeholder = "%s::jsonb"
    for_update = " FOR UPDATE"
    begin_sql = "BEGIN"

    def __init__(self, dsn: str, *, connect_timeout_s: int = 5) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        self.connect_timeout_s = connect_timeout_s

    def connect(self) -> Any:
        psycopg = _import_psycopg()
        return psycopg.connect(
            self._dsn,
            autocommit=True,
            connect_timeout=self.connect_timeout_s,
            keepalives=1,
            keepalives_idle=10,
        )

    @staticmethod
    def render(sql: str) -> str:
        return sql

    @staticmethod
    def adapt_param(value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        return value

    @staticmethod
    def is_alive(conn: Any) -> bool:
        if getattr(conn, "closed", False) or getattr(conn, "broken", False):
            return False
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
        except Exception:
            return False
        return True

    @staticmethod
    def is_unique_violation(exc: BaseException) -> bool:
        return getattr(exc, "sqlstate", None) == "23505"

    @staticmethod
    def timeout_sql(timeout_ms: int) -> str | None:
        return f"SET LOCAL statement_timeout = {int(timeout_ms)}"

    def describe(self) -> dict[str, Any]:
        psycopg = _import_psycopg()
        info = psycopg.conninfo.conninfo_to_dict(self._dsn)
        return {
            "backend": self.name,
            "database": info.get("dbname", ""),
            "host": info.get("host", "localhost"),
            "port": info.get("port", "5432"),
        }
