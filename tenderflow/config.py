from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


@dataclass
class Settings:
    db_backend: str
    sqlite_path: str
    postgres_dsn: str
    connect_timeout_s: int
    reconnect_attempts: int
    reconnect_delay_ms: int
    tx_timeout_ms: int
    lock_wait_ms: int
    auto_init_schema: bool
    log_level: str

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        backend = env.get("TENDERFLOW_DB_BACKEND", "sqlite").strip().lower() or "sqlite"
        if backend not in {"sqlite", "postgres"}:
            raise ValueError(f"unsupported TENDERFLOW_DB_BACKEND: {backend}")
        dsn = env.get("POSTGRES_DSN", "").strip()
        if backend == "postgres" and not dsn:
            raise ValueError("POSTGRES_DSN must be set when TENDERFLOW_DB_BACKEND=postgres")
        return cls(
            db_backend=backend,
            sqlite_path=env.get("TENDERFLOW_SQLITE_PATH", ".local/tenderflow.sqlite3").strip()
            or ".local/tenderflow.sqlite3",
            postgres_dsn=dsn,
            connect_timeout_s=_env_int(env, "DB_CONNECT_TIMEOUT_S", default=5, minimum=1),
            reconnect_attempts=_env_int(env, "DB_RECONNECT_ATTEMPTS", default=3, minimum=1),
            reconnect_delay_ms=_env_int(env, "DB_RECONNECT_DELAY_MS", default=2000, minimum=0),
            tx_timeout_ms=_env_int(env, "DB_TX_TIMEOUT_MS", default=10000, minimum=100),
            lock_wait_ms=_env_int(env, "DB_LOCK_WAIT_MS", default=15000, minimum=0),
            auto_init_schema=_env_bool(env, "TENDERFLOW_AUTO_INIT_SCHEMA", default=True),
            log_level=env.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )
