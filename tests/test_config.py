import pytest

from tenderflow.config import Settings, split_csv
from tenderflow.db.dialects import PostgresDialect, SqliteDialect
from tenderflow.engine import create_dialect
from tenderflow.security import JwtSecurityConfig


def test_defaults_use_local_sqlite():
    settings = Settings.from_env({})
    assert settings.db_backend == "sqlite"
    assert settings.sqlite_path == ".local/tenderflow.sqlite3"
    assert settings.reconnect_attempts == 3
    assert settings.reconnect_delay_ms == 2000
    assert settings.tx_timeout_ms == 10000
    assert settings.auto_init_schema is True
    assert settings.log_level == "INFO"
    assert isinstance(create_dialect(settings), SqliteDialect)


def test_env_overrides_and_bad_numbers_fall_back():
    settings = Settings.from_env(
        {
            "DB_RECONNECT_ATTEMPTS": "0",
            "DB_RECONNECT_DELAY_MS": "soon",
            "DB_TX_TIMEOUT_MS": "2500",
            "TENDERFLOW_AUTO_INIT_SCHEMA": "off",
            "LOG_LEVEL": "debug",
        }
    )
    assert settings.reconnect_attempts == 1
    assert settings.reconnect_delay_ms == 2000
    assert settings.tx_timeout_ms == 2500
    assert settings.auto_init_schema is False
    assert settings.log_level == "DEBUG"


def test_postgres_backend_requires_dsn():
    with pytest.raises(ValueError):
        Settings.from_env({"TENDERFLOW_DB_BACKEND": "postgres"})
    with pytest.raises(ValueError):
        Settings.from_env({"TENDERFLOW_DB_BACKEND": "mysql"})

    settings = Settings.from_env(
        {"TENDERFLOW_DB_BACKEND": "postgres", "POSTGRES_DSN": "postgresql://app@db:5432/tenders"}
    )
    dialect = create_dialect(settings)
    assert isinstance(dialect, PostgresDialect)
    assert dialect.render("SELECT %s") == "SELECT %s"
    assert dialect.timeout_sql(2500) == "SET LOCAL statement_timeout = 2500"


def test_sqlite_dialect_renders_placeholders():
    dialect = SqliteDialect(":memory:")
    assert dialect.render("SELECT * FROM bids WHERE id = %s AND status = %s") == (
        "SELECT * FROM bids WHERE id = ? AND status = ?"
    )
    assert dialect.adapt_param(True) == 1
    assert dialect.timeout_sql(1000) is None


def test_split_csv_and_jwt_config():
    assert split_csv(" sub, exp ,,role ") == ["sub", "exp", "role"]
    disabled = JwtSecurityConfig.from_env({})
    assert disabled.enabled is False
    assert disabled.required_claims == ["sub", "exp"]
    enabled = JwtSecurityConfig.from_env({"JWT_SHARED_SECRET": "s", "JWT_ROLE_CLAIM": "tf_role"})
    assert enabled.enabled is True
    assert enabled.role_claim == "tf_role"
