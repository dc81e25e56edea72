from __future__ import annotations

import logging
from typing import Any

from tenderflow.db.connection import ConnectionManager, Transaction

logger = logging.getLogger(__name__)

_TENDER_STATUSES = "'draft', 'open', 'closed', 'cancelled', 'awarded', 'archived'"
_BID_STATUSES = "'pending', 'accepted', 'rejected', 'withdrawn'"

SQLITE_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS categories (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      name TEXT NOT NULL UNIQUE,
      description TEXT,
      is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS tenders (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      title TEXT NOT NULL,
      description TEXT NOT NULL DEFAULT '',
      category_id INTEGER REFERENCES categories(id),
      budget_min NUMERIC,
      budget_max NUMERIC,
      deadline TEXT,
      status TEXT NOT NULL DEFAULT 'draft' CHECK (status IN ({_TENDER_STATUSES})),
      requirements TEXT,
      attachments TEXT NOT NULL DEFAULT '[]',
      created_by INTEGER NOT NULL,
      updated_by INTEGER,
      view_count INTEGER NOT NULL DEFAULT 0,
      published_at TEXT,
      closing_date TEXT,
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL,
      CHECK (budget_min IS NULL OR budget_max IS NULL OR budget_max >= budget_min)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS bids (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      tender_id INTEGER NOT NULL REFERENCES tenders(id),
      vendor_id INTEGER NOT NULL,
      amount NUMERIC NOT NULL CHECK (amount > 0),
      proposal TEXT NOT NULL DEFAULT '',
      delivery_timeline TEXT,
      attachments TEXT NOT NULL DEFAULT '[]',
      status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ({_BID_STATUSES})),
      submitted_at TEXT NOT NULL,
      updated_at TEXT NOT NULL,
      evaluated_at TEXT,
      evaluated_by INTEGER,
      evaluation_notes TEXT,
      rejection_reason TEXT,
      UNIQUE (tender_id, vendor_id)
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS bids_one_accepted_per_tender ON bids (tender_id) WHERE status = 'accepted'",
    "CREATE INDEX IF NOT EXISTS bids_tender_status_idx ON bids (tender_id, status)",
    """
    CREATE TABLE IF NOT EXISTS bid_history (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      bid_id INTEGER NOT NULL REFERENCES bids(id),
      action TEXT NOT NULL,
      old_values TEXT NOT NULL DEFAULT '{}',
      new_values TEXT NOT NULL DEFAULT '{}',
      performed_by INTEGER NOT NULL,
      notes TEXT,
      created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS bid_history_no_update BEFORE UPDATE ON bid_history
    BEGIN
      SELECT RAISE(ABORT, 'bid_history is append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS bid_history_no_delete BEFORE DELETE ON bid_history
    BEGIN
      SELECT RAISE(ABORT, 'bid_history is append-only');
    END
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      user_id INTEGER NOT NULL,
      type TEXT NOT NULL,
      title TEXT NOT NULL,
      message TEXT NOT NULL,
      data TEXT NOT NULL DEFAULT '{}',
      is_read INTEGER NOT NULL DEFAULT 0,
      created_at TEXT NOT NULL
    )
    """,
)

POSTGRES_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS categories (
      id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
      name TEXT NOT NULL UNIQUE,
      description TEXT,
      is_active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS tenders (
      id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
      title TEXT NOT NULL,
      description TEXT NOT NULL DEFAULT '',
      category_id BIGINT REFERENCES categories(id),
      budget_min NUMERIC(14, 2),
      budget_max NUMERIC(14, 2),
      deadline TIMESTAMPTZ,
      status TEXT NOT NULL DEFAULT 'draft' CHECK (status IN ({_TENDER_STATUSES})),
      requirements TEXT,
      attachments JSONB NOT NULL DEFAULT '[]'::jsonb,
      created_by BIGINT NOT NULL,
      updated_by BIGINT,
      view_count INTEGER NOT NULL DEFAULT 0,
      published_at TIMESTAMPTZ,
      closing_date TIMESTAMPTZ,
      created_at TIMESTAMPTZ NOT NULL,
      updated_at TIMESTAMPTZ NOT NULL,
      CHECK (budget_min IS NULL OR budget_max IS NULL OR budget_max >= budget_min)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS bids (
      id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
      tender_id BIGINT NOT NULL REFERENCES tenders(id),
      vendor_id BIGINT NOT NULL,
      amount NUMERIC(14, 2) NOT NULL CHECK (amount > 0),
      proposal TEXT NOT NULL DEFAULT '',
      delivery_timeline TEXT,
      attachments JSONB NOT NULL DEFAULT '[]'::jsonb,
      status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ({_BID_STATUSES})),
      submitted_at TIMESTAMPTZ NOT NULL,
      updated_at TIMESTAMPTZ NOT NULL,
      evaluated_at TIMESTAMPTZ,
      evaluated_by BIGINT,
      evaluation_notes TEXT,
      rejection_reason TEXT,
      UNIQUE (tender_id, vendor_id)
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS bids_one_accepted_per_tender ON bids (tender_id) WHERE status = 'accepted'",
    "CREATE INDEX IF NOT EXISTS bids_tender_status_idx ON bids (tender_id, status)",
    """
    CREATE TABLE IF NOT EXISTS bid_history (
      id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
      bid_id BIGINT NOT NULL REFERENCES bids(id),
      action TEXT NOT NULL,
      old_values JSONB NOT NULL DEFAULT '{}'::jsonb,
      new_values JSONB NOT NULL DEFAULT '{}'::jsonb,
      performed_by BIGINT NOT NULL,
      notes TEXT,
      created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE OR REPLACE FUNCTION bid_history_append_only() RETURNS trigger AS $$
    BEGIN
      RAISE EXCEPTION 'bid_history is append-only';
    END;
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS bid_history_append_only ON bid_history",
    """
    CREATE TRIGGER bid_history_append_only BEFORE UPDATE OR DELETE ON bid_history
    FOR EACH ROW EXECUTE FUNCTION bid_history_append_only()
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
      id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
      user_id BIGINT NOT NULL,
      type TEXT NOT NULL,
      title TEXT NOT NULL,
      message TEXT NOT NULL,
      data JSONB NOT NULL DEFAULT '{}'::jsonb,
      is_read BOOLEAN NOT NULL DEFAULT FALSE,
      created_at TIMESTAMPTZ NOT NULL
    )
    """,
)


def schema_statements(dialect_name: str) -> tuple[str, ...]:
    if dialect_name == "postgres":
        return POSTGRES_STATEMENTS
    if dialect_name == "sqlite":
        return SQLITE_STATEMENTS
    raise ValueError(f"unsupported dialect: {dialect_name}")


def initialize_schema(manager: ConnectionManager) -> list[str]:
    statements = schema_statements(manager.dialect.name)

    def _op(tx: Transaction) -> list[str]:
        applied: list[str] = []
        for statement in statements:
            tx.execute(statement)
            applied.append(" ".join(statement.split())[:60])
        return applied

    applied: list[Any] = manager.with_transaction(_op)
    logger.info("schema initialized backend=%s statements=%s", manager.dialect.name, len(applied))
    return applied
