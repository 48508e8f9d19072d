"""Database schema for jobflow SQLite storage.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Database initialization (init_db)

Records keep their full serialized form in a JSON `data` column; the
columns beside it exist for lookups, uniqueness and compare-and-swap.
Timestamp columns hold fixed-width UTC strings so they sort correctly.
"""

import logging
import sqlite3
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2


def sortable_ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC timestamp for indexed columns."""
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    customer_id TEXT NOT NULL,
    status TEXT NOT NULL,
    won_by_contractor_id TEXT,
    final_price_timeout_at TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_customer ON jobs(customer_id);
CREATE INDEX IF NOT EXISTS idx_jobs_contractor ON jobs(won_by_contractor_id);
CREATE INDEX IF NOT EXISTS idx_jobs_timeout ON jobs(final_price_timeout_at);

CREATE TABLE IF NOT EXISTS job_access (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    contractor_id TEXT NOT NULL,
    purchased_at TEXT NOT NULL,
    data TEXT NOT NULL,
    UNIQUE (job_id, contractor_id)
);
CREATE INDEX IF NOT EXISTS idx_access_contractor ON job_access(contractor_id);

CREATE TABLE IF NOT EXISTS job_applications (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    contractor_id TEXT NOT NULL,
    status TEXT NOT NULL,
    applied_at TEXT NOT NULL,
    data TEXT NOT NULL,
    UNIQUE (job_id, contractor_id)
);
CREATE INDEX IF NOT EXISTS idx_applications_contractor ON job_applications(contractor_id);

CREATE TABLE IF NOT EXISTS job_transitions (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_transitions_job ON job_transitions(job_id, seq);

CREATE TABLE IF NOT EXISTS disputes (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    status TEXT NOT NULL,
    opened_at TEXT NOT NULL,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_disputes_job ON disputes(job_id, status);

CREATE TABLE IF NOT EXISTS credit_accounts (
    contractor_id TEXT PRIMARY KEY,
    credits_balance INTEGER NOT NULL DEFAULT 0 CHECK (credits_balance >= 0),
    trial_credits INTEGER NOT NULL DEFAULT 0 CHECK (trial_credits >= 0),
    has_used_free_trial INTEGER NOT NULL DEFAULT 0,
    is_subscribed INTEGER NOT NULL DEFAULT 0,
    weekly_credits_limit INTEGER NOT NULL DEFAULT 0,
    last_replenished_week TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS credit_transactions (
    id TEXT PRIMARY KEY,
    contractor_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_credit_tx_contractor ON credit_transactions(contractor_id, seq);

CREATE TABLE IF NOT EXISTS commission_payments (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL UNIQUE,
    contractor_id TEXT NOT NULL,
    status TEXT NOT NULL,
    due_date TEXT NOT NULL,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_commissions_status ON commission_payments(status, due_date);
CREATE INDEX IF NOT EXISTS idx_commissions_contractor ON commission_payments(contractor_id);

CREATE TABLE IF NOT EXISTS scheduled_events (
    handle TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    subject_id TEXT NOT NULL,
    due_at TEXT NOT NULL,
    acknowledged_at TEXT,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_events_due ON scheduled_events(acknowledged_at, due_at);

CREATE TABLE IF NOT EXISTS audit_records (
    id TEXT PRIMARY KEY,
    action TEXT NOT NULL,
    subject_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_audit_subject ON audit_records(subject_id, seq);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Create tables if missing and record the schema version."""
    conn.executescript(SCHEMA)

    row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    elif row[0] > SCHEMA_VERSION:
        logger.warning(
            "Database schema version %d is newer than this release (%d)", row[0], SCHEMA_VERSION
        )
    elif row[0] < SCHEMA_VERSION:
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
    conn.commit()
