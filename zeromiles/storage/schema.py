"""Database schema for zeromiles SQLite storage.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Database initialization (init_db)
"""

import logging
import sqlite3

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 2

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS loan_requests (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    collateral_value TEXT NOT NULL,
    collateral_denom TEXT NOT NULL,
    requested_value TEXT NOT NULL,
    requested_denom TEXT NOT NULL,
    recipient_address TEXT NOT NULL,
    depositor TEXT NOT NULL,
    target_chain TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    failure_reason TEXT,
    refunded_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_loan_requests_status ON loan_requests(status, created_at);

-- One row per request while collateral is held
CREATE TABLE IF NOT EXISTS escrow_records (
    request_id TEXT PRIMARY KEY REFERENCES loan_requests(id),
    held_asset_id TEXT NOT NULL UNIQUE,
    held_value TEXT NOT NULL,
    held_denom TEXT NOT NULL,
    depositor TEXT NOT NULL,
    created_at TEXT NOT NULL
);

-- At most one claim per request (UNIQUE request_id); a foreign tx backs at most one claim
CREATE TABLE IF NOT EXISTS fulfillment_claims (
    id TEXT PRIMARY KEY,
    request_id TEXT NOT NULL UNIQUE REFERENCES loan_requests(id),
    target_chain TEXT NOT NULL,
    foreign_tx_reference TEXT NOT NULL,
    solver_identity TEXT NOT NULL,
    claim_status TEXT NOT NULL,
    claimed_at TEXT NOT NULL,
    resolved_at TEXT,
    verification_attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT
);

CREATE TABLE IF NOT EXISTS request_transitions (
    id TEXT PRIMARY KEY,
    request_id TEXT NOT NULL REFERENCES loan_requests(id),
    from_status TEXT,
    to_status TEXT NOT NULL,
    actor TEXT NOT NULL,
    reason TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_request_transitions_request ON request_transitions(request_id);
"""

# Created after migrations, since version 1 claims lack target_chain
CLAIM_TX_INDEX = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_fulfillment_claims_tx
    ON fulfillment_claims(target_chain, foreign_tx_reference);
"""


def _migrate_v1_claims(conn: sqlite3.Connection) -> None:
    """Version 1 claims carry no target_chain; copy it from their request."""
    columns = {row[1] for row in conn.execute("PRAGMA table_info(fulfillment_claims)")}
    if "target_chain" in columns:
        return
    logger.info("Migrating fulfillment_claims: adding target_chain")
    conn.execute("ALTER TABLE fulfillment_claims ADD COLUMN target_chain TEXT NOT NULL DEFAULT ''")
    conn.execute(
        """UPDATE fulfillment_claims SET target_chain = (
               SELECT target_chain FROM loan_requests
               WHERE loan_requests.id = fulfillment_claims.request_id
           )"""
    )


def init_db(conn: sqlite3.Connection) -> None:
    """Initialize the database schema."""
    conn.executescript(SCHEMA)
    _migrate_v1_claims(conn)
    conn.executescript(CLAIM_TX_INDEX)

    cur = conn.execute("SELECT version FROM schema_version LIMIT 1")
    row = cur.fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    elif row[0] < SCHEMA_VERSION:
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
    elif row[0] > SCHEMA_VERSION:
        logger.warning(
            f"Database schema version {row[0]} is newer than supported {SCHEMA_VERSION}"
        )
