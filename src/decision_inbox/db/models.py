"""SQLite database schema and initialization for the Decision Inbox.

This module defines the database schema with 4 tables:
- emails: Synced message metadata (read-only to the decision pipeline)
- email_decisions: One decision per (email_id, user_id) with lifecycle status
- decision_feedback: "Not a decision" and similar user feedback
- llm_request_log: Claude API call logging for debugging

Usage:
    from decision_inbox.db.models import init_database

    await init_database("data/decisions.db")
"""

import stat
from pathlib import Path

import aiosqlite

from decision_inbox.core.errors import DatabaseError
from decision_inbox.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

REQUIRED_TABLES = (
    "emails",
    "email_decisions",
    "decision_feedback",
    "llm_request_log",
)

SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

-- Messages written by mail sync; the decision pipeline only reads them
CREATE TABLE IF NOT EXISTS emails (
    id TEXT PRIMARY KEY,                    -- Gmail message ID
    user_id TEXT NOT NULL,
    subject TEXT,
    body_text TEXT,                         -- Plain-text body
    snippet TEXT,                           -- First 200 chars of body for list display
    from_address TEXT,
    to_addresses TEXT,                      -- Comma-joined recipients
    is_read INTEGER DEFAULT 0,
    is_sent INTEGER DEFAULT 0,              -- 1 if the user sent this message
    received_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_emails_user ON emails(user_id);
CREATE INDEX IF NOT EXISTS idx_emails_user_read ON emails(user_id, is_read);
CREATE INDEX IF NOT EXISTS idx_emails_from ON emails(from_address);
CREATE INDEX IF NOT EXISTS idx_emails_user_sent ON emails(user_id, is_sent);

-- One decision per (email, user); never duplicated, cascades with the email
CREATE TABLE IF NOT EXISTS email_decisions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email_id TEXT NOT NULL REFERENCES emails(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    decision_required INTEGER NOT NULL DEFAULT 0,
    decision_type TEXT NOT NULL
        CHECK (decision_type IN ('reply_required', 'deadline', 'follow_up', 'informational_only')),
    reason TEXT,
    urgency TEXT NOT NULL DEFAULT 'optional'
        CHECK (urgency IN ('decide_now', 'decide_soon', 'expires_soon', 'optional')),
    skipped_ai INTEGER NOT NULL DEFAULT 0,  -- 1 if the pre-check gate short-circuited the AI call
    source TEXT NOT NULL DEFAULT 'ai'
        CHECK (source IN ('precheck', 'ai', 'fallback')),
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'done', 'dismissed', 'snoozed', 'not_decision')),
    snoozed_until DATETIME,
    detected_at DATETIME NOT NULL,
    created_at DATETIME NOT NULL,
    updated_at DATETIME,
    UNIQUE (email_id, user_id),
    CHECK (decision_required = 1 OR decision_type = 'informational_only'),
    CHECK (decision_required = 1 OR urgency = 'optional'),
    CHECK (status != 'snoozed' OR snoozed_until IS NOT NULL)
);

CREATE INDEX IF NOT EXISTS idx_email_decisions_user_status
    ON email_decisions(user_id, status);
CREATE INDEX IF NOT EXISTS idx_email_decisions_user_required
    ON email_decisions(user_id, decision_required);
CREATE INDEX IF NOT EXISTS idx_email_decisions_detected_at
    ON email_decisions(detected_at);

-- User feedback on decisions, kept for tuning
CREATE TABLE IF NOT EXISTS decision_feedback (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    email_id TEXT NOT NULL REFERENCES emails(id) ON DELETE CASCADE,
    feedback_type TEXT NOT NULL
        CHECK (feedback_type IN ('not_decision', 'helpful', 'unhelpful')),
    original_type TEXT,
    comment TEXT,
    sender_domain TEXT,
    subject_pattern TEXT,                   -- First three words of the subject, lower-cased
    created_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_feedback_user_type ON decision_feedback(user_id, feedback_type);
CREATE INDEX IF NOT EXISTS idx_feedback_sender ON decision_feedback(sender_domain);

-- LLM request/response log for debugging classification issues
CREATE TABLE IF NOT EXISTS llm_request_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME NOT NULL,
    task_type TEXT,                         -- 'decision'
    model TEXT,
    email_id TEXT,
    batch_id TEXT,                          -- Correlation ID for the classification batch
    prompt_json TEXT,
    response_json TEXT,
    tool_call_json TEXT,
    input_tokens INTEGER,
    output_tokens INTEGER,
    duration_ms INTEGER,
    error TEXT                              -- NULL on success, error message on failure
);

CREATE INDEX IF NOT EXISTS idx_llm_log_timestamp ON llm_request_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_llm_log_email ON llm_request_log(email_id);
CREATE INDEX IF NOT EXISTS idx_llm_log_batch ON llm_request_log(batch_id);
"""


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Creates the database file if it doesn't exist, enables WAL mode for
    concurrent access, and creates all tables and indexes.

    Args:
        db_path: Path to the SQLite database file

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "WAL mode not enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Owner read/write only: the database holds email bodies
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "Database initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables_created=table_count,
        )

    except aiosqlite.Error as e:
        logger.error(
            "Database initialization failed",
            db_path=str(db_path),
            error=str(e),
        )
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Verify that the database has all required tables.

    Returns:
        True if all tables exist, False otherwise
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}

            missing = set(REQUIRED_TABLES) - existing_tables
            if missing:
                logger.warning(
                    "Missing database tables",
                    missing=sorted(missing),
                    db_path=str(db_path),
                )
                return False

            return True

    except aiosqlite.Error as e:
        logger.error(
            "Schema verification failed",
            db_path=str(db_path),
            error=str(e),
        )
        return False
