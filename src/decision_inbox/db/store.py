"""Database store for emails, decisions and their lifecycle.

This module provides the DecisionStore class that encapsulates all database
operations for the Decision Inbox. It uses aiosqlite for async access and
returns dataclasses.

Decision lifecycle:

    pending --complete--------> done
            --dismiss---------> dismissed
            --mark_not_decision-> not_decision
            --snooze----------> snoozed --(snoozed_until elapses)--> effectively pending

Snooze expiry is computed on read: the stored status stays 'snoozed' and
every query that cares (list_pending, stats, the upsert guard) treats
`snoozed_until <= now` as pending.

All writes are single conditional statements, so concurrent callers for
the same (email_id, user_id) cannot create duplicates or lose updates.

Usage:
    from decision_inbox.db.store import DecisionStore

    store = DecisionStore("data/decisions.db")
    await store.initialize()

    stored = await store.upsert(decision)
    await store.snooze("msg-1", "user-1", until=tomorrow)
    pending = await store.list_pending("user-1")
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from email.utils import parseaddr
from pathlib import Path
from typing import Any, Literal

import aiosqlite

from decision_inbox.core.clock import Clock, SystemClock, ensure_utc
from decision_inbox.core.errors import (
    DatabaseError,
    InputValidationError,
    InvalidArgumentError,
    InvalidStateTransitionError,
    NotFoundError,
)
from decision_inbox.core.logging import get_correlation_id, get_logger
from decision_inbox.db.models import init_database

logger = get_logger(__name__)

# Snippet shown next to pending decisions
SNIPPET_LENGTH = 200

# Type aliases
DecisionType = Literal["reply_required", "deadline", "follow_up", "informational_only"]
DecisionStatus = Literal["pending", "done", "dismissed", "snoozed", "not_decision"]
DecisionSource = Literal["precheck", "ai", "fallback"]
Urgency = Literal["decide_now", "decide_soon", "expires_soon", "optional"]
FeedbackType = Literal["not_decision", "helpful", "unhelpful"]

DECISION_TYPES: tuple[str, ...] = ("reply_required", "deadline", "follow_up", "informational_only")
DECISION_STATUSES: tuple[str, ...] = ("pending", "done", "dismissed", "snoozed", "not_decision")
URGENCIES: tuple[str, ...] = ("decide_now", "decide_soon", "expires_soon", "optional")

# Decision level shown as a priority badge: 2 = now, 1 = soon, 0 = optional
URGENCY_LEVELS: dict[str, int] = {
    "decide_now": 2,
    "decide_soon": 1,
    "expires_soon": 1,
    "optional": 0,
}

# Statuses a lifecycle action may move a record out of
_ACTIONABLE_STATUSES = ("pending", "snoozed")

# Most urgent first, then newest
_URGENCY_ORDER_SQL = (
    "CASE d.urgency WHEN 'decide_now' THEN 0 WHEN 'decide_soon' THEN 1 "
    "WHEN 'expires_soon' THEN 2 ELSE 3 END"
)

# Shared predicate: record counts as pending right now (param: now)
_EFFECTIVELY_PENDING_SQL = (
    "(d.status = 'pending' OR (d.status = 'snoozed' AND d.snoozed_until <= ?))"
)


def _ts(value: datetime) -> str:
    """Serialize a datetime for storage (UTC, fixed width so strings sort correctly)."""
    return ensure_utc(value).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


@dataclass
class EmailMessage:
    """Synced email record. The decision pipeline never mutates it."""

    id: str
    user_id: str
    subject: str | None = None
    body_text: str | None = None
    from_address: str | None = None
    to_addresses: str | None = None
    is_read: bool = False
    is_sent: bool = False
    received_at: datetime | None = None
    snippet: str | None = None


@dataclass
class Decision:
    """Decision record for one (email_id, user_id).

    Invariants: decision_required is False => decision_type is 'informational_only'
    and urgency is 'optional'.
    """

    email_id: str
    user_id: str
    decision_required: bool
    decision_type: DecisionType
    reason: str
    skipped_ai: bool
    detected_at: datetime
    source: DecisionSource = "ai"
    urgency: Urgency = "optional"
    status: DecisionStatus = "pending"
    snoozed_until: datetime | None = None
    updated_at: datetime | None = None
    id: int | None = None

    def __post_init__(self) -> None:
        if self.decision_type not in DECISION_TYPES:
            raise InputValidationError(
                f"Invalid decision_type '{self.decision_type}'. "
                f"Must be one of: {', '.join(DECISION_TYPES)}"
            )
        if self.urgency not in URGENCIES:
            raise InputValidationError(
                f"Invalid urgency '{self.urgency}'. Must be one of: {', '.join(URGENCIES)}"
            )
        if self.status not in DECISION_STATUSES:
            raise InputValidationError(
                f"Invalid status '{self.status}'. Must be one of: {', '.join(DECISION_STATUSES)}"
            )
        if not self.decision_required and self.decision_type != "informational_only":
            raise InputValidationError(
                f"Decision for email {self.email_id} has decision_required=False but "
                f"decision_type='{self.decision_type}'. Non-required decisions must be "
                "'informational_only'."
            )
        if not self.decision_required and self.urgency != "optional":
            raise InputValidationError(
                f"Decision for email {self.email_id} has decision_required=False but "
                f"urgency='{self.urgency}'. Non-required decisions must be 'optional'."
            )

    @property
    def level(self) -> int:
        """Priority level: 2 decide now, 1 decide soon, 0 optional."""
        return URGENCY_LEVELS[self.urgency]

    def effective_status(self, now: datetime) -> DecisionStatus:
        """Status as presented to the user: an elapsed snooze reads as pending."""
        if (
            self.status == "snoozed"
            and self.snoozed_until is not None
            and ensure_utc(self.snoozed_until) <= ensure_utc(now)
        ):
            return "pending"
        return self.status


@dataclass
class PendingDecision:
    """A pending decision joined with the email metadata needed for display."""

    decision: Decision
    subject: str | None = None
    from_address: str | None = None
    snippet: str | None = None
    received_at: datetime | None = None


@dataclass
class DecisionStats:
    """Aggregate decision counts for one user."""

    total: int = 0
    requires_action: int = 0
    skipped_ai: int = 0
    fallback: int = 0
    by_status: dict[str, int] = field(default_factory=lambda: dict.fromkeys(DECISION_STATUSES, 0))
    by_type: dict[str, int] = field(default_factory=lambda: dict.fromkeys(DECISION_TYPES, 0))
    by_urgency: dict[str, int] = field(default_factory=lambda: dict.fromkeys(URGENCIES, 0))

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "requires_action": self.requires_action,
            "skipped_ai": self.skipped_ai,
            "fallback": self.fallback,
            "by_status": dict(self.by_status),
            "by_type": dict(self.by_type),
            "by_urgency": dict(self.by_urgency),
        }


@dataclass
class DecisionFeedback:
    """User feedback on a decision."""

    id: int
    user_id: str
    email_id: str
    feedback_type: FeedbackType
    created_at: datetime
    original_type: str | None = None
    comment: str | None = None
    sender_domain: str | None = None
    subject_pattern: str | None = None


@dataclass
class LLMLogEntry:
    """LLM request log entry from the database."""

    id: int
    timestamp: datetime
    task_type: str | None = None
    model: str | None = None
    email_id: str | None = None
    batch_id: str | None = None
    prompt_json: dict[str, Any] | None = None
    response_json: dict[str, Any] | None = None
    tool_call_json: dict[str, Any] | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    duration_ms: int | None = None
    error: str | None = None


def sender_domain(address: str | None) -> str | None:
    """Lower-cased domain part of an email address."""
    if not address or "@" not in address:
        return None
    return address.rsplit("@", 1)[1].strip().strip(">").lower() or None


def subject_pattern(subject: str | None) -> str | None:
    """First three words of the subject, lower-cased."""
    if not subject or not subject.strip():
        return None
    return " ".join(subject.split()[:3]).lower()


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class DecisionStore:
    """Async store for emails, decisions, feedback and LLM logs.

    Attributes:
        db_path: Path to the SQLite database file
        _clock: Time source for snooze checks and timestamps
        _initialized: Whether the database has been initialized
    """

    def __init__(self, db_path: str | Path, clock: Clock | None = None):
        """Initialize the store.

        Args:
            db_path: Path to the SQLite database file
            clock: Time source (defaults to the system clock)
        """
        self.db_path = Path(db_path)
        self._clock = clock or SystemClock()
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed.

        This must be called before any other operations.
        """
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        PRAGMAs:
        - busy_timeout: 10s so concurrent classifications wait for the write lock
        - foreign_keys: ON so deleting an email cascades to its decision
        - synchronous: NORMAL (safe with WAL, faster writes)
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA temp_store = MEMORY")

            db.row_factory = aiosqlite.Row
            yield db

    # =========================================================================
    # Email Operations (metadata source, written by mail sync)
    # =========================================================================

    async def save_email(self, email: EmailMessage) -> None:
        """Save or update an email record.

        Raises:
            DatabaseError: If the operation fails
        """
        snippet = email.snippet
        if snippet is None and email.body_text:
            snippet = " ".join(email.body_text.split())[:SNIPPET_LENGTH]

        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO emails (
                        id, user_id, subject, body_text, snippet, from_address,
                        to_addresses, is_read, is_sent, received_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        user_id = excluded.user_id,
                        subject = excluded.subject,
                        body_text = excluded.body_text,
                        snippet = excluded.snippet,
                        from_address = excluded.from_address,
                        to_addresses = excluded.to_addresses,
                        is_read = excluded.is_read,
                        is_sent = excluded.is_sent,
                        received_at = excluded.received_at
                    """,
                    (
                        email.id,
                        email.user_id,
                        email.subject,
                        email.body_text,
                        snippet,
                        email.from_address,
                        email.to_addresses,
                        1 if email.is_read else 0,
                        1 if email.is_sent else 0,
                        _ts(email.received_at) if email.received_at else None,
                    ),
                )
                await db.commit()
                logger.debug("Email saved", email_id=email.id)

        except aiosqlite.Error as e:
            logger.error("Failed to save email", email_id=email.id, error=str(e))
            raise DatabaseError(f"Failed to save email {email.id}: {e}") from e

    async def get_email(self, email_id: str) -> EmailMessage | None:
        """Get an email by ID, or None if not found."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM emails WHERE id = ?", (email_id,))
                row = await cursor.fetchone()
                return self._row_to_email(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get email", email_id=email_id, error=str(e))
            raise DatabaseError(f"Failed to get email {email_id}: {e}") from e

    async def list_emails(
        self,
        user_id: str,
        unread_only: bool = False,
        received_before: datetime | None = None,
        from_address: str | None = None,
        limit: int | None = None,
    ) -> list[EmailMessage]:
        """List a user's received (not sent) emails, newest first.

        Args:
            user_id: Owning user
            unread_only: Only unread email
            received_before: Only email received before this time (e.g. unread for N days)
            from_address: Only email from this sender (case-insensitive)
            limit: Maximum number of emails
        """
        try:
            async with self._db() as db:
                query = "SELECT * FROM emails WHERE user_id = ? AND is_sent = 0"
                params: list[Any] = [user_id]

                if unread_only:
                    query += " AND is_read = 0"

                if received_before is not None:
                    query += " AND received_at < ?"
                    params.append(_ts(received_before))

                if from_address:
                    query += " AND lower(from_address) = ?"
                    params.append(from_address.lower())

                query += " ORDER BY received_at DESC"

                if limit:
                    query += " LIMIT ?"
                    params.append(limit)

                cursor = await db.execute(query, params)
                return [self._row_to_email(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to list emails", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to list emails for user {user_id}: {e}") from e

    async def count_replies_to_sender(self, user_id: str, sender: str) -> int:
        """Count messages the user has sent to this sender (correspondence history).

        Accepts a bare address or a display form like 'Alice <alice@example.com>';
        only the address part is matched against recipients.
        """
        _, address = parseaddr(sender or "")
        address = address.strip().lower()
        if not address:
            return 0

        pattern = f"%{_escape_like(address)}%"
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT COUNT(*) AS count FROM emails
                    WHERE user_id = ? AND is_sent = 1
                      AND lower(to_addresses) LIKE ? ESCAPE '\\'
                    """,
                    (user_id, pattern),
                )
                row = await cursor.fetchone()
                return row["count"] if row else 0

        except aiosqlite.Error as e:
            logger.error("Failed to count replies", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to count replies to {sender}: {e}") from e

    async def delete_email(self, email_id: str) -> bool:
        """Delete an email; its decision and feedback rows cascade.

        Returns:
            True if an email was deleted
        """
        try:
            async with self._db() as db:
                cursor = await db.execute("DELETE FROM emails WHERE id = ?", (email_id,))
                await db.commit()
                deleted = cursor.rowcount > 0
                if deleted:
                    logger.info("Email deleted", email_id=email_id)
                return deleted

        except aiosqlite.Error as e:
            logger.error("Failed to delete email", email_id=email_id, error=str(e))
            raise DatabaseError(f"Failed to delete email {email_id}: {e}") from e

    def _row_to_email(self, row: aiosqlite.Row) -> EmailMessage:
        """Convert a database row to an EmailMessage dataclass."""
        return EmailMessage(
            id=row["id"],
            user_id=row["user_id"],
            subject=row["subject"],
            body_text=row["body_text"],
            from_address=row["from_address"],
            to_addresses=row["to_addresses"],
            is_read=bool(row["is_read"]),
            is_sent=bool(row["is_sent"]),
            received_at=_parse_ts(row["received_at"]),
            snippet=row["snippet"],
        )

    # =========================================================================
    # Decision Operations
    # =========================================================================

    async def upsert(self, decision: Decision) -> Decision:
        """Insert a decision, or refresh its classification while still pending.

        One atomic INSERT ... ON CONFLICT DO UPDATE ... WHERE statement. The
        update only applies when the stored record is pending (or its snooze
        has elapsed). Status and snooze fields are never touched here, so a
        resync cannot undo a user's action.

        Args:
            decision: Freshly classified decision

        Returns:
            The stored record (unchanged if it had already been actioned)

        Raises:
            InputValidationError: If email_id or user_id is missing
            DatabaseError: If the operation fails
        """
        if not decision.email_id or not decision.user_id:
            raise InputValidationError(
                "Cannot store a decision without email_id and user_id. "
                "Classify a stored email before persisting its decision."
            )

        now = self._clock.now()
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO email_decisions (
                        email_id, user_id, decision_required, decision_type, reason,
                        urgency, skipped_ai, source, status, detected_at, created_at,
                        updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?)
                    ON CONFLICT(email_id, user_id) DO UPDATE SET
                        decision_required = excluded.decision_required,
                        decision_type = excluded.decision_type,
                        reason = excluded.reason,
                        urgency = excluded.urgency,
                        skipped_ai = excluded.skipped_ai,
                        source = excluded.source,
                        detected_at = excluded.detected_at,
                        updated_at = excluded.updated_at
                    WHERE email_decisions.status = 'pending'
                       OR (email_decisions.status = 'snoozed'
                           AND email_decisions.snoozed_until <= ?)
                    RETURNING id
                    """,
                    (
                        decision.email_id,
                        decision.user_id,
                        1 if decision.decision_required else 0,
                        decision.decision_type,
                        decision.reason,
                        decision.urgency,
                        1 if decision.skipped_ai else 0,
                        decision.source,
                        _ts(decision.detected_at),
                        _ts(now),
                        _ts(now),
                        _ts(now),
                    ),
                )
                applied = await cursor.fetchone() is not None
                await db.commit()

                stored = await self._fetch_decision(db, decision.email_id, decision.user_id)

        except aiosqlite.Error as e:
            logger.error(
                "Failed to upsert decision",
                email_id=decision.email_id,
                user_id=decision.user_id,
                error=str(e),
            )
            raise DatabaseError(f"Failed to upsert decision for {decision.email_id}: {e}") from e

        if stored is None:
            raise DatabaseError(
                f"Decision for {decision.email_id} vanished after upsert. "
                "The parent email may have been deleted concurrently."
            )

        if applied:
            logger.debug(
                "Decision upserted",
                email_id=decision.email_id,
                decision_type=decision.decision_type,
                urgency=decision.urgency,
                source=decision.source,
            )
        else:
            logger.info(
                "decision_reclassify_ignored",
                email_id=decision.email_id,
                user_id=decision.user_id,
                status=stored.status,
                new_decision_type=decision.decision_type,
            )
        return stored

    async def get_decision(self, email_id: str, user_id: str) -> Decision | None:
        """Get the decision for an email, or None if never classified."""
        try:
            async with self._db() as db:
                return await self._fetch_decision(db, email_id, user_id)

        except aiosqlite.Error as e:
            logger.error("Failed to get decision", email_id=email_id, error=str(e))
            raise DatabaseError(f"Failed to get decision for {email_id}: {e}") from e

    async def list_decisions(
        self,
        user_id: str,
        status: DecisionStatus | None = None,
        decision_type: DecisionType | None = None,
        decision_required: bool | None = None,
        limit: int | None = None,
    ) -> list[Decision]:
        """List a user's decisions with optional filters, newest first.

        The status filter matches the stored status, not the effective one.
        """
        try:
            async with self._db() as db:
                query = "SELECT * FROM email_decisions WHERE user_id = ?"
                params: list[Any] = [user_id]

                if status:
                    query += " AND status = ?"
                    params.append(status)

                if decision_type:
                    query += " AND decision_type = ?"
                    params.append(decision_type)

                if decision_required is not None:
                    query += " AND decision_required = ?"
                    params.append(1 if decision_required else 0)

                query += " ORDER BY detected_at DESC"

                if limit:
                    query += " LIMIT ?"
                    params.append(limit)

                cursor = await db.execute(query, params)
                return [self._row_to_decision(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to list decisions", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to list decisions: {e}") from e

    async def list_pending(self, user_id: str, required_only: bool = False) -> list[PendingDecision]:
        """List decisions awaiting the user, with email metadata for display.

        Includes pending records and snoozed records whose snooze has elapsed.

        Args:
            user_id: Owning user
            required_only: Only decisions with decision_required=True
        """
        now = self._clock.now()
        try:
            async with self._db() as db:
                query = f"""
                    SELECT d.*,
                           e.subject AS email_subject,
                           e.from_address AS email_from_address,
                           e.snippet AS email_snippet,
                           e.received_at AS email_received_at
                    FROM email_decisions d
                    LEFT JOIN emails e ON e.id = d.email_id
                    WHERE d.user_id = ? AND {_EFFECTIVELY_PENDING_SQL}
                """
                params: list[Any] = [user_id, _ts(now)]

                if required_only:
                    query += " AND d.decision_required = 1"

                query += f" ORDER BY {_URGENCY_ORDER_SQL}, d.detected_at DESC"

                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()

                return [
                    PendingDecision(
                        decision=self._row_to_decision(row),
                        subject=row["email_subject"],
                        from_address=row["email_from_address"],
                        snippet=row["email_snippet"],
                        received_at=_parse_ts(row["email_received_at"]),
                    )
                    for row in rows
                ]

        except aiosqlite.Error as e:
            logger.error("Failed to list pending decisions", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to list pending decisions: {e}") from e

    async def stats(self, user_id: str) -> DecisionStats:
        """Aggregate counts by effective status, decision type and urgency."""
        now = self._clock.now()
        try:
            async with self._db() as db:
                result = DecisionStats()

                cursor = await db.execute(
                    """
                    SELECT COUNT(*) AS total,
                           COALESCE(SUM(decision_required), 0) AS requires_action,
                           COALESCE(SUM(skipped_ai), 0) AS skipped_ai,
                           COALESCE(SUM(CASE WHEN source = 'fallback' THEN 1 ELSE 0 END), 0)
                               AS fallback
                    FROM email_decisions
                    WHERE user_id = ?
                    """,
                    (user_id,),
                )
                row = await cursor.fetchone()
                if row:
                    result.total = row["total"]
                    result.requires_action = row["requires_action"]
                    result.skipped_ai = row["skipped_ai"]
                    result.fallback = row["fallback"]

                cursor = await db.execute(
                    """
                    SELECT CASE
                               WHEN d.status = 'snoozed' AND d.snoozed_until <= ? THEN 'pending'
                               ELSE d.status
                           END AS effective_status,
                           COUNT(*) AS count
                    FROM email_decisions d
                    WHERE d.user_id = ?
                    GROUP BY effective_status
                    """,
                    (_ts(now), user_id),
                )
                for status_row in await cursor.fetchall():
                    result.by_status[status_row["effective_status"]] = status_row["count"]

                cursor = await db.execute(
                    """
                    SELECT decision_type, COUNT(*) AS count
                    FROM email_decisions
                    WHERE user_id = ?
                    GROUP BY decision_type
                    """,
                    (user_id,),
                )
                for type_row in await cursor.fetchall():
                    result.by_type[type_row["decision_type"]] = type_row["count"]

                cursor = await db.execute(
                    """
                    SELECT urgency, COUNT(*) AS count
                    FROM email_decisions
                    WHERE user_id = ?
                    GROUP BY urgency
                    """,
                    (user_id,),
                )
                for urgency_row in await cursor.fetchall():
                    result.by_urgency[urgency_row["urgency"]] = urgency_row["count"]

                return result

        except aiosqlite.Error as e:
            logger.error("Failed to get decision stats", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to get decision stats: {e}") from e

    # =========================================================================
    # Lifecycle Actions
    # =========================================================================

    async def complete(self, email_id: str, user_id: str) -> Decision:
        """Mark a decision as done. Completing a done record is a no-op."""
        return await self._transition(email_id, user_id, "done")

    async def dismiss(self, email_id: str, user_id: str) -> Decision:
        """Dismiss (ignore) a decision."""
        return await self._transition(email_id, user_id, "dismissed")

    async def snooze(self, email_id: str, user_id: str, until: datetime) -> Decision:
        """Hide a decision from the pending list until a future time.

        Raises:
            InvalidArgumentError: If until is not after now (nothing is written)
            NotFoundError: If the email was never classified
        """
        until = ensure_utc(until)
        now = self._clock.now()
        if until <= now:
            raise InvalidArgumentError(
                f"Cannot snooze decision for {email_id} until {until.isoformat()}: "
                f"the time must be after now ({now.isoformat()})."
            )
        return await self._transition(email_id, user_id, "snoozed", snoozed_until=until)

    async def mark_not_decision(
        self,
        email_id: str,
        user_id: str,
        comment: str | None = None,
    ) -> Decision:
        """Mark an email as not needing a decision and record the feedback.

        The feedback row is written in the same transaction as the status change.
        """
        try:
            async with self._db() as db:
                decision, applied = await self._apply_transition(
                    db, email_id, user_id, "not_decision"
                )
                if applied:
                    await self._insert_feedback(
                        db,
                        email_id=email_id,
                        user_id=user_id,
                        feedback_type="not_decision",
                        original_type=decision.decision_type,
                        comment=comment or "User marked as not a decision",
                    )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to mark not a decision", email_id=email_id, error=str(e))
            raise DatabaseError(f"Failed to mark {email_id} as not a decision: {e}") from e

        if applied:
            logger.info("Decision marked not_decision", email_id=email_id, user_id=user_id)
        return decision

    async def _transition(
        self,
        email_id: str,
        user_id: str,
        target: DecisionStatus,
        snoozed_until: datetime | None = None,
    ) -> Decision:
        """Run one lifecycle transition in its own transaction."""
        try:
            async with self._db() as db:
                decision, applied = await self._apply_transition(
                    db, email_id, user_id, target, snoozed_until
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error(
                "Failed to update decision status",
                email_id=email_id,
                target=target,
                error=str(e),
            )
            raise DatabaseError(f"Failed to set decision {email_id} to {target}: {e}") from e

        if applied:
            logger.info(
                "Decision status updated",
                email_id=email_id,
                user_id=user_id,
                status=target,
                snoozed_until=snoozed_until.isoformat() if snoozed_until else None,
            )
        return decision

    async def _apply_transition(
        self,
        db: aiosqlite.Connection,
        email_id: str,
        user_id: str,
        target: DecisionStatus,
        snoozed_until: datetime | None = None,
    ) -> tuple[Decision, bool]:
        """Conditionally update status; the caller commits.

        Returns:
            (stored decision, whether the update applied)

        Raises:
            NotFoundError: No decision for (email_id, user_id)
            InvalidStateTransitionError: Record is in a different terminal state
        """
        placeholders = ",".join("?" * len(_ACTIONABLE_STATUSES))
        cursor = await db.execute(
            f"""
            UPDATE email_decisions
            SET status = ?, snoozed_until = ?, updated_at = ?
            WHERE email_id = ? AND user_id = ? AND status IN ({placeholders})
            RETURNING id
            """,
            (
                target,
                _ts(snoozed_until) if snoozed_until else None,
                _ts(self._clock.now()),
                email_id,
                user_id,
                *_ACTIONABLE_STATUSES,
            ),
        )
        row = await cursor.fetchone()
        current = await self._fetch_decision(db, email_id, user_id)

        if current is None:
            raise NotFoundError(
                f"No decision found for email {email_id} (user {user_id}). "
                "Classify the email before acting on it.",
                email_id=email_id,
                user_id=user_id,
            )

        if row is not None:
            return current, True

        if current.status == target:
            logger.debug("Decision already in requested status", email_id=email_id, status=target)
            return current, False

        raise InvalidStateTransitionError(
            f"Cannot move decision for {email_id} from '{current.status}' to '{target}'. "
            "Only pending or snoozed decisions can be actioned.",
            email_id=email_id,
            user_id=user_id,
            current_status=current.status,
            requested_status=target,
        )

    async def _fetch_decision(
        self, db: aiosqlite.Connection, email_id: str, user_id: str
    ) -> Decision | None:
        cursor = await db.execute(
            "SELECT * FROM email_decisions WHERE email_id = ? AND user_id = ?",
            (email_id, user_id),
        )
        row = await cursor.fetchone()
        return self._row_to_decision(row) if row else None

    def _row_to_decision(self, row: aiosqlite.Row) -> Decision:
        """Convert a database row to a Decision dataclass."""
        return Decision(
            id=row["id"],
            email_id=row["email_id"],
            user_id=row["user_id"],
            decision_required=bool(row["decision_required"]),
            decision_type=row["decision_type"],
            reason=row["reason"] or "",
            urgency=row["urgency"],
            skipped_ai=bool(row["skipped_ai"]),
            source=row["source"],
            status=row["status"],
            snoozed_until=_parse_ts(row["snoozed_until"]),
            detected_at=_parse_ts(row["detected_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    # =========================================================================
    # Feedback Operations
    # =========================================================================

    async def record_feedback(
        self,
        email_id: str,
        user_id: str,
        feedback_type: FeedbackType,
        comment: str | None = None,
    ) -> int:
        """Store feedback on a classified email.

        Raises:
            NotFoundError: If the email was never classified
        """
        try:
            async with self._db() as db:
                decision = await self._fetch_decision(db, email_id, user_id)
                if decision is None:
                    raise NotFoundError(
                        f"No decision found for email {email_id} (user {user_id}). "
                        "Feedback can only be left on classified email.",
                        email_id=email_id,
                        user_id=user_id,
                    )
                feedback_id = await self._insert_feedback(
                    db,
                    email_id=email_id,
                    user_id=user_id,
                    feedback_type=feedback_type,
                    original_type=decision.decision_type,
                    comment=comment,
                )
                await db.commit()
                return feedback_id

        except aiosqlite.Error as e:
            logger.error("Failed to record feedback", email_id=email_id, error=str(e))
            raise DatabaseError(f"Failed to record feedback for {email_id}: {e}") from e

    async def list_feedback(
        self, user_id: str, feedback_type: FeedbackType | None = None, limit: int = 100
    ) -> list[DecisionFeedback]:
        """List a user's feedback, newest first."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM decision_feedback WHERE user_id = ?"
                params: list[Any] = [user_id]
                if feedback_type:
                    query += " AND feedback_type = ?"
                    params.append(feedback_type)
                query += " ORDER BY created_at DESC, id DESC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                return [
                    DecisionFeedback(
                        id=row["id"],
                        user_id=row["user_id"],
                        email_id=row["email_id"],
                        feedback_type=row["feedback_type"],
                        created_at=_parse_ts(row["created_at"]),
                        original_type=row["original_type"],
                        comment=row["comment"],
                        sender_domain=row["sender_domain"],
                        subject_pattern=row["subject_pattern"],
                    )
                    for row in await cursor.fetchall()
                ]

        except aiosqlite.Error as e:
            logger.error("Failed to list feedback", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to list feedback: {e}") from e

    async def _insert_feedback(
        self,
        db: aiosqlite.Connection,
        email_id: str,
        user_id: str,
        feedback_type: FeedbackType,
        original_type: str | None,
        comment: str | None,
    ) -> int:
        cursor = await db.execute(
            "SELECT subject, from_address FROM emails WHERE id = ?", (email_id,)
        )
        email_row = await cursor.fetchone()
        subject = email_row["subject"] if email_row else None
        from_address = email_row["from_address"] if email_row else None

        cursor = await db.execute(
            """
            INSERT INTO decision_feedback (
                user_id, email_id, feedback_type, original_type, comment,
                sender_domain, subject_pattern, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                email_id,
                feedback_type,
                original_type,
                comment,
                sender_domain(from_address),
                subject_pattern(subject),
                _ts(self._clock.now()),
            ),
        )
        return cursor.lastrowid

    # =========================================================================
    # LLM Log Operations
    # =========================================================================

    async def log_llm_request(
        self,
        task_type: str,
        model: str,
        prompt: dict[str, Any] | list[dict[str, Any]],
        response: dict[str, Any] | None = None,
        tool_call: dict[str, Any] | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        duration_ms: int | None = None,
        email_id: str | None = None,
        error: str | None = None,
    ) -> int:
        """Log an LLM request for debugging.

        Returns:
            The log entry ID
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO llm_request_log (
                        timestamp, task_type, model, email_id, batch_id,
                        prompt_json, response_json, tool_call_json,
                        input_tokens, output_tokens, duration_ms, error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _ts(self._clock.now()),
                        task_type,
                        model,
                        email_id,
                        get_correlation_id(),
                        json.dumps(prompt),
                        json.dumps(response) if response else None,
                        json.dumps(tool_call) if tool_call else None,
                        input_tokens,
                        output_tokens,
                        duration_ms,
                        error,
                    ),
                )
                await db.commit()
                return cursor.lastrowid

        except aiosqlite.Error as e:
            logger.error("Failed to log LLM request", task_type=task_type, error=str(e))
            raise DatabaseError(f"Failed to log LLM request: {e}") from e

    async def get_llm_logs(
        self,
        limit: int = 100,
        email_id: str | None = None,
        batch_id: str | None = None,
    ) -> list[LLMLogEntry]:
        """Get LLM request logs with optional filters, newest first."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM llm_request_log WHERE 1=1"
                params: list[Any] = []

                if email_id:
                    query += " AND email_id = ?"
                    params.append(email_id)

                if batch_id:
                    query += " AND batch_id = ?"
                    params.append(batch_id)

                query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                return [self._row_to_llm_log(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to get LLM logs", error=str(e))
            raise DatabaseError(f"Failed to get LLM logs: {e}") from e

    async def prune_llm_logs(self, retention_days: int) -> int:
        """Delete LLM logs older than the retention period.

        Returns:
            Number of entries deleted
        """
        cutoff = self._clock.now() - timedelta(days=retention_days)
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "DELETE FROM llm_request_log WHERE timestamp < ?",
                    (_ts(cutoff),),
                )
                await db.commit()

                deleted = cursor.rowcount
                if deleted:
                    logger.info(
                        "Pruned LLM logs",
                        deleted=deleted,
                        retention_days=retention_days,
                    )
                return deleted

        except aiosqlite.Error as e:
            logger.error("Failed to prune LLM logs", error=str(e))
            raise DatabaseError(f"Failed to prune LLM logs: {e}") from e

    def _row_to_llm_log(self, row: aiosqlite.Row) -> LLMLogEntry:
        """Convert a database row to an LLMLogEntry dataclass."""

        def _load(value: str | None) -> dict[str, Any] | None:
            if not value:
                return None
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return None

        return LLMLogEntry(
            id=row["id"],
            timestamp=_parse_ts(row["timestamp"]),
            task_type=row["task_type"],
            model=row["model"],
            email_id=row["email_id"],
            batch_id=row["batch_id"],
            prompt_json=_load(row["prompt_json"]),
            response_json=_load(row["response_json"]),
            tool_call_json=_load(row["tool_call_json"]),
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            duration_ms=row["duration_ms"],
            error=row["error"],
        )
