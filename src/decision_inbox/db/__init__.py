"""Database layer for the Decision Inbox.

This module provides SQLite database access with async operations.

Usage:
    from decision_inbox.db import Decision, DecisionStore, EmailMessage

    store = DecisionStore("data/decisions.db")
    await store.initialize()

    # Save an email (normally done by mail sync)
    await store.save_email(EmailMessage(id="abc123", user_id="me", subject="Hello"))

    # Act on its decision
    await store.complete("abc123", "me")
"""

from decision_inbox.db.models import (
    SCHEMA_VERSION,
    init_database,
    verify_schema,
)
from decision_inbox.db.store import (
    Decision,
    DecisionFeedback,
    DecisionStats,
    DecisionStore,
    EmailMessage,
    LLMLogEntry,
    PendingDecision,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DecisionStore",
    # Dataclasses
    "Decision",
    "DecisionFeedback",
    "DecisionStats",
    "EmailMessage",
    "LLMLogEntry",
    "PendingDecision",
]
