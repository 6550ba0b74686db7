"""Cheap per-email signals for the pre-check gate.

Everything here is a pure function of its arguments. The reply count and
the current time are passed in by the caller; nothing in this module reads
the store, the correspondence history or the wall clock.

Matching uses case-insensitive substring search. No regex is used, so
there is no ReDoS risk.

Usage:
    from decision_inbox.classifier.features import extract_features

    features = extract_features(
        subject="Quick question",
        body_text="Can you help me with this?",
        is_read=False,
        received_at=received,
        reply_count_to_sender=0,
        now=clock.now(),
    )
    features.has_question_mark  # True
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from decision_inbox.core.clock import ensure_utc

if TYPE_CHECKING:
    from decision_inbox.config_schema import AppConfig
    from decision_inbox.db.store import EmailMessage

# Sender is a frequent correspondent when the user replied MORE than this many times
FREQUENT_REPLY_THRESHOLD = 3

ACTION_KEYWORDS: tuple[str, ...] = (
    "please confirm",
    "let me know",
    "deadline",
    "due",
    "submit",
    "reply",
    "respond",
    "urgent",
    "asap",
    "action required",
    "your response",
    "waiting for",
    "need your",
)

_SECONDS_PER_DAY = 86400


@dataclass(frozen=True, slots=True)
class EmailFeatures:
    """Signals derived from one email.

    Attributes:
        has_question_mark: Subject or body contains a literal '?'
        has_action_keyword: Subject or body contains an action keyword
        is_frequent_correspondent: User replied to this sender often
        unread_age_days: Whole days the email has been unread (0 once read)
        matched_keyword: First action keyword found, for logging
    """

    has_question_mark: bool
    has_action_keyword: bool
    is_frequent_correspondent: bool
    unread_age_days: int
    matched_keyword: str | None = None


def find_action_keyword(text: str, extra_keywords: Iterable[str] = ()) -> str | None:
    """Return the first action keyword contained in text, or None."""
    text_lower = text.lower()
    for keyword in (*ACTION_KEYWORDS, *extra_keywords):
        if keyword and keyword.lower() in text_lower:
            return keyword
    return None


def unread_age_in_days(is_read: bool, received_at: datetime | None, now: datetime) -> int:
    """Whole days between received_at and now while the email is unread.

    Returns 0 for read email, missing timestamps and timestamps in the future.
    """
    if is_read or received_at is None:
        return 0
    elapsed = (ensure_utc(now) - ensure_utc(received_at)).total_seconds()
    if elapsed <= 0:
        return 0
    return int(elapsed // _SECONDS_PER_DAY)


def extract_features(
    subject: str | None,
    body_text: str | None,
    is_read: bool,
    received_at: datetime | None,
    reply_count_to_sender: int,
    *,
    now: datetime,
    frequent_reply_threshold: int = FREQUENT_REPLY_THRESHOLD,
    extra_keywords: Iterable[str] = (),
) -> EmailFeatures:
    """Derive the pre-check signals for one email.

    Args:
        subject: Email subject line
        body_text: Plain-text body
        is_read: Whether the user has opened the email
        received_at: When the email arrived
        reply_count_to_sender: Times the user has replied to this sender
        now: Current time (from the caller's clock)
        frequent_reply_threshold: Replies above this count mark a frequent correspondent
        extra_keywords: Configured keywords added to ACTION_KEYWORDS

    Returns:
        EmailFeatures for the gate
    """
    combined = f"{subject or ''}\n{body_text or ''}"
    matched = find_action_keyword(combined, extra_keywords)

    return EmailFeatures(
        has_question_mark="?" in combined,
        has_action_keyword=matched is not None,
        is_frequent_correspondent=reply_count_to_sender > frequent_reply_threshold,
        unread_age_days=unread_age_in_days(is_read, received_at, now),
        matched_keyword=matched,
    )


def features_from_email(
    email: EmailMessage,
    reply_count_to_sender: int,
    now: datetime,
    config: AppConfig,
) -> EmailFeatures:
    """Convenience wrapper: extract features from a stored email using config thresholds."""
    return extract_features(
        subject=email.subject,
        body_text=email.body_text,
        is_read=email.is_read,
        received_at=email.received_at,
        reply_count_to_sender=reply_count_to_sender,
        now=now,
        frequent_reply_threshold=config.precheck.frequent_reply_threshold,
        extra_keywords=config.precheck.extra_action_keywords,
    )
