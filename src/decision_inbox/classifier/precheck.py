"""Pre-check gate: decide whether an email needs the AI classifier at all.

The gate is a recall-biased OR of four cheap triggers. It may send
informational mail to the classifier, but it must never skip an email that
shows any of the triggers. A new trigger may only be OR-ed in.

Usage:
    from decision_inbox.classifier.precheck import should_run_ai

    if not should_run_ai(features):
        decision = build_fast_path_decision(...)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from decision_inbox.classifier.features import EmailFeatures

# Unread email older than this many whole days goes to the classifier
STALE_UNREAD_DAYS = 3

PRECHECK_REASON = "No action indicators found"


def should_run_ai(features: EmailFeatures, *, stale_unread_days: int = STALE_UNREAD_DAYS) -> bool:
    """Return True when the AI classifier should run for this email.

    Args:
        features: Output of the feature extractor
        stale_unread_days: Unread age (days) above which the email is sent to AI

    Returns:
        False only when none of the triggers fire
    """
    return (
        features.has_question_mark
        or features.has_action_keyword
        or features.is_frequent_correspondent
        or features.unread_age_days > stale_unread_days
    )


def explain_gate(
    features: EmailFeatures, *, stale_unread_days: int = STALE_UNREAD_DAYS
) -> list[str]:
    """List the triggers that fired, for structured logging."""
    triggers = []
    if features.has_question_mark:
        triggers.append("question_mark")
    if features.has_action_keyword:
        triggers.append(f"action_keyword:{features.matched_keyword}")
    if features.is_frequent_correspondent:
        triggers.append("frequent_correspondent")
    if features.unread_age_days > stale_unread_days:
        triggers.append("stale_unread")
    return triggers
