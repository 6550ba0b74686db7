"""Prompt text and tool definition for Claude decision classification.

The system prompt is static. The user message is assembled per email from
the subject and a cleaned, length-capped body. Classification output is
forced through the `classify_decision` tool so the response is structured.

Usage:
    from decision_inbox.classifier.prompts import (
        CLASSIFY_DECISION_TOOL,
        SYSTEM_PROMPT,
        build_user_message,
    )

    message = build_user_message(subject, body_text, max_body_chars=2000)
"""

from __future__ import annotations

from typing import Any

import regex

from decision_inbox.core.logging import get_logger

logger = get_logger(__name__)

# Regex timeout in seconds (all operations MUST use this)
REGEX_TIMEOUT = 1.0

HTML_TAG_PATTERN = regex.compile(r"<[^>]+>")
WHITESPACE_PATTERN = regex.compile(r"\s+")

# Reasons are shown as a one-line badge in the decision inbox
MAX_REASON_WORDS = 12

# ---------------------------------------------------------------------------
# Tool definition
# ---------------------------------------------------------------------------

CLASSIFY_DECISION_TOOL: dict[str, Any] = {
    "name": "classify_decision",
    "description": "Record whether an email requires a decision or action from the reader",
    "input_schema": {
        "type": "object",
        "properties": {
            "decision_type": {
                "type": "string",
                "enum": [
                    "reply_required",
                    "deadline",
                    "follow_up",
                    "informational_only",
                ],
                "description": (
                    "reply_required: explicitly asks for a response or answer; "
                    "deadline: contains a time-sensitive deadline or due date; "
                    "follow_up: needs follow-up action but is not urgent; "
                    "informational_only: no action needed"
                ),
            },
            "reason": {
                "type": "string",
                "description": f"Short human-readable reason (max {MAX_REASON_WORDS} words)",
            },
            "urgency": {
                "type": "string",
                "enum": [
                    "decide_now",
                    "decide_soon",
                    "expires_soon",
                    "optional",
                ],
                "description": (
                    "decide_now: deadline within about two days or an explicit choice is "
                    "blocking someone; decide_soon: reply or deadline within a week; "
                    "expires_soon: time-boxed opportunity that lapses if ignored; "
                    "optional: no time pressure"
                ),
            },
        },
        "required": ["decision_type", "reason", "urgency"],
    },
}

VALID_DECISION_TYPES = frozenset(
    CLASSIFY_DECISION_TOOL["input_schema"]["properties"]["decision_type"]["enum"]
)
VALID_URGENCIES = frozenset(
    CLASSIFY_DECISION_TOOL["input_schema"]["properties"]["urgency"]["enum"]
)

SYSTEM_PROMPT = f"""You are an email decision classifier for a productivity email client.

Decide whether the email needs the reader to do something: reply, confirm,
act, or meet a deadline. Purely informational, promotional and newsletter
email needs nothing.

Choose exactly ONE decision type:
- reply_required: the email explicitly asks for a response or answer
- deadline: the email contains a time-sensitive deadline or due date
- follow_up: the email needs follow-up action but is not urgent
- informational_only: no action needed, purely informational

Rate how soon the reader has to act:
- decide_now: a deadline within about two days, or a choice someone is waiting on
- decide_soon: a reply or deadline within the week
- expires_soon: an opportunity that lapses if ignored, with no hard deadline
- optional: no time pressure (always use this for informational_only)

Give a short human-readable reason of at most {MAX_REASON_WORDS} words.

Always answer by calling the classify_decision tool."""


def _safe_sub(pattern: regex.Pattern, replacement: str, text: str) -> str:
    """Substitute with a timeout; return the input unchanged on timeout."""
    try:
        return pattern.sub(replacement, text, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        logger.warning("Regex timeout during substitution", pattern=pattern.pattern)
        return text


def prepare_body(body_text: str | None, max_chars: int) -> str:
    """Strip stray HTML tags, collapse whitespace and cap the length."""
    if not body_text:
        return ""
    text = _safe_sub(HTML_TAG_PATTERN, " ", body_text)
    text = _safe_sub(WHITESPACE_PATTERN, " ", text).strip()
    return text[:max_chars]


def build_user_message(subject: str | None, body_text: str | None, max_body_chars: int) -> str:
    """Assemble the per-email user message.

    Args:
        subject: Email subject line
        body_text: Plain-text body
        max_body_chars: Characters of the cleaned body to include

    Returns:
        User message string
    """
    subject_line = _safe_sub(WHITESPACE_PATTERN, " ", subject or "").strip() or "(no subject)"
    body = prepare_body(body_text, max_body_chars) or "(empty body)"
    return f"Classify this email:\n\nSubject: {subject_line}\nBody: {body}"


def truncate_reason(reason: str, max_words: int = MAX_REASON_WORDS) -> str:
    """Cap a reason at max_words words."""
    words = reason.split()
    if len(words) <= max_words:
        return " ".join(words)
    return " ".join(words[:max_words])
