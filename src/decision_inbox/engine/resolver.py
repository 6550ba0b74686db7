"""Decision resolver: turns a stored email into a persisted decision.

Pipeline per email:
1. Validate the payload (email id, user id, reply count)
2. Extract pre-check features
3. Run the pre-check gate
4. Gate closed -> fast-path decision, no classifier call
5. Gate open -> AI classifier (fallback outcome on any classifier failure)
6. Upsert into the store and return the stored record

Batches run every email as an independent task bounded by a semaphore, so
one slow or failing email never blocks or aborts the rest. Each batch gets
a UUID4 batch_id set as the logging correlation ID.

Usage:
    from decision_inbox.engine.resolver import ClassificationContext, DecisionResolver

    resolver = DecisionResolver(classifier=classifier, store=store, config=config)
    decision = await resolver.classify(email, ClassificationContext(reply_count_to_sender=2))
    result = await resolver.reclassify_stored("user-1", unread_only=True)
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from email.utils import parseaddr
from typing import TYPE_CHECKING

from decision_inbox.classifier.features import features_from_email
from decision_inbox.classifier.precheck import PRECHECK_REASON, explain_gate, should_run_ai
from decision_inbox.core.clock import Clock, SystemClock
from decision_inbox.core.errors import InputValidationError
from decision_inbox.core.logging import get_correlation_id, get_logger, set_correlation_id
from decision_inbox.db.store import Decision, EmailMessage

if TYPE_CHECKING:
    from decision_inbox.classifier.claude_classifier import DecisionClassifier
    from decision_inbox.config_schema import AppConfig
    from decision_inbox.db.store import DecisionStore

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Input and result dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ClassificationContext:
    """Per-email facts supplied by the caller.

    Attributes:
        reply_count_to_sender: Times the user has replied to this sender
    """

    reply_count_to_sender: int = 0


@dataclass
class BatchResult:
    """Result of classifying a batch of emails."""

    batch_id: str
    duration_ms: int = 0
    total: int = 0
    fast_path: int = 0
    ai_classified: int = 0
    fallback: int = 0
    failed: int = 0
    decisions: list[Decision] = field(default_factory=list)
    failures: list[tuple[str, str]] = field(default_factory=list)


@dataclass
class _Resolved:
    """Internal result for one email: what was classified and what is stored."""

    source: str
    stored: Decision


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class DecisionResolver:
    """Runs the features -> gate -> classifier -> store pipeline.

    Attributes:
        _classifier: AI classifier adapter
        _store: DecisionStore for persistence and correspondence history
        _config: Application configuration
        _clock: Time source for unread age and detected_at
    """

    def __init__(
        self,
        classifier: DecisionClassifier,
        store: DecisionStore,
        config: AppConfig,
        clock: Clock | None = None,
    ):
        self._classifier = classifier
        self._store = store
        self._config = config
        self._clock = clock or SystemClock()

    async def classify(self, email: EmailMessage, context: ClassificationContext) -> Decision:
        """Classify one email and persist the decision.

        Returns:
            The stored decision. If the user already actioned this email, the
            stored record is returned unchanged.

        Raises:
            InputValidationError: If the payload is malformed
            DatabaseError: If the store write fails
        """
        resolved = await self._resolve(email, context)
        return resolved.stored

    async def classify_batch(
        self, items: Iterable[tuple[EmailMessage, ClassificationContext]]
    ) -> BatchResult:
        """Classify many emails as independent tasks.

        Failures are collected per email; they never abort the batch.
        """
        items = list(items)
        outer_correlation_id = get_correlation_id()
        batch_id = str(uuid.uuid4())
        set_correlation_id(batch_id)
        start_time = time.monotonic()

        result = BatchResult(batch_id=batch_id, total=len(items))
        semaphore = asyncio.Semaphore(self._config.resolver.max_concurrency)

        async def _run(email: EmailMessage, context: ClassificationContext) -> _Resolved:
            async with semaphore:
                return await self._resolve(email, context)

        logger.info(
            "decision_batch_start",
            total=len(items),
            max_concurrency=self._config.resolver.max_concurrency,
        )

        try:
            outcomes = await asyncio.gather(
                *(_run(email, context) for email, context in items),
                return_exceptions=True,
            )

            for (email, _context), outcome in zip(items, outcomes, strict=True):
                if isinstance(outcome, Exception):
                    result.failed += 1
                    result.failures.append((email.id, str(outcome)))
                    logger.error(
                        "decision_classify_failed",
                        email_id=email.id,
                        error=str(outcome),
                        error_type=type(outcome).__name__,
                    )
                    continue
                if isinstance(outcome, BaseException):
                    raise outcome

                result.decisions.append(outcome.stored)
                if outcome.source == "precheck":
                    result.fast_path += 1
                elif outcome.source == "fallback":
                    result.fallback += 1
                else:
                    result.ai_classified += 1

        finally:
            result.duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.info(
                "decision_batch_complete",
                total=result.total,
                fast_path=result.fast_path,
                ai_classified=result.ai_classified,
                fallback=result.fallback,
                failed=result.failed,
                duration_ms=result.duration_ms,
            )
            set_correlation_id(outer_correlation_id)

        return result

    async def reclassify_stored(
        self,
        user_id: str,
        *,
        unread_only: bool = False,
        limit: int | None = None,
    ) -> BatchResult:
        """Re-run classification over a user's stored email.

        Reply counts come from the store's sent-mail history. Emails whose
        decision was already actioned keep their stored status.
        """
        emails = await self._store.list_emails(user_id, unread_only=unread_only, limit=limit)

        reply_counts: dict[str, int] = {}
        items: list[tuple[EmailMessage, ClassificationContext]] = []
        for email in emails:
            sender = parseaddr(email.from_address or "")[1].strip().lower()
            if sender not in reply_counts:
                reply_counts[sender] = await self._store.count_replies_to_sender(user_id, sender)
            items.append(
                (email, ClassificationContext(reply_count_to_sender=reply_counts[sender]))
            )

        logger.info(
            "reclassify_stored",
            user_id=user_id,
            emails=len(items),
            unread_only=unread_only,
        )
        return await self.classify_batch(items)

    async def _resolve(self, email: EmailMessage, context: ClassificationContext) -> _Resolved:
        _validate(email, context)

        now = self._clock.now()
        features = features_from_email(email, context.reply_count_to_sender, now, self._config)
        stale_days = self._config.precheck.stale_unread_days

        if not should_run_ai(features, stale_unread_days=stale_days):
            logger.debug("decision_fast_path", email_id=email.id)
            decision = Decision(
                email_id=email.id,
                user_id=email.user_id,
                decision_required=False,
                decision_type="informational_only",
                reason=PRECHECK_REASON,
                urgency="optional",
                skipped_ai=True,
                detected_at=now,
                source="precheck",
            )
        else:
            logger.debug(
                "decision_gate_open",
                email_id=email.id,
                triggers=explain_gate(features, stale_unread_days=stale_days),
            )
            outcome = await self._classifier.classify(
                email.subject, email.body_text, email_id=email.id
            )
            required = outcome.decision_type != "informational_only"
            decision = Decision(
                email_id=email.id,
                user_id=email.user_id,
                decision_required=required,
                decision_type=outcome.decision_type,
                reason=outcome.reason,
                urgency=outcome.urgency if required else "optional",
                skipped_ai=False,
                detected_at=self._clock.now(),
                source="ai" if outcome.ok else "fallback",
            )

        stored = await self._store.upsert(decision)
        return _Resolved(source=decision.source, stored=stored)


def _validate(email: EmailMessage, context: ClassificationContext) -> None:
    """Reject payloads the pipeline cannot key or reason about."""
    if not email.id or not str(email.id).strip():
        raise InputValidationError(
            "Email is missing its id. Save the email before classifying it."
        )
    if not email.user_id or not str(email.user_id).strip():
        raise InputValidationError(
            f"Email {email.id} is missing its user_id. Every decision is owned by one user."
        )
    count = context.reply_count_to_sender
    if isinstance(count, bool) or not isinstance(count, int) or count < 0:
        raise InputValidationError(
            f"Invalid reply_count_to_sender {count!r} for email {email.id}. "
            "Must be a non-negative integer."
        )
