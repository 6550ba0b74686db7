"""Tests for the decision resolver.

Tests the single-email pipeline (fast path, AI path, fallback), payload
validation, batch isolation and concurrency, and re-classification of
stored email.
"""

import asyncio
from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import NOW, make_email

from decision_inbox.classifier.claude_classifier import (
    FALLBACK_REASON,
    ClaudeDecisionClassifier,
    ClassifierOutcome,
)
from decision_inbox.classifier.precheck import PRECHECK_REASON
from decision_inbox.config_schema import AppConfig
from decision_inbox.core.clock import FixedClock
from decision_inbox.core.errors import InputValidationError
from decision_inbox.core.logging import get_correlation_id
from decision_inbox.db.store import DecisionStore, EmailMessage
from decision_inbox.engine.resolver import ClassificationContext, DecisionResolver

NO_HISTORY = ClassificationContext(reply_count_to_sender=0)


@pytest.fixture
def mock_classifier() -> MagicMock:
    """Return a mock classifier that always answers reply_required."""
    classifier = MagicMock()
    classifier.classify = AsyncMock(
        return_value=ClassifierOutcome("reply_required", "Asks for help")
    )
    return classifier


@pytest.fixture
def resolver(
    mock_classifier: MagicMock,
    store: DecisionStore,
    sample_config: AppConfig,
    clock: FixedClock,
) -> DecisionResolver:
    return DecisionResolver(
        classifier=mock_classifier, store=store, config=sample_config, clock=clock
    )


async def _save(store: DecisionStore, email: EmailMessage) -> EmailMessage:
    await store.save_email(email)
    return email


class TestFastPath:
    """Gate closed: no classifier call."""

    async def test_newsletter_skips_ai(
        self, resolver: DecisionResolver, store: DecisionStore, mock_classifier: MagicMock
    ) -> None:
        email = await _save(store, make_email())

        decision = await resolver.classify(email, NO_HISTORY)

        assert decision.decision_required is False
        assert decision.decision_type == "informational_only"
        assert decision.reason == PRECHECK_REASON
        assert decision.skipped_ai is True
        assert decision.source == "precheck"
        assert decision.detected_at == NOW
        assert decision.urgency == "optional"
        assert mock_classifier.classify.await_count == 0

    async def test_recently_received_unread_skips_ai(
        self, resolver: DecisionResolver, store: DecisionStore, mock_classifier: MagicMock
    ) -> None:
        email = await _save(
            store, make_email(is_read=False, received_at=NOW - timedelta(days=3, hours=20))
        )

        decision = await resolver.classify(email, NO_HISTORY)

        assert decision.skipped_ai is True
        mock_classifier.classify.assert_not_awaited()


class TestAIPath:
    """Gate open: classifier decides."""

    async def test_question_goes_to_ai(
        self, resolver: DecisionResolver, store: DecisionStore, mock_classifier: MagicMock
    ) -> None:
        email = await _save(
            store,
            make_email(
                subject="Quick question", body_text="Can you help me with this?", is_read=False
            ),
        )

        decision = await resolver.classify(email, NO_HISTORY)

        assert decision.decision_required is True
        assert decision.decision_type == "reply_required"
        assert decision.skipped_ai is False
        assert decision.source == "ai"
        mock_classifier.classify.assert_awaited_once_with(
            "Quick question", "Can you help me with this?", email_id="msg-001"
        )

    async def test_keyword_goes_to_ai(
        self, resolver: DecisionResolver, store: DecisionStore, mock_classifier: MagicMock
    ) -> None:
        mock_classifier.classify.return_value = ClassifierOutcome("deadline", "Due Friday 5pm")
        email = await _save(store, make_email(subject="Project due", body_text="Deadline Friday 5pm"))

        decision = await resolver.classify(email, NO_HISTORY)

        assert decision.decision_type == "deadline"
        assert mock_classifier.classify.await_count == 1

    async def test_stale_unread_goes_to_ai(
        self, resolver: DecisionResolver, store: DecisionStore, mock_classifier: MagicMock
    ) -> None:
        email = await _save(
            store,
            make_email(
                subject="Hello",
                body_text="Just checking in.",
                is_read=False,
                received_at=NOW - timedelta(days=5),
            ),
        )

        await resolver.classify(email, NO_HISTORY)

        assert mock_classifier.classify.await_count == 1

    async def test_frequent_correspondent_goes_to_ai(
        self, resolver: DecisionResolver, store: DecisionStore, mock_classifier: MagicMock
    ) -> None:
        email = await _save(store, make_email())

        await resolver.classify(email, ClassificationContext(reply_count_to_sender=4))

        assert mock_classifier.classify.await_count == 1

    async def test_urgency_from_classifier(
        self, resolver: DecisionResolver, store: DecisionStore, mock_classifier: MagicMock
    ) -> None:
        mock_classifier.classify.return_value = ClassifierOutcome(
            "deadline", "Due tomorrow", "decide_now"
        )
        email = await _save(store, make_email(body_text="Submit by tomorrow"))

        decision = await resolver.classify(email, NO_HISTORY)

        assert decision.urgency == "decide_now"
        assert decision.level == 2

    async def test_informational_outcome_stored_as_optional(
        self, resolver: DecisionResolver, store: DecisionStore, mock_classifier: MagicMock
    ) -> None:
        mock_classifier.classify.return_value = ClassifierOutcome(
            "informational_only", "Status update only", "decide_soon"
        )
        email = await _save(store, make_email(body_text="Any questions?"))

        decision = await resolver.classify(email, NO_HISTORY)

        assert decision.decision_required is False
        assert decision.urgency == "optional"

    async def test_ai_says_informational(
        self, resolver: DecisionResolver, store: DecisionStore, mock_classifier: MagicMock
    ) -> None:
        mock_classifier.classify.return_value = ClassifierOutcome(
            "informational_only", "Status update only"
        )
        email = await _save(store, make_email(body_text="Any questions? None needed."))

        decision = await resolver.classify(email, NO_HISTORY)

        assert decision.decision_required is False
        assert decision.skipped_ai is False
        assert decision.source == "ai"

    async def test_fallback_is_stored(
        self, resolver: DecisionResolver, store: DecisionStore, mock_classifier: MagicMock
    ) -> None:
        mock_classifier.classify.return_value = ClassifierOutcome.fallback("timed out")
        email = await _save(store, make_email(body_text="Can you confirm?"))

        decision = await resolver.classify(email, NO_HISTORY)

        assert decision.decision_required is False
        assert decision.decision_type == "informational_only"
        assert decision.reason == FALLBACK_REASON
        assert decision.skipped_ai is False
        assert decision.source == "fallback"
        assert decision.urgency == "optional"
        assert (await store.get_decision("msg-001", "user-1")).source == "fallback"

    async def test_timeout_through_real_adapter(
        self, store: DecisionStore, clock: FixedClock
    ) -> None:
        async def _slow(**kwargs: Any) -> None:
            await asyncio.sleep(5)

        client = MagicMock()
        client.messages.create = _slow
        config = AppConfig(classifier={"timeout_seconds": 0.1})
        resolver = DecisionResolver(
            classifier=ClaudeDecisionClassifier(anthropic_client=client, config=config),
            store=store,
            config=config,
            clock=clock,
        )
        email = await _save(store, make_email(body_text="Urgent: please confirm"))

        decision = await asyncio.wait_for(resolver.classify(email, NO_HISTORY), timeout=2)

        assert decision.source == "fallback"
        assert decision.reason == FALLBACK_REASON

    async def test_unexpected_client_error_through_real_adapter(
        self, store: DecisionStore, clock: FixedClock
    ) -> None:
        client = MagicMock()
        client.messages.create = AsyncMock(side_effect=RuntimeError("boom"))
        config = AppConfig()
        resolver = DecisionResolver(
            classifier=ClaudeDecisionClassifier(anthropic_client=client, config=config),
            store=store,
            config=config,
            clock=clock,
        )
        email = await _save(store, make_email(body_text="Can you confirm?"))

        decision = await resolver.classify(email, NO_HISTORY)

        assert decision.source == "fallback"
        assert decision.reason == FALLBACK_REASON

    async def test_lowered_thresholds_widen_gate(
        self, store: DecisionStore, clock: FixedClock, mock_classifier: MagicMock
    ) -> None:
        config = AppConfig(precheck={"stale_unread_days": 0, "frequent_reply_threshold": 0})
        resolver = DecisionResolver(
            classifier=mock_classifier, store=store, config=config, clock=clock
        )
        unread = await _save(
            store, make_email("msg-unread", is_read=False, received_at=NOW - timedelta(days=1))
        )
        known = await _save(store, make_email("msg-known"))

        await resolver.classify(unread, NO_HISTORY)
        await resolver.classify(known, ClassificationContext(reply_count_to_sender=1))

        assert mock_classifier.classify.await_count == 2


class TestResync:
    """Re-classification never undoes the user's action."""

    async def test_done_record_keeps_status(
        self, resolver: DecisionResolver, store: DecisionStore, mock_classifier: MagicMock
    ) -> None:
        email = await _save(store, make_email(body_text="Can you help?"))
        await resolver.classify(email, NO_HISTORY)
        await store.complete("msg-001", "user-1")

        mock_classifier.classify.return_value = ClassifierOutcome("deadline", "Due Friday")
        decision = await resolver.classify(email, NO_HISTORY)

        assert decision.status == "done"
        assert decision.decision_type == "reply_required"

    async def test_concurrent_classify_same_email(
        self, resolver: DecisionResolver, store: DecisionStore
    ) -> None:
        email = await _save(store, make_email(body_text="Can you help?"))

        results = await asyncio.gather(*(resolver.classify(email, NO_HISTORY) for _ in range(5)))

        assert len({d.id for d in results}) == 1
        assert len(await store.list_decisions("user-1")) == 1


class TestValidation:
    """Malformed payloads fail fast."""

    @pytest.mark.parametrize(
        ("email", "context"),
        [
            (make_email(email_id=""), NO_HISTORY),
            (make_email(user_id=""), NO_HISTORY),
            (make_email(user_id="   "), NO_HISTORY),
            (make_email(), ClassificationContext(reply_count_to_sender=-1)),
        ],
    )
    async def test_invalid_payload(
        self,
        resolver: DecisionResolver,
        mock_classifier: MagicMock,
        email: EmailMessage,
        context: ClassificationContext,
    ) -> None:
        with pytest.raises(InputValidationError):
            await resolver.classify(email, context)
        mock_classifier.classify.assert_not_awaited()


class TestBatch:
    """Tests for classify_batch."""

    async def test_counts_and_isolation(
        self, resolver: DecisionResolver, store: DecisionStore, mock_classifier: MagicMock
    ) -> None:
        async def _classify(subject: str, body_text: str, *, email_id: str | None = None):
            if email_id == "msg-boom":
                raise RuntimeError("unexpected")
            if email_id == "msg-fallback":
                return ClassifierOutcome.fallback("timed out")
            return ClassifierOutcome("reply_required", "Asks for help")

        mock_classifier.classify = AsyncMock(side_effect=_classify)

        items = [
            (await _save(store, make_email("msg-news")), NO_HISTORY),
            (await _save(store, make_email("msg-ask", body_text="Can you help?")), NO_HISTORY),
            (await _save(store, make_email("msg-boom", body_text="Reply asap")), NO_HISTORY),
            (await _save(store, make_email("msg-fallback", body_text="ASAP")), NO_HISTORY),
            (make_email("msg-bad", user_id=""), NO_HISTORY),
        ]

        result = await resolver.classify_batch(items)

        assert result.total == 5
        assert result.fast_path == 1
        assert result.ai_classified == 1
        assert result.fallback == 1
        assert result.failed == 2
        assert {email_id for email_id, _ in result.failures} == {"msg-boom", "msg-bad"}
        assert {d.email_id for d in result.decisions} == {"msg-news", "msg-ask", "msg-fallback"}
        assert result.duration_ms >= 0

    async def test_concurrency_is_bounded(
        self, resolver: DecisionResolver, store: DecisionStore, mock_classifier: MagicMock
    ) -> None:
        in_flight = 0
        peak = 0

        async def _classify(subject: str, body_text: str, *, email_id: str | None = None):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return ClassifierOutcome("follow_up", "Needs follow-up")

        mock_classifier.classify = AsyncMock(side_effect=_classify)
        items = [
            (await _save(store, make_email(f"msg-{i}", body_text="Please confirm")), NO_HISTORY)
            for i in range(10)
        ]

        result = await resolver.classify_batch(items)

        assert result.ai_classified == 10
        assert 1 < peak <= 3

    async def test_batch_id_is_correlation_id(
        self, resolver: DecisionResolver, store: DecisionStore, mock_classifier: MagicMock
    ) -> None:
        seen: list[str | None] = []

        async def _classify(subject: str, body_text: str, *, email_id: str | None = None):
            seen.append(get_correlation_id())
            return ClassifierOutcome("reply_required", "Asks for help")

        mock_classifier.classify = AsyncMock(side_effect=_classify)
        items = [
            (await _save(store, make_email(f"msg-{i}", body_text="Question?")), NO_HISTORY)
            for i in range(3)
        ]

        result = await resolver.classify_batch(items)

        assert seen == [result.batch_id] * 3
        assert get_correlation_id() is None

    async def test_empty_batch(self, resolver: DecisionResolver) -> None:
        result = await resolver.classify_batch([])
        assert result.total == 0
        assert result.decisions == []


class TestReclassifyStored:
    """Tests for reclassify_stored."""

    async def test_uses_correspondence_history(
        self, resolver: DecisionResolver, store: DecisionStore, mock_classifier: MagicMock
    ) -> None:
        for i in range(4):
            await store.save_email(
                make_email(f"sent-{i}", is_sent=True, to_addresses="boss@example.com")
            )
        await store.save_email(make_email("msg-boss", from_address="Boss@Example.com"))
        await store.save_email(make_email("msg-news", from_address="news@example.com"))

        result = await resolver.reclassify_stored("user-1")

        assert result.total == 2
        assert result.ai_classified == 1
        assert result.fast_path == 1
        mock_classifier.classify.assert_awaited_once()
        assert mock_classifier.classify.await_args.kwargs["email_id"] == "msg-boss"

    async def test_display_name_sender_counts_history(
        self, resolver: DecisionResolver, store: DecisionStore, mock_classifier: MagicMock
    ) -> None:
        for i in range(4):
            await store.save_email(
                make_email(f"sent-{i}", is_sent=True, to_addresses="alice@example.com")
            )
        await store.save_email(
            make_email("msg-alice", from_address="Alice Smith <alice@example.com>")
        )

        result = await resolver.reclassify_stored("user-1")

        assert result.ai_classified == 1
        assert mock_classifier.classify.await_args.kwargs["email_id"] == "msg-alice"

    async def test_unread_only(
        self, resolver: DecisionResolver, store: DecisionStore
    ) -> None:
        await store.save_email(make_email("msg-read", is_read=True))
        await store.save_email(make_email("msg-unread", is_read=False))

        result = await resolver.reclassify_stored("user-1", unread_only=True)

        assert [d.email_id for d in result.decisions] == ["msg-unread"]

    async def test_keeps_actioned_status(
        self, resolver: DecisionResolver, store: DecisionStore
    ) -> None:
        email = await _save(store, make_email(body_text="Can you help?"))
        await resolver.classify(email, NO_HISTORY)
        await store.dismiss("msg-001", "user-1")

        result = await resolver.reclassify_stored("user-1")

        assert result.decisions[0].status == "dismissed"
