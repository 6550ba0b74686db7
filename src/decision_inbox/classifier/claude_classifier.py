"""Claude adapter for decision classification using forced tool use.

The adapter's contract is "return within a bounded timeout or fail fast with
the fallback". It never raises for classifier problems.

Error handling strategy:
- Transient errors (429, 5xx, network): left to the SDK transport
  (classifier.transport_max_retries, default 0), still inside the timeout
- Timeout, API errors, missing tool call, invalid enum, empty reason:
  logged and mapped to the fallback outcome
- Anything else raised while calling or parsing: logged as 'unexpected'
  and mapped to the fallback outcome too
- No app-level retry: a failed classification is recorded with
  source='fallback' and can be re-run with `reclassify`

Usage:
    from decision_inbox.classifier.claude_classifier import ClaudeDecisionClassifier

    classifier = ClaudeDecisionClassifier(
        anthropic_client=anthropic.AsyncAnthropic(),
        config=app_config,
        store=db_store,
    )
    outcome = await classifier.classify(subject, body_text, email_id="msg-1")
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import anthropic

from decision_inbox.classifier.prompts import (
    CLASSIFY_DECISION_TOOL,
    SYSTEM_PROMPT,
    VALID_DECISION_TYPES,
    VALID_URGENCIES,
    build_user_message,
    truncate_reason,
)
from decision_inbox.core.errors import ClassifierError
from decision_inbox.core.logging import get_logger

if TYPE_CHECKING:
    from decision_inbox.config_schema import AppConfig
    from decision_inbox.db.store import DecisionStore

logger = get_logger(__name__)

FALLBACK_DECISION_TYPE = "informational_only"
FALLBACK_REASON = "Classification unavailable"
FALLBACK_URGENCY = "optional"

# Used when a tool call omits urgency
DEFAULT_URGENCY = {
    "reply_required": "decide_soon",
    "deadline": "decide_soon",
    "follow_up": "optional",
    "informational_only": "optional",
}

_TOOL_NAME = CLASSIFY_DECISION_TOOL["name"]


# ---------------------------------------------------------------------------
# Classification outcome
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ClassifierOutcome:
    """Result of one classification attempt.

    Attributes:
        decision_type: One of the four decision types
        reason: Short human-readable reason
        urgency: How soon the reader has to act ('optional' for informational_only)
        ok: False when this is the fallback outcome
        error: What went wrong (fallback only)
    """

    decision_type: str
    reason: str
    urgency: str = FALLBACK_URGENCY
    ok: bool = True
    error: str | None = None

    @classmethod
    def fallback(cls, error: str) -> ClassifierOutcome:
        return cls(
            decision_type=FALLBACK_DECISION_TYPE,
            reason=FALLBACK_REASON,
            urgency=FALLBACK_URGENCY,
            ok=False,
            error=error,
        )


class DecisionClassifier(Protocol):
    """Anything that can classify a subject and body."""

    async def classify(
        self, subject: str | None, body_text: str | None, *, email_id: str | None = None
    ) -> ClassifierOutcome: ...


# ---------------------------------------------------------------------------
# Claude adapter
# ---------------------------------------------------------------------------


class ClaudeDecisionClassifier:
    """Classifies email into decision types with Claude.

    Attributes:
        _client: Async Anthropic API client
        _config: Application configuration
        _store: Optional store for LLM request logging
    """

    def __init__(
        self,
        anthropic_client: anthropic.AsyncAnthropic,
        config: AppConfig,
        store: DecisionStore | None = None,
    ):
        """Initialize the adapter.

        Args:
            anthropic_client: Async Anthropic client. Build it with
                `build_anthropic_client` so transport retries are bounded.
            config: Application configuration
            store: Store for LLM request logging (optional)
        """
        self._client = anthropic_client
        self._config = config
        self._store = store

    async def classify(
        self,
        subject: str | None,
        body_text: str | None,
        *,
        email_id: str | None = None,
    ) -> ClassifierOutcome:
        """Classify one email.

        Args:
            subject: Email subject line
            body_text: Plain-text body
            email_id: Email being classified (for logging)

        Returns:
            ClassifierOutcome; the fallback outcome on any classifier failure
        """
        settings = self._config.classifier
        user_message = build_user_message(subject, body_text, settings.max_body_chars)
        messages = [{"role": "user", "content": user_message}]

        start_time = time.monotonic()
        api_response: Any = None
        tool_call_data: dict[str, Any] | None = None

        try:
            api_response = await asyncio.wait_for(
                self._client.messages.create(
                    model=settings.model,
                    max_tokens=settings.max_tokens,
                    system=SYSTEM_PROMPT,
                    messages=messages,
                    tools=[CLASSIFY_DECISION_TOOL],
                    tool_choice={"type": "tool", "name": _TOOL_NAME},
                ),
                timeout=settings.timeout_seconds,
            )
            tool_call_data = _extract_tool_call(api_response)
            outcome = _parse_tool_call(tool_call_data, email_id)

        except (TimeoutError, anthropic.APITimeoutError) as e:
            error = ClassifierError(
                f"Classification timed out after {settings.timeout_seconds}s",
                kind="timeout",
                email_id=email_id,
            )
            outcome = self._fallback(error, cause=e)

        except anthropic.APIConnectionError as e:
            error = ClassifierError(
                f"API connection error: {e}", kind="transport", email_id=email_id
            )
            outcome = self._fallback(error, cause=e)

        except anthropic.APIStatusError as e:
            error = ClassifierError(
                f"API status error {e.status_code}: {e.message}",
                kind="api_status",
                email_id=email_id,
            )
            outcome = self._fallback(error, cause=e)

        except anthropic.APIError as e:
            # e.g. APIResponseValidationError: the SDK could not parse the reply
            error = ClassifierError(f"API error: {e}", kind="malformed", email_id=email_id)
            outcome = self._fallback(error, cause=e)

        except ClassifierError as e:
            outcome = self._fallback(e)

        except Exception as e:
            # Unexpected failures (SDK bugs, odd response shapes) still fall back
            error = ClassifierError(
                f"Unexpected classification error: {type(e).__name__}: {e}",
                kind="unexpected",
                email_id=email_id,
            )
            outcome = self._fallback(error, cause=e)

        duration_ms = int((time.monotonic() - start_time) * 1000)

        if outcome.ok:
            logger.debug(
                "classifier_success",
                email_id=email_id,
                decision_type=outcome.decision_type,
                duration_ms=duration_ms,
            )

        await self._log_request(
            model=settings.model,
            messages=messages,
            response=api_response,
            tool_call=tool_call_data,
            duration_ms=duration_ms,
            email_id=email_id,
            error=outcome.error,
        )
        return outcome

    def _fallback(
        self, error: ClassifierError, cause: BaseException | None = None
    ) -> ClassifierOutcome:
        """Log a classifier failure and build the fallback outcome."""
        logger.warning(
            f"classifier_{error.kind}",
            email_id=error.email_id,
            error=str(error),
            cause=type(cause).__name__ if cause else None,
        )
        return ClassifierOutcome.fallback(str(error))

    async def _log_request(
        self,
        model: str,
        messages: list[dict[str, Any]],
        response: Any,
        tool_call: dict[str, Any] | None,
        duration_ms: int,
        email_id: str | None = None,
        error: str | None = None,
    ) -> None:
        """Log an LLM request to the database.

        Args:
            model: Model used
            messages: Messages sent
            response: API response (if available)
            tool_call: Extracted tool call data (if available)
            duration_ms: Request duration in milliseconds
            email_id: Email being classified
            error: Error message (if failed)
        """
        if self._store is None or not self._config.llm_logging.enabled:
            return

        try:
            prompt_data: dict[str, Any] = {"messages": messages}
            if self._config.llm_logging.log_prompts:
                prompt_data["system"] = SYSTEM_PROMPT

            response_data: dict[str, Any] | None = None
            input_tokens: int | None = None
            output_tokens: int | None = None

            if response is not None and self._config.llm_logging.log_responses:
                response_data = {
                    "id": getattr(response, "id", None),
                    "model": getattr(response, "model", None),
                    "stop_reason": getattr(response, "stop_reason", None),
                    "content": [
                        _content_block_to_dict(block)
                        for block in getattr(response, "content", None) or []
                    ],
                }
                usage = getattr(response, "usage", None)
                if usage is not None:
                    input_tokens = usage.input_tokens
                    output_tokens = usage.output_tokens

            await self._store.log_llm_request(
                task_type="decision",
                model=model,
                prompt=prompt_data,
                response=response_data,
                tool_call=tool_call,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                duration_ms=duration_ms,
                email_id=email_id,
                error=error,
            )
        except Exception as e:
            # Logging failures should never block classification
            logger.warning(
                "llm_log_failed",
                error=str(e),
                email_id=email_id,
            )


def build_anthropic_client(config: AppConfig) -> anthropic.AsyncAnthropic:
    """Create an AsyncAnthropic client whose retries fit inside the timeout.

    Reads ANTHROPIC_API_KEY from the environment.
    """
    settings = config.classifier
    return anthropic.AsyncAnthropic(
        max_retries=settings.transport_max_retries,
        timeout=settings.timeout_seconds,
    )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _extract_tool_call(response: Any) -> dict[str, Any] | None:
    """Extract the classify_decision tool call from the API response.

    Returns:
        Tool call input dict, or None if no tool call found
    """
    for block in getattr(response, "content", None) or []:
        if block.type == "tool_use" and block.name == _TOOL_NAME:
            return block.input
    return None


def _parse_tool_call(data: dict[str, Any] | None, email_id: str | None) -> ClassifierOutcome:
    """Validate a tool call and build a successful outcome.

    Raises:
        ClassifierError: With kind 'malformed' if the tool call is unusable
    """
    if data is None:
        raise ClassifierError(
            "No tool call in response (unexpected with forced tool_choice)",
            kind="malformed",
            email_id=email_id,
        )

    if not isinstance(data, dict):
        raise ClassifierError(
            f"Tool call input is {type(data).__name__}, expected an object",
            kind="malformed",
            email_id=email_id,
        )

    decision_type = data.get("decision_type")
    if decision_type not in VALID_DECISION_TYPES:
        raise ClassifierError(
            f"Invalid decision_type: '{decision_type}'. "
            f"Must be one of: {', '.join(sorted(VALID_DECISION_TYPES))}",
            kind="malformed",
            email_id=email_id,
        )

    reason = data.get("reason")
    if not isinstance(reason, str) or not reason.strip():
        raise ClassifierError("Empty reason in tool call", kind="malformed", email_id=email_id)

    urgency = data.get("urgency")
    if urgency is None:
        urgency = DEFAULT_URGENCY[decision_type]
    elif urgency not in VALID_URGENCIES:
        raise ClassifierError(
            f"Invalid urgency: '{urgency}'. Must be one of: {', '.join(sorted(VALID_URGENCIES))}",
            kind="malformed",
            email_id=email_id,
        )

    if decision_type == "informational_only":
        urgency = "optional"

    return ClassifierOutcome(
        decision_type=decision_type,
        reason=truncate_reason(reason),
        urgency=urgency,
    )


def _content_block_to_dict(block: Any) -> dict[str, Any]:
    """Convert an Anthropic content block to a serializable dict."""
    if block.type == "text":
        return {"type": "text", "text": block.text}
    elif block.type == "tool_use":
        return {
            "type": "tool_use",
            "id": block.id,
            "name": block.name,
            "input": block.input,
        }
    return {"type": block.type}
