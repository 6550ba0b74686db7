"""Custom exception types for the Decision Inbox.

Messages follow one convention:
- What failed (specific operation or component)
- Why it failed (the specific condition)
- How to fix it (actionable guidance)

Classifier failures never escape the AI adapter; they are mapped to a
fallback decision. Everything else propagates to the caller.
"""


class DecisionInboxError(Exception):
    """Base exception for all Decision Inbox errors."""

    pass


class ConfigValidationError(DecisionInboxError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(DecisionInboxError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class DatabaseError(DecisionInboxError):
    """Raised when SQLite operations fail."""

    pass


class InvalidArgumentError(DecisionInboxError):
    """Raised when a caller passes an argument the operation cannot accept.

    Example: snoozing a decision until a timestamp that is not in the future.
    """

    pass


class InputValidationError(InvalidArgumentError):
    """Raised when an email payload handed to the resolver is malformed.

    Missing email id or user id, or a negative reply count. Not retried.
    """

    pass


class InvalidStateTransitionError(InvalidArgumentError):
    """Raised when a lifecycle action is not allowed from the current status.

    Attributes:
        email_id: Email the decision belongs to
        user_id: Owning user
        current_status: Status the record is in
        requested_status: Status the caller asked for
    """

    def __init__(
        self,
        message: str,
        email_id: str,
        user_id: str,
        current_status: str,
        requested_status: str,
    ):
        super().__init__(message)
        self.email_id = email_id
        self.user_id = user_id
        self.current_status = current_status
        self.requested_status = requested_status


class NotFoundError(DecisionInboxError):
    """Raised when a lifecycle action targets a decision that was never classified.

    Attributes:
        email_id: The Gmail message ID
        user_id: The owning user
    """

    def __init__(self, message: str, email_id: str, user_id: str):
        super().__init__(message)
        self.email_id = email_id
        self.user_id = user_id


class ClassifierError(DecisionInboxError):
    """Raised inside the AI adapter when a classification call fails.

    Timeouts, transport errors and malformed responses all end up here.
    The adapter catches it and returns the fallback outcome.

    Attributes:
        email_id: The email being classified (if known)
        kind: 'timeout', 'transport', 'api_status', 'malformed' or 'unexpected'
    """

    def __init__(self, message: str, kind: str, email_id: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.email_id = email_id
