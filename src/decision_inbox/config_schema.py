"""Pydantic configuration schema for the Decision Inbox.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models when the CLI loads it.
Every field has a default, so an empty config file is valid.

Usage:
    from decision_inbox.config_schema import AppConfig

    config = AppConfig(**yaml_data)
"""

from pydantic import BaseModel, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


class PrecheckConfig(BaseModel):
    """Pre-check gate thresholds.

    The gate is recall-biased: these settings can make it send more email to
    the AI classifier, never fewer than the built-in triggers allow. Both
    thresholds default to their maximum (3) and can only be lowered.
    """

    frequent_reply_threshold: int = Field(
        default=3,
        ge=0,
        le=3,
        description="Sender counts as a frequent correspondent above this many replies",
    )
    stale_unread_days: int = Field(
        default=3,
        ge=0,
        le=3,
        description="Unread email older than this many whole days goes to the classifier",
    )
    extra_action_keywords: list[str] = Field(
        default_factory=list,
        description="Keywords added to the built-in action keyword set (case-insensitive)",
    )

    @field_validator("extra_action_keywords")
    @classmethod
    def normalize_keywords(cls, v: list[str]) -> list[str]:
        """Lower-case keywords and reject blank entries."""
        normalized = []
        for keyword in v:
            if not keyword or not keyword.strip():
                raise ValueError("Action keywords cannot be empty")
            normalized.append(keyword.strip().lower())
        return normalized


class ClassifierConfig(BaseModel):
    """AI classifier adapter configuration."""

    model: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Claude model used for decision classification",
    )
    timeout_seconds: float = Field(
        default=8.0,
        gt=0.0,
        le=30.0,
        description="Hard upper bound on one classification call (seconds)",
    )
    max_body_chars: int = Field(
        default=2000,
        ge=100,
        le=20000,
        description="Characters of the email body sent to the classifier",
    )
    max_tokens: int = Field(
        default=256,
        ge=64,
        le=4096,
        description="Max output tokens for the classification response",
    )
    transport_max_retries: int = Field(
        default=0,
        ge=0,
        le=5,
        description="SDK-level retries, still bounded by timeout_seconds",
    )


class ResolverConfig(BaseModel):
    """Decision resolver configuration."""

    max_concurrency: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Max classifications in flight during a batch",
    )


class DatabaseConfig(BaseModel):
    """SQLite database location."""

    path: str = Field(
        default="data/decisions.db",
        description="Path to the SQLite database file",
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure database path is not empty and doesn't contain traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class LLMLoggingConfig(BaseModel):
    """LLM request logging configuration."""

    enabled: bool = Field(default=True, description="Enable LLM request logging")
    retention_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Days to retain LLM request logs",
    )
    log_prompts: bool = Field(
        default=True,
        description="Store full prompts (disable to save disk space)",
    )
    log_responses: bool = Field(
        default=True,
        description="Store full responses",
    )


class AppConfig(BaseModel):
    """Root configuration schema for the Decision Inbox.

    If validation fails, the CLI exits with a clear error.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    precheck: PrecheckConfig = Field(default_factory=PrecheckConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    resolver: ResolverConfig = Field(default_factory=ResolverConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    llm_logging: LLMLoggingConfig = Field(default_factory=LLMLoggingConfig)
