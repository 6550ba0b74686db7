"""Pytest fixtures and configuration for Decision Inbox tests.

Provides common fixtures for configuration, clock, database, and sample email.
"""

import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generator

import pytest

from decision_inbox.config import CONFIG_PATH_ENV_VAR, reset_config
from decision_inbox.config_schema import AppConfig
from decision_inbox.core.clock import FixedClock
from decision_inbox.db.store import DecisionStore, EmailMessage

# Fixed "now" for deterministic unread-age and snooze checks
NOW = datetime(2026, 1, 14, 9, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
def sample_config_yaml(data_dir: Path) -> str:
    """Return a minimal valid config.yaml content."""
    return f"""
schema_version: 1

precheck:
  frequent_reply_threshold: 3
  stale_unread_days: 3

classifier:
  model: "claude-haiku-4-5-20251001"
  timeout_seconds: 2.0

database:
  path: "{data_dir / 'cli.db'}"
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "precheck": {"frequent_reply_threshold": 3, "stale_unread_days": 3},
        "classifier": {"timeout_seconds": 2.0},
        "resolver": {"max_concurrency": 3},
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the DECISION_INBOX_CONFIG_PATH environment variable."""
    old_value = os.environ.get(CONFIG_PATH_ENV_VAR)
    os.environ[CONFIG_PATH_ENV_VAR] = str(config_file)
    yield
    if old_value is None:
        del os.environ[CONFIG_PATH_ENV_VAR]
    else:
        os.environ[CONFIG_PATH_ENV_VAR] = old_value


@pytest.fixture
def clock() -> FixedClock:
    """Return a clock fixed at NOW."""
    return FixedClock(NOW)


@pytest.fixture
async def store(data_dir: Path, clock: FixedClock) -> DecisionStore:
    """Return an initialized DecisionStore on the fixed clock."""
    s = DecisionStore(data_dir / "test.db", clock=clock)
    await s.initialize()
    return s


def make_email(
    email_id: str = "msg-001",
    user_id: str = "user-1",
    subject: str = "Weekly Newsletter",
    body_text: str = "Top stories this week...",
    from_address: str = "news@example.com",
    is_read: bool = True,
    received_at: datetime | None = NOW,
    **kwargs: Any,
) -> EmailMessage:
    """Create an EmailMessage for testing (informational by default)."""
    return EmailMessage(
        id=email_id,
        user_id=user_id,
        subject=subject,
        body_text=body_text,
        from_address=from_address,
        is_read=is_read,
        received_at=received_at,
        **kwargs,
    )
