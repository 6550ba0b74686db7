"""Tests for CLI commands. The classifier is mocked, CliRunner used throughout."""

import asyncio
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from click.testing import CliRunner, Result
from conftest import make_email
from rich.console import Console

from decision_inbox.classifier.claude_classifier import ClassifierOutcome
from decision_inbox import cli as cli_module
from decision_inbox.cli import cli
from decision_inbox.db.store import Decision, DecisionStore

pytestmark = pytest.mark.usefixtures("set_config_env")


@pytest.fixture(autouse=True)
def wide_console(monkeypatch: pytest.MonkeyPatch) -> None:
    """Render tables wide enough that cells never wrap."""
    monkeypatch.setattr("decision_inbox.cli.console", Console(width=200))


def _invoke(*args: str) -> Result:
    runner = CliRunner()
    return runner.invoke(cli, list(args), catch_exceptions=False)


def _store(data_dir: Path) -> DecisionStore:
    return DecisionStore(data_dir / "cli.db")


def _seed(
    data_dir: Path,
    email_id: str = "msg-001",
    subject: str = "Budget review",
    urgency: str = "optional",
) -> None:
    async def _inner() -> None:
        store = _store(data_dir)
        await store.initialize()
        await store.save_email(
            make_email(email_id, subject=subject, body_text="Can you review?", received_at=None)
        )
        await store.upsert(
            Decision(
                email_id=email_id,
                user_id="user-1",
                decision_required=True,
                decision_type="reply_required",
                reason="Asks for a review",
                skipped_ai=False,
                urgency=urgency,
                detected_at=datetime.now(UTC),
            )
        )

    asyncio.run(_inner())


def _get(data_dir: Path, email_id: str = "msg-001") -> Decision | None:
    return asyncio.run(_store(data_dir).get_decision(email_id, "user-1"))


class TestValidateConfig:
    def test_valid(self, config_file: Path) -> None:
        result = _invoke("validate-config", "--config", str(config_file))
        assert result.exit_code == 0
        assert "Configuration valid" in result.output

    def test_missing(self, tmp_path: Path) -> None:
        result = _invoke("validate-config", "--config", str(tmp_path / "nope.yaml"))
        assert result.exit_code == 1
        assert "Load error" in result.output


class TestInitDb:
    def test_creates_database(self, data_dir: Path) -> None:
        result = _invoke("init-db")
        assert result.exit_code == 0
        assert (data_dir / "cli.db").exists()


class TestPending:
    def test_lists_pending(self, data_dir: Path) -> None:
        _seed(data_dir)
        result = _invoke("pending", "--user", "user-1")
        assert result.exit_code == 0
        assert "msg-001" in result.output
        assert "Budget review" in result.output

    def test_shows_urgency_most_urgent_first(self, data_dir: Path) -> None:
        _seed(data_dir, "msg-later", subject="Later", urgency="optional")
        _seed(data_dir, "msg-today", subject="Today", urgency="decide_now")

        result = _invoke("pending", "--user", "user-1")

        assert result.exit_code == 0
        assert "decide_now" in result.output
        assert result.output.index("msg-today") < result.output.index("msg-later")

    def test_empty(self, data_dir: Path) -> None:
        result = _invoke("pending", "--user", "user-1")
        assert result.exit_code == 0
        assert "No pending decisions" in result.output


class TestLifecycleCommands:
    def test_complete(self, data_dir: Path) -> None:
        _seed(data_dir)
        result = _invoke("complete", "--user", "user-1", "msg-001")
        assert result.exit_code == 0
        assert _get(data_dir).status == "done"

    def test_dismiss_then_complete_rejected(self, data_dir: Path) -> None:
        _seed(data_dir)
        assert _invoke("dismiss", "--user", "user-1", "msg-001").exit_code == 0

        result = _invoke("complete", "--user", "user-1", "msg-001")

        assert result.exit_code == 1
        assert "Not allowed" in result.output
        assert _get(data_dir).status == "dismissed"

    def test_not_decision_with_comment(self, data_dir: Path) -> None:
        _seed(data_dir)
        result = _invoke("not-decision", "--user", "user-1", "msg-001", "--comment", "FYI only")
        assert result.exit_code == 0

        feedback = asyncio.run(_store(data_dir).list_feedback("user-1"))
        assert feedback[0].comment == "FYI only"

    def test_unknown_email(self, data_dir: Path) -> None:
        result = _invoke("complete", "--user", "user-1", "missing")
        assert result.exit_code == 1
        assert "Not found" in result.output

    def test_snooze(self, data_dir: Path) -> None:
        _seed(data_dir)
        result = _invoke("snooze", "--user", "user-1", "msg-001", "--until", "2099-01-01T09:00")
        assert result.exit_code == 0

        decision = _get(data_dir)
        assert decision.status == "snoozed"
        assert decision.snoozed_until == datetime(2099, 1, 1, 9, 0, tzinfo=UTC)

    def test_snooze_in_past(self, data_dir: Path) -> None:
        _seed(data_dir)
        result = _invoke("snooze", "--user", "user-1", "msg-001", "--until", "2000-01-01T00:00")
        assert result.exit_code == 1
        assert _get(data_dir).status == "pending"

    def test_snooze_bad_timestamp(self, data_dir: Path) -> None:
        result = _invoke("snooze", "--user", "user-1", "msg-001", "--until", "next tuesday")
        assert result.exit_code == 2
        assert "ISO 8601" in result.output


class TestStats:
    def test_stats(self, data_dir: Path) -> None:
        _seed(data_dir, "msg-001")
        _seed(data_dir, "msg-002")
        _invoke("complete", "--user", "user-1", "msg-002")

        result = _invoke("stats", "--user", "user-1")

        assert result.exit_code == 0
        assert "Total:            2" in result.output
        assert "reply_required" in result.output
        assert "decide_now" in result.output


class TestReclassify:
    def test_reclassify_stored(self, data_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        classifier = MagicMock()
        classifier.classify = AsyncMock(
            return_value=ClassifierOutcome("reply_required", "Asks for a review")
        )
        monkeypatch.setattr(
            "decision_inbox.cli._build_classifier", lambda config, store: classifier
        )
        _seed(data_dir, "msg-001")
        asyncio.run(_store(data_dir).save_email(make_email("msg-news")))

        result = _invoke("reclassify", "--user", "user-1")

        assert result.exit_code == 0
        assert "Emails:      2" in result.output
        assert "Fast path:   1" in result.output
        assert "Classified:  1" in result.output
        classifier.classify.assert_awaited_once()


class TestPruneLogs:
    def test_prune(self, data_dir: Path) -> None:
        result = _invoke("prune-logs", "--days", "7")
        assert result.exit_code == 0
        assert "Pruned 0" in result.output


def test_main_loads_dotenv(monkeypatch: pytest.MonkeyPatch) -> None:
    load_dotenv = MagicMock()
    group = MagicMock()
    monkeypatch.setattr(cli_module, "load_dotenv", load_dotenv)
    monkeypatch.setattr(cli_module, "cli", group)

    cli_module.main()

    load_dotenv.assert_called_once_with()
    group.assert_called_once_with()


def test_missing_config_exits(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DECISION_INBOX_CONFIG_PATH", str(tmp_path / "absent.yaml"))
    result = _invoke("stats", "--user", "user-1")
    assert result.exit_code == 1
    assert "Config error" in result.output
