"""Unit tests for CLI main app and commands."""

from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from src.chat.reconciler import ReconcileOutcome
from src.cli.main import __version__, app
from src.exceptions import ConversationFetchError, StreamError
from src.streaming.engine import ExchangeResult
from src.streaming.session import StreamState
from tests.mocks import snapshot


@pytest.fixture
def runner():
    """CLI test runner."""
    return CliRunner()


def _result(**overrides) -> ExchangeResult:
    values = {
        "conversation_id": "conv-1",
        "state": StreamState.SETTLED,
        "content": "ROAS is a metric.",
        "effective_id": "a-1",
        "outcome": ReconcileOutcome.MATCHED,
    }
    values.update(overrides)
    return ExchangeResult(**values)


class TestMainApp:
    """Test main CLI app registration."""

    def test_app_exists(self):
        """Test that app exists."""
        assert app is not None
        assert app.info.name == "chatsync"

    def test_app_help(self, runner):
        """Test app help command."""
        result = runner.invoke(app, ["--help"])

        assert result.exit_code == 0
        assert "Streaming chat client" in result.stdout

    def test_app_no_args_shows_help(self, runner):
        """Test that app shows help when no args provided."""
        result = runner.invoke(app, [])

        # Typer returns exit code 2 for no args (shows help)
        assert result.exit_code == 2
        assert "Usage:" in result.stdout or "Commands:" in result.stdout

    def test_all_commands_registered(self, runner):
        """Test that all expected commands are registered."""
        result = runner.invoke(app, ["--help"])

        assert result.exit_code == 0
        assert "ask" in result.stdout
        assert "show" in result.stdout
        assert "version" in result.stdout


class TestVersionCommand:
    """Test version command."""

    def test_prints_version(self, runner):
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert "chatsync" in result.stdout
        assert __version__ in result.stdout


class TestAskCommand:
    """Test ask command."""

    def test_settled_exchange(self, runner):
        with patch("src.cli.main._ask", new=AsyncMock(return_value=_result())) as mock_ask:
            result = runner.invoke(app, ["ask", "conv-1", "What is ROAS?"])

        assert result.exit_code == 0
        assert "Settled as matched" in result.stdout
        mock_ask.assert_awaited_once_with("conv-1", "What is ROAS?", use_rag_path=True)

    def test_plain_chat_flag(self, runner):
        with patch("src.cli.main._ask", new=AsyncMock(return_value=_result())) as mock_ask:
            result = runner.invoke(app, ["ask", "conv-1", "hi", "--plain-chat"])

        assert result.exit_code == 0
        mock_ask.assert_awaited_once_with("conv-1", "hi", use_rag_path=False)

    def test_failed_exchange_exits_non_zero(self, runner):
        failed = _result(
            state=StreamState.ERRORED,
            outcome=None,
            error=StreamError("quota exceeded"),
        )
        with patch("src.cli.main._ask", new=AsyncMock(return_value=failed)):
            result = runner.invoke(app, ["ask", "conv-1", "hi"])

        assert result.exit_code == 1
        assert "quota exceeded" in result.stdout


class TestShowCommand:
    """Test show command."""

    def test_prints_messages(self, runner):
        conversation = snapshot(
            "conv-1",
            ("u-1", "user", "What is ROAS?"),
            ("a-1", "assistant", "A metric."),
        )
        with patch("src.cli.main._fetch", new=AsyncMock(return_value=conversation)):
            result = runner.invoke(app, ["show", "conv-1"])

        assert result.exit_code == 0
        assert "Test conversation" in result.stdout
        assert "What is ROAS?" in result.stdout
        assert "assistant" in result.stdout

    def test_fetch_failure_exits_non_zero(self, runner):
        error = ConversationFetchError("HTTP 404: not found", conversation_id="conv-1")
        with patch("src.cli.main._fetch", new=AsyncMock(side_effect=error)):
            result = runner.invoke(app, ["show", "conv-1"])

        assert result.exit_code == 1
        assert "Could not fetch conversation" in result.stdout
