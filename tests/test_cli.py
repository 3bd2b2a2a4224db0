"""Tests for obrew_client.cli module.

Commands are exercised against a mocked ObrewClient; argument parsing and
exit codes are checked through main().
"""

from io import StringIO
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from obrew_client.client import PingResult
from obrew_client.config import ConnectionConfig
from obrew_client.errors import RequestCancelled
from obrew_client.progress import ProgressStatus


# ─────────────────────────────────────────────────────────────────────
# FIXTURES
# ─────────────────────────────────────────────────────────────────────

@pytest.fixture
def mock_client():
    """A connected-looking ObrewClient stand-in."""
    client = MagicMock()
    client.config = ConnectionConfig()
    client.connect = AsyncMock(return_value=True)
    client.ping = AsyncMock(return_value=PingResult(success=True, response_time_ms=12))
    client.send_message = AsyncMock(return_value="Paris.")
    return client


# ─────────────────────────────────────────────────────────────────────
# PING COMMAND
# ─────────────────────────────────────────────────────────────────────

class TestPingCommand:
    """Tests for `obrew-cli ping`."""

    @pytest.mark.asyncio
    async def test_ping_ok(self, mock_client):
        from obrew_client.cli import _cmd_ping

        with patch("sys.stdout", new_callable=StringIO) as mock_stdout:
            code = await _cmd_ping(mock_client, timeout=None)

        assert code == 0
        assert "http://localhost:8008" in mock_stdout.getvalue()
        assert "12 ms" in mock_stdout.getvalue()

    @pytest.mark.asyncio
    async def test_ping_unreachable(self, mock_client):
        mock_client.ping.return_value = PingResult(success=False, error="Connection refused")

        from obrew_client.cli import _cmd_ping

        with patch("sys.stderr", new_callable=StringIO) as mock_stderr:
            code = await _cmd_ping(mock_client, timeout=1.0)

        assert code == 1
        assert "Connection refused" in mock_stderr.getvalue()
        mock_client.ping.assert_awaited_once_with(1.0)


# ─────────────────────────────────────────────────────────────────────
# CHAT COMMAND
# ─────────────────────────────────────────────────────────────────────

class TestChatCommand:
    """Tests for `obrew-cli chat`."""

    @pytest.mark.asyncio
    async def test_chat_prints_answer(self, mock_client):
        from obrew_client.cli import _cmd_chat

        with patch("sys.stdout", new_callable=StringIO) as mock_stdout:
            code = await _cmd_chat(
                mock_client, "Capital of France?", system="Be brief",
                stream=False, temperature=0.1, max_tokens=32,
            )

        assert code == 0
        assert mock_stdout.getvalue().strip() == "Paris."
        messages, options = mock_client.send_message.call_args.args
        assert [m.role for m in messages] == ["system", "user"]
        assert options.temperature == 0.1
        assert options.max_tokens == 32
        assert mock_client.send_message.call_args.kwargs["on_text"] is None

    @pytest.mark.asyncio
    async def test_chat_streams_deltas(self, mock_client):
        async def fake_send(messages, options, on_text=None):
            for delta in ("Pa", "ris"):
                on_text(delta)
            return "Paris"

        mock_client.send_message = AsyncMock(side_effect=fake_send)

        from obrew_client.cli import _cmd_chat

        with patch("sys.stdout", new_callable=StringIO) as mock_stdout:
            code = await _cmd_chat(
                mock_client, "Capital?", system=None,
                stream=True, temperature=0.7, max_tokens=16,
            )

        assert code == 0
        assert mock_stdout.getvalue() == "Paris\n"

    @pytest.mark.asyncio
    async def test_chat_connect_failure(self, mock_client):
        mock_client.connect.return_value = False

        from obrew_client.cli import _cmd_chat

        with patch("sys.stderr", new_callable=StringIO) as mock_stderr:
            code = await _cmd_chat(
                mock_client, "hi", system=None, stream=False, temperature=0.7, max_tokens=16,
            )

        assert code == 1
        assert "Could not connect" in mock_stderr.getvalue()
        mock_client.send_message.assert_not_awaited()


# ─────────────────────────────────────────────────────────────────────
# WATCH-DOWNLOAD COMMAND
# ─────────────────────────────────────────────────────────────────────

class TestWatchDownloadCommand:
    """Tests for `obrew-cli watch-download`."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "outcome, expected",
        [
            (ProgressStatus.COMPLETED, 0),
            (ProgressStatus.ERROR, 1),
            (ProgressStatus.CANCELLED, 130),
        ],
    )
    async def test_exit_code_follows_outcome(self, mock_client, outcome, expected):
        subscription = MagicMock()
        subscription.wait = AsyncMock(return_value=outcome)
        mock_client.subscribe_to_progress = AsyncMock(return_value=subscription)

        from obrew_client.cli import _cmd_watch_download

        code = await _cmd_watch_download(mock_client, "task-1")

        assert code == expected
        assert mock_client.subscribe_to_progress.call_args.args[0] == "task-1"

    def test_format_progress(self):
        from obrew_client.cli import _format_progress
        from obrew_client.progress import ProgressRecord

        record = ProgressRecord.from_payload({
            "task_id": "task-1",
            "status": "downloading",
            "primary_progress": {
                "downloaded_bytes": 500, "total_bytes": 1000,
                "speed_mbps": 2.5, "eta_seconds": 20,
            },
        })

        line = _format_progress(record)

        assert line == "task-1 downloading 50.0% 2.5 MB/s eta 20s"


# ─────────────────────────────────────────────────────────────────────
# ENTRY POINT
# ─────────────────────────────────────────────────────────────────────

class TestMain:
    """Argument parsing and exit codes."""

    def test_no_command_exits_1(self):
        from obrew_client.cli import main

        with patch("sys.argv", ["obrew-cli"]), \
             patch("sys.stdout", new_callable=StringIO), \
             pytest.raises(SystemExit) as exc_info:
            main()

        assert exc_info.value.code == 1

    def test_parser_chat_options(self):
        from obrew_client.cli import _build_parser

        args = _build_parser().parse_args(
            ["--port", "9000", "chat", "hello", "--stream", "--max-tokens", "10"]
        )

        assert args.command == "chat"
        assert args.prompt == "hello"
        assert args.stream is True
        assert args.max_tokens == 10
        assert args.temperature == 0.7
        assert args.port == "9000"

    def test_build_config_overrides(self, monkeypatch):
        monkeypatch.delenv("OBREW_DOMAIN", raising=False)
        from obrew_client.cli import _build_config

        config = _build_config("10.0.0.2", "9000")

        assert config.origin == "http://10.0.0.2:9000"

    def test_cancelled_request_exits_130(self, mock_client):
        mock_client.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client.__aexit__ = AsyncMock(return_value=None)
        mock_client.send_message = AsyncMock(side_effect=RequestCancelled())

        from obrew_client.cli import main

        with patch("sys.argv", ["obrew-cli", "chat", "hi"]), \
             patch("obrew_client.cli.ObrewClient", return_value=mock_client), \
             patch("dotenv.load_dotenv"), \
             patch("sys.stderr", new_callable=StringIO) as mock_stderr, \
             pytest.raises(SystemExit) as exc_info:
            main()

        assert exc_info.value.code == 130
        assert "Cancelled" in mock_stderr.getvalue()
