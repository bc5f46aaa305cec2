"""Tests for the command-line entry point."""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from wrasse.main import load_settings, main, parse_args, resolve_log_level, serve


class TestParseArgs:
    def test_defaults(self):
        args = parse_args([])
        assert args.file is None
        assert args.verbose == 0

    def test_env_file_and_verbosity(self):
        args = parse_args(["-f", "/etc/wrasse.env", "-vv"])
        assert args.file == "/etc/wrasse.env"
        assert args.verbose == 2

    def test_version_exits(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            parse_args(["--version"])
        assert exc_info.value.code == 0
        assert "wrasse" in capsys.readouterr().out


class TestResolveLogLevel:
    def test_named_level(self):
        assert resolve_log_level("warning") == logging.WARNING

    def test_verbose_lowers_level(self):
        assert resolve_log_level("INFO", 1) == logging.DEBUG
        assert resolve_log_level("WARNING", 1) == logging.INFO

    def test_never_below_debug(self):
        assert resolve_log_level("INFO", 5) == logging.DEBUG

    def test_unknown_name_falls_back_to_info(self):
        assert resolve_log_level("chatty") == logging.INFO


def test_load_settings_from_env_file(tmp_path):
    env_file = tmp_path / "wrasse.env"
    env_file.write_text("WRASSE_INSTANCE_ID=from-file\nWRASSE_QUEUE_LIMIT=3\n")

    settings = load_settings(str(env_file))

    assert settings.instance_id == "from-file"
    assert settings.queue_limit == 3


def test_main_rejects_invalid_config(tmp_path):
    env_file = tmp_path / "wrasse.env"
    env_file.write_text("WRASSE_CLAIM_MODE=zookeeper\n")

    with patch("wrasse.main.configure_logging"):
        assert main(["-f", str(env_file)]) == 1


def test_main_runs_daemon(tmp_path):
    env_file = tmp_path / "wrasse.env"
    env_file.write_text("WRASSE_INSTANCE_ID=wrasse-a\n")

    with patch("wrasse.main.configure_logging"), patch(
        "wrasse.main.init_sentry"
    ) as init_sentry, patch("wrasse.main.serve", new=AsyncMock(return_value=0)) as serve_mock:
        assert main(["-f", str(env_file)]) == 0

    init_sentry.assert_called_once()
    assert serve_mock.await_args.args[0].instance_id == "wrasse-a"


@pytest.mark.asyncio
async def test_serve_uses_claim_store_in_store_mode(tmp_path):
    env_file = tmp_path / "wrasse.env"
    env_file.write_text("WRASSE_CLAIM_MODE=store\n")
    settings = load_settings(str(env_file))
    daemon = MagicMock()
    daemon.run = AsyncMock()

    loop = asyncio.get_running_loop()

    with patch("wrasse.main.create_daemon", return_value=daemon) as create, patch.object(
        loop, "add_signal_handler"
    ) as add_signal_handler:
        assert await serve(settings) == 0

    backend = create.call_args.args[4]
    assert backend.embedded is False
    daemon.run.assert_awaited_once()
    assert add_signal_handler.call_count == 2
