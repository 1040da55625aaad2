"""Tests for CLI commands and helper functions."""

import json
from datetime import datetime, timezone

import click
import pytest
from click.testing import CliRunner

from timecapsule.cli import main, parse_when, run_async


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.delenv("TC_OWNER_ID", raising=False)
    monkeypatch.setattr("timecapsule.cli.configure_logging", lambda level=None: None)
    path = tmp_path / "config.ini"
    path.write_text(
        "[storage]\n"
        f"db_path = {tmp_path / 'tc.db'}\n"
        f"directory = {tmp_path / 'files'}\n"
        "signing_key = cli-key\n"
        "[mail]\nbackend = resend\n"
        "[scheduler]\nsettle_delay = 0\n"
    )
    return str(path)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def upload(tmp_path):
    path = tmp_path / "letter.txt"
    path.write_text("dear future me")
    return str(path)


def invoke(runner, config_file, *args):
    return runner.invoke(main, ["--config", config_file, *args])


class TestHelpers:
    def test_run_async(self):
        async def answer():
            return 42

        assert run_async(answer()) == 42

    def test_parse_when_accepts_zulu_suffix(self):
        assert parse_when("2030-01-01T09:00:00Z") == datetime(2030, 1, 1, 9, tzinfo=timezone.utc)

    def test_parse_when_rejects_garbage(self):
        with pytest.raises(click.BadParameter):
            parse_when("next tuesday")


class TestDeliveryCommands:
    def test_schedule_then_list_and_cancel(self, runner, config_file, upload):
        result = invoke(
            runner, config_file,
            "schedule", upload, "--to", "friend@example.com", "--at", "2030-01-01T09:00:00Z", "--owner", "alice",
        )
        assert result.exit_code == 0, result.output
        assert "Scheduled 'letter.txt'" in result.output
        assert "pending" in result.output

        result = invoke(runner, config_file, "list", "--owner", "alice", "--json")
        assert result.exit_code == 0, result.output
        deliveries = json.loads(result.output)
        assert len(deliveries) == 1
        assert deliveries[0]["file_name"] == "letter.txt"
        assert deliveries[0]["file_type"] == "text/plain"
        assert deliveries[0]["status"] == "pending"

        result = invoke(runner, config_file, "list", "--owner", "bob", "--json")
        assert json.loads(result.output) == []

        delivery_id = deliveries[0]["id"]
        result = invoke(runner, config_file, "cancel", delivery_id, "--owner", "alice", "--force")
        assert result.exit_code == 0, result.output
        assert "deleted" in result.output

        result = invoke(runner, config_file, "list", "--owner", "alice")
        assert "No deliveries found" in result.output

    def test_cancel_unknown_delivery_fails(self, runner, config_file):
        result = invoke(runner, config_file, "cancel", "missing", "--owner", "alice", "--force")
        assert result.exit_code == 1
        assert "not_found" in result.output

    def test_cancel_prompts_without_force(self, runner, config_file):
        result = runner.invoke(main, ["--config", config_file, "cancel", "x", "--owner", "alice"], input="n\n")
        assert result.exit_code == 0
        assert "Aborted" in result.output

    def test_owner_is_required(self, runner, config_file):
        result = invoke(runner, config_file, "list")
        assert result.exit_code == 2

        result = invoke(runner, config_file, "list", "--owner", "  ")
        assert result.exit_code == 1
        assert "auth_required" in result.output

    def test_owner_from_environment(self, runner, config_file, monkeypatch):
        monkeypatch.setenv("TC_OWNER_ID", "alice")
        result = invoke(runner, config_file, "list", "--json")
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == []

    def test_schedule_rejects_bad_date(self, runner, config_file, upload):
        result = invoke(
            runner, config_file, "schedule", upload, "--to", "a@b.com", "--at", "soon", "--owner", "alice"
        )
        assert result.exit_code == 2


class TestServiceCommands:
    def test_dispatch_with_nothing_due(self, runner, config_file):
        result = invoke(runner, config_file, "dispatch")
        assert result.exit_code == 0, result.output
        assert "Nothing due" in result.output

    def test_dispatch_json(self, runner, config_file):
        result = invoke(runner, config_file, "dispatch", "--json")
        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert payload["processed"] == 0
        assert payload["details"] == []

    def test_resolve_unknown_token(self, runner, config_file):
        result = invoke(runner, config_file, "resolve", "no-such-token")
        assert result.exit_code == 1
        assert "Invalid or expired access link" in result.output
