import json
from pathlib import Path

from typer.testing import CliRunner

from quotasync.infrastructure.config import settings
from quotasync.main import app

# These fixtures are defined in tests/conftest.py:
# runner: CliRunner
# cli_config: test configuration (user 'cli-user', JSON state in a temp dir, in-memory remote)

def state_files(tmp_path: Path):
    return list((tmp_path / "cli-state").glob("state-*.json"))

def test_act_then_status_flow(runner: CliRunner, cli_config, tmp_path: Path):
    result = runner.invoke(app, ["act", "swipe", "--count", "3", "--payload", '{"target": "u2"}'])

    assert result.exit_code == 0, f"CLI command failed: {result.stdout}"
    assert "3 'swipe' action(s) allowed, 0 denied." in result.stdout
    assert "completed" in result.stdout

    files = state_files(tmp_path)
    assert len(files) == 1
    blob = json.loads(files[0].read_text(encoding="utf-8"))
    assert blob["user_id"] == "cli-user"
    assert [c["current_count"] for c in blob["counters"]] == [3]
    assert blob["queues"] == {}

    status = runner.invoke(app, ["status"])
    assert status.exit_code == 0, f"CLI command failed: {status.stdout}"
    assert "swipe" in status.stdout
    assert "Usage (bronze)" in status.stdout

def test_act_exits_nonzero_when_everything_is_denied(runner: CliRunner, cli_config):
    assert runner.invoke(app, ["act", "match", "--count", "5"]).exit_code == 0

    result = runner.invoke(app, ["act", "match"])

    assert result.exit_code == 1
    assert "limit_exceeded" in result.stdout

def test_act_with_invalid_payload_shows_error(runner: CliRunner, cli_config):
    result = runner.invoke(app, ["act", "like", "--payload", "not json"])

    assert result.exit_code == 0
    assert "Payload is not valid JSON" in result.stdout

def test_sync_and_flush_commands(runner: CliRunner, cli_config):
    sync = runner.invoke(app, ["sync", "--force"])
    assert sync.exit_code == 0, f"CLI command failed: {sync.stdout}"
    assert "Synchronized with the remote store." in sync.stdout

    flush = runner.invoke(app, ["flush"])
    assert flush.exit_code == 0
    assert "Nothing to flush." in flush.stdout

def test_simulate_recovers_from_injected_failures(runner: CliRunner, cli_config):
    result = runner.invoke(app, ["simulate", "--action", "like", "--count", "2", "--failures", "2"])

    assert result.exit_code == 0, f"CLI command failed: {result.stdout}"
    assert result.stdout.count("retrying in") == 2
    assert "completed" in result.stdout

def test_clear_state_removes_state_file(runner: CliRunner, cli_config, tmp_path: Path):
    runner.invoke(app, ["act", "swipe"])
    assert state_files(tmp_path)

    result = runner.invoke(app, ["clear-state"])

    assert result.exit_code == 0
    assert "Persisted state for 'cli-user' cleared." in result.stdout
    assert not state_files(tmp_path)

def test_missing_user_is_a_configuration_error(runner: CliRunner, cli_config):
    settings.set_config_for_testing({'user.id': None})

    result = runner.invoke(app, ["status"])

    assert result.exit_code == 2
    assert "Configuration error" in result.stdout
