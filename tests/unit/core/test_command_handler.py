import asyncio
from unittest.mock import MagicMock

import pytest

from quotasync.core.command_handler import CommandHandler, describe_event, parse_payload
from quotasync.domain.events.sync_events import ActionDropped, BatchAcked, RetryScheduled, SyncStatusChanged
from quotasync.domain.interfaces.user_interface import UserInterface
from quotasync.domain.models.common import BRONZE, SWIPE
from quotasync.domain.models.errors import ConfigurationError
from quotasync.domain.models.usage import FlushStatus
from quotasync.infrastructure.remote.memory_remote import InMemoryRemoteStore

@pytest.fixture
def mock_ui():
    return MagicMock(spec=UserInterface)

@pytest.fixture
def command_handler(make_engine, mock_ui) -> CommandHandler:
    """Handler whose engines share the in-memory remote and JSON state store fixtures."""
    return CommandHandler(engine_factory=lambda: make_engine(), ui=mock_ui)

def info_messages(mock_ui: MagicMock):
    return [c.args[0] for c in mock_ui.display_info.call_args_list]

def test_handle_act_records_and_delivers(command_handler, mock_ui, memory_remote):
    outcome = asyncio.run(command_handler.handle_act("swipe", count=3, payload='{"target": "u2"}'))

    assert outcome == {"allowed": 3, "denied": 0}
    assert memory_remote.counters[SWIPE].current_count == 3
    assert memory_remote.submitted_batches[0][0]["payload"] == {"target": "u2"}
    mock_ui.display_info.assert_any_call("3 'swipe' action(s) allowed, 0 denied.")
    results = mock_ui.display_flush_results.call_args.args[0]
    assert results[0].status is FlushStatus.COMPLETED
    mock_ui.display_usage.assert_called_once()
    mock_ui.display_error.assert_not_called()

def test_handle_act_reports_denials(command_handler, mock_ui):
    outcome = asyncio.run(command_handler.handle_act("swipe", count=12))

    assert outcome == {"allowed": 10, "denied": 2}
    mock_ui.display_warning.assert_called_once_with("Quota denied for 'swipe': limit_exceeded")

def test_handle_act_invalid_payload(command_handler, mock_ui, memory_remote):
    outcome = asyncio.run(command_handler.handle_act("swipe", payload="[1, 2"))

    assert outcome == {"allowed": 0, "denied": 0}
    assert memory_remote.pull_count == 0
    mock_ui.display_error.assert_called_once()
    assert mock_ui.display_error.call_args.args[0].startswith("Act failed: Payload is not valid JSON")

def test_handle_status_shows_persisted_counters(command_handler, mock_ui):
    asyncio.run(command_handler.handle_act("swipe", count=2))
    mock_ui.reset_mock()

    asyncio.run(command_handler.handle_status())

    counters, pending, sync_state = mock_ui.display_usage.call_args.args[:3]
    assert [(c.action_type, c.current_count) for c in counters] == [(SWIPE, 2)]
    assert pending == {}
    assert sync_state.last_sync_timestamp is not None
    assert mock_ui.display_usage.call_args.kwargs["tier"] == BRONZE

def test_handle_sync_force_and_skip(command_handler, mock_ui, memory_remote):
    assert asyncio.run(command_handler.handle_sync(force=True))
    assert "Synchronized with the remote store." in info_messages(mock_ui)

    assert not asyncio.run(command_handler.handle_sync(force=False))
    assert "Sync skipped: last sync is recent (use --force)." in info_messages(mock_ui)
    assert memory_remote.pull_count == 1

def test_handle_sync_reports_failure(command_handler, mock_ui, memory_remote):
    memory_remote.inject_failures(5)

    assert not asyncio.run(command_handler.handle_sync(force=True))

    warning = mock_ui.display_warning.call_args.args[0]
    assert warning.startswith("Sync failed: Gave up after 5 attempt(s)")
    assert any("retrying in" in message for message in info_messages(mock_ui))

def test_failed_act_is_delivered_by_flush(command_handler, mock_ui, memory_remote):
    asyncio.run(command_handler.handle_sync(force=True))
    memory_remote.inject_failures(5)

    asyncio.run(command_handler.handle_act("like", count=2))
    assert "like" not in memory_remote.counters

    results = asyncio.run(command_handler.handle_flush())

    assert len(results) == 1 and len(results[0].acked) == 2
    assert memory_remote.counters["like"].current_count == 2

def test_handle_flush_with_nothing_pending(command_handler, mock_ui):
    assert asyncio.run(command_handler.handle_flush()) == []
    mock_ui.display_flush_results.assert_called_once_with([])

def test_handle_clear_state(command_handler, mock_ui, state_store):
    asyncio.run(command_handler.handle_act("swipe"))
    assert state_store.path_for("user-1").exists()

    asyncio.run(command_handler.handle_clear_state())

    assert not state_store.path_for("user-1").exists()
    mock_ui.display_info.assert_any_call("Persisted state for 'user-1' cleared.")

def test_handle_simulate_retries_through_injected_failures(make_engine, mock_ui, clock, tmp_path, memory_remote):
    sandbox_remote = InMemoryRemoteStore(tier=BRONZE, clock=clock)

    def sandbox_factory():
        return make_engine(remote=sandbox_remote), sandbox_remote

    handler = CommandHandler(lambda: make_engine(), mock_ui, sandbox_factory=sandbox_factory)

    results = asyncio.run(handler.handle_simulate("swipe", count=3, failures=2))

    assert len(results[0].acked) == 3
    assert sandbox_remote.counters[SWIPE].current_count == 3
    assert memory_remote.pull_count == 0
    retries = [m for m in info_messages(mock_ui) if "retrying in" in m]
    assert len(retries) == 2

def test_handle_simulate_without_sandbox(command_handler, mock_ui):
    assert asyncio.run(command_handler.handle_simulate("swipe", 1, 0)) == []
    mock_ui.display_error.assert_called_once_with("Simulation is not available.")

def test_parse_payload():
    assert parse_payload(None) == {}
    assert parse_payload('{"a": 1}') == {"a": 1}
    with pytest.raises(ConfigurationError):
        parse_payload('"just a string"')

def test_describe_event():
    retry = RetryScheduled(operation="submit_batch:swipe", attempt_number=1, delay_seconds=1.5, error_type="NetworkError")
    assert describe_event(retry) == "submit_batch:swipe: attempt 1 failed (NetworkError), retrying in 1.50s"
    dropped = ActionDropped(action_type="like", action_id="0123456789abcdef", reason="limit exceeded")
    assert describe_event(dropped) == "Dropped like action 01234567: limit exceeded"
    assert describe_event(SyncStatusChanged(status="degraded", last_sync_error="offline")) == \
        "Sync status changed to 'degraded': offline"
    assert describe_event(BatchAcked(action_type="like", batch_id="b", action_ids=[])) is None
