import io

import pytest
from rich.console import Console

from quotasync.domain.models.common import LIKE, SWIPE
from quotasync.domain.models.usage import FlushResult, FlushStatus, SyncState, SyncStatus, UsageCounter
from quotasync.infrastructure.cli.display import ConsoleDisplay, _format_time

START = 1_700_000_000.0

@pytest.fixture
def output() -> io.StringIO:
    return io.StringIO()

@pytest.fixture
def display(output) -> ConsoleDisplay:
    return ConsoleDisplay(Console(file=output, width=120, color_system=None))

def test_panels_show_title_and_message(display, output):
    display.display_error("remote unreachable")
    display.display_warning("quota nearly used")
    display.display_info("all good")

    text = output.getvalue()
    for expected in ("Error", "remote unreachable", "Warning", "quota nearly used", "Info", "all good"):
        assert expected in text

def test_usage_table_lists_counters_pending_and_status(display, output):
    counters = [
        UsageCounter(SWIPE, current_count=10, limit=10, window_start=START, reset_timestamp=START + 60),
        UsageCounter(LIKE, current_count=3, limit=10, window_start=START, reset_timestamp=START + 60),
    ]
    state = SyncState(last_sync_timestamp=START, last_sync_error="Gave up", status=SyncStatus.DEGRADED)

    display.display_usage(counters, {SWIPE: 2, "match": 1}, state, tier="bronze")

    text = output.getvalue()
    assert "Usage (bronze)" in text
    assert "swipe" in text and "like" in text and "match" in text
    assert "degraded" in text
    assert "Gave up" in text
    assert _format_time(START) in text

def test_usage_without_counters_shows_hint(display, output):
    display.display_usage([], {}, SyncState(), tier=None)

    text = output.getvalue()
    assert "No usage recorded yet." in text
    assert "never" in text
    assert "idle" in text

def test_flush_results_table(display, output):
    results = [
        FlushResult(SWIPE, FlushStatus.COMPLETED, acked=["a", "b"], dropped=["c"]),
        FlushResult(LIKE, FlushStatus.FAILED, requeued=["d"], error="Gave up after 5 attempt(s)"),
    ]

    display.display_flush_results(results)

    text = output.getvalue()
    assert "completed" in text and "failed" in text
    assert "Gave up after 5 attempt(s)" in text

def test_empty_flush_results(display, output):
    display.display_flush_results([])
    assert "Nothing to flush." in output.getvalue()

def test_format_time_never():
    assert _format_time(None) == "never"
