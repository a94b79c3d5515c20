import asyncio

import pytest

from quotasync.domain.models.common import BRONZE, GOLD, LIKE, SWIPE, UserId
from quotasync.domain.models.errors import NetworkError, RateLimited

DAY = 24 * 60 * 60

def item(action_id, action_type=SWIPE, payload=None):
    return {"id": action_id, "actionType": action_type, "payload": {} if payload is None else payload}

def test_submit_is_idempotent_by_action_id(memory_remote):
    async def scenario():
        first = await memory_remote.submit_batch([item("a1"), item("a2")])
        again = await memory_remote.submit_batch([item("a1")])
        return first, again

    first, again = asyncio.run(scenario())

    assert first.acked == ["a1", "a2"]
    assert again.acked == ["a1"]
    assert memory_remote.counters[SWIPE].current_count == 2

def test_submit_rejects_invalid_items_and_enforces_limit(memory_remote):
    memory_remote.set_usage(LIKE, 9)
    batch = [
        item("ok", LIKE),
        item("over", LIKE),
        item("unknown", "superlike"),
        item("bad-payload", SWIPE, payload="text"),
    ]

    result = asyncio.run(memory_remote.submit_batch(batch))

    assert result.acked == ["ok"]
    assert result.rejected == {
        "over": "limit exceeded",
        "unknown": "unknown action type 'superlike'",
        "bad-payload": "payload must be an object",
    }

def test_injected_failures_fire_before_recording(memory_remote):
    memory_remote.inject_failures(1)
    memory_remote.inject_failures(1, RateLimited(retry_after=2))

    with pytest.raises(NetworkError):
        asyncio.run(memory_remote.submit_batch([item("a1")]))
    with pytest.raises(RateLimited):
        asyncio.run(memory_remote.pull(UserId("u"), BRONZE))

    assert memory_remote.pending_failures() == 0
    assert memory_remote.submitted_batches == []
    assert memory_remote.pull_count == 0

def test_pull_returns_counters_and_all_tier_limits(memory_remote, clock):
    memory_remote.set_usage(SWIPE, 3)

    snapshot = asyncio.run(memory_remote.pull(UserId("u"), GOLD))

    assert memory_remote.tier == GOLD
    assert snapshot.counters[0]["current_count"] == 3
    assert snapshot.counters[0]["limit"] == 200
    assert snapshot.tier_limits.limit_for(BRONZE, SWIPE) == 10
    assert snapshot.tier_limits.fetched_at == clock()

def test_remote_window_resets(memory_remote, clock):
    memory_remote.set_usage(SWIPE, 10)
    clock.advance(DAY)

    result = asyncio.run(memory_remote.submit_batch([item("a1")]))

    assert result.acked == ["a1"]
    assert memory_remote.counters[SWIPE].current_count == 1
