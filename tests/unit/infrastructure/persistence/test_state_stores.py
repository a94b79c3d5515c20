import asyncio

import pytest

from quotasync.domain.models.common import STATE_VERSION, UserId
from quotasync.domain.models.errors import CorruptState
from quotasync.infrastructure.persistence.diskcache_store import DiskCacheStateStore
from quotasync.infrastructure.persistence.json_file_store import JsonFileStateStore

USER = UserId("user@example.com")
BLOB = {
    "version": STATE_VERSION,
    "user_id": USER,
    "counters": [{"action_type": "swipe", "current_count": 3}],
    "queues": {"swipe": [{"id": "a1", "action_type": "swipe"}]},
}

@pytest.fixture(params=["diskcache", "json"])
def store(request, tmp_path):
    if request.param == "diskcache":
        store = DiskCacheStateStore(tmp_path / "cache")
    else:
        store = JsonFileStateStore(tmp_path / "json")
    yield store
    store.close()

def test_load_missing_returns_none(store):
    assert asyncio.run(store.load(USER)) is None

def test_save_then_load(store):
    async def scenario():
        await store.save(USER, BLOB)
        return await store.load(USER)

    assert asyncio.run(scenario()) == BLOB

def test_save_overwrites_previous_blob(store):
    async def scenario():
        await store.save(USER, BLOB)
        await store.save(USER, {**BLOB, "counters": []})
        return await store.load(USER)

    assert asyncio.run(scenario())["counters"] == []

def test_delete_removes_only_that_user(store):
    other = UserId("other")

    async def scenario():
        await store.save(USER, BLOB)
        await store.save(other, BLOB)
        await store.delete(USER)
        await store.delete(USER)  # Deleting twice is harmless
        return await store.load(USER), await store.load(other)

    mine, theirs = asyncio.run(scenario())
    assert mine is None
    assert theirs == BLOB

def test_json_store_uses_hashed_file_names(tmp_path):
    store = JsonFileStateStore(tmp_path)
    path = store.path_for(UserId("../../etc/passwd"))
    assert path.parent == tmp_path
    assert path.name.startswith("state-") and path.suffix == ".json"

def test_json_store_raises_corrupt_state_on_bad_json(tmp_path):
    store = JsonFileStateStore(tmp_path)
    store.path_for(USER).write_text("{truncated", encoding="utf-8")
    with pytest.raises(CorruptState):
        asyncio.run(store.load(USER))

def test_json_store_leaves_no_temp_files(tmp_path):
    store = JsonFileStateStore(tmp_path)

    async def scenario():
        await asyncio.gather(*(store.save(USER, {**BLOB, "n": i}) for i in range(5)))

    asyncio.run(scenario())
    assert [p.name for p in tmp_path.iterdir()] == [store.path_for(USER).name]

def test_diskcache_store_raises_corrupt_state_on_unpickling_error(tmp_path, mocker):
    store = DiskCacheStateStore(tmp_path)
    mocker.patch.object(store.disk_cache, "get", side_effect=EOFError("truncated"))
    with pytest.raises(CorruptState):
        asyncio.run(store.load(USER))
    store.close()
