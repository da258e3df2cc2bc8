import json
import pytest

from tabrunner.agent.state import new_job, new_session
from tabrunner.core.errors import SessionNotFoundError
from tabrunner.data.store import SessionStore

URLS = [
    "https://www.linkedin.com/in/a/",
    "https://www.linkedin.com/in/b/",
    "https://www.linkedin.com/in/c/",
]


@pytest.mark.asyncio
async def test_completed_urls_are_a_set_in_memory_and_a_list_at_rest(tmp_path):
    path = tmp_path / "sessions.json"
    store = SessionStore(str(path))

    session = new_session("s1", URLS, "http://backend.test/v1")
    session["completed_urls"] = {URLS[2], URLS[0]}
    await store.save(session)

    on_disk = json.loads(path.read_text())
    assert on_disk["active_sessions"]["s1"]["completed_urls"] == [URLS[0], URLS[2]]

    loaded = await store.load("s1")
    assert loaded["completed_urls"] == {URLS[0], URLS[2]}


@pytest.mark.asyncio
async def test_read_backfills_counters_of_older_sessions(tmp_path):
    path = tmp_path / "sessions.json"
    path.write_text(
        json.dumps(
            {
                "active_sessions": {
                    "old": {
                        "session_id": "old",
                        "urls": URLS,
                        "completed_urls": "corrupt",
                        "current_index": 1,
                        "start_time": 100.0,
                        "backend_url": "http://backend.test/v1",
                    }
                }
            }
        )
    )
    store = SessionStore(str(path))

    session = await store.load("old")
    assert session["completed_urls"] == set()
    assert session["consecutive_errors"] == 0
    assert session["total_errors"] == 0
    assert session["is_stopping"] is False
    assert session["active_extractions"] == []
    assert session["last_processed_time"] == 100.0


@pytest.mark.asyncio
async def test_get_and_set_whole_mapping():
    store = SessionStore()
    a = new_session("a", URLS, "http://x")
    b = new_session("b", URLS[:1], "http://y")
    await store.set("active_sessions", {"a": a, "b": b})

    sessions = await store.get("active_sessions")
    assert set(sessions) == {"a", "b"}
    assert sessions["b"]["urls"] == URLS[:1]
    assert await store.get("other_key") == {}


@pytest.mark.asyncio
async def test_edit_persists_and_skips_missing_sessions():
    store = SessionStore()
    await store.save(new_session("s1", URLS, "http://x"))

    async with store.edit("s1") as session:
        session["completed_urls"].add(URLS[1])
        session["active_extractions"].append(new_job(URLS[2], 2))

    stored = await store.load("s1")
    assert stored["completed_urls"] == {URLS[1]}
    assert stored["active_extractions"][0]["url"] == URLS[2]

    async with store.edit("missing") as session:
        assert session is None
    assert await store.session_ids() == ["s1"]


@pytest.mark.asyncio
async def test_delete_and_require():
    store = SessionStore()
    await store.save(new_session("s1", URLS, "http://x"))

    assert await store.delete("s1") is True
    assert await store.delete("s1") is False
    with pytest.raises(SessionNotFoundError):
        await store.require("s1")


@pytest.mark.asyncio
async def test_unreadable_storage_reads_as_empty(tmp_path):
    path = tmp_path / "sessions.json"
    path.write_text("{not json")
    store = SessionStore(str(path))

    assert await store.get("active_sessions") == {}

    # Writing recovers the file
    await store.save(new_session("s1", URLS, "http://x"))
    assert await store.session_ids() == ["s1"]


@pytest.mark.asyncio
async def test_reset_clears_sessions():
    store = SessionStore()
    await store.save(new_session("s1", URLS, "http://x"))
    await store.reset()
    assert await store.session_ids() == []
