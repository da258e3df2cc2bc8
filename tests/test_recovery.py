import pytest
from unittest.mock import patch

from tabrunner.agent.state import new_job, new_session
from tabrunner.core.errors import BackendDeliveryError, TabCreationError
from conftest import profile, sent_records, wait_until

URLS = [profile("a"), profile("b")]


async def seed(orchestrator, tab_id=None, **overrides):
    session = new_session("s1", URLS, "http://backend.test/v1")
    if tab_id is not None:
        job = new_job(URLS[0], 0)
        job["tab_id"] = tab_id
        session["active_extractions"].append(job)
        session["current_index"] = 1
    session.update(overrides)
    await orchestrator.store.save(session)


def continuation_labels(orchestrator):
    return sorted(name.split(":")[2] for name in orchestrator.timers.pending("s1:continue:"))


@pytest.mark.asyncio
async def test_marking_twice_counts_once(orchestrator):
    await seed(orchestrator)

    await orchestrator.recovery.mark_url_processed_and_continue("s1", URLS[0])
    await orchestrator.recovery.mark_url_processed_and_continue("s1", URLS[0], is_error=True)

    session = await orchestrator.store.load("s1")
    assert session["completed_urls"] == {URLS[0]}


@pytest.mark.asyncio
async def test_unknown_url_is_not_marked(orchestrator):
    await seed(orchestrator)

    await orchestrator.recovery.mark_url_processed_and_continue("s1", profile("stranger"))

    session = await orchestrator.store.load("s1")
    assert session["completed_urls"] == set()


@pytest.mark.asyncio
async def test_success_resets_consecutive_errors(orchestrator):
    await seed(orchestrator, consecutive_errors=4, total_errors=4)

    await orchestrator.recovery.mark_url_processed_and_continue("s1", URLS[0])

    session = await orchestrator.store.load("s1")
    assert session["consecutive_errors"] == 0
    assert session["total_errors"] == 4


@pytest.mark.asyncio
async def test_three_independent_continuations_are_scheduled(orchestrator):
    await seed(orchestrator)

    await orchestrator.recovery.mark_url_processed_and_continue("s1", URLS[0])

    assert continuation_labels(orchestrator) == ["backup", "emergency", "primary"]


@pytest.mark.asyncio
async def test_broken_store_falls_back_to_staggered_ticks(orchestrator, fast_config):
    await seed(orchestrator)

    with patch.object(orchestrator.store, "edit", side_effect=RuntimeError("disk gone")):
        await orchestrator.recovery.mark_url_processed_and_continue("s1", URLS[0])

    labels = continuation_labels(orchestrator)
    assert labels == sorted(f"fallback-{i}" for i in range(1, fast_config.FALLBACK_ATTEMPTS + 1))


@pytest.mark.asyncio
async def test_backend_failure_does_not_block_the_queue(orchestrator, reporter):
    reporter.send.side_effect = BackendDeliveryError("backend down", attempts=3, status_code=502)
    await seed(orchestrator)

    await orchestrator.recovery.handle_url_error("s1", URLS[0], TabCreationError("boom"))

    session = await orchestrator.store.load("s1")
    assert URLS[0] in session["completed_urls"]
    assert session["consecutive_errors"] == 1
    assert "primary" in continuation_labels(orchestrator)


@pytest.mark.asyncio
async def test_extraction_timeout_closes_tab_immediately(orchestrator, tabs, reporter):
    tab_id = await tabs.open_tab(URLS[0])
    await seed(orchestrator, tab_id=tab_id)

    await orchestrator.recovery.handle_extraction_timeout("s1", URLS[0], tab_id)

    assert tabs.closed == [tab_id]
    record = sent_records(reporter)[0]
    assert record["extractionMethod"] == "active-tab-timeout"
    assert record["success"] is False
    session = await orchestrator.store.load("s1")
    assert session["active_extractions"] == []


@pytest.mark.asyncio
async def test_completion_marks_the_queued_url_after_a_redirect(orchestrator, tabs, reporter):
    tab_id = await tabs.open_tab(URLS[0])
    await seed(orchestrator, tab_id=tab_id, consecutive_errors=2)
    redirected = "https://www.linkedin.com/in/a-renamed/"

    await orchestrator.recovery.handle_extraction_complete(
        {
            "action": "extractionComplete",
            "sessionId": "s1",
            "success": True,
            "profileUrl": redirected,
            "profileData": {"name": "A"},
        },
        tab_id,
    )

    session = await orchestrator.store.load("s1")
    assert session["completed_urls"] == {URLS[0]}
    assert session["active_extractions"] == []
    assert session["consecutive_errors"] == 0

    record = sent_records(reporter)[0]
    assert "action" not in record
    assert record["profileUrl"] == redirected
    assert record["profileData"] == {"name": "A"}
    assert record["consecutiveErrors"] == 0
    await wait_until(lambda: tab_id in tabs.closed)


@pytest.mark.asyncio
async def test_failed_completion_counts_as_error(orchestrator, tabs):
    tab_id = await tabs.open_tab(URLS[0])
    await seed(orchestrator, tab_id=tab_id)

    await orchestrator.recovery.handle_extraction_complete(
        {"sessionId": "s1", "success": False, "profileUrl": URLS[0], "error": "no profile"},
        tab_id,
    )

    session = await orchestrator.store.load("s1")
    assert session["total_errors"] == 1
    assert session["consecutive_errors"] == 1
    assert URLS[0] in session["completed_urls"]


@pytest.mark.asyncio
async def test_unexpected_reporter_failure_still_marks_and_continues(orchestrator, reporter):
    reporter.send.side_effect = AttributeError("'list' object has no attribute 'get'")
    await seed(orchestrator)

    await orchestrator.recovery.handle_url_error("s1", URLS[0], TabCreationError("boom"))

    session = await orchestrator.store.load("s1")
    assert URLS[0] in session["completed_urls"]
    assert continuation_labels(orchestrator) == ["backup", "emergency", "primary"]


@pytest.mark.asyncio
async def test_unexpected_reporter_failure_keeps_completion_successful(orchestrator, tabs, reporter):
    reporter.send.side_effect = RuntimeError("unexpected reply")
    tab_id = await tabs.open_tab(URLS[0])
    await seed(orchestrator, tab_id=tab_id)

    await orchestrator.recovery.handle_extraction_complete(
        {"sessionId": "s1", "success": True, "profileUrl": URLS[0]}, tab_id
    )

    session = await orchestrator.store.load("s1")
    assert session["completed_urls"] == {URLS[0]}
    assert session["total_errors"] == 0
    assert "primary" in continuation_labels(orchestrator)
