import asyncio
import itertools
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from tabrunner.agent.orchestrator import Orchestrator
from tabrunner.core.config import config
from tabrunner.core.errors import TabNotFoundError
from tabrunner.core.events import event_bus
from tabrunner.core.timers import TaskScheduler
from tabrunner.data.store import SessionStore
from tabrunner.fetching.tabs import TabHost, TabInfo

FAST_TIMINGS = {
    "START_DELAY": 0.01,
    "TAB_CREATION_DELAY": 0.01,
    "ERROR_BACKOFF_STEP": 0.01,
    "MAX_ERROR_BACKOFF": 0.05,
    "LOAD_POLL_INITIAL_DELAY": 0.01,
    "LOAD_POLL_INTERVAL": 0.01,
    "MAX_LOAD_CHECKS": 3,
    "DOM_READY_WAIT": 0.01,
    "INJECTION_ATTEMPTS": 3,
    "INJECTION_RETRY_DELAY": 0.01,
    "TAB_CLOSE_DELAY": 0.01,
    "EXTRACTION_TIMEOUT": 1.0,
    "JOB_GRACE": 0.5,
    "QUEUE_ADVANCE_DELAY": 0.02,
    "ERROR_ADVANCE_EXTRA": 0.01,
    "MAX_ERROR_ADVANCE_DELAY": 0.05,
    "BACKUP_CONTINUATION_OFFSET": 0.1,
    "EMERGENCY_CONTINUATION_OFFSET": 0.3,
    "BACKEND_RETRY_DELAY": 0.0,
    "STALL_THRESHOLD": 300.0,
    "RESUME_SESSIONS": False,
    "PROFILE_URL_PATTERN": "linkedin.com/in/",
    "BACKEND_URL": "http://backend.test/v1",
}


def profile(name: str) -> str:
    return f"https://www.linkedin.com/in/{name}/"


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        await asyncio.sleep(interval)
    raise AssertionError("condition not met before timeout")


class FakeTabHost(TabHost):
    """In-process browser: tabs load instantly and a fake agent answers."""

    def __init__(self):
        super().__init__()
        self.tabs: Dict[int, TabInfo] = {}
        self.opened: List[str] = []
        self.closed: List[int] = []
        self.messages: List[tuple] = []
        self.fail_open = set()
        self.fail_open_once = set()
        self.hang = set()
        self.hang_open = set()
        self.agent_delay = 0.01
        self.reject_messages = 0
        self.complete_loading = True
        self.agent_success = True
        self._ids = itertools.count(1)
        self._agent_tasks = set()

    async def open_tab(self, url: str, active: bool = True) -> int:
        if url in self.hang_open:
            await asyncio.Event().wait()
        if url in self.fail_open:
            raise RuntimeError("No current window")
        if url in self.fail_open_once:
            self.fail_open_once.discard(url)
            raise RuntimeError("Tabs cannot be edited right now")
        tab_id = next(self._ids)
        self.opened.append(url)
        status = "complete" if self.complete_loading else "loading"
        self.tabs[tab_id] = TabInfo(tab_id=tab_id, url=url, status=status)
        return tab_id

    async def get_tab(self, tab_id: int) -> TabInfo:
        if tab_id not in self.tabs:
            raise TabNotFoundError(tab_id)
        return self.tabs[tab_id]

    async def wait_for_load(self, tab_id: int, url_pattern: str):
        tab = await self.get_tab(tab_id)
        if tab.status != "complete":
            # Never fires, the poll has to force injection
            await asyncio.Event().wait()

    async def send_message(self, tab_id: int, message: Dict[str, Any]) -> Any:
        tab = await self.get_tab(tab_id)
        if self.reject_messages > 0:
            self.reject_messages -= 1
            raise RuntimeError("Could not establish connection. Receiving end does not exist.")
        self.messages.append((tab_id, message))
        if tab.url not in self.hang and self._message_handler is not None:
            task = asyncio.get_running_loop().create_task(self._complete(tab_id, tab.url, message))
            self._agent_tasks.add(task)
            task.add_done_callback(self._agent_tasks.discard)
        return {"received": True}

    async def _complete(self, tab_id: int, url: str, message: Dict[str, Any]):
        await asyncio.sleep(self.agent_delay)
        await self._message_handler(
            {
                "action": "extractionComplete",
                "sessionId": message["sessionId"],
                "success": self.agent_success,
                "profileUrl": url,
                "extractionMethod": "dom",
                "profileData": {"name": url.rstrip("/").rsplit("/", 1)[-1]},
            },
            tab_id,
        )

    async def close_tab(self, tab_id: int):
        if tab_id not in self.tabs:
            raise TabNotFoundError(tab_id)
        del self.tabs[tab_id]
        self.closed.append(tab_id)


@pytest.fixture
def fast_config(monkeypatch):
    for name, value in FAST_TIMINGS.items():
        monkeypatch.setattr(config, name, value)
    return config


@pytest.fixture
def tabs():
    return FakeTabHost()


@pytest.fixture
def reporter():
    mock = MagicMock()
    mock.send = AsyncMock(return_value={"success": True})
    mock.aclose = AsyncMock()
    return mock


@pytest.fixture
def finished():
    summaries: List[Dict[str, Any]] = []

    def on_event(event):
        if event.type == "session_finished":
            summaries.append(event.payload)

    event_bus.subscribe(on_event)
    yield summaries
    event_bus.unsubscribe(on_event)


@pytest_asyncio.fixture
async def orchestrator(fast_config, tabs, reporter):
    orch = Orchestrator(tabs, store=SessionStore(), reporter=reporter, timers=TaskScheduler())
    await orch.start()
    yield orch
    await orch.shutdown()


def sent_records(reporter) -> List[Dict[str, Any]]:
    return [c.args[1] for c in reporter.send.call_args_list]


def find_summary(summaries, session_id: str) -> Optional[Dict[str, Any]]:
    for summary in summaries:
        if summary["session_id"] == session_id:
            return summary
    return None
