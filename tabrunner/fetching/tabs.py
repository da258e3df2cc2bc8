"""Browser tab abstraction.

The orchestrator only ever talks to a ``TabHost``. ``PlaywrightTabHost`` drives
a real Chromium through the Playwright async API; tests provide an in-process
fake.
"""

import asyncio
import itertools
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    async_playwright,
)

from tabrunner.core.config import config
from tabrunner.core.errors import TabNotFoundError

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Dict[str, Any], Optional[int]], Awaitable[Dict[str, Any]]]


@dataclass
class TabInfo:
    tab_id: int
    url: str
    status: str  # "loading" | "complete"


class TabHost:
    """Interface of the host browser."""

    def __init__(self):
        self._message_handler: Optional[MessageHandler] = None

    def set_message_handler(self, handler: MessageHandler):
        """Route messages sent by page agents to ``handler(message, tab_id)``."""
        self._message_handler = handler

    async def start(self):
        pass

    async def stop(self):
        pass

    async def open_tab(self, url: str, active: bool = True) -> int:
        raise NotImplementedError

    async def get_tab(self, tab_id: int) -> TabInfo:
        raise NotImplementedError

    async def wait_for_load(self, tab_id: int, url_pattern: str):
        raise NotImplementedError

    async def send_message(self, tab_id: int, message: Dict[str, Any]) -> Any:
        raise NotImplementedError

    async def close_tab(self, tab_id: int):
        raise NotImplementedError

    async def close_quietly(self, tab_id: Optional[int]) -> bool:
        if tab_id is None:
            return False
        try:
            await self.close_tab(tab_id)
            logger.info(f"Closed tab {tab_id}")
            return True
        except Exception as e:
            logger.warning(f"Could not close tab {tab_id}: {e}")
            return False


_SEND_MESSAGE_JS = """
([handlerName, message]) => {
    const handler = window[handlerName];
    if (typeof handler !== 'function') {
        throw new Error('Could not establish connection. Receiving end does not exist.');
    }
    return handler(message);
}
"""


class PlaywrightTabHost(TabHost):
    def __init__(self, headless: Optional[bool] = None):
        super().__init__()
        self.headless = config.HEADLESS if headless is None else headless
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._pages: Dict[int, Page] = {}
        self._loaded: Dict[int, asyncio.Event] = {}
        self._navigations: Dict[int, asyncio.Task] = {}
        self._ids = itertools.count(1)

    async def start(self):
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(headless=self.headless)
        self._context = await self._browser.new_context(
            user_agent=random.choice(config.USER_AGENTS),
            viewport={"width": 1280, "height": 800},
        )
        if config.AGENT_SCRIPT_PATH:
            await self._context.add_init_script(path=config.AGENT_SCRIPT_PATH)
        await self._context.expose_binding(config.AGENT_BINDING, self._on_page_message)
        logger.info(f"Browser started (headless={self.headless})")

    async def stop(self):
        for task in self._navigations.values():
            task.cancel()
        self._navigations.clear()
        if self._context:
            await self._context.close()
        if self._browser:
            await self._browser.close()
        if self._playwright:
            await self._playwright.stop()
        self._context = self._browser = self._playwright = None
        self._pages.clear()
        self._loaded.clear()

    def _page(self, tab_id: int) -> Page:
        page = self._pages.get(tab_id)
        if page is None or page.is_closed():
            raise TabNotFoundError(tab_id)
        return page

    def _tab_id_for(self, page: Page) -> Optional[int]:
        for tab_id, candidate in self._pages.items():
            if candidate is page:
                return tab_id
        return None

    async def _on_page_message(self, source: Dict[str, Any], message: Dict[str, Any]):
        tab_id = self._tab_id_for(source["page"])
        if self._message_handler is None:
            logger.warning(f"Dropped page message from tab {tab_id}: no handler")
            return {"success": False, "error": "No handler"}
        return await self._message_handler(message, tab_id)

    async def open_tab(self, url: str, active: bool = True) -> int:
        if self._context is None:
            raise RuntimeError("Browser is not started")
        page = await self._context.new_page()
        tab_id = next(self._ids)
        self._pages[tab_id] = page
        loaded = self._loaded[tab_id] = asyncio.Event()
        page.on("load", lambda _: loaded.set())
        page.on("close", lambda _: self._forget(tab_id))
        if active:
            await page.bring_to_front()
        # Navigation continues in the background, like a freshly created tab
        self._navigations[tab_id] = asyncio.create_task(self._navigate(tab_id, page, url))
        return tab_id

    async def _navigate(self, tab_id: int, page: Page, url: str):
        try:
            await page.goto(url, wait_until="commit", timeout=config.EXTRACTION_TIMEOUT * 1000)
        except PlaywrightError as e:
            logger.warning(f"Navigation of tab {tab_id} to {url} failed: {e}")
        finally:
            self._navigations.pop(tab_id, None)

    def _forget(self, tab_id: int):
        self._pages.pop(tab_id, None)
        self._loaded.pop(tab_id, None)
        task = self._navigations.pop(tab_id, None)
        if task is not None:
            task.cancel()

    async def get_tab(self, tab_id: int) -> TabInfo:
        page = self._page(tab_id)
        loaded = self._loaded.get(tab_id)
        status = "complete" if loaded is not None and loaded.is_set() else "loading"
        return TabInfo(tab_id=tab_id, url=page.url, status=status)

    async def wait_for_load(self, tab_id: int, url_pattern: str):
        """Resolve once the tab fired its load event on a URL matching the pattern."""
        page = self._page(tab_id)
        loaded = self._loaded[tab_id]
        while True:
            await loaded.wait()
            if url_pattern in page.url:
                return
            # Loaded something else first, e.g. a redirect hop
            loaded.clear()
            self._page(tab_id)

    async def send_message(self, tab_id: int, message: Dict[str, Any]) -> Any:
        page = self._page(tab_id)
        return await page.evaluate(_SEND_MESSAGE_JS, [config.AGENT_HANDLER, message])

    async def close_tab(self, tab_id: int):
        page = self._page(tab_id)
        await page.close()
        self._forget(tab_id)
