import asyncio
import logging
import time
from typing import Optional

from tabrunner.agent.injection import InjectionRetrier
from tabrunner.agent.recovery import ErrorRecovery
from tabrunner.agent.state import ExtractionJob, find_job, timer_name
from tabrunner.core.config import config
from tabrunner.core.errors import LoadTimeoutError, TabCreationError, TabNotFoundError
from tabrunner.core.timers import TaskScheduler
from tabrunner.data.store import SessionStore
from tabrunner.fetching.tabs import TabHost

logger = logging.getLogger(__name__)


class TabLifecycleManager:
    """Opens one tab per dispatched job and drives it until injection."""

    def __init__(
        self,
        store: SessionStore,
        tabs: TabHost,
        timers: TaskScheduler,
        injector: InjectionRetrier,
        recovery: ErrorRecovery,
    ):
        self.store = store
        self.tabs = tabs
        self.timers = timers
        self.injector = injector
        self.recovery = recovery

    def creation_delay(self, consecutive_errors: int) -> float:
        """Base delay plus a linear, capped back-off on repeated failures."""
        backoff = min(consecutive_errors * config.ERROR_BACKOFF_STEP, config.MAX_ERROR_BACKOFF)
        return config.TAB_CREATION_DELAY + backoff

    async def dispatch(self, session_id: str, job: ExtractionJob):
        url = job["url"]
        session = await self.store.require(session_id)
        tab_id: Optional[int] = None

        try:
            await asyncio.sleep(self.creation_delay(session["consecutive_errors"]))

            logger.info(f"Creating active tab for {url}")
            try:
                tab_id = await self.tabs.open_tab(url, active=True)
            except Exception as e:
                logger.error(f"Failed to create tab for {url}: {e}")
                await self.recovery.handle_url_error(
                    session_id, url, TabCreationError(f"Tab creation failed: {e}")
                )
                return
            logger.info(f"Created active tab {tab_id} for {url}")

            load_timer = timer_name(session_id, tab_id, "load")
            timeout_timer = timer_name(session_id, tab_id, "timeout")
            async with self.store.edit(session_id) as session:
                tracked = find_job(session, url=url) if session is not None else None
                if tracked is not None:
                    tracked["tab_id"] = tab_id
                    tracked["start_time"] = time.time()
                    tracked["load_timer"] = load_timer
                    tracked["timeout_timer"] = timeout_timer

            if tracked is None:
                # Stopped or reaped while the tab was opening
                logger.info(f"Job for {url} is no longer tracked, closing tab {tab_id}")
                await self.tabs.close_quietly(tab_id)
                return

            self.timers.schedule(load_timer, 0, self.watch_load, session_id, url, tab_id)
            self.timers.schedule(
                timeout_timer,
                config.EXTRACTION_TIMEOUT,
                self.recovery.handle_extraction_timeout,
                session_id,
                url,
                tab_id,
            )
        except Exception as e:
            logger.error(f"Error processing URL {url}: {e}")
            if tab_id is not None:
                await self.tabs.close_quietly(tab_id)
            await self.recovery.handle_url_error(
                session_id, url, TabCreationError(f"Processing error: {e}")
            )

    async def watch_load(self, session_id: str, url: str, tab_id: int):
        """
        Race the tab's own load signal against a bounded poll.
        Whichever finishes first wins and the other is cancelled.
        """
        event = asyncio.ensure_future(self.tabs.wait_for_load(tab_id, config.PROFILE_URL_PATTERN))
        poll = asyncio.ensure_future(self._poll_load(tab_id))
        try:
            done, _ = await asyncio.wait({event, poll}, return_when=asyncio.FIRST_COMPLETED)
            if event in done and event.exception() is None:
                trigger = "load event"
            else:
                if event in done:
                    logger.debug(f"Load event for tab {tab_id} failed: {event.exception()}")
                trigger = await poll
        except TabNotFoundError as e:
            logger.error(f"Tab {tab_id} error during loading: {e}")
            await self.recovery.handle_url_error(
                session_id, url, LoadTimeoutError(f"Tab became invalid: {e}")
            )
            return
        finally:
            for task in (event, poll):
                if not task.done():
                    task.cancel()

        async with self.store.edit(session_id) as session:
            job = find_job(session, tab_id=tab_id) if session is not None else None
            if job is not None:
                job["injection_attempted"] = True

        if job is None:
            logger.info(f"Tab {tab_id} loaded after its job ended, skipping injection")
            return

        logger.info(f"Tab {tab_id} ready ({trigger}), waiting for DOM then injecting...")
        # Injection outlives the load watcher, in-flight handoffs are not cancelled
        self.timers.schedule(
            timer_name(session_id, tab_id, "inject"),
            0,
            self.injector.inject,
            session_id,
            url,
            tab_id,
        )

    async def _poll_load(self, tab_id: int) -> str:
        await asyncio.sleep(config.LOAD_POLL_INITIAL_DELAY)
        for check in range(1, config.MAX_LOAD_CHECKS + 1):
            tab = await self.tabs.get_tab(tab_id)
            logger.debug(f"Checking tab {tab_id} loading: {check}/{config.MAX_LOAD_CHECKS}")
            if tab.status == "complete":
                return "poll"
            if check < config.MAX_LOAD_CHECKS:
                await asyncio.sleep(config.LOAD_POLL_INTERVAL)
        logger.warning(f"Tab {tab_id} loading timeout, attempting injection anyway...")
        return "forced"
