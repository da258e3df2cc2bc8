import asyncio
import logging
from typing import Any, Dict, Optional

from tabrunner.agent.injection import InjectionRetrier
from tabrunner.agent.lifecycle import TabLifecycleManager
from tabrunner.agent.recovery import ErrorRecovery
from tabrunner.agent.scheduler import Scheduler
from tabrunner.agent.state import filter_profile_urls, new_session
from tabrunner.core.config import config
from tabrunner.core.errors import BackendDeliveryError
from tabrunner.core.events import event_bus
from tabrunner.core.timers import TaskScheduler
from tabrunner.data.store import SessionStore
from tabrunner.fetching.reporter import BackendReporter
from tabrunner.fetching.tabs import TabHost

logger = logging.getLogger(__name__)


class Orchestrator:
    """Wires the session components together and answers control messages."""

    def __init__(
        self,
        tabs: TabHost,
        store: Optional[SessionStore] = None,
        reporter: Optional[BackendReporter] = None,
        timers: Optional[TaskScheduler] = None,
    ):
        self.tabs = tabs
        self.store = store or SessionStore(config.SESSION_STORE_PATH)
        self.reporter = reporter or BackendReporter()
        self.timers = timers or TaskScheduler()

        self.recovery = ErrorRecovery(
            self.store, self.reporter, self.tabs, self.timers, tick=self.tick
        )
        self.injector = InjectionRetrier(self.store, self.tabs, self.recovery)
        self.lifecycle = TabLifecycleManager(
            self.store, self.tabs, self.timers, self.injector, self.recovery
        )
        self.scheduler = Scheduler(self.store, self.lifecycle, self.recovery, self.timers)

        self.tabs.set_message_handler(self.handle_message)

    async def tick(self, session_id: str):
        return await self.scheduler.tick(session_id)

    async def start(self):
        await self.tabs.start()
        if not config.RESUME_SESSIONS:
            await self.store.reset()
            return

        for session_id in await self.store.session_ids():
            async with self.store.edit(session_id) as session:
                if session is None:
                    continue
                for job in session["active_extractions"]:
                    logger.warning(
                        f"Dropping job for {job['url']} in {session_id}: its tab did not survive the restart"
                    )
                session["active_extractions"] = []
            logger.info(f"Resuming search {session_id}")
            self.timers.schedule(f"{session_id}:continue:resume", config.START_DELAY, self.tick, session_id)

    async def shutdown(self):
        await self.timers.shutdown()
        await self.tabs.stop()
        await self.reporter.aclose()

    async def join(self, session_id: Optional[str] = None, poll_interval: float = 1.0):
        """Wait until the session, or every session, has been removed."""
        while True:
            ids = await self.store.session_ids()
            if (session_id is None and not ids) or (session_id is not None and session_id not in ids):
                return
            await asyncio.sleep(poll_interval)

    async def handle_message(self, request: Dict[str, Any], tab_id: Optional[int] = None) -> Dict[str, Any]:
        action = request.get("action")
        logger.debug(
            f"Received message: {action} from tab {tab_id}, has session: {bool(request.get('sessionId'))}"
        )
        if action == "keepAlive":
            return {"success": True, "message": "Orchestrator alive"}

        try:
            if action == "startSearch":
                return await self.start_search(request)
            if action == "stopSearch":
                return await self.stop_search(request)
            if action == "getActiveSearches":
                return await self.get_active_searches()
            if action == "ping":
                return {"success": True, "message": "Orchestrator connected"}
            if action == "extractionComplete":
                await self.extraction_complete(request, tab_id)
                return {"success": True, "message": "Extraction processed"}
            return {"success": False, "error": "Unknown action"}
        except Exception as e:
            logger.exception(f"Error handling {action}")
            return {"success": False, "error": str(e)}

    async def start_search(self, request: Dict[str, Any]) -> Dict[str, Any]:
        session_id = request.get("sessionId")
        urls = request.get("urls")
        if not session_id or not isinstance(urls, list):
            return {"success": False, "error": "Invalid search parameters"}

        profile_urls = filter_profile_urls(urls, config.PROFILE_URL_PATTERN)
        logger.info(f"Filtered URLs: {len(profile_urls)} profiles out of {len(urls)}")

        async with self.store.lock(session_id):
            if await self.store.load(session_id) is not None:
                logger.warning(f"Replacing existing search {session_id} with a fresh one")
            session = new_session(
                session_id, profile_urls, request.get("backendUrl") or config.BACKEND_URL
            )
            await self.store.save(session)
        logger.info(f"Search {session_id} stored with {len(profile_urls)} URLs")
        event_bus.publish("session_started", session_id=session_id, total=len(profile_urls))

        self.timers.schedule(f"{session_id}:continue:start", config.START_DELAY, self.tick, session_id)
        return {"success": True, "message": "Search started successfully"}

    async def stop_search(self, request: Dict[str, Any]) -> Dict[str, Any]:
        session_id = request.get("sessionId")
        jobs = []
        async with self.store.edit(session_id) as session:
            if session is None:
                return {"success": False, "message": "Search not found"}
            session["is_stopping"] = True
            jobs = session["active_extractions"]
            session["active_extractions"] = []

        for job in jobs:
            self.recovery.release_job(session_id, job)
            await self.tabs.close_quietly(job.get("tab_id"))

        # Honoured by the next tick
        self.timers.schedule(
            f"{session_id}:continue:stop", config.QUEUE_ADVANCE_DELAY, self.tick, session_id
        )
        return {"success": True, "message": "Search stop requested"}

    async def get_active_searches(self) -> Dict[str, Any]:
        return {"searches": await self.store.session_ids()}

    async def extraction_complete(self, request: Dict[str, Any], tab_id: Optional[int]):
        logger.info(
            f"Extraction completion received: success={request.get('success')} "
            f"url={request.get('profileUrl') or request.get('url')} tab={tab_id}"
        )
        if request.get("sessionId"):
            await self.recovery.handle_extraction_complete(request, tab_id)
            return

        # Manual extraction outside any search
        record = {k: v for k, v in request.items() if k != "action"}
        record["profileUrl"] = request.get("profileUrl") or request.get("url")
        try:
            await self.reporter.send(request.get("backendUrl") or config.BACKEND_URL, record)
        except BackendDeliveryError as e:
            logger.warning(f"Backend delivery of manual extraction failed: {e}")
