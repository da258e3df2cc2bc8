import asyncio
import logging
from typing import Optional

from tabrunner.agent.recovery import ErrorRecovery
from tabrunner.agent.state import find_job
from tabrunner.core.config import config
from tabrunner.core.errors import InjectionError
from tabrunner.data.store import SessionStore
from tabrunner.fetching.tabs import TabHost

logger = logging.getLogger(__name__)


class InjectionRetrier:
    """Hands the session context to the page agent of a loaded tab."""

    def __init__(self, store: SessionStore, tabs: TabHost, recovery: ErrorRecovery):
        self.store = store
        self.tabs = tabs
        self.recovery = recovery

    async def inject(self, session_id: str, url: str, tab_id: int) -> bool:
        """
        Try up to INJECTION_ATTEMPTS times, each after a DOM settle wait.
        Success only means the agent acknowledged the context; the
        extraction result arrives later as an ``extractionComplete`` message.
        """
        session = await self.store.load(session_id)
        backend_url = session["backend_url"] if session else config.BACKEND_URL
        attempts = config.INJECTION_ATTEMPTS
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            if not await self._still_tracked(session_id, tab_id):
                logger.info(f"Job for tab {tab_id} already ended, abandoning injection")
                return False
            try:
                logger.info(f"Injection attempt {attempt}/{attempts} for tab {tab_id}")
                await asyncio.sleep(config.DOM_READY_WAIT)
                await self.tabs.get_tab(tab_id)
                await self.tabs.send_message(
                    tab_id,
                    {
                        "action": "setSearchContext",
                        "sessionId": session_id,
                        "backendUrl": backend_url,
                        "attempt": attempt,
                    },
                )
                logger.info(f"Injection successful for tab {tab_id} on attempt {attempt}")
                return True
            except Exception as e:
                last_error = e
                logger.error(f"Injection attempt {attempt} failed for tab {tab_id}: {e}")
                if attempt < attempts:
                    logger.info(
                        f"Retrying injection for tab {tab_id} in {config.INJECTION_RETRY_DELAY:.1f}s..."
                    )
                    await asyncio.sleep(config.INJECTION_RETRY_DELAY)

        if not await self._still_tracked(session_id, tab_id):
            logger.info(f"Job for tab {tab_id} ended during injection, not reporting it")
            return False
        logger.error(f"All injection attempts failed for tab {tab_id}")
        await self.recovery.handle_url_error(
            session_id, url, InjectionError(f"All injection attempts failed: {last_error}")
        )
        return False

    async def _still_tracked(self, session_id: str, tab_id: int) -> bool:
        session = await self.store.load(session_id)
        return session is not None and find_job(session, tab_id=tab_id) is not None
