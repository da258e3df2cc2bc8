import logging
import time
from typing import Any, Dict, Optional

from tabrunner.agent.lifecycle import TabLifecycleManager
from tabrunner.agent.recovery import ErrorRecovery
from tabrunner.agent.state import ExtractionJob, Session, new_job
from tabrunner.core.config import config
from tabrunner.core.errors import SessionNotFoundError
from tabrunner.core.events import event_bus
from tabrunner.core.timers import TaskScheduler
from tabrunner.data.store import SessionStore

logger = logging.getLogger(__name__)


class Scheduler:
    """
    Advances a session one URL at a time.

    ``tick`` is safe to call any number of times: it re-reads the session,
    dispatches only when no job is in flight and finishes the session once
    every URL is done or a stop was requested.
    """

    def __init__(
        self,
        store: SessionStore,
        lifecycle: TabLifecycleManager,
        recovery: ErrorRecovery,
        timers: TaskScheduler,
    ):
        self.store = store
        self.lifecycle = lifecycle
        self.recovery = recovery
        self.timers = timers
        self._emergencies = 0

    async def tick(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Returns the final summary when this tick finished the session."""
        try:
            return await self._tick(session_id)
        except SessionNotFoundError:
            logger.debug(f"Session {session_id} is gone, nothing to do")
            return None
        except Exception:
            logger.exception(f"Critical error in sequential processing for {session_id}")
            self._emergencies += 1
            # Force continue to prevent getting stuck
            self.timers.schedule(
                f"{session_id}:continue:emergency-tick:{self._emergencies}",
                config.QUEUE_ADVANCE_DELAY,
                self.tick,
                session_id,
            )
            return None

    async def _tick(self, session_id: str) -> Optional[Dict[str, Any]]:
        stale = None
        async with self.store.lock(session_id):
            session = await self.store.load(session_id)
            if session is None:
                logger.debug(f"Search {session_id} not found")
                return None

            if session["is_stopping"]:
                logger.info(f"Search {session_id} is stopping")
                return await self._finish(session)

            urls = session["urls"]
            completed = session["completed_urls"]
            now = time.time()
            idle = now - (session.get("last_processed_time") or session["start_time"])
            stalled = idle > config.STALL_THRESHOLD
            if stalled:
                logger.warning(
                    f"Search {session_id} appears stalled ({idle:.0f}s idle), attempting recovery..."
                )
                session["consecutive_errors"] = 0
                session["last_processed_time"] = now

            # An in-flight job outranks the cursor: the last URL is dispatched
            # with the cursor already at the end
            active = session["active_extractions"]
            if len(active) >= config.MAX_CONCURRENT_TABS:
                oldest = min(active, key=lambda j: j["start_time"])
                age = now - oldest["start_time"]
                if age <= config.EXTRACTION_TIMEOUT + config.JOB_GRACE:
                    logger.debug(f"Search {session_id} busy with {oldest['url']} ({age:.0f}s)")
                    self._arm_watchdog(session_id, oldest, now)
                    if stalled:
                        await self.store.save(session)
                    return None
                # Its timers were lost, reap it below once the lock is released
                stale = oldest
                await self.store.save(session)
            else:
                if len(completed) >= len(urls) or session["current_index"] >= len(urls):
                    logger.info(
                        f"All URLs completed for search {session_id} ({len(completed)}/{len(urls)})"
                    )
                    return await self._finish(session)

                next_index = self._select(session)
                if next_index is None:
                    logger.info(f"No more URLs to process for search {session_id}")
                    return await self._finish(session)

                url = urls[next_index]
                job = new_job(url, next_index)
                # Advance before dispatch so no other tick picks the same index
                session["current_index"] = next_index + 1
                session["last_processed_time"] = now
                active.append(job)
                await self.store.save(session)
                self._arm_watchdog(session_id, job, now)

        if stale is not None:
            logger.warning(f"Reaping job for {stale['url']} whose timers were lost")
            await self.recovery.handle_extraction_timeout(session_id, stale["url"], stale["tab_id"])
            return None

        total = len(session["urls"])
        logger.info(f"Processing URL {next_index + 1}/{total}: {url}")
        logger.info(
            f"Progress: {len(completed)} completed, {session['consecutive_errors']} consecutive errors"
        )
        event_bus.publish(
            "progress",
            session_id=session_id,
            text=f"{len(completed) + 1}/{total}",
            completed=len(completed),
            total=total,
            errors=session["total_errors"],
        )

        await self.lifecycle.dispatch(session_id, job)
        return None

    def _arm_watchdog(self, session_id: str, job: ExtractionJob, now: float):
        """
        Tick again once the job outlives its budget. The job's own timers are
        only armed after its tab opens, so a hung tab creation has nothing
        else to end it.
        """
        deadline = job["start_time"] + config.EXTRACTION_TIMEOUT + config.JOB_GRACE
        self.timers.schedule(
            f"{session_id}:continue:watchdog",
            max(deadline - now, 0) + config.QUEUE_ADVANCE_DELAY,
            self.tick,
            session_id,
        )

    @staticmethod
    def _select(session: Session) -> Optional[int]:
        """First URL at or after the cursor that is not completed yet."""
        completed = session["completed_urls"]
        for index in range(session["current_index"], len(session["urls"])):
            if session["urls"][index] not in completed:
                return index
        return None

    async def _finish(self, session: Session) -> Dict[str, Any]:
        """Close leftovers, log final statistics and remove the session. Caller holds the lock."""
        session_id = session["session_id"]
        logger.info(f"Finishing search {session_id}")
        self.timers.cancel(f"{session_id}:continue:watchdog")

        for job in session["active_extractions"]:
            self.recovery.release_job(session_id, job)
            await self.lifecycle.tabs.close_quietly(job.get("tab_id"))

        urls = session["urls"]
        completed = [u for u in urls if u in session["completed_urls"]]
        duration = time.time() - session["start_time"]
        summary = {
            "session_id": session_id,
            "completed": len(completed),
            "total": len(urls),
            "completed_urls": completed,
            "total_errors": session["total_errors"],
            "duration": duration,
            "stopped": session["is_stopping"],
        }

        percent = round(len(completed) / len(urls) * 100) if urls else 100
        logger.info(f"FINAL STATS for {session_id}:")
        logger.info(f"   Completed: {len(completed)}/{len(urls)} ({percent}%)")
        logger.info(f"   Total Errors: {session['total_errors']}")
        logger.info(f"   Duration: {round(duration)}s")
        if completed:
            logger.info(f"   Average per URL: {round(duration * 1000 / len(completed))}ms")

        # The cursor can pass a URL whose job never resolved (e.g. a crash mid-dispatch)
        skipped = [u for u in urls[: session["current_index"]] if u not in session["completed_urls"]]
        if skipped and not session["is_stopping"]:
            logger.warning(f"{len(skipped)} URL(s) were dispatched but never completed: {skipped}")

        await self.store.delete(session_id)
        event_bus.publish("session_finished", **summary)
        if not await self.store.session_ids():
            event_bus.publish("progress", session_id=None, text="")
        return summary
